from typing import List, Optional, Dict, Any, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

SUB_WORKFLOWS_KEY = "runner.sub-workflows"
CHECKPOINT_KEY = "runner.checkpoint"
ERROR_HANDLING_KEY = "runner.error-handling"

KNOWN_KEYS = ("name", "model", "description", "tools", "config", "input", "output", "metadata")


class ConfigSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = Field(default=None, alias="maxOutputTokens")
    top_p: Optional[float] = Field(default=None, alias="topP")
    top_k: Optional[int] = Field(default=None, alias="topK")
    stop_sequences: List[str] = Field(default_factory=list, alias="stopSequences")
    max_retries: Optional[int] = Field(default=None, alias="maxRetries")
    timeout: Optional[Union[str, int, float]] = None


class ParameterSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Optional[str] = None
    description: str = ""
    required: bool = False
    default: Any = None
    enum: Optional[List[Any]] = None
    pattern: Optional[str] = None
    min_length: Optional[int] = Field(default=None, alias="minLength")
    max_length: Optional[int] = Field(default=None, alias="maxLength")


class InputSection(BaseModel):
    model_config = ConfigDict(extra="allow")

    default: Dict[str, Any] = Field(default_factory=dict)
    schema_: Optional[Dict[str, Union[ParameterSpec, str, None]]] = Field(default=None, alias="schema")

    @field_validator("default", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return {} if value is None else value


class OutputSection(BaseModel):
    model_config = ConfigDict(extra="allow")

    format: Optional[str] = None
    schema_: Dict[str, Any] = Field(default_factory=dict, alias="schema")

    @field_validator("schema_", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return {} if value is None else value


class MetadataSection(BaseModel):
    model_config = ConfigDict(extra="allow")

    description: Optional[str] = None
    author: Optional[str] = None
    version: Optional[Union[str, int, float]] = None
    tags: List[str] = Field(default_factory=list)


class HeaderSpec(BaseModel):
    """The known part of a workflow header.  Everything else lands in extensions."""
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    model: Optional[str] = None
    description: Optional[str] = None
    tools: List[str] = Field(default_factory=list)
    config: ConfigSpec = Field(default_factory=ConfigSpec)
    input: InputSection = Field(default_factory=InputSection)
    output: OutputSection = Field(default_factory=OutputSection)
    metadata: MetadataSection = Field(default_factory=MetadataSection)

    @field_validator("config", "input", "output", "metadata", mode="before")
    @classmethod
    def _none_is_default(cls, value):
        return {} if value is None else value

    @field_validator("tools", mode="before")
    @classmethod
    def _tools_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


# Mode, path and trigger names stay loose strings here so the validator can
# report them with a proper code instead of a schema failure.
class SubWorkflowSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: Optional[str] = None
    path: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    mode: str = Field(default="inherit", alias="inheritance_mode")
    depends_on: List[str] = Field(default_factory=list)
    parallel_group: Optional[str] = None

    @field_validator("depends_on", mode="before")
    @classmethod
    def _depends_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return value

    @field_validator("parameters", mode="before")
    @classmethod
    def _params_dict(cls, value):
        return {} if value is None else value


class CheckpointSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    trigger: str = "every_tool_call"
    frequency: int = 1


class ErrorHandlingSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    retry_attempts: int = 0
    backoff_strategy: str = "exponential"
    retry_delay_seconds: Optional[float] = None
    timeout_seconds: Optional[float] = None


def _validate(model, raw: Any, label: str):
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid '{label}': {e}") from e


def validate_header(raw: Dict[str, Any]) -> HeaderSpec:
    """Validate the known header keys."""
    return _validate(HeaderSpec, raw, "header")


def validate_sub_workflows(raw: Any) -> List[SubWorkflowSpec]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"'{SUB_WORKFLOWS_KEY}' must be a list")
    return [_validate(SubWorkflowSpec, item, f"{SUB_WORKFLOWS_KEY}[{i}]") for i, item in enumerate(raw)]


def validate_checkpoint(raw: Any) -> CheckpointSpec:
    return _validate(CheckpointSpec, raw or {}, CHECKPOINT_KEY)


def validate_error_handling(raw: Any) -> ErrorHandlingSpec:
    return _validate(ErrorHandlingSpec, raw or {}, ERROR_HANDLING_KEY)
