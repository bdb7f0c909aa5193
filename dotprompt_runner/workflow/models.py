""" Data models for workflow documents """

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

INHERITANCE_MODES = ("inherit", "isolated", "merge")
CHECKPOINT_TRIGGERS = ("every_tool_call", "every_n_calls", "manual")
BACKOFF_STRATEGIES = ("fixed", "linear", "exponential")


@dataclass
class GenerationSettings:
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: List[str] = field(default_factory=list)
    max_retries: Optional[int] = None
    timeout: Optional[str] = None  # e.g. "90s", "5m", "1h" or plain seconds

    @property
    def timeout_seconds(self) -> Optional[float]:
        return parse_duration(self.timeout) if self.timeout else None


_DURATION_RE = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?\s*$")
_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(text: Any) -> float:
    """Seconds in a duration such as ``90s``, ``5m``, ``1h`` or ``30``."""
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return float(text)
    match = _DURATION_RE.match(str(text))
    if not match:
        raise ValueError(f"Invalid duration: {text!r}")
    return float(match.group("value")) * _UNITS[match.group("unit") or "s"]


@dataclass
class ParameterSchema:
    name: str
    type: Optional[str] = None
    description: str = ""
    required: bool = False
    default: Any = None
    has_default: bool = False
    enum: Optional[List[Any]] = None
    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None


@dataclass
class InputSpec:
    # workflow-level defaults (input.default)
    defaults: Dict[str, Any] = field(default_factory=dict)
    # schema entries (input.schema)
    schema: Dict[str, ParameterSchema] = field(default_factory=dict)
    has_schema: bool = False

    def parameter_names(self) -> List[str]:
        names = list(self.schema)
        names.extend(n for n in self.defaults if n not in self.schema)
        return names


@dataclass
class OutputSpec:
    format: Optional[str] = None
    schema: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SubWorkflowInvocation:
    name: str
    path: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    mode: str = "inherit"
    depends_on: List[str] = field(default_factory=list)
    parallel_group: Optional[str] = None
    line: Optional[int] = None  # body line for quoted-block declarations

    @property
    def tool_name(self) -> str:
        return f"sub-workflow:{self.name}"


@dataclass
class CheckpointPolicy:
    enabled: bool = True
    trigger: str = "every_tool_call"
    frequency: int = 1

    def should_save(self, calls_since_save: int) -> bool:
        if not self.enabled or self.trigger == "manual":
            return False
        if self.trigger == "every_n_calls":
            return calls_since_save >= max(self.frequency, 1)
        return calls_since_save >= 1


@dataclass
class RetryPolicy:
    retry_attempts: int = 0
    backoff_strategy: str = "exponential"
    retry_delay_seconds: Optional[float] = None  # None: runner setting
    timeout_seconds: Optional[float] = None  # per tool call

    def delay_for(self, attempt: int, default_delay: float = 1.0) -> float:
        """Delay before retry number `attempt` (1-based)."""
        base = self.retry_delay_seconds if self.retry_delay_seconds is not None else default_delay
        if self.backoff_strategy == "fixed":
            return base
        if self.backoff_strategy == "linear":
            return base * attempt
        return base * (2 ** (attempt - 1))


@dataclass
class WorkflowExtensions:
    sub_workflows: List[SubWorkflowInvocation] = field(default_factory=list)
    checkpoint: CheckpointPolicy = field(default_factory=CheckpointPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    # every top-level header key outside the known schema, verbatim and in order
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BodyContent:
    text: str = ""
    parameter_references: Set[str] = field(default_factory=set)
    sub_workflow_references: List[SubWorkflowInvocation] = field(default_factory=list)
    tool_references: Set[str] = field(default_factory=set)


@dataclass(frozen=True)
class WorkflowDocument:
    name: Optional[str] = None
    model: Optional[str] = None
    description: str = ""
    tools: List[str] = field(default_factory=list)
    config: GenerationSettings = field(default_factory=GenerationSettings)
    input: InputSpec = field(default_factory=InputSpec)
    output: OutputSpec = field(default_factory=OutputSpec)
    metadata: Dict[str, Any] = field(default_factory=dict)
    extensions: WorkflowExtensions = field(default_factory=WorkflowExtensions)
    body: BodyContent = field(default_factory=BodyContent)
    has_header: bool = False
    raw_header: str = ""
    source_text: str = ""
    file_path: Optional[str] = None
    content_hash: str = ""
    header_hash: str = ""
    body_hash: str = ""

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.file_path:
            return Path(self.file_path).name.split(".")[0]
        return "workflow"

    @property
    def invocations(self) -> List[SubWorkflowInvocation]:
        """Header-declared sub-workflows followed by body blocks."""
        return list(self.extensions.sub_workflows) + list(self.body.sub_workflow_references)

    @property
    def base_dir(self) -> Path:
        if self.file_path:
            return Path(self.file_path).resolve().parent
        return Path.cwd()
