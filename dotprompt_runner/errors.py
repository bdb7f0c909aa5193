""" Error taxonomy for parsing, validating, running and resuming workflows. """

from typing import Any, Iterable, List, Optional


class WorkflowError(Exception):
    """Base class for every error raised while handling a workflow."""

    def __init__(self, message: str, workflow_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.workflow_id = workflow_id

    def __str__(self) -> str:
        if self.workflow_id:
            return f"[{self.workflow_id}] {self.message}"
        return self.message


class ParseError(WorkflowError, ValueError):
    """Malformed header or body. Reported before anything runs."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 line: Optional[int] = None, column: Optional[int] = None,
                 code: str = "PARSE_ERROR", workflow_id: Optional[str] = None):
        super().__init__(message, workflow_id)
        self.file_path = file_path
        self.line = line
        self.column = column
        self.code = code

    def __str__(self) -> str:
        location = self.file_path or "<content>"
        if self.line is not None:
            location += f":{self.line}"
            if self.column is not None:
                location += f":{self.column}"
        return f"{location}: {super().__str__()}"


class TemplateSyntaxError(ParseError):
    """Unbalanced or unknown template block in the workflow body."""

    def __init__(self, message: str, line: Optional[int] = None, file_path: Optional[str] = None):
        super().__init__(message, file_path=file_path, line=line, code="TEMPLATE_SYNTAX")


class ValidationError(WorkflowError, ValueError):
    """Schema or dependency inconsistency that makes execution impossible."""

    def __init__(self, message: str, issues: Optional[Iterable[Any]] = None,
                 workflow_id: Optional[str] = None):
        super().__init__(message, workflow_id)
        self.issues: List[Any] = list(issues or [])

    def __str__(self) -> str:
        text = super().__str__()
        if self.issues:
            text += "\n" + "\n".join(f"  - {issue}" for issue in self.issues)
        return text


class MissingVariableError(WorkflowError):
    """The body references variables that cannot be resolved."""

    def __init__(self, names: Iterable[str], workflow_id: Optional[str] = None):
        self.names: List[str] = list(dict.fromkeys(names))
        super().__init__(
            f"Unresolved variables: {', '.join(self.names)}", workflow_id
        )


class ToolExecutionFailure(WorkflowError):
    """A single tool call failed. Never fatal to the run on its own."""

    def __init__(self, tool_name: str, message: str, workflow_id: Optional[str] = None):
        super().__init__(f"Tool '{tool_name}' failed: {message}", workflow_id)
        self.tool_name = tool_name
        self.reason = message


class EngineError(WorkflowError):
    """The instruction-following engine could not be reached."""

    def __init__(self, message: str, retryable: bool = True, workflow_id: Optional[str] = None):
        super().__init__(message, workflow_id)
        self.retryable = retryable


class OrchestrationFailure(WorkflowError):
    """Fatal run failure. The run ends as Failed."""

    def __init__(self, message: str, workflow_id: Optional[str] = None, result: Any = None):
        super().__init__(message, workflow_id)
        self.result = result


class MalformedEngineResponse(OrchestrationFailure):
    pass


class SubWorkflowCycleError(OrchestrationFailure):
    pass


class RunTimeoutError(OrchestrationFailure):
    pass


class CheckpointError(WorkflowError):
    """Checkpoint missing or not writable."""


class CheckpointCorruption(CheckpointError):
    """Checkpoint file is unreadable or has an unexpected format."""

    def __init__(self, message: str, path: Optional[str] = None, workflow_id: Optional[str] = None):
        super().__init__(message, workflow_id)
        self.path = path


class CompatibilityMismatch(CheckpointError):
    """The workflow changed in a way that blocks resuming its checkpoint."""

    def __init__(self, compatibility: Any, workflow_id: Optional[str] = None):
        score = getattr(compatibility, "score", 0.0)
        warnings = getattr(compatibility, "warnings", [])
        message = f"Checkpoint is not compatible with the current workflow (score {score:.2f})"
        if warnings:
            message += ": " + "; ".join(warnings)
        super().__init__(message, workflow_id)
        self.compatibility = compatibility
