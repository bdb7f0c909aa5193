"""
Structural validation of a parsed workflow document.

Errors are reserved for conditions that make execution impossible or
undefined; everything else is a warning and the workflow stays runnable.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ValidationError
from .models import BACKOFF_STRATEGIES, CHECKPOINT_TRIGGERS, INHERITANCE_MODES, WorkflowDocument, parse_duration
from .parameters import check_constraints, effective_defaults

logger = logging.getLogger(__name__)

ERROR = "error"
WARNING = "warning"


@dataclass
class ValidationIssue:
    code: str
    message: str
    field: Optional[str] = None
    line: Optional[int] = None
    severity: str = ERROR

    def __str__(self) -> str:
        text = f"[{self.code}] {self.message}"
        if self.line is not None:
            text += f" (line {self.line})"
        return text


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    effective_defaults: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def codes(self) -> List[str]:
        return [i.code for i in self.errors + self.warnings]

    def error(self, code: str, message: str, field: Optional[str] = None, line: Optional[int] = None):
        self.errors.append(ValidationIssue(code, message, field, line, ERROR))

    def warn(self, code: str, message: str, field: Optional[str] = None, line: Optional[int] = None):
        self.warnings.append(ValidationIssue(code, message, field, line, WARNING))

    def raise_for_errors(self, workflow_id: Optional[str] = None) -> None:
        if self.errors:
            raise ValidationError("Workflow failed validation", issues=self.errors, workflow_id=workflow_id)


def validate_document(document: WorkflowDocument,
                      known_tools: Optional[Iterable[str]] = None) -> ValidationResult:
    """
    Validate a document.  ``known_tools`` is the set of tool names that can
    be offered at run time; when omitted, tool names are not checked.
    """
    result = ValidationResult()

    _check_identity(document, result)
    _check_generation_settings(document, result)
    _check_parameters(document, result)
    if known_tools is not None:
        _check_tools(document, set(known_tools), result)
    _check_sub_workflows(document, result)
    _check_policies(document, result)

    for issue in result.warnings:
        logger.debug("%s: %s", document.display_name, issue)
    return result


def _check_identity(document: WorkflowDocument, result: ValidationResult) -> None:
    if document.has_header:
        if not (document.name or "").strip():
            result.error("MISSING_NAME", "Workflow header has no 'name'", field="name")
        if not (document.model or "").strip():
            result.error("MISSING_MODEL", "Workflow header has no 'model'", field="model")
    if not document.body.text.strip():
        result.error("EMPTY_CONTENT", "Workflow body is empty")


def _check_generation_settings(document: WorkflowDocument, result: ValidationResult) -> None:
    config = document.config
    if config.temperature is not None and not 0 <= config.temperature <= 2:
        result.error("INVALID_TEMPERATURE", f"temperature must be between 0 and 2, got {config.temperature}",
                     field="config.temperature")
    if config.top_p is not None and not 0 <= config.top_p <= 1:
        result.error("INVALID_TOP_P", f"topP must be between 0 and 1, got {config.top_p}", field="config.topP")
    if config.max_output_tokens is not None and config.max_output_tokens <= 0:
        result.error("INVALID_MAX_OUTPUT_TOKENS", "maxOutputTokens must be positive", field="config.maxOutputTokens")
    if config.top_k is not None and config.top_k <= 0:
        result.error("INVALID_TOP_K", "topK must be positive", field="config.topK")
    if config.max_retries is not None and config.max_retries < 0:
        result.error("INVALID_MAX_RETRIES", "maxRetries must not be negative", field="config.maxRetries")
    if config.timeout is not None:
        try:
            if parse_duration(config.timeout) <= 0:
                raise ValueError(config.timeout)
        except ValueError:
            result.error("INVALID_TIMEOUT", f"timeout '{config.timeout}' is not a duration such as 90s, 5m or 1h",
                         field="config.timeout")


def _check_parameters(document: WorkflowDocument, result: ValidationResult) -> None:
    spec = document.input
    defaults = effective_defaults(spec)
    result.effective_defaults = dict(defaults.values)

    for name, workflow_value, schema_value in defaults.conflicts:
        result.warn("CONFLICTING_DEFAULTS",
                    f"Parameter '{name}' has workflow default {workflow_value!r} and schema default "
                    f"{schema_value!r}; the schema default wins", field=f"input.schema.{name}")
    for name in defaults.redundant:
        result.warn("REDUNDANT_DEFAULTS",
                    f"Parameter '{name}' repeats the same default in input.default and input.schema",
                    field=f"input.default.{name}")

    if spec.has_schema:
        for name in spec.defaults:
            if name not in spec.schema:
                result.warn("UNDECLARED_DEFAULT", f"Default for '{name}' has no schema entry",
                            field=f"input.default.{name}")

    for name, entry in spec.schema.items():
        if entry.has_default and entry.default is not None:
            for problem in check_constraints(entry, entry.default):
                result.warn("INVALID_DEFAULT", problem, field=f"input.schema.{name}")
        if entry.pattern:
            try:
                re.compile(entry.pattern)
            except re.error as e:
                result.error("INVALID_PATTERN", f"Parameter '{name}' has an invalid pattern: {e}",
                             field=f"input.schema.{name}.pattern")

    declared = set(spec.schema) | set(spec.defaults)
    undefined = sorted(n for n in document.body.parameter_references if n not in declared)
    if not undefined:
        return
    if not spec.has_schema:
        result.warn("MISSING_INPUT_SCHEMA",
                    f"Body references {', '.join(undefined)} but the workflow declares no input schema",
                    field="input.schema")
        return
    for name in undefined:
        result.warn("UNDEFINED_PARAMETER", f"Parameter '{name}' is referenced but has no schema entry",
                    field=f"input.schema.{name}")


def _check_tools(document: WorkflowDocument, known: set, result: ValidationResult) -> None:
    seen = set()
    for name in list(document.tools) + sorted(document.body.tool_references):
        if name in seen:
            continue
        seen.add(name)
        if name not in known:
            result.warn("UNKNOWN_TOOL", f"Tool '{name}' is not registered", field="tools")


def _check_sub_workflows(document: WorkflowDocument, result: ValidationResult) -> None:
    invocations = document.invocations
    names = {}
    for inv in invocations:
        label = inv.name or "<unnamed>"
        if not (inv.path or "").strip():
            result.error("MISSING_SUBWORKFLOW_PATH", f"Sub-workflow '{label}' has no path",
                         field="runner.sub-workflows", line=inv.line)
        if inv.mode not in INHERITANCE_MODES:
            result.error("INVALID_INHERITANCE_MODE",
                         f"Sub-workflow '{label}' has unknown mode '{inv.mode}' "
                         f"(expected one of {', '.join(INHERITANCE_MODES)})",
                         field="runner.sub-workflows", line=inv.line)
        if inv.name in names:
            result.error("DUPLICATE_SUBWORKFLOW", f"Sub-workflow name '{inv.name}' is declared more than once",
                         field="runner.sub-workflows", line=inv.line)
        names[inv.name] = inv

    for inv in invocations:
        for dep in inv.depends_on:
            if dep not in names:
                result.error("UNKNOWN_DEPENDENCY", f"Sub-workflow '{inv.name}' depends on unknown '{dep}'",
                             field="runner.sub-workflows", line=inv.line)
            elif dep == inv.name:
                result.error("DEPENDENCY_CYCLE", f"Sub-workflow '{inv.name}' depends on itself",
                             field="runner.sub-workflows", line=inv.line)

    cycle = _find_cycle(names)
    if cycle:
        result.error("DEPENDENCY_CYCLE", f"Sub-workflow dependency cycle between: {', '.join(cycle)}",
                     field="runner.sub-workflows")

    for inv in invocations:
        if not inv.parallel_group:
            continue
        for dep in inv.depends_on:
            other = names.get(dep)
            if other is not None and other is not inv and other.parallel_group == inv.parallel_group:
                result.warn("GROUP_ORDERING",
                            f"'{inv.name}' depends on '{dep}' in the same parallel group "
                            f"'{inv.parallel_group}'; they will run sequentially",
                            field="runner.sub-workflows", line=inv.line)


def _find_cycle(invocations: Dict[str, Any]) -> List[str]:
    """
    Cyclic check on the dependency graph (Kahn).  Returns the names left
    with unresolved dependencies, empty when the graph is acyclic.
    """
    indegree = {name: 0 for name in invocations}
    adjacency = {name: [] for name in invocations}
    for name, inv in invocations.items():
        for dep in inv.depends_on:
            if dep in invocations and dep != name:
                adjacency[dep].append(name)
                indegree[name] += 1

    queue = [name for name, deg in indegree.items() if deg == 0]
    visited = set()
    while queue:
        current = queue.pop(0)
        visited.add(current)
        for neighbor in adjacency[current]:
            indegree[neighbor] -= 1
            if indegree[neighbor] == 0:
                queue.append(neighbor)

    return [name for name in invocations if name not in visited]


def _check_policies(document: WorkflowDocument, result: ValidationResult) -> None:
    checkpoint = document.extensions.checkpoint
    if checkpoint.trigger not in CHECKPOINT_TRIGGERS:
        result.error("INVALID_CHECKPOINT_TRIGGER",
                     f"Unknown checkpoint trigger '{checkpoint.trigger}' "
                     f"(expected one of {', '.join(CHECKPOINT_TRIGGERS)})", field="runner.checkpoint.trigger")
    if checkpoint.frequency < 1:
        result.error("INVALID_CHECKPOINT_FREQUENCY", "Checkpoint frequency must be at least 1",
                     field="runner.checkpoint.frequency")

    retry = document.extensions.retry
    if retry.backoff_strategy not in BACKOFF_STRATEGIES:
        result.error("INVALID_BACKOFF_STRATEGY",
                     f"Unknown backoff strategy '{retry.backoff_strategy}' "
                     f"(expected one of {', '.join(BACKOFF_STRATEGIES)})",
                     field="runner.error-handling.backoff_strategy")
    if retry.retry_attempts < 0:
        result.error("INVALID_RETRY_ATTEMPTS", "retry_attempts must not be negative",
                     field="runner.error-handling.retry_attempts")
    if retry.timeout_seconds is not None and retry.timeout_seconds <= 0:
        result.error("INVALID_TIMEOUT", "timeout_seconds must be positive",
                     field="runner.error-handling.timeout_seconds")
