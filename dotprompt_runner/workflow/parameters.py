""" Parameter defaults, precedence, coercion and constraint checks. """

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..errors import MissingVariableError, ValidationError
from .models import InputSpec, ParameterSchema, WorkflowDocument

logger = logging.getLogger(__name__)

CALLER = "caller"
SCHEMA_DEFAULT = "schema_default"
WORKFLOW_DEFAULT = "workflow_default"

_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}
_TRUE = {"true", "yes", "y", "on", "1"}
_FALSE = {"false", "no", "n", "off", "0"}


@dataclass
class DefaultResolution:
    values: Dict[str, Any] = field(default_factory=dict)
    sources: Dict[str, str] = field(default_factory=dict)
    # (name, workflow-level value, schema-level value)
    conflicts: List[Tuple[str, Any, Any]] = field(default_factory=list)
    redundant: List[str] = field(default_factory=list)


@dataclass
class ParameterResolution:
    values: Dict[str, Any] = field(default_factory=dict)
    sources: Dict[str, str] = field(default_factory=dict)
    unresolved: List[str] = field(default_factory=list)


def effective_defaults(input_spec: InputSpec) -> DefaultResolution:
    """
    Effective default per parameter: the schema-level default wins over the
    workflow-level one.
    """
    result = DefaultResolution()
    for name in input_spec.parameter_names():
        entry = input_spec.schema.get(name)
        has_schema_default = entry is not None and entry.has_default
        has_workflow_default = name in input_spec.defaults

        if has_schema_default:
            result.values[name] = entry.default
            result.sources[name] = SCHEMA_DEFAULT
            if has_workflow_default:
                if input_spec.defaults[name] == entry.default:
                    result.redundant.append(name)
                else:
                    result.conflicts.append((name, input_spec.defaults[name], entry.default))
        elif has_workflow_default:
            result.values[name] = input_spec.defaults[name]
            result.sources[name] = WORKFLOW_DEFAULT
    return result


def resolve_parameters(document: WorkflowDocument, supplied: Optional[Dict[str, Any]] = None,
                       workflow_id: Optional[str] = None) -> ParameterResolution:
    """
    Apply caller value -> schema default -> workflow default precedence,
    coerce to the declared types and check constraints.

    Raises MissingVariableError for required parameters without a value and
    ValidationError listing every constraint violation.
    """
    supplied = dict(supplied or {})
    defaults = effective_defaults(document.input)
    result = ParameterResolution()

    names = list(document.input.parameter_names())
    names.extend(n for n in supplied if n not in names)

    missing = []
    for name in names:
        if name in supplied:
            result.values[name] = supplied[name]
            result.sources[name] = CALLER
        elif name in defaults.values:
            result.values[name] = defaults.values[name]
            result.sources[name] = defaults.sources[name]
        else:
            entry = document.input.schema.get(name)
            if entry is not None and entry.required:
                missing.append(name)
            else:
                result.unresolved.append(name)

    if missing:
        raise MissingVariableError(missing, workflow_id=workflow_id)

    violations = []
    for name, value in list(result.values.items()):
        entry = document.input.schema.get(name)
        if entry is None:
            continue
        try:
            value = coerce(entry, value)
        except ValueError as e:
            violations.append(str(e))
            continue
        result.values[name] = value
        violations.extend(check_constraints(entry, value))

    if violations:
        raise ValidationError("Invalid workflow parameters", issues=violations, workflow_id=workflow_id)

    logger.debug("Resolved parameters %s", result.sources)
    return result


def coerce(entry: ParameterSchema, value: Any) -> Any:
    """Convert a value to the entry's declared type where that is unambiguous."""
    kind = (entry.type or "").lower()
    if value is None or kind not in _TYPES:
        return value

    try:
        if kind == "string":
            if isinstance(value, (int, float, bool)):
                return str(value).lower() if isinstance(value, bool) else str(value)
        elif kind == "integer" and not isinstance(value, bool):
            if isinstance(value, str):
                return int(value.strip())
            if isinstance(value, float) and value.is_integer():
                return int(value)
        elif kind == "number" and isinstance(value, str):
            number = float(value.strip())
            return int(number) if number.is_integer() and "." not in value else number
        elif kind == "boolean" and isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(value)
        elif kind in ("array", "object") and isinstance(value, str):
            return json.loads(value)
    except (ValueError, json.JSONDecodeError):
        raise ValueError(f"Parameter '{entry.name}': cannot convert {value!r} to {kind}") from None
    return value


def check_constraints(entry: ParameterSchema, value: Any) -> List[str]:
    """Constraint violations of one value against its schema entry."""
    problems = []
    kind = (entry.type or "").lower()
    if value is None:
        return problems

    expected = _TYPES.get(kind)
    if expected and (not isinstance(value, expected) or (isinstance(value, bool) and kind in ("integer", "number"))):
        problems.append(f"Parameter '{entry.name}': expected {kind}, got {type(value).__name__}")
        return problems

    if entry.enum is not None and value not in entry.enum:
        problems.append(f"Parameter '{entry.name}': {value!r} is not one of {entry.enum}")

    if entry.pattern and isinstance(value, str):
        try:
            if not re.search(entry.pattern, value):
                problems.append(f"Parameter '{entry.name}': {value!r} does not match pattern '{entry.pattern}'")
        except re.error as e:
            problems.append(f"Parameter '{entry.name}': invalid pattern '{entry.pattern}': {e}")

    if isinstance(value, (str, list)):
        if entry.min_length is not None and len(value) < entry.min_length:
            problems.append(f"Parameter '{entry.name}': length {len(value)} is below minLength {entry.min_length}")
        if entry.max_length is not None and len(value) > entry.max_length:
            problems.append(f"Parameter '{entry.name}': length {len(value)} is above maxLength {entry.max_length}")
    return problems
