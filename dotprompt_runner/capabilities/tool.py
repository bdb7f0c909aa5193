import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ConfigDict, ValidationError, create_model

from ..errors import OrchestrationFailure, ToolExecutionFailure
from ..workflow.context import ExecutionContext
from .base import Capability, ToolResult

logger = logging.getLogger(__name__)

CONTEXT_ARG = "context"

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}
_PY_TYPES = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def schema_from_signature(fn: Callable) -> Dict[str, Any]:
    """Derive a JSON-style parameter schema from a function signature."""
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param in inspect.signature(fn).parameters.values():
        if param.name == CONTEXT_ARG or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        prop: Dict[str, Any] = {}
        annotation = getattr(param.annotation, "__origin__", param.annotation)
        if annotation in _JSON_TYPES:
            prop["type"] = _JSON_TYPES[annotation]
        properties[param.name] = prop
        if param.default is param.empty:
            required.append(param.name)
    return {"type": "object", "properties": properties, "required": required}


class NativeTool(Capability):
    """ Capability that wraps a Python callable (sync or async). """

    def __init__(self, fn: Callable, name: Optional[str] = None, description: Optional[str] = None,
                 parameters: Optional[Dict[str, Any]] = None, idempotent: bool = False,
                 outputs: Optional[List[str]] = None):
        super().__init__(
            name=name or fn.__name__,
            description=description if description is not None else inspect.getdoc(fn) or "",
            parameters=parameters or schema_from_signature(fn),
            idempotent=idempotent,
            outputs=outputs,
        )
        self.fn = fn
        signature = inspect.signature(fn).parameters
        self._wants_context = CONTEXT_ARG in signature
        self._accepts_extra = any(p.kind == p.VAR_KEYWORD for p in signature.values())
        self._model = self._build_model()

    def _build_model(self):
        fields = {}
        required = set(self.parameters.get("required", []))
        for name, prop in self.parameters.get("properties", {}).items():
            py_type = _PY_TYPES.get((prop or {}).get("type"), Any)
            if name in required:
                fields[name] = (py_type, ...)
            else:
                fields[name] = (Optional[py_type], None)
        config = ConfigDict(extra="allow" if self._accepts_extra else "forbid")
        return create_model(f"{self.name.replace('.', '_')}_args", __config__=config, **fields)

    def validate_arguments(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Check and convert arguments against the declared schema."""
        try:
            parsed = self._model.model_validate(arguments or {})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<args>'}: {err['msg']}" for err in e.errors()
            )
            raise ToolExecutionFailure(self.name, f"invalid arguments: {problems}") from e
        return parsed.model_dump(exclude_unset=True)

    async def invoke(self, arguments: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        args = self.validate_arguments(arguments)
        if self._wants_context:
            args[CONTEXT_ARG] = context

        try:
            if inspect.iscoroutinefunction(self.fn):
                value = await self.fn(**args)
            else:
                value = await asyncio.to_thread(self.fn, **args)
        except (ToolExecutionFailure, OrchestrationFailure):
            raise
        except Exception as e:
            raise ToolExecutionFailure(self.name, str(e) or type(e).__name__) from e

        variables = {}
        if self.outputs:
            if not isinstance(value, dict):
                value = {"result": value}
            variables = {k: value[k] for k in self.outputs if k in value}
        return ToolResult(success=True, value=value, variables=variables)
