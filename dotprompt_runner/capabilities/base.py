from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..workflow.context import ExecutionContext


@dataclass
class ToolResult:
    success: bool = True
    value: Any = None
    error: Optional[str] = None
    # writes the call performs on the invoking context
    variables: Dict[str, Any] = field(default_factory=dict)


class Capability(ABC):
    """ Abstract base class for everything the engine can call. """

    def __init__(self, name: str, description: str = "",
                 parameters: Optional[Dict[str, Any]] = None,
                 idempotent: bool = False, outputs: Optional[List[str]] = None):
        self.name = name
        self.description = description
        self.parameters = parameters or {"type": "object", "properties": {}}
        self.idempotent = idempotent
        self.outputs = list(outputs or [])

    def schema(self) -> Dict[str, Any]:
        """
        Declaration sent to the engine.
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    @abstractmethod
    async def invoke(self, arguments: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        """
        Run the capability.  Raise ToolExecutionFailure on failure.
        """
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"
