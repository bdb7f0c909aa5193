from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..capabilities.base import Capability
from ..capabilities.tool import NativeTool


class ToolRegistry:
    """ Named capabilities that workflows may declare in their `tools` list. """

    def __init__(self, capabilities: Iterable[Capability] = ()):
        self._tools: Dict[str, Capability] = {}
        for capability in capabilities:
            self.register(capability)

    def register(self, tool: Union[Capability, Callable], name: Optional[str] = None, **options: Any) -> Capability:
        capability = tool if isinstance(tool, Capability) else NativeTool(tool, name=name, **options)
        self._tools[capability.name] = capability
        return capability

    def tool(self, name: Optional[str] = None, description: Optional[str] = None,
             parameters: Optional[Dict[str, Any]] = None, idempotent: bool = False,
             outputs: Optional[List[str]] = None):
        def _wrap(fn):
            self.register(fn, name=name, description=description, parameters=parameters,
                          idempotent=idempotent, outputs=outputs)
            return fn
        return _wrap

    def get(self, name: str) -> Capability:
        if name not in self._tools:
            raise ValueError(f"Tool not found: {name}")
        return self._tools[name]

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def names(self) -> List[str]:
        return list(self._tools)

    def select(self, names: Optional[Iterable[str]] = None) -> List[Capability]:
        """The named capabilities that are registered, or all of them."""
        if not names:
            return list(self._tools.values())
        return [self._tools[n] for n in names if n in self._tools]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


default_registry = ToolRegistry()


def register_tool(name: Optional[str] = None, **options: Any):
    """Register a function on the default registry."""
    return default_registry.tool(name, **options)


def get_tool(name: str) -> Capability:
    return default_registry.get(name)
