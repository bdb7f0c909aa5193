"""
engine.py: boundary to the instruction-following engine.

The orchestrator sends an EngineRequest (rendered prompt, prior interaction
log, tool schemas, generation settings) and receives an EngineResponse that
holds either final text or a list of tool-call requests.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .errors import EngineError, MalformedEngineResponse
from .workflow.context import Message, ToolCall
from .workflow.models import GenerationSettings

logger = logging.getLogger(__name__)


@dataclass
class EngineRequest:
    workflow_id: str
    prompt: str
    history: List[Message] = field(default_factory=list)
    tools: List[Dict[str, Any]] = field(default_factory=list)
    settings: GenerationSettings = field(default_factory=GenerationSettings)


@dataclass
class EngineResponse:
    text: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return not self.tool_calls

    @classmethod
    def from_payload(cls, payload: Any) -> "EngineResponse":
        """
        Build a response from a raw payload such as
        {"text": "...", "tool_calls": [{"id": "c1", "name": "t", "arguments": {...}}]}.
        Arguments may also be a JSON string, and calls may use the nested
        {"function": {"name": ..., "arguments": ...}} form.
        """
        if not isinstance(payload, dict):
            raise MalformedEngineResponse(f"Engine response must be a mapping, got {type(payload).__name__}")
        if "text" not in payload and "tool_calls" not in payload:
            raise MalformedEngineResponse("Engine response has neither 'text' nor 'tool_calls'")

        text = payload.get("text")
        if text is not None and not isinstance(text, str):
            raise MalformedEngineResponse("Engine response 'text' must be a string")

        raw_calls = payload.get("tool_calls") or []
        if not isinstance(raw_calls, list):
            raise MalformedEngineResponse("Engine response 'tool_calls' must be a list")

        calls = [_parse_tool_call(raw, index) for index, raw in enumerate(raw_calls)]
        return cls(text=text, tool_calls=calls)


def _parse_tool_call(raw: Any, index: int) -> ToolCall:
    if not isinstance(raw, dict):
        raise MalformedEngineResponse(f"Tool call #{index} must be a mapping")
    body = raw.get("function") if isinstance(raw.get("function"), dict) else raw

    name = body.get("name")
    if not isinstance(name, str) or not name:
        raise MalformedEngineResponse(f"Tool call #{index} has no name")

    arguments = body.get("arguments", {})
    if arguments is None:
        arguments = {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as e:
            raise MalformedEngineResponse(f"Tool call '{name}' has invalid JSON arguments: {e}") from e
    if not isinstance(arguments, dict):
        raise MalformedEngineResponse(f"Tool call '{name}' arguments must be an object")

    call_id = raw.get("id") or f"call_{index}"
    return ToolCall(id=str(call_id), name=name, arguments=arguments)


class Engine(ABC):
    """ Abstract instruction-following engine. """

    @abstractmethod
    async def complete(self, request: EngineRequest) -> EngineResponse:
        """
        Send one turn to the engine.  Raise EngineError when the engine
        cannot be reached.
        """
        pass


ScriptStep = Union[EngineResponse, Dict[str, Any], str, BaseException, Callable[[EngineRequest], Any]]


class ScriptedEngine(Engine):
    """
    A fake engine that replays a script of responses.  This is NOT a real
    model call.

    Each script step is one of: an EngineResponse, a raw payload dict, a
    plain string (final text), an exception to raise, or a callable that
    receives the request and returns any of the above.
    """

    def __init__(self, responses: Iterable[ScriptStep] = (), model_name: str = "scripted"):
        self.model_name = model_name
        self._script: List[ScriptStep] = list(responses)
        self.requests: List[EngineRequest] = []

    def add(self, *responses: ScriptStep) -> None:
        self._script.extend(responses)

    @property
    def remaining(self) -> int:
        return len(self._script)

    async def complete(self, request: EngineRequest) -> EngineResponse:
        self.requests.append(request)
        if not self._script:
            raise EngineError("Scripted engine has no responses left", retryable=False,
                              workflow_id=request.workflow_id)

        step = self._script.pop(0)
        if callable(step) and not isinstance(step, (EngineResponse, BaseException)):
            step = step(request)
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, EngineResponse):
            return step
        if isinstance(step, str):
            return EngineResponse(text=step)
        return EngineResponse.from_payload(step)
