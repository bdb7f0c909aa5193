""" Execution context for workflow runs. """

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_json_safe(value: Any) -> Any:
    """Normalise a value to plain JSON data (dicts, lists, str, numbers, bool, None)."""
    return json.loads(json.dumps(value, default=_json_default))


def canonical_arguments(arguments: Dict[str, Any]) -> str:
    return json.dumps(to_json_safe(arguments), sort_keys=True, separators=(",", ":"))


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if hasattr(value, "__dict__"):
        return vars(value)
    return str(value)


class RunStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Message:
    role: str  # system | user | assistant | tool
    content: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class InteractionLog:
    """
    Append-only sequence of messages.  The cursor marks the entries that
    have already been sent to the engine.
    """

    def __init__(self, entries: Optional[List[Message]] = None, cursor: int = 0):
        self._entries: List[Message] = list(entries or [])
        self.cursor = min(cursor, len(self._entries))

    def append(self, message: Message) -> Message:
        self._entries.append(message)
        return message

    def pending(self) -> List[Message]:
        return self._entries[self.cursor:]

    def mark_sent(self) -> None:
        self.cursor = len(self._entries)

    def entries(self) -> List[Message]:
        return list(self._entries)

    def by_role(self, role: str) -> List[Message]:
        return [m for m in self._entries if m.role == role]

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index):
        return self._entries[index]


@dataclass
class CompletedTool:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    success: bool = True
    error: Optional[str] = None
    executed_at: datetime = field(default_factory=utcnow)
    call_id: Optional[str] = None
    reasoning: Optional[str] = None


@dataclass
class ContextChange:
    key: str
    old_value: Any = None
    new_value: Any = None
    source: str = ""
    reasoning: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ContextEvolution:
    changes: List[ContextChange] = field(default_factory=list)
    key_insights: List[str] = field(default_factory=list)

    def changed_keys(self, exclude_sources: Tuple[str, ...] = ()) -> List[str]:
        keys = [c.key for c in self.changes if c.source not in exclude_sources]
        return list(dict.fromkeys(keys))


@dataclass
class ExecutionContext:
    workflow_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    workflow_name: str = ""
    file_path: Optional[str] = None
    content_hash: str = ""
    header_hash: str = ""
    source_text: str = ""
    started_at: datetime = field(default_factory=utcnow)
    status: RunStatus = RunStatus.NOT_STARTED
    step: int = 0
    phase: Optional[str] = None
    strategy: Optional[str] = None

    variables: Dict[str, Any] = field(default_factory=dict)
    parameter_names: List[str] = field(default_factory=list)
    log: InteractionLog = field(default_factory=InteractionLog)
    completed_tools: List[CompletedTool] = field(default_factory=list)
    evolution: ContextEvolution = field(default_factory=ContextEvolution)
    available_tools: List[str] = field(default_factory=list)
    parent_id: Optional[str] = None

    # runtime only, never checkpointed
    call_stack: List[str] = field(default_factory=list, compare=False)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, compare=False, repr=False)

    def set_variable(self, key: str, value: Any, source: str, reasoning: Optional[str] = None) -> None:
        """Write one variable and record the change."""
        new_value = to_json_safe(value)
        old_value = self.variables.get(key)
        self.variables[key] = new_value
        self.evolution.changes.append(ContextChange(
            key=key,
            old_value=old_value,
            new_value=new_value,
            source=source,
            reasoning=reasoning,
        ))

    def set_many(self, kv: Dict[str, Any], source: str, reasoning: Optional[str] = None) -> None:
        for key, value in kv.items():
            self.set_variable(key, value, source, reasoning)

    def add_insight(self, insight: str) -> None:
        self.evolution.key_insights.append(insight)

    def record_tool(self, call: ToolCall, result: Any = None, success: bool = True,
                    error: Optional[str] = None, reasoning: Optional[str] = None) -> CompletedTool:
        entry = CompletedTool(
            name=call.name,
            arguments=to_json_safe(call.arguments),
            result=to_json_safe(result),
            success=success,
            error=error,
            call_id=call.id,
            reasoning=reasoning,
        )
        self.completed_tools.append(entry)
        return entry

    def find_completed(self, name: str, arguments: Dict[str, Any]) -> Optional[CompletedTool]:
        """Most recent successful call with the same name and canonical arguments."""
        key = canonical_arguments(arguments)
        for entry in reversed(self.completed_tools):
            if entry.success and entry.name == name and canonical_arguments(entry.arguments) == key:
                return entry
        return None

    def has_completed(self, name: str) -> bool:
        return any(t.success and t.name == name for t in self.completed_tools)

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()
