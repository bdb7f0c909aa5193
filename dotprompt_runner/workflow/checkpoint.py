"""
Checkpoint manager: durable snapshots of in-progress runs.

One JSON file per workflow id under the checkpoint directory.  Writes go
to a temporary file in the same directory and are renamed over the old
checkpoint, so a crash mid-write leaves the previous checkpoint intact.
"""

import difflib
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..config import RunnerSettings
from ..errors import CheckpointCorruption, CheckpointError
from ..tools.builtin import BUILTIN_NAMES
from .context import (
    CompletedTool,
    ContextChange,
    ContextEvolution,
    ExecutionContext,
    InteractionLog,
    Message,
    RunStatus,
    ToolCall,
)
from .models import WorkflowDocument
from .parser import FRONTMATTER_RE

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
ARCHIVE_DIR = "completed"
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]")
_BACKUP_TS = "%Y%m%dT%H%M%S%fZ"


class ToolCallState(BaseModel):
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class MessageState(BaseModel):
    role: str
    content: str = ""
    timestamp: datetime
    tool_calls: List[ToolCallState] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class CompletedToolState(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    success: bool = True
    error: Optional[str] = None
    executed_at: datetime
    call_id: Optional[str] = None
    reasoning: Optional[str] = None


class ContextChangeState(BaseModel):
    key: str
    old_value: Any = None
    new_value: Any = None
    source: str = ""
    reasoning: Optional[str] = None
    timestamp: datetime


class ContextEvolutionState(BaseModel):
    current_context: Dict[str, Any] = Field(default_factory=dict)
    changes: List[ContextChangeState] = Field(default_factory=list)
    key_insights: List[str] = Field(default_factory=list)


class ResumeState(BaseModel):
    """Serializable projection of an ExecutionContext."""
    format_version: int = FORMAT_VERSION
    workflow_id: str
    workflow_name: str = ""
    file_path: Optional[str] = None
    content_hash: str = ""
    header_hash: str = ""
    source_text: str = ""
    status: RunStatus = RunStatus.IN_PROGRESS
    started_at: datetime
    last_activity: datetime
    step: int = 0
    phase: Optional[str] = None
    strategy: Optional[str] = None
    parameter_names: List[str] = Field(default_factory=list)
    completed_tools: List[CompletedToolState] = Field(default_factory=list)
    interaction_log: List[MessageState] = Field(default_factory=list)
    log_cursor: int = 0
    context_evolution: ContextEvolutionState = Field(default_factory=ContextEvolutionState)
    available_tools: List[str] = Field(default_factory=list)
    parent_id: Optional[str] = None


@dataclass
class CompatibilityResult:
    can_resume: bool = True
    requires_adaptation: bool = False
    score: float = 1.0
    warnings: List[str] = field(default_factory=list)
    suggested_adaptations: List[str] = field(default_factory=list)
    removed_parameters: List[str] = field(default_factory=list)
    removed_tools: List[str] = field(default_factory=list)


def snapshot(context: ExecutionContext) -> ResumeState:
    """Project a live context onto a ResumeState."""
    log = context.log.entries()
    last_activity = max(
        [context.started_at]
        + [m.timestamp for m in log]
        + [t.executed_at for t in context.completed_tools]
    )
    return ResumeState(
        workflow_id=context.workflow_id,
        workflow_name=context.workflow_name,
        file_path=context.file_path,
        content_hash=context.content_hash,
        header_hash=context.header_hash,
        source_text=context.source_text,
        status=context.status,
        started_at=context.started_at,
        last_activity=last_activity,
        step=context.step,
        phase=context.phase,
        strategy=context.strategy,
        parameter_names=list(context.parameter_names),
        completed_tools=[CompletedToolState(**vars(t)) for t in context.completed_tools],
        interaction_log=[
            MessageState(
                role=m.role,
                content=m.content,
                timestamp=m.timestamp,
                tool_calls=[ToolCallState(**vars(c)) for c in m.tool_calls],
                tool_call_id=m.tool_call_id,
                name=m.name,
            )
            for m in log
        ],
        log_cursor=context.log.cursor,
        context_evolution=ContextEvolutionState(
            current_context=dict(context.variables),
            changes=[ContextChangeState(**vars(c)) for c in context.evolution.changes],
            key_insights=list(context.evolution.key_insights),
        ),
        available_tools=list(context.available_tools),
        parent_id=context.parent_id,
    )


class CheckpointManager:
    """ Saves, loads and retires checkpoints in a directory. """

    def __init__(self, settings: Optional[RunnerSettings] = None, directory: Optional[os.PathLike] = None):
        self.settings = settings or RunnerSettings()
        self.directory = Path(directory or self.settings.checkpoint_dir)
        self.save_count = 0

    @property
    def archive_directory(self) -> Path:
        return self.directory / ARCHIVE_DIR

    def path_for(self, workflow_id: str) -> Path:
        return self.directory / f"{_safe_id(workflow_id)}.json"

    def backups_for(self, workflow_id: str) -> List[Path]:
        """Backups of a workflow id, oldest first."""
        if not self.directory.exists():
            return []
        pattern = re.compile(rf"^{re.escape(_safe_id(workflow_id))}\.\d{{8}}T\d{{12}}Z\.bak$")
        return sorted(p for p in self.directory.iterdir() if pattern.match(p.name))

    # ---------------------------------------------------------------- save
    def save(self, workflow_id: str, context: ExecutionContext) -> ResumeState:
        state = snapshot(context)
        state.workflow_id = workflow_id
        path = self.path_for(workflow_id)
        self._write(workflow_id, path, state, backup=self.settings.enable_backup)
        self.save_count += 1
        logger.debug("Checkpoint saved for %s (step %d, %d tools) at %s",
                     workflow_id, state.step, len(state.completed_tools), path)
        return state

    def _write(self, workflow_id: str, path: Path, state: ResumeState, backup: bool = False) -> None:
        data = state.model_dump_json(indent=2)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            if backup and path.exists():
                self._backup(workflow_id, path)
            if self.settings.atomic_writes:
                _atomic_write(path, data)
            else:
                path.write_text(data, encoding="utf-8")
        except OSError as e:
            raise CheckpointError(f"Cannot write checkpoint {path}: {e}", workflow_id=workflow_id) from e

    def _backup(self, workflow_id: str, path: Path) -> None:
        stamp = datetime.now(timezone.utc).strftime(_BACKUP_TS)
        backup = self.directory / f"{_safe_id(workflow_id)}.{stamp}.bak"
        shutil.copy2(path, backup)
        backups = self.backups_for(workflow_id)
        keep = self.settings.backups_to_keep
        for old in backups[:max(len(backups) - keep, 0)]:
            old.unlink(missing_ok=True)

    # ---------------------------------------------------------------- load
    def load(self, workflow_id: str, use_backup: bool = False) -> Optional[ResumeState]:
        """
        Read the checkpoint of a workflow id, or its newest backup.  Returns
        None when there is none.  Never modifies the file.
        """
        if use_backup:
            backups = self.backups_for(workflow_id)
            if not backups:
                return None
            path = backups[-1]
        else:
            path = self.path_for(workflow_id)
            if not path.exists():
                return None
        return self.read(path, workflow_id)

    def read(self, path: Path, workflow_id: Optional[str] = None) -> ResumeState:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CheckpointCorruption(f"Checkpoint {path} is unreadable: {e}", path=str(path),
                                       workflow_id=workflow_id) from e
        if not isinstance(raw, dict):
            raise CheckpointCorruption(f"Checkpoint {path} is not a JSON object", path=str(path),
                                       workflow_id=workflow_id)
        version = raw.get("format_version")
        if version != FORMAT_VERSION:
            raise CheckpointCorruption(
                f"Checkpoint {path} has format version {version!r}, expected {FORMAT_VERSION}",
                path=str(path), workflow_id=workflow_id,
            )
        try:
            return ResumeState.model_validate(raw)
        except ValidationError as e:
            raise CheckpointCorruption(f"Checkpoint {path} does not match the expected schema: {e}",
                                       path=str(path), workflow_id=workflow_id) from e

    def restore(self, state: ResumeState) -> ExecutionContext:
        """Rebuild an ExecutionContext from a ResumeState."""
        log = InteractionLog(
            [
                Message(
                    role=m.role,
                    content=m.content,
                    timestamp=m.timestamp,
                    tool_calls=[ToolCall(**c.model_dump()) for c in m.tool_calls],
                    tool_call_id=m.tool_call_id,
                    name=m.name,
                )
                for m in state.interaction_log
            ],
            cursor=state.log_cursor,
        )
        evolution = state.context_evolution
        return ExecutionContext(
            workflow_id=state.workflow_id,
            workflow_name=state.workflow_name,
            file_path=state.file_path,
            content_hash=state.content_hash,
            header_hash=state.header_hash,
            source_text=state.source_text,
            started_at=state.started_at,
            status=state.status,
            step=state.step,
            phase=state.phase,
            strategy=state.strategy,
            variables=dict(evolution.current_context),
            parameter_names=list(state.parameter_names),
            log=log,
            completed_tools=[CompletedTool(**t.model_dump()) for t in state.completed_tools],
            evolution=ContextEvolution(
                changes=[ContextChange(**c.model_dump()) for c in evolution.changes],
                key_insights=list(evolution.key_insights),
            ),
            available_tools=list(state.available_tools),
            parent_id=state.parent_id,
        )

    # ------------------------------------------------------- compatibility
    def validate_compatibility(self, state: ResumeState, document: WorkflowDocument,
                               available_tools: Optional[Iterable[str]] = None) -> CompatibilityResult:
        """
        Compare a checkpoint with the current document.  Identical content is
        fully compatible; otherwise the score is a heuristic over the text
        similarity, and removed parameters or tools block the resume.
        """
        if state.content_hash == document.content_hash:
            return CompatibilityResult()

        result = CompatibilityResult()
        ratio = difflib.SequenceMatcher(None, state.source_text, document.source_text).ratio()
        header_changed = state.header_hash != document.header_hash
        score = 0.6 + 0.4 * ratio - (0.1 if header_changed else 0.0)

        result.warnings.append("Workflow content changed since the checkpoint was written")
        if header_changed:
            result.warnings.append("Workflow header changed")
            result.suggested_adaptations.append("Review header changes (parameters, tools, settings) before resuming")
        if ratio < 0.8:
            result.suggested_adaptations.append(
                f"Body changed substantially (similarity {ratio:.2f}); check that completed steps still apply"
            )
        result.requires_adaptation = header_changed or ratio < 0.8

        old_model = _header_model(state.source_text)
        if old_model is not None and document.model and old_model != document.model:
            result.warnings.append(f"Model changed from '{old_model}' to '{document.model}'")

        declared = set(document.input.parameter_names())
        result.removed_parameters = [p for p in state.parameter_names if p not in declared]
        for name in result.removed_parameters:
            result.warnings.append(f"Parameter '{name}' used by the checkpoint was removed")
            result.suggested_adaptations.append(f"Restore parameter '{name}' or resume with force")

        current_tools = _current_tools(document, available_tools)
        if current_tools is not None:
            called = list(dict.fromkeys(t.name for t in state.completed_tools))
            result.removed_tools = [t for t in called if t not in current_tools]
            for name in result.removed_tools:
                result.warnings.append(f"Tool '{name}' called before the checkpoint is no longer available")
                result.suggested_adaptations.append(f"Declare tool '{name}' again or resume with force")
            for name in state.available_tools:
                if name not in current_tools and name not in result.removed_tools:
                    result.warnings.append(f"Tool '{name}' is no longer available")

        blocking = len(result.removed_parameters) + len(result.removed_tools)
        if blocking:
            result.can_resume = False
            result.requires_adaptation = True
            score = min(score, 0.5) / (2 ** blocking)

        result.score = round(max(0.0, min(score, 1.0)), 4)
        return result

    # ----------------------------------------------------------- retention
    def finalize(self, workflow_id: str, context: Optional[ExecutionContext] = None) -> Optional[Path]:
        """
        Retire the checkpoint of a completed run per completion_retention.

        When the completed context is given, its terminal state is written
        first so a kept or archived file reads as completed.  That write is
        not counted in save_count and takes no backup.
        """
        path = self.path_for(workflow_id)
        policy = self.settings.completion_retention

        if policy == "delete":
            for backup in self.backups_for(workflow_id):
                backup.unlink(missing_ok=True)
            path.unlink(missing_ok=True)
            logger.debug("Checkpoint for %s deleted on completion", workflow_id)
            return None

        if context is not None:
            state = snapshot(context)
            state.workflow_id = workflow_id
            self._write(workflow_id, path, state)
        if not path.exists():
            return None
        if policy == "keep":
            logger.debug("Checkpoint for %s kept on completion", workflow_id)
            return path

        for backup in self.backups_for(workflow_id):
            backup.unlink(missing_ok=True)

        self.archive_directory.mkdir(parents=True, exist_ok=True)
        target = self.archive_directory / path.name
        os.replace(path, target)
        os.utime(target)
        logger.debug("Checkpoint for %s archived to %s", workflow_id, target)
        return target

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Delete archived checkpoints and checkpoints of terminal runs older
        than retention_days.  Returns the number of files removed.
        """
        now_ts = (now or datetime.now(timezone.utc)).timestamp()
        cutoff = now_ts - self.settings.retention_days * 86400
        removed = 0

        if self.archive_directory.exists():
            for path in self.archive_directory.glob("*.json"):
                if path.stat().st_mtime < cutoff:
                    path.unlink(missing_ok=True)
                    removed += 1

        if self.directory.exists():
            for path in self.directory.glob("*.json"):
                if path.stat().st_mtime >= cutoff:
                    continue
                try:
                    status = json.loads(path.read_text(encoding="utf-8")).get("status")
                except (OSError, ValueError, AttributeError):
                    logger.warning("Skipping unreadable checkpoint %s during sweep", path)
                    continue
                if status in (RunStatus.COMPLETED.value, RunStatus.FAILED.value, RunStatus.CANCELLED.value):
                    for backup in self.backups_for(path.stem):
                        backup.unlink(missing_ok=True)
                    path.unlink(missing_ok=True)
                    removed += 1

        if removed:
            logger.info("Retention sweep removed %d checkpoint(s)", removed)
        return removed

    def list_checkpoints(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def delete(self, workflow_id: str) -> bool:
        path = self.path_for(workflow_id)
        existed = path.exists()
        path.unlink(missing_ok=True)
        for backup in self.backups_for(workflow_id):
            backup.unlink(missing_ok=True)
        return existed


def _safe_id(workflow_id: str) -> str:
    safe = _UNSAFE_RE.sub("_", workflow_id).lstrip(".")
    return safe or "_"


def _atomic_write(path: Path, data: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


def _header_model(source_text: str) -> Optional[str]:
    match = FRONTMATTER_RE.match(source_text)
    if not match:
        return None
    try:
        header = yaml.safe_load(match.group("header"))
    except yaml.YAMLError:
        return None
    model = header.get("model") if isinstance(header, dict) else None
    return str(model) if model is not None else None


def _current_tools(document: WorkflowDocument, available_tools: Optional[Iterable[str]]) -> Optional[set]:
    if available_tools is not None:
        return set(available_tools)
    if not document.tools:
        return None
    return set(document.tools) | set(BUILTIN_NAMES) | {inv.tool_name for inv in document.invocations}
