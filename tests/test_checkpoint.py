"""Tests for checkpoint persistence, compatibility and retention."""

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from dotprompt_runner.config import RunnerSettings
from dotprompt_runner.errors import CheckpointCorruption
from dotprompt_runner.workflow.checkpoint import CheckpointManager
from dotprompt_runner.workflow.context import ExecutionContext, Message, RunStatus, ToolCall
from dotprompt_runner.workflow.parser import parse_document

WORKFLOW = """---
name: report
model: model-a
tools: [search]
input:
  schema:
    topic: string
---
Write a report about {{topic}}. Use search to gather facts and cite them.
"""


def _context(document=None, workflow_id="wf-1"):
    document = document or parse_document(WORKFLOW)
    context = ExecutionContext(
        workflow_id=workflow_id,
        workflow_name=document.display_name,
        content_hash=document.content_hash,
        header_hash=document.header_hash,
        source_text=document.source_text,
        status=RunStatus.IN_PROGRESS,
        step=2,
        phase="gathering",
        parameter_names=["topic"],
        available_tools=["search", "record_insight"],
    )
    context.set_variable("topic", "tides", source="parameter")
    call = ToolCall(id="c1", name="search", arguments={"q": "tides"})
    context.log.append(Message(role="user", content="Write a report about tides."))
    context.log.append(Message(role="assistant", tool_calls=[call]))
    context.log.mark_sent()
    context.log.append(Message(role="tool", content='["moon"]', tool_call_id="c1", name="search"))
    context.record_tool(call, result=["moon"])
    context.set_variable("facts", ["moon"], source="tool:search")
    context.add_insight("the moon matters")
    return context


def test_save_and_restore_round_trip(checkpoints):
    """Test that a restored context matches the saved one."""
    original = _context()
    checkpoints.save("wf-1", original)

    state = checkpoints.load("wf-1")
    restored = checkpoints.restore(state)

    assert restored.workflow_id == "wf-1"
    assert restored.status is RunStatus.IN_PROGRESS
    assert restored.step == 2
    assert restored.phase == "gathering"
    assert restored.variables == {"topic": "tides", "facts": ["moon"]}
    assert restored.parameter_names == ["topic"]
    assert restored.log.entries() == original.log.entries()
    assert restored.log.cursor == 2
    assert restored.completed_tools == original.completed_tools
    assert restored.evolution == original.evolution
    assert restored.started_at == original.started_at
    assert state.last_activity >= original.started_at


def test_restored_context_saves_identical_bytes(checkpoints, tmp_path):
    """Test that saving a restored context reproduces the checkpoint byte for byte."""
    checkpoints.save("wf-1", _context())
    original = checkpoints.path_for("wf-1").read_bytes()

    restored = checkpoints.restore(checkpoints.load("wf-1"))
    other = CheckpointManager(RunnerSettings(checkpoint_dir=str(tmp_path / "other")))
    other.save("wf-1", restored)

    assert other.path_for("wf-1").read_bytes() == original


def test_save_is_idempotent(checkpoints):
    """Test that saving an unchanged context writes the same bytes."""
    context = _context()
    checkpoints.save("wf-1", context)
    first = checkpoints.path_for("wf-1").read_text(encoding="utf-8")
    checkpoints.save("wf-1", context)

    assert checkpoints.path_for("wf-1").read_text(encoding="utf-8") == first
    assert checkpoints.save_count == 2


def test_atomic_write_leaves_no_temporary_files(checkpoints):
    """Test that only the checkpoint and its backups remain after saving."""
    context = _context()
    for _ in range(3):
        checkpoints.save("wf-1", context)

    names = sorted(p.name for p in checkpoints.directory.iterdir())
    assert "wf-1.json" in names
    assert not [n for n in names if n.endswith(".tmp")]


def test_backups_are_pruned(tmp_path):
    """Test that only backups_to_keep backups survive."""
    manager = CheckpointManager(RunnerSettings(checkpoint_dir=str(tmp_path), backups_to_keep=2))
    context = _context()
    for step in range(5):
        context.step = step
        manager.save("wf-1", context)

    backups = manager.backups_for("wf-1")
    assert len(backups) == 2
    assert manager.load("wf-1", use_backup=True).step == 3


def test_load_missing_checkpoint(checkpoints):
    """Test that a missing checkpoint loads as None."""
    assert checkpoints.load("nobody") is None
    assert checkpoints.load("nobody", use_backup=True) is None


@pytest.mark.parametrize("content", [
    "{not json",
    "[]",
    json.dumps({"format_version": 99, "workflow_id": "wf-1"}),
    json.dumps({"format_version": 1, "workflow_id": "wf-1"}),
])
def test_corrupt_checkpoints(checkpoints, content):
    """Test that unreadable or mismatched files raise CheckpointCorruption."""
    checkpoints.directory.mkdir(parents=True)
    checkpoints.path_for("wf-1").write_text(content, encoding="utf-8")

    with pytest.raises(CheckpointCorruption) as excinfo:
        checkpoints.load("wf-1")
    assert excinfo.value.path == str(checkpoints.path_for("wf-1"))


def test_unsafe_workflow_ids_stay_inside_directory(checkpoints):
    """Test that ids are sanitised into file names."""
    path = checkpoints.path_for("../../etc/passwd")

    assert path.parent == checkpoints.directory
    assert "/" not in path.name


def test_compatibility_identical_content(checkpoints):
    """Test that unchanged content is fully compatible."""
    state = checkpoints.save("wf-1", _context())
    result = checkpoints.validate_compatibility(state, parse_document(WORKFLOW))

    assert result.can_resume
    assert not result.requires_adaptation
    assert result.score == 1.0
    assert result.warnings == []


def test_compatibility_small_body_edit(checkpoints):
    """Test that a small body edit keeps the checkpoint resumable."""
    state = checkpoints.save("wf-1", _context())
    edited = parse_document(WORKFLOW.replace("cite them.", "cite them carefully."))

    result = checkpoints.validate_compatibility(state, edited)

    assert result.can_resume
    assert not result.requires_adaptation
    assert 0.9 < result.score < 1.0
    assert result.warnings == ["Workflow content changed since the checkpoint was written"]


def test_compatibility_header_change(checkpoints):
    """Test that header changes require adaptation and mention the model."""
    state = checkpoints.save("wf-1", _context())
    changed = parse_document(WORKFLOW.replace("model-a", "model-b"))

    result = checkpoints.validate_compatibility(state, changed)

    assert result.can_resume
    assert result.requires_adaptation
    assert "Model changed from 'model-a' to 'model-b'" in result.warnings
    assert result.suggested_adaptations


def test_compatibility_removed_parameter_and_tool(checkpoints):
    """Test that removing a used parameter or tool blocks the resume."""
    state = checkpoints.save("wf-1", _context())
    changed = parse_document(WORKFLOW.replace("tools: [search]", "tools: [fetch]")
                                     .replace("topic: string", "subject: string"))

    result = checkpoints.validate_compatibility(state, changed)

    assert not result.can_resume
    assert result.removed_parameters == ["topic"]
    assert result.removed_tools == ["search"]
    assert result.score <= 0.125


def test_finalize_archives_by_default(checkpoints):
    """Test that completed checkpoints move to the archive with their backups removed."""
    context = _context()
    checkpoints.save("wf-1", context)
    checkpoints.save("wf-1", context)

    target = checkpoints.finalize("wf-1")

    assert target == checkpoints.archive_directory / "wf-1.json"
    assert target.exists()
    assert not checkpoints.path_for("wf-1").exists()
    assert checkpoints.backups_for("wf-1") == []
    assert checkpoints.list_checkpoints() == []


def test_finalize_writes_completed_state(checkpoints):
    """Test that the archived checkpoint carries the completed status."""
    context = _context()
    checkpoints.save("wf-1", context)
    context.status = RunStatus.COMPLETED

    target = checkpoints.finalize("wf-1", context)

    assert checkpoints.read(target).status is RunStatus.COMPLETED
    assert checkpoints.save_count == 1


def test_kept_completion_is_terminal_and_swept(tmp_path):
    """Test that a kept checkpoint reads as completed and ages out."""
    manager = CheckpointManager(RunnerSettings(checkpoint_dir=str(tmp_path), completion_retention="keep"))
    context = _context()
    manager.save("wf-1", context)
    context.status = RunStatus.COMPLETED

    assert manager.finalize("wf-1", context) == manager.path_for("wf-1")
    assert manager.load("wf-1").status is RunStatus.COMPLETED
    assert manager.save_count == 1

    later = datetime.now(timezone.utc) + timedelta(days=8)
    assert manager.sweep(now=later) == 1
    assert manager.list_checkpoints() == []


@pytest.mark.parametrize("policy, survives", [("delete", False), ("keep", True)])
def test_finalize_other_policies(tmp_path, policy, survives):
    """Test the delete and keep retention policies."""
    manager = CheckpointManager(RunnerSettings(checkpoint_dir=str(tmp_path), completion_retention=policy))
    manager.save("wf-1", _context())

    manager.finalize("wf-1")

    assert manager.path_for("wf-1").exists() is survives
    assert not manager.archive_directory.exists()


def test_sweep_removes_old_terminal_checkpoints(checkpoints):
    """Test retention of archived and terminal checkpoints."""
    active = _context(workflow_id="active")
    failed = _context(workflow_id="failed")
    failed.status = RunStatus.FAILED
    done = _context(workflow_id="done")
    for context in (active, failed, done):
        checkpoints.save(context.workflow_id, context)
    checkpoints.finalize("done")

    assert checkpoints.sweep() == 0

    later = datetime.now(timezone.utc) + timedelta(days=8)
    assert checkpoints.sweep(now=later) == 2
    assert checkpoints.list_checkpoints() == ["active"]
    assert not any(checkpoints.archive_directory.glob("*.json"))


def test_delete(checkpoints):
    """Test deleting a checkpoint with its backups."""
    context = _context()
    checkpoints.save("wf-1", context)
    checkpoints.save("wf-1", context)

    assert checkpoints.delete("wf-1") is True
    assert checkpoints.backups_for("wf-1") == []
    assert checkpoints.delete("wf-1") is False
    assert not [p for p in checkpoints.directory.iterdir() if os.path.isfile(p)]
