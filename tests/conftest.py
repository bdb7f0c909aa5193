"""Shared test fixtures."""

from pathlib import Path

import pytest

from dotprompt_runner.config import RunnerSettings
from dotprompt_runner.engine import ScriptedEngine
from dotprompt_runner.tools.registry import ToolRegistry
from dotprompt_runner.workflow.checkpoint import CheckpointManager
from dotprompt_runner.workflow.orchestrator import Orchestrator


@pytest.fixture
def settings(tmp_path: Path) -> RunnerSettings:
    """Settings that keep checkpoints under tmp_path and never sleep."""
    return RunnerSettings(
        checkpoint_dir=str(tmp_path / "checkpoints"),
        retry_delay_seconds=0,
        tool_timeout_seconds=5,
    )


@pytest.fixture
def checkpoints(settings: RunnerSettings) -> CheckpointManager:
    return CheckpointManager(settings)


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture
def write_workflow(tmp_path: Path):
    """Write workflow text to tmp_path/<name> and return the path."""
    def _write(name: str, text: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path
    return _write


@pytest.fixture
def make_orchestrator(registry, checkpoints, settings):
    """Build an Orchestrator around a ScriptedEngine with the given script."""
    def _make(script=(), **overrides) -> Orchestrator:
        return Orchestrator(
            overrides.pop("engine", None) or ScriptedEngine(script),
            registry=overrides.pop("registry", registry),
            checkpoints=overrides.pop("checkpoints", checkpoints),
            settings=overrides.pop("settings", settings),
        )
    return _make
