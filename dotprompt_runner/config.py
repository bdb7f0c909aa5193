""" Runner settings, loaded from an optional YAML file. """

import logging
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class RunnerSettings(BaseModel):
    checkpoint_dir: str = ".dotprompt/checkpoints"
    retention_days: int = Field(default=7, ge=0)
    # what happens to a checkpoint once its run completes
    completion_retention: str = "archive"
    enable_backup: bool = True
    backups_to_keep: int = Field(default=3, ge=0)
    atomic_writes: bool = True

    tool_timeout_seconds: Optional[float] = Field(default=300.0, gt=0)
    run_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    max_turns: int = Field(default=50, ge=1)
    max_depth: int = Field(default=8, ge=1)
    engine_retry_attempts: int = Field(default=2, ge=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0)

    known_tools: List[str] = Field(default_factory=list)
    log_level: str = "INFO"

    model_config = {"extra": "forbid"}

    @field_validator("completion_retention")
    @classmethod
    def _check_retention(cls, value: str) -> str:
        if value not in ("archive", "delete", "keep"):
            raise ValueError("completion_retention must be one of: archive, delete, keep")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"Unknown log level: {value}")
        return value


def load_settings(path: Optional[Union[str, Path]] = None) -> RunnerSettings:
    """Load settings from a YAML file. A missing file gives the defaults."""
    if path is None:
        return RunnerSettings()

    path = Path(path)
    if not path.exists():
        logger.debug("No settings file at %s, using defaults", path)
        return RunnerSettings()

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid settings file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")

    # allow the settings to live under a top-level 'runner' key
    if set(raw) == {"runner"} and isinstance(raw["runner"], dict):
        raw = raw["runner"]

    try:
        return RunnerSettings.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid settings in {path}: {e}") from e


def configure_logging(level: Union[str, int] = "INFO") -> None:
    """Attach a stream handler to the root logger."""
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
