"""Tests for runner settings."""

import pytest

from dotprompt_runner.config import RunnerSettings, load_settings


def test_defaults_when_no_file(tmp_path):
    """Test that a missing settings file gives the defaults."""
    settings = load_settings(tmp_path / "absent.yaml")

    assert settings == RunnerSettings()
    assert settings.completion_retention == "archive"
    assert settings.max_turns == 50
    assert load_settings() == RunnerSettings()


def test_load_settings_from_yaml(tmp_path):
    """Test loading a settings file, with and without the runner key."""
    path = tmp_path / "settings.yaml"
    path.write_text("runner:\n  max_turns: 5\n  log_level: debug\n  known_tools: [web]\n", encoding="utf-8")

    settings = load_settings(path)

    assert settings.max_turns == 5
    assert settings.log_level == "DEBUG"
    assert settings.known_tools == ["web"]

    path.write_text("retention_days: 1\n", encoding="utf-8")
    assert load_settings(path).retention_days == 1


@pytest.mark.parametrize("text", [
    "max_turns: [unclosed\n",
    "- just\n- a list\n",
    "max_turns: 0\n",
    "completion_retention: shred\n",
    "log_level: chatty\n",
    "unknown_option: 1\n",
])
def test_invalid_settings(tmp_path, text):
    """Test that bad settings files raise ValueError."""
    path = tmp_path / "settings.yaml"
    path.write_text(text, encoding="utf-8")

    with pytest.raises(ValueError):
        load_settings(path)
