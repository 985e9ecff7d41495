from __future__ import annotations

from pathlib import Path

import allure
import pytest

from feature_orchestrator.config import (
    DEFAULT_DATA_DIR_NAME,
    DEFAULT_VERIFICATION_COMMANDS,
    Settings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FEATURE_ORCHESTRATOR_MAX_CONCURRENCY",
        "FEATURE_ORCHESTRATOR_PROVIDER_COMMAND",
        "FEATURE_ORCHESTRATOR_VERIFY_COMMANDS",
        "FEATURE_ORCHESTRATOR_USE_WORKTREES",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()
    settings.validate()

    assert settings.data_dir_name == DEFAULT_DATA_DIR_NAME
    assert settings.scheduler.max_concurrency == 3
    assert settings.scheduler.idle_poll_seconds == 10.0
    assert settings.failures.threshold == 3
    assert settings.failures.window_seconds == 60.0
    assert settings.verification.commands == DEFAULT_VERIFICATION_COMMANDS
    assert settings.scheduler.use_worktrees is True


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FEATURE_ORCHESTRATOR_MAX_CONCURRENCY", "5")
    monkeypatch.setenv("FEATURE_ORCHESTRATOR_USE_WORKTREES", "off")
    monkeypatch.setenv("FEATURE_ORCHESTRATOR_VERIFY_COMMANDS", "make lint; make test ;")
    monkeypatch.setenv("FEATURE_ORCHESTRATOR_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.scheduler.max_concurrency == 5
    assert settings.scheduler.use_worktrees is False
    assert settings.verification.commands == ("make lint", "make test")
    assert settings.log_level == "DEBUG"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FEATURE_ORCHESTRATOR_USE_WORKTREES", "maybe")

    with pytest.raises(ValueError, match="FEATURE_ORCHESTRATOR_USE_WORKTREES"):
        Settings.from_env()


def test_validate_requires_prompt_placeholder() -> None:
    settings = Settings()
    settings.provider.command_template = "agent --model {model}"

    with pytest.raises(ValueError, match="must include"):
        settings.validate()


def test_validate_accepts_prompt_file_only_template() -> None:
    settings = Settings()
    settings.provider.command_template = "agent --model {model} --input {prompt_file}"

    settings.validate()


def test_validate_rejects_zero_concurrency_and_bad_level() -> None:
    settings = Settings()
    settings.scheduler.max_concurrency = 0
    with pytest.raises(ValueError, match="MAX_CONCURRENCY"):
        settings.validate()

    settings = Settings(log_level="CHATTY")
    with pytest.raises(ValueError, match="LOG_LEVEL"):
        settings.validate()


def test_data_dir_is_inside_project(tmp_path: Path) -> None:
    assert Settings().data_dir(tmp_path) == tmp_path / DEFAULT_DATA_DIR_NAME
