"""Runtime configuration for the feature orchestrator."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DATA_DIR_NAME = ".feature-orchestrator"
DEFAULT_MODEL = "claude-sonnet-4-5"
DEFAULT_PROVIDER_COMMAND_TEMPLATE = (
    "claude -p --output-format stream-json --verbose --model {model} "
    "--permission-mode acceptEdits -- {prompt}"
)
DEFAULT_VERIFICATION_COMMANDS: tuple[str, ...] = (
    "npm run lint",
    "npm run typecheck",
    "npm test",
    "npm run build",
)


@dataclass(slots=True)
class SchedulerSettings:
    """Auto-loop polling and concurrency settings."""

    max_concurrency: int = 3
    capacity_poll_seconds: float = 5.0
    idle_poll_seconds: float = 10.0
    dispatch_poll_seconds: float = 2.0
    error_backoff_seconds: float = 5.0
    use_worktrees: bool = True


@dataclass(slots=True)
class FailureSettings:
    """Auto-pause thresholds for the failure monitor."""

    threshold: int = 3
    window_seconds: float = 60.0


@dataclass(slots=True)
class ProviderSettings:
    """Execution provider settings."""

    default_model: str = DEFAULT_MODEL
    command_template: str = DEFAULT_PROVIDER_COMMAND_TEMPLATE
    transcript_debounce_seconds: float = 0.5


@dataclass(slots=True)
class VerificationSettings:
    """Check commands run by feature verification."""

    commands: tuple[str, ...] = DEFAULT_VERIFICATION_COMMANDS
    timeout_seconds: int = 120


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    data_dir_name: str = DEFAULT_DATA_DIR_NAME
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    failures: FailureSettings = field(default_factory=FailureSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            data_dir_name=os.getenv("FEATURE_ORCHESTRATOR_DATA_DIR_NAME", DEFAULT_DATA_DIR_NAME),
            sqlite_busy_timeout_ms=int(
                os.getenv("FEATURE_ORCHESTRATOR_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            log_level=os.getenv("FEATURE_ORCHESTRATOR_LOG_LEVEL", "INFO").upper(),
            scheduler=SchedulerSettings(
                max_concurrency=int(os.getenv("FEATURE_ORCHESTRATOR_MAX_CONCURRENCY", "3")),
                capacity_poll_seconds=float(
                    os.getenv("FEATURE_ORCHESTRATOR_CAPACITY_POLL_SECONDS", "5.0"),
                ),
                idle_poll_seconds=float(
                    os.getenv("FEATURE_ORCHESTRATOR_IDLE_POLL_SECONDS", "10.0"),
                ),
                dispatch_poll_seconds=float(
                    os.getenv("FEATURE_ORCHESTRATOR_DISPATCH_POLL_SECONDS", "2.0"),
                ),
                error_backoff_seconds=float(
                    os.getenv("FEATURE_ORCHESTRATOR_ERROR_BACKOFF_SECONDS", "5.0"),
                ),
                use_worktrees=_env_bool("FEATURE_ORCHESTRATOR_USE_WORKTREES", default=True),
            ),
            failures=FailureSettings(
                threshold=int(os.getenv("FEATURE_ORCHESTRATOR_FAILURE_THRESHOLD", "3")),
                window_seconds=float(
                    os.getenv("FEATURE_ORCHESTRATOR_FAILURE_WINDOW_SECONDS", "60"),
                ),
            ),
            provider=ProviderSettings(
                default_model=os.getenv("FEATURE_ORCHESTRATOR_DEFAULT_MODEL", DEFAULT_MODEL),
                command_template=os.getenv(
                    "FEATURE_ORCHESTRATOR_PROVIDER_COMMAND",
                    DEFAULT_PROVIDER_COMMAND_TEMPLATE,
                ),
                transcript_debounce_seconds=float(
                    os.getenv("FEATURE_ORCHESTRATOR_TRANSCRIPT_DEBOUNCE_SECONDS", "0.5"),
                ),
            ),
            verification=VerificationSettings(
                commands=_collect_commands(
                    os.getenv("FEATURE_ORCHESTRATOR_VERIFY_COMMANDS"),
                ),
                timeout_seconds=int(
                    os.getenv("FEATURE_ORCHESTRATOR_VERIFY_TIMEOUT_SECONDS", "120"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if not self.data_dir_name.strip() or "/" in self.data_dir_name:
            raise ValueError("FEATURE_ORCHESTRATOR_DATA_DIR_NAME must be a plain directory name.")
        if self.scheduler.max_concurrency < 1:
            raise ValueError("FEATURE_ORCHESTRATOR_MAX_CONCURRENCY must be >= 1.")
        for name, value in (
            ("CAPACITY_POLL_SECONDS", self.scheduler.capacity_poll_seconds),
            ("IDLE_POLL_SECONDS", self.scheduler.idle_poll_seconds),
            ("DISPATCH_POLL_SECONDS", self.scheduler.dispatch_poll_seconds),
            ("ERROR_BACKOFF_SECONDS", self.scheduler.error_backoff_seconds),
            ("TRANSCRIPT_DEBOUNCE_SECONDS", self.provider.transcript_debounce_seconds),
        ):
            if value < 0:
                raise ValueError(f"FEATURE_ORCHESTRATOR_{name} must be >= 0.")
        if self.failures.threshold < 1:
            raise ValueError("FEATURE_ORCHESTRATOR_FAILURE_THRESHOLD must be >= 1.")
        if self.failures.window_seconds <= 0:
            raise ValueError("FEATURE_ORCHESTRATOR_FAILURE_WINDOW_SECONDS must be > 0.")
        template = self.provider.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError(
                "FEATURE_ORCHESTRATOR_PROVIDER_COMMAND must include {prompt} or {prompt_file}.",
            )
        if not self.provider.default_model.strip():
            raise ValueError("FEATURE_ORCHESTRATOR_DEFAULT_MODEL must be a non-empty string.")
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"Invalid FEATURE_ORCHESTRATOR_LOG_LEVEL: {self.log_level!r}")

    def data_dir(self, project_path: Path) -> Path:
        """Per-project orchestrator data directory."""

        return project_path / self.data_dir_name


def _collect_commands(raw: str | None) -> tuple[str, ...]:
    if raw is None:
        return DEFAULT_VERIFICATION_COMMANDS
    return tuple(part.strip() for part in raw.split(";") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
