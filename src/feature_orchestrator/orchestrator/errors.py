"""Exception hierarchy for orchestrator operations."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""


class FeatureNotFoundError(OrchestratorError):
    def __init__(self, feature_id: str) -> None:
        super().__init__(f"Feature {feature_id} not found")
        self.feature_id = feature_id


class FeatureBusyError(OrchestratorError):
    def __init__(self, feature_id: str) -> None:
        super().__init__(f"Feature {feature_id} is already running")
        self.feature_id = feature_id


class AutoLoopAlreadyRunningError(OrchestratorError):
    def __init__(self) -> None:
        super().__init__("Auto mode is already running")


class ExecutionAbortedError(OrchestratorError):
    """Raised when an execution's cancellation token fires."""


class ApprovalCancelledError(ExecutionAbortedError):
    """Raised into a waiting execution when its pending approval is cancelled."""


class PlanRejectedError(ExecutionAbortedError):
    """Raised when a plan is rejected without feedback or edits."""


class ProviderError(OrchestratorError):
    """Execution provider failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class IsolationToolError(OrchestratorError):
    """Worktree command failed."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class InvalidBranchNameError(OrchestratorError, ValueError):
    def __init__(self, branch_name: str) -> None:
        super().__init__(
            f"Invalid branch name: {branch_name!r}. Branch names must contain only "
            "alphanumeric characters, dots, underscores, hyphens, and forward slashes. "
            'They cannot start with "-" or ".", contain "..", or include special characters.',
        )
        self.branch_name = branch_name


class PipelineStepError(OrchestratorError):
    def __init__(self, step_id: str, message: str) -> None:
        super().__init__(f"Pipeline step {step_id} failed: {message}")
        self.step_id = step_id
