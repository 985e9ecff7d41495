"""Domain models for features, plans, pipelines and running executions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

PIPELINE_STATUS_PREFIX = "pipeline_"


class FeatureStatus(str, Enum):
    """Fixed board states. Pipeline states are dynamic, see ``pipeline_status``."""

    BACKLOG = "backlog"
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    VERIFIED = "verified"
    COMPLETED = "completed"


READY_STATUSES = frozenset(
    {FeatureStatus.BACKLOG.value, FeatureStatus.PENDING.value, FeatureStatus.READY.value},
)
DONE_STATUSES = frozenset({FeatureStatus.COMPLETED.value, FeatureStatus.VERIFIED.value})


def pipeline_status(step_id: str) -> str:
    return f"{PIPELINE_STATUS_PREFIX}{step_id}"


def is_pipeline_status(status: str) -> bool:
    return status.startswith(PIPELINE_STATUS_PREFIX) and len(status) > len(
        PIPELINE_STATUS_PREFIX,
    )


def pipeline_step_id(status: str) -> str | None:
    if not is_pipeline_status(status):
        return None
    return status[len(PIPELINE_STATUS_PREFIX) :]


def terminal_status(*, skip_tests: bool) -> str:
    """Final status after a successful run.

    Features that skip automated tests go to manual review; the rest are
    considered verified by the agent run.
    """

    return FeatureStatus.WAITING_APPROVAL.value if skip_tests else FeatureStatus.VERIFIED.value


class PlanningMode(str, Enum):
    SKIP = "skip"
    LITE = "lite"
    SPEC = "spec"
    FULL = "full"


class PlanSpecStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(slots=True)
class ParsedTask:
    """One task line parsed from a generated plan."""

    id: str
    description: str
    file_path: str | None = None
    phase: str | None = None
    status: TaskStatus = TaskStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "file_path": self.file_path,
            "phase": self.phase,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ParsedTask:
        return cls(
            id=str(raw["id"]),
            description=str(raw.get("description", "")),
            file_path=raw.get("file_path"),
            phase=raw.get("phase"),
            status=TaskStatus(raw.get("status", TaskStatus.PENDING.value)),
        )


@dataclass(slots=True)
class PlanSpec:
    """Generated plan with approval and task progress bookkeeping."""

    status: PlanSpecStatus = PlanSpecStatus.PENDING
    content: str = ""
    version: int = 0
    tasks: list[ParsedTask] = field(default_factory=list)
    tasks_completed: int = 0
    tasks_total: int = 0
    current_task_id: str | None = None
    reviewed_by_user: bool = False
    generated_at: str | None = None
    approved_at: str | None = None

    def replace_content(self, content: str, tasks: list[ParsedTask]) -> None:
        """Store new plan text; every content change bumps the version."""

        self.content = content
        self.version += 1
        self.tasks = tasks
        self.tasks_total = len(tasks)
        self.tasks_completed = 0
        self.current_task_id = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "content": self.content,
            "version": self.version,
            "tasks": [task.to_dict() for task in self.tasks],
            "tasks_completed": self.tasks_completed,
            "tasks_total": self.tasks_total,
            "current_task_id": self.current_task_id,
            "reviewed_by_user": self.reviewed_by_user,
            "generated_at": self.generated_at,
            "approved_at": self.approved_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PlanSpec:
        return cls(
            status=PlanSpecStatus(raw.get("status", PlanSpecStatus.PENDING.value)),
            content=str(raw.get("content", "")),
            version=int(raw.get("version", 0)),
            tasks=[ParsedTask.from_dict(item) for item in raw.get("tasks", [])],
            tasks_completed=int(raw.get("tasks_completed", 0)),
            tasks_total=int(raw.get("tasks_total", 0)),
            current_task_id=raw.get("current_task_id"),
            reviewed_by_user=bool(raw.get("reviewed_by_user", False)),
            generated_at=raw.get("generated_at"),
            approved_at=raw.get("approved_at"),
        )


@dataclass(slots=True)
class Feature:
    """One unit of work tracked on the board."""

    id: str
    description: str
    status: str = FeatureStatus.BACKLOG.value
    title: str | None = None
    category: str | None = None
    priority: int = 2
    skip_tests: bool = False
    model: str | None = None
    planning_mode: PlanningMode = PlanningMode.SKIP
    require_plan_approval: bool = False
    dependencies: list[str] = field(default_factory=list)
    image_paths: list[str] = field(default_factory=list)
    branch_name: str | None = None
    worktree_path: str | None = None
    plan_spec: PlanSpec | None = None
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    just_finished_at: datetime | None = None


@dataclass(slots=True)
class FeatureCreate:
    """Input payload for adding a feature to the board."""

    description: str
    feature_id: str | None = None
    title: str | None = None
    category: str | None = None
    priority: int = 2
    skip_tests: bool = False
    model: str | None = None
    planning_mode: PlanningMode = PlanningMode.SKIP
    require_plan_approval: bool = False
    dependencies: tuple[str, ...] = ()
    image_paths: tuple[str, ...] = ()
    branch_name: str | None = None
    status: str = FeatureStatus.BACKLOG.value


@dataclass(slots=True)
class PipelineStep:
    """One post-implementation instruction block."""

    id: str
    name: str
    order: int
    instructions: str


@dataclass(slots=True)
class PipelineConfig:
    """Ordered pipeline definition for one project."""

    steps: list[PipelineStep] = field(default_factory=list)
    version: int = 1

    def sorted_steps(self) -> list[PipelineStep]:
        return sorted(self.steps, key=lambda step: step.order)

    def find_step(self, step_id: str) -> PipelineStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class CancellationToken:
    """Cooperative cancellation flag shared by one execution and its provider calls."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(slots=True)
class RunningExecution:
    """In-memory record of one in-flight feature execution."""

    feature_id: str
    project_path: Path
    worktree_path: Path | None
    branch_name: str | None
    token: CancellationToken
    is_auto_dispatched: bool
    started_at: float
    task: asyncio.Task[None] | None = None


@dataclass(slots=True)
class RunningAgentView:
    """Readable view of a running execution for status reporting."""

    feature_id: str
    project_path: str
    project_name: str
    is_auto_dispatched: bool
    worktree_path: str | None
    branch_name: str | None
    running_seconds: float


@dataclass(slots=True)
class AutoModeStatus:
    """Aggregate status snapshot of the orchestrator."""

    is_running: bool
    auto_loop_running: bool
    paused_due_to_failures: bool
    running_features: list[str]
    running_count: int
