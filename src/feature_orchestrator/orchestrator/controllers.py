"""Controllers for feature orchestrator CLI commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from feature_orchestrator.config import Settings
from feature_orchestrator.orchestrator.backend import CliAgentProvider, ExecutionProvider
from feature_orchestrator.orchestrator.events import (
    AUTO_MODE_ERROR,
    FEATURE_COMPLETE,
    PLAN_APPROVAL_REQUIRED,
    PROGRESS,
    OrchestratorEvent,
)
from feature_orchestrator.orchestrator.executor import VerificationReport
from feature_orchestrator.orchestrator.models import (
    Feature,
    FeatureCreate,
    PlanningMode,
)
from feature_orchestrator.orchestrator.prompts import feature_title
from feature_orchestrator.orchestrator.service import AutoModeService
from feature_orchestrator.orchestrator.worktree import (
    GitIsolationTool,
    IsolationTool,
    WorktreeInfo,
)

logger = logging.getLogger(__name__)

_PROGRESS_PREVIEW_CHARS = 120

T = TypeVar("T")

PlanReviewer = Callable[[OrchestratorEvent], tuple[bool, str | None]]


@dataclass(slots=True)
class FeatureAddCommand:
    """CLI input for adding a feature to the board."""

    project_path: Path
    description: str
    title: str | None = None
    category: str | None = None
    priority: int = 2
    skip_tests: bool = False
    model: str | None = None
    planning_mode: str = PlanningMode.SKIP.value
    require_plan_approval: bool = False
    dependencies: tuple[str, ...] = ()
    image_paths: tuple[str, ...] = ()
    branch_name: str | None = None
    feature_id: str | None = None


@dataclass(slots=True)
class FeatureListCommand:
    project_path: Path
    status: str | None = None


@dataclass(slots=True)
class FeatureRefCommand:
    """CLI input addressing one feature."""

    project_path: Path
    feature_id: str


@dataclass(slots=True)
class FeatureSetStatusCommand:
    project_path: Path
    feature_id: str
    status: str


@dataclass(slots=True)
class FeatureRunCommand:
    """CLI input for running or resuming one feature in the foreground."""

    project_path: Path
    feature_id: str
    use_worktrees: bool = True
    review_plans: bool = True


@dataclass(slots=True)
class FeatureFollowUpCommand:
    project_path: Path
    feature_id: str
    prompt: str
    image_paths: tuple[str, ...] = ()


@dataclass(slots=True)
class PlanDecisionCommand:
    """CLI input for approving or rejecting a generated plan."""

    project_path: Path
    feature_id: str
    approved: bool
    feedback: str | None = None
    edited_plan_path: Path | None = None


@dataclass(slots=True)
class AutoRunCommand:
    """CLI input for the foreground auto loop."""

    project_path: Path
    max_concurrency: int | None = None
    use_worktrees: bool | None = None
    stop_when_idle: bool = True


@dataclass(slots=True)
class AnalyzeCommand:
    project_path: Path


@dataclass(slots=True)
class RecoverCommand:
    project_path: Path
    use_worktrees: bool = True


@dataclass(slots=True)
class WorktreeCommand:
    project_path: Path
    branch_name: str
    base_branch: str | None = None


@dataclass(slots=True)
class FeatureCommandResult:
    """Printable lines plus the process exit status."""

    lines: list[str]
    success: bool = True


class FeatureCliController:
    """Coordinates board, execution, approval and worktree CLI operations."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        provider: ExecutionProvider | None = None,
        isolation_tool: IsolationTool | None = None,
        echo: Callable[[str], None] | None = None,
        plan_reviewer: PlanReviewer | None = None,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._isolation_tool = isolation_tool
        self._echo = echo
        self._plan_reviewer = plan_reviewer

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.from_env()
            self._settings.validate()
        return self._settings

    # Board

    def add_feature(self, command: FeatureAddCommand) -> list[str]:
        async def _run(service: AutoModeService) -> Feature:
            store = service.store_for(command.project_path)
            feature = await store.create(
                FeatureCreate(
                    description=command.description,
                    feature_id=command.feature_id,
                    title=command.title,
                    category=command.category,
                    priority=command.priority,
                    skip_tests=command.skip_tests,
                    model=command.model,
                    planning_mode=PlanningMode(command.planning_mode),
                    require_plan_approval=command.require_plan_approval,
                    dependencies=command.dependencies,
                    branch_name=command.branch_name,
                ),
            )
            if command.image_paths:
                copied = await asyncio.to_thread(
                    store.workdir.copy_images,
                    feature.id,
                    list(command.image_paths),
                )
                feature.image_paths = copied
                feature = await store.save(feature)
            return feature

        feature = self._run(_run)
        return [
            f"Feature added: feature_id={feature.id} status={feature.status} "
            f"priority={feature.priority} planning={feature.planning_mode.value}",
        ]

    def list_features(self, command: FeatureListCommand) -> list[str]:
        async def _run(service: AutoModeService) -> list[Feature]:
            return await service.store_for(command.project_path).list_all()

        features = self._run(_run)
        if command.status is not None:
            features = [feature for feature in features if feature.status == command.status]
        lines = [f"Features: {len(features)}"]
        for feature in features:
            deps = ",".join(feature.dependencies) or "-"
            lines.append(
                f"  {feature.id} status={feature.status} priority={feature.priority} "
                f"deps={deps} title={feature_title(feature)}",
            )
        return lines

    def show_feature(self, command: FeatureRefCommand) -> list[str]:
        async def _run(service: AutoModeService) -> tuple[Feature | None, bool]:
            store = service.store_for(command.project_path)
            feature = await store.load(command.feature_id)
            has_transcript = await store.transcript_exists(command.feature_id)
            return feature, has_transcript

        feature, has_transcript = self._run(_run)
        if feature is None:
            return [f"Feature not found: {command.feature_id}"]
        plan = feature.plan_spec
        lines = [
            f"Feature: {feature.id}",
            f"Title: {feature_title(feature)}",
            f"Status: {feature.status}",
            f"Priority: {feature.priority}",
            f"Category: {feature.category or '-'}",
            f"Planning: {feature.planning_mode.value} "
            f"(approval {'required' if feature.require_plan_approval else 'not required'})",
            f"Skip tests: {feature.skip_tests}",
            f"Model: {feature.model or self.settings.provider.default_model}",
            f"Dependencies: {', '.join(feature.dependencies) or '-'}",
            f"Branch: {feature.branch_name or '-'}",
            f"Worktree: {feature.worktree_path or '-'}",
            f"Transcript: {'yes' if has_transcript else 'no'}",
            f"Error: {feature.error or '-'}",
        ]
        if plan is not None:
            lines.append(
                f"Plan: status={plan.status.value} version={plan.version} "
                f"tasks={plan.tasks_completed}/{plan.tasks_total}",
            )
            for task in plan.tasks:
                lines.append(
                    f"  {task.id} [{task.status.value}] {task.description}"
                    + (f" ({task.file_path})" if task.file_path else ""),
                )
        return lines

    def delete_feature(self, command: FeatureRefCommand) -> list[str]:
        async def _run(service: AutoModeService) -> bool:
            return await service.store_for(command.project_path).delete(command.feature_id)

        if not self._run(_run):
            return [f"Feature not found: {command.feature_id}"]
        return [f"Feature deleted: {command.feature_id}"]

    def set_status(self, command: FeatureSetStatusCommand) -> list[str]:
        async def _run(service: AutoModeService) -> Feature | None:
            store = service.store_for(command.project_path)
            return await store.update_status(command.feature_id, command.status)

        if self._run(_run) is None:
            return [f"Feature not found: {command.feature_id}"]
        return [f"Feature {command.feature_id} status set to {command.status}"]

    # Execution

    def run_auto(self, command: AutoRunCommand) -> FeatureCommandResult:
        async def _run(service: AutoModeService) -> FeatureCommandResult:
            task = service.start_auto_loop(
                command.project_path,
                command.max_concurrency,
                use_worktrees=command.use_worktrees,
                stop_when_idle=command.stop_when_idle,
            )
            try:
                await task
                await service.wait_for_running()
            except asyncio.CancelledError:
                running = service.stop_auto_loop()
                logger.info("Auto loop interrupted with %d running feature(s)", running)
                raise
            status = service.get_status()
            return FeatureCommandResult(
                lines=[
                    "Auto mode finished: "
                    f"paused_due_to_failures={status.paused_due_to_failures}",
                ],
                success=not status.paused_due_to_failures,
            )

        return self._run(_run)

    def run_feature(self, command: FeatureRunCommand) -> FeatureCommandResult:
        async def _run(service: AutoModeService) -> bool:
            return await service.execute_feature(
                command.project_path,
                command.feature_id,
                use_worktrees=command.use_worktrees,
            )

        passed = self._run(_run, review_plans=command.review_plans)
        return _outcome(command.feature_id, passed)

    def resume_feature(self, command: FeatureRunCommand) -> FeatureCommandResult:
        async def _run(service: AutoModeService) -> bool:
            return await service.resume_feature(
                command.project_path,
                command.feature_id,
                use_worktrees=command.use_worktrees,
            )

        passed = self._run(_run, review_plans=command.review_plans)
        return _outcome(command.feature_id, passed)

    def follow_up(self, command: FeatureFollowUpCommand) -> FeatureCommandResult:
        async def _run(service: AutoModeService) -> bool:
            return await service.follow_up_feature(
                command.project_path,
                command.feature_id,
                command.prompt,
                command.image_paths,
            )

        return _outcome(command.feature_id, self._run(_run))

    def verify(self, command: FeatureRefCommand) -> FeatureCommandResult:
        async def _run(service: AutoModeService) -> VerificationReport:
            return await service.verify_feature(command.project_path, command.feature_id)

        report = self._run(_run)
        lines = [f"Verification {'passed' if report.passed else 'failed'}: {command.feature_id}"]
        for check in report.checks:
            lines.append(f"  [{'ok' if check.passed else 'FAIL'}] {check.command}")
            if not check.passed and check.output.strip():
                lines.extend(f"      {line}" for line in check.output.strip().splitlines()[-20:])
        return FeatureCommandResult(lines=lines, success=report.passed)

    def commit(self, command: FeatureRefCommand) -> list[str]:
        async def _run(service: AutoModeService) -> str | None:
            return await service.commit_feature(command.project_path, command.feature_id)

        commit_hash = self._run(_run)
        if commit_hash is None:
            return [f"Nothing to commit for {command.feature_id}"]
        return [f"Committed {command.feature_id}: {commit_hash}"]

    def analyze(self, command: AnalyzeCommand) -> FeatureCommandResult:
        async def _run(service: AutoModeService) -> Path | None:
            return await service.analyze_project(command.project_path)

        path = self._run(_run)
        if path is None:
            return FeatureCommandResult(lines=["Project analysis failed"], success=False)
        return FeatureCommandResult(lines=[f"Project analysis written to {path}"])

    def decide_plan(self, command: PlanDecisionCommand) -> FeatureCommandResult:
        edited_plan = (
            command.edited_plan_path.read_text("utf-8")
            if command.edited_plan_path is not None
            else None
        )

        async def _run(service: AutoModeService) -> bool:
            resolved = await service.resolve_plan_approval(
                command.project_path,
                command.feature_id,
                command.approved,
                edited_plan=edited_plan,
                feedback=command.feedback,
            )
            await service.wait_for_running()
            return resolved

        if not self._run(_run):
            return FeatureCommandResult(
                lines=[f"No plan awaiting approval for {command.feature_id}"],
                success=False,
            )
        verb = "approved" if command.approved else "rejected"
        return FeatureCommandResult(lines=[f"Plan {verb} for {command.feature_id}"])

    def recover(self, command: RecoverCommand) -> list[str]:
        async def _run(service: AutoModeService) -> list[str]:
            return await service.resume_interrupted(
                command.project_path,
                use_worktrees=command.use_worktrees,
            )

        resumed = self._run(_run)
        if not resumed:
            return ["No interrupted features found"]
        return [f"Resumed {len(resumed)} feature(s): {', '.join(resumed)}"]

    # Worktrees

    def find_worktree(self, command: WorktreeCommand) -> list[str]:
        async def _run(service: AutoModeService) -> Path | None:
            return await service.find_worktree(command.project_path, command.branch_name)

        path = self._run(_run)
        if path is None:
            return [f"No worktree for branch {command.branch_name}"]
        return [f"Worktree: {path}"]

    def create_worktree(self, command: WorktreeCommand) -> list[str]:
        async def _run(service: AutoModeService) -> WorktreeInfo:
            return await service.create_worktree(
                command.project_path,
                command.branch_name,
                command.base_branch,
            )

        info = self._run(_run)
        state = "created" if info.is_new else "attached"
        return [f"Worktree {state}: path={info.path} branch={info.branch}"]

    # Plumbing

    def _run(
        self,
        operation: Callable[[AutoModeService], Awaitable[T]],
        *,
        review_plans: bool = True,
    ) -> T:
        return asyncio.run(self._run_async(operation, review_plans=review_plans))

    async def _run_async(
        self,
        operation: Callable[[AutoModeService], Awaitable[T]],
        *,
        review_plans: bool,
    ) -> T:
        async with self._service() as service:
            if self._echo is not None:
                service.events.subscribe(self._print_event)
            if review_plans:
                service.events.subscribe(self._plan_review_listener(service))
            try:
                return await operation(service)
            finally:
                await service.wait_for_running()

    @asynccontextmanager
    async def _service(self) -> AsyncIterator[AutoModeService]:
        settings = self.settings
        service = AutoModeService(
            settings=settings,
            provider=self._provider or CliAgentProvider(settings.provider.command_template),
            isolation_tool=self._isolation_tool or GitIsolationTool(),
        )
        try:
            yield service
        finally:
            await service.shutdown()

    def _print_event(self, event: OrchestratorEvent) -> None:
        line = render_event(event)
        if line is not None and self._echo is not None:
            self._echo(line)

    def _plan_review_listener(
        self,
        service: AutoModeService,
    ) -> Callable[[OrchestratorEvent], None]:
        reviewer = self._plan_reviewer
        pending: set[asyncio.Task[None]] = set()

        def _listener(event: OrchestratorEvent) -> None:
            if event.type != PLAN_APPROVAL_REQUIRED:
                return
            feature_id = str(event.payload.get("feature_id"))
            if reviewer is None:
                logger.info(
                    "Plan for %s awaits approval; run `feature approve` or `feature reject`",
                    feature_id,
                )
                # The execution starts waiting right after this event is emitted.
                asyncio.get_running_loop().call_soon(service.stop_feature, feature_id)
                return

            async def _review() -> None:
                approved, feedback = await asyncio.to_thread(reviewer, event)
                service.approvals.resolve_approval(feature_id, approved, feedback=feedback)

            task = asyncio.get_running_loop().create_task(_review())
            pending.add(task)
            task.add_done_callback(pending.discard)

        return _listener


def render_event(event: OrchestratorEvent) -> str | None:
    """One printable line per event; progress text is shortened."""

    payload = event.payload
    feature_id = payload.get("feature_id")
    prefix = f"[{event.type}]" + (f" {feature_id}" if feature_id else "")
    if event.type == PROGRESS:
        content = str(payload.get("content", "")).strip().splitlines()
        if not content:
            return None
        preview = content[0]
        if len(preview) > _PROGRESS_PREVIEW_CHARS:
            preview = preview[: _PROGRESS_PREVIEW_CHARS - 3] + "..."
        return f"{prefix}: {preview}"
    if event.type == PLAN_APPROVAL_REQUIRED:
        return f"{prefix}: plan v{payload.get('plan_version')}\n{payload.get('plan_content', '')}"
    if event.type == AUTO_MODE_ERROR:
        return f"{prefix}: {payload.get('error_type')}: {payload.get('error')}"
    if event.type == FEATURE_COMPLETE:
        verdict = "passed" if payload.get("passes") else "not passed"
        return f"{prefix}: {verdict}: {payload.get('message', '')}"
    message = payload.get("message")
    if message:
        return f"{prefix}: {message}"
    for key in ("tool", "task_id", "phase", "step_name", "action"):
        if key in payload:
            return f"{prefix}: {payload[key]}"
    return prefix


def _outcome(feature_id: str, passed: bool) -> FeatureCommandResult:
    verdict = "completed" if passed else "did not complete"
    return FeatureCommandResult(lines=[f"Feature {feature_id} {verdict}"], success=passed)
