"""Orchestrator facade owning the running map, approvals, failure window and auto loop."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from feature_orchestrator.config import Settings
from feature_orchestrator.orchestrator.approval import ApprovalDecision, ApprovalGate
from feature_orchestrator.orchestrator.backend.base import ExecutionProvider
from feature_orchestrator.orchestrator.errors import (
    AutoLoopAlreadyRunningError,
    FeatureNotFoundError,
)
from feature_orchestrator.orchestrator.events import PLAN_REJECTED, EventBus
from feature_orchestrator.orchestrator.executor import (
    FeatureExecutor,
    ResumeContext,
    VerificationReport,
)
from feature_orchestrator.orchestrator.failure_monitor import FailureMonitor
from feature_orchestrator.orchestrator.models import (
    AutoModeStatus,
    FeatureStatus,
    PlanSpecStatus,
    RunningAgentView,
    RunningExecution,
)
from feature_orchestrator.orchestrator.pipeline import PipelineConfigProvider
from feature_orchestrator.orchestrator.recovery import is_interrupted
from feature_orchestrator.orchestrator.scheduler import AutoLoopScheduler
from feature_orchestrator.orchestrator.store import FeatureStore, ProjectStores
from feature_orchestrator.orchestrator.worktree import (
    GitIsolationTool,
    IsolationTool,
    WorktreeInfo,
    WorktreeLocator,
)

logger = logging.getLogger(__name__)


class AutoModeService:
    """Single entry point used by the CLI; all state lives on one event loop."""

    def __init__(
        self,
        *,
        settings: Settings,
        provider: ExecutionProvider,
        isolation_tool: IsolationTool | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.settings = settings
        self.events = events or EventBus()
        self.stores = ProjectStores(settings)
        self.running: dict[str, RunningExecution] = {}
        self.approvals = ApprovalGate()
        self.failures = FailureMonitor(
            threshold=settings.failures.threshold,
            window_seconds=settings.failures.window_seconds,
            events=self.events,
            on_pause=self._on_pause,
        )
        self.worktrees = WorktreeLocator(isolation_tool or GitIsolationTool())
        self.pipelines = PipelineConfigProvider(settings.data_dir)
        self.executor = FeatureExecutor(
            settings=settings,
            stores=self.stores,
            provider=provider,
            events=self.events,
            approvals=self.approvals,
            failures=self.failures,
            worktrees=self.worktrees,
            pipelines=self.pipelines,
            running=self.running,
        )
        self.scheduler = AutoLoopScheduler(
            executor=self.executor,
            stores=self.stores,
            events=self.events,
            settings=settings.scheduler,
        )

    def store_for(self, project_path: Path) -> FeatureStore:
        return self.stores.for_project(project_path)

    # Auto loop

    def start_auto_loop(
        self,
        project_path: Path,
        max_concurrency: int | None = None,
        *,
        use_worktrees: bool | None = None,
        stop_when_idle: bool = False,
    ) -> asyncio.Task[None]:
        if self.scheduler.is_running:
            raise AutoLoopAlreadyRunningError()
        self.failures.reset()
        return self.scheduler.start(
            project_path,
            max_concurrency=max_concurrency,
            use_worktrees=use_worktrees,
            stop_when_idle=stop_when_idle,
        )

    def stop_auto_loop(self) -> int:
        return self.scheduler.stop()

    def _on_pause(self, reason: str) -> None:
        if self.scheduler.is_running:
            logger.warning("Stopping auto loop: %s", reason)
            self.scheduler.stop()

    # Single-feature operations

    async def execute_feature(
        self,
        project_path: Path,
        feature_id: str,
        *,
        use_worktrees: bool = True,
        is_auto_dispatched: bool = False,
    ) -> bool:
        return await self.executor.execute(
            project_path,
            feature_id,
            use_isolation=use_worktrees,
            is_auto_dispatched=is_auto_dispatched,
        )

    def stop_feature(self, feature_id: str) -> bool:
        return self.executor.stop_feature(feature_id)

    async def resume_feature(
        self,
        project_path: Path,
        feature_id: str,
        *,
        use_worktrees: bool = True,
    ) -> bool:
        return await self.executor.resume(project_path, feature_id, use_isolation=use_worktrees)

    async def resume_interrupted(
        self,
        project_path: Path,
        *,
        use_worktrees: bool = True,
    ) -> list[str]:
        """Resume every feature a crash left mid-run; returns the resumed ids."""

        features = await self.store_for(project_path).list_all()
        interrupted = [
            feature.id
            for feature in features
            if is_interrupted(feature) and not self.executor.is_running(feature.id)
        ]
        if not interrupted:
            return []
        logger.info("Resuming %d interrupted feature(s)", len(interrupted))
        await asyncio.gather(
            *(
                self.executor.resume(project_path, feature_id, use_isolation=use_worktrees)
                for feature_id in interrupted
            ),
        )
        return interrupted

    async def follow_up_feature(
        self,
        project_path: Path,
        feature_id: str,
        prompt: str,
        image_paths: tuple[str, ...] = (),
    ) -> bool:
        return await self.executor.follow_up(project_path, feature_id, prompt, image_paths)

    async def verify_feature(self, project_path: Path, feature_id: str) -> VerificationReport:
        return await self.executor.verify_feature(project_path, feature_id)

    async def commit_feature(self, project_path: Path, feature_id: str) -> str | None:
        return await self.executor.commit_feature(project_path, feature_id)

    async def analyze_project(self, project_path: Path) -> Path | None:
        return await self.executor.analyze_project(project_path)

    async def resolve_plan_approval(  # noqa: PLR0913
        self,
        project_path: Path,
        feature_id: str,
        approved: bool,
        edited_plan: str | None = None,
        feedback: str | None = None,
    ) -> bool:
        """Settle a pending approval, or recover one lost with the previous process."""

        if self.approvals.resolve_approval(feature_id, approved, edited_plan, feedback):
            return True

        store = self.store_for(project_path)
        feature = await store.load(feature_id)
        if feature is None:
            raise FeatureNotFoundError(feature_id)
        plan = feature.plan_spec
        if plan is None or plan.status is not PlanSpecStatus.GENERATED:
            logger.warning("No plan awaiting approval for feature %s", feature_id)
            return False
        if self.executor.is_running(feature_id):
            logger.warning("Feature %s is running but not waiting for approval", feature_id)
            return False

        if not approved and not feedback and not edited_plan:
            plan.status = PlanSpecStatus.REJECTED
            plan.reviewed_by_user = True
            feature.status = FeatureStatus.BACKLOG.value
            await store.save(feature)
            self.events.emit(
                PLAN_REJECTED,
                feature_id=feature_id,
                project_path=project_path,
                plan_version=plan.version,
            )
            return True

        logger.info("Recovering plan approval for feature %s", feature_id)
        previous = await store.read_transcript(feature_id) or ""
        self.executor.dispatch(
            project_path,
            feature_id,
            use_isolation=self.settings.scheduler.use_worktrees,
            resume_context=ResumeContext(
                previous_output=previous,
                plan_decision=ApprovalDecision(
                    approved=approved,
                    edited_plan=edited_plan,
                    feedback=feedback,
                ),
            ),
        )
        return True

    # Worktrees

    async def create_worktree(
        self,
        project_path: Path,
        branch_name: str,
        base_branch: str | None = None,
    ) -> WorktreeInfo:
        return await self.worktrees.create(project_path, branch_name, base_branch)

    async def find_worktree(self, project_path: Path, branch_name: str) -> Path | None:
        return await self.worktrees.find(project_path, branch_name)

    # Status

    def get_status(self) -> AutoModeStatus:
        running_ids = list(self.running)
        return AutoModeStatus(
            is_running=self.scheduler.is_running or bool(running_ids),
            auto_loop_running=self.scheduler.is_running,
            paused_due_to_failures=self.failures.paused,
            running_features=running_ids,
            running_count=len(running_ids),
        )

    def get_running_agents(self) -> list[RunningAgentView]:
        now = time.monotonic()
        return [
            RunningAgentView(
                feature_id=record.feature_id,
                project_path=str(record.project_path),
                project_name=record.project_path.name,
                is_auto_dispatched=record.is_auto_dispatched,
                worktree_path=str(record.worktree_path) if record.worktree_path else None,
                branch_name=record.branch_name,
                running_seconds=now - record.started_at,
            )
            for record in self.running.values()
        ]

    async def wait_for_running(self) -> None:
        tasks = [record.task for record in self.running.values() if record.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        self.scheduler.stop()
        await self.scheduler.wait()
        tasks = [record.task for record in self.running.values() if record.task is not None]
        for feature_id in list(self.running):
            self.executor.stop_feature(feature_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.close()

    def close(self) -> None:
        self.stores.close()
