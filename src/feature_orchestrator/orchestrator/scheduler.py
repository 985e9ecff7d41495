"""Background auto loop that dispatches eligible features under a concurrency cap."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path

from feature_orchestrator.config import SchedulerSettings
from feature_orchestrator.orchestrator.dependencies import (
    dependencies_satisfied,
    resolve_dependencies,
)
from feature_orchestrator.orchestrator.errors import AutoLoopAlreadyRunningError
from feature_orchestrator.orchestrator.events import (
    AUTO_MODE_ERROR,
    AUTO_MODE_IDLE,
    AUTO_MODE_STARTED,
    AUTO_MODE_STOPPED,
    EventBus,
)
from feature_orchestrator.orchestrator.executor import FeatureExecutor
from feature_orchestrator.orchestrator.models import READY_STATUSES, Feature
from feature_orchestrator.orchestrator.store import ProjectStores

logger = logging.getLogger(__name__)


class AutoLoopScheduler:
    """Polls the board and dispatches one eligible feature per iteration."""

    def __init__(
        self,
        *,
        executor: FeatureExecutor,
        stores: ProjectStores,
        events: EventBus,
        settings: SchedulerSettings,
    ) -> None:
        self.executor = executor
        self.stores = stores
        self.events = events
        self.settings = settings
        self.project_path: Path | None = None
        self.max_concurrency = settings.max_concurrency
        self.use_worktrees = settings.use_worktrees
        self.stop_when_idle = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(
        self,
        project_path: Path,
        *,
        max_concurrency: int | None = None,
        use_worktrees: bool | None = None,
        stop_when_idle: bool = False,
    ) -> asyncio.Task[None]:
        if self.is_running:
            raise AutoLoopAlreadyRunningError()
        self.project_path = project_path
        self.max_concurrency = max_concurrency or self.settings.max_concurrency
        self.use_worktrees = (
            self.settings.use_worktrees if use_worktrees is None else use_worktrees
        )
        self.stop_when_idle = stop_when_idle
        self._stop_event = asyncio.Event()
        self.events.emit(
            AUTO_MODE_STARTED,
            project_path=project_path,
            message=f"Auto mode started with max {self.max_concurrency} concurrent features",
        )
        self._task = asyncio.create_task(self._run_loop(), name="auto-loop")
        return self._task

    def stop(self) -> int:
        """Stop dispatching; running executions continue. Returns how many are running."""

        self._stop_event.set()
        return len(self.executor.running)

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def run_iteration(self) -> float:
        """Dispatch at most one feature and return the delay before the next iteration."""

        if self.project_path is None:
            raise RuntimeError("Auto loop has no project path.")
        if len(self.executor.running) >= self.max_concurrency:
            return self.settings.capacity_poll_seconds

        store = self.stores.for_project(self.project_path)
        features = await store.list_all()
        candidate = self._next_candidate(features)
        if candidate is None:
            self.events.emit(
                AUTO_MODE_IDLE,
                project_path=self.project_path,
                message="No eligible features - auto mode idle",
            )
            if self.stop_when_idle and not self.executor.running:
                self._stop_event.set()
            return self.settings.idle_poll_seconds

        logger.info("Dispatching feature %s", candidate.id)
        self.executor.dispatch(
            self.project_path,
            candidate.id,
            use_isolation=self.use_worktrees,
            is_auto_dispatched=True,
        )
        return self.settings.dispatch_poll_seconds

    def _next_candidate(self, features: list[Feature]) -> Feature | None:
        ready = [feature for feature in features if feature.status in READY_STATUSES]
        ordered = resolve_dependencies(ready).ordered
        for feature in ordered:
            if self.executor.is_running(feature.id):
                continue
            if dependencies_satisfied(feature, features):
                return feature
        return None

    async def _run_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    delay = await self.run_iteration()
                except Exception as error:  # noqa: BLE001
                    logger.exception("Auto loop iteration failed")
                    self.events.emit(
                        AUTO_MODE_ERROR,
                        project_path=self.project_path,
                        error=str(error),
                        error_type="loop",
                    )
                    delay = self.settings.error_backoff_seconds
                await self._sleep(delay)
        finally:
            self.events.emit(
                AUTO_MODE_STOPPED,
                project_path=self.project_path,
                message="Auto mode stopped",
            )

    async def _sleep(self, seconds: float) -> None:
        if self._stop_event.is_set():
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
