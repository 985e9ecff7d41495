"""Feature execution state machine: planning, approval, implementation, pipeline."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from feature_orchestrator.config import Settings
from feature_orchestrator.orchestrator.approval import ApprovalDecision, ApprovalGate
from feature_orchestrator.orchestrator.backend.base import ExecutionProvider, ProviderRequest
from feature_orchestrator.orchestrator.errors import (
    ExecutionAbortedError,
    FeatureBusyError,
    FeatureNotFoundError,
    IsolationToolError,
    PlanRejectedError,
)
from feature_orchestrator.orchestrator.events import (
    AUTO_MODE_ERROR,
    FEATURE_COMPLETE,
    FEATURE_RESUMING,
    FEATURE_START,
    PHASE_COMPLETE,
    PLAN_APPROVAL_REQUIRED,
    PLAN_APPROVED,
    PLAN_AUTO_APPROVED,
    PLAN_REJECTED,
    PLAN_REVISION_REQUESTED,
    PLANNING_STARTED,
    TASK_COMPLETE,
    TASK_STARTED,
    EventBus,
)
from feature_orchestrator.orchestrator.failure_classifier import classify_error
from feature_orchestrator.orchestrator.failure_monitor import FailureMonitor
from feature_orchestrator.orchestrator.models import (
    CancellationToken,
    Feature,
    FeatureStatus,
    PipelineStep,
    PlanningMode,
    PlanSpec,
    PlanSpecStatus,
    RunningExecution,
    terminal_status,
)
from feature_orchestrator.orchestrator.pipeline import PipelineConfigProvider, PipelineStepRunner
from feature_orchestrator.orchestrator.planning import (
    MarkerKind,
    PlanReady,
    apply_progress_marker,
    parse_progress_markers,
    parse_tasks,
    planning_prefix,
)
from feature_orchestrator.orchestrator.prompts import (
    PROJECT_ANALYSIS_PROMPT,
    build_approved_plan_prompt,
    build_continuation_prompt,
    build_feature_prompt,
    build_follow_up_prompt,
    build_revision_prompt,
    feature_title,
    resolve_image_paths,
)
from feature_orchestrator.orchestrator.recovery import ResumeAction, decide_resume
from feature_orchestrator.orchestrator.store import FeatureStore, ProjectStores
from feature_orchestrator.orchestrator.streaming import AgentStreamRunner
from feature_orchestrator.orchestrator.transcript import TranscriptWriter
from feature_orchestrator.orchestrator.worktree import CommandResult, WorktreeLocator
from feature_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Feature stopped by user"
ANALYSIS_TOOLS = ("Read", "Glob", "Grep")

_MARKER_EVENTS = {
    MarkerKind.TASK_START: TASK_STARTED,
    MarkerKind.TASK_COMPLETE: TASK_COMPLETE,
    MarkerKind.PHASE_COMPLETE: PHASE_COMPLETE,
}


@dataclass(slots=True)
class ResumeContext:
    """How a run picks up prior work instead of starting from the feature prompt."""

    prompt: str | None = None
    previous_output: str = ""
    pipeline_steps: list[PipelineStep] | None = None
    plan_decision: ApprovalDecision | None = None


@dataclass(slots=True)
class VerificationCheck:
    command: str
    passed: bool
    output: str = ""


@dataclass(slots=True)
class VerificationReport:
    passed: bool
    checks: list[VerificationCheck] = field(default_factory=list)


class FeatureExecutor:
    """Drives one feature at a time through its lifecycle; many may run concurrently."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        stores: ProjectStores,
        provider: ExecutionProvider,
        events: EventBus,
        approvals: ApprovalGate,
        failures: FailureMonitor,
        worktrees: WorktreeLocator,
        pipelines: PipelineConfigProvider,
        running: dict[str, RunningExecution] | None = None,
    ) -> None:
        self.settings = settings
        self.stores = stores
        self.events = events
        self.approvals = approvals
        self.failures = failures
        self.worktrees = worktrees
        self.pipelines = pipelines
        self.running: dict[str, RunningExecution] = running if running is not None else {}
        self.stream_runner = AgentStreamRunner(provider, events)
        self.pipeline_runner = PipelineStepRunner(stream_runner=self.stream_runner, events=events)

    # Registration

    def is_running(self, feature_id: str) -> bool:
        return feature_id in self.running

    def _register(
        self,
        project_path: Path,
        feature_id: str,
        *,
        is_auto_dispatched: bool,
    ) -> RunningExecution:
        if feature_id in self.running:
            raise FeatureBusyError(feature_id)
        record = RunningExecution(
            feature_id=feature_id,
            project_path=project_path,
            worktree_path=None,
            branch_name=None,
            token=CancellationToken(),
            is_auto_dispatched=is_auto_dispatched,
            started_at=time.monotonic(),
        )
        self.running[feature_id] = record
        return record

    def _release(self, record: RunningExecution) -> None:
        if self.running.get(record.feature_id) is record:
            del self.running[record.feature_id]

    def dispatch(
        self,
        project_path: Path,
        feature_id: str,
        *,
        use_isolation: bool = True,
        is_auto_dispatched: bool = False,
        resume_context: ResumeContext | None = None,
    ) -> RunningExecution:
        """Register synchronously and run the execution as a background task."""

        record = self._register(project_path, feature_id, is_auto_dispatched=is_auto_dispatched)
        record.task = asyncio.create_task(
            self._run_registered(
                record,
                use_isolation=use_isolation,
                resume_context=resume_context,
            ),
            name=f"feature-{feature_id}",
        )
        return record

    async def execute(
        self,
        project_path: Path,
        feature_id: str,
        *,
        use_isolation: bool = True,
        is_auto_dispatched: bool = False,
        resume_context: ResumeContext | None = None,
    ) -> bool:
        """Run one feature to a terminal state; returns whether it passed."""

        record = self._register(project_path, feature_id, is_auto_dispatched=is_auto_dispatched)
        return await self._run_registered(
            record,
            use_isolation=use_isolation,
            resume_context=resume_context,
        )

    def stop_feature(self, feature_id: str) -> bool:
        record = self.running.pop(feature_id, None)
        if record is None:
            return False
        record.token.cancel()
        self.approvals.cancel(feature_id)
        logger.info("Stop requested for feature %s", feature_id)
        return True

    # Main flow

    async def _run_registered(
        self,
        record: RunningExecution,
        *,
        use_isolation: bool,
        resume_context: ResumeContext | None,
    ) -> bool:
        async def _body(store: FeatureStore) -> bool:
            if resume_context is None and await store.transcript_exists(record.feature_id):
                _raise_if_stopped(record)
                logger.info("Transcript exists for %s, resuming instead", record.feature_id)
                return await self._resume_registered(store, record, use_isolation)
            return await self._implement(store, record, use_isolation, resume_context)

        return await self._run_guarded(record, _body)

    async def _implement(
        self,
        store: FeatureStore,
        record: RunningExecution,
        use_isolation: bool,
        resume_context: ResumeContext | None,
    ) -> bool:
        project_path = record.project_path
        feature = await self._load(store, record.feature_id)
        work_dir = await self._resolve_work_dir(project_path, feature, use_isolation, record)
        _raise_if_stopped(record)
        await self._set_status(store, feature, FeatureStatus.IN_PROGRESS.value)
        self._emit_start(feature, record)

        model = feature.model or self.settings.provider.default_model
        transcript = TranscriptWriter(
            store,
            feature.id,
            debounce_seconds=self.settings.provider.transcript_debounce_seconds,
            initial=resume_context.previous_output if resume_context else "",
        )
        try:
            if resume_context is not None and resume_context.pipeline_steps is not None:
                steps = resume_context.pipeline_steps
            else:
                await self._run_agent_phase(
                    store,
                    feature,
                    record,
                    transcript=transcript,
                    work_dir=work_dir,
                    model=model,
                    resume_context=resume_context,
                )
                config = self.pipelines.get(project_path)
                steps = config.sorted_steps() if config is not None else []

            if steps:
                await self.pipeline_runner.run_steps(
                    store=store,
                    feature=feature,
                    steps=steps,
                    work_dir=work_dir,
                    project_path=project_path,
                    transcript=transcript,
                    token=record.token,
                    model=model,
                )
            await transcript.flush()
        finally:
            await transcript.close()

        _raise_if_stopped(record)
        await self._set_status(store, feature, terminal_status(skip_tests=feature.skip_tests))
        self.failures.record_success()
        elapsed = time.monotonic() - record.started_at
        self.events.emit(
            FEATURE_COMPLETE,
            feature_id=feature.id,
            project_path=project_path,
            passes=True,
            message=f"Feature completed in {elapsed:.0f}s",
        )
        return True

    async def _run_agent_phase(  # noqa: PLR0913
        self,
        store: FeatureStore,
        feature: Feature,
        record: RunningExecution,
        *,
        transcript: TranscriptWriter,
        work_dir: Path,
        model: str,
        resume_context: ResumeContext | None,
    ) -> None:
        project_path = record.project_path

        def _request(prompt: str) -> ProviderRequest:
            return ProviderRequest(
                prompt=prompt,
                model=model,
                work_dir=work_dir,
                feature_id=feature.id,
                token=record.token,
                image_paths=tuple(resolve_image_paths(feature.image_paths, project_path)),
            )

        if resume_context is not None and resume_context.plan_decision is not None:
            content = await self._review_plan(
                store,
                feature,
                project_path,
                transcript=transcript,
                request_for=_request,
                first_decision=resume_context.plan_decision,
            )
            await self._implement_plan(store, feature, project_path, transcript, _request, content)
            return

        if resume_context is not None and resume_context.prompt is not None:
            await self.stream_runner.run(
                _request(resume_context.prompt),
                transcript,
                project_path=project_path,
                on_text=self._progress_tracker(feature, project_path),
            )
            await self._save_plan_progress(store, feature)
            return

        planning = feature.planning_mode is not PlanningMode.SKIP
        context_files = await store.load_context_files()
        prompt = build_feature_prompt(
            feature,
            planning_prefix=planning_prefix(
                feature.planning_mode,
                require_approval=feature.require_plan_approval,
            ),
            context_files=context_files,
            project_path=project_path,
        )
        if not planning:
            await self.stream_runner.run(_request(prompt), transcript, project_path=project_path)
            return

        self.events.emit(
            PLANNING_STARTED,
            feature_id=feature.id,
            project_path=project_path,
            mode=feature.planning_mode.value,
        )
        plan = feature.plan_spec or PlanSpec()
        plan.status = PlanSpecStatus.GENERATING
        feature.plan_spec = plan
        await store.save(feature)

        outcome = await self.stream_runner.run(
            _request(prompt),
            transcript,
            project_path=project_path,
            stop_on_plan=True,
        )
        if not isinstance(outcome.plan, PlanReady):
            logger.info("No plan marker from %s, treating output as implementation", feature.id)
            plan.status = PlanSpecStatus.APPROVED
            await store.save(feature)
            return

        await self._store_generated_plan(store, feature, outcome.plan.content)
        if feature.require_plan_approval:
            content = await self._review_plan(
                store,
                feature,
                project_path,
                transcript=transcript,
                request_for=_request,
            )
        else:
            plan.status = PlanSpecStatus.APPROVED
            plan.approved_at = utc_now().isoformat()
            await store.save(feature)
            self.events.emit(
                PLAN_AUTO_APPROVED,
                feature_id=feature.id,
                project_path=project_path,
                plan_content=plan.content,
                planning_mode=feature.planning_mode.value,
            )
            content = plan.content
        await self._implement_plan(store, feature, project_path, transcript, _request, content)

    async def _implement_plan(  # noqa: PLR0913
        self,
        store: FeatureStore,
        feature: Feature,
        project_path: Path,
        transcript: TranscriptWriter,
        request_for: Callable[[str], ProviderRequest],
        content: str,
    ) -> None:
        transcript.append_heading("Implementation")
        await self.stream_runner.run(
            request_for(build_approved_plan_prompt(feature, content)),
            transcript,
            project_path=project_path,
            on_text=self._progress_tracker(feature, project_path),
        )
        await self._save_plan_progress(store, feature)

    async def _review_plan(  # noqa: PLR0913
        self,
        store: FeatureStore,
        feature: Feature,
        project_path: Path,
        *,
        transcript: TranscriptWriter,
        request_for: Callable[[str], ProviderRequest],
        first_decision: ApprovalDecision | None = None,
    ) -> str:
        """Wait for approval, revising the plan on every rejection with feedback or edits."""

        plan = feature.plan_spec
        if plan is None:
            raise ExecutionAbortedError(f"Feature {feature.id} has no plan to review")
        decision = first_decision
        while True:
            if decision is None:
                self.events.emit(
                    PLAN_APPROVAL_REQUIRED,
                    feature_id=feature.id,
                    project_path=project_path,
                    plan_content=plan.content,
                    planning_mode=feature.planning_mode.value,
                    plan_version=plan.version,
                )
                decision = await self.approvals.wait_for_approval(feature.id)

            if decision.approved:
                if decision.edited_plan and decision.edited_plan != plan.content:
                    plan.replace_content(decision.edited_plan, parse_tasks(decision.edited_plan))
                plan.status = PlanSpecStatus.APPROVED
                plan.reviewed_by_user = True
                plan.approved_at = utc_now().isoformat()
                await store.save(feature)
                self.events.emit(
                    PLAN_APPROVED,
                    feature_id=feature.id,
                    project_path=project_path,
                    has_edits=bool(decision.edited_plan),
                    plan_version=plan.version,
                )
                return plan.content

            if not decision.feedback and not decision.edited_plan:
                plan.status = PlanSpecStatus.REJECTED
                plan.reviewed_by_user = True
                await store.save(feature)
                self.events.emit(
                    PLAN_REJECTED,
                    feature_id=feature.id,
                    project_path=project_path,
                    plan_version=plan.version,
                )
                raise PlanRejectedError(f"Plan for {feature.id} was rejected")

            plan.status = PlanSpecStatus.GENERATING
            plan.reviewed_by_user = True
            await store.save(feature)
            self.events.emit(
                PLAN_REVISION_REQUESTED,
                feature_id=feature.id,
                project_path=project_path,
                feedback=decision.feedback,
                has_edits=bool(decision.edited_plan),
                plan_version=plan.version,
            )
            transcript.append_heading(f"Plan Revision {plan.version + 1}")
            outcome = await self.stream_runner.run(
                request_for(
                    build_revision_prompt(
                        feature,
                        decision.edited_plan or plan.content,
                        feedback=decision.feedback,
                    ),
                ),
                transcript,
                project_path=project_path,
                stop_on_plan=True,
            )
            revised = (
                outcome.plan.content if isinstance(outcome.plan, PlanReady) else outcome.text
            ).strip()
            await self._store_generated_plan(store, feature, revised or plan.content)
            decision = None

    async def _store_generated_plan(
        self,
        store: FeatureStore,
        feature: Feature,
        content: str,
    ) -> None:
        plan = feature.plan_spec or PlanSpec()
        plan.replace_content(content, parse_tasks(content))
        plan.status = PlanSpecStatus.GENERATED
        plan.generated_at = utc_now().isoformat()
        feature.plan_spec = plan
        await store.save(feature)

    def _progress_tracker(self, feature: Feature, project_path: Path) -> Callable[[str], None]:
        def _on_text(text: str) -> None:
            plan = feature.plan_spec
            if plan is None or not plan.tasks:
                return
            for marker in parse_progress_markers(text):
                if not apply_progress_marker(plan, marker):
                    continue
                details: dict[str, object] = {
                    "tasks_completed": plan.tasks_completed,
                    "tasks_total": plan.tasks_total,
                }
                if marker.kind is MarkerKind.PHASE_COMPLETE:
                    details["phase"] = marker.value
                else:
                    details["task_id"] = marker.value
                self.events.emit(
                    _MARKER_EVENTS[marker.kind],
                    feature_id=feature.id,
                    project_path=project_path,
                    **details,
                )

        return _on_text

    async def _save_plan_progress(self, store: FeatureStore, feature: Feature) -> None:
        if feature.plan_spec is not None and feature.plan_spec.tasks:
            await store.save(feature)

    # Resume

    async def resume(
        self,
        project_path: Path,
        feature_id: str,
        *,
        use_isolation: bool = True,
        is_auto_dispatched: bool = False,
    ) -> bool:
        record = self._register(project_path, feature_id, is_auto_dispatched=is_auto_dispatched)

        async def _body(store: FeatureStore) -> bool:
            return await self._resume_registered(store, record, use_isolation)

        return await self._run_guarded(record, _body)

    async def _resume_registered(
        self,
        store: FeatureStore,
        record: RunningExecution,
        use_isolation: bool,
    ) -> bool:
        project_path = record.project_path
        feature_id = record.feature_id
        feature = await self._load(store, feature_id)
        has_transcript = await store.transcript_exists(feature_id)
        _raise_if_stopped(record)
        decision = decide_resume(
            feature,
            has_transcript=has_transcript,
            pipeline_config=self.pipelines.get(project_path),
        )
        logger.info("Resuming feature %s: %s", feature_id, decision.reason)
        self.events.emit(
            FEATURE_RESUMING,
            feature_id=feature_id,
            project_path=project_path,
            action=decision.action.value,
            reason=decision.reason,
        )

        if decision.action is ResumeAction.START_FRESH:
            return await self._implement(store, record, use_isolation, None)

        if decision.action is ResumeAction.COMPLETE_STALE_PIPELINE:
            await self._set_status(
                store,
                feature,
                terminal_status(skip_tests=feature.skip_tests),
            )
            self.events.emit(
                FEATURE_COMPLETE,
                feature_id=feature_id,
                project_path=project_path,
                passes=True,
                message=f"Pipeline step {decision.step_id} no longer exists, "
                "feature completed",
            )
            return True

        previous = await store.read_transcript(feature_id) or ""
        if decision.action is ResumeAction.RESUME_PIPELINE:
            context = ResumeContext(
                previous_output=previous,
                pipeline_steps=decision.remaining_steps,
            )
        else:
            context = ResumeContext(
                prompt=build_continuation_prompt(feature, previous),
                previous_output=previous,
            )
        return await self._implement(store, record, use_isolation, context)

    # Follow-up, verification, commit, analysis

    async def follow_up(
        self,
        project_path: Path,
        feature_id: str,
        instructions: str,
        image_paths: tuple[str, ...] = (),
    ) -> bool:
        record = self._register(project_path, feature_id, is_auto_dispatched=False)

        async def _body(store: FeatureStore) -> bool:
            feature = await self._load(store, feature_id)
            if image_paths:
                copied = await asyncio.to_thread(
                    store.workdir.copy_images,
                    feature_id,
                    list(image_paths),
                )
                feature.image_paths = [*feature.image_paths, *copied]
                await store.save(feature)
            work_dir = await self._existing_work_dir(project_path, feature)
            record.worktree_path = work_dir if work_dir != project_path else None
            record.branch_name = feature.branch_name
            previous = await store.read_transcript(feature_id)

            await self._set_status(store, feature, FeatureStatus.IN_PROGRESS.value)
            self._emit_start(feature, record)
            transcript = TranscriptWriter(
                store,
                feature_id,
                debounce_seconds=self.settings.provider.transcript_debounce_seconds,
                initial=previous or "",
            )
            transcript.append_heading("Follow-up")
            transcript.append_text(instructions)
            try:
                await self.stream_runner.run(
                    ProviderRequest(
                        prompt=build_follow_up_prompt(feature, feature_id, instructions, previous),
                        model=feature.model or self.settings.provider.default_model,
                        work_dir=work_dir,
                        feature_id=feature_id,
                        token=record.token,
                        image_paths=tuple(
                            resolve_image_paths(feature.image_paths, project_path),
                        ),
                    ),
                    transcript,
                    project_path=project_path,
                )
                await transcript.flush()
            finally:
                await transcript.close()

            await self._set_status(store, feature, FeatureStatus.WAITING_APPROVAL.value)
            self.failures.record_success()
            self.events.emit(
                FEATURE_COMPLETE,
                feature_id=feature_id,
                project_path=project_path,
                passes=True,
                message="Follow-up completed successfully",
            )
            return True

        return await self._run_guarded(record, _body)

    async def verify_feature(self, project_path: Path, feature_id: str) -> VerificationReport:
        """Run the configured check commands in the feature's work dir, stopping on failure."""

        store = self.stores.for_project(project_path)
        feature = await self._load(store, feature_id)
        work_dir = await self._existing_work_dir(project_path, feature)
        report = VerificationReport(passed=True)
        for command in self.settings.verification.commands:
            check = await _run_check(
                command,
                work_dir,
                timeout_seconds=self.settings.verification.timeout_seconds,
            )
            report.checks.append(check)
            if not check.passed:
                report.passed = False
                break

        failed = next((check for check in report.checks if not check.passed), None)
        self.events.emit(
            FEATURE_COMPLETE,
            feature_id=feature_id,
            project_path=project_path,
            passes=report.passed,
            message=(
                "All verification checks passed"
                if failed is None
                else f"Verification failed: {failed.command}"
            ),
        )
        return report

    async def commit_feature(self, project_path: Path, feature_id: str) -> str | None:
        """Stage and commit work-dir changes; None when there is nothing to commit."""

        store = self.stores.for_project(project_path)
        feature = await self._load(store, feature_id)
        work_dir = await self._existing_work_dir(project_path, feature)
        tool = self.worktrees.tool

        status = await tool.run(work_dir, "status", "--porcelain")
        _check_command(status, "git status")
        if not status.stdout.strip():
            logger.info("Nothing to commit for feature %s", feature_id)
            return None

        message = (
            f"feat: {feature_title(feature)}\n\nImplemented by feature-orchestrator auto mode"
        )
        _check_command(await tool.run(work_dir, "add", "-A"), "git add")
        _check_command(await tool.run(work_dir, "commit", "-m", message), "git commit")
        head = await tool.run(work_dir, "rev-parse", "HEAD")
        _check_command(head, "git rev-parse")
        commit_hash = head.stdout.strip()
        self.events.emit(
            FEATURE_COMPLETE,
            feature_id=feature_id,
            project_path=project_path,
            passes=True,
            message=f"Changes committed: {commit_hash[:8]}",
        )
        return commit_hash

    async def analyze_project(self, project_path: Path) -> Path | None:
        """Summarize the project with a read-only agent pass into ``project-analysis.md``.

        Failures are reported as ``auto_mode_error`` events and yield None; they
        do not count toward the auto-pause window.
        """

        analysis_id = f"analysis-{int(time.time() * 1000)}"
        self.events.emit(
            FEATURE_START,
            feature_id=analysis_id,
            project_path=project_path,
            feature={
                "id": analysis_id,
                "title": "Project Analysis",
                "description": "Analyzing project structure",
            },
            is_auto_dispatched=False,
        )
        store = self.stores.for_project(project_path)
        try:
            outcome = await self.stream_runner.run(
                ProviderRequest(
                    prompt=PROJECT_ANALYSIS_PROMPT,
                    model=self.settings.provider.default_model,
                    work_dir=project_path,
                    feature_id=analysis_id,
                    token=CancellationToken(),
                    allowed_tools=ANALYSIS_TOOLS,
                ),
                None,
                project_path=project_path,
            )
            path = await store.write_analysis(outcome.result or outcome.text)
        except Exception as error:  # noqa: BLE001
            logger.exception("Project analysis failed for %s", project_path)
            info = classify_error(error, abort_by_text=False)
            self.events.emit(
                AUTO_MODE_ERROR,
                feature_id=analysis_id,
                project_path=project_path,
                error=info.message,
                **info.to_event_details(),
            )
            return None

        self.events.emit(
            FEATURE_COMPLETE,
            feature_id=analysis_id,
            project_path=project_path,
            passes=True,
            message="Project analysis completed",
        )
        return path

    # Shared plumbing

    async def _run_guarded(
        self,
        record: RunningExecution,
        body: Callable[[FeatureStore], Awaitable[bool]],
    ) -> bool:
        project_path = record.project_path
        feature_id = record.feature_id
        store = self.stores.for_project(project_path)
        try:
            return await body(store)
        except PlanRejectedError:
            logger.info("Plan rejected for feature %s, moving back to backlog", feature_id)
            await store.update_status(feature_id, FeatureStatus.BACKLOG.value)
            self.events.emit(
                FEATURE_COMPLETE,
                feature_id=feature_id,
                project_path=project_path,
                passes=False,
                message="Plan rejected",
            )
            return False
        except ExecutionAbortedError:
            self._emit_stopped(record)
            return False
        except asyncio.CancelledError:
            self._emit_stopped(record)
            raise
        except Exception as error:  # noqa: BLE001
            if record.token.cancelled:
                self._emit_stopped(record)
                return False
            info = classify_error(error, abort_by_text=False)
            logger.exception("Feature %s failed", feature_id)
            await self._mark_failed(store, feature_id, info.message)
            self.events.emit(
                AUTO_MODE_ERROR,
                feature_id=feature_id,
                project_path=project_path,
                error=info.message,
                **info.to_event_details(),
            )
            if self.failures.record_failure(info.kind, info.message):
                self.failures.signal_pause(
                    f"{info.kind.value}: {info.message}",
                    project_path=str(project_path),
                )
            return False
        finally:
            self._release(record)

    def _emit_stopped(self, record: RunningExecution) -> None:
        self.approvals.cancel(record.feature_id)
        logger.info("Feature %s stopped", record.feature_id)
        self.events.emit(
            FEATURE_COMPLETE,
            feature_id=record.feature_id,
            project_path=record.project_path,
            passes=False,
            message=STOPPED_MESSAGE,
        )

    async def _mark_failed(self, store: FeatureStore, feature_id: str, message: str) -> None:
        feature = await store.load(feature_id)
        if feature is None:
            return
        feature.status = FeatureStatus.BACKLOG.value
        feature.error = message
        await store.save(feature)

    async def _load(self, store: FeatureStore, feature_id: str) -> Feature:
        feature = await store.load(feature_id)
        if feature is None:
            raise FeatureNotFoundError(feature_id)
        return feature

    async def _set_status(self, store: FeatureStore, feature: Feature, status: str) -> None:
        updated = await store.update_status(feature.id, status)
        feature.status = status
        if updated is not None:
            feature.error = updated.error
            feature.started_at = updated.started_at
            feature.just_finished_at = updated.just_finished_at
            feature.updated_at = updated.updated_at

    async def _resolve_work_dir(
        self,
        project_path: Path,
        feature: Feature,
        use_isolation: bool,
        record: RunningExecution,
    ) -> Path:
        record.branch_name = feature.branch_name
        if not use_isolation or not feature.branch_name:
            return project_path
        found = await self.worktrees.find(project_path, feature.branch_name)
        if found is None:
            logger.warning(
                "Worktree for branch %s not found, using project path %s",
                feature.branch_name,
                project_path,
            )
            return project_path
        record.worktree_path = found
        if feature.worktree_path != str(found):
            feature.worktree_path = str(found)
            store = self.stores.for_project(project_path)
            await store.save(feature)
        return found

    async def _existing_work_dir(self, project_path: Path, feature: Feature) -> Path:
        if feature.worktree_path and Path(feature.worktree_path).is_dir():
            return Path(feature.worktree_path)
        if feature.branch_name:
            found = await self.worktrees.find(project_path, feature.branch_name)
            if found is not None:
                return found
        return project_path

    def _emit_start(self, feature: Feature, record: RunningExecution) -> None:
        self.events.emit(
            FEATURE_START,
            feature_id=feature.id,
            project_path=record.project_path,
            feature={
                "id": feature.id,
                "title": feature_title(feature),
                "description": feature.description,
            },
            is_auto_dispatched=record.is_auto_dispatched,
        )


def _raise_if_stopped(record: RunningExecution) -> None:
    if record.token.cancelled:
        raise ExecutionAbortedError(f"Execution of {record.feature_id} was aborted")


def _check_command(result: CommandResult, command: str) -> None:
    if result.returncode != 0:
        raise IsolationToolError(
            f"{command} failed: {result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )


async def _run_check(command: str, work_dir: Path, *, timeout_seconds: int) -> VerificationCheck:
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=str(work_dir),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        process.kill()
        await process.wait()
        return VerificationCheck(
            command=command,
            passed=False,
            output=f"Timed out after {timeout_seconds}s",
        )
    output = stdout.decode("utf-8", errors="replace")
    return VerificationCheck(command=command, passed=process.returncode == 0, output=output)
