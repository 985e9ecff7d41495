from __future__ import annotations

from pathlib import Path

import allure
import pytest
from conftest import PLAN_TEXT, ScriptedProvider, add_feature, answer_approvals, result, text

from feature_orchestrator.orchestrator.events import (
    AUTO_MODE_ERROR,
    FEATURE_COMPLETE,
    PHASE_COMPLETE,
    PLAN_APPROVAL_REQUIRED,
    PLAN_APPROVED,
    PLAN_AUTO_APPROVED,
    PLAN_REJECTED,
    PLAN_REVISION_REQUESTED,
    PLANNING_STARTED,
    TASK_COMPLETE,
    TASK_STARTED,
)
from feature_orchestrator.orchestrator.models import (
    FeatureStatus,
    PlanningMode,
    PlanSpec,
    PlanSpecStatus,
    TaskStatus,
)
from feature_orchestrator.orchestrator.planning import SPEC_GENERATED_MARKER, parse_tasks

pytestmark = [
    allure.epic("Planning"),
    allure.feature("Plan Approval Flow"),
]

REVISED_PLAN = """\
## Revised Plan

```tasks
## Phase 1: Setup
- [ ] T001: Create the model and route together | File: src/app.py
```"""


def _plan_output(content: str = PLAN_TEXT) -> list:
    return [text(f"{content}\n\n{SPEC_GENERATED_MARKER}")]


def _implementation_output() -> list:
    return [
        text("[TASK_START] T001"),
        text("[TASK_COMPLETE] T001\n[TASK_START] T002"),
        text("[TASK_COMPLETE] T002\n[PHASE_COMPLETE] Phase 1"),
        result(),
    ]


@pytest.mark.asyncio
async def test_plan_is_auto_approved_and_progress_tracked(
    make_service,
    project_path: Path,
) -> None:
    provider = ScriptedProvider(_plan_output(), _implementation_output())
    service, listener = make_service(provider)
    await add_feature(service, project_path, "F1", planning_mode=PlanningMode.SPEC)

    assert await service.execute_feature(project_path, "F1") is True

    feature = await service.store_for(project_path).load("F1")
    assert feature is not None and feature.plan_spec is not None
    plan = feature.plan_spec
    assert plan.status is PlanSpecStatus.APPROVED
    assert plan.version == 1
    assert plan.reviewed_by_user is False
    assert plan.tasks_completed == 2
    assert plan.tasks_total == 3
    assert [task.status for task in plan.tasks][-1] is TaskStatus.PENDING
    assert feature.status == FeatureStatus.VERIFIED.value
    assert provider.calls == 2
    assert "## Specification Phase" in provider.requests[0].prompt
    assert "## Approved Plan" in provider.requests[1].prompt
    assert len(listener.of_type(PLANNING_STARTED)) == 1
    assert len(listener.of_type(PLAN_AUTO_APPROVED)) == 1
    assert [event.payload["task_id"] for event in listener.of_type(TASK_STARTED)] == [
        "T001",
        "T002",
    ]
    assert listener.of_type(TASK_COMPLETE)[-1].payload["tasks_completed"] == 2
    assert listener.of_type(PHASE_COMPLETE)[0].payload["phase"] == "Phase 1"
    assert listener.of_type(PLAN_APPROVAL_REQUIRED) == []


@pytest.mark.asyncio
async def test_output_without_marker_counts_as_implementation(
    make_service,
    project_path: Path,
) -> None:
    provider = ScriptedProvider([text("Just did it"), result()])
    service, _ = make_service(provider)
    await add_feature(service, project_path, "F1", planning_mode=PlanningMode.LITE)

    assert await service.execute_feature(project_path, "F1") is True

    feature = await service.store_for(project_path).load("F1")
    assert feature is not None and feature.plan_spec is not None
    assert feature.plan_spec.status is PlanSpecStatus.APPROVED
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_feedback_revises_plan_once_per_round(make_service, project_path: Path) -> None:
    provider = ScriptedProvider(
        _plan_output(),
        _plan_output(REVISED_PLAN),
        [text("Implemented"), result()],
    )
    service, listener = make_service(provider)
    asked = answer_approvals(
        service,
        (False, "Merge T001 and T002", None),
        (True, None, None),
    )
    await add_feature(
        service,
        project_path,
        "F1",
        planning_mode=PlanningMode.FULL,
        require_plan_approval=True,
    )

    assert await service.execute_feature(project_path, "F1") is True

    feature = await service.store_for(project_path).load("F1")
    assert feature is not None and feature.plan_spec is not None
    plan = feature.plan_spec
    assert provider.calls == 3
    assert "Merge T001 and T002" in provider.requests[1].prompt
    assert REVISED_PLAN in provider.requests[2].prompt
    assert [event.payload["plan_version"] for event in asked] == [1, 2]
    assert plan.version == 2
    assert plan.content == REVISED_PLAN
    assert plan.status is PlanSpecStatus.APPROVED
    assert plan.reviewed_by_user is True
    assert plan.approved_at is not None
    assert [task.id for task in plan.tasks] == ["T001"]
    assert len(listener.of_type(PLAN_REVISION_REQUESTED)) == 1
    assert listener.of_type(PLAN_APPROVED)[0].payload["plan_version"] == 2


@pytest.mark.asyncio
async def test_approval_with_edits_stores_new_version(make_service, project_path: Path) -> None:
    provider = ScriptedProvider(_plan_output(), [text("Implemented"), result()])
    service, listener = make_service(provider)
    answer_approvals(service, (True, None, REVISED_PLAN))
    await add_feature(
        service,
        project_path,
        "F1",
        planning_mode=PlanningMode.SPEC,
        require_plan_approval=True,
    )

    assert await service.execute_feature(project_path, "F1") is True

    feature = await service.store_for(project_path).load("F1")
    assert feature is not None and feature.plan_spec is not None
    assert feature.plan_spec.version == 2
    assert feature.plan_spec.content == REVISED_PLAN
    assert provider.calls == 2
    assert REVISED_PLAN in provider.requests[1].prompt
    assert listener.of_type(PLAN_APPROVED)[0].payload["has_edits"] is True


@pytest.mark.asyncio
async def test_plain_rejection_returns_feature_to_backlog(
    make_service,
    project_path: Path,
) -> None:
    provider = ScriptedProvider(_plan_output())
    service, listener = make_service(provider)
    answer_approvals(service, (False, None, None))
    await add_feature(
        service,
        project_path,
        "F1",
        planning_mode=PlanningMode.SPEC,
        require_plan_approval=True,
    )

    assert await service.execute_feature(project_path, "F1") is False

    feature = await service.store_for(project_path).load("F1")
    assert feature is not None and feature.plan_spec is not None
    assert feature.status == FeatureStatus.BACKLOG.value
    assert feature.plan_spec.status is PlanSpecStatus.REJECTED
    assert feature.plan_spec.version == 1
    assert provider.calls == 1
    assert len(listener.of_type(PLAN_REJECTED)) == 1
    assert listener.of_type(FEATURE_COMPLETE)[-1].payload["message"] == "Plan rejected"
    assert listener.of_type(AUTO_MODE_ERROR) == []
    assert service.failures.recent_failures == []


async def _park_generated_plan(service, project_path: Path) -> None:
    feature = await add_feature(
        service,
        project_path,
        "F1",
        planning_mode=PlanningMode.SPEC,
        require_plan_approval=True,
        status=FeatureStatus.IN_PROGRESS.value,
    )
    plan = PlanSpec(status=PlanSpecStatus.GENERATED)
    plan.replace_content(PLAN_TEXT, parse_tasks(PLAN_TEXT))
    feature.plan_spec = plan
    store = service.store_for(project_path)
    await store.save(feature)
    await store.write_transcript("F1", f"Drafting a plan\n\n{PLAN_TEXT}")


@pytest.mark.asyncio
async def test_approval_after_restart_continues_with_plan(
    make_service,
    project_path: Path,
) -> None:
    provider = ScriptedProvider(_implementation_output())
    service, listener = make_service(provider)
    await _park_generated_plan(service, project_path)

    assert await service.resolve_plan_approval(project_path, "F1", True) is True
    assert service.executor.is_running("F1")
    await service.wait_for_running()

    feature = await service.store_for(project_path).load("F1")
    transcript = await service.store_for(project_path).read_transcript("F1")
    assert feature is not None and feature.plan_spec is not None
    assert feature.status == FeatureStatus.VERIFIED.value
    assert feature.plan_spec.status is PlanSpecStatus.APPROVED
    assert feature.plan_spec.version == 1
    assert feature.plan_spec.tasks_completed == 2
    assert provider.calls == 1
    assert "## Approved Plan" in provider.requests[0].prompt
    assert transcript is not None and transcript.startswith("Drafting a plan")
    assert len(listener.of_type(PLAN_APPROVED)) == 1


@pytest.mark.asyncio
async def test_feedback_after_restart_revises_then_waits_again(
    make_service,
    project_path: Path,
) -> None:
    provider = ScriptedProvider(_plan_output(REVISED_PLAN), [text("Implemented"), result()])
    service, _ = make_service(provider)
    asked = answer_approvals(service, (True, None, None))
    await _park_generated_plan(service, project_path)

    assert await service.resolve_plan_approval(
        project_path,
        "F1",
        False,
        feedback="One task is enough",
    )
    await service.wait_for_running()

    feature = await service.store_for(project_path).load("F1")
    assert feature is not None and feature.plan_spec is not None
    assert provider.calls == 2
    assert "One task is enough" in provider.requests[0].prompt
    assert [event.payload["plan_version"] for event in asked] == [2]
    assert feature.plan_spec.version == 2
    assert feature.status == FeatureStatus.VERIFIED.value


@pytest.mark.asyncio
async def test_rejection_after_restart_needs_no_agent(make_service, project_path: Path) -> None:
    provider = ScriptedProvider()
    service, listener = make_service(provider)
    await _park_generated_plan(service, project_path)

    assert await service.resolve_plan_approval(project_path, "F1", False) is True

    feature = await service.store_for(project_path).load("F1")
    assert feature is not None and feature.plan_spec is not None
    assert feature.status == FeatureStatus.BACKLOG.value
    assert feature.plan_spec.status is PlanSpecStatus.REJECTED
    assert provider.calls == 0
    assert service.running == {}
    assert len(listener.of_type(PLAN_REJECTED)) == 1


@pytest.mark.asyncio
async def test_resolve_without_generated_plan_is_refused(
    make_service,
    project_path: Path,
) -> None:
    service, _ = make_service()
    await add_feature(service, project_path, "F1")

    assert await service.resolve_plan_approval(project_path, "F1", True) is False
    assert service.running == {}
