from __future__ import annotations

import allure
from conftest import PLAN_TEXT

from feature_orchestrator.orchestrator.models import (
    Feature,
    PlanningMode,
    PlanSpec,
    TaskStatus,
)
from feature_orchestrator.orchestrator.planning import (
    SPEC_GENERATED_MARKER,
    Continuing,
    MarkerKind,
    PlanReady,
    apply_progress_marker,
    parse_plan_output,
    parse_progress_markers,
    parse_tasks,
    planning_prefix,
)
from feature_orchestrator.orchestrator.prompts import (
    build_approved_plan_prompt,
    build_revision_prompt,
    extract_title,
)

pytestmark = [
    allure.epic("Planning"),
    allure.feature("Plan Parsing & Progress"),
]


def _plan() -> PlanSpec:
    plan = PlanSpec()
    plan.replace_content(PLAN_TEXT, parse_tasks(PLAN_TEXT))
    return plan


def test_planning_prefix_by_mode() -> None:
    assert planning_prefix(PlanningMode.SKIP, require_approval=True) == ""
    lite = planning_prefix(PlanningMode.LITE, require_approval=False)
    full = planning_prefix(PlanningMode.FULL, require_approval=True)

    assert SPEC_GENERATED_MARKER in lite
    assert "```tasks" not in lite
    assert "```tasks" in full
    assert "until the plan is approved" in full


def test_parse_plan_output_splits_at_marker() -> None:
    assert isinstance(parse_plan_output("still thinking"), Continuing)

    parsed = parse_plan_output(f"{PLAN_TEXT}\n\n{SPEC_GENERATED_MARKER}\ntrailing")

    assert isinstance(parsed, PlanReady)
    assert parsed.content == PLAN_TEXT


def test_parse_tasks_reads_phases_and_files() -> None:
    tasks = parse_tasks(PLAN_TEXT)

    assert [task.id for task in tasks] == ["T001", "T002", "T003"]
    assert tasks[0].file_path == "src/model.py"
    assert tasks[0].phase == "Phase 1: Setup"
    assert tasks[2].file_path is None
    assert tasks[2].phase == "Phase 2: Polish"


def test_parse_tasks_without_block_reads_whole_text() -> None:
    tasks = parse_tasks("Intro\n- [x] T010: Already done | File: a.py\n- not a task")

    assert [(task.id, task.file_path) for task in tasks] == [("T010", "a.py")]


def test_progress_markers_update_counts() -> None:
    plan = _plan()
    markers = parse_progress_markers(
        "[TASK_START] T001 ... [TASK_COMPLETE] T001\n[TASK_START] T002",
    )

    assert [marker.kind for marker in markers] == [
        MarkerKind.TASK_START,
        MarkerKind.TASK_COMPLETE,
        MarkerKind.TASK_START,
    ]
    assert all(apply_progress_marker(plan, marker) for marker in markers)
    assert plan.tasks_completed == 1
    assert plan.tasks_total == 3
    assert plan.current_task_id == "T002"
    assert plan.tasks[1].status is TaskStatus.IN_PROGRESS


def test_phase_complete_marks_remaining_phase_tasks() -> None:
    plan = _plan()
    (marker,) = parse_progress_markers("[PHASE_COMPLETE] Phase 1")

    assert apply_progress_marker(plan, marker) is True
    assert [task.status for task in plan.tasks] == [
        TaskStatus.COMPLETED,
        TaskStatus.COMPLETED,
        TaskStatus.PENDING,
    ]
    assert apply_progress_marker(plan, marker) is False


def test_unknown_task_marker_is_ignored() -> None:
    plan = _plan()
    (marker,) = parse_progress_markers("[TASK_COMPLETE] T999")

    assert apply_progress_marker(plan, marker) is False
    assert plan.tasks_completed == 0


def test_replace_content_bumps_version() -> None:
    plan = _plan()
    plan.replace_content("v2", [])

    assert plan.version == 2
    assert plan.tasks_total == 0


def test_extract_title_truncates_first_line() -> None:
    assert extract_title("") == "Untitled Feature"
    assert extract_title("Short title\nbody") == "Short title"
    long_title = extract_title("x" * 80)
    assert len(long_title) == 60
    assert long_title.endswith("...")


def test_plan_prompts_carry_plan_and_feedback() -> None:
    feature = Feature(id="F1", description="Add login")

    approved = build_approved_plan_prompt(feature, PLAN_TEXT)
    revision = build_revision_prompt(feature, PLAN_TEXT, feedback="Split T002")

    assert "## Approved Plan" in approved
    assert "[TASK_START]" in approved
    assert "Split T002" in revision
    assert SPEC_GENERATED_MARKER in revision
