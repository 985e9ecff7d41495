"""Planning-mode prompts, plan marker detection and task progress parsing."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from feature_orchestrator.orchestrator.models import (
    ParsedTask,
    PlanningMode,
    PlanSpec,
    TaskStatus,
)

SPEC_GENERATED_MARKER = "[SPEC_GENERATED]"

_TASKS_BLOCK_PATTERN = re.compile(r"```tasks\s*\n(.*?)```", re.DOTALL)
_TASK_LINE_PATTERN = re.compile(
    r"^\s*-\s*\[[ xX]\]\s*(T\d+)\s*:\s*(.+?)(?:\s*\|\s*File:\s*(.+?))?\s*$",
)
_PHASE_HEADING_PATTERN = re.compile(r"^\s*##\s*(Phase\s*\d+.*?)\s*$", re.IGNORECASE)
_PHASE_NUMBER_PATTERN = re.compile(r"Phase\s*(\d+)", re.IGNORECASE)
_MARKER_PATTERN = re.compile(
    r"\[(TASK_START|TASK_COMPLETE)\]\s*(T\d+)|\[(PHASE_COMPLETE)\]\s*(Phase\s*\d+)",
)

_TASK_FORMAT = """\
List the work as a fenced block tagged `tasks`, one task per line:

```tasks
## Phase 1: <phase name>
- [ ] T001: <what to do> | File: <path>
```
"""

_WAIT_FOR_APPROVAL = (
    f"After the plan, output {SPEC_GENERATED_MARKER} on its own line and stop. "
    "Do not implement anything until the plan is approved."
)
_PROCEED = (
    f"After the plan, output {SPEC_GENERATED_MARKER} on its own line and stop; "
    "implementation continues in the next message."
)

_MODE_INSTRUCTIONS: dict[PlanningMode, str] = {
    PlanningMode.LITE: (
        "## Planning Phase (Lite)\n\n"
        "Before writing code, outline the approach in a few bullet points: the goal, "
        "the files to touch and the order of changes.\n"
    ),
    PlanningMode.SPEC: (
        "## Specification Phase\n\n"
        "Before writing code, write a short specification: the problem, the "
        "acceptance criteria, the files to modify and a task breakdown.\n\n" + _TASK_FORMAT
    ),
    PlanningMode.FULL: (
        "## Full Specification Phase\n\n"
        "Before writing code, write a complete specification: problem statement, user "
        "story, acceptance criteria, technical context, risks, and a task breakdown "
        "grouped into phases.\n\n" + _TASK_FORMAT
    ),
}


@dataclass(slots=True, frozen=True)
class PlanReady:
    """The stream produced a complete plan; ``content`` excludes the marker."""

    content: str


@dataclass(slots=True, frozen=True)
class Continuing:
    """No plan marker yet; the agent is still working."""


PlanParseResult = PlanReady | Continuing


class MarkerKind(str, Enum):
    TASK_START = "TASK_START"
    TASK_COMPLETE = "TASK_COMPLETE"
    PHASE_COMPLETE = "PHASE_COMPLETE"


@dataclass(slots=True, frozen=True)
class ProgressMarker:
    kind: MarkerKind
    value: str


def planning_prefix(mode: PlanningMode, *, require_approval: bool) -> str:
    """Instructions placed before the feature prompt; empty for ``skip``."""

    instructions = _MODE_INSTRUCTIONS.get(mode)
    if instructions is None:
        return ""
    tail = _WAIT_FOR_APPROVAL if require_approval else _PROCEED
    return f"{instructions}\n{tail}\n\n"


def parse_plan_output(text: str) -> PlanParseResult:
    index = text.find(SPEC_GENERATED_MARKER)
    if index < 0:
        return Continuing()
    return PlanReady(content=text[:index].strip())


def parse_tasks(content: str) -> list[ParsedTask]:
    """Parse task lines from the ``tasks`` block, or from the whole text without one."""

    block = _TASKS_BLOCK_PATTERN.search(content)
    source = block.group(1) if block else content
    tasks: list[ParsedTask] = []
    phase: str | None = None
    for line in source.splitlines():
        heading = _PHASE_HEADING_PATTERN.match(line)
        if heading:
            phase = heading.group(1)
            continue
        match = _TASK_LINE_PATTERN.match(line)
        if match is None:
            continue
        task_id, description, file_path = match.groups()
        tasks.append(
            ParsedTask(
                id=task_id,
                description=description.strip(),
                file_path=file_path.strip() if file_path else None,
                phase=phase,
            ),
        )
    return tasks


def parse_progress_markers(text: str) -> list[ProgressMarker]:
    markers: list[ProgressMarker] = []
    for match in _MARKER_PATTERN.finditer(text):
        if match.group(1):
            markers.append(ProgressMarker(kind=MarkerKind(match.group(1)), value=match.group(2)))
        else:
            markers.append(ProgressMarker(kind=MarkerKind.PHASE_COMPLETE, value=match.group(4)))
    return markers


def apply_progress_marker(plan: PlanSpec, marker: ProgressMarker) -> bool:
    """Update task progress in place; False when the marker matches nothing."""

    if marker.kind is MarkerKind.PHASE_COMPLETE:
        phase_number = _phase_number(marker.value)
        changed = False
        for task in plan.tasks:
            if task.status is TaskStatus.COMPLETED or task.phase is None:
                continue
            if _phase_number(task.phase) == phase_number:
                task.status = TaskStatus.COMPLETED
                changed = True
        if changed:
            _recount(plan)
        return changed

    task = next((item for item in plan.tasks if item.id == marker.value), None)
    if task is None:
        return False
    if marker.kind is MarkerKind.TASK_START:
        task.status = TaskStatus.IN_PROGRESS
        plan.current_task_id = task.id
    else:
        task.status = TaskStatus.COMPLETED
        if plan.current_task_id == task.id:
            plan.current_task_id = None
    _recount(plan)
    return True


def _recount(plan: PlanSpec) -> None:
    plan.tasks_total = len(plan.tasks)
    plan.tasks_completed = sum(1 for task in plan.tasks if task.status is TaskStatus.COMPLETED)


def _phase_number(value: str) -> str | None:
    match = _PHASE_NUMBER_PATTERN.search(value)
    return match.group(1) if match else None
