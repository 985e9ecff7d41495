"""Prompt builders for feature execution, continuation and pipeline steps."""

from __future__ import annotations

from pathlib import Path

from feature_orchestrator.orchestrator.models import Feature, PipelineStep
from feature_orchestrator.orchestrator.planning import SPEC_GENERATED_MARKER

_TITLE_MAX_CHARS = 60

_IMPLEMENTATION_INSTRUCTIONS = """\
## Instructions

Implement this feature by:
1. First, explore the codebase to understand the existing structure
2. Plan your implementation approach
3. Write the necessary code changes
4. Add or update tests as needed
5. Ensure the code follows existing patterns and conventions

When done, summarize what you implemented and any notes for the developer."""

_TASK_PROGRESS_INSTRUCTIONS = """\
Work through the tasks in order. Before starting a task output `[TASK_START] <task id>`,
after finishing it output `[TASK_COMPLETE] <task id>`, and after the last task of a phase
output `[PHASE_COMPLETE] Phase <n>`."""

PROJECT_ANALYSIS_PROMPT = """\
Analyze this project and provide a summary of:
1. Project structure and architecture
2. Main technologies and frameworks used
3. Key components and their responsibilities
4. Build and test commands
5. Any existing conventions or patterns

Format your response as a structured markdown document."""


def extract_title(description: str) -> str:
    """First line of the description, truncated with an ellipsis."""

    if not description or not description.strip():
        return "Untitled Feature"
    first_line = description.strip().splitlines()[0].strip()
    if len(first_line) <= _TITLE_MAX_CHARS:
        return first_line
    return first_line[: _TITLE_MAX_CHARS - 3] + "..."


def feature_title(feature: Feature) -> str:
    return feature.title or extract_title(feature.description)


def build_feature_summary(feature: Feature, *, project_path: Path | None = None) -> str:
    lines = [
        "## Feature Implementation Task",
        "",
        f"**Feature ID:** {feature.id}",
        f"**Title:** {feature_title(feature)}",
        f"**Description:** {feature.description}",
    ]
    if feature.category:
        lines.append(f"**Category:** {feature.category}")
    if feature.image_paths:
        lines.extend(
            [
                "",
                "**Context Images Attached:**",
                f"The user has attached {len(feature.image_paths)} image(s) for context. "
                "Read them before implementing:",
                "",
            ],
        )
        for index, image_path in enumerate(
            resolve_image_paths(feature.image_paths, project_path),
            start=1,
        ):
            lines.append(f"   {index}. {Path(image_path).name}")
            lines.append(f"      Path: {image_path}")
    return "\n".join(lines) + "\n"


def build_feature_prompt(
    feature: Feature,
    *,
    planning_prefix: str = "",
    context_files: list[tuple[str, str]] | None = None,
    project_path: Path | None = None,
) -> str:
    parts = []
    context = build_context_prefix(context_files or [])
    if context:
        parts.append(context)
    if planning_prefix:
        parts.append(planning_prefix)
    parts.append(build_feature_summary(feature, project_path=project_path))
    parts.append(_IMPLEMENTATION_INSTRUCTIONS)
    return "\n".join(parts)


def build_context_prefix(context_files: list[tuple[str, str]]) -> str:
    if not context_files:
        return ""
    sections = ["## Project Context", ""]
    for name, content in context_files:
        sections.append(f"### {name}")
        sections.append("")
        sections.append(content.strip())
        sections.append("")
    return "\n".join(sections) + "\n"


def build_continuation_prompt(feature: Feature, previous_output: str) -> str:
    return (
        "## Continuing Feature Implementation\n\n"
        f"{build_feature_summary(feature)}\n"
        "## Previous Context\n"
        "The following is the output from a previous implementation attempt. "
        "Continue from where you left off:\n\n"
        f"{previous_output}\n\n"
        "## Instructions\n"
        "Review the previous work and continue the implementation. If the feature "
        "appears complete, verify it works correctly."
    )


def build_approved_plan_prompt(feature: Feature, plan_content: str) -> str:
    return (
        f"{build_feature_summary(feature)}\n"
        "## Approved Plan\n\n"
        f"{plan_content}\n\n"
        "## Instructions\n"
        "The plan above is approved. Implement it now.\n"
        f"{_TASK_PROGRESS_INSTRUCTIONS}\n\n"
        "When done, summarize what you implemented."
    )


def build_revision_prompt(
    feature: Feature,
    plan_content: str,
    *,
    feedback: str | None,
) -> str:
    feedback_section = feedback.strip() if feedback and feedback.strip() else "(none)"
    return (
        f"{build_feature_summary(feature)}\n"
        "## Current Plan\n\n"
        f"{plan_content}\n\n"
        "## Reviewer Feedback\n\n"
        f"{feedback_section}\n\n"
        "## Instructions\n"
        "Revise the plan to address the feedback. Keep the same task format. "
        f"Output {SPEC_GENERATED_MARKER} on its own line after the revised plan and stop."
    )


def build_pipeline_step_prompt(feature: Feature, step: PipelineStep, transcript: str) -> str:
    return (
        f"{build_feature_summary(feature)}\n"
        "## Work So Far\n\n"
        f"{transcript}\n\n"
        f"## Pipeline Step: {step.name}\n\n"
        f"{step.instructions}\n"
    )


def build_follow_up_prompt(
    feature: Feature | None,
    feature_id: str,
    instructions: str,
    previous_output: str | None,
) -> str:
    header = build_feature_summary(feature) if feature else f"**Feature ID:** {feature_id}\n"
    prompt = f"## Follow-up on Feature Implementation\n\n{header}"
    if previous_output:
        prompt += (
            "\n## Previous Agent Work\n"
            "The following is the output from the previous implementation attempt:\n\n"
            f"{previous_output}\n"
        )
    prompt += (
        "\n## Follow-up Instructions\n"
        f"{instructions}\n\n"
        "## Task\n"
        "Address the follow-up instructions above. Review the previous work and make "
        "the requested changes or fixes."
    )
    return prompt


def resolve_image_paths(image_paths: list[str], project_path: Path | None) -> list[str]:
    resolved: list[str] = []
    for raw in image_paths:
        if not raw:
            continue
        path = Path(raw)
        if not path.is_absolute() and project_path is not None:
            path = project_path / path
        resolved.append(str(path))
    return resolved
