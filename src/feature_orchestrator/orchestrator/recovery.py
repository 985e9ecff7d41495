"""Classification of how an interrupted feature should be resumed."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from feature_orchestrator.orchestrator.models import (
    Feature,
    FeatureStatus,
    PipelineConfig,
    PipelineStep,
    is_pipeline_status,
    pipeline_step_id,
)


class ResumeAction(str, Enum):
    START_FRESH = "start_fresh"
    CONTINUE = "continue"
    COMPLETE_STALE_PIPELINE = "complete_stale_pipeline"
    RESUME_PIPELINE = "resume_pipeline"


@dataclass(slots=True)
class ResumeDecision:
    action: ResumeAction
    reason: str
    step_id: str | None = None
    remaining_steps: list[PipelineStep] = field(default_factory=list)


RESUMABLE_STATUSES = frozenset({FeatureStatus.IN_PROGRESS.value})


def decide_resume(
    feature: Feature,
    *,
    has_transcript: bool,
    pipeline_config: PipelineConfig | None,
) -> ResumeDecision:
    """Pick the resume action from status, transcript presence and current pipeline."""

    if not has_transcript:
        return ResumeDecision(action=ResumeAction.START_FRESH, reason="no previous transcript")

    step_id = pipeline_step_id(feature.status)
    if step_id is None:
        return ResumeDecision(action=ResumeAction.CONTINUE, reason="transcript found")

    ordered = pipeline_config.sorted_steps() if pipeline_config is not None else []
    position = next((index for index, step in enumerate(ordered) if step.id == step_id), None)
    if position is None:
        return ResumeDecision(
            action=ResumeAction.COMPLETE_STALE_PIPELINE,
            reason=f"pipeline step {step_id} is no longer configured",
            step_id=step_id,
        )
    return ResumeDecision(
        action=ResumeAction.RESUME_PIPELINE,
        reason=f"resuming pipeline from step {step_id}",
        step_id=step_id,
        remaining_steps=ordered[position:],
    )


def is_interrupted(feature: Feature) -> bool:
    """True for statuses a crashed run leaves behind."""

    return feature.status in RESUMABLE_STATUSES or is_pipeline_status(feature.status)
