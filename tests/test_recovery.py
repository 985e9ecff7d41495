from __future__ import annotations

import allure
import pytest

from feature_orchestrator.orchestrator.models import (
    Feature,
    PipelineConfig,
    PipelineStep,
)
from feature_orchestrator.orchestrator.pipeline import parse_pipeline_config
from feature_orchestrator.orchestrator.recovery import (
    ResumeAction,
    decide_resume,
    is_interrupted,
)

pytestmark = [
    allure.epic("Recovery"),
    allure.feature("Resume Decisions"),
]


def _config() -> PipelineConfig:
    return PipelineConfig(
        steps=[
            PipelineStep(id="docs", name="Docs", order=2, instructions="Write docs"),
            PipelineStep(id="review", name="Review", order=1, instructions="Review code"),
        ],
    )


def test_no_transcript_starts_fresh() -> None:
    feature = Feature(id="F1", description="d", status="pipeline_review")

    decision = decide_resume(feature, has_transcript=False, pipeline_config=_config())

    assert decision.action is ResumeAction.START_FRESH


def test_transcript_without_pipeline_status_continues() -> None:
    feature = Feature(id="F1", description="d", status="in_progress")

    decision = decide_resume(feature, has_transcript=True, pipeline_config=_config())

    assert decision.action is ResumeAction.CONTINUE


def test_pipeline_status_resumes_from_current_step() -> None:
    feature = Feature(id="F1", description="d", status="pipeline_review")

    decision = decide_resume(feature, has_transcript=True, pipeline_config=_config())

    assert decision.action is ResumeAction.RESUME_PIPELINE
    assert [step.id for step in decision.remaining_steps] == ["review", "docs"]


@pytest.mark.parametrize("config", [None, PipelineConfig()])
def test_removed_step_completes_stale_pipeline(config: PipelineConfig | None) -> None:
    feature = Feature(id="F1", description="d", status="pipeline_security")

    decision = decide_resume(feature, has_transcript=True, pipeline_config=config)

    assert decision.action is ResumeAction.COMPLETE_STALE_PIPELINE
    assert decision.step_id == "security"


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        ("in_progress", True),
        ("pipeline_review", True),
        ("pipeline_", False),
        ("backlog", False),
        ("waiting_approval", False),
    ],
)
def test_is_interrupted(status: str, expected: bool) -> None:
    assert is_interrupted(Feature(id="F1", description="d", status=status)) is expected


def test_parse_pipeline_config_skips_malformed_steps() -> None:
    config = parse_pipeline_config(
        {
            "version": 2,
            "steps": [
                {"id": "lint", "order": 5, "instructions": "Run the linter"},
                {"name": "no id"},
                "garbage",
                {"id": "review", "name": "Review", "order": 0},
            ],
        },
    )

    assert config.version == 2
    assert [step.id for step in config.sorted_steps()] == ["review", "lint"]
    assert config.find_step("lint").name == "lint"  # type: ignore[union-attr]

    with pytest.raises(ValueError, match="JSON object"):
        parse_pipeline_config(["not", "a", "dict"])
