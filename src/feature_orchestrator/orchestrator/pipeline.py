"""Post-implementation pipeline: config loading and sequential step execution."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path

from feature_orchestrator.orchestrator.backend.base import ProviderRequest
from feature_orchestrator.orchestrator.errors import (
    ExecutionAbortedError,
    PipelineStepError,
    ProviderError,
)
from feature_orchestrator.orchestrator.events import (
    PIPELINE_STEP_COMPLETE,
    PIPELINE_STEP_STARTED,
    EventBus,
)
from feature_orchestrator.orchestrator.models import (
    CancellationToken,
    Feature,
    PipelineConfig,
    PipelineStep,
    pipeline_status,
)
from feature_orchestrator.orchestrator.prompts import build_pipeline_step_prompt
from feature_orchestrator.orchestrator.store import FeatureStore
from feature_orchestrator.orchestrator.streaming import AgentStreamRunner
from feature_orchestrator.orchestrator.transcript import TranscriptWriter
from feature_orchestrator.orchestrator.workdir import PIPELINE_FILE_NAME

logger = logging.getLogger(__name__)


class PipelineConfigProvider:
    """Reads ``pipeline.json`` from the project data directory."""

    def __init__(self, data_dir_for: Callable[[Path], Path]) -> None:
        self._data_dir_for = data_dir_for

    def get(self, project_path: Path) -> PipelineConfig | None:
        path = self._data_dir_for(project_path) / PIPELINE_FILE_NAME
        if not path.is_file():
            return None
        try:
            raw = json.loads(path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Ignoring unreadable pipeline config %s: %s", path, error)
            return None
        return parse_pipeline_config(raw)


def parse_pipeline_config(raw: object) -> PipelineConfig:
    if not isinstance(raw, dict):
        raise ValueError("Pipeline config must be a JSON object.")
    steps: list[PipelineStep] = []
    for index, item in enumerate(raw.get("steps") or []):
        if not isinstance(item, dict) or not item.get("id"):
            logger.warning("Skipping malformed pipeline step at index %d", index)
            continue
        step_id = str(item["id"])
        steps.append(
            PipelineStep(
                id=step_id,
                name=str(item.get("name") or step_id),
                order=int(item.get("order", index)),
                instructions=str(item.get("instructions") or ""),
            ),
        )
    return PipelineConfig(steps=steps, version=int(raw.get("version", 1)))


class PipelineStepRunner:
    """Runs pipeline steps in ascending order against one shared transcript."""

    def __init__(
        self,
        *,
        stream_runner: AgentStreamRunner,
        events: EventBus,
    ) -> None:
        self.stream_runner = stream_runner
        self.events = events

    async def run_steps(  # noqa: PLR0913
        self,
        *,
        store: FeatureStore,
        feature: Feature,
        steps: list[PipelineStep],
        work_dir: Path,
        project_path: Path,
        transcript: TranscriptWriter,
        token: CancellationToken,
        model: str,
    ) -> None:
        ordered = sorted(steps, key=lambda step: step.order)
        for index, step in enumerate(ordered):
            if token.cancelled:
                raise ExecutionAbortedError(f"Execution of {feature.id} was aborted")
            await store.update_status(feature.id, pipeline_status(step.id))
            feature.status = pipeline_status(step.id)
            self.events.emit(
                PIPELINE_STEP_STARTED,
                feature_id=feature.id,
                project_path=project_path,
                step_id=step.id,
                step_name=step.name,
                step_index=index,
                total_steps=len(ordered),
            )
            transcript.append_heading(f"Pipeline Step: {step.name}")
            request = ProviderRequest(
                prompt=build_pipeline_step_prompt(feature, step, transcript.content),
                model=model,
                work_dir=work_dir,
                feature_id=feature.id,
                token=token,
            )
            try:
                await self.stream_runner.run(request, transcript, project_path=project_path)
            except ProviderError as error:
                raise PipelineStepError(step.id, str(error)) from error
            await transcript.flush()
            self.events.emit(
                PIPELINE_STEP_COMPLETE,
                feature_id=feature.id,
                project_path=project_path,
                step_id=step.id,
                step_name=step.name,
                step_index=index,
                total_steps=len(ordered),
            )
            logger.info("Pipeline step %s finished for feature %s", step.id, feature.id)
