"""Fire-and-forget event fan-out for orchestrator state transitions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

AUTO_MODE_STARTED = "auto_mode_started"
AUTO_MODE_STOPPED = "auto_mode_stopped"
AUTO_MODE_IDLE = "auto_mode_idle"
AUTO_MODE_PAUSED_FAILURES = "auto_mode_paused_failures"
AUTO_MODE_ERROR = "auto_mode_error"
FEATURE_START = "auto_mode_feature_start"
FEATURE_COMPLETE = "auto_mode_feature_complete"
PROGRESS = "auto_mode_progress"
TOOL = "auto_mode_tool"
TASK_STARTED = "auto_mode_task_started"
TASK_COMPLETE = "auto_mode_task_complete"
PHASE_COMPLETE = "auto_mode_phase_complete"
PLANNING_STARTED = "planning_started"
PLAN_APPROVAL_REQUIRED = "plan_approval_required"
PLAN_APPROVED = "plan_approved"
PLAN_AUTO_APPROVED = "plan_auto_approved"
PLAN_REJECTED = "plan_rejected"
PLAN_REVISION_REQUESTED = "plan_revision_requested"
PIPELINE_STEP_STARTED = "pipeline_step_started"
PIPELINE_STEP_COMPLETE = "pipeline_step_complete"
FEATURE_RESUMING = "auto_mode_feature_resuming"


@dataclass(slots=True)
class OrchestratorEvent:
    """One emitted event; ``payload`` carries ``feature_id``/``project_path`` when known."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.payload}


EventListener = Callable[[OrchestratorEvent], None]


class EventBus:
    """Synchronous observer list; listener failures are logged and dropped."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(
        self,
        event_type: str,
        *,
        feature_id: str | None = None,
        project_path: Path | str | None = None,
        **details: Any,
    ) -> OrchestratorEvent:
        payload: dict[str, Any] = {}
        if feature_id is not None:
            payload["feature_id"] = feature_id
        if project_path is not None:
            payload["project_path"] = str(project_path)
        payload.update(details)
        event = OrchestratorEvent(type=event_type, payload=payload)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event listener failed for %s", event_type)
        return event


class RecordingListener:
    """Keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[OrchestratorEvent] = []

    def __call__(self, event: OrchestratorEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.type for event in self.events]

    def of_type(self, event_type: str) -> list[OrchestratorEvent]:
        return [event for event in self.events if event.type == event_type]
