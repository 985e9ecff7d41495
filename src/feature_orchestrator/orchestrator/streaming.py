"""Consumes one provider stream into a transcript and progress events."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from feature_orchestrator.orchestrator.backend.base import (
    ExecutionProvider,
    ProviderEventKind,
    ProviderRequest,
)
from feature_orchestrator.orchestrator.errors import ExecutionAbortedError, ProviderError
from feature_orchestrator.orchestrator.events import PROGRESS, TOOL, EventBus
from feature_orchestrator.orchestrator.planning import (
    Continuing,
    PlanParseResult,
    parse_plan_output,
)
from feature_orchestrator.orchestrator.transcript import TranscriptWriter

logger = logging.getLogger(__name__)

_AUTH_FAILURE_MARKERS: tuple[str, ...] = (
    "Invalid API key",
    "authentication_failed",
    "Fix external API key",
)


@dataclass(slots=True)
class StreamOutcome:
    text: str
    result: str | None
    plan: PlanParseResult


class AgentStreamRunner:
    """Runs a provider call and mirrors its output into transcript and events."""

    def __init__(self, provider: ExecutionProvider, events: EventBus) -> None:
        self.provider = provider
        self.events = events

    async def run(
        self,
        request: ProviderRequest,
        transcript: TranscriptWriter | None,
        *,
        project_path: Path,
        stop_on_plan: bool = False,
        on_text: Callable[[str], None] | None = None,
    ) -> StreamOutcome:
        feature_id = request.feature_id
        token = request.token
        text = ""
        result: str | None = None
        plan: PlanParseResult = Continuing()

        _raise_if_cancelled(request)
        async with contextlib.aclosing(self.provider.stream(request)) as stream:
            async for event in stream:
                _raise_if_cancelled(request)
                if event.kind is ProviderEventKind.ASSISTANT_TEXT:
                    if any(marker in event.text for marker in _AUTH_FAILURE_MARKERS):
                        raise ProviderError(
                            "Authentication failed: invalid or expired API key. "
                            "Check the provider credentials or log in again.",
                        )
                    text = f"{text}\n{event.text}" if text else event.text
                    if transcript is not None:
                        transcript.append_text(event.text)
                    self.events.emit(
                        PROGRESS,
                        feature_id=feature_id,
                        project_path=project_path,
                        content=event.text,
                    )
                    if on_text is not None:
                        on_text(event.text)
                    if stop_on_plan:
                        plan = parse_plan_output(text)
                        if not isinstance(plan, Continuing):
                            logger.info("Plan marker received for feature %s", feature_id)
                            break
                elif event.kind is ProviderEventKind.TOOL_USE:
                    tool_name = event.tool_name or "unknown"
                    if transcript is not None:
                        transcript.append_tool(tool_name, event.tool_input)
                    self.events.emit(
                        TOOL,
                        feature_id=feature_id,
                        project_path=project_path,
                        tool=tool_name,
                        input=event.tool_input,
                    )
                elif event.kind is ProviderEventKind.ERROR:
                    raise ProviderError(event.text or "Unknown provider error")
                elif event.kind is ProviderEventKind.RESULT:
                    result = event.text or result
        if token is not None and token.cancelled:
            raise ExecutionAbortedError(f"Execution of {feature_id} was aborted")
        return StreamOutcome(text=text, result=result, plan=plan)


def _raise_if_cancelled(request: ProviderRequest) -> None:
    if request.token is not None and request.token.cancelled:
        raise ExecutionAbortedError(f"Execution of {request.feature_id} was aborted")
