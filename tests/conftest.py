"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path

import pytest

from feature_orchestrator.config import (
    ProviderSettings,
    SchedulerSettings,
    Settings,
    VerificationSettings,
)
from feature_orchestrator.orchestrator.backend.base import (
    ProviderEvent,
    ProviderEventKind,
    ProviderRequest,
)
from feature_orchestrator.orchestrator.events import (
    PLAN_APPROVAL_REQUIRED,
    OrchestratorEvent,
    RecordingListener,
)
from feature_orchestrator.orchestrator.models import Feature, FeatureCreate
from feature_orchestrator.orchestrator.service import AutoModeService
from feature_orchestrator.orchestrator.worktree import CommandResult

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m feature_orchestrator.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file} --model {model}"
)

PLAN_TEXT = """\
## Plan

```tasks
## Phase 1: Setup
- [ ] T001: Create the model | File: src/model.py
- [ ] T002: Add the route | File: src/routes.py
## Phase 2: Polish
- [ ] T003: Write docs
```"""


def text(value: str) -> ProviderEvent:
    return ProviderEvent(kind=ProviderEventKind.ASSISTANT_TEXT, text=value)


def tool(name: str, **tool_input: object) -> ProviderEvent:
    return ProviderEvent(kind=ProviderEventKind.TOOL_USE, tool_name=name, tool_input=tool_input)


def result(value: str = "Done.") -> ProviderEvent:
    return ProviderEvent(kind=ProviderEventKind.RESULT, text=value)


def error(value: str) -> ProviderEvent:
    return ProviderEvent(kind=ProviderEventKind.ERROR, text=value, is_error=True)


class ScriptedProvider:
    """Replays one scripted event list per call and records every request.

    With ``hang=True`` each call blocks after its events until the request's
    cancellation token fires.
    """

    def __init__(self, *scripts: list[ProviderEvent], hang: bool = False) -> None:
        self.scripts = list(scripts)
        self.requests: list[ProviderRequest] = []
        self.hang = hang

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else [text("Implemented."), result()]
        for event in script:
            yield event
        if self.hang and request.token is not None:
            await request.token.wait()


class FakeIsolationTool:
    """Records git invocations and answers them from a prefix table."""

    def __init__(self, responses: dict[tuple[str, ...], CommandResult] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[tuple[str, ...]] = []

    async def run(self, project_path: Path, *args: str) -> CommandResult:
        self.calls.append(args)
        for prefix, response in self.responses.items():
            if args[: len(prefix)] == prefix:
                return response
        return CommandResult(returncode=0, stdout="", stderr="")


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        scheduler=SchedulerSettings(
            max_concurrency=2,
            capacity_poll_seconds=0.01,
            idle_poll_seconds=0.01,
            dispatch_poll_seconds=0.01,
            error_backoff_seconds=0.01,
            use_worktrees=False,
        ),
        provider=ProviderSettings(transcript_debounce_seconds=0.0),
        verification=VerificationSettings(commands=("true",), timeout_seconds=5),
    )


@pytest.fixture()
def project_path(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture()
def make_service(
    settings: Settings,
) -> Iterator[Callable[..., tuple[AutoModeService, RecordingListener]]]:
    services: list[AutoModeService] = []

    def _make(
        provider: ScriptedProvider | None = None,
        isolation_tool: FakeIsolationTool | None = None,
    ) -> tuple[AutoModeService, RecordingListener]:
        service = AutoModeService(
            settings=settings,
            provider=provider or ScriptedProvider(),
            isolation_tool=isolation_tool or FakeIsolationTool(),
        )
        listener = RecordingListener()
        service.events.subscribe(listener)
        services.append(service)
        return service, listener

    yield _make
    for service in services:
        service.close()


async def add_feature(
    service: AutoModeService,
    project_path: Path,
    feature_id: str,
    **fields: object,
) -> Feature:
    store = service.store_for(project_path)
    return await store.create(
        FeatureCreate(
            description=str(fields.pop("description", f"Implement {feature_id}")),
            feature_id=feature_id,
            **fields,  # type: ignore[arg-type]
        ),
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


def answer_approvals(
    service: AutoModeService,
    *decisions: tuple[bool, str | None, str | None],
) -> list[OrchestratorEvent]:
    """Answer each approval request with the next ``(approved, feedback, edited_plan)``.

    The answer is scheduled for the next loop tick because the request event is
    emitted just before the execution starts waiting.
    """

    queue = list(decisions)
    asked: list[OrchestratorEvent] = []

    def _listener(event: OrchestratorEvent) -> None:
        if event.type != PLAN_APPROVAL_REQUIRED:
            return
        asked.append(event)
        approved, feedback, edited_plan = queue.pop(0)
        asyncio.get_running_loop().call_soon(
            service.approvals.resolve_approval,
            event.payload["feature_id"],
            approved,
            edited_plan,
            feedback,
        )

    service.events.subscribe(_listener)
    return asked
