"""Subprocess-based provider for CLI agents speaking stream-json."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shlex
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from feature_orchestrator.orchestrator.backend.base import (
    ProviderEvent,
    ProviderEventKind,
    ProviderRequest,
)
from feature_orchestrator.orchestrator.errors import ProviderError

logger = logging.getLogger(__name__)

_STREAM_LINE_LIMIT = 16 * 1024 * 1024
_TERMINATE_GRACE_SECONDS = 2.0


class CliAgentProvider:
    """Run the configured command template and translate its stdout into events."""

    def __init__(self, command_template: str) -> None:
        self.command_template = command_template

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        with tempfile.TemporaryDirectory(prefix="feature-orchestrator-") as tmp_dir:
            prompt_file = Path(tmp_dir) / "prompt.md"
            prompt_file.write_text(request.prompt, "utf-8")
            run_args = _build_run_args(
                command_template=self.command_template,
                model=request.model,
                prompt=request.prompt,
                prompt_file=prompt_file,
                allowed_tools=request.allowed_tools,
            )

            env = os.environ.copy()
            env["FEATURE_ORCHESTRATOR_MODEL"] = request.model
            if request.feature_id is not None:
                env["FEATURE_ORCHESTRATOR_FEATURE_ID"] = request.feature_id
            if request.image_paths:
                env["FEATURE_ORCHESTRATOR_IMAGE_PATHS"] = os.pathsep.join(request.image_paths)
            if request.allowed_tools:
                env["FEATURE_ORCHESTRATOR_ALLOWED_TOOLS"] = ",".join(request.allowed_tools)

            try:
                process = await asyncio.create_subprocess_exec(
                    *run_args,
                    cwd=str(request.work_dir),
                    env=env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=_STREAM_LINE_LIMIT,
                )
            except FileNotFoundError as error:
                raise ProviderError(
                    f"CLI provider command not found: {run_args[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise ProviderError(
                    f"CLI provider failed to start: {error}",
                    transient=True,
                ) from error

            assert process.stdout is not None
            assert process.stderr is not None
            stderr_task = asyncio.create_task(process.stderr.read())
            watcher: asyncio.Task[None] | None = None
            if request.token is not None:
                watcher = asyncio.create_task(_terminate_on_cancel(process, request.token.wait()))
            try:
                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if not line:
                        continue
                    for event in parse_stream_line(line):
                        yield event
                returncode = await process.wait()
                stderr = (await stderr_task).decode("utf-8", errors="replace")
                if request.token is not None and request.token.cancelled:
                    return
                if returncode != 0:
                    message = stderr.strip() or f"CLI provider exited with code {returncode}"
                    yield ProviderEvent(kind=ProviderEventKind.ERROR, text=message, is_error=True)
            finally:
                if watcher is not None:
                    watcher.cancel()
                if process.returncode is None:
                    await _terminate_process(process)
                if not stderr_task.done():
                    stderr_task.cancel()


def parse_stream_line(line: str) -> list[ProviderEvent]:
    """Translate one stream-json line; non-JSON lines are plain assistant text."""

    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return [ProviderEvent(kind=ProviderEventKind.ASSISTANT_TEXT, text=line)]
    if not isinstance(payload, dict):
        return [ProviderEvent(kind=ProviderEventKind.ASSISTANT_TEXT, text=line)]

    message_type = payload.get("type")
    if message_type == "assistant":
        return _assistant_events(payload.get("message") or {})
    if message_type == "result":
        is_error = bool(payload.get("is_error")) or payload.get("subtype") not in (None, "success")
        text = str(payload.get("result") or "")
        if is_error:
            return [
                ProviderEvent(
                    kind=ProviderEventKind.ERROR,
                    text=text or str(payload.get("subtype") or "Unknown error"),
                    is_error=True,
                ),
            ]
        return [ProviderEvent(kind=ProviderEventKind.RESULT, text=text)]
    if message_type == "error":
        error = payload.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        return [
            ProviderEvent(
                kind=ProviderEventKind.ERROR,
                text=str(error or "Unknown error"),
                is_error=True,
            ),
        ]
    return []


def _assistant_events(message: dict[str, Any]) -> list[ProviderEvent]:
    events: list[ProviderEvent] = []
    content = message.get("content") or []
    if isinstance(content, str):
        return [ProviderEvent(kind=ProviderEventKind.ASSISTANT_TEXT, text=content)]
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and block.get("text"):
            events.append(
                ProviderEvent(kind=ProviderEventKind.ASSISTANT_TEXT, text=str(block["text"])),
            )
        elif block_type == "tool_use":
            tool_input = block.get("input")
            events.append(
                ProviderEvent(
                    kind=ProviderEventKind.TOOL_USE,
                    tool_name=str(block.get("name") or "unknown"),
                    tool_input=tool_input if isinstance(tool_input, dict) else {},
                ),
            )
    return events


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    allowed_tools: tuple[str, ...] = (),
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ProviderError("CLI provider command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ProviderError(
            "CLI provider command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            allowed_tools=shlex.quote(",".join(allowed_tools)),
        )
    except KeyError as error:
        raise ProviderError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProviderError(
            "CLI provider command template rendered empty command.",
            transient=False,
        )
    return argv


async def _terminate_on_cancel(process: asyncio.subprocess.Process, cancelled: Any) -> None:
    await cancelled
    logger.info("Cancellation requested, terminating provider process %s", process.pid)
    await _terminate_process(process)


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
