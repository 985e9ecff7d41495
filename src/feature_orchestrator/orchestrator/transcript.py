"""Debounced transcript accumulation for one feature execution."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from feature_orchestrator.orchestrator.store import FeatureStore

logger = logging.getLogger(__name__)


class TranscriptWriter:
    """Accumulates agent output and persists it at most once per debounce window."""

    def __init__(
        self,
        store: FeatureStore,
        feature_id: str,
        *,
        debounce_seconds: float = 0.5,
        initial: str = "",
    ) -> None:
        self.store = store
        self.feature_id = feature_id
        self.debounce_seconds = debounce_seconds
        self._content = initial
        self._dirty = False
        self._pending: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def content(self) -> str:
        return self._content

    def append_text(self, text: str) -> None:
        if not text:
            return
        if self._content and not self._content.endswith("\n\n"):
            self._content += "\n\n" if not self._content.endswith("\n") else "\n"
        self._content += text
        self._mark_dirty()

    def append_tool(self, tool_name: str, tool_input: dict[str, Any] | None = None) -> None:
        line = f"[tool] {tool_name}"
        if tool_input:
            line += f" {json.dumps(tool_input, ensure_ascii=False, default=str)[:200]}"
        if self._content and not self._content.endswith("\n"):
            self._content += "\n"
        self._content += line + "\n"
        self._mark_dirty()

    def append_heading(self, heading: str) -> None:
        self.append_text(f"---\n\n## {heading}\n")

    async def flush(self) -> None:
        pending = self._pending
        self._pending = None
        # A debounced flush that already holds the lock is writing; let it finish.
        writing = self._lock.locked()
        if pending is not None and pending is not asyncio.current_task() and not writing:
            pending.cancel()
        async with self._lock:
            if not self._dirty:
                return
            self._dirty = False
            await self.store.write_transcript(self.feature_id, self._content)

    async def close(self) -> None:
        try:
            await self.flush()
        except OSError:
            logger.exception("Failed to flush transcript of feature %s", self.feature_id)

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._pending is None or self._pending.done():
            self._pending = asyncio.create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        try:
            await self.flush()
        except OSError:
            logger.exception("Debounced transcript flush failed for %s", self.feature_id)
