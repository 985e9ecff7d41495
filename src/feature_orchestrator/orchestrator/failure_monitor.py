"""Sliding-window failure tracking that pauses the auto loop."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from feature_orchestrator.orchestrator.events import AUTO_MODE_PAUSED_FAILURES, EventBus
from feature_orchestrator.orchestrator.failure_classifier import (
    PAUSE_IMMEDIATELY_KINDS,
    ErrorKind,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FailureRecord:
    timestamp: float
    kind: ErrorKind
    message: str


class FailureMonitor:
    """Counts recent failures and signals a single pause when the threshold is hit.

    ``rate_limit`` and ``quota_exhausted`` failures request a pause on their
    own. Once paused, further pause signals are ignored until ``reset``.
    """

    def __init__(
        self,
        *,
        threshold: int = 3,
        window_seconds: float = 60.0,
        events: EventBus | None = None,
        on_pause: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.events = events
        self.on_pause = on_pause
        self._clock = clock
        self._failures: deque[FailureRecord] = deque()
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def recent_failures(self) -> list[FailureRecord]:
        self._prune(self._clock())
        return list(self._failures)

    def record_failure(self, kind: ErrorKind, message: str) -> bool:
        """Append one failure; True when the auto loop should pause."""

        now = self._clock()
        self._failures.append(FailureRecord(timestamp=now, kind=kind, message=message))
        self._prune(now)
        if kind in PAUSE_IMMEDIATELY_KINDS:
            return True
        return len(self._failures) >= self.threshold

    def record_success(self) -> None:
        self._failures.clear()

    def signal_pause(self, reason: str, *, project_path: str | None = None) -> bool:
        if self._paused:
            return False
        self._paused = True
        failures = list(self._failures)
        logger.warning(
            "Pausing auto mode after %d failure(s): %s",
            len(failures),
            reason,
        )
        if self.events is not None:
            self.events.emit(
                AUTO_MODE_PAUSED_FAILURES,
                project_path=project_path,
                message=reason,
                failure_count=len(failures),
                error_type=failures[-1].kind.value if failures else None,
            )
        if self.on_pause is not None:
            self.on_pause(reason)
        return True

    def reset(self) -> None:
        self._failures.clear()
        self._paused = False

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._failures and self._failures[0].timestamp < cutoff:
            self._failures.popleft()
