from __future__ import annotations

import asyncio

import allure
import pytest

from feature_orchestrator.orchestrator.errors import ExecutionAbortedError, ProviderError
from feature_orchestrator.orchestrator.events import (
    AUTO_MODE_PAUSED_FAILURES,
    EventBus,
    RecordingListener,
)
from feature_orchestrator.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    ErrorKind,
    classify_error,
)
from feature_orchestrator.orchestrator.failure_monitor import FailureMonitor

pytestmark = [
    allure.epic("Auto Mode"),
    allure.feature("Failures & Auto-Pause"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("error", "kind", "pattern"),
    [
        (ProviderError("You exceeded your current quota"), ErrorKind.QUOTA_EXHAUSTED, "quota"),
        (ProviderError("HTTP 429 Too Many Requests"), ErrorKind.RATE_LIMIT, "too many requests"),
        (ProviderError("Invalid API key provided"), ErrorKind.AUTH, "invalid api key"),
        ("Request was aborted by the user", ErrorKind.ABORT, "aborted"),
        (RuntimeError("segmentation fault"), ErrorKind.GENERIC, None),
    ],
)
def test_classify_error_by_message(
    error: BaseException | str,
    kind: ErrorKind,
    pattern: str | None,
) -> None:
    info = classify_error(error)

    assert info.kind is kind
    assert info.matched_pattern == pattern


def test_classify_error_prefers_exception_type() -> None:
    assert classify_error(ExecutionAbortedError("quota")).kind is ErrorKind.ABORT
    assert classify_error(asyncio.CancelledError()).is_abort


@pytest.mark.parametrize(
    "message",
    [
        "connection refused on port 4290",
        "see build log line 14291",
        "feature id F1429 failed",
    ],
)
def test_embedded_429_digits_are_not_rate_limits(message: str) -> None:
    assert classify_error(ProviderError(message)).kind is ErrorKind.GENERIC


def test_standalone_429_is_a_rate_limit() -> None:
    info = classify_error(ProviderError("upstream returned status 429"))

    assert info.kind is ErrorKind.RATE_LIMIT
    assert info.matched_pattern == "429"


def test_abort_text_can_be_ignored() -> None:
    error = ProviderError("Upstream request cancelled: connection dropped")

    assert classify_error(error).kind is ErrorKind.ABORT
    assert classify_error(error, abort_by_text=False).kind is ErrorKind.GENERIC
    assert classify_error(ExecutionAbortedError("x"), abort_by_text=False).is_abort


def test_event_details_carry_version_and_type() -> None:
    info = classify_error("rate_limit_error: slow down")

    assert info.pauses_immediately
    assert info.to_event_details() == {
        "classifier_version": 1,
        "error_type": "rate_limit",
        "matched_pattern": "rate_limit",
    }


def test_monitor_pauses_on_third_failure_in_window() -> None:
    monitor = FailureMonitor(threshold=3, window_seconds=60, clock=FakeClock())

    assert monitor.record_failure(ErrorKind.GENERIC, "one") is False
    assert monitor.record_failure(ErrorKind.GENERIC, "two") is False
    assert monitor.record_failure(ErrorKind.GENERIC, "three") is True


def test_monitor_forgets_failures_outside_window() -> None:
    clock = FakeClock()
    monitor = FailureMonitor(threshold=3, window_seconds=60, clock=clock)

    monitor.record_failure(ErrorKind.GENERIC, "old")
    monitor.record_failure(ErrorKind.GENERIC, "old")
    clock.now += 61

    assert monitor.record_failure(ErrorKind.GENERIC, "fresh") is False
    assert [record.message for record in monitor.recent_failures] == ["fresh"]


def test_success_clears_failure_window() -> None:
    monitor = FailureMonitor(threshold=3, clock=FakeClock())

    monitor.record_failure(ErrorKind.GENERIC, "one")
    monitor.record_failure(ErrorKind.GENERIC, "two")
    monitor.record_success()

    assert monitor.record_failure(ErrorKind.GENERIC, "three") is False


@pytest.mark.parametrize("kind", [ErrorKind.RATE_LIMIT, ErrorKind.QUOTA_EXHAUSTED])
def test_quota_and_rate_limit_pause_immediately(kind: ErrorKind) -> None:
    monitor = FailureMonitor(threshold=3, clock=FakeClock())

    assert monitor.record_failure(kind, "limit") is True


def test_signal_pause_is_idempotent_until_reset() -> None:
    events = EventBus()
    listener = RecordingListener()
    events.subscribe(listener)
    reasons: list[str] = []
    monitor = FailureMonitor(events=events, on_pause=reasons.append, clock=FakeClock())
    monitor.record_failure(ErrorKind.QUOTA_EXHAUSTED, "quota")

    assert monitor.signal_pause("quota", project_path="/p") is True
    assert monitor.signal_pause("again") is False

    paused = listener.of_type(AUTO_MODE_PAUSED_FAILURES)
    assert len(paused) == 1
    assert paused[0].payload["error_type"] == "quota_exhausted"
    assert paused[0].payload["failure_count"] == 1
    assert reasons == ["quota"]

    monitor.reset()
    assert monitor.paused is False
    assert monitor.recent_failures == []
