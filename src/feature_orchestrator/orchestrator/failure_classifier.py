"""Deterministic execution failure classification for the auto-pause policy."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum

from feature_orchestrator.orchestrator.errors import ExecutionAbortedError

FAILURE_CLASSIFIER_VERSION = 1


class ErrorKind(str, Enum):
    ABORT = "abort"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXHAUSTED = "quota_exhausted"
    GENERIC = "generic"


PAUSE_IMMEDIATELY_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.QUOTA_EXHAUSTED})

_ABORT_PATTERNS: tuple[str, ...] = (
    "aborted",
    "abort",
    "cancelled",
    "canceled",
)
_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
    "limit reached",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "authentication_failed",
    "authentication",
    "unauthorized",
    "forbidden",
    "invalid api key",
    "api key",
    "claude login",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
    "overloaded",
)
_WHOLE_WORD_PATTERNS = frozenset({"429"})


@dataclass(slots=True)
class ErrorInfo:
    """Normalized classification of one execution failure."""

    kind: ErrorKind
    message: str
    matched_pattern: str | None = None

    @property
    def is_abort(self) -> bool:
        return self.kind is ErrorKind.ABORT

    @property
    def pauses_immediately(self) -> bool:
        return self.kind in PAUSE_IMMEDIATELY_KINDS

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "error_type": self.kind.value,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(error: BaseException | str, *, abort_by_text: bool = True) -> ErrorInfo:
    """Classify an execution failure by exception type first, then by message text.

    With ``abort_by_text=False`` only the exception type can mark an abort, so a
    provider error that merely mentions cancellation is still a failure.
    """

    message = error if isinstance(error, str) else str(error) or type(error).__name__
    if isinstance(error, ExecutionAbortedError | asyncio.CancelledError):
        return ErrorInfo(kind=ErrorKind.ABORT, message=message)

    haystack = message.lower()
    for kind, patterns in (
        (ErrorKind.ABORT, _ABORT_PATTERNS if abort_by_text else ()),
        (ErrorKind.QUOTA_EXHAUSTED, _QUOTA_PATTERNS),
        (ErrorKind.AUTH, _AUTH_PATTERNS),
        (ErrorKind.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ErrorInfo(kind=kind, message=message, matched_pattern=pattern)
    return ErrorInfo(kind=ErrorKind.GENERIC, message=message)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in _WHOLE_WORD_PATTERNS:
            if re.search(rf"\b{pattern}\b", haystack):
                return pattern
        elif pattern in haystack:
            return pattern
    return None
