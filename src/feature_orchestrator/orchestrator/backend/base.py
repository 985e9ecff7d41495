"""Provider interface for streaming agent execution."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from feature_orchestrator.orchestrator.models import CancellationToken


class ProviderEventKind(str, Enum):
    ASSISTANT_TEXT = "assistant_text"
    TOOL_USE = "tool_use"
    RESULT = "result"
    ERROR = "error"


@dataclass(slots=True)
class ProviderRequest:
    """Inputs required for one streaming provider call."""

    prompt: str
    model: str
    work_dir: Path
    feature_id: str | None = None
    token: CancellationToken | None = None
    image_paths: tuple[str, ...] = ()
    allowed_tools: tuple[str, ...] = ()


@dataclass(slots=True)
class ProviderEvent:
    """One normalized item of provider output."""

    kind: ProviderEventKind
    text: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False


class ExecutionProvider(Protocol):
    """Protocol implemented by provider adapters."""

    def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        """Start the call and yield events until the provider finishes."""
