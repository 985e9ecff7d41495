"""Execution provider implementations."""

from feature_orchestrator.orchestrator.backend.base import (
    ExecutionProvider,
    ProviderEvent,
    ProviderEventKind,
    ProviderRequest,
)
from feature_orchestrator.orchestrator.backend.cli_backend import CliAgentProvider

__all__ = [
    "CliAgentProvider",
    "ExecutionProvider",
    "ProviderEvent",
    "ProviderEventKind",
    "ProviderRequest",
]
