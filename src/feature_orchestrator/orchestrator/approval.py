"""In-memory plan approval rendezvous between executions and reviewers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from feature_orchestrator.orchestrator.errors import ApprovalCancelledError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ApprovalDecision:
    approved: bool
    edited_plan: str | None = None
    feedback: str | None = None


class ApprovalGate:
    """One pending future per feature id, settled by ``resolve_approval`` or ``cancel``."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[ApprovalDecision]] = {}

    def has_pending(self, feature_id: str) -> bool:
        future = self._pending.get(feature_id)
        return future is not None and not future.done()

    def pending_ids(self) -> list[str]:
        return [feature_id for feature_id in self._pending if self.has_pending(feature_id)]

    async def wait_for_approval(self, feature_id: str) -> ApprovalDecision:
        if self.has_pending(feature_id):
            self.cancel(feature_id)
        future: asyncio.Future[ApprovalDecision] = asyncio.get_running_loop().create_future()
        self._pending[feature_id] = future
        logger.info("Waiting for plan approval of feature %s", feature_id)
        try:
            return await future
        finally:
            if self._pending.get(feature_id) is future:
                del self._pending[feature_id]

    def resolve_approval(
        self,
        feature_id: str,
        approved: bool,
        edited_plan: str | None = None,
        feedback: str | None = None,
    ) -> bool:
        future = self._pending.pop(feature_id, None)
        if future is None or future.done():
            return False
        future.set_result(
            ApprovalDecision(approved=approved, edited_plan=edited_plan, feedback=feedback),
        )
        return True

    def cancel(self, feature_id: str) -> bool:
        future = self._pending.pop(feature_id, None)
        if future is None or future.done():
            return False
        future.set_exception(ApprovalCancelledError(f"Plan approval cancelled for {feature_id}"))
        return True

    def cancel_all(self) -> None:
        for feature_id in list(self._pending):
            self.cancel(feature_id)
