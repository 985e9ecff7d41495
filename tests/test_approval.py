from __future__ import annotations

import asyncio

import allure
import pytest

from feature_orchestrator.orchestrator.approval import ApprovalDecision, ApprovalGate
from feature_orchestrator.orchestrator.errors import ApprovalCancelledError

pytestmark = [
    allure.epic("Planning"),
    allure.feature("Plan Approval"),
]


@pytest.mark.asyncio
async def test_resolve_settles_waiting_execution() -> None:
    gate = ApprovalGate()
    waiter = asyncio.create_task(gate.wait_for_approval("F1"))
    await asyncio.sleep(0)

    assert gate.has_pending("F1")
    assert gate.resolve_approval("F1", False, feedback="Add tests") is True

    assert await waiter == ApprovalDecision(approved=False, feedback="Add tests")
    assert gate.pending_ids() == []


@pytest.mark.asyncio
async def test_resolve_without_pending_returns_false() -> None:
    gate = ApprovalGate()

    assert gate.resolve_approval("F1", True) is False


@pytest.mark.asyncio
async def test_cancel_raises_into_waiter() -> None:
    gate = ApprovalGate()
    waiter = asyncio.create_task(gate.wait_for_approval("F1"))
    await asyncio.sleep(0)

    assert gate.cancel("F1") is True
    with pytest.raises(ApprovalCancelledError):
        await waiter
    assert gate.cancel("F1") is False


@pytest.mark.asyncio
async def test_second_wait_replaces_and_cancels_first() -> None:
    gate = ApprovalGate()
    first = asyncio.create_task(gate.wait_for_approval("F1"))
    await asyncio.sleep(0)
    second = asyncio.create_task(gate.wait_for_approval("F1"))
    await asyncio.sleep(0)

    gate.resolve_approval("F1", True, edited_plan="edited")

    with pytest.raises(ApprovalCancelledError):
        await first
    assert (await second).edited_plan == "edited"


@pytest.mark.asyncio
async def test_cancel_all() -> None:
    gate = ApprovalGate()
    waiters = [asyncio.create_task(gate.wait_for_approval(name)) for name in ("F1", "F2")]
    await asyncio.sleep(0)

    gate.cancel_all()

    results = await asyncio.gather(*waiters, return_exceptions=True)
    assert all(isinstance(item, ApprovalCancelledError) for item in results)
