from __future__ import annotations

import asyncio

import pytest

from inboxguard.services.errors import GENERIC_ERROR_MESSAGE, ChannelError
from inboxguard.services.request_guard import FetchKind, FetchStatus, RequestGuard


def _gated(value, gate: asyncio.Event):
    async def fetch():
        await gate.wait()
        return value
    return fetch


def test_new_fetch_cancels_previous_silently():
    async def run():
        guard = RequestGuard()
        applied = []
        first_gate, second_gate = asyncio.Event(), asyncio.Event()

        first = asyncio.create_task(guard.run(FetchKind.LIST, _gated("old", first_gate), applied.append))
        await asyncio.sleep(0)
        second = asyncio.create_task(guard.run(FetchKind.LIST, _gated("new", second_gate), applied.append))
        await asyncio.sleep(0)
        second_gate.set()
        return await first, await second, applied

    first, second, applied = asyncio.run(run())
    assert first.status == FetchStatus.CANCELLED
    assert first.error is None
    assert second.status == FetchStatus.APPLIED
    assert applied == ["new"]


def test_late_response_is_discarded_without_cancellation():
    async def run():
        guard = RequestGuard()
        applied = []
        first_gate, second_gate = asyncio.Event(), asyncio.Event()

        first = asyncio.create_task(
            guard.run(FetchKind.DETAIL, _gated("A", first_gate), applied.append, cancel_previous=False)
        )
        await asyncio.sleep(0)
        second = asyncio.create_task(
            guard.run(FetchKind.DETAIL, _gated("B", second_gate), applied.append, cancel_previous=False)
        )
        await asyncio.sleep(0)
        second_gate.set()
        second_outcome = await second
        first_gate.set()
        first_outcome = await first
        return first_outcome, second_outcome, applied

    first, second, applied = asyncio.run(run())
    assert second.status == FetchStatus.APPLIED
    assert first.status == FetchStatus.STALE
    assert first.value == "A"
    assert applied == ["B"]


def test_kinds_do_not_interfere():
    async def run():
        guard = RequestGuard()
        applied = []
        gate = asyncio.Event()
        detail = asyncio.create_task(guard.run(FetchKind.DETAIL, _gated("d", gate), applied.append))
        await asyncio.sleep(0)
        stats = await guard.run(FetchKind.STATS, _ready("s"), applied.append)
        gate.set()
        return await detail, stats, applied

    detail, stats, applied = asyncio.run(run())
    assert detail.status == FetchStatus.APPLIED
    assert stats.status == FetchStatus.APPLIED
    assert sorted(applied) == ["d", "s"]


def _ready(value):
    async def fetch():
        return value
    return fetch


def test_failure_is_reported_with_sanitized_message():
    async def boom():
        raise ChannelError("email", "Inbox is not connected")

    async def crash():
        raise RuntimeError("KeyError: 'rawMeta'")

    async def run():
        guard = RequestGuard()
        return await guard.run(FetchKind.LIST, boom), await guard.run(FetchKind.LIST, crash)

    friendly, raw = asyncio.run(run())
    assert friendly.status == FetchStatus.FAILED
    assert friendly.error == "Inbox is not connected"
    assert isinstance(friendly.exception, ChannelError)
    assert raw.error == GENERIC_ERROR_MESSAGE


def test_failure_of_superseded_fetch_is_stale_not_failed():
    async def run():
        guard = RequestGuard()
        gate = asyncio.Event()

        async def slow_failure():
            await gate.wait()
            raise ChannelError("email", "Timed out")

        first = asyncio.create_task(guard.run(FetchKind.LIST, slow_failure, cancel_previous=False))
        await asyncio.sleep(0)
        await guard.run(FetchKind.LIST, _ready("fresh"), cancel_previous=False)
        gate.set()
        return await first

    outcome = asyncio.run(run())
    assert outcome.status == FetchStatus.STALE
    assert outcome.error is None


def test_explicit_cancel_makes_late_results_stale():
    async def run():
        guard = RequestGuard()
        applied = []
        gate = asyncio.Event()
        task = asyncio.create_task(guard.run(FetchKind.DETAIL, _gated("late", gate), applied.append))
        await asyncio.sleep(0)
        assert guard.in_flight(FetchKind.DETAIL)
        guard.cancel(FetchKind.DETAIL)
        return await task, applied, guard.in_flight(FetchKind.DETAIL)

    outcome, applied, in_flight = asyncio.run(run())
    assert outcome.status == FetchStatus.CANCELLED
    assert applied == []
    assert in_flight is False


def test_outer_cancellation_propagates():
    async def run():
        guard = RequestGuard()
        task = asyncio.create_task(guard.run(FetchKind.LIST, _gated("x", asyncio.Event())))
        await asyncio.sleep(0)
        task.cancel()
        await task

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(run())


def test_sequences_increase_per_kind():
    guard = RequestGuard()
    assert guard.issue(FetchKind.LIST) == 1
    assert guard.issue(FetchKind.LIST) == 2
    assert guard.issue(FetchKind.STATS) == 1
    assert guard.is_current(FetchKind.LIST, 2)
    assert not guard.is_current(FetchKind.LIST, 1)
