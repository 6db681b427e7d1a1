"""
Unit tests for the per-thread Request Queue.
Covers FIFO admission, the synchronous reservation made by submit(), and the
drain loop's ordering and error isolation.
"""
import asyncio

import pytest

from src.providers.base import IncomingMessage
from src.session.cancellation import abort
from src.session.queue import Accepted, drain, queue_snapshot, release, submit
from src.session.state import get_registry


def _msg(n: int, thread: str = "t1") -> IncomingMessage:
    return IncomingMessage(
        provider_id="fake",
        message_id=f"m{n}",
        channel_id="c1",
        thread_id=thread,
        user_id="u1",
        text=f"hello {n}",
    )


# ─────────────────────────────────────────────
# submit
# ─────────────────────────────────────────────

class TestSubmit:
    def test_idle_thread_dispatches_and_reserves(self):
        sub = submit("t1", _msg(1))
        assert sub.accepted is Accepted.DISPATCH
        assert sub.token is not None
        active = get_registry().get_active("t1")
        assert active is not None
        assert active.token is sub.token
        assert active.session_id == ""

    def test_busy_thread_queues_with_position(self):
        submit("t1", _msg(1))
        second = submit("t1", _msg(2))
        third = submit("t1", _msg(3))
        assert second.accepted is Accepted.QUEUED and second.position == 1
        assert third.accepted is Accepted.QUEUED and third.position == 2
        assert second.token is None
        assert [q.message.message_id for q in get_registry().queued("t1")] == ["m2", "m3"]

    def test_threads_are_independent(self):
        submit("t1", _msg(1, "t1"))
        other = submit("t2", _msg(2, "t2"))
        assert other.accepted is Accepted.DISPATCH

    @pytest.mark.asyncio
    async def test_backlog_after_abort_still_queues(self):
        submit("t1", _msg(1))
        submit("t1", _msg(2))
        result = await abort("t1")
        assert result.aborted is True
        assert get_registry().get_active("t1") is None

        late = submit("t1", _msg(3))
        assert late.accepted is Accepted.QUEUED
        assert [q.message.message_id for q in get_registry().queued("t1")] == ["m2", "m3"]

    def test_release_is_identity_checked(self):
        first = submit("t1", _msg(1))
        registry = get_registry()
        del registry.active_requests["t1"]
        second = submit("t1", _msg(2))
        assert release("t1", first.token) is False
        assert registry.get_active("t1").token is second.token
        assert release("t1", second.token) is True
        assert registry.get_active("t1") is None


# ─────────────────────────────────────────────
# drain
# ─────────────────────────────────────────────

class TestDrain:
    @pytest.mark.asyncio
    async def test_processes_in_order_and_cleans_up(self):
        registry = get_registry()
        for n in (1, 2, 3):
            registry.enqueue("t1", _msg(n))
        seen = []

        async def handler(message, token):
            assert registry.get_active("t1").token is token
            seen.append(message.message_id)

        processed = await drain("t1", handler)
        assert processed == 3
        assert seen == ["m1", "m2", "m3"]
        assert "t1" not in registry.message_queue
        assert registry.get_active("t1") is None

    @pytest.mark.asyncio
    async def test_error_is_isolated_to_its_item(self):
        registry = get_registry()
        for n in (1, 2, 3):
            registry.enqueue("t1", _msg(n))
        seen, errors = [], []

        async def handler(message, token):
            seen.append(message.message_id)
            if message.message_id == "m2":
                raise RuntimeError("boom")

        async def on_error(message, exc):
            errors.append((message.message_id, str(exc)))

        processed = await drain("t1", handler, on_error=on_error)
        assert processed == 3
        assert seen == ["m1", "m2", "m3"]
        assert errors == [("m2", "boom")]
        assert registry.get_active("t1") is None

    @pytest.mark.asyncio
    async def test_error_without_reporter_is_logged(self, caplog):
        get_registry().enqueue("t1", _msg(1))

        async def handler(message, token):
            raise ValueError("nope")

        assert await drain("t1", handler) == 1
        assert "queued message failed" in caplog.text

    @pytest.mark.asyncio
    async def test_stops_when_thread_is_owned_elsewhere(self):
        registry = get_registry()
        submit("t1", _msg(1))
        registry.enqueue("t1", _msg(2))

        async def handler(message, token):
            raise AssertionError("must not run")

        assert await drain("t1", handler) == 0
        assert len(registry.queued("t1")) == 1

    @pytest.mark.asyncio
    async def test_empty_queue_returns_zero(self):
        async def handler(message, token):
            raise AssertionError("must not run")

        assert await drain("t1", handler) == 0


# ─────────────────────────────────────────────
# Concurrent arrival
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_concurrent_messages_dispatch_one_at_a_time_in_order():
    registry = get_registry()
    gate = asyncio.Event()
    started = []
    max_active = 0

    async def handler(message, token):
        nonlocal max_active
        started.append(message.message_id)
        max_active = max(max_active, len(registry.active_requests))
        if message.message_id == "m1":
            await gate.wait()
        await asyncio.sleep(0)

    async def dispatcher(message):
        sub = submit("t1", message, registry)
        if sub.accepted is Accepted.QUEUED:
            return
        try:
            await handler(message, sub.token)
        finally:
            release("t1", sub.token, registry)
            await drain("t1", handler, registry=registry)

    first = asyncio.create_task(dispatcher(_msg(1)))
    await asyncio.sleep(0)
    await dispatcher(_msg(2))
    await dispatcher(_msg(3))
    assert started == ["m1"]

    gate.set()
    await first
    assert started == ["m1", "m2", "m3"]
    assert max_active == 1
    assert registry.get_active("t1") is None


def test_queue_snapshot_limits_items_but_counts_all():
    registry = get_registry()
    submit("t1", _msg(0))
    for n in range(1, 6):
        submit("t1", _msg(n))
    snap = queue_snapshot("t1", limit=2)
    assert snap.total == 5
    assert [q.message.message_id for q in snap.items] == ["m1", "m2"]
    assert snap.active is registry.get_active("t1")
