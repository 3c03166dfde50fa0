"""Tests for the operation hub: replay, terminal events, cancellation and purging."""

from __future__ import annotations

import asyncio
import json
import logging

import pytest

from monorepo_merger.hub import OperationHub, current_task_id
from monorepo_merger.workspace import OperationCancelled


async def _wait_until(predicate, poll: float = 0.01):
    """Poll until predicate returns True."""
    while not predicate():
        await asyncio.sleep(poll)


def kinds(events):
    return [event["type"] for event in events]


@pytest.mark.asyncio
async def test_late_subscriber_gets_full_history() -> None:
    hub = OperationHub()

    async def work(ctx):
        ctx.log("info", "one")
        ctx.log("info", "two")
        return {"answer": 42}

    task_id = hub.submit(work)
    await hub.wait(task_id)

    seen: list = []
    hub.subscribe(task_id, seen.append)

    assert kinds(seen) == ["log", "log", "result", "done"]
    assert [e.get("message") for e in seen[:2]] == ["one", "two"]
    assert seen[2]["data"] == {"answer": 42}
    assert all(e["task_id"] == task_id for e in seen)
    await hub.close()


@pytest.mark.asyncio
async def test_subscriber_attaching_mid_task_sees_replay_then_live() -> None:
    hub = OperationHub()
    gate = asyncio.Event()

    async def work(ctx):
        ctx.log("info", "before")
        await gate.wait()
        ctx.log("info", "after")
        return "ok"

    task_id = hub.submit(work)
    await asyncio.wait_for(_wait_until(lambda: len(hub.events(task_id)) == 1), timeout=1.0)

    seen: list = []
    hub.subscribe(task_id, seen.append)
    assert kinds(seen) == ["log"]

    gate.set()
    await hub.wait(task_id)

    assert [e.get("message") for e in seen if e["type"] == "log"] == ["before", "after"]
    assert kinds(seen)[-2:] == ["result", "done"]
    await hub.close()


@pytest.mark.asyncio
async def test_failure_emits_single_error_then_done() -> None:
    hub = OperationHub()

    async def work(ctx):
        raise ValueError("boom")

    task_id = hub.submit(work)
    events = await hub.wait(task_id)

    assert kinds(events) == ["error", "done"]
    assert events[0]["message"] == "boom"
    await hub.close()


@pytest.mark.asyncio
async def test_events_after_done_are_dropped() -> None:
    hub = OperationHub()

    async def work(ctx):
        return 1

    task_id = hub.submit(work)
    await hub.wait(task_id)

    assert hub.emit(task_id, {"type": "log", "level": "info", "message": "late"}) is False
    assert hub.emit(task_id, {"type": "result", "data": 2}) is False
    assert kinds(hub.events(task_id)) == ["result", "done"]
    assert hub.is_done(task_id)
    await hub.close()


@pytest.mark.asyncio
async def test_cancellation_is_cooperative_and_keeps_history() -> None:
    hub = OperationHub()
    ticks: list[int] = []

    async def work(ctx):
        ctx.log("info", "started")
        while not ctx.cancelled:
            ticks.append(1)
            await asyncio.sleep(0.01)
        raise OperationCancelled("stopped at a safe point")

    task_id = hub.submit(work)
    await asyncio.wait_for(_wait_until(lambda: len(ticks) >= 2), timeout=1.0)

    assert hub.cancel(task_id) is True
    events = await asyncio.wait_for(hub.wait(task_id), timeout=1.0)

    assert kinds(events) == ["log", "error", "done"]
    assert events[0]["message"] == "started"
    assert events[1]["message"] == "stopped at a safe point"
    assert hub.cancel(task_id) is False
    await hub.close()


@pytest.mark.asyncio
async def test_cancel_from_worker_thread_wakes_token_waiters() -> None:
    hub = OperationHub()

    async def work(ctx):
        await ctx.token.wait()
        return "woken"

    task_id = hub.submit(work)
    await asyncio.sleep(0)
    await asyncio.to_thread(hub.cancel, task_id)

    events = await asyncio.wait_for(hub.wait(task_id), timeout=1.0)

    assert events[-2]["data"] == "woken"
    await hub.close()


@pytest.mark.asyncio
async def test_stream_yields_until_done() -> None:
    hub = OperationHub()
    gate = asyncio.Event()

    async def work(ctx):
        await gate.wait()
        ctx.log("warning", "careful")
        return None

    task_id = hub.submit(work)
    collected: list = []

    async def consume():
        async for event in hub.stream(task_id):
            collected.append(event)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    gate.set()
    await asyncio.wait_for(consumer, timeout=1.0)

    assert kinds(collected) == ["log", "result", "done"]
    assert collected[0]["level"] == "warning"
    await hub.close()


@pytest.mark.asyncio
async def test_buffer_purged_after_retention() -> None:
    hub = OperationHub(retention=0.01)

    async def work(ctx):
        return "done"

    task_id = hub.submit(work)
    await hub.wait(task_id)
    assert hub.events(task_id)

    await asyncio.wait_for(_wait_until(lambda: not hub.events(task_id)), timeout=1.0)
    assert hub.events(task_id) == []
    with pytest.raises(KeyError):
        hub.subscribe(task_id, print)
    await hub.close()


@pytest.mark.asyncio
async def test_tasks_run_concurrently() -> None:
    hub = OperationHub()
    first_started = asyncio.Event()
    release = asyncio.Event()

    async def slow(ctx):
        first_started.set()
        await release.wait()
        return "slow"

    async def fast(ctx):
        return "fast"

    slow_id = hub.submit(slow, task_id="slow")
    fast_id = hub.submit(fast, task_id="fast")
    await asyncio.wait_for(hub.wait(fast_id), timeout=1.0)

    assert first_started.is_set()
    assert not hub.is_done(slow_id)
    release.set()
    await hub.wait(slow_id)
    with pytest.raises(ValueError):
        hub.submit(fast, task_id="fast")
    await hub.close()


@pytest.mark.asyncio
async def test_handle_message_protocol(caplog) -> None:
    hub = OperationHub()

    async def work(ctx):
        ctx.log("info", "waiting")
        while not ctx.cancelled:
            await asyncio.sleep(0.01)
        raise OperationCancelled("cancelled by client")

    task_id = hub.submit(work)
    await asyncio.wait_for(_wait_until(lambda: len(hub.events(task_id)) == 1), timeout=1.0)
    seen: list = []

    assert hub.handle_message(seen.append, json.dumps({"type": "subscribe", "task_id": task_id}))
    assert kinds(seen) == ["log"]
    assert hub.handle_message(seen.append, {"type": "cancel", "task_id": task_id})
    await asyncio.wait_for(hub.wait(task_id), timeout=1.0)
    assert kinds(seen) == ["log", "error", "done"]

    assert hub.handle_message(seen.append, "{not json") is False
    assert hub.handle_message(seen.append, ["subscribe"]) is False
    assert hub.handle_message(seen.append, {"type": "subscribe"}) is False
    assert hub.handle_message(seen.append, {"type": "subscribe", "task_id": "nope"}) is False
    assert hub.handle_message(seen.append, {"type": "explode", "task_id": task_id}) is False
    assert "Ignoring malformed hub message" in caplog.text
    await hub.close()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery() -> None:
    hub = OperationHub()
    gate = asyncio.Event()

    async def work(ctx):
        await gate.wait()
        ctx.log("info", "after unsubscribe")
        return 1

    task_id = hub.submit(work)
    seen: list = []
    hub.handle_message(seen.append, {"type": "subscribe", "task_id": task_id})
    hub.handle_message(seen.append, {"type": "unsubscribe", "task_id": task_id})
    gate.set()
    await hub.wait(task_id)

    assert seen == []
    await hub.close()


@pytest.mark.asyncio
async def test_failing_subscriber_is_detached(caplog) -> None:
    hub = OperationHub()

    def broken(event):
        raise RuntimeError("socket closed")

    async def work(ctx):
        await asyncio.sleep(0)
        ctx.log("info", "progress")
        return 1

    task_id = hub.submit(work)
    good: list = []
    hub.subscribe(task_id, broken)
    hub.subscribe(task_id, good.append)
    await hub.wait(task_id)

    assert kinds(good) == ["log", "result", "done"]
    assert "Detaching subscriber" in caplog.text
    await hub.close()


@pytest.mark.asyncio
async def test_log_records_from_threads_are_forwarded(caplog) -> None:
    caplog.set_level(logging.INFO)
    hub = OperationHub()
    hub.attach_logging()
    seen_ids: list = []

    def blocking_phase() -> int:
        seen_ids.append(current_task_id())
        logging.info("copied %d files", 3)
        return 3

    async def work(ctx):
        return await ctx.run_sync(blocking_phase)

    task_id = hub.submit(work)
    events = await hub.wait(task_id)
    logging.info("outside any task")

    assert seen_ids == [task_id]
    assert events == [
        {"task_id": task_id, "type": "log", "level": "info", "message": "copied 3 files"},
        {"task_id": task_id, "type": "result", "data": 3},
        {"task_id": task_id, "type": "done"},
    ]
    await hub.close()
    assert hub._log_handler is None


@pytest.mark.asyncio
async def test_close_cancels_running_tasks_with_terminal_events() -> None:
    hub = OperationHub()
    seen: list = []

    async def work(ctx):
        await asyncio.sleep(10)

    task_id = hub.submit(work)
    hub.subscribe(task_id, seen.append)
    await asyncio.sleep(0)
    await hub.close()

    assert kinds(seen) == ["error", "done"]
    assert hub.events(task_id) == []
