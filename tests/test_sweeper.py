import asyncio
from datetime import timedelta

import fakeredis.aioredis
import pytest

from marketplace_orders.aggregate import OrderStatus
from marketplace_orders.errors import DeadlineExpired, InvalidState
from marketplace_orders.notifications import NotificationKind
from marketplace_orders.store import SettlementStatus
from marketplace_orders.sweeper import RedisSweepLock, Sweeper


@pytest.fixture
def sweeper(engine, store, notifier, clock) -> Sweeper:
    return Sweeper(engine, store, notifier, clock=clock, reminder_window=timedelta(hours=6), interval=0.01)


# ── sweep_expired ────────────────────────────────


@pytest.mark.asyncio()
async def test_sweep_expired_is_idempotent(engine, store, make_order, gateway, clock):
    first = await make_order(paid=True)
    second = await make_order(paid=True)
    now = clock.now + timedelta(hours=49)

    run1 = await engine.sweep_expired(now)
    run2 = await engine.sweep_expired(now)

    assert sorted(o.id for o in run1) == sorted([first.id, second.id])
    assert run2 == []
    assert len(gateway.refunds) == 2
    for order in (first, second):
        events = await store.load_events(order.id)
        assert [e["event_type"] for e in events].count("OrderCancelled") == 1


@pytest.mark.asyncio()
async def test_sweep_expired_leaves_live_and_committed_orders(engine, store, make_order, clock):
    live = await make_order(paid=True)
    committed = await make_order(paid=True)
    await engine.commit(committed.id, "S")
    unpaid = await make_order()

    expired = await engine.sweep_expired(clock.now + timedelta(hours=47))
    assert expired == []

    expired = await engine.sweep_expired(clock.now + timedelta(hours=49))
    assert [o.id for o in expired] == [live.id]
    assert (await store.get(committed.id)).status == OrderStatus.COMMITTED
    assert (await store.get(unpaid.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio()
async def test_commit_racing_the_sweep_has_exactly_one_winner(engine, store, make_order, clock):
    order = await make_order(paid=True)
    deadline = (await store.get(order.id)).commit_deadline
    # The seller's request is processed just before the deadline while the
    # sweeper runs with a clock just after it.
    clock.now = deadline - timedelta(seconds=1)

    commit_result, swept = await asyncio.gather(
        engine.commit(order.id, "S"),
        engine.sweep_expired(deadline + timedelta(seconds=1)),
        return_exceptions=True,
    )

    commit_won = not isinstance(commit_result, Exception)
    sweep_won = not isinstance(swept, Exception) and len(swept) == 1
    assert commit_won != sweep_won

    stored = await store.get(order.id)
    if commit_won:
        assert stored.status == OrderStatus.COMMITTED
        assert stored.cancelled_at is None
    else:
        assert isinstance(commit_result, (InvalidState, DeadlineExpired))
        assert stored.status == OrderStatus.CANCELLED
        assert stored.committed_at is None
    events = [e["event_type"] for e in await store.load_events(order.id)]
    assert events.count("OrderCommitted") + events.count("OrderCancelled") == 1


# ── Sweeper runs ─────────────────────────────────


@pytest.mark.asyncio()
async def test_reminder_is_sent_once_inside_the_window(sweeper, make_order, notifier, clock):
    order = await make_order(paid=True)
    notifier.sent.clear()

    clock.advance(hours=30)  # 18h left: outside the 6h window
    report = await sweeper.run_once()
    assert report.reminders_sent == []

    clock.advance(hours=13)  # 5h left
    report = await sweeper.run_once()
    assert report.reminders_sent == [order.id]

    clock.advance(hours=1)
    report = await sweeper.run_once()
    assert report.reminders_sent == []
    assert notifier.kinds_for("S") == [NotificationKind.COMMIT_REMINDER]


@pytest.mark.asyncio()
async def test_run_once_expires_and_reports(sweeper, store, make_order, clock):
    order = await make_order(paid=True)
    clock.advance(hours=48, seconds=1)

    report = await sweeper.run_once()

    assert report.expired == [order.id]
    assert report.errors == 0
    assert (await store.get(order.id)).status == OrderStatus.CANCELLED


@pytest.mark.asyncio()
async def test_failed_settlements_are_retried(sweeper, engine, store, make_order, gateway):
    order = await make_order(paid=True)
    gateway.fail_settlements = True
    result = await engine.cancel(order.id, "B")
    assert result.settlement_pending

    report = await sweeper.run_once()
    assert report.settlements_retried == 1
    assert report.settlements_failed == 1

    gateway.fail_settlements = False
    report = await sweeper.run_once()
    assert report.settlements_retried == 1
    assert report.settlements_failed == 0

    [settlement] = await store.get_settlements(order.id)
    assert settlement.status == SettlementStatus.SETTLED
    assert settlement.attempts == 3
    assert gateway.refunds == [(order.payment_reference, order.amount)]

    report = await sweeper.run_once()
    assert report.settlements_retried == 0


@pytest.mark.asyncio()
async def test_run_is_skipped_while_another_process_holds_the_lock(engine, store, notifier, clock, make_order):
    redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    await redis.set("order-sweeper:lock", "other-process")
    sweeper = Sweeper(engine, store, notifier, clock=clock, lock=RedisSweepLock(redis))
    order = await make_order(paid=True)
    clock.advance(hours=49)

    report = await sweeper.run_once()
    assert report.skipped
    assert (await store.get(order.id)).status == OrderStatus.PAID_PENDING_SELLER

    await redis.delete("order-sweeper:lock")
    report = await sweeper.run_once()
    assert not report.skipped
    assert report.expired == [order.id]
    assert await redis.get("order-sweeper:lock") is None


@pytest.mark.asyncio()
async def test_lock_release_does_not_steal_a_foreign_lock():
    redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    lock = RedisSweepLock(redis, ttl=30)

    assert await lock.acquire()
    assert not await RedisSweepLock(redis).acquire()
    await redis.set(lock.key, "someone-else")
    await lock.release()

    assert await redis.get(lock.key) == "someone-else"


@pytest.mark.asyncio()
async def test_run_forever_stops_on_shutdown(sweeper):
    shutdown = asyncio.Event()
    task = asyncio.create_task(sweeper.run_forever(shutdown))
    await asyncio.sleep(0.05)
    shutdown.set()
    await asyncio.wait_for(task, timeout=1.0)
    assert task.done() and task.exception() is None
