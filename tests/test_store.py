from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from marketplace_orders.aggregate import Order, OrderStatus
from marketplace_orders.errors import SchemaError
from marketplace_orders.schema import create_schema, verify_schema

from conftest import T0


async def _insert(store, **overrides) -> Order:
    data = dict(
        id="o1",
        buyer_id="B",
        seller_id="S",
        item_ref="book-1",
        amount=15000,
        payment_reference="ref-1",
        status=OrderStatus.PAID_PENDING_SELLER,
        created_at=T0,
        commit_deadline=T0 + timedelta(hours=48),
    )
    data.update(overrides)
    order = Order(**data)
    async with store.transaction() as tx:
        await tx.create(order)
    return order


@pytest.mark.asyncio()
async def test_round_trips_timestamps_as_utc(store):
    order = await _insert(store)
    stored = await store.get(order.id)
    assert stored == order
    assert stored.commit_deadline.tzinfo is not None


@pytest.mark.asyncio()
async def test_compare_and_set_only_from_expected_status(store):
    await _insert(store)

    assert await store.compare_and_set_status(
        "o1", OrderStatus.PAID_PENDING_SELLER, {"status": OrderStatus.COMMITTED}
    )
    assert not await store.compare_and_set_status(
        "o1", OrderStatus.PAID_PENDING_SELLER, {"status": OrderStatus.CANCELLED}
    )
    assert (await store.get("o1")).status == OrderStatus.COMMITTED


@pytest.mark.asyncio()
async def test_compare_and_set_deadline_guards(store):
    await _insert(store)
    deadline = T0 + timedelta(hours=48)

    assert not await store.compare_and_set_status(
        "o1",
        OrderStatus.PAID_PENDING_SELLER,
        {"status": OrderStatus.CANCELLED},
        deadline_before=deadline,
    )
    assert not await store.compare_and_set_status(
        "o1",
        OrderStatus.PAID_PENDING_SELLER,
        {"status": OrderStatus.COMMITTED},
        deadline_after=deadline,
    )
    assert await store.compare_and_set_status(
        "o1",
        OrderStatus.PAID_PENDING_SELLER,
        {"status": OrderStatus.COMMITTED},
        deadline_after=deadline - timedelta(seconds=1),
    )


@pytest.mark.asyncio()
async def test_deadline_reached_guard_includes_the_deadline(store):
    await _insert(store)
    deadline = T0 + timedelta(hours=48)

    assert not await store.compare_and_set_status(
        "o1",
        OrderStatus.PAID_PENDING_SELLER,
        {"status": OrderStatus.CANCELLED},
        deadline_reached=deadline - timedelta(seconds=1),
    )
    assert await store.compare_and_set_status(
        "o1",
        OrderStatus.PAID_PENDING_SELLER,
        {"status": OrderStatus.CANCELLED},
        deadline_reached=deadline,
    )


@pytest.mark.asyncio()
async def test_failed_block_rolls_back_everything(store):
    await store.add_item("book-1")
    await _insert(store)

    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await tx.compare_and_set_status(
                "o1", OrderStatus.PAID_PENDING_SELLER, {"status": OrderStatus.CANCELLED}
            )
            await tx.set_item_available("book-1", False, T0)
            raise RuntimeError("boom")

    assert (await store.get("o1")).status == OrderStatus.PAID_PENDING_SELLER
    assert await store.is_item_available("book-1") is True


@pytest.mark.asyncio()
async def test_query_by_status_and_deadline_is_strict(store):
    await _insert(store)
    deadline = T0 + timedelta(hours=48)

    assert await store.query_by_status_and_deadline(OrderStatus.PAID_PENDING_SELLER, deadline) == []
    found = await store.query_by_status_and_deadline(
        OrderStatus.PAID_PENDING_SELLER, deadline + timedelta(microseconds=1)
    )
    assert [o.id for o in found] == ["o1"]


@pytest.mark.asyncio()
async def test_reminder_can_be_claimed_once(store):
    await _insert(store)
    now = T0 + timedelta(hours=44)

    due = await store.query_reminders_due(now, timedelta(hours=6))
    assert [o.id for o in due] == ["o1"]
    assert await store.mark_reminder_sent("o1", now)
    assert not await store.mark_reminder_sent("o1", now)
    assert await store.query_reminders_due(now, timedelta(hours=6)) == []


@pytest.mark.asyncio()
async def test_events_are_versioned_per_order(store):
    from marketplace_orders.events import OrderCommitted

    await _insert(store)
    await _insert(store, id="o2", payment_reference="ref-2")
    async with store.transaction() as tx:
        v1 = await tx.append_event(OrderCommitted(order_id="o1", timestamp=T0, seller_id="S"))
        v2 = await tx.append_event(OrderCommitted(order_id="o1", timestamp=T0, seller_id="S"))
        other = await tx.append_event(OrderCommitted(order_id="o2", timestamp=T0, seller_id="S"))

    assert (v1, v2, other) == (1, 2, 1)
    events = await store.load_events("o1")
    assert [e["version"] for e in events] == [1, 2]
    assert events[0]["event_data"]["seller_id"] == "S"


@pytest.mark.asyncio()
async def test_verify_schema_accepts_created_schema(db_engine):
    await verify_schema(db_engine)


@pytest.mark.asyncio()
async def test_verify_schema_reports_missing_tables(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    try:
        with pytest.raises(SchemaError) as exc_info:
            await verify_schema(engine)
        assert "table orders" in str(exc_info.value)

        await create_schema(engine)
        await verify_schema(engine)
    finally:
        await engine.dispose()
