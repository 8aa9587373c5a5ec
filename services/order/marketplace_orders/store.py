"""
Order Service — Order Store

All mutation of an order goes through compare_and_set_status(): the UPDATE
only matches the row if its status (and, optionally, its commit deadline)
still satisfies the caller's precondition. Two handlers racing on the same
order, possibly in different processes, can therefore never both succeed;
the database decides, not an application lock.

A StoreTransaction groups the status change with its secondary effects
(item availability, settlement request, audit event). They commit together
or not at all.

Reads are retried with backoff on connectivity errors. Writes are not:
after a failed write the caller must re-read and decide again.
"""

import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TypeVar

from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from . import event_store
from .aggregate import Order, OrderStatus
from .events import OrderEvent
from .schema import books, orders, settlements

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    ConnectionError,
    TimeoutError,
)


def to_utc(value: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; everything in the service is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _db_value(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_utc(value)
    return value


def row_to_order(row) -> Order:
    data = dict(row._mapping)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = to_utc(value)
    return Order(**data)


# ── Settlements ──────────────────────────────────


class SettlementKind(str, Enum):
    REFUND = "refund"
    RELEASE = "release"


class SettlementStatus(str, Enum):
    PROCESSING = "processing"
    SETTLED = "settled"
    FAILED = "failed"


class Settlement(BaseModel):
    id: str
    order_id: str
    kind: SettlementKind
    amount: int
    recipient_id: str
    payment_reference: str
    status: SettlementStatus
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


def _row_to_settlement(row) -> Settlement:
    data = dict(row._mapping)
    data["created_at"] = to_utc(data["created_at"])
    data["updated_at"] = to_utc(data["updated_at"])
    return Settlement(**data)


# ── Transaction ──────────────────────────────────


class StoreTransaction:
    """Write operations bound to one database transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, order: Order) -> None:
        values = {k: _db_value(v) for k, v in order.model_dump().items()}
        await self.session.execute(insert(orders).values(**values))

    async def compare_and_set_status(
        self,
        order_id: str,
        expected_status: OrderStatus,
        new_fields: dict,
        *,
        deadline_before: datetime | None = None,
        deadline_reached: datetime | None = None,
        deadline_after: datetime | None = None,
    ) -> bool:
        """
        Apply new_fields only if the order is still in expected_status.

        deadline_before / deadline_reached / deadline_after additionally
        require commit_deadline < deadline_before, commit_deadline <=
        deadline_reached or commit_deadline > deadline_after.
        Returns False when the precondition no longer held.
        """
        stmt = update(orders).where(
            orders.c.id == order_id,
            orders.c.status == expected_status.value,
        )
        if deadline_before is not None:
            stmt = stmt.where(orders.c.commit_deadline < to_utc(deadline_before))
        if deadline_reached is not None:
            stmt = stmt.where(orders.c.commit_deadline <= to_utc(deadline_reached))
        if deadline_after is not None:
            stmt = stmt.where(orders.c.commit_deadline > to_utc(deadline_after))
        values = {k: _db_value(v) for k, v in new_fields.items()}
        result = await self.session.execute(stmt.values(**values))
        return result.rowcount == 1

    async def set_item_available(
        self,
        item_ref: str,
        available: bool,
        at: datetime,
    ) -> bool:
        """Flip the listing's availability; False if it already had that value."""
        result = await self.session.execute(
            update(books)
            .where(books.c.id == item_ref, books.c.available == (not available))
            .values(available=available, updated_at=to_utc(at))
        )
        return result.rowcount == 1

    async def append_event(self, event: OrderEvent) -> int:
        version = await event_store.current_version(self.session, event.order_id)
        return await event_store.append_event(
            self.session,
            event.order_id,
            event.event_type,
            event.payload(),
            version,
            to_utc(event.timestamp),
        )

    async def request_settlement(
        self,
        order: Order,
        kind: SettlementKind,
        recipient_id: str,
        at: datetime,
    ) -> Settlement:
        """Record a money movement of exactly order.amount, ready to execute."""
        settlement = Settlement(
            id=uuid.uuid4().hex,
            order_id=order.id,
            kind=kind,
            amount=order.amount,
            recipient_id=recipient_id,
            payment_reference=order.payment_reference,
            status=SettlementStatus.PROCESSING,
            created_at=to_utc(at),
            updated_at=to_utc(at),
        )
        values = {k: _db_value(v) for k, v in settlement.model_dump().items()}
        await self.session.execute(insert(settlements).values(**values))
        return settlement


# ── Store ────────────────────────────────────────


class OrderStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        read_attempts: int = 3,
        max_backoff: float = 2.0,
    ) -> None:
        self._session_factory = session_factory
        self._read_attempts = read_attempts
        self._max_backoff = max_backoff

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """Commit on normal exit, roll back if the block raises."""
        async with self._session_factory() as session:
            async with session.begin():
                yield StoreTransaction(session)

    async def read(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run a read-only callable in a fresh session, retrying transient errors."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._read_attempts),
            wait=wait_random_exponential(multiplier=0.05, max=self._max_backoff),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                async with self._session_factory() as session:
                    return await fn(session)
        raise RuntimeError("retry loop exited without a result")

    # ── Orders ──

    async def get(self, order_id: str) -> Order | None:
        async def _get(session: AsyncSession) -> Order | None:
            result = await session.execute(select(orders).where(orders.c.id == order_id))
            row = result.fetchone()
            return row_to_order(row) if row else None

        return await self.read(_get)

    async def get_by_reference(self, reference: str) -> Order | None:
        async def _get(session: AsyncSession) -> Order | None:
            result = await session.execute(
                select(orders).where(orders.c.payment_reference == reference)
            )
            row = result.fetchone()
            return row_to_order(row) if row else None

        return await self.read(_get)

    async def query_by_status_and_deadline(
        self,
        status: OrderStatus,
        before: datetime,
    ) -> list[Order]:
        """Orders in status whose commit deadline is strictly before `before`."""

        async def _query(session: AsyncSession) -> list[Order]:
            result = await session.execute(
                select(orders)
                .where(
                    orders.c.status == status.value,
                    orders.c.commit_deadline < to_utc(before),
                )
                .order_by(orders.c.commit_deadline.asc())
            )
            return [row_to_order(row) for row in result.fetchall()]

        return await self.read(_query)

    async def query_reminders_due(self, now: datetime, window: timedelta) -> list[Order]:
        """Awaiting-commit orders whose deadline falls in (now, now + window] and not yet reminded."""

        async def _query(session: AsyncSession) -> list[Order]:
            result = await session.execute(
                select(orders)
                .where(
                    orders.c.status == OrderStatus.PAID_PENDING_SELLER.value,
                    orders.c.commit_deadline > to_utc(now),
                    orders.c.commit_deadline <= to_utc(now + window),
                    orders.c.reminder_sent_at.is_(None),
                )
                .order_by(orders.c.commit_deadline.asc())
            )
            return [row_to_order(row) for row in result.fetchall()]

        return await self.read(_query)

    async def compare_and_set_status(
        self,
        order_id: str,
        expected_status: OrderStatus,
        new_fields: dict,
        **guards,
    ) -> bool:
        """Single-statement variant for callers with no secondary effects."""
        async with self.transaction() as tx:
            return await tx.compare_and_set_status(
                order_id, expected_status, new_fields, **guards
            )

    async def mark_reminder_sent(self, order_id: str, at: datetime) -> bool:
        """Claim the reminder for this order; False if another sweep already did."""
        async with self.transaction() as tx:
            result = await tx.session.execute(
                update(orders)
                .where(
                    orders.c.id == order_id,
                    orders.c.status == OrderStatus.PAID_PENDING_SELLER.value,
                    orders.c.reminder_sent_at.is_(None),
                )
                .values(reminder_sent_at=to_utc(at))
            )
            return result.rowcount == 1

    async def load_events(self, order_id: str) -> list[dict]:
        return await self.read(lambda session: event_store.load_events(session, order_id))

    # ── Items ──

    async def add_item(self, item_ref: str, available: bool = True) -> None:
        """Register a listing; used when the catalogue syncs a new book."""
        async with self.transaction() as tx:
            await tx.session.execute(
                insert(books).values(id=item_ref, available=available)
            )

    async def is_item_available(self, item_ref: str) -> bool | None:
        async def _get(session: AsyncSession) -> bool | None:
            result = await session.execute(
                select(books.c.available).where(books.c.id == item_ref)
            )
            row = result.fetchone()
            return bool(row.available) if row else None

        return await self.read(_get)

    # ── Settlements ──

    async def get_settlements(self, order_id: str) -> list[Settlement]:
        async def _query(session: AsyncSession) -> list[Settlement]:
            result = await session.execute(
                select(settlements)
                .where(settlements.c.order_id == order_id)
                .order_by(settlements.c.created_at.asc())
            )
            return [_row_to_settlement(row) for row in result.fetchall()]

        return await self.read(_query)

    async def claim_failed_settlements(self, at: datetime, limit: int = 50) -> list[Settlement]:
        """
        Move failed settlements back to processing and return them.

        Each row is claimed with its own compare-and-set, so two sweepers
        never execute the same settlement.
        """

        async def _query(session: AsyncSession) -> list[Settlement]:
            result = await session.execute(
                select(settlements)
                .where(settlements.c.status == SettlementStatus.FAILED.value)
                .order_by(settlements.c.updated_at.asc())
                .limit(limit)
            )
            return [_row_to_settlement(row) for row in result.fetchall()]

        claimed = []
        for settlement in await self.read(_query):
            async with self.transaction() as tx:
                result = await tx.session.execute(
                    update(settlements)
                    .where(
                        settlements.c.id == settlement.id,
                        settlements.c.status == SettlementStatus.FAILED.value,
                    )
                    .values(status=SettlementStatus.PROCESSING.value, updated_at=to_utc(at))
                )
            if result.rowcount == 1:
                claimed.append(settlement.model_copy(update={"status": SettlementStatus.PROCESSING}))
        return claimed

    async def finish_settlement(
        self,
        settlement_id: str,
        succeeded: bool,
        at: datetime,
        error: str | None = None,
    ) -> None:
        """Record the outcome of a processing settlement and count the attempt."""
        status = SettlementStatus.SETTLED if succeeded else SettlementStatus.FAILED
        async with self.transaction() as tx:
            await tx.session.execute(
                update(settlements)
                .where(
                    settlements.c.id == settlement_id,
                    settlements.c.status == SettlementStatus.PROCESSING.value,
                )
                .values(
                    status=status.value,
                    attempts=settlements.c.attempts + 1,
                    last_error=error,
                    updated_at=to_utc(at),
                )
            )
