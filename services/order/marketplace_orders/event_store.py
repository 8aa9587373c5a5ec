"""
Order Service — Audit event store

Every transition appends one event for the order, inside the same
transaction as the status change, so the trail can never disagree with the
orders table.

Versions are per order. The (order_id, version) unique constraint makes a
concurrent append with the same expected_version fail instead of silently
interleaving.
"""

import json
from datetime import datetime

from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_events


async def current_version(session: AsyncSession, order_id: str) -> int:
    result = await session.execute(
        select(func.max(order_events.c.version)).where(
            order_events.c.order_id == order_id
        )
    )
    return result.scalar() or 0


async def append_event(
    session: AsyncSession,
    order_id: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
    created_at: datetime,
) -> int:
    """
    Append an event at expected_version + 1 and return the new version.

    Does not commit: the caller owns the transaction.
    """
    new_version = expected_version + 1
    await session.execute(
        insert(order_events).values(
            order_id=order_id,
            event_type=event_type,
            event_data=json.dumps(event_data, default=str),
            version=new_version,
            created_at=created_at,
        )
    )
    return new_version


async def load_events(session: AsyncSession, order_id: str) -> list[dict]:
    """All events of one order, oldest first."""
    result = await session.execute(
        select(order_events)
        .where(order_events.c.order_id == order_id)
        .order_by(order_events.c.version.asc())
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data),
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
