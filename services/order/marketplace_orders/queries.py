"""
Order Service — Query handlers (read side)

Read-only views for the HTTP layer. They never change state and are run
through OrderStore.read(), which retries them on transient errors.
"""

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderStatus
from .schema import orders
from .store import row_to_order, to_utc


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return row_to_order(row).to_dict()


async def list_orders_for_user(
    session: AsyncSession,
    user_id: str,
    role: str | None = None,
) -> list[dict]:
    """Orders where the user is the buyer, the seller, or either (role=None)."""
    if role == "buyer":
        condition = orders.c.buyer_id == user_id
    elif role == "seller":
        condition = orders.c.seller_id == user_id
    else:
        condition = or_(orders.c.buyer_id == user_id, orders.c.seller_id == user_id)
    result = await session.execute(
        select(orders).where(condition).order_by(orders.c.created_at.desc())
    )
    return [row_to_order(row).to_dict() for row in result.fetchall()]


async def list_pending_commits(
    session: AsyncSession,
    seller_id: str,
    now: datetime,
) -> list[dict]:
    """Paid orders still waiting for this seller, most urgent first."""
    result = await session.execute(
        select(orders)
        .where(
            orders.c.seller_id == seller_id,
            orders.c.status == OrderStatus.PAID_PENDING_SELLER.value,
        )
        .order_by(orders.c.commit_deadline.asc())
    )
    pending = []
    for row in result.fetchall():
        order = row_to_order(row)
        seconds_left = (order.commit_deadline - to_utc(now)).total_seconds()
        data = order.to_dict()
        data["seconds_left"] = max(int(seconds_left), 0)
        data["expired"] = seconds_left <= 0
        pending.append(data)
    return pending
