"""
Order Service — Order Aggregate

The order is the only mutable shared resource of the service. Its status
only ever moves forward along the edges below; the three terminal states
have no outgoing edges.

    pending ──▶ paid_pending_seller ──▶ committed ──▶ collected ──▶ completed
       │                │                   │  └─────────────────────▲
       │                │                   │     (collection skipped)
       ▼                ▼                   ▼
    cancelled        cancelled           cancelled

    any non-terminal ──▶ refunded   (admin override)
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID_PENDING_SELLER = "paid_pending_seller"
    COMMITTED = "committed"
    COLLECTED = "collected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


TERMINAL_STATES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
)

# States in which the buyer's money has been captured.
PAID_STATES = frozenset(
    {
        OrderStatus.PAID_PENDING_SELLER,
        OrderStatus.COMMITTED,
        OrderStatus.COLLECTED,
        OrderStatus.COMPLETED,
    }
)

# Party cancellation is legal up through committed, never after handoff.
CANCELLABLE_STATES = frozenset(
    {OrderStatus.PENDING, OrderStatus.PAID_PENDING_SELLER, OrderStatus.COMMITTED}
)

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PAID_PENDING_SELLER, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.PAID_PENDING_SELLER: frozenset(
        {OrderStatus.COMMITTED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.COMMITTED: frozenset(
        {
            OrderStatus.COLLECTED,
            OrderStatus.COMPLETED,
            OrderStatus.CANCELLED,
            OrderStatus.REFUNDED,
        }
    ),
    OrderStatus.COLLECTED: frozenset({OrderStatus.COMPLETED, OrderStatus.REFUNDED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def can_transition(src: OrderStatus, dst: OrderStatus) -> bool:
    return dst in TRANSITIONS[src]


class Order(BaseModel):
    """A single buyer/seller transaction as stored in the orders table."""

    id: str
    buyer_id: str
    seller_id: str
    item_ref: str
    amount: int
    payment_reference: str
    buyer_email: str = ""
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime
    updated_at: datetime | None = None
    commit_deadline: datetime | None = None
    committed_at: datetime | None = None
    collected_at: datetime | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None
    cancellation_reason: str | None = None
    reminder_sent_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_STATES

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    def counterparty_of(self, user_id: str) -> str:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id

    def commit_expired(self, now: datetime) -> bool:
        return self.commit_deadline is not None and now >= self.commit_deadline

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")
