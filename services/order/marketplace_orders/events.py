"""
Order Service — Event definitions

Each successful transition is recorded as an immutable, past-tense event.
The same payload goes to the audit trail (event_store) and to the
order_events channel for other services.
"""

from datetime import datetime

from pydantic import BaseModel


class OrderEvent(BaseModel):
    order_id: str
    timestamp: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def payload(self) -> dict:
        return self.model_dump(mode="json")


class OrderCreated(OrderEvent):
    """The order was created and the item reserved"""
    buyer_id: str
    seller_id: str
    item_ref: str
    amount: int
    payment_reference: str


class PaymentConfirmed(OrderEvent):
    """The gateway confirmed payment; the seller's commit window opened"""
    payment_reference: str
    commit_deadline: datetime


class OrderCommitted(OrderEvent):
    """The seller committed to fulfil the order"""
    seller_id: str


class OrderCollected(OrderEvent):
    """The seller handed the item over for delivery"""
    seller_id: str


class OrderCompleted(OrderEvent):
    """The buyer confirmed delivery; funds are released to the seller"""
    buyer_id: str
    amount: int


class OrderCancelled(OrderEvent):
    """The order was cancelled by a party, a failed payment or the commit timeout"""
    reason: str
    cancelled_by: str
    refund_requested: bool


class OrderRefunded(OrderEvent):
    """An administrator refunded the order"""
    reason: str
    refunded_by: str
    refund_requested: bool


class LatePaymentRefunded(OrderEvent):
    """A payment captured after the order had closed was sent back to the buyer"""
    payment_reference: str
    amount: int
    order_status: str
