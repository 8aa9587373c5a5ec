"""
Order Service — Order Lifecycle Engine

The engine is the only writer of orders. Each public operation follows the
same shape:

    1. read the order, check actor / state / deadline
    2. in one store transaction:
         compare-and-set the status (the precondition is re-checked by the
         database), flip item availability, record a settlement request,
         append the audit event
    3. after commit: publish the event, notify the parties, execute the
       settlement against the gateway

Step 3 is best-effort. A notification that cannot be sent is dropped; a
settlement that fails stays recorded as failed and is retried by the
sweeper, and the caller is told "action recorded, settlement pending".

If step 2's compare-and-set loses a race (another handler or the sweeper
moved the order first), nothing is written and the caller gets InvalidState
or DeadlineExpired computed from a fresh read.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from .aggregate import CANCELLABLE_STATES, Order, OrderStatus, can_transition
from .errors import (
    DeadlineExpired,
    Forbidden,
    GatewayError,
    InvalidOrder,
    InvalidState,
    ItemUnavailable,
    OrderError,
    OrderNotFound,
    ReferenceMismatch,
)
from .events import (
    LatePaymentRefunded,
    OrderCancelled,
    OrderCollected,
    OrderCommitted,
    OrderCompleted,
    OrderCreated,
    OrderEvent,
    OrderRefunded,
    PaymentConfirmed,
)
from .gateway import PaymentStatus
from .notifications import NotificationKind
from .store import OrderStore, Settlement, SettlementKind

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_WINDOW = timedelta(hours=48)

SYSTEM_ACTOR = "system"
ADMIN_ACTOR = "admin"


class CancellationReason:
    BUYER = "buyer_cancelled"
    SELLER = "seller_cancelled"
    COMMIT_TIMEOUT = "seller_commit_timeout"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_INIT_FAILED = "payment_initialization_failed"
    ADMIN_REFUND = "admin_refund"


SETTLEMENT_PENDING_MESSAGE = "Action recorded, settlement pending."


class TransitionResult(BaseModel):
    order: Order
    settlement_pending: bool = False

    @property
    def message(self) -> str | None:
        return SETTLEMENT_PENDING_MESSAGE if self.settlement_pending else None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderLifecycleEngine:
    def __init__(
        self,
        store: OrderStore,
        notifier,
        gateway,
        publisher=None,
        *,
        clock: Callable[[], datetime] = utc_now,
        commit_window: timedelta = DEFAULT_COMMIT_WINDOW,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.gateway = gateway
        self.publisher = publisher
        self.clock = clock
        self.commit_window = commit_window

    # ── Creation ─────────────────────────────────

    async def create_order(
        self,
        buyer_id: str,
        seller_id: str,
        item_ref: str,
        amount: int,
        *,
        buyer_email: str = "",
        payment_reference: str | None = None,
    ) -> Order:
        """
        Create a pending order and take the item off the market.

        Both happen in one transaction: an item is never sold to two
        pending orders, and a failed insert leaves it available.
        """
        if buyer_id == seller_id:
            raise self._rejected(InvalidOrder(
                "buyer and seller must be different users", transition="create"
            ))
        if amount <= 0:
            raise self._rejected(InvalidOrder(
                f"amount must be positive, got {amount}", transition="create"
            ))

        now = self.clock()
        order_id = uuid.uuid4().hex
        order = Order(
            id=order_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            item_ref=item_ref,
            amount=amount,
            buyer_email=buyer_email,
            payment_reference=payment_reference or f"ORD-{order_id[:20]}",
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        event = OrderCreated(
            order_id=order.id,
            timestamp=now,
            buyer_id=buyer_id,
            seller_id=seller_id,
            item_ref=item_ref,
            amount=amount,
            payment_reference=order.payment_reference,
        )

        try:
            async with self.store.transaction() as tx:
                if not await tx.set_item_available(item_ref, False, now):
                    raise ItemUnavailable(
                        f"item {item_ref} is not available", transition="create"
                    )
                await tx.create(order)
                await tx.append_event(event)
        except ItemUnavailable as e:
            raise self._rejected(e)
        except IntegrityError as e:
            raise self._rejected(InvalidOrder(
                f"payment reference {order.payment_reference} is already in use",
                transition="create",
            )) from e

        logger.info(
            "Order %s created: buyer=%s seller=%s item=%s amount=%d",
            order.id, buyer_id, seller_id, item_ref, amount,
        )
        await self._publish(event)
        return order

    async def start_checkout(
        self,
        buyer_id: str,
        buyer_email: str,
        seller_id: str,
        item_ref: str,
        amount: int,
        metadata: dict | None = None,
    ) -> tuple[Order, str]:
        """Create the order and open a hosted payment session for it."""
        order = await self.create_order(
            buyer_id, seller_id, item_ref, amount, buyer_email=buyer_email
        )
        session_metadata = {
            "order_id": order.id,
            "item_ref": item_ref,
            "seller_id": seller_id,
            **(metadata or {}),
        }
        try:
            session_url = await self.gateway.initialize_session(
                buyer_email, amount, order.payment_reference, session_metadata
            )
        except GatewayError as e:
            e.order_id = order.id
            e.transition = "start_checkout"
            logger.warning("Payment session for order %s failed: %s", order.id, e)
            await self._cancel(
                order,
                CancellationReason.PAYMENT_INIT_FAILED,
                cancelled_by=SYSTEM_ACTOR,
                now=self.clock(),
            )
            raise
        return order, session_url

    # ── Payment ──────────────────────────────────

    async def confirm_payment(self, order_id: str, gateway_reference: str) -> TransitionResult:
        """pending → paid_pending_seller; opens the seller's commit window."""
        transition = "confirm_payment"
        order = await self._load(order_id, transition)
        self._check_reference(order, gateway_reference, transition)
        if order.status != OrderStatus.PENDING:
            raise self._invalid_state(order, transition)

        now = self.clock()
        deadline = now + self.commit_window
        event = PaymentConfirmed(
            order_id=order.id,
            timestamp=now,
            payment_reference=order.payment_reference,
            commit_deadline=deadline,
        )
        updated, _ = await self._apply(
            order,
            OrderStatus.PENDING,
            {
                "status": OrderStatus.PAID_PENDING_SELLER,
                "commit_deadline": deadline,
                "updated_at": now,
            },
            event,
        )
        if updated is None:
            raise await self._lost_race(order_id, transition)

        logger.info("Order %s paid; seller must commit by %s", order.id, deadline.isoformat())
        hours = int(self.commit_window.total_seconds() // 3600)
        await self._notify(
            order.seller_id,
            NotificationKind.NEW_ORDER,
            order.id,
            f"You have a new order. Please commit to the sale within {hours} hours.",
        )
        await self._notify(
            order.buyer_id,
            NotificationKind.PAYMENT_CONFIRMED,
            order.id,
            "Payment confirmed. The seller has been asked to commit to your order.",
        )
        return TransitionResult(order=updated)

    async def fail_payment(self, order_id: str, gateway_reference: str) -> TransitionResult:
        """pending → cancelled when the gateway reports the payment failed."""
        transition = "fail_payment"
        order = await self._load(order_id, transition)
        self._check_reference(order, gateway_reference, transition)
        if order.status != OrderStatus.PENDING:
            raise self._invalid_state(order, transition)

        result = await self._cancel(
            order,
            CancellationReason.PAYMENT_FAILED,
            cancelled_by=SYSTEM_ACTOR,
            now=self.clock(),
        )
        if result is None:
            raise await self._lost_race(order_id, transition)

        await self._notify(
            order.buyer_id,
            NotificationKind.CANCELLED,
            order.id,
            "Your payment did not go through, so the order was cancelled.",
        )
        return result

    async def reconcile_payment(self, gateway_reference: str) -> TransitionResult:
        """Ask the gateway about a reference and apply the outcome to its order."""
        transition = "reconcile_payment"
        order = await self.store.get_by_reference(gateway_reference)
        if order is None:
            raise self._rejected(OrderNotFound(
                f"no order with payment reference {gateway_reference}",
                transition=transition,
            ))

        try:
            confirmation = await self.gateway.confirm(gateway_reference)
        except GatewayError as e:
            e.order_id = order.id
            e.transition = transition
            raise self._rejected(e)

        if confirmation.reference != order.payment_reference:
            raise self._rejected(ReferenceMismatch(
                f"gateway answered for {confirmation.reference}, "
                f"expected {order.payment_reference}",
                order_id=order.id,
                transition=transition,
            ))

        if confirmation.status == PaymentStatus.PAID:
            if confirmation.amount != order.amount:
                raise self._rejected(ReferenceMismatch(
                    f"paid amount {confirmation.amount} does not match order amount {order.amount}",
                    order_id=order.id,
                    transition=transition,
                ))
            try:
                return await self.confirm_payment(order.id, gateway_reference)
            except InvalidState:
                # The buyer may finish paying after the order was closed.
                current = await self.store.get(order.id)
                if current is None or current.status not in (
                    OrderStatus.CANCELLED,
                    OrderStatus.REFUNDED,
                ):
                    raise
                result = await self._refund_late_payment(current)
                if result is None:
                    raise
                return result
        if confirmation.status == PaymentStatus.FAILED:
            return await self.fail_payment(order.id, gateway_reference)

        logger.info("Payment %s for order %s still in progress", gateway_reference, order.id)
        return TransitionResult(order=order)

    async def _refund_late_payment(self, order: Order) -> TransitionResult | None:
        """
        Refund a payment captured on a cancelled or refunded order.

        Returns None when a refund for this order is already on record.
        """
        existing = await self.store.get_settlements(order.id)
        if any(s.kind == SettlementKind.REFUND for s in existing):
            return None

        now = self.clock()
        event = LatePaymentRefunded(
            order_id=order.id,
            timestamp=now,
            payment_reference=order.payment_reference,
            amount=order.amount,
            order_status=order.status.value,
        )
        try:
            async with self.store.transaction() as tx:
                settlement = await tx.request_settlement(
                    order, SettlementKind.REFUND, order.buyer_id, now
                )
                await tx.append_event(event)
        except IntegrityError:
            # A concurrent delivery of the same webhook recorded it first.
            return None

        logger.warning(
            "Payment %s arrived for %s order %s; refunding %d to buyer %s",
            order.payment_reference, order.status.value, order.id, order.amount, order.buyer_id,
        )
        await self._publish(event)
        settled = await self._settle(settlement)
        await self._notify(
            order.buyer_id,
            NotificationKind.REFUNDED,
            order.id,
            "Your payment arrived after the order was closed and will be refunded.",
        )
        return TransitionResult(order=order, settlement_pending=not settled)

    # ── Party actions ────────────────────────────

    async def commit(self, order_id: str, acting_user_id: str) -> TransitionResult:
        """paid_pending_seller → committed, by the seller, before the deadline."""
        transition = "commit"
        order = await self._load(order_id, transition)
        if acting_user_id != order.seller_id:
            raise self._forbidden(order, acting_user_id, transition)
        if order.status != OrderStatus.PAID_PENDING_SELLER:
            raise self._invalid_state(order, transition)

        now = self.clock()
        if order.commit_expired(now):
            # Expire it now rather than waiting for the next sweep.
            await self._expire(order, now, inclusive=True)
            raise await self._commit_rejected(order_id, transition)

        event = OrderCommitted(order_id=order.id, timestamp=now, seller_id=order.seller_id)
        updated, _ = await self._apply(
            order,
            OrderStatus.PAID_PENDING_SELLER,
            {"status": OrderStatus.COMMITTED, "committed_at": now, "updated_at": now},
            event,
            deadline_after=now,
        )
        if updated is None:
            raise await self._commit_rejected(order_id, transition)

        logger.info("Order %s committed by seller %s", order.id, acting_user_id)
        await self._notify(
            order.buyer_id,
            NotificationKind.SELLER_COMMITTED,
            order.id,
            "The seller confirmed your order and is preparing it for collection.",
        )
        return TransitionResult(order=updated)

    async def mark_collected(self, order_id: str, acting_user_id: str) -> TransitionResult:
        """committed → collected, by the seller, once the courier has the item."""
        transition = "mark_collected"
        order = await self._load(order_id, transition)
        if acting_user_id != order.seller_id:
            raise self._forbidden(order, acting_user_id, transition)
        if order.status != OrderStatus.COMMITTED:
            raise self._invalid_state(order, transition)

        now = self.clock()
        event = OrderCollected(order_id=order.id, timestamp=now, seller_id=order.seller_id)
        updated, _ = await self._apply(
            order,
            OrderStatus.COMMITTED,
            {"status": OrderStatus.COLLECTED, "collected_at": now, "updated_at": now},
            event,
        )
        if updated is None:
            raise await self._lost_race(order_id, transition)

        logger.info("Order %s collected", order.id)
        await self._notify(
            order.buyer_id,
            NotificationKind.SHIPPED,
            order.id,
            "Your book has been collected and is on its way.",
        )
        return TransitionResult(order=updated)

    async def confirm_delivery(self, order_id: str, acting_user_id: str) -> TransitionResult:
        """collected (or committed) → completed, by the buyer; releases funds to the seller."""
        transition = "confirm_delivery"
        order = await self._load(order_id, transition)
        if acting_user_id != order.buyer_id:
            raise self._forbidden(order, acting_user_id, transition)
        if order.status not in (OrderStatus.COLLECTED, OrderStatus.COMMITTED):
            raise self._invalid_state(order, transition)

        now = self.clock()
        event = OrderCompleted(
            order_id=order.id, timestamp=now, buyer_id=order.buyer_id, amount=order.amount
        )
        updated, settlement = await self._apply(
            order,
            order.status,
            {"status": OrderStatus.COMPLETED, "completed_at": now, "updated_at": now},
            event,
            settlement=(SettlementKind.RELEASE, order.seller_id),
        )
        if updated is None:
            raise await self._lost_race(order_id, transition)

        logger.info("Order %s completed; releasing %d to seller %s", order.id, order.amount, order.seller_id)
        settled = await self._settle(settlement)
        await self._notify(
            order.seller_id,
            NotificationKind.DELIVERED,
            order.id,
            "The buyer confirmed delivery. Your payout is on its way.",
        )
        return TransitionResult(order=updated, settlement_pending=not settled)

    async def cancel(
        self,
        order_id: str,
        acting_user_id: str,
        reason: str | None = None,
    ) -> TransitionResult:
        """
        Cancel on behalf of the buyer or the seller.

        Legal from pending, paid_pending_seller and committed; once the item
        has been collected the order can only complete or be refunded by an
        administrator. Releases the item and refunds a captured payment.
        """
        transition = "cancel"
        order = await self._load(order_id, transition)
        if not order.is_party(acting_user_id):
            raise self._forbidden(order, acting_user_id, transition)
        if order.status not in CANCELLABLE_STATES:
            raise self._invalid_state(order, transition)

        if not reason:
            reason = (
                CancellationReason.BUYER
                if acting_user_id == order.buyer_id
                else CancellationReason.SELLER
            )
        result = await self._cancel(order, reason, cancelled_by=acting_user_id, now=self.clock())
        if result is None:
            raise await self._lost_race(order_id, transition)

        await self._notify(
            order.counterparty_of(acting_user_id),
            NotificationKind.CANCELLED,
            order.id,
            f"The order was cancelled by the other party ({reason}).",
        )
        return result

    # ── Administration ───────────────────────────

    async def refund(
        self,
        order_id: str,
        reason: str = CancellationReason.ADMIN_REFUND,
    ) -> TransitionResult:
        """Admin override: any non-terminal order → refunded."""
        transition = "refund"
        order = await self._load(order_id, transition)
        if order.is_terminal:
            raise self._invalid_state(order, transition)

        now = self.clock()
        refund_due = order.is_paid
        event = OrderRefunded(
            order_id=order.id,
            timestamp=now,
            reason=reason,
            refunded_by=ADMIN_ACTOR,
            refund_requested=refund_due,
        )
        updated, settlement = await self._apply(
            order,
            order.status,
            {
                "status": OrderStatus.REFUNDED,
                "cancelled_at": now,
                "cancellation_reason": reason,
                "updated_at": now,
            },
            event,
            settlement=(SettlementKind.REFUND, order.buyer_id) if refund_due else None,
        )
        if updated is None:
            raise await self._lost_race(order_id, transition)

        logger.info("Order %s refunded by administrator: %s", order.id, reason)
        settled = await self._settle(settlement) if settlement else True
        await self._notify(
            order.buyer_id,
            NotificationKind.REFUNDED,
            order.id,
            "Your order was refunded.",
        )
        return TransitionResult(order=updated, settlement_pending=not settled)

    # ── System ───────────────────────────────────

    async def sweep_expired(self, now: datetime | None = None) -> list[Order]:
        """
        Cancel every paid order whose commit deadline is before `now`.

        Safe to run repeatedly and concurrently: each order is moved by a
        compare-and-set, so an order already cancelled (or committed in the
        meantime) is skipped. One order's failure does not stop the batch.
        """
        now = now or self.clock()
        candidates = await self.store.query_by_status_and_deadline(
            OrderStatus.PAID_PENDING_SELLER, now
        )
        expired = []
        for order in candidates:
            try:
                result = await self._expire(order, now)
            except Exception:
                logger.exception("Failed to expire order %s", order.id)
                continue
            if result is None:
                logger.info("Order %s moved before it could be expired", order.id)
                continue
            expired.append(result.order)
        if expired:
            logger.info("Expired %d order(s) past their commit deadline", len(expired))
        return expired

    async def retry_settlement(self, settlement: Settlement) -> bool:
        """Execute a settlement previously claimed from the failed queue."""
        return await self._settle(settlement)

    # ── Internals ────────────────────────────────

    async def _load(self, order_id: str, transition: str) -> Order:
        order = await self.store.get(order_id)
        if order is None:
            raise self._rejected(OrderNotFound(
                f"order {order_id} does not exist", order_id=order_id, transition=transition
            ))
        return order

    async def _apply(
        self,
        order: Order,
        expected: OrderStatus,
        fields: dict,
        event: OrderEvent,
        *,
        item_available: bool | None = None,
        settlement: tuple[SettlementKind, str] | None = None,
        **guards,
    ) -> tuple[Order | None, Settlement | None]:
        """
        Run one transition atomically. Returns (None, None) if the precondition lost.

        `guards` are the deadline conditions of OrderStore.compare_and_set_status.
        """
        new_status = fields["status"]
        if not can_transition(expected, new_status):
            raise self._rejected(InvalidState(
                f"{expected.value} -> {new_status.value} is not a legal transition",
                current_status=expected.value,
                order_id=order.id,
                transition=event.event_type,
            ))

        requested = None
        async with self.store.transaction() as tx:
            applied = await tx.compare_and_set_status(order.id, expected, fields, **guards)
            if not applied:
                return None, None
            if item_available is not None:
                changed = await tx.set_item_available(order.item_ref, item_available, event.timestamp)
                if not changed:
                    logger.warning(
                        "Item %s of order %s already had available=%s",
                        order.item_ref, order.id, item_available,
                    )
            if settlement is not None:
                kind, recipient_id = settlement
                requested = await tx.request_settlement(order, kind, recipient_id, event.timestamp)
            await tx.append_event(event)

        await self._publish(event)
        return order.model_copy(update=fields), requested

    async def _cancel(
        self,
        order: Order,
        reason: str,
        *,
        cancelled_by: str,
        now: datetime,
        **guards,
    ) -> TransitionResult | None:
        refund_due = order.is_paid
        event = OrderCancelled(
            order_id=order.id,
            timestamp=now,
            reason=reason,
            cancelled_by=cancelled_by,
            refund_requested=refund_due,
        )
        updated, settlement = await self._apply(
            order,
            order.status,
            {
                "status": OrderStatus.CANCELLED,
                "cancelled_at": now,
                "cancellation_reason": reason,
                "updated_at": now,
            },
            event,
            item_available=True,
            settlement=(SettlementKind.REFUND, order.buyer_id) if refund_due else None,
            **guards,
        )
        if updated is None:
            return None

        logger.info("Order %s cancelled by %s: %s", order.id, cancelled_by, reason)
        settled = await self._settle(settlement) if settlement else True
        return TransitionResult(order=updated, settlement_pending=not settled)

    async def _expire(
        self, order: Order, now: datetime, *, inclusive: bool = False
    ) -> TransitionResult | None:
        """
        Timeout cancellation. The sweep expires strictly past deadlines; a
        commit attempt (inclusive) also expires an order at its deadline.
        """
        guard = {"deadline_reached": now} if inclusive else {"deadline_before": now}
        result = await self._cancel(
            order,
            CancellationReason.COMMIT_TIMEOUT,
            cancelled_by=SYSTEM_ACTOR,
            now=now,
            **guard,
        )
        if result is None:
            return None
        await self._notify(
            order.buyer_id,
            NotificationKind.CANCELLED,
            order.id,
            "The seller did not commit in time. Your order was cancelled and your payment will be refunded.",
        )
        await self._notify(
            order.seller_id,
            NotificationKind.CANCELLED,
            order.id,
            "This order has expired and was automatically cancelled because it was not committed in time.",
        )
        return result

    async def _settle(self, settlement: Settlement | None) -> bool:
        """
        Execute a settlement against the gateway and record the outcome.

        Never raises: the transition it belongs to has already committed.
        Any failure leaves the row failed so the sweeper retries it.
        """
        if settlement is None:
            return True
        try:
            if settlement.kind == SettlementKind.REFUND:
                await self.gateway.refund(settlement.payment_reference, settlement.amount)
            else:
                await self.gateway.release(
                    settlement.recipient_id, settlement.amount, settlement.payment_reference
                )
        except GatewayError as e:
            logger.warning(
                "%s of %d for order %s failed, will retry: %s",
                settlement.kind.value, settlement.amount, settlement.order_id, e,
            )
            await self._finish_settlement(settlement, False, error=str(e))
            return False
        except Exception as e:
            logger.exception(
                "%s of %d for order %s failed unexpectedly, will retry",
                settlement.kind.value, settlement.amount, settlement.order_id,
            )
            await self._finish_settlement(settlement, False, error=repr(e))
            return False
        return await self._finish_settlement(settlement, True)

    async def _finish_settlement(
        self, settlement: Settlement, succeeded: bool, error: str | None = None
    ) -> bool:
        try:
            await self.store.finish_settlement(settlement.id, succeeded, self.clock(), error=error)
        except Exception:
            # The row stays processing and needs an operator.
            logger.exception(
                "Could not record %s outcome (succeeded=%s) for settlement %s of order %s",
                settlement.kind.value, succeeded, settlement.id, settlement.order_id,
            )
        return succeeded

    async def _lost_race(self, order_id: str, transition: str) -> OrderError:
        current = await self.store.get(order_id)
        if current is None:
            return self._rejected(OrderNotFound(
                f"order {order_id} disappeared", order_id=order_id, transition=transition
            ))
        return self._invalid_state(current, transition)

    async def _commit_rejected(self, order_id: str, transition: str) -> OrderError:
        """Why a commit did not apply, from a fresh read."""
        current = await self.store.get(order_id)
        if current is None:
            return await self._lost_race(order_id, transition)
        if (
            current.status == OrderStatus.CANCELLED
            and current.cancellation_reason == CancellationReason.COMMIT_TIMEOUT
        ):
            return self._rejected(DeadlineExpired(
                f"commit deadline {current.commit_deadline.isoformat()} has passed",
                order_id=order_id,
                transition=transition,
            ))
        return self._invalid_state(current, transition)

    def _check_reference(self, order: Order, reference: str, transition: str) -> None:
        if order.payment_reference != reference:
            raise self._rejected(ReferenceMismatch(
                f"reference {reference} does not match {order.payment_reference}",
                order_id=order.id,
                transition=transition,
            ))

    def _invalid_state(self, order: Order, transition: str) -> InvalidState:
        return self._rejected(InvalidState(
            f"cannot {transition} an order in status {order.status.value}",
            current_status=order.status.value,
            order_id=order.id,
            transition=transition,
        ))

    def _forbidden(self, order: Order, user_id: str, transition: str) -> Forbidden:
        return self._rejected(Forbidden(
            f"user {user_id} may not {transition} this order",
            order_id=order.id,
            transition=transition,
        ))

    def _rejected(self, error: OrderError) -> OrderError:
        if isinstance(error, ReferenceMismatch):
            logger.error(
                "Payment reference mismatch on order %s (%s): %s",
                error.order_id, error.transition, error,
            )
        else:
            logger.warning(
                "Rejected %s on order %s: %s", error.transition, error.order_id, error
            )
        return error

    async def _notify(self, user_id: str, kind: NotificationKind, order_id: str, message: str) -> None:
        try:
            await self.notifier.notify(user_id, kind, order_id, message)
        except Exception:
            logger.warning("Notification %s for order %s failed", kind.value, order_id, exc_info=True)

    async def _publish(self, event: OrderEvent) -> None:
        if self.publisher is None:
            return
        try:
            await self.publisher.publish(event)
        except Exception:
            logger.warning("Publishing %s failed", event.event_type, exc_info=True)
