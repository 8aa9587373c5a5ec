"""
Order Service — Error taxonomy

Every failure the engine reports belongs to a closed set of kinds. Callers
branch on ``error.kind`` (or on the exception class), never on message text.
"""

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    FORBIDDEN = "forbidden"
    DEADLINE_EXPIRED = "deadline_expired"
    REFERENCE_MISMATCH = "reference_mismatch"
    INVALID_ORDER = "invalid_order"
    ITEM_UNAVAILABLE = "item_unavailable"
    GATEWAY = "gateway"


class OrderError(Exception):
    """Base class for every error surfaced to the caller of the engine."""

    kind: ErrorKind
    user_message = "This action could not be completed."

    def __init__(
        self,
        message: str,
        *,
        order_id: str | None = None,
        transition: str | None = None,
    ) -> None:
        super().__init__(message)
        self.order_id = order_id
        self.transition = transition

    def to_dict(self) -> dict:
        return {
            "error": self.kind.value,
            "message": self.user_message,
            "detail": str(self),
            "order_id": self.order_id,
            "transition": self.transition,
        }


class OrderNotFound(OrderError):
    kind = ErrorKind.NOT_FOUND
    user_message = "Order not found."


class InvalidState(OrderError):
    kind = ErrorKind.INVALID_STATE
    user_message = "This action is not possible in the order's current state."

    def __init__(self, message: str, *, current_status: str | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.current_status = current_status

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["current_status"] = self.current_status
        return data


class Forbidden(OrderError):
    kind = ErrorKind.FORBIDDEN
    user_message = "You are not allowed to perform this action on this order."


class DeadlineExpired(OrderError):
    kind = ErrorKind.DEADLINE_EXPIRED
    user_message = "This order has expired and was automatically cancelled."


class ReferenceMismatch(OrderError):
    kind = ErrorKind.REFERENCE_MISMATCH
    user_message = "The payment could not be matched to this order."


class InvalidOrder(OrderError):
    kind = ErrorKind.INVALID_ORDER
    user_message = "The order request is invalid."


class ItemUnavailable(OrderError):
    kind = ErrorKind.ITEM_UNAVAILABLE
    user_message = "This item is no longer available."


class GatewayError(OrderError):
    kind = ErrorKind.GATEWAY
    user_message = "The payment provider could not be reached. Please try again."


class SchemaError(RuntimeError):
    """The database is missing a table or column the service needs."""
