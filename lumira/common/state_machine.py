"""Order state machine transitions enforced by every mutating operation."""

from enum import StrEnum

from lumira.common.errors import ConflictError, InvalidTransitionError


class OrderStatus(StrEnum):
    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    AWAITING_VALIDATION = "AWAITING_VALIDATION"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.FAILED},
    OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.FAILED, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {
        OrderStatus.AWAITING_VALIDATION,
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
    },
    OrderStatus.AWAITING_VALIDATION: {
        OrderStatus.COMPLETED,
        OrderStatus.PROCESSING,
        OrderStatus.FAILED,
    },
    OrderStatus.COMPLETED: {OrderStatus.REFUNDED},
    # FAILED is left only by operator regeneration or a refund.
    OrderStatus.FAILED: {OrderStatus.PROCESSING, OrderStatus.REFUNDED},
    OrderStatus.REFUNDED: set(),
}

# Statuses in which an order may hold generated content.
CONTENT_STATUSES: frozenset[str] = frozenset({OrderStatus.AWAITING_VALIDATION, OrderStatus.COMPLETED})

# Source statuses accepted by the generation edges (callback and orchestrator).
GENERATION_SOURCE_STATUSES: frozenset[str] = frozenset({OrderStatus.PAID, OrderStatus.PROCESSING})


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Invalid transition: {current} -> {new}")


def require_status(current: str, allowed: set[str] | frozenset[str], order_id: str) -> None:
    """Precondition check used at the top of every mutating operation."""

    if current not in allowed:
        expected = ", ".join(sorted(allowed))
        raise ConflictError(f"order {order_id} is in status {current} (expected one of: {expected})")
