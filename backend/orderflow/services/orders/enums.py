"""Order status and related enums for order lifecycle management.

This module defines the closed set of order statuses with the authoritative
transition table, plus the enums for payment proof outcomes, audit actions
and customer notifications.
"""

from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional


class OrderStatus(str, Enum):
    """Order lifecycle status.

    Valid transitions:
    - PENDING_ADMIN -> PAID, REJECTED, CANCELLED
    - PAID -> SHIPPED, CANCELLED
    - SHIPPED -> DELIVERED, CANCELLED
    - DELIVERED -> (terminal state)
    - CANCELLED -> (terminal state)
    - REJECTED -> (terminal state)
    """

    PENDING_ADMIN = "PENDING_ADMIN"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().upper())
        except (ValueError, AttributeError):
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        """Check if status has no outgoing transitions."""
        return not VALID_TRANSITIONS[self]

    def restores_stock(self) -> bool:
        """Check if entering this status returns reserved stock."""
        return self in STOCK_RESTORING_STATUSES

    @property
    def display_name(self) -> str:
        """Get human-readable display name for status."""
        return self.value.replace("_", " ").title()


VALID_TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = MappingProxyType({
    OrderStatus.PENDING_ADMIN: frozenset({
        OrderStatus.PAID,
        OrderStatus.REJECTED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PAID: frozenset({
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.SHIPPED: frozenset({
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REJECTED: frozenset(),
})

STOCK_RESTORING_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.CANCELLED,
    OrderStatus.REJECTED,
})

# Per-status timestamp column set when the order enters that status
STATUS_TIMESTAMP_FIELDS: Mapping[OrderStatus, Optional[str]] = MappingProxyType({
    OrderStatus.PENDING_ADMIN: None,
    OrderStatus.PAID: "paid_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.REJECTED: "rejected_at",
})


def _check_exhaustive(table: Mapping[OrderStatus, object], name: str) -> None:
    missing = set(OrderStatus) - set(table)
    if missing:
        raise RuntimeError(
            f"{name} is missing entries for: "
            + ", ".join(sorted(s.value for s in missing))
        )


_check_exhaustive(VALID_TRANSITIONS, "VALID_TRANSITIONS")
_check_exhaustive(STATUS_TIMESTAMP_FIELDS, "STATUS_TIMESTAMP_FIELDS")


def validate_order_status_transition(
    current: OrderStatus,
    new: OrderStatus,
) -> bool:
    """Validate if order status transition is allowed.

    Args:
        current: Current order status
        new: Proposed new status

    Returns:
        True if transition is valid, False otherwise
    """
    return new in VALID_TRANSITIONS.get(current, frozenset())


def get_allowed_order_transitions(current: OrderStatus) -> FrozenSet[OrderStatus]:
    """Get allowed target statuses from current status."""
    return VALID_TRANSITIONS.get(current, frozenset())


def is_terminal(status: OrderStatus) -> bool:
    """Check if a status is terminal (no allowed targets)."""
    return not VALID_TRANSITIONS.get(status, frozenset())


def should_restore_stock(target: OrderStatus) -> bool:
    """Check if transitioning into target releases the order's stock."""
    return target in STOCK_RESTORING_STATUSES


class ProofStatus(str, Enum):
    """Verification outcome of an uploaded payment proof."""

    PENDING = "pending"
    AUTO_VERIFIED = "auto_verified"
    MANUALLY_VERIFIED = "manually_verified"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


class AuditAction(str, Enum):
    """Actions recorded in the append-only audit log."""

    CREATE_ORDER = "create_order"
    CONFIRM_PAYMENT = "confirm_payment"
    REJECT_ORDER = "reject_order"
    SHIP_ORDER = "ship_order"
    DELIVER_ORDER = "deliver_order"
    CANCEL_ORDER = "cancel_order"
    UPLOAD_PAYMENT_PROOF = "upload_payment_proof"
    AUTO_VERIFY_PAYMENT = "auto_verify_payment"


class NotificationType(str, Enum):
    """Notification messages; the last two go to store admins."""

    PAYMENT_CONFIRMED = "payment_confirmed"
    ORDER_REJECTED = "order_rejected"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_CREATED = "order_created"
    PAYMENT_PROOF_UPLOADED = "payment_proof_uploaded"


TRANSITION_AUDIT_ACTIONS: Dict[OrderStatus, AuditAction] = {
    OrderStatus.PAID: AuditAction.CONFIRM_PAYMENT,
    OrderStatus.REJECTED: AuditAction.REJECT_ORDER,
    OrderStatus.SHIPPED: AuditAction.SHIP_ORDER,
    OrderStatus.DELIVERED: AuditAction.DELIVER_ORDER,
    OrderStatus.CANCELLED: AuditAction.CANCEL_ORDER,
}

STATUS_NOTIFICATIONS: Dict[OrderStatus, NotificationType] = {
    OrderStatus.PAID: NotificationType.PAYMENT_CONFIRMED,
    OrderStatus.REJECTED: NotificationType.ORDER_REJECTED,
    OrderStatus.SHIPPED: NotificationType.ORDER_SHIPPED,
    OrderStatus.DELIVERED: NotificationType.ORDER_DELIVERED,
    OrderStatus.CANCELLED: NotificationType.ORDER_CANCELLED,
}
