"""Order state machine implementation with transition validation.

This module implements the OrderStateMachine that moves an order between
statuses. A transition validates against the transition table, returns
reserved stock when the order is cancelled or rejected, applies the target's
side effects and appends the audit record, all inside the caller's
transaction. The caller commits.
"""

from typing import Any, Callable, Dict, FrozenSet, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import OrderflowError
from orderflow.core.logging import get_logger
from orderflow.database.base import utcnow
from orderflow.database.models.order import Order
from orderflow.services.inventory.ledger import StockLedger
from orderflow.services.orders.enums import (
    STATUS_TIMESTAMP_FIELDS,
    TRANSITION_AUDIT_ACTIONS,
    OrderStatus,
    get_allowed_order_transitions,
    is_terminal,
    should_restore_stock,
    validate_order_status_transition,
)
from orderflow.services.orders.repository import AuditRepository

logger = get_logger(__name__)


class InvalidTransitionError(OrderflowError):
    """Raised when a transition is not allowed from the order's current status."""

    default_code = "invalid_transition"

    def __init__(
        self,
        message: str,
        current_status: Union[OrderStatus, str, None],
        target_status: Union[OrderStatus, str, None],
        allowed_transitions: Optional[list[str]] = None,
        **context: Any,
    ):
        allowed = sorted(allowed_transitions or [])
        super().__init__(
            message,
            current_status=_status_value(current_status),
            target_status=_status_value(target_status),
            allowed_transitions=allowed,
            **context,
        )
        self.current_status = current_status
        self.target_status = target_status
        self.allowed_transitions = allowed


def _status_value(status: Union[OrderStatus, str, None]) -> Optional[str]:
    if isinstance(status, OrderStatus):
        return status.value
    return status


def _coerce_status(status: Union[OrderStatus, str]) -> Optional[OrderStatus]:
    if isinstance(status, OrderStatus):
        return status
    try:
        return OrderStatus.from_string(status)
    except ValueError:
        return None


class OrderStateMachine:
    """State machine for managing order lifecycle transitions.

    Side effects are keyed by target status and only ever touch the order
    row; stock release and auditing are applied around them so that the
    whole transition lands in one flush.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        stock_ledger: Optional[StockLedger] = None,
        audit_repository: Optional[AuditRepository] = None,
    ):
        """Initialize state machine with database session.

        Args:
            db_session: Async session the transition is applied in
            stock_ledger: Ledger used to release stock, defaults to one on db_session
            audit_repository: Audit sink, defaults to one on db_session
        """
        self.db = db_session
        self.stock_ledger = stock_ledger or StockLedger(db_session)
        self.audit = audit_repository or AuditRepository(db_session)
        self._side_effects: Dict[
            OrderStatus, Callable[[Order, Dict[str, Any]], None]
        ] = self._initialize_side_effects()

    def _initialize_side_effects(
        self,
    ) -> Dict[OrderStatus, Callable[[Order, Dict[str, Any]], None]]:
        return {
            OrderStatus.PAID: self._effect_paid,
            OrderStatus.SHIPPED: self._effect_shipped,
            OrderStatus.DELIVERED: self._effect_delivered,
            OrderStatus.CANCELLED: self._effect_cancelled,
            OrderStatus.REJECTED: self._effect_rejected,
        }

    @staticmethod
    def is_terminal(status: OrderStatus) -> bool:
        return is_terminal(status)

    @staticmethod
    def should_restore_stock(target_status: OrderStatus) -> bool:
        return should_restore_stock(target_status)

    def get_allowed_transitions(self, order: Order) -> FrozenSet[OrderStatus]:
        """Get allowed target statuses from the order's current status."""
        current = _coerce_status(order.status)
        if current is None:
            return frozenset()
        return get_allowed_order_transitions(current)

    def validate_transition(
        self,
        order: Order,
        target_status: Union[OrderStatus, str],
    ) -> OrderStatus:
        """Validate if transition to target status is allowed.

        Args:
            order: Order to validate
            target_status: Desired target status

        Returns:
            The target as an OrderStatus

        Raises:
            InvalidTransitionError: If either status is unknown or the
                target is not reachable from the current status
        """
        current = _coerce_status(order.status)
        target = _coerce_status(target_status)

        if current is None or target is None:
            raise InvalidTransitionError(
                f"Unrecognized status in transition {order.status!r} -> {target_status!r}",
                current_status=order.status,
                target_status=target_status,
                allowed_transitions=(
                    [s.value for s in get_allowed_order_transitions(current)]
                    if current is not None
                    else []
                ),
                order_id=str(order.id),
            )

        if not validate_order_status_transition(current, target):
            allowed = get_allowed_order_transitions(current)
            raise InvalidTransitionError(
                f"Invalid transition from {current.value} to {target.value}",
                current_status=current,
                target_status=target,
                allowed_transitions=[s.value for s in allowed],
                order_id=str(order.id),
            )

        return target

    async def transition(
        self,
        order: Order,
        target_status: Union[OrderStatus, str],
        actor: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """Apply a status transition with its side effects.

        Args:
            order: Order to transition, loaded in this session
            target_status: Target status
            actor: Who requested the transition
            metadata: Transition details (reason, tracking_number, carrier, notes, via)

        Returns:
            The updated order, flushed but not committed

        Raises:
            InvalidTransitionError: If the transition is not allowed
            StockLedgerError: If returning stock fails
        """
        metadata = dict(metadata or {})
        target = self.validate_transition(order, target_status)
        previous = _coerce_status(order.status)

        stock_restored = False
        if should_restore_stock(target):
            stock_restored = await self.stock_ledger.release(order.id)

        order.status = target
        self._side_effects[target](order, metadata)

        await self.audit.record(
            action=TRANSITION_AUDIT_ACTIONS[target],
            actor=actor,
            order_id=order.id,
            details={
                "from_status": previous.value,
                "to_status": target.value,
                "stock_restored": stock_restored,
                **{k: v for k, v in metadata.items() if v is not None},
            },
        )
        await self.db.flush()

        logger.info(
            "State transition applied",
            order_id=str(order.id),
            transition=f"{previous.value}->{target.value}",
            actor=actor,
            stock_restored=stock_restored,
        )
        return order

    # Side effects

    def _stamp(self, order: Order, status: OrderStatus) -> None:
        field = STATUS_TIMESTAMP_FIELDS[status]
        if field:
            setattr(order, field, utcnow())

    def _effect_paid(self, order: Order, metadata: Dict[str, Any]) -> None:
        self._stamp(order, OrderStatus.PAID)

    def _effect_shipped(self, order: Order, metadata: Dict[str, Any]) -> None:
        self._stamp(order, OrderStatus.SHIPPED)
        order.tracking_number = metadata.get("tracking_number")
        order.carrier = metadata.get("carrier")

    def _effect_delivered(self, order: Order, metadata: Dict[str, Any]) -> None:
        self._stamp(order, OrderStatus.DELIVERED)
        order.delivery_notes = metadata.get("notes")

    def _effect_cancelled(self, order: Order, metadata: Dict[str, Any]) -> None:
        self._stamp(order, OrderStatus.CANCELLED)
        order.cancellation_reason = metadata.get("reason")

    def _effect_rejected(self, order: Order, metadata: Dict[str, Any]) -> None:
        self._stamp(order, OrderStatus.REJECTED)
        order.rejection_reason = metadata.get("reason")


def get_order_state_machine(db: AsyncSession) -> OrderStateMachine:
    """Factory function to create OrderStateMachine instance.

    Args:
        db: Async database session

    Returns:
        Configured OrderStateMachine instance
    """
    return OrderStateMachine(db_session=db)
