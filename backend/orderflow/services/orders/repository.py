"""
Order data access repositories.

This module implements the OrderRepository for creating and loading orders
and the AuditRepository, the append-only sink for lifecycle actions. Both
operate inside the caller's session and transaction; neither commits.
Storage failures are raised as OrderRepositoryError, a retryable
infrastructure error.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import TransientInfraError
from orderflow.core.logging import get_logger
from orderflow.database.base import utcnow
from orderflow.database.models.audit import AuditLog
from orderflow.database.models.order import Order, OrderItem
from orderflow.services.orders.enums import AuditAction, OrderStatus

logger = get_logger(__name__)

ORDER_NUMBER_DIGITS = 5


class OrderRepositoryError(TransientInfraError):
    """Raised when the order store fails."""

    default_code = "order_repository_error"


class OrderNumberConflictError(OrderRepositoryError):
    """Raised when a generated order number collides with a concurrent insert."""

    default_code = "order_number_conflict"


def order_number_prefix(now: Optional[datetime] = None) -> str:
    """Month prefix for order numbers, e.g. '0326' for March 2026."""
    now = now or utcnow()
    return now.strftime("%m%y")


def format_order_number(prefix: str, sequence: int) -> str:
    return f"{prefix}-{sequence:0{ORDER_NUMBER_DIGITS}d}"


class OrderRepository:
    """
    Repository for order data access operations.

    Provides async methods to create orders with their items, look them up by
    id, number or idempotency key, and generate the next order number.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def next_order_number(self, now: Optional[datetime] = None) -> str:
        """
        Generate the next MMYY-NNNNN order number for the current month.

        Args:
            now: Clock override

        Returns:
            Order number one above the highest number with the same prefix
        """
        prefix = order_number_prefix(now)
        try:
            current_max = await self.session.scalar(
                select(func.max(Order.order_number)).where(
                    Order.order_number.like(f"{prefix}-%")
                )
            )
        except SQLAlchemyError as e:
            logger.error("Failed to read last order number", prefix=prefix, error=str(e))
            raise OrderRepositoryError(
                "Failed to generate order number", prefix=prefix
            ) from e

        sequence = 1
        if current_max:
            try:
                sequence = int(current_max.split("-", 1)[1]) + 1
            except (IndexError, ValueError):
                logger.warning("Malformed order number found", order_number=current_max)
        return format_order_number(prefix, sequence)

    async def create_order_with_items(
        self,
        order_number: str,
        store_id: str,
        store_name: str,
        customer_id: str,
        customer_chat_id: Optional[str],
        currency: str,
        items: Sequence[dict[str, Any]],
        client_request_id: Optional[str] = None,
        notes: Optional[str] = None,
        order_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Create order with items.

        Args:
            order_number: Human-readable order number
            store_id: Store the order belongs to
            store_name: Store display name
            customer_id: Customer placing the order
            customer_chat_id: Messaging channel for notifications
            currency: ISO currency code
            items: Dicts with product_id, variant_id, product_name, quantity, unit_price
            client_request_id: Optional idempotency key
            notes: Optional order notes
            order_id: Pre-allocated order id

        Returns:
            Created order in PENDING_ADMIN with items loaded

        Raises:
            OrderNumberConflictError: If the order number is already taken
            OrderRepositoryError: If the insert fails
        """
        order_items = [
            OrderItem(
                position=index,
                product_id=item["product_id"],
                variant_id=item.get("variant_id"),
                product_name=item.get("product_name"),
                quantity=int(item["quantity"]),
                unit_price=Decimal(str(item["unit_price"])),
            )
            for index, item in enumerate(items)
        ]
        total_amount = sum(
            (item.line_total for item in order_items), Decimal("0.00")
        ).quantize(Decimal("0.01"))

        order = Order(
            id=order_id or uuid.uuid4(),
            order_number=order_number,
            status=OrderStatus.PENDING_ADMIN,
            total_amount=total_amount,
            currency=currency.upper(),
            customer_id=customer_id,
            customer_chat_id=customer_chat_id,
            store_id=store_id,
            store_name=store_name,
            client_request_id=client_request_id,
            notes=notes,
            items=order_items,
        )

        try:
            self.session.add(order)
            await self.session.flush()
        except IntegrityError as e:
            logger.warning(
                "Order insert hit a uniqueness constraint",
                order_number=order_number,
                error=str(e.orig),
            )
            raise OrderNumberConflictError(
                "Order number already taken", order_number=order_number
            ) from e
        except SQLAlchemyError as e:
            logger.error(
                "Order creation failed - database error",
                error=str(e),
                order_number=order_number,
            )
            raise OrderRepositoryError(
                "Order creation failed due to database error",
                order_number=order_number,
            ) from e

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order_number,
            item_count=len(order_items),
            total_amount=str(total_amount),
        )
        return order

    async def get_order_by_id(
        self,
        order_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Order]:
        """
        Get order by ID.

        Args:
            order_id: Order identifier
            for_update: Take a row lock where the database supports it

        Returns:
            Order if found, None otherwise
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()

        try:
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", order_id=str(order_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch order", order_id=str(order_id)
            ) from e

    async def get_by_client_request_id(
        self, store_id: str, client_request_id: str
    ) -> Optional[Order]:
        """Find an order previously created with the same idempotency key."""
        try:
            result = await self.session.execute(
                select(Order).where(
                    Order.store_id == store_id,
                    Order.client_request_id == client_request_id,
                )
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise OrderRepositoryError(
                "Failed to look up order by request id",
                store_id=store_id,
                client_request_id=client_request_id,
            ) from e


class AuditRepository:
    """Append-only audit sink for order lifecycle actions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        action: AuditAction,
        actor: str,
        order_id: uuid.UUID,
        details: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditLog:
        """
        Append an audit entry.

        Args:
            action: Action performed
            actor: Who performed it ("system" for automated actions)
            order_id: Order acted upon
            details: JSON-serializable context
            timestamp: Event time, defaults to now

        Returns:
            The pending audit entry, flushed
        """
        entry = AuditLog(
            action=action.value,
            actor=actor,
            order_id=order_id,
            details=details or {},
            created_at=timestamp or utcnow(),
        )
        try:
            self.session.add(entry)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to write audit entry",
                action=action.value,
                order_id=str(order_id),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to write audit entry", order_id=str(order_id)
            ) from e

        logger.debug("Audit entry recorded", action=action.value, order_id=str(order_id))
        return entry

    async def list_for_order(self, order_id: uuid.UUID) -> list[AuditLog]:
        """All audit entries for an order, oldest first."""
        try:
            result = await self.session.execute(
                select(AuditLog)
                .where(AuditLog.order_id == order_id)
                .order_by(AuditLog.created_at, AuditLog.id)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise OrderRepositoryError(
                "Failed to read order history", order_id=str(order_id)
            ) from e
