"""
Stock ledger for order reservations.

This module implements the StockLedger used at order creation to reserve
inventory and on cancellation or rejection to give it back. Every counter
change is a single conditional UPDATE so concurrent orders contending on the
same product never oversell, independent of any order-level locking. The
ledger works inside the caller's transaction and never commits.
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import OrderflowError, TransientInfraError
from orderflow.core.logging import get_logger
from orderflow.database.base import utcnow
from orderflow.database.models.inventory import (
    ReservationStatus,
    StockLevel,
    StockMovement,
    StockReservation,
)

logger = get_logger(__name__)


class InsufficientStockError(OrderflowError):
    """Raised when an item cannot be reserved in the requested quantity."""

    default_code = "insufficient_stock"

    def __init__(
        self,
        product_id: str,
        requested: int,
        available: int,
        variant_id: Optional[str] = None,
    ):
        super().__init__(
            f"Insufficient stock for product {product_id}"
            + (f" variant {variant_id}" if variant_id else ""),
            product_id=product_id,
            variant_id=variant_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        self.available = available


class StockLedgerError(TransientInfraError):
    """Raised when the stock store fails while applying a delta."""

    default_code = "stock_ledger_error"


@dataclass(frozen=True)
class StockLine:
    """Quantity of one product (or one of its variants)."""

    product_id: str
    quantity: int
    variant_id: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.product_id, self.variant_id or "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StockLine":
        return cls(
            product_id=data["product_id"],
            variant_id=data.get("variant_id"),
            quantity=int(data["quantity"]),
        )


def merge_lines(lines: Iterable[StockLine]) -> list[StockLine]:
    """
    Sum quantities per product/variant.

    The result is sorted by key so concurrent reservations touch counters in
    the same order.
    """
    totals: "OrderedDict[tuple[str, str], StockLine]" = OrderedDict()
    for line in lines:
        if line.quantity <= 0:
            raise ValueError(f"Quantity must be positive, got {line.quantity}")
        existing = totals.get(line.key)
        if existing is None:
            totals[line.key] = line
        else:
            totals[line.key] = StockLine(
                product_id=line.product_id,
                variant_id=line.variant_id,
                quantity=existing.quantity + line.quantity,
            )
    return [totals[key] for key in sorted(totals)]


def _item_filter(product_id: str, variant_id: Optional[str]) -> list:
    clauses = [StockLevel.product_id == product_id]
    if variant_id is None:
        clauses.append(StockLevel.variant_id.is_(None))
    else:
        clauses.append(StockLevel.variant_id == variant_id)
    return clauses


class StockLedger:
    """
    Atomic reserve/release of per-item inventory.

    Reservations are keyed by order id: releasing an order twice gives back
    its stock exactly once.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_available(self, product_id: str, variant_id: Optional[str] = None) -> int:
        """
        Current available quantity.

        Args:
            product_id: Product identifier
            variant_id: Optional variant identifier

        Returns:
            Available units; 0 when the item has no stock record
        """
        result = await self.session.execute(
            select(StockLevel.available)
            .where(*_item_filter(product_id, variant_id))
            .execution_options(populate_existing=True)
        )
        available = result.scalar_one_or_none()
        return int(available) if available is not None else 0

    async def set_available(
        self,
        product_id: str,
        quantity: int,
        variant_id: Optional[str] = None,
    ) -> None:
        """Create or overwrite the stock counter for an item."""
        if quantity < 0:
            raise ValueError("Stock quantity cannot be negative")

        result = await self.session.execute(
            update(StockLevel)
            .where(*_item_filter(product_id, variant_id))
            .values(available=quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.add(
                StockLevel(product_id=product_id, variant_id=variant_id, available=quantity)
            )
        await self.session.flush()

    async def reserve(self, order_id: uuid.UUID, lines: Sequence[StockLine]) -> None:
        """
        Decrement stock for every line, all or nothing.

        Args:
            order_id: Order the reservation belongs to
            lines: Items and quantities to reserve

        Raises:
            InsufficientStockError: If any item lacks stock; no counter is left changed
            StockLedgerError: If the stock store fails
        """
        merged = merge_lines(lines)
        applied: list[StockLine] = []

        try:
            for line in merged:
                result = await self.session.execute(
                    update(StockLevel)
                    .where(
                        *_item_filter(line.product_id, line.variant_id),
                        StockLevel.available >= line.quantity,
                    )
                    .values(
                        available=StockLevel.available - line.quantity,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount != 1:
                    available = await self.get_available(line.product_id, line.variant_id)
                    await self._compensate(applied)
                    logger.warning(
                        "Stock reservation refused",
                        order_id=str(order_id),
                        product_id=line.product_id,
                        variant_id=line.variant_id,
                        requested=line.quantity,
                        available=available,
                    )
                    raise InsufficientStockError(
                        product_id=line.product_id,
                        variant_id=line.variant_id,
                        requested=line.quantity,
                        available=available,
                    )

                applied.append(line)

            self.session.add_all(
                StockMovement(
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    order_id=order_id,
                    delta=-line.quantity,
                    reason="reserve",
                )
                for line in applied
            )
            self.session.add(
                StockReservation(
                    order_id=order_id,
                    status=ReservationStatus.RESERVED,
                    items=[line.to_dict() for line in merged],
                )
            )
            await self.session.flush()

        except SQLAlchemyError as e:
            logger.error(
                "Stock reservation failed",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StockLedgerError(
                "Failed to reserve stock", order_id=str(order_id)
            ) from e

        logger.info(
            "Stock reserved",
            order_id=str(order_id),
            line_count=len(merged),
            units=sum(line.quantity for line in merged),
        )

    async def release(self, order_id: uuid.UUID) -> bool:
        """
        Give an order's reserved stock back.

        Args:
            order_id: Order whose reservation is released

        Returns:
            True if stock was returned, False if already released or never reserved

        Raises:
            StockLedgerError: If the stock store fails
        """
        try:
            claimed = await self.session.execute(
                update(StockReservation)
                .where(
                    StockReservation.order_id == order_id,
                    StockReservation.status == ReservationStatus.RESERVED,
                )
                .values(
                    status=ReservationStatus.RELEASED,
                    released_at=utcnow(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )

            if claimed.rowcount == 0:
                logger.info("Stock release skipped, nothing reserved", order_id=str(order_id))
                return False

            reservation = await self.session.scalar(
                select(StockReservation)
                .where(StockReservation.order_id == order_id)
                .execution_options(populate_existing=True)
            )
            lines = [StockLine.from_dict(item) for item in reservation.items]

            for line in lines:
                await self._increment(line)
                self.session.add(
                    StockMovement(
                        product_id=line.product_id,
                        variant_id=line.variant_id,
                        order_id=order_id,
                        delta=line.quantity,
                        reason="release",
                    )
                )
            await self.session.flush()

        except SQLAlchemyError as e:
            logger.error(
                "Stock release failed",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StockLedgerError(
                "Failed to release stock", order_id=str(order_id)
            ) from e

        logger.info(
            "Stock released",
            order_id=str(order_id),
            units=sum(line.quantity for line in lines),
        )
        return True

    async def _increment(self, line: StockLine) -> None:
        result = await self.session.execute(
            update(StockLevel)
            .where(*_item_filter(line.product_id, line.variant_id))
            .values(
                available=StockLevel.available + line.quantity,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.add(
                StockLevel(
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    available=line.quantity,
                )
            )

    async def _compensate(self, applied: Sequence[StockLine]) -> None:
        for line in applied:
            await self._increment(line)
