"""
Stock models backing the stock ledger.

StockLevel is the shared per product/variant counter, StockReservation keys
an order's reserved quantities so release happens at most once, and
StockMovement is the append-only record of every delta.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Index,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import Base, BaseModel, JSONType, utcnow


class ReservationStatus(str, Enum):
    """Lifecycle of an order's stock reservation."""

    RESERVED = "reserved"
    RELEASED = "released"


class StockLevel(BaseModel):
    """Available quantity for a product, or for one of its variants."""

    __tablename__ = "stock_levels"

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    variant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    available: Mapped[int] = mapped_column(nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("product_id", "variant_id", name="uq_stock_levels_item"),
        CheckConstraint("available >= 0", name="ck_stock_levels_available_non_negative"),
    )


class StockReservation(BaseModel):
    """Quantities reserved for one order; released at most once."""

    __tablename__ = "stock_reservations"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        unique=True,
    )

    status: Mapped[ReservationStatus] = mapped_column(
        SQLEnum(
            ReservationStatus,
            name="reservation_status",
            native_enum=False,
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
            length=20,
        ),
        nullable=False,
        default=ReservationStatus.RESERVED,
    )

    # [{"product_id": ..., "variant_id": ..., "quantity": ...}, ...]
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)

    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class StockMovement(Base):
    """Append-only stock delta."""

    __tablename__ = "stock_movements"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    variant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    delta: Mapped[int] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_stock_movements_item", "product_id", "variant_id"),
        Index("ix_stock_movements_order", "order_id"),
    )
