"""
Order model for order lifecycle tracking.

This module defines the Order and OrderItem models. An order is created once
in PENDING_ADMIN with its items snapshotted, and afterwards only its status,
per-status timestamps and transition details change.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.database.base import Base, BaseModel, create_table_args
from orderflow.services.orders.enums import OrderStatus


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Order(BaseModel):
    """
    Customer order.

    Attributes:
        order_number: Human readable MMYY-NNNNN number, unique
        status: Current lifecycle status
        total_amount: Sum of item line totals
        currency: ISO currency code of total_amount
        customer_id: Customer identifier in the storefront
        customer_chat_id: Messaging channel used for customer notifications
        store_id: Store the order belongs to
        client_request_id: Caller supplied idempotency key for creation
        active_proof_id: Most recent payment proof, if any
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        unique=True,
        comment="Human readable order number",
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            native_enum=False,
            create_constraint=True,
            values_callable=_enum_values,
            length=20,
        ),
        nullable=False,
        default=OrderStatus.PENDING_ADMIN,
        index=True,
        comment="Current order status",
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Order total",
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="ISO 4217 currency code",
    )

    customer_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Customer identifier",
    )

    customer_chat_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Messaging channel for customer notifications",
    )

    store_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Store identifier",
    )

    store_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
        comment="Store display name at order time",
    )

    client_request_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        comment="Idempotency key supplied by the client",
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    active_proof_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        comment="Currently active payment proof",
    )

    # Transition details
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    carrier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    delivery_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Per-status timestamps
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )

    __table_args__ = create_table_args(
        UniqueConstraint("store_id", "client_request_id", name="uq_orders_store_request"),
        Index("ix_orders_store_status", "store_id", "status"),
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint(
            "delivered_at IS NULL OR status = 'DELIVERED'",
            name="ck_orders_delivered_at_status",
        ),
        CheckConstraint(
            "cancelled_at IS NULL OR status = 'CANCELLED'",
            name="ck_orders_cancelled_at_status",
        ),
        CheckConstraint(
            "rejected_at IS NULL OR status = 'REJECTED'",
            name="ck_orders_rejected_at_status",
        ),
        comment="Customer orders",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, order_number={self.order_number}, "
            f"status={self.status.value if self.status else None})>"
        )


class OrderItem(Base):
    """
    Immutable snapshot of one ordered product or variant.

    Quantities drive stock reservation and release and never change after
    the order is created.
    """

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    position: Mapped[int] = mapped_column(nullable=False, default=0)

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    variant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    product_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    quantity: Mapped[int] = mapped_column(nullable=False)

    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Price per unit at order time",
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_order_items_price_non_negative"),
    )

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity
