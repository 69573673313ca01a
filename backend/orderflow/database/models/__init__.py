"""
ORM models. Importing this package registers every table on Base.metadata.
"""

from orderflow.database.models.audit import AuditLog
from orderflow.database.models.inventory import (
    ReservationStatus,
    StockLevel,
    StockMovement,
    StockReservation,
)
from orderflow.database.models.order import Order, OrderItem
from orderflow.database.models.payment_proof import PaymentProof

__all__ = [
    "AuditLog",
    "Order",
    "OrderItem",
    "PaymentProof",
    "ReservationStatus",
    "StockLevel",
    "StockMovement",
    "StockReservation",
]
