"""
Payment proof model.

A proof is an uploaded artifact (image or document) a customer submits as
evidence of payment. An order may accumulate several over time; only the
most recent one is active.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import BaseModel, JSONType, utcnow
from orderflow.services.orders.enums import ProofStatus


class PaymentProof(BaseModel):
    """
    Uploaded payment proof and its verification outcome.

    Attributes:
        order_id: Order the proof was uploaded for
        storage_key: Path of the stored payload relative to the storage root
        detected_mime_type: MIME type reported by the file validator
        sha256: Digest of the payload
        status: Verification outcome
        confidence_score: Score assigned by the verification scorer
        is_active: Whether this is the order's most recent proof
        verification: Extracted signals and per-signal score breakdown
    """

    __tablename__ = "payment_proofs"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
    )

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    detected_mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    status: Mapped[ProofStatus] = mapped_column(
        SQLEnum(
            ProofStatus,
            name="proof_status",
            native_enum=False,
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
            length=20,
        ),
        nullable=False,
        default=ProofStatus.PENDING,
    )

    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    review_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    verification: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType, nullable=True
    )

    __table_args__ = (
        Index("ix_payment_proofs_order_active", "order_id", "is_active"),
        Index("ix_payment_proofs_status", "status"),
    )
