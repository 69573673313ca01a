"""
Payment proof storage.

This module implements the ProofStore, which accepts an uploaded payment
proof for an order, writes the payload to disk and records it. It keeps at
most one active proof per order: a new upload supersedes the previous one
without deleting it. Each accepted upload produces a ProofUploaded event
that the caller publishes once the surrounding transaction has committed.
"""

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import OrderflowError, OrderNotFoundError, TransientInfraError
from orderflow.core.logging import get_logger
from orderflow.database.base import utcnow
from orderflow.database.models.order import Order
from orderflow.database.models.payment_proof import PaymentProof
from orderflow.services.orders.enums import OrderStatus, ProofStatus
from orderflow.services.payments.validator import FileValidator, SignatureFileValidator
from orderflow.services.payments.verification import VerificationResult

logger = get_logger(__name__)


class ProofRejectedError(OrderflowError):
    """Raised when an upload is refused; nothing has been stored."""

    default_code = "proof_rejected"


class ProofNotFoundError(OrderflowError):
    default_code = "proof_not_found"

    def __init__(self, proof_id: uuid.UUID, **context):
        super().__init__(f"Payment proof not found: {proof_id}", proof_id=str(proof_id), **context)
        self.proof_id = proof_id


class ProofStorageError(TransientInfraError):
    """Raised when the payload or its record cannot be persisted."""

    default_code = "proof_storage_error"


@dataclass(frozen=True)
class ProofRef:
    """Reference to a stored proof."""

    proof_id: uuid.UUID
    order_id: uuid.UUID
    storage_key: str
    detected_mime_type: str
    size_bytes: int
    uploaded_at: datetime
    superseded_proof_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class ProofUploaded:
    """Event emitted for every accepted upload."""

    proof: ProofRef
    payload: bytes


class ProofStore:
    """
    Persists payment proofs and enforces one active proof per order.

    Works inside the caller's transaction. Events for accepted uploads are
    buffered until drain_events() so they can be published after commit.
    """

    def __init__(
        self,
        session: AsyncSession,
        storage_dir: str,
        validator: Optional[FileValidator] = None,
    ):
        self.session = session
        self.storage_dir = Path(storage_dir)
        self.validator = validator or SignatureFileValidator()
        self._pending_events: list[ProofUploaded] = []

    async def store(
        self,
        order_id: uuid.UUID,
        payload: bytes,
        filename: str,
    ) -> ProofRef:
        """
        Store a proof for an order.

        Args:
            order_id: Order the proof is for
            payload: Raw file content
            filename: Client supplied filename

        Returns:
            Reference to the stored proof

        Raises:
            OrderNotFoundError: If the order does not exist
            ProofRejectedError: If the order no longer accepts proofs or the file is invalid
            ProofStorageError: If writing the payload or record fails
        """
        order = await self.session.scalar(select(Order).where(Order.id == order_id))
        if order is None:
            raise OrderNotFoundError(order_id)

        if order.status.is_terminal() or order.status == OrderStatus.PAID:
            raise ProofRejectedError(
                f"Order {order.order_number} no longer accepts payment proofs",
                code="order_not_awaiting_payment",
                order_id=str(order_id),
                status=order.status.value,
            )

        verdict = self.validator.validate(payload, filename)
        if not verdict.is_valid:
            raise ProofRejectedError(
                verdict.error or "Invalid file",
                code="invalid_file",
                order_id=str(order_id),
                filename=verdict.sanitized_filename,
            )

        proof_id = uuid.uuid4()
        storage_key = f"{order_id}/{proof_id}_{verdict.sanitized_filename}"
        path = self.storage_dir / storage_key
        await self._write(path, payload)

        try:
            previous = await self.session.scalar(
                select(PaymentProof).where(
                    PaymentProof.order_id == order_id,
                    PaymentProof.is_active.is_(True),
                )
            )
            superseded_id = previous.id if previous is not None else None
            if previous is not None:
                await self._supersede(previous)

            proof = PaymentProof(
                id=proof_id,
                order_id=order_id,
                storage_key=storage_key,
                original_filename=verdict.sanitized_filename,
                detected_mime_type=verdict.detected_mime_type,
                size_bytes=len(payload),
                sha256=hashlib.sha256(payload).hexdigest(),
                uploaded_at=utcnow(),
                status=ProofStatus.PENDING,
                is_active=True,
            )
            self.session.add(proof)
            order.active_proof_id = proof_id
            await self.session.flush()
        except SQLAlchemyError as e:
            await self._discard(path)
            logger.error(
                "Failed to record payment proof",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProofStorageError(
                "Failed to record payment proof", order_id=str(order_id)
            ) from e

        ref = ProofRef(
            proof_id=proof_id,
            order_id=order_id,
            storage_key=storage_key,
            detected_mime_type=verdict.detected_mime_type,
            size_bytes=len(payload),
            uploaded_at=proof.uploaded_at,
            superseded_proof_id=superseded_id,
        )
        self._pending_events.append(ProofUploaded(proof=ref, payload=payload))

        logger.info(
            "Payment proof stored",
            order_id=str(order_id),
            proof_id=str(proof_id),
            mime_type=verdict.detected_mime_type,
            size_bytes=len(payload),
            superseded_proof_id=str(superseded_id) if superseded_id else None,
        )
        return ref

    def drain_events(self) -> list[ProofUploaded]:
        """Return and clear events buffered since the last drain."""
        events, self._pending_events = self._pending_events, []
        return events

    async def discard_pending(self) -> None:
        """Remove payloads written for uploads whose transaction rolled back."""
        for event in self.drain_events():
            await self._discard(self.storage_dir / event.proof.storage_key)

    async def get(self, proof_id: uuid.UUID) -> Optional[PaymentProof]:
        return await self.session.scalar(
            select(PaymentProof)
            .where(PaymentProof.id == proof_id)
            .execution_options(populate_existing=True)
        )

    async def list_for_order(self, order_id: uuid.UUID) -> list[PaymentProof]:
        """All proofs for an order, newest first."""
        result = await self.session.execute(
            select(PaymentProof)
            .where(PaymentProof.order_id == order_id)
            .order_by(PaymentProof.uploaded_at.desc())
        )
        return list(result.scalars().all())

    async def list_pending_review(self, store_id: Optional[str] = None) -> list[tuple[PaymentProof, Order]]:
        """Active proofs still awaiting a decision, oldest first."""
        stmt = (
            select(PaymentProof, Order)
            .join(Order, Order.id == PaymentProof.order_id)
            .where(
                PaymentProof.is_active.is_(True),
                PaymentProof.status == ProofStatus.PENDING,
                Order.status == OrderStatus.PENDING_ADMIN,
            )
            .order_by(PaymentProof.uploaded_at)
        )
        if store_id is not None:
            stmt = stmt.where(Order.store_id == store_id)
        result = await self.session.execute(stmt)
        return [(proof, order) for proof, order in result.all()]

    async def mark_outcome(
        self,
        proof_id: uuid.UUID,
        status: ProofStatus,
        result: Optional[VerificationResult] = None,
        reviewed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Record a verification outcome on a proof.

        Only the active proof that is still pending can receive an outcome;
        superseded proofs are left untouched.

        Returns:
            True if the outcome was recorded
        """
        values: dict = {"status": status, "updated_at": utcnow()}
        if result is not None:
            values["confidence_score"] = result.confidence_score
            values["verification"] = result.to_dict()
            if result.failure_reason and reason is None:
                reason = result.failure_reason
        if status != ProofStatus.PENDING:
            values["verified_at"] = utcnow()
        if reviewed_by is not None:
            values["reviewed_by"] = reviewed_by
        if reason is not None:
            values["review_reason"] = reason

        outcome = await self.session.execute(
            update(PaymentProof)
            .where(
                PaymentProof.id == proof_id,
                PaymentProof.is_active.is_(True),
                PaymentProof.status == ProofStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        recorded = outcome.rowcount == 1
        if not recorded:
            logger.info(
                "Proof outcome not recorded, proof no longer pending",
                proof_id=str(proof_id),
                status=status.value,
            )
        return recorded

    async def _supersede(self, previous: PaymentProof) -> None:
        previous.is_active = False
        if previous.status == ProofStatus.PENDING:
            previous.status = ProofStatus.SUPERSEDED

    async def _write(self, path: Path, payload: bytes) -> None:
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(payload)
        except OSError as e:
            logger.error("Failed to write payment proof", path=str(path), error=str(e))
            raise ProofStorageError("Failed to write payment proof", path=str(path)) from e

    async def _discard(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove payment proof", path=str(path), error=str(e))
