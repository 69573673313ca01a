"""
Order lifecycle orchestration.

The OrderLifecycleOrchestrator is the entry point for every action on an
order: creation, administrative transitions, proof uploads and manual
review. Each action runs in its own session and transaction, under the
order's lock. Customer and store admin notifications are queued only
after the transaction commits, so a rolled back action never notifies
anyone.

Proof uploads are scored in background tasks. A newer upload for the same
order cancels scoring that is still running for the previous proof.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.exceptions import OrderNotFoundError, TransientInfraError, ValidationError
from orderflow.core.logging import get_logger, log_performance, set_actor
from orderflow.database.models.audit import AuditLog
from orderflow.database.models.order import Order
from orderflow.database.models.payment_proof import PaymentProof
from orderflow.services.inventory.ledger import StockLedger, StockLine
from orderflow.services.notifications.dispatcher import (
    BulkNotificationJob,
    NotificationJob,
    build_order_context,
)
from orderflow.services.notifications.queue import NotificationQueue
from orderflow.services.orders.enums import (
    STATUS_NOTIFICATIONS,
    AuditAction,
    NotificationType,
    OrderStatus,
    ProofStatus,
)
from orderflow.services.orders.locks import LockManager
from orderflow.services.orders.repository import (
    AuditRepository,
    OrderNumberConflictError,
    OrderRepository,
)
from orderflow.services.orders.state_machine import InvalidTransitionError, OrderStateMachine
from orderflow.services.payments.proof_store import (
    ProofNotFoundError,
    ProofRef,
    ProofRejectedError,
    ProofStore,
)
from orderflow.services.payments.validator import FileValidator
from orderflow.services.payments.verification import (
    ExpectedPayment,
    VerificationResult,
    VerificationScorer,
)

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"
AUTO_VERIFICATION_VIA = "auto-verification"


class ProofOutcome(str, Enum):
    """Where a scored proof ended up."""

    AUTO_APPROVED = "auto_approved"
    NEEDS_REVIEW = "needs_review"
    ALREADY_RESOLVED = "already_resolved"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class CustomerInfo:
    customer_id: str
    chat_id: Optional[str] = None


@dataclass(frozen=True)
class OrderItemInput:
    product_id: str
    quantity: int
    unit_price: Decimal
    variant_id: Optional[str] = None
    product_name: Optional[str] = None


@dataclass
class PendingReview:
    """A proof waiting for a human decision."""

    proof: PaymentProof
    order: Order
    confidence_score: Optional[float]
    verification: Dict[str, Any] = field(default_factory=dict)


class OrderLifecycleOrchestrator:
    """
    Coordinates state machine, stock, proofs and notifications.

    The orchestrator owns no long-lived session; every operation opens one
    from session_factory, commits it, and publishes side effects after the
    commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: LockManager,
        scorer: VerificationScorer,
        notification_queue: NotificationQueue,
        proof_storage_dir: str,
        validator: Optional[FileValidator] = None,
        expected_recipient: Optional[str] = None,
        admin_channels: Optional[Mapping[str, Sequence[str]]] = None,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.scorer = scorer
        self.notification_queue = notification_queue
        self.proof_storage_dir = proof_storage_dir
        self.validator = validator
        self.expected_recipient = expected_recipient
        self.admin_channels = {
            store_id: tuple(str(c) for c in channels)
            for store_id, channels in (admin_channels or {}).items()
        }
        self._scoring_tasks: Dict[uuid.UUID, asyncio.Task] = {}

    # Order creation

    async def create_order(
        self,
        store_id: str,
        items: Sequence[OrderItemInput],
        customer_info: CustomerInfo,
        store_name: Optional[str] = None,
        currency: str = "USD",
        client_request_id: Optional[str] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Order:
        """
        Create an order in PENDING_ADMIN and reserve its stock.

        A repeated client_request_id for the same store returns the order
        created the first time, without reserving stock again.

        Raises:
            ValidationError: If the input is malformed
            InsufficientStockError: If any item lacks stock; nothing is created
            TransientInfraError: If storage fails
        """
        self._validate_new_order(store_id, items, customer_info, currency)
        actor = actor or customer_info.customer_id
        set_actor(actor)

        params = dict(
            store_id=store_id,
            items=items,
            customer_info=customer_info,
            store_name=store_name or store_id,
            currency=currency.upper(),
            client_request_id=client_request_id,
            notes=notes,
            actor=actor,
        )
        try:
            return await self._create_order_once(**params)
        except OrderNumberConflictError:
            # A concurrent creation took the number or the request id; the
            # retry either picks the next number or returns that order.
            logger.info("Order number collision, retrying", store_id=store_id)
        return await self._create_order_once(**params)

    async def _create_order_once(
        self,
        store_id: str,
        items: Sequence[OrderItemInput],
        customer_info: CustomerInfo,
        store_name: str,
        currency: str,
        client_request_id: Optional[str],
        notes: Optional[str],
        actor: str,
    ) -> Order:
        async with self._session() as session:
            orders = OrderRepository(session)

            if client_request_id:
                existing = await orders.get_by_client_request_id(store_id, client_request_id)
                if existing is not None:
                    logger.info(
                        "Duplicate order request, returning existing order",
                        order_id=str(existing.id),
                        client_request_id=client_request_id,
                    )
                    return existing

            order_number = await orders.next_order_number()
            order = await orders.create_order_with_items(
                order_number=order_number,
                store_id=store_id,
                store_name=store_name,
                customer_id=customer_info.customer_id,
                customer_chat_id=customer_info.chat_id,
                currency=currency,
                items=[
                    {
                        "product_id": item.product_id,
                        "variant_id": item.variant_id,
                        "product_name": item.product_name,
                        "quantity": item.quantity,
                        "unit_price": item.unit_price,
                    }
                    for item in items
                ],
                client_request_id=client_request_id,
                notes=notes,
            )

            await StockLedger(session).reserve(
                order.id,
                [
                    StockLine(
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        quantity=item.quantity,
                    )
                    for item in items
                ],
            )

            await AuditRepository(session).record(
                action=AuditAction.CREATE_ORDER,
                actor=actor,
                order_id=order.id,
                details={
                    "order_number": order.order_number,
                    "store_id": store_id,
                    "total_amount": str(order.total_amount),
                    "currency": order.currency,
                    "item_count": len(items),
                },
            )
            await session.commit()

        logger.info(
            "Order placed",
            order_id=str(order.id),
            order_number=order.order_number,
            store_id=store_id,
        )
        await self._publish(
            self._admin_job(order, NotificationType.ORDER_CREATED, item_count=len(items))
        )
        return order

    @staticmethod
    def _validate_new_order(
        store_id: str,
        items: Sequence[OrderItemInput],
        customer_info: CustomerInfo,
        currency: str,
    ) -> None:
        if not store_id:
            raise ValidationError("store_id is required", field="store_id")
        if not customer_info or not customer_info.customer_id:
            raise ValidationError("customer_id is required", field="customer_id")
        if not currency or len(currency) != 3 or not currency.isalpha():
            raise ValidationError("currency must be a 3-letter code", field="currency")
        if not items:
            raise ValidationError("An order needs at least one item", field="items")

        for index, item in enumerate(items):
            if not item.product_id:
                raise ValidationError("product_id is required", field=f"items[{index}].product_id")
            if not isinstance(item.quantity, int) or item.quantity <= 0:
                raise ValidationError(
                    "quantity must be a positive integer", field=f"items[{index}].quantity"
                )
            try:
                price = Decimal(str(item.unit_price))
            except (InvalidOperation, ValueError) as e:
                raise ValidationError(
                    "unit_price must be a number", field=f"items[{index}].unit_price"
                ) from e
            if price < 0 or not price.is_finite():
                raise ValidationError(
                    "unit_price cannot be negative", field=f"items[{index}].unit_price"
                )

    # Administrative transitions

    async def confirm_payment(self, order_id: uuid.UUID, actor: str) -> Order:
        return await self._transition(order_id, OrderStatus.PAID, actor, {})

    async def reject_order(self, order_id: uuid.UUID, actor: str, reason: str) -> Order:
        reason = self._require_reason(reason)
        return await self._transition(order_id, OrderStatus.REJECTED, actor, {"reason": reason})

    async def ship_order(
        self,
        order_id: uuid.UUID,
        actor: str,
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
    ) -> Order:
        return await self._transition(
            order_id,
            OrderStatus.SHIPPED,
            actor,
            {"tracking_number": tracking_number, "carrier": carrier},
        )

    async def deliver_order(
        self, order_id: uuid.UUID, actor: str, notes: Optional[str] = None
    ) -> Order:
        return await self._transition(order_id, OrderStatus.DELIVERED, actor, {"notes": notes})

    async def cancel_order(self, order_id: uuid.UUID, actor: str, reason: str) -> Order:
        reason = self._require_reason(reason)
        return await self._transition(order_id, OrderStatus.CANCELLED, actor, {"reason": reason})

    @staticmethod
    def _require_reason(reason: Optional[str]) -> str:
        if reason is None or not reason.strip():
            raise ValidationError("A reason is required", field="reason")
        return reason.strip()

    async def _transition(
        self,
        order_id: uuid.UUID,
        target: OrderStatus,
        actor: str,
        metadata: Dict[str, Any],
    ) -> Order:
        """
        Apply one transition under the order's lock and commit it.

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidTransitionError: If the order's current status forbids it
            TransientInfraError: If storage fails or the lock times out
        """
        set_actor(actor)
        async with self.lock_manager.lock(self._lock_key(order_id)):
            async with log_performance(
                logger, "order_transition", order_id=str(order_id), target=target.value
            ):
                async with self._session() as session:
                    order = await self._load_order(session, order_id)
                    await OrderStateMachine(session).transition(order, target, actor, metadata)
                    job = self._notification_job(order)
                    await session.commit()

        await self._publish(job)
        return order

    # Payment proofs

    async def upload_payment_proof(
        self,
        order_id: uuid.UUID,
        payload: bytes,
        filename: str,
        actor: Optional[str] = None,
    ) -> ProofRef:
        """
        Store a payment proof and start scoring it.

        Returns as soon as the proof is committed; scoring continues in the
        background and its outcome is visible through get_pending_reviews()
        or the order's status.

        Raises:
            OrderNotFoundError: If the order does not exist
            ProofRejectedError: If the order does not await payment or the file is invalid
            TransientInfraError: If storage fails
        """
        async with self.lock_manager.lock(self._lock_key(order_id)):
            async with self._session() as session:
                order = await self._load_order(session, order_id)
                actor = actor or order.customer_id
                set_actor(actor)

                store = ProofStore(session, self.proof_storage_dir, self.validator)
                try:
                    ref = await store.store(order_id, payload, filename)
                    await AuditRepository(session).record(
                        action=AuditAction.UPLOAD_PAYMENT_PROOF,
                        actor=actor,
                        order_id=order_id,
                        details={
                            "proof_id": str(ref.proof_id),
                            "mime_type": ref.detected_mime_type,
                            "size_bytes": ref.size_bytes,
                            "superseded_proof_id": (
                                str(ref.superseded_proof_id) if ref.superseded_proof_id else None
                            ),
                        },
                    )
                    await session.commit()
                except Exception:
                    await store.discard_pending()
                    raise

                expected = ExpectedPayment(
                    amount=order.total_amount,
                    currency=order.currency,
                    order_number=order.order_number,
                    recipient=self.expected_recipient,
                )
                events = store.drain_events()

        for event in events:
            self._schedule_scoring(event.proof, event.payload, expected)
        return ref

    def _schedule_scoring(self, proof: ProofRef, payload: bytes, expected: ExpectedPayment) -> None:
        previous = self._scoring_tasks.get(proof.order_id)
        if previous is not None and not previous.done():
            previous.cancel()
            logger.info(
                "Cancelled scoring of superseded proof",
                order_id=str(proof.order_id),
                proof_id=str(proof.proof_id),
            )

        task = asyncio.create_task(
            self.process_proof(proof, payload, expected),
            name=f"score-proof-{proof.proof_id}",
        )
        self._scoring_tasks[proof.order_id] = task
        task.add_done_callback(
            lambda t, order_id=proof.order_id: self._scoring_finished(order_id, t)
        )

    def _scoring_finished(self, order_id: uuid.UUID, task: asyncio.Task) -> None:
        if self._scoring_tasks.get(order_id) is task:
            del self._scoring_tasks[order_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Proof processing failed",
                order_id=str(order_id),
                error=str(error),
                error_type=type(error).__name__,
            )

    async def process_proof(
        self,
        proof: ProofRef,
        payload: bytes,
        expected: ExpectedPayment,
    ) -> ProofOutcome:
        """
        Score a stored proof and act on the result.

        A proof that qualifies for auto-verification confirms payment as the
        system actor. Anything else stays with the order for manual review.
        """
        result = await self.scorer.score(payload, expected)
        logger.info(
            "Payment proof scored",
            order_id=str(proof.order_id),
            proof_id=str(proof.proof_id),
            confidence_score=result.confidence_score,
            auto_verifiable=result.is_auto_verifiable,
        )

        if result.is_auto_verifiable:
            return await self._auto_approve(proof, result)
        return await self._hold_for_review(proof, result)

    async def _auto_approve(self, proof: ProofRef, result: VerificationResult) -> ProofOutcome:
        set_actor(SYSTEM_ACTOR)
        async with self.lock_manager.lock(self._lock_key(proof.order_id)):
            async with self._session() as session:
                store = ProofStore(session, self.proof_storage_dir, self.validator)
                order = await self._load_order(session, proof.order_id)

                recorded = await store.mark_outcome(proof.proof_id, ProofStatus.AUTO_VERIFIED, result)
                if not recorded:
                    return await self._unrecorded_outcome(store, proof)

                await AuditRepository(session).record(
                    action=AuditAction.AUTO_VERIFY_PAYMENT,
                    actor=SYSTEM_ACTOR,
                    order_id=proof.order_id,
                    details={
                        "proof_id": str(proof.proof_id),
                        "confidence_score": result.confidence_score,
                    },
                )

                job = None
                try:
                    await OrderStateMachine(session).transition(
                        order,
                        OrderStatus.PAID,
                        SYSTEM_ACTOR,
                        {"via": AUTO_VERIFICATION_VIA, "proof_id": str(proof.proof_id)},
                    )
                    outcome = ProofOutcome.AUTO_APPROVED
                    job = self._notification_job(order)
                except InvalidTransitionError as e:
                    logger.info(
                        "Order already resolved before auto-verification",
                        order_id=str(proof.order_id),
                        status=e.context.get("current_status"),
                    )
                    outcome = ProofOutcome.ALREADY_RESOLVED

                await session.commit()

        await self._publish(job)
        logger.info(
            "Auto-verification finished",
            order_id=str(proof.order_id),
            proof_id=str(proof.proof_id),
            outcome=outcome.value,
        )
        return outcome

    async def _hold_for_review(self, proof: ProofRef, result: VerificationResult) -> ProofOutcome:
        async with self.lock_manager.lock(self._lock_key(proof.order_id)):
            async with self._session() as session:
                store = ProofStore(session, self.proof_storage_dir, self.validator)
                recorded = await store.mark_outcome(proof.proof_id, ProofStatus.PENDING, result)
                if not recorded:
                    return await self._unrecorded_outcome(store, proof)
                order = await self._load_order(session, proof.order_id, for_update=False)
                job = self._admin_job(
                    order,
                    NotificationType.PAYMENT_PROOF_UPLOADED,
                    proof_id=str(proof.proof_id),
                    confidence_score=result.confidence_score,
                    failure_reason=result.failure_reason,
                )
                await session.commit()

        await self._publish(job)
        logger.info(
            "Payment proof needs manual review",
            order_id=str(proof.order_id),
            proof_id=str(proof.proof_id),
            confidence_score=result.confidence_score,
            reason=result.failure_reason,
        )
        return ProofOutcome.NEEDS_REVIEW

    @staticmethod
    async def _unrecorded_outcome(store: ProofStore, proof: ProofRef) -> ProofOutcome:
        current = await store.get(proof.proof_id)
        if current is None or not current.is_active:
            return ProofOutcome.SUPERSEDED
        return ProofOutcome.ALREADY_RESOLVED

    async def get_pending_reviews(self, store_id: Optional[str] = None) -> List[PendingReview]:
        """Active proofs awaiting a decision, oldest first."""
        async with self._session() as session:
            rows = await ProofStore(session, self.proof_storage_dir).list_pending_review(store_id)
        return [
            PendingReview(
                proof=proof,
                order=order,
                confidence_score=proof.confidence_score,
                verification=proof.verification or {},
            )
            for proof, order in rows
        ]

    async def review_proof(
        self,
        proof_id: uuid.UUID,
        actor: str,
        approve: bool,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Record a manual decision on a proof.

        Approval confirms the payment; rejection rejects the order with the
        given reason. Both happen in the same transaction as the proof update.

        Raises:
            ProofNotFoundError: If the proof does not exist
            ProofRejectedError: If the proof was superseded or already decided
            ValidationError: If a rejection has no reason
            InvalidTransitionError: If the order no longer awaits payment
        """
        if not approve:
            reason = self._require_reason(reason)
        set_actor(actor)

        async with self._session() as session:
            proof = await ProofStore(session, self.proof_storage_dir).get(proof_id)
            if proof is None:
                raise ProofNotFoundError(proof_id)
            order_id = proof.order_id

        target = OrderStatus.PAID if approve else OrderStatus.REJECTED
        proof_status = ProofStatus.MANUALLY_VERIFIED if approve else ProofStatus.REJECTED

        async with self.lock_manager.lock(self._lock_key(order_id)):
            async with self._session() as session:
                store = ProofStore(session, self.proof_storage_dir, self.validator)
                order = await self._load_order(session, order_id)

                recorded = await store.mark_outcome(
                    proof_id, proof_status, reviewed_by=actor, reason=reason
                )
                if not recorded:
                    raise ProofRejectedError(
                        "Payment proof is no longer awaiting review",
                        code="proof_already_resolved",
                        proof_id=str(proof_id),
                    )

                metadata: Dict[str, Any] = {"via": "manual-review", "proof_id": str(proof_id)}
                if reason:
                    metadata["reason"] = reason
                await OrderStateMachine(session).transition(order, target, actor, metadata)
                job = self._notification_job(order)
                await session.commit()

        await self._publish(job)
        return order

    # Queries

    async def get_order(self, order_id: uuid.UUID) -> Order:
        async with self._session() as session:
            return await self._load_order(session, order_id, for_update=False)

    async def get_order_status_history(self, order_id: uuid.UUID) -> List[AuditLog]:
        """Every audit entry for the order, oldest first."""
        async with self._session() as session:
            await self._load_order(session, order_id, for_update=False)
            return await AuditRepository(session).list_for_order(order_id)

    # Background work

    async def wait_for_scoring(self, order_id: Optional[uuid.UUID] = None) -> None:
        """Wait for in-flight proof scoring to settle."""
        if order_id is not None:
            tasks = [t for oid, t in self._scoring_tasks.items() if oid == order_id]
        else:
            tasks = list(self._scoring_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._scoring_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._scoring_tasks.clear()

    # Helpers

    @staticmethod
    def _lock_key(order_id: uuid.UUID) -> str:
        return f"order:{order_id}"

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(
                    "Storage operation failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise TransientInfraError("Storage operation failed") from e
            except Exception:
                await session.rollback()
                raise

    @staticmethod
    async def _load_order(
        session: AsyncSession, order_id: uuid.UUID, for_update: bool = True
    ) -> Order:
        order = await OrderRepository(session).get_order_by_id(order_id, for_update=for_update)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    @staticmethod
    def _notification_job(order: Order) -> Optional[NotificationJob]:
        notification_type = STATUS_NOTIFICATIONS.get(order.status)
        if notification_type is None or not order.customer_chat_id:
            return None
        return NotificationJob(
            channel_id=order.customer_chat_id,
            notification_type=notification_type,
            order_context=build_order_context(order),
        )

    def _admin_job(
        self, order: Order, notification_type: NotificationType, **extra: Any
    ) -> Optional[BulkNotificationJob]:
        channels = self.admin_channels.get(order.store_id)
        if not channels:
            return None
        return BulkNotificationJob(
            channel_ids=channels,
            notification_type=notification_type,
            order_context=build_order_context(order, extra),
        )

    async def _publish(self, job: Optional[Union[NotificationJob, BulkNotificationJob]]) -> None:
        if job is None:
            return
        await self.notification_queue.enqueue(job)
