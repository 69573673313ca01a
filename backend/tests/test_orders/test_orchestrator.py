"""
Tests for OrderLifecycleOrchestrator.

Covers order placement, administrative transitions with their post-commit
notifications, the payment proof pipeline and manual review, against a
real SQLite database.
"""

import asyncio
import re
from decimal import Decimal
from uuid import uuid4

import pytest

from orderflow.core.exceptions import OrderNotFoundError, ValidationError
from orderflow.services.inventory.ledger import InsufficientStockError
from orderflow.services.orders.enums import AuditAction, OrderStatus, ProofStatus
from orderflow.services.orders.orchestrator import (
    SYSTEM_ACTOR,
    CustomerInfo,
    OrderItemInput,
    ProofOutcome,
)
from orderflow.services.orders.state_machine import InvalidTransitionError
from orderflow.services.payments.proof_store import (
    ProofNotFoundError,
    ProofRejectedError,
    ProofStore,
)
from orderflow.services.payments.verification import ExpectedPayment


@pytest.fixture
def load_proof(session_factory, orchestrator):
    async def _load(proof_id):
        async with session_factory() as session:
            return await ProofStore(session, orchestrator.proof_storage_dir).get(proof_id)

    return _load


@pytest.fixture
def store_proof(session_factory, orchestrator):
    """Store a proof directly, without scheduling background scoring."""

    async def _store(order_id, payload, filename="receipt.pdf"):
        async with session_factory() as session:
            store = ProofStore(session, orchestrator.proof_storage_dir, orchestrator.validator)
            ref = await store.store(order_id, payload, filename)
            await session.commit()
        return ref

    return _store


def expected_for(order) -> ExpectedPayment:
    return ExpectedPayment(
        amount=order.total_amount,
        currency=order.currency,
        order_number=order.order_number,
    )


# ============================================================================
# Order Creation Tests
# ============================================================================


class TestCreateOrder:
    """Test order placement and stock reservation."""

    @pytest.mark.asyncio
    async def test_creates_pending_order_and_reserves_stock(self, place_order, stock_of):
        order = await place_order(quantity=3)

        assert order.status == OrderStatus.PENDING_ADMIN
        assert order.total_amount == Decimal("30.00")
        assert order.currency == "USD"
        assert order.store_name == "Corner Shop"
        assert [item.product_id for item in order.items] == ["sku-1"]
        assert await stock_of("sku-1") == 7

    @pytest.mark.asyncio
    async def test_order_numbers_are_monthly_and_sequential(self, place_order):
        first = await place_order()
        second = await place_order(stock=None)

        assert re.fullmatch(r"\d{4}-\d{5}", first.order_number)
        prefix, sequence = first.order_number.split("-")
        assert second.order_number == f"{prefix}-{int(sequence) + 1:05d}"

    @pytest.mark.asyncio
    async def test_creation_is_audited(self, orchestrator, place_order):
        order = await place_order()

        history = await orchestrator.get_order_status_history(order.id)

        assert [entry.action for entry in history] == [AuditAction.CREATE_ORDER.value]
        assert history[0].actor == "customer-1"
        assert history[0].details["total_amount"] == "20.00"

    @pytest.mark.asyncio
    async def test_insufficient_stock_creates_nothing(
        self, orchestrator, seed_stock, stock_of
    ):
        await seed_stock("sku-1", 5)
        await seed_stock("sku-2", 1)

        with pytest.raises(InsufficientStockError):
            await orchestrator.create_order(
                store_id="store-1",
                items=[
                    OrderItemInput(product_id="sku-1", quantity=2, unit_price=Decimal("1")),
                    OrderItemInput(product_id="sku-2", quantity=2, unit_price=Decimal("1")),
                ],
                customer_info=CustomerInfo(customer_id="customer-1"),
            )

        assert await stock_of("sku-1") == 5
        assert await stock_of("sku-2") == 1

    @pytest.mark.asyncio
    async def test_unknown_product_has_no_stock(self, place_order):
        with pytest.raises(InsufficientStockError):
            await place_order(product_id="never-stocked", stock=None)

    @pytest.mark.asyncio
    async def test_repeated_request_returns_same_order(self, place_order, stock_of):
        first = await place_order(client_request_id="cart-1")
        again = await place_order(stock=None, client_request_id="cart-1")

        assert again.id == first.id
        assert await stock_of("sku-1") == 8

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"store_id": ""}, "store_id"),
            ({"currency": "US"}, "currency"),
            ({"quantity": 0}, "items[0].quantity"),
            ({"unit_price": Decimal("-1")}, "items[0].unit_price"),
            ({"product_id": ""}, "items[0].product_id"),
        ],
    )
    async def test_invalid_input(self, orchestrator, overrides, field):
        store_id = overrides.pop("store_id", "store-1")
        currency = overrides.pop("currency", "USD")
        item = dict(product_id="sku-1", quantity=1, unit_price=Decimal("1"))
        item.update(overrides)

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.create_order(
                store_id=store_id,
                items=[OrderItemInput(**item)],
                customer_info=CustomerInfo(customer_id="customer-1"),
                currency=currency,
            )

        assert exc_info.value.context["field"] == field

    @pytest.mark.asyncio
    async def test_order_needs_items(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.create_order(
                store_id="store-1",
                items=[],
                customer_info=CustomerInfo(customer_id="customer-1"),
            )

    @pytest.mark.asyncio
    async def test_last_unit_goes_to_one_order(self, orchestrator, seed_stock, stock_of):
        await seed_stock("sku-last", 1)

        def attempt(customer):
            return orchestrator.create_order(
                store_id="store-1",
                items=[OrderItemInput(product_id="sku-last", quantity=1, unit_price=Decimal("5"))],
                customer_info=CustomerInfo(customer_id=customer),
            )

        results = await asyncio.gather(attempt("a"), attempt("b"), return_exceptions=True)

        placed = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, InsufficientStockError)]
        assert len(placed) == 1
        assert len(refused) == 1
        assert await stock_of("sku-last") == 0


# ============================================================================
# Transition Tests
# ============================================================================


class TestTransitions:
    """Test administrative transitions and their notifications."""

    @pytest.mark.asyncio
    async def test_full_happy_path_notifies_each_step(
        self, orchestrator, place_order, notification_queue, transport
    ):
        order = await place_order()

        await orchestrator.confirm_payment(order.id, actor="admin-1")
        await orchestrator.ship_order(order.id, actor="admin-1", tracking_number="TRK1", carrier="DHL")
        delivered = await orchestrator.deliver_order(order.id, actor="admin-1", notes="Left at door")
        await notification_queue.join()

        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.tracking_number == "TRK1"
        assert delivered.paid_at is not None
        assert delivered.delivered_at is not None
        assert [s["channel_id"] for s in transport.sent] == ["100500"] * 3
        assert "Payment confirmed" in transport.sent[0]["message"]
        assert "TRK1" in transport.sent[1]["message"]
        assert all(order.order_number in s["message"] for s in transport.sent)

        history = await orchestrator.get_order_status_history(order.id)
        assert [entry.action for entry in history] == [
            AuditAction.CREATE_ORDER.value,
            AuditAction.CONFIRM_PAYMENT.value,
            AuditAction.SHIP_ORDER.value,
            AuditAction.DELIVER_ORDER.value,
        ]
        assert history[1].actor == "admin-1"

    @pytest.mark.asyncio
    async def test_reject_restores_stock_and_notifies(
        self, orchestrator, place_order, stock_of, notification_queue, transport
    ):
        order = await place_order()

        rejected = await orchestrator.reject_order(order.id, actor="admin-1", reason="Fake receipt")
        await notification_queue.join()

        assert rejected.status == OrderStatus.REJECTED
        assert rejected.rejection_reason == "Fake receipt"
        assert await stock_of("sku-1") == 10
        assert "Fake receipt" in transport.sent[0]["message"]

    @pytest.mark.asyncio
    async def test_cancel_after_payment_restores_stock(self, orchestrator, place_order, stock_of):
        order = await place_order()
        await orchestrator.confirm_payment(order.id, actor="admin-1")

        cancelled = await orchestrator.cancel_order(order.id, actor="admin-1", reason="Out of stock")

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancellation_reason == "Out of stock"
        assert await stock_of("sku-1") == 10

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["", "   ", None])
    async def test_reason_is_required(self, orchestrator, place_order, reason):
        order = await place_order()

        with pytest.raises(ValidationError):
            await orchestrator.cancel_order(order.id, actor="admin-1", reason=reason)
        with pytest.raises(ValidationError):
            await orchestrator.reject_order(order.id, actor="admin-1", reason=reason)

        assert (await orchestrator.get_order(order.id)).status == OrderStatus.PENDING_ADMIN

    @pytest.mark.asyncio
    async def test_invalid_transition_changes_nothing(
        self, orchestrator, place_order, notification_queue, transport
    ):
        order = await place_order()

        with pytest.raises(InvalidTransitionError) as exc_info:
            await orchestrator.ship_order(order.id, actor="admin-1")
        await notification_queue.join()

        assert exc_info.value.context["current_status"] == "PENDING_ADMIN"
        assert (await orchestrator.get_order(order.id)).status == OrderStatus.PENDING_ADMIN
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_terminal_order_refuses_everything(self, orchestrator, place_order, stock_of):
        order = await place_order()
        await orchestrator.reject_order(order.id, actor="admin-1", reason="No payment")

        with pytest.raises(InvalidTransitionError):
            await orchestrator.confirm_payment(order.id, actor="admin-1")
        with pytest.raises(InvalidTransitionError):
            await orchestrator.cancel_order(order.id, actor="admin-1", reason="again")

        assert await stock_of("sku-1") == 10

    @pytest.mark.asyncio
    async def test_unknown_order(self, orchestrator):
        with pytest.raises(OrderNotFoundError):
            await orchestrator.confirm_payment(uuid4(), actor="admin-1")
        with pytest.raises(OrderNotFoundError):
            await orchestrator.get_order_status_history(uuid4())

    @pytest.mark.asyncio
    async def test_no_chat_id_means_no_notification(
        self, orchestrator, place_order, notification_queue, transport
    ):
        order = await place_order(chat_id=None)

        await orchestrator.confirm_payment(order.id, actor="admin-1")
        await notification_queue.join()

        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_concurrent_confirm_and_reject(self, orchestrator, place_order, stock_of):
        order = await place_order()

        results = await asyncio.gather(
            orchestrator.confirm_payment(order.id, actor="admin-1"),
            orchestrator.reject_order(order.id, actor="admin-2", reason="Duplicate"),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert len(winners) == 1
        assert len(losers) == 1

        final = await orchestrator.get_order(order.id)
        assert final.status == winners[0].status
        expected_stock = 10 if final.status == OrderStatus.REJECTED else 8
        assert await stock_of("sku-1") == expected_stock


# ============================================================================
# Payment Proof Tests
# ============================================================================


class TestPaymentProofs:
    """Test uploads, background scoring and auto-verification."""

    @pytest.mark.asyncio
    async def test_readable_receipt_is_auto_verified(
        self, orchestrator, place_order, receipt_pdf, load_proof, notification_queue, transport
    ):
        order = await place_order()

        ref = await orchestrator.upload_payment_proof(order.id, receipt_pdf(), "receipt.pdf")
        await orchestrator.wait_for_scoring(order.id)
        await notification_queue.join()

        paid = await orchestrator.get_order(order.id)
        assert paid.status == OrderStatus.PAID
        assert paid.active_proof_id == ref.proof_id

        proof = await load_proof(ref.proof_id)
        assert proof.status == ProofStatus.AUTO_VERIFIED
        assert proof.confidence_score >= 0.85
        assert proof.verified_at is not None

        history = await orchestrator.get_order_status_history(order.id)
        actions = [entry.action for entry in history]
        assert actions[:2] == [
            AuditAction.CREATE_ORDER.value,
            AuditAction.UPLOAD_PAYMENT_PROOF.value,
        ]
        assert AuditAction.AUTO_VERIFY_PAYMENT.value in actions
        assert history[-1].action == AuditAction.CONFIRM_PAYMENT.value
        assert history[-1].actor == SYSTEM_ACTOR
        assert history[-1].details["via"] == "auto-verification"
        assert "Payment confirmed" in transport.sent[0]["message"]

    @pytest.mark.asyncio
    async def test_unreadable_image_waits_for_review(
        self, orchestrator, place_order, png_payload, load_proof
    ):
        order = await place_order()

        ref = await orchestrator.upload_payment_proof(order.id, png_payload, "photo.png")
        await orchestrator.wait_for_scoring(order.id)

        assert (await orchestrator.get_order(order.id)).status == OrderStatus.PENDING_ADMIN
        proof = await load_proof(ref.proof_id)
        assert proof.status == ProofStatus.PENDING
        assert proof.confidence_score == 0.0

        pending = await orchestrator.get_pending_reviews()
        assert [item.proof.id for item in pending] == [ref.proof_id]
        assert pending[0].order.id == order.id
        assert await orchestrator.get_pending_reviews(store_id="other-store") == []

    @pytest.mark.asyncio
    async def test_wrong_amount_is_not_auto_verified(
        self, orchestrator, place_order, receipt_pdf, load_proof
    ):
        order = await place_order()

        ref = await orchestrator.upload_payment_proof(
            order.id, receipt_pdf(amount="15.00"), "receipt.pdf"
        )
        await orchestrator.wait_for_scoring(order.id)

        assert (await orchestrator.get_order(order.id)).status == OrderStatus.PENDING_ADMIN
        assert (await load_proof(ref.proof_id)).status == ProofStatus.PENDING

    @pytest.mark.asyncio
    async def test_new_upload_supersedes_previous(
        self, orchestrator, place_order, png_payload, receipt_pdf, load_proof
    ):
        order = await place_order()

        first = await orchestrator.upload_payment_proof(order.id, png_payload, "photo.png")
        second = await orchestrator.upload_payment_proof(order.id, receipt_pdf(), "receipt.pdf")
        await orchestrator.wait_for_scoring()

        assert second.superseded_proof_id == first.proof_id
        old = await load_proof(first.proof_id)
        assert old.status == ProofStatus.SUPERSEDED
        assert not old.is_active

        new = await load_proof(second.proof_id)
        assert new.is_active
        assert new.status == ProofStatus.AUTO_VERIFIED
        assert (await orchestrator.get_order(order.id)).status == OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_paid_order_refuses_uploads(self, orchestrator, place_order, receipt_pdf):
        order = await place_order()
        await orchestrator.confirm_payment(order.id, actor="admin-1")

        with pytest.raises(ProofRejectedError) as exc_info:
            await orchestrator.upload_payment_proof(order.id, receipt_pdf(), "receipt.pdf")

        assert exc_info.value.code == "order_not_awaiting_payment"

    @pytest.mark.asyncio
    async def test_invalid_file_is_refused(self, orchestrator, place_order, tmp_path):
        order = await place_order()

        with pytest.raises(ProofRejectedError) as exc_info:
            await orchestrator.upload_payment_proof(order.id, b"MZ\x90\x00binary", "setup.exe")

        assert exc_info.value.code == "invalid_file"
        assert not any((tmp_path / "proofs").rglob("*.exe"))

    @pytest.mark.asyncio
    async def test_upload_to_unknown_order(self, orchestrator, receipt_pdf):
        with pytest.raises(OrderNotFoundError):
            await orchestrator.upload_payment_proof(uuid4(), receipt_pdf(), "receipt.pdf")


class TestProcessProof:
    """Test scoring outcomes when the order or proof moved on meanwhile."""

    @pytest.mark.asyncio
    async def test_auto_approval(self, orchestrator, place_order, store_proof, receipt_pdf):
        order = await place_order()
        payload = receipt_pdf()
        ref = await store_proof(order.id, payload)

        outcome = await orchestrator.process_proof(ref, payload, expected_for(order))

        assert outcome == ProofOutcome.AUTO_APPROVED

    @pytest.mark.asyncio
    async def test_order_already_resolved(
        self, orchestrator, place_order, store_proof, receipt_pdf
    ):
        order = await place_order()
        payload = receipt_pdf()
        ref = await store_proof(order.id, payload)
        await orchestrator.reject_order(order.id, actor="admin-1", reason="Cancelled by phone")

        outcome = await orchestrator.process_proof(ref, payload, expected_for(order))

        assert outcome == ProofOutcome.ALREADY_RESOLVED
        assert (await orchestrator.get_order(order.id)).status == OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_superseded_proof_is_ignored(
        self, orchestrator, place_order, store_proof, receipt_pdf, png_payload, load_proof
    ):
        order = await place_order()
        payload = receipt_pdf()
        stale = await store_proof(order.id, payload)
        await store_proof(order.id, png_payload, "photo.png")

        outcome = await orchestrator.process_proof(stale, payload, expected_for(order))

        assert outcome == ProofOutcome.SUPERSEDED
        assert (await orchestrator.get_order(order.id)).status == OrderStatus.PENDING_ADMIN
        assert (await load_proof(stale.proof_id)).status == ProofStatus.SUPERSEDED

    @pytest.mark.asyncio
    async def test_needs_review(self, orchestrator, place_order, store_proof, png_payload):
        order = await place_order()
        ref = await store_proof(order.id, png_payload, "photo.png")

        outcome = await orchestrator.process_proof(ref, png_payload, expected_for(order))

        assert outcome == ProofOutcome.NEEDS_REVIEW


# ============================================================================
# Store Admin Notification Tests
# ============================================================================


class TestAdminNotifications:
    """Store admins hear about new orders and proofs that need a decision."""

    @pytest.fixture(autouse=True)
    def admin_chats(self, orchestrator):
        orchestrator.admin_channels = {"store-1": ("900", "901")}

    @pytest.mark.asyncio
    async def test_new_order_notifies_store_admins(
        self, place_order, notification_queue, transport
    ):
        order = await place_order()
        await notification_queue.join()

        assert sorted(s["channel_id"] for s in transport.sent) == ["900", "901"]
        assert all("New order" in s["message"] for s in transport.sent)
        assert all(order.order_number in s["message"] for s in transport.sent)

    @pytest.mark.asyncio
    async def test_other_store_has_no_admins(self, place_order, notification_queue, transport):
        await place_order(store_id="store-2")
        await notification_queue.join()

        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_proof_needing_review_notifies_store_admins(
        self, orchestrator, place_order, store_proof, png_payload, notification_queue, transport
    ):
        order = await place_order()
        await notification_queue.join()
        transport.sent.clear()
        ref = await store_proof(order.id, png_payload, "photo.png")

        outcome = await orchestrator.process_proof(ref, png_payload, expected_for(order))
        await notification_queue.join()

        assert outcome == ProofOutcome.NEEDS_REVIEW
        assert sorted(s["channel_id"] for s in transport.sent) == ["900", "901"]
        assert all("needs review" in s["message"] for s in transport.sent)
        assert all("0%" in s["message"] for s in transport.sent)

    @pytest.mark.asyncio
    async def test_auto_verified_proof_only_notifies_customer(
        self, orchestrator, place_order, store_proof, receipt_pdf, notification_queue, transport
    ):
        order = await place_order()
        await notification_queue.join()
        transport.sent.clear()
        payload = receipt_pdf()
        ref = await store_proof(order.id, payload)

        outcome = await orchestrator.process_proof(ref, payload, expected_for(order))
        await notification_queue.join()

        assert outcome == ProofOutcome.AUTO_APPROVED
        assert [s["channel_id"] for s in transport.sent] == ["100500"]


# ============================================================================
# Manual Review Tests
# ============================================================================


class TestReviewProof:
    """Test manual decisions on proofs held for review."""

    @pytest.fixture
    def pending_proof(self, orchestrator, place_order, png_payload):
        async def _pending():
            order = await place_order()
            ref = await orchestrator.upload_payment_proof(order.id, png_payload, "photo.png")
            await orchestrator.wait_for_scoring(order.id)
            return order, ref

        return _pending

    @pytest.mark.asyncio
    async def test_approve_confirms_payment(
        self, orchestrator, pending_proof, load_proof, notification_queue, transport
    ):
        order, ref = await pending_proof()

        approved = await orchestrator.review_proof(ref.proof_id, actor="admin-1", approve=True)
        await notification_queue.join()

        assert approved.status == OrderStatus.PAID
        proof = await load_proof(ref.proof_id)
        assert proof.status == ProofStatus.MANUALLY_VERIFIED
        assert proof.reviewed_by == "admin-1"
        assert await orchestrator.get_pending_reviews() == []
        assert len(transport.sent) == 1

        history = await orchestrator.get_order_status_history(order.id)
        assert history[-1].details["via"] == "manual-review"

    @pytest.mark.asyncio
    async def test_reject_rejects_order(self, orchestrator, pending_proof, load_proof, stock_of):
        order, ref = await pending_proof()

        rejected = await orchestrator.review_proof(
            ref.proof_id, actor="admin-1", approve=False, reason="Amount does not match"
        )

        assert rejected.status == OrderStatus.REJECTED
        assert rejected.rejection_reason == "Amount does not match"
        proof = await load_proof(ref.proof_id)
        assert proof.status == ProofStatus.REJECTED
        assert proof.review_reason == "Amount does not match"
        assert await stock_of("sku-1") == 10

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, orchestrator, pending_proof, load_proof):
        _, ref = await pending_proof()

        with pytest.raises(ValidationError):
            await orchestrator.review_proof(ref.proof_id, actor="admin-1", approve=False)

        assert (await load_proof(ref.proof_id)).status == ProofStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_review_is_refused(self, orchestrator, pending_proof):
        _, ref = await pending_proof()
        await orchestrator.review_proof(ref.proof_id, actor="admin-1", approve=True)

        with pytest.raises(ProofRejectedError) as exc_info:
            await orchestrator.review_proof(
                ref.proof_id, actor="admin-2", approve=False, reason="Too late"
            )

        assert exc_info.value.code == "proof_already_resolved"

    @pytest.mark.asyncio
    async def test_unknown_proof(self, orchestrator):
        with pytest.raises(ProofNotFoundError):
            await orchestrator.review_proof(uuid4(), actor="admin-1", approve=True)


# ============================================================================
# End-to-end Scenarios
# ============================================================================


class TestScenarios:
    """Two units of productA at 10.00 against a stock of five."""

    @pytest.fixture
    def place_scenario_order(self, place_order):
        return lambda: place_order(product_id="productA", quantity=2, unit_price=Decimal("10"), stock=5)

    @pytest.mark.asyncio
    async def test_confirm_payment(
        self, orchestrator, place_scenario_order, stock_of, notification_queue, transport
    ):
        order = await place_scenario_order()
        assert await stock_of("productA") == 3

        paid = await orchestrator.confirm_payment(order.id, actor="admin-1")
        await notification_queue.join()

        assert paid.status == OrderStatus.PAID
        assert await stock_of("productA") == 3
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_cancel(
        self, orchestrator, place_scenario_order, stock_of, notification_queue, transport
    ):
        order = await place_scenario_order()

        cancelled = await orchestrator.cancel_order(
            order.id, actor="admin-1", reason="customer request"
        )
        await notification_queue.join()

        assert cancelled.status == OrderStatus.CANCELLED
        assert await stock_of("productA") == 5
        assert len(transport.sent) == 1
        assert "customer request" in transport.sent[0]["message"]

    @pytest.mark.asyncio
    async def test_ship_cancelled_order(
        self, orchestrator, place_scenario_order, stock_of, notification_queue, transport
    ):
        order = await place_scenario_order()
        await orchestrator.cancel_order(order.id, actor="admin-1", reason="customer request")
        await notification_queue.join()
        sent_before = len(transport.sent)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.ship_order(order.id, actor="admin-1")
        await notification_queue.join()

        assert (await orchestrator.get_order(order.id)).status == OrderStatus.CANCELLED
        assert await stock_of("productA") == 5
        assert len(transport.sent) == sent_before
