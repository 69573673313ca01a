"""
Order lifecycle API endpoints.

This module implements the FastAPI router for placing orders, moving them
through their lifecycle, uploading payment proofs and reviewing the proofs
that could not be verified automatically. Domain errors are translated to
HTTP statuses here; the orchestrator never sees HTTP concerns.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, HTTPException, Query, UploadFile, status

from orderflow.api.deps import Actor, OptionalActor, Orchestrator
from orderflow.core.exceptions import (
    OrderflowError,
    OrderNotFoundError,
    TransientInfraError,
    ValidationError,
)
from orderflow.core.logging import get_logger, get_request_id
from orderflow.schemas.orders import (
    AuditEntryResponse,
    DeliverRequest,
    OrderCreateRequest,
    OrderResponse,
    PendingReviewResponse,
    ProofReviewRequest,
    ProofUploadResponse,
    ReasonRequest,
    ShipRequest,
)
from orderflow.services.inventory.ledger import InsufficientStockError
from orderflow.services.orders.orchestrator import CustomerInfo, OrderItemInput
from orderflow.services.orders.state_machine import InvalidTransitionError
from orderflow.services.payments.proof_store import ProofNotFoundError, ProofRejectedError

logger = get_logger(__name__)

router = APIRouter()

RETRY_AFTER_SECONDS = "1"


def _http_error(error: OrderflowError) -> HTTPException:
    """Map a domain error to an HTTP error response."""
    headers = None
    if isinstance(error, ValidationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, (OrderNotFoundError, ProofNotFoundError)):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (InvalidTransitionError, InsufficientStockError)):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(error, ProofRejectedError):
        status_code = (
            status.HTTP_422_UNPROCESSABLE_ENTITY
            if error.code == "invalid_file"
            else status.HTTP_409_CONFLICT
        )
    elif isinstance(error, TransientInfraError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        headers = {"Retry-After": RETRY_AFTER_SECONDS}
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    log = logger.error if status_code >= 500 else logger.info
    log(
        "Order request failed",
        error_code=error.code,
        error=error.message,
        status_code=status_code,
    )
    detail = error.to_dict()
    detail["request_id"] = get_request_id()
    return HTTPException(status_code=status_code, detail=detail, headers=headers)


@router.post(
    "/orders",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order",
    description="Create an order in PENDING_ADMIN and reserve its stock",
)
async def create_order(
    request: OrderCreateRequest,
    orchestrator: Orchestrator,
    actor: OptionalActor,
) -> OrderResponse:
    logger.info(
        "Creating order",
        store_id=request.store_id,
        item_count=len(request.items),
    )
    try:
        order = await orchestrator.create_order(
            store_id=request.store_id,
            store_name=request.store_name,
            items=[
                OrderItemInput(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    product_name=item.product_name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in request.items
            ],
            customer_info=CustomerInfo(
                customer_id=request.customer.customer_id,
                chat_id=request.customer.chat_id,
            ),
            currency=request.currency,
            client_request_id=request.client_request_id,
            notes=request.notes,
            actor=actor,
        )
    except OrderflowError as e:
        raise _http_error(e) from e
    return OrderResponse.model_validate(order)


@router.get(
    "/orders/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(order_id: UUID, orchestrator: Orchestrator) -> OrderResponse:
    try:
        order = await orchestrator.get_order(order_id)
    except OrderflowError as e:
        raise _http_error(e) from e
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/confirm",
    response_model=OrderResponse,
    summary="Confirm payment",
    description="Move a PENDING_ADMIN order to PAID",
)
async def confirm_payment(order_id: UUID, orchestrator: Orchestrator, actor: Actor) -> OrderResponse:
    try:
        order = await orchestrator.confirm_payment(order_id, actor=actor)
    except OrderflowError as e:
        raise _http_error(e) from e
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/reject",
    response_model=OrderResponse,
    summary="Reject order",
    description="Reject a PENDING_ADMIN order and return its stock",
)
async def reject_order(
    order_id: UUID,
    request: ReasonRequest,
    orchestrator: Orchestrator,
    actor: Actor,
) -> OrderResponse:
    try:
        order = await orchestrator.reject_order(order_id, actor=actor, reason=request.reason)
    except OrderflowError as e:
        raise _http_error(e) from e
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/ship",
    response_model=OrderResponse,
    summary="Ship order",
)
async def ship_order(
    order_id: UUID,
    orchestrator: Orchestrator,
    actor: Actor,
    request: Optional[ShipRequest] = None,
) -> OrderResponse:
    request = request or ShipRequest()
    try:
        order = await orchestrator.ship_order(
            order_id,
            actor=actor,
            tracking_number=request.tracking_number,
            carrier=request.carrier,
        )
    except OrderflowError as e:
        raise _http_error(e) from e
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/deliver",
    response_model=OrderResponse,
    summary="Mark order delivered",
)
async def deliver_order(
    order_id: UUID,
    orchestrator: Orchestrator,
    actor: Actor,
    request: Optional[DeliverRequest] = None,
) -> OrderResponse:
    request = request or DeliverRequest()
    try:
        order = await orchestrator.deliver_order(order_id, actor=actor, notes=request.notes)
    except OrderflowError as e:
        raise _http_error(e) from e
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    description="Cancel an order that has not been delivered and return its stock",
)
async def cancel_order(
    order_id: UUID,
    request: ReasonRequest,
    orchestrator: Orchestrator,
    actor: Actor,
) -> OrderResponse:
    try:
        order = await orchestrator.cancel_order(order_id, actor=actor, reason=request.reason)
    except OrderflowError as e:
        raise _http_error(e) from e
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/payment-proofs",
    response_model=ProofUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload payment proof",
    description="Store a payment proof; verification continues in the background",
)
async def upload_payment_proof(
    order_id: UUID,
    orchestrator: Orchestrator,
    actor: OptionalActor,
    file: UploadFile = File(..., description="Receipt image or PDF"),
) -> ProofUploadResponse:
    payload = await file.read()
    try:
        ref = await orchestrator.upload_payment_proof(
            order_id,
            payload=payload,
            filename=file.filename or "",
            actor=actor,
        )
    except OrderflowError as e:
        raise _http_error(e) from e
    finally:
        await file.close()

    return ProofUploadResponse(
        proof_id=ref.proof_id,
        order_id=ref.order_id,
        detected_mime_type=ref.detected_mime_type,
        size_bytes=ref.size_bytes,
        uploaded_at=ref.uploaded_at,
        superseded_proof_id=ref.superseded_proof_id,
    )


@router.get(
    "/orders/{order_id}/history",
    response_model=list[AuditEntryResponse],
    summary="Order audit history",
)
async def get_order_history(order_id: UUID, orchestrator: Orchestrator) -> list[AuditEntryResponse]:
    try:
        entries = await orchestrator.get_order_status_history(order_id)
    except OrderflowError as e:
        raise _http_error(e) from e
    return [AuditEntryResponse.model_validate(entry) for entry in entries]


@router.get(
    "/payment-proofs/pending",
    response_model=list[PendingReviewResponse],
    summary="Proofs awaiting review",
)
async def list_pending_reviews(
    orchestrator: Orchestrator,
    actor: Actor,
    store_id: Optional[str] = Query(None, max_length=64, description="Filter by store"),
) -> list[PendingReviewResponse]:
    try:
        pending = await orchestrator.get_pending_reviews(store_id)
    except OrderflowError as e:
        raise _http_error(e) from e
    return [
        PendingReviewResponse(
            proof_id=item.proof.id,
            order_id=item.order.id,
            order_number=item.order.order_number,
            store_id=item.order.store_id,
            total_amount=item.order.total_amount,
            currency=item.order.currency,
            proof_status=item.proof.status,
            confidence_score=item.confidence_score,
            uploaded_at=item.proof.uploaded_at,
            original_filename=item.proof.original_filename,
            verification=item.verification,
        )
        for item in pending
    ]


@router.post(
    "/payment-proofs/{proof_id}/review",
    response_model=OrderResponse,
    summary="Review payment proof",
    description="Approve (confirms payment) or reject (rejects the order) a pending proof",
)
async def review_payment_proof(
    proof_id: UUID,
    request: ProofReviewRequest,
    orchestrator: Orchestrator,
    actor: Actor,
) -> OrderResponse:
    try:
        order = await orchestrator.review_proof(
            proof_id,
            actor=actor,
            approve=request.approve,
            reason=request.reason,
        )
    except OrderflowError as e:
        raise _http_error(e) from e
    return OrderResponse.model_validate(order)
