# billing_service/api/v1/endpoints/payments.py
# Payment endpoints
#
# Flow:
#   1. Checkout -> POST /initiate -> PENDING payment (+ VietQR transfer or gateway URL)
#   2. Member pays on the gateway
#   3. Gateway calls POST /webhook -> payment COMPLETED / FAILED -> subscription reconciled
#   4. Cash desk / manual terminal uses POST /{id}/process instead of a webhook

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
from sqlalchemy.orm import Session

from billing_service.core.dependencies import BillingContext, get_billing_context
from billing_service.core.errors import InvalidSignature, ValidationFailed
from billing_service.core.security import verify_payment_webhook
from billing_service.db.session import get_db
from billing_service.schemas.common import ApiResponse
from billing_service.schemas.payment import (
    BankTransferResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentResponse,
    PaymentWebhookPayload,
    ProcessPaymentRequest,
    WebhookResultResponse,
)
from billing_service.services import payment_service

logger = logging.getLogger("billing.api.payments")

router = APIRouter()


# ── Initiate ──────────────────────────────────────────────────────────────────

@router.post(
    "/initiate",
    response_model=ApiResponse[InitiatePaymentResponse],
    summary="Create (or reuse) a pending payment",
)
def initiate_payment(
    payload: InitiatePaymentRequest,
    db: Session = Depends(get_db),
):
    initiated = payment_service.initiate_payment(
        db,
        member_id=payload.member_id,
        amount=payload.amount,
        payment_method=payload.payment_method,
        subscription_id=payload.subscription_id,
        payment_type=payload.payment_type,
        description=payload.description,
        reference_id=payload.reference_id,
    )
    data = InitiatePaymentResponse(
        payment=PaymentResponse.model_validate(initiated.payment),
        reused=initiated.reused,
        payment_url=initiated.payment_url,
        bank_transfer=(
            BankTransferResponse.model_validate(initiated.bank_transfer)
            if initiated.bank_transfer is not None
            else None
        ),
    )
    message = "Existing pending payment returned" if initiated.reused else "Payment initiated"
    return ApiResponse(message=message, data=data)


# ── Explicit processing ───────────────────────────────────────────────────────

@router.post(
    "/{payment_id}/process",
    response_model=ApiResponse[PaymentResponse],
    summary="Settle a payment without a gateway webhook",
)
def process_payment(
    payment_id: UUID,
    payload: ProcessPaymentRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    result = payment_service.process_payment(
        db, ctx, payment_id,
        success=payload.success,
        transaction_id=payload.transaction_id,
        gateway=payload.gateway,
        failure_reason=payload.failure_reason,
    )
    return ApiResponse(
        message=f"Payment {result.payment.status.lower()}",
        data=PaymentResponse.model_validate(result.payment),
    )


@router.post(
    "/{payment_id}/retry",
    response_model=ApiResponse[PaymentResponse],
    summary="Re-open a failed payment (max 3 retries)",
)
def retry_payment(payment_id: UUID, db: Session = Depends(get_db)):
    payment = payment_service.retry_payment(db, payment_id)
    return ApiResponse(
        message=f"Payment retry #{payment.retry_count} opened",
        data=PaymentResponse.model_validate(payment),
    )


# ── Gateway Webhook ───────────────────────────────────────────────────────────

@router.post(
    "/webhook",
    response_model=ApiResponse[WebhookResultResponse],
    summary="Payment gateway webhook",
    include_in_schema=False,  # Hide from public docs -- internal endpoint
)
async def payment_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    x_webhook_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    """
    Handles gateway payment notifications.

    CRITICAL: the signature is checked against the raw body before anything
    else. Replays (same webhook id) return 200 without touching the payment.
    """
    payload_body = await request.body()

    if not verify_payment_webhook(payload_body, x_webhook_signature):
        logger.warning("Rejected payment webhook with invalid signature")
        raise InvalidSignature("Invalid webhook signature")

    try:
        event = PaymentWebhookPayload.model_validate_json(payload_body)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationFailed(f"Invalid webhook payload: {field} {first.get('msg')}".strip())

    if x_webhook_id and not event.webhook_id:
        event = event.model_copy(update={"webhook_id": x_webhook_id})

    # Service is sync (DB + member-service HTTP); keep it off the event loop
    result = await run_in_threadpool(payment_service.handle_payment_webhook, db, ctx, event)

    message = "Webhook already processed" if result.replayed else "Webhook processed successfully"
    return ApiResponse(message=message, data=WebhookResultResponse(**result.as_dict()))
