# billing_service/api/v1/endpoints/bank_transfers.py
# Sepay bank-transfer webhook + member-facing transfer lookups
#
# Sepay keeps retrying anything that is not a 200, so the webhook always
# answers 200 and reports the outcome in {"success", "message"}.

import json
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from billing_service.core.dependencies import BillingContext, get_billing_context
from billing_service.core.security import verify_sepay_webhook
from billing_service.db.session import get_db
from billing_service.schemas.common import ApiResponse, WebhookAck
from billing_service.schemas.payment import BankTransferResponse, CancelBankTransferRequest
from billing_service.services import bank_transfer

logger = logging.getLogger("billing.api.bank_transfers")

router = APIRouter()


@router.post(
    "/webhook/sepay",
    response_model=WebhookAck,
    summary="Sepay incoming-transfer webhook",
    include_in_schema=False,
)
async def sepay_webhook(
    request: Request,
    x_sepay_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    payload_body = await request.body()

    if not verify_sepay_webhook(payload_body, x_sepay_signature):
        logger.warning("Rejected Sepay webhook with invalid signature")
        return WebhookAck(success=False, message="Invalid signature")

    try:
        data = json.loads(payload_body)
        result = await run_in_threadpool(bank_transfer.handle_sepay_webhook, db, ctx, data)
    except Exception:
        # Sepay must always get a 200; the failure is in the log
        logger.exception("Sepay webhook processing error")
        db.rollback()
        return WebhookAck(success=False, message="Webhook processing error")

    return WebhookAck(**result)


@router.get(
    "/{transfer_id}",
    response_model=ApiResponse[BankTransferResponse],
    summary="Bank transfer by its id or by its payment id",
)
def get_bank_transfer(transfer_id: UUID, db: Session = Depends(get_db)):
    transfer = bank_transfer.get_bank_transfer(db, transfer_id)
    return ApiResponse(message="Bank transfer retrieved", data=BankTransferResponse.model_validate(transfer))


@router.post(
    "/{transfer_id}/verify",
    response_model=ApiResponse[BankTransferResponse],
    summary="Re-check a transfer against the Sepay transaction list",
    responses={202: {"description": "Transaction not found yet"}},
)
def verify_bank_transfer(
    transfer_id: UUID,
    response: Response,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    result = bank_transfer.verify_bank_transfer(db, ctx, transfer_id)
    if not result.verified:
        response.status_code = status.HTTP_202_ACCEPTED
    return ApiResponse(
        success=result.verified,
        message=result.message,
        data=BankTransferResponse.model_validate(result.transfer),
    )


@router.post(
    "/{transfer_id}/cancel",
    response_model=ApiResponse[BankTransferResponse],
    summary="Cancel an open bank transfer",
)
def cancel_bank_transfer(
    transfer_id: UUID,
    payload: Optional[CancelBankTransferRequest] = None,
    db: Session = Depends(get_db),
):
    transfer = bank_transfer.cancel_bank_transfer(db, transfer_id, reason=payload.reason if payload else None)
    return ApiResponse(message="Bank transfer cancelled", data=BankTransferResponse.model_validate(transfer))
