# billing_service/api/v1/endpoints/refunds.py
# Refund requests and the admin approve / reject steps

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from billing_service.core.dependencies import BillingContext, get_billing_context
from billing_service.db.session import get_db
from billing_service.schemas.common import ApiResponse
from billing_service.schemas.payment import (
    ApproveRefundRequest,
    RefundRequest,
    RefundResponse,
    RejectRefundRequest,
)
from billing_service.services import refund_service

router = APIRouter()


@router.post(
    "",
    response_model=ApiResponse[RefundResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Request a refund against a completed payment",
)
def request_refund(
    payload: RefundRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    refund = refund_service.request_refund(
        db, ctx,
        payment_id=payload.payment_id,
        amount=payload.amount,
        reason=payload.reason,
        requested_by=payload.requested_by,
    )
    return ApiResponse(message="Refund requested", data=RefundResponse.from_refund(refund))


@router.post(
    "/{refund_id}/approve",
    response_model=ApiResponse[RefundResponse],
    summary="Approve and process a pending refund (admin)",
)
def approve_refund(
    refund_id: UUID,
    payload: ApproveRefundRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    refund = refund_service.approve_refund(db, ctx, refund_id, approved_by=payload.approved_by)
    return ApiResponse(message="Refund processed", data=RefundResponse.from_refund(refund))


@router.post(
    "/{refund_id}/reject",
    response_model=ApiResponse[RefundResponse],
    summary="Reject a pending refund (admin)",
)
def reject_refund(
    refund_id: UUID,
    payload: RejectRefundRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    refund = refund_service.reject_refund(
        db, ctx, refund_id,
        rejected_by=payload.rejected_by,
        reason=payload.reason,
    )
    return ApiResponse(message="Refund rejected", data=RefundResponse.from_refund(refund))
