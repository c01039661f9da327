# billing_service/api/v1/endpoints/discounts.py
# Coupon / referral / reward code validation (checkout preview)

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing_service.core.dependencies import BillingContext, get_billing_context
from billing_service.db.session import get_db
from billing_service.schemas.common import ApiResponse
from billing_service.schemas.subscription import CouponQuoteResponse, ValidateCouponRequest
from billing_service.services.discounts import validate_coupon

router = APIRouter()


@router.post(
    "/validate",
    response_model=ApiResponse[CouponQuoteResponse],
    summary="Validate a discount code and quote the discount",
)
def validate_discount_code(
    payload: ValidateCouponRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    """Read-only: nothing is reserved until the subscription is created."""
    base_amount = None
    if payload.plan_id is not None:
        base_amount = ctx.plans.get(db, payload.plan_id).price

    quote = validate_coupon(
        db,
        payload.code,
        member_id=payload.member_id,
        plan_id=payload.plan_id,
        base_amount=base_amount,
        member_client=ctx.member_client,
    )
    return ApiResponse(
        message="Discount code is valid",
        data=CouponQuoteResponse(
            code=quote.code,
            type=quote.type,
            value=quote.value,
            max_discount=quote.max_discount,
            discount_amount=quote.discount_amount,
            bonus_days=quote.bonus_days,
        ),
    )
