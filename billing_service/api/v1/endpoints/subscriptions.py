# billing_service/api/v1/endpoints/subscriptions.py
# Subscription endpoints
#
# Flow:
#   1. Member picks a plan -> POST /subscriptions (or /with-discount) -> PENDING row
#   2. Checkout -> POST /payments/initiate -> member pays
#   3. Payment webhook -> subscription ACTIVE, membership synced to member-service
#   4. Mid-period plan change -> POST /{id}/change-plan -> prorated payment or refund

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from billing_service.core.dependencies import BillingContext, get_billing_context
from billing_service.db.session import get_db
from billing_service.schemas.common import ApiResponse
from billing_service.schemas.payment import (
    BankTransferResponse,
    InitiatePaymentResponse,
    PaymentResponse,
    RefundResponse,
)
from billing_service.schemas.subscription import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    ChangePlanResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionWithDiscountRequest,
    ProrationResponse,
    RenewSubscriptionRequest,
    SubscriptionResponse,
)
from billing_service.services import subscription_service

router = APIRouter()


# ── Create ────────────────────────────────────────────────────────────────────

@router.post(
    "",
    response_model=ApiResponse[SubscriptionResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription for a member",
)
def create_subscription(
    payload: CreateSubscriptionRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    """
    One subscription row per member. A CANCELLED or EXPIRED row is reused
    for the new cycle; a live one returns 409 SUBSCRIPTION_EXISTS.
    """
    subscription = subscription_service.create_subscription(
        db, ctx,
        member_id=payload.member_id,
        plan_id=payload.plan_id,
        start_date=payload.start_date,
        status=payload.status,
    )
    return ApiResponse(
        message="Subscription created",
        data=SubscriptionResponse.model_validate(subscription),
    )


@router.post(
    "/with-discount",
    response_model=ApiResponse[SubscriptionResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription and apply a discount / referral / reward code",
)
def create_subscription_with_discount(
    payload: CreateSubscriptionWithDiscountRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    subscription = subscription_service.create_subscription_with_discount(
        db, ctx,
        member_id=payload.member_id,
        plan_id=payload.plan_id,
        start_date=payload.start_date,
        discount_code=payload.discount_code,
        bonus_days=payload.bonus_days,
    )
    return ApiResponse(
        message="Subscription created",
        data=SubscriptionResponse.model_validate(subscription),
    )


# ── Read ──────────────────────────────────────────────────────────────────────

@router.get(
    "/{subscription_id}",
    response_model=ApiResponse[SubscriptionResponse],
    summary="Get a subscription",
)
def get_subscription(subscription_id: UUID, db: Session = Depends(get_db)):
    subscription = subscription_service.get_subscription(db, subscription_id)
    return ApiResponse(
        message="Subscription found",
        data=SubscriptionResponse.model_validate(subscription),
    )


# ── Plan change ───────────────────────────────────────────────────────────────

@router.post(
    "/{subscription_id}/change-plan",
    response_model=ApiResponse[ChangePlanResponse],
    summary="Upgrade or downgrade mid-period with proration",
)
def change_plan(
    subscription_id: UUID,
    payload: ChangePlanRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    result = subscription_service.upgrade_downgrade_subscription(
        db, ctx, subscription_id, payload.new_plan_id,
        changed_by=payload.changed_by,
        reason=payload.reason,
        payment_method=payload.payment_method,
    )
    proration = result.proration
    data = ChangePlanResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        change_type=result.change_type,
        proration=ProrationResponse(
            days_remaining=proration.days_remaining,
            total_days=proration.total_days,
            unused_amount=proration.unused_amount,
            new_plan_cost=proration.new_plan_cost,
            price_difference=proration.price_difference,
        ),
        payment=PaymentResponse.model_validate(result.payment) if result.payment else None,
        refund=RefundResponse.from_refund(result.refund) if result.refund else None,
    )
    return ApiResponse(message=f"Plan change recorded ({result.change_type})", data=data)


# ── Renewal ───────────────────────────────────────────────────────────────────

@router.post(
    "/{subscription_id}/renew",
    response_model=ApiResponse[InitiatePaymentResponse],
    summary="Start a manual renewal (invoice + pending payment)",
)
def renew_subscription(
    subscription_id: UUID,
    payload: RenewSubscriptionRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    initiated = subscription_service.initiate_renewal(
        db, ctx, subscription_id, payment_method=payload.payment_method,
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
    return ApiResponse(message="Renewal payment initiated", data=data)


# ── Cancel ────────────────────────────────────────────────────────────────────

@router.post(
    "/{subscription_id}/cancel",
    response_model=ApiResponse[SubscriptionResponse],
    summary="Cancel a subscription",
)
def cancel_subscription(
    subscription_id: UUID,
    payload: CancelSubscriptionRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    subscription = subscription_service.cancel_subscription(
        db, ctx, subscription_id, reason=payload.reason,
    )
    return ApiResponse(
        message="Subscription cancelled",
        data=SubscriptionResponse.model_validate(subscription),
    )
