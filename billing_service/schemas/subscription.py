# billing_service/schemas/subscription.py
# Pydantic request/response models for subscription and discount endpoints

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_service.schemas.payment import PaymentResponse, RefundResponse


# ── Subscription ──────────────────────────────────────────────────────────────

class CreateSubscriptionRequest(BaseModel):
    member_id: str = Field(min_length=1)
    plan_id: UUID
    start_date: Optional[datetime] = None
    status: Literal["PENDING", "TRIAL", "ACTIVE"] = "PENDING"


class CreateSubscriptionWithDiscountRequest(BaseModel):
    member_id: str = Field(min_length=1)
    plan_id: UUID
    start_date: Optional[datetime] = None
    discount_code: Optional[str] = None
    bonus_days: int = Field(default=0, ge=0)


class ChangePlanRequest(BaseModel):
    new_plan_id: UUID
    changed_by: Optional[str] = None
    reason: Optional[str] = None
    payment_method: Literal["VNPAY", "MOMO", "BANK_TRANSFER", "CASH", "CARD"] = "VNPAY"


class RenewSubscriptionRequest(BaseModel):
    payment_method: Literal["VNPAY", "MOMO", "BANK_TRANSFER", "CASH", "CARD"]


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    member_id: str
    plan_id: UUID
    billed_plan_id: Optional[UUID] = None
    status: str                      # PENDING | TRIAL | ACTIVE | PAST_DUE | CANCELLED | EXPIRED
    start_date: datetime
    end_date: datetime
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: Optional[datetime] = None
    base_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    classes_remaining: Optional[int] = None
    auto_renew: bool
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class ProrationResponse(BaseModel):
    days_remaining: Decimal
    total_days: Decimal
    unused_amount: Decimal
    new_plan_cost: Decimal
    price_difference: Decimal


class ChangePlanResponse(BaseModel):
    subscription: SubscriptionResponse
    change_type: str                 # UPGRADE | DOWNGRADE
    proration: ProrationResponse
    payment: Optional[PaymentResponse] = None
    refund: Optional[RefundResponse] = None


# ── Discounts ─────────────────────────────────────────────────────────────────

class ValidateCouponRequest(BaseModel):
    code: Optional[str] = None
    member_id: Optional[str] = None
    plan_id: Optional[UUID] = None


class CouponQuoteResponse(BaseModel):
    code: str
    type: str
    value: Decimal
    max_discount: Optional[Decimal] = None
    discount_amount: Decimal
    bonus_days: int
