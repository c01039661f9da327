# billing_service/schemas/payment.py
# Pydantic request/response models for payment, webhook and refund endpoints

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ── Payments ──────────────────────────────────────────────────────────────────

class InitiatePaymentRequest(BaseModel):
    member_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    payment_method: Literal["VNPAY", "MOMO", "BANK_TRANSFER", "CASH", "CARD"]
    subscription_id: Optional[UUID] = None
    payment_type: str = "SUBSCRIPTION"
    description: Optional[str] = None
    reference_id: Optional[str] = None


class ProcessPaymentRequest(BaseModel):
    success: bool = True
    transaction_id: Optional[str] = None
    gateway: Optional[str] = None
    failure_reason: Optional[str] = None


class BankTransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    transfer_content: str
    amount: Decimal
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    qr_code_url: Optional[str] = None
    status: str                       # PENDING | CHECKING | VERIFIED | FAILED | EXPIRED | CANCELLED
    expires_at: datetime
    payment_id: Optional[UUID] = None
    verified_amount: Optional[Decimal] = None
    verified_at: Optional[datetime] = None
    notes: Optional[str] = None


class CancelBankTransferRequest(BaseModel):
    reason: Optional[str] = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    member_id: str
    subscription_id: Optional[UUID] = None
    amount: Decimal
    currency: str
    status: str                       # PENDING | COMPLETED | FAILED | ...
    payment_method: str
    payment_type: str
    description: Optional[str] = None
    transaction_id: Optional[str] = None
    gateway: Optional[str] = None
    retry_count: int
    refunded_amount: Decimal
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime


class InitiatePaymentResponse(BaseModel):
    payment: PaymentResponse
    reused: bool
    payment_url: Optional[str] = None
    bank_transfer: Optional[BankTransferResponse] = None


# ── Gateway webhook ───────────────────────────────────────────────────────────

class PaymentWebhookPayload(BaseModel):
    payment_id: UUID
    status: Literal["SUCCESS", "FAILED"]
    transaction_id: Optional[str] = None
    gateway: Optional[str] = None
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    webhook_id: Optional[str] = None


class WebhookResultResponse(BaseModel):
    payment_id: str
    status: str
    replayed: bool
    reconciliation: Optional[Dict[str, Any]] = None


# ── Refunds ───────────────────────────────────────────────────────────────────

class RefundRequest(BaseModel):
    payment_id: UUID
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1)
    requested_by: str = Field(min_length=1)


class ApproveRefundRequest(BaseModel):
    approved_by: str = Field(min_length=1)


class RejectRefundRequest(BaseModel):
    rejected_by: str = Field(min_length=1)
    reason: Optional[str] = None


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_id: UUID
    amount: Decimal
    reason: str
    status: str
    requested_by: str
    approved_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    timeline: List[Dict[str, Any]] = []
    created_at: datetime

    @classmethod
    def from_refund(cls, refund) -> "RefundResponse":
        response = cls.model_validate(refund)
        response.timeline = (refund.extra_data or {}).get("timeline", [])
        return response
