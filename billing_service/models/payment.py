# billing_service/models/payment.py
# Payments, refunds and invoices
#
# Payment.status only moves through the transitions in
# billing_service/services/payment_state.py -- never assign it directly.

import uuid

from sqlalchemy import (
    Column,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship

from billing_service.db.base_class import Base
from billing_service.db.types import JSONType, Money, UTCDateTime, utcnow

PAYMENT_STATUSES = (
    "PENDING",
    "PROCESSING",
    "COMPLETED",
    "FAILED",
    "REFUNDED",
    "PARTIALLY_REFUNDED",
)
PAYMENT_METHODS = ("VNPAY", "MOMO", "BANK_TRANSFER", "CASH", "CARD")
PAYMENT_TYPES = (
    "SUBSCRIPTION",
    "CLASS_BOOKING",
    "PERSONAL_TRAINING",
    "UPGRADE",
    "DOWNGRADE",
    "RENEWAL",
    "SETUP_FEE",
)
REFUND_STATUSES = ("PENDING", "APPROVED", "PROCESSED", "FAILED", "REJECTED")
INVOICE_STATUSES = ("DRAFT", "SENT", "PAID", "OVERDUE", "CANCELLED")


class Payment(Base):
    """
    One charge against a member.
    Created PENDING by initiate_payment, settled by webhook or process_payment.
    """
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id = Column(
        Uuid,
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    member_id = Column(String(64), nullable=False, index=True)

    # ── Amount ────────────────────────────────────────────────────────────────
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False, default="VND")
    refunded_amount = Column(Money, nullable=False, default=0)
    net_amount = Column(Money, nullable=True)                  # amount - refunded_amount

    # ── Status ────────────────────────────────────────────────────────────────
    status = Column(
        Enum(*PAYMENT_STATUSES, name="payment_status_enum"),
        nullable=False,
        default="PENDING",
        index=True,
    )
    payment_method = Column(Enum(*PAYMENT_METHODS, name="payment_method_enum"), nullable=False)
    payment_type = Column(
        Enum(*PAYMENT_TYPES, name="payment_type_enum"), nullable=False, default="SUBSCRIPTION"
    )
    retry_count = Column(Integer, nullable=False, default=0)

    # ── Gateway ───────────────────────────────────────────────────────────────
    reference_id = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    transaction_id = Column(String(255), nullable=True, index=True)
    gateway = Column(String(50), nullable=True)                # VNPAY | MOMO | SEPAY | ...

    # Named extra_data (not metadata -- reserved by SQLAlchemy)
    extra_data = Column("metadata", JSONType, nullable=True)

    processed_at = Column(UTCDateTime, nullable=True)
    failed_at = Column(UTCDateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    # Set in the same commit that applied this payment to its subscription
    reconciled_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # ── Relationships ─────────────────────────────────────────────────────────
    subscription = relationship("Subscription", back_populates="payments")
    refunds = relationship("Refund", back_populates="payment", order_by="Refund.created_at")
    invoice = relationship("Invoice", back_populates="payment", uselist=False)
    bank_transfer = relationship("BankTransfer", back_populates="payment", uselist=False)

    def __repr__(self) -> str:
        return f"<Payment id={self.id} amount={self.amount} status={self.status}>"


class Refund(Base):
    """
    A (partial) refund of a COMPLETED payment.
    Only PROCESSED refunds count against payment.refunded_amount.
    """
    __tablename__ = "refunds"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )

    amount = Column(Money, nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(
        Enum(*REFUND_STATUSES, name="refund_status_enum"),
        nullable=False,
        default="PENDING",
        index=True,
    )

    requested_by = Column(String(64), nullable=False)
    approved_by = Column(String(64), nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)

    # {"timeline": [{"status": ..., "at": ..., "by": ..., "note": ...}, ...]}
    extra_data = Column("metadata", JSONType, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    payment = relationship("Payment", back_populates="refunds")

    def __repr__(self) -> str:
        return f"<Refund id={self.id} payment={self.payment_id} amount={self.amount} status={self.status}>"


class Invoice(Base):
    """
    One invoice per payment, created when the payment completes.
    """
    __tablename__ = "invoices"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number = Column(String(50), unique=True, nullable=False)
    member_id = Column(String(64), nullable=False, index=True)
    subscription_id = Column(
        Uuid, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    payment_id = Column(
        Uuid, ForeignKey("payments.id", ondelete="SET NULL"), unique=True, nullable=True
    )

    type = Column(
        Enum("SUBSCRIPTION", "CLASS", "PERSONAL_TRAINING", "OTHER", name="invoice_type_enum"),
        nullable=False,
        default="SUBSCRIPTION",
    )
    status = Column(
        Enum(*INVOICE_STATUSES, name="invoice_status_enum"),
        nullable=False,
        default="DRAFT",
    )

    subtotal = Column(Money, nullable=False)
    tax_amount = Column(Money, nullable=False, default=0)
    discount_amount = Column(Money, nullable=False, default=0)
    total = Column(Money, nullable=False)

    line_items = Column(JSONType, nullable=True)
    due_date = Column(UTCDateTime, nullable=True)
    paid_date = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    payment = relationship("Payment", back_populates="invoice")

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number} total={self.total} status={self.status}>"
