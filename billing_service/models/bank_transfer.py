# billing_service/models/bank_transfer.py
# VietQR bank transfers reconciled through Sepay webhooks
# The member pays by transferring with content "SEVQR GYMFIT <ORDER>"

import uuid

from sqlalchemy import Column, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import relationship

from billing_service.db.base_class import Base
from billing_service.db.types import JSONType, Money, UTCDateTime, utcnow

BANK_TRANSFER_STATUSES = ("PENDING", "CHECKING", "VERIFIED", "FAILED", "EXPIRED", "CANCELLED")

# Statuses a Sepay notification may still match against
MATCHABLE_STATUSES = ("PENDING", "CHECKING")

# Final statuses that can no longer be verified
CLOSED_STATUSES = ("FAILED", "EXPIRED", "CANCELLED")


class BankTransfer(Base):
    __tablename__ = "bank_transfers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    member_id = Column(String(64), nullable=False, index=True)

    # ── Destination account ───────────────────────────────────────────────────
    bank_code = Column(String(20), nullable=True)
    bank_name = Column(String(100), nullable=True)
    account_number = Column(String(50), nullable=True)
    account_name = Column(String(100), nullable=True)

    amount = Column(Money, nullable=False)
    transfer_content = Column(String(100), nullable=False, index=True)
    qr_code_url = Column(Text, nullable=True)

    status = Column(
        Enum(*BANK_TRANSFER_STATUSES, name="bank_transfer_status_enum"),
        nullable=False,
        default="PENDING",
        index=True,
    )

    # ── Filled in from the Sepay notification ─────────────────────────────────
    verified_amount = Column(Money, nullable=True)
    bank_transaction_id = Column(String(100), nullable=True)
    sepay_transaction_id = Column(String(100), nullable=True, index=True)
    sepay_webhook_data = Column(JSONType, nullable=True)
    notes = Column(Text, nullable=True)

    expires_at = Column(UTCDateTime, nullable=False)
    verified_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    payment = relationship("Payment", back_populates="bank_transfer")

    def __repr__(self) -> str:
        return f"<BankTransfer content={self.transfer_content} amount={self.amount} status={self.status}>"
