# billing_service/models/discount.py
# Discount codes and the per-subscription usage ledger
#
# DiscountUsage is the money-moving record: at most one row per subscription
# billing cycle, and referral credit is gated on reward_credited_at.

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from billing_service.db.base_class import Base
from billing_service.db.types import JSONType, Money, UTCDateTime, utcnow

DISCOUNT_TYPES = ("PERCENTAGE", "FIXED_AMOUNT", "FREE_TRIAL", "FIRST_MONTH_FREE")


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(50), unique=True, nullable=False, index=True)  # always upper-case
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    type = Column(Enum(*DISCOUNT_TYPES, name="discount_type_enum"), nullable=False)
    value = Column(Money, nullable=False)
    max_discount = Column(Money, nullable=True)                # cap for PERCENTAGE

    # ── Limits ────────────────────────────────────────────────────────────────
    usage_limit = Column(Integer, nullable=True)               # None = unlimited
    usage_count = Column(Integer, nullable=False, default=0)
    usage_limit_per_member = Column(Integer, nullable=True)
    valid_from = Column(UTCDateTime, nullable=False)
    valid_until = Column(UTCDateTime, nullable=True)
    applicable_plans = Column(JSONType, nullable=True)         # list of plan ids; empty = all
    minimum_amount = Column(Money, nullable=True)
    first_time_only = Column(Boolean, nullable=False, default=False)

    # ── Referral ──────────────────────────────────────────────────────────────
    referrer_member_id = Column(String(64), nullable=True)
    referral_reward = Column(Integer, nullable=True)           # loyalty points

    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    usages = relationship("DiscountUsage", back_populates="discount_code")

    def __repr__(self) -> str:
        return f"<DiscountCode {self.code} type={self.type} value={self.value}>"


class DiscountUsage(Base):
    """
    One applied discount.

    discount_code_id is NULL for REWARD- redemption codes, which live in the
    member service; redemption_id then points at the member-service record.
    """
    __tablename__ = "discount_usages"
    __table_args__ = (
        UniqueConstraint("subscription_id", "billing_cycle", name="uq_discount_usage_subscription_cycle"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    discount_code_id = Column(
        Uuid, ForeignKey("discount_codes.id", ondelete="SET NULL"), nullable=True, index=True
    )
    code = Column(String(50), nullable=False)
    member_id = Column(String(64), nullable=False, index=True)
    subscription_id = Column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    billing_cycle = Column(Integer, nullable=False, default=1)

    discount_amount = Column(Money, nullable=False)
    bonus_days = Column(Integer, nullable=False, default=0)

    # ── Referral credit (credited at most once) ───────────────────────────────
    referrer_member_id = Column(String(64), nullable=True)
    referrer_reward = Column(Integer, nullable=True)
    reward_credited_at = Column(UTCDateTime, nullable=True)

    # ── Reward redemption (REWARD- codes) ─────────────────────────────────────
    redemption_id = Column(String(64), nullable=True)
    redemption_used_at = Column(UTCDateTime, nullable=True)

    details = Column(JSONType, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    discount_code = relationship("DiscountCode", back_populates="usages")

    def __repr__(self) -> str:
        return f"<DiscountUsage code={self.code} sub={self.subscription_id} amount={self.discount_amount}>"
