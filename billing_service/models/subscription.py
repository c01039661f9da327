# billing_service/models/subscription.py
# Member subscriptions and the append-only plan-change audit trail
#
# One row per member (member_id is unique). A member who lets a subscription
# lapse and comes back reuses the same row; billing_cycle counts those reuses.

import uuid

from sqlalchemy import (
    Boolean,
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
from billing_service.db.types import Money, UTCDateTime, utcnow

SUBSCRIPTION_STATUSES = ("PENDING", "TRIAL", "ACTIVE", "PAST_DUE", "CANCELLED", "EXPIRED")

# A member may hold at most one subscription in these states
LIVE_STATUSES = {"ACTIVE", "PAST_DUE"}
TERMINAL_STATUSES = {"CANCELLED", "EXPIRED"}


class Subscription(Base):
    """
    A member's subscription to a MembershipPlan.

    plan_id is the nominal plan (what the member asked for).
    billed_plan_id is the last plan a COMPLETED payment covered; the two differ
    while an upgrade payment is in flight.
    """
    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    member_id = Column(String(64), unique=True, nullable=False, index=True)
    plan_id = Column(Uuid, ForeignKey("membership_plans.id"), nullable=False)
    billed_plan_id = Column(Uuid, ForeignKey("membership_plans.id"), nullable=True)

    # ── Status ────────────────────────────────────────────────────────────────
    status = Column(
        Enum(
            "PENDING",    # Created, first payment not yet completed
            "TRIAL",      # Free trial period
            "ACTIVE",     # Paid and active
            "PAST_DUE",   # Renewal payment overdue
            "CANCELLED",  # Member cancelled
            "EXPIRED",    # Period ended without renewal
            name="subscription_status_enum",
        ),
        nullable=False,
        default="PENDING",
        index=True,
    )
    billing_cycle = Column(Integer, nullable=False, default=1)

    # ── Dates ─────────────────────────────────────────────────────────────────
    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=False)
    current_period_start = Column(UTCDateTime, nullable=False)
    current_period_end = Column(UTCDateTime, nullable=False)
    next_billing_date = Column(UTCDateTime, nullable=True)
    trial_end_date = Column(UTCDateTime, nullable=True)

    # ── Amounts (VND) ─────────────────────────────────────────────────────────
    base_amount = Column(Money, nullable=False)
    discount_amount = Column(Money, nullable=False, default=0)
    total_amount = Column(Money, nullable=False)

    classes_remaining = Column(Integer, nullable=True)         # None = unlimited
    auto_renew = Column(Boolean, nullable=False, default=True)

    cancelled_at = Column(UTCDateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # ── Relationships ─────────────────────────────────────────────────────────
    plan = relationship("MembershipPlan", back_populates="subscriptions", foreign_keys=[plan_id])
    billed_plan = relationship("MembershipPlan", foreign_keys=[billed_plan_id])
    payments = relationship("Payment", back_populates="subscription")
    history = relationship(
        "SubscriptionHistory",
        back_populates="subscription",
        order_by="SubscriptionHistory.created_at",
    )

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def __repr__(self) -> str:
        return f"<Subscription member={self.member_id} plan={self.plan_id} status={self.status}>"


class SubscriptionHistory(Base):
    """
    Append-only audit of plan changes.
    Never updated or deleted.
    """
    __tablename__ = "subscription_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id = Column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )

    from_plan_id = Column(Uuid, ForeignKey("membership_plans.id"), nullable=True)
    to_plan_id = Column(Uuid, ForeignKey("membership_plans.id"), nullable=False)
    change_type = Column(
        Enum("UPGRADE", "DOWNGRADE", name="plan_change_type_enum"), nullable=False
    )
    change_reason = Column(Text, nullable=True)

    old_price = Column(Money, nullable=False)
    new_price = Column(Money, nullable=False)
    price_difference = Column(Money, nullable=False)

    # Upgrade payment raised by this change, if any
    payment_id = Column(Uuid, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)

    changed_by = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    subscription = relationship("Subscription", back_populates="history")

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHistory sub={self.subscription_id} "
            f"{self.from_plan_id}->{self.to_plan_id} diff={self.price_difference}>"
        )
