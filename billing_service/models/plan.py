# billing_service/models/plan.py
# Membership plan catalogue
# Prices are in VND; duration drives every subscription period calculation

import uuid

from sqlalchemy import Boolean, Column, Enum, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship

from billing_service.db.base_class import Base
from billing_service.db.types import JSONType, Money, UTCDateTime, utcnow

PLAN_TYPES = ("BASIC", "PREMIUM", "VIP", "STUDENT")


class MembershipPlan(Base):
    """
    A sellable membership plan.
    Managed by gym admins through /plans; see plan_catalog.update_plan().
    """
    __tablename__ = "membership_plans"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(Enum(*PLAN_TYPES, name="plan_type_enum"), nullable=False)

    # ── Pricing ───────────────────────────────────────────────────────────────
    duration_months = Column(Integer, nullable=False)
    price = Column(Money, nullable=False)
    setup_fee = Column(Money, nullable=False, default=0)

    # ── Entitlements ──────────────────────────────────────────────────────────
    benefits = Column(JSONType, nullable=True)                 # list of strings
    class_credits = Column(Integer, nullable=True)             # None = unlimited
    guest_passes = Column(Integer, nullable=False, default=0)
    access_hours = Column(JSONType, nullable=True)             # {"start": "06:00", "end": "22:00"}

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # ── Relationships ─────────────────────────────────────────────────────────
    subscriptions = relationship(
        "Subscription",
        back_populates="plan",
        foreign_keys="Subscription.plan_id",
    )

    def __repr__(self) -> str:
        return f"<MembershipPlan name={self.name} type={self.type} price={self.price}>"
