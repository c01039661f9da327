# billing_service/models/revenue_report.py
# One row of daily revenue figures per UTC calendar day
# Regenerating a day overwrites its row (report_date is unique)

import uuid

from sqlalchemy import Column, Date, Integer, Uuid

from billing_service.db.base_class import Base
from billing_service.db.types import Money, UTCDateTime, utcnow


class RevenueReport(Base):
    __tablename__ = "revenue_reports"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    report_date = Column(Date, nullable=False, unique=True, index=True)

    # ── Revenue by source (gross, refunds are reported separately) ────────────
    subscription_revenue = Column(Money, nullable=False, default=0)
    class_revenue = Column(Money, nullable=False, default=0)
    addon_revenue = Column(Money, nullable=False, default=0)
    other_revenue = Column(Money, nullable=False, default=0)
    total_revenue = Column(Money, nullable=False, default=0)

    # ── Members ───────────────────────────────────────────────────────────────
    new_members = Column(Integer, nullable=False, default=0)
    cancelled_members = Column(Integer, nullable=False, default=0)
    active_members = Column(Integer, nullable=False, default=0)

    # ── Payments / refunds ────────────────────────────────────────────────────
    successful_payments = Column(Integer, nullable=False, default=0)
    failed_payments = Column(Integer, nullable=False, default=0)
    refunds_issued = Column(Integer, nullable=False, default=0)
    refunds_amount = Column(Money, nullable=False, default=0)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<RevenueReport date={self.report_date} total={self.total_revenue}>"
