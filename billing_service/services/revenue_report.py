# billing_service/services/revenue_report.py
# Daily revenue figures, stored one row per UTC day in revenue_reports
#
# Revenue is counted when a payment settles (processed_at), not when it was
# initiated, and stays gross: a payment refunded later still counts on the
# day it was paid, the refund counts on the day it was processed.
#
# Usage:
#   generate_yesterday_report(db)            # scheduler, shortly after 00:00 UTC
#   generate_daily_report(db, date(2026, 3, 9))

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_service.core.errors import ValidationFailed
from billing_service.db.resilience import db_retry
from billing_service.models.payment import Payment, Refund
from billing_service.models.revenue_report import RevenueReport
from billing_service.models.subscription import Subscription
from billing_service.services.payment_service import SETTLED_STATUSES

logger = logging.getLogger("billing.reports")

REVENUE_FIELDS = ("subscription_revenue", "class_revenue", "addon_revenue", "other_revenue")
COUNT_FIELDS = (
    "new_members",
    "cancelled_members",
    "successful_payments",
    "failed_payments",
    "refunds_issued",
)


@dataclass
class ReportResult:
    report: RevenueReport
    is_new: bool


def day_bounds(report_date: date) -> Tuple[datetime, datetime]:
    """[00:00, next 00:00) UTC for the given day."""
    start = datetime.combine(report_date, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def revenue_source(payment: Payment) -> str:
    if payment.subscription_id is not None:
        return "subscription_revenue"
    if payment.payment_type == "CLASS_BOOKING":
        return "class_revenue"
    if payment.payment_type == "PERSONAL_TRAINING":
        return "addon_revenue"
    return "other_revenue"


@db_retry
def collect_daily_figures(db: Session, report_date: date) -> Dict[str, Any]:
    start, end = day_bounds(report_date)

    figures: Dict[str, Any] = {field: Decimal(0) for field in REVENUE_FIELDS}
    settled = (
        db.query(Payment)
        .filter(
            Payment.status.in_(SETTLED_STATUSES),
            Payment.processed_at >= start,
            Payment.processed_at < end,
        )
        .all()
    )
    for payment in settled:
        figures[revenue_source(payment)] += Decimal(str(payment.amount))
    figures["total_revenue"] = sum((figures[f] for f in REVENUE_FIELDS), Decimal(0))
    figures["successful_payments"] = len(settled)

    figures["failed_payments"] = (
        db.query(func.count(Payment.id))
        .filter(Payment.status == "FAILED", Payment.failed_at >= start, Payment.failed_at < end)
        .scalar()
    )

    figures["new_members"] = (
        db.query(func.count(Subscription.id))
        .filter(
            Subscription.status == "ACTIVE",
            Subscription.created_at >= start,
            Subscription.created_at < end,
        )
        .scalar()
    )
    figures["cancelled_members"] = (
        db.query(func.count(Subscription.id))
        .filter(
            Subscription.status == "CANCELLED",
            Subscription.cancelled_at >= start,
            Subscription.cancelled_at < end,
        )
        .scalar()
    )
    figures["active_members"] = (
        db.query(func.count(Subscription.id)).filter(Subscription.status == "ACTIVE").scalar()
    )

    refunds_issued, refunds_amount = (
        db.query(func.count(Refund.id), func.coalesce(func.sum(Refund.amount), 0))
        .filter(Refund.status == "PROCESSED", Refund.processed_at >= start, Refund.processed_at < end)
        .one()
    )
    figures["refunds_issued"] = refunds_issued
    figures["refunds_amount"] = Decimal(str(refunds_amount))
    return figures


def _upsert(db: Session, report_date: date, figures: Dict[str, Any]) -> ReportResult:
    report = db.query(RevenueReport).filter(RevenueReport.report_date == report_date).first()
    is_new = report is None
    if is_new:
        report = RevenueReport(report_date=report_date)
        db.add(report)
    for field, value in figures.items():
        setattr(report, field, value)
    db.commit()
    return ReportResult(report=report, is_new=is_new)


def generate_daily_report(db: Session, report_date: date) -> ReportResult:
    """
    Compute and store the figures for one day; an existing row is overwritten.

    Two generators racing on the same day: the loser hits the unique
    report_date, rolls back and updates the winner's row.
    """
    figures = collect_daily_figures(db, report_date)
    try:
        result = _upsert(db, report_date, figures)
    except IntegrityError:
        db.rollback()
        result = _upsert(db, report_date, figures)

    logger.info(
        f"Revenue report {report_date}: total {result.report.total_revenue}, "
        f"{result.report.successful_payments} payments, "
        f"{'created' if result.is_new else 'updated'}"
    )
    return result


def generate_yesterday_report(db: Session, now: Optional[datetime] = None) -> ReportResult:
    now = now or datetime.now(timezone.utc)
    return generate_daily_report(db, (now.astimezone(timezone.utc) - timedelta(days=1)).date())


@db_retry
def get_reports(db: Session, start_date: date, end_date: date) -> Dict[str, Any]:
    """
    Stored reports for [start_date, end_date] plus their totals.

    Raises:
        ValidationFailed: end_date before start_date
    """
    if end_date < start_date:
        raise ValidationFailed("end_date must not be before start_date")

    reports: List[RevenueReport] = (
        db.query(RevenueReport)
        .filter(RevenueReport.report_date >= start_date, RevenueReport.report_date <= end_date)
        .order_by(RevenueReport.report_date.asc())
        .all()
    )

    totals: Dict[str, Any] = {field: Decimal(0) for field in REVENUE_FIELDS + ("total_revenue", "refunds_amount")}
    totals.update({field: 0 for field in COUNT_FIELDS})
    for report in reports:
        for field in totals:
            totals[field] += getattr(report, field)

    return {
        "reports": reports,
        "totals": totals,
        "days": (end_date - start_date).days + 1,
    }
