from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billing_service.core.errors import ValidationFailed
from billing_service.models.payment import Refund
from billing_service.models.revenue_report import RevenueReport
from billing_service.services.revenue_report import (
    generate_daily_report,
    generate_yesterday_report,
    get_reports,
)

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def business_day(db, make_plan, make_subscription, make_payment):
    """2026-03-10: one new member, one cancellation, three paid sources, one failure, one refund."""
    plan = make_plan(price=500000)
    joined = make_subscription(plan)
    joined.created_at = NOW - timedelta(hours=2)
    make_subscription(plan)
    cancelled = make_subscription(plan, status="CANCELLED")
    cancelled.cancelled_at = NOW
    db.commit()

    paid = make_payment(joined, amount=500000, status="COMPLETED")
    make_payment(member_id="walk-in", amount=150000, status="COMPLETED", payment_type="CLASS_BOOKING")
    make_payment(member_id="walk-in", amount=300000, status="COMPLETED", payment_type="PERSONAL_TRAINING")
    make_payment(joined, amount=200000, status="COMPLETED", processed_at=NOW - timedelta(days=1))
    failed = make_payment(joined, amount=500000, status="FAILED")
    failed.failed_at = NOW
    db.add(
        Refund(
            payment_id=paid.id,
            amount=Decimal("100000"),
            reason="Injury",
            status="PROCESSED",
            requested_by="member",
            processed_at=NOW + timedelta(hours=1),
            extra_data={},
        )
    )
    db.commit()
    return paid


def test_daily_report_figures(db, business_day):
    result = generate_daily_report(db, date(2026, 3, 10))

    report = result.report
    assert result.is_new is True
    assert report.subscription_revenue == Decimal("500000")
    assert report.class_revenue == Decimal("150000")
    assert report.addon_revenue == Decimal("300000")
    assert report.other_revenue == Decimal(0)
    assert report.total_revenue == Decimal("950000")
    assert report.successful_payments == 3
    assert report.failed_payments == 1
    assert report.new_members == 1
    assert report.cancelled_members == 1
    assert report.active_members == 2
    assert report.refunds_issued == 1
    assert report.refunds_amount == Decimal("100000")


def test_regenerating_a_day_overwrites_its_row(db, make_payment, business_day):
    first = generate_daily_report(db, date(2026, 3, 10))
    make_payment(member_id="walk-in", amount=50000, status="COMPLETED", payment_type="SETUP_FEE")

    second = generate_daily_report(db, date(2026, 3, 10))

    assert second.is_new is False
    assert second.report.id == first.report.id
    assert second.report.other_revenue == Decimal("50000")
    assert second.report.total_revenue == Decimal("1000000")
    assert db.query(RevenueReport).count() == 1


def test_yesterday_report(db, business_day):
    result = generate_yesterday_report(db, now=NOW)

    assert result.report.report_date == date(2026, 3, 9)
    assert result.report.subscription_revenue == Decimal("200000")
    assert result.report.successful_payments == 1
    assert result.report.refunds_issued == 0


def test_reports_for_a_range_are_totalled(db, business_day):
    generate_daily_report(db, date(2026, 3, 9))
    generate_daily_report(db, date(2026, 3, 10))

    result = get_reports(db, date(2026, 3, 1), date(2026, 3, 31))

    assert [r.report_date for r in result["reports"]] == [date(2026, 3, 9), date(2026, 3, 10)]
    assert result["totals"]["total_revenue"] == Decimal("1150000")
    assert result["totals"]["successful_payments"] == 4
    assert result["days"] == 31


def test_reversed_range_is_rejected(db):
    with pytest.raises(ValidationFailed):
        get_reports(db, date(2026, 3, 10), date(2026, 3, 9))


def test_report_api(client, business_day):
    generated = client.post("/api/v1/reports/revenue/daily", json={"report_date": "2026-03-10"})

    assert generated.status_code == 200
    assert generated.json()["message"] == "Revenue report created"
    assert Decimal(generated.json()["data"]["total_revenue"]) == Decimal("950000")

    listed = client.get("/api/v1/reports/revenue", params={"start_date": "2026-03-10", "end_date": "2026-03-10"})

    assert listed.status_code == 200
    data = listed.json()["data"]
    assert len(data["reports"]) == 1
    assert data["totals"]["new_members"] == 1
    assert Decimal(data["totals"]["refunds_amount"]) == Decimal("100000")
