# billing_service/api/v1/endpoints/reports.py
# Daily revenue reports (admin)

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from billing_service.db.session import get_db
from billing_service.schemas.common import ApiResponse
from billing_service.schemas.report import (
    GenerateReportRequest,
    RevenueReportRange,
    RevenueReportResponse,
)
from billing_service.services import revenue_report

router = APIRouter()


@router.post(
    "/revenue/daily",
    response_model=ApiResponse[RevenueReportResponse],
    summary="Generate (or regenerate) the revenue report for one day",
)
def generate_daily_report(
    payload: Optional[GenerateReportRequest] = None,
    db: Session = Depends(get_db),
):
    if payload is not None and payload.report_date is not None:
        result = revenue_report.generate_daily_report(db, payload.report_date)
    else:
        result = revenue_report.generate_yesterday_report(db)
    return ApiResponse(
        message="Revenue report created" if result.is_new else "Revenue report updated",
        data=RevenueReportResponse.model_validate(result.report),
    )


@router.get(
    "/revenue",
    response_model=ApiResponse[RevenueReportRange],
    summary="Stored daily revenue reports for a date range, with totals",
)
def list_revenue_reports(
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
):
    result = revenue_report.get_reports(db, start_date, end_date)
    return ApiResponse(
        message=f"{len(result['reports'])} revenue reports",
        data=RevenueReportRange(
            reports=[RevenueReportResponse.model_validate(r) for r in result["reports"]],
            totals=result["totals"],
            days=result["days"],
        ),
    )
