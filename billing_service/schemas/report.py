# billing_service/schemas/report.py
# Pydantic models for the revenue report endpoints

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class GenerateReportRequest(BaseModel):
    report_date: Optional[date] = None    # defaults to yesterday (UTC)


class RevenueReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    report_date: date
    subscription_revenue: Decimal
    class_revenue: Decimal
    addon_revenue: Decimal
    other_revenue: Decimal
    total_revenue: Decimal
    new_members: int
    cancelled_members: int
    active_members: int
    successful_payments: int
    failed_payments: int
    refunds_issued: int
    refunds_amount: Decimal
    updated_at: datetime


class RevenueReportRange(BaseModel):
    reports: List[RevenueReportResponse]
    totals: Dict[str, Union[int, Decimal]]
    days: int
