# billing_service/api/v1/endpoints/plans.py
# Membership plan admin writes; reads go through the cached PlanCatalog

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing_service.core.dependencies import BillingContext, get_billing_context
from billing_service.db.session import get_db
from billing_service.schemas.common import ApiResponse
from billing_service.schemas.subscription import PlanResponse, UpdatePlanRequest
from billing_service.services import plan_catalog

router = APIRouter()


@router.patch(
    "/{plan_id}",
    response_model=ApiResponse[PlanResponse],
    summary="Update a membership plan (admin)",
)
def update_plan(
    plan_id: UUID,
    payload: UpdatePlanRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    plan = plan_catalog.update_plan(db, ctx.plans, plan_id, payload.model_dump(exclude_unset=True))
    return ApiResponse(message="Membership plan updated", data=PlanResponse.model_validate(plan))


@router.delete(
    "/{plan_id}",
    response_model=ApiResponse[PlanResponse],
    summary="Deactivate a membership plan (admin)",
)
def deactivate_plan(
    plan_id: UUID,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    plan = plan_catalog.deactivate_plan(db, ctx.plans, plan_id)
    return ApiResponse(message="Membership plan deactivated", data=PlanResponse.model_validate(plan))
