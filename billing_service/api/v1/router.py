# billing_service/api/v1/router.py
# Master router -- registers all endpoint routers under /api/v1
# Each endpoint module registers its own router; prefixes and tags live here

from fastapi import APIRouter

from billing_service.api.v1.endpoints import (
    bank_transfers,
    discounts,
    payments,
    plans,
    refunds,
    reports,
    subscriptions,
)

api_router = APIRouter()

# Payments & gateway webhook
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])

# Sepay bank transfers
api_router.include_router(bank_transfers.router, prefix="/bank-transfers", tags=["Bank Transfers"])

# Membership plans
api_router.include_router(plans.router, prefix="/plans", tags=["Plans"])

# Subscriptions
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])

# Refunds
api_router.include_router(refunds.router, prefix="/refunds", tags=["Refunds"])

# Discounts
api_router.include_router(discounts.router, prefix="/discounts", tags=["Discounts"])

# Revenue reports
api_router.include_router(reports.router, prefix="/reports", tags=["Reports"])
