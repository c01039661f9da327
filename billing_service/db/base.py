# billing_service/db/base.py
# Alembic model registry -- imports Base + every model so Alembic detects all tables.
# Do NOT import this file from model files (use billing_service.db.base_class instead).
# This file is only imported by:
#   - alembic/env.py        (schema detection)
#   - billing_service/main.py and tests (mapper configuration)

from billing_service.db.base_class import Base  # noqa: F401

# ── Import all models here so Alembic can detect them ────────────────────────
# Order matters: parent tables before child tables (foreign key dependencies)

from billing_service.models.plan import MembershipPlan                          # noqa: F401, E402
from billing_service.models.subscription import Subscription, SubscriptionHistory  # noqa: F401, E402
from billing_service.models.payment import Payment, Refund, Invoice             # noqa: F401, E402
from billing_service.models.bank_transfer import BankTransfer                   # noqa: F401, E402
from billing_service.models.discount import DiscountCode, DiscountUsage         # noqa: F401, E402
from billing_service.models.revenue_report import RevenueReport                 # noqa: F401, E402
