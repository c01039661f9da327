# billing_service/services/proration.py
# Prorated price difference for mid-period plan changes
#
# Pure functions -- no DB writes, no I/O except resolve_billed_plan_id's read.
#
#   fraction   = remaining time / total period time     (clamped to [0, 1])
#   unused     = fraction * old_price
#   new_cost   = fraction * new_price
#   difference = new_cost - unused
#
# A positive difference (member owes money) is rounded UP to the next 1,000
# VND. A negative difference (refund due) is kept exact to the cent.

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.orm import Session

from billing_service.core.errors import ValidationFailed

ROUNDING_INCREMENT = Decimal("1000")
CENT = Decimal("0.01")
SECONDS_PER_DAY = Decimal(86400)


@dataclass(frozen=True)
class ProrationResult:
    days_remaining: Decimal
    total_days: Decimal
    unused_amount: Decimal
    new_plan_cost: Decimal
    price_difference: Decimal

    @property
    def is_upgrade(self) -> bool:
        return self.price_difference > 0

    @property
    def is_refund(self) -> bool:
        return self.price_difference < 0


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_up_to_increment(amount: Decimal, increment: Decimal = ROUNDING_INCREMENT) -> Decimal:
    """Round a positive amount up to the next multiple of increment."""
    steps = (amount / increment).to_integral_value(rounding=ROUND_CEILING)
    return steps * increment


def compute_proration(
    old_price,
    new_price,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> ProrationResult:
    """
    Price difference for switching from old_price to new_price at `now`.

    Args:
        old_price: Price of the plan the member has paid for (billed plan)
        new_price: Price of the target plan
        period_start: Start of the current billing period
        period_end: End of the current billing period
        now: Moment of the change

    Returns:
        ProrationResult. price_difference > 0 means the member owes money,
        < 0 means a refund is due.

    Raises:
        ValidationFailed: if period_end is not after period_start
    """
    total_seconds = Decimal(str((period_end - period_start).total_seconds()))
    if total_seconds <= 0:
        raise ValidationFailed("Billing period end must be after its start")

    remaining_seconds = Decimal(str((period_end - now).total_seconds()))
    remaining_seconds = min(max(remaining_seconds, Decimal(0)), total_seconds)

    fraction = remaining_seconds / total_seconds
    total_days = total_seconds / SECONDS_PER_DAY
    days_remaining = fraction * total_days

    unused = (fraction * _to_decimal(old_price)).quantize(CENT, rounding=ROUND_HALF_UP)
    new_cost = (fraction * _to_decimal(new_price)).quantize(CENT, rounding=ROUND_HALF_UP)

    difference = new_cost - unused
    if difference > 0:
        difference = round_up_to_increment(difference)

    return ProrationResult(
        days_remaining=days_remaining.quantize(CENT, rounding=ROUND_HALF_UP),
        total_days=total_days.quantize(CENT, rounding=ROUND_HALF_UP),
        unused_amount=unused,
        new_plan_cost=new_cost,
        price_difference=difference,
    )


def resolve_billed_plan_id(db: Session, subscription) -> uuid.UUID:
    """
    The plan the member has actually paid for.

    Normally Subscription.billed_plan_id. Rows written before that column
    existed fall back to the history: if the latest change onto the current
    plan still has its upgrade payment PENDING, the paid plan is the one the
    change moved away from.
    """
    if subscription.billed_plan_id is not None:
        return subscription.billed_plan_id

    from billing_service.models.payment import Payment
    from billing_service.models.subscription import SubscriptionHistory

    entry: Optional[SubscriptionHistory] = (
        db.query(SubscriptionHistory)
        .filter(
            SubscriptionHistory.subscription_id == subscription.id,
            SubscriptionHistory.to_plan_id == subscription.plan_id,
        )
        .order_by(SubscriptionHistory.created_at.desc())
        .first()
    )
    if entry is None or entry.from_plan_id is None or entry.payment_id is None:
        return subscription.plan_id

    pending = (
        db.query(Payment.id)
        .filter(Payment.id == entry.payment_id, Payment.status == "PENDING")
        .first()
    )
    return entry.from_plan_id if pending else subscription.plan_id
