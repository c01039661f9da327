# billing_service/services/discounts.py
# Discount / referral ledger
#
#   validate_coupon()       -- read-only checks + quote, used by /discounts/validate
#   apply_discount()        -- records the DiscountUsage for a subscription cycle
#   settle_after_payment()  -- referral credit + REWARD- redemption, after payment success
#
# Money-moving effects here are at-most-once:
#   - one DiscountUsage per (subscription, billing_cycle), DB unique constraint
#   - referral credit claimed by a conditional UPDATE on reward_credited_at
#   - REWARD- redemption claimed the same way on redemption_used_at
# A claimed effect whose remote call fails becomes a compensation task.

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_service.core.errors import ConflictError, NotFound, ValidationFailed
from billing_service.models.discount import DiscountCode, DiscountUsage
from billing_service.models.payment import Payment
from billing_service.services.compensation import (
    REFERRAL_CREDIT,
    REWARD_REDEMPTION,
    CompensationQueue,
    new_task_id,
)
from billing_service.services.member_client import MemberServiceClient, MemberServiceError

logger = logging.getLogger("billing.discounts")

REWARD_CODE_PREFIX = "REWARD-"

# Discount types that extend the subscription instead of lowering the price
BONUS_DAYS_BY_TYPE = {
    "FREE_TRIAL": 30,
    "FIRST_MONTH_FREE": 30,
}


@dataclass
class CouponQuote:
    code: str
    type: str
    value: Decimal
    max_discount: Optional[Decimal]
    discount_amount: Decimal
    bonus_days: int
    discount_code_id: Optional[Any] = None
    referrer_member_id: Optional[str] = None
    referrer_reward: Optional[int] = None
    redemption_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        """JSON-safe snapshot stored on the usage row; money as strings."""
        return {
            "code": self.code,
            "type": self.type,
            "value": str(self.value),
            "max_discount": str(self.max_discount) if self.max_discount is not None else None,
            "discount_amount": str(self.discount_amount),
            "bonus_days": self.bonus_days,
        }


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def calculate_discount(discount_type: str, value, base_amount, max_discount=None) -> Decimal:
    """
    PERCENTAGE   -> base * value / 100, capped by max_discount
    FIXED_AMOUNT -> value
    Never more than base_amount. Bonus-day types are worth 0 here.
    """
    base = Decimal(str(base_amount))
    value = Decimal(str(value))
    if discount_type == "PERCENTAGE":
        amount = base * value / Decimal(100)
        if max_discount is not None:
            amount = min(amount, Decimal(str(max_discount)))
    elif discount_type == "FIXED_AMOUNT":
        amount = value
    else:
        amount = Decimal(0)
    return min(amount, base).quantize(Decimal("0.01"))


# ── Validation ────────────────────────────────────────────────────────────────

def _has_completed_payment(db: Session, member_id: str) -> bool:
    return (
        db.query(Payment.id)
        .filter(
            Payment.member_id == member_id,
            Payment.status.in_(("COMPLETED", "PARTIALLY_REFUNDED", "REFUNDED")),
        )
        .first()
        is not None
    )


def _quote_reward_code(
    code: str,
    member_id: Optional[str],
    base_amount: Decimal,
    member_client: MemberServiceClient,
) -> CouponQuote:
    """REWARD- codes live in the member service; the local table is never consulted."""
    redemption = member_client.verify_reward_code(code)
    if redemption.status != "ACTIVE":
        raise ValidationFailed("Reward code has already been used or is no longer active")
    if member_id and redemption.member_id and redemption.member_id != member_id:
        raise ValidationFailed("Reward code belongs to another member")

    if redemption.reward_type == "PERCENTAGE_DISCOUNT" and redemption.discount_percent is not None:
        discount_type, value = "PERCENTAGE", redemption.discount_percent
    elif redemption.reward_type == "FIXED_AMOUNT_DISCOUNT" and redemption.discount_amount is not None:
        discount_type, value = "FIXED_AMOUNT", redemption.discount_amount
    else:
        raise ValidationFailed("Reward code does not grant a billing discount")

    return CouponQuote(
        code=code,
        type=discount_type,
        value=value,
        max_discount=None,
        discount_amount=calculate_discount(discount_type, value, base_amount),
        bonus_days=0,
        redemption_id=redemption.redemption_id,
    )


def validate_coupon(
    db: Session,
    code: Optional[str],
    *,
    member_id: Optional[str] = None,
    plan_id=None,
    base_amount=None,
    member_client: Optional[MemberServiceClient] = None,
    now: Optional[datetime] = None,
) -> CouponQuote:
    """
    Check a code against every rule and quote the discount.

    Raises:
        ValidationFailed: missing / inactive / out of window / over limit /
                          wrong plan / not first-time
        NotFound: code does not exist
    """
    normalized = normalize_code(code)
    if not normalized:
        raise ValidationFailed("Discount code is required")

    base = Decimal(str(base_amount)) if base_amount is not None else Decimal(0)

    if normalized.startswith(REWARD_CODE_PREFIX):
        if member_client is None:
            raise ValidationFailed("Reward codes cannot be verified right now")
        return _quote_reward_code(normalized, member_id, base, member_client)

    discount = db.query(DiscountCode).filter(DiscountCode.code == normalized).first()
    if discount is None:
        raise NotFound("Discount code not found")

    if not discount.is_active:
        raise ValidationFailed("Discount code has been deactivated")

    now = now or datetime.now(timezone.utc)
    if now < discount.valid_from:
        raise ValidationFailed("Discount code is not valid yet")
    if discount.valid_until is not None and now > discount.valid_until:
        raise ValidationFailed("Discount code has expired")

    if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
        raise ValidationFailed("Discount code has reached its usage limit")

    if member_id and discount.usage_limit_per_member:
        used = (
            db.query(func.count(DiscountUsage.id))
            .filter(
                DiscountUsage.discount_code_id == discount.id,
                DiscountUsage.member_id == member_id,
            )
            .scalar()
        )
        if used >= discount.usage_limit_per_member:
            raise ValidationFailed("You have used up this discount code")

    if plan_id is not None and discount.applicable_plans:
        if str(plan_id) not in {str(p) for p in discount.applicable_plans}:
            raise ValidationFailed("Discount code does not apply to this plan")

    if discount.first_time_only and member_id and _has_completed_payment(db, member_id):
        raise ValidationFailed("Discount code is for new members only")

    if discount.minimum_amount is not None and base_amount is not None and base < discount.minimum_amount:
        raise ValidationFailed(f"Minimum order amount for this code is {discount.minimum_amount}")

    return CouponQuote(
        code=discount.code,
        type=discount.type,
        value=Decimal(str(discount.value)),
        max_discount=Decimal(str(discount.max_discount)) if discount.max_discount is not None else None,
        discount_amount=calculate_discount(discount.type, discount.value, base, discount.max_discount),
        bonus_days=BONUS_DAYS_BY_TYPE.get(discount.type, 0),
        discount_code_id=discount.id,
        referrer_member_id=discount.referrer_member_id,
        referrer_reward=discount.referral_reward,
    )


# ── Applying ──────────────────────────────────────────────────────────────────

def current_usage(db: Session, subscription) -> Optional[DiscountUsage]:
    return (
        db.query(DiscountUsage)
        .filter(
            DiscountUsage.subscription_id == subscription.id,
            DiscountUsage.billing_cycle == subscription.billing_cycle,
        )
        .first()
    )


def apply_discount(
    db: Session,
    subscription,
    code: str,
    *,
    base_amount,
    member_client: Optional[MemberServiceClient] = None,
    now: Optional[datetime] = None,
) -> DiscountUsage:
    """
    Record a discount against the subscription's current billing cycle.

    Applying the code already on the cycle returns the existing usage;
    applying a different one raises ConflictError. Flushes, does not commit.
    """
    normalized = normalize_code(code)
    existing = current_usage(db, subscription)
    if existing is not None:
        if existing.code == normalized:
            return existing
        raise ConflictError(
            "A discount has already been applied to this subscription",
            code="DISCOUNT_ALREADY_APPLIED",
        )

    quote = validate_coupon(
        db,
        normalized,
        member_id=subscription.member_id,
        plan_id=subscription.plan_id,
        base_amount=base_amount,
        member_client=member_client,
        now=now,
    )

    if quote.discount_code_id is not None:
        claimed = db.execute(
            update(DiscountCode)
            .where(
                DiscountCode.id == quote.discount_code_id,
                or_(
                    DiscountCode.usage_limit.is_(None),
                    DiscountCode.usage_count < DiscountCode.usage_limit,
                ),
            )
            .values(usage_count=DiscountCode.usage_count + 1),
            execution_options={"synchronize_session": False},
        ).rowcount
        if claimed != 1:
            raise ValidationFailed("Discount code has reached its usage limit")

    usage = DiscountUsage(
        discount_code_id=quote.discount_code_id,
        code=quote.code,
        member_id=subscription.member_id,
        subscription_id=subscription.id,
        billing_cycle=subscription.billing_cycle,
        discount_amount=quote.discount_amount,
        bonus_days=quote.bonus_days,
        referrer_member_id=quote.referrer_member_id,
        referrer_reward=quote.referrer_reward,
        redemption_id=quote.redemption_id,
        details=quote.as_dict(),
    )
    db.add(usage)
    try:
        db.flush()
    except IntegrityError as exc:
        raise ConflictError(
            "A discount has already been applied to this subscription",
            code="DISCOUNT_ALREADY_APPLIED",
        ) from exc
    logger.info(f"Applied {quote.code} to subscription {subscription.id}: -{quote.discount_amount}")
    return usage


# ── Settlement (after payment success) ────────────────────────────────────────

def _claim(db: Session, usage: DiscountUsage, column, now: datetime) -> bool:
    """Set a NULL timestamp column on the usage row; True if this call won."""
    won = db.execute(
        update(DiscountUsage)
        .where(DiscountUsage.id == usage.id, column.is_(None))
        .values({column.key: now}),
        execution_options={"synchronize_session": False},
    ).rowcount == 1
    db.commit()
    db.refresh(usage)
    return won


def referral_payload(usage: DiscountUsage) -> Dict[str, Any]:
    return {
        "member_id": usage.referrer_member_id,
        "points": int(usage.referrer_reward),
        "source": "REFERRAL",
        "source_id": str(usage.id),
        "description": f"Referral reward: {usage.member_id} subscribed with {usage.code}",
        "idempotency_key": f"referral:{usage.id}",
    }


def replay_referral_credit(member_client: MemberServiceClient, payload: Dict[str, Any]) -> None:
    member_client.credit_points(
        payload["member_id"],
        payload["points"],
        source=payload["source"],
        source_id=payload["source_id"],
        description=payload["description"],
        idempotency_key=payload["idempotency_key"],
    )


def replay_reward_redemption(member_client: MemberServiceClient, payload: Dict[str, Any]) -> None:
    member_client.mark_redemption_used(payload["redemption_id"])


def settle_after_payment(
    db: Session,
    subscription,
    member_client: MemberServiceClient,
    compensation: CompensationQueue,
    now: Optional[datetime] = None,
) -> Dict[str, bool]:
    """
    Credit the referrer and consume the REWARD- redemption for the
    subscription's current cycle. Each effect happens at most once.
    """
    result = {"referral_credited": False, "redemption_used": False}
    usage = current_usage(db, subscription)
    if usage is None:
        return result
    now = now or datetime.now(timezone.utc)

    if usage.referrer_member_id and usage.referrer_reward:
        if _claim(db, usage, DiscountUsage.reward_credited_at, now):
            payload = referral_payload(usage)
            try:
                replay_referral_credit(member_client, payload)
                result["referral_credited"] = True
                logger.info(f"Credited {payload['points']} points to referrer {usage.referrer_member_id}")
            except MemberServiceError as exc:
                logger.warning(f"Referral credit for usage {usage.id} deferred: {exc}")
                compensation.store(new_task_id(), payload, kind=REFERRAL_CREDIT)

    if usage.redemption_id:
        if _claim(db, usage, DiscountUsage.redemption_used_at, now):
            payload = {"redemption_id": usage.redemption_id}
            try:
                replay_reward_redemption(member_client, payload)
                result["redemption_used"] = True
            except MemberServiceError as exc:
                logger.warning(f"Marking redemption {usage.redemption_id} used deferred: {exc}")
                compensation.store(new_task_id(), payload, kind=REWARD_REDEMPTION)

    return result
