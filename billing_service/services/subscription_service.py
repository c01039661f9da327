# billing_service/services/subscription_service.py
# Subscription create / change-plan / renew / cancel
#
# Concurrency: create paths run in a SERIALIZABLE transaction and re-read the
# member's row before writing; member_id is UNIQUE, so a racing insert that
# slips through fails on commit and is reported as SUBSCRIPTION_EXISTS.

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from billing_service.core.dependencies import BillingContext
from billing_service.core.errors import (
    DuplicateSubscription,
    InvalidTransition,
    NotFound,
    SubscriptionExists,
    ValidationFailed,
)
from billing_service.db.resilience import db_retry
from billing_service.models.payment import Invoice, Payment
from billing_service.models.subscription import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionHistory,
)
from billing_service.services import discounts
from billing_service.services.payment_service import InitiatedPayment, initiate_payment
from billing_service.services.payment_state import transition
from billing_service.services.proration import (
    ProrationResult,
    compute_proration,
    resolve_billed_plan_id,
)
from billing_service.services.reconciler import RENEWAL_MANUAL, subscription_end
from billing_service.services.refund_service import create_pending_refund, refundable_remaining

logger = logging.getLogger("billing.subscriptions")

SERIALIZATION_FAILURE = "40001"
CREATABLE_STATUSES = ("PENDING", "TRIAL", "ACTIVE")
DEFAULT_TRIAL_DAYS = 7

# An upgrade payment within this many VND of the new difference is "the same" payment
UPGRADE_DEDUPE_TOLERANCE = Decimal("1000")
PLAN_CHANGE_TYPES = ("UPGRADE", "DOWNGRADE")


@dataclass
class PlanChangeResult:
    subscription: Subscription
    change_type: str
    proration: ProrationResult
    history: SubscriptionHistory
    payment: Optional[Payment] = None
    refund: Optional[object] = None


# ── Helpers ───────────────────────────────────────────────────────────────────

@db_retry
def get_subscription(db: Session, subscription_id) -> Subscription:
    subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if subscription is None:
        raise NotFound("Subscription not found")
    return subscription


def _begin_serializable(db: Session) -> None:
    if db.in_transaction():
        # Isolation can only be chosen before the first statement
        logger.debug("Session already in a transaction; keeping its isolation level")
        return
    db.connection(execution_options={"isolation_level": "SERIALIZABLE"})


def _is_serialization_failure(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    return (getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)) == SERIALIZATION_FAILURE


def _commit_or_conflict(db: Session, member_id: str, error_cls=SubscriptionExists) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise error_cls(f"Member {member_id} already has a subscription") from exc
    except DBAPIError as exc:
        if not _is_serialization_failure(exc):
            raise
        db.rollback()
        raise error_cls(f"Member {member_id} already has a subscription") from exc


def _has_completed_payment(db: Session, subscription: Subscription) -> bool:
    return (
        db.query(Payment.id)
        .filter(Payment.subscription_id == subscription.id, Payment.status == "COMPLETED")
        .first()
        is not None
    )


def _existing_for_member(db: Session, member_id: str) -> Optional[Subscription]:
    """
    The member's row if it may be reused for a new subscription.

    Raises:
        SubscriptionExists: the member already has a live or paid-for subscription
    """
    existing = db.query(Subscription).filter(Subscription.member_id == member_id).first()
    if existing is None:
        return None
    if existing.status in LIVE_STATUSES or (
        existing.status not in TERMINAL_STATUSES and _has_completed_payment(db, existing)
    ):
        raise SubscriptionExists(
            "Member already has an active subscription",
            details={"subscription_id": str(existing.id), "status": existing.status},
        )
    return existing


def _fill_new_cycle(subscription: Subscription, plan, start: datetime, end: datetime, status: str) -> None:
    if subscription.id is not None and subscription.status in TERMINAL_STATUSES:
        subscription.billing_cycle = (subscription.billing_cycle or 1) + 1
    subscription.plan_id = plan.id
    subscription.billed_plan_id = plan.id if status == "ACTIVE" else None
    subscription.status = status
    subscription.start_date = start
    subscription.end_date = end
    subscription.current_period_start = start
    subscription.current_period_end = end
    subscription.next_billing_date = end
    subscription.base_amount = plan.price
    subscription.discount_amount = Decimal(0)
    subscription.total_amount = plan.price
    subscription.classes_remaining = plan.class_credits
    subscription.auto_renew = True
    subscription.cancelled_at = None
    subscription.cancellation_reason = None
    subscription.trial_end_date = None


# ── Create ────────────────────────────────────────────────────────────────────

def create_subscription(
    db: Session,
    ctx: BillingContext,
    *,
    member_id: str,
    plan_id,
    start_date: Optional[datetime] = None,
    status: str = "PENDING",
    trial_days: int = DEFAULT_TRIAL_DAYS,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Create (or reuse the lapsed row of) a member's subscription.

    Raises:
        SubscriptionExists: member already has an ACTIVE / PAST_DUE or paid subscription
        ValidationFailed: bad status or inactive plan
    """
    if status not in CREATABLE_STATUSES:
        raise ValidationFailed(f"Cannot create a subscription in status {status}")

    _begin_serializable(db)
    existing = _existing_for_member(db, member_id)
    plan = ctx.plans.get_active(db, plan_id)

    start = start_date or now or datetime.now(timezone.utc)
    end = subscription_end(start, plan.duration_months)

    subscription = existing or Subscription(member_id=member_id, billing_cycle=1)
    _fill_new_cycle(subscription, plan, start, end, status)
    if status == "TRIAL":
        subscription.trial_end_date = subscription_end(start, 0, trial_days)
    db.add(subscription)
    _commit_or_conflict(db, member_id)

    logger.info(f"Subscription {subscription.id} created for member {member_id} ({status})")
    return subscription


def create_subscription_with_discount(
    db: Session,
    ctx: BillingContext,
    *,
    member_id: str,
    plan_id,
    start_date: Optional[datetime] = None,
    discount_code: Optional[str] = None,
    bonus_days: int = 0,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Upsert a PENDING subscription priced with an optional discount code.
    Activated later by the payment that settles total_amount.
    """
    _begin_serializable(db)
    existing = _existing_for_member(db, member_id)
    plan = ctx.plans.get_active(db, plan_id)
    start = start_date or now or datetime.now(timezone.utc)

    subscription = existing or Subscription(member_id=member_id, billing_cycle=1)
    _fill_new_cycle(subscription, plan, start, subscription_end(start, plan.duration_months), "PENDING")
    db.add(subscription)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateSubscription(
            "Member already has a subscription; cancel it before creating a new one"
        ) from exc

    if discount_code:
        usage = discounts.apply_discount(
            db, subscription, discount_code,
            base_amount=plan.price,
            member_client=ctx.member_client,
            now=now,
        )
    else:
        usage = discounts.current_usage(db, subscription)

    extra_days = bonus_days
    if usage is not None:
        subscription.discount_amount = usage.discount_amount
        subscription.total_amount = max(plan.price - usage.discount_amount, Decimal(0))
        extra_days = max(bonus_days, usage.bonus_days or 0)

    if extra_days > 0:
        end = subscription_end(start, plan.duration_months, extra_days)
        subscription.end_date = end
        subscription.current_period_end = end
        subscription.next_billing_date = end

    _commit_or_conflict(db, member_id, DuplicateSubscription)
    logger.info(
        f"Subscription {subscription.id} for member {member_id}: "
        f"{subscription.base_amount} - {subscription.discount_amount} = {subscription.total_amount}"
    )
    return subscription


# ── Plan change ───────────────────────────────────────────────────────────────

def _open_plan_change_payments(db: Session, subscription: Subscription) -> List[Payment]:
    return (
        db.query(Payment)
        .filter(
            Payment.subscription_id == subscription.id,
            Payment.status.in_(("PENDING", "PROCESSING")),
            Payment.payment_type.in_(PLAN_CHANGE_TYPES),
        )
        .order_by(Payment.created_at.desc())
        .all()
    )


def _find_upgrade_payment(
    open_payments: List[Payment],
    change_type: str,
    amount: Decimal,
    to_plan_id,
) -> Optional[Payment]:
    for payment in open_payments:
        if payment.status != "PENDING" or payment.payment_type != change_type:
            continue
        if (payment.extra_data or {}).get("to_plan_id") != str(to_plan_id):
            continue
        if abs(payment.amount - amount) <= UPGRADE_DEDUPE_TOLERANCE and change_type in (payment.description or ""):
            return payment
    return None


def _supersede(open_payments: List[Payment], keep: Optional[Payment], new_plan_name: str, now: datetime) -> None:
    """Fail plan-change payments priced for a plan the member no longer asked for."""
    for payment in open_payments:
        if keep is not None and payment.id == keep.id:
            continue
        transition(payment, "FAILED", now=now, reason=f"Superseded by plan change to {new_plan_name}")
        logger.info(f"Plan-change payment {payment.id} superseded")


def _last_completed_payment(db: Session, subscription: Subscription) -> Optional[Payment]:
    return (
        db.query(Payment)
        .filter(
            Payment.subscription_id == subscription.id,
            Payment.status.in_(("COMPLETED", "PARTIALLY_REFUNDED")),
        )
        .order_by(Payment.processed_at.desc())
        .first()
    )


def upgrade_downgrade_subscription(
    db: Session,
    ctx: BillingContext,
    subscription_id,
    new_plan_id,
    *,
    changed_by: Optional[str] = None,
    reason: Optional[str] = None,
    payment_method: str = "VNPAY",
    now: Optional[datetime] = None,
) -> PlanChangeResult:
    """
    Move a paid subscription to another plan mid-period.

    The price difference is prorated against the billed plan (the last plan
    with a completed payment), so re-requesting an upgrade whose payment is
    still open reuses that payment instead of charging again.

    Upgrade   -> PENDING payment for the difference (deduped)
    Downgrade -> PENDING refund of |difference| against the last completed payment
    """
    now = now or datetime.now(timezone.utc)
    subscription = get_subscription(db, subscription_id)
    if not subscription.is_live:
        raise ValidationFailed("Only active subscriptions can change plan")

    new_plan = ctx.plans.get_active(db, new_plan_id)
    billed_plan_id = resolve_billed_plan_id(db, subscription)
    if new_plan.id == subscription.plan_id and billed_plan_id == subscription.plan_id:
        raise ValidationFailed("Subscription is already on this plan")
    billed_plan = ctx.plans.get(db, billed_plan_id)

    proration = compute_proration(
        billed_plan.price,
        new_plan.price,
        subscription.current_period_start,
        subscription.current_period_end,
        now,
    )
    change_type = "UPGRADE" if new_plan.price > billed_plan.price else "DOWNGRADE"

    history = SubscriptionHistory(
        subscription_id=subscription.id,
        from_plan_id=subscription.plan_id,
        to_plan_id=new_plan.id,
        change_type=change_type,
        change_reason=reason or change_type,
        old_price=billed_plan.price,
        new_price=new_plan.price,
        price_difference=proration.price_difference,
        changed_by=changed_by,
    )
    db.add(history)

    subscription.plan_id = new_plan.id
    subscription.base_amount = new_plan.price
    subscription.discount_amount = Decimal(0)
    subscription.total_amount = new_plan.price
    subscription.classes_remaining = new_plan.class_credits

    result = PlanChangeResult(subscription, change_type, proration, history)

    open_payments = _open_plan_change_payments(db, subscription)

    if proration.is_upgrade:
        description = f"{change_type}: {billed_plan.name} -> {new_plan.name}"
        payment = _find_upgrade_payment(open_payments, change_type, proration.price_difference, new_plan.id)
        _supersede(open_payments, payment, new_plan.name, now)
        if payment is None:
            initiated: InitiatedPayment = initiate_payment(
                db,
                member_id=subscription.member_id,
                amount=proration.price_difference,
                payment_method=payment_method,
                subscription_id=subscription.id,
                payment_type=change_type,
                description=description,
                extra_data={"from_plan_id": str(billed_plan.id), "to_plan_id": str(new_plan.id)},
                now=now,
            )
            payment = initiated.payment
        else:
            logger.info(f"Reusing upgrade payment {payment.id} for subscription {subscription.id}")
        history.payment_id = payment.id
        result.payment = payment
    else:
        # Nothing to collect: the new plan is paid for as of now
        _supersede(open_payments, None, new_plan.name, now)
        subscription.billed_plan_id = new_plan.id
        if proration.is_refund:
            result.refund = _refund_downgrade(db, subscription, proration, changed_by, now)

    db.commit()
    logger.info(
        f"Subscription {subscription.id} {change_type} {billed_plan.name} -> {new_plan.name}, "
        f"difference {proration.price_difference}"
    )
    ctx.notifier.subscription_event(
        subscription,
        "subscription:plan_changed",
        change_type=change_type,
        price_difference=str(proration.price_difference),
    )
    return result


def _refund_downgrade(db, subscription, proration, changed_by, now):
    payment = _last_completed_payment(db, subscription)
    if payment is None:
        logger.warning(f"Downgrade of {subscription.id} owes a refund but has no completed payment")
        return None
    amount = min(abs(proration.price_difference), refundable_remaining(db, payment))
    if amount <= 0:
        return None
    return create_pending_refund(
        db, payment, amount,
        reason=f"Prorated downgrade refund for subscription {subscription.id}",
        requested_by=changed_by or "system",
        now=now,
    )


# ── Renewal ───────────────────────────────────────────────────────────────────

def initiate_renewal(
    db: Session,
    ctx: BillingContext,
    subscription_id,
    *,
    payment_method: str,
    now: Optional[datetime] = None,
) -> InitiatedPayment:
    """
    Open a manual renewal: a SENT invoice plus a PENDING RENEWAL payment.
    The reconciler extends the period when the payment completes.
    """
    now = now or datetime.now(timezone.utc)
    subscription = get_subscription(db, subscription_id)
    if subscription.status == "CANCELLED":
        raise ValidationFailed("Cancelled subscriptions cannot be renewed")
    plan = ctx.plans.get_active(db, subscription.plan_id)
    description = f"RENEWAL: {plan.name}"

    invoice = Invoice(
        # One renewal invoice per period being renewed
        invoice_number=f"INV-R{str(subscription.id)[:8].upper()}-{subscription.current_period_end:%Y%m%d}",
        member_id=subscription.member_id,
        subscription_id=subscription.id,
        type="SUBSCRIPTION",
        status="SENT",
        subtotal=plan.price,
        total=plan.price,
        line_items=[{"description": description, "amount": str(plan.price)}],
        due_date=subscription.current_period_end,
    )
    existing_invoice = (
        db.query(Invoice)
        .filter(Invoice.invoice_number == invoice.invoice_number)
        .first()
    )
    if existing_invoice is None:
        db.add(invoice)
        db.flush()
    else:
        invoice = existing_invoice

    return initiate_payment(
        db,
        member_id=subscription.member_id,
        amount=plan.price,
        payment_method=payment_method,
        subscription_id=subscription.id,
        payment_type="RENEWAL",
        description=description,
        extra_data={"renewal_type": RENEWAL_MANUAL, "invoice_id": str(invoice.id)},
        now=now,
    )


# ── Cancel ────────────────────────────────────────────────────────────────────

def cancel_subscription(
    db: Session,
    ctx: BillingContext,
    subscription_id,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    subscription = get_subscription(db, subscription_id)
    if subscription.status in TERMINAL_STATUSES:
        raise InvalidTransition(f"Subscription is already {subscription.status}")

    subscription.status = "CANCELLED"
    subscription.cancelled_at = now or datetime.now(timezone.utc)
    subscription.cancellation_reason = reason
    subscription.auto_renew = False
    db.commit()

    logger.info(f"Subscription {subscription.id} cancelled: {reason}")
    ctx.notifier.subscription_event(subscription, "subscription:cancelled", reason=reason)
    return subscription
