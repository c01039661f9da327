# billing_service/services/refund_service.py
# Refund requests and approval
#
# Bound: the PROCESSED refunds of a payment never add up to more than the
# payment amount. approve_refund() holds a row lock on the payment
# (SELECT ... FOR UPDATE), claims the refund with a conditional
# UPDATE ... WHERE status = 'PENDING', and bumps refunded_amount with a
# guarded SQL increment. Two admins deciding the same refund at once: one
# wins, the other gets INVALID_TRANSITION.

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from billing_service.core.dependencies import BillingContext
from billing_service.core.errors import (
    InvalidTransition,
    NotFound,
    RefundExceedsRemaining,
    ValidationFailed,
)
from billing_service.db.resilience import db_retry
from billing_service.models.payment import Payment, Refund
from billing_service.services.payment_service import get_payment
from billing_service.services.payment_state import (
    REFUNDABLE_PAYMENT_STATUSES,
    append_timeline,
    refund_target_status,
    transition,
    transition_refund,
)

logger = logging.getLogger("billing.refunds")

OPEN_REFUND_STATUSES = ("PENDING", "APPROVED")


@db_retry
def get_refund(db: Session, refund_id) -> Refund:
    refund = db.query(Refund).filter(Refund.id == refund_id).first()
    if refund is None:
        raise NotFound("Refund not found")
    return refund


def refundable_remaining(db: Session, payment: Payment) -> Decimal:
    """Amount still refundable once already-processed and open requests are counted."""
    open_total = (
        db.query(func.coalesce(func.sum(Refund.amount), 0))
        .filter(Refund.payment_id == payment.id, Refund.status.in_(OPEN_REFUND_STATUSES))
        .scalar()
    )
    remaining = Decimal(str(payment.amount)) - Decimal(str(payment.refunded_amount or 0)) - Decimal(str(open_total))
    return max(remaining, Decimal(0))


def _exceeds(remaining: Decimal) -> RefundExceedsRemaining:
    return RefundExceedsRemaining(
        f"Refund amount exceeds the remaining refundable amount ({remaining})",
        details={"remaining": str(remaining)},
    )


def create_pending_refund(
    db: Session,
    payment: Payment,
    amount,
    *,
    reason: str,
    requested_by: str,
    now: Optional[datetime] = None,
) -> Refund:
    """
    Add a PENDING refund without committing.

    Raises:
        ValidationFailed: payment not refundable or non-positive amount
        RefundExceedsRemaining: amount larger than what is left
    """
    amount = Decimal(str(amount))
    if payment.status not in REFUNDABLE_PAYMENT_STATUSES:
        raise ValidationFailed(f"Payment in status {payment.status} cannot be refunded")
    if amount <= 0:
        raise ValidationFailed("Refund amount must be positive")

    remaining = refundable_remaining(db, payment)
    if amount > remaining:
        raise _exceeds(remaining)

    refund = Refund(
        payment_id=payment.id,
        amount=amount,
        reason=reason,
        status="PENDING",
        requested_by=requested_by,
        extra_data={},
    )
    append_timeline(refund, "PENDING", by=requested_by, note=reason, now=now)
    db.add(refund)
    db.flush()
    return refund


def request_refund(
    db: Session,
    ctx: BillingContext,
    *,
    payment_id,
    amount,
    reason: str,
    requested_by: str,
    now: Optional[datetime] = None,
) -> Refund:
    payment = get_payment(db, payment_id)
    refund = create_pending_refund(
        db, payment, amount, reason=reason, requested_by=requested_by, now=now
    )
    db.commit()
    logger.info(f"Refund {refund.id} requested for payment {payment.id}: {refund.amount}")
    ctx.notifier.refund_requested(refund)
    return refund


def _claim_pending(db: Session, refund: Refund, target: str, **values) -> None:
    """
    Move the refund out of PENDING with a guarded UPDATE; only one caller wins.

    Raises:
        InvalidTransition: someone else already decided this refund
    """
    claimed = db.execute(
        update(Refund)
        .where(Refund.id == refund.id, Refund.status == "PENDING")
        .values(status=target, **values),
        execution_options={"synchronize_session": False},
    ).rowcount
    if claimed != 1:
        db.rollback()
        db.refresh(refund)
        raise InvalidTransition(
            f"Refund cannot move from {refund.status} to {target}",
            details={"refund_id": str(refund.id), "from": refund.status, "to": target},
        )


def approve_refund(
    db: Session,
    ctx: BillingContext,
    refund_id,
    *,
    approved_by: str,
    now: Optional[datetime] = None,
) -> Refund:
    """
    Approve and process a PENDING refund in one transaction.

    Raises:
        InvalidTransition: refund not PENDING
        RefundExceedsRemaining: another refund already used up the amount
    """
    now = now or datetime.now(timezone.utc)
    refund = get_refund(db, refund_id)

    # Row lock: concurrent approvals for the same payment serialize here
    payment = (
        db.query(Payment)
        .filter(Payment.id == refund.payment_id)
        .with_for_update()
        .one()
    )
    _claim_pending(db, refund, "APPROVED", approved_by=approved_by)
    transition_refund(refund, "APPROVED", by=approved_by, now=now)

    incremented = db.execute(
        update(Payment)
        .where(
            Payment.id == payment.id,
            Payment.refunded_amount + refund.amount <= Payment.amount,
        )
        .values(refunded_amount=Payment.refunded_amount + refund.amount),
        execution_options={"synchronize_session": False},
    ).rowcount
    if incremented != 1:
        db.rollback()
        db.refresh(payment)
        raise _exceeds(max(payment.amount - payment.refunded_amount, Decimal(0)))

    db.refresh(payment, attribute_names=["refunded_amount"])
    transition(payment, refund_target_status(payment), now=now)
    payment.net_amount = payment.amount - payment.refunded_amount
    transition_refund(refund, "PROCESSED", by=approved_by, now=now)
    db.commit()

    logger.info(
        f"Refund {refund.id} processed: {refund.amount} of payment {payment.id} "
        f"(refunded {payment.refunded_amount}/{payment.amount}, {payment.status})"
    )
    ctx.notifier.refund_updated(refund, payment.member_id)
    return refund


def reject_refund(
    db: Session,
    ctx: BillingContext,
    refund_id,
    *,
    rejected_by: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Refund:
    refund = get_refund(db, refund_id)
    _claim_pending(db, refund, "REJECTED")
    transition_refund(refund, "REJECTED", by=rejected_by, note=reason, now=now)
    db.commit()
    ctx.notifier.refund_updated(refund, refund.payment.member_id)
    return refund
