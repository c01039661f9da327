# billing_service/services/payment_service.py
# Payment lifecycle: initiate, settle (webhook / explicit), retry
#
# Completion pipeline for a successful payment (shared by the gateway webhook,
# the Sepay bank-transfer webhook and process_payment):
#   1. status -> COMPLETED, committed on its own
#   2. invoice + loyalty points                (best-effort)
#   3. subscription reconciliation              (committed with reconciled_at)
#   4. referral credit / reward redemption      (at-most-once, compensated)
#   5. notifications                            (best-effort)
# A failure in 2-5 never rolls back 1.

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_service.core.config import settings
from billing_service.core.dependencies import BillingContext
from billing_service.core.errors import (
    AmountMismatch,
    MaxRetriesExceeded,
    NotFound,
    ValidationFailed,
)
from billing_service.db.resilience import db_retry
from billing_service.models.payment import PAYMENT_METHODS, PAYMENT_TYPES, Invoice, Payment
from billing_service.models.subscription import Subscription
from billing_service.services import discounts
from billing_service.services.member_client import MemberServiceError
from billing_service.services.payment_state import transition
from billing_service.services.reconciler import ReconcileOutcome

logger = logging.getLogger("billing.payments")

AMOUNT_EPSILON = Decimal("0.01")

# Statuses in which the money has already been received
SETTLED_STATUSES = {"COMPLETED", "PARTIALLY_REFUNDED", "REFUNDED"}

# Gateways that redirect the member to a hosted payment page
REDIRECT_GATEWAYS = {"VNPAY", "MOMO"}


@dataclass
class InitiatedPayment:
    payment: Payment
    reused: bool
    payment_url: Optional[str] = None
    bank_transfer: Optional[Any] = None


@dataclass
class CompletionResult:
    payment: Payment
    newly_completed: bool
    reconciliation: Optional[ReconcileOutcome] = None


@dataclass
class WebhookResult:
    payment_id: str
    status: str
    replayed: bool
    reconciliation: Optional[ReconcileOutcome] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "status": self.status,
            "replayed": self.replayed,
            "reconciliation": self.reconciliation.as_dict() if self.reconciliation else None,
        }


# ── Lookups ───────────────────────────────────────────────────────────────────

@db_retry
def get_payment(db: Session, payment_id) -> Payment:
    payment = db.query(Payment).filter(Payment.id == payment_id).first()
    if payment is None:
        raise NotFound("Payment not found")
    return payment


def amounts_match(expected, received) -> bool:
    return abs(Decimal(str(expected)) - Decimal(str(received))) < AMOUNT_EPSILON


# ── Initiate ──────────────────────────────────────────────────────────────────

def _find_reusable_payment(
    db: Session,
    subscription_id,
    amount: Decimal,
    description: Optional[str],
) -> Optional[Payment]:
    query = db.query(Payment).filter(
        Payment.subscription_id == subscription_id,
        Payment.status == "PENDING",
        Payment.amount == amount,
    )
    if description is None:
        query = query.filter(Payment.description.is_(None))
    else:
        query = query.filter(Payment.description == description)
    return query.order_by(Payment.created_at.desc()).first()


def initiate_payment(
    db: Session,
    *,
    member_id: str,
    amount,
    payment_method: str,
    subscription_id=None,
    payment_type: str = "SUBSCRIPTION",
    description: Optional[str] = None,
    reference_id: Optional[str] = None,
    extra_data: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> InitiatedPayment:
    """
    Create a PENDING payment, or return the PENDING one already open for the
    same subscription + amount + description.

    BANK_TRANSFER payments also get their BankTransfer (VietQR content).
    Commits.
    """
    from billing_service.services.bank_transfer import create_bank_transfer

    amount = Decimal(str(amount))
    if amount <= 0:
        raise ValidationFailed("Payment amount must be positive")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationFailed(f"Unsupported payment method: {payment_method}")
    if payment_type not in PAYMENT_TYPES:
        raise ValidationFailed(f"Unsupported payment type: {payment_type}")

    if subscription_id is not None:
        subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
        if subscription is None:
            raise NotFound("Subscription not found")
        if subscription.member_id != member_id:
            raise ValidationFailed("Subscription belongs to another member")

    payment = None
    reused = False
    if subscription_id is not None:
        payment = _find_reusable_payment(db, subscription_id, amount, description)
        reused = payment is not None

    if payment is None:
        payment = Payment(
            member_id=member_id,
            subscription_id=subscription_id,
            amount=amount,
            currency=settings.currency,
            status="PENDING",
            payment_method=payment_method,
            payment_type=payment_type,
            description=description,
            reference_id=reference_id,
            extra_data=extra_data or {},
            refunded_amount=Decimal(0),
            retry_count=0,
        )
        db.add(payment)
        db.flush()
        logger.info(f"Payment {payment.id} initiated: {amount} {settings.currency} via {payment_method}")
    else:
        logger.info(f"Reusing pending payment {payment.id} for subscription {subscription_id}")

    result = InitiatedPayment(payment=payment, reused=reused)
    if payment_method == "BANK_TRANSFER":
        result.bank_transfer = create_bank_transfer(db, payment, now=now)
    elif payment_method in REDIRECT_GATEWAYS:
        result.payment_url = (
            f"{settings.frontend_url}/payment/processing"
            f"?payment_id={payment.id}&gateway={payment_method.lower()}"
        )

    db.commit()
    return result


# ── Completion ────────────────────────────────────────────────────────────────

def invoice_number_for(payment: Payment, now: datetime) -> str:
    return f"INV-{now:%Y%m%d}-{str(payment.id)[:8].upper()}"


def ensure_invoice(db: Session, payment: Payment, now: Optional[datetime] = None) -> Invoice:
    """Invoice for a completed payment, created PAID if absent. Flushes only."""
    now = now or datetime.now(timezone.utc)
    invoice = db.query(Invoice).filter(Invoice.payment_id == payment.id).first()
    if invoice is not None:
        return invoice

    # Manual renewals carry the invoice issued when the renewal was opened
    invoice_id = (payment.extra_data or {}).get("invoice_id")
    if invoice_id:
        invoice = db.get(Invoice, uuid.UUID(str(invoice_id)))
        if invoice is not None and invoice.payment_id is None:
            invoice.payment_id = payment.id
            db.flush()
            return invoice

    invoice = Invoice(
        invoice_number=invoice_number_for(payment, now),
        member_id=payment.member_id,
        subscription_id=payment.subscription_id,
        payment_id=payment.id,
        type="SUBSCRIPTION" if payment.subscription_id else "OTHER",
        status="PAID",
        subtotal=payment.amount,
        tax_amount=Decimal(0),
        discount_amount=Decimal(0),
        total=payment.amount,
        line_items=[{
            "description": payment.description or payment.payment_type,
            "amount": str(payment.amount),
        }],
        due_date=now,
        paid_date=now,
    )
    db.add(invoice)
    db.flush()
    return invoice


def _create_invoice_best_effort(db: Session, payment: Payment, now: datetime) -> None:
    try:
        ensure_invoice(db, payment, now)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Invoice creation failed for payment {payment.id}: {e}")


def _award_loyalty_points(ctx: BillingContext, payment: Payment) -> None:
    points = int(Decimal(str(payment.amount)) // settings.loyalty_amount_per_point)
    if points <= 0:
        return
    try:
        ctx.member_client.award_points(
            payment.member_id,
            points,
            source_id=str(payment.id),
            description=f"Payment {str(payment.id)[:8].upper()}",
        )
    except MemberServiceError as e:
        logger.warning(f"Loyalty points for payment {payment.id} not awarded: {e}")


def complete_payment(
    db: Session,
    ctx: BillingContext,
    payment: Payment,
    *,
    transaction_id: Optional[str] = None,
    gateway: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CompletionResult:
    """
    Drive a payment through the completion pipeline.

    Re-entrant: a payment that is COMPLETED but not yet reconciled picks up
    at reconciliation, one that is fully reconciled is left alone.
    """
    now = now or datetime.now(timezone.utc)
    newly_completed = payment.status not in SETTLED_STATUSES

    if newly_completed:
        transition(payment, "COMPLETED", now=now)
        if transaction_id:
            payment.transaction_id = transaction_id
        if gateway:
            payment.gateway = gateway
        db.commit()
        logger.info(f"Payment {payment.id} COMPLETED via {payment.gateway or payment.payment_method}")

        _create_invoice_best_effort(db, payment, now)
        _award_loyalty_points(ctx, payment)

    result = CompletionResult(payment=payment, newly_completed=newly_completed)

    if payment.reconciled_at is None:
        result.reconciliation = ctx.reconciler.apply_completed_payment(db, payment, now=now)
        if payment.subscription is not None:
            try:
                discounts.settle_after_payment(
                    db, payment.subscription, ctx.member_client, ctx.compensation, now=now
                )
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Discount settlement failed for payment {payment.id}: {e}")

    if newly_completed:
        ctx.notifier.payment_succeeded(payment)
    return result


def fail_payment(
    db: Session,
    ctx: BillingContext,
    payment: Payment,
    reason: Optional[str],
    now: Optional[datetime] = None,
) -> Payment:
    transition(payment, "FAILED", now=now, reason=reason or "Payment failed")
    db.commit()
    logger.info(f"Payment {payment.id} FAILED: {payment.failure_reason}")
    ctx.notifier.payment_failed(payment)
    return payment


# ── Explicit processing / retry ───────────────────────────────────────────────

def process_payment(
    db: Session,
    ctx: BillingContext,
    payment_id,
    *,
    success: bool = True,
    transaction_id: Optional[str] = None,
    gateway: Optional[str] = None,
    failure_reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CompletionResult:
    """Settle a payment without a gateway webhook (cash desk, manual card terminal)."""
    payment = get_payment(db, payment_id)
    if not success:
        fail_payment(db, ctx, payment, failure_reason, now=now)
        return CompletionResult(payment=payment, newly_completed=False)
    return complete_payment(
        db, ctx, payment,
        transaction_id=transaction_id,
        gateway=gateway or payment.payment_method,
        now=now,
    )


def retry_payment(db: Session, payment_id, now: Optional[datetime] = None) -> Payment:
    """
    FAILED -> PENDING. At most settings.max_payment_retries retries per payment.

    Raises:
        MaxRetriesExceeded: after settings.max_payment_retries retries
        InvalidTransition: when the payment is not FAILED
    """
    payment = get_payment(db, payment_id)
    if payment.retry_count >= settings.max_payment_retries:
        raise MaxRetriesExceeded(
            f"Payment has already been retried {payment.retry_count} times",
            details={"payment_id": str(payment.id), "retry_count": payment.retry_count},
        )
    transition(payment, "PENDING", now=now, via_retry=True)
    payment.retry_count += 1
    db.commit()
    logger.info(f"Payment {payment.id} retry #{payment.retry_count}")
    return payment


# ── Gateway webhook ───────────────────────────────────────────────────────────

def webhook_idempotency_key(event) -> str:
    if event.webhook_id:
        return event.webhook_id
    return f"{event.payment_id}:{event.status}:{event.transaction_id or ''}"


def _already_settled(payment: Payment, status: str) -> bool:
    if status == "SUCCESS":
        return payment.status in SETTLED_STATUSES and payment.reconciled_at is not None
    return payment.status == "FAILED"


def handle_payment_webhook(
    db: Session,
    ctx: BillingContext,
    event,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """
    Apply one gateway notification (signature already verified).

    Args:
        db: Database session
        ctx: Billing collaborators
        event: PaymentWebhookPayload
        now: Clock override for tests

    Returns:
        WebhookResult; replayed=True when nothing was changed

    Raises:
        NotFound: unknown payment_id
        AmountMismatch: reported amount differs from the payment (payment marked FAILED)
        InvalidTransition: e.g. SUCCESS for a payment that already FAILED
    """
    key = webhook_idempotency_key(event)
    if ctx.idempotency.is_processed(key):
        logger.info(f"Webhook {key} already processed, skipping")
        return WebhookResult(str(event.payment_id), event.status, replayed=True)

    payment = get_payment(db, event.payment_id)

    if _already_settled(payment, event.status):
        ctx.idempotency.mark_processed(key)
        return WebhookResult(str(payment.id), payment.status, replayed=True)

    if event.amount is not None and not amounts_match(payment.amount, event.amount):
        reason = f"Amount mismatch: expected {payment.amount}, received {event.amount}"
        if payment.status in ("PENDING", "PROCESSING"):
            fail_payment(db, ctx, payment, reason, now=now)
        logger.warning(f"Webhook for payment {payment.id} rejected: {reason}")
        raise AmountMismatch(reason, details={"payment_id": str(payment.id)})

    result = WebhookResult(str(payment.id), payment.status, replayed=False)
    if event.status == "SUCCESS":
        completion = complete_payment(
            db, ctx, payment,
            transaction_id=event.transaction_id,
            gateway=event.gateway,
            now=now,
        )
        result.reconciliation = completion.reconciliation
    else:
        fail_payment(db, ctx, payment, event.reason, now=now)

    result.status = payment.status
    ctx.idempotency.mark_processed(key)
    return result
