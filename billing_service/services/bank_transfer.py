# billing_service/services/bank_transfer.py
# VietQR bank transfers reconciled from Sepay notifications
#
# The member transfers with content "SEVQR GYMFIT <ORDER>", where ORDER is the
# first 8 characters of the payment id, upper-cased. Banks prepend their own
# text ("CT DEN:394494097753 SEVQR GYMFIT CMH6NMCU"), so the code is found by
# pattern, not by equality.
#
# Sepay retries until it gets a 2xx, so handle_sepay_webhook() reports every
# outcome as {"success": bool, "message": str}. Malformed payloads raise
# ValidationFailed; the endpoint turns any exception into success=false.
#
# A matching transfer is marked VERIFIED in the same commit that completes
# its payment. If a later step fails (reconciliation, Redis), the transfer is
# VERIFIED with its payment not yet reconciled; verify_bank_transfer() picks
# it up again.

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from urllib.parse import quote

from sqlalchemy import or_
from sqlalchemy.orm import Session

from billing_service.core.config import settings
from billing_service.core.dependencies import BillingContext
from billing_service.core.errors import InvalidTransition, NotFound, ValidationFailed
from billing_service.db.resilience import db_retry
from billing_service.models.bank_transfer import CLOSED_STATUSES, MATCHABLE_STATUSES, BankTransfer
from billing_service.models.payment import Payment
from billing_service.services.payment_service import (
    SETTLED_STATUSES,
    amounts_match,
    complete_payment,
)
from billing_service.services.payment_state import transition
from billing_service.services.sepay_client import SepayListedTransaction

logger = logging.getLogger("billing.bank_transfer")

CONTENT_PREFIX = "SEVQR GYMFIT"
ORDER_CODE_PATTERN = re.compile(r"GYMFIT\s+([A-Z0-9]+)", re.IGNORECASE)

# ── Webhook outcome messages ──────────────────────────────────────────────────
MSG_PROCESSED = "Webhook processed successfully"
MSG_IGNORED = "Ignored"
MSG_INVALID_FORMAT = "Invalid format"
MSG_NO_MATCH = "No match"
MSG_AMOUNT_MISMATCH = "Amount mismatch"
MSG_DUPLICATE = "Already processed"
MSG_MANUAL_REVIEW = "Payment already settled, held for review"

# ── Verify outcome messages ───────────────────────────────────────────────────
MSG_VERIFIED = "Transfer verified successfully"
MSG_ALREADY_VERIFIED = "Transfer already verified"
MSG_NOT_FOUND_YET = "Transaction not found yet, try again later"


def order_code_for(payment_id) -> str:
    return str(payment_id)[:8].upper()


def transfer_content_for(payment_id) -> str:
    return f"{CONTENT_PREFIX} {order_code_for(payment_id)}"


def extract_order_code(content: Optional[str]) -> Optional[str]:
    if not content:
        return None
    match = ORDER_CODE_PATTERN.search(content)
    return match.group(1).upper() if match else None


def build_qr_url(amount, content: str) -> str:
    """Sepay QR image: {base}/img?acc=..&bank=..&amount=..&des=.."""
    return (
        f"{settings.sepay_qr_base_url}/img"
        f"?acc={settings.sepay_account_number}"
        f"&bank={quote(settings.sepay_bank_name)}"
        f"&amount={int(Decimal(str(amount)))}"
        f"&des={quote(content)}"
    )


def create_bank_transfer(db: Session, payment: Payment, now: Optional[datetime] = None) -> BankTransfer:
    """
    BankTransfer for a BANK_TRANSFER payment; the open one is reused.
    Flushes, does not commit.
    """
    now = now or datetime.now(timezone.utc)
    transfer = db.query(BankTransfer).filter(BankTransfer.payment_id == payment.id).first()
    if transfer is not None and transfer.status in MATCHABLE_STATUSES:
        return transfer

    content = transfer_content_for(payment.id)
    if transfer is None:
        transfer = BankTransfer(payment_id=payment.id, member_id=payment.member_id)
        db.add(transfer)

    transfer.bank_code = settings.sepay_bank_code
    transfer.bank_name = settings.sepay_bank_name
    transfer.account_number = settings.sepay_account_number
    transfer.account_name = settings.sepay_account_name
    transfer.amount = payment.amount
    transfer.transfer_content = content
    transfer.qr_code_url = build_qr_url(payment.amount, content)
    transfer.status = "PENDING"
    transfer.expires_at = now + timedelta(minutes=settings.bank_transfer_expiry_minutes)
    db.flush()
    logger.info(f"Bank transfer {content} created for payment {payment.id}")
    return transfer


# ── Sepay notification ────────────────────────────────────────────────────────

@dataclass
class SepayTransaction:
    sepay_transaction_id: str
    bank_code: Optional[str]
    bank_transaction_id: Optional[str]
    amount: Decimal
    content: str
    transfer_type: str
    transaction_date: Optional[str]
    raw: Dict[str, Any]


def parse_sepay_payload(data: Dict[str, Any]) -> SepayTransaction:
    """
    Sepay body:
        {"id": "27714363", "gateway": "VietinBank",
         "transactionDate": "2025-10-26 02:09:54", "accountNumber": "...",
         "content": "CT DEN:... SEVQR GYMFIT CMH6NMCU", "transferType": "in",
         "transferAmount": 2000, "referenceCode": "901S25A18EWHR4M6"}
    """
    if not isinstance(data, dict) or data.get("id") in (None, ""):
        raise ValidationFailed("Sepay payload has no transaction id")
    try:
        amount = Decimal(str(data.get("transferAmount", data.get("amount_in", 0)) or 0))
    except InvalidOperation as exc:
        raise ValidationFailed("Sepay payload has an invalid amount") from exc

    return SepayTransaction(
        sepay_transaction_id=str(data["id"]),
        bank_code=data.get("gateway"),
        bank_transaction_id=data.get("referenceCode") or data.get("code"),
        amount=amount,
        content=data.get("content") or data.get("transaction_content") or "",
        transfer_type=str(data.get("transferType") or "in").lower(),
        transaction_date=data.get("transactionDate") or data.get("transaction_date"),
        raw=data,
    )


def _find_open_transfer(db: Session, code: str) -> Optional[BankTransfer]:
    return (
        db.query(BankTransfer)
        .filter(
            BankTransfer.status.in_(MATCHABLE_STATUSES),
            BankTransfer.transfer_content.ilike(f"%{code}%"),
        )
        .order_by(BankTransfer.created_at.desc())
        .first()
    )


def _complete_from_transfer(
    db: Session,
    ctx: BillingContext,
    transfer: BankTransfer,
    *,
    transaction_id: Optional[str],
    now: datetime,
) -> None:
    """
    Complete the payment behind a VERIFIED transfer.

    The transfer changes still pending in the session are committed together
    with payment COMPLETED. A payment that FAILED meanwhile (gateway timeout,
    member gave up) is reopened first: the money is in the account.
    """
    payment = transfer.payment
    if payment.status == "FAILED":
        logger.warning(
            f"Payment {payment.id} was FAILED ({payment.failure_reason}) but its transfer "
            f"{transfer.transfer_content} arrived, reopening"
        )
        transition(payment, "PENDING", now=now, via_retry=True)

    complete_payment(
        db, ctx, payment,
        transaction_id=transaction_id,
        gateway="SEPAY",
        now=now,
    )


def _hold_for_review(db: Session, ctx: BillingContext, transfer: BankTransfer) -> None:
    """Money arrived for a payment that was already settled another way."""
    payment = transfer.payment
    transfer.notes = (
        f"Payment already {payment.status} via {payment.gateway or payment.payment_method}; "
        f"received {transfer.verified_amount} needs manual reconciliation"
    )
    db.commit()
    logger.warning(f"Bank transfer {transfer.transfer_content}: {transfer.notes}")
    ctx.notifier.bank_transfer_needs_review(transfer)


def _apply_incoming(
    db: Session,
    ctx: BillingContext,
    transfer: BankTransfer,
    *,
    sepay_transaction_id: str,
    bank_transaction_id: Optional[str],
    amount: Decimal,
    raw: Dict[str, Any],
    now: datetime,
) -> str:
    """Record a matching incoming transfer and settle its payment. Returns the outcome message."""
    transfer.sepay_transaction_id = sepay_transaction_id
    transfer.bank_transaction_id = bank_transaction_id
    transfer.sepay_webhook_data = raw
    transfer.verified_amount = amount

    if not amounts_match(transfer.amount, amount):
        transfer.status = "FAILED"
        transfer.notes = f"Amount mismatch: expected {transfer.amount}, received {amount}"
        db.commit()
        logger.warning(f"Bank transfer {transfer.transfer_content}: {transfer.notes}")
        return MSG_AMOUNT_MISMATCH

    transfer.status = "VERIFIED"
    transfer.verified_at = now

    if transfer.payment.status in SETTLED_STATUSES:
        _hold_for_review(db, ctx, transfer)
        return MSG_MANUAL_REVIEW

    _complete_from_transfer(
        db, ctx, transfer,
        transaction_id=bank_transaction_id or sepay_transaction_id,
        now=now,
    )
    logger.info(f"Bank transfer {transfer.transfer_content} verified for payment {transfer.payment_id}")
    return MSG_PROCESSED


def handle_sepay_webhook(
    db: Session,
    ctx: BillingContext,
    data: Dict[str, Any],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Match one incoming transfer. Returns {"success", "message"}; raises only on bugs."""
    now = now or datetime.now(timezone.utc)
    tx = parse_sepay_payload(data)

    if tx.transfer_type != "in" or "GYMFIT" not in tx.content.upper():
        return {"success": True, "message": MSG_IGNORED}

    code = extract_order_code(tx.content)
    if code is None:
        logger.warning(f"Sepay transaction {tx.sepay_transaction_id}: unparseable content {tx.content!r}")
        return {"success": False, "message": MSG_INVALID_FORMAT}

    key = f"sepay:{tx.sepay_transaction_id}"
    if ctx.idempotency.is_processed(key):
        return {"success": True, "message": MSG_DUPLICATE}

    transfer = _find_open_transfer(db, code)
    if transfer is None:
        logger.warning(f"Sepay transaction {tx.sepay_transaction_id}: no open transfer for {code}")
        return {"success": False, "message": MSG_NO_MATCH}

    message = _apply_incoming(
        db, ctx, transfer,
        sepay_transaction_id=tx.sepay_transaction_id,
        bank_transaction_id=tx.bank_transaction_id,
        amount=tx.amount,
        raw=tx.raw,
        now=now,
    )
    ctx.idempotency.mark_processed(key)
    return {"success": message == MSG_PROCESSED, "message": message}


# ── Member-facing operations ──────────────────────────────────────────────────

@dataclass
class VerifyResult:
    transfer: BankTransfer
    verified: bool
    message: str


@db_retry
def get_bank_transfer(db: Session, transfer_or_payment_id) -> BankTransfer:
    """Look up by bank transfer id, or by the id of the payment it belongs to."""
    transfer = (
        db.query(BankTransfer)
        .filter(
            or_(
                BankTransfer.id == transfer_or_payment_id,
                BankTransfer.payment_id == transfer_or_payment_id,
            )
        )
        .first()
    )
    if transfer is None:
        raise NotFound("Bank transfer not found")
    return transfer


def _find_listed_transaction(ctx: BillingContext, transfer: BankTransfer) -> Optional[SepayListedTransaction]:
    code = extract_order_code(transfer.transfer_content)
    for tx in ctx.sepay.list_transactions(since=transfer.created_at):
        if not tx.is_incoming or extract_order_code(tx.content) != code:
            continue
        if amounts_match(transfer.amount, tx.amount_in):
            return tx
    return None


def verify_bank_transfer(
    db: Session,
    ctx: BillingContext,
    transfer_id,
    now: Optional[datetime] = None,
) -> VerifyResult:
    """
    Member-triggered re-check for a transfer no webhook has confirmed.

    VERIFIED transfers whose payment never completed are repaired, open
    transfers past expires_at become EXPIRED, the rest are looked up in
    the Sepay transaction list.

    Raises:
        NotFound: unknown transfer
        ValidationFailed: transfer FAILED / EXPIRED / CANCELLED, or just expired
        SepayError: Sepay API unreachable
    """
    now = now or datetime.now(timezone.utc)
    transfer = get_bank_transfer(db, transfer_id)

    if transfer.status in CLOSED_STATUSES:
        raise ValidationFailed(
            f"Transfer cannot be verified. Current status: {transfer.status}",
            details={"status": transfer.status, "expires_at": transfer.expires_at.isoformat()},
        )

    if transfer.status == "VERIFIED":
        payment = transfer.payment
        if payment.status not in SETTLED_STATUSES or payment.reconciled_at is None:
            logger.warning(f"Bank transfer {transfer.transfer_content} VERIFIED but payment {payment.status}, repairing")
            _complete_from_transfer(
                db, ctx, transfer,
                transaction_id=transfer.bank_transaction_id or transfer.sepay_transaction_id,
                now=now,
            )
        return VerifyResult(transfer, verified=True, message=MSG_ALREADY_VERIFIED)

    if now > transfer.expires_at:
        transfer.status = "EXPIRED"
        db.commit()
        logger.info(f"Bank transfer {transfer.transfer_content} expired at {transfer.expires_at}")
        raise ValidationFailed(
            "Transfer window expired",
            details={"status": transfer.status, "expires_at": transfer.expires_at.isoformat()},
        )

    tx = _find_listed_transaction(ctx, transfer)
    if tx is None:
        return VerifyResult(transfer, verified=False, message=MSG_NOT_FOUND_YET)

    key = f"sepay:{tx.id}"
    message = _apply_incoming(
        db, ctx, transfer,
        sepay_transaction_id=tx.id,
        bank_transaction_id=tx.reference_number,
        amount=tx.amount_in,
        raw=tx.raw,
        now=now,
    )
    # A late webhook for the same Sepay transaction is then a duplicate
    ctx.idempotency.mark_processed(key)
    if message == MSG_PROCESSED:
        return VerifyResult(transfer, verified=True, message=MSG_VERIFIED)
    return VerifyResult(transfer, verified=False, message=message)


def cancel_bank_transfer(
    db: Session,
    transfer_id,
    reason: Optional[str] = None,
) -> BankTransfer:
    """
    Cancel an open transfer. The payment stays PENDING so the member can pay another way.

    Raises:
        InvalidTransition: transfer no longer PENDING / CHECKING
    """
    transfer = get_bank_transfer(db, transfer_id)
    if transfer.status not in MATCHABLE_STATUSES:
        raise InvalidTransition(
            f"Bank transfer cannot be cancelled in status {transfer.status}",
            details={"bank_transfer_id": str(transfer.id), "from": transfer.status, "to": "CANCELLED"},
        )
    transfer.status = "CANCELLED"
    transfer.notes = reason or "Cancelled by user"
    db.commit()
    logger.info(f"Bank transfer {transfer.transfer_content} cancelled")
    return transfer
