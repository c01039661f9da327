# billing_service/services/payment_state.py
# Payment and Refund lifecycles
#
#   PENDING ──► PROCESSING ──► COMPLETED ──► PARTIALLY_REFUNDED ──► REFUNDED
#      │             │             └────────────────────────────────►┘
#      └─────────────┴──► FAILED ──(retry_payment only)──► PENDING
#
#   Refund: PENDING ──► APPROVED ──► PROCESSED
#              │            └──────► FAILED
#              └──► REJECTED
#
# Every status change goes through transition() / transition_refund() so an
# illegal move raises InvalidTransition (409) instead of silently corrupting
# the ledger.

from datetime import datetime, timezone
from typing import Dict, Optional, Set

from billing_service.core.errors import InvalidTransition

PAYMENT_TRANSITIONS: Dict[str, Set[str]] = {
    "PENDING": {"PROCESSING", "COMPLETED", "FAILED"},
    "PROCESSING": {"COMPLETED", "FAILED"},
    "COMPLETED": {"PARTIALLY_REFUNDED", "REFUNDED"},
    "PARTIALLY_REFUNDED": {"PARTIALLY_REFUNDED", "REFUNDED"},
    "FAILED": set(),            # back to PENDING only through retry_payment
    "REFUNDED": set(),
}

REFUNDABLE_PAYMENT_STATUSES = {"COMPLETED", "PARTIALLY_REFUNDED"}

REFUND_TRANSITIONS: Dict[str, Set[str]] = {
    "PENDING": {"APPROVED", "REJECTED"},
    "APPROVED": {"PROCESSED", "FAILED"},
    "PROCESSED": set(),
    "FAILED": set(),
    "REJECTED": set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, set())


def transition(
    payment,
    target: str,
    *,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
    via_retry: bool = False,
) -> None:
    """
    Move payment to target, stamping processed_at / failed_at.

    Raises:
        InvalidTransition: if the move is not in PAYMENT_TRANSITIONS
    """
    current = payment.status
    allowed = can_transition(current, target) or (
        via_retry and current == "FAILED" and target == "PENDING"
    )
    if not allowed:
        raise InvalidTransition(
            f"Payment cannot move from {current} to {target}",
            details={"payment_id": str(payment.id), "from": current, "to": target},
        )

    now = now or datetime.now(timezone.utc)
    payment.status = target
    if target == "COMPLETED":
        payment.processed_at = now
        payment.net_amount = payment.amount - (payment.refunded_amount or 0)
    elif target == "FAILED":
        payment.failed_at = now
        payment.failure_reason = reason
    elif target == "PENDING":
        payment.failed_at = None
        payment.failure_reason = None


def refund_target_status(payment) -> str:
    """Status a payment lands in after its refunded_amount changed."""
    return "REFUNDED" if payment.refunded_amount >= payment.amount else "PARTIALLY_REFUNDED"


def transition_refund(
    refund,
    target: str,
    *,
    by: Optional[str] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Move refund to target and append the change to its timeline."""
    current = refund.status
    if target not in REFUND_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"Refund cannot move from {current} to {target}",
            details={"refund_id": str(refund.id), "from": current, "to": target},
        )
    now = now or datetime.now(timezone.utc)
    refund.status = target
    if target == "APPROVED":
        refund.approved_by = by
    elif target == "PROCESSED":
        refund.processed_at = now
    elif target == "FAILED":
        refund.failure_reason = note
    append_timeline(refund, target, by=by, note=note, now=now)


def append_timeline(refund, status: str, *, by=None, note=None, now=None) -> None:
    # Reassign the dict so SQLAlchemy sees the JSON column change
    data = dict(refund.extra_data or {})
    timeline = list(data.get("timeline", []))
    timeline.append({
        "status": status,
        "at": (now or datetime.now(timezone.utc)).isoformat(),
        "by": by,
        "note": note,
    })
    data["timeline"] = timeline
    refund.extra_data = data
