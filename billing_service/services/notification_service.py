# billing_service/services/notification_service.py
# Best-effort notifications for billing events
#
# Delivery goes through an injected EventPublisher (publish(room, event, payload)).
# Production publishes JSON on Redis pub/sub; the realtime gateway and the
# notification service subscribe to it. Nothing here may raise into a caller:
# a failed notification never fails a payment.
#
# Usage:
#   notifier.payment_succeeded(payment)
#   notifier.subscription_expired(subscription)

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import redis as redis_lib

from billing_service.services.member_client import MemberServiceClient, MemberServiceError

logger = logging.getLogger("billing.notifications")


# ── Event Types ───────────────────────────────────────────────────────────────
#
#   payment:success            Payment COMPLETED
#   payment:failed             Payment FAILED (gateway or amount mismatch)
#   bank_transfer:review       Transfer money arrived for an already settled payment
#   subscription:activated     First payment reconciled
#   subscription:renewed       Manual renewal reconciled
#   subscription:plan_changed  Upgrade / downgrade applied
#   subscription:expired       Daily expiration job
#   subscription:cancelled     Member cancelled
#   refund:requested           New refund waiting for an admin
#   refund:updated             Refund approved / processed / rejected

ADMIN_ROOM = "admin"


class EventPublisher(Protocol):
    def publish(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class RedisEventPublisher:
    """Publishes {"event", "payload", "at"} JSON to the Redis channel named after the room."""

    def __init__(self, client: redis_lib.Redis, channel_prefix: str = "billing"):
        self._redis = client
        self._prefix = channel_prefix

    def publish(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        message = {
            "event": event,
            "payload": payload,
            "at": datetime.now(timezone.utc).isoformat(),
        }
        self._redis.publish(f"{self._prefix}:{room}", json.dumps(message, default=str))


def _member_room(member_id: str) -> str:
    return f"member:{member_id}"


class NotificationService:
    def __init__(
        self,
        publisher: EventPublisher,
        member_client: Optional[MemberServiceClient] = None,
    ):
        self._publisher = publisher
        self._member_client = member_client

    def emit(self, room: str, event: str, payload: Dict[str, Any]) -> bool:
        """Publish one event. Returns False instead of raising on failure."""
        try:
            self._publisher.publish(room, event, payload)
            return True
        except Exception as e:
            # Notification failure should never block the main flow
            logger.warning(f"Failed to publish {event} to {room}: {e}")
            return False

    def _notify_admins(self, event: str, payload: Dict[str, Any]) -> None:
        self.emit(ADMIN_ROOM, event, payload)
        if self._member_client is None:
            return
        try:
            admin_ids = self._member_client.list_admin_ids()
        except MemberServiceError as e:
            logger.warning(f"Could not load admin list for {event}: {e}")
            return
        for admin_id in admin_ids:
            self.emit(f"user:{admin_id}", event, payload)

    # ── Payments ──────────────────────────────────────────────────────────────

    def payment_succeeded(self, payment) -> None:
        payload = {
            "payment_id": str(payment.id),
            "member_id": payment.member_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "gateway": payment.gateway,
        }
        self.emit(_member_room(payment.member_id), "payment:success", payload)
        self._notify_admins("payment:success", payload)

    def payment_failed(self, payment) -> None:
        self.emit(
            _member_room(payment.member_id),
            "payment:failed",
            {
                "payment_id": str(payment.id),
                "amount": str(payment.amount),
                "reason": payment.failure_reason,
            },
        )

    # ── Bank transfers ────────────────────────────────────────────────────────

    def bank_transfer_needs_review(self, transfer) -> None:
        self._notify_admins(
            "bank_transfer:review",
            {
                "bank_transfer_id": str(transfer.id),
                "payment_id": str(transfer.payment_id),
                "member_id": transfer.member_id,
                "amount": str(transfer.verified_amount or transfer.amount),
                "note": transfer.notes,
            },
        )

    # ── Subscriptions ─────────────────────────────────────────────────────────

    def subscription_event(self, subscription, event: str, **extra: Any) -> None:
        payload = {
            "subscription_id": str(subscription.id),
            "member_id": subscription.member_id,
            "plan_id": str(subscription.plan_id),
            "status": subscription.status,
            "end_date": subscription.end_date.isoformat() if subscription.end_date else None,
        }
        payload.update(extra)
        self.emit(_member_room(subscription.member_id), event, payload)

    def subscription_expired(self, subscription) -> None:
        self.subscription_event(subscription, "subscription:expired")

    # ── Refunds ───────────────────────────────────────────────────────────────

    def refund_requested(self, refund) -> None:
        self._notify_admins(
            "refund:requested",
            {
                "refund_id": str(refund.id),
                "payment_id": str(refund.payment_id),
                "amount": str(refund.amount),
                "reason": refund.reason,
            },
        )

    def refund_updated(self, refund, member_id: str) -> None:
        self.emit(
            _member_room(member_id),
            "refund:updated",
            {"refund_id": str(refund.id), "status": refund.status, "amount": str(refund.amount)},
        )
