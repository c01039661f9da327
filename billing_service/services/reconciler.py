# billing_service/services/reconciler.py
# Subscription reconciler: applies a COMPLETED payment to its subscription,
# then mirrors the membership into the member service.
#
# Order inside one payment:
#   1. payment already COMPLETED and committed (payment_service)
#   2. subscription updated + payment.reconciled_at set, one commit
#   3. member-service sync; on failure a compensation task, never a rollback

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from billing_service.models.payment import Invoice, Payment
from billing_service.models.plan import MembershipPlan
from billing_service.models.subscription import Subscription
from billing_service.services.compensation import (
    MEMBERSHIP_SYNC,
    CompensationQueue,
    new_task_id,
)
from billing_service.services.member_client import MemberServiceClient, MemberServiceError
from billing_service.services.notification_service import NotificationService

logger = logging.getLogger("billing.reconciler")

RENEWAL_MANUAL = "MANUAL"


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; Jan 31 + 1 month -> last day of February."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def subscription_end(start: datetime, duration_months: int, bonus_days: int = 0) -> datetime:
    end = add_months(start, duration_months)
    if bonus_days > 0:
        end += timedelta(days=bonus_days)
    return end


@dataclass
class ReconcileOutcome:
    subscription_id: Optional[str]
    action: str                        # activated | renewed | plan_change_paid | none
    membership_synced: bool = False
    compensation_task_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "action": self.action,
            "membership_synced": self.membership_synced,
            "compensation_task_id": self.compensation_task_id,
        }


class SubscriptionReconciler:
    def __init__(
        self,
        member_client: MemberServiceClient,
        compensation: CompensationQueue,
        notifier: Optional[NotificationService] = None,
    ):
        self.member_client = member_client
        self.compensation = compensation
        self.notifier = notifier

    # ── Local state ───────────────────────────────────────────────────────────

    def apply_completed_payment(
        self,
        db: Session,
        payment: Payment,
        now: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """
        Bring the payment's subscription in line with a COMPLETED payment.
        Commits. Safe to call twice: the second call is a no-op.
        """
        now = now or datetime.now(timezone.utc)
        if payment.reconciled_at is not None:
            return ReconcileOutcome(
                str(payment.subscription_id) if payment.subscription_id else None, "none"
            )

        subscription = payment.subscription
        if subscription is None:
            payment.reconciled_at = now
            db.commit()
            return ReconcileOutcome(None, "none")

        plan = db.get(MembershipPlan, subscription.plan_id)
        extra = payment.extra_data or {}

        if extra.get("renewal_type") == RENEWAL_MANUAL:
            action = "renewed"
            self._renew(db, subscription, plan, payment, now)
        elif payment.payment_type in ("UPGRADE", "DOWNGRADE"):
            action = "plan_change_paid"
            subscription.billed_plan_id = self._paid_plan_id(payment, subscription)
            if subscription.status not in ("ACTIVE", "PAST_DUE"):
                subscription.status = "ACTIVE"
        else:
            action = "activated"
            subscription.status = "ACTIVE"
            subscription.billed_plan_id = subscription.plan_id

        payment.reconciled_at = now
        db.commit()
        logger.info(f"Subscription {subscription.id} {action} by payment {payment.id}")

        if self.notifier is not None:
            event = "subscription:renewed" if action == "renewed" else "subscription:activated"
            self.notifier.subscription_event(subscription, event, payment_id=str(payment.id))

        outcome = ReconcileOutcome(str(subscription.id), action)
        task_id = self.sync_membership(subscription, plan, payment)
        outcome.membership_synced = task_id is None
        outcome.compensation_task_id = task_id
        return outcome

    @staticmethod
    def _paid_plan_id(payment: Payment, subscription: Subscription) -> uuid.UUID:
        """The plan a plan-change payment was priced for, not the nominal plan now."""
        to_plan_id = (payment.extra_data or {}).get("to_plan_id")
        if to_plan_id:
            return uuid.UUID(str(to_plan_id))
        return subscription.plan_id

    def _renew(
        self,
        db: Session,
        subscription: Subscription,
        plan: MembershipPlan,
        payment: Payment,
        now: datetime,
    ) -> None:
        period_start = max(subscription.current_period_end, now)
        period_end = add_months(period_start, plan.duration_months)

        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.end_date = period_end
        subscription.next_billing_date = period_end
        subscription.status = "ACTIVE"
        subscription.billed_plan_id = subscription.plan_id
        subscription.classes_remaining = plan.class_credits

        invoice_id = (payment.extra_data or {}).get("invoice_id")
        query = db.query(Invoice).filter(Invoice.payment_id == payment.id)
        invoices = query.all()
        if invoice_id:
            linked = db.get(Invoice, uuid.UUID(str(invoice_id)))
            if linked is not None and linked not in invoices:
                invoices.append(linked)
        for invoice in invoices:
            invoice.status = "PAID"
            invoice.paid_date = now

    # ── Cross-service sync ────────────────────────────────────────────────────

    @staticmethod
    def membership_payload(subscription: Subscription, plan: MembershipPlan) -> Dict[str, Any]:
        return {
            "member_id": subscription.member_id,
            "subscription_id": str(subscription.id),
            "membership_type": plan.type,
            "start_date": subscription.current_period_start.isoformat(),
            "end_date": subscription.end_date.isoformat(),
        }

    def sync_membership(
        self,
        subscription: Subscription,
        plan: MembershipPlan,
        payment: Optional[Payment] = None,
    ) -> Optional[str]:
        """
        Push the membership to the member service.
        Returns None on success, or the id of the compensation task stored
        in its place.
        """
        payload = self.membership_payload(subscription, plan)
        if payment is not None:
            payload["payment_id"] = str(payment.id)
        try:
            self.replay_membership_sync(payload)
            return None
        except MemberServiceError as exc:
            task_id = new_task_id()
            logger.warning(
                f"Membership sync for member {subscription.member_id} failed, "
                f"queued compensation task {task_id}: {exc}"
            )
            self.compensation.store(task_id, payload, kind=MEMBERSHIP_SYNC)
            return task_id

    def replay_membership_sync(self, payload: Dict[str, Any]) -> None:
        """member_id -> user_id, then upsert the membership. Raises MemberServiceError."""
        user_id = payload.get("user_id") or self.member_client.resolve_user_id(payload["member_id"])
        self.member_client.upsert_membership(
            user_id,
            {
                "membership_type": payload["membership_type"],
                "start_date": payload["start_date"],
                "end_date": payload["end_date"],
            },
        )
