# billing_service/jobs/subscription_expiration.py
# Daily sweep: ACTIVE subscriptions whose period or end date has passed -> EXPIRED
#
# Runs at settings.expiration_job_hour_utc (01:00 UTC by default) from the
# scheduler in billing_service/jobs/scheduler.py. Each subscription is updated
# in its own commit so one bad row does not abort the batch.

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_service.db.resilience import db_retry
from billing_service.models.subscription import Subscription
from billing_service.services.notification_service import NotificationService

logger = logging.getLogger("billing.jobs.expiration")


@db_retry
def find_expired_subscriptions(db: Session, now: datetime) -> List[Subscription]:
    return (
        db.query(Subscription)
        .filter(
            Subscription.status == "ACTIVE",
            or_(
                Subscription.current_period_end < now,
                Subscription.end_date < now,
            ),
        )
        .all()
    )


def update_expired_subscriptions(
    db: Session,
    notifier: Optional[NotificationService] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Returns:
        {"success": True, "expired_count": n, "subscriptions": [{id, member_id, plan_id}, ...]}
    """
    now = now or datetime.now(timezone.utc)
    logger.info("Running subscription expiration job")

    candidates = find_expired_subscriptions(db, now)
    if not candidates:
        logger.info("No expired subscriptions found")
        return {"success": True, "expired_count": 0, "subscriptions": []}

    expired = []
    for subscription in candidates:
        try:
            subscription.status = "EXPIRED"
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to expire subscription {subscription.id}: {e}")
            continue

        logger.info(f"Subscription {subscription.id} (member {subscription.member_id}) -> EXPIRED")
        expired.append({
            "id": str(subscription.id),
            "member_id": subscription.member_id,
            "plan_id": str(subscription.plan_id),
        })
        if notifier is not None:
            notifier.subscription_expired(subscription)

    logger.info(f"Expired {len(expired)} of {len(candidates)} subscription(s)")
    return {"success": True, "expired_count": len(expired), "subscriptions": expired}
