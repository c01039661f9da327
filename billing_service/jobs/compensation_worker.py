# billing_service/jobs/compensation_worker.py
# Drains the compensation queue: replays failed cross-service calls.
#
# Per task:
#   - waits compensation_backoff_base_seconds * 2**retry_count after the last attempt
#   - success        -> task deleted
#   - any error      -> retry_count bumped, task kept (TTL unchanged), next task
#   - retry_count >= compensation_max_attempts -> abandoned, left to expire, logged ERROR

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from billing_service.core.config import settings
from billing_service.core.dependencies import BillingContext
from billing_service.services import discounts
from billing_service.services.compensation import (
    MEMBERSHIP_SYNC,
    REFERRAL_CREDIT,
    REWARD_REDEMPTION,
)
from billing_service.services.member_client import MemberServiceError

logger = logging.getLogger("billing.jobs.compensation")


@dataclass
class DrainReport:
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)
    abandoned: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "deferred": len(self.deferred),
            "abandoned": len(self.abandoned),
        }


def _handlers(ctx: BillingContext) -> Dict[str, Callable[[Dict[str, Any]], None]]:
    return {
        MEMBERSHIP_SYNC: ctx.reconciler.replay_membership_sync,
        REFERRAL_CREDIT: lambda payload: discounts.replay_referral_credit(ctx.member_client, payload),
        REWARD_REDEMPTION: lambda payload: discounts.replay_reward_redemption(ctx.member_client, payload),
    }


def next_attempt_at(task: Dict[str, Any]) -> Optional[datetime]:
    """When the task may be retried; None means right away."""
    last = task.get("last_attempt_at")
    if not last:
        return None
    delay = settings.compensation_backoff_base_seconds * (2 ** int(task.get("retry_count", 0)))
    return datetime.fromisoformat(last) + timedelta(seconds=delay)


def drain_compensation_tasks(ctx: BillingContext, now: Optional[datetime] = None) -> DrainReport:
    now = now or datetime.now(timezone.utc)
    report = DrainReport()
    handlers = _handlers(ctx)

    for task in ctx.compensation.list_pending():
        task_id = task["task_id"]

        if int(task.get("retry_count", 0)) >= settings.compensation_max_attempts:
            logger.error(
                f"Compensation task {task_id} ({task.get('kind')}) gave up after "
                f"{task['retry_count']} attempts: {task.get('last_error')}"
            )
            report.abandoned.append(task_id)
            continue

        due = next_attempt_at(task)
        if due is not None and now < due:
            report.deferred.append(task_id)
            continue

        handler = handlers.get(task.get("kind", MEMBERSHIP_SYNC))
        if handler is None:
            logger.error(f"Compensation task {task_id} has unknown kind {task.get('kind')!r}")
            report.abandoned.append(task_id)
            continue

        try:
            handler(task["payload"])
        except MemberServiceError as e:
            ctx.compensation.record_attempt(task_id, str(e))
            report.failed.append(task_id)
            logger.warning(f"Compensation task {task_id} failed again: {e}")
            continue
        except Exception as e:
            # Malformed payload or a bug in the replay; one task must not stop the drain
            ctx.compensation.record_attempt(task_id, f"{type(e).__name__}: {e}")
            report.failed.append(task_id)
            logger.exception(f"Compensation task {task_id} ({task.get('kind')}) raised")
            continue

        ctx.compensation.delete(task_id)
        report.succeeded.append(task_id)
        logger.info(f"Compensation task {task_id} ({task.get('kind')}) completed")

    if report.succeeded or report.failed or report.abandoned:
        logger.info(f"Compensation drain: {report.as_dict()}")
    return report
