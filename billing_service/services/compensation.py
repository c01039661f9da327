# billing_service/services/compensation.py
# Compensation tasks: durable records of cross-service calls that failed
# after the local transaction committed (e.g. member-service membership sync).
#
# Keys: compensation:task:{task_id}  -> JSON record, TTL 24h by default
#
# Record shape:
#   {"task_id", "kind", "payload", "retry_count", "created_at",
#    "last_attempt_at", "last_error"}
#
# The drain worker (billing_service/jobs/compensation_worker.py) replays
# tasks and deletes them on success.

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis as redis_lib

from billing_service.core.config import settings

logger = logging.getLogger("billing.compensation")

KEY_PREFIX = "compensation:task"

# ── Task kinds ────────────────────────────────────────────────────────────────
MEMBERSHIP_SYNC = "membership_sync"    # POST /members/user/:id/memberships
REFERRAL_CREDIT = "referral_credit"    # POST /members/:id/points/credit
REWARD_REDEMPTION = "reward_redemption"  # mark REWARD- redemption used


def new_task_id() -> str:
    return uuid.uuid4().hex


class CompensationQueue:
    def __init__(
        self,
        client: redis_lib.Redis,
        prefix: str = KEY_PREFIX,
        default_ttl: Optional[int] = None,
    ):
        self._redis = client
        self._prefix = prefix
        self._default_ttl = default_ttl or settings.compensation_task_ttl_seconds

    def _key(self, task_id: str) -> str:
        return f"{self._prefix}:{task_id}"

    def store(
        self,
        task_id: str,
        payload: Dict[str, Any],
        kind: str = MEMBERSHIP_SYNC,
        ttl: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Persist a task. Never raises: if Redis itself is down the full record
        is logged at ERROR so it can be replayed by hand.
        """
        record = {
            "task_id": task_id,
            "kind": kind,
            "payload": payload,
            "retry_count": 0,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "last_attempt_at": None,
            "last_error": None,
        }
        try:
            self._redis.set(self._key(task_id), json.dumps(record, default=str), ex=ttl or self._default_ttl)
            logger.warning(f"Stored compensation task {task_id} ({kind})")
        except redis_lib.RedisError as exc:
            logger.error(
                f"Could not store compensation task {task_id}: {exc}; "
                f"record={json.dumps(record, default=str)}"
            )
        return record

    def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        raw = self._redis.get(self._key(task_id))
        if raw is None:
            return None
        return json.loads(raw)

    def delete(self, task_id: str) -> None:
        self._redis.delete(self._key(task_id))

    def list_pending(self) -> List[Dict[str, Any]]:
        tasks = []
        for key in self._redis.scan_iter(match=f"{self._prefix}:*"):
            raw = self._redis.get(key)
            if raw is None:
                continue  # expired between SCAN and GET
            try:
                tasks.append(json.loads(raw))
            except ValueError:
                logger.error(f"Unreadable compensation task at {key}")
        tasks.sort(key=lambda t: t.get("created_at") or "")
        return tasks

    def record_attempt(self, task_id: str, error: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Bump retry_count after a failed replay, keeping the original TTL."""
        record = self.get(task_id)
        if record is None:
            return None
        record["retry_count"] = int(record.get("retry_count", 0)) + 1
        record["last_attempt_at"] = datetime.now(timezone.utc).isoformat()
        record["last_error"] = error
        self._redis.set(self._key(task_id), json.dumps(record, default=str), keepttl=True)
        return record
