# billing_service/services/idempotency.py
# Webhook de-duplication backed by Redis
#
# Keys: webhook:processed:{id}  (TTL 7 days by default)
#
# Fail-open: if Redis is unreachable the delivery is treated as new. The
# payment state machine and DB unique constraints still stop a second
# money-moving effect.

import logging
from typing import Optional

import redis as redis_lib

from billing_service.core.config import settings

logger = logging.getLogger("billing.idempotency")

KEY_PREFIX = "webhook:processed"


class IdempotencyStore:
    def __init__(
        self,
        client: redis_lib.Redis,
        prefix: str = KEY_PREFIX,
        default_ttl: Optional[int] = None,
    ):
        self._redis = client
        self._prefix = prefix
        self._default_ttl = default_ttl or settings.webhook_idempotency_ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def is_processed(self, key: str) -> bool:
        try:
            return bool(self._redis.exists(self._key(key)))
        except redis_lib.RedisError as exc:
            logger.warning(f"Idempotency check failed for {key}, treating as new: {exc}")
            return False

    def mark_processed(self, key: str, ttl: Optional[int] = None) -> bool:
        """Returns False (and logs) if the marker could not be written."""
        try:
            self._redis.set(self._key(key), "1", ex=ttl or self._default_ttl)
            return True
        except redis_lib.RedisError as exc:
            logger.warning(f"Could not mark {key} as processed: {exc}")
            return False
