# billing_service/services/plan_catalog.py
# Read-through cache of membership plans
#
# Keys: plan:{id}  -> JSON snapshot, TTL 1h
# Fail-open: any Redis error falls through to the database.
# Plan writes go through update_plan(), which drops the cached snapshot so a
# deactivated plan stops being sold before the TTL runs out.

import json
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import redis as redis_lib
from sqlalchemy.orm import Session

from billing_service.core.config import settings
from billing_service.core.errors import NotFound, ValidationFailed
from billing_service.db.resilience import db_retry
from billing_service.models.plan import MembershipPlan

logger = logging.getLogger("billing.plans")

KEY_PREFIX = "plan"


@dataclass(frozen=True)
class PlanSnapshot:
    id: uuid.UUID
    name: str
    type: str
    duration_months: int
    price: Decimal
    class_credits: Optional[int]
    is_active: bool

    @classmethod
    def from_model(cls, plan: MembershipPlan) -> "PlanSnapshot":
        return cls(
            id=plan.id,
            name=plan.name,
            type=plan.type,
            duration_months=plan.duration_months,
            price=Decimal(str(plan.price)),
            class_credits=plan.class_credits,
            is_active=bool(plan.is_active),
        )

    def to_json(self) -> str:
        return json.dumps({
            "id": str(self.id),
            "name": self.name,
            "type": self.type,
            "duration_months": self.duration_months,
            "price": str(self.price),
            "class_credits": self.class_credits,
            "is_active": self.is_active,
        })

    @classmethod
    def from_json(cls, raw: str) -> "PlanSnapshot":
        data = json.loads(raw)
        return cls(
            id=uuid.UUID(data["id"]),
            name=data["name"],
            type=data["type"],
            duration_months=int(data["duration_months"]),
            price=Decimal(data["price"]),
            class_credits=data.get("class_credits"),
            is_active=bool(data["is_active"]),
        )


@db_retry
def _load_plan(db: Session, plan_id: uuid.UUID) -> Optional[MembershipPlan]:
    return db.query(MembershipPlan).filter(MembershipPlan.id == plan_id).first()


class PlanCatalog:
    def __init__(self, client: Optional[redis_lib.Redis] = None, ttl: Optional[int] = None):
        self._redis = client
        self._ttl = ttl or settings.plan_cache_ttl_seconds

    def _key(self, plan_id) -> str:
        return f"{KEY_PREFIX}:{plan_id}"

    def _cached(self, plan_id) -> Optional[PlanSnapshot]:
        if self._redis is None:
            return None
        try:
            raw = self._redis.get(self._key(plan_id))
            return PlanSnapshot.from_json(raw) if raw else None
        except (redis_lib.RedisError, ValueError, KeyError) as exc:
            logger.warning(f"Plan cache read failed for {plan_id}: {exc}")
            return None

    def _remember(self, snapshot: PlanSnapshot) -> None:
        if self._redis is None:
            return
        try:
            self._redis.set(self._key(snapshot.id), snapshot.to_json(), ex=self._ttl)
        except redis_lib.RedisError as exc:
            logger.warning(f"Plan cache write failed for {snapshot.id}: {exc}")

    def get(self, db: Session, plan_id) -> PlanSnapshot:
        """Plan by id, active or not. Raises NotFound."""
        snapshot = self._cached(plan_id)
        if snapshot is not None:
            return snapshot
        plan = _load_plan(db, plan_id)
        if plan is None:
            raise NotFound("Membership plan not found")
        snapshot = PlanSnapshot.from_model(plan)
        self._remember(snapshot)
        return snapshot

    def get_active(self, db: Session, plan_id) -> PlanSnapshot:
        snapshot = self.get(db, plan_id)
        if not snapshot.is_active:
            raise ValidationFailed("Membership plan is not active")
        return snapshot

    def invalidate(self, plan_id) -> None:
        if self._redis is None:
            return
        try:
            self._redis.delete(self._key(plan_id))
        except redis_lib.RedisError as exc:
            logger.warning(f"Plan cache invalidation failed for {plan_id}: {exc}")


# ── Admin writes ──────────────────────────────────────────────────────────────

UPDATABLE_FIELDS = {
    "name",
    "description",
    "duration_months",
    "price",
    "setup_fee",
    "benefits",
    "class_credits",
    "guest_passes",
    "is_active",
}


def update_plan(db: Session, catalog: PlanCatalog, plan_id, changes: Dict[str, Any]) -> MembershipPlan:
    """
    Apply admin changes to a plan and drop its cache entry.

    Raises:
        NotFound: unknown plan
        ValidationFailed: unknown field or non-positive price / duration
    """
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationFailed(f"Plan fields cannot be updated: {', '.join(sorted(unknown))}")
    if "price" in changes and Decimal(str(changes["price"])) <= 0:
        raise ValidationFailed("Plan price must be positive")
    if "duration_months" in changes and int(changes["duration_months"]) < 1:
        raise ValidationFailed("Plan duration must be at least one month")

    plan = _load_plan(db, plan_id)
    if plan is None:
        raise NotFound("Membership plan not found")
    for field, value in changes.items():
        setattr(plan, field, value)
    db.commit()

    catalog.invalidate(plan.id)
    logger.info(f"Plan {plan.id} updated: {', '.join(sorted(changes))}")
    return plan


def deactivate_plan(db: Session, catalog: PlanCatalog, plan_id) -> MembershipPlan:
    """Plans are never deleted; existing subscriptions keep pointing at them."""
    return update_plan(db, catalog, plan_id, {"is_active": False})
