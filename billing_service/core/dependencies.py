# billing_service/core/dependencies.py
# FastAPI dependency functions for the billing collaborators
#
# Every service function takes a BillingContext instead of reaching for
# module globals, so tests swap Redis and the member service through
# app.dependency_overrides[get_billing_context].

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

from billing_service.core.redis_client import get_redis
from billing_service.services.compensation import CompensationQueue
from billing_service.services.idempotency import IdempotencyStore
from billing_service.services.member_client import MemberServiceClient
from billing_service.services.notification_service import (
    NotificationService,
    RedisEventPublisher,
)
from billing_service.services.plan_catalog import PlanCatalog
from billing_service.services.reconciler import SubscriptionReconciler
from billing_service.services.sepay_client import SepayClient


@dataclass
class BillingContext:
    idempotency: IdempotencyStore
    compensation: CompensationQueue
    member_client: MemberServiceClient
    notifier: NotificationService
    plans: PlanCatalog
    sepay: SepayClient
    reconciler: SubscriptionReconciler = field(init=False)

    def __post_init__(self):
        self.reconciler = SubscriptionReconciler(
            self.member_client,
            self.compensation,
            self.notifier,
        )


def build_billing_context(
    redis_client,
    member_client: MemberServiceClient,
    publisher=None,
    sepay_client: Optional[SepayClient] = None,
) -> BillingContext:
    return BillingContext(
        idempotency=IdempotencyStore(redis_client),
        compensation=CompensationQueue(redis_client),
        member_client=member_client,
        notifier=NotificationService(publisher or RedisEventPublisher(redis_client), member_client),
        plans=PlanCatalog(redis_client),
        sepay=sepay_client or SepayClient(),
    )


@lru_cache
def get_billing_context() -> BillingContext:
    """
    Process-wide context wired to the real Redis and member service.

    Usage:
        @router.post("/example")
        def example(ctx: BillingContext = Depends(get_billing_context)):
            ...
    """
    return build_billing_context(get_redis(), MemberServiceClient())
