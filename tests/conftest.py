import fnmatch
import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Settings are read at import time; configure them before billing_service loads
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APP_ENV"] = "test"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["SEPAY_API_KEY"] = ""
os.environ["ENABLE_BACKGROUND_JOBS"] = "false"
os.environ["DB_RETRY_BASE_DELAY_SECONDS"] = "0"
os.environ["DB_RETRY_MAX_DELAY_SECONDS"] = "0"

import pytest
import redis as redis_lib
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import billing_service.db.base  # noqa: F401 -- registers every model
from billing_service.core.dependencies import build_billing_context, get_billing_context
from billing_service.db.base_class import Base
from billing_service.db.session import get_db
from billing_service.main import app
from billing_service.models.payment import Payment
from billing_service.models.plan import MembershipPlan
from billing_service.models.subscription import Subscription
from billing_service.services.member_client import MemberServiceError, RewardRedemption
from billing_service.services.sepay_client import SepayError, SepayListedTransaction

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


# ── Test doubles ──────────────────────────────────────────────────────────────

class FakeRedis:
    """In-memory stand-in for the redis-py calls the service makes."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.published = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis_lib.exceptions.ConnectionError("redis is down")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.store.get(key)

    def set(self, key, value, ex=None, keepttl=False):
        self._check()
        self.store[key] = value
        if not keepttl:
            self.ttls[key] = ex
        return True

    def exists(self, *keys):
        self._check()
        return sum(1 for k in keys if k in self.store)

    def delete(self, *keys):
        self._check()
        removed = 0
        for k in keys:
            if self.store.pop(k, None) is not None:
                removed += 1
            self.ttls.pop(k, None)
        return removed

    def scan_iter(self, match=None):
        self._check()
        for key in list(self.store):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        return 1


class StubMemberClient:
    """Records member-service calls; methods listed in `failing` raise MemberServiceError."""

    def __init__(self):
        self.calls = []
        self.failing = set()
        self.redemptions = {}
        self.admin_ids = []

    def _call(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if name in self.failing:
            raise MemberServiceError(f"{name} unavailable")

    def calls_to(self, name):
        return [c for c in self.calls if c[0] == name]

    def get_member(self, member_id):
        self._call("get_member", member_id)
        return {"id": member_id, "user_id": f"user-{member_id}"}

    def resolve_user_id(self, member_id):
        self._call("resolve_user_id", member_id)
        return f"user-{member_id}"

    def upsert_membership(self, user_id, payload):
        self._call("upsert_membership", user_id, payload)
        return {"success": True}

    def credit_points(self, member_id, points, **kwargs):
        self._call("credit_points", member_id, points, **kwargs)
        return {"success": True}

    def award_points(self, member_id, points, **kwargs):
        self._call("award_points", member_id, points, **kwargs)
        return {"success": True}

    def verify_reward_code(self, code):
        self._call("verify_reward_code", code)
        if code not in self.redemptions:
            raise MemberServiceError(f"Reward code {code} could not be verified")
        return self.redemptions[code]

    def mark_redemption_used(self, redemption_id):
        self._call("mark_redemption_used", redemption_id)
        return {"success": True}

    def list_admin_ids(self):
        self._call("list_admin_ids")
        return list(self.admin_ids)


class StubSepayClient:
    """Serves `transactions` as the Sepay transaction list; `fail` makes the lookup raise."""

    def __init__(self):
        self.transactions = []
        self.fail = False
        self.calls = 0

    def add(self, content, amount, tx_id="90001", reference="FT90001"):
        self.transactions.append(
            SepayListedTransaction(
                id=tx_id,
                content=content,
                amount_in=Decimal(str(amount)),
                amount_out=Decimal(0),
                reference_number=reference,
                transaction_date="2026-03-10 09:05:00",
                raw={"id": tx_id, "transaction_content": content, "amount_in": str(amount)},
            )
        )

    def list_transactions(self, since=None, limit=50):
        self.calls += 1
        if self.fail:
            raise SepayError("sepay unavailable")
        return list(self.transactions)


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, room, event, payload):
        self.events.append((room, event, payload))

    def names(self):
        return [e[1] for e in self.events]


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(engine):
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def member_client():
    return StubMemberClient()


@pytest.fixture()
def publisher():
    return RecordingPublisher()


@pytest.fixture()
def sepay_client():
    return StubSepayClient()


@pytest.fixture()
def ctx(fake_redis, member_client, publisher, sepay_client):
    return build_billing_context(fake_redis, member_client, publisher=publisher, sepay_client=sepay_client)


@pytest.fixture()
def client(db, ctx):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_context] = lambda: ctx
    yield TestClient(app)
    app.dependency_overrides.clear()


# ── Factories ─────────────────────────────────────────────────────────────────

@pytest.fixture()
def make_plan(db):
    def _make(name="Basic", price=500000, duration_months=1, type="BASIC", class_credits=None, is_active=True):
        plan = MembershipPlan(
            name=name,
            type=type,
            duration_months=duration_months,
            price=Decimal(str(price)),
            class_credits=class_credits,
            is_active=is_active,
        )
        db.add(plan)
        db.commit()
        return plan
    return _make


@pytest.fixture()
def make_subscription(db):
    def _make(plan, member_id=None, status="ACTIVE", start=None, days=30, billed_plan=None):
        start = start or NOW - timedelta(days=10)
        end = start + timedelta(days=days)
        subscription = Subscription(
            member_id=member_id or f"member-{uuid.uuid4().hex[:8]}",
            plan_id=plan.id,
            billed_plan_id=(billed_plan or plan).id if status in ("ACTIVE", "PAST_DUE") else None,
            status=status,
            billing_cycle=1,
            start_date=start,
            end_date=end,
            current_period_start=start,
            current_period_end=end,
            next_billing_date=end,
            base_amount=plan.price,
            discount_amount=Decimal(0),
            total_amount=plan.price,
            classes_remaining=plan.class_credits,
            auto_renew=True,
        )
        db.add(subscription)
        db.commit()
        return subscription
    return _make


@pytest.fixture()
def make_payment(db):
    def _make(subscription=None, member_id=None, amount=500000, status="PENDING",
              payment_method="VNPAY", payment_type="SUBSCRIPTION", description=None, processed_at=None):
        payment = Payment(
            member_id=member_id or subscription.member_id,
            subscription_id=subscription.id if subscription is not None else None,
            amount=Decimal(str(amount)),
            currency="VND",
            status=status,
            payment_method=payment_method,
            payment_type=payment_type,
            description=description,
            refunded_amount=Decimal(0),
            retry_count=0,
            extra_data={},
            processed_at=processed_at or (NOW if status == "COMPLETED" else None),
            reconciled_at=NOW if status == "COMPLETED" else None,
        )
        db.add(payment)
        db.commit()
        return payment
    return _make


@pytest.fixture()
def reward_redemption():
    def _make(code_id="redemption-1", member_id="member-a", status="ACTIVE", percent=None, amount=None):
        return RewardRedemption(
            redemption_id=code_id,
            member_id=member_id,
            status=status,
            reward_type="PERCENTAGE_DISCOUNT" if percent is not None else "FIXED_AMOUNT_DISCOUNT",
            discount_percent=Decimal(str(percent)) if percent is not None else None,
            discount_amount=Decimal(str(amount)) if amount is not None else None,
        )
    return _make
