import json
from decimal import Decimal
from types import SimpleNamespace

import pytest

from billing_service.core.errors import ValidationFailed

from billing_service.services.notification_service import NotificationService, RedisEventPublisher
from billing_service.services.plan_catalog import PlanCatalog, deactivate_plan, update_plan


class _BrokenPublisher:
    def publish(self, room, event, payload):
        raise RuntimeError("socket gateway down")


def _payment():
    return SimpleNamespace(
        id="p-1", member_id="m-1", amount=500000, currency="VND", gateway="VNPAY", failure_reason=None
    )


def test_payment_success_goes_to_member_and_admins(publisher, member_client):
    member_client.admin_ids = ["a-1", "a-2"]
    notifier = NotificationService(publisher, member_client)

    notifier.payment_succeeded(_payment())

    rooms = [room for room, _, _ in publisher.events]
    assert rooms == ["member:m-1", "admin", "user:a-1", "user:a-2"]


def test_publisher_failure_is_swallowed(member_client, caplog):
    notifier = NotificationService(_BrokenPublisher(), member_client)

    assert notifier.emit("member:m-1", "payment:success", {}) is False
    notifier.payment_failed(_payment())
    assert "Failed to publish payment:failed" in caplog.text


def test_admin_lookup_failure_still_notifies_admin_room(publisher, member_client):
    member_client.failing.add("list_admin_ids")
    notifier = NotificationService(publisher, member_client)

    notifier.payment_succeeded(_payment())

    assert [room for room, _, _ in publisher.events] == ["member:m-1", "admin"]


def test_redis_publisher_writes_json(fake_redis):
    RedisEventPublisher(fake_redis).publish("member:m-1", "payment:success", {"amount": "1"})

    channel, message = fake_redis.published[0]
    assert channel == "billing:member:m-1"
    body = json.loads(message)
    assert body["event"] == "payment:success"
    assert body["payload"] == {"amount": "1"}


# ── Plan cache ────────────────────────────────────────────────────────────────

def test_plan_catalog_reads_through_cache(db, fake_redis, make_plan):
    plan = make_plan(price=450000, class_credits=12)
    catalog = PlanCatalog(fake_redis)

    first = catalog.get(db, plan.id)
    assert f"plan:{plan.id}" in fake_redis.store
    assert fake_redis.ttls[f"plan:{plan.id}"] == 3600

    # Served from Redis even after the row changes
    plan.name = "Renamed"
    db.commit()
    assert catalog.get(db, plan.id) == first

    # Writes through update_plan drop the cached snapshot
    update_plan(db, catalog, plan.id, {"price": Decimal("480000")})
    fresh = catalog.get(db, plan.id)
    assert fresh.name == "Renamed"
    assert fresh.price == Decimal("480000")


def test_plan_catalog_fails_open(db, fake_redis, make_plan):
    plan = make_plan()
    fake_redis.fail = True

    assert PlanCatalog(fake_redis).get(db, plan.id).id == plan.id


def test_deactivated_plan_stops_being_sold(db, ctx, make_plan):
    plan = make_plan()
    assert ctx.plans.get_active(db, plan.id).is_active is True

    deactivate_plan(db, ctx.plans, plan.id)

    with pytest.raises(ValidationFailed):
        ctx.plans.get_active(db, plan.id)


def test_update_plan_rejects_unknown_fields(db, ctx, make_plan):
    plan = make_plan()

    with pytest.raises(ValidationFailed):
        update_plan(db, ctx.plans, plan.id, {"type": "VIP"})


def test_plan_endpoints(client, ctx, db, make_plan):
    plan = make_plan(price=500000)
    ctx.plans.get(db, plan.id)

    updated = client.patch(f"/api/v1/plans/{plan.id}", json={"price": "550000", "class_credits": 8})
    deactivated = client.delete(f"/api/v1/plans/{plan.id}")

    assert updated.status_code == 200
    assert Decimal(updated.json()["data"]["price"]) == Decimal("550000")
    assert deactivated.json()["data"]["is_active"] is False
    assert ctx.plans.get(db, plan.id).class_credits == 8
