from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billing_service.core.errors import ConflictError, NotFound, ValidationFailed
from billing_service.models.discount import DiscountCode, DiscountUsage
from billing_service.services import discounts, payment_service, subscription_service
from billing_service.services.compensation import REFERRAL_CREDIT

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def make_code(db):
    def _make(code="SPRING20", type="PERCENTAGE", value=20, **fields):
        fields.setdefault("valid_from", NOW - timedelta(days=30))
        discount = DiscountCode(
            code=code,
            name=code.title(),
            type=type,
            value=Decimal(str(value)),
            usage_count=0,
            is_active=True,
            first_time_only=False,
            **fields,
        )
        db.add(discount)
        db.commit()
        return discount
    return _make


def _subscribe(db, ctx, plan, code, member_id="member-a"):
    return subscription_service.create_subscription_with_discount(
        db, ctx, member_id=member_id, plan_id=plan.id, discount_code=code, now=NOW
    )


def _pay(db, ctx, subscription):
    initiated = payment_service.initiate_payment(
        db,
        member_id=subscription.member_id,
        amount=subscription.total_amount,
        payment_method="CASH",
        subscription_id=subscription.id,
        now=NOW,
    )
    return payment_service.process_payment(db, ctx, initiated.payment.id, now=NOW)


# ── Quotes ────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "discount_type, value, max_discount, expected",
    [
        ("PERCENTAGE", 20, None, Decimal("100000")),
        ("PERCENTAGE", 50, 150000, Decimal("150000")),
        ("FIXED_AMOUNT", 80000, None, Decimal("80000")),
        ("FIXED_AMOUNT", 900000, None, Decimal("500000")),
        ("FREE_TRIAL", 0, None, Decimal("0")),
    ],
)
def test_calculate_discount(discount_type, value, max_discount, expected):
    assert discounts.calculate_discount(discount_type, value, 500000, max_discount) == expected


def test_quote_percentage_code(db, make_code, make_plan):
    make_code("SPRING20", value=20, max_discount=Decimal("80000"))
    plan = make_plan(price=500000)

    quote = discounts.validate_coupon(db, " Spring20 ", plan_id=plan.id, base_amount=plan.price, now=NOW)

    assert quote.code == "SPRING20"
    assert quote.discount_amount == Decimal("80000")
    assert quote.bonus_days == 0


def test_free_trial_code_grants_bonus_days(db, make_code):
    make_code("TRYIT", type="FREE_TRIAL", value=0)

    quote = discounts.validate_coupon(db, "TRYIT", base_amount=500000, now=NOW)

    assert quote.bonus_days == 30
    assert quote.discount_amount == Decimal("0")


@pytest.mark.parametrize(
    "fields, message",
    [
        ({"is_active": False}, "deactivated"),
        ({"valid_from": NOW + timedelta(days=1)}, "not valid yet"),
        ({"valid_until": NOW - timedelta(days=1)}, "expired"),
        ({"usage_limit": 5, "usage_count": 5}, "usage limit"),
        ({"minimum_amount": Decimal("900000")}, "Minimum order amount"),
    ],
)
def test_code_rules(db, make_code, fields, message):
    discount = make_code("RULES")
    for name, value in fields.items():
        setattr(discount, name, value)
    db.commit()

    with pytest.raises(ValidationFailed) as excinfo:
        discounts.validate_coupon(db, "RULES", base_amount=500000, now=NOW)
    assert message in excinfo.value.message


def test_code_limited_to_other_plan(db, make_code, make_plan):
    other = make_plan(name="Premium", price=900000, type="PREMIUM")
    plan = make_plan()
    make_code("PREMIUMONLY", applicable_plans=[str(other.id)])

    with pytest.raises(ValidationFailed):
        discounts.validate_coupon(db, "PREMIUMONLY", plan_id=plan.id, base_amount=500000, now=NOW)


def test_unknown_code(db):
    with pytest.raises(NotFound):
        discounts.validate_coupon(db, "NOPE", now=NOW)


def test_first_time_only_rejects_returning_members(db, make_code, make_plan, make_subscription, make_payment):
    make_code("WELCOME", first_time_only=True)
    plan = make_plan()
    make_payment(make_subscription(plan, member_id="member-old", status="EXPIRED"), status="COMPLETED")

    with pytest.raises(ValidationFailed) as excinfo:
        discounts.validate_coupon(db, "WELCOME", member_id="member-old", base_amount=500000, now=NOW)
    assert "new members" in excinfo.value.message

    quote = discounts.validate_coupon(db, "WELCOME", member_id="member-new", base_amount=500000, now=NOW)
    assert quote.discount_amount == Decimal("100000")


def test_validate_endpoint_prices_from_plan(client, make_code, make_plan):
    make_code("SPRING20", value=20)
    plan = make_plan(price=300000)

    response = client.post(
        "/api/v1/discounts/validate",
        json={"code": "spring20", "member_id": "member-a", "plan_id": str(plan.id)},
    )

    assert response.status_code == 200
    assert Decimal(response.json()["data"]["discount_amount"]) == Decimal("60000")


# ── Usage ledger ──────────────────────────────────────────────────────────────

def test_subscription_with_discount_is_priced_and_counted(db, ctx, make_code, make_plan):
    discount = make_code("SPRING20", value=20)
    plan = make_plan(price=500000)

    subscription = _subscribe(db, ctx, plan, "SPRING20")

    assert subscription.status == "PENDING"
    assert subscription.discount_amount == Decimal("100000")
    assert subscription.total_amount == Decimal("400000")
    db.refresh(discount)
    assert discount.usage_count == 1
    usage = db.query(DiscountUsage).one()
    assert usage.billing_cycle == 1
    assert usage.details["discount_amount"] == "100000.00"


def test_one_discount_per_billing_cycle(db, ctx, make_code, make_plan):
    make_code("SPRING20", value=20)
    make_code("FLAT50", type="FIXED_AMOUNT", value=50000)
    plan = make_plan(price=500000)

    first = _subscribe(db, ctx, plan, "SPRING20")
    # The same code again is a no-op on the ledger
    again = _subscribe(db, ctx, plan, "spring20")
    assert again.id == first.id
    assert db.query(DiscountUsage).count() == 1

    with pytest.raises(ConflictError) as excinfo:
        _subscribe(db, ctx, plan, "FLAT50")
    assert excinfo.value.code == "DISCOUNT_ALREADY_APPLIED"


def test_bonus_days_extend_the_period(db, ctx, make_code, make_plan):
    make_code("TRYIT", type="FREE_TRIAL", value=0)
    plan = make_plan(price=500000)

    subscription = _subscribe(db, ctx, plan, "TRYIT")

    assert subscription.end_date == datetime(2026, 4, 10, 9, 0, tzinfo=timezone.utc) + timedelta(days=30)
    assert subscription.total_amount == Decimal("500000")


# ── Settlement ────────────────────────────────────────────────────────────────

def test_referral_credited_once(db, ctx, member_client, make_code, make_plan):
    make_code("FRIEND-ANNA", value=10, referrer_member_id="referrer-1", referral_reward=50)
    plan = make_plan(price=500000)
    subscription = _subscribe(db, ctx, plan, "FRIEND-ANNA")

    _pay(db, ctx, subscription)
    again = discounts.settle_after_payment(db, subscription, member_client, ctx.compensation, now=NOW)

    credits = member_client.calls_to("credit_points")
    assert len(credits) == 1
    assert credits[0][1] == ("referrer-1", 50)
    usage = db.query(DiscountUsage).one()
    assert credits[0][2]["idempotency_key"] == f"referral:{usage.id}"
    assert usage.reward_credited_at is not None
    assert again == {"referral_credited": False, "redemption_used": False}


def test_failed_referral_credit_becomes_compensation_task(db, ctx, member_client, make_code, make_plan):
    make_code("FRIEND-BEN", value=10, referrer_member_id="referrer-2", referral_reward=30)
    plan = make_plan(price=500000)
    subscription = _subscribe(db, ctx, plan, "FRIEND-BEN")
    member_client.failing.add("credit_points")

    _pay(db, ctx, subscription)

    tasks = [t for t in ctx.compensation.list_pending() if t["kind"] == REFERRAL_CREDIT]
    assert len(tasks) == 1
    assert tasks[0]["payload"]["member_id"] == "referrer-2"
    assert tasks[0]["payload"]["points"] == 30
    # Claimed even though the call failed; the task is the only retry path
    assert db.query(DiscountUsage).one().reward_credited_at is not None


def test_reward_code_comes_from_member_service(db, ctx, member_client, make_plan, reward_redemption):
    member_client.redemptions["REWARD-ABC123"] = reward_redemption(
        code_id="redemption-9", member_id="member-a", percent=15
    )
    plan = make_plan(price=400000)

    subscription = _subscribe(db, ctx, plan, "reward-abc123")

    assert subscription.discount_amount == Decimal("60000")
    usage = db.query(DiscountUsage).one()
    assert usage.discount_code_id is None
    assert usage.redemption_id == "redemption-9"

    _pay(db, ctx, subscription)

    assert [c[1] for c in member_client.calls_to("mark_redemption_used")] == [("redemption-9",)]


def test_reward_code_of_another_member_is_rejected(db, member_client, reward_redemption):
    member_client.redemptions["REWARD-XYZ"] = reward_redemption(member_id="member-b", amount=50000)

    with pytest.raises(ValidationFailed):
        discounts.validate_coupon(
            db, "REWARD-XYZ", member_id="member-a", base_amount=500000, member_client=member_client
        )


def test_used_reward_code_is_rejected(db, member_client, reward_redemption):
    member_client.redemptions["REWARD-OLD"] = reward_redemption(status="USED", amount=50000)

    with pytest.raises(ValidationFailed):
        discounts.validate_coupon(
            db, "REWARD-OLD", member_id="member-a", base_amount=500000, member_client=member_client
        )
