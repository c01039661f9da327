import json
import uuid

from billing_service.core.security import compute_signature
from billing_service.models.payment import Invoice

SECRET = "test-webhook-secret"


def _post_webhook(client, payload, signature=None):
    body = json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Signature": signature if signature is not None else compute_signature(SECRET, body),
    }
    return client.post("/api/v1/payments/webhook", content=body, headers=headers)


def _pending_checkout(make_plan, make_subscription, make_payment, amount=500000):
    plan = make_plan(price=amount)
    subscription = make_subscription(plan, status="PENDING")
    payment = make_payment(subscription, amount=amount)
    return plan, subscription, payment


def test_success_activates_subscription(client, db, member_client, publisher, make_plan, make_subscription, make_payment):
    plan, subscription, payment = _pending_checkout(make_plan, make_subscription, make_payment)

    response = _post_webhook(client, {
        "payment_id": str(payment.id),
        "status": "SUCCESS",
        "transaction_id": "VNP-1001",
        "gateway": "VNPAY",
        "amount": 500000,
        "webhook_id": "evt-1",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "COMPLETED"
    assert body["data"]["replayed"] is False
    assert body["data"]["reconciliation"]["action"] == "activated"
    assert body["data"]["reconciliation"]["membership_synced"] is True

    assert payment.status == "COMPLETED"
    assert payment.transaction_id == "VNP-1001"
    assert payment.reconciled_at is not None
    assert subscription.status == "ACTIVE"
    assert subscription.billed_plan_id == plan.id

    invoice = db.query(Invoice).filter(Invoice.payment_id == payment.id).one()
    assert invoice.status == "PAID"

    upsert = member_client.calls_to("upsert_membership")
    assert len(upsert) == 1
    assert upsert[0][1][0] == f"user-{subscription.member_id}"
    # 500,000 VND -> 50 loyalty points
    assert member_client.calls_to("award_points")[0][1] == (subscription.member_id, 50)
    assert "payment:success" in publisher.names()
    assert "subscription:activated" in publisher.names()


def test_replayed_webhook_is_a_no_op(client, member_client, make_plan, make_subscription, make_payment):
    _, _, payment = _pending_checkout(make_plan, make_subscription, make_payment)
    payload = {"payment_id": str(payment.id), "status": "SUCCESS", "amount": 500000, "webhook_id": "evt-2"}

    first = _post_webhook(client, payload)
    second = _post_webhook(client, payload)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["data"]["replayed"] is True
    assert second.json()["message"] == "Webhook already processed"
    assert len(member_client.calls_to("upsert_membership")) == 1


def test_new_delivery_for_reconciled_payment_is_a_no_op(client, member_client, make_plan, make_subscription, make_payment):
    _, _, payment = _pending_checkout(make_plan, make_subscription, make_payment)

    _post_webhook(client, {"payment_id": str(payment.id), "status": "SUCCESS", "webhook_id": "evt-3"})
    again = _post_webhook(client, {"payment_id": str(payment.id), "status": "SUCCESS", "webhook_id": "evt-3b"})

    assert again.status_code == 200
    assert again.json()["data"]["replayed"] is True
    assert len(member_client.calls_to("upsert_membership")) == 1


def test_amount_mismatch_fails_payment_and_leaves_subscription(client, ctx, make_plan, make_subscription, make_payment):
    _, subscription, payment = _pending_checkout(make_plan, make_subscription, make_payment)

    response = _post_webhook(client, {
        "payment_id": str(payment.id),
        "status": "SUCCESS",
        "amount": 400000,
        "webhook_id": "evt-4",
    })

    assert response.status_code == 400
    assert response.json()["error"] == "AMOUNT_MISMATCH"
    assert payment.status == "FAILED"
    assert "Amount mismatch" in payment.failure_reason
    assert subscription.status == "PENDING"
    assert not ctx.idempotency.is_processed("evt-4")


def test_failed_webhook_marks_payment_failed(client, publisher, make_plan, make_subscription, make_payment):
    _, subscription, payment = _pending_checkout(make_plan, make_subscription, make_payment)

    response = _post_webhook(client, {
        "payment_id": str(payment.id),
        "status": "FAILED",
        "reason": "Insufficient funds",
    })

    assert response.status_code == 200
    assert payment.status == "FAILED"
    assert payment.failure_reason == "Insufficient funds"
    assert subscription.status == "PENDING"
    assert "payment:failed" in publisher.names()


def test_invalid_signature_is_rejected(client, make_plan, make_subscription, make_payment):
    _, _, payment = _pending_checkout(make_plan, make_subscription, make_payment)

    response = _post_webhook(
        client,
        {"payment_id": str(payment.id), "status": "SUCCESS"},
        signature="not-a-real-signature",
    )

    assert response.status_code == 401
    assert response.json()["error"] == "INVALID_SIGNATURE"
    assert payment.status == "PENDING"


def test_unknown_payment_is_404(client):
    response = _post_webhook(client, {"payment_id": str(uuid.uuid4()), "status": "SUCCESS"})

    assert response.status_code == 404
    assert response.json()["success"] is False


def test_malformed_payload_is_400(client):
    response = _post_webhook(client, {"payment_id": "nope", "status": "MAYBE"})

    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"


def test_redis_outage_still_processes(client, fake_redis, make_plan, make_subscription, make_payment):
    _, subscription, payment = _pending_checkout(make_plan, make_subscription, make_payment)
    fake_redis.fail = True

    response = _post_webhook(client, {"payment_id": str(payment.id), "status": "SUCCESS", "webhook_id": "evt-5"})

    assert response.status_code == 200
    assert payment.status == "COMPLETED"
    assert subscription.status == "ACTIVE"


def test_membership_sync_failure_queues_compensation(client, ctx, member_client, make_plan, make_subscription, make_payment):
    _, subscription, payment = _pending_checkout(make_plan, make_subscription, make_payment)
    member_client.failing.add("upsert_membership")

    response = _post_webhook(client, {"payment_id": str(payment.id), "status": "SUCCESS", "webhook_id": "evt-6"})

    assert response.status_code == 200
    reconciliation = response.json()["data"]["reconciliation"]
    assert reconciliation["membership_synced"] is False
    task = ctx.compensation.get(reconciliation["compensation_task_id"])
    assert task["kind"] == "membership_sync"
    assert task["payload"]["member_id"] == subscription.member_id
    assert payment.status == "COMPLETED"
    assert subscription.status == "ACTIVE"
