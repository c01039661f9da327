from datetime import datetime, timedelta, timezone

from billing_service.core.security import compute_signature
from billing_service.jobs.compensation_worker import drain_compensation_tasks
from billing_service.models.payment import Invoice


def test_bank_transfer_checkout_with_member_service_outage(client, db, ctx, member_client, make_plan):
    plan = make_plan(name="VIP", price=500000, type="VIP")

    created = client.post("/api/v1/subscriptions", json={"member_id": "member-e2e", "plan_id": str(plan.id)})
    assert created.status_code == 201
    subscription_id = created.json()["data"]["id"]

    initiated = client.post("/api/v1/payments/initiate", json={
        "member_id": "member-e2e",
        "amount": "500000",
        "payment_method": "BANK_TRANSFER",
        "subscription_id": subscription_id,
    })
    assert initiated.status_code == 200
    payment = initiated.json()["data"]["payment"]
    transfer = initiated.json()["data"]["bank_transfer"]
    assert transfer["transfer_content"] == f"SEVQR GYMFIT {payment['id'][:8].upper()}"

    member_client.failing.add("upsert_membership")
    webhook = client.post("/api/v1/bank-transfers/webhook/sepay", json={
        "id": "90001",
        "gateway": "VietinBank",
        "content": f"CT DEN:0001 {transfer['transfer_content']}",
        "transferType": "in",
        "transferAmount": 500000,
        "referenceCode": "FT26069ABCDE",
    })
    assert webhook.status_code == 200
    assert webhook.json() == {"success": True, "message": "Webhook processed successfully"}

    subscription = client.get(f"/api/v1/subscriptions/{subscription_id}").json()["data"]
    assert subscription["status"] == "ACTIVE"
    assert subscription["billed_plan_id"] == str(plan.id)

    invoice = db.query(Invoice).one()
    assert invoice.status == "PAID"
    assert str(invoice.payment_id) == payment["id"]

    # Membership sync failed after the payment committed: a task replaces it
    tasks = ctx.compensation.list_pending()
    assert [t["kind"] for t in tasks] == ["membership_sync"]
    assert tasks[0]["payload"]["membership_type"] == "VIP"

    member_client.failing.clear()
    report = drain_compensation_tasks(ctx, now=datetime.now(timezone.utc) + timedelta(minutes=1))
    assert report.succeeded == [tasks[0]["task_id"]]
    assert ctx.compensation.list_pending() == []
    assert member_client.calls_to("upsert_membership")[-1][1][0] == "user-member-e2e"


def test_gateway_checkout_then_upgrade(client, db, make_plan):
    basic = make_plan(name="Basic", price=300000)
    premium = make_plan(name="Premium", price=600000, type="PREMIUM")

    subscription_id = client.post(
        "/api/v1/subscriptions", json={"member_id": "member-up", "plan_id": str(basic.id)}
    ).json()["data"]["id"]
    payment_id = client.post("/api/v1/payments/initiate", json={
        "member_id": "member-up",
        "amount": "300000",
        "payment_method": "VNPAY",
        "subscription_id": subscription_id,
    }).json()["data"]["payment"]["id"]

    body = ('{"payment_id": "%s", "status": "SUCCESS", "amount": 300000, "webhook_id": "vnp-1"}' % payment_id).encode()
    paid = client.post(
        "/api/v1/payments/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Webhook-Signature": compute_signature("test-webhook-secret", body),
        },
    )
    assert paid.status_code == 200
    assert paid.json()["data"]["reconciliation"]["action"] == "activated"

    changed = client.post(
        f"/api/v1/subscriptions/{subscription_id}/change-plan",
        json={"new_plan_id": str(premium.id), "payment_method": "CASH"},
    )
    assert changed.status_code == 200
    upgrade_payment = changed.json()["data"]["payment"]
    assert upgrade_payment["payment_type"] == "UPGRADE"
    assert changed.json()["data"]["subscription"]["billed_plan_id"] == str(basic.id)

    processed = client.post(f"/api/v1/payments/{upgrade_payment['id']}/process", json={"success": True})
    assert processed.status_code == 200
    assert processed.json()["data"]["status"] == "COMPLETED"

    subscription = client.get(f"/api/v1/subscriptions/{subscription_id}").json()["data"]
    assert subscription["plan_id"] == str(premium.id)
    assert subscription["billed_plan_id"] == str(premium.id)
