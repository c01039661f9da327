import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billing_service.core.config import settings
from billing_service.core.errors import InvalidTransition, ValidationFailed
from billing_service.core.security import compute_signature
from billing_service.services import bank_transfer as bank_transfer_service
from billing_service.services import payment_service
from billing_service.services.bank_transfer import (
    cancel_bank_transfer,
    extract_order_code,
    handle_sepay_webhook,
    order_code_for,
    parse_sepay_payload,
    verify_bank_transfer,
)

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


def _sepay(content, amount=500000, tx_id="27714363", transfer_type="in"):
    return {
        "id": tx_id,
        "gateway": "VietinBank",
        "transactionDate": "2026-03-10 09:05:00",
        "accountNumber": "0123456789",
        "content": content,
        "transferType": transfer_type,
        "transferAmount": amount,
        "referenceCode": f"REF{tx_id}",
    }


@pytest.fixture()
def transfer(db, make_plan, make_subscription):
    plan = make_plan(price=500000)
    subscription = make_subscription(plan, status="PENDING")
    initiated = payment_service.initiate_payment(
        db,
        member_id=subscription.member_id,
        amount=plan.price,
        payment_method="BANK_TRANSFER",
        subscription_id=subscription.id,
        now=NOW,
    )
    return initiated.bank_transfer


# ── Parsing ───────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "content, expected",
    [
        ("SEVQR GYMFIT CMH6NMCU", "CMH6NMCU"),
        ("CT DEN:394494097753 SEVQR GYMFIT cmh6nmcu", "CMH6NMCU"),
        ("gymfit   AB12CD34 chuyen tien", "AB12CD34"),
        ("SEVQR GYMFIT", None),
        ("tien an trua", None),
        (None, None),
    ],
)
def test_extract_order_code(content, expected):
    assert extract_order_code(content) == expected


def test_parse_sepay_payload():
    tx = parse_sepay_payload(_sepay("SEVQR GYMFIT AB12CD34", amount=2000))

    assert tx.sepay_transaction_id == "27714363"
    assert tx.amount == Decimal("2000")
    assert tx.transfer_type == "in"
    assert tx.bank_transaction_id == "REF27714363"


def test_parse_rejects_payload_without_id():
    with pytest.raises(ValidationFailed):
        parse_sepay_payload({"content": "SEVQR GYMFIT AB12CD34"})


# ── Transfer creation ─────────────────────────────────────────────────────────

def test_bank_transfer_created_with_vietqr_content(transfer):
    assert transfer.status == "PENDING"
    assert transfer.transfer_content == f"SEVQR GYMFIT {order_code_for(transfer.payment_id)}"
    assert transfer.expires_at == NOW + timedelta(minutes=30)
    assert "amount=500000" in transfer.qr_code_url
    assert "des=SEVQR%20GYMFIT%20" in transfer.qr_code_url


def test_reinitiating_reuses_open_transfer(db, transfer):
    payment = transfer.payment
    again = payment_service.initiate_payment(
        db,
        member_id=payment.member_id,
        amount=payment.amount,
        payment_method="BANK_TRANSFER",
        subscription_id=payment.subscription_id,
        now=NOW,
    )

    assert again.reused is True
    assert again.bank_transfer.id == transfer.id


# ── Matching ──────────────────────────────────────────────────────────────────

def test_matching_transfer_completes_payment(db, ctx, transfer):
    content = f"CT DEN:394494097753 {transfer.transfer_content}"

    result = handle_sepay_webhook(db, ctx, _sepay(content), now=NOW)

    assert result == {"success": True, "message": "Webhook processed successfully"}
    assert transfer.status == "VERIFIED"
    assert transfer.verified_amount == Decimal("500000")
    assert transfer.sepay_transaction_id == "27714363"
    payment = transfer.payment
    assert payment.status == "COMPLETED"
    assert payment.gateway == "SEPAY"
    assert payment.transaction_id == "REF27714363"
    assert payment.subscription.status == "ACTIVE"


def test_duplicate_notification(db, ctx, member_client, transfer):
    payload = _sepay(transfer.transfer_content)
    handle_sepay_webhook(db, ctx, payload, now=NOW)

    again = handle_sepay_webhook(db, ctx, payload, now=NOW)

    assert again == {"success": True, "message": "Already processed"}
    assert len(member_client.calls_to("upsert_membership")) == 1


def test_outgoing_transfer_is_ignored(db, ctx, transfer):
    result = handle_sepay_webhook(db, ctx, _sepay(transfer.transfer_content, transfer_type="out"))

    assert result == {"success": True, "message": "Ignored"}
    assert transfer.status == "PENDING"


def test_unrelated_transfer_is_ignored(db, ctx):
    assert handle_sepay_webhook(db, ctx, _sepay("tien nha thang 3"))["message"] == "Ignored"


def test_content_without_order_code(db, ctx):
    result = handle_sepay_webhook(db, ctx, _sepay("SEVQR GYMFIT"))

    assert result == {"success": False, "message": "Invalid format"}


def test_no_open_transfer(db, ctx, transfer):
    result = handle_sepay_webhook(db, ctx, _sepay("SEVQR GYMFIT ZZZZZZZZ"))

    assert result == {"success": False, "message": "No match"}


def test_amount_mismatch_fails_transfer_only(db, ctx, transfer):
    result = handle_sepay_webhook(db, ctx, _sepay(transfer.transfer_content, amount=450000), now=NOW)

    assert result == {"success": False, "message": "Amount mismatch"}
    assert transfer.status == "FAILED"
    assert "expected" in transfer.notes
    assert transfer.payment.status == "PENDING"
    assert ctx.idempotency.is_processed("sepay:27714363")


def test_transfer_for_failed_payment_reopens_and_completes(db, ctx, transfer):
    payment = transfer.payment
    payment_service.fail_payment(db, ctx, payment, "Gateway timeout", now=NOW)

    result = handle_sepay_webhook(db, ctx, _sepay(transfer.transfer_content), now=NOW)

    assert result == {"success": True, "message": "Webhook processed successfully"}
    assert transfer.status == "VERIFIED"
    assert payment.status == "COMPLETED"
    assert payment.failure_reason is None
    assert payment.retry_count == 0
    assert payment.subscription.status == "ACTIVE"
    assert ctx.idempotency.is_processed("sepay:27714363")


def test_failed_completion_leaves_transfer_matchable(db, ctx, monkeypatch, transfer):
    payment = transfer.payment
    payment_service.fail_payment(db, ctx, payment, "Gateway timeout", now=NOW)

    def broken_completion(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(bank_transfer_service, "complete_payment", broken_completion)

    with pytest.raises(RuntimeError):
        handle_sepay_webhook(db, ctx, _sepay(transfer.transfer_content), now=NOW)
    db.rollback()

    db.refresh(transfer)
    db.refresh(payment)
    assert transfer.status == "PENDING"
    assert payment.status == "FAILED"
    # Sepay retries and the next attempt can still match
    assert not ctx.idempotency.is_processed("sepay:27714363")


def test_transfer_for_settled_payment_is_held_for_review(db, ctx, publisher, transfer):
    payment = transfer.payment
    payment_service.process_payment(db, ctx, payment.id, gateway="CASH", now=NOW)

    result = handle_sepay_webhook(db, ctx, _sepay(transfer.transfer_content), now=NOW)

    assert result == {"success": False, "message": "Payment already settled, held for review"}
    assert transfer.status == "VERIFIED"
    assert "manual reconciliation" in transfer.notes
    assert payment.gateway == "CASH"
    assert "bank_transfer:review" in publisher.names()
    assert ctx.idempotency.is_processed("sepay:27714363")


# ── Verify / cancel ───────────────────────────────────────────────────────────

def test_verify_finds_transaction_in_sepay_list(db, ctx, sepay_client, transfer):
    sepay_client.add(f"CT DEN:394494097753 {transfer.transfer_content}", 500000)

    result = verify_bank_transfer(db, ctx, transfer.id, now=NOW + timedelta(minutes=5))

    assert result.verified is True
    assert result.message == "Transfer verified successfully"
    assert transfer.status == "VERIFIED"
    assert transfer.payment.status == "COMPLETED"
    assert transfer.payment.transaction_id == "FT90001"
    # The webhook for the same Sepay transaction arrives late
    late = handle_sepay_webhook(db, ctx, _sepay(transfer.transfer_content, tx_id="90001"), now=NOW)
    assert late == {"success": True, "message": "Already processed"}


def test_verify_without_matching_transaction(db, ctx, sepay_client, transfer):
    sepay_client.add(transfer.transfer_content, 450000)
    sepay_client.add("SEVQR GYMFIT ZZZZZZZZ", 500000, tx_id="90002")

    result = verify_bank_transfer(db, ctx, transfer.id, now=NOW + timedelta(minutes=5))

    assert result.verified is False
    assert result.message == "Transaction not found yet, try again later"
    assert transfer.status == "PENDING"
    assert transfer.payment.status == "PENDING"


def test_verify_after_window_expires_transfer(db, ctx, sepay_client, transfer):
    with pytest.raises(ValidationFailed) as excinfo:
        verify_bank_transfer(db, ctx, transfer.id, now=NOW + timedelta(minutes=31))

    assert str(excinfo.value) == "Transfer window expired"
    assert transfer.status == "EXPIRED"
    assert sepay_client.calls == 0


@pytest.mark.parametrize("payment_status", ["PENDING", "FAILED"])
def test_verify_repairs_verified_transfer_with_open_payment(db, ctx, sepay_client, transfer, payment_status):
    payment = transfer.payment
    if payment_status == "FAILED":
        payment_service.fail_payment(db, ctx, payment, "Gateway timeout", now=NOW)
    transfer.status = "VERIFIED"
    transfer.sepay_transaction_id = "27714363"
    db.commit()

    result = verify_bank_transfer(db, ctx, transfer.id, now=NOW + timedelta(hours=2))

    assert result.verified is True
    assert result.message == "Transfer already verified"
    assert payment.status == "COMPLETED"
    assert payment.reconciled_at is not None
    assert payment.subscription.status == "ACTIVE"
    assert sepay_client.calls == 0


def test_cancel_open_transfer(db, ctx, transfer):
    cancel_bank_transfer(db, transfer.id)

    assert transfer.status == "CANCELLED"
    assert transfer.notes == "Cancelled by user"
    assert transfer.payment.status == "PENDING"
    with pytest.raises(InvalidTransition):
        cancel_bank_transfer(db, transfer.id)
    with pytest.raises(ValidationFailed):
        verify_bank_transfer(db, ctx, transfer.id, now=NOW)
    result = handle_sepay_webhook(db, ctx, _sepay(transfer.transfer_content), now=NOW)
    assert result == {"success": False, "message": "No match"}


def test_reinitiating_after_cancel_reopens_transfer(db, transfer):
    cancel_bank_transfer(db, transfer.id, reason="Paying at the desk instead")
    payment = transfer.payment

    again = payment_service.initiate_payment(
        db,
        member_id=payment.member_id,
        amount=payment.amount,
        payment_method="BANK_TRANSFER",
        subscription_id=payment.subscription_id,
        now=NOW + timedelta(hours=1),
    )

    assert again.bank_transfer.id == transfer.id
    assert again.bank_transfer.status == "PENDING"
    assert again.bank_transfer.expires_at == NOW + timedelta(hours=1, minutes=30)


# ── Endpoint ──────────────────────────────────────────────────────────────────

def test_endpoint_always_answers_200(client, transfer):
    response = client.post(
        "/api/v1/bank-transfers/webhook/sepay",
        content=b"this is not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"success": False, "message": "Webhook processing error"}


def test_endpoint_reports_no_match_with_200(client, transfer):
    response = client.post("/api/v1/bank-transfers/webhook/sepay", json=_sepay("SEVQR GYMFIT ZZZZZZZZ"))

    assert response.status_code == 200
    assert response.json() == {"success": False, "message": "No match"}


def test_endpoint_checks_signature_when_key_configured(client, monkeypatch, transfer):
    monkeypatch.setattr(settings, "sepay_api_key", "sepay-key")
    body = b'{"id": "1", "content": "SEVQR GYMFIT ZZZZZZZZ", "transferType": "in", "transferAmount": 1}'

    rejected = client.post(
        "/api/v1/bank-transfers/webhook/sepay",
        content=body,
        headers={"Content-Type": "application/json", "X-Sepay-Signature": "bad"},
    )
    accepted = client.post(
        "/api/v1/bank-transfers/webhook/sepay",
        content=body,
        headers={"Content-Type": "application/json", "X-Sepay-Signature": compute_signature("sepay-key", body)},
    )

    assert rejected.status_code == 200
    assert rejected.json() == {"success": False, "message": "Invalid signature"}
    assert accepted.json()["message"] == "No match"


def test_get_by_transfer_or_payment_id(client, transfer):
    by_id = client.get(f"/api/v1/bank-transfers/{transfer.id}")
    by_payment = client.get(f"/api/v1/bank-transfers/{transfer.payment_id}")
    missing = client.get(f"/api/v1/bank-transfers/{uuid.uuid4()}")

    assert by_id.status_code == 200
    assert by_id.json()["data"]["transfer_content"] == transfer.transfer_content
    assert by_payment.json()["data"]["id"] == str(transfer.id)
    assert missing.status_code == 404


def test_verify_endpoint_answers_202_until_found(client, db, transfer):
    transfer.expires_at = datetime.now(timezone.utc) + timedelta(minutes=30)
    db.commit()

    response = client.post(f"/api/v1/bank-transfers/{transfer.id}/verify")

    assert response.status_code == 202
    assert response.json()["success"] is False
    assert response.json()["data"]["status"] == "PENDING"


def test_verify_endpoint_rejects_expired_transfer(client, transfer):
    # The fixture transfer expired at NOW + 30 minutes
    response = client.post(f"/api/v1/bank-transfers/{transfer.id}/verify")

    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"
    assert transfer.status == "EXPIRED"


def test_cancel_endpoint(client, transfer):
    response = client.post(f"/api/v1/bank-transfers/{transfer.id}/cancel", json={"reason": "Wrong amount"})

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "CANCELLED"
    assert response.json()["data"]["notes"] == "Wrong amount"
