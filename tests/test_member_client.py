import json
from decimal import Decimal

import httpx
import pytest

from billing_service.services.member_client import MemberServiceClient, MemberServiceError

BASE = "http://members.test"
IDENTITY = "http://identity.test"


def _client(handler):
    requests = []

    def recording(request):
        requests.append(request)
        return handler(request)

    transport = httpx.MockTransport(recording)
    client = MemberServiceClient(
        BASE, IDENTITY, http_client_factory=lambda: httpx.Client(transport=transport)
    )
    return client, requests


def test_resolve_user_id_unwraps_nested_member():
    client, requests = _client(
        lambda r: httpx.Response(200, json={"success": True, "data": {"member": {"id": "m1", "user_id": "u1"}}})
    )

    assert client.resolve_user_id("m1") == "u1"
    assert requests[0].method == "GET"
    assert str(requests[0].url) == f"{BASE}/members/m1"


def test_member_without_user_id():
    client, _ = _client(lambda r: httpx.Response(200, json={"data": {"id": "m1"}}))

    with pytest.raises(MemberServiceError):
        client.resolve_user_id("m1")


def test_upsert_membership_posts_payload():
    client, requests = _client(lambda r: httpx.Response(201, json={"success": True}))
    payload = {"membership_type": "PREMIUM", "start_date": "2026-03-01", "end_date": "2026-04-01"}

    client.upsert_membership("u1", payload)

    assert requests[0].url.path == "/members/user/u1/memberships"
    assert json.loads(requests[0].content) == payload


def test_non_2xx_becomes_member_service_error():
    client, _ = _client(lambda r: httpx.Response(503, json={"message": "down"}))

    with pytest.raises(MemberServiceError) as excinfo:
        client.upsert_membership("u1", {})
    assert "503" in str(excinfo.value)
    assert excinfo.value.status_code == 502


def test_transport_error_becomes_member_service_error():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = _client(boom)

    with pytest.raises(MemberServiceError):
        client.get_member("m1")


def test_invalid_json_becomes_member_service_error():
    client, _ = _client(lambda r: httpx.Response(200, content=b"<html>oops</html>"))

    with pytest.raises(MemberServiceError):
        client.get_member("m1")


def test_credit_points_sends_idempotency_key():
    client, requests = _client(lambda r: httpx.Response(200, json={"success": True}))

    client.credit_points(
        "ref-1", 50,
        source="REFERRAL", source_id="usage-1",
        description="Referral reward", idempotency_key="referral:usage-1",
    )

    body = json.loads(requests[0].content)
    assert requests[0].url.path == "/members/ref-1/points/credit"
    assert body["points"] == 50
    assert body["idempotency_key"] == "referral:usage-1"


def test_verify_reward_code():
    client, requests = _client(lambda r: httpx.Response(200, json={
        "success": True,
        "data": {
            "id": "red-1",
            "member_id": "m1",
            "status": "ACTIVE",
            "reward": {"reward_type": "PERCENTAGE_DISCOUNT", "discount_percent": 15},
        },
    }))

    redemption = client.verify_reward_code("REWARD-ABC")

    assert json.loads(requests[0].content) == {"code": "REWARD-ABC"}
    assert redemption.redemption_id == "red-1"
    assert redemption.discount_percent == Decimal("15")
    assert redemption.discount_amount is None


def test_mark_redemption_used():
    client, requests = _client(lambda r: httpx.Response(200, json={"success": True}))

    client.mark_redemption_used("red-1")

    assert requests[0].method == "PUT"
    assert requests[0].url.path == "/redemptions/red-1/mark-used"


def test_list_admin_ids_uses_identity_service():
    client, requests = _client(lambda r: httpx.Response(200, json={
        "data": {"users": [{"id": "a1"}, {"id": 2}, {"name": "no id"}]}
    }))

    assert client.list_admin_ids() == ["a1", "2"]
    assert str(requests[0].url) == f"{IDENTITY}/auth/users/admins"
