# billing_service/services/member_client.py
# HTTP client for the member and identity services
#
# Every call has an explicit timeout (5s reads, 10s writes). Any transport
# error, non-2xx response or malformed body is raised as MemberServiceError
# so callers only have one exception type to turn into a compensation task.

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import httpx

from billing_service.core.config import settings
from billing_service.core.errors import DownstreamError

logger = logging.getLogger("billing.member_client")


class MemberServiceError(DownstreamError):
    pass


@dataclass
class RewardRedemption:
    """A REWARD- code as verified by the member service."""
    redemption_id: str
    member_id: str
    status: str
    reward_type: str
    discount_percent: Optional[Decimal]
    discount_amount: Optional[Decimal]


def _unwrap(body: Any) -> Any:
    """Member service wraps payloads as {success, data}; data may nest 'member'."""
    if isinstance(body, dict) and "data" in body:
        data = body["data"]
        if isinstance(data, dict) and isinstance(data.get("member"), dict):
            return data["member"]
        return data
    return body


class MemberServiceClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        identity_url: Optional[str] = None,
        *,
        http_client_factory: Optional[Callable[[], httpx.Client]] = None,
    ):
        self._base_url = (base_url or settings.member_service_url).rstrip("/")
        self._identity_url = (identity_url or settings.identity_service_url).rstrip("/")
        self._http_client_factory = http_client_factory or httpx.Client
        self._read_timeout = settings.service_read_timeout_seconds
        self._write_timeout = settings.service_write_timeout_seconds

    # ── Transport ─────────────────────────────────────────────────────────────

    def _request(
        self,
        method: str,
        url: str,
        *,
        timeout: float,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            with self._http_client_factory() as client:
                response = client.request(method, url, json=json, timeout=timeout)
                response.raise_for_status()
                return response.json() if response.content else {}
        except httpx.HTTPStatusError as exc:
            raise MemberServiceError(
                f"{method} {url} returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise MemberServiceError(f"{method} {url} failed: {exc}") from exc
        except ValueError as exc:
            raise MemberServiceError(f"{method} {url} returned invalid JSON") from exc

    # ── Members ───────────────────────────────────────────────────────────────

    def get_member(self, member_id: str) -> Dict[str, Any]:
        body = self._request(
            "GET", f"{self._base_url}/members/{member_id}", timeout=self._read_timeout
        )
        member = _unwrap(body)
        if not isinstance(member, dict):
            raise MemberServiceError(f"Member {member_id} not found in member service")
        return member

    def resolve_user_id(self, member_id: str) -> str:
        member = self.get_member(member_id)
        user_id = member.get("user_id")
        if not user_id:
            raise MemberServiceError(f"Member {member_id} has no user_id")
        return str(user_id)

    def upsert_membership(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """payload: {membership_type, start_date, end_date} (ISO dates)."""
        return self._request(
            "POST",
            f"{self._base_url}/members/user/{user_id}/memberships",
            json=payload,
            timeout=self._write_timeout,
        )

    # ── Loyalty points ────────────────────────────────────────────────────────

    def credit_points(
        self,
        member_id: str,
        points: int,
        *,
        source: str,
        source_id: str,
        description: str,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"{self._base_url}/members/{member_id}/points/credit",
            json={
                "points": points,
                "source": source,
                "source_id": source_id,
                "description": description,
                "idempotency_key": idempotency_key,
            },
            timeout=self._write_timeout,
        )

    def award_points(self, member_id: str, points: int, *, source_id: str, description: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"{self._base_url}/members/{member_id}/points/award",
            json={
                "points": points,
                "source": "PAYMENT",
                "source_id": source_id,
                "description": description,
            },
            timeout=self._write_timeout,
        )

    # ── Reward redemptions (REWARD- codes) ────────────────────────────────────

    def verify_reward_code(self, code: str) -> RewardRedemption:
        body = self._request(
            "POST",
            f"{self._base_url}/rewards/verify-code",
            json={"code": code},
            timeout=self._read_timeout,
        )
        data = _unwrap(body)
        if not isinstance(data, dict) or not data.get("id"):
            raise MemberServiceError(f"Reward code {code} could not be verified")
        reward = data.get("reward") or {}

        def _dec(value):
            return Decimal(str(value)) if value is not None else None

        return RewardRedemption(
            redemption_id=str(data["id"]),
            member_id=str(data.get("member_id", "")),
            status=str(data.get("status", "")),
            reward_type=str(reward.get("reward_type", "")),
            discount_percent=_dec(reward.get("discount_percent")),
            discount_amount=_dec(reward.get("discount_amount")),
        )

    def mark_redemption_used(self, redemption_id: str) -> Dict[str, Any]:
        return self._request(
            "PUT",
            f"{self._base_url}/redemptions/{redemption_id}/mark-used",
            timeout=self._write_timeout,
        )

    # ── Identity service ──────────────────────────────────────────────────────

    def list_admin_ids(self) -> List[str]:
        body = self._request(
            "GET", f"{self._identity_url}/auth/users/admins", timeout=self._read_timeout
        )
        data = _unwrap(body)
        users = data.get("users", []) if isinstance(data, dict) else data or []
        return [str(u["id"]) for u in users if isinstance(u, dict) and u.get("id")]
