# billing_service/services/sepay_client.py
# Read-only client for the Sepay user API (transaction list)
#
# Used when a member asks us to re-check a transfer that no webhook has
# confirmed yet. Transport errors, non-2xx responses and malformed bodies
# all surface as SepayError.

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

import httpx

from billing_service.core.config import settings
from billing_service.core.errors import DownstreamError

logger = logging.getLogger("billing.sepay")


class SepayError(DownstreamError):
    pass


@dataclass
class SepayListedTransaction:
    id: str
    content: str
    amount_in: Decimal
    amount_out: Decimal
    reference_number: Optional[str]
    transaction_date: Optional[str]
    raw: Dict[str, Any]

    @property
    def is_incoming(self) -> bool:
        return self.amount_in > 0 and self.amount_out == 0


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value or 0))
    except InvalidOperation:
        return Decimal(0)


def _transactions_from(body: Any) -> List[Dict[str, Any]]:
    """Sepay answers {"transactions": [...]}; older accounts get a bare list or {"data": [...]}."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in ("transactions", "data"):
            if isinstance(body.get(key), list):
                return body[key]
    return []


class SepayClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        http_client_factory: Optional[Callable[[], httpx.Client]] = None,
    ):
        self._base_url = (base_url or settings.sepay_api_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.sepay_api_key
        self._http_client_factory = http_client_factory or httpx.Client
        self._timeout = settings.service_read_timeout_seconds

    def list_transactions(
        self,
        *,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[SepayListedTransaction]:
        params: Dict[str, Any] = {"limit": limit}
        if settings.sepay_account_number:
            params["account_number"] = settings.sepay_account_number
        if since is not None:
            params["transaction_date_min"] = since.strftime("%Y-%m-%d %H:%M:%S")

        url = f"{self._base_url}/transactions/list"
        try:
            with self._http_client_factory() as client:
                response = client.get(
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    timeout=self._timeout,
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise SepayError(f"GET {url} returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise SepayError(f"GET {url} failed: {exc}") from exc
        except ValueError as exc:
            raise SepayError(f"GET {url} returned invalid JSON") from exc

        return [
            SepayListedTransaction(
                id=str(tx.get("id")),
                content=tx.get("transaction_content") or "",
                amount_in=_decimal(tx.get("amount_in")),
                amount_out=_decimal(tx.get("amount_out")),
                reference_number=tx.get("reference_number"),
                transaction_date=tx.get("transaction_date"),
                raw=tx,
            )
            for tx in _transactions_from(body)
            if isinstance(tx, dict) and tx.get("id") is not None
        ]
