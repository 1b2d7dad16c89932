from __future__ import annotations

import json
import secrets
from typing import Any, Protocol
from urllib import error, request

from task_market.cancellation import CancelToken
from task_market.errors import SettlementError, SettlementTimeout
from task_market.logs import get_logger
from task_market.schemas import Receipt

log = get_logger("settlement")

EXPLORER_BASE = "https://explorer.hiro.so"


class Settlement(Protocol):
    def pay(
        self,
        address: str,
        amount: float,
        *,
        token: CancelToken | None = None,
        timeout_s: float | None = None,
    ) -> Receipt: ...


class SimulatedSettlement:
    """Settles instantly with a locally generated transaction id."""

    def __init__(self, *, payer_id: str = "requester") -> None:
        self._payer_id = payer_id

    def pay(
        self,
        address: str,
        amount: float,
        *,
        token: CancelToken | None = None,
        timeout_s: float | None = None,
    ) -> Receipt:
        _ = timeout_s
        if token is not None:
            token.raise_if_cancelled()
        if amount < 0:
            raise SettlementError(f"negative amount {amount:g} for {address}")
        tx_id = f"sim_tx_{secrets.token_hex(8)}"
        return Receipt(
            tx_id=tx_id,
            payer=self._payer_id,
            amount=float(amount),
            explorer_url=f"{EXPLORER_BASE}/txid/{tx_id}?chain=testnet",
        )


class FacilitatorSettlement:
    """Posts a payment request to an x402-style facilitator service.

    The facilitator answers with ``{"transaction": ..., "payer": ...}``;
    anything else is a settlement error.
    """

    def __init__(self, *, base_url: str, payer_id: str, network: str = "testnet") -> None:
        self._base_url = str(base_url).rstrip("/")
        self._payer_id = payer_id
        self._network = network

    def _post(self, payload: dict[str, Any], *, timeout_s: float | None) -> dict[str, Any]:
        req = request.Request(
            url=f"{self._base_url}/settle",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=timeout_s or 30) as resp:
                body = resp.read().decode("utf-8", errors="replace")
        except error.HTTPError as e:
            raise SettlementError(f"facilitator rejected payment: HTTP {e.code}") from e
        except TimeoutError as e:
            raise SettlementTimeout(f"facilitator timed out after {timeout_s}s") from e
        except error.URLError as e:
            if isinstance(e.reason, TimeoutError):
                raise SettlementTimeout(f"facilitator timed out after {timeout_s}s") from e
            raise SettlementError(f"facilitator unreachable: {e.reason}") from e
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise SettlementError("facilitator returned invalid JSON") from e
        if not isinstance(data, dict):
            raise SettlementError("facilitator returned a non-object response")
        return data

    def pay(
        self,
        address: str,
        amount: float,
        *,
        token: CancelToken | None = None,
        timeout_s: float | None = None,
    ) -> Receipt:
        if token is not None:
            token.raise_if_cancelled()
        data = self._post(
            {
                "payTo": address,
                "amount": float(amount),
                "payer": self._payer_id,
                "network": self._network,
            },
            timeout_s=timeout_s,
        )
        tx_id = str(data.get("transaction") or data.get("tx_id") or "").strip()
        if not tx_id:
            raise SettlementError(f"facilitator returned no transaction: {data.get('error')}")
        return Receipt(
            tx_id=tx_id,
            payer=str(data.get("payer") or self._payer_id),
            amount=float(amount),
            explorer_url=f"{EXPLORER_BASE}/txid/{tx_id}?chain={self._network}",
        )
