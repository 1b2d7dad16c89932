from __future__ import annotations

import json
import socket
import threading
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import pytest

from task_market.cancellation import CancelToken
from task_market.errors import SettlementError, TaskCancelled
from task_market.settlement import FacilitatorSettlement, SimulatedSettlement


def test_simulated_settlement_issues_unique_sim_tx_ids() -> None:
    settlement = SimulatedSettlement(payer_id="alice")
    a = settlement.pay("weather", 0.001)
    b = settlement.pay("weather", 0.001)
    assert a.tx_id.startswith("sim_tx_")
    assert a.tx_id != b.tx_id
    assert a.payer == "alice"
    assert a.amount == pytest.approx(0.001)
    assert a.explorer_url is not None and a.tx_id in a.explorer_url


def test_simulated_settlement_honours_cancellation_and_rejects_negative() -> None:
    token = CancelToken()
    token.cancel()
    with pytest.raises(TaskCancelled):
        SimulatedSettlement().pay("w", 0.01, token=token)
    with pytest.raises(SettlementError):
        SimulatedSettlement().pay("w", -0.01)


class _FacilitatorHandler(BaseHTTPRequestHandler):
    status = 200
    reply: dict[str, Any] = {}
    received: list[dict[str, Any]] = []

    def do_POST(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        self.received.append({"path": self.path, **json.loads(self.rfile.read(length))})
        raw = json.dumps(self.reply).encode()
        self.send_response(self.status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def log_message(self, format: str, *args: Any) -> None:
        pass


@pytest.fixture
def facilitator() -> Iterator[tuple[str, type[_FacilitatorHandler]]]:
    class Handler(_FacilitatorHandler):
        received: list[dict[str, Any]] = []

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}", Handler
    finally:
        server.shutdown()
        server.server_close()


def test_facilitator_settlement_posts_payment(facilitator) -> None:
    url, handler = facilitator
    handler.reply = {"transaction": "0xabc", "payer": "SP1PAYER"}
    receipt = FacilitatorSettlement(base_url=url + "/", payer_id="requester").pay(
        "SP2WORKER", 0.01, timeout_s=2.0
    )
    assert receipt.tx_id == "0xabc"
    assert receipt.payer == "SP1PAYER"
    assert handler.received == [
        {
            "path": "/settle",
            "payTo": "SP2WORKER",
            "amount": 0.01,
            "payer": "requester",
            "network": "testnet",
        }
    ]


def test_facilitator_settlement_errors(facilitator) -> None:
    url, handler = facilitator
    settlement = FacilitatorSettlement(base_url=url, payer_id="requester")

    handler.status = 402
    handler.reply = {"error": "insufficient funds"}
    with pytest.raises(SettlementError, match="HTTP 402"):
        settlement.pay("w", 0.01, timeout_s=2.0)

    handler.status = 200
    handler.reply = {"error": "nonce"}
    with pytest.raises(SettlementError, match="no transaction"):
        settlement.pay("w", 0.01, timeout_s=2.0)


def test_facilitator_settlement_unreachable() -> None:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    settlement = FacilitatorSettlement(base_url=f"http://127.0.0.1:{port}", payer_id="r")
    with pytest.raises(SettlementError):
        settlement.pay("w", 0.01, timeout_s=2.0)
