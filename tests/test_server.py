from __future__ import annotations

import http.client
import json
import threading
import time
import urllib.error
import urllib.request
from typing import Any

import pytest

from task_market.orchestrator import Orchestrator, build_orchestrator
from task_market.schemas import efficiency_score
from task_market.server import make_server, stop_server

from tests.helpers import RecordingSettlement, ScriptedWorkerClient, entry, fast_settings, make_registry


def _start(orch: Orchestrator):
    server = make_server(orch, host="127.0.0.1", port=0, heartbeat_s=0.1)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, thread


@pytest.fixture
def orch():
    o = build_orchestrator(fast_settings())
    yield o
    o.shutdown(wait=False)


@pytest.fixture
def server(orch: Orchestrator):
    srv, thread = _start(orch)
    yield srv
    stop_server(srv)
    thread.join(timeout=5)


def _url(srv, path: str) -> str:
    host, port = srv.server_address[:2]
    return f"http://{host}:{port}{path}"


def _request(srv, path: str, *, method: str = "GET", body: Any = None) -> tuple[int, dict[str, Any]]:
    data = None if body is None else json.dumps(body).encode("utf-8")
    req = urllib.request.Request(_url(srv, path), data=data, method=method)
    if data is not None:
        req.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            return resp.status, json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        return e.code, json.loads(e.read().decode("utf-8"))


def test_health_reports_counts(server) -> None:
    status, body = _request(server, "/health")
    assert status == 200
    assert body["status"] == "ok"
    assert body["workers"] == 8
    assert body["ledger_records"] == 0
    assert body["running_tasks"] == []


def test_registry_listing_sorts_and_filters(server) -> None:
    status, body = _request(server, "/registry?category=data")
    assert status == 200
    assert [w["id"] for w in body["workers"]] == ["weather", "weather-backup"]
    assert "efficiency" in body["workers"][0]

    _, by_price = _request(server, "/registry?sort=price")
    prices = [w["price"] for w in by_price["workers"]]
    assert prices == sorted(prices)

    status, body = _request(server, "/registry?sort=random")
    assert status == 400
    assert "sort" in body["error"]


def test_task_endpoint_runs_and_records_settlement(server) -> None:
    status, report = _request(
        server, "/task", method="POST", body={"text": "weather in Berlin", "budgetLimit": 0.05}
    )
    assert status == 200
    assert report["trace"]["outcomes"][0]["worker_id"] == "weather"
    assert "Berlin" in report["answer"]

    status, ledger = _request(server, "/ledger?limit=5")
    assert status == 200
    assert ledger["count"] == 1
    assert ledger["records"][0]["worker_id"] == "weather"
    assert ledger["total"] == pytest.approx(0.001)


@pytest.mark.parametrize(
    "body",
    [{}, {"text": "  "}, {"text": "weather", "budgetLimit": "lots"}, {"text": "weather", "budgetLimit": -1}],
    ids=["missing", "blank", "bad-budget", "negative-budget"],
)
def test_task_endpoint_rejects_bad_requests(server, body) -> None:
    status, payload = _request(server, "/task", method="POST", body=body)
    assert status == 400
    assert payload["error"]


def test_unknown_paths_and_tasks_are_404(server) -> None:
    assert _request(server, "/nope")[0] == 404
    status, body = _request(server, "/task/missing/cancel", method="POST", body={})
    assert status == 404
    assert body["taskId"] == "missing"


def _read_frames(resp: http.client.HTTPResponse, until: str) -> list[str]:
    lines: list[str] = []
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        line = resp.readline().decode("utf-8").rstrip("\n")
        if line:
            lines.append(line)
        if line == until:
            return lines
    raise AssertionError(f"never saw {until!r}; got {lines}")


def test_event_stream_delivers_live_events(server) -> None:
    host, port = server.server_address[:2]
    conn = http.client.HTTPConnection(host, port, timeout=10)
    try:
        conn.request("GET", "/events?clientId=viewer")
        resp = conn.getresponse()
        assert resp.status == 200
        assert resp.getheader("Content-Type") == "text/event-stream"
        assert _read_frames(resp, ": connected") == [": connected"]

        status, _ = _request(server, "/task", method="POST", body={"text": "weather in Dubai"})
        assert status == 200

        lines = _read_frames(resp, "event: done")
        events = [line.split(": ", 1)[1] for line in lines if line.startswith("event: ")]
        assert events[0] == "step"
        assert "payment" in events
        assert events[-1] == "done"
        ids = [int(line.split(": ", 1)[1]) for line in lines if line.startswith("id: ")]
        assert ids == sorted(ids)
    finally:
        conn.close()


def test_event_stream_sends_heartbeats_when_idle(server) -> None:
    host, port = server.server_address[:2]
    conn = http.client.HTTPConnection(host, port, timeout=10)
    try:
        conn.request("GET", "/events")
        resp = conn.getresponse()
        _read_frames(resp, ": connected")
        assert _read_frames(resp, ": heartbeat")[-1] == ": heartbeat"
    finally:
        conn.close()


def test_running_task_can_be_cancelled_over_http() -> None:
    workers = ScriptedWorkerClient(delays={"slow": 5.0})
    orch = build_orchestrator(
        fast_settings(worker_timeout_s=10.0),
        registry=make_registry(entry("slow", "data", 0.001)),
        workers=workers,
        settlement=RecordingSettlement(),
    )
    srv, thread = _start(orch)
    result: dict[str, Any] = {}

    def _post() -> None:
        result["response"] = _request(
            srv, "/task", method="POST", body={"text": "weather in Rome", "taskId": "t-http"}
        )

    poster = threading.Thread(target=_post)
    poster.start()
    try:
        deadline = time.monotonic() + 5
        while workers.calls != ["slow"] and time.monotonic() < deadline:
            time.sleep(0.01)
        status, body = _request(srv, "/task/t-http/cancel", method="POST", body={})
        assert status == 202
        assert body == {"taskId": "t-http", "cancelled": True}
        poster.join(timeout=10)
    finally:
        workers.release.set()
        stop_server(srv)
        thread.join(timeout=5)
        orch.shutdown(wait=False)

    status, report = result["response"]
    assert status == 200
    assert report["trace"]["cancelled"] is True
    assert report["trace"]["outcomes"] == []


def test_registry_efficiency_follows_configured_constants() -> None:
    settings = fast_settings(efficiency_k=1.0, efficiency_epsilon=10.0)
    orch = build_orchestrator(
        settings,
        registry=make_registry(
            entry("cheap", "data", 0.0, reputation=60),
            entry("strong", "data", 1.0, reputation=90),
        ),
    )
    srv, thread = _start(orch)
    try:
        status, body = _request(srv, "/registry")
    finally:
        stop_server(srv)
        thread.join(timeout=5)
        orch.shutdown(wait=False)

    assert status == 200
    listed = {w["id"]: w["efficiency"] for w in body["workers"]}
    assert listed["cheap"] == pytest.approx(efficiency_score(reputation=60, price=0.0, k=1.0, epsilon=10.0))
    assert listed["strong"] == pytest.approx(efficiency_score(reputation=90, price=1.0, k=1.0, epsilon=10.0))
    # 8100/11 beats 3600/10 here; with the default epsilon the free worker ranks first.
    assert [w["id"] for w in body["workers"]] == ["strong", "cheap"]
    efficiencies = [w["efficiency"] for w in body["workers"]]
    assert efficiencies == sorted(efficiencies, reverse=True)
