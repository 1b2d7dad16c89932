from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import pytest

from task_market.errors import WorkerCallFailure
from task_market.schemas import MathResult, PlannedStep, StepStatus, SummaryResult, TextResult, WeatherResult
from task_market.workers import (
    HttpWorkerClient,
    LocalWorkerClient,
    RoutingWorkerClient,
    WorkerResponse,
    decode_nested_hires,
    decode_step_result,
    decode_worker_response,
)

from tests.helpers import ScriptedWorkerClient, entry, make_coordinator, make_registry


def test_decode_tagged_and_untagged_payloads() -> None:
    tagged = decode_step_result({"kind": "weather", "city": "Oslo", "temp_c": 3, "condition": "Snow"})
    assert isinstance(tagged, WeatherResult)
    assert isinstance(decode_step_result({"summary": "s", "original_length": 10}), SummaryResult)
    weather = decode_step_result({"city": "Oslo", "temp": 3, "condition": "Snow"})
    assert isinstance(weather, WeatherResult) and weather.temp_c == 3
    math_result = decode_step_result({"expression": "1+1", "result": 2})
    assert isinstance(math_result, MathResult) and math_result.value == 2
    text = decode_step_result({"result": "hi", "source": "x"})
    assert isinstance(text, TextResult) and text.source == "x"
    assert decode_step_result("plain") == TextResult(text="plain")


def test_decode_rejects_malformed_payloads() -> None:
    with pytest.raises(WorkerCallFailure, match="malformed"):
        decode_step_result({"kind": "weather", "city": "Oslo"})
    with pytest.raises(WorkerCallFailure, match="unrecognised"):
        decode_step_result({"foo": 1})
    with pytest.raises(WorkerCallFailure):
        decode_step_result([1, 2])
    with pytest.raises(WorkerCallFailure, match="nested hires"):
        decode_nested_hires([{"amount": 1}])


def test_decode_worker_response_reads_recursive_nested_hires() -> None:
    body = {
        "result": {"kind": "text", "text": "done"},
        "nested_hires": [
            {
                "worker_id": "summarizer",
                "capability_id": "summarize",
                "amount": 0.003,
                "sub_hires": [{"worker_id": "translator", "amount": 0.001}],
            }
        ],
    }
    response = decode_worker_response(body)
    assert isinstance(response.result, TextResult)
    assert response.nested_hires[0].sub_hires[0].worker_id == "translator"
    assert decode_worker_response({"result": "flat text"}).result == TextResult(text="flat text")


def test_local_client_dispatches_to_handler() -> None:
    client = LocalWorkerClient()
    worker = entry("weather", "data", 0.001, handler="weather")
    response = client.call(worker, {"city": "London"})
    assert isinstance(response.result, WeatherResult)
    assert response.result.condition == "Rainy"

    with pytest.raises(WorkerCallFailure, match="no local handler"):
        client.call(entry("x", "data", 0.001, handler="nope"), {})
    with pytest.raises(WorkerCallFailure, match="missing parameter"):
        client.call(entry("s", "summarize", 0.001, handler="summarize"), {})


def _broken_handler(params: dict[str, Any]) -> Any:
    return params["count"] + "items"


def test_local_client_wraps_any_handler_error() -> None:
    client = LocalWorkerClient({"broken": _broken_handler})
    with pytest.raises(WorkerCallFailure, match="worker b:"):
        client.call(entry("b", "data", 0.001, handler="broken"), {"count": 3})
    with pytest.raises(WorkerCallFailure, match="worker b:"):
        client.call(entry("b", "data", 0.001, handler="broken"), {})


def test_routing_client_prefers_http_for_workers_with_endpoints() -> None:
    http = ScriptedWorkerClient()
    local = ScriptedWorkerClient()
    router = RoutingWorkerClient(http=http, local=local)
    router.call(entry("remote", "data", 0.01, endpoint="http://example.invalid"), {})
    router.call(entry("builtin", "data", 0.01, handler="weather"), {})
    assert http.calls == ["remote"]
    assert local.calls == ["builtin"]


class _WorkerHandler(BaseHTTPRequestHandler):
    status = 200
    body: Any = None
    received: list[dict[str, Any]] = []

    def do_POST(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        self.received.append(json.loads(self.rfile.read(length)))
        raw = self.body if isinstance(self.body, bytes) else json.dumps(self.body).encode()
        self.send_response(self.status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def log_message(self, format: str, *args: Any) -> None:
        pass


@pytest.fixture
def worker_server() -> Iterator[tuple[str, type[_WorkerHandler]]]:
    class Handler(_WorkerHandler):
        received: list[dict[str, Any]] = []

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}/work", Handler
    finally:
        server.shutdown()
        server.server_close()


def test_http_client_posts_params_and_decodes(worker_server) -> None:
    url, handler = worker_server
    handler.body = {"summary": "short", "original_length": 40, "nested_hires": []}
    client = HttpWorkerClient()
    response = client.call(entry("remote", "summarize", 0.01, endpoint=url), {"text": "long"})
    assert isinstance(response, WorkerResponse)
    assert isinstance(response.result, SummaryResult)
    assert handler.received == [{"text": "long"}]


def test_http_client_maps_errors_to_worker_call_failure(worker_server) -> None:
    url, handler = worker_server
    worker = entry("remote", "summarize", 0.01, endpoint=url)
    client = HttpWorkerClient()

    handler.status = 500
    handler.body = {"error": "boom"}
    with pytest.raises(WorkerCallFailure) as excinfo:
        client.call(worker, {})
    assert excinfo.value.status == 500
    assert str(excinfo.value).startswith("HTTP 500:")

    handler.status = 200
    handler.body = b"not json"
    with pytest.raises(WorkerCallFailure, match="invalid JSON"):
        client.call(worker, {})

    with pytest.raises(WorkerCallFailure, match="no endpoint"):
        client.call(entry("local", "summarize", 0.01), {})


class _TruncatingHandler(BaseHTTPRequestHandler):
    def do_POST(self) -> None:
        self.rfile.read(int(self.headers.get("Content-Length") or 0))
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", "500")
        self.end_headers()
        self.wfile.write(b'{"result"')
        self.wfile.flush()
        self.close_connection = True

    def log_message(self, format: str, *args: Any) -> None:
        pass


@pytest.fixture
def truncating_url() -> Iterator[str]:
    server = ThreadingHTTPServer(("127.0.0.1", 0), _TruncatingHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}/work"
    finally:
        server.shutdown()
        server.server_close()


def test_http_client_maps_truncated_body_to_worker_call_failure(truncating_url) -> None:
    with pytest.raises(WorkerCallFailure, match="connection failed"):
        HttpWorkerClient().call(entry("remote", "data", 0.001, endpoint=truncating_url), {})


def test_truncated_http_response_heals_to_local_backup(truncating_url) -> None:
    registry = make_registry(
        entry("flaky", "data", 0.001, reputation=95, endpoint=truncating_url),
        entry("backup", "data", 0.002, reputation=80, handler="weather"),
    )
    coordinator, ledger = make_coordinator(registry, workers=RoutingWorkerClient())

    trace = coordinator.execute(
        [PlannedStep(capability_id="data", parameters={"city": "Tokyo"})], 0.05, "requester"
    )

    (outcome,) = trace.outcomes
    assert outcome.status == StepStatus.SUCCESS
    assert outcome.worker_id == "backup"
    assert outcome.self_healed
    assert outcome.attempts == ["flaky", "backup"]
    assert isinstance(outcome.result, WeatherResult)
    assert [r.worker_id for r in ledger.iter_records()] == ["backup"]


def test_math_worker_with_non_real_power_does_not_abort_the_task() -> None:
    registry = make_registry(entry("math-solver", "compute", 0.001, handler="math"))
    coordinator, _ = make_coordinator(registry, workers=LocalWorkerClient())

    trace = coordinator.execute(
        [PlannedStep(capability_id="compute", parameters={"expression": "2 + (-8)^0.5"})],
        0.05,
        "requester",
    )

    (outcome,) = trace.outcomes
    assert outcome.status == StepStatus.SUCCESS
    assert isinstance(outcome.result, MathResult)
    assert outcome.result.value == "Undefined or infinite"
