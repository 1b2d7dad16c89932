"""HTTP API and live event stream for the orchestrator."""

from __future__ import annotations

import json
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

from task_market.config import DEFAULT_BUDGET_LIMIT
from task_market.errors import InvalidTask
from task_market.events import EventBus
from task_market.logs import get_logger
from task_market.orchestrator import Orchestrator
from task_market.schemas import LiveEvent, efficiency_score

log = get_logger("server")

_CANCEL_RE = re.compile(r"^/task/([^/]+)/cancel$")
_SORTS = {"efficiency", "price", "reputation"}


class BadRequest(Exception):
    pass


class OrchestratorHandler(BaseHTTPRequestHandler):
    orchestrator: Orchestrator
    bus: EventBus
    heartbeat_s: float
    stop_event: threading.Event

    protocol_version = "HTTP/1.1"

    def do_GET(self) -> None:
        url = urlsplit(self.path)
        query = parse_qs(url.query)
        try:
            if url.path == "/health":
                self._serve_health()
            elif url.path == "/registry":
                self._serve_registry(query)
            elif url.path == "/ledger":
                self._serve_ledger(query)
            elif url.path == "/events":
                self._serve_event_stream(query)
            else:
                self._send_json({"error": "not found"}, status=404)
        except BadRequest as e:
            self._send_json({"error": str(e)}, status=400)

    def do_POST(self) -> None:
        url = urlsplit(self.path)
        try:
            if url.path == "/task":
                self._run_task()
                return
            m = _CANCEL_RE.match(url.path)
            if m:
                self._cancel_task(m.group(1))
                return
            self._send_json({"error": "not found"}, status=404)
        except BadRequest as e:
            self._send_json({"error": str(e)}, status=400)

    def do_OPTIONS(self) -> None:
        self.send_response(204)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _read_json(self) -> dict[str, Any]:
        length = int(self.headers.get("Content-Length") or 0)
        raw = self.rfile.read(length) if length > 0 else b""
        if not raw:
            return {}
        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BadRequest("request body must be JSON") from e
        if not isinstance(body, dict):
            raise BadRequest("request body must be a JSON object")
        return body

    def _run_task(self) -> None:
        body = self._read_json()
        text = body.get("text")
        if not isinstance(text, str) or not text.strip():
            raise BadRequest("text is required")
        raw_budget = body.get("budgetLimit", DEFAULT_BUDGET_LIMIT)
        try:
            budget = float(raw_budget)
        except (TypeError, ValueError) as e:
            raise BadRequest("budgetLimit must be a number") from e
        task_id = body.get("taskId")
        try:
            report = self.orchestrator.run_task(
                text,
                budget_limit=budget,
                requester_id=str(body.get("requesterId") or "") or None,
                task_id=str(task_id) if task_id else None,
            )
        except InvalidTask as e:
            raise BadRequest(str(e)) from e
        self._send_json(report.model_dump(mode="json"))

    def _cancel_task(self, task_id: str) -> None:
        if self.orchestrator.cancel(task_id):
            self._send_json({"taskId": task_id, "cancelled": True}, status=202)
        else:
            self._send_json({"taskId": task_id, "error": "task not running"}, status=404)

    def _serve_health(self) -> None:
        orch = self.orchestrator
        self._send_json(
            {
                "status": "ok",
                "workers": len(orch.registry),
                "ledger_records": len(orch.ledger),
                "subscribers": self.bus.subscriber_count(),
                "running_tasks": orch.running_tasks(),
            }
        )

    def _serve_registry(self, query: dict[str, list[str]]) -> None:
        category = (query.get("category") or [""])[0].strip() or None
        sort = (query.get("sort") or ["efficiency"])[0].strip() or "efficiency"
        if sort not in _SORTS:
            raise BadRequest(f"sort must be one of {sorted(_SORTS)}")
        settings = self.orchestrator.settings
        workers = self.orchestrator.registry.ranked(
            category=category,
            sort=sort,  # type: ignore[arg-type]
            k=settings.efficiency_k,
            epsilon=settings.efficiency_epsilon,
        )
        listed = []
        for w in workers:
            data = w.model_dump(mode="json")
            # Match the ranking, which uses the configured k and epsilon.
            data["efficiency"] = efficiency_score(
                reputation=w.reputation,
                price=w.price,
                k=settings.efficiency_k,
                epsilon=settings.efficiency_epsilon,
            )
            listed.append(data)
        self._send_json({"workers": listed})

    def _serve_ledger(self, query: dict[str, list[str]]) -> None:
        raw = (query.get("limit") or ["50"])[0]
        try:
            limit = int(raw)
        except ValueError as e:
            raise BadRequest("limit must be an int") from e
        ledger = self.orchestrator.ledger
        records = ledger.recent(limit)
        self._send_json(
            {
                "records": [r.model_dump(mode="json") for r in records],
                "count": len(ledger),
                "total": ledger.total(),
            }
        )

    def _write_event(self, event: LiveEvent) -> None:
        data = json.dumps(event.model_dump(mode="json"), default=str)
        frame = f"id: {event.seq}\nevent: {event.type.value}\ndata: {data}\n\n"
        self.wfile.write(frame.encode("utf-8"))
        self.wfile.flush()

    def _serve_event_stream(self, query: dict[str, list[str]]) -> None:
        client_id = (query.get("clientId") or [""])[0].strip() or None
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Connection", "close")
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.close_connection = True

        with self.bus.subscribe(client_id) as sub:
            log.info("sse client connected client_id=%s", sub.client_id)
            try:
                self.wfile.write(b": connected\n\n")
                self.wfile.flush()
                while not self.stop_event.is_set():
                    event = sub.get(timeout=self.heartbeat_s)
                    if event is not None:
                        self._write_event(event)
                        continue
                    if sub.closed:
                        break
                    self.wfile.write(b": heartbeat\n\n")
                    self.wfile.flush()
            except (BrokenPipeError, ConnectionResetError):
                pass
            log.info("sse client disconnected client_id=%s", sub.client_id)

    def _send_json(self, data: Any, status: int = 200) -> None:
        body = json.dumps(data, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        log.debug("%s - %s", self.address_string(), format % args)


def create_handler_class(
    *, orchestrator: Orchestrator, heartbeat_s: float = 15.0, stop_event: threading.Event | None = None
) -> type[OrchestratorHandler]:
    """Create a handler class with the orchestrator bound."""
    if orchestrator.bus is None:
        raise ValueError("orchestrator has no event bus")

    class BoundHandler(OrchestratorHandler):
        pass

    BoundHandler.orchestrator = orchestrator
    BoundHandler.bus = orchestrator.bus
    BoundHandler.heartbeat_s = float(heartbeat_s)
    BoundHandler.stop_event = stop_event or threading.Event()
    return BoundHandler


def make_server(
    orchestrator: Orchestrator, *, host: str = "127.0.0.1", port: int = 8000, heartbeat_s: float = 15.0
) -> ThreadingHTTPServer:
    handler_class = create_handler_class(orchestrator=orchestrator, heartbeat_s=heartbeat_s)
    server = ThreadingHTTPServer((host, port), handler_class)
    server.daemon_threads = True
    return server


def stop_server(server: ThreadingHTTPServer) -> None:
    handler = server.RequestHandlerClass
    stop_event = getattr(handler, "stop_event", None)
    if isinstance(stop_event, threading.Event):
        stop_event.set()
    server.shutdown()
    server.server_close()


def serve(orchestrator: Orchestrator, *, host: str = "127.0.0.1", port: int = 8000) -> None:
    server = make_server(orchestrator, host=host, port=port)
    print(f"task-market listening on http://{host}:{server.server_address[1]}")
    print("Press Ctrl+C to stop\n")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        stop_server(server)
        orchestrator.shutdown(wait=False)
