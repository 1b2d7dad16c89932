from __future__ import annotations

import http.client
import json
from typing import Any, Protocol
from urllib import error, request

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from task_market.capabilities import HANDLERS, Capability
from task_market.errors import WorkerCallFailure
from task_market.logs import get_logger
from task_market.schemas import (
    MathResult,
    NestedHire,
    StepResult,
    SummaryResult,
    TextResult,
    WeatherResult,
    WorkerEntry,
)

log = get_logger("workers")

_STEP_RESULT = TypeAdapter(StepResult)
_NESTED_HIRES = TypeAdapter(list[NestedHire])


class WorkerResponse(BaseModel):
    result: StepResult
    nested_hires: list[NestedHire] = Field(default_factory=list)


class WorkerClient(Protocol):
    def call(
        self, worker: WorkerEntry, params: dict[str, Any], *, timeout_s: float | None = None
    ) -> WorkerResponse: ...


def decode_step_result(payload: Any) -> StepResult:
    """Turn a worker's JSON payload into one of the StepResult variants.

    Tagged payloads (with ``kind``) are validated directly. Untagged ones are
    recognised by their fields; a bare string becomes a TextResult.
    """
    if isinstance(payload, str):
        return TextResult(text=payload)
    if not isinstance(payload, dict):
        raise WorkerCallFailure(f"unexpected worker payload type: {type(payload).__name__}")
    try:
        if "kind" in payload:
            return _STEP_RESULT.validate_python(payload)
        if "summary" in payload:
            return SummaryResult.model_validate(payload)
        if "city" in payload and ("temp_c" in payload or "temp" in payload):
            body = dict(payload)
            body.setdefault("temp_c", body.pop("temp", None))
            return WeatherResult.model_validate(body)
        if "expression" in payload and ("value" in payload or "result" in payload):
            body = dict(payload)
            body.setdefault("value", body.pop("result", None))
            return MathResult.model_validate(body)
        for key in ("text", "result", "answer"):
            if isinstance(payload.get(key), str):
                return TextResult(text=payload[key], source=payload.get("source"))
    except ValidationError as e:
        raise WorkerCallFailure(f"malformed worker payload: {e.error_count()} error(s)") from e
    raise WorkerCallFailure("unrecognised worker payload")


def decode_nested_hires(payload: Any) -> list[NestedHire]:
    if payload is None:
        return []
    try:
        return _NESTED_HIRES.validate_python(payload)
    except ValidationError as e:
        raise WorkerCallFailure(f"malformed nested hires: {e.error_count()} error(s)") from e


def decode_worker_response(body: Any) -> WorkerResponse:
    if isinstance(body, dict) and "result" in body and not isinstance(body["result"], str):
        result_payload = body["result"]
    else:
        result_payload = body
    hires = body.get("nested_hires") if isinstance(body, dict) else None
    return WorkerResponse(
        result=decode_step_result(result_payload),
        nested_hires=decode_nested_hires(hires),
    )


class HttpWorkerClient:
    """POSTs the step parameters as JSON to ``worker.endpoint``."""

    def __init__(self, *, default_timeout_s: float = 15.0) -> None:
        self._default_timeout_s = float(default_timeout_s)

    def call(
        self, worker: WorkerEntry, params: dict[str, Any], *, timeout_s: float | None = None
    ) -> WorkerResponse:
        if not worker.endpoint:
            raise WorkerCallFailure(f"worker {worker.id} has no endpoint")
        req = request.Request(
            url=worker.endpoint,
            data=json.dumps(params).encode("utf-8"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=timeout_s or self._default_timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except error.HTTPError as e:
            raise WorkerCallFailure(f"worker {worker.id} rejected the call", status=e.code) from e
        except error.URLError as e:
            raise WorkerCallFailure(f"worker {worker.id} unreachable: {e.reason}") from e
        except TimeoutError as e:
            raise WorkerCallFailure(f"worker {worker.id} timed out") from e
        except (http.client.HTTPException, OSError) as e:
            raise WorkerCallFailure(f"worker {worker.id} connection failed: {e!r}") from e
        try:
            body = json.loads(raw)
        except json.JSONDecodeError as e:
            raise WorkerCallFailure(f"worker {worker.id} returned invalid JSON") from e
        return decode_worker_response(body)


class LocalWorkerClient:
    """Serves calls in-process from the built-in capability handlers."""

    def __init__(self, handlers: dict[str, Capability] | None = None) -> None:
        self._handlers = dict(HANDLERS if handlers is None else handlers)

    def call(
        self, worker: WorkerEntry, params: dict[str, Any], *, timeout_s: float | None = None
    ) -> WorkerResponse:
        _ = timeout_s
        handler = self._handlers.get(worker.handler or "")
        if handler is None:
            raise WorkerCallFailure(f"worker {worker.id} has no local handler {worker.handler!r}")
        try:
            result, hires = handler(dict(params))
        except Exception as e:
            raise WorkerCallFailure(f"worker {worker.id}: {e}") from e
        return WorkerResponse(result=result, nested_hires=hires)


class RoutingWorkerClient:
    """HTTP for workers with an endpoint, local handlers for the rest."""

    def __init__(
        self, *, http: WorkerClient | None = None, local: WorkerClient | None = None
    ) -> None:
        self._http = http or HttpWorkerClient()
        self._local = local or LocalWorkerClient()

    def call(
        self, worker: WorkerEntry, params: dict[str, Any], *, timeout_s: float | None = None
    ) -> WorkerResponse:
        client = self._http if worker.endpoint else self._local
        return client.call(worker, params, timeout_s=timeout_s)
