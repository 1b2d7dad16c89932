from __future__ import annotations

import threading
import time
from typing import Any

from task_market.cancellation import CancelToken
from task_market.config import OrchestratorSettings
from task_market.coordinator import ExecutionCoordinator
from task_market.errors import SettlementError, WorkerCallFailure
from task_market.events import EventBus
from task_market.ledger import SettlementLedger
from task_market.registry import WorkerRegistry
from task_market.schemas import NestedHire, PlannedStep, Receipt, TextResult, WorkerEntry
from task_market.workers import LocalWorkerClient, WorkerClient, WorkerResponse


def entry(worker_id: str, category: str, price: float, reputation: int = 80, **kw: Any) -> WorkerEntry:
    return WorkerEntry(
        id=worker_id,
        name=kw.pop("name", worker_id.title()),
        category=category,
        price=price,
        reputation=reputation,
        **kw,
    )


def make_registry(*entries: WorkerEntry, **kw: Any) -> WorkerRegistry:
    return WorkerRegistry(entries, **kw)


def fast_settings(**overrides: Any) -> OrchestratorSettings:
    base: dict[str, Any] = {
        "worker_timeout_s": 2.0,
        "settlement_timeout_s": 2.0,
        "planner_timeout_s": 2.0,
        "summarizer_timeout_s": 2.0,
    }
    base.update(overrides)
    return OrchestratorSettings(**base)


class ScriptedWorkerClient:
    """Answers per worker id from a script.

    A script value may be a WorkerResponse, an exception to raise, or a list of
    NestedHire to report alongside a default text result. ``delays`` makes a
    worker block (for timeout tests) until ``release`` is set.
    """

    def __init__(
        self,
        script: dict[str, Any] | None = None,
        *,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.script = dict(script or {})
        self.delays = dict(delays or {})
        self.release = threading.Event()
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def call(
        self, worker: WorkerEntry, params: dict[str, Any], *, timeout_s: float | None = None
    ) -> WorkerResponse:
        with self._lock:
            self.calls.append(worker.id)
        delay = self.delays.get(worker.id)
        if delay is not None:
            self.release.wait(delay)
        item = self.script.get(worker.id)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, WorkerResponse):
            return item
        hires = list(item) if isinstance(item, list) else []
        return WorkerResponse(
            result=TextResult(text=f"{worker.id} done", source=worker.id), nested_hires=hires
        )


class FlakyWorkerClient:
    """Fails for the given worker ids and delegates everything else."""

    def __init__(self, failing: set[str], inner: WorkerClient | None = None) -> None:
        self.failing = set(failing)
        self.inner = inner or LocalWorkerClient()
        self.calls: list[str] = []

    def call(
        self, worker: WorkerEntry, params: dict[str, Any], *, timeout_s: float | None = None
    ) -> WorkerResponse:
        self.calls.append(worker.id)
        if worker.id in self.failing:
            raise WorkerCallFailure(f"{worker.id} is down", status=503)
        return self.inner.call(worker, params, timeout_s=timeout_s)


class CancellingWorkerClient:
    """Cancels ``token`` when ``trigger_id`` is called, then blocks until released."""

    def __init__(self, token: CancelToken, *, trigger_id: str) -> None:
        self.token = token
        self.trigger_id = trigger_id
        self.release = threading.Event()

    def call(
        self, worker: WorkerEntry, params: dict[str, Any], *, timeout_s: float | None = None
    ) -> WorkerResponse:
        if worker.id == self.trigger_id:
            self.token.cancel("test cancel")
            self.release.wait(5.0)
        return WorkerResponse(result=TextResult(text=f"{worker.id} done"))


class RecordingSettlement:
    def __init__(
        self,
        *,
        fail_for: set[str] | None = None,
        hang_for: set[str] | None = None,
    ) -> None:
        self.fail_for = set(fail_for or ())
        self.hang_for = set(hang_for or ())
        self.payments: list[tuple[str, float]] = []
        self.release = threading.Event()
        self._lock = threading.Lock()

    def pay(
        self,
        address: str,
        amount: float,
        *,
        token: CancelToken | None = None,
        timeout_s: float | None = None,
    ) -> Receipt:
        if address in self.hang_for:
            self.release.wait(5.0)
        if address in self.fail_for:
            raise SettlementError(f"payment to {address} rejected")
        with self._lock:
            self.payments.append((address, amount))
            n = len(self.payments)
        return Receipt(tx_id=f"tx_{n}", payer="requester", amount=amount)


class StaticPlanner:
    def __init__(self, steps: list[PlannedStep]) -> None:
        self.steps = list(steps)
        self.catalogs: list[list[str]] = []

    def plan(self, text: str, catalog: list[str]) -> list[PlannedStep]:
        self.catalogs.append(list(catalog))
        return list(self.steps)


class RaisingPlanner:
    def plan(self, text: str, catalog: list[str]) -> list[PlannedStep]:
        raise RuntimeError("llm unavailable")


class SlowPlanner:
    def __init__(self, delay_s: float) -> None:
        self.delay_s = delay_s

    def plan(self, text: str, catalog: list[str]) -> list[PlannedStep]:
        time.sleep(self.delay_s)
        return [PlannedStep(capability_id="data", parameters={"city": "Paris"})]


class StaticSummarizer:
    def __init__(self, answer: str) -> None:
        self.answer = answer
        self.calls: list[tuple[str, list[str]]] = []

    def summarize(self, text: str, results: list[str]) -> str:
        self.calls.append((text, list(results)))
        return self.answer


class RaisingSummarizer:
    def summarize(self, text: str, results: list[str]) -> str:
        raise RuntimeError("summarizer down")


def make_coordinator(
    registry: WorkerRegistry,
    *,
    workers: WorkerClient | None = None,
    settlement: Any = None,
    settings: OrchestratorSettings | None = None,
    bus: EventBus | None = None,
) -> tuple[ExecutionCoordinator, SettlementLedger]:
    ledger = SettlementLedger(bus=bus)
    coordinator = ExecutionCoordinator(
        registry=registry,
        ledger=ledger,
        workers=workers or ScriptedWorkerClient(),
        settlement=settlement or RecordingSettlement(),
        bus=bus,
        settings=settings or fast_settings(),
    )
    return coordinator, ledger


def hire(worker_id: str, amount: float, *sub: NestedHire, capability_id: str = "") -> NestedHire:
    return NestedHire(
        worker_id=worker_id, capability_id=capability_id, amount=amount, sub_hires=list(sub)
    )
