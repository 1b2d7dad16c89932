from __future__ import annotations

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from task_market.cancellation import CancelToken
from task_market.config import OrchestratorSettings, ProviderSettings
from task_market.coordinator import ExecutionCoordinator
from task_market.errors import InvalidTask, TaskCancelled
from task_market.events import EventBus
from task_market.healing import SelfHealingController
from task_market.ledger import SettlementLedger
from task_market.logs import get_logger
from task_market.planner import LLMPlanner, PlannerAdapter
from task_market.registry import WorkerRegistry, default_registry
from task_market.schemas import EventType, ExecutionTrace, PlanResult, TaskReport
from task_market.settlement import FacilitatorSettlement, Settlement, SimulatedSettlement
from task_market.synthesizer import LLMSummarizer, ResponseSynthesizer
from task_market.workers import RoutingWorkerClient, WorkerClient

log = get_logger("orchestrator")


@dataclass
class TaskHandle:
    task_id: str
    token: CancelToken
    future: Future[TaskReport] = field(repr=False)

    def cancel(self, reason: str = "cancelled by requester") -> None:
        self.token.cancel(reason)

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> TaskReport:
        return self.future.result(timeout=timeout)


class Orchestrator:
    """Validate -> plan -> execute -> synthesize, for one task or many at once."""

    def __init__(
        self,
        *,
        registry: WorkerRegistry,
        ledger: SettlementLedger,
        coordinator: ExecutionCoordinator,
        planner: PlannerAdapter,
        synthesizer: ResponseSynthesizer,
        bus: EventBus | None = None,
        settings: OrchestratorSettings | None = None,
        max_concurrent_tasks: int = 4,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.bus = bus
        self.settings = settings or OrchestratorSettings()
        self._coordinator = coordinator
        self._planner = planner
        self._synthesizer = synthesizer
        self._lock = threading.Lock()
        self._active: dict[str, CancelToken] = {}
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, int(max_concurrent_tasks)), thread_name_prefix="tm_task"
        )

    def _register(self, task_id: str, token: CancelToken) -> None:
        with self._lock:
            if task_id in self._active:
                raise InvalidTask(f"task {task_id} is already running")
            self._active[task_id] = token

    def _release(self, task_id: str) -> None:
        with self._lock:
            self._active.pop(task_id, None)

    def running_tasks(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    def cancel(self, task_id: str, reason: str = "cancelled by requester") -> bool:
        with self._lock:
            token = self._active.get(task_id)
        if token is None:
            return False
        token.cancel(reason)
        log.info("cancel requested for task %s", task_id)
        return True

    @staticmethod
    def _validate(text: str, budget_limit: float) -> None:
        if not isinstance(text, str) or not text.strip():
            raise InvalidTask("task text must be a non-empty string")
        if budget_limit < 0:
            raise InvalidTask("budget_limit must be >= 0")

    def run_task(
        self,
        text: str,
        *,
        budget_limit: float,
        requester_id: str | None = None,
        task_id: str | None = None,
        token: CancelToken | None = None,
    ) -> TaskReport:
        self._validate(text, budget_limit)
        task_id = task_id or uuid.uuid4().hex
        token = token or CancelToken()
        self._register(task_id, token)
        return self._run_registered(text, budget_limit, requester_id, task_id, token)

    def _run_registered(
        self,
        text: str,
        budget_limit: float,
        requester_id: str | None,
        task_id: str,
        token: CancelToken,
    ) -> TaskReport:
        requester = (requester_id or "").strip() or self.settings.payer_id
        try:
            return self._run(text.strip(), budget_limit, requester, task_id, token)
        finally:
            self._release(task_id)

    def _run(
        self, text: str, budget_limit: float, requester_id: str, task_id: str, token: CancelToken
    ) -> TaskReport:
        log.info("task %s started budget=%g requester=%s", task_id, budget_limit, requester_id)
        try:
            plan = self._planner.plan(text, token=token)
        except TaskCancelled:
            plan = PlanResult(steps=[], source="rules", reasoning="Cancelled before planning finished.")
            trace = ExecutionTrace(
                task_id=task_id,
                requester_id=requester_id,
                budget_limit=float(budget_limit),
                cancelled=True,
                finalized=True,
            )
        else:
            trace = self._coordinator.execute(
                plan.steps, budget_limit, requester_id, task_id=task_id, token=token
            )

        answer = self._synthesizer.synthesize(text, trace, token=None if trace.cancelled else token)
        report = TaskReport(task_id=task_id, text=text, plan=plan, trace=trace, answer=answer)

        if self.bus is not None:
            self.bus.publish(
                EventType.DONE,
                task_id=task_id,
                data={
                    "answer": answer,
                    "cumulative_cost": trace.cumulative_cost,
                    "delegated_cost": trace.delegated_cost,
                    "max_depth": trace.max_depth,
                    "cancelled": trace.cancelled,
                    "steps": len(trace.outcomes),
                },
            )
        log.info(
            "task %s finished cost=%g delegated=%g cancelled=%s",
            task_id,
            trace.cumulative_cost,
            trace.delegated_cost,
            trace.cancelled,
        )
        return report

    def submit(
        self,
        text: str,
        *,
        budget_limit: float,
        requester_id: str | None = None,
        task_id: str | None = None,
    ) -> TaskHandle:
        """Queue a task on the pool; it is cancellable from the moment it is queued."""
        self._validate(text, budget_limit)
        task_id = task_id or uuid.uuid4().hex
        token = CancelToken()
        self._register(task_id, token)
        try:
            future = self._pool.submit(
                self._run_registered, text, budget_limit, requester_id, task_id, token
            )
        except RuntimeError:
            self._release(task_id)
            raise
        return TaskHandle(task_id=task_id, token=token, future=future)

    def shutdown(self, *, wait: bool = True) -> None:
        with self._lock:
            tokens = list(self._active.values())
        if not wait:
            for token in tokens:
                token.cancel("orchestrator shutting down")
        self._pool.shutdown(wait=wait)


def build_orchestrator(
    settings: OrchestratorSettings | None = None,
    providers: ProviderSettings | None = None,
    *,
    registry: WorkerRegistry | None = None,
    ledger_path: Path | None = None,
    workers: WorkerClient | None = None,
    settlement: Settlement | None = None,
    bus: EventBus | None = None,
) -> Orchestrator:
    settings = settings or OrchestratorSettings()
    bus = bus or EventBus()
    if registry is None:
        registry = default_registry(
            rep_gain_on_success=settings.rep_gain_on_success,
            rep_loss_on_failure=settings.rep_loss_on_failure,
        )
    ledger = SettlementLedger(path=ledger_path, bus=bus)

    if settlement is None:
        if settings.facilitator_url:
            settlement = FacilitatorSettlement(
                base_url=settings.facilitator_url, payer_id=settings.payer_id
            )
        else:
            settlement = SimulatedSettlement(payer_id=settings.payer_id)

    llm_planner = None
    summarizer = None
    if providers is not None and (settings.planner_model_ref or settings.summarizer_model_ref):
        from task_market.llm_router import build_router

        router = build_router(providers)
        if settings.planner_model_ref:
            llm_planner = LLMPlanner(
                router, model_ref=settings.planner_model_ref, max_steps=settings.max_plan_steps
            )
        if settings.summarizer_model_ref:
            summarizer = LLMSummarizer(router, model_ref=settings.summarizer_model_ref)

    coordinator = ExecutionCoordinator(
        registry=registry,
        ledger=ledger,
        workers=workers or RoutingWorkerClient(),
        settlement=settlement,
        bus=bus,
        healer=SelfHealingController(registry=registry, settings=settings),
        settings=settings,
    )
    return Orchestrator(
        registry=registry,
        ledger=ledger,
        coordinator=coordinator,
        planner=PlannerAdapter(llm_planner, catalog=registry.catalog_lines(), settings=settings),
        synthesizer=ResponseSynthesizer(summarizer, settings=settings),
        bus=bus,
        settings=settings,
    )
