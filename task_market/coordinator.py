from __future__ import annotations

import time
import uuid
from typing import Any

from task_market.cancellation import CancelToken, call_with_deadline
from task_market.config import OrchestratorSettings
from task_market.errors import (
    BudgetExceeded,
    CallTimeout,
    CapabilityNotFound,
    DelegationError,
    SettlementTimeout,
    TaskCancelled,
)
from task_market.events import EventBus
from task_market.healing import HEALABLE_ERRORS, SelfHealingController
from task_market.hiring import decide
from task_market.ledger import SettlementLedger
from task_market.logs import get_logger
from task_market.registry import WorkerRegistry
from task_market.schemas import (
    EventType,
    ExecutionTrace,
    NestedHire,
    NotFound,
    PlannedStep,
    SettlementRecord,
    StepOutcome,
    StepStatus,
    WorkerEntry,
)
from task_market.settlement import Settlement
from task_market.workers import WorkerClient

log = get_logger("coordinator")

_BUDGET_TOLERANCE = 1e-9


class ExecutionCoordinator:
    """Runs planned steps in order against the marketplace.

    Each step is hired, called, paid and recorded before the next one starts.
    ``cumulative_cost`` counts only what the requester paid directly; hires made
    by workers are recorded as child settlements and summed in ``delegated_cost``.
    """

    def __init__(
        self,
        *,
        registry: WorkerRegistry,
        ledger: SettlementLedger,
        workers: WorkerClient,
        settlement: Settlement,
        bus: EventBus | None = None,
        healer: SelfHealingController | None = None,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self._registry = registry
        self._ledger = ledger
        self._workers = workers
        self._settlement = settlement
        self._bus = bus
        self._settings = settings or OrchestratorSettings()
        self._healer = healer or SelfHealingController(registry=registry, settings=self._settings)

    def _publish(self, event_type: EventType, *, task_id: str, data: dict[str, Any]) -> None:
        if self._bus is not None:
            self._bus.publish(event_type, task_id=task_id, data=data)

    def execute(
        self,
        steps: list[PlannedStep],
        budget_limit: float,
        requester_id: str,
        *,
        task_id: str | None = None,
        token: CancelToken | None = None,
    ) -> ExecutionTrace:
        task_id = task_id or uuid.uuid4().hex
        token = token or CancelToken()
        trace = ExecutionTrace(
            task_id=task_id, requester_id=requester_id, budget_limit=float(budget_limit)
        )

        for index, step in enumerate(steps):
            if token.cancelled:
                trace.cancelled = True
                break
            self._publish(
                EventType.STEP,
                task_id=task_id,
                data={"index": index, "capability_id": step.capability_id, "status": "started"},
            )
            try:
                outcome = self._run_step(index, step, trace=trace, token=token)
            except TaskCancelled:
                log.info("task %s cancelled during step %d", task_id, index)
                trace.cancelled = True
                break

            trace.outcomes.append(outcome)
            if outcome.settlement is not None:
                trace.cumulative_cost = round(trace.cumulative_cost + outcome.settlement.amount, 12)
            for nested in outcome.nested_hires:
                trace.delegated_cost = round(trace.delegated_cost + nested.amount, 12)
                trace.max_depth = max(trace.max_depth, nested.depth)

            self._publish(EventType.STEP, task_id=task_id, data=_step_event(outcome))
            if outcome.status == StepStatus.ERROR:
                self._publish(
                    EventType.ERROR,
                    task_id=task_id,
                    data={"index": index, "kind": outcome.error_kind, "error": outcome.error},
                )

        trace.finalized = True
        return trace

    def _run_step(
        self, index: int, step: PlannedStep, *, trace: ExecutionTrace, token: CancelToken
    ) -> StepOutcome:
        category = self._registry.resolve_category(step.capability_id)
        if category is None:
            return _error_outcome(index, step, CapabilityNotFound(step.capability_id))

        decision = decide(category, self._registry, settings=self._settings)
        if isinstance(decision, NotFound):
            return _error_outcome(
                index, step, CapabilityNotFound(step.capability_id, category=category), category
            )

        chosen = decision.chosen
        if trace.cumulative_cost + chosen.price > trace.budget_limit + _BUDGET_TOLERANCE:
            exc = BudgetExceeded(
                price=chosen.price,
                cumulative_cost=trace.cumulative_cost,
                budget_limit=trace.budget_limit,
            )
            log.warning("step %d rejected: %s", index, exc)
            return StepOutcome(
                index=index,
                capability_id=step.capability_id,
                category=category,
                status=StepStatus.REJECTED,
                worker_id=chosen.id,
                worker_name=chosen.name,
                error=str(exc),
                error_kind=type(exc).__name__,
                rationale=decision.rationale,
            )

        log.info("step %d hiring %s: %s", index, chosen.id, decision.rationale)

        def attempt(worker: WorkerEntry, original_worker_id: str | None = None) -> StepOutcome:
            return self._attempt(
                index,
                step,
                worker,
                category=category,
                trace=trace,
                token=token,
                rationale=decision.rationale,
                original_worker_id=original_worker_id,
            )

        try:
            return attempt(chosen)
        except HEALABLE_ERRORS as e:
            log.warning("step %d worker %s failed: %s", index, chosen.id, e)
            self._registry.record_outcome(chosen.id, success=False)
            return self._healer.heal(
                step,
                index=index,
                category=category,
                failed_worker=chosen,
                failure=e,
                alternatives=decision.alternatives,
                attempt_fn=attempt,
                remaining_budget=trace.budget_limit - trace.cumulative_cost,
                max_retries=self._settings.max_retries,
            )

    def _attempt(
        self,
        index: int,
        step: PlannedStep,
        worker: WorkerEntry,
        *,
        category: str,
        trace: ExecutionTrace,
        token: CancelToken,
        rationale: str,
        original_worker_id: str | None,
    ) -> StepOutcome:
        started = time.monotonic()
        worker_timeout = self._settings.worker_timeout_s
        response = call_with_deadline(
            lambda: self._workers.call(worker, dict(step.parameters), timeout_s=worker_timeout),
            timeout_s=worker_timeout,
            token=token,
            label=f"worker {worker.id}",
        )

        settle_timeout = self._settings.settlement_timeout_s
        try:
            receipt = call_with_deadline(
                lambda: self._settlement.pay(
                    worker.payee, worker.price, token=token, timeout_s=settle_timeout
                ),
                timeout_s=settle_timeout,
                token=token,
                label=f"settlement {worker.id}",
            )
        except CallTimeout as e:
            raise SettlementTimeout(str(e)) from e

        record = self._ledger.append(
            capability_id=step.capability_id,
            payer_id=trace.requester_id,
            worker_id=worker.id,
            amount=worker.price,
            task_id=trace.task_id,
            self_healed=original_worker_id is not None,
            original_worker_id=original_worker_id,
            tx_id=receipt.tx_id,
        )
        self._registry.record_outcome(worker.id, success=True, amount_earned=worker.price)
        nested = self._ingest_nested(
            response.nested_hires, parent=record, chain=[worker.id], step=step, task_id=trace.task_id
        )

        return StepOutcome(
            index=index,
            capability_id=step.capability_id,
            category=category,
            status=StepStatus.SUCCESS,
            worker_id=worker.id,
            worker_name=worker.name,
            result=response.result,
            settlement=record,
            nested_hires=nested,
            rationale=rationale,
            attempts=[worker.id],
            latency_ms=int((time.monotonic() - started) * 1000),
        )

    def _check_delegation(self, hire: NestedHire, *, parent: SettlementRecord, chain: list[str]) -> None:
        if hire.worker_id in chain:
            raise DelegationError(
                f"{chain[-1]} may not hire {hire.worker_id}: already in the hire chain {chain}"
            )
        depth = parent.depth + 1
        if depth > self._settings.max_delegation_depth:
            raise DelegationError(
                f"hire of {hire.worker_id} at depth {depth} exceeds "
                f"max_delegation_depth={self._settings.max_delegation_depth}"
            )

    def _ingest_nested(
        self,
        hires: list[NestedHire],
        *,
        parent: SettlementRecord,
        chain: list[str],
        step: PlannedStep,
        task_id: str,
    ) -> list[SettlementRecord]:
        """Record hires reported by a worker as children of its settlement, depth first."""
        records: list[SettlementRecord] = []
        for hire in hires:
            try:
                self._check_delegation(hire, parent=parent, chain=chain)
            except DelegationError as e:
                log.warning("refused delegated hire: %s", e)
                continue
            record = self._ledger.append(
                capability_id=hire.capability_id or step.capability_id,
                payer_id=chain[-1],
                worker_id=hire.worker_id,
                amount=hire.amount,
                task_id=task_id,
                parent_record_id=parent.id,
                depth=parent.depth + 1,
                tx_id=hire.tx_id,
            )
            self._registry.record_outcome(hire.worker_id, success=True, amount_earned=hire.amount)
            records.append(record)
            records.extend(
                self._ingest_nested(
                    hire.sub_hires,
                    parent=record,
                    chain=[*chain, hire.worker_id],
                    step=step,
                    task_id=task_id,
                )
            )
        return records


def _error_outcome(
    index: int, step: PlannedStep, exc: CapabilityNotFound, category: str | None = None
) -> StepOutcome:
    log.warning("step %d: %s", index, exc)
    return StepOutcome(
        index=index,
        capability_id=step.capability_id,
        category=category,
        status=StepStatus.ERROR,
        error=str(exc),
        error_kind=type(exc).__name__,
    )


def _step_event(outcome: StepOutcome) -> dict[str, Any]:
    return {
        "index": outcome.index,
        "capability_id": outcome.capability_id,
        "status": outcome.status.value,
        "worker_id": outcome.worker_id,
        "worker_name": outcome.worker_name,
        "self_healed": outcome.self_healed,
        "degraded": outcome.degraded,
        "amount": outcome.settlement.amount if outcome.settlement else 0.0,
        "nested_hires": len(outcome.nested_hires),
        "error": outcome.error,
    }
