from __future__ import annotations

from collections.abc import Callable

from task_market.capabilities import degraded_result
from task_market.config import OrchestratorSettings
from task_market.errors import AllAlternativesExhausted, CallTimeout, SettlementError, WorkerCallFailure
from task_market.logs import get_logger
from task_market.registry import WorkerRegistry
from task_market.schemas import PlannedStep, StepOutcome, StepStatus, WorkerEntry

log = get_logger("healing")

# Failures that hand a step to the next-ranked worker. Anything else propagates.
HEALABLE_ERRORS: tuple[type[Exception], ...] = (WorkerCallFailure, SettlementError, CallTimeout)

_BUDGET_TOLERANCE = 1e-9

AttemptFn = Callable[[WorkerEntry, str], StepOutcome]


class SelfHealingController:
    def __init__(
        self, *, registry: WorkerRegistry, settings: OrchestratorSettings | None = None
    ) -> None:
        self._registry = registry
        self._settings = settings or OrchestratorSettings()

    def heal(
        self,
        step: PlannedStep,
        *,
        index: int,
        category: str,
        failed_worker: WorkerEntry,
        failure: Exception,
        alternatives: list[WorkerEntry],
        attempt_fn: AttemptFn,
        remaining_budget: float,
        max_retries: int | None = None,
    ) -> StepOutcome:
        """Retry the step on ranked alternatives; degrade instead of raising.

        ``attempt_fn(worker, original_worker_id)`` performs one paid attempt and
        raises one of HEALABLE_ERRORS on failure. Alternatives the remaining
        budget cannot cover are skipped without counting as attempts.
        """
        retries = self._settings.max_retries if max_retries is None else int(max_retries)
        attempts = [failed_worker.id]
        errors = [f"{failed_worker.id}: {failure}"]
        tried = 0

        for alt in alternatives:
            if tried >= retries:
                break
            if alt.id in attempts:
                continue
            if alt.price > remaining_budget + _BUDGET_TOLERANCE:
                log.info(
                    "skip alternative %s: price %g exceeds remaining budget %g",
                    alt.id,
                    alt.price,
                    remaining_budget,
                )
                continue
            tried += 1
            attempts.append(alt.id)
            log.warning(
                "self-heal step=%d capability=%s: %s failed, trying %s",
                index,
                step.capability_id,
                failed_worker.id,
                alt.id,
            )
            try:
                outcome = attempt_fn(alt, failed_worker.id)
            except HEALABLE_ERRORS as e:
                self._registry.record_outcome(alt.id, success=False)
                errors.append(f"{alt.id}: {e}")
                continue
            return outcome.model_copy(
                update={
                    "self_healed": True,
                    "original_worker_id": failed_worker.id,
                    "attempts": list(attempts),
                }
            )

        exhausted = AllAlternativesExhausted(step.capability_id, attempts)
        log.warning("%s; returning degraded result", exhausted)
        return StepOutcome(
            index=index,
            capability_id=step.capability_id,
            category=category,
            status=StepStatus.DEGRADED,
            worker_id=None,
            worker_name=failed_worker.name,
            result=degraded_result(category, step.parameters),
            error=f"{exhausted}: " + "; ".join(errors),
            error_kind=type(exhausted).__name__,
            degraded=True,
            original_worker_id=failed_worker.id,
            attempts=attempts,
        )
