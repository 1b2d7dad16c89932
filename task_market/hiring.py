from __future__ import annotations

from task_market.config import OrchestratorSettings
from task_market.registry import WorkerRegistry
from task_market.schemas import HiringDecision, NotFound, WorkerEntry, efficiency_score


def score_breakdown(*, worker: WorkerEntry, k: float, epsilon: float) -> dict[str, float]:
    return {
        "reputation": float(worker.reputation),
        "price": float(worker.price),
        "epsilon": float(epsilon),
        "k": float(k),
        "efficiency": efficiency_score(
            reputation=worker.reputation, price=worker.price, k=k, epsilon=epsilon
        ),
    }


def rank_candidates(
    candidates: list[WorkerEntry], *, k: float, epsilon: float
) -> list[WorkerEntry]:
    def _r9(v: float) -> float:
        return round(float(v), 9)

    ranked = list(candidates)
    # Registration order is the final key, so equal scores never depend on input order.
    ranked.sort(
        key=lambda w: (
            -_r9(efficiency_score(reputation=w.reputation, price=w.price, k=k, epsilon=epsilon)),
            _r9(w.price),
            w.registration_index,
        )
    )
    return ranked


def _rationale(
    chosen: WorkerEntry, runner_up: WorkerEntry | None, *, category: str, k: float, epsilon: float
) -> str:
    eff = efficiency_score(reputation=chosen.reputation, price=chosen.price, k=k, epsilon=epsilon)
    if runner_up is None:
        return (
            f"Hiring {chosen.name}: only active specialist in {category!r}. "
            f"Cost {chosen.price:g}, reputation {chosen.reputation}/100."
        )
    alt_eff = efficiency_score(
        reputation=runner_up.reputation, price=runner_up.price, k=k, epsilon=epsilon
    )
    if eff > alt_eff:
        why = "better cost-reputation ratio"
    elif chosen.price < runner_up.price:
        why = "equal efficiency at a lower price"
    else:
        why = "equal efficiency and price; registered first"
    return (
        f"Selected {chosen.name} (efficiency {eff:.1f}) over {runner_up.name} "
        f"(efficiency {alt_eff:.1f}): {why} at {chosen.price:g} "
        f"with reputation {chosen.reputation}/100."
    )


def decide(
    category: str,
    registry: WorkerRegistry,
    *,
    settings: OrchestratorSettings | None = None,
) -> HiringDecision | NotFound:
    """Rank the active workers of ``category`` and pick the most efficient.

    Pure with respect to the registry: it reads a snapshot and never mutates.
    The same snapshot always yields the same decision.
    """
    settings = settings or OrchestratorSettings()
    k = settings.efficiency_k
    epsilon = settings.efficiency_epsilon

    candidates = registry.list_active(category)
    if not candidates:
        return NotFound(category=category)

    ranked = rank_candidates(candidates, k=k, epsilon=epsilon)
    chosen = ranked[0]
    alternatives = ranked[1:]
    return HiringDecision(
        chosen_worker_id=chosen.id,
        chosen=chosen,
        rationale=_rationale(
            chosen,
            alternatives[0] if alternatives else None,
            category=category,
            k=k,
            epsilon=epsilon,
        ),
        alternatives=alternatives,
    )
