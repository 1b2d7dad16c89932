from __future__ import annotations


class TaskMarketError(Exception):
    pass


class InvalidTask(TaskMarketError):
    """Raised before planning when the task text is empty."""


class PlanningFailure(TaskMarketError):
    pass


class CapabilityNotFound(TaskMarketError):
    def __init__(self, capability_id: str, *, category: str | None = None) -> None:
        self.capability_id = capability_id
        self.category = category
        if category is None:
            msg = f"unknown capability {capability_id!r}"
        else:
            msg = f"no active worker for capability {capability_id!r} (category={category!r})"
        super().__init__(msg)


class BudgetExceeded(TaskMarketError):
    def __init__(self, *, price: float, cumulative_cost: float, budget_limit: float) -> None:
        self.price = price
        self.cumulative_cost = cumulative_cost
        self.budget_limit = budget_limit
        super().__init__(
            f"step price {price:g} would raise cost from {cumulative_cost:g} "
            f"above budget {budget_limit:g}"
        )


class WorkerCallFailure(TaskMarketError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        self.status = status
        prefix = f"HTTP {status}: " if status is not None else ""
        super().__init__(prefix + message)


class CallTimeout(TaskMarketError):
    def __init__(self, label: str, timeout_s: float) -> None:
        self.label = label
        self.timeout_s = timeout_s
        super().__init__(f"{label} timed out after {timeout_s:g}s")


class SettlementError(TaskMarketError):
    pass


class SettlementTimeout(SettlementError):
    pass


class AllAlternativesExhausted(TaskMarketError):
    def __init__(self, capability_id: str, attempts: list[str]) -> None:
        self.capability_id = capability_id
        self.attempts = list(attempts)
        super().__init__(
            f"all workers failed for {capability_id!r} after {len(attempts)} attempt(s)"
        )


class SynthesisFailure(TaskMarketError):
    pass


class DelegationError(TaskMarketError):
    pass


class LedgerIntegrityError(ValueError):
    pass


class TaskCancelled(TaskMarketError):
    pass
