from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

DEFAULT_EFFICIENCY_K = 10_000.0
DEFAULT_EFFICIENCY_EPSILON = 1e-6


def efficiency_score(
    *,
    reputation: float,
    price: float,
    k: float = DEFAULT_EFFICIENCY_K,
    epsilon: float = DEFAULT_EFFICIENCY_EPSILON,
) -> float:
    # reputation^2 / (price + eps), scaled by k so small prices give readable numbers.
    return float(reputation) ** 2 / ((float(price) + float(epsilon)) * float(k))


class EventType(str, Enum):
    STEP = "step"
    PAYMENT = "payment"
    DELEGATED_HIRE = "delegated-hire"
    DONE = "done"
    ERROR = "error"


class StepStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    REJECTED = "rejected"
    ERROR = "error"


class WorkerEntry(BaseModel):
    id: str
    name: str
    category: str
    price: float = Field(ge=0.0)
    reputation: int = Field(ge=0, le=100)
    jobs_completed: int = Field(default=0, ge=0)
    jobs_failed: int = Field(default=0, ge=0)
    total_earned: float = 0.0
    is_active: bool = True
    description: str = ""
    endpoint: str | None = None
    address: str | None = None
    handler: str | None = None
    registration_index: int = 0

    @field_validator("id", "category")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must be a non-empty string")
        return v.strip()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def efficiency(self) -> float:
        return efficiency_score(reputation=self.reputation, price=self.price)

    @property
    def payee(self) -> str:
        return self.address or self.id


class PlannedStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    capability_id: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class HiringDecision(BaseModel):
    chosen_worker_id: str
    chosen: WorkerEntry
    rationale: str
    alternatives: list[WorkerEntry] = Field(default_factory=list)


class NotFound(BaseModel):
    category: str


class WeatherResult(BaseModel):
    kind: Literal["weather"] = "weather"
    city: str
    temp_c: float
    condition: str
    humidity: int | None = None
    wind: str | None = None

    def as_text(self) -> str:
        extra = []
        if self.humidity is not None:
            extra.append(f"humidity {self.humidity}%")
        if self.wind:
            extra.append(f"wind {self.wind}")
        tail = f" ({', '.join(extra)})" if extra else ""
        return f"{self.city}: {self.temp_c:g}°C, {self.condition}{tail}"


class SummaryResult(BaseModel):
    kind: Literal["summary"] = "summary"
    summary: str
    original_length: int | None = None

    def as_text(self) -> str:
        return self.summary


class MathResult(BaseModel):
    kind: Literal["math"] = "math"
    expression: str
    value: float | str
    steps: list[str] = Field(default_factory=list)

    def as_text(self) -> str:
        value = f"{self.value:g}" if isinstance(self.value, float) else str(self.value)
        return f"{self.expression} = {value}"


class TextResult(BaseModel):
    kind: Literal["text"] = "text"
    text: str
    source: str | None = None

    def as_text(self) -> str:
        return self.text


StepResult = Annotated[
    Union[WeatherResult, SummaryResult, MathResult, TextResult],
    Field(discriminator="kind"),
]


class NestedHire(BaseModel):
    """A hire made by a worker while serving a step, as reported in its response."""

    worker_id: str
    capability_id: str = ""
    amount: float = Field(default=0.0, ge=0.0)
    tx_id: str | None = None
    sub_hires: list[NestedHire] = Field(default_factory=list)


class Receipt(BaseModel):
    tx_id: str
    payer: str
    amount: float
    explorer_url: str | None = None


class SettlementRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(ge=1)
    timestamp: datetime
    task_id: str | None = None
    capability_id: str
    payer_id: str
    worker_id: str
    amount: float = Field(ge=0.0)
    is_delegated: bool = False
    parent_record_id: int | None = None
    depth: int = Field(default=0, ge=0)
    self_healed: bool = False
    original_worker_id: str | None = None
    tx_id: str | None = None
    prev_hash: str | None = None
    hash: str = ""


class StepOutcome(BaseModel):
    index: int
    capability_id: str
    category: str | None = None
    status: StepStatus
    worker_id: str | None = None
    worker_name: str | None = None
    result: StepResult | None = None
    error: str | None = None
    error_kind: str | None = None
    settlement: SettlementRecord | None = None
    nested_hires: list[SettlementRecord] = Field(default_factory=list)
    rationale: str | None = None
    self_healed: bool = False
    original_worker_id: str | None = None
    degraded: bool = False
    attempts: list[str] = Field(default_factory=list)
    latency_ms: int = 0

    @property
    def usable(self) -> bool:
        return self.status in (StepStatus.SUCCESS, StepStatus.DEGRADED) and self.result is not None


class ExecutionTrace(BaseModel):
    task_id: str
    requester_id: str
    budget_limit: float
    outcomes: list[StepOutcome] = Field(default_factory=list)
    cumulative_cost: float = 0.0
    delegated_cost: float = 0.0
    max_depth: int = 0
    cancelled: bool = False
    finalized: bool = False

    def settled_total(self) -> float:
        return sum(o.settlement.amount for o in self.outcomes if o.settlement is not None)

    def count(self, status: StepStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)


class PlanResult(BaseModel):
    steps: list[PlannedStep] = Field(default_factory=list)
    source: Literal["llm", "rules"] = "rules"
    reasoning: str = ""


class TaskReport(BaseModel):
    task_id: str
    text: str
    plan: PlanResult
    trace: ExecutionTrace
    answer: str


class LiveEvent(BaseModel):
    seq: int = 0
    type: EventType
    task_id: str | None = None
    ts: datetime
    data: dict[str, Any] = Field(default_factory=dict)
