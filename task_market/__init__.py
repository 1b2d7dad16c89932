from __future__ import annotations

from task_market.cancellation import CancelToken, call_with_deadline
from task_market.config import OrchestratorSettings, ProviderSettings, load_settings
from task_market.coordinator import ExecutionCoordinator
from task_market.errors import (
    AllAlternativesExhausted,
    BudgetExceeded,
    CallTimeout,
    CapabilityNotFound,
    DelegationError,
    InvalidTask,
    LedgerIntegrityError,
    PlanningFailure,
    SettlementError,
    SettlementTimeout,
    SynthesisFailure,
    TaskCancelled,
    TaskMarketError,
    WorkerCallFailure,
)
from task_market.events import EventBus, Subscription
from task_market.healing import SelfHealingController
from task_market.hiring import decide, rank_candidates, score_breakdown
from task_market.ledger import SettlementLedger
from task_market.orchestrator import Orchestrator, TaskHandle, build_orchestrator
from task_market.planner import LLMPlanner, Planner, PlannerAdapter, rule_based_plan
from task_market.registry import (
    WorkerRegistry,
    default_registry,
    load_registry_from_json,
    load_registry_from_path,
)
from task_market.schemas import (
    EventType,
    ExecutionTrace,
    HiringDecision,
    LiveEvent,
    NestedHire,
    NotFound,
    PlannedStep,
    PlanResult,
    Receipt,
    SettlementRecord,
    StepOutcome,
    StepStatus,
    TaskReport,
    WorkerEntry,
    efficiency_score,
)
from task_market.settlement import FacilitatorSettlement, Settlement, SimulatedSettlement
from task_market.synthesizer import LLMSummarizer, ResponseSynthesizer, Summarizer
from task_market.workers import (
    HttpWorkerClient,
    LocalWorkerClient,
    RoutingWorkerClient,
    WorkerClient,
    WorkerResponse,
)

__all__ = [
    "__version__",
    # Orchestration
    "Orchestrator",
    "TaskHandle",
    "build_orchestrator",
    "ExecutionCoordinator",
    "SelfHealingController",
    "PlannerAdapter",
    "Planner",
    "LLMPlanner",
    "rule_based_plan",
    "ResponseSynthesizer",
    "Summarizer",
    "LLMSummarizer",
    "decide",
    "rank_candidates",
    "score_breakdown",
    # Stores
    "WorkerRegistry",
    "default_registry",
    "load_registry_from_json",
    "load_registry_from_path",
    "SettlementLedger",
    "EventBus",
    "Subscription",
    # Collaborators
    "Settlement",
    "SimulatedSettlement",
    "FacilitatorSettlement",
    "WorkerClient",
    "WorkerResponse",
    "HttpWorkerClient",
    "LocalWorkerClient",
    "RoutingWorkerClient",
    # Cancellation
    "CancelToken",
    "call_with_deadline",
    # Config
    "OrchestratorSettings",
    "ProviderSettings",
    "load_settings",
    # Schemas
    "EventType",
    "ExecutionTrace",
    "HiringDecision",
    "LiveEvent",
    "NestedHire",
    "NotFound",
    "PlannedStep",
    "PlanResult",
    "Receipt",
    "SettlementRecord",
    "StepOutcome",
    "StepStatus",
    "TaskReport",
    "WorkerEntry",
    "efficiency_score",
    # Errors
    "TaskMarketError",
    "InvalidTask",
    "PlanningFailure",
    "CapabilityNotFound",
    "BudgetExceeded",
    "WorkerCallFailure",
    "CallTimeout",
    "SettlementError",
    "SettlementTimeout",
    "AllAlternativesExhausted",
    "SynthesisFailure",
    "DelegationError",
    "LedgerIntegrityError",
    "TaskCancelled",
]

__version__ = "0.0.0"
