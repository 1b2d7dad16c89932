from __future__ import annotations

import json
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from task_market.logs import get_logger
from task_market.schemas import WorkerEntry, efficiency_score

log = get_logger("registry")

SortKey = Literal["efficiency", "price", "reputation"]


class WorkerSpec(BaseModel):
    """One worker as written in a registry file."""

    id: str
    name: str | None = None
    category: str
    price: float = Field(gt=0.0)
    reputation: int = Field(default=80, ge=0, le=100)
    jobs_completed: int = Field(default=0, ge=0)
    active: bool = True
    description: str = ""
    endpoint: str | None = None
    address: str | None = None
    handler: str | None = None


DEFAULT_WORKERS: list[dict[str, Any]] = [
    {
        "id": "weather",
        "name": "Weather Oracle",
        "category": "data",
        "price": 0.001,
        "reputation": 90,
        "handler": "weather",
        "description": "Current conditions for a city.",
    },
    {
        "id": "weather-backup",
        "name": "Weather Relay",
        "category": "data",
        "price": 0.002,
        "reputation": 70,
        "handler": "weather",
        "description": "Secondary weather feed.",
    },
    {
        "id": "summarizer",
        "name": "Text Summarizer",
        "category": "summarize",
        "price": 0.003,
        "reputation": 88,
        "handler": "summarize",
        "description": "Condenses text into its key sentences.",
    },
    {
        "id": "summarizer-lite",
        "name": "Summarizer Lite",
        "category": "summarize",
        "price": 0.002,
        "reputation": 65,
        "handler": "summarize",
        "description": "Cheaper, shorter summaries.",
    },
    {
        "id": "math-solver",
        "name": "Math Solver",
        "category": "compute",
        "price": 0.005,
        "reputation": 95,
        "handler": "math",
        "description": "Evaluates arithmetic expressions.",
    },
    {
        "id": "researcher",
        "name": "Research Agent",
        "category": "research",
        "price": 0.01,
        "reputation": 85,
        "handler": "research",
        "description": "Answers open questions; hires a summarizer for its digest.",
    },
    {
        "id": "sentiment",
        "name": "Sentiment Reader",
        "category": "sentiment",
        "price": 0.002,
        "reputation": 80,
        "handler": "sentiment",
        "description": "Classifies the tone of a text.",
    },
    {
        "id": "translator",
        "name": "Translator",
        "category": "translate",
        "price": 0.004,
        "reputation": 82,
        "handler": "translate",
        "description": "Translates text into a target language.",
    },
]


class WorkerRegistry:
    """Thread-safe catalog of hireable workers.

    Entries are stored privately and handed out as copies, so callers never
    observe a half-applied update. Efficiency is derived from price and
    reputation on every read.
    """

    def __init__(
        self,
        entries: Iterable[WorkerEntry] = (),
        *,
        rep_gain_on_success: int = 1,
        rep_loss_on_failure: int = 5,
    ) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, WorkerEntry] = {}
        self._rep_gain = int(rep_gain_on_success)
        self._rep_loss = int(rep_loss_on_failure)
        for entry in entries:
            self.register(entry)

    def register(self, entry: WorkerEntry) -> WorkerEntry:
        with self._lock:
            if entry.id in self._entries:
                raise ValueError(f"duplicate worker id: {entry.id}")
            stored = entry.model_copy(update={"registration_index": len(self._entries)})
            self._entries[stored.id] = stored
            return stored.model_copy()

    def get(self, worker_id: str) -> WorkerEntry | None:
        with self._lock:
            entry = self._entries.get(worker_id)
            return None if entry is None else entry.model_copy()

    def snapshot(self) -> list[WorkerEntry]:
        with self._lock:
            return [e.model_copy() for e in self._entries.values()]

    def categories(self) -> list[str]:
        with self._lock:
            return sorted({e.category for e in self._entries.values()})

    def list_active(self, category: str) -> list[WorkerEntry]:
        with self._lock:
            return [
                e.model_copy()
                for e in self._entries.values()
                if e.is_active and e.category == category
            ]

    def resolve_category(self, capability_id: str) -> str | None:
        """Map a planned capability to a category.

        A capability is either a category name or the id of a worker, in which
        case the worker's category is used.
        """
        cap = capability_id.strip()
        with self._lock:
            for e in self._entries.values():
                if e.category == cap:
                    return cap
            entry = self._entries.get(cap)
            return None if entry is None else entry.category

    def ranked(
        self,
        *,
        category: str | None = None,
        sort: SortKey = "efficiency",
        k: float = 10_000.0,
        epsilon: float = 1e-6,
    ) -> list[WorkerEntry]:
        entries = [e for e in self.snapshot() if category is None or e.category == category]

        def _eff(e: WorkerEntry) -> float:
            return efficiency_score(reputation=e.reputation, price=e.price, k=k, epsilon=epsilon)

        if sort == "price":
            entries.sort(key=lambda e: (e.price, e.registration_index))
        elif sort == "reputation":
            entries.sort(key=lambda e: (-e.reputation, e.price, e.registration_index))
        else:
            entries.sort(key=lambda e: (-_eff(e), e.price, e.registration_index))
        return entries

    def record_outcome(self, worker_id: str, *, success: bool, amount_earned: float = 0.0) -> None:
        with self._lock:
            entry = self._entries.get(worker_id)
            if entry is None:
                log.warning("record_outcome for unknown worker_id=%s ignored", worker_id)
                return
            if success:
                update = {
                    "jobs_completed": entry.jobs_completed + 1,
                    "total_earned": round(entry.total_earned + float(amount_earned), 9),
                    "reputation": min(100, entry.reputation + self._rep_gain),
                }
            else:
                update = {
                    "jobs_failed": entry.jobs_failed + 1,
                    "reputation": max(0, entry.reputation - self._rep_loss),
                }
            self._entries[worker_id] = entry.model_copy(update=update)

    def deactivate(self, worker_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(worker_id)
            if entry is None:
                return False
            self._entries[worker_id] = entry.model_copy(update={"is_active": False})
            return True

    def catalog_lines(self) -> list[str]:
        lines: list[str] = []
        for e in self.ranked():
            if not e.is_active:
                continue
            lines.append(
                f'- id="{e.id}" category="{e.category}" price={e.price:g} '
                f"reputation={e.reputation}/100: {e.description}"
            )
        return lines

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _entry_from_spec(spec: WorkerSpec) -> WorkerEntry:
    return WorkerEntry(
        id=spec.id,
        name=spec.name or spec.id,
        category=spec.category,
        price=spec.price,
        reputation=spec.reputation,
        jobs_completed=spec.jobs_completed,
        is_active=spec.active,
        description=spec.description,
        endpoint=spec.endpoint,
        address=spec.address,
        handler=spec.handler,
    )


def load_registry_from_json(data: Any, **kwargs: Any) -> WorkerRegistry:
    items: list[Any]
    if isinstance(data, dict) and "workers" in data:
        items = data.get("workers")  # type: ignore[assignment]
        if not isinstance(items, list):
            raise ValueError("workers must be a list")
    elif isinstance(data, list):
        items = data
    else:
        raise ValueError("invalid registry (expected a list or {workers: [...]})")

    entries: list[WorkerEntry] = []
    seen: set[str] = set()
    for item in items:
        if not isinstance(item, dict):
            raise ValueError("each worker spec must be an object")
        spec = WorkerSpec.model_validate(item)
        if spec.id in seen:
            raise ValueError(f"duplicate worker id: {spec.id}")
        seen.add(spec.id)
        entries.append(_entry_from_spec(spec))

    if not entries:
        raise ValueError("workers list must be non-empty")
    return WorkerRegistry(entries, **kwargs)


def load_registry_from_path(path: Path, **kwargs: Any) -> WorkerRegistry:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yml", ".yaml"}:
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    return load_registry_from_json(data, **kwargs)


def default_registry(**kwargs: Any) -> WorkerRegistry:
    return load_registry_from_json(DEFAULT_WORKERS, **kwargs)
