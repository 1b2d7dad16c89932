from __future__ import annotations

import hashlib
import threading
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from task_market.errors import LedgerIntegrityError
from task_market.events import EventBus
from task_market.jsonutil import model_json, stable_json_dumps
from task_market.logs import get_logger
from task_market.schemas import EventType, SettlementRecord

log = get_logger("ledger")


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _compute_record_hash(record: SettlementRecord | dict[str, Any]) -> str:
    if isinstance(record, SettlementRecord):
        body = record.model_dump(mode="json")
    else:
        body = dict(record)
    body.pop("hash", None)
    return _sha256_hex(stable_json_dumps(body))


def _verify_record_chain(records: Iterable[SettlementRecord]) -> None:
    """Check ids, hash links and delegation depth across an ordered sequence."""
    prev_hash: str | None = None
    last_id = 0
    by_id: dict[int, SettlementRecord] = {}
    for record in records:
        if record.id <= last_id:
            raise LedgerIntegrityError(f"ledger id {record.id} not increasing after {last_id}")
        if record.prev_hash != prev_hash:
            raise LedgerIntegrityError("ledger prev_hash mismatch")
        if record.hash != _compute_record_hash(record):
            raise LedgerIntegrityError("ledger hash mismatch")
        if record.parent_record_id is not None:
            parent = by_id.get(record.parent_record_id)
            if parent is None:
                raise LedgerIntegrityError(
                    f"record {record.id} references unknown parent {record.parent_record_id}"
                )
            if record.depth != parent.depth + 1:
                raise LedgerIntegrityError(f"record {record.id} depth does not follow its parent")
        elif record.depth != 0:
            raise LedgerIntegrityError(f"root record {record.id} must have depth 0")
        by_id[record.id] = record
        prev_hash = record.hash
        last_id = record.id


class SettlementLedger:
    """Append-only, hash-chained log of settlements.

    Ids come from a single counter and records are published to the event bus
    while the ledger lock is held, so the live stream sees ids in order.
    When ``path`` is set every record is mirrored to a JSONL file, and an
    existing file is reloaded (and verified) on construction.
    """

    def __init__(self, *, path: Path | None = None, bus: EventBus | None = None) -> None:
        self._lock = threading.Lock()
        self._records: list[SettlementRecord] = []
        self._by_id: dict[int, SettlementRecord] = {}
        self._tail_hash: str | None = None
        self._next_id = 1
        self._path = path
        self._bus = bus

        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            if self._path.exists():
                self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    def _load(self) -> None:
        assert self._path is not None
        loaded: list[SettlementRecord] = []
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                loaded.append(SettlementRecord.model_validate_json(line))
        _verify_record_chain(loaded)
        for record in loaded:
            self._records.append(record)
            self._by_id[record.id] = record
        if loaded:
            self._tail_hash = loaded[-1].hash
            self._next_id = loaded[-1].id + 1
        log.info("loaded %d settlement record(s) from %s", len(loaded), self._path)

    def append(
        self,
        *,
        capability_id: str,
        payer_id: str,
        worker_id: str,
        amount: float,
        task_id: str | None = None,
        parent_record_id: int | None = None,
        depth: int | None = None,
        self_healed: bool = False,
        original_worker_id: str | None = None,
        tx_id: str | None = None,
        ts: datetime | None = None,
    ) -> SettlementRecord:
        if amount < 0:
            raise LedgerIntegrityError("settlement amount must be >= 0")

        with self._lock:
            if parent_record_id is None:
                expected_depth = 0
            else:
                parent = self._by_id.get(parent_record_id)
                if parent is None:
                    raise LedgerIntegrityError(
                        f"parent record {parent_record_id} has not been appended"
                    )
                expected_depth = parent.depth + 1
            if depth is not None and depth != expected_depth:
                raise LedgerIntegrityError(
                    f"depth {depth} does not match expected depth {expected_depth}"
                )

            body: dict[str, Any] = {
                "id": self._next_id,
                "timestamp": ts or datetime.now(tz=UTC),
                "task_id": task_id,
                "capability_id": capability_id,
                "payer_id": payer_id,
                "worker_id": worker_id,
                "amount": float(amount),
                "is_delegated": parent_record_id is not None,
                "parent_record_id": parent_record_id,
                "depth": expected_depth,
                "self_healed": bool(self_healed),
                "original_worker_id": original_worker_id,
                "tx_id": tx_id,
                "prev_hash": self._tail_hash,
            }
            unhashed = SettlementRecord.model_validate(body)
            record = unhashed.model_copy(update={"hash": _compute_record_hash(unhashed)})

            if self._path is not None:
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(model_json(record))
                    f.write("\n")

            self._records.append(record)
            self._by_id[record.id] = record
            self._tail_hash = record.hash
            self._next_id += 1

            if self._bus is not None:
                self._bus.publish(
                    EventType.DELEGATED_HIRE if record.is_delegated else EventType.PAYMENT,
                    task_id=task_id,
                    data=record.model_dump(mode="json"),
                )

        log.info(
            "settled record=%d worker=%s amount=%g depth=%d",
            record.id,
            record.worker_id,
            record.amount,
            record.depth,
        )
        return record

    def get(self, record_id: int) -> SettlementRecord | None:
        with self._lock:
            return self._by_id.get(record_id)

    def ancestry(self, record_id: int) -> list[SettlementRecord]:
        """The record and its parents, nearest first."""
        chain: list[SettlementRecord] = []
        with self._lock:
            cur = self._by_id.get(record_id)
            while cur is not None:
                chain.append(cur)
                cur = None if cur.parent_record_id is None else self._by_id.get(cur.parent_record_id)
        return chain

    def children(self, record_id: int) -> list[SettlementRecord]:
        with self._lock:
            return [r for r in self._records if r.parent_record_id == record_id]

    def recent(self, limit: int = 50) -> list[SettlementRecord]:
        with self._lock:
            if limit <= 0:
                return []
            return list(self._records[-limit:])

    def iter_records(self) -> Iterator[SettlementRecord]:
        with self._lock:
            records = list(self._records)
        yield from records

    def for_task(self, task_id: str) -> list[SettlementRecord]:
        with self._lock:
            return [r for r in self._records if r.task_id == task_id]

    def total(self) -> float:
        with self._lock:
            return sum(r.amount for r in self._records)

    def verify_chain(self) -> None:
        with self._lock:
            records = list(self._records)
        _verify_record_chain(records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
