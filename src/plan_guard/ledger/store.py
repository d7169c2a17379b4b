"""Usage store backends.

A store keeps one usage record per (user, month) and exposes a single
atomic increment. Reads of a missing record return ``None``, which the
ledger turns into a zero-valued record; "not found" is never an error.

The in-memory store serialises increments with one lock, the same way
the rest of the package guards shared state. It is meant for tests and
single-process deployments.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Protocol, runtime_checkable

from plan_guard.models import FeatureUsage, UsageEvent, UsageRecord


@runtime_checkable
class UsageStore(Protocol):
    """Protocol for usage storage backends."""

    def get(self, user_id: str, month: str) -> UsageRecord | None: ...

    def increment(
        self, user_id: str, month: str, event: UsageEvent, now: datetime,
    ) -> UsageRecord: ...

    def months(self, user_id: str) -> list[str]: ...

    def close(self) -> None: ...


class InMemoryUsageStore:
    """Dict-backed usage store. Thread-safe via a lock."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], UsageRecord] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, month: str) -> UsageRecord | None:
        with self._lock:
            record = self._records.get((user_id, month))
            return record.model_copy(deep=True) if record is not None else None

    def increment(
        self, user_id: str, month: str, event: UsageEvent, now: datetime,
    ) -> UsageRecord:
        with self._lock:
            record = self._records.get((user_id, month))
            if record is None:
                record = UsageRecord(user_id=user_id, month=month)
                self._records[(user_id, month)] = record

            record.total_cost += event.cost
            record.total_calls += 1
            if event.is_ai_run:
                record.total_runs_ai += 1
            if event.is_api_run:
                record.total_runs_api += 1
            if event.feature:
                slot = record.features.setdefault(event.feature, FeatureUsage())
                slot.cost += event.cost
                slot.calls += 1
                if event.is_ai_run or event.is_api_run:
                    slot.runs += 1
            record.updated_at = now
            return record.model_copy(deep=True)

    def months(self, user_id: str) -> list[str]:
        """Months with a record for *user_id*, newest first."""
        with self._lock:
            found = [month for (uid, month) in self._records if uid == user_id]
        return sorted(found, reverse=True)

    def close(self) -> None:
        return None
