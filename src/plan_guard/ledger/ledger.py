"""Usage Ledger: per-user monthly usage counters.

Records are keyed by calendar month (``YYYY-MM``), so there is no
rollover job: the first event of a new month simply creates a new key.
Counters only ever grow within a month.

Store failures surface as ``LedgerUnavailable``; the ledger never
reports "zero usage" because it could not read the store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from plan_guard.errors import LedgerUnavailable
from plan_guard.ledger.store import InMemoryUsageStore, UsageStore
from plan_guard.models import MONTH_RE, UsageEvent, UsageRecord

logger = logging.getLogger(__name__)


def month_key(when: datetime) -> str:
    """``YYYY-MM`` key for *when*, in UTC."""
    if when.tzinfo is not None:
        when = when.astimezone(UTC)
    return f"{when.year:04d}-{when.month:02d}"


def _check_month(month: str) -> str:
    if not MONTH_RE.match(month):
        raise ValueError(f"Invalid month key {month!r}, expected YYYY-MM")
    return month


class UsageLedger:
    """Read and increment monthly usage through a ``UsageStore``."""

    def __init__(
        self,
        store: UsageStore | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store: UsageStore = store if store is not None else InMemoryUsageStore()
        self._clock = _clock or (lambda: datetime.now(tz=UTC))

    @property
    def store(self) -> UsageStore:
        return self._store

    def current_month(self) -> str:
        return month_key(self._clock())

    def get_usage(self, user_id: str, month: str | None = None) -> UsageRecord:
        """Usage for *user_id* in *month* (default: current month).

        Returns a zero-valued record when nothing has been recorded yet.
        """
        month = _check_month(month) if month is not None else self.current_month()
        try:
            record = self._store.get(user_id, month)
        except LedgerUnavailable:
            raise
        except OSError as exc:
            logger.error("Usage read failed for %s/%s: %s", user_id, month, exc)
            raise LedgerUnavailable(
                f"Usage store read failed for {user_id}/{month}: {exc}", user_id=user_id,
            ) from exc
        if record is None:
            return UsageRecord(user_id=user_id, month=month)
        return record

    def record_usage(
        self, user_id: str, event: UsageEvent, month: str | None = None,
    ) -> UsageRecord:
        """Atomically add *event* to the user's record for *month*.

        Only call this after the guarded action has succeeded.
        """
        if event.cost < 0:
            raise ValueError("Usage cost cannot be negative")
        month = _check_month(month) if month is not None else self.current_month()
        try:
            record = self._store.increment(user_id, month, event, self._clock())
        except LedgerUnavailable:
            raise
        except OSError as exc:
            logger.error("Usage increment failed for %s/%s: %s", user_id, month, exc)
            raise LedgerUnavailable(
                f"Usage store failed for {user_id}/{month}: {exc}", user_id=user_id,
            ) from exc

        logger.info(
            "Recorded usage for %s/%s: cost=%s ai=%s api=%s feature=%s",
            user_id, month, event.cost, event.is_ai_run, event.is_api_run, event.feature,
        )
        return record

    def history(self, user_id: str, limit: int = 12) -> list[UsageRecord]:
        """The most recent monthly records for *user_id*, newest first."""
        if limit <= 0:
            return []
        try:
            months = self._store.months(user_id)
        except LedgerUnavailable:
            raise
        except OSError as exc:
            logger.error("Usage history read failed for %s: %s", user_id, exc)
            raise LedgerUnavailable(
                f"Usage store read failed for {user_id}: {exc}", user_id=user_id,
            ) from exc
        return [self.get_usage(user_id, month) for month in months[:limit]]

    def close(self) -> None:
        self._store.close()
