"""Tests for the usage ledger and its stores."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from plan_guard.errors import LedgerUnavailable
from plan_guard.ledger.ledger import UsageLedger, month_key
from plan_guard.ledger.sqlite_store import SQLiteUsageStore, from_nanos, to_nanos
from plan_guard.ledger.store import InMemoryUsageStore, UsageStore
from plan_guard.models import RunKind, UsageEvent


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        s: UsageStore = InMemoryUsageStore()
    else:
        s = SQLiteUsageStore(tmp_path / "usage.db")
    yield s
    s.close()


@pytest.fixture()
def ledger(store: UsageStore, clock) -> UsageLedger:
    return UsageLedger(store, _clock=clock)


class TestMonthKey:
    def test_basic(self):
        assert month_key(datetime(2025, 1, 31, 23, 59, tzinfo=UTC)) == "2025-01"

    def test_converts_to_utc(self):
        # 2025-02-01 01:00 at +02:00 is still January in UTC
        tz = timezone(timedelta(hours=2))
        assert month_key(datetime(2025, 2, 1, 1, 0, tzinfo=tz)) == "2025-01"


class TestUsageLedger:
    def test_unknown_user_has_zero_usage(self, ledger: UsageLedger):
        record = ledger.get_usage("nobody")
        assert record.month == "2025-03"
        assert record.total_cost == Decimal("0")
        assert record.total_runs_ai == 0
        assert record.total_calls == 0

    def test_increments_accumulate(self, ledger: UsageLedger):
        ledger.record_usage("u1", UsageEvent.for_run("0.05", RunKind.AI, "run_ai_grouping"))
        ledger.record_usage("u1", UsageEvent.for_run("0.05", RunKind.AI, "run_ai_grouping"))
        record = ledger.record_usage(
            "u1", UsageEvent.for_run("0.002", RunKind.API, "scan_business_card"),
        )
        assert record.total_cost == Decimal("0.102")
        assert record.total_runs_ai == 2
        assert record.total_runs_api == 1
        assert record.total_calls == 3
        assert record.features["run_ai_grouping"].runs == 2
        assert record.features["run_ai_grouping"].cost == Decimal("0.10")
        assert record.features["scan_business_card"].calls == 1

    def test_non_run_event_counts_call_only(self, ledger: UsageLedger):
        record = ledger.record_usage("u1", UsageEvent(cost=0, feature="share_contacts"))
        assert record.total_calls == 1
        assert record.total_runs_ai == 0
        assert record.total_runs_api == 0
        assert record.features["share_contacts"].runs == 0

    def test_users_are_isolated(self, ledger: UsageLedger):
        ledger.record_usage("u1", UsageEvent.for_run(1, RunKind.AI))
        assert ledger.get_usage("u2").total_cost == Decimal("0")

    def test_new_month_starts_from_zero(self, ledger: UsageLedger, clock):
        ledger.record_usage("u1", UsageEvent.for_run(1, RunKind.AI))
        clock.set(datetime(2025, 4, 1, 0, 0, tzinfo=UTC))
        assert ledger.get_usage("u1").total_cost == Decimal("0")
        assert ledger.get_usage("u1", "2025-03").total_cost == Decimal("1")

    def test_history_newest_first(self, ledger: UsageLedger, clock):
        for month in (1, 2, 3):
            clock.set(datetime(2025, month, 10, tzinfo=UTC))
            ledger.record_usage("u1", UsageEvent.for_run(month, RunKind.API))
        history = ledger.history("u1")
        assert [r.month for r in history] == ["2025-03", "2025-02", "2025-01"]
        assert [r.month for r in ledger.history("u1", limit=2)] == ["2025-03", "2025-02"]
        assert ledger.history("u1", limit=0) == []
        assert ledger.history("nobody") == []

    def test_explicit_month(self, ledger: UsageLedger):
        ledger.record_usage("u1", UsageEvent(cost="0.5"), month="2024-12")
        assert ledger.get_usage("u1", "2024-12").total_cost == Decimal("0.5")
        assert ledger.get_usage("u1").total_cost == Decimal("0")

    def test_bad_month_rejected(self, ledger: UsageLedger):
        with pytest.raises(ValueError, match="month"):
            ledger.get_usage("u1", "March")

    def test_default_store_is_in_memory(self):
        assert isinstance(UsageLedger().store, InMemoryUsageStore)


class TestConcurrency:
    def test_concurrent_increments_lose_nothing(self, ledger: UsageLedger):
        workers, per_worker = 8, 25
        barrier = threading.Barrier(workers)
        errors: list[BaseException] = []

        def work():
            try:
                barrier.wait()
                for _ in range(per_worker):
                    ledger.record_usage("u1", UsageEvent.for_run(1, RunKind.AI, "run_ai_grouping"))
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=work) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        total = workers * per_worker
        record = ledger.get_usage("u1")
        assert record.total_cost == Decimal(total)
        assert record.total_runs_ai == total
        assert record.total_calls == total
        assert record.features["run_ai_grouping"].runs == total


class TestSQLiteStore:
    def test_persists_across_instances(self, tmp_path: Path, clock):
        path = tmp_path / "data" / "usage.db"
        first = UsageLedger(SQLiteUsageStore(path), _clock=clock)
        first.record_usage("u1", UsageEvent.for_run("0.017", RunKind.API, "places_lookup"))
        first.close()

        second = UsageLedger(SQLiteUsageStore(path), _clock=clock)
        record = second.get_usage("u1")
        assert record.total_cost == Decimal("0.017")
        assert record.total_runs_api == 1
        assert record.features["places_lookup"].cost == Decimal("0.017")
        assert record.updated_at == clock()
        second.close()

    def test_unopenable_path_is_unavailable(self, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        with pytest.raises(LedgerUnavailable):
            SQLiteUsageStore(blocker / "usage.db")

    def test_nanos_are_exact(self):
        assert to_nanos(Decimal("0.0005")) == 500_000
        assert from_nanos(500_000) == Decimal("0.0005")
        assert from_nanos(to_nanos(Decimal("1.5"))) == Decimal("1.5")


class _BrokenStore(InMemoryUsageStore):
    def increment(self, user_id, month, event, now):
        raise OSError("disk full")


class _UnreadableStore(InMemoryUsageStore):
    def get(self, user_id, month):
        raise TimeoutError("store read timed out")

    def months(self, user_id):
        raise ConnectionResetError("connection reset")


class TestFailures:
    def test_store_oserror_becomes_unavailable(self, clock):
        ledger = UsageLedger(_BrokenStore(), _clock=clock)
        with pytest.raises(LedgerUnavailable, match="disk full"):
            ledger.record_usage("u1", UsageEvent(cost=1))

    def test_read_timeout_becomes_unavailable(self, clock):
        ledger = UsageLedger(_UnreadableStore(), _clock=clock)
        with pytest.raises(LedgerUnavailable, match="timed out") as exc_info:
            ledger.get_usage("u1")
        assert exc_info.value.user_id == "u1"
        assert isinstance(exc_info.value.__cause__, TimeoutError)

    def test_history_read_failure_becomes_unavailable(self, clock):
        ledger = UsageLedger(_UnreadableStore(), _clock=clock)
        with pytest.raises(LedgerUnavailable, match="connection reset"):
            ledger.history("u1")

    def test_negative_cost_rejected(self, clock):
        ledger = UsageLedger(_clock=clock)
        event = UsageEvent.model_construct(
            cost=Decimal("-1"), is_ai_run=False, is_api_run=False, feature=None,
        )
        with pytest.raises(ValueError, match="negative"):
            ledger.record_usage("u1", event)
