"""SQLite-backed usage store.

Every counter is bumped with a single ``INSERT ... ON CONFLICT DO UPDATE
SET col = col + ?`` statement, so concurrent increments for the same
(user, month) never lose an update, even across processes sharing the
database file. Costs are stored as integer nanos to keep the arithmetic
exact.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path

from plan_guard.errors import LedgerUnavailable
from plan_guard.models import FeatureUsage, UsageEvent, UsageRecord

logger = logging.getLogger(__name__)

COST_SCALE = 10**9

_SCHEMA = """
CREATE TABLE IF NOT EXISTS usage_months (
    user_id     TEXT NOT NULL,
    month       TEXT NOT NULL,
    cost_nanos  INTEGER NOT NULL DEFAULT 0,
    runs_ai     INTEGER NOT NULL DEFAULT 0,
    runs_api    INTEGER NOT NULL DEFAULT 0,
    calls       INTEGER NOT NULL DEFAULT 0,
    updated_at  TEXT,
    PRIMARY KEY (user_id, month)
);

CREATE TABLE IF NOT EXISTS usage_features (
    user_id     TEXT NOT NULL,
    month       TEXT NOT NULL,
    feature     TEXT NOT NULL,
    cost_nanos  INTEGER NOT NULL DEFAULT 0,
    calls       INTEGER NOT NULL DEFAULT 0,
    runs        INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, month, feature),
    FOREIGN KEY (user_id, month) REFERENCES usage_months (user_id, month)
);
"""

_UPSERT_MONTH = """
INSERT INTO usage_months (user_id, month, cost_nanos, runs_ai, runs_api, calls, updated_at)
VALUES (?, ?, ?, ?, ?, 1, ?)
ON CONFLICT (user_id, month) DO UPDATE SET
    cost_nanos = cost_nanos + excluded.cost_nanos,
    runs_ai    = runs_ai + excluded.runs_ai,
    runs_api   = runs_api + excluded.runs_api,
    calls      = calls + 1,
    updated_at = excluded.updated_at
"""

_UPSERT_FEATURE = """
INSERT INTO usage_features (user_id, month, feature, cost_nanos, calls, runs)
VALUES (?, ?, ?, ?, 1, ?)
ON CONFLICT (user_id, month, feature) DO UPDATE SET
    cost_nanos = cost_nanos + excluded.cost_nanos,
    calls      = calls + 1,
    runs       = runs + excluded.runs
"""


def to_nanos(cost: Decimal) -> int:
    return int((cost * COST_SCALE).to_integral_value(rounding=ROUND_HALF_UP))


def from_nanos(nanos: int) -> Decimal:
    return Decimal(nanos) / COST_SCALE


class Database:
    """Thread-safe SQLite connection manager.

    Uses WAL mode for concurrent readers and a threading lock for writes.
    Each thread gets its own connection via thread-local storage.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._db_path

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=5.0)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._conn_lock:
                self._connections.append(conn)
        return conn

    def fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        return self._get_conn().execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._get_conn().execute(sql, params).fetchall()

    def write_transaction(self, statements: list[tuple[str, tuple]]) -> None:
        """Run several writes as one transaction, rolling back on failure."""
        with self._write_lock:
            conn = self._get_conn()
            try:
                for sql, params in statements:
                    conn.execute(sql, params)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

    def write_script(self, sql: str) -> None:
        """Execute a multi-statement SQL script."""
        with self._write_lock:
            self._get_conn().executescript(sql)

    def close(self) -> None:
        with self._conn_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()


class SQLiteUsageStore:
    """Usage store persisted in a SQLite database file."""

    def __init__(self, db_path: str | Path) -> None:
        path = Path(db_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._db = Database(path)
            self._db.write_script(_SCHEMA)
        except (sqlite3.Error, OSError) as exc:
            logger.error("Cannot open usage database %s: %s", path, exc)
            raise LedgerUnavailable(f"Cannot open usage database {path}: {exc}") from exc

    @property
    def path(self) -> str:
        return self._db.path

    def get(self, user_id: str, month: str) -> UsageRecord | None:
        try:
            row = self._db.fetchone(
                "SELECT * FROM usage_months WHERE user_id = ? AND month = ?",
                (user_id, month),
            )
            if row is None:
                return None
            feature_rows = self._db.fetchall(
                "SELECT * FROM usage_features WHERE user_id = ? AND month = ?",
                (user_id, month),
            )
        except sqlite3.Error as exc:
            logger.error("Usage read failed for %s/%s: %s", user_id, month, exc)
            raise LedgerUnavailable(
                f"Usage read failed for {user_id}/{month}: {exc}", user_id=user_id,
            ) from exc
        return _row_to_record(row, feature_rows)

    def increment(
        self, user_id: str, month: str, event: UsageEvent, now: datetime,
    ) -> UsageRecord:
        nanos = to_nanos(event.cost)
        statements: list[tuple[str, tuple]] = [(
            _UPSERT_MONTH,
            (user_id, month, nanos, int(event.is_ai_run), int(event.is_api_run), now.isoformat()),
        )]
        if event.feature:
            runs = int(event.is_ai_run or event.is_api_run)
            statements.append((_UPSERT_FEATURE, (user_id, month, event.feature, nanos, runs)))

        try:
            self._db.write_transaction(statements)
        except sqlite3.Error as exc:
            logger.error("Usage increment failed for %s/%s: %s", user_id, month, exc)
            raise LedgerUnavailable(
                f"Usage increment failed for {user_id}/{month}: {exc}", user_id=user_id,
            ) from exc

        record = self.get(user_id, month)
        if record is None:
            raise LedgerUnavailable(
                f"Usage record vanished after increment for {user_id}/{month}",
                user_id=user_id,
            )
        return record

    def months(self, user_id: str) -> list[str]:
        try:
            rows = self._db.fetchall(
                "SELECT month FROM usage_months WHERE user_id = ? ORDER BY month DESC",
                (user_id,),
            )
        except sqlite3.Error as exc:
            raise LedgerUnavailable(
                f"Usage history read failed for {user_id}: {exc}", user_id=user_id,
            ) from exc
        return [row["month"] for row in rows]

    def close(self) -> None:
        self._db.close()


def _row_to_record(row: sqlite3.Row, feature_rows: list[sqlite3.Row]) -> UsageRecord:
    features = {
        fr["feature"]: FeatureUsage(
            cost=from_nanos(fr["cost_nanos"]), calls=fr["calls"], runs=fr["runs"],
        )
        for fr in feature_rows
    }
    updated = row["updated_at"]
    return UsageRecord(
        user_id=row["user_id"],
        month=row["month"],
        total_cost=from_nanos(row["cost_nanos"]),
        total_runs_ai=row["runs_ai"],
        total_runs_api=row["runs_api"],
        total_calls=row["calls"],
        features=features,
        updated_at=datetime.fromisoformat(updated) if updated else None,
    )
