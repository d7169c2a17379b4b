"""Hash-chained append-only verdict log.

Each entry is a JSON line containing the verdict plus:
- prev_hash: SHA-256 of the previous entry (or "0"*64 for the first)
- entry_hash: SHA-256 of this entry's content (computed before writing)

Editing or deleting any entry breaks the chain, which ``verify_log``
detects.
"""

from __future__ import annotations

import hashlib
import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from plan_guard.models import AuditEvent, Verdict

GENESIS_HASH = "0" * 64


class AuditError(Exception):
    """Raised when the audit log encounters an error."""


def _hash_payload(data: dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(data, sort_keys=True).encode("utf-8")).hexdigest()


class AuditLogger:
    """Append-only, hash-chained JSON-lines verdict logger.

    Thread-safe via a lock around hashing and writing.
    """

    def __init__(self, log_path: str | Path) -> None:
        self._path = Path(log_path)
        self._lock = threading.Lock()
        self._prev_hash = self._read_last_hash()

    def _read_last_hash(self) -> str:
        """Read the hash of the last entry, or return genesis hash."""
        if not self._path.exists() or self._path.stat().st_size == 0:
            return GENESIS_HASH

        last_line = ""
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if stripped:
                    last_line = stripped

        if not last_line:
            return GENESIS_HASH

        try:
            entry = json.loads(last_line)
        except json.JSONDecodeError as exc:
            raise AuditError(
                f"Corrupt audit log, last line is not valid JSON: {self._path}"
            ) from exc
        return entry.get("entry_hash", GENESIS_HASH)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def prev_hash(self) -> str:
        return self._prev_hash

    def log_verdict(
        self,
        verdict: Verdict,
        context: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEvent:
        """Append *verdict* to the log and return the stored event."""
        timestamp = timestamp or datetime.now(tz=UTC)

        with self._lock:
            event = AuditEvent(
                event_id=verdict.audit_id,
                timestamp=timestamp,
                prev_hash=self._prev_hash,
                user_id=verdict.user_id,
                subscription_level=verdict.subscription_level,
                operation=verdict.operation,
                allowed=verdict.allowed,
                reason_code=verdict.reason_code,
                message=verdict.message,
                upgrade_hint=verdict.upgrade_hint,
                context=context,
            )
            event.entry_hash = _hash_payload(event.model_dump(mode="json", exclude={"entry_hash"}))
            line = json.dumps(event.model_dump(mode="json"), sort_keys=True)

            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
            self._prev_hash = event.entry_hash

        return event

    def read_events(self) -> list[AuditEvent]:
        """Read all events from the log file."""
        if not self._path.exists():
            return []

        events: list[AuditEvent] = []
        with self._path.open("r", encoding="utf-8") as f:
            for i, line in enumerate(f):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    events.append(AuditEvent(**json.loads(stripped)))
                except (json.JSONDecodeError, ValidationError, TypeError) as e:
                    raise AuditError(
                        f"Corrupt entry at line {i + 1} in {self._path}: {e}"
                    ) from e

        return events

    def denials(self, user_id: str | None = None) -> list[AuditEvent]:
        """Denied verdicts, optionally for one user."""
        return [
            e for e in self.read_events()
            if not e.allowed and (user_id is None or e.user_id == user_id)
        ]


def verify_log(log_path: str | Path) -> tuple[bool, list[str]]:
    """Verify the integrity of a hash-chained verdict log.

    Returns (is_valid, list_of_errors).
    An empty error list means the log is intact.
    """
    log_path = Path(log_path)
    if not log_path.exists():
        return True, []

    errors: list[str] = []
    prev_hash = GENESIS_HASH
    line_num = 0

    with log_path.open("r", encoding="utf-8") as f:
        for line in f:
            stripped = line.strip()
            if not stripped:
                continue
            line_num += 1

            try:
                data = json.loads(stripped)
            except json.JSONDecodeError as e:
                errors.append(f"Line {line_num}: invalid JSON: {e}")
                continue

            stored_prev = data.get("prev_hash", "")
            if stored_prev != prev_hash:
                errors.append(
                    f"Line {line_num}: chain broken, "
                    f"expected prev_hash {prev_hash[:16]}..., "
                    f"got {stored_prev[:16]}..."
                )

            stored_hash = data.get("entry_hash", "")
            recomputed = _hash_payload({k: v for k, v in data.items() if k != "entry_hash"})
            if stored_hash != recomputed:
                errors.append(
                    f"Line {line_num}: hash mismatch, "
                    f"stored {stored_hash[:16]}..., "
                    f"computed {recomputed[:16]}..."
                )

            prev_hash = stored_hash

    return len(errors) == 0, errors
