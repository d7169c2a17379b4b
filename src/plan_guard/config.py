"""Config file loading and auto-discovery for plan-guard.

Searches for ``plan-guard.yaml`` in the current directory and parent
directories, parses it, and resolves all relative paths against the
config file's location.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from plan_guard.budget.guard import WarningThresholds
from plan_guard.pdp.validator import DEFAULT_LOOKUP_TIMEOUT, DEFAULT_LOOKUP_WORKERS

CONFIG_FILENAME = "plan-guard.yaml"


@dataclass(frozen=True)
class PlanGuardConfig:
    """Parsed plan-guard project configuration.

    Every path is absolute or ``None``; ``None`` selects the built-in or
    in-memory default for that component.
    """

    config_path: Path | None = None
    tiers: str | None = None
    operations: str | None = None
    memberships: str | None = None
    ledger: str | None = None
    audit_log: str | None = None
    lookup_timeout_seconds: float = DEFAULT_LOOKUP_TIMEOUT
    lookup_workers: int = DEFAULT_LOOKUP_WORKERS
    warnings: WarningThresholds = field(default_factory=WarningThresholds)


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``plan-guard.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> PlanGuardConfig:
    """Load a plan-guard config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``PlanGuardConfig`` (all defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return PlanGuardConfig()

    return _parse_config(config_path)


def _parse_config(config_path: Path) -> PlanGuardConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ValueError(msg)

    base = config_path.parent

    def _resolve(key: str) -> str | None:
        val = data.get(key)
        if val is None:
            return None
        return str((base / str(val)).resolve())

    timeout = data.get("lookup_timeout_seconds", DEFAULT_LOOKUP_TIMEOUT)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError(f"lookup_timeout_seconds must be a positive number in {config_path}")

    workers = data.get("lookup_workers", DEFAULT_LOOKUP_WORKERS)
    if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
        raise ValueError(f"lookup_workers must be a positive integer in {config_path}")

    raw_warnings: Any = data.get("warnings") or {}
    if not isinstance(raw_warnings, dict):
        raise ValueError(f"'warnings' must be a mapping in {config_path}")
    try:
        thresholds = WarningThresholds(**raw_warnings)
    except ValidationError as e:
        raise ValueError(f"Invalid warnings section in {config_path}: {e}") from e

    return PlanGuardConfig(
        config_path=config_path,
        tiers=_resolve("tiers"),
        operations=_resolve("operations"),
        memberships=_resolve("memberships"),
        ledger=_resolve("ledger"),
        audit_log=_resolve("audit_log"),
        lookup_timeout_seconds=float(timeout),
        lookup_workers=workers,
        warnings=thresholds,
    )
