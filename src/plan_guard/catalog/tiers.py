"""Tier Catalog: subscription levels, their features and monthly limits.

The catalog is built once at startup (from YAML or the built-in table)
and is read-only afterwards, so it is safe to share across threads
without locking.

Unknown or stale level strings are normalised to ``free`` instead of
raising: tier strings come from user records that may predate a rename.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from plan_guard.models import LEVEL_ORDER, UNLIMITED, SubscriptionLevel, SubscriptionTier

logger = logging.getLogger(__name__)

# Spellings found in older user records.
_LEVEL_ALIASES: dict[str, SubscriptionLevel] = {
    "base": SubscriptionLevel.FREE,
    "basic": SubscriptionLevel.FREE,
}

_PRO_FEATURES = [
    "basic_contacts",
    "basic_groups",
    "basic_analytics",
    "business_card_scanner",
    "map_visualization",
    "places_lookup",
]
_PREMIUM_FEATURES = _PRO_FEATURES + [
    "advanced_groups",
    "event_detection",
    "team_sharing",
    "contact_analytics",
    "ai_grouping",
    "ai_enhancement",
    "semantic_search",
]
_BUSINESS_FEATURES = _PREMIUM_FEATURES + [
    "bulk_operations",
    "export_data",
    "team_management",
    "audit_logs",
]
_ENTERPRISE_FEATURES = _BUSINESS_FEATURES + [
    "api_access",
    "organization_branding",
]

DEFAULT_TIERS: dict[str, dict[str, Any]] = {
    "free": {
        "features": [],
        "limits": {"max_cost": 0, "max_runs_ai": 0, "max_runs_api": 0},
    },
    "pro": {
        "features": _PRO_FEATURES,
        "limits": {"max_cost": "1.5", "max_runs_ai": 0, "max_runs_api": 50},
    },
    "premium": {
        "features": _PREMIUM_FEATURES,
        "limits": {"max_cost": "3.0", "max_runs_ai": 30, "max_runs_api": 100},
    },
    "business": {
        "features": _BUSINESS_FEATURES,
        "limits": {"max_cost": "5.0", "max_runs_ai": 50, "max_runs_api": 200},
    },
    "enterprise": {
        "features": _ENTERPRISE_FEATURES,
        "limits": {"max_cost": UNLIMITED, "max_runs_ai": UNLIMITED, "max_runs_api": UNLIMITED},
    },
}


class CatalogError(Exception):
    """Raised when a tier table cannot be loaded or is incomplete."""


@dataclass(frozen=True)
class MonotonicViolation:
    """A higher tier that offers less than a lower one."""

    lower: SubscriptionLevel
    higher: SubscriptionLevel
    kind: str
    detail: str

    def __str__(self) -> str:
        return f"{self.higher} < {self.lower}: {self.kind} {self.detail}"


def normalize_level(level: str | SubscriptionLevel | None) -> SubscriptionLevel:
    """Map a raw level string onto a ``SubscriptionLevel``.

    Anything unrecognised becomes ``free``.
    """
    if isinstance(level, SubscriptionLevel):
        return level
    if level is None:
        return SubscriptionLevel.FREE
    key = str(level).strip().lower()
    if key in _LEVEL_ALIASES:
        return _LEVEL_ALIASES[key]
    try:
        return SubscriptionLevel(key)
    except ValueError:
        logger.warning("Unknown subscription level %r, treating as free", level)
        return SubscriptionLevel.FREE


def _limit_exceeds(lower: Any, higher: Any) -> bool:
    """True when *lower*'s limit is strictly larger than *higher*'s."""
    if lower is None:
        return higher is not None
    if higher is None:
        return False
    return lower > higher


class TierCatalog:
    """Static mapping of subscription level to tier definition."""

    def __init__(self, tiers: Iterable[SubscriptionTier]) -> None:
        self._tiers: dict[SubscriptionLevel, SubscriptionTier] = {}
        for tier in tiers:
            if tier.level in self._tiers:
                raise CatalogError(f"Duplicate tier for level '{tier.level}'")
            self._tiers[tier.level] = tier

        missing = [lvl.value for lvl in LEVEL_ORDER if lvl not in self._tiers]
        if missing:
            raise CatalogError(f"Tier table is missing levels: {', '.join(missing)}")

        for violation in self.monotonic_violations():
            logger.warning("Non-monotonic tier table: %s", violation)

    @property
    def tiers(self) -> list[SubscriptionTier]:
        """All tiers, lowest rank first."""
        return [self._tiers[lvl] for lvl in LEVEL_ORDER]

    def __len__(self) -> int:
        return len(self._tiers)

    def normalize_level(self, level: str | SubscriptionLevel | None) -> SubscriptionLevel:
        return normalize_level(level)

    def get_tier(self, level: str | SubscriptionLevel | None) -> SubscriptionTier:
        return self._tiers[normalize_level(level)]

    def has_feature(self, level: str | SubscriptionLevel | None, feature: str) -> bool:
        return self.get_tier(level).has_feature(feature)

    def next_tier(self, level: str | SubscriptionLevel | None) -> SubscriptionLevel | None:
        """The next rank up, or ``None`` at the top of the ladder."""
        index = LEVEL_ORDER.index(normalize_level(level))
        if index + 1 >= len(LEVEL_ORDER):
            return None
        return LEVEL_ORDER[index + 1]

    def tiers_above(self, level: str | SubscriptionLevel | None) -> list[SubscriptionTier]:
        """Tiers ranked strictly higher than *level*, lowest first."""
        index = LEVEL_ORDER.index(normalize_level(level))
        return [self._tiers[lvl] for lvl in LEVEL_ORDER[index + 1:]]

    def lowest_with_feature(
        self, feature: str, above: str | SubscriptionLevel | None = None,
    ) -> SubscriptionLevel | None:
        """Lowest tier offering *feature*, optionally restricted to tiers above *above*."""
        candidates = self.tiers if above is None else self.tiers_above(above)
        for tier in candidates:
            if tier.has_feature(feature):
                return tier.level
        return None

    def monotonic_violations(self) -> list[MonotonicViolation]:
        """Every place where a higher tier offers less than a lower one."""
        violations: list[MonotonicViolation] = []
        ordered = self.tiers
        for i, lower in enumerate(ordered):
            for higher in ordered[i + 1:]:
                for feature in sorted(lower.features - higher.features):
                    violations.append(MonotonicViolation(
                        lower=lower.level, higher=higher.level,
                        kind="feature", detail=feature,
                    ))
                for field in ("max_cost", "max_runs_ai", "max_runs_api"):
                    low_val = getattr(lower.limits, field)
                    high_val = getattr(higher.limits, field)
                    if _limit_exceeds(low_val, high_val):
                        violations.append(MonotonicViolation(
                            lower=lower.level, higher=higher.level, kind=field,
                            detail=f"{_fmt_limit(low_val)} > {_fmt_limit(high_val)}",
                        ))
        return violations


def _fmt_limit(value: Decimal | int | None) -> str:
    return UNLIMITED if value is None else str(value)


def tier_to_dict(tier: SubscriptionTier) -> dict[str, Any]:
    """Serialise a tier to the YAML/JSON shape ``load_tiers`` accepts."""
    limits = tier.limits
    return {
        "features": sorted(tier.features),
        "limits": {
            "max_cost": UNLIMITED if limits.max_cost is None else str(limits.max_cost),
            "max_runs_ai": UNLIMITED if limits.max_runs_ai is None else limits.max_runs_ai,
            "max_runs_api": UNLIMITED if limits.max_runs_api is None else limits.max_runs_api,
        },
    }


def build_tiers(raw: dict[str, Any], source: str = "<table>") -> TierCatalog:
    """Build a catalog from a ``{level: {features, limits}}`` mapping."""
    tiers: list[SubscriptionTier] = []
    for name, body in raw.items():
        if not isinstance(body, dict):
            raise CatalogError(f"Tier '{name}' must be a mapping in {source}")
        key = str(name).strip().lower()
        level = _LEVEL_ALIASES.get(key, key)
        try:
            tiers.append(SubscriptionTier(level=level, **body))
        except (ValidationError, TypeError) as e:
            raise CatalogError(f"Invalid tier '{name}' in {source}: {e}") from e
    return TierCatalog(tiers)


def load_tiers(path: str | Path) -> TierCatalog:
    """Load a tier table from a YAML file with a top-level ``tiers`` mapping."""
    path = Path(path)
    if not path.is_file():
        raise CatalogError(f"Tier file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise CatalogError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("tiers"), dict):
        raise CatalogError(f"Tier file must have a 'tiers' mapping: {path}")

    catalog = build_tiers(raw["tiers"], source=str(path))
    logger.info("Loaded %d tiers from %s", len(catalog), path)
    return catalog


def default_catalog() -> TierCatalog:
    """The built-in tier table."""
    return build_tiers(DEFAULT_TIERS, source="built-in tiers")
