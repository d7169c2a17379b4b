"""Budget Guard: monthly cost and run caps for billable operations.

``can_afford`` is a soft check. It reads the current month's usage and
compares it with the tier limits; the charge happens later, through
``record_usage``, once the guarded operation has succeeded. Two
concurrent requests may both pass the check and slightly overshoot the
cap. Increments themselves are atomic in the store, so no usage is
ever lost.

Checks run in a fixed order (cost, AI runs, API runs) and the first
failure names the reason, so the same inputs always give the same
message.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from plan_guard.catalog.tiers import TierCatalog
from plan_guard.ledger.ledger import UsageLedger
from plan_guard.models import (
    Affordability,
    RunKind,
    SubscriptionLevel,
    TierLimits,
    UsageEvent,
    UsageRecord,
    UsageWarning,
)

logger = logging.getLogger(__name__)

REASON_OK = "within_limits"
REASON_COST = "cost_budget_exceeded"
REASON_AI_RUNS = "ai_runs_exceeded"
REASON_API_RUNS = "api_runs_exceeded"


class WarningThresholds(BaseModel):
    """When to warn a user that a monthly cap is close."""

    threshold_percent: float = Field(80.0, gt=0, le=100)
    """Usage at or above this share of a cap is a ``medium`` warning."""

    high_percent: float = Field(95.0, gt=0, le=100)
    """Usage at or above this share of a cap is a ``high`` warning."""

    upgrade_percent: float = Field(90.0, gt=0, le=100)
    """Usage at or above this share recommends an upgrade."""

    @model_validator(mode="after")
    def _ordered(self) -> WarningThresholds:
        if self.threshold_percent > self.high_percent:
            raise ValueError("threshold_percent must not exceed high_percent")
        return self


def _to_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def check_limits(
    usage: UsageRecord,
    limits: TierLimits,
    estimated_cost: Decimal,
    run_kind: RunKind,
) -> Affordability:
    """Pure affordability check of *usage* against *limits*."""
    if estimated_cost < 0:
        raise ValueError("Estimated cost cannot be negative")

    remaining_cost: Decimal | None = None
    if limits.max_cost is not None:
        remaining_cost = max(limits.max_cost - usage.total_cost, Decimal("0"))

    runs_limit = limits.runs_limit(run_kind)
    remaining_runs: int | None = None
    if runs_limit is not None:
        remaining_runs = max(runs_limit - usage.runs_used(run_kind), 0)

    reason = REASON_OK
    if limits.max_cost is not None and usage.total_cost + estimated_cost > limits.max_cost:
        reason = REASON_COST
    elif (
        run_kind == RunKind.AI
        and limits.max_runs_ai is not None
        and usage.total_runs_ai >= limits.max_runs_ai
    ):
        reason = REASON_AI_RUNS
    elif (
        run_kind == RunKind.API
        and limits.max_runs_api is not None
        and usage.total_runs_api >= limits.max_runs_api
    ):
        reason = REASON_API_RUNS

    return Affordability(
        allowed=reason == REASON_OK,
        reason=reason,
        remaining_cost=remaining_cost,
        remaining_runs=remaining_runs,
        usage=usage,
    )


class BudgetGuard:
    """Combines tier limits with ledger counters."""

    def __init__(
        self,
        catalog: TierCatalog,
        ledger: UsageLedger,
        thresholds: WarningThresholds | None = None,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._thresholds = thresholds or WarningThresholds()

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def thresholds(self) -> WarningThresholds:
        return self._thresholds

    def can_afford(
        self,
        user_id: str,
        subscription_level: str | SubscriptionLevel | None,
        estimated_cost: Decimal | float | int | str,
        run_kind: RunKind = RunKind.NONE,
        usage: UsageRecord | None = None,
    ) -> Affordability:
        """Would an operation costing *estimated_cost* fit this month's caps?

        *usage* may be passed in when the caller already holds a fresh
        record; otherwise it is read from the ledger.
        """
        cost = _to_decimal(estimated_cost)
        tier = self._catalog.get_tier(subscription_level)
        if usage is None:
            usage = self._ledger.get_usage(user_id)
        result = check_limits(usage, tier.limits, cost, run_kind)
        logger.debug(
            "Budget check for %s (%s): cost=%s kind=%s -> %s",
            user_id, tier.level, cost, run_kind, result.reason,
        )
        return result

    def record_usage(
        self,
        user_id: str,
        cost: Decimal | float | int | str,
        run_kind: RunKind = RunKind.NONE,
        feature: str | None = None,
        month: str | None = None,
    ) -> UsageRecord:
        """Charge a completed operation. Call only after it succeeded."""
        cost = _to_decimal(cost)
        if not cost.is_finite():
            raise ValueError(f"Usage cost must be a finite number, got {cost}")
        if cost < 0:
            raise ValueError("Usage cost cannot be negative")
        event = UsageEvent.for_run(cost, run_kind, feature)
        return self._ledger.record_usage(user_id, event, month=month)

    def upgrade_for(
        self,
        subscription_level: str | SubscriptionLevel | None,
        usage: UsageRecord,
        estimated_cost: Decimal,
        run_kind: RunKind,
        required_feature: str | None = None,
    ) -> SubscriptionLevel | None:
        """Lowest higher tier whose limits (and features) admit the operation."""
        for tier in self._catalog.tiers_above(subscription_level):
            if required_feature and not tier.has_feature(required_feature):
                continue
            if check_limits(usage, tier.limits, estimated_cost, run_kind).allowed:
                return tier.level
        return None

    def usage_warnings(self, usage: UsageRecord, limits: TierLimits) -> list[UsageWarning]:
        """Dimensions of *usage* that are close to their caps."""
        dimensions: list[tuple[str, str, Decimal | int, Decimal | int | None]] = [
            ("cost", "cost budget", usage.total_cost, limits.max_cost),
            ("runs_ai", "AI runs", usage.total_runs_ai, limits.max_runs_ai),
            ("runs_api", "API runs", usage.total_runs_api, limits.max_runs_api),
        ]
        warnings: list[UsageWarning] = []
        for kind, label, used, limit in dimensions:
            if limit is None or limit <= 0:
                continue
            percent = float(Decimal(used) / Decimal(limit) * 100)
            if percent >= self._thresholds.high_percent:
                severity = "high"
            elif percent >= self._thresholds.threshold_percent:
                severity = "medium"
            else:
                continue
            warnings.append(UsageWarning(
                kind=kind,
                severity=severity,
                percent_used=round(percent, 1),
                message=f"{percent:.0f}% of monthly {label} used",
                upgrade_recommended=percent >= self._thresholds.upgrade_percent,
            ))
        return warnings
