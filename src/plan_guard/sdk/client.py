"""PlanGuard SDK: the single public entry point.

Wires every component (tier catalog, operation registry, role resolver,
usage ledger, budget guard, validator, audit) behind one object that
route handlers construct once at startup and pass around explicitly.

Usage::

    from plan_guard import PlanGuard

    guard = PlanGuard.from_config("plan-guard.yaml")
    verdict = guard.check("user-42", "run_ai_grouping", subscription_level="premium")
    if verdict.allowed:
        run_grouping()
        guard.record_usage("user-42", "run_ai_grouping")
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, TypeVar

from plan_guard.audit.logger import AuditLogger
from plan_guard.budget.guard import BudgetGuard, WarningThresholds
from plan_guard.catalog.operations import OperationRegistry, default_registry, load_operations
from plan_guard.catalog.tiers import TierCatalog, default_catalog, load_tiers
from plan_guard.config import PlanGuardConfig, load_config
from plan_guard.ledger.ledger import UsageLedger
from plan_guard.ledger.sqlite_store import SQLiteUsageStore
from plan_guard.ledger.store import InMemoryUsageStore, UsageStore
from plan_guard.models import (
    OperationContext,
    SubscriptionStatus,
    UsageRecord,
    UserIdentity,
    Verdict,
)
from plan_guard.pdp.validator import (
    DEFAULT_LOOKUP_TIMEOUT,
    DEFAULT_LOOKUP_WORKERS,
    OperationValidator,
    parse_context,
)
from plan_guard.roles.resolver import (
    FileMembershipStore,
    InMemoryMembershipStore,
    MembershipStore,
    RoleResolver,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PlanGuardError(Exception):
    """Raised for configuration, wiring, or caller-contract errors."""


class PlanGuard:
    """Public API for plan-guard.

    Exposes ``check()`` before a gated action and ``record_usage()``
    after it succeeds; ``perform()`` does both around a callable.
    """

    def __init__(
        self,
        tiers: TierCatalog | str | Path | None = None,
        operations: OperationRegistry | str | Path | None = None,
        memberships: MembershipStore | dict[str, dict[str, Any]] | str | Path | None = None,
        ledger: UsageStore | str | Path | None = None,
        audit_log: str | Path | None = None,
        lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT,
        lookup_workers: int = DEFAULT_LOOKUP_WORKERS,
        warnings: WarningThresholds | dict[str, Any] | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize PlanGuard.

        Args:
            tiers: A ``TierCatalog`` or path to a tier YAML file
                (default: built-in tier table).
            operations: An ``OperationRegistry`` or path to an operation
                YAML file or directory (default: built-in operations).
            memberships: A membership store, a ``{user_id: record}`` dict,
                or path to a memberships YAML file (default: empty).
            ledger: A usage store or path to a SQLite database
                (default: in-memory).
            audit_log: Path to the verdict log (optional, enables auditing).
            lookup_timeout: Seconds to wait for a membership lookup.
            lookup_workers: Threads available for membership lookups.
            warnings: Usage warning thresholds, as a model or dict.
            _clock: Injected clock for month keys (tests).
        """
        if isinstance(tiers, TierCatalog):
            self._catalog = tiers
        elif tiers is None:
            self._catalog = default_catalog()
        else:
            self._catalog = load_tiers(tiers)

        if isinstance(operations, OperationRegistry):
            self._registry = operations
        elif operations is None:
            self._registry = default_registry()
        else:
            self._registry = load_operations(operations)

        self._resolver = RoleResolver(_build_membership_store(memberships))
        self._ledger = UsageLedger(_build_usage_store(ledger), _clock=_clock)

        if isinstance(warnings, dict):
            warnings = WarningThresholds(**warnings)
        self._budget = BudgetGuard(self._catalog, self._ledger, thresholds=warnings)

        self._audit: AuditLogger | None = None
        if audit_log is not None:
            self._audit = AuditLogger(Path(audit_log))

        self._validator = OperationValidator(
            catalog=self._catalog,
            registry=self._registry,
            resolver=self._resolver,
            budget=self._budget,
            audit_logger=self._audit,
            lookup_timeout=lookup_timeout,
            lookup_workers=lookup_workers,
        )

    @classmethod
    def from_config(
        cls,
        config: PlanGuardConfig | str | Path | None = None,
        *,
        auto_discover: bool = True,
        _clock: Callable[[], datetime] | None = None,
    ) -> PlanGuard:
        """Build from a ``PlanGuardConfig`` or a ``plan-guard.yaml`` path."""
        if not isinstance(config, PlanGuardConfig):
            config = load_config(config, auto_discover=auto_discover)
        return cls(
            tiers=config.tiers,
            operations=config.operations,
            memberships=config.memberships,
            ledger=config.ledger,
            audit_log=config.audit_log,
            lookup_timeout=config.lookup_timeout_seconds,
            lookup_workers=config.lookup_workers,
            warnings=config.warnings,
            _clock=_clock,
        )

    # --- Components ---

    @property
    def catalog(self) -> TierCatalog:
        return self._catalog

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    @property
    def resolver(self) -> RoleResolver:
        return self._resolver

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def budget(self) -> BudgetGuard:
        return self._budget

    @property
    def validator(self) -> OperationValidator:
        return self._validator

    @property
    def audit(self) -> AuditLogger | None:
        return self._audit

    # --- Decisions ---

    def check(
        self,
        user: UserIdentity | str,
        operation: str,
        context: OperationContext | dict[str, Any] | None = None,
        *,
        subscription_level: str | None = None,
    ) -> Verdict:
        """Validate *operation* for *user*. Never charges."""
        return self._validator.validate(_identity(user, subscription_level), operation, context)

    def record_usage(
        self,
        user: UserIdentity | str,
        operation: str,
        actual_cost: Decimal | float | str | None = None,
        month: str | None = None,
    ) -> UsageRecord:
        """Charge a completed *operation* to *user*'s monthly usage.

        Uses the operation's estimated cost unless *actual_cost* is
        given. Raises ``PlanGuardError`` for an unknown or non-billable
        operation.
        """
        descriptor = self._registry.get(operation)
        if descriptor is None:
            raise PlanGuardError(f"Unknown operation: {operation}")
        if not descriptor.is_billable:
            raise PlanGuardError(f"Operation is not billable: {operation}")
        user_id = user.user_id if isinstance(user, UserIdentity) else user
        cost = descriptor.estimated_cost if actual_cost is None else actual_cost
        return self._budget.record_usage(
            user_id, cost, descriptor.run_kind, feature=descriptor.name, month=month,
        )

    def perform(
        self,
        user: UserIdentity | str,
        operation: str,
        action: Callable[[], T],
        context: OperationContext | dict[str, Any] | None = None,
        *,
        subscription_level: str | None = None,
    ) -> tuple[Verdict, T | None]:
        """Validate, run *action* if allowed, then charge on success.

        Returns ``(verdict, result)``; *result* is ``None`` when denied.
        If *action* raises, nothing is charged and the exception
        propagates.
        """
        identity = _identity(user, subscription_level)
        verdict = self._validator.validate(identity, operation, context)
        if not verdict.allowed:
            return verdict, None

        result = action()

        descriptor = self._registry.get_or_raise(operation)
        if descriptor.is_billable:
            ctx = parse_context(context)
            self.record_usage(identity, operation, actual_cost=ctx.estimated_cost)
        return verdict, result

    # --- Usage & status ---

    def usage(self, user_id: str, month: str | None = None) -> UsageRecord:
        return self._ledger.get_usage(user_id, month)

    def history(self, user_id: str, limit: int = 12) -> list[UsageRecord]:
        return self._ledger.history(user_id, limit)

    def status(
        self, user: UserIdentity | str, *, subscription_level: str | None = None,
    ) -> SubscriptionStatus:
        """Plan, limits, usage, warnings and per-operation verdicts. Read-only."""
        identity = _identity(user, subscription_level)
        tier = self._catalog.get_tier(identity.subscription_level)
        usage = self._ledger.get_usage(identity.user_id)
        return SubscriptionStatus(
            user_id=identity.user_id,
            subscription_level=tier.level,
            features=sorted(tier.features),
            limits=tier.limits,
            next_tier=self._catalog.next_tier(tier.level),
            usage=usage,
            warnings=self._budget.usage_warnings(usage, tier.limits),
            permissions=self._validator.evaluate_all(identity),
        )

    # --- Lifecycle ---

    def close(self) -> None:
        self._validator.close()
        self._ledger.close()

    def __enter__(self) -> PlanGuard:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def _identity(user: UserIdentity | str, subscription_level: str | None) -> UserIdentity:
    if isinstance(user, UserIdentity):
        if subscription_level is None:
            return user
        return UserIdentity(user_id=user.user_id, subscription_level=subscription_level)
    return UserIdentity(user_id=user, subscription_level=subscription_level or "free")


def _build_membership_store(
    memberships: MembershipStore | dict[str, dict[str, Any]] | str | Path | None,
) -> MembershipStore:
    if memberships is None:
        return InMemoryMembershipStore()
    if isinstance(memberships, dict):
        return InMemoryMembershipStore(memberships)
    if isinstance(memberships, (str, Path)):
        return FileMembershipStore(memberships)
    if isinstance(memberships, MembershipStore):
        return memberships
    raise PlanGuardError(f"Unsupported membership store: {type(memberships).__name__}")


def _build_usage_store(ledger: UsageStore | str | Path | None) -> UsageStore:
    if ledger is None:
        return InMemoryUsageStore()
    if isinstance(ledger, (str, Path)):
        return SQLiteUsageStore(ledger)
    if isinstance(ledger, UsageStore):
        return ledger
    raise PlanGuardError(f"Unsupported usage store: {type(ledger).__name__}")
