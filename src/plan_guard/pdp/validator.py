"""Operation Validator: the single entry point for route handlers.

Takes (user, operation name, context) and returns a ``Verdict``.

Evaluation:
1. Look up the operation; unknown names are denied (fail closed).
2. Parse the request context; malformed context is denied.
3. Resolve membership (on a worker, with a timeout) while the tier is
   looked up.
4. Evaluate features and roles.
5. Check that the context carries every field the operation needs.
6. For billable operations, check the monthly budget.

The validator never charges. Callers record usage separately, and only
after the guarded action succeeds. Collaborator failures propagate as
``LedgerUnavailable`` / ``MembershipUnavailable`` rather than being
folded into a deny.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from plan_guard.audit.logger import AuditLogger
from plan_guard.budget.guard import (
    REASON_AI_RUNS,
    REASON_API_RUNS,
    REASON_COST,
    BudgetGuard,
)
from plan_guard.catalog.operations import OperationRegistry
from plan_guard.catalog.tiers import TierCatalog
from plan_guard.errors import MembershipUnavailable
from plan_guard.models import (
    Affordability,
    MembershipContext,
    OperationContext,
    OperationDescriptor,
    ReasonCode,
    SubscriptionLevel,
    SubscriptionTier,
    UsageRecord,
    UserIdentity,
    Verdict,
)
from plan_guard.pdp.permissions import PermissionEvaluator
from plan_guard.roles.capabilities import CapabilitySet
from plan_guard.roles.resolver import RoleResolver

logger = logging.getLogger(__name__)

DEFAULT_LOOKUP_TIMEOUT = 2.0
DEFAULT_LOOKUP_WORKERS = 4


def parse_context(context: OperationContext | dict[str, Any] | None) -> OperationContext:
    """Coerce caller input into an ``OperationContext``.

    Raises ``ValueError`` (pydantic's ``ValidationError``) or ``TypeError``
    on malformed input.
    """
    if context is None:
        return OperationContext()
    if isinstance(context, OperationContext):
        return context
    if not isinstance(context, dict):
        raise TypeError(f"context must be a mapping, got {type(context).__name__}")
    return OperationContext(**context)


def _budget_message(
    result: Affordability, tier: SubscriptionTier, cost: Decimal,
) -> str:
    usage = result.usage
    limits = tier.limits
    if result.reason == REASON_COST:
        return (
            f"Monthly cost budget exceeded for the {tier.level} plan "
            f"({usage.total_cost} used + {cost} requested > {limits.max_cost})"
        )
    if result.reason == REASON_AI_RUNS:
        return (
            f"Monthly AI run limit reached for the {tier.level} plan "
            f"({usage.total_runs_ai}/{limits.max_runs_ai})"
        )
    if result.reason == REASON_API_RUNS:
        return (
            f"Monthly API run limit reached for the {tier.level} plan "
            f"({usage.total_runs_api}/{limits.max_runs_api})"
        )
    return result.reason


class OperationValidator:
    """Combines permission and budget checks into one verdict.

    Holds no per-request state. The worker pool is only used for the
    membership lookup so that its timeout can be enforced.

    A lookup that times out cannot be interrupted: it keeps its worker
    until the store returns. Once ``lookup_workers`` lookups hang, later
    requests queue behind them and fail closed with
    ``MembershipUnavailable`` until the store recovers.
    """

    def __init__(
        self,
        catalog: TierCatalog,
        registry: OperationRegistry,
        resolver: RoleResolver,
        budget: BudgetGuard,
        evaluator: PermissionEvaluator | None = None,
        audit_logger: AuditLogger | None = None,
        lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT,
        executor: ThreadPoolExecutor | None = None,
        lookup_workers: int = DEFAULT_LOOKUP_WORKERS,
    ) -> None:
        if lookup_timeout <= 0:
            raise ValueError("lookup_timeout must be positive")
        if lookup_workers < 1:
            raise ValueError("lookup_workers must be at least 1")
        self._catalog = catalog
        self._registry = registry
        self._resolver = resolver
        self._budget = budget
        self._evaluator = evaluator or PermissionEvaluator()
        self._audit = audit_logger
        self._timeout = lookup_timeout
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=lookup_workers, thread_name_prefix="plan-guard-lookup",
        )

    @property
    def lookup_timeout(self) -> float:
        return self._timeout

    def validate(
        self,
        user: UserIdentity,
        operation_name: str,
        context: OperationContext | dict[str, Any] | None = None,
    ) -> Verdict:
        """Decide whether *user* may perform *operation_name* right now."""
        audit_id = f"evt-{uuid.uuid4().hex[:12]}"
        level = self._catalog.normalize_level(user.subscription_level)

        operation = self._registry.get(operation_name)
        if operation is None:
            verdict = self._verdict(
                user, level, operation_name, audit_id,
                ReasonCode.UNKNOWN_OPERATION, f"Unknown operation: {operation_name}",
            )
            return self._finish(verdict, None)

        try:
            ctx = parse_context(context)
        except (ValueError, TypeError) as e:
            verdict = self._verdict(
                user, level, operation_name, audit_id,
                ReasonCode.INVALID_CONTEXT, f"Invalid context: {_short_error(e)}",
            )
            return self._finish(verdict, None)

        future = self._executor.submit(self._resolver.resolve, user.user_id)
        tier = self._catalog.get_tier(level)
        membership = self._await_membership(future, user.user_id)

        verdict = self._decide(user, tier, operation, ctx, membership, audit_id)
        return self._finish(verdict, ctx)

    def evaluate_all(
        self,
        user: UserIdentity,
        context: OperationContext | dict[str, Any] | None = None,
    ) -> dict[str, Verdict]:
        """Verdicts for every registered operation. Not audited.

        Membership and usage are each read once and shared.
        """
        ctx = parse_context(context)
        tier = self._catalog.get_tier(user.subscription_level)
        future = self._executor.submit(self._resolver.resolve, user.user_id)
        membership = self._await_membership(future, user.user_id)
        caps = CapabilitySet.from_membership(membership)

        usage: UsageRecord | None = None
        verdicts: dict[str, Verdict] = {}
        for name in self._registry.list_operations():
            operation = self._registry.get_or_raise(name)
            if operation.is_billable and usage is None:
                usage = self._budget.ledger.get_usage(user.user_id)
            verdicts[name] = self._decide(
                user, tier, operation, ctx, membership,
                f"evt-{uuid.uuid4().hex[:12]}", caps=caps, usage=usage,
            )
        return verdicts

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _await_membership(self, future: Any, user_id: str) -> MembershipContext:
        try:
            return future.result(timeout=self._timeout)
        except FuturesTimeout as exc:
            future.cancel()
            logger.error("Membership lookup for %s timed out after %.1fs", user_id, self._timeout)
            raise MembershipUnavailable(
                f"Membership lookup for {user_id} timed out after {self._timeout}s",
                user_id=user_id,
            ) from exc

    def _decide(
        self,
        user: UserIdentity,
        tier: SubscriptionTier,
        operation: OperationDescriptor,
        ctx: OperationContext,
        membership: MembershipContext,
        audit_id: str,
        caps: CapabilitySet | None = None,
        usage: UsageRecord | None = None,
    ) -> Verdict:
        level = tier.level
        permission = self._evaluator.evaluate(membership, tier, operation, ctx, capabilities=caps)
        if not permission.allowed:
            hint = None
            if permission.reason_code == ReasonCode.NO_FEATURE and operation.required_feature:
                hint = self._catalog.lowest_with_feature(operation.required_feature, above=level)
            return self._verdict(
                user, level, operation.name, audit_id,
                permission.reason_code, permission.message, upgrade_hint=hint,
            )

        missing = sorted(f for f in operation.required_context if getattr(ctx, f) is None)
        if missing:
            return self._verdict(
                user, level, operation.name, audit_id, ReasonCode.INVALID_CONTEXT,
                f"'{operation.name}' requires context fields: {', '.join(missing)}",
            )

        if not operation.is_billable:
            return self._verdict(user, level, operation.name, audit_id, ReasonCode.OK, "Allowed")

        cost = ctx.estimated_cost if ctx.estimated_cost is not None else operation.estimated_cost
        if usage is None:
            usage = self._budget.ledger.get_usage(user.user_id)
        result = self._budget.can_afford(
            user.user_id, level, cost, operation.run_kind, usage=usage,
        )
        if not result.allowed:
            hint = self._budget.upgrade_for(
                level, usage, cost, operation.run_kind, operation.required_feature,
            )
            return self._verdict(
                user, level, operation.name, audit_id, ReasonCode.BUDGET_EXCEEDED,
                _budget_message(result, tier, cost), upgrade_hint=hint,
                remaining_cost=result.remaining_cost, remaining_runs=result.remaining_runs,
            )

        return self._verdict(
            user, level, operation.name, audit_id, ReasonCode.OK, "Allowed",
            remaining_cost=result.remaining_cost, remaining_runs=result.remaining_runs,
        )

    @staticmethod
    def _verdict(
        user: UserIdentity,
        level: SubscriptionLevel,
        operation: str,
        audit_id: str,
        code: ReasonCode,
        message: str,
        upgrade_hint: SubscriptionLevel | None = None,
        remaining_cost: Decimal | None = None,
        remaining_runs: int | None = None,
    ) -> Verdict:
        return Verdict(
            allowed=code == ReasonCode.OK,
            reason_code=code,
            message=message,
            upgrade_hint=upgrade_hint,
            operation=operation,
            user_id=user.user_id,
            subscription_level=level,
            audit_id=audit_id,
            remaining_cost=remaining_cost,
            remaining_runs=remaining_runs,
        )

    def _finish(self, verdict: Verdict, ctx: OperationContext | None) -> Verdict:
        logger.debug(
            "Verdict %s for %s on %s: %s",
            verdict.audit_id, verdict.user_id, verdict.operation, verdict.reason_code,
        )
        if self._audit is not None:
            self._audit.log_verdict(
                verdict, context=ctx.model_dump(mode="json") if ctx is not None else None,
            )
        return verdict


def _short_error(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        parts = [
            f"{'.'.join(str(p) for p in err['loc']) or 'context'}: {err['msg']}"
            for err in exc.errors()
        ]
        return "; ".join(parts)
    return str(exc)
