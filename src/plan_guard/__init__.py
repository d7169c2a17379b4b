"""plan-guard: subscription permission and usage-budget checks for SaaS route handlers."""

__version__ = "0.4.0"

from plan_guard.config import PlanGuardConfig, find_config, load_config
from plan_guard.errors import CollaboratorUnavailable, LedgerUnavailable, MembershipUnavailable
from plan_guard.models import (
    MembershipContext,
    OperationContext,
    OperationDescriptor,
    OrganizationRole,
    ReasonCode,
    RunKind,
    SubscriptionLevel,
    SubscriptionStatus,
    SubscriptionTier,
    TeamRole,
    UsageRecord,
    UserIdentity,
    Verdict,
)
from plan_guard.sdk.client import PlanGuard, PlanGuardError

__all__ = [
    "CollaboratorUnavailable",
    "find_config",
    "LedgerUnavailable",
    "load_config",
    "MembershipContext",
    "MembershipUnavailable",
    "OperationContext",
    "OperationDescriptor",
    "OrganizationRole",
    "PlanGuard",
    "PlanGuardConfig",
    "PlanGuardError",
    "ReasonCode",
    "RunKind",
    "SubscriptionLevel",
    "SubscriptionStatus",
    "SubscriptionTier",
    "TeamRole",
    "UsageRecord",
    "UserIdentity",
    "Verdict",
    "__version__",
]
