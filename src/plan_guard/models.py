"""Core data models for plan-guard.

Defines the schemas for:
- Subscription tiers (what each plan includes and how much it may spend)
- Usage records (what a user has consumed this month)
- Membership context (where a user sits in an organization)
- Operation descriptors (what a gated action requires)
- Verdicts (validator output)
- Audit events (what was decided)
"""

from __future__ import annotations

import enum
import re
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UNLIMITED = "unlimited"

_MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
MONTH_RE = re.compile(_MONTH_PATTERN)

# --- Enums ---


class SubscriptionLevel(enum.StrEnum):
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


# Rank order, lowest first. Upgrade hints walk this ladder.
LEVEL_ORDER: tuple[SubscriptionLevel, ...] = (
    SubscriptionLevel.FREE,
    SubscriptionLevel.PRO,
    SubscriptionLevel.PREMIUM,
    SubscriptionLevel.BUSINESS,
    SubscriptionLevel.ENTERPRISE,
)


class OrganizationRole(enum.StrEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class TeamRole(enum.StrEnum):
    MANAGER = "manager"
    TEAM_LEAD = "team_lead"
    EMPLOYEE = "employee"


class RunKind(enum.StrEnum):
    AI = "ai"
    API = "api"
    NONE = "none"


class ReasonCode(enum.StrEnum):
    OK = "OK"
    NO_FEATURE = "NO_FEATURE"
    INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    NOT_IN_ORG = "NOT_IN_ORG"
    NOT_IN_TEAM = "NOT_IN_TEAM"
    UNKNOWN_OPERATION = "UNKNOWN_OPERATION"
    INVALID_CONTEXT = "INVALID_CONTEXT"


# --- Tier Schema ---


def _money(value: Any) -> Any:
    """Floats from YAML become decimals via their shortest repr."""
    if isinstance(value, float):
        return Decimal(repr(value))
    return value


def _parse_limit(value: Any) -> Any:
    """Map the YAML spellings of "no limit" onto None."""
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() == UNLIMITED:
        return None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool) and value == -1:
        return None
    return _money(value)


class TierLimits(BaseModel):
    """Monthly numeric limits for a tier. ``None`` means unlimited."""

    model_config = ConfigDict(frozen=True)

    max_cost: Decimal | None = Field(default=Decimal("0"), ge=0)
    max_runs_ai: int | None = Field(default=0, ge=0)
    max_runs_api: int | None = Field(default=0, ge=0)

    @field_validator("max_cost", "max_runs_ai", "max_runs_api", mode="before")
    @classmethod
    def _unlimited(cls, value: Any) -> Any:
        return _parse_limit(value)

    def runs_limit(self, kind: RunKind) -> int | None:
        """Run cap for *kind*. ``RunKind.NONE`` has no cap."""
        if kind == RunKind.AI:
            return self.max_runs_ai
        if kind == RunKind.API:
            return self.max_runs_api
        return None


class SubscriptionTier(BaseModel):
    """A subscription level with its feature set and limits.

    Loaded once at startup and never mutated.
    """

    model_config = ConfigDict(frozen=True)

    level: SubscriptionLevel
    features: frozenset[str] = Field(default_factory=frozenset)
    limits: TierLimits = Field(default_factory=TierLimits)

    def has_feature(self, feature: str) -> bool:
        return feature in self.features


# --- Usage Schema ---


class FeatureUsage(BaseModel):
    """Per-feature slice of a monthly usage record."""

    cost: Decimal = Decimal("0")
    calls: int = 0
    runs: int = 0


class UsageRecord(BaseModel):
    """Accumulated usage for one user in one calendar month."""

    user_id: str
    month: str = Field(..., pattern=_MONTH_PATTERN)
    total_cost: Decimal = Decimal("0")
    total_runs_ai: int = 0
    total_runs_api: int = 0
    total_calls: int = 0
    features: dict[str, FeatureUsage] = Field(default_factory=dict)
    updated_at: datetime | None = None

    def runs_used(self, kind: RunKind) -> int:
        if kind == RunKind.AI:
            return self.total_runs_ai
        if kind == RunKind.API:
            return self.total_runs_api
        return 0


class UsageEvent(BaseModel):
    """A single billable consumption to add to the ledger."""

    cost: Decimal = Field(default=Decimal("0"), ge=0)
    is_ai_run: bool = False
    is_api_run: bool = False
    feature: str | None = None

    @field_validator("cost", mode="before")
    @classmethod
    def _cost(cls, value: Any) -> Any:
        return _money(value)

    @classmethod
    def for_run(
        cls, cost: Decimal | float | str, kind: RunKind, feature: str | None = None,
    ) -> UsageEvent:
        return cls(
            cost=Decimal(str(cost)),
            is_ai_run=kind == RunKind.AI,
            is_api_run=kind == RunKind.API,
            feature=feature,
        )


# --- Membership Schema ---


class TeamMembership(BaseModel):
    """A user's standing inside one team."""

    model_config = ConfigDict(frozen=True)

    role: TeamRole = TeamRole.EMPLOYEE
    permissions: frozenset[str] = Field(default_factory=frozenset)


class MembershipContext(BaseModel):
    """Where a user sits in an organization. Built by the role resolver."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    organization_id: str | None = None
    organization_role: OrganizationRole | None = None
    teams: dict[str, TeamMembership] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _unaffiliated_has_no_teams(self) -> MembershipContext:
        if self.organization_id is None and (self.teams or self.organization_role):
            raise ValueError("a user without an organization cannot hold team or organization roles")
        return self


# --- Operation Schema ---


class OperationDescriptor(BaseModel):
    """A gated operation that route handlers ask about.

    Loaded from YAML or the built-in set.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., pattern=r"^[A-Za-z][A-Za-z0-9_.-]*$")
    description: str = ""
    required_feature: str | None = None
    is_billable: bool = False
    estimated_cost: Decimal = Field(default=Decimal("0"), ge=0)
    run_kind: RunKind = RunKind.NONE
    required_team_roles: frozenset[TeamRole] = Field(default_factory=frozenset)
    organization_scoped: bool = False
    required_org_roles: frozenset[OrganizationRole] = Field(default_factory=frozenset)
    permission: str | None = None
    self_demotion_guard: bool = False
    required_context: frozenset[str] = Field(default_factory=frozenset)
    tags: list[str] = Field(default_factory=list)

    @field_validator("estimated_cost", mode="before")
    @classmethod
    def _cost(cls, value: Any) -> Any:
        return _money(value)

    @model_validator(mode="after")
    def _billing_consistent(self) -> OperationDescriptor:
        if not self.is_billable and (self.run_kind != RunKind.NONE or self.estimated_cost):
            raise ValueError(
                f"operation '{self.name}' declares a cost or run kind but is not billable"
            )
        if self.self_demotion_guard and not self.required_team_roles:
            raise ValueError(
                f"operation '{self.name}' uses the self-demotion guard but is not team-scoped"
            )
        unknown = self.required_context - _CONTEXT_FIELDS
        if unknown:
            raise ValueError(f"unknown required_context fields: {sorted(unknown)}")
        return self

    @property
    def team_scoped(self) -> bool:
        return bool(self.required_team_roles)


class OperationContext(BaseModel):
    """Per-request details supplied by the route handler."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    team_id: str | None = None
    target_user_id: str | None = None
    new_role: TeamRole | None = None
    estimated_cost: Decimal | None = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("estimated_cost", mode="before")
    @classmethod
    def _cost(cls, value: Any) -> Any:
        return _money(value)


_CONTEXT_FIELDS = frozenset({"team_id", "target_user_id", "new_role", "estimated_cost"})


# --- Identity ---


class UserIdentity(BaseModel):
    """The authenticated caller, as supplied by the identity provider."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    subscription_level: str = SubscriptionLevel.FREE.value


# --- Evaluation Results ---


class PermissionResult(BaseModel):
    """Output of the permission evaluator."""

    allowed: bool
    reason_code: ReasonCode
    message: str = ""


class Affordability(BaseModel):
    """Output of the budget guard."""

    allowed: bool
    reason: str
    remaining_cost: Decimal | None = None
    remaining_runs: int | None = None
    usage: UsageRecord


class UsageWarning(BaseModel):
    """A usage dimension that is close to its monthly cap."""

    kind: str
    severity: str
    percent_used: float
    message: str
    upgrade_recommended: bool = False


class Verdict(BaseModel):
    """The unified answer returned to route handlers. Never persisted."""

    allowed: bool
    reason_code: ReasonCode
    message: str
    upgrade_hint: SubscriptionLevel | None = None
    operation: str
    user_id: str
    subscription_level: SubscriptionLevel
    audit_id: str
    remaining_cost: Decimal | None = None
    remaining_runs: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class SubscriptionStatus(BaseModel):
    """Everything a client needs to render plan and upgrade prompts."""

    user_id: str
    subscription_level: SubscriptionLevel
    features: list[str]
    limits: TierLimits
    next_tier: SubscriptionLevel | None = None
    usage: UsageRecord
    warnings: list[UsageWarning] = Field(default_factory=list)
    permissions: dict[str, Verdict] = Field(default_factory=dict)


# --- Audit Event Schema ---


class AuditEvent(BaseModel):
    """A single entry in the append-only verdict log."""

    event_id: str
    timestamp: datetime
    prev_hash: str
    entry_hash: str = ""
    user_id: str
    subscription_level: SubscriptionLevel
    operation: str
    allowed: bool
    reason_code: ReasonCode
    message: str
    upgrade_hint: SubscriptionLevel | None = None
    context: dict[str, Any] | None = None
