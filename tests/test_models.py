"""Tests for plan-guard data models."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from plan_guard.models import (
    MembershipContext,
    OperationContext,
    OperationDescriptor,
    ReasonCode,
    RunKind,
    SubscriptionLevel,
    SubscriptionTier,
    TeamMembership,
    TeamRole,
    TierLimits,
    UsageEvent,
    UsageRecord,
    Verdict,
)

# --- TierLimits ---


class TestTierLimits:
    def test_unlimited_string(self):
        limits = TierLimits(max_cost="unlimited", max_runs_ai="Unlimited", max_runs_api=5)
        assert limits.max_cost is None
        assert limits.max_runs_ai is None
        assert limits.max_runs_api == 5

    def test_legacy_minus_one_is_unlimited(self):
        limits = TierLimits(max_cost=-1, max_runs_ai=-1, max_runs_api=-1)
        assert limits.max_cost is None
        assert limits.max_runs_ai is None
        assert limits.max_runs_api is None

    def test_float_cost_is_exact_decimal(self):
        assert TierLimits(max_cost=1.5).max_cost == Decimal("1.5")
        assert TierLimits(max_cost=0.1).max_cost == Decimal("0.1")

    def test_negative_limit_rejected(self):
        with pytest.raises(ValidationError):
            TierLimits(max_runs_ai=-2)

    def test_runs_limit_by_kind(self):
        limits = TierLimits(max_runs_ai=3, max_runs_api=7)
        assert limits.runs_limit(RunKind.AI) == 3
        assert limits.runs_limit(RunKind.API) == 7
        assert limits.runs_limit(RunKind.NONE) is None

    def test_frozen(self):
        limits = TierLimits()
        with pytest.raises(ValidationError):
            limits.max_cost = Decimal("1")


class TestSubscriptionTier:
    def test_features_from_list(self):
        tier = SubscriptionTier(level="pro", features=["a", "b", "a"])
        assert tier.level == SubscriptionLevel.PRO
        assert tier.features == frozenset({"a", "b"})
        assert tier.has_feature("a")
        assert not tier.has_feature("c")

    def test_unknown_level_rejected(self):
        with pytest.raises(ValidationError):
            SubscriptionTier(level="platinum")


# --- Usage ---


class TestUsageRecord:
    def test_defaults_are_zero(self):
        record = UsageRecord(user_id="u", month="2025-03")
        assert record.total_cost == Decimal("0")
        assert record.total_runs_ai == 0
        assert record.total_runs_api == 0
        assert record.total_calls == 0
        assert record.features == {}

    @pytest.mark.parametrize("month", ["2025-3", "2025-13", "25-03", "2025/03"])
    def test_bad_month_rejected(self, month: str):
        with pytest.raises(ValidationError):
            UsageRecord(user_id="u", month=month)

    def test_runs_used(self):
        record = UsageRecord(user_id="u", month="2025-03", total_runs_ai=2, total_runs_api=5)
        assert record.runs_used(RunKind.AI) == 2
        assert record.runs_used(RunKind.API) == 5
        assert record.runs_used(RunKind.NONE) == 0


class TestUsageEvent:
    def test_negative_cost_rejected(self):
        with pytest.raises(ValidationError):
            UsageEvent(cost=-0.01)

    def test_for_run_sets_flags(self):
        ai = UsageEvent.for_run("0.05", RunKind.AI, "grouping")
        assert ai.is_ai_run and not ai.is_api_run
        assert ai.cost == Decimal("0.05")
        assert ai.feature == "grouping"

        api = UsageEvent.for_run(0.002, RunKind.API)
        assert api.is_api_run and not api.is_ai_run
        assert api.cost == Decimal("0.002")

        none = UsageEvent.for_run(0, RunKind.NONE)
        assert not none.is_ai_run and not none.is_api_run


# --- Membership ---


class TestMembershipContext:
    def test_unaffiliated_default(self):
        ctx = MembershipContext(user_id="u")
        assert ctx.organization_id is None
        assert ctx.teams == {}

    def test_teams_without_org_rejected(self):
        with pytest.raises(ValidationError):
            MembershipContext(user_id="u", teams={"t": TeamMembership(role=TeamRole.MANAGER)})

    def test_org_role_without_org_rejected(self):
        with pytest.raises(ValidationError):
            MembershipContext(user_id="u", organization_role="owner")


# --- Operations ---


class TestOperationDescriptor:
    def test_minimal(self):
        op = OperationDescriptor(name="view_analytics")
        assert not op.is_billable
        assert not op.team_scoped
        assert op.run_kind == RunKind.NONE

    def test_billable(self):
        op = OperationDescriptor(
            name="run_ai_grouping", is_billable=True, estimated_cost=0.05, run_kind="ai",
        )
        assert op.estimated_cost == Decimal("0.05")
        assert op.run_kind == RunKind.AI

    def test_cost_on_non_billable_rejected(self):
        with pytest.raises(ValidationError, match="not billable"):
            OperationDescriptor(name="x", estimated_cost="0.5")

    def test_run_kind_on_non_billable_rejected(self):
        with pytest.raises(ValidationError, match="not billable"):
            OperationDescriptor(name="x", run_kind="api")

    def test_self_guard_requires_team_scope(self):
        with pytest.raises(ValidationError, match="self-demotion"):
            OperationDescriptor(name="x", self_demotion_guard=True)

    def test_unknown_required_context_rejected(self):
        with pytest.raises(ValidationError, match="required_context"):
            OperationDescriptor(name="x", required_context=["project_id"])

    @pytest.mark.parametrize("name", ["1st", "", "has space", "_private"])
    def test_bad_names_rejected(self, name: str):
        with pytest.raises(ValidationError):
            OperationDescriptor(name=name)

    @pytest.mark.parametrize("name", ["RUN_AI_GROUPING", "contacts.share", "ai-enhance"])
    def test_opaque_names_accepted(self, name: str):
        assert OperationDescriptor(name=name).name == name

    def test_team_scoped(self):
        op = OperationDescriptor(name="x", required_team_roles=["manager"])
        assert op.team_scoped
        assert op.required_team_roles == frozenset({TeamRole.MANAGER})


class TestOperationContext:
    def test_extra_fields_forbidden(self):
        with pytest.raises(ValidationError):
            OperationContext(team="sales")

    def test_new_role_validated(self):
        assert OperationContext(new_role="team_lead").new_role == TeamRole.TEAM_LEAD
        with pytest.raises(ValidationError):
            OperationContext(new_role="overlord")

    def test_negative_cost_rejected(self):
        with pytest.raises(ValidationError):
            OperationContext(estimated_cost=-1)


# --- Verdict ---


class TestVerdict:
    def test_to_dict_is_json_ready(self):
        verdict = Verdict(
            allowed=False,
            reason_code=ReasonCode.BUDGET_EXCEEDED,
            message="over",
            upgrade_hint=SubscriptionLevel.BUSINESS,
            operation="run_ai_grouping",
            user_id="u",
            subscription_level=SubscriptionLevel.PREMIUM,
            audit_id="evt-1",
            remaining_cost=Decimal("0.5"),
        )
        data = verdict.to_dict()
        assert data["reason_code"] == "BUDGET_EXCEEDED"
        assert data["upgrade_hint"] == "business"
        assert data["subscription_level"] == "premium"
        assert data["remaining_cost"] == "0.5"
        assert data["remaining_runs"] is None
