"""Tests for the permission evaluator."""

from __future__ import annotations

import pytest

from plan_guard.catalog.operations import OperationRegistry, default_registry
from plan_guard.catalog.tiers import TierCatalog, default_catalog
from plan_guard.models import OperationContext, PermissionResult, ReasonCode
from plan_guard.pdp.permissions import SELF_DEMOTION_MESSAGE, PermissionEvaluator
from plan_guard.roles.resolver import InMemoryMembershipStore, RoleResolver


@pytest.fixture()
def catalog() -> TierCatalog:
    return default_catalog()


@pytest.fixture()
def registry() -> OperationRegistry:
    return default_registry()


@pytest.fixture()
def check(memberships, catalog: TierCatalog, registry: OperationRegistry):
    resolver = RoleResolver(InMemoryMembershipStore(memberships))
    evaluator = PermissionEvaluator()

    def _check(user_id: str, level: str, operation: str, **context) -> PermissionResult:
        return evaluator.evaluate(
            resolver.resolve(user_id),
            catalog.get_tier(level),
            registry.get_or_raise(operation),
            OperationContext(**context),
        )

    return _check


class TestFeatureGate:
    def test_missing_feature(self, check):
        result = check("lead-1", "pro", "share_contacts_with_team", team_id="sales")
        assert not result.allowed
        assert result.reason_code == ReasonCode.NO_FEATURE
        assert "team_sharing" in result.message

    def test_feature_checked_before_team(self, check):
        result = check("stranger", "free", "export_team_data")
        assert result.reason_code == ReasonCode.NO_FEATURE

    def test_unscoped_operation_needs_only_feature(self, check):
        assert check("stranger", "pro", "share_contacts").allowed
        assert check("stranger", "pro", "view_analytics").allowed


class TestTeamScope:
    def test_team_id_required(self, check):
        result = check("lead-1", "premium", "share_contacts_with_team")
        assert result.reason_code == ReasonCode.NOT_IN_TEAM

    def test_must_belong_to_team(self, check):
        result = check("lead-1", "premium", "share_contacts_with_team", team_id="support")
        assert result.reason_code == ReasonCode.NOT_IN_TEAM

    def test_unaffiliated_user(self, check):
        result = check("stranger", "enterprise", "invite_member", team_id="sales")
        assert result.reason_code == ReasonCode.NOT_IN_TEAM

    def test_team_lead_allowed(self, check):
        result = check("lead-1", "premium", "share_contacts_with_team", team_id="sales")
        assert result.allowed
        assert result.reason_code == ReasonCode.OK

    def test_employee_insufficient(self, check):
        result = check("emp-1", "premium", "share_contacts_with_team", team_id="sales")
        assert result.reason_code == ReasonCode.INSUFFICIENT_ROLE
        assert "employee" in result.message

    def test_role_is_per_team(self, check):
        assert check("mgr-1", "business", "delete_team", team_id="sales").allowed
        result = check("mgr-1", "business", "delete_team", team_id="support")
        assert result.reason_code == ReasonCode.INSUFFICIENT_ROLE

    def test_override_grants_operation(self, check):
        assert check("emp-export", "business", "export_team_data", team_id="sales").allowed
        result = check("emp-1", "business", "export_team_data", team_id="sales")
        assert result.reason_code == ReasonCode.INSUFFICIENT_ROLE

    def test_owner_passes_in_member_team(self, check):
        assert check("owner-1", "business", "delete_team", team_id="sales").allowed

    def test_owner_outside_team(self, check):
        result = check("owner-1", "business", "delete_team", team_id="support")
        assert result.reason_code == ReasonCode.NOT_IN_TEAM


class TestSelfDemotion:
    def test_manager_cannot_demote_self(self, check):
        result = check(
            "mgr-1", "business", "update_member_role",
            team_id="sales", target_user_id="mgr-1", new_role="employee",
        )
        assert not result.allowed
        assert result.reason_code == ReasonCode.INSUFFICIENT_ROLE
        assert result.message == SELF_DEMOTION_MESSAGE

    def test_manager_can_keep_own_role(self, check):
        result = check(
            "mgr-1", "business", "update_member_role",
            team_id="sales", target_user_id="mgr-1", new_role="manager",
        )
        assert result.allowed

    def test_manager_can_demote_others(self, check):
        result = check(
            "mgr-1", "business", "update_member_role",
            team_id="sales", target_user_id="emp-1", new_role="employee",
        )
        assert result.allowed

    def test_team_lead_cannot_update_roles(self, check):
        result = check(
            "lead-1", "business", "update_member_role",
            team_id="sales", target_user_id="emp-1", new_role="team_lead",
        )
        assert result.reason_code == ReasonCode.INSUFFICIENT_ROLE
        assert result.message != SELF_DEMOTION_MESSAGE


class TestOrganizationScope:
    def test_unaffiliated_denied_on_any_tier(self, check):
        for level in ("business", "enterprise"):
            result = check("stranger", level, "create_team")
            assert result.reason_code == ReasonCode.NOT_IN_ORG

    def test_member_insufficient(self, check):
        result = check("emp-1", "business", "create_team")
        assert result.reason_code == ReasonCode.INSUFFICIENT_ROLE

    def test_admin_and_owner_allowed(self, check):
        assert check("mgr-1", "business", "create_team").allowed
        assert check("owner-1", "business", "view_audit_logs").allowed
