"""Permission Evaluator: feature and role checks for one operation.

Evaluation order (first failure wins):
1. Tier feature: the subscription must include ``required_feature``.
2. Team scope: a team id must be given and the user must belong to it.
3. Self-demotion guard: a manager may not demote themselves.
4. Team role: the user's role, or an explicit override of the
   operation's ``permission``, must meet ``required_team_roles``.
5. Organization scope: the user must belong to an organization and
   hold one of ``required_org_roles`` when any are listed.

Denials are returned as values; nothing here raises for a business rule.
"""

from __future__ import annotations

import logging

from plan_guard.models import (
    MembershipContext,
    OperationContext,
    OperationDescriptor,
    PermissionResult,
    ReasonCode,
    SubscriptionTier,
    TeamRole,
)
from plan_guard.roles.capabilities import CapabilitySet

logger = logging.getLogger(__name__)

SELF_DEMOTION_MESSAGE = (
    "Cannot demote yourself as manager. Transfer management to another user first."
)


def _deny(code: ReasonCode, message: str) -> PermissionResult:
    return PermissionResult(allowed=False, reason_code=code, message=message)


class PermissionEvaluator:
    """Stateless. Combines tier features with role-derived capabilities."""

    def evaluate(
        self,
        membership: MembershipContext,
        tier: SubscriptionTier,
        operation: OperationDescriptor,
        context: OperationContext | None = None,
        capabilities: CapabilitySet | None = None,
    ) -> PermissionResult:
        context = context or OperationContext()
        caps = capabilities or CapabilitySet.from_membership(membership)

        if operation.required_feature and not tier.has_feature(operation.required_feature):
            return _deny(
                ReasonCode.NO_FEATURE,
                f"'{operation.name}' requires the '{operation.required_feature}' feature, "
                f"which the {tier.level} plan does not include",
            )

        if operation.team_scoped:
            result = self._check_team(caps, operation, context)
            if result is not None:
                return result

        if operation.organization_scoped:
            if not caps.in_organization:
                return _deny(
                    ReasonCode.NOT_IN_ORG,
                    f"'{operation.name}' is only available to organization members",
                )
            if not caps.satisfies_org_roles(operation.required_org_roles):
                roles = ", ".join(sorted(operation.required_org_roles))
                return _deny(
                    ReasonCode.INSUFFICIENT_ROLE,
                    f"'{operation.name}' requires organization role: {roles}",
                )

        return PermissionResult(allowed=True, reason_code=ReasonCode.OK, message="Permitted")

    def _check_team(
        self,
        caps: CapabilitySet,
        operation: OperationDescriptor,
        context: OperationContext,
    ) -> PermissionResult | None:
        team_id = context.team_id
        if not team_id:
            return _deny(ReasonCode.NOT_IN_TEAM, f"'{operation.name}' requires a team")
        if not caps.is_team_member(team_id):
            return _deny(
                ReasonCode.NOT_IN_TEAM,
                f"User '{caps.user_id}' is not a member of team '{team_id}'",
            )

        if operation.self_demotion_guard and _is_self_demotion(caps, team_id, context):
            logger.debug("Blocked self-demotion by %s in team %s", caps.user_id, team_id)
            return _deny(ReasonCode.INSUFFICIENT_ROLE, SELF_DEMOTION_MESSAGE)

        if caps.satisfies_team_roles(team_id, operation.required_team_roles):
            return None
        if operation.permission and caps.has_override(team_id, operation.permission):
            return None

        roles = ", ".join(sorted(operation.required_team_roles))
        return _deny(
            ReasonCode.INSUFFICIENT_ROLE,
            f"'{operation.name}' requires team role: {roles} "
            f"(current role: {caps.team_role(team_id)})",
        )


def _is_self_demotion(caps: CapabilitySet, team_id: str, context: OperationContext) -> bool:
    return (
        context.target_user_id == caps.user_id
        and caps.team_role(team_id) == TeamRole.MANAGER
        and context.new_role is not None
        and context.new_role != TeamRole.MANAGER
    )
