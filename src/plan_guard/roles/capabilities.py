"""Role-derived permissions and the per-request capability set.

A ``CapabilitySet`` is computed once from a ``MembershipContext`` and
answers every role question the permission evaluator asks, so role
strings are never compared ad hoc at call sites.
"""

from __future__ import annotations

import enum
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from plan_guard.models import MembershipContext, OrganizationRole, TeamRole


class Permission(enum.StrEnum):
    VIEW_ALL_TEAM_CONTACTS = "can_view_all_team_contacts"
    EDIT_TEAM_CONTACTS = "can_edit_team_contacts"
    SHARE_CONTACTS_WITH_TEAM = "can_share_contacts_with_team"
    EXPORT_TEAM_DATA = "can_export_team_data"
    INVITE_TEAM_MEMBERS = "can_invite_team_members"
    CREATE_TEAMS = "can_create_teams"
    DELETE_TEAMS = "can_delete_teams"
    MANAGE_TEAM_SETTINGS = "can_manage_team_settings"
    REMOVE_TEAM_MEMBERS = "can_remove_team_members"
    UPDATE_MEMBER_ROLES = "can_update_member_roles"
    REVOKE_INVITATIONS = "can_revoke_invitations"
    RESEND_INVITATIONS = "can_resend_invitations"
    VIEW_TEAM_ANALYTICS = "can_view_team_analytics"
    MANAGE_BANNERS = "can_manage_banners"
    MANAGE_LINK_TEMPLATES = "can_manage_link_templates"
    MANAGE_APPEARANCE_TEMPLATES = "can_manage_appearance_templates"
    MANAGE_ORGANIZATION_BRANDING = "can_manage_organization_branding"
    ASSIGN_EMPLOYEES_TO_TEAM_LEAD = "can_assign_employees_to_team_lead"
    ENABLE_CROSS_TEAM_SHARING = "can_enable_cross_team_sharing"
    APPROVE_CROSS_TEAM_SHARING = "can_approve_cross_team_sharing"


ALL_PERMISSIONS: frozenset[str] = frozenset(p.value for p in Permission)

DEFAULT_PERMISSIONS_BY_ROLE: dict[TeamRole, frozenset[str]] = {
    TeamRole.EMPLOYEE: frozenset({Permission.VIEW_ALL_TEAM_CONTACTS}),
    TeamRole.TEAM_LEAD: frozenset({
        Permission.VIEW_ALL_TEAM_CONTACTS,
        Permission.EDIT_TEAM_CONTACTS,
        Permission.SHARE_CONTACTS_WITH_TEAM,
        Permission.EXPORT_TEAM_DATA,
        Permission.INVITE_TEAM_MEMBERS,
        Permission.MANAGE_TEAM_SETTINGS,
        Permission.REMOVE_TEAM_MEMBERS,
        Permission.REVOKE_INVITATIONS,
        Permission.RESEND_INVITATIONS,
        Permission.VIEW_TEAM_ANALYTICS,
        Permission.ASSIGN_EMPLOYEES_TO_TEAM_LEAD,
        Permission.APPROVE_CROSS_TEAM_SHARING,
    }),
    # Branding stays with the organization owner.
    TeamRole.MANAGER: ALL_PERMISSIONS - {Permission.MANAGE_ORGANIZATION_BRANDING},
}

# Overrides that may never be granted to an employee.
EMPLOYEE_RESTRICTED_PERMISSIONS: frozenset[str] = frozenset({
    Permission.INVITE_TEAM_MEMBERS,
    Permission.REMOVE_TEAM_MEMBERS,
    Permission.UPDATE_MEMBER_ROLES,
    Permission.MANAGE_TEAM_SETTINGS,
    Permission.REVOKE_INVITATIONS,
    Permission.RESEND_INVITATIONS,
    Permission.CREATE_TEAMS,
    Permission.DELETE_TEAMS,
    Permission.SHARE_CONTACTS_WITH_TEAM,
    Permission.EDIT_TEAM_CONTACTS,
    Permission.MANAGE_BANNERS,
    Permission.MANAGE_LINK_TEMPLATES,
    Permission.MANAGE_APPEARANCE_TEMPLATES,
    Permission.MANAGE_ORGANIZATION_BRANDING,
    Permission.ASSIGN_EMPLOYEES_TO_TEAM_LEAD,
    Permission.ENABLE_CROSS_TEAM_SHARING,
    Permission.APPROVE_CROSS_TEAM_SHARING,
})

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_permission(name: str) -> str:
    """``canInviteTeamMembers`` / ``can-invite-team-members`` -> ``can_invite_team_members``."""
    snake = _CAMEL_BOUNDARY.sub("_", name.strip())
    return snake.replace("-", "_").lower()


@dataclass(frozen=True)
class CapabilitySet:
    """Everything a user may do, derived once from their membership."""

    user_id: str
    organization_id: str | None = None
    organization_role: OrganizationRole | None = None
    team_roles: dict[str, TeamRole] = field(default_factory=dict)
    team_overrides: dict[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def from_membership(cls, membership: MembershipContext) -> CapabilitySet:
        return cls(
            user_id=membership.user_id,
            organization_id=membership.organization_id,
            organization_role=membership.organization_role,
            team_roles={tid: tm.role for tid, tm in membership.teams.items()},
            team_overrides={tid: frozenset(tm.permissions) for tid, tm in membership.teams.items()},
        )

    @property
    def in_organization(self) -> bool:
        return self.organization_id is not None

    @property
    def is_owner(self) -> bool:
        return self.organization_role == OrganizationRole.OWNER

    def is_team_member(self, team_id: str) -> bool:
        return team_id in self.team_roles

    def team_role(self, team_id: str) -> TeamRole | None:
        return self.team_roles.get(team_id)

    def satisfies_team_roles(self, team_id: str, roles: Iterable[TeamRole]) -> bool:
        """Does the user's role in *team_id* meet *roles*? Owners always do."""
        role = self.team_roles.get(team_id)
        if role is None:
            return False
        return self.is_owner or role in set(roles)

    def has_override(self, team_id: str, permission: str) -> bool:
        """Was *permission* explicitly granted on this team membership?"""
        return normalize_permission(permission) in self.team_overrides.get(team_id, frozenset())

    def permissions(self, team_id: str) -> frozenset[str]:
        """Effective permissions in *team_id*: role defaults plus overrides."""
        role = self.team_roles.get(team_id)
        if role is None:
            return frozenset()
        if self.is_owner:
            return ALL_PERMISSIONS | self.team_overrides.get(team_id, frozenset())
        return DEFAULT_PERMISSIONS_BY_ROLE[role] | self.team_overrides.get(team_id, frozenset())

    def has_permission(self, team_id: str, permission: str) -> bool:
        if self.is_owner and self.is_team_member(team_id):
            return True
        return normalize_permission(permission) in self.permissions(team_id)

    def satisfies_org_roles(self, roles: Iterable[OrganizationRole]) -> bool:
        """Organization-level role check. An empty requirement only needs membership."""
        if not self.in_organization:
            return False
        required = set(roles)
        if not required or self.is_owner:
            return True
        return self.organization_role in required
