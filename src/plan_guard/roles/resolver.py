"""Role Resolver: turns stored membership documents into typed context.

Membership documents are owned by another system and are loosely
shaped: keys may be camelCase or snake_case, the organization block may
sit under an ``enterprise`` sub-document, and role strings may use
legacy names. Everything is validated here so that nothing untyped
reaches the permission evaluator.

Tolerated data problems (logged as warnings):
- A corrupt or missing team role becomes ``employee``.
- Restricted overrides granted to an employee are stripped.
- A malformed record resolves to an unaffiliated context.

Store failures are never tolerated: they raise ``MembershipUnavailable``.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml
from pydantic import ValidationError

from plan_guard.errors import MembershipUnavailable
from plan_guard.models import MembershipContext, OrganizationRole, TeamMembership, TeamRole
from plan_guard.roles.capabilities import EMPLOYEE_RESTRICTED_PERMISSIONS, normalize_permission

logger = logging.getLogger(__name__)

_ORG_ROLE_ALIASES: dict[str, OrganizationRole] = {
    "manager": OrganizationRole.ADMIN,
    "employee": OrganizationRole.MEMBER,
}

_TEAM_ROLE_ALIASES: dict[str, TeamRole] = {
    "owner": TeamRole.MANAGER,
    "teamlead": TeamRole.TEAM_LEAD,
    "lead": TeamRole.TEAM_LEAD,
}


@runtime_checkable
class MembershipStore(Protocol):
    """Protocol for membership storage backends.

    ``get_membership`` returns the raw stored document, or ``None`` for
    a user with no membership record.
    """

    def get_membership(self, user_id: str) -> dict[str, Any] | None: ...


class InMemoryMembershipStore:
    """Dict-backed membership store."""

    def __init__(self, records: dict[str, dict[str, Any]] | None = None) -> None:
        self._records: dict[str, dict[str, Any]] = dict(records or {})
        self._lock = threading.Lock()

    def get_membership(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._records.get(user_id)

    def put(self, user_id: str, record: dict[str, Any]) -> None:
        with self._lock:
            self._records[user_id] = record

    def remove(self, user_id: str) -> None:
        with self._lock:
            self._records.pop(user_id, None)


class FileMembershipStore:
    """YAML file with a top-level ``memberships`` mapping keyed by user id.

    The file is re-read on every lookup so edits apply without restart.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def get_membership(self, user_id: str) -> dict[str, Any] | None:
        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, yaml.YAMLError) as exc:
            logger.error("Membership file %s unreadable: %s", self._path, exc)
            raise MembershipUnavailable(
                f"Membership file {self._path} unreadable: {exc}", user_id=user_id,
            ) from exc

        if raw is None:
            return None
        memberships = (raw.get("memberships") or {}) if isinstance(raw, dict) else None
        if not isinstance(memberships, dict):
            raise MembershipUnavailable(
                f"Membership file must have a 'memberships' mapping: {self._path}",
                user_id=user_id,
            )
        return memberships.get(user_id)


def _first(doc: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in doc and doc[key] is not None:
            return doc[key]
    return None


def _parse_org_role(value: Any, user_id: str) -> OrganizationRole:
    if isinstance(value, str):
        key = value.strip().lower()
        if key in _ORG_ROLE_ALIASES:
            return _ORG_ROLE_ALIASES[key]
        try:
            return OrganizationRole(key)
        except ValueError:
            pass
    logger.warning("Invalid organization role %r for %s, treating as member", value, user_id)
    return OrganizationRole.MEMBER


def _parse_team_role(value: Any, user_id: str, team_id: str) -> TeamRole:
    if isinstance(value, str):
        key = normalize_permission(value)
        if key.replace("_", "") in _TEAM_ROLE_ALIASES:
            return _TEAM_ROLE_ALIASES[key.replace("_", "")]
        try:
            return TeamRole(key)
        except ValueError:
            pass
    logger.warning(
        "Corrupt team role %r for %s in team %s, treating as employee", value, user_id, team_id,
    )
    return TeamRole.EMPLOYEE


def _parse_overrides(value: Any) -> set[str]:
    """Granted overrides from ``{perm: bool}`` or ``[perm, ...]``."""
    if isinstance(value, dict):
        return {normalize_permission(str(k)) for k, v in value.items() if v is True}
    if isinstance(value, (list, tuple, set, frozenset)):
        return {normalize_permission(str(k)) for k in value}
    return set()


def _team_entries(value: Any) -> list[tuple[str, Any]]:
    if isinstance(value, dict):
        return [(str(tid), entry) for tid, entry in value.items()]
    if isinstance(value, list):
        entries: list[tuple[str, Any]] = []
        for entry in value:
            if isinstance(entry, dict):
                tid = _first(entry, "team_id", "teamId", "id")
                if tid is not None:
                    entries.append((str(tid), entry))
        return entries
    return []


class RoleResolver:
    """Builds a ``MembershipContext`` from a membership store."""

    def __init__(self, store: MembershipStore | None = None) -> None:
        self._store: MembershipStore = store if store is not None else InMemoryMembershipStore()

    @property
    def store(self) -> MembershipStore:
        return self._store

    def resolve(self, user_id: str) -> MembershipContext:
        """Resolve *user_id*'s organization and team memberships.

        An unaffiliated user gets an empty context; that is not an error.
        Any failure raised by the store becomes ``MembershipUnavailable``.
        """
        try:
            raw = self._store.get_membership(user_id)
        except MembershipUnavailable:
            raise
        except Exception as exc:
            logger.error("Membership lookup failed for %s: %s", user_id, exc)
            raise MembershipUnavailable(
                f"Membership lookup failed for {user_id}: {exc}", user_id=user_id,
            ) from exc

        unaffiliated = MembershipContext(user_id=user_id)
        if raw is None:
            return unaffiliated
        if not isinstance(raw, dict):
            logger.warning("Malformed membership record for %s, treating as unaffiliated", user_id)
            return unaffiliated

        doc = raw["enterprise"] if isinstance(raw.get("enterprise"), dict) else raw
        org_id = _first(doc, "organization_id", "organizationId")
        if org_id is None:
            if _first(doc, "teams") or _first(doc, "organization_role", "organizationRole"):
                logger.warning(
                    "Membership for %s has teams or roles but no organization; ignoring them",
                    user_id,
                )
            return unaffiliated
        if not isinstance(org_id, str) or not org_id.strip():
            logger.warning("Malformed organization id for %s, treating as unaffiliated", user_id)
            return unaffiliated

        org_role_raw = _first(doc, "organization_role", "organizationRole", "role")
        org_role = _parse_org_role(org_role_raw, user_id) if org_role_raw is not None else None

        teams: dict[str, TeamMembership] = {}
        for team_id, entry in _team_entries(_first(doc, "teams")):
            if not isinstance(entry, dict):
                entry = {}
            role = _parse_team_role(entry.get("role"), user_id, team_id)
            granted = _parse_overrides(_first(entry, "permissions", "customPermissions"))
            if role == TeamRole.EMPLOYEE:
                stripped = granted & EMPLOYEE_RESTRICTED_PERMISSIONS
                if stripped:
                    logger.warning(
                        "Stripped restricted overrides %s from employee %s in team %s",
                        sorted(stripped), user_id, team_id,
                    )
                    granted -= stripped
            teams[team_id] = TeamMembership(role=role, permissions=frozenset(granted))

        try:
            return MembershipContext(
                user_id=user_id,
                organization_id=org_id,
                organization_role=org_role,
                teams=teams,
            )
        except ValidationError as exc:
            logger.warning("Membership for %s failed validation (%s), treating as unaffiliated",
                           user_id, exc)
            return unaffiliated
