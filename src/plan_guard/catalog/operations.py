"""Operation Registry: loads, validates, and serves gated operations.

Each operation names the feature it needs, whether it is billable (and
what it costs), and which team or organization roles may perform it.
Route handlers refer to operations by name; an unknown name is denied
by the validator, never guessed at.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from plan_guard.models import OperationDescriptor

logger = logging.getLogger(__name__)


class OperationRegistryError(Exception):
    """Raised when the registry cannot load or validate operations."""


_MANAGERS = ["manager", "team_lead"]

DEFAULT_OPERATIONS: list[dict[str, Any]] = [
    {
        "name": "view_analytics",
        "description": "View profile and link analytics.",
        "required_feature": "basic_analytics",
        "tags": ["analytics"],
    },
    {
        "name": "share_contacts",
        "description": "Share individual contacts with another user.",
        "required_feature": "basic_contacts",
        "tags": ["contacts"],
    },
    {
        "name": "bulk_share_contacts",
        "description": "Share many contacts in one operation.",
        "required_feature": "bulk_operations",
        "tags": ["contacts"],
    },
    {
        "name": "share_contacts_with_team",
        "description": "Share contacts with every member of a team.",
        "required_feature": "team_sharing",
        "required_team_roles": _MANAGERS,
        "permission": "can_share_contacts_with_team",
        "required_context": ["team_id"],
        "tags": ["contacts", "team"],
    },
    {
        "name": "create_team",
        "description": "Create a new team inside the organization.",
        "required_feature": "team_management",
        "organization_scoped": True,
        "required_org_roles": ["owner", "admin"],
        "tags": ["team", "organization"],
    },
    {
        "name": "delete_team",
        "description": "Delete a team and its memberships.",
        "required_feature": "team_management",
        "required_team_roles": ["manager"],
        "permission": "can_delete_teams",
        "required_context": ["team_id"],
        "tags": ["team"],
    },
    {
        "name": "invite_member",
        "description": "Invite a user to join a team.",
        "required_feature": "team_management",
        "required_team_roles": _MANAGERS,
        "permission": "can_invite_team_members",
        "required_context": ["team_id"],
        "tags": ["team"],
    },
    {
        "name": "remove_member",
        "description": "Remove a member from a team.",
        "required_feature": "team_management",
        "required_team_roles": _MANAGERS,
        "permission": "can_remove_team_members",
        "required_context": ["team_id", "target_user_id"],
        "tags": ["team"],
    },
    {
        "name": "update_member_role",
        "description": "Change a team member's role.",
        "required_feature": "team_management",
        "required_team_roles": ["manager"],
        "permission": "can_update_member_roles",
        "self_demotion_guard": True,
        "required_context": ["team_id", "target_user_id", "new_role"],
        "tags": ["team"],
    },
    {
        "name": "manage_team_permissions",
        "description": "Edit per-member permission overrides for a team.",
        "required_feature": "team_management",
        "required_team_roles": ["manager"],
        "permission": "can_manage_team_settings",
        "required_context": ["team_id"],
        "tags": ["team"],
    },
    {
        "name": "view_audit_logs",
        "description": "Read the organization's security and audit logs.",
        "required_feature": "audit_logs",
        "organization_scoped": True,
        "required_org_roles": ["owner", "admin"],
        "tags": ["organization"],
    },
    {
        "name": "export_team_data",
        "description": "Export a team's contacts and activity.",
        "required_feature": "export_data",
        "required_team_roles": _MANAGERS,
        "permission": "can_export_team_data",
        "required_context": ["team_id"],
        "tags": ["team", "export"],
    },
    {
        "name": "run_ai_grouping",
        "description": "Group contacts automatically with an AI model.",
        "required_feature": "ai_grouping",
        "is_billable": True,
        "estimated_cost": "0.05",
        "run_kind": "ai",
        "tags": ["ai", "contacts"],
    },
    {
        "name": "ai_enhance_contact",
        "description": "Enrich a contact record with AI-extracted details.",
        "required_feature": "ai_enhancement",
        "is_billable": True,
        "estimated_cost": "0.01",
        "run_kind": "ai",
        "tags": ["ai", "contacts"],
    },
    {
        "name": "scan_business_card",
        "description": "Extract a contact from a business card photo.",
        "required_feature": "business_card_scanner",
        "is_billable": True,
        "estimated_cost": "0.002",
        "run_kind": "api",
        "tags": ["api", "contacts"],
    },
    {
        "name": "semantic_search",
        "description": "Search contacts by meaning rather than keywords.",
        "required_feature": "semantic_search",
        "is_billable": True,
        "estimated_cost": "0.0005",
        "run_kind": "api",
        "tags": ["api", "contacts"],
    },
    {
        "name": "places_lookup",
        "description": "Resolve a meeting location through a places service.",
        "required_feature": "places_lookup",
        "is_billable": True,
        "estimated_cost": "0.017",
        "run_kind": "api",
        "tags": ["api"],
    },
]


class OperationRegistry:
    """In-memory registry of operation descriptors.

    Operations are keyed by name. Registering the same name twice is an
    error.
    """

    def __init__(self) -> None:
        self._operations: dict[str, OperationDescriptor] = {}

    @property
    def operations(self) -> list[OperationDescriptor]:
        return list(self._operations.values())

    def __len__(self) -> int:
        return len(self._operations)

    def __contains__(self, name: object) -> bool:
        return name in self._operations

    def get(self, name: str) -> OperationDescriptor | None:
        """Look up an operation by name. Returns None if not found."""
        return self._operations.get(name)

    def get_or_raise(self, name: str) -> OperationDescriptor:
        """Look up an operation by name. Raises OperationRegistryError if not found."""
        operation = self._operations.get(name)
        if operation is None:
            raise OperationRegistryError(f"Operation not found: {name}")
        return operation

    def list_operations(self) -> list[str]:
        """Return sorted list of registered operation names."""
        return sorted(self._operations.keys())

    def list_by_tag(self, tag: str) -> list[OperationDescriptor]:
        return [op for op in self._operations.values() if tag in op.tags]

    def list_billable(self) -> list[OperationDescriptor]:
        return [op for op in self._operations.values() if op.is_billable]

    def register(self, operation: OperationDescriptor) -> None:
        """Register a single operation.

        Raises OperationRegistryError if the name is already registered.
        """
        if operation.name in self._operations:
            raise OperationRegistryError(f"Duplicate operation name '{operation.name}'")
        self._operations[operation.name] = operation


def _parse_entries(raw: Any, source: str) -> list[OperationDescriptor]:
    """Accept either a single mapping or ``{operations: [...]}``."""
    if isinstance(raw, dict) and "operations" in raw:
        entries = raw["operations"]
        if not isinstance(entries, list):
            raise OperationRegistryError(f"'operations' must be a list: {source}")
    elif isinstance(raw, dict):
        entries = [raw]
    else:
        raise OperationRegistryError(f"Operation file must contain a YAML mapping: {source}")

    parsed: list[OperationDescriptor] = []
    for i, entry in enumerate(entries):
        try:
            parsed.append(OperationDescriptor(**entry))
        except (ValidationError, TypeError) as e:
            raise OperationRegistryError(
                f"Invalid operation at index {i} in {source}: {e}"
            ) from e
    return parsed


def load_operation_file(path: Path) -> list[OperationDescriptor]:
    """Load and validate the operations declared in one YAML file."""
    if not path.exists():
        raise OperationRegistryError(f"Operation file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise OperationRegistryError(f"Invalid YAML in {path}: {e}") from e

    return _parse_entries(raw, str(path))


def build_registry(entries: list[dict[str, Any]]) -> OperationRegistry:
    registry = OperationRegistry()
    for operation in _parse_entries({"operations": entries}, "<table>"):
        registry.register(operation)
    return registry


def load_operations(path: str | Path) -> OperationRegistry:
    """Load operations from a YAML file or a directory of YAML files.

    Raises OperationRegistryError if the path doesn't exist, any file is
    invalid, or duplicate operation names are found.
    """
    path = Path(path)
    if path.is_dir():
        files = sorted(list(path.glob("*.yaml")) + list(path.glob("*.yml")))
    elif path.is_file():
        files = [path]
    else:
        raise OperationRegistryError(f"Operations path not found: {path}")

    registry = OperationRegistry()
    for file in files:
        for operation in load_operation_file(file):
            try:
                registry.register(operation)
            except OperationRegistryError as e:
                raise OperationRegistryError(f"Error loading {file}: {e}") from e

    logger.info("Loaded %d operations from %s", len(registry), path)
    return registry


def default_registry() -> OperationRegistry:
    """The built-in operation set."""
    return build_registry(DEFAULT_OPERATIONS)
