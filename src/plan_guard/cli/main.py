"""plan-guard CLI: command-line interface for plan-guard.

Commands:
    init            Scaffold a plan-guard project from the built-in defaults
    tiers list      Show the tier table
    tiers verify    Check that higher tiers never offer less
    operations      Show all gated operations
    check           Validate an operation for a user
    usage show      Show a user's usage for a month
    usage record    Record usage for a user
    usage history   Show a user's recent monthly usage
    audit verify    Verify verdict log chain integrity
    audit show      Show recent verdict log entries
"""

from __future__ import annotations

import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import click
import yaml

from plan_guard import __version__
from plan_guard.audit.logger import AuditError, AuditLogger, verify_log
from plan_guard.catalog.operations import OperationRegistryError, default_registry
from plan_guard.catalog.tiers import CatalogError, default_catalog, tier_to_dict
from plan_guard.config import CONFIG_FILENAME, PlanGuardConfig, load_config
from plan_guard.errors import CollaboratorUnavailable
from plan_guard.models import RunKind, TeamRole, UsageRecord, Verdict
from plan_guard.sdk.client import PlanGuard

DEFAULT_AUDIT_LOG = "./audit.jsonl"

EXIT_DENIED = 2
EXIT_UNAVAILABLE = 3


def _cfg(ctx: click.Context) -> PlanGuardConfig:
    """Load config from --config or by auto-discovery, exiting on error."""
    path = ctx.obj.get("config_path") if ctx.obj else None
    try:
        return load_config(path)
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


def _guard(ctx: click.Context) -> PlanGuard:
    cfg = _cfg(ctx)
    try:
        return PlanGuard.from_config(cfg)
    except (CatalogError, OperationRegistryError, CollaboratorUnavailable, ValueError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


def _limit(value: Any) -> str:
    return "unlimited" if value is None else str(value)


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "config_path", default=None, type=click.Path(dir_okay=False),
    help=f"Path to {CONFIG_FILENAME} (default: auto-discover)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """plan-guard: subscription permission and usage-budget checks."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# --- init command ---


_INIT_CONFIG = """\
# plan-guard project configuration
# Paths are relative to this file.

tiers: ./tiers.yaml
operations: ./operations.yaml
memberships: ./memberships.yaml
ledger: ./usage.db
audit_log: ./audit.jsonl

# Seconds to wait for a membership lookup before failing closed.
lookup_timeout_seconds: 2.0
# Threads serving membership lookups; hung lookups each hold one.
lookup_workers: 4

warnings:
  threshold_percent: 80
  high_percent: 95
  upgrade_percent: 90
"""

_INIT_MEMBERSHIPS = """\
# Membership documents keyed by user id.
memberships:
  alice:
    organization_id: acme
    organization_role: owner
    teams:
      sales:
        role: manager
  bob:
    organization_id: acme
    organization_role: member
    teams:
      sales:
        role: employee
        permissions:
          can_export_team_data: true
"""


def _init_tiers() -> str:
    tiers = {t.level.value: tier_to_dict(t) for t in default_catalog().tiers}
    return yaml.safe_dump({"tiers": tiers}, sort_keys=False)


def _init_operations() -> str:
    ops = [
        op.model_dump(mode="json", exclude_defaults=True)
        for op in default_registry().operations
    ]
    for op in ops:
        for key in ("required_team_roles", "required_org_roles", "required_context"):
            if key in op:
                op[key] = sorted(op[key])
    return yaml.safe_dump({"operations": ops}, sort_keys=False)


@cli.command()
@click.argument("directory", default=".")
def init(directory: str) -> None:
    """Scaffold a plan-guard project with the built-in defaults."""
    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)

    files = {
        CONFIG_FILENAME: _INIT_CONFIG,
        "tiers.yaml": _init_tiers(),
        "operations.yaml": _init_operations(),
        "memberships.yaml": _INIT_MEMBERSHIPS,
    }

    created: list[str] = []
    skipped: list[str] = []
    for name, content in files.items():
        target = root / name
        if target.exists():
            skipped.append(name)
            continue
        target.write_text(content, encoding="utf-8")
        created.append(name)

    if created:
        click.echo(click.style("Created:", fg="green", bold=True))
        for f in created:
            click.echo(f"  + {f}")
    for s in skipped:
        click.echo(f"  skip  {s} (already exists)")

    if created:
        click.echo("\n" + click.style("Next steps:", bold=True))
        click.echo("  plan-guard tiers verify")
        click.echo("  plan-guard check run_ai_grouping --user alice --level premium")


# --- tiers commands ---


@cli.group()
def tiers() -> None:
    """Tier table commands."""


@tiers.command("list")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def tiers_list(ctx: click.Context, json_output: bool) -> None:
    """Show every tier with its limits and features."""
    guard = _guard(ctx)
    with guard:
        tier_list = guard.catalog.tiers

    if json_output:
        data = {t.level.value: tier_to_dict(t) for t in tier_list}
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"{'LEVEL':<12} {'COST CAP':>10} {'AI RUNS':>10} {'API RUNS':>10}  FEATURES")
    for t in tier_list:
        click.echo(
            f"{t.level.value:<12} {_limit(t.limits.max_cost):>10} "
            f"{_limit(t.limits.max_runs_ai):>10} {_limit(t.limits.max_runs_api):>10}  "
            f"{len(t.features)}"
        )


@tiers.command("verify")
@click.pass_context
def tiers_verify(ctx: click.Context) -> None:
    """Check that each tier offers at least what lower tiers offer."""
    guard = _guard(ctx)
    with guard:
        violations = guard.catalog.monotonic_violations()

    if not violations:
        click.echo(click.style("VALID", fg="green", bold=True) + " tier table is monotonic")
        return

    click.echo(click.style("INVALID", fg="red", bold=True)
               + f" {len(violations)} regression(s) found:")
    for v in violations:
        click.echo(f"  - {v}")
    sys.exit(1)


# --- operations command ---


@cli.command()
@click.option("--tag", default=None, help="Filter by tag")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def operations(ctx: click.Context, tag: str | None, json_output: bool) -> None:
    """Show all gated operations."""
    guard = _guard(ctx)
    with guard:
        registry = guard.registry
        ops = registry.list_by_tag(tag) if tag else [
            registry.get_or_raise(name) for name in registry.list_operations()
        ]

    if json_output:
        click.echo(json.dumps([op.model_dump(mode="json") for op in ops], indent=2))
        return

    if not ops:
        click.echo("No operations found.")
        return
    for op in ops:
        billing = f"{op.run_kind.value} ${op.estimated_cost}" if op.is_billable else "free"
        scope = ", ".join(sorted(op.required_team_roles)) or (
            "organization" if op.organization_scoped else "-"
        )
        click.echo(
            f"  {op.name:<26} feature={op.required_feature or '-':<22} "
            f"billing={billing:<14} roles={scope}"
        )
    click.echo(f"\n{len(ops)} operation(s).")


# --- check command ---


def _print_verdict(verdict: Verdict) -> None:
    label = "ALLOW" if verdict.allowed else "DENY"
    color = "green" if verdict.allowed else "red"
    click.echo(click.style(label, fg=color, bold=True) + f" {verdict.reason_code}: {verdict.message}")
    click.echo(f"  operation: {verdict.operation}")
    click.echo(f"  user:      {verdict.user_id} ({verdict.subscription_level})")
    click.echo(f"  audit:     {verdict.audit_id}")
    if verdict.upgrade_hint:
        click.echo(f"  upgrade:   {verdict.upgrade_hint}")
    if verdict.remaining_cost is not None:
        click.echo(f"  remaining cost: {verdict.remaining_cost}")
    if verdict.remaining_runs is not None:
        click.echo(f"  remaining runs: {verdict.remaining_runs}")


@cli.command()
@click.argument("operation")
@click.option("--user", "-u", "user_id", required=True, help="User id")
@click.option("--level", "-l", default="free", help="Subscription level")
@click.option("--team", default=None, help="Team id for team-scoped operations")
@click.option("--target", default=None, help="Target user id")
@click.option(
    "--new-role", default=None,
    type=click.Choice([r.value for r in TeamRole]),
    help="New team role for role changes",
)
@click.option("--cost", default=None, help="Override the estimated cost")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def check(
    ctx: click.Context,
    operation: str,
    user_id: str,
    level: str,
    team: str | None,
    target: str | None,
    new_role: str | None,
    cost: str | None,
    json_output: bool,
) -> None:
    """Validate OPERATION for a user. Exit 0 allowed, 2 denied, 3 unavailable."""
    context: dict[str, Any] = {}
    if team is not None:
        context["team_id"] = team
    if target is not None:
        context["target_user_id"] = target
    if new_role is not None:
        context["new_role"] = new_role
    if cost is not None:
        context["estimated_cost"] = cost

    guard = _guard(ctx)
    with guard:
        try:
            verdict = guard.check(user_id, operation, context, subscription_level=level)
        except CollaboratorUnavailable as e:
            click.echo(click.style("UNAVAILABLE", fg="yellow", bold=True) + f" {e}", err=True)
            sys.exit(EXIT_UNAVAILABLE)

    if json_output:
        click.echo(json.dumps(verdict.to_dict(), indent=2))
    else:
        _print_verdict(verdict)

    if not verdict.allowed:
        sys.exit(EXIT_DENIED)


# --- usage commands ---


def _print_usage(record: UsageRecord) -> None:
    click.echo(f"  {record.month}  cost={record.total_cost}  ai_runs={record.total_runs_ai}  "
               f"api_runs={record.total_runs_api}  calls={record.total_calls}")
    for name, fu in sorted(record.features.items()):
        click.echo(f"      {name:<24} cost={fu.cost}  calls={fu.calls}  runs={fu.runs}")


@cli.group()
def usage() -> None:
    """Usage ledger commands."""


@usage.command("show")
@click.option("--user", "-u", "user_id", required=True, help="User id")
@click.option("--month", default=None, help="Month key YYYY-MM (default: current)")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def usage_show(ctx: click.Context, user_id: str, month: str | None, json_output: bool) -> None:
    """Show a user's usage for one month."""
    guard = _guard(ctx)
    with guard:
        try:
            record = guard.usage(user_id, month)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        except CollaboratorUnavailable as e:
            click.echo(f"Ledger unavailable: {e}", err=True)
            sys.exit(EXIT_UNAVAILABLE)

    if json_output:
        click.echo(json.dumps(record.model_dump(mode="json"), indent=2))
    else:
        click.echo(f"Usage for {user_id}:")
        _print_usage(record)


@usage.command("record")
@click.option("--user", "-u", "user_id", required=True, help="User id")
@click.option("--cost", required=True, help="Cost to add, e.g. 0.05")
@click.option("--ai", "kind", flag_value=RunKind.AI.value, help="Consumes an AI run")
@click.option("--api", "kind", flag_value=RunKind.API.value, help="Consumes an API run")
@click.option("--feature", default=None, help="Feature name for the breakdown")
@click.pass_context
def usage_record(
    ctx: click.Context, user_id: str, cost: str, kind: str | None, feature: str | None,
) -> None:
    """Record a completed operation's usage for a user."""
    try:
        amount = Decimal(cost)
    except InvalidOperation:
        click.echo(f"Error: invalid cost: {cost}", err=True)
        sys.exit(1)
    if not amount.is_finite():
        click.echo(f"Error: invalid cost: {cost}", err=True)
        sys.exit(1)

    cfg = _cfg(ctx)
    if cfg.ledger is None:
        click.echo("Warning: no ledger configured, usage will not be persisted", err=True)

    guard = _guard(ctx)
    with guard:
        try:
            record = guard.budget.record_usage(
                user_id, amount, RunKind(kind or RunKind.NONE.value), feature=feature,
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        except CollaboratorUnavailable as e:
            click.echo(f"Ledger unavailable: {e}", err=True)
            sys.exit(EXIT_UNAVAILABLE)

    click.echo(click.style("Recorded", fg="green", bold=True) + f" usage for {user_id}:")
    _print_usage(record)


@usage.command("history")
@click.option("--user", "-u", "user_id", required=True, help="User id")
@click.option("--limit", default=12, help="Number of months to show")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def usage_history(ctx: click.Context, user_id: str, limit: int, json_output: bool) -> None:
    """Show a user's most recent monthly usage, newest first."""
    guard = _guard(ctx)
    with guard:
        try:
            records = guard.history(user_id, limit)
        except CollaboratorUnavailable as e:
            click.echo(f"Ledger unavailable: {e}", err=True)
            sys.exit(EXIT_UNAVAILABLE)

    if json_output:
        click.echo(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return
    if not records:
        click.echo(f"No usage recorded for {user_id}.")
        return
    for record in records:
        _print_usage(record)


# --- audit commands ---


def _audit_path(ctx: click.Context, log_file: str | None) -> Path:
    if log_file is not None:
        return Path(log_file)
    cfg = _cfg(ctx)
    return Path(cfg.audit_log or DEFAULT_AUDIT_LOG)


@cli.group()
def audit() -> None:
    """Verdict log commands."""


@audit.command("verify")
@click.argument("log_file", required=False)
@click.pass_context
def audit_verify(ctx: click.Context, log_file: str | None) -> None:
    """Verify verdict log chain integrity."""
    path = _audit_path(ctx, log_file)
    if not path.exists():
        click.echo(f"Audit log not found: {path}")
        sys.exit(1)

    is_valid, errors = verify_log(path)

    if is_valid:
        click.echo(click.style("VALID", fg="green", bold=True)
                   + f" audit log chain is intact ({path})")
    else:
        click.echo(click.style("INVALID", fg="red", bold=True)
                   + f" {len(errors)} error(s) found:")
        for error in errors:
            click.echo(f"  - {error}")
        sys.exit(1)


@audit.command("show")
@click.argument("log_file", required=False)
@click.option("--last", "count", default=20, help="Number of entries to show")
@click.option("--denied", is_flag=True, help="Only show denied verdicts")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def audit_show(
    ctx: click.Context, log_file: str | None, count: int, denied: bool, json_output: bool,
) -> None:
    """Show recent verdict log entries."""
    path = _audit_path(ctx, log_file)
    if not path.exists():
        click.echo(f"Audit log not found: {path}")
        sys.exit(1)

    try:
        events = AuditLogger(path).read_events()
    except AuditError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if denied:
        events = [e for e in events if not e.allowed]
    events = events[-count:]

    if json_output:
        click.echo(json.dumps([e.model_dump(mode="json") for e in events], indent=2))
        return
    if not events:
        click.echo("No audit entries found.")
        return
    for event in events:
        label = "ALLOW" if event.allowed else "DENY"
        color = "green" if event.allowed else "red"
        click.echo(
            f"  {event.timestamp.isoformat()[:19]}  "
            + click.style(f"{label:<6}", fg=color)
            + f" {event.operation:<26} user={event.user_id}  "
            + f"level={event.subscription_level}  reason={event.reason_code}"
        )
    click.echo(f"\n{len(events)} event(s) shown.")
