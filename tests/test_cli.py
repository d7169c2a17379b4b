"""Tests for the plan-guard CLI."""

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from plan_guard.cli.main import EXIT_DENIED, EXIT_UNAVAILABLE, cli


def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    """A scaffolded project; returns the config file path."""
    result = runner().invoke(cli, ["init", str(tmp_path)])
    assert result.exit_code == 0, result.output
    return tmp_path / "plan-guard.yaml"


def invoke(config: Path, *args: str):
    return runner().invoke(cli, ["--config", str(config), *args])


# --- init command ---


class TestInitCommand:
    def test_creates_files(self, tmp_path: Path):
        result = runner().invoke(cli, ["init", str(tmp_path / "proj")])
        assert result.exit_code == 0
        assert "Created:" in result.output
        for name in ("plan-guard.yaml", "tiers.yaml", "operations.yaml", "memberships.yaml"):
            assert (tmp_path / "proj" / name).exists()

    def test_skips_existing(self, project: Path):
        result = runner().invoke(cli, ["init", str(project.parent)])
        assert result.exit_code == 0
        assert "skip" in result.output
        assert "Created:" not in result.output

    def test_scaffold_matches_builtin_defaults(self, project: Path):
        result = invoke(project, "operations", "--json-output")
        assert result.exit_code == 0
        names = {op["name"] for op in json.loads(result.output)}
        assert len(names) == 17
        assert "update_member_role" in names


# --- tiers commands ---


class TestTiersCommands:
    def test_list(self, project: Path):
        result = invoke(project, "tiers", "list")
        assert result.exit_code == 0
        assert "enterprise" in result.output
        assert "unlimited" in result.output

    def test_list_json(self, project: Path):
        result = invoke(project, "tiers", "list", "--json-output")
        data = json.loads(result.output)
        assert list(data) == ["free", "pro", "premium", "business", "enterprise"]
        assert data["premium"]["limits"]["max_runs_ai"] == 30

    def test_verify_valid(self, project: Path):
        result = invoke(project, "tiers", "verify")
        assert result.exit_code == 0
        assert "VALID" in result.output

    def test_verify_regression(self, project: Path):
        tiers_path = project.parent / "tiers.yaml"
        data = yaml.safe_load(tiers_path.read_text(encoding="utf-8"))
        data["tiers"]["business"]["features"].remove("team_sharing")
        tiers_path.write_text(yaml.safe_dump(data), encoding="utf-8")

        result = invoke(project, "tiers", "verify")
        assert result.exit_code == 1
        assert "INVALID" in result.output
        assert "team_sharing" in result.output

    def test_bad_config_path(self, tmp_path: Path):
        result = invoke(tmp_path / "missing.yaml", "tiers", "list")
        assert result.exit_code == 1
        assert "Error loading config" in result.output


# --- operations command ---


class TestOperationsCommand:
    def test_list(self, project: Path):
        result = invoke(project, "operations")
        assert result.exit_code == 0
        assert "run_ai_grouping" in result.output
        assert "17 operation(s)." in result.output

    def test_filter_tag(self, project: Path):
        result = invoke(project, "operations", "--tag", "ai", "--json-output")
        names = sorted(op["name"] for op in json.loads(result.output))
        assert names == ["ai_enhance_contact", "run_ai_grouping"]


# --- check command ---


class TestCheckCommand:
    def test_allowed(self, project: Path):
        result = invoke(
            project, "check", "delete_team", "--user", "alice", "--level", "business",
            "--team", "sales",
        )
        assert result.exit_code == 0
        assert "ALLOW" in result.output

    def test_denied_exit_code(self, project: Path):
        result = invoke(
            project, "check", "delete_team", "-u", "bob", "-l", "business", "--team", "sales",
        )
        assert result.exit_code == EXIT_DENIED
        assert "DENY" in result.output
        assert "INSUFFICIENT_ROLE" in result.output

    def test_override_from_membership_file(self, project: Path):
        result = invoke(
            project, "check", "export_team_data", "-u", "bob", "-l", "business",
            "--team", "sales",
        )
        assert result.exit_code == 0

    def test_self_demotion(self, project: Path):
        result = invoke(
            project, "check", "update_member_role", "-u", "alice", "-l", "business",
            "--team", "sales", "--target", "alice", "--new-role", "employee",
        )
        assert result.exit_code == EXIT_DENIED
        assert "Cannot demote yourself" in result.output

    def test_upgrade_hint_and_json(self, project: Path):
        result = invoke(
            project, "check", "run_ai_grouping", "-u", "alice", "-l", "pro", "--json-output",
        )
        assert result.exit_code == EXIT_DENIED
        data = json.loads(result.output)
        assert data["reason_code"] == "NO_FEATURE"
        assert data["upgrade_hint"] == "premium"

    def test_cost_override(self, project: Path):
        result = invoke(
            project, "check", "places_lookup", "-u", "alice", "-l", "pro", "--cost", "5",
        )
        assert result.exit_code == EXIT_DENIED
        assert "BUDGET_EXCEEDED" in result.output

    def test_membership_unavailable(self, project: Path):
        (project.parent / "memberships.yaml").write_text("memberships: [broken", encoding="utf-8")
        result = invoke(project, "check", "view_analytics", "-u", "alice", "-l", "pro")
        assert result.exit_code == EXIT_UNAVAILABLE
        assert "UNAVAILABLE" in result.output

    def test_checks_are_audited(self, project: Path):
        invoke(project, "check", "view_analytics", "-u", "alice", "-l", "pro")
        invoke(project, "check", "view_analytics", "-u", "bob", "-l", "free")

        result = invoke(project, "audit", "verify")
        assert result.exit_code == 0
        assert "VALID" in result.output

        result = invoke(project, "audit", "show", "--denied", "--json-output")
        events = json.loads(result.output)
        assert [e["user_id"] for e in events] == ["bob"]


# --- usage commands ---


class TestUsageCommands:
    def test_record_and_show(self, project: Path):
        result = invoke(
            project, "usage", "record", "--user", "alice", "--cost", "0.05", "--ai",
            "--feature", "run_ai_grouping",
        )
        assert result.exit_code == 0
        assert "Recorded" in result.output

        result = invoke(project, "usage", "show", "--user", "alice", "--json-output")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["total_runs_ai"] == 1
        assert data["total_cost"] == "0.05"
        assert data["features"]["run_ai_grouping"]["runs"] == 1

    def test_history(self, project: Path):
        result = invoke(project, "usage", "history", "--user", "carol")
        assert result.exit_code == 0
        assert "No usage recorded for carol" in result.output

        invoke(project, "usage", "record", "--user", "carol", "--cost", "0.01", "--api")
        result = invoke(project, "usage", "history", "--user", "carol", "--json-output")
        records = json.loads(result.output)
        assert len(records) == 1
        assert records[0]["total_runs_api"] == 1

    def test_invalid_cost(self, project: Path):
        result = invoke(project, "usage", "record", "--user", "alice", "--cost", "lots")
        assert result.exit_code == 1
        assert "invalid cost" in result.output

    @pytest.mark.parametrize("cost", ["NaN", "Infinity", "-inf"])
    def test_non_finite_cost(self, project: Path, cost: str):
        result = invoke(project, "usage", "record", "--user", "alice", f"--cost={cost}")
        assert result.exit_code == 1
        assert "invalid cost" in result.output

        result = invoke(project, "usage", "show", "--user", "alice", "--json-output")
        assert json.loads(result.output)["total_calls"] == 0

    def test_negative_cost(self, project: Path):
        result = invoke(project, "usage", "record", "--user", "alice", "--cost=-1")
        assert result.exit_code == 1

    def test_bad_month(self, project: Path):
        result = invoke(project, "usage", "show", "--user", "alice", "--month", "March")
        assert result.exit_code == 1


# --- audit commands ---


class TestAuditCommands:
    def test_verify_missing_log(self, tmp_path: Path):
        result = runner().invoke(cli, ["audit", "verify", str(tmp_path / "none.jsonl")])
        assert result.exit_code == 1
        assert "Audit log not found" in result.output

    def test_verify_tampered_log(self, project: Path):
        invoke(project, "check", "view_analytics", "-u", "alice", "-l", "pro")
        invoke(project, "check", "view_analytics", "-u", "bob", "-l", "pro")
        log_path = project.parent / "audit.jsonl"
        lines = log_path.read_text(encoding="utf-8").splitlines()
        entry = json.loads(lines[0])
        entry["user_id"] = "mallory"
        lines[0] = json.dumps(entry, sort_keys=True)
        log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        result = runner().invoke(cli, ["audit", "verify", str(log_path)])
        assert result.exit_code == 1
        assert "INVALID" in result.output

    def test_show_last(self, project: Path):
        for user in ("alice", "bob", "alice"):
            invoke(project, "check", "view_analytics", "-u", user, "-l", "pro")
        result = invoke(project, "audit", "show", "--last", "2")
        assert result.exit_code == 0
        assert "2 event(s) shown." in result.output
