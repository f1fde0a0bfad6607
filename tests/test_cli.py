"""CLI tests through click's CliRunner."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import TREE_IDS, write_tree

from agentaudit import __version__
from agentaudit.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(runner, tmp_path):
    """Current directory set to a fresh copy of the fixture tree."""
    with runner.isolated_filesystem(temp_dir=tmp_path) as cwd:
        write_tree(Path(cwd))
        yield Path(cwd)


@pytest.fixture
def empty_dir(runner, tmp_path):
    with runner.isolated_filesystem(temp_dir=tmp_path) as cwd:
        yield Path(cwd)


def run_json(runner, *args):
    result = runner.invoke(cli, ["run", *args, "--json"])
    return result, json.loads(result.stdout) if result.stdout.strip().startswith("{") else None


class TestRun:
    def test_full_run(self, runner, project):
        result, data = run_json(runner, "--mode", "full")
        assert result.exit_code == 0, result.output
        assert data["outcome"] == "completed_clean"
        assert data["dispatched"] == TREE_IDS
        assert (project / ".agentaudit" / "cache.json").exists()
        assert (project / ".agentaudit" / "latest_report.json").exists()

    def test_second_incremental_run_reuses(self, runner, project):
        runner.invoke(cli, ["run", "--mode", "full", "--quiet"])
        result, data = run_json(runner)
        assert result.exit_code == 0, result.output
        assert data["reused_cached_report"] is True
        assert data["dispatched"] == []

    def test_abort_on_unchanged(self, runner, project):
        runner.invoke(cli, ["run", "--mode", "full", "--quiet"])
        result = runner.invoke(cli, ["run", "--on-unchanged", "abort", "--quiet"])
        assert result.exit_code == 2

    def test_dry_run(self, runner, project):
        result = runner.invoke(cli, ["run", "--dry-run"])
        assert result.exit_code == 0, result.output
        assert "would dispatch 6 unit(s)" in result.stdout
        assert not (project / ".agentaudit" / "runs").exists()

    def test_kind_filter(self, runner, project):
        result, data = run_json(runner, "--mode", "full", "--kind", "agent")
        assert result.exit_code == 0
        assert data["dispatched"] == ["agent:code-reviewer"]

    def test_empty_explicit_scope_aborts(self, runner, empty_dir):
        result = runner.invoke(cli, ["run", "--kind", "agent", "--quiet"])
        assert result.exit_code == 2

    def test_missing_root_aborts(self, runner, empty_dir):
        result = runner.invoke(cli, ["run", "nowhere", "--quiet"])
        assert result.exit_code == 2

    def test_resume_without_unfinished_run(self, runner, project):
        result = runner.invoke(cli, ["run", "--resume"])
        assert result.exit_code == 3
        assert "No unfinished run" in result.output

    def test_resume_with_bad_ledger(self, runner, project):
        Path("notes.md").write_text("# not a ledger\n", encoding="utf-8")
        result = runner.invoke(cli, ["run", "--resume", "notes.md"])
        assert result.exit_code == 3


class TestGraph:
    def test_json_summary(self, runner, project):
        result = runner.invoke(cli, ["graph", "--json"])
        assert result.exit_code == 0, result.output
        summary = json.loads(result.stdout)
        assert summary["orphans"] == ["hook:pre-commit"]
        assert summary["cycles"] == []
        assert summary["health"]["max_depth"] == 2
        assert summary["health"]["score"] == 8.33

    def test_human_output(self, runner, project):
        result = runner.invoke(cli, ["graph"])
        assert result.exit_code == 0, result.output
        assert "GRAPH HEALTH" in result.stdout
        assert "hook:pre-commit" in result.stdout

    def test_graph_writes_no_state(self, runner, project):
        runner.invoke(cli, ["graph"])
        assert not (project / ".agentaudit").exists()


class TestCache:
    def test_status_after_run(self, runner, project):
        runner.invoke(cli, ["run", "--mode", "full", "--quiet"])
        (project / "agents" / "code-reviewer.md").write_text("rewritten", encoding="utf-8")

        result = runner.invoke(cli, ["cache", "status", "--json"])
        assert result.exit_code == 0, result.output
        status = json.loads(result.stdout)
        assert status["exists"] is True
        assert status["stats"]["entries"] == 6
        assert status["diff"]["changed"] == ["agent:code-reviewer"]

    def test_status_without_cache(self, runner, project):
        result = runner.invoke(cli, ["cache", "status"])
        assert result.exit_code == 0
        assert "No cache" in result.stdout

    def test_clear(self, runner, project):
        runner.invoke(cli, ["run", "--mode", "full", "--quiet"])
        result = runner.invoke(cli, ["cache", "clear"])
        assert result.exit_code == 0
        assert not (project / ".agentaudit" / "cache.json").exists()


class TestGroup:
    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for name in ("run", "watch", "graph", "cache"):
            assert name in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert __version__ in result.output
