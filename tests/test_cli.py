"""Tests for CLI commands.

The deploy commands run against local-transport inventories, so hooks are
real shell commands executed on the test machine.
"""

import json

import pytest
import yaml
from click.testing import CliRunner

from deployctl.cli import cli


# =============================================================================
# Helpers
# =============================================================================


@pytest.fixture
def workspace(tmp_path):
    """Write a config, hook script and inventory into tmp_path."""
    state_dir = tmp_path / "state"
    config = tmp_path / "deployctl.yaml"
    config.write_text(yaml.dump({
        "global": {"confirm_destructive": False, "verbosity": "warning"},
        "pipeline": {"state_dir": str(state_dir), "default_stage_timeout": 10},
    }))

    hosts = tmp_path / "hosts.yaml"
    hosts.write_text(yaml.dump({"hosts": [{"id": "web-1"}, {"id": "web-2"}]}))

    return tmp_path


def write_hooks(path, hooks, rollback=None):
    path.write_text(yaml.dump({"name": "web", "hooks": hooks, "rollback": rollback or {}}, sort_keys=False))
    return str(path)


def invoke(cli_runner: CliRunner, workspace, *args):
    return cli_runner.invoke(cli, ["--no-color", "-c", str(workspace / "deployctl.yaml"), *args])


def run_args(workspace, hooks_file, *extra):
    return [
        "deploy", "run",
        "--hooks", hooks_file,
        "--hosts", str(workspace / "hosts.yaml"),
        "--artifact", "s3://builds/app.tar.gz",
        "--artifact-version", "1.4.2",
        "-y",
        *extra,
    ]


def deployment_ids(workspace):
    return [p.stem for p in (workspace / "state").glob("*.json")]


# =============================================================================
# CLI Entry Point
# =============================================================================


class TestCLIEntryPoint:
    """Tests for main CLI entry point, flags, and options."""

    def test_help(self, cli_runner: CliRunner):
        result = cli_runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "deployctl" in result.output
        assert "deploy" in result.output

    def test_version(self, cli_runner: CliRunner):
        result = cli_runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "deployctl version" in result.output

    def test_deploy_help(self, cli_runner: CliRunner):
        result = cli_runner.invoke(cli, ["deploy", "--help"])
        assert result.exit_code == 0
        for command in ("run", "status", "list", "abort", "resume"):
            assert command in result.output

    def test_config_command(self, cli_runner: CliRunner, workspace):
        result = invoke(cli_runner, workspace, "-o", "json", "config")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["halt_policy"] == "per-host"
        assert data["default_stage_timeout"] == 10
        assert data["max_concurrent"] == "unbounded"

    def test_invalid_config(self, cli_runner: CliRunner, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text(yaml.dump({"pipeline": {"halt_policy": "whenever"}}))

        result = cli_runner.invoke(cli, ["-c", str(bad), "config"])

        assert result.exit_code == 1


# =============================================================================
# Deploy commands
# =============================================================================


class TestDeployRun:
    """Tests for deploy run."""

    def test_successful_run(self, cli_runner: CliRunner, workspace):
        hooks = write_hooks(workspace / "appspec.yaml", {"install": "true", "start": "echo started"})

        result = invoke(cli_runner, workspace, *run_args(workspace, hooks))

        assert result.exit_code == 0, result.output
        assert "succeeded" in result.output
        assert len(deployment_ids(workspace)) == 1

    def test_failed_run_exits_nonzero(self, cli_runner: CliRunner, workspace):
        hooks = write_hooks(
            workspace / "appspec.yaml",
            {"install": "true", "start": "exit 1"},
            {"stop": "true"},
        )

        result = invoke(cli_runner, workspace, "-o", "json", *run_args(workspace, hooks, "--policy", "all-or-nothing"))

        assert result.exit_code == 1
        deployment_id = deployment_ids(workspace)[0]
        status = invoke(cli_runner, workspace, "-o", "json", "deploy", "status", deployment_id)
        data = json.loads(status.output)
        assert data["status"] == "rolled_back"
        assert data["per_host_status"]["web-1"]["rollback_results"][0]["stage_name"] == "stop"

    def test_single_host(self, cli_runner: CliRunner, workspace):
        hooks = write_hooks(workspace / "appspec.yaml", {"install": "true"})

        result = invoke(cli_runner, workspace, "-o", "json", *run_args(workspace, hooks, "--host", "web-2"))

        assert result.exit_code == 0, result.output
        data = json.loads(invoke(cli_runner, workspace, "-o", "json", "deploy", "status", deployment_ids(workspace)[0]).output)
        assert data["target_hosts"] == ["web-2"]

    def test_unknown_host_rejected(self, cli_runner: CliRunner, workspace):
        hooks = write_hooks(workspace / "appspec.yaml", {"install": "true"})

        result = invoke(cli_runner, workspace, *run_args(workspace, hooks, "--host", "db-9"))

        assert result.exit_code != 0
        assert deployment_ids(workspace) == []

    def test_bad_artifact_rejected(self, cli_runner: CliRunner, workspace):
        hooks = write_hooks(workspace / "appspec.yaml", {"install": "true"})
        args = run_args(workspace, hooks)
        args[args.index("s3://builds/app.tar.gz")] = "relative/app.tar.gz"

        result = invoke(cli_runner, workspace, *args)

        assert result.exit_code != 0
        assert deployment_ids(workspace) == []


class TestDeployQueries:
    """Tests for deploy status, list and abort."""

    @pytest.fixture
    def finished(self, cli_runner: CliRunner, workspace):
        hooks = write_hooks(workspace / "appspec.yaml", {"install": "true"})
        invoke(cli_runner, workspace, *run_args(workspace, hooks))
        return deployment_ids(workspace)[0]

    def test_status_table(self, cli_runner: CliRunner, workspace, finished):
        result = invoke(cli_runner, workspace, "deploy", "status", finished)

        assert result.exit_code == 0
        assert finished in result.output
        assert "web-1" in result.output

    def test_status_unknown(self, cli_runner: CliRunner, workspace):
        result = invoke(cli_runner, workspace, "deploy", "status", "missing")
        assert result.exit_code != 0

    def test_list(self, cli_runner: CliRunner, workspace, finished):
        result = invoke(cli_runner, workspace, "-o", "json", "deploy", "list")

        assert result.exit_code == 0
        assert [d["id"] for d in json.loads(result.output)] == [finished]

    def test_list_empty(self, cli_runner: CliRunner, workspace):
        result = invoke(cli_runner, workspace, "deploy", "list", "--status", "failed")

        assert result.exit_code == 0
        assert "No deployments found" in result.output

    def test_abort_terminal(self, cli_runner: CliRunner, workspace, finished):
        result = invoke(cli_runner, workspace, "deploy", "abort", finished, "-y")

        assert result.exit_code == 0
        assert "not active" in result.output

    def test_resume_terminal(self, cli_runner: CliRunner, workspace, finished):
        result = invoke(
            cli_runner, workspace, "deploy", "resume", finished, "--hosts", str(workspace / "hosts.yaml")
        )

        assert result.exit_code == 0

    def test_state_dir_option(self, cli_runner: CliRunner, workspace):
        hooks = write_hooks(workspace / "appspec.yaml", {"install": "true"})
        other = workspace / "other-state"

        result = cli_runner.invoke(
            cli,
            ["--no-color", "-c", str(workspace / "deployctl.yaml"), "--state-dir", str(other),
             *run_args(workspace, hooks)],
        )

        assert result.exit_code == 0, result.output
        assert len(list(other.glob("*.json"))) == 1
        assert deployment_ids(workspace) == []
