"""Tests for CLI commands."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from stratum.cli import cli
from stratum.exceptions import PermanentProviderError
from stratum.state import LocalStateStore, LockInfo

CONFIG = """
variables:
  cidr: {{type: string, default: 10.0.0.0/16}}
providers:
  local:
    kind: local
    path: {objects}
    resource_types:
      local_network: {{force_new: [cidr], computed: [subnet_id]}}
resources:
  local_network:
    main:
      name: main
      cidr: ${{var.cidr}}
  local_queue:
    jobs:
      name: jobs
      subnet: ${{local_network.main.subnet_id}}
outputs:
  network_cidr: ${{local_network.main.cidr}}
  queue_id: ${{local_queue.jobs.id}}
"""


@pytest.fixture
def runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def infra(write_config, tmp_path):
    """Configuration whose local provider persists objects between runs."""
    return write_config(CONFIG.format(objects=tmp_path / "objects.json"))


@pytest.fixture
def invoke(runner, infra, monkeypatch):
    for name in ("STRATUM_REFRESH", "STRATUM_PARALLELISM", "STRATUM_STATE_PATH"):
        monkeypatch.delenv(name, raising=False)

    def run(*args, **kwargs):
        return runner.invoke(cli, ["-C", str(infra), *args], **kwargs)

    return run


class TestHelp:
    """Test help output."""

    def test_cli_help(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "declarative infrastructure provisioning" in result.output

    def test_apply_help(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["apply", "--help"])
        assert result.exit_code == 0
        assert "--auto-approve" in result.output
        assert "--target" in result.output
        assert "--var" in result.output


class TestPlanApply:
    """Test plan, apply and destroy."""

    def test_plan_with_changes_exits_2(self, invoke):
        result = invoke("plan")
        assert result.exit_code == 2
        assert "+ local_network.main will be created" in result.output
        assert "Plan: 2 to add, 0 to change, 0 to destroy." in result.output
        assert "queue_id = (known after apply)" in result.output

    def test_apply_then_plan_is_clean(self, invoke, infra):
        result = invoke("apply", "--auto-approve")
        assert result.exit_code == 0, result.output
        assert "Apply complete: 2 applied, 0 failed, 0 skipped." in result.output
        assert 'network_cidr = "10.0.0.0/16"' in result.output
        assert (infra / "stratum.state.json").exists()

        result = invoke("plan")
        assert result.exit_code == 0, result.output
        assert "No changes. Infrastructure is up-to-date." in result.output

    def test_var_forces_replacement(self, invoke):
        invoke("apply", "--auto-approve")
        result = invoke("plan", "--var", "cidr=10.1.0.0/16")
        assert result.exit_code == 2
        assert "-/+ local_network.main must be replaced" in result.output
        assert "# forces replacement" in result.output

    def test_invalid_var(self, invoke):
        result = invoke("plan", "--var", "cidr")
        assert result.exit_code == 2
        assert "expected NAME=VALUE" in result.output

    def test_declined_apply(self, invoke, infra):
        result = invoke("apply", input="n\n")
        assert result.exit_code == 2
        assert "Do you want to perform these actions?" in result.output
        assert "Apply cancelled." in result.output
        assert not (infra / "stratum.state.json").exists()

    def test_failed_resource_exits_1(self, invoke):
        failing = AsyncMock(side_effect=PermanentProviderError("quota exceeded"))
        with patch("stratum.providers.local.LocalProvider.create", failing):
            result = invoke("apply", "--auto-approve")
        assert result.exit_code == 1
        assert "Error: local_network.main: quota exceeded" in result.output
        assert "local_queue.jobs: skipped (blocked by local_network.main)" in result.output

    def test_destroy(self, invoke):
        invoke("apply", "--auto-approve")
        result = invoke("destroy", "--auto-approve")
        assert result.exit_code == 0, result.output
        assert "Plan: 0 to add, 0 to change, 2 to destroy." in result.output

        result = invoke("state", "list")
        assert "No resources in state." in result.output

    def test_target(self, invoke):
        result = invoke("apply", "--auto-approve", "--target", "local_network.main")
        assert result.exit_code == 0, result.output
        assert "1 applied" in result.output


class TestConfigurationCommands:
    """Test validate, graph and configuration errors."""

    def test_validate(self, invoke):
        result = invoke("validate")
        assert result.exit_code == 0
        assert "Configuration is valid (2 resource(s))." in result.output

    def test_graph(self, invoke):
        result = invoke("graph")
        assert result.exit_code == 0
        assert '"local_network.main" -> "local_queue.jobs";' in result.output

    def test_cycle_is_an_error(self, runner, write_config):
        infra = write_config(
            """
            resources:
              local_queue:
                a: {peer: "${local_queue.b.id}"}
                b: {peer: "${local_queue.a.id}"}
            """
        )
        result = runner.invoke(cli, ["-C", str(infra), "validate"])
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "local_queue.a" in result.output


class TestOutputs:
    """Test the output command."""

    def test_single_output(self, invoke):
        invoke("apply", "--auto-approve")
        result = invoke("output", "network_cidr")
        assert result.exit_code == 0
        assert result.output.strip() == "10.0.0.0/16"

    def test_json(self, invoke):
        invoke("apply", "--auto-approve")
        result = invoke("output", "--json")
        assert result.exit_code == 0
        outputs = json.loads(result.output)
        assert outputs["network_cidr"] == "10.0.0.0/16"
        assert outputs["queue_id"].startswith("local_queue-")

    def test_missing_output(self, invoke):
        invoke("apply", "--auto-approve")
        result = invoke("output", "nope")
        assert result.exit_code == 1
        assert "Output 'nope' not found" in result.output


class TestStateCommands:
    """Test state inspection and editing."""

    def test_list_and_show(self, invoke):
        invoke("apply", "--auto-approve")

        result = invoke("state", "list")
        assert result.exit_code == 0
        assert "local_network.main" in result.output
        assert "Serial: 3" in result.output

        result = invoke("state", "show", "local_queue.jobs")
        assert result.exit_code == 0
        record = json.loads(result.output)
        assert record["attributes"]["name"] == "jobs"
        assert record["dependencies"] == ["local_network.main"]

    def test_show_missing(self, invoke):
        result = invoke("state", "show", "local_queue.nope")
        assert result.exit_code == 1
        assert "No state record for local_queue.nope" in result.output

    def test_rm(self, invoke):
        invoke("apply", "--auto-approve")
        result = invoke("state", "rm", "local_queue.jobs", "--yes")
        assert result.exit_code == 0
        assert "Removed local_queue.jobs" in result.output

        result = invoke("state", "list")
        assert "local_queue.jobs" not in result.output
        # the remote object is kept, so the next plan creates a new one
        assert invoke("plan").exit_code == 2

    def test_force_unlock(self, invoke, infra):
        store = LocalStateStore(infra / "stratum.state.json")
        held = store.lock(LockInfo.new("apply"))

        result = invoke("plan")
        assert result.exit_code == 1
        assert held.id in result.output

        result = invoke("force-unlock", held.id, "--yes")
        assert result.exit_code == 0
        assert f"Lock {held.id} released" in result.output
        assert not store.lock_path.exists()
