"""Tests for the command line interface."""

import json
from pathlib import Path

import click
import pytest
import yaml
from click.testing import CliRunner

from convergence.cli import cli, parse_vars
from convergence.config import EngineConfig
from convergence.reconciler import Reconciler

from cloud_mock import MockCloud


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def inline_topology(tmp_path: Path, web_tier_raw: dict) -> Path:
    """Web tier with the AMI given inline, so no data source is needed."""
    web_tier_raw["spec"]["data"] = [
        {"type": "ami", "name": "ubuntu", "values": {"id": "ami-0inline"}}
    ]
    path = tmp_path / "inline.yaml"
    path.write_text(yaml.safe_dump(web_tier_raw))
    return path


class TestParseVars:
    """Tests for parse_vars()."""

    def test_scalars_are_typed(self) -> None:
        """Test that numeric and boolean values keep their YAML type."""
        assert parse_vars(("count=3", "name=web", "enabled=true", "empty=")) == {
            "count": 3,
            "name": "web",
            "enabled": True,
            "empty": "",
        }

    def test_missing_separator(self) -> None:
        """Test that entries without '=' are rejected."""
        with pytest.raises(click.BadParameter):
            parse_vars(("count",))


class TestValidate:
    """Tests for the validate command."""

    def test_valid(self, runner: CliRunner, inline_topology: Path) -> None:
        """Test validating the web tier."""
        result = runner.invoke(cli, ["validate", str(inline_topology)])

        assert result.exit_code == 0, result.output
        assert "is valid: 17 resources (2 expanded declarations)" in result.output

    def test_var_override(self, runner: CliRunner, inline_topology: Path) -> None:
        """Test that --var changes the expanded graph."""
        result = runner.invoke(
            cli, ["validate", str(inline_topology), "--var", "instance_count=1"]
        )

        assert result.exit_code == 0, result.output
        assert "13 resources" in result.output

    def test_data_source_unavailable(self, runner: CliRunner, web_tier_file: Path) -> None:
        """Test that lookups needing a data source fail offline."""
        result = runner.invoke(cli, ["validate", str(web_tier_file)])

        assert result.exit_code == 1
        assert "No data source registered for data type 'ami'" in result.output

    def test_cycle(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test that cycles are reported as errors."""
        path = tmp_path / "cycle.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "resources": [
                        {"type": "vpc", "name": "a", "dependsOn": ["vpc.b"]},
                        {"type": "vpc", "name": "b", "dependsOn": ["vpc.a"]},
                    ]
                }
            )
        )

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "Circular dependency detected" in result.output

    def test_malformed_var(self, runner: CliRunner, inline_topology: Path) -> None:
        """Test that --var without '=' is a usage error."""
        result = runner.invoke(cli, ["validate", str(inline_topology), "--var", "oops"])

        assert result.exit_code == 2
        assert "expected KEY=VALUE" in result.output


class TestPlan:
    """Tests for the plan command."""

    def test_plan_against_empty_state(
        self, runner: CliRunner, inline_topology: Path, tmp_path: Path
    ) -> None:
        """Test that everything is planned for creation."""
        result = runner.invoke(
            cli, ["plan", str(inline_topology), "--state", str(tmp_path / "state.json")]
        )

        assert result.exit_code == 0, result.output
        assert "+ vpc.main  [Create]" in result.output
        assert "+ instance.web[2]  [Create]" in result.output
        assert "Plan: 17 to create, 0 to update, 0 to replace, 0 to delete, 0 unchanged." in result.output

    def test_plan_saved(self, runner: CliRunner, inline_topology: Path, tmp_path: Path) -> None:
        """Test that --out writes the plan as JSON."""
        out = tmp_path / "plan.json"

        result = runner.invoke(
            cli,
            [
                "plan",
                str(inline_topology),
                "--state",
                str(tmp_path / "state.json"),
                "--out",
                str(out),
            ],
        )

        assert result.exit_code == 0, result.output
        assert f"Plan saved to {out}" in result.output
        assert len(json.loads(out.read_text())["steps"]) == 17

    def test_corrupt_state(self, runner: CliRunner, inline_topology: Path, tmp_path: Path) -> None:
        """Test that an unreadable state file is reported."""
        state = tmp_path / "state.json"
        state.write_text("garbage")

        result = runner.invoke(cli, ["plan", str(inline_topology), "--state", str(state)])

        assert result.exit_code == 1
        assert "Failed to read state file" in result.output


class TestAfterApply:
    """Tests for commands run against applied state."""

    @pytest.mark.asyncio
    async def test_plan_state_and_outputs(
        self,
        runner: CliRunner,
        inline_topology: Path,
        fast_config: EngineConfig,
    ) -> None:
        """Test plan, state show and outputs once the topology is applied."""
        applied = await Reconciler(fast_config, MockCloud().registry()).reconcile(inline_topology)
        assert applied.success
        state = str(fast_config.state_path)

        planned = runner.invoke(cli, ["plan", str(inline_topology), "--state", state])
        assert planned.exit_code == 0, planned.output
        assert "No changes. Infrastructure matches the topology." in planned.output

        scaled = runner.invoke(
            cli, ["plan", str(inline_topology), "--state", state, "--var", "instance_count=2"]
        )
        assert "- instance.web[2]  [Delete]" in scaled.output
        assert "2 to delete, 15 unchanged." in scaled.output

        shown = runner.invoke(cli, ["state", "show", "--state", state])
        assert shown.exit_code == 0, shown.output
        assert "17 resources (serial 17)" in shown.output
        assert "depends on: vpc.main" in shown.output

        outputs = runner.invoke(cli, ["outputs", str(inline_topology), "--state", state, "--json"])
        assert outputs.exit_code == 0, outputs.output
        values = json.loads(outputs.output)
        assert values["lb_dns_name"] == "demo-lb.elb.mock.internal"
        assert len(values["instance_ips"]) == 3


class TestStateShow:
    """Tests for the state show command."""

    def test_empty_state(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test output when nothing has been applied."""
        state = tmp_path / "state.json"

        result = runner.invoke(cli, ["state", "show", "--state", str(state)])

        assert result.exit_code == 0
        assert f"No resources in {state}" in result.output


class TestOutputs:
    """Tests for the outputs command."""

    def test_outputs_before_apply(
        self, runner: CliRunner, inline_topology: Path, tmp_path: Path
    ) -> None:
        """Test that unapplied outputs are shown as known after apply."""
        result = runner.invoke(
            cli, ["outputs", str(inline_topology), "--state", str(tmp_path / "state.json")]
        )

        assert result.exit_code == 0, result.output
        assert "lb_dns_name = <known after apply: load_balancer.web.dns_name>" in result.output

    def test_version(self, runner: CliRunner) -> None:
        """Test the version option."""
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output
