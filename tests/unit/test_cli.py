"""Unit tests for the CLI verbs."""

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from proxyctl.cli import app, build_controller
from proxyctl.core.context import ExecutionContext
from proxyctl.services.rule_table import RuleTable


runner = CliRunner()


@pytest.fixture
def cli_controller(controller):
    """Route every command to the tmp_path controller, running as root."""
    with patch("proxyctl.cli.build_controller", return_value=controller), \
            patch("proxyctl.cli.os.geteuid", return_value=0):
        yield controller


class TestUsage:
    """Tests for argument handling."""

    def test_no_verb(self):
        """Running without a verb prints usage and exits 2."""
        result = runner.invoke(app, [])
        assert result.exit_code == 2

    def test_unknown_verb(self):
        """An unknown verb is a usage error."""
        result = runner.invoke(app, ["frobnicate"])
        assert result.exit_code == 2

    def test_addproxy_odd_arguments(self, cli_controller, gateway):
        """A port without a target is a usage error."""
        result = runner.invoke(app, ["addproxy", "23456"])

        assert result.exit_code == 2
        assert "pairs" in result.output
        assert gateway.calls == []

    def test_addproxy_no_arguments(self, cli_controller):
        """addproxy needs at least one pair."""
        result = runner.invoke(app, ["addproxy"])
        assert result.exit_code == 2

    def test_version(self):
        """--version prints the version and exits 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "proxyctl version" in result.output

    def test_requires_root(self, controller):
        """Mutating commands refuse to run without root."""
        with patch("proxyctl.cli.build_controller", return_value=controller), \
                patch("proxyctl.cli.os.geteuid", return_value=1000):
            result = runner.invoke(app, ["addproxy", "23456", "10.0.0.5:8080"])

        assert result.exit_code == 6
        assert "root" in result.output


class TestProxyVerbs:
    """Tests for addproxy, showproxy, removeproxy and fixaddr."""

    def test_add_show_remove(self, cli_controller, rules_dir, snapshot):
        """add, show and remove through the CLI restore both files."""
        before = snapshot()

        result = runner.invoke(app, ["addproxy", "23456", "127.0.0.1:8080"])
        assert result.exit_code == 0

        result = runner.invoke(app, ["showproxy", "23456", "23457"])
        assert result.exit_code == 0
        assert result.output.splitlines() == ["23456 127.0.0.1:8080"]

        result = runner.invoke(app, ["removeproxy", "23456"])
        assert result.exit_code == 0
        assert snapshot() == before

    def test_add_several_pairs(self, cli_controller, rules_dir):
        """Several pairs are added in one call."""
        result = runner.invoke(app, ["addproxy", "23456", "10.0.0.5:8080", "23457", "10.0.0.6:22"])

        assert result.exit_code == 0
        nat = RuleTable.parse((rules_dir / "nat.rules").read_text())
        assert nat.ports() == [23456, 23457]

    def test_add_batch_failure_exit_code(self, cli_controller, rules_dir):
        """An invalid pair fails the command but the valid ones are applied."""
        result = runner.invoke(app, ["addproxy", "80", "10.0.0.5:8080", "23456", "10.0.0.5:8080"])

        assert result.exit_code == 3
        assert "80: Invalid proxy port" in result.output
        nat = RuleTable.parse((rules_dir / "nat.rules").read_text())
        assert nat.ports() == [23456]

    def test_remove_absent(self, cli_controller, snapshot):
        """Removing an unknown port exits 0 without changes."""
        before = snapshot()

        result = runner.invoke(app, ["removeproxy", "23456"])

        assert result.exit_code == 0
        assert snapshot() == before

    def test_show_invalid_port(self, cli_controller):
        """A malformed port fails the command but valid ports are still printed."""
        runner.invoke(app, ["addproxy", "23456", "10.0.0.5:8080"])

        result = runner.invoke(app, ["showproxy", "abc", "23456"])

        assert result.exit_code == 3
        assert "abc: Invalid proxy port" in result.output
        assert "23456 10.0.0.5:8080" in result.output.splitlines()

    def test_show_nothing_configured(self, cli_controller):
        """showproxy prints nothing for ports without rules."""
        result = runner.invoke(app, ["showproxy", "23456"])
        assert result.exit_code == 0
        assert result.output == ""

    def test_add_without_address(self, cli_controller, resolver):
        """A missing host address exits with its own code."""
        resolver.address = None

        result = runner.invoke(app, ["addproxy", "23456", "10.0.0.5:8080"])

        assert result.exit_code == 20

    def test_fixaddr(self, cli_controller, resolver, rules_dir):
        """fixaddr rewrites the stale host address."""
        resolver.address = "198.51.100.1"
        runner.invoke(app, ["addproxy", "23456", "10.0.0.5:8080"])
        resolver.address = "203.0.113.7"

        result = runner.invoke(app, ["fixaddr"])

        assert result.exit_code == 0
        assert RuleTable.parse((rules_dir / "nat.rules").read_text()).addresses() == ["203.0.113.7"]

    def test_list(self, cli_controller):
        """list shows configured proxies in a table."""
        runner.invoke(app, ["addproxy", "23456", "10.0.0.5:8080"])

        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert "23456" in result.output
        assert "present" in result.output

    def test_missing_rule_files(self, ctx, tmp_path, gateway, resolver, controller_factory):
        """Without rule files the command fails with a persist error."""
        controller = controller_factory(ctx, tmp_path, gateway, resolver)
        with patch("proxyctl.cli.build_controller", return_value=controller), \
                patch("proxyctl.cli.os.geteuid", return_value=0):
            result = runner.invoke(app, ["addproxy", "23456", "10.0.0.5:8080"])

        assert result.exit_code == 21
        assert "proxyctl init" in result.output


class TestInit:
    """Tests for the init verb."""

    def test_creates_files(self, ctx, tmp_path, gateway, resolver, controller_factory):
        """init creates both files once and is a no-op afterwards."""
        controller = controller_factory(ctx, tmp_path, gateway, resolver)
        with patch("proxyctl.cli.build_controller", return_value=controller), \
                patch("proxyctl.cli.os.geteuid", return_value=0):
            result = runner.invoke(app, ["init"])
            assert result.exit_code == 0
            assert (tmp_path / "filter.rules").read_text().endswith("COMMIT\n")
            assert (tmp_path / "nat.rules").exists()

            result = runner.invoke(app, ["init"])
            assert result.exit_code == 0
            assert "already exist" in result.output


class TestBuildController:
    """Tests for wiring the controller from configuration."""

    def test_paths_from_config(self, tmp_path, monkeypatch):
        """Config file paths and interface reach the controller."""
        for name in ("PROXYCTL_INTERFACE", "PROXYCTL_RULES_DIR", "PROXYCTL_LOCK_PATH"):
            monkeypatch.delenv(name, raising=False)
        config_path = tmp_path / "config.yaml"
        config_path.write_text(
            f"rules_dir: {tmp_path}\n"
            f"lock_path: {tmp_path / 'proxyctl.lock'}\n"
            f"audit_log: {tmp_path / 'audit.log'}\n"
            "interface: eth0\n"
        )

        controller = build_controller(ExecutionContext(config_path=config_path))

        assert controller.filter_table.path == tmp_path / "filter.rules"
        assert controller.nat_table.path == tmp_path / "nat.rules"
        assert controller.lock.path == tmp_path / "proxyctl.lock"
        assert controller.resolver.interface == "eth0"
        assert controller.audit.log_path == tmp_path / "audit.log"
