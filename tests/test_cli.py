"""Tests for the command line interface."""

import httpx
import pytest
import yaml
from rich.console import Console
from typer.testing import CliRunner

from conftest import NETWORK_TEMPLATE, make_execution

from iac_pipeline import cli
from iac_pipeline.db.services import ExecutionService

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_environment(monkeypatch):
    """Wide output and no global logging changes."""
    monkeypatch.setattr(cli, "configure_logging", lambda settings: None)
    monkeypatch.setattr(cli, "console", Console(width=200))


@pytest.fixture
def template(tmp_path):
    path = tmp_path / "network.yml"
    path.write_bytes(NETWORK_TEMPLATE)
    return path


@pytest.fixture
def write_config(tmp_path, tool_script):
    """Write a pipeline definition whose validators are local scripts."""

    def write(exit_codes=None, operations=None):
        exit_codes = exit_codes or {"lint": 0}
        validators = [
            {
                "name": name,
                "kind": "command",
                "timeout_seconds": 30,
                "options": {
                    "command": [
                        *tool_script(
                            f"import sys\nprint('{name} checked', sys.argv[1])\nsys.exit({code})\n",
                            f"{name}.py",
                        ),
                        "{template}",
                    ]
                },
            }
            for name, code in exit_codes.items()
        ]
        if operations is None:
            operations = [
                f"{resource_type}:{verb}"
                for resource_type in ("AWS::EC2::VPC", "AWS::EC2::Subnet")
                for verb in ("create", "update", "delete")
            ]
        config = {
            "template": "network.yml",
            "validators": validators,
            "environment": {
                "name": "staging",
                "target": {"kind": "in_memory"},
                "credential": "deployer",
            },
            "credentials": [{"name": "deployer", "allowed_operations": operations}],
        }
        path = tmp_path / "pipeline.yml"
        path.write_text(yaml.safe_dump(config))
        return path

    return write


def test_version():
    result = runner.invoke(cli.app, ["version"])
    assert result.exit_code == 0
    assert "IaC Pipeline v" in result.output


class TestValidate:
    def test_passing_gate(self, template, write_config):
        result = runner.invoke(cli.app, ["validate", str(template), "-c", str(write_config())])

        assert result.exit_code == 0, result.output
        assert "Verdict: pass" in result.output

    def test_blocking_failure_exits_nonzero(self, template, write_config):
        config = write_config({"lint": 0, "security": 1})
        result = runner.invoke(cli.app, ["validate", str(template), "-c", str(config)])

        assert result.exit_code == 1
        assert "Verdict: fail" in result.output
        assert "security checked" in result.output

    def test_invalid_config(self, template, tmp_path):
        broken = tmp_path / "broken.yml"
        broken.write_text("template: x\nvalidators: []\n")
        result = runner.invoke(cli.app, ["validate", str(template), "-c", str(broken)])

        assert result.exit_code == 2
        assert "Invalid pipeline configuration" in result.output

    def test_missing_template(self, tmp_path, write_config):
        result = runner.invoke(
            cli.app, ["validate", str(tmp_path / "nope.yml"), "-c", str(write_config())]
        )
        assert result.exit_code == 2


class TestCheckPermissions:
    def test_covered(self, template, write_config):
        result = runner.invoke(
            cli.app, ["check-permissions", str(template), "-c", str(write_config())]
        )
        assert result.exit_code == 0
        assert "covers every required operation" in result.output

    def test_missing_operations(self, template, write_config):
        config = write_config(operations=["AWS::EC2::VPC:create", "AWS::EC2::VPC:update"])
        result = runner.invoke(cli.app, ["check-permissions", str(template), "-c", str(config)])

        assert result.exit_code == 1
        assert "missing required operations" in result.output

    def test_unreadable_template(self, tmp_path, write_config):
        template = tmp_path / "broken.yml"
        template.write_text("Resources:\n  Role:\n    Type: !Sub 'AWS::IAM::Role'\n")
        result = runner.invoke(
            cli.app, ["check-permissions", str(template), "-c", str(write_config())]
        )

        assert result.exit_code == 1
        assert "cannot be checked" in result.output


class TestExecutions:
    @pytest.fixture(autouse=True)
    def database(self, monkeypatch, session_factory):
        monkeypatch.setattr(cli, "get_session_local", lambda: session_factory)

    def test_list(self, db_session):
        execution = make_execution(commit_sha="abcdef12" + "0" * 32)
        ExecutionService(db_session).create_execution(execution)

        result = runner.invoke(cli.app, ["executions", "list"])
        assert result.exit_code == 0
        assert "abcdef12" in result.output

    def test_show(self, db_session):
        execution = make_execution()
        ExecutionService(db_session).create_execution(execution)

        result = runner.invoke(cli.app, ["executions", "show", execution.id])
        assert result.exit_code == 0
        assert "Audit trail" in result.output
        assert "created" in result.output

    def test_show_unknown(self):
        result = runner.invoke(cli.app, ["executions", "show", "missing"])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestRetrigger:
    def use_transport(self, monkeypatch, handler):
        monkeypatch.setattr(
            cli,
            "_api_client",
            lambda api_url: httpx.Client(
                base_url=api_url, transport=httpx.MockTransport(handler)
            ),
        )

    def test_started(self, monkeypatch):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(
                202,
                json={"status": "accepted", "execution_id": "new-id", "retrigger_of": "old-id"},
            )

        self.use_transport(monkeypatch, handler)
        result = runner.invoke(cli.app, ["retrigger", "old-id"])

        assert result.exit_code == 0
        assert seen == ["/executions/old-id/retrigger"]
        assert "Started execution new-id" in result.output

    def test_rejected(self, monkeypatch):
        self.use_transport(
            monkeypatch,
            lambda request: httpx.Response(
                409,
                json={
                    "detail": {
                        "error": {"code": "EXECUTION_IN_FLIGHT", "message": "still running"}
                    }
                },
            ),
        )
        result = runner.invoke(cli.app, ["retrigger", "old-id"])

        assert result.exit_code == 1
        assert "still running" in result.output

    def test_unreachable(self, monkeypatch):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        self.use_transport(monkeypatch, handler)
        result = runner.invoke(cli.app, ["retrigger", "old-id"])
        assert result.exit_code == 2
