"""Tests for service settings and pipeline definitions."""

import copy
from pathlib import Path

import pytest

from iac_pipeline.config import Settings
from iac_pipeline.core.errors import ConfigurationError
from iac_pipeline.core.models import ValidatorPolicy
from iac_pipeline.pipeline_config import load_pipeline_config, parse_pipeline_config

EXAMPLE = Path(__file__).resolve().parent.parent / "pipeline.example.yml"

MINIMAL = {
    "template": "templates/network.yml",
    "validators": [
        {"name": "lint", "kind": "cfn_lint"},
        {"name": "deploy-test", "kind": "taskcat", "policy": "advisory"},
    ],
    "environment": {
        "name": "staging",
        "target": {"kind": "in_memory"},
        "credential": "deployer",
    },
    "credentials": [
        {"name": "deployer", "allowed_operations": ["AWS::EC2::VPC:create"]},
    ],
}


def with_changes(**changes):
    data = copy.deepcopy(MINIMAL)
    data.update(changes)
    return data


class TestPipelineConfig:
    def test_example_file_loads(self):
        config = load_pipeline_config(EXAMPLE)

        assert config.name == "network-stack"
        assert [s.name for s in config.validator_specs()] == ["lint", "security", "deploy-test"]
        credential = config.deployment_credential()
        assert credential.allows("AWS::EC2::Subnet:delete")
        assert credential.role_arn.endswith("network-deployer")

    def test_defaults(self):
        config = parse_pipeline_config(MINIMAL)

        assert config.triggers.integration_branch == "main"
        assert config.environment.conflict_policy == "queue"
        specs = config.validator_specs()
        assert specs[0].policy == ValidatorPolicy.BLOCKING
        assert specs[0].timeout_seconds == 300.0
        assert specs[1].policy == ValidatorPolicy.ADVISORY

    def test_policy_overrides_applied(self):
        config = parse_pipeline_config(
            with_changes(policy_overrides={"deploy-test": "blocking", "lint": "advisory"})
        )
        policies = {s.name: s.policy for s in config.validator_specs()}
        assert policies == {
            "lint": ValidatorPolicy.ADVISORY,
            "deploy-test": ValidatorPolicy.BLOCKING,
        }

    def test_validator_options_preserved(self):
        validators = [
            {
                "name": "custom",
                "kind": "command",
                "options": {"command": ["guard", "{template}"], "pass_codes": [0]},
            }
        ]
        spec = parse_pipeline_config(with_changes(validators=validators)).validator_specs()[0]
        assert spec.option("command") == ["guard", "{template}"]

    @pytest.mark.parametrize(
        "changes, message",
        [
            (
                {"validators": [{"name": "a", "kind": "cfn_lint"}, {"name": "a", "kind": "cfn_nag"}]},
                "Duplicate validator names: a",
            ),
            ({"policy_overrides": {"ghost": "blocking"}}, "unknown validators: ghost"),
            (
                {"validators": [{"name": "only", "kind": "cfn_lint", "policy": "advisory"}]},
                "At least one validator must be blocking",
            ),
            ({"credentials": []}, "'deployer' is not defined"),
            ({"validators": [{"name": "x", "kind": "checkov"}]}, "validators.0.kind"),
            ({"surprise": True}, "surprise"),
        ],
    )
    def test_invalid_definitions(self, changes, message):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_pipeline_config(with_changes(**changes))
        assert message in exc_info.value.message

    @pytest.mark.parametrize(
        "operation",
        ["AWS::EC2::VPC", "AWS::EC2::VPC:modify", "AWS::EC2::*:create", ":create"],
    )
    def test_invalid_operations(self, operation):
        credentials = [{"name": "deployer", "allowed_operations": [operation]}]
        with pytest.raises(ConfigurationError, match="Invalid operation"):
            parse_pipeline_config(with_changes(credentials=credentials))

    def test_cloudformation_target_needs_stack(self):
        environment = dict(MINIMAL["environment"], target={"kind": "cloudformation"})
        with pytest.raises(ConfigurationError, match="stack_name"):
            parse_pipeline_config(with_changes(environment=environment))

    def test_non_mapping(self):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            parse_pipeline_config(["not", "a", "mapping"])

    def test_unreadable_files(self, tmp_path):
        broken = tmp_path / "pipeline.yml"
        broken.write_text("validators: [unclosed\n")

        with pytest.raises(ConfigurationError, match="not valid YAML"):
            load_pipeline_config(broken)
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_pipeline_config(tmp_path / "missing.yml")


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("WEBHOOK_SECRET", raising=False)
        settings = Settings(_env_file=None)

        assert settings.webhook_secret is None
        assert settings.api_port == 8000
        assert settings.max_concurrent_executions == 4

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_SECRET", "from-env")
        monkeypatch.setenv("API_PORT", "9100")
        monkeypatch.setenv("LOG_FORMAT", "console")
        settings = Settings(_env_file=None)

        assert settings.webhook_secret == "from-env"
        assert settings.api_port == 9100
        assert settings.log_format == "console"
