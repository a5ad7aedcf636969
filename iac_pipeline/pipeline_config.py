"""
Pipeline definition.

One YAML file per pipeline describes the template to deploy, which events
trigger it, the validators that gate it and the environment it deploys to.
See ``pipeline.example.yml`` for a complete example.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, conint, constr, model_validator

from .core.errors import ConfigurationError
from .core.models import (
    ChangeAction,
    DeploymentCredential,
    ValidatorPolicy,
    ValidatorSpec,
)

_VERBS = frozenset(action.value for action in ChangeAction)


def _check_operation(operation: str) -> str:
    """Operations are exact ``<ResourceType>:<verb>`` strings."""
    resource_type, sep, verb = operation.rpartition(":")
    if not sep or not resource_type or verb not in _VERBS:
        raise ValueError(
            f"Invalid operation '{operation}': expected '<ResourceType>:<verb>' "
            f"with verb in {sorted(_VERBS)}"
        )
    if "*" in operation or "?" in operation:
        raise ValueError(f"Invalid operation '{operation}': wildcards are not allowed")
    return operation


class TriggerConfig(BaseModel):
    """Which source-control events start executions."""

    integration_branch: constr(min_length=1) = "main"
    base_branch: Optional[constr(min_length=1)] = None
    repositories: List[str] = Field(default_factory=list)

    class Config:
        extra = "forbid"


class ValidatorConfig(BaseModel):
    """One validator invocation in the test gate."""

    name: constr(min_length=1, max_length=128)
    kind: Literal["cfn_lint", "cfn_nag", "taskcat", "command"]
    policy: ValidatorPolicy = ValidatorPolicy.BLOCKING
    timeout_seconds: float = Field(default=300.0, gt=0)
    retries: conint(ge=0, le=10) = 0
    args: List[str] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "forbid"


class TargetConfig(BaseModel):
    """Where deployments are applied."""

    kind: Literal["cloudformation", "in_memory"] = "cloudformation"
    stack_name: Optional[str] = None
    region: Optional[str] = None
    profile: Optional[str] = None

    @model_validator(mode="after")
    def require_stack_name(self) -> "TargetConfig":
        if self.kind == "cloudformation" and not self.stack_name:
            raise ValueError("cloudformation targets require 'stack_name'")
        return self


class EnvironmentConfig(BaseModel):
    """The environment a full execution deploys to."""

    name: constr(min_length=1, max_length=128)
    target: TargetConfig = Field(default_factory=TargetConfig)
    credential: constr(min_length=1)
    deploy_timeout_seconds: float = Field(default=1800.0, gt=0)
    poll_interval_seconds: float = Field(default=10.0, gt=0)
    resolve_timeout_seconds: float = Field(default=600.0, gt=0)
    conflict_policy: Literal["queue", "reject"] = "queue"
    queue_timeout_seconds: Optional[float] = Field(default=3600.0, gt=0)

    class Config:
        extra = "forbid"


class CredentialConfig(BaseModel):
    """A deployment credential and its fixed permission set."""

    name: constr(min_length=1, max_length=128)
    role_arn: Optional[str] = None
    allowed_operations: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_operations(self) -> "CredentialConfig":
        for operation in self.allowed_operations:
            _check_operation(operation)
        return self

    def to_credential(self) -> DeploymentCredential:
        return DeploymentCredential(
            name=self.name,
            allowed_operations=frozenset(self.allowed_operations),
            role_arn=self.role_arn,
        )


class PipelineConfig(BaseModel):
    """
    Complete pipeline definition.

    ``policy_overrides`` re-classifies validators as blocking or advisory
    for this project without touching the validator entries themselves.
    """

    name: constr(min_length=1) = "default"
    template: constr(min_length=1)
    triggers: TriggerConfig = Field(default_factory=TriggerConfig)
    validators: List[ValidatorConfig]
    policy_overrides: Dict[str, ValidatorPolicy] = Field(default_factory=dict)
    environment: EnvironmentConfig
    credentials: List[CredentialConfig] = Field(default_factory=list)

    class Config:
        extra = "forbid"

    @model_validator(mode="after")
    def check_consistency(self) -> "PipelineConfig":
        names = [v.name for v in self.validators]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate validator names: {', '.join(duplicates)}")

        unknown = sorted(set(self.policy_overrides) - set(names))
        if unknown:
            raise ValueError(f"policy_overrides name unknown validators: {', '.join(unknown)}")

        if not any(spec.is_blocking for spec in self.validator_specs()):
            raise ValueError("At least one validator must be blocking")

        credential_names = [c.name for c in self.credentials]
        if self.environment.credential not in credential_names:
            raise ValueError(
                f"Environment credential '{self.environment.credential}' is not defined"
            )
        return self

    def validator_specs(self) -> List[ValidatorSpec]:
        """Validator specs in configured order with overrides applied."""
        return [
            ValidatorSpec(
                name=v.name,
                kind=v.kind,
                policy=self.policy_overrides.get(v.name, v.policy),
                timeout_seconds=v.timeout_seconds,
                args=tuple(v.args),
                retries=v.retries,
                options=tuple(v.options.items()),
            )
            for v in self.validators
        ]

    def deployment_credential(self) -> DeploymentCredential:
        for credential in self.credentials:
            if credential.name == self.environment.credential:
                return credential.to_credential()
        raise ConfigurationError(
            f"Credential '{self.environment.credential}' is not defined"
        )


def parse_pipeline_config(data: Any) -> PipelineConfig:
    """Validate a decoded pipeline definition.

    Raises:
        ConfigurationError: with every validation problem in the message
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Pipeline configuration must be a mapping")
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid pipeline configuration: {problems}")


def load_pipeline_config(path: Union[str, Path]) -> PipelineConfig:
    """Load and validate a pipeline definition from a YAML file."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as e:
        raise ConfigurationError(f"Cannot read pipeline configuration {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Pipeline configuration {path} is not valid YAML: {e}")
    return parse_pipeline_config(data)
