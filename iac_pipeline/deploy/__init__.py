"""
Deployment to live environments.

Components:
    - credentials: permission checks for deployment credentials
    - targets: DeploymentTarget interface and implementations
    - executor: plan, check, apply and poll to an explicit outcome
"""

from typing import Any

from ..core.errors import ConfigurationError
from .credentials import check_credential, lifecycle_operations, required_operations
from .executor import DeploymentExecutor, DeploymentOutcome, DeploymentStatus
from .targets import (
    ApplyState,
    ApplyStatus,
    CloudFormationTarget,
    DeploymentTarget,
    InMemoryTarget,
    plan_changes,
)


def get_target(kind: str, environment: str, **options: Any) -> DeploymentTarget:
    """Factory function to build a deployment target by kind.

    Raises:
        ConfigurationError: If the target kind is not supported
    """
    if kind == "in_memory":
        return InMemoryTarget(environment, resources=options.get("resources"))
    if kind == "cloudformation":
        stack_name = options.get("stack_name")
        if not stack_name:
            raise ConfigurationError("cloudformation target requires 'stack_name'")
        return CloudFormationTarget(
            environment,
            stack_name=stack_name,
            region=options.get("region"),
            profile=options.get("profile"),
        )
    raise ConfigurationError(
        f"Unsupported target kind: {kind}. Supported: cloudformation, in_memory"
    )


__all__ = [
    "ApplyState",
    "ApplyStatus",
    "CloudFormationTarget",
    "DeploymentExecutor",
    "DeploymentOutcome",
    "DeploymentStatus",
    "DeploymentTarget",
    "InMemoryTarget",
    "check_credential",
    "get_target",
    "lifecycle_operations",
    "plan_changes",
    "required_operations",
]
