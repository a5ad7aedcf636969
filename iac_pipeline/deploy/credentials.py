"""
Deployment credential checks.

A credential may only deploy an artifact if it can both create and later
fully tear down every resource type the artifact declares, plus perform
every change the target planned. The check is pure: no target access.
When the declared resource types cannot be read, the check fails.
"""

from __future__ import annotations

from typing import FrozenSet, Iterable, Sequence

from ..core.errors import PermissionInsufficient
from ..core.models import (
    Artifact,
    ChangeAction,
    DeploymentCredential,
    ResourceChange,
    TemplateError,
    operation_name,
)

LIFECYCLE_ACTIONS = (ChangeAction.CREATE, ChangeAction.UPDATE, ChangeAction.DELETE)


def lifecycle_operations(resource_types: Iterable[str]) -> FrozenSet[str]:
    """Every lifecycle operation for each resource type."""
    return frozenset(
        operation_name(resource_type, action)
        for resource_type in resource_types
        for action in LIFECYCLE_ACTIONS
    )


def required_operations(
    artifact: Artifact, changes: Sequence[ResourceChange] = ()
) -> FrozenSet[str]:
    """Operations a credential needs to deploy (and tear down) the artifact.

    Raises:
        TemplateError: if the artifact's resource types cannot be read
    """
    declared = artifact.declared_resources()
    return lifecycle_operations(declared.values()) | frozenset(
        change.operation for change in changes
    )


def check_credential(
    credential: DeploymentCredential,
    artifact: Artifact,
    changes: Sequence[ResourceChange] = (),
) -> FrozenSet[str]:
    """
    Verify the credential covers everything the deployment requires.

    Returns:
        The set of required operations

    Raises:
        PermissionInsufficient: listing every missing operation, or when the
            required operations cannot be determined
    """
    try:
        required = required_operations(artifact, changes)
    except TemplateError as e:
        raise PermissionInsufficient(
            credential.name, (), reason=f"{artifact.path}: {e}"
        ) from e
    missing = credential.missing(required)
    if missing:
        raise PermissionInsufficient(credential.name, missing)
    return required
