"""
Deployment targets.

A target is the only channel through which the pipeline mutates external
state. It plans resource changes, starts an apply, and reports the apply's
status when polled. Targets may report ``unknown`` while they cannot tell;
resolving that is the executor's job.

Implementations:
    - InMemoryTarget: simulated environment (local runs, tests)
    - CloudFormationTarget: AWS CloudFormation through boto3
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..core.errors import DeploymentFailed
from ..core.models import (
    Artifact,
    ChangeAction,
    DeploymentCredential,
    ResourceChange,
    operation_name,
)

logger = logging.getLogger(__name__)


class ApplyState(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # Rolled back after a cancel request.
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (ApplyState.SUCCEEDED, ApplyState.FAILED, ApplyState.CANCELLED)


@dataclass(frozen=True)
class ApplyStatus:
    state: ApplyState
    message: Optional[str] = None
    failed_operation: Optional[str] = None
    failed_resource: Optional[str] = None


def plan_changes(current: Mapping[str, str], desired: Mapping[str, str]) -> List[ResourceChange]:
    """Diff two ``{logical_id: resource_type}`` maps into resource changes.

    A resource whose type changes is replaced: delete then create.
    """
    changes: List[ResourceChange] = []
    for logical_id, resource_type in sorted(desired.items()):
        existing = current.get(logical_id)
        if existing is None:
            changes.append(ResourceChange(logical_id, resource_type, ChangeAction.CREATE))
        elif existing == resource_type:
            changes.append(ResourceChange(logical_id, resource_type, ChangeAction.UPDATE))
        else:
            changes.append(ResourceChange(logical_id, existing, ChangeAction.DELETE))
            changes.append(ResourceChange(logical_id, resource_type, ChangeAction.CREATE))
    for logical_id, resource_type in sorted(current.items()):
        if logical_id not in desired:
            changes.append(ResourceChange(logical_id, resource_type, ChangeAction.DELETE))
    return changes


class DeploymentTarget(ABC):
    """Abstract base class for deployment targets."""

    def __init__(self, environment: str):
        self.environment = environment

    @property
    @abstractmethod
    def name(self) -> str:
        """Target name for logging and identification."""
        pass

    @abstractmethod
    def plan(self, artifact: Artifact) -> List[ResourceChange]:
        """Changes needed to converge the environment on the artifact."""
        pass

    @abstractmethod
    def apply(
        self,
        artifact: Artifact,
        changes: Sequence[ResourceChange],
        credential: DeploymentCredential,
    ) -> str:
        """Start applying changes and return a handle for polling.

        Raises:
            DeploymentFailed: if the target refuses the apply outright
        """
        pass

    @abstractmethod
    def status(self, handle: str) -> ApplyStatus:
        """Current status of an apply."""
        pass

    @abstractmethod
    def cancel(self, handle: str) -> None:
        """Best-effort request to stop an in-flight apply."""
        pass


class InMemoryTarget(DeploymentTarget):
    """Simulated environment.

    Applies are all-or-nothing: a failing resource leaves the environment
    as it was. Behaviour can be shaped for tests:

    Args:
        fail_on: logical ids whose change fails, with the failure message
        unknown_polls: polls answered with ``unknown`` before the real state
        in_progress_polls: polls answered with ``in_progress`` before settling
        hang: never settle until cancelled
    """

    def __init__(
        self,
        environment: str,
        resources: Optional[Mapping[str, str]] = None,
        fail_on: Optional[Mapping[str, str]] = None,
        unknown_polls: int = 0,
        in_progress_polls: int = 0,
        hang: bool = False,
    ):
        super().__init__(environment)
        self.resources: Dict[str, str] = dict(resources or {})
        self.fail_on = dict(fail_on or {})
        self.unknown_polls = unknown_polls
        self.in_progress_polls = in_progress_polls
        self.hang = hang
        self.operations: List[str] = []
        self.apply_count = 0
        self._applies: Dict[str, dict] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "in_memory"

    def plan(self, artifact: Artifact) -> List[ResourceChange]:
        with self._lock:
            return plan_changes(self.resources, artifact.resources())

    def apply(
        self,
        artifact: Artifact,
        changes: Sequence[ResourceChange],
        credential: DeploymentCredential,
    ) -> str:
        handle = f"apply-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.apply_count += 1
            self._applies[handle] = {
                "changes": list(changes),
                "polls": 0,
                "cancel_requested": False,
                "status": None,
            }
        logger.info(
            f"[{self.environment}] apply {handle} started with "
            f"{len(changes)} changes as {credential.name}"
        )
        return handle

    def status(self, handle: str) -> ApplyStatus:
        with self._lock:
            record = self._applies.get(handle)
            if record is None:
                return ApplyStatus(ApplyState.UNKNOWN, message=f"No apply {handle}")
            if record["status"] is not None:
                return record["status"]

            record["polls"] += 1
            if record["cancel_requested"]:
                record["status"] = ApplyStatus(
                    ApplyState.CANCELLED, message="Apply cancelled and rolled back"
                )
                return record["status"]
            if record["polls"] <= self.unknown_polls:
                return ApplyStatus(ApplyState.UNKNOWN)
            if self.hang or record["polls"] <= self.unknown_polls + self.in_progress_polls:
                return ApplyStatus(ApplyState.IN_PROGRESS)

            record["status"] = self._commit(record["changes"])
            return record["status"]

    def cancel(self, handle: str) -> None:
        with self._lock:
            record = self._applies.get(handle)
            if record is not None and record["status"] is None:
                record["cancel_requested"] = True

    def _commit(self, changes: Sequence[ResourceChange]) -> ApplyStatus:
        staged = dict(self.resources)
        for change in changes:
            if change.logical_id in self.fail_on:
                return ApplyStatus(
                    ApplyState.FAILED,
                    message=self.fail_on[change.logical_id],
                    failed_operation=change.operation,
                    failed_resource=change.logical_id,
                )
            if change.action == ChangeAction.DELETE:
                staged.pop(change.logical_id, None)
            else:
                staged[change.logical_id] = change.resource_type
        self.resources = staged
        self.operations.extend(change.operation for change in changes)
        return ApplyStatus(ApplyState.SUCCEEDED)



# CloudFormation stack statuses.
_CFN_SUCCESS = {"CREATE_COMPLETE", "UPDATE_COMPLETE", "IMPORT_COMPLETE"}
_CFN_FAILURE = {
    "CREATE_FAILED",
    "ROLLBACK_COMPLETE",
    "ROLLBACK_FAILED",
    "DELETE_FAILED",
    "DELETE_COMPLETE",
    "UPDATE_ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_FAILED",
    "UPDATE_FAILED",
    "IMPORT_ROLLBACK_COMPLETE",
    "IMPORT_ROLLBACK_FAILED",
}
_CFN_ACTIONS = {
    "CREATE_FAILED": ChangeAction.CREATE,
    "UPDATE_FAILED": ChangeAction.UPDATE,
    "DELETE_FAILED": ChangeAction.DELETE,
}


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", "")


# CloudFormation reports these as a generic ValidationError; the message is
# the only thing that tells them apart.
def _is_missing_stack(error: ClientError) -> bool:
    return _error_code(error) == "ValidationError" and "does not exist" in _error_message(error)


def _is_no_op_update(error: ClientError) -> bool:
    return (
        _error_code(error) == "ValidationError"
        and "No updates are to be performed" in _error_message(error)
    )


@dataclass
class _StackRequest:
    """A create or update issued by this target."""

    operation: str
    token: str
    started: float
    # False until the request shows up in the stack's events.
    confirmed: bool = True
    no_op: bool = False


class CloudFormationTarget(DeploymentTarget):
    """Deploys a template as a CloudFormation stack through boto3.

    The credential's ``role_arn`` is passed as the stack service role so
    CloudFormation acts with exactly the credential's permissions. Every
    create or update carries a client request token. If the request times
    out on the wire, the apply is not known to have started. ``status``
    then looks for the token in the stack's events and reports ``unknown``
    for up to ``confirm_timeout_seconds`` before declaring the request lost.
    """

    def __init__(
        self,
        environment: str,
        stack_name: str,
        region: Optional[str] = None,
        profile: Optional[str] = None,
        capabilities: Sequence[str] = ("CAPABILITY_NAMED_IAM",),
        request_timeout_seconds: float = 60.0,
        confirm_timeout_seconds: float = 120.0,
        client: Any = None,
    ):
        super().__init__(environment)
        self.stack_name = stack_name
        self.region = region
        self.profile = profile
        self.capabilities = tuple(capabilities)
        self.request_timeout_seconds = request_timeout_seconds
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self._client = client
        self._requests: Dict[str, _StackRequest] = {}
        self._cancel_requested: Set[str] = set()

    @property
    def name(self) -> str:
        return "cloudformation"

    @property
    def client(self) -> Any:
        if self._client is None:
            session = boto3.session.Session(
                profile_name=self.profile, region_name=self.region
            )
            # Retried creates and updates reuse their request token, so
            # CloudFormation applies each at most once.
            self._client = session.client(
                "cloudformation",
                config=Config(
                    connect_timeout=10,
                    read_timeout=self.request_timeout_seconds,
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )
        return self._client

    def plan(self, artifact: Artifact) -> List[ResourceChange]:
        return plan_changes(self._current_resources(), artifact.resources())

    def apply(
        self,
        artifact: Artifact,
        changes: Sequence[ResourceChange],
        credential: DeploymentCredential,
    ) -> str:
        try:
            stack = self._describe_stack()
        except (ClientError, BotoCoreError) as e:
            raise DeploymentFailed(f"Could not read stack {self.stack_name}: {e}") from e

        operation = "update_stack" if stack is not None else "create_stack"
        token = uuid.uuid4().hex
        handle = f"{self.stack_name}:{token}"
        request = _StackRequest(operation, token, time.monotonic())
        params: Dict[str, Any] = {
            "StackName": self.stack_name,
            "TemplateBody": artifact.body.decode("utf-8"),
            "ClientRequestToken": token,
        }
        if self.capabilities:
            params["Capabilities"] = list(self.capabilities)
        if credential.role_arn:
            params["RoleARN"] = credential.role_arn

        try:
            getattr(self.client, operation)(**params)
        except ClientError as e:
            if operation == "update_stack" and _is_no_op_update(e):
                request.no_op = True
            else:
                raise DeploymentFailed(
                    f"{operation} rejected for stack {self.stack_name}: "
                    f"{_error_code(e)}: {_error_message(e)}"
                ) from e
        except (ConnectTimeoutError, EndpointConnectionError) as e:
            raise DeploymentFailed(
                f"{operation} for stack {self.stack_name} could not be sent: {e}"
            ) from e
        except (ReadTimeoutError, ConnectionClosedError) as e:
            # Sent but unanswered: the stack may already be changing.
            logger.warning(
                f"[{self.environment}] {operation} for {self.stack_name} got no "
                f"answer ({e}); resolving from stack events"
            )
            request.confirmed = False
        except BotoCoreError as e:
            raise DeploymentFailed(f"{operation} for stack {self.stack_name} failed: {e}") from e
        else:
            logger.info(f"[{self.environment}] {operation} accepted for {self.stack_name}")

        self._requests[handle] = request
        return handle

    def status(self, handle: str) -> ApplyStatus:
        request = self._requests.get(handle)
        if request is not None and request.no_op:
            return ApplyStatus(ApplyState.SUCCEEDED, message="Stack already up to date")
        try:
            stack = self._describe_stack()
            if request is not None and not request.confirmed:
                unconfirmed = self._check_request(request, stack)
                if unconfirmed is not None:
                    return unconfirmed
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"[{self.environment}] describe_stacks failed: {e}")
            return ApplyStatus(ApplyState.UNKNOWN, message=str(e))
        if stack is None:
            return ApplyStatus(ApplyState.UNKNOWN, message=f"Stack {self.stack_name} not found")

        stack_status = stack.get("StackStatus", "")
        reason = stack.get("StackStatusReason")
        if stack_status in _CFN_SUCCESS:
            return ApplyStatus(ApplyState.SUCCEEDED, message=stack_status)
        if stack_status in _CFN_FAILURE:
            if handle in self._cancel_requested and stack_status == "UPDATE_ROLLBACK_COMPLETE":
                return ApplyStatus(ApplyState.CANCELLED, message=stack_status)
            return self._failure_status(stack_status, reason, request)
        if stack_status.endswith("_IN_PROGRESS"):
            return ApplyStatus(ApplyState.IN_PROGRESS, message=stack_status)
        return ApplyStatus(ApplyState.UNKNOWN, message=stack_status or None)

    def cancel(self, handle: str) -> None:
        self._cancel_requested.add(handle)
        try:
            self.client.cancel_update_stack(StackName=self.stack_name)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"[{self.environment}] cancel_update_stack failed: {e}")

    def _check_request(
        self, request: _StackRequest, stack: Optional[Dict[str, Any]]
    ) -> Optional[ApplyStatus]:
        """Status for a request not yet seen in the stack events, or None once seen."""
        if stack is not None and self._request_seen(request.token):
            request.confirmed = True
            logger.info(f"[{self.environment}] {request.operation} for {self.stack_name} confirmed")
            return None
        if time.monotonic() - request.started < self.confirm_timeout_seconds:
            return ApplyStatus(
                ApplyState.UNKNOWN, message=f"Waiting for {request.operation} to appear"
            )
        return ApplyStatus(
            ApplyState.FAILED,
            message=f"{request.operation} for stack {self.stack_name} was never applied",
        )

    def _request_seen(self, token: str) -> bool:
        response = self.client.describe_stack_events(StackName=self.stack_name)
        return any(e.get("ClientRequestToken") == token for e in response.get("StackEvents", []))

    def _failure_status(
        self, stack_status: str, reason: Optional[str], request: Optional[_StackRequest]
    ) -> ApplyStatus:
        try:
            events = self.client.describe_stack_events(StackName=self.stack_name).get(
                "StackEvents", []
            )
        except (ClientError, BotoCoreError):
            events = []
        if request is not None:
            events = [e for e in events if e.get("ClientRequestToken") == request.token] or events

        # Events are newest first; the root cause is the oldest resource failure.
        for event in reversed(events):
            action = _CFN_ACTIONS.get(event.get("ResourceStatus", ""))
            if action is None or event.get("LogicalResourceId") == self.stack_name:
                continue
            return ApplyStatus(
                ApplyState.FAILED,
                message=event.get("ResourceStatusReason") or reason or stack_status,
                failed_operation=operation_name(event.get("ResourceType", "?"), action),
                failed_resource=event.get("LogicalResourceId"),
            )
        return ApplyStatus(ApplyState.FAILED, message=reason or stack_status)

    def _describe_stack(self) -> Optional[Dict[str, Any]]:
        """The stack description, or None when the stack does not exist."""
        try:
            stacks = self.client.describe_stacks(StackName=self.stack_name).get("Stacks", [])
        except ClientError as e:
            if _is_missing_stack(e):
                return None
            raise
        return stacks[0] if stacks else None

    def _current_resources(self) -> Dict[str, str]:
        try:
            response = self.client.describe_stack_resources(StackName=self.stack_name)
        except ClientError as e:
            if _is_missing_stack(e):
                return {}
            raise DeploymentFailed(
                f"Could not read stack {self.stack_name}: {_error_code(e)}: {_error_message(e)}"
            ) from e
        except BotoCoreError as e:
            raise DeploymentFailed(f"Could not read stack {self.stack_name}: {e}") from e
        return {
            r["LogicalResourceId"]: r["ResourceType"]
            for r in response.get("StackResources", [])
        }
