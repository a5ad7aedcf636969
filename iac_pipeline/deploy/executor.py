"""
Deployment executor.

Promotes a gated artifact to one environment through a deployment target:

1. plan the resource changes
2. check the credential covers every required operation (before any mutation)
3. start the apply
4. poll until the target reports a terminal state

The executor never returns an in-progress or unknown outcome. When the
deploy ceiling passes or the run is cancelled it asks the target to stop and
keeps polling, for at most ``resolve_timeout_seconds``, until the apply
settles one way or the other.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..core.cancellation import NEVER_CANCELLED, CancellationToken
from ..core.errors import PermissionInsufficient, PipelineError
from ..core.models import Artifact, DeploymentCredential, ResourceChange
from .credentials import check_credential
from .targets import ApplyState, ApplyStatus, DeploymentTarget

logger = logging.getLogger(__name__)


class DeploymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


_SETTLED = {
    ApplyState.SUCCEEDED: DeploymentStatus.SUCCEEDED,
    ApplyState.CANCELLED: DeploymentStatus.CANCELLED,
    ApplyState.FAILED: DeploymentStatus.FAILED,
}


@dataclass
class DeploymentOutcome:
    """Explicit result of one deployment."""

    status: DeploymentStatus
    changes: List[ResourceChange] = field(default_factory=list)

    # Failure info (if failed)
    failed_operation: Optional[str] = None
    failed_resource: Optional[str] = None
    message: Optional[str] = None

    # Telemetry
    polls: int = 0
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == DeploymentStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "changes": [
                {
                    "logical_id": c.logical_id,
                    "resource_type": c.resource_type,
                    "action": c.action.value,
                }
                for c in self.changes
            ],
            "failed_operation": self.failed_operation,
            "failed_resource": self.failed_resource,
            "message": self.message,
            "polls": self.polls,
            "duration_seconds": self.duration_seconds,
        }


class DeploymentExecutor:
    """Applies artifacts to a single deployment target.

    Args:
        target: Where changes are applied
        deploy_timeout_seconds: Ceiling on a deployment before it is cancelled
        poll_interval_seconds: Delay between status polls
        resolve_timeout_seconds: How long to wait for a cancelled or
            timed-out apply to settle
        sleep: Sleep function used while resolving (injectable for tests)
    """

    def __init__(
        self,
        target: DeploymentTarget,
        deploy_timeout_seconds: float = 1800.0,
        poll_interval_seconds: float = 5.0,
        resolve_timeout_seconds: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.target = target
        self.deploy_timeout_seconds = deploy_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.resolve_timeout_seconds = resolve_timeout_seconds
        self._sleep = sleep

    def deploy(
        self,
        artifact: Artifact,
        credential: DeploymentCredential,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> DeploymentOutcome:
        """Deploy an artifact and wait for an explicit outcome.

        Raises:
            PermissionInsufficient: the credential lacks a required operation;
                nothing was applied
            DeploymentFailed: the target refused to plan or start the apply
        """
        started = time.monotonic()
        environment = self.target.environment

        changes = self.target.plan(artifact)
        try:
            check_credential(credential, artifact, changes)
        except PermissionInsufficient as e:
            logger.error(
                f"[{environment}] refusing to deploy {artifact.path}@"
                f"{artifact.source.commit_sha[:12]}: {e.message}"
            )
            raise

        if cancel_token.cancelled:
            return DeploymentOutcome(
                status=DeploymentStatus.CANCELLED,
                changes=changes,
                message="Cancelled before apply",
                duration_seconds=time.monotonic() - started,
            )

        handle = self.target.apply(artifact, changes, credential)
        logger.info(
            f"[{environment}] applying {len(changes)} changes via "
            f"{self.target.name} (handle {handle})"
        )

        deadline = started + self.deploy_timeout_seconds
        polls = 0
        while True:
            status = self._poll(handle)
            polls += 1
            if status.state.is_terminal:
                return self._finish(status, changes, polls, started)
            if cancel_token.cancelled:
                stop_reason = DeploymentStatus.CANCELLED
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                stop_reason = DeploymentStatus.TIMED_OUT
                break
            cancel_token.wait(min(self.poll_interval_seconds, remaining))

        logger.warning(
            f"[{environment}] deployment {handle} {stop_reason.value}; "
            f"requesting cancel and resolving final state"
        )
        self.target.cancel(handle)
        return self._resolve(handle, stop_reason, changes, polls, started)

    def _resolve(
        self,
        handle: str,
        stop_reason: DeploymentStatus,
        changes: List[ResourceChange],
        polls: int,
        started: float,
    ) -> DeploymentOutcome:
        resolve_deadline = time.monotonic() + self.resolve_timeout_seconds
        while True:
            status = self._poll(handle)
            polls += 1
            if status.state == ApplyState.CANCELLED:
                outcome = self._finish(status, changes, polls, started)
                outcome.status = stop_reason
                return outcome
            if status.state.is_terminal:
                # The apply settled on its own before the cancel took effect.
                return self._finish(status, changes, polls, started)
            if time.monotonic() >= resolve_deadline:
                logger.error(
                    f"[{self.target.environment}] deployment {handle} did not settle "
                    f"within {self.resolve_timeout_seconds:.0f}s after cancel; "
                    f"last state {status.state.value}"
                )
                return DeploymentOutcome(
                    status=stop_reason,
                    changes=changes,
                    message=(
                        f"Deployment {stop_reason.value}; final target state "
                        f"unresolved (last seen {status.state.value})"
                    ),
                    polls=polls,
                    duration_seconds=time.monotonic() - started,
                )
            self._sleep(self.poll_interval_seconds)

    def _poll(self, handle: str) -> ApplyStatus:
        try:
            return self.target.status(handle)
        except PipelineError as e:
            logger.warning(f"[{self.target.environment}] status poll failed: {e}")
            return ApplyStatus(ApplyState.UNKNOWN, message=e.message)

    def _finish(
        self,
        status: ApplyStatus,
        changes: List[ResourceChange],
        polls: int,
        started: float,
    ) -> DeploymentOutcome:
        outcome = DeploymentOutcome(
            status=_SETTLED.get(status.state, DeploymentStatus.FAILED),
            changes=changes,
            failed_operation=status.failed_operation,
            failed_resource=status.failed_resource,
            message=status.message,
            polls=polls,
            duration_seconds=time.monotonic() - started,
        )
        log = logger.info if outcome.succeeded else logger.error
        log(
            f"[{self.target.environment}] deployment {outcome.status.value}"
            + (f" at {outcome.failed_operation} ({outcome.failed_resource})"
               if outcome.failed_operation else "")
        )
        return outcome
