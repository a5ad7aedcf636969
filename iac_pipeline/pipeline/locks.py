"""Per-environment deployment locks."""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Dict, Iterator, Optional

from ..core.cancellation import NEVER_CANCELLED, CancellationToken
from ..core.errors import ConcurrentDeploymentConflict, ExecutionCancelled

logger = logging.getLogger(__name__)

# How often a queued waiter re-checks its cancellation token.
_WAIT_SLICE_SECONDS = 0.1


class ConflictPolicy(str, Enum):
    """What a deploy does when its environment is already being deployed."""

    QUEUE = "queue"
    REJECT = "reject"


class EnvironmentLocks:
    """At most one deployment per environment at a time.

    Locks are only taken around the deploy stage; testing runs freely in
    parallel. Locks are not re-entrant.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._holders: Dict[str, str] = {}

    @contextmanager
    def hold(
        self,
        environment: str,
        execution_id: str,
        policy: ConflictPolicy = ConflictPolicy.QUEUE,
        timeout: Optional[float] = None,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> Iterator[None]:
        """Hold the environment's lock for the duration of the block.

        The lock is released however the block exits.

        Raises:
            ConcurrentDeploymentConflict: rejected, or queued past ``timeout``
            ExecutionCancelled: cancelled while queued
        """
        self._acquire(environment, execution_id, policy, timeout, cancel_token)
        try:
            yield
        finally:
            self._release(environment, execution_id)

    def holder(self, environment: str) -> Optional[str]:
        with self._cond:
            return self._holders.get(environment)

    def held(self) -> Dict[str, str]:
        """Snapshot of ``{environment: execution_id}`` for held locks."""
        with self._cond:
            return dict(self._holders)

    def _acquire(
        self,
        environment: str,
        execution_id: str,
        policy: ConflictPolicy,
        timeout: Optional[float],
        cancel_token: CancellationToken,
    ) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while environment in self._holders:
                holder = self._holders[environment]
                if policy == ConflictPolicy.REJECT:
                    logger.warning(
                        f"Rejecting deploy of {execution_id} to {environment}: "
                        f"held by {holder}"
                    )
                    raise ConcurrentDeploymentConflict(environment, holder)
                if cancel_token.cancelled:
                    raise ExecutionCancelled(
                        f"Cancelled while waiting for environment '{environment}'"
                    )
                wait_for = _WAIT_SLICE_SECONDS
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.warning(
                            f"Deploy of {execution_id} to {environment} timed out "
                            f"in queue behind {holder}"
                        )
                        raise ConcurrentDeploymentConflict(environment, holder)
                    wait_for = min(wait_for, remaining)
                self._cond.wait(wait_for)
            self._holders[environment] = execution_id
        logger.debug(f"Lock on {environment} acquired by {execution_id}")

    def _release(self, environment: str, execution_id: str) -> None:
        with self._cond:
            if self._holders.get(environment) == execution_id:
                del self._holders[environment]
                self._cond.notify_all()
        logger.debug(f"Lock on {environment} released by {execution_id}")
