"""
Pipeline state machine.

Drives one PipelineExecution through its stages::

    pending -> sourcing -> testing -> deploying -> succeeded
                   |          |           |
                   v          v           v
                 failed     failed      failed

Pre-merge executions end at ``testing -> succeeded | failed`` and never
reach the deployment executor. A full run enters ``deploying`` only once it
holds its environment's deploy lock, so at most one execution per
environment is ever in that state. Any non-terminal state may move to
``cancelled``. Only this module changes an execution's state.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence

import structlog

from ..core.cancellation import NEVER_CANCELLED, CancellationToken
from ..core.errors import (
    DeploymentFailed,
    ExecutionCancelled,
    InvalidTransition,
    PipelineError,
    StageTimeout,
    ValidationFailure,
)
from ..core.models import (
    DeploymentCredential,
    ExecutionKind,
    ExecutionOutcome,
    ExecutionState,
    PipelineExecution,
    StateTransition,
    ValidatorSpec,
    utcnow,
)
from ..deploy.executor import DeploymentExecutor, DeploymentOutcome, DeploymentStatus
from ..gate.aggregator import TEST_STAGE, GateAggregator, summarize
from ..reporting import NullStatusReporter, StatusReporter
from ..sourcing import ArtifactSource
from .locks import ConflictPolicy, EnvironmentLocks

logger = structlog.get_logger()

S = ExecutionState

TRANSITIONS: Dict[ExecutionState, FrozenSet[ExecutionState]] = {
    S.PENDING: frozenset({S.SOURCING, S.CANCELLED}),
    S.SOURCING: frozenset({S.TESTING, S.FAILED, S.CANCELLED}),
    S.TESTING: frozenset({S.DEPLOYING, S.SUCCEEDED, S.FAILED, S.CANCELLED}),
    S.DEPLOYING: frozenset({S.SUCCEEDED, S.FAILED, S.CANCELLED}),
}

_OUTCOMES = {
    S.SUCCEEDED: ExecutionOutcome.SUCCEEDED,
    S.FAILED: ExecutionOutcome.FAILED,
    S.CANCELLED: ExecutionOutcome.CANCELLED,
}


class ExecutionRecorder(ABC):
    """Persists execution snapshots as the state machine advances them."""

    @abstractmethod
    def record(
        self, execution: PipelineExecution, transition: Optional[StateTransition] = None
    ) -> None:
        """Save the execution; ``transition`` is set when its state changed."""
        pass


class InMemoryRecorder(ExecutionRecorder):
    """Keeps the latest snapshot of each execution in memory."""

    def __init__(self) -> None:
        self.snapshots: Dict[str, dict] = {}
        self.transitions: Dict[str, List[StateTransition]] = {}
        self._lock = threading.Lock()

    def record(
        self, execution: PipelineExecution, transition: Optional[StateTransition] = None
    ) -> None:
        with self._lock:
            self.snapshots[execution.id] = execution.to_dict()
            if transition is not None:
                self.transitions.setdefault(execution.id, []).append(transition)


@dataclass
class DeployStage:
    """Everything the deploy stage needs for one environment."""

    environment: str
    executor: DeploymentExecutor
    credential: DeploymentCredential
    conflict_policy: ConflictPolicy = ConflictPolicy.QUEUE
    queue_timeout_seconds: Optional[float] = None


def transition(
    execution: PipelineExecution, to_state: ExecutionState, note: Optional[str] = None
) -> StateTransition:
    """Move an execution to a new state.

    Entering a terminal state sets the outcome and finish time; sealing is
    left to the caller so the final snapshot can be recorded first.

    Raises:
        InvalidTransition: if the table or a stage guard forbids the move
        ExecutionImmutable: if the execution is already sealed
    """
    from_state = execution.state
    if to_state not in TRANSITIONS.get(from_state, frozenset()):
        raise InvalidTransition(
            f"Execution {execution.id}: {from_state.value} -> {to_state.value} not allowed"
        )

    if from_state == S.TESTING and to_state in (S.DEPLOYING, S.SUCCEEDED):
        verdict = execution.verdicts.get(TEST_STAGE)
        if verdict is None or not verdict.passed:
            raise InvalidTransition(
                f"Execution {execution.id}: {to_state.value} requires a passing "
                f"'{TEST_STAGE}' verdict"
            )
        expected = S.DEPLOYING if execution.kind == ExecutionKind.FULL else S.SUCCEEDED
        if to_state != expected:
            raise InvalidTransition(
                f"Execution {execution.id}: {execution.kind.value} runs go "
                f"testing -> {expected.value}"
            )

    now = utcnow()
    record = StateTransition(from_state=from_state, to_state=to_state, at=now, note=note)
    execution.state = to_state
    execution.updated_at = now
    execution.history.append(record)
    if to_state.is_terminal:
        execution.outcome = _OUTCOMES[to_state]
        execution.finished_at = now
    return record


class PipelineStateMachine:
    """Runs executions for one pipeline definition.

    Args:
        source: Where artifacts are fetched from
        template_path: Template location within the repository
        validators: Ordered validator specs for the test gate
        deploy: Deploy stage settings for the pipeline's environment
        gate: Aggregator used to evaluate validators
        locks: Deployment locks shared by every execution in the process
        recorder: Persists execution snapshots and transitions
        reporter: Publishes commit statuses
    """

    def __init__(
        self,
        source: ArtifactSource,
        template_path: str,
        validators: Sequence[ValidatorSpec],
        deploy: DeployStage,
        gate: Optional[GateAggregator] = None,
        locks: Optional[EnvironmentLocks] = None,
        recorder: Optional[ExecutionRecorder] = None,
        reporter: Optional[StatusReporter] = None,
    ):
        self.source = source
        self.template_path = template_path
        self.validators = list(validators)
        self.deploy = deploy
        self.gate = gate or GateAggregator()
        self.locks = locks or EnvironmentLocks()
        self.recorder = recorder or InMemoryRecorder()
        self.reporter = reporter or NullStatusReporter()

    @property
    def environment(self) -> str:
        return self.deploy.environment

    def run(
        self,
        execution: PipelineExecution,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> PipelineExecution:
        """Drive an execution from ``pending`` to a terminal state."""
        log = logger.bind(
            execution_id=execution.id,
            environment=execution.environment,
            kind=execution.kind.value,
        )
        log.info(
            "execution_start",
            repository=execution.trigger.source.repository,
            commit_sha=execution.trigger.source.commit_sha,
        )
        self.recorder.record(execution)
        self.reporter.started(execution)

        try:
            self._run_stages(execution, cancel_token, log)
        except ExecutionCancelled as e:
            if not execution.is_terminal:
                self._finish(execution, S.CANCELLED, note=e.message)
        except PipelineError as e:
            self._fail(execution, e)
        except Exception as e:
            log.exception("execution_crashed", error=str(e))
            self._fail(execution, PipelineError(f"Unexpected error: {e}"))

        log.info(
            "execution_finished",
            outcome=execution.outcome.value if execution.outcome else None,
            error_code=execution.error_code,
        )
        self.reporter.finished(execution, self._describe(execution))
        return execution

    def cancel_pending(self, execution: PipelineExecution, reason: str = "cancelled") -> None:
        """Cancel an execution that never started running."""
        if execution.state == S.PENDING:
            self._finish(execution, S.CANCELLED, note=reason)
            self.reporter.finished(execution, self._describe(execution))

    def _run_stages(
        self,
        execution: PipelineExecution,
        cancel_token: CancellationToken,
        log: structlog.BoundLogger,
    ) -> None:
        self._advance(execution, S.SOURCING, cancel_token)
        execution.artifact = self.source.fetch(
            execution.trigger.source, self.template_path, cancel_token
        )
        log.info(
            "artifact_fetched",
            path=execution.artifact.path,
            content_hash=execution.artifact.content_hash,
        )

        self._advance(execution, S.TESTING, cancel_token)
        verdict = self.gate.evaluate(
            execution.artifact, self.validators, TEST_STAGE, cancel_token
        )
        execution.record_verdict(verdict)
        self.recorder.record(execution)
        log.info("gate_verdict", stage=TEST_STAGE, status=verdict.status.value)

        if cancel_token.cancelled:
            raise ExecutionCancelled(cancel_token.reason or "Cancelled during testing")
        if not verdict.passed:
            raise ValidationFailure(summarize(verdict))

        if execution.kind == ExecutionKind.PRE_MERGE:
            self._finish(execution, S.SUCCEEDED, note="pre-merge checks passed")
            return

        # A conflict or queue timeout fails the execution from ``testing``;
        # only the lock holder is ever in ``deploying``.
        with self.locks.hold(
            self.deploy.environment,
            execution.id,
            policy=self.deploy.conflict_policy,
            timeout=self.deploy.queue_timeout_seconds,
            cancel_token=cancel_token,
        ):
            log.info("deploy_lock_acquired")
            self._advance(execution, S.DEPLOYING, cancel_token)
            outcome = self.deploy.executor.deploy(
                execution.artifact, self.deploy.credential, cancel_token
            )
        execution.deployment = outcome.to_dict()
        self._settle_deployment(execution, outcome)

    def _settle_deployment(
        self, execution: PipelineExecution, outcome: DeploymentOutcome
    ) -> None:
        if outcome.status == DeploymentStatus.SUCCEEDED:
            self._finish(execution, S.SUCCEEDED, note=f"{len(outcome.changes)} changes applied")
        elif outcome.status == DeploymentStatus.CANCELLED:
            raise ExecutionCancelled(outcome.message or "Deployment cancelled")
        elif outcome.status == DeploymentStatus.TIMED_OUT:
            raise StageTimeout(outcome.message or "Deployment timed out")
        else:
            where = (
                f" at {outcome.failed_operation} ({outcome.failed_resource})"
                if outcome.failed_operation
                else ""
            )
            raise DeploymentFailed(f"Deployment failed{where}: {outcome.message or 'unknown error'}")

    def _advance(
        self,
        execution: PipelineExecution,
        to_state: ExecutionState,
        cancel_token: CancellationToken,
    ) -> None:
        if cancel_token.cancelled:
            raise ExecutionCancelled(cancel_token.reason or "cancelled")
        self.recorder.record(execution, transition(execution, to_state))

    def _fail(self, execution: PipelineExecution, error: PipelineError) -> None:
        if execution.is_terminal:
            return
        execution.error_code = error.code
        execution.error_message = error.message
        logger.error(
            "execution_failed",
            execution_id=execution.id,
            error_code=error.code,
            error=error.message,
        )
        self._finish(execution, S.FAILED, note=error.code)

    def _finish(
        self, execution: PipelineExecution, to_state: ExecutionState, note: Optional[str] = None
    ) -> None:
        record = transition(execution, to_state, note)
        if to_state == S.CANCELLED:
            execution.error_code = ExecutionCancelled.code
            execution.error_message = note
        try:
            self.recorder.record(execution, record)
        finally:
            execution.seal()

    @staticmethod
    def _describe(execution: PipelineExecution) -> str:
        verdict = execution.verdicts.get(TEST_STAGE)
        if execution.outcome == ExecutionOutcome.SUCCEEDED:
            if execution.kind == ExecutionKind.FULL:
                return f"Deployed to {execution.environment}"
            return summarize(verdict) if verdict else "Checks passed"
        if execution.error_code == ValidationFailure.code and verdict is not None:
            return summarize(verdict)
        return execution.error_message or (execution.outcome.value if execution.outcome else "")
