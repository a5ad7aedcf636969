"""
Core orchestration engine for the IaC pipeline service.

The orchestrator owns the worker pool that runs executions. It creates an
execution for each accepted trigger, hands it to the state machine on a
worker thread and keeps the cancellation token for every execution still in
flight.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from ..config import Settings
from ..deploy import DeploymentExecutor, DeploymentTarget, get_target
from ..pipeline.locks import ConflictPolicy, EnvironmentLocks
from ..pipeline.state_machine import DeployStage, ExecutionRecorder, PipelineStateMachine
from ..pipeline_config import PipelineConfig
from ..reporting import GitHubStatusReporter, NullStatusReporter, StatusReporter
from ..sourcing import ArtifactSource, GitArtifactSource
from .cancellation import CancellationToken
from .models import ExecutionKind, PipelineExecution, TriggerEvent

logger = structlog.get_logger()


class PipelineOrchestrator:
    """
    Runs pipeline executions concurrently.

    The Orchestrator manages:
    - the bounded worker pool executions run on
    - cancellation tokens for in-flight executions
    - manual re-runs of earlier executions
    """

    def __init__(
        self,
        state_machine: PipelineStateMachine,
        max_concurrent_executions: int = 4,
    ):
        self.state_machine = state_machine
        self.max_concurrent_executions = max_concurrent_executions
        self.is_running = False
        self.started_at: Optional[datetime] = None
        self.completed_count = 0
        self._pool: Optional[ThreadPoolExecutor] = None
        self._futures: Dict[str, Future] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._executions: Dict[str, PipelineExecution] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        settings: Settings,
        recorder: Optional[ExecutionRecorder] = None,
        source: Optional[ArtifactSource] = None,
        target: Optional[DeploymentTarget] = None,
        reporter: Optional[StatusReporter] = None,
    ) -> "PipelineOrchestrator":
        """Wire a pipeline definition into a ready-to-start orchestrator."""
        env = config.environment
        target = target or get_target(
            env.target.kind,
            env.name,
            stack_name=env.target.stack_name,
            region=env.target.region,
            profile=env.target.profile,
        )
        if reporter is None:
            reporter = (
                GitHubStatusReporter(
                    settings.status_api_url,
                    settings.status_api_token,
                    context=settings.status_context,
                )
                if settings.status_api_token
                else NullStatusReporter()
            )

        state_machine = PipelineStateMachine(
            source=source or GitArtifactSource(settings.git_mirror_root),
            template_path=config.template,
            validators=config.validator_specs(),
            deploy=DeployStage(
                environment=env.name,
                executor=DeploymentExecutor(
                    target,
                    deploy_timeout_seconds=env.deploy_timeout_seconds,
                    poll_interval_seconds=env.poll_interval_seconds,
                    resolve_timeout_seconds=env.resolve_timeout_seconds,
                ),
                credential=config.deployment_credential(),
                conflict_policy=ConflictPolicy(env.conflict_policy),
                queue_timeout_seconds=env.queue_timeout_seconds,
            ),
            locks=EnvironmentLocks(),
            recorder=recorder,
            reporter=reporter,
        )
        return cls(state_machine, settings.max_concurrent_executions)

    def start(self) -> None:
        """Start the worker pool."""
        with self._lock:
            if self.is_running:
                return
            self._pool = ThreadPoolExecutor(
                max_workers=self.max_concurrent_executions,
                thread_name_prefix="execution",
            )
            self.is_running = True
            self.started_at = datetime.now(timezone.utc)
        logger.info("orchestrator_started", workers=self.max_concurrent_executions)

    def stop(self, cancel_running: bool = True, wait_for_completion: bool = True) -> None:
        """Stop accepting executions, optionally cancelling those in flight."""
        with self._lock:
            if not self.is_running:
                return
            self.is_running = False
            pool, self._pool = self._pool, None
            tokens = list(self._tokens.values())
        if cancel_running:
            for token in tokens:
                token.cancel("orchestrator shutting down")
        if pool is not None:
            pool.shutdown(wait=wait_for_completion)
        logger.info("orchestrator_stopped", cancelled=len(tokens) if cancel_running else 0)

    def submit(
        self,
        trigger: TriggerEvent,
        kind: ExecutionKind,
        retrigger_of: Optional[str] = None,
    ) -> PipelineExecution:
        """Create an execution for a trigger and queue it to run.

        The pending execution is recorded before this returns.

        Raises:
            RuntimeError: if the orchestrator is not running
        """
        execution = PipelineExecution(
            trigger=trigger,
            kind=kind,
            environment=self.state_machine.environment,
            retrigger_of=retrigger_of,
        )
        token = CancellationToken()
        with self._lock:
            if not self.is_running or self._pool is None:
                raise RuntimeError("Orchestrator is not running")
            self.state_machine.recorder.record(execution)
            self._executions[execution.id] = execution
            self._tokens[execution.id] = token
            self._futures[execution.id] = self._pool.submit(self._run, execution, token)

        logger.info(
            "execution_submitted",
            execution_id=execution.id,
            kind=kind.value,
            commit_sha=trigger.source.commit_sha,
            retrigger_of=retrigger_of,
        )
        return execution

    def retrigger(self, trigger: TriggerEvent, kind: ExecutionKind, original_id: str) -> PipelineExecution:
        """Re-run an earlier execution on the identical commit."""
        return self.submit(trigger, kind, retrigger_of=original_id)

    def cancel(self, execution_id: str, reason: str = "cancelled by request") -> bool:
        """Request cancellation of an in-flight execution.

        Returns:
            False if the execution is not in flight (unknown or finished)
        """
        with self._lock:
            token = self._tokens.get(execution_id)
            future = self._futures.get(execution_id)
            execution = self._executions.get(execution_id)
        if token is None or future is None or execution is None:
            return False

        token.cancel(reason)
        if future.cancel():
            # Never started: finish it here since no worker will.
            self.state_machine.cancel_pending(execution, reason)
            self._forget(execution_id)
        logger.info("execution_cancel_requested", execution_id=execution_id, reason=reason)
        return True

    def is_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._futures

    def get_execution(self, execution_id: str) -> Optional[PipelineExecution]:
        """In-flight execution by id, if any."""
        with self._lock:
            return self._executions.get(execution_id)

    def wait_all(self, timeout: Optional[float] = None) -> bool:
        """Block until every in-flight execution finishes.

        Returns:
            True if nothing is left running
        """
        with self._lock:
            futures = list(self._futures.values())
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def get_status(self) -> Dict[str, Any]:
        """Get the current status of the orchestrator."""
        with self._lock:
            active = {
                execution_id: execution.state.value
                for execution_id, execution in self._executions.items()
            }
        return {
            "is_running": self.is_running,
            "environment": self.state_machine.environment,
            "max_concurrent_executions": self.max_concurrent_executions,
            "active_executions": active,
            "deploy_locks": self.state_machine.locks.held(),
            "completed_executions": self.completed_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def _run(self, execution: PipelineExecution, token: CancellationToken) -> None:
        try:
            self.state_machine.run(execution, token)
        except Exception as e:
            logger.exception("execution_worker_failed", execution_id=execution.id, error=str(e))
        finally:
            self._forget(execution.id)
            with self._lock:
                self.completed_count += 1

    def _forget(self, execution_id: str) -> None:
        with self._lock:
            self._futures.pop(execution_id, None)
            self._tokens.pop(execution_id, None)
            self._executions.pop(execution_id, None)
