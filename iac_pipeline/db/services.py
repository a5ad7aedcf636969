"""
Database services for the IaC pipeline service.
"""

import threading
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from ..core.errors import ExecutionImmutable
from ..core.models import (
    TERMINAL_STATES,
    PipelineExecution,
    SourceRef,
    StateTransition,
)
from ..pipeline.state_machine import ExecutionRecorder
from .audit_service import AuditService
from .models import GateVerdictModel, PipelineExecutionModel, ValidationResultModel

_TERMINAL = frozenset(state.value for state in TERMINAL_STATES)


def _history(execution: PipelineExecution) -> List[Dict[str, Any]]:
    return [
        {
            "from": t.from_state.value,
            "to": t.to_state.value,
            "at": t.at.isoformat(),
            "note": t.note,
        }
        for t in execution.history
    ]


class ExecutionService:
    """Service for managing pipeline executions in the database."""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)

    def create_execution(
        self,
        execution: PipelineExecution,
        actor_kind: str = "webhook",
        actor_id: str = "scm",
    ) -> PipelineExecutionModel:
        """Persist a new execution and log its creation."""
        source = execution.trigger.source
        db_execution = PipelineExecutionModel(
            id=execution.id,
            kind=execution.kind.value,
            environment=execution.environment,
            repository=source.repository,
            branch=source.branch,
            commit_sha=source.commit_sha,
            pull_request=source.pull_request,
            event_type=execution.trigger.event_type,
            event_action=execution.trigger.action,
            delivery_id=execution.trigger.delivery_id,
            sender=execution.trigger.sender,
            retrigger_of=execution.retrigger_of,
            created_at=execution.created_at,
        )
        self._apply(db_execution, execution)

        self.db.add(db_execution)
        self.audit.log_create(
            execution.id,
            execution.environment,
            {"kind": execution.kind.value, "source": source.to_dict()},
            actor_kind=actor_kind,
            actor_id=actor_id,
            commit=False,
        )
        self.db.commit()
        self.db.refresh(db_execution)
        return db_execution

    def save_execution(
        self,
        execution: PipelineExecution,
        transition: Optional[StateTransition] = None,
    ) -> PipelineExecutionModel:
        """Write the execution's current snapshot.

        New gate verdicts are appended; a transition is logged to the audit
        trail. A stored execution that is already terminal is never written.

        Raises:
            ExecutionImmutable: if the stored execution is terminal
        """
        db_execution = self.get_execution(execution.id)
        if db_execution is None:
            db_execution = self.create_execution(execution, actor_kind="system", actor_id="pipeline")
        elif db_execution.state in _TERMINAL:
            raise ExecutionImmutable(
                f"Execution {execution.id} is {db_execution.state}; record is immutable"
            )

        self._apply(db_execution, execution)

        stored_stages = {v.stage for v in db_execution.verdicts}
        for stage, verdict in execution.verdicts.items():
            if stage in stored_stages:
                continue
            db_verdict = GateVerdictModel(stage=stage, status=verdict.status.value)
            for position, result in enumerate(verdict.results):
                db_verdict.results.append(
                    ValidationResultModel(
                        position=position,
                        validator=result.validator,
                        policy=result.policy.value,
                        status=result.status.value,
                        findings=[f.to_dict() for f in result.findings],
                        raw_output=result.raw_output,
                        duration_seconds=result.duration_seconds,
                        attempts=result.attempts,
                    )
                )
            db_execution.verdicts.append(db_verdict)
            self.audit.log_verdict(
                execution.id, execution.environment, stage, verdict.status.value, commit=False
            )

        if transition is not None:
            self.audit.log_status_change(
                execution.id,
                execution.environment,
                transition.from_state.value,
                transition.to_state.value,
                note=transition.note,
                commit=False,
            )

        self.db.commit()
        self.db.refresh(db_execution)
        return db_execution

    def get_execution(self, execution_id: str) -> Optional[PipelineExecutionModel]:
        """Get an execution by ID."""
        return (
            self.db.query(PipelineExecutionModel)
            .filter(PipelineExecutionModel.id == execution_id)
            .first()
        )

    def list_executions(
        self,
        repository: Optional[str] = None,
        branch: Optional[str] = None,
        commit_sha: Optional[str] = None,
        outcome: Optional[str] = None,
        state: Optional[str] = None,
        environment: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[PipelineExecutionModel]:
        """List executions with optional filtering, newest first."""
        query = self.db.query(PipelineExecutionModel)

        if repository:
            query = query.filter(PipelineExecutionModel.repository == repository)
        if branch:
            query = query.filter(PipelineExecutionModel.branch == branch)
        if commit_sha:
            query = query.filter(PipelineExecutionModel.commit_sha == commit_sha)
        if outcome:
            query = query.filter(PipelineExecutionModel.outcome == outcome)
        if state:
            query = query.filter(PipelineExecutionModel.state == state)
        if environment:
            query = query.filter(PipelineExecutionModel.environment == environment)

        return (
            query.order_by(desc(PipelineExecutionModel.created_at))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def find_by_source(self, source: SourceRef) -> List[PipelineExecutionModel]:
        """All executions for an exact source reference, newest first."""
        return self.list_executions(
            repository=source.repository,
            branch=source.branch,
            commit_sha=source.commit_sha,
            limit=1000,
        )

    def get_history(self, execution_id: str) -> List[Dict[str, Any]]:
        """Audit trail for an execution, oldest first."""
        return [entry.to_dict() for entry in self.audit.query_by_execution(execution_id)]

    @staticmethod
    def _apply(db_execution: PipelineExecutionModel, execution: PipelineExecution) -> None:
        db_execution.state = execution.state.value
        db_execution.outcome = execution.outcome.value if execution.outcome else None
        db_execution.error_code = execution.error_code
        db_execution.error_message = execution.error_message
        db_execution.deployment = execution.to_dict()["deployment"]
        db_execution.history = _history(execution)
        db_execution.updated_at = execution.updated_at
        db_execution.finished_at = execution.finished_at
        if execution.artifact is not None:
            db_execution.artifact_path = execution.artifact.path
            db_execution.artifact_hash = execution.artifact.content_hash


class SqlExecutionRecorder(ExecutionRecorder):
    """Records state machine progress through ExecutionService.

    Each record uses its own session; a lock serializes writes coming from
    concurrent execution threads.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._lock = threading.Lock()

    def record(
        self, execution: PipelineExecution, transition: Optional[StateTransition] = None
    ) -> None:
        with self._lock:
            db = self.session_factory()
            try:
                ExecutionService(db).save_execution(execution, transition)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
