"""
Audit trail service.

Records who changed what for every pipeline execution.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session
from ulid import ULID

from .audit_models import ExecutionAuditModel


def generate_ulid() -> str:
    """Generate a ULID for audit entries."""
    return str(ULID())


class AuditService:
    """Service for the execution audit trail.

    Usage:
        audit = AuditService(db_session)
        audit.log_status_change(execution.id, "production", "testing", "deploying")

    Every ``log_*`` method commits unless ``commit=False``, in which case
    the entry joins the caller's transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def _write(
        self,
        action: str,
        execution_id: str,
        environment: str,
        actor_kind: str,
        actor_id: str,
        commit: bool,
        **fields: Any,
    ) -> ExecutionAuditModel:
        entry = ExecutionAuditModel(
            id=generate_ulid(),
            ts=datetime.now(timezone.utc),
            execution_id=execution_id,
            environment=environment,
            actor_kind=actor_kind,
            actor_id=actor_id,
            action=action,
            **fields,
        )
        self.db.add(entry)
        if commit:
            self.db.commit()
            self.db.refresh(entry)
        return entry

    def log_create(
        self,
        execution_id: str,
        environment: str,
        details: Dict[str, Any],
        actor_kind: str = "system",
        actor_id: str = "pipeline",
        note: Optional[str] = None,
        commit: bool = True,
    ) -> ExecutionAuditModel:
        """Log the creation of an execution.

        Args:
            execution_id: ID of the execution
            environment: Environment the execution deploys to
            details: Kind and source reference of the execution
            actor_kind: Type of actor ("human", "webhook", "system")
            actor_id: ID of the actor
            note: Optional human-readable note

        Returns:
            The created ExecutionAuditModel
        """
        return self._write(
            "created",
            execution_id,
            environment,
            actor_kind,
            actor_id,
            commit,
            to_state="pending",
            details=details,
            note=note,
        )

    def log_status_change(
        self,
        execution_id: str,
        environment: str,
        old_state: str,
        new_state: str,
        actor_kind: str = "system",
        actor_id: str = "pipeline",
        note: Optional[str] = None,
        commit: bool = True,
    ) -> ExecutionAuditModel:
        """Log a state transition of an execution."""
        return self._write(
            "status_changed",
            execution_id,
            environment,
            actor_kind,
            actor_id,
            commit,
            from_state=old_state,
            to_state=new_state,
            note=note,
        )

    def log_verdict(
        self,
        execution_id: str,
        environment: str,
        stage: str,
        status: str,
        commit: bool = True,
    ) -> ExecutionAuditModel:
        """Log a gate verdict recorded on an execution."""
        return self._write(
            "verdict_recorded",
            execution_id,
            environment,
            "system",
            "gate",
            commit,
            stage=stage,
            details={"status": status},
        )

    def log_cancel_requested(
        self,
        execution_id: str,
        environment: str,
        actor_kind: str = "human",
        actor_id: str = "unknown",
        note: Optional[str] = None,
    ) -> ExecutionAuditModel:
        """Log a request to cancel an execution."""
        return self._write(
            "cancel_requested", execution_id, environment, actor_kind, actor_id, True, note=note
        )

    def log_retrigger(
        self,
        execution_id: str,
        environment: str,
        new_execution_id: str,
        actor_kind: str = "human",
        actor_id: str = "unknown",
    ) -> ExecutionAuditModel:
        """Log a manual re-run of an execution."""
        return self._write(
            "retriggered",
            execution_id,
            environment,
            actor_kind,
            actor_id,
            True,
            details={"execution_id": new_execution_id},
            note=f"Retriggered as {new_execution_id}",
        )

    # Query methods

    def query_by_execution(
        self,
        execution_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ExecutionAuditModel]:
        """Get the audit history of one execution, oldest first."""
        return (
            self.db.query(ExecutionAuditModel)
            .filter(ExecutionAuditModel.execution_id == execution_id)
            .order_by(ExecutionAuditModel.ts, ExecutionAuditModel.id)
            .offset(offset)
            .limit(limit)
            .all()
        )

    def query_by_environment(
        self,
        environment: str,
        to_state: Optional[str] = None,
        limit: int = 100,
    ) -> List[ExecutionAuditModel]:
        """Get audit entries for one environment, newest first.

        ``to_state`` narrows the result to transitions into that state,
        e.g. every execution that entered ``deploying``.
        """
        query = self.db.query(ExecutionAuditModel).filter(
            ExecutionAuditModel.environment == environment
        )
        if to_state is not None:
            query = query.filter(
                ExecutionAuditModel.action == "status_changed",
                ExecutionAuditModel.to_state == to_state,
            )
        return (
            query.order_by(desc(ExecutionAuditModel.ts), desc(ExecutionAuditModel.id))
            .limit(limit)
            .all()
        )

    def query_by_action(
        self,
        action: str,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ExecutionAuditModel]:
        """Get audit entries for one action type, newest first."""
        return (
            self.db.query(ExecutionAuditModel)
            .filter(ExecutionAuditModel.action == action)
            .order_by(desc(ExecutionAuditModel.ts))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def query_recent(self, limit: int = 50) -> List[ExecutionAuditModel]:
        """Get most recent audit entries."""
        return (
            self.db.query(ExecutionAuditModel)
            .order_by(desc(ExecutionAuditModel.ts))
            .limit(limit)
            .all()
        )
