"""
Execution audit trail.

One row per event in a pipeline execution's life: its creation, each state
transition, each gate verdict, cancel requests and manual re-runs. Rows
carry the execution's environment, so the deployment history of an
environment reads straight off this table.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.sql import func

from .base import Base

audit_actor_kind_enum = Enum(
    "human",
    "webhook",
    "system",
    name="audit_actor_kind",
)

audit_action_enum = Enum(
    "created",
    "status_changed",
    "verdict_recorded",
    "cancel_requested",
    "retriggered",
    name="audit_action",
)


class ExecutionAuditModel(Base):
    """Audit entry for one pipeline execution.

    ``from_state``/``to_state`` are set for ``status_changed`` entries and
    ``stage`` for ``verdict_recorded`` ones. Entries are append-only.
    """

    __tablename__ = "execution_audit"

    # ULID, so ties on ts still sort by creation
    id = Column(String(36), primary_key=True)

    ts = Column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
    )

    execution_id = Column(
        String(36), ForeignKey("pipeline_executions.id"), nullable=False, index=True
    )
    environment = Column(String(128), nullable=False)

    actor_kind = Column(audit_actor_kind_enum, nullable=False)
    actor_id = Column(String(128), nullable=False)

    action = Column(audit_action_enum, nullable=False, index=True)

    from_state = Column(String(32), nullable=True)
    to_state = Column(String(32), nullable=True, index=True)
    stage = Column(String(32), nullable=True)

    details = Column(JSON, nullable=True)
    note = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_execution_audit_execution_ts", "execution_id", "ts"),
        Index("ix_execution_audit_environment_ts", "environment", "ts"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "ts": self.ts.isoformat() if self.ts else None,
            "execution_id": self.execution_id,
            "environment": self.environment,
            "actor_kind": self.actor_kind,
            "actor_id": self.actor_id,
            "action": self.action,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "stage": self.stage,
            "details": self.details,
            "note": self.note,
        }
