"""
SQLAlchemy models for the IaC pipeline service.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..core.models import SourceRef, TriggerEvent
from .base import Base

execution_state_enum = Enum(
    "pending",
    "sourcing",
    "testing",
    "deploying",
    "succeeded",
    "failed",
    "cancelled",
    name="execution_state",
)

execution_outcome_enum = Enum(
    "succeeded",
    "failed",
    "cancelled",
    name="execution_outcome",
)


class PipelineExecutionModel(Base):
    """One pipeline run for one trigger event."""

    __tablename__ = "pipeline_executions"

    id = Column(String(36), primary_key=True)
    kind = Column(Enum("full", "pre_merge", name="execution_kind"), nullable=False)
    environment = Column(String(128), nullable=False, index=True)
    state = Column(execution_state_enum, nullable=False, default="pending", index=True)
    outcome = Column(execution_outcome_enum, nullable=True, index=True)

    # Source reference
    repository = Column(String(256), nullable=False)
    branch = Column(String(256), nullable=False)
    commit_sha = Column(String(64), nullable=False)
    pull_request = Column(Integer, nullable=True)

    # Trigger
    event_type = Column(String(50), nullable=False)
    event_action = Column(String(50), nullable=True)
    delivery_id = Column(String(128), nullable=True, index=True)
    sender = Column(String(128), nullable=True)

    # Artifact (once fetched)
    artifact_path = Column(String(512), nullable=True)
    artifact_hash = Column(String(64), nullable=True)

    deployment = Column(JSON, nullable=True)
    history = Column(JSON, nullable=False, default=list)

    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)

    retrigger_of = Column(String(36), ForeignKey("pipeline_executions.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    finished_at = Column(DateTime(timezone=True), nullable=True)

    verdicts = relationship(
        "GateVerdictModel",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="GateVerdictModel.id",
    )

    __table_args__ = (
        Index("ix_pipeline_executions_source", "repository", "branch", "commit_sha"),
        Index("ix_pipeline_executions_commit", "commit_sha"),
        Index("ix_pipeline_executions_created_at", "created_at"),
    )

    def trigger_event(self) -> TriggerEvent:
        """Rebuild the trigger that started this execution."""
        return TriggerEvent(
            event_type=self.event_type,
            action=self.event_action,
            delivery_id=self.delivery_id,
            sender=self.sender,
            source=SourceRef(
                repository=self.repository,
                branch=self.branch,
                commit_sha=self.commit_sha,
                pull_request=self.pull_request,
            ),
        )

    def to_dict(self, include_results: bool = True) -> Dict[str, Any]:
        """Convert model to dictionary."""
        data = {
            "id": self.id,
            "kind": self.kind,
            "environment": self.environment,
            "state": self.state,
            "outcome": self.outcome,
            "trigger": self.trigger_event().to_dict(),
            "artifact": (
                {"path": self.artifact_path, "content_hash": self.artifact_hash}
                if self.artifact_hash
                else None
            ),
            "deployment": self.deployment,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "retrigger_of": self.retrigger_of,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
        if include_results:
            data["verdicts"] = {v.stage: v.to_dict() for v in self.verdicts}
            data["history"] = self.history or []
        return data


class GateVerdictModel(Base):
    """Aggregated verdict of one gate stage."""

    __tablename__ = "gate_verdicts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(
        String(36), ForeignKey("pipeline_executions.id"), nullable=False, index=True
    )
    stage = Column(String(64), nullable=False)
    status = Column(Enum("pass", "fail", name="gate_status"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    execution = relationship("PipelineExecutionModel", back_populates="verdicts")
    results = relationship(
        "ValidationResultModel",
        back_populates="verdict",
        cascade="all, delete-orphan",
        order_by="ValidationResultModel.position",
    )

    __table_args__ = (UniqueConstraint("execution_id", "stage", name="uq_gate_verdict_stage"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status,
            "results": [r.to_dict() for r in self.results],
        }


class ValidationResultModel(Base):
    """Result of one validator within a gate verdict."""

    __tablename__ = "validation_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    verdict_id = Column(Integer, ForeignKey("gate_verdicts.id"), nullable=False, index=True)
    # Configured order of the validator within its stage
    position = Column(Integer, nullable=False)
    validator = Column(String(128), nullable=False, index=True)
    policy = Column(Enum("blocking", "advisory", name="validator_policy"), nullable=False)
    status = Column(
        Enum("pass", "fail", "error", "timeout", name="validation_status"), nullable=False
    )
    findings = Column(JSON, nullable=False, default=list)
    raw_output = Column(Text, nullable=True)
    duration_seconds = Column(Float, nullable=False, default=0.0)
    attempts = Column(Integer, nullable=False, default=1)

    verdict = relationship("GateVerdictModel", back_populates="results")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "validator": self.validator,
            "policy": self.policy,
            "status": self.status,
            "findings": self.findings or [],
            "raw_output": self.raw_output,
            "duration_seconds": self.duration_seconds,
            "attempts": self.attempts,
        }
