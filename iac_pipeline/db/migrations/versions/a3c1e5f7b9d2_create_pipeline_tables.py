"""Create pipeline execution, verdict, result and audit tables

Revision ID: a3c1e5f7b9d2
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "a3c1e5f7b9d2"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "pipeline_executions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "kind",
            sa.Enum("full", "pre_merge", name="execution_kind", create_constraint=True),
            nullable=False,
        ),
        sa.Column("environment", sa.String(length=128), nullable=False),
        sa.Column(
            "state",
            sa.Enum(
                "pending", "sourcing", "testing", "deploying",
                "succeeded", "failed", "cancelled",
                name="execution_state",
                create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column(
            "outcome",
            sa.Enum(
                "succeeded", "failed", "cancelled",
                name="execution_outcome",
                create_constraint=True,
            ),
            nullable=True,
        ),
        # Source reference
        sa.Column("repository", sa.String(length=256), nullable=False),
        sa.Column("branch", sa.String(length=256), nullable=False),
        sa.Column("commit_sha", sa.String(length=64), nullable=False),
        sa.Column("pull_request", sa.Integer, nullable=True),
        # Trigger
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("event_action", sa.String(length=50), nullable=True),
        sa.Column("delivery_id", sa.String(length=128), nullable=True),
        sa.Column("sender", sa.String(length=128), nullable=True),
        # Artifact
        sa.Column("artifact_path", sa.String(length=512), nullable=True),
        sa.Column("artifact_hash", sa.String(length=64), nullable=True),
        sa.Column("deployment", sa.JSON, nullable=True),
        sa.Column("history", sa.JSON, nullable=False),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column(
            "retrigger_of",
            sa.String(length=36),
            sa.ForeignKey("pipeline_executions.id"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pipeline_executions_environment", "pipeline_executions", ["environment"])
    op.create_index("ix_pipeline_executions_state", "pipeline_executions", ["state"])
    op.create_index("ix_pipeline_executions_outcome", "pipeline_executions", ["outcome"])
    op.create_index("ix_pipeline_executions_delivery_id", "pipeline_executions", ["delivery_id"])
    op.create_index(
        "ix_pipeline_executions_source",
        "pipeline_executions",
        ["repository", "branch", "commit_sha"],
    )
    op.create_index("ix_pipeline_executions_commit", "pipeline_executions", ["commit_sha"])
    op.create_index("ix_pipeline_executions_created_at", "pipeline_executions", ["created_at"])

    op.create_table(
        "gate_verdicts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "execution_id",
            sa.String(length=36),
            sa.ForeignKey("pipeline_executions.id"),
            nullable=False,
        ),
        sa.Column("stage", sa.String(length=64), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pass", "fail", name="gate_status", create_constraint=True),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("execution_id", "stage", name="uq_gate_verdict_stage"),
    )
    op.create_index("ix_gate_verdicts_execution_id", "gate_verdicts", ["execution_id"])

    op.create_table(
        "validation_results",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "verdict_id", sa.Integer, sa.ForeignKey("gate_verdicts.id"), nullable=False
        ),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("validator", sa.String(length=128), nullable=False),
        sa.Column(
            "policy",
            sa.Enum("blocking", "advisory", name="validator_policy", create_constraint=True),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(
                "pass", "fail", "error", "timeout",
                name="validation_status",
                create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column("findings", sa.JSON, nullable=False),
        sa.Column("raw_output", sa.Text, nullable=True),
        sa.Column("duration_seconds", sa.Float, nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False),
    )
    op.create_index("ix_validation_results_verdict_id", "validation_results", ["verdict_id"])
    op.create_index("ix_validation_results_validator", "validation_results", ["validator"])

    op.create_table(
        "execution_audit",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "ts",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "execution_id",
            sa.String(length=36),
            sa.ForeignKey("pipeline_executions.id"),
            nullable=False,
        ),
        sa.Column("environment", sa.String(length=128), nullable=False),
        sa.Column(
            "actor_kind",
            sa.Enum(
                "human", "webhook", "system",
                name="audit_actor_kind",
                create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column(
            "action",
            sa.Enum(
                "created", "status_changed", "verdict_recorded",
                "cancel_requested", "retriggered",
                name="audit_action",
                create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column("from_state", sa.String(length=32), nullable=True),
        sa.Column("to_state", sa.String(length=32), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=True),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("note", sa.Text, nullable=True),
    )
    op.create_index("ix_execution_audit_execution_id", "execution_audit", ["execution_id"])
    op.create_index("ix_execution_audit_action", "execution_audit", ["action"])
    op.create_index("ix_execution_audit_to_state", "execution_audit", ["to_state"])
    op.create_index(
        "ix_execution_audit_execution_ts", "execution_audit", ["execution_id", "ts"]
    )
    op.create_index(
        "ix_execution_audit_environment_ts", "execution_audit", ["environment", "ts"]
    )


def downgrade() -> None:
    op.drop_table("execution_audit")
    op.drop_table("validation_results")
    op.drop_table("gate_verdicts")
    op.drop_table("pipeline_executions")

    # Drop enum types (PostgreSQL)
    for enum_name in (
        "audit_action",
        "audit_actor_kind",
        "validation_status",
        "validator_policy",
        "gate_status",
        "execution_outcome",
        "execution_state",
        "execution_kind",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
