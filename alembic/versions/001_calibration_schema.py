"""Initial schema — rating store, calibration sessions and audit log.

Revision ID: 001_calibration
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_calibration"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── 1. employees ────────────────────────────────────────────────
    op.create_table(
        "employees",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), index=True, nullable=False),
        sa.Column("full_name", sa.String, nullable=False),
        sa.Column("position", sa.String, nullable=True),
        sa.Column("department_id", sa.String, nullable=True),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
    )

    # ── 2. performance_cycles ───────────────────────────────────────
    op.create_table(
        "performance_cycles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), index=True, nullable=False),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("status", sa.String, server_default="ACTIVE", nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    # ── 3. performance_ratings ──────────────────────────────────────
    op.create_table(
        "performance_ratings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "cycle_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("performance_cycles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "employee_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("employees.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("calculated_score", sa.Float, nullable=False),
        sa.Column("calculated_level", sa.String, nullable=False),
        sa.Column("final_score", sa.Float, nullable=True),
        sa.Column("final_level", sa.String, nullable=True),
        sa.Column("potential_score", sa.Float, nullable=True),
        sa.Column("potential_level", sa.String, nullable=True),
        sa.Column("nine_box_position", sa.String, nullable=True),
        sa.Column("calibrated", sa.Boolean, server_default="false", nullable=False),
        sa.Column("calibrated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("calibrated_by", sa.String, nullable=True),
        sa.Column("calibration_session_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("adjustment_reason", sa.Text, nullable=True),
        sa.Column(
            "adjustment_type",
            sa.String,
            nullable=True,
            comment="upgrade / downgrade / no_change",
        ),
    )
    op.create_index(
        "ix_performance_ratings_account_cycle",
        "performance_ratings",
        ["account_id", "cycle_id"],
    )

    # ── 4. calibration_sessions ─────────────────────────────────────
    op.create_table(
        "calibration_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "cycle_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("performance_cycles.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "status",
            sa.String,
            server_default="DRAFT",
            nullable=False,
            comment="DRAFT / IN_PROGRESS / CLOSED",
        ),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("facilitator_email", sa.String, nullable=True),
        sa.Column("created_by", sa.String, nullable=False),
        sa.Column(
            "department_ids",
            postgresql.JSONB,
            nullable=True,
            comment="Empty or null means the whole cycle",
        ),
        sa.Column(
            "enable_forced_distribution",
            sa.Boolean,
            server_default="false",
            nullable=False,
        ),
        sa.Column(
            "distribution_targets",
            postgresql.JSONB,
            nullable=True,
            comment="performance level -> target percent",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_calibration_sessions_account_cycle",
        "calibration_sessions",
        ["account_id", "cycle_id"],
    )
    op.create_index(
        "ix_calibration_sessions_account_status",
        "calibration_sessions",
        ["account_id", "status"],
    )

    # ── 5. calibration_participants ─────────────────────────────────
    op.create_table(
        "calibration_participants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("calibration_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("participant_email", sa.String, nullable=False),
        sa.Column("participant_name", sa.String, nullable=False),
        sa.Column(
            "role",
            sa.String,
            nullable=False,
            comment="FACILITATOR / REVIEWER / OBSERVER",
        ),
        sa.Column("invited_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "session_id", "participant_email", name="uq_calibration_participant_email"
        ),
    )

    # ── 6. calibration_adjustments ──────────────────────────────────
    op.create_table(
        "calibration_adjustments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("calibration_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "rating_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("performance_ratings.id"),
            nullable=False,
        ),
        sa.Column("original_score", sa.Float, nullable=False),
        sa.Column("original_level", sa.String, nullable=True),
        sa.Column("original_potential_score", sa.Float, nullable=True),
        sa.Column("original_potential_level", sa.String, nullable=True),
        sa.Column("original_nine_box", sa.String, nullable=True),
        sa.Column("calibrated_score", sa.Float, nullable=True),
        sa.Column("calibrated_level", sa.String, nullable=True),
        sa.Column("calibrated_potential_score", sa.Float, nullable=True),
        sa.Column("calibrated_potential_level", sa.String, nullable=True),
        sa.Column("calibrated_nine_box", sa.String, nullable=True),
        sa.Column("justification", sa.Text, nullable=False),
        sa.Column("adjusted_by", sa.String, nullable=False),
        sa.Column("adjusted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.String,
            server_default="PENDING",
            nullable=False,
            comment="PENDING / APPLIED",
        ),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_calibration_adjustments_session_status",
        "calibration_adjustments",
        ["session_id", "status"],
    )
    op.create_index(
        "uq_calibration_adjustments_pending_rating",
        "calibration_adjustments",
        ["session_id", "rating_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    # ── 7. audit_log_entries ────────────────────────────────────────
    op.create_table(
        "audit_log_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=False),
    )
    op.create_index(
        "ix_audit_log_account_created",
        "audit_log_entries",
        ["account_id", "created_at"],
    )
    op.create_index(
        "ix_audit_log_entity",
        "audit_log_entries",
        ["entity_type", "entity_id"],
    )


def downgrade() -> None:
    # Drop in reverse order (children / dependents first).
    op.drop_index("ix_audit_log_entity", table_name="audit_log_entries")
    op.drop_index("ix_audit_log_account_created", table_name="audit_log_entries")
    op.drop_table("audit_log_entries")

    op.drop_index(
        "uq_calibration_adjustments_pending_rating", table_name="calibration_adjustments"
    )
    op.drop_index(
        "ix_calibration_adjustments_session_status", table_name="calibration_adjustments"
    )
    op.drop_table("calibration_adjustments")
    op.drop_table("calibration_participants")

    op.drop_index("ix_calibration_sessions_account_status", table_name="calibration_sessions")
    op.drop_index("ix_calibration_sessions_account_cycle", table_name="calibration_sessions")
    op.drop_table("calibration_sessions")

    op.drop_index("ix_performance_ratings_account_cycle", table_name="performance_ratings")
    op.drop_table("performance_ratings")
    op.drop_table("performance_cycles")
    op.drop_table("employees")
