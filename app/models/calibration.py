"""
Calibra — Calibration session, participant and adjustment models.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.types import GUID, JSONType, utcnow

# ── Session lifecycle ──────────────────────────────────────────────────────

SESSION_DRAFT = "DRAFT"
SESSION_IN_PROGRESS = "IN_PROGRESS"
SESSION_CLOSED = "CLOSED"

SESSION_STATUSES: frozenset[str] = frozenset(
    {SESSION_DRAFT, SESSION_IN_PROGRESS, SESSION_CLOSED}
)

# ── Adjustment lifecycle (discarded adjustments are deleted) ───────────────

ADJUSTMENT_PENDING = "PENDING"
ADJUSTMENT_APPLIED = "APPLIED"

# ── Participant roles ──────────────────────────────────────────────────────

ROLE_FACILITATOR = "FACILITATOR"
ROLE_REVIEWER = "REVIEWER"
ROLE_OBSERVER = "OBSERVER"

PARTICIPANT_ROLES: frozenset[str] = frozenset(
    {ROLE_FACILITATOR, ROLE_REVIEWER, ROLE_OBSERVER}
)
ADJUSTING_ROLES: frozenset[str] = frozenset({ROLE_FACILITATOR, ROLE_REVIEWER})


class CalibrationSession(Base):
    __tablename__ = "calibration_sessions"
    __table_args__ = (
        Index("ix_calibration_sessions_account_cycle", "account_id", "cycle_id"),
        Index("ix_calibration_sessions_account_status", "account_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    cycle_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("performance_cycles.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default=SESSION_DRAFT,
        server_default=SESSION_DRAFT,
        comment="DRAFT / IN_PROGRESS / CLOSED",
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    facilitator_email: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[str] = mapped_column(String, nullable=False)
    department_ids: Mapped[list | None] = mapped_column(
        JSONType(), nullable=True, comment="Empty or null means the whole cycle"
    )
    enable_forced_distribution: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="0", nullable=False
    )
    distribution_targets: Mapped[dict | None] = mapped_column(
        JSONType(), nullable=True, comment="performance level -> target percent"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=utcnow, nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────
    participants: Mapped[list["CalibrationParticipant"]] = relationship(
        "CalibrationParticipant",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CalibrationParticipant.invited_at",
    )
    adjustments: Mapped[list["CalibrationAdjustment"]] = relationship(
        "CalibrationAdjustment",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CalibrationAdjustment.adjusted_at.desc()",
    )

    @property
    def is_closed(self) -> bool:
        return self.status == SESSION_CLOSED

    def __repr__(self) -> str:
        return f"<CalibrationSession {self.name!r} status={self.status!r}>"


class CalibrationParticipant(Base):
    __tablename__ = "calibration_participants"
    __table_args__ = (
        UniqueConstraint(
            "session_id", "participant_email", name="uq_calibration_participant_email"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("calibration_sessions.id", ondelete="CASCADE"), nullable=False
    )
    participant_email: Mapped[str] = mapped_column(String, nullable=False)
    participant_name: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default=ROLE_REVIEWER,
        comment="FACILITATOR / REVIEWER / OBSERVER",
    )
    invited_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    accepted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    session: Mapped["CalibrationSession"] = relationship(
        "CalibrationSession", back_populates="participants"
    )

    def __repr__(self) -> str:
        return f"<CalibrationParticipant {self.participant_email!r} role={self.role!r}>"


class CalibrationAdjustment(Base):
    __tablename__ = "calibration_adjustments"
    __table_args__ = (
        Index("ix_calibration_adjustments_session_status", "session_id", "status"),
        # At most one active proposal per rating within a session.
        Index(
            "uq_calibration_adjustments_pending_rating",
            "session_id",
            "rating_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("calibration_sessions.id", ondelete="CASCADE"), nullable=False
    )
    rating_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("performance_ratings.id"), nullable=False
    )

    # Snapshot of the rating when the adjustment was proposed.  Retained
    # after APPLIED so the before/after evidence can be rebuilt.
    original_score: Mapped[float] = mapped_column(Float, nullable=False)
    original_level: Mapped[str | None] = mapped_column(String, nullable=True)
    original_potential_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    original_potential_level: Mapped[str | None] = mapped_column(String, nullable=True)
    original_nine_box: Mapped[str | None] = mapped_column(String, nullable=True)

    calibrated_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    calibrated_level: Mapped[str | None] = mapped_column(String, nullable=True)
    calibrated_potential_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    calibrated_potential_level: Mapped[str | None] = mapped_column(String, nullable=True)
    calibrated_nine_box: Mapped[str | None] = mapped_column(String, nullable=True)

    justification: Mapped[str] = mapped_column(Text, nullable=False)
    adjusted_by: Mapped[str] = mapped_column(String, nullable=False)
    adjusted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default=ADJUSTMENT_PENDING,
        server_default=ADJUSTMENT_PENDING,
        comment="PENDING / APPLIED",
    )
    applied_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────
    session: Mapped["CalibrationSession"] = relationship(
        "CalibrationSession", back_populates="adjustments"
    )
    rating: Mapped["PerformanceRating"] = relationship("PerformanceRating")

    def __repr__(self) -> str:
        return (
            f"<CalibrationAdjustment rating={self.rating_id} "
            f"{self.original_score}->{self.calibrated_score} status={self.status!r}>"
        )
