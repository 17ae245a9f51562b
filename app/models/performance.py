"""
Calibra — Rating store models (employees, cycles, performance ratings).

These tables are owned by the evaluation pipeline.  The calibration engine
reads them freely but writes ``performance_ratings`` only when a session is
closed.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.types import GUID


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    position: Mapped[str | None] = mapped_column(String, nullable=True)
    department_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="1", nullable=False
    )

    ratings: Mapped[list["PerformanceRating"]] = relationship(
        "PerformanceRating", back_populates="employee"
    )

    def __repr__(self) -> str:
        return f"<Employee {self.full_name!r} id={self.id}>"


class PerformanceCycle(Base):
    __tablename__ = "performance_cycles"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="ACTIVE", server_default="ACTIVE"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<PerformanceCycle {self.name!r} status={self.status!r}>"


class PerformanceRating(Base):
    __tablename__ = "performance_ratings"
    __table_args__ = (
        Index("ix_performance_ratings_account_cycle", "account_id", "cycle_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    cycle_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("performance_cycles.id", ondelete="CASCADE"), nullable=False
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("employees.id", ondelete="CASCADE"), nullable=False
    )

    # Score produced by the evaluation pipeline; never rewritten.
    calculated_score: Mapped[float] = mapped_column(Float, nullable=False)
    calculated_level: Mapped[str] = mapped_column(String, nullable=False)

    final_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    final_level: Mapped[str | None] = mapped_column(String, nullable=True)
    potential_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    potential_level: Mapped[str | None] = mapped_column(String, nullable=True)
    nine_box_position: Mapped[str | None] = mapped_column(String, nullable=True)

    calibrated: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="0", nullable=False
    )
    calibrated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    calibrated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    calibration_session_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    adjustment_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    adjustment_type: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="upgrade / downgrade / no_change"
    )

    # ── Relationships ──────────────────────────────────────────────
    employee: Mapped["Employee"] = relationship("Employee", back_populates="ratings")

    @property
    def effective_score(self) -> float:
        return self.final_score if self.final_score is not None else self.calculated_score

    def __repr__(self) -> str:
        return (
            f"<PerformanceRating employee={self.employee_id} "
            f"score={self.effective_score} calibrated={self.calibrated}>"
        )
