"""
Calibra — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from app.models.performance import Employee, PerformanceCycle, PerformanceRating
from app.models.calibration import (
    CalibrationAdjustment,
    CalibrationParticipant,
    CalibrationSession,
)
from app.models.audit import AuditLogEntry

__all__ = [
    "Employee",
    "PerformanceCycle",
    "PerformanceRating",
    "CalibrationSession",
    "CalibrationParticipant",
    "CalibrationAdjustment",
    "AuditLogEntry",
]
