from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


# ── Requests ───────────────────────────────────────────────────────────────

class SessionCreateRequest(BaseModel):
    cycle_id: UUID
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    facilitator_email: Optional[str] = None
    department_ids: list[str] = []
    enable_forced_distribution: bool = False
    distribution_targets: Optional[dict[str, float]] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class SessionUpdateRequest(BaseModel):
    """Partial update.  Only fields present in the body are applied."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    status: Optional[str] = None


class ParticipantCreateRequest(BaseModel):
    participant_email: str = Field(..., min_length=3)
    participant_name: str = Field(..., min_length=1)
    role: str = "REVIEWER"


class AdjustmentCreateRequest(BaseModel):
    rating_id: UUID
    new_score: Optional[float] = Field(None, ge=1.0, le=5.0)
    new_potential_score: Optional[float] = Field(None, ge=1.0, le=5.0)
    justification: str


class CloseRequest(BaseModel):
    budget_authorized: bool = False
    confirmation_text: str = ""


# ── Responses ──────────────────────────────────────────────────────────────

class EmployeeSummary(BaseModel):
    id: UUID
    full_name: str
    position: Optional[str] = None
    department_id: Optional[str] = None

    model_config = {"from_attributes": True}


class RatingSummary(BaseModel):
    id: UUID
    employee_id: UUID
    calculated_score: float
    calculated_level: str
    final_score: Optional[float] = None
    final_level: Optional[str] = None
    potential_score: Optional[float] = None
    nine_box_position: Optional[str] = None
    calibrated: bool
    employee: Optional[EmployeeSummary] = None

    model_config = {"from_attributes": True}


class ParticipantResponse(BaseModel):
    id: UUID
    participant_email: str
    participant_name: str
    role: str
    invited_at: datetime
    accepted_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AdjustmentResponse(BaseModel):
    id: UUID
    session_id: UUID
    rating_id: UUID
    original_score: float
    original_level: Optional[str] = None
    original_potential_score: Optional[float] = None
    original_potential_level: Optional[str] = None
    original_nine_box: Optional[str] = None
    calibrated_score: Optional[float] = None
    calibrated_level: Optional[str] = None
    calibrated_potential_score: Optional[float] = None
    calibrated_potential_level: Optional[str] = None
    calibrated_nine_box: Optional[str] = None
    justification: str
    adjusted_by: str
    adjusted_at: datetime
    status: str
    applied_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AdjustmentDetailResponse(AdjustmentResponse):
    rating: Optional[RatingSummary] = None


class SessionResponse(BaseModel):
    id: UUID
    account_id: UUID
    cycle_id: UUID
    name: str
    description: Optional[str] = None
    status: str
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    facilitator_email: Optional[str] = None
    created_by: str
    department_ids: Optional[list[str]] = None
    enable_forced_distribution: bool
    distribution_targets: Optional[dict[str, float]] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SessionCounts(BaseModel):
    participants: int
    adjustments: int
    pending_adjustments: int

    model_config = {"from_attributes": True}


class SessionDetailResponse(BaseModel):
    session: SessionResponse
    participants: list[ParticipantResponse]
    adjustments: list[AdjustmentDetailResponse]
    counts: SessionCounts

    model_config = {"from_attributes": True}


class SessionListItem(BaseModel):
    session: SessionResponse
    employee_count: int
    adjustments_count: int
    participants_count: int

    model_config = {"from_attributes": True}


class SessionListResponse(BaseModel):
    sessions: list[SessionListItem]
    can_manage: bool


class DistributionEvidenceResponse(BaseModel):
    labels: list[str]
    original: list[int]
    calibrated: list[int]
    population: int
    std_original: float
    std_calibrated: float
    deviation_correction: int

    model_config = {"from_attributes": True}


class FinancialImpactResponse(BaseModel):
    original_bonus_factor: float
    calibrated_bonus_factor: float
    delta: float
    delta_pct: float
    threshold_pct: float
    requires_cfo_warning: bool

    model_config = {"from_attributes": True}


class ClosingEvidenceResponse(BaseModel):
    session_id: UUID
    session_name: str
    status: str
    pending_adjustments: int
    distribution: DistributionEvidenceResponse
    financial: FinancialImpactResponse
    confirmation_literal: str
    requires_budget_authorization: bool

    model_config = {"from_attributes": True}


class CancelResponse(BaseModel):
    session_id: UUID
    discarded_adjustments: int


class CloseResponse(BaseModel):
    session: SessionResponse
    adjustments_applied: int

    model_config = {"from_attributes": True}
