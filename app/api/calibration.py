"""
Calibra — Calibration Sessions API

Endpoints for running a calibration session end to end:
  - Listing, creating, editing and starting sessions
  - Enrolling participants and proposing adjustments
  - Serving the evidence and cost figures for the closing protocol
  - Cancelling or irreversibly closing a session
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, Query

from app.api.deps import (
    UserContext,
    get_calibration_service,
    require_permission,
)
from app.schemas.calibration import (
    AdjustmentCreateRequest,
    AdjustmentDetailResponse,
    AdjustmentResponse,
    CancelResponse,
    ClosingEvidenceResponse,
    CloseRequest,
    CloseResponse,
    ParticipantCreateRequest,
    ParticipantResponse,
    SessionCreateRequest,
    SessionDetailResponse,
    SessionListItem,
    SessionListResponse,
    SessionResponse,
    SessionUpdateRequest,
)
from app.services.calibration_service import CalibrationService
from app.utils.permissions import Permission

logger = structlog.get_logger("calibra.api.calibration")

router = APIRouter()

_can_view = require_permission(Permission.CALIBRATION_VIEW)
_can_manage = require_permission(Permission.CALIBRATION_MANAGE)


def _department_scope(user: UserContext) -> list[str] | None:
    """Area managers are limited to their own department."""
    if user.role == "AREA_MANAGER" and user.department_id:
        return [user.department_id]
    return None


# ──────────────────────────────────────────────────────────────────────────────
# GET / — List sessions
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "",
    response_model=SessionListResponse,
    summary="List calibration sessions",
)
async def list_sessions(
    cycle_id: uuid.UUID | None = Query(None, description="Filter by performance cycle"),
    session_status: str | None = Query(
        None,
        alias="status",
        description="Filter by status: DRAFT, IN_PROGRESS, CLOSED",
    ),
    user: UserContext = Depends(_can_view),
    service: CalibrationService = Depends(get_calibration_service),
) -> SessionListResponse:
    """Sessions of the caller's account, newest first.

    Area managers only see sessions without a department filter or that
    include their own department.
    """
    summaries = await service.list_sessions(
        user.account_id,
        cycle_id=cycle_id,
        status=session_status,
        department_scope=_department_scope(user),
    )
    return SessionListResponse(
        sessions=[SessionListItem.model_validate(s) for s in summaries],
        can_manage=user.can(Permission.CALIBRATION_MANAGE),
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST / — Create session
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "",
    response_model=SessionResponse,
    status_code=201,
    summary="Create a calibration session",
)
async def create_session(
    payload: SessionCreateRequest,
    user: UserContext = Depends(_can_manage),
    service: CalibrationService = Depends(get_calibration_service),
):
    log = logger.bind(account_id=str(user.account_id), actor=user.email)
    log.info("create_session_request", cycle_id=str(payload.cycle_id))

    return await service.create_session(
        user.account_id,
        user.email,
        cycle_id=payload.cycle_id,
        name=payload.name,
        description=payload.description,
        scheduled_at=payload.scheduled_at,
        facilitator_email=payload.facilitator_email,
        department_ids=payload.department_ids,
        enable_forced_distribution=payload.enable_forced_distribution,
        distribution_targets=payload.distribution_targets,
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /{session_id} — Session detail
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{session_id}",
    response_model=SessionDetailResponse,
    summary="Get a calibration session with participants and adjustments",
)
async def get_session(
    session_id: uuid.UUID,
    user: UserContext = Depends(_can_view),
    service: CalibrationService = Depends(get_calibration_service),
) -> SessionDetailResponse:
    detail = await service.get_session(
        session_id, user.account_id, department_scope=_department_scope(user)
    )
    return SessionDetailResponse.model_validate(detail)


# ──────────────────────────────────────────────────────────────────────────────
# PATCH /{session_id} — Edit or start
# ──────────────────────────────────────────────────────────────────────────────

@router.patch(
    "/{session_id}",
    response_model=SessionResponse,
    summary="Edit a session or start it",
)
async def update_session(
    session_id: uuid.UUID,
    payload: SessionUpdateRequest,
    user: UserContext = Depends(_can_manage),
    service: CalibrationService = Depends(get_calibration_service),
):
    """Only the fields present in the body are applied.

    ``status`` accepts ``IN_PROGRESS`` on a draft session; closing goes
    through ``POST /{session_id}/close`` and cancelling through ``DELETE``.
    """
    return await service.update_session(
        session_id,
        user.account_id,
        user.email,
        payload.model_dump(exclude_unset=True),
    )


# ──────────────────────────────────────────────────────────────────────────────
# DELETE /{session_id} — Cancel
# ──────────────────────────────────────────────────────────────────────────────

@router.delete(
    "/{session_id}",
    response_model=CancelResponse,
    summary="Cancel a session and discard its pending adjustments",
)
async def cancel_session(
    session_id: uuid.UUID,
    reason: str | None = Query(None, max_length=500),
    user: UserContext = Depends(_can_manage),
    service: CalibrationService = Depends(get_calibration_service),
) -> dict:
    discarded = await service.cancel_session(
        session_id, user.account_id, user.email, reason=reason
    )
    return {"session_id": session_id, "discarded_adjustments": discarded}


# ──────────────────────────────────────────────────────────────────────────────
# POST /{session_id}/participants — Enrol participant
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{session_id}/participants",
    response_model=ParticipantResponse,
    status_code=201,
    summary="Enrol a participant",
)
async def add_participant(
    session_id: uuid.UUID,
    payload: ParticipantCreateRequest,
    user: UserContext = Depends(_can_manage),
    service: CalibrationService = Depends(get_calibration_service),
):
    return await service.add_participant(
        session_id,
        user.account_id,
        user.email,
        participant_email=payload.participant_email,
        participant_name=payload.participant_name,
        role=payload.role,
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /{session_id}/adjustments — Adjustment ledger
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{session_id}/adjustments",
    response_model=list[AdjustmentDetailResponse],
    summary="List the adjustments of a session",
)
async def list_adjustments(
    session_id: uuid.UUID,
    user: UserContext = Depends(_can_view),
    service: CalibrationService = Depends(get_calibration_service),
):
    return await service.list_adjustments(
        session_id, user.account_id, department_scope=_department_scope(user)
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /{session_id}/adjustments — Propose adjustment
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{session_id}/adjustments",
    response_model=AdjustmentResponse,
    status_code=201,
    summary="Propose an adjustment to one rating",
)
async def create_adjustment(
    session_id: uuid.UUID,
    payload: AdjustmentCreateRequest,
    user: UserContext = Depends(_can_view),
    service: CalibrationService = Depends(get_calibration_service),
):
    """Any caller who can view calibrations may propose, provided they are
    enrolled in the session as facilitator or reviewer.  Area managers may
    only adjust employees of their own department."""
    return await service.create_adjustment(
        session_id,
        user.account_id,
        user.email,
        rating_id=payload.rating_id,
        justification=payload.justification,
        new_score=payload.new_score,
        new_potential_score=payload.new_potential_score,
        department_scope=_department_scope(user),
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /{session_id}/closing-evidence — Evidence and cost phases
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{session_id}/closing-evidence",
    response_model=ClosingEvidenceResponse,
    summary="Distribution and financial-impact figures for the closing protocol",
)
async def get_closing_evidence(
    session_id: uuid.UUID,
    user: UserContext = Depends(_can_manage),
    service: CalibrationService = Depends(get_calibration_service),
) -> ClosingEvidenceResponse:
    evidence = await service.build_closing_evidence(session_id, user.account_id)
    return ClosingEvidenceResponse.model_validate(evidence)


# ──────────────────────────────────────────────────────────────────────────────
# POST /{session_id}/close — Commit
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{session_id}/close",
    response_model=CloseResponse,
    summary="Apply all pending adjustments and close the session",
)
async def close_session(
    session_id: uuid.UUID,
    payload: CloseRequest,
    user: UserContext = Depends(_can_manage),
    service: CalibrationService = Depends(get_calibration_service),
) -> CloseResponse:
    """Irreversible.  Answers 409 when the session is already closed,
    including when a concurrent close got there first."""
    log = logger.bind(session_id=str(session_id), actor=user.email)
    log.info("close_session_request", budget_authorized=payload.budget_authorized)

    result = await service.close_session(
        session_id,
        user.account_id,
        user.email,
        budget_authorized=payload.budget_authorized,
        confirmation_text=payload.confirmation_text,
    )
    return CloseResponse.model_validate(result)
