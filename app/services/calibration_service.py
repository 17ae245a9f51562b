"""
Calibra — CalibrationService: Session Lifecycle, Adjustment Ledger, Close

Manages the full lifecycle of a performance calibration session:

  1. **Create / Update** — a session is created in ``DRAFT`` for one cycle
     and may be started (``DRAFT → IN_PROGRESS``) and edited freely until it
     is closed.
  2. **Participants** — facilitators and reviewers may propose adjustments;
     observers may only look.
  3. **Adjustments** — each proposal snapshots the rating's current values
     and stays ``PENDING``.  The rating itself is never touched while the
     session is open.
  4. **Cancel** — deletes the pending adjustments and the session in one
     transaction.  Ratings are unchanged.
  5. **Close** — in one transaction, writes every pending adjustment into its
     rating, marks the adjustments ``APPLIED`` and sets the session
     ``CLOSED``.  A conditional ``UPDATE … WHERE status <> 'CLOSED'`` runs
     first, so of two concurrent closes exactly one applies anything.

Every query is scoped by ``account_id``; a session owned by another tenant
is reported exactly like a missing one.  Audit entries are written after the
business transaction commits, in their own transaction, and never surface
failures to the caller.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.config import Settings, get_settings
from app.errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationFailedError,
)
from app.models.calibration import (
    ADJUSTING_ROLES,
    ADJUSTMENT_APPLIED,
    ADJUSTMENT_PENDING,
    PARTICIPANT_ROLES,
    ROLE_FACILITATOR,
    SESSION_CLOSED,
    SESSION_DRAFT,
    SESSION_IN_PROGRESS,
    CalibrationAdjustment,
    CalibrationParticipant,
    CalibrationSession,
)
from app.models.performance import Employee, PerformanceCycle, PerformanceRating
from app.services import audit_service as audit
from app.services import classification_service as cls
from app.services.audit_service import AuditService
from app.services.closing_protocol import confirmation_matches
from app.services.distribution_service import (
    DistributionEvidence,
    build_distribution_evidence,
    targets_sum_to_100,
    validate_forced_distribution,
)
from app.services.financial_impact_service import (
    FinancialImpact,
    average_bonus_factor,
    calculate_financial_impact,
)

logger = structlog.get_logger("calibra.calibration_service")

MIN_SCORE = 1.0
MAX_SCORE = 5.0

_EDITABLE_FIELDS = ("name", "description", "scheduled_at")


# ── Result containers ───────────────────────────────────────────────────────

@dataclass
class SessionDetail:
    session: CalibrationSession
    participants: list[CalibrationParticipant]
    adjustments: list[CalibrationAdjustment]
    counts: dict[str, int] = field(default_factory=dict)


@dataclass
class SessionSummary:
    session: CalibrationSession
    employee_count: int
    adjustments_count: int
    participants_count: int


@dataclass
class ClosingEvidence:
    session_id: uuid.UUID
    session_name: str
    status: str
    pending_adjustments: int
    distribution: DistributionEvidence
    financial: FinancialImpact
    confirmation_literal: str
    requires_budget_authorization: bool


@dataclass
class CloseResult:
    session: CalibrationSession
    adjustments_applied: int


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _normalise_email(email: str) -> str:
    return email.strip().lower()


class CalibrationService:
    """Orchestrates calibration sessions for every tenant.

    Read methods accept an optional ``db_session``.  When ``None`` is passed
    the method opens its own session from the configured factory.  Write
    methods always own their transaction so that the audit entry can be
    written only once the mutation has committed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        audit_service: AuditService | None = None,
        settings: Settings | None = None,
    ) -> None:
        if session_factory is None:
            from app.database import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory
        self._audit = audit_service or AuditService(session_factory)
        self._settings = settings or get_settings()

    # ── Shared helpers ────────────────────────────────────────────────────

    async def _run_read(self, db_session: AsyncSession | None, fn):
        if db_session is not None:
            return await fn(db_session)
        async with self._session_factory() as session:
            return await fn(session)

    @staticmethod
    async def _load_session(
        db: AsyncSession,
        session_id: uuid.UUID,
        account_id: uuid.UUID,
        for_update: bool = False,
    ) -> CalibrationSession:
        stmt = select(CalibrationSession).where(
            CalibrationSession.id == session_id,
            CalibrationSession.account_id == account_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        session = result.scalar_one_or_none()
        if session is None:
            raise NotFoundError("Session not found")
        return session

    @staticmethod
    def _ensure_open(session: CalibrationSession) -> None:
        if session.status == SESSION_CLOSED:
            raise ConflictError("Session is closed and can no longer be modified")

    @staticmethod
    def _session_visible(session: CalibrationSession, department_scope: list[str]) -> bool:
        """A session without a department filter is visible to every scope."""
        return not session.department_ids or bool(set(department_scope) & set(session.department_ids))

    @staticmethod
    def _rating_visible(rating: PerformanceRating, department_scope: list[str] | None) -> bool:
        return not department_scope or rating.employee.department_id in department_scope

    @staticmethod
    async def _scope_ratings(
        db: AsyncSession, session: CalibrationSession
    ) -> list[PerformanceRating]:
        """Ratings of active employees in the session's cycle and departments."""
        stmt = (
            select(PerformanceRating)
            .join(Employee, PerformanceRating.employee_id == Employee.id)
            .where(
                PerformanceRating.account_id == session.account_id,
                PerformanceRating.cycle_id == session.cycle_id,
                Employee.is_active.is_(True),
            )
            .options(selectinload(PerformanceRating.employee))
            .order_by(Employee.full_name.asc())
        )
        if session.department_ids:
            stmt = stmt.where(Employee.department_id.in_(session.department_ids))
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def _adjustments_by_rating(
        db: AsyncSession, session_id: uuid.UUID
    ) -> dict[uuid.UUID, CalibrationAdjustment]:
        result = await db.execute(
            select(CalibrationAdjustment).where(
                CalibrationAdjustment.session_id == session_id
            )
        )
        by_rating: dict[uuid.UUID, CalibrationAdjustment] = {}
        for adj in result.scalars().all():
            current = by_rating.get(adj.rating_id)
            if current is None or adj.status == ADJUSTMENT_PENDING:
                by_rating[adj.rating_id] = adj
        return by_rating

    async def _record(
        self,
        account_id: uuid.UUID,
        action: str,
        entity_type: str,
        entity_id: uuid.UUID,
        payload: dict[str, Any],
    ) -> None:
        await self._audit.record(
            account_id=account_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload,
        )

    # ══════════════════════════════════════════════════════════════════════
    # 1. list_sessions — sessions of an account, newest first
    # ══════════════════════════════════════════════════════════════════════

    async def list_sessions(
        self,
        account_id: uuid.UUID,
        cycle_id: uuid.UUID | None = None,
        status: str | None = None,
        department_scope: list[str] | None = None,
        db_session: AsyncSession | None = None,
    ) -> list[SessionSummary]:
        """Return the account's sessions with participant, adjustment and
        candidate-employee counts.

        Parameters
        ----------
        account_id:
            Tenant whose sessions are listed.
        cycle_id, status:
            Optional exact-match filters.
        department_scope:
            When given, only sessions without a department filter or sharing
            at least one department with the scope are returned.
        db_session:
            An active async SQLAlchemy session, or ``None`` to auto-manage.
        """
        log = logger.bind(account_id=str(account_id))
        log.info("list_sessions_start", cycle_id=str(cycle_id) if cycle_id else None, status=status)

        stmt = (
            select(CalibrationSession)
            .where(CalibrationSession.account_id == account_id)
            .options(
                selectinload(CalibrationSession.participants),
                selectinload(CalibrationSession.adjustments),
            )
            .order_by(CalibrationSession.created_at.desc())
        )
        if cycle_id is not None:
            stmt = stmt.where(CalibrationSession.cycle_id == cycle_id)
        if status:
            stmt = stmt.where(CalibrationSession.status == status.upper())

        async def _execute(db: AsyncSession) -> list[SessionSummary]:
            result = await db.execute(stmt)
            sessions = list(result.scalars().all())

            if department_scope:
                sessions = [s for s in sessions if self._session_visible(s, department_scope)]

            summaries = []
            for s in sessions:
                count_stmt = (
                    select(func.count(func.distinct(Employee.id)))
                    .join(PerformanceRating, PerformanceRating.employee_id == Employee.id)
                    .where(
                        Employee.account_id == s.account_id,
                        Employee.is_active.is_(True),
                        PerformanceRating.cycle_id == s.cycle_id,
                    )
                )
                if s.department_ids:
                    count_stmt = count_stmt.where(Employee.department_id.in_(s.department_ids))
                employee_count = (await db.execute(count_stmt)).scalar_one()

                summaries.append(
                    SessionSummary(
                        session=s,
                        employee_count=employee_count,
                        adjustments_count=len(s.adjustments),
                        participants_count=len(s.participants),
                    )
                )
            return summaries

        summaries = await self._run_read(db_session, _execute)
        log.info("list_sessions_complete", count=len(summaries))
        return summaries

    # ══════════════════════════════════════════════════════════════════════
    # 2. create_session — new DRAFT session, creator enrolled as facilitator
    # ══════════════════════════════════════════════════════════════════════

    async def create_session(
        self,
        account_id: uuid.UUID,
        actor: str,
        cycle_id: uuid.UUID,
        name: str,
        description: str | None = None,
        scheduled_at: datetime | None = None,
        facilitator_email: str | None = None,
        department_ids: list[str] | None = None,
        enable_forced_distribution: bool = False,
        distribution_targets: dict[str, float] | None = None,
    ) -> CalibrationSession:
        """Create a session in ``DRAFT`` for a cycle owned by the account.

        Raises
        ------
        ValidationFailedError
            Blank name, or forced distribution enabled with targets that are
            missing, name an unknown level, or do not sum to 100.
        NotFoundError
            The cycle does not exist in this account.
        """
        log = logger.bind(account_id=str(account_id), actor=actor, cycle_id=str(cycle_id))
        log.info("create_session_start", name=name)

        name = (name or "").strip()
        if not name:
            raise ValidationFailedError("Session name is required")

        if enable_forced_distribution:
            if not distribution_targets:
                raise ValidationFailedError(
                    "Distribution targets are required when forced distribution is enabled"
                )
            unknown = sorted(set(distribution_targets) - cls.PERFORMANCE_LEVELS)
            if unknown:
                raise ValidationFailedError(
                    "Unknown performance levels in distribution targets",
                    details=unknown,
                )
            if not targets_sum_to_100(distribution_targets):
                raise ValidationFailedError("Distribution targets must sum to 100%")

        actor_email = _normalise_email(actor)

        async with self._session_factory() as db:
            async with db.begin():
                cycle = (
                    await db.execute(
                        select(PerformanceCycle).where(
                            PerformanceCycle.id == cycle_id,
                            PerformanceCycle.account_id == account_id,
                        )
                    )
                ).scalar_one_or_none()
                if cycle is None:
                    raise NotFoundError("Cycle not found")

                session = CalibrationSession(
                    id=uuid.uuid4(),
                    account_id=account_id,
                    cycle_id=cycle_id,
                    name=name,
                    description=description,
                    status=SESSION_DRAFT,
                    scheduled_at=scheduled_at,
                    facilitator_email=(
                        _normalise_email(facilitator_email) if facilitator_email else actor_email
                    ),
                    created_by=actor_email,
                    department_ids=list(department_ids or []),
                    enable_forced_distribution=enable_forced_distribution,
                    distribution_targets=distribution_targets if enable_forced_distribution else None,
                    created_at=_now(),
                )
                db.add(session)
                db.add(
                    CalibrationParticipant(
                        session_id=session.id,
                        participant_email=actor_email,
                        participant_name=actor_email,
                        role=ROLE_FACILITATOR,
                        accepted_at=_now(),
                    )
                )

        await self._record(
            account_id,
            audit.ACTION_SESSION_CREATED,
            audit.ENTITY_SESSION,
            session.id,
            {"actor": actor_email, "sessionName": name, "cycleId": str(cycle_id)},
        )
        log.info("create_session_complete", session_id=str(session.id))
        return session

    # ══════════════════════════════════════════════════════════════════════
    # 3. get_session — session with participants, adjustments and counts
    # ══════════════════════════════════════════════════════════════════════

    async def get_session(
        self,
        session_id: uuid.UUID,
        account_id: uuid.UUID,
        db_session: AsyncSession | None = None,
        department_scope: list[str] | None = None,
    ) -> SessionDetail:
        """Load a session with participants and adjustments.

        With a ``department_scope`` the session must overlap it, and only
        adjustments on employees inside the scope are returned.
        """
        stmt = (
            select(CalibrationSession)
            .where(
                CalibrationSession.id == session_id,
                CalibrationSession.account_id == account_id,
            )
            .options(
                selectinload(CalibrationSession.participants),
                selectinload(CalibrationSession.adjustments)
                .selectinload(CalibrationAdjustment.rating)
                .selectinload(PerformanceRating.employee),
            )
        )

        async def _execute(db: AsyncSession) -> SessionDetail:
            session = (await db.execute(stmt)).scalar_one_or_none()
            if session is None:
                raise NotFoundError("Session not found")
            if department_scope and not self._session_visible(session, department_scope):
                raise NotFoundError("Session not found")
            participants = list(session.participants)
            adjustments = [
                a for a in session.adjustments
                if self._rating_visible(a.rating, department_scope)
            ]
            return SessionDetail(
                session=session,
                participants=participants,
                adjustments=adjustments,
                counts={
                    "participants": len(participants),
                    "adjustments": len(adjustments),
                    "pending_adjustments": sum(
                        1 for a in adjustments if a.status == ADJUSTMENT_PENDING
                    ),
                },
            )

        return await self._run_read(db_session, _execute)

    # ══════════════════════════════════════════════════════════════════════
    # 4. update_session — edit fields, optionally start the session
    # ══════════════════════════════════════════════════════════════════════

    async def update_session(
        self,
        session_id: uuid.UUID,
        account_id: uuid.UUID,
        actor: str,
        patch: dict[str, Any],
    ) -> CalibrationSession:
        """Apply a partial update.

        ``status`` may only request ``DRAFT → IN_PROGRESS``, which sets
        ``started_at`` the first time.  Requesting the current status is a
        no-op; any other value is rejected.

        Raises
        ------
        NotFoundError
            No such session in this account.
        ConflictError
            The session is closed.
        ValidationFailedError
            Blank name or a forbidden status transition.
        """
        log = logger.bind(session_id=str(session_id), account_id=str(account_id), actor=actor)
        log.info("update_session_start", fields=sorted(patch))

        started = False
        changed: list[str] = []

        async with self._session_factory() as db:
            async with db.begin():
                session = await self._load_session(db, session_id, account_id, for_update=True)
                self._ensure_open(session)

                if "name" in patch:
                    name = (patch["name"] or "").strip()
                    if not name:
                        raise ValidationFailedError("Session name cannot be blank")
                    patch = {**patch, "name": name}

                requested = patch.get("status")
                if requested is not None:
                    requested = str(requested).strip().upper()
                    if requested == session.status:
                        pass
                    elif session.status == SESSION_DRAFT and requested == SESSION_IN_PROGRESS:
                        started = True
                    else:
                        raise ValidationFailedError(
                            f"Status change {session.status} -> {requested} is not allowed"
                        )

                for key in _EDITABLE_FIELDS:
                    if key in patch and getattr(session, key) != patch[key]:
                        setattr(session, key, patch[key])
                        changed.append(key)

                if started:
                    session.status = SESSION_IN_PROGRESS
                    if session.started_at is None:
                        session.started_at = _now()

                if changed or started:
                    session.updated_at = _now()

        if started:
            await self._record(
                account_id,
                audit.ACTION_SESSION_STARTED,
                audit.ENTITY_SESSION,
                session_id,
                {"actor": actor},
            )
        if changed:
            await self._record(
                account_id,
                audit.ACTION_SESSION_UPDATED,
                audit.ENTITY_SESSION,
                session_id,
                {"actor": actor, "fields": changed},
            )

        log.info("update_session_complete", changed=changed, started=started)
        return session

    # ══════════════════════════════════════════════════════════════════════
    # 5. add_participant — enrol a facilitator, reviewer or observer
    # ══════════════════════════════════════════════════════════════════════

    async def add_participant(
        self,
        session_id: uuid.UUID,
        account_id: uuid.UUID,
        actor: str,
        participant_email: str,
        participant_name: str,
        role: str,
    ) -> CalibrationParticipant:
        log = logger.bind(session_id=str(session_id), account_id=str(account_id), actor=actor)

        role = (role or "").strip().upper()
        if role not in PARTICIPANT_ROLES:
            raise ValidationFailedError(
                f"Invalid participant role {role!r}",
                details=sorted(PARTICIPANT_ROLES),
            )
        email = _normalise_email(participant_email or "")
        if "@" not in email:
            raise ValidationFailedError("A valid participant email is required")

        try:
            async with self._session_factory() as db:
                async with db.begin():
                    session = await self._load_session(db, session_id, account_id, for_update=True)
                    self._ensure_open(session)

                    existing = (
                        await db.execute(
                            select(CalibrationParticipant.id).where(
                                CalibrationParticipant.session_id == session_id,
                                CalibrationParticipant.participant_email == email,
                            )
                        )
                    ).scalar_one_or_none()
                    if existing is not None:
                        raise ConflictError("Participant is already enrolled in this session")

                    participant = CalibrationParticipant(
                        session_id=session_id,
                        participant_email=email,
                        participant_name=participant_name.strip(),
                        role=role,
                        invited_at=_now(),
                    )
                    db.add(participant)
        except IntegrityError:
            raise ConflictError("Participant is already enrolled in this session")

        await self._record(
            account_id,
            audit.ACTION_PARTICIPANT_ADDED,
            audit.ENTITY_SESSION,
            session_id,
            {"actor": actor, "participant": email, "role": role},
        )
        log.info("participant_added", participant=email, role=role)
        return participant

    # ══════════════════════════════════════════════════════════════════════
    # 6. create_adjustment — propose a change to one rating
    # ══════════════════════════════════════════════════════════════════════

    async def create_adjustment(
        self,
        session_id: uuid.UUID,
        account_id: uuid.UUID,
        actor: str,
        rating_id: uuid.UUID,
        justification: str,
        new_score: float | None = None,
        new_potential_score: float | None = None,
        department_scope: list[str] | None = None,
    ) -> CalibrationAdjustment:
        """Append a ``PENDING`` adjustment to the session's ledger.

        The rating's current values are copied into the ``original_*``
        columns; the rating itself is not modified.  A previous pending
        adjustment for the same rating in this session is superseded.

        Parameters
        ----------
        session_id, account_id:
            Target session and its tenant.
        actor:
            Email of the proposer; must be a facilitator or reviewer.
        rating_id:
            Rating in the session's cycle and department scope.
        justification:
            Free text, at least ``MIN_JUSTIFICATION_LENGTH`` characters once
            trimmed.
        new_score, new_potential_score:
            At least one must be provided, each within 1-5.
        department_scope:
            Departments an area manager may act on; ``None`` for no limit.
        """
        actor_email = _normalise_email(actor)
        log = logger.bind(
            session_id=str(session_id),
            account_id=str(account_id),
            actor=actor_email,
            rating_id=str(rating_id),
        )
        log.info("create_adjustment_start", new_score=new_score, new_potential_score=new_potential_score)

        justification = (justification or "").strip()
        min_len = self._settings.MIN_JUSTIFICATION_LENGTH

        async with self._session_factory() as db:
            async with db.begin():
                session = await self._load_session(db, session_id, account_id, for_update=True)
                self._ensure_open(session)
                if session.status != SESSION_IN_PROGRESS:
                    raise ConflictError("Adjustments can only be proposed while the session is in progress")

                role = (
                    await db.execute(
                        select(CalibrationParticipant.role).where(
                            CalibrationParticipant.session_id == session_id,
                            CalibrationParticipant.participant_email == actor_email,
                        )
                    )
                ).scalar_one_or_none()
                if role is None:
                    raise ForbiddenError("Not a participant of this session")
                if role not in ADJUSTING_ROLES:
                    raise ForbiddenError(f"Role {role} cannot propose adjustments")

                if len(justification) < min_len:
                    raise ValidationFailedError(
                        f"Justification must be at least {min_len} characters"
                    )
                if new_score is None and new_potential_score is None:
                    raise ValidationFailedError("A new score or a new potential score is required")
                for label, value in (("score", new_score), ("potential score", new_potential_score)):
                    if value is not None and not MIN_SCORE <= value <= MAX_SCORE:
                        raise ValidationFailedError(
                            f"New {label} must be between {MIN_SCORE} and {MAX_SCORE}"
                        )

                rating = (
                    await db.execute(
                        select(PerformanceRating)
                        .where(
                            PerformanceRating.id == rating_id,
                            PerformanceRating.account_id == account_id,
                            PerformanceRating.cycle_id == session.cycle_id,
                        )
                        .options(selectinload(PerformanceRating.employee))
                    )
                ).scalar_one_or_none()
                if rating is None:
                    raise NotFoundError("Rating not found")
                if session.department_ids and rating.employee.department_id not in session.department_ids:
                    raise NotFoundError("Rating not found")
                if not self._rating_visible(rating, department_scope):
                    raise ForbiddenError("Employee is outside your department scope")

                original_score = rating.effective_score
                effective_score = new_score if new_score is not None else original_score
                effective_potential = (
                    new_potential_score if new_potential_score is not None else rating.potential_score
                )
                calibrated_nine_box = (
                    cls.nine_box_position(effective_score, effective_potential)
                    if effective_potential is not None
                    else None
                )

                superseded = (
                    await db.execute(
                        delete(CalibrationAdjustment).where(
                            CalibrationAdjustment.session_id == session_id,
                            CalibrationAdjustment.rating_id == rating_id,
                            CalibrationAdjustment.status == ADJUSTMENT_PENDING,
                        )
                    )
                ).rowcount

                adjustment = CalibrationAdjustment(
                    id=uuid.uuid4(),
                    session_id=session_id,
                    rating_id=rating_id,
                    original_score=original_score,
                    original_level=rating.final_level or rating.calculated_level,
                    original_potential_score=rating.potential_score,
                    original_potential_level=rating.potential_level,
                    original_nine_box=rating.nine_box_position,
                    calibrated_score=new_score,
                    calibrated_level=cls.performance_level(new_score) if new_score is not None else None,
                    calibrated_potential_score=new_potential_score,
                    calibrated_potential_level=(
                        cls.nine_box_level(new_potential_score)
                        if new_potential_score is not None
                        else None
                    ),
                    calibrated_nine_box=calibrated_nine_box,
                    justification=justification,
                    adjusted_by=actor_email,
                    adjusted_at=_now(),
                    status=ADJUSTMENT_PENDING,
                )
                db.add(adjustment)
                employee_name = rating.employee.full_name

        await self._record(
            account_id,
            audit.ACTION_ADJUSTMENT_CREATED,
            audit.ENTITY_ADJUSTMENT,
            adjustment.id,
            {
                "actor": actor_email,
                "sessionId": str(session_id),
                "ratingId": str(rating_id),
                "employeeName": employee_name,
                "delta": round(new_score - original_score, 4) if new_score is not None else None,
                "superseded": superseded,
            },
        )
        log.info("create_adjustment_complete", adjustment_id=str(adjustment.id), superseded=superseded)
        return adjustment

    # ══════════════════════════════════════════════════════════════════════
    # 7. list_adjustments — ledger with ratings and employees
    # ══════════════════════════════════════════════════════════════════════

    async def list_adjustments(
        self,
        session_id: uuid.UUID,
        account_id: uuid.UUID,
        db_session: AsyncSession | None = None,
        department_scope: list[str] | None = None,
    ) -> list[CalibrationAdjustment]:
        async def _execute(db: AsyncSession) -> list[CalibrationAdjustment]:
            session = await self._load_session(db, session_id, account_id)
            if department_scope and not self._session_visible(session, department_scope):
                raise NotFoundError("Session not found")
            result = await db.execute(
                select(CalibrationAdjustment)
                .where(CalibrationAdjustment.session_id == session_id)
                .options(
                    selectinload(CalibrationAdjustment.rating).selectinload(
                        PerformanceRating.employee
                    )
                )
                .order_by(CalibrationAdjustment.adjusted_at.desc())
            )
            return [
                a for a in result.scalars().all()
                if self._rating_visible(a.rating, department_scope)
            ]

        return await self._run_read(db_session, _execute)

    # ══════════════════════════════════════════════════════════════════════
    # 8. build_closing_evidence — distribution and cost figures
    # ══════════════════════════════════════════════════════════════════════

    async def build_closing_evidence(
        self,
        session_id: uuid.UUID,
        account_id: uuid.UUID,
        db_session: AsyncSession | None = None,
    ) -> ClosingEvidence:
        """Compute the evidence and cost phases for the closing protocol.

        For every rating in scope the original value is the adjustment's
        snapshot when one exists (otherwise the rating as stored) and the
        calibrated value is the adjustment's proposal when it carries one.
        Because the snapshot outlives the apply, the same figures can be
        rebuilt for a closed session.
        """
        settings = self._settings

        async def _execute(db: AsyncSession) -> ClosingEvidence:
            session = await self._load_session(db, session_id, account_id)
            ratings = await self._scope_ratings(db, session)
            by_rating = await self._adjustments_by_rating(db, session_id)

            original_scores: list[float] = []
            calibrated_scores: list[float] = []
            original_boxes: list[str | None] = []
            calibrated_boxes: list[str | None] = []

            for rating in ratings:
                adj = by_rating.get(rating.id)
                if adj is None:
                    original_scores.append(rating.effective_score)
                    calibrated_scores.append(rating.effective_score)
                    original_boxes.append(rating.nine_box_position)
                    calibrated_boxes.append(rating.nine_box_position)
                    continue
                original_scores.append(adj.original_score)
                calibrated_scores.append(
                    adj.calibrated_score if adj.calibrated_score is not None else adj.original_score
                )
                original_boxes.append(adj.original_nine_box)
                calibrated_boxes.append(adj.calibrated_nine_box or adj.original_nine_box)

            financial = calculate_financial_impact(
                average_bonus_factor(original_boxes, settings.BONUS_FACTORS),
                average_bonus_factor(calibrated_boxes, settings.BONUS_FACTORS),
                threshold_pct=settings.CFO_VARIANCE_THRESHOLD_PCT,
            )

            return ClosingEvidence(
                session_id=session.id,
                session_name=session.name,
                status=session.status,
                pending_adjustments=sum(
                    1 for a in by_rating.values() if a.status == ADJUSTMENT_PENDING
                ),
                distribution=build_distribution_evidence(original_scores, calibrated_scores),
                financial=financial,
                confirmation_literal=settings.CLOSE_CONFIRMATION_LITERAL,
                requires_budget_authorization=settings.REQUIRE_BUDGET_AUTHORIZATION,
            )

        evidence = await self._run_read(db_session, _execute)
        logger.info(
            "closing_evidence_built",
            session_id=str(session_id),
            population=evidence.distribution.population,
            deviation_correction=evidence.distribution.deviation_correction,
            delta_pct=evidence.financial.delta_pct,
            requires_cfo_warning=evidence.financial.requires_cfo_warning,
        )
        return evidence

    # ══════════════════════════════════════════════════════════════════════
    # 9. cancel_session — discard pending adjustments and the session
    # ══════════════════════════════════════════════════════════════════════

    async def cancel_session(
        self,
        session_id: uuid.UUID,
        account_id: uuid.UUID,
        actor: str,
        reason: str | None = None,
    ) -> int:
        """Delete the session and its pending adjustments atomically.

        Returns
        -------
        int
            Number of pending adjustments discarded.

        Raises
        ------
        NotFoundError, ConflictError, InternalError
        """
        log = logger.bind(session_id=str(session_id), account_id=str(account_id), actor=actor)
        log.info("cancel_session_start")

        async with self._session_factory() as db:
            session = await self._load_session(db, session_id, account_id)
            self._ensure_open(session)
            session_name = session.name

        try:
            async with self._session_factory() as db:
                async with db.begin():
                    # Locks the row and re-checks the status in one statement.
                    locked = await db.execute(
                        update(CalibrationSession)
                        .where(
                            CalibrationSession.id == session_id,
                            CalibrationSession.account_id == account_id,
                            CalibrationSession.status != SESSION_CLOSED,
                        )
                        .values(updated_at=_now())
                        .execution_options(synchronize_session=False)
                    )
                    if locked.rowcount == 0:
                        await self._raise_for_missing_or_closed(db, session_id, account_id)

                    discarded = (
                        await db.execute(
                            delete(CalibrationAdjustment).where(
                                CalibrationAdjustment.session_id == session_id,
                                CalibrationAdjustment.status == ADJUSTMENT_PENDING,
                            )
                        )
                    ).rowcount
                    await db.execute(
                        delete(CalibrationParticipant).where(
                            CalibrationParticipant.session_id == session_id
                        )
                    )
                    await db.execute(
                        delete(CalibrationSession).where(CalibrationSession.id == session_id)
                    )
        except SQLAlchemyError as exc:
            log.error("cancel_session_failed", error=str(exc))
            raise InternalError() from exc

        await self._record(
            account_id,
            audit.ACTION_SESSION_CANCELLED,
            audit.ENTITY_SESSION,
            session_id,
            {
                "actor": actor,
                "sessionName": session_name,
                "discardedAdjustments": discarded,
                "reason": reason,
            },
        )
        log.info("cancel_session_complete", discarded_adjustments=discarded)
        return discarded

    # ══════════════════════════════════════════════════════════════════════
    # 10. close_session — apply every pending adjustment and close
    # ══════════════════════════════════════════════════════════════════════

    async def close_session(
        self,
        session_id: uuid.UUID,
        account_id: uuid.UUID,
        actor: str,
        budget_authorized: bool,
        confirmation_text: str,
    ) -> CloseResult:
        """Commit the session.  Irreversible.

        Validation happens before any mutation: the budget authorization
        and confirmation literal, then the forced distribution when the
        session enables it.  The close itself runs in one transaction whose
        first statement flips the status only if it is not already
        ``CLOSED``; zero affected rows means another close won.

        Raises
        ------
        NotFoundError, ConflictError, ValidationFailedError, InternalError
        """
        settings = self._settings
        log = logger.bind(session_id=str(session_id), account_id=str(account_id), actor=actor)
        log.info("close_session_start", budget_authorized=budget_authorized)

        async with self._session_factory() as db:
            session = await self._load_session(db, session_id, account_id)
            self._ensure_open(session)

            if settings.REQUIRE_BUDGET_AUTHORIZATION:
                if not budget_authorized:
                    raise ValidationFailedError("The budgetary impact must be authorized")
                if not confirmation_matches(confirmation_text, settings.CLOSE_CONFIRMATION_LITERAL):
                    raise ValidationFailedError(
                        f"Type {settings.CLOSE_CONFIRMATION_LITERAL} to confirm the close"
                    )

            if session.enable_forced_distribution and session.distribution_targets:
                await self._check_forced_distribution(db, session)

            session_name = session.name

        try:
            async with self._session_factory() as db:
                async with db.begin():
                    closed_at = _now()
                    flipped = await db.execute(
                        update(CalibrationSession)
                        .where(
                            CalibrationSession.id == session_id,
                            CalibrationSession.account_id == account_id,
                            CalibrationSession.status != SESSION_CLOSED,
                        )
                        .values(status=SESSION_CLOSED, closed_at=closed_at, updated_at=closed_at)
                        .execution_options(synchronize_session=False)
                    )
                    if flipped.rowcount == 0:
                        await self._raise_for_missing_or_closed(db, session_id, account_id)

                    pending = (
                        await db.execute(
                            select(CalibrationAdjustment)
                            .where(
                                CalibrationAdjustment.session_id == session_id,
                                CalibrationAdjustment.status == ADJUSTMENT_PENDING,
                            )
                            .options(selectinload(CalibrationAdjustment.rating))
                        )
                    ).scalars().all()

                    for adj in pending:
                        self._apply_adjustment(adj, session_id, closed_at)

                    applied = len(pending)
                    closed = (
                        await db.execute(
                            select(CalibrationSession)
                            .where(CalibrationSession.id == session_id)
                            .execution_options(populate_existing=True)
                        )
                    ).scalar_one()
        except SQLAlchemyError as exc:
            log.error("close_session_failed", error=str(exc))
            raise InternalError() from exc

        await self._record(
            account_id,
            audit.ACTION_SESSION_CLOSED,
            audit.ENTITY_SESSION,
            session_id,
            {
                "actor": actor,
                "sessionName": session_name,
                "adjustmentsApplied": applied,
            },
        )
        log.info("close_session_complete", adjustments_applied=applied)
        return CloseResult(session=closed, adjustments_applied=applied)

    @staticmethod
    def _apply_adjustment(
        adj: CalibrationAdjustment,
        session_id: uuid.UUID,
        applied_at: datetime,
    ) -> None:
        rating = adj.rating
        if adj.calibrated_score is not None:
            rating.final_score = adj.calibrated_score
            rating.final_level = adj.calibrated_level
            rating.adjustment_type = cls.adjustment_type(adj.original_score, adj.calibrated_score)
        if adj.calibrated_potential_score is not None:
            rating.potential_score = adj.calibrated_potential_score
            rating.potential_level = adj.calibrated_potential_level
        if adj.calibrated_nine_box is not None:
            rating.nine_box_position = adj.calibrated_nine_box

        rating.calibrated = True
        rating.calibrated_at = applied_at
        rating.calibrated_by = adj.adjusted_by
        rating.calibration_session_id = session_id
        rating.adjustment_reason = adj.justification

        adj.status = ADJUSTMENT_APPLIED
        adj.applied_at = applied_at

    async def _raise_for_missing_or_closed(
        self,
        db: AsyncSession,
        session_id: uuid.UUID,
        account_id: uuid.UUID,
    ) -> None:
        exists = (
            await db.execute(
                select(CalibrationSession.id).where(
                    CalibrationSession.id == session_id,
                    CalibrationSession.account_id == account_id,
                )
            )
        ).scalar_one_or_none()
        if exists is None:
            raise NotFoundError("Session not found")
        raise ConflictError("Session is already closed")

    async def _check_forced_distribution(
        self, db: AsyncSession, session: CalibrationSession
    ) -> None:
        ratings = await self._scope_ratings(db, session)
        by_rating = await self._adjustments_by_rating(db, session.id)

        levels = []
        for rating in ratings:
            adj = by_rating.get(rating.id)
            if adj is not None and adj.calibrated_level:
                levels.append(adj.calibrated_level)
            else:
                levels.append(rating.final_level or rating.calculated_level)

        result = validate_forced_distribution(
            levels,
            session.distribution_targets,
            self._settings.FORCED_DISTRIBUTION_TOLERANCE_PCT,
        )
        if not result.valid:
            logger.info(
                "forced_distribution_rejected",
                session_id=str(session.id),
                errors=result.errors,
            )
            raise ValidationFailedError(
                "The current distribution does not meet the configured targets",
                details=result.errors,
            )
