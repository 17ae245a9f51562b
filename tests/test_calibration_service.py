"""Tests for CalibrationService against a SQLite database."""
import asyncio
import uuid
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationFailedError,
)
from app.models.calibration import (
    ADJUSTMENT_APPLIED,
    ADJUSTMENT_PENDING,
    CalibrationAdjustment,
    CalibrationParticipant,
    CalibrationSession,
)
from app.services.audit_service import (
    ACTION_ADJUSTMENT_CREATED,
    ACTION_SESSION_CANCELLED,
    ACTION_SESSION_CLOSED,
    ACTION_SESSION_CREATED,
    AuditService,
)
from app.services.calibration_service import CalibrationService
from tests.conftest import FACILITATOR, JUSTIFICATION, OBSERVER, REVIEWER


async def _count(session_factory, model, *where) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


async def _propose(service, session, population, index, new_score=None, new_potential=None, actor=REVIEWER):
    return await service.create_adjustment(
        session.id,
        population.account_id,
        actor,
        rating_id=population.ratings[index].id,
        justification=JUSTIFICATION,
        new_score=new_score,
        new_potential_score=new_potential,
    )


async def _close(service, session, account_id, text="CONFIRMAR"):
    return await service.close_session(
        session.id, account_id, FACILITATOR, budget_authorized=True, confirmation_text=text
    )


# ══════════════════════════════════════════════════════════════════════════
# Create / get / update
# ══════════════════════════════════════════════════════════════════════════

class TestCreateSession:

    async def test_created_in_draft_with_facilitator(self, service, seed, account_id, session_factory, audit_service):
        population = await seed(account_id, [3.0, 4.0])

        session = await service.create_session(
            account_id, "Facilitator@Acme.com ", cycle_id=population.cycle.id, name="  Sales Q1 "
        )

        assert session.status == "DRAFT"
        assert session.name == "Sales Q1"
        assert session.started_at is None
        detail = await service.get_session(session.id, account_id)
        assert [(p.participant_email, p.role) for p in detail.participants] == [
            (FACILITATOR, "FACILITATOR")
        ]
        entries = await audit_service.list_entries(account_id, action=ACTION_SESSION_CREATED)
        assert len(entries) == 1

    async def test_cycle_of_other_account_is_not_found(self, service, seed, account_id, other_account_id):
        population = await seed(other_account_id, [3.0])

        with pytest.raises(NotFoundError):
            await service.create_session(
                account_id, FACILITATOR, cycle_id=population.cycle.id, name="Cross tenant"
            )

    async def test_forced_distribution_targets_must_sum_to_100(self, service, seed, account_id):
        population = await seed(account_id, [3.0])

        with pytest.raises(ValidationFailedError):
            await service.create_session(
                account_id,
                FACILITATOR,
                cycle_id=population.cycle.id,
                name="Forced",
                enable_forced_distribution=True,
                distribution_targets={"exceptional": 20, "meets_expectations": 70},
            )

    async def test_forced_distribution_rejects_unknown_levels(self, service, seed, account_id):
        population = await seed(account_id, [3.0])

        with pytest.raises(ValidationFailedError) as excinfo:
            await service.create_session(
                account_id,
                FACILITATOR,
                cycle_id=population.cycle.id,
                name="Forced",
                enable_forced_distribution=True,
                distribution_targets={"rockstar": 100},
            )
        assert excinfo.value.details == ["rockstar"]


class TestGetSession:

    async def test_other_tenant_is_indistinguishable_from_missing(self, service, seed, open_session, account_id, other_account_id):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        with pytest.raises(NotFoundError) as foreign:
            await service.get_session(session.id, other_account_id)
        with pytest.raises(NotFoundError) as missing:
            await service.get_session(uuid.uuid4(), account_id)
        assert foreign.value.message == missing.value.message

    async def test_detail_includes_adjustments_and_counts(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0, 3.5])
        session = await open_session(population)
        await _propose(service, session, population, 0, new_score=4.0)

        detail = await service.get_session(session.id, account_id)

        assert detail.counts == {"participants": 3, "adjustments": 1, "pending_adjustments": 1}
        assert detail.adjustments[0].rating.employee.full_name == "Employee 00"
        assert [p.participant_email for p in detail.participants] == [FACILITATOR, REVIEWER, OBSERVER]

    async def test_department_scope_hides_other_departments(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0, 3.5], departments=["eng", "sales"])
        session = await open_session(population)
        await _propose(service, session, population, 0, new_score=4.0)
        await _propose(service, session, population, 1, new_score=4.0)

        detail = await service.get_session(session.id, account_id, department_scope=["sales"])
        assert [a.rating_id for a in detail.adjustments] == [population.ratings[1].id]
        assert detail.counts["adjustments"] == 1

        listed = await service.list_adjustments(session.id, account_id, department_scope=["sales"])
        assert [a.rating_id for a in listed] == [population.ratings[1].id]
        assert len(await service.list_adjustments(session.id, account_id)) == 2

    async def test_session_outside_department_scope_is_not_found(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0], departments=["eng"])
        session = await open_session(population, department_ids=["eng"])

        with pytest.raises(NotFoundError):
            await service.get_session(session.id, account_id, department_scope=["sales"])
        with pytest.raises(NotFoundError):
            await service.list_adjustments(session.id, account_id, department_scope=["sales"])


class TestUpdateSession:

    async def test_start_sets_started_at_once(self, service, seed, account_id):
        population = await seed(account_id, [3.0])
        session = await service.create_session(account_id, FACILITATOR, cycle_id=population.cycle.id, name="S")

        started = await service.update_session(session.id, account_id, FACILITATOR, {"status": "IN_PROGRESS"})
        assert started.status == "IN_PROGRESS"
        first_started_at = (await service.get_session(session.id, account_id)).session.started_at
        assert first_started_at is not None

        again = await service.update_session(
            session.id, account_id, FACILITATOR, {"status": "IN_PROGRESS", "name": "Renamed"}
        )
        assert again.name == "Renamed"
        detail = await service.get_session(session.id, account_id)
        assert detail.session.started_at == first_started_at

    @pytest.mark.parametrize("status", ["DRAFT", "CLOSED", "CANCELLED", "bogus"])
    async def test_other_status_changes_are_rejected(self, service, seed, open_session, account_id, status):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        with pytest.raises(ValidationFailedError):
            await service.update_session(session.id, account_id, FACILITATOR, {"status": status})

        detail = await service.get_session(session.id, account_id)
        assert detail.session.status == "IN_PROGRESS"

    async def test_free_edits_while_draft(self, service, seed, account_id):
        population = await seed(account_id, [3.0])
        session = await service.create_session(account_id, FACILITATOR, cycle_id=population.cycle.id, name="S")

        updated = await service.update_session(
            session.id, account_id, FACILITATOR, {"description": "Quarterly round", "status": "DRAFT"}
        )
        assert updated.description == "Quarterly round"
        assert updated.status == "DRAFT"
        assert updated.started_at is None

    async def test_blank_name_rejected(self, service, seed, account_id):
        population = await seed(account_id, [3.0])
        session = await service.create_session(account_id, FACILITATOR, cycle_id=population.cycle.id, name="S")

        with pytest.raises(ValidationFailedError):
            await service.update_session(session.id, account_id, FACILITATOR, {"name": "   "})


# ══════════════════════════════════════════════════════════════════════════
# Participants and adjustments
# ══════════════════════════════════════════════════════════════════════════

class TestParticipants:

    async def test_duplicate_email_conflicts(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        with pytest.raises(ConflictError):
            await service.add_participant(
                session.id, account_id, FACILITATOR, REVIEWER.upper(), "Rae Again", "REVIEWER"
            )

    async def test_invalid_role(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        with pytest.raises(ValidationFailedError):
            await service.add_participant(session.id, account_id, FACILITATOR, "x@acme.com", "X", "BOSS")


class TestAdjustments:

    async def test_proposal_snapshots_and_leaves_rating_untouched(self, service, seed, open_session, account_id, fetch_rating, audit_service):
        population = await seed(account_id, [3.0], potentials=[3.5])
        session = await open_session(population)

        adj = await _propose(service, session, population, 0, new_score=4.2, new_potential=4.5)

        assert adj.status == ADJUSTMENT_PENDING
        assert adj.original_score == 3.0
        assert adj.original_level == "developing"
        assert adj.original_nine_box == "core_player"
        assert adj.calibrated_level == "exceeds_expectations"
        assert adj.calibrated_potential_level == "high"
        assert adj.calibrated_nine_box == "star"

        rating = await fetch_rating(population.ratings[0].id)
        assert rating.final_score is None
        assert rating.calibrated is False
        assert rating.nine_box_position == "core_player"

        entries = await audit_service.list_entries(account_id, action=ACTION_ADJUSTMENT_CREATED)
        assert entries[0].payload["delta"] == pytest.approx(1.2)

    async def test_new_proposal_supersedes_pending_one(self, service, seed, open_session, account_id, session_factory):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        await _propose(service, session, population, 0, new_score=3.6)
        latest = await _propose(service, session, population, 0, new_score=4.1, actor=FACILITATOR)

        pending = await service.list_adjustments(session.id, account_id)
        assert [a.id for a in pending] == [latest.id]
        assert pending[0].calibrated_score == 4.1

    async def test_observer_cannot_propose(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        with pytest.raises(ForbiddenError):
            await _propose(service, session, population, 0, new_score=4.0, actor=OBSERVER)

    async def test_non_participant_cannot_propose(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        with pytest.raises(ForbiddenError):
            await _propose(service, session, population, 0, new_score=4.0, actor="stranger@acme.com")

    async def test_short_justification(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        with pytest.raises(ValidationFailedError):
            await service.create_adjustment(
                session.id, account_id, REVIEWER,
                rating_id=population.ratings[0].id,
                justification="   too short   ",
                new_score=4.0,
            )

    async def test_requires_a_new_value(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        with pytest.raises(ValidationFailedError):
            await _propose(service, session, population, 0)

    async def test_draft_session_refuses_proposals(self, service, seed, account_id):
        population = await seed(account_id, [3.0])
        session = await service.create_session(account_id, FACILITATOR, cycle_id=population.cycle.id, name="S")

        with pytest.raises(ConflictError):
            await _propose(service, session, population, 0, new_score=4.0, actor=FACILITATOR)

    async def test_rating_outside_cycle_is_not_found(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0])
        elsewhere = await seed(account_id, [2.0])
        session = await open_session(population)

        with pytest.raises(NotFoundError):
            await _propose(service, session, elsewhere, 0, new_score=4.0)

    async def test_rating_outside_departments_is_not_found(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0, 3.0], departments=["eng", "sales"])
        session = await open_session(population, department_ids=["eng"])

        await _propose(service, session, population, 0, new_score=4.0)
        with pytest.raises(NotFoundError):
            await _propose(service, session, population, 1, new_score=4.0)

    async def test_area_manager_cannot_adjust_other_department(self, service, seed, open_session, account_id, session_factory):
        population = await seed(account_id, [3.0, 3.0], departments=["eng", "sales"])
        session = await open_session(population)

        with pytest.raises(ForbiddenError):
            await service.create_adjustment(
                session.id,
                account_id,
                REVIEWER,
                rating_id=population.ratings[0].id,
                justification=JUSTIFICATION,
                new_score=4.0,
                department_scope=["sales"],
            )
        assert await _count(session_factory, CalibrationAdjustment) == 0

        own = await service.create_adjustment(
            session.id,
            account_id,
            REVIEWER,
            rating_id=population.ratings[1].id,
            justification=JUSTIFICATION,
            new_score=4.0,
            department_scope=["sales"],
        )
        assert own.status == ADJUSTMENT_PENDING


# ══════════════════════════════════════════════════════════════════════════
# Cancel
# ══════════════════════════════════════════════════════════════════════════

class TestCancel:

    async def test_removes_pending_adjustments_and_session(self, service, seed, open_session, account_id, session_factory, fetch_rating, audit_service):
        population = await seed(account_id, [2.0, 3.0, 4.0, 4.6])
        session = await open_session(population)
        for i in range(3):
            await _propose(service, session, population, i, new_score=3.5)

        discarded = await service.cancel_session(session.id, account_id, FACILITATOR, reason="Wrong cycle")

        assert discarded == 3
        assert await _count(session_factory, CalibrationSession, CalibrationSession.id == session.id) == 0
        assert await _count(session_factory, CalibrationAdjustment, CalibrationAdjustment.session_id == session.id) == 0
        assert await _count(session_factory, CalibrationParticipant, CalibrationParticipant.session_id == session.id) == 0
        for original in population.ratings:
            rating = await fetch_rating(original.id)
            assert rating.final_score is None
            assert rating.calibrated is False

        entries = await audit_service.list_entries(account_id, action=ACTION_SESSION_CANCELLED)
        assert entries[0].payload["discardedAdjustments"] == 3
        assert entries[0].payload["reason"] == "Wrong cycle"

    async def test_failure_rolls_back_everything(self, service, seed, open_session, account_id, session_factory):
        population = await seed(account_id, [2.0, 3.0])
        session = await open_session(population)
        await _propose(service, session, population, 0, new_score=3.5)
        await _propose(service, session, population, 1, new_score=3.5)

        original_execute = AsyncSession.execute

        async def failing_execute(self, statement, *args, **kwargs):
            if getattr(statement, "is_delete", False) and str(statement).startswith(
                "DELETE FROM calibration_sessions"
            ):
                raise OperationalError("DELETE", {}, Exception("disk I/O error"))
            return await original_execute(self, statement, *args, **kwargs)

        with patch.object(AsyncSession, "execute", failing_execute):
            with pytest.raises(InternalError):
                await service.cancel_session(session.id, account_id, FACILITATOR)

        assert await _count(session_factory, CalibrationSession, CalibrationSession.id == session.id) == 1
        assert await _count(
            session_factory,
            CalibrationAdjustment,
            CalibrationAdjustment.session_id == session.id,
            CalibrationAdjustment.status == ADJUSTMENT_PENDING,
        ) == 2

    async def test_other_tenant_cannot_cancel(self, service, seed, open_session, account_id, other_account_id):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        with pytest.raises(NotFoundError):
            await service.cancel_session(session.id, other_account_id, FACILITATOR)


# ══════════════════════════════════════════════════════════════════════════
# Close
# ══════════════════════════════════════════════════════════════════════════

class TestClose:

    async def test_applies_pending_adjustments(self, service, seed, open_session, account_id, fetch_rating, session_factory, audit_service):
        population = await seed(account_id, [3.0, 4.0, 2.0], potentials=[3.5, 3.5, None])
        session = await open_session(population)
        await _propose(service, session, population, 0, new_score=4.6)
        await _propose(service, session, population, 1, new_score=3.2)
        await _propose(service, session, population, 2, new_potential=4.5)

        result = await _close(service, session, account_id, text=" confirmar ")

        assert result.adjustments_applied == 3
        assert result.session.status == "CLOSED"
        assert result.session.closed_at is not None

        upgraded = await fetch_rating(population.ratings[0].id)
        assert upgraded.final_score == 4.6
        assert upgraded.final_level == "exceptional"
        assert upgraded.adjustment_type == "upgrade"
        assert upgraded.nine_box_position == "high_performer"
        assert upgraded.calibrated is True
        assert upgraded.calibrated_by == REVIEWER
        assert upgraded.calibration_session_id == session.id
        assert upgraded.adjustment_reason == JUSTIFICATION

        downgraded = await fetch_rating(population.ratings[1].id)
        assert downgraded.adjustment_type == "downgrade"

        potential_only = await fetch_rating(population.ratings[2].id)
        assert potential_only.final_score is None
        assert potential_only.potential_score == 4.5
        assert potential_only.potential_level == "high"
        assert potential_only.nine_box_position == "potential_gem"
        assert potential_only.calibrated is True

        assert await _count(
            session_factory,
            CalibrationAdjustment,
            CalibrationAdjustment.session_id == session.id,
            CalibrationAdjustment.status == ADJUSTMENT_APPLIED,
        ) == 3

        entries = await audit_service.list_entries(account_id, action=ACTION_SESSION_CLOSED)
        assert len(entries) == 1
        assert entries[0].payload["adjustmentsApplied"] == 3
        assert entries[0].payload["actor"] == FACILITATOR

    async def test_close_from_draft_is_allowed(self, service, seed, account_id):
        population = await seed(account_id, [3.0])
        session = await service.create_session(account_id, FACILITATOR, cycle_id=population.cycle.id, name="S")

        result = await _close(service, session, account_id)
        assert result.adjustments_applied == 0
        assert result.session.status == "CLOSED"

    @pytest.mark.parametrize("authorized,text", [(False, "CONFIRMAR"), (True, "CONFIRM"), (True, "")])
    async def test_requires_authorization_and_literal(self, service, seed, open_session, account_id, authorized, text):
        population = await seed(account_id, [3.0])
        session = await open_session(population)

        with pytest.raises(ValidationFailedError):
            await service.close_session(
                session.id, account_id, FACILITATOR, budget_authorized=authorized, confirmation_text=text
            )

        detail = await service.get_session(session.id, account_id)
        assert detail.session.status == "IN_PROGRESS"

    async def test_closed_is_terminal(self, service, seed, open_session, account_id, fetch_rating, session_factory):
        population = await seed(account_id, [3.0, 3.5])
        session = await open_session(population)
        await _propose(service, session, population, 0, new_score=4.0)
        await _close(service, session, account_id)
        before = await fetch_rating(population.ratings[0].id)

        with pytest.raises(ConflictError):
            await service.update_session(session.id, account_id, FACILITATOR, {"name": "After"})
        with pytest.raises(ConflictError):
            await service.cancel_session(session.id, account_id, FACILITATOR)
        with pytest.raises(ConflictError):
            await _close(service, session, account_id)
        with pytest.raises(ConflictError):
            await _propose(service, session, population, 1, new_score=4.0)
        with pytest.raises(ConflictError):
            await service.add_participant(session.id, account_id, FACILITATOR, "late@acme.com", "Late", "REVIEWER")

        after = await fetch_rating(population.ratings[0].id)
        assert after.final_score == before.final_score
        assert after.calibrated_at == before.calibrated_at
        detail = await service.get_session(session.id, account_id)
        assert detail.session.name == "Engineering calibration"
        assert detail.counts["adjustments"] == 1

    async def test_concurrent_closes_apply_once(self, service, seed, open_session, account_id, session_factory, audit_service):
        population = await seed(account_id, [2.0, 3.0, 4.0])
        session = await open_session(population)
        for i in range(3):
            await _propose(service, session, population, i, new_score=3.4)

        outcomes = await asyncio.gather(
            _close(service, session, account_id),
            _close(service, session, account_id),
            return_exceptions=True,
        )

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        conflicts = [o for o in outcomes if isinstance(o, ConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        assert successes[0].adjustments_applied == 3

        closed_entries = await audit_service.list_entries(account_id, action=ACTION_SESSION_CLOSED)
        assert len(closed_entries) == 1

    async def test_failure_mid_apply_rolls_back(self, service, seed, open_session, account_id, fetch_rating, session_factory):
        population = await seed(account_id, [2.0, 3.0])
        session = await open_session(population)
        await _propose(service, session, population, 0, new_score=3.4)
        await _propose(service, session, population, 1, new_score=3.4)

        real_apply = CalibrationService._apply_adjustment
        calls = []

        def flaky_apply(adj, session_id, applied_at):
            calls.append(adj.id)
            if len(calls) == 2:
                raise OperationalError("UPDATE", {}, Exception("connection lost"))
            real_apply(adj, session_id, applied_at)

        with patch.object(CalibrationService, "_apply_adjustment", staticmethod(flaky_apply)):
            with pytest.raises(InternalError):
                await _close(service, session, account_id)

        detail = await service.get_session(session.id, account_id)
        assert detail.session.status == "IN_PROGRESS"
        assert detail.session.closed_at is None
        assert detail.counts["pending_adjustments"] == 2
        for original in population.ratings:
            rating = await fetch_rating(original.id)
            assert rating.final_score is None
            assert rating.calibrated is False

    async def test_audit_failure_is_not_surfaced(self, seed, open_session, account_id, session_factory, settings):
        population = await seed(account_id, [3.0])
        session = await open_session(population)
        broken_audit = AuditService(session_factory=MagicMock(side_effect=RuntimeError("audit db down")))
        service = CalibrationService(session_factory, audit_service=broken_audit, settings=settings)

        result = await _close(service, session, account_id)

        assert result.session.status == "CLOSED"

    async def test_forced_distribution_blocks_close(self, service, seed, account_id, session_factory):
        population = await seed(account_id, [4.6, 4.7, 4.8, 3.6])
        session = await service.create_session(
            account_id,
            FACILITATOR,
            cycle_id=population.cycle.id,
            name="Forced",
            enable_forced_distribution=True,
            distribution_targets={"exceptional": 25, "meets_expectations": 75},
        )

        with pytest.raises(ValidationFailedError) as excinfo:
            await _close(service, session, account_id)

        assert len(excinfo.value.details) == 2
        detail = await service.get_session(session.id, account_id)
        assert detail.session.status == "DRAFT"

    async def test_forced_distribution_counts_pending_adjustments(self, service, seed, account_id, session_factory):
        population = await seed(account_id, [4.6, 4.7, 4.8, 3.6])
        session = await service.create_session(
            account_id,
            FACILITATOR,
            cycle_id=population.cycle.id,
            name="Forced",
            enable_forced_distribution=True,
            distribution_targets={"exceptional": 25, "meets_expectations": 75},
        )
        await service.update_session(session.id, account_id, FACILITATOR, {"status": "IN_PROGRESS"})
        await _propose(service, session, population, 0, new_score=3.6, actor=FACILITATOR)
        await _propose(service, session, population, 1, new_score=3.7, actor=FACILITATOR)

        result = await _close(service, session, account_id)
        assert result.adjustments_applied == 2


# ══════════════════════════════════════════════════════════════════════════
# Listing and evidence
# ══════════════════════════════════════════════════════════════════════════

class TestListSessions:

    async def test_counts_and_tenant_scope(self, service, seed, open_session, account_id, other_account_id):
        population = await seed(account_id, [3.0, 3.5, 4.0], departments=["eng", "eng", "sales"])
        eng = await open_session(population, name="Eng", department_ids=["eng"])
        await open_session(population, name="Everyone")
        await _propose(service, eng, population, 0, new_score=4.0)
        foreign = await seed(other_account_id, [3.0])
        await service.create_session(other_account_id, FACILITATOR, cycle_id=foreign.cycle.id, name="Foreign")

        summaries = await service.list_sessions(account_id)

        by_name = {s.session.name: s for s in summaries}
        assert set(by_name) == {"Eng", "Everyone"}
        assert by_name["Eng"].employee_count == 2
        assert by_name["Eng"].adjustments_count == 1
        assert by_name["Eng"].participants_count == 3
        assert by_name["Everyone"].employee_count == 3

    async def test_department_scope_and_status_filter(self, service, seed, open_session, account_id):
        population = await seed(account_id, [3.0, 4.0], departments=["eng", "sales"])
        await open_session(population, name="Sales only", department_ids=["sales"])
        await open_session(population, name="Everyone")

        scoped = await service.list_sessions(account_id, department_scope=["eng"])
        assert [s.session.name for s in scoped] == ["Everyone"]

        drafts = await service.list_sessions(account_id, status="draft")
        assert drafts == []


class TestClosingEvidence:

    async def test_distribution_and_financial_figures(self, service, seed, open_session, account_id):
        # Two core players become stars: average factor 1.0 -> 1.25 (+25%).
        population = await seed(account_id, [3.5, 3.5], potentials=[3.5, 3.5])
        session = await open_session(population)
        await _propose(service, session, population, 0, new_score=4.5, new_potential=4.5)
        await _propose(service, session, population, 1, new_score=3.5)

        evidence = await service.build_closing_evidence(session.id, account_id)

        assert evidence.pending_adjustments == 2
        assert evidence.distribution.population == 2
        assert evidence.distribution.original == [0, 0, 0, 100, 0]
        assert evidence.distribution.calibrated == [0, 0, 0, 50, 50]
        assert evidence.financial.original_bonus_factor == 1.0
        assert evidence.financial.calibrated_bonus_factor == 1.25
        assert evidence.financial.delta_pct == 25.0
        assert evidence.financial.requires_cfo_warning
        assert evidence.confirmation_literal == "CONFIRMAR"

    async def test_evidence_is_reconstructable_after_close(self, service, seed, open_session, account_id):
        population = await seed(account_id, [1.0, 3.0])
        session = await open_session(population)
        await _propose(service, session, population, 0, new_score=3.2)
        before = await service.build_closing_evidence(session.id, account_id)

        await _close(service, session, account_id)
        after = await service.build_closing_evidence(session.id, account_id)

        assert after.distribution.original == before.distribution.original
        assert after.distribution.calibrated == before.distribution.calibrated
        assert after.pending_adjustments == 0
        assert after.status == "CLOSED"
