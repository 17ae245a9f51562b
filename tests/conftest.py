"""Shared pytest fixtures for Calibra tests.

Every test gets its own SQLite file database so that concurrent sessions
use real, separate connections.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./calibra-test.db")

import uuid
from dataclasses import dataclass

import pytest
import pytest_asyncio

import app.models  # noqa: F401 — register all models
from app.config import Settings
from app.database import Base, build_engine_from_url, build_session_factory
from app.models.performance import Employee, PerformanceCycle, PerformanceRating
from app.services import classification_service as cls
from app.services.audit_service import AuditService
from app.services.calibration_service import CalibrationService

FACILITATOR = "facilitator@acme.com"
REVIEWER = "reviewer@acme.com"
OBSERVER = "observer@acme.com"
JUSTIFICATION = "Consistent delivery above peers this cycle"


@dataclass
class Population:
    account_id: uuid.UUID
    cycle: PerformanceCycle
    employees: list[Employee]
    ratings: list[PerformanceRating]


@pytest.fixture
def settings():
    return Settings(DATABASE_URL="sqlite+aiosqlite://")


@pytest.fixture
def account_id():
    return uuid.uuid4()


@pytest.fixture
def other_account_id():
    return uuid.uuid4()


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine_from_url(f"sqlite+aiosqlite:///{tmp_path / 'calibra.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def audit_service(session_factory):
    return AuditService(session_factory)


@pytest.fixture
def service(session_factory, audit_service, settings):
    return CalibrationService(
        session_factory=session_factory,
        audit_service=audit_service,
        settings=settings,
    )


@pytest.fixture
def seed(session_factory):
    """Return a coroutine that creates a cycle with one rated employee per
    score.  ``potentials`` and ``departments`` are matched by position."""

    async def _seed(
        account_id: uuid.UUID,
        scores: list[float],
        potentials: list[float | None] | None = None,
        departments: list[str | None] | None = None,
    ) -> Population:
        potentials = potentials or [None] * len(scores)
        departments = departments or [None] * len(scores)

        cycle = PerformanceCycle(id=uuid.uuid4(), account_id=account_id, name="FY26 H1")
        employees = []
        ratings = []
        for i, (score, potential, dept) in enumerate(zip(scores, potentials, departments)):
            employee = Employee(
                id=uuid.uuid4(),
                account_id=account_id,
                full_name=f"Employee {i:02d}",
                position="Analyst",
                department_id=dept,
            )
            rating = PerformanceRating(
                id=uuid.uuid4(),
                account_id=account_id,
                cycle_id=cycle.id,
                employee_id=employee.id,
                calculated_score=score,
                calculated_level=cls.performance_level(score),
                potential_score=potential,
                potential_level=cls.nine_box_level(potential) if potential is not None else None,
                nine_box_position=(
                    cls.nine_box_position(score, potential) if potential is not None else None
                ),
            )
            employees.append(employee)
            ratings.append(rating)

        async with session_factory() as db:
            async with db.begin():
                db.add(cycle)
                db.add_all(employees)
                await db.flush()
                db.add_all(ratings)

        return Population(account_id=account_id, cycle=cycle, employees=employees, ratings=ratings)

    return _seed


@pytest.fixture
def open_session(service):
    """Return a coroutine that creates and starts a session with a reviewer
    and an observer enrolled."""

    async def _open(population: Population, **kwargs):
        session = await service.create_session(
            population.account_id,
            FACILITATOR,
            cycle_id=population.cycle.id,
            name=kwargs.pop("name", "Engineering calibration"),
            **kwargs,
        )
        await service.add_participant(
            session.id, population.account_id, FACILITATOR, REVIEWER, "Rae Viewer", "REVIEWER"
        )
        await service.add_participant(
            session.id, population.account_id, FACILITATOR, OBSERVER, "Obi Server", "OBSERVER"
        )
        return await service.update_session(
            session.id, population.account_id, FACILITATOR, {"status": "IN_PROGRESS"}
        )

    return _open


@pytest.fixture
def fetch_rating(session_factory):
    async def _fetch(rating_id: uuid.UUID) -> PerformanceRating:
        async with session_factory() as db:
            return await db.get(PerformanceRating, rating_id)

    return _fetch
