'''
Pytest configuration for the ledger backend.

This file sets up fixtures for:
1. Forcing the application into TEST_MODE before any code is imported.
2. A fresh in-memory SQLite database per test, with every table created.
3. An isolated, rolled-back database session for service-level tests.
4. Instances of all service classes, pre-injected with that session.
5. An httpx AsyncClient bound to the FastAPI app for endpoint testing.
'''

import os

from tests.constants import TEST_SECRET_KEY

# --- Must run before the application reads its settings ---
os.environ["TEST_MODE"] = "True"
os.environ.setdefault("SECRET_KEY", TEST_SECRET_KEY)

import pytest
import uuid
from decimal import Decimal
from typing import AsyncGenerator, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, async_sessionmaker

# --- Constant Imports ----
from tests.constants import SQLITE_URL, PERIOD_START
from tests.database import factories

# --- Application Imports ---
from src.tutor_ledger_backend.main import app
from src.tutor_ledger_backend.common.config import settings
from src.tutor_ledger_backend.database.engine import (
    build_engine,
    build_session_factory,
    create_all_tables,
    get_db_session,
)
from src.tutor_ledger_backend.database import models as db_models
from src.tutor_ledger_backend.database.db_enums import ActorRole, ClassStatusEnum
from src.tutor_ledger_backend.models.token import Actor
from src.tutor_ledger_backend.services.security import JWTHandler
from src.tutor_ledger_backend.services.audit_service import AuditService
from src.tutor_ledger_backend.services.balance_service import BalanceService
from src.tutor_ledger_backend.services.settings_service import SettingsService
from src.tutor_ledger_backend.services.notification_service import NotificationService
from src.tutor_ledger_backend.services.invoice_service import InvoiceService
from src.tutor_ledger_backend.services.class_service import ClassService
from src.tutor_ledger_backend.services.adjustment_service import AdjustmentService
from src.tutor_ledger_backend.services.reconciliation_service import ReconciliationService
from src.tutor_ledger_backend.services.guardian_service import GuardianService
from src.tutor_ledger_backend.services.undo_service import UndoService


@pytest.fixture(scope="session")
def anyio_backend():
    """
    Override the default 'anyio_backend' fixture.
    1. Forces the backend to 'asyncio' (aiosqlite has no trio support).
    2. Promotes the scope to 'session' (solves 'ScopeMismatch').
    """
    return "asyncio"


# --- 1. Database Fixtures ---

@pytest.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """A brand-new in-memory database for every test."""
    assert settings.TEST_MODE is True, \
        "TEST_MODE was not set to True! Check your .env file or environment."

    test_engine = build_engine(SQLITE_URL)
    await create_all_tables(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """
    Provides a single, isolated, rolled-back database session for
    service-level tests. The factories add their objects to it.
    """
    session = session_factory()
    factories.test_db_session = session
    try:
        yield session
    finally:
        factories.test_db_session = None
        await session.rollback()
        await session.close()


# --- 2. API Client Fixture ---

@pytest.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    Overrides `get_db_session` so that requests share the test session;
    nothing is committed and the session is rolled back afterwards.
    The lifespan is not run, so no background dispatcher is started.
    """
    async def override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        yield db_session
        await db_session.flush()

    app.dependency_overrides[get_db_session] = override_get_db_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers(role: ActorRole, actor_id: uuid.UUID | None = None) -> dict:
    """Creates a JWT for an actor with the given role and returns auth headers."""
    token = JWTHandler.create_access_token(subject=actor_id or uuid.uuid4(), role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def admin_headers() -> dict:
    return auth_headers(ActorRole.ADMIN)


@pytest.fixture(scope="function")
def teacher_headers() -> dict:
    return auth_headers(ActorRole.TEACHER)


@pytest.fixture(scope="function")
def system_headers() -> dict:
    return auth_headers(ActorRole.SYSTEM)


# --- 3. Actors ---

@pytest.fixture(scope="function")
def admin_actor() -> Actor:
    return Actor(id=uuid.uuid4(), role=ActorRole.ADMIN)


@pytest.fixture(scope="function")
def teacher_actor() -> Actor:
    return Actor(id=uuid.uuid4(), role=ActorRole.TEACHER)


# --- 4. SERVICE FIXTURES ---

@pytest.fixture(scope="function")
def audit_service(db_session: AsyncSession) -> AuditService:
    return AuditService(db=db_session)

@pytest.fixture(scope="function")
def balance_service(db_session: AsyncSession) -> BalanceService:
    return BalanceService(db=db_session)

@pytest.fixture(scope="function")
def settings_service(balance_service: BalanceService) -> SettingsService:
    return SettingsService(balance_service=balance_service)

@pytest.fixture(scope="function")
def notification_service(db_session: AsyncSession) -> NotificationService:
    return NotificationService(db=db_session)

@pytest.fixture(scope="function")
def invoice_service(
    db_session: AsyncSession,
    balance_service: BalanceService,
    audit_service: AuditService,
    settings_service: SettingsService
) -> InvoiceService:
    return InvoiceService(
        db=db_session,
        balance_service=balance_service,
        audit_service=audit_service,
        settings_service=settings_service
    )

@pytest.fixture(scope="function")
def class_service(
    db_session: AsyncSession,
    balance_service: BalanceService,
    audit_service: AuditService,
    invoice_service: InvoiceService,
    notification_service: NotificationService
) -> ClassService:
    return ClassService(
        db=db_session,
        balance_service=balance_service,
        audit_service=audit_service,
        invoice_service=invoice_service,
        notification_service=notification_service
    )

@pytest.fixture(scope="function")
def adjustment_service(
    db_session: AsyncSession,
    invoice_service: InvoiceService,
    class_service: ClassService,
    balance_service: BalanceService,
    audit_service: AuditService,
    notification_service: NotificationService
) -> AdjustmentService:
    return AdjustmentService(
        db=db_session,
        invoice_service=invoice_service,
        class_service=class_service,
        balance_service=balance_service,
        audit_service=audit_service,
        notification_service=notification_service
    )

@pytest.fixture(scope="function")
def reconciliation_service(
    db_session: AsyncSession,
    balance_service: BalanceService,
    audit_service: AuditService
) -> ReconciliationService:
    return ReconciliationService(db=db_session, balance_service=balance_service, audit_service=audit_service)

@pytest.fixture(scope="function")
def guardian_service(
    db_session: AsyncSession,
    balance_service: BalanceService,
    audit_service: AuditService
) -> GuardianService:
    return GuardianService(db=db_session, balance_service=balance_service, audit_service=audit_service)

@pytest.fixture(scope="function")
def undo_service(
    audit_service: AuditService,
    class_service: ClassService,
    guardian_service: GuardianService
) -> UndoService:
    return UndoService(audit_service=audit_service, class_service=class_service, guardian_service=guardian_service)


# --- 5. DATA FIXTURES ---

@pytest.fixture(scope="function")
def make_guardian(db_session: AsyncSession) -> Callable[..., db_models.Guardians]:
    """
    Returns a builder for a guardian with one student. Callers flush.
    Keyword arguments override the guardian's columns.
    """
    def _make(**kwargs) -> db_models.Guardians:
        guardian_id = kwargs.pop("id", None) or uuid.uuid4()
        student = factories.StudentFactory.build(guardian_id=guardian_id)
        return factories.GuardianFactory.create(id=guardian_id, students=[student], **kwargs)
    return _make


@pytest.fixture(scope="function")
def make_class() -> Callable[..., db_models.Classes]:
    """Returns a builder for a class belonging to the guardian's first student. Callers flush."""
    def _make(guardian: db_models.Guardians, **kwargs) -> db_models.Classes:
        student = guardian.students[0]
        kwargs.setdefault("student_id", student.id)
        kwargs.setdefault("student_name", student.full_name)
        return factories.ClassFactory.create(guardian_id=guardian.id, **kwargs)
    return _make


@pytest.fixture(scope="function")
async def guardian(db_session: AsyncSession, make_guardian) -> db_models.Guardians:
    """An active guardian billed at 10/hour with a fixed transfer fee of 5."""
    guardian = make_guardian()
    await db_session.flush()
    return guardian


@pytest.fixture(scope="function")
async def two_scheduled_classes(db_session: AsyncSession, guardian, make_class) -> list[db_models.Classes]:
    """Two upcoming 60-minute lessons in the billing period."""
    classes = [
        make_class(guardian, scheduled_at=PERIOD_START.replace(day=2, hour=15)),
        make_class(guardian, scheduled_at=PERIOD_START.replace(day=9, hour=15)),
    ]
    await db_session.flush()
    return classes


@pytest.fixture(scope="function")
async def attended_classes(db_session: AsyncSession, guardian, make_class) -> list[db_models.Classes]:
    """
    Two already-attended 60-minute lessons. Their hours are charged as if
    the hook had run, so the guardian starts at -2.0.
    """
    classes = [
        make_class(
            guardian,
            scheduled_at=PERIOD_START.replace(day=day, hour=15),
            status=ClassStatusEnum.ATTENDED.value,
            report_submitted_at=PERIOD_START.replace(day=day, hour=16),
            charged_hours=Decimal("1.000"),
        )
        for day in (3, 10)
    ]
    guardian.total_hours = Decimal("-2.000")
    guardian.cumulative_consumed_hours = Decimal("2.000")
    guardian.students[0].hours_remaining = Decimal("-2.000")
    await db_session.flush()
    return classes
