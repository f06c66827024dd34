"""
Test Configuration and Fixtures

Shared fixtures for HealthChain API tests.
Provides isolated database, a controllable clock, and authenticated clients.
"""

import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator

import bcrypt
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from healthchain.api.main import create_app
from healthchain.api.access.audit import AuditLog
from healthchain.api.access.clock import ManualClock, get_clock
from healthchain.api.db.models import Base, User
from healthchain.api.db.session import get_db
from healthchain.api.auth.jwt import create_access_token


PASSWORD = "TestPassword123!"
START = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


# ==================== Database Fixtures ====================


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests."""
    async_session = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def session_maker(async_engine) -> async_sessionmaker:
    """Session factory bound to the test engine (for background workers)."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
def clock() -> ManualClock:
    """Server clock frozen at a known instant."""
    return ManualClock(START)


@pytest.fixture(scope="function")
def audit(db_session, clock) -> AuditLog:
    """Audit log on the test session and clock."""
    return AuditLog(db_session, clock)


# ==================== Application Fixtures ====================


@pytest.fixture(scope="function")
def app(db_session, clock) -> FastAPI:
    """Create FastAPI app with test database and clock."""
    test_app = create_app()

    async def override_get_db():
        yield db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_clock] = lambda: clock
    return test_app


@pytest_asyncio.fixture(scope="function")
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ==================== User Fixtures ====================


async def _make_user(db_session, email: str, role: str) -> User:
    user = User(
        id=uuid.uuid4(),
        email=email,
        password_hash=bcrypt.hashpw(PASSWORD.encode(), bcrypt.gensalt(rounds=4)).decode(),
        display_name=email.split("@")[0].title(),
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture(scope="function")
async def patient(db_session) -> User:
    """Subject whose records are protected."""
    return await _make_user(db_session, "patient@healthchain.org", "patient")


@pytest_asyncio.fixture(scope="function")
async def other_patient(db_session) -> User:
    """A second, unrelated subject."""
    return await _make_user(db_session, "other@healthchain.org", "patient")


@pytest_asyncio.fixture(scope="function")
async def doctor(db_session) -> User:
    """Clinician allowed to break glass."""
    return await _make_user(db_session, "dr.lee@healthchain.org", "doctor")


@pytest_asyncio.fixture(scope="function")
async def second_doctor(db_session) -> User:
    """Another clinician on the same shift."""
    return await _make_user(db_session, "dr.okafor@healthchain.org", "doctor")


@pytest_asyncio.fixture(scope="function")
async def admin_user(db_session) -> User:
    """Compliance admin."""
    return await _make_user(db_session, "admin@healthchain.org", "admin")


def _headers(user: User) -> dict:
    token = create_access_token(user_id=user.id, email=user.email, role=user.role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def patient_headers(patient) -> dict:
    """Authorization headers for the patient."""
    return _headers(patient)


@pytest.fixture(scope="function")
def other_headers(other_patient) -> dict:
    """Authorization headers for the unrelated patient."""
    return _headers(other_patient)


@pytest.fixture(scope="function")
def doctor_headers(doctor) -> dict:
    """Authorization headers for the doctor."""
    return _headers(doctor)


@pytest.fixture(scope="function")
def admin_headers(admin_user) -> dict:
    """Authorization headers for the admin."""
    return _headers(admin_user)


@pytest.fixture(scope="function")
def second_doctor_headers(second_doctor) -> dict:
    """Authorization headers for the second doctor."""
    return _headers(second_doctor)
