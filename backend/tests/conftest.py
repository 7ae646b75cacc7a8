"""
Pytest configuration and fixtures for the sign-in service.
Provides an in-memory database, a code-capturing OTP service and an HTTP
client wired to the FastAPI app.
"""
import os

# Settings are read when services.security is first imported, so they go in first
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test_secret_key_for_testing_purposes_only_very_long_and_secure"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["SESSION_COOKIE_SECURE"] = "false"  # the test client talks plain http
os.environ["OTP_EXPIRY_MINUTES"] = "10"
os.environ["OTP_MAX_ATTEMPTS"] = "5"
os.environ["INSTITUTIONAL_DOMAINS"] = "ufl.edu,gators.ufl.edu"
os.environ["OTP_REQUESTS_PER_HOUR"] = "100"
os.environ["OTP_VERIFICATIONS_PER_HOUR"] = "100"

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from services.db import Base, get_db
from models import user, one_time_code  # register tables on Base.metadata
from services.otp import OTPService
from services.rate_limiter import get_rate_limiter
from services.security import security_config

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

class FakeClock:
    """Settable clock so expiry can be tested without sleeping."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)

class CapturingSender:
    """Delivery hook that records codes instead of mailing them."""

    def __init__(self):
        self.sent = []

    def __call__(self, email: str, code: str):
        self.sent.append((email, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]

    def code_for(self, email: str) -> str:
        return [code for sent_to, code in self.sent if sent_to == email][-1]

@pytest_asyncio.fixture
async def test_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()

@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def sender():
    return CapturingSender()

@pytest.fixture
def otp_service(db_session, clock, sender) -> OTPService:
    return OTPService(db_session, config=security_config, clock=clock, sender=sender)

@pytest.fixture
def delivered_codes(monkeypatch):
    """Capture codes handed to the default delivery hook by the HTTP endpoints."""
    captured = CapturingSender()
    monkeypatch.setattr("services.otp.log_code_delivery", captured)
    return captured

@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app with the database swapped for the test engine."""
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    get_rate_limiter().reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()
    get_rate_limiter().reset()

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that go through the HTTP app"
    )
    config.addinivalue_line(
        "markers", "security: marks tests as security tests"
    )
