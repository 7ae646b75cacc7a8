"""
Basic database connection tests and account persistence.
"""
import pytest
from datetime import timedelta
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from services.db import engine, get_db, DATABASE_URL
from models.user import User
from models.one_time_code import OneTimeCode
from dao.user_dao import INITIAL_TRUST_SCORE, REVERIFICATION_TRUST_BONUS, UserDAO
from services.security import SecurityUtils

class TestDatabaseConnection:
    """Test database connectivity and basic operations."""

    def test_database_url_from_environment(self):
        assert DATABASE_URL == "sqlite+aiosqlite:///:memory:"

    @pytest.mark.asyncio
    async def test_database_connection(self):
        """Test that we can connect to the configured engine."""
        async with engine.begin() as conn:
            result = await conn.execute(text("SELECT 1 as test_value"))
            row = result.fetchone()
            assert row[0] == 1

    @pytest.mark.asyncio
    async def test_get_db_session(self):
        """Test that database session dependency works."""
        async for db in get_db():
            assert db is not None
            break

    def test_models_have_tables(self):
        assert User.__tablename__ == "users"
        assert OneTimeCode.__tablename__ == "one_time_codes"
        assert OneTimeCode.__table__.c.email.unique is True

@pytest.mark.asyncio
class TestUserPersistence:
    """Account creation and profile updates through UserDAO."""

    async def test_first_verification_creates_user(self, db_session):
        now = SecurityUtils.get_utc_now()

        user, created = await UserDAO(db_session).mark_email_verified("albert@ufl.edu", now)

        assert created is True
        assert user.id is not None
        assert user.uf_email_verified is True
        assert user.profile_completed is False
        assert user.trust_score == INITIAL_TRUST_SCORE

    async def test_repeat_verification_updates_existing_user(self, db_session):
        dao = UserDAO(db_session)
        first_login = SecurityUtils.get_utc_now()
        user, _ = await dao.mark_email_verified("albert@ufl.edu", first_login)

        again, created = await dao.mark_email_verified("albert@ufl.edu", first_login + timedelta(days=1))

        assert created is False
        assert again.id == user.id
        assert again.trust_score == INITIAL_TRUST_SCORE + REVERIFICATION_TRUST_BONUS

    async def test_complete_profile(self, db_session):
        dao = UserDAO(db_session)
        user, _ = await dao.mark_email_verified("albert@ufl.edu", SecurityUtils.get_utc_now())

        updated = await dao.complete_profile(user, "Albert Gator", "3525550100")

        assert updated.profile_completed is True
        reloaded = await dao.get_by_email("albert@ufl.edu")
        assert reloaded.name == "Albert Gator"
        assert reloaded.phone_number == "3525550100"

    async def test_email_is_unique(self, db_session):
        dao = UserDAO(db_session)
        await dao.create_user(User(email="albert@ufl.edu"))

        with pytest.raises(IntegrityError):
            await dao.create_user(User(email="albert@ufl.edu"))
        await db_session.rollback()
