from datetime import datetime
from enum import Enum
from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from models.one_time_code import OneTimeCode

class VerifyOutcome(str, Enum):
    CONSUMED = "consumed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    TOO_MANY_ATTEMPTS = "too_many_attempts"

class OneTimeCodeDAO:
    """
    Credential store for one-time codes.

    Every state change is a single conditional DELETE or UPDATE so that
    concurrent verifications of the same email are serialized by the
    database row lock instead of racing between a read and a write.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_email(self, email: str):
        result = await self.db.execute(
            select(OneTimeCode)
            .where(OneTimeCode.email == email)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def count_for_email(self, email: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(OneTimeCode).where(OneTimeCode.email == email)
        )
        return result.scalar_one()

    async def replace_code(self, email: str, code: str, expires_at: datetime) -> None:
        """
        Store a new code for the email, replacing any unconsumed one.
        The replaced code is kept in ``superseded_code`` so a late submission
        of it reads as not found instead of counting as a wrong guess.
        """
        for attempt in range(2):
            try:
                # SET expressions see the old row, so superseded_code takes the previous code
                replaced = await self.db.execute(
                    update(OneTimeCode)
                    .where(OneTimeCode.email == email)
                    .values(
                        superseded_code=OneTimeCode.code,
                        code=code,
                        expires_at=expires_at,
                        attempts=0,
                        created_at=func.now(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if not replaced.rowcount:
                    await self.db.execute(
                        insert(OneTimeCode).values(email=email, code=code, expires_at=expires_at, attempts=0)
                    )
                await self.db.commit()
                return
            except IntegrityError:
                # A concurrent issuance inserted first; the retry overwrites its row
                await self.db.rollback()
                if attempt:
                    raise

    async def consume(self, email: str, code: str, now: datetime, max_attempts: int,
                      commit: bool = True) -> VerifyOutcome:
        """
        Check a submitted code and apply its side effect in one transaction.

        The matching live row is removed by compare-and-delete; an expired row
        is removed; a code the live row superseded is not found and leaves the
        counter alone; otherwise the attempt counter is bumped atomically and
        the row is removed once the counter reaches ``max_attempts``.

        With ``commit=False`` a ``CONSUMED`` outcome leaves the transaction
        open so the caller can finish its own writes and commit or roll back
        both together. Every other outcome is committed here.
        """
        try:
            consumed = await self.db.execute(
                delete(OneTimeCode)
                .where(
                    OneTimeCode.email == email,
                    OneTimeCode.code == code,
                    OneTimeCode.expires_at >= now,
                )
                .execution_options(synchronize_session=False)
            )
            if consumed.rowcount:
                if commit:
                    await self.db.commit()
                return VerifyOutcome.CONSUMED

            expired = await self.db.execute(
                delete(OneTimeCode)
                .where(OneTimeCode.email == email, OneTimeCode.expires_at < now)
                .execution_options(synchronize_session=False)
            )
            if expired.rowcount:
                await self.db.commit()
                return VerifyOutcome.EXPIRED

            bumped = await self.db.execute(
                update(OneTimeCode)
                .where(
                    OneTimeCode.email == email,
                    OneTimeCode.code != code,
                    OneTimeCode.expires_at >= now,
                    or_(OneTimeCode.superseded_code.is_(None), OneTimeCode.superseded_code != code),
                )
                .values(attempts=OneTimeCode.attempts + 1)
                .returning(OneTimeCode.id, OneTimeCode.attempts)
                .execution_options(synchronize_session=False)
            )
            row = bumped.first()
            if row is None:
                await self.db.commit()
                return VerifyOutcome.NOT_FOUND

            if row.attempts >= max_attempts:
                await self.db.execute(
                    delete(OneTimeCode)
                    .where(OneTimeCode.id == row.id)
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
                return VerifyOutcome.TOO_MANY_ATTEMPTS

            await self.db.commit()
            return VerifyOutcome.MISMATCH
        except Exception:
            await self.db.rollback()
            raise

    async def delete_expired(self, now: datetime) -> int:
        """Sweep codes whose window has closed. Returns the number removed."""
        result = await self.db.execute(
            delete(OneTimeCode)
            .where(OneTimeCode.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount
