from datetime import datetime
from sqlalchemy.future import select
from sqlalchemy.ext.asyncio import AsyncSession
from models.user import User

# Trust granted for proving control of an institutional address
INITIAL_TRUST_SCORE = 10
REVERIFICATION_TRUST_BONUS = 5

class UserDAO:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: int):
        return await self.db.get(User, user_id)

    async def get_by_email(self, email: str):
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalars().first()

    async def create_user(self, user: User):
        self.db.add(user)
        await self.db.commit()
        await self.db.refresh(user)
        return user

    async def mark_email_verified(self, email: str, verified_at: datetime) -> tuple[User, bool]:
        """Create the account on first sign-in or flag an existing one. Returns (user, created)."""
        user = await self.get_by_email(email)
        if user is None:
            user = User(
                email=email,
                uf_email_verified=True,
                trust_score=INITIAL_TRUST_SCORE,
                last_login_at=verified_at,
            )
            return await self.create_user(user), True

        user.uf_email_verified = True
        user.trust_score = (user.trust_score or 0) + REVERIFICATION_TRUST_BONUS
        user.last_login_at = verified_at
        await self.db.commit()
        await self.db.refresh(user)
        return user, False

    async def complete_profile(self, user: User, name: str, phone_number: str) -> User:
        user.name = name
        user.phone_number = phone_number
        user.profile_completed = True
        await self.db.commit()
        await self.db.refresh(user)
        return user
