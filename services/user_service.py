from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from models.base import utcnow
from models.user import User
from db.session import atomic, reading
from core.config import settings
from core.logger import logger

class UserService:
    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def get_user(self, telegram_id: int) -> Optional[User]:
        async with reading(self.db):
            result = await self.db.execute(select(User).filter(User.telegram_id == telegram_id))
            return result.scalar_one_or_none()

    async def get_or_create_user(self, telegram_id: int, **kwargs) -> Tuple[User, bool]:
        async with atomic(self.db):
            user = await self.get_user(telegram_id)
            is_new = False

            if not user:
                user = User(telegram_id=telegram_id, **kwargs)
                user.is_active = True
                self.db.add(user)
                is_new = True
            else:
                # Reactivate if inactive
                if not user.is_active:
                    user.is_active = True
                    logger.info("Inactive user became active", telegram_id=telegram_id)

                # Keep profile info current
                for key in ("full_name", "username"):
                    if kwargs.get(key) and kwargs[key] != getattr(user, key):
                        setattr(user, key, kwargs[key])

        if is_new:
            logger.info("New user created", telegram_id=telegram_id)
        return user, is_new

    async def get_last_failure_timestamp(self, telegram_id: int) -> Optional[datetime]:
        async with reading(self.db):
            result = await self.db.execute(select(User.last_failed_at).filter(User.telegram_id == telegram_id))
            return result.scalar_one_or_none()

    async def mark_failure(self, telegram_id: int, when: datetime):
        """Set the cooldown anchor. Runs inside the caller's transaction; does not commit."""
        result = await self.db.execute(
            update(User).where(User.telegram_id == telegram_id).values(last_failed_at=when)
        )
        if result.rowcount != 1:
            logger.warning("Cooldown anchor not stored, user row missing", telegram_id=telegram_id)

    async def retake_eligibility(self, telegram_id: int) -> Tuple[bool, Optional[datetime]]:
        """
        Cooldown policy applied before starting a timed exam.
        Returns (allowed, next_eligible_at); next_eligible_at is None when allowed.
        """
        last_failed = await self.get_last_failure_timestamp(telegram_id)
        if last_failed is None:
            return True, None

        next_eligible = last_failed + timedelta(days=settings.FAILED_COOLDOWN_DAYS)
        if self.clock() >= next_eligible:
            return True, None
        return False, next_eligible
