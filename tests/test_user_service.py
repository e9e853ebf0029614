from datetime import timedelta

from core.config import settings
from services.user_service import UserService
from conftest import USER_ID


async def test_get_or_create_user(db, bank):
    users = UserService(db)

    user, is_new = await users.get_or_create_user(USER_ID, full_name="Renamed", username="taker")
    assert is_new is False
    assert user.full_name == "Renamed"
    assert user.username == "taker"

    fresh, is_new = await users.get_or_create_user(777, full_name="Newcomer")
    assert is_new is True
    assert fresh.is_active is True
    assert (await users.get_user(777)).full_name == "Newcomer"


async def test_no_failure_means_eligible(db, bank, clock):
    assert await UserService(db, clock=clock).retake_eligibility(USER_ID) == (True, None)


async def test_cooldown_after_failure(db, bank, clock):
    users = UserService(db, clock=clock)
    failed_at = clock()
    await users.mark_failure(USER_ID, failed_at)
    await db.commit()

    allowed, next_at = await users.retake_eligibility(USER_ID)
    assert allowed is False
    assert next_at == failed_at + timedelta(days=settings.FAILED_COOLDOWN_DAYS)

    clock.advance(minutes=settings.FAILED_COOLDOWN_DAYS * 24 * 60 - 1)
    assert (await users.retake_eligibility(USER_ID))[0] is False

    clock.advance(minutes=1)
    assert await users.retake_eligibility(USER_ID) == (True, None)
