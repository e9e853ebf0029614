"""
Pytest configuration and fixtures for the exam engine tests.
"""
import sys
import os
import random
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Settings are read at import time; keep tests off any real database or bot
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENV", "development")

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from core.config import settings
from db.session import build_sessionmaker
from models.base import Base
from models.user import User
from models.question import Question, Answer, QTYPE_SINGLE, QTYPE_MULTI
from models import session as _session_models  # noqa: F401  (registers session tables)
from services.session_service import SessionService
from services.selection_service import SelectionService
from services.question_service import QuestionService

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

USER_ID = 555000111
EXTRA_PER_CATEGORY = 4


class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 1, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0):
        self.now += timedelta(seconds=seconds, minutes=minutes)


class Bank:
    """What the seeded question bank looks like, for building answers in tests."""

    def __init__(self):
        self.qtype = {}
        self.category = {}
        self.correct = {}
        self.wrong = {}

    def correct_ids(self, question_id):
        return sorted(self.correct[question_id])


@pytest_asyncio.fixture
async def sessionmaker():
    # One shared in-memory connection for every AsyncSession in the test
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        # SQLite ignores FOREIGN KEY clauses unless asked per connection
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield build_sessionmaker(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def db(sessionmaker):
    async with sessionmaker() as session:
        yield session


@pytest_asyncio.fixture
async def bank(db):
    """
    Seed every category with its quota plus a few spares.
    Odd positions are multi-choice with two correct options, the rest single-choice.
    """
    info = Bank()
    n = 0
    for category, quota in settings.CATEGORY_QUOTA.items():
        for i in range(quota + EXTRA_PER_CATEGORY):
            n += 1
            qtype = QTYPE_MULTI if n % 2 else QTYPE_SINGLE
            question = Question(category=category, qtype=qtype, text=f"{category} question {i}", is_active=True)
            correct_flags = [True, True, False, False] if qtype == QTYPE_MULTI else [False, True, False, False]
            question.answers = [
                Answer(text=f"option {k}", is_correct=flag, order_index=k)
                for k, flag in enumerate(correct_flags)
            ]
            db.add(question)
            await db.flush()
            info.qtype[question.id] = qtype
            info.category[question.id] = category
            info.correct[question.id] = [a.id for a in question.answers if a.is_correct]
            info.wrong[question.id] = [a.id for a in question.answers if not a.is_correct]

    # An inactive question must never be drawn
    inactive = Question(category="objects", qtype=QTYPE_SINGLE, text="retired", is_active=False)
    inactive.answers = [Answer(text="x", is_correct=True, order_index=0), Answer(text="y", is_correct=False, order_index=1)]
    db.add(inactive)

    db.add(User(telegram_id=USER_ID, full_name="Test Taker"))
    await db.commit()
    return info


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine_for(clock):
    """Build a SessionService over any AsyncSession, sharing the test clock."""
    def factory(db, seed=None):
        rng = random.Random(seed) if seed is not None else None
        questions = QuestionService(db)
        return SessionService(db, questions=questions, selection=SelectionService(questions, rng=rng), clock=clock)
    return factory


@pytest.fixture
def service(db, engine_for):
    return engine_for(db)
