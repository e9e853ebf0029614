from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings
from core.exceptions import PersistenceError
from core.logger import logger


def build_engine(url: str = None):
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        # aiosqlite does not take pool sizing arguments
        return create_async_engine(url, echo=False, future=True)

    # PostgreSQL driver for async operations is asyncpg
    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_size=20,       # Base connections
        max_overflow=10,    # Burst connections
        future=True
    )


def build_sessionmaker(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = build_engine()
AsyncSessionLocal = build_sessionmaker(engine)


async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


# Set in AsyncSession.info while an atomic() block owns the transaction
_ATOMIC_KEY = "exambot.atomic"


@asynccontextmanager
async def atomic(db: AsyncSession):
    """
    Run a block of reads and writes as one unit of work.
    Commits on success. Any exception rolls the whole block back;
    driver/ORM failures surface as PersistenceError.
    A nested atomic() joins the enclosing block instead of committing early.

    Rollback expires every loaded instance, so callers check preconditions
    before entering the block and only raise in here once something was written.
    """
    if db.info.get(_ATOMIC_KEY):
        yield db
        return

    db.info[_ATOMIC_KEY] = True
    try:
        yield db
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Transaction rolled back", error=str(e))
        raise PersistenceError(str(e)) from e
    except BaseException:
        await db.rollback()
        raise
    finally:
        db.info.pop(_ATOMIC_KEY, None)


@asynccontextmanager
async def reading(db: AsyncSession):
    """
    Wrap reads made outside atomic(). Store failures surface as PersistenceError.
    A transaction begun here is ended with a commit, which writes nothing and
    leaves loaded instances usable (expire_on_commit=False).
    """
    if db.info.get(_ATOMIC_KEY):
        yield db
        return

    owns_transaction = not db.in_transaction()
    try:
        yield db
    except SQLAlchemyError as e:
        if owns_transaction:
            await db.rollback()
        logger.error("Read failed", error=str(e))
        raise PersistenceError(str(e)) from e
    except PersistenceError:
        # Raised by a nested read; the transaction may be unusable
        if owns_transaction:
            await db.rollback()
        raise
    except BaseException:
        if owns_transaction and db.in_transaction():
            await db.commit()
        raise
    if owns_transaction and db.in_transaction():
        await db.commit()
