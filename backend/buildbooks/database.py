from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError

from buildbooks.config import settings
from buildbooks.errors import BuildBooksError, ConflictError, StorageError

# ---------------------------------------------------------------------------
# Async engine & session (used by FastAPI at runtime)
# ---------------------------------------------------------------------------
_engine_kwargs: dict = {"echo": settings.DATABASE_ECHO}
if not settings.DATABASE_URL.startswith("sqlite"):
    _engine_kwargs.update(pool_size=20, max_overflow=10)

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs)

AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# ---------------------------------------------------------------------------
# Declarative base for all models
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


async def init_models() -> None:
    """Create any missing tables (no migration tool in this deployment)."""
    import buildbooks.models  # noqa: F401  registers every table on Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


@asynccontextmanager
async def unit_of_work(db: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """Commit everything flushed inside the block together, or nothing.

    Domain errors propagate unchanged after the rollback.  Optimistic-lock
    failures and constraint violations surface as ``ConflictError``; any other
    driver failure is wrapped in ``StorageError``.
    """
    try:
        yield db
        await db.commit()
    except BuildBooksError:
        await db.rollback()
        raise
    except (StaleDataError, IntegrityError) as e:
        await db.rollback()
        raise ConflictError(
            "The record was changed by another request; reload and retry"
        ) from e
    except SQLAlchemyError as e:
        await db.rollback()
        raise StorageError(f"Storage failure: {e.__class__.__name__}") from e
