from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from sqlalchemy import text
from coderoom.config import settings
from coderoom.utils.logging_config import database_logger


def _engine_options(url: str) -> dict:
    # SQLite (tests, local dev) has no connection pool to size
    if url.startswith("sqlite"):
        return {"poolclass": NullPool}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": settings.DB_POOL_PRE_PING,
    }


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    **_engine_options(settings.DATABASE_URL),
)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db():
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    # Register mappers before create_all
    from coderoom.models.user import User  # noqa: F401
    from coderoom.models.problem import Problem  # noqa: F401
    from coderoom.models.room import Room, RoomParticipant  # noqa: F401

    database_logger.info("Initializing database...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    database_logger.success("Database schema created/updated")


async def check_db() -> bool:
    """Lightweight connectivity probe used by /ready."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        database_logger.error("Database health check failed", extra={"error": str(e)})
        return False


async def close_db():
    await engine.dispose()
    database_logger.info("Database engine disposed")
