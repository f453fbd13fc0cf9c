import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.config import get_settings
from src.models.base import Base

logger = logging.getLogger(__name__)

settings = get_settings()


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo, future=True)
    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,  # Check connection health before use
        pool_recycle=300,  # Recycle connections after 5 minutes
        pool_timeout=30,
    )


engine = create_engine_for_url(settings.database_url, echo=settings.database_echo)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db() -> None:
    """Create tables, retrying while the database comes up."""
    max_retries = 5
    retry_delay = 2  # seconds

    for attempt in range(max_retries):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            return
        except Exception as e:
            if attempt < max_retries - 1:
                logger.warning(
                    f"DB connection attempt {attempt + 1}/{max_retries} failed: {e}. "
                    f"Retrying in {retry_delay} seconds..."
                )
                await asyncio.sleep(retry_delay)
                retry_delay *= 2  # Exponential backoff
            else:
                logger.error(f"Failed to connect to database after {max_retries} attempts")
                raise

