from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from stable_automation.config.settings import settings

# Every Celery task runs its own event loop via asyncio.run(), so pooled
# connections must not outlive a task.
engine = create_async_engine(
    str(settings.DATABASE_URL),
    poolclass=NullPool,
    pool_pre_ping=True,
    echo=False,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def get_async_session():
    """Dependency to get async database session"""
    db = AsyncSessionLocal()
    try:
        yield db
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()
