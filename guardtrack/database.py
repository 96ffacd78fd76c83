from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlmodel import SQLModel
from guardtrack.config import settings
from typing import Annotated
from fastapi import Depends

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    pool_pre_ping=True
)

# Objects stay readable after commit; services build wire payloads post-commit
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

async def get_db():
    """One session per request; uncommitted work is rolled back on error"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise

SessionDep = Annotated[AsyncSession, Depends(get_db)]

async def create_db_and_tables():
    # Table classes register on the metadata at import time
    import guardtrack.models.user  # noqa: F401
    import guardtrack.models.location  # noqa: F401
    import guardtrack.models.shift  # noqa: F401
    import guardtrack.models.tracking  # noqa: F401
    import guardtrack.models.emergency  # noqa: F401
    import guardtrack.models.notification  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
