"""
Database configuration and session management.
"""

import os
from sqlalchemy.orm import declarative_base
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from .config import settings

if os.getenv("TESTING") == "1" or settings.DATABASE_URL.startswith("sqlite"):
    # SQLite does not accept pool sizing arguments
    async_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        future=True
    )
else:
    # For production with PostgreSQL
    async_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        future=True,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20
    )

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


def get_db_session() -> AsyncSession:
    """Get a single database session from the current session factory"""
    return AsyncSessionLocal()
