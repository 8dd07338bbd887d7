"""
MemberRank Database Session Management

Async SQLAlchemy engine and session factories. The API shares one pooled
engine; Celery tasks build a short-lived engine per run because every task
invocation drives its own event loop.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings

settings = get_settings()


def build_engine(database_url: str, *, echo: bool = False, pooled: bool = True) -> AsyncEngine:
    """Create an async engine; SQLite URLs skip the pool sizing options."""
    kwargs: dict = {"echo": echo}
    if pooled and not database_url.startswith("sqlite"):
        kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
    return create_async_engine(database_url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.database_echo)

AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass
