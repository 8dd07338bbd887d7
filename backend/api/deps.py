"""
MemberRank API Dependencies

Dependency injection for DB sessions, operator identity, collaborators and
the clock. Every engine collaborator is a dependency so tests (and other
deployments) can override it.
"""

from collections.abc import AsyncGenerator, Callable
from datetime import datetime

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from core.security import decode_access_token, is_admin
from db.session import AsyncSessionLocal
from ranks.promotions import DbPromotionSignalSource, PromotionSignalSource
from ranks.sales import DbSalesAggregator, SalesAggregator

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

DEV_OPERATOR_ID = "dev-admin"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for batch work that needs one transaction per member."""
    return AsyncSessionLocal


def get_sales_aggregator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SalesAggregator:
    return DbSalesAggregator(session_factory)


def get_signal_source(db: AsyncSession = Depends(get_db)) -> PromotionSignalSource:
    return DbPromotionSignalSource(db)


def get_clock() -> Callable[[], datetime]:
    """Naive-UTC clock; the engine never reads the time on its own."""
    return datetime.utcnow


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return the operator payload. Bypassed in debug mode."""
    if settings.debug:
        return {"sub": DEV_OPERATOR_ID, "email": "dev@memberrank.local", "role": "ADMIN"}

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return user
