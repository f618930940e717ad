"""
Shared FastAPI dependencies
"""

import hmac
from typing import AsyncGenerator, Optional

from fastapi import Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import get_session
from core.exceptions import AdminAuthorizationError
from ingestion.remote.client import NetSuiteClient

ADMIN_SECRET_HEADER = "x-admin-secret"

TRUTHY = {"1", "true", "yes", "y", "on"}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped database session"""
    async for session in get_session():
        yield session


async def require_admin_secret(
    x_admin_secret: Optional[str] = Header(None, alias=ADMIN_SECRET_HEADER),
) -> None:
    """Reject the call unless the shared admin secret is configured and matches"""
    expected = settings.ADMIN_SYNC_SECRET
    if not expected or not x_admin_secret or not hmac.compare_digest(x_admin_secret.encode(), expected.encode()):
        raise AdminAuthorizationError("Unauthorized", context={"header": ADMIN_SECRET_HEADER})


def get_netsuite_client(request: Request) -> NetSuiteClient:
    """NetSuite client owned by the application lifespan"""
    return request.app.state.netsuite


def parse_flag(value: Optional[str]) -> bool:
    """Query string boolean: 1/true/yes/y/on"""
    if value is None:
        return False
    return value.strip().lower() in TRUTHY
