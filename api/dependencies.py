"""
FastAPI dependencies: database session, caller identity, stored Facebook login.

Authentication happens upstream; the caller's user id arrives in the
``X-User-ID`` header and their roles, comma separated, in ``X-User-Roles``.
"""

from typing import AsyncGenerator, Optional
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.database import async_session_maker
from core.exceptions import IntelligenceDisabledError, PermissionDeniedError
from facebook.graph_client import GraphAPIClient, shared_stats
from models.facebook_auth import FacebookAuth
from services.accounts import get_active_auth


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request scoped database session"""
    async with async_session_maker() as session:
        yield session


async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user id")


ADMIN_ROLE = "superadmin"


async def require_admin(
    user_id: int = Depends(get_current_user_id),
    x_user_roles: Optional[str] = Header(None, alias="X-User-Roles"),
) -> int:
    roles = {role.strip() for role in (x_user_roles or "").split(",")}
    if ADMIN_ROLE not in roles:
        raise PermissionDeniedError("Admin access required", context={"user_id": user_id})
    return user_id


async def get_facebook_auth(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> FacebookAuth:
    auth = await get_active_auth(db, user_id)
    if auth is None:
        raise HTTPException(status_code=401, detail="Facebook account not connected")
    return auth


async def require_intelligence():
    if not settings.ENABLE_INTELLIGENCE:
        raise IntelligenceDisabledError()


def get_graph_client() -> GraphAPIClient:
    """
    Graph API client for one request.

    Rotation counters and request statistics are process wide, so a
    fresh client per request only isolates ``last_headers``.
    """
    return GraphAPIClient(stats=shared_stats)
