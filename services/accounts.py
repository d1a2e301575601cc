"""Lookups for users' connected Facebook logins."""

from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from models.facebook_auth import FacebookAuth


async def get_active_auth(db: AsyncSession, user_id: int) -> Optional[FacebookAuth]:
    """Most recently updated active login for a user."""
    result = await db.execute(
        select(FacebookAuth)
        .where(FacebookAuth.user_id == user_id, FacebookAuth.is_active.is_(True))
        .order_by(FacebookAuth.updated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_active_auths(db: AsyncSession) -> List[FacebookAuth]:
    """Active logins that have an ad account selected."""
    result = await db.execute(
        select(FacebookAuth)
        .where(
            FacebookAuth.is_active.is_(True),
            FacebookAuth.selected_ad_account_id.isnot(None),
        )
        .order_by(FacebookAuth.user_id.asc())
    )
    return list(result.scalars().all())
