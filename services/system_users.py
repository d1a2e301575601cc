"""
System user token pool for internal ad accounts.

System users belong to our own Business Managers and get their own hourly
call budget, so internal ad accounts are served from this pool before the
user's OAuth token is touched.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional
from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.exceptions import ValidationError, DatabaseError
from models.internal_ad_account import InternalAdAccount
from models.system_user import SystemUser
from services.rate_limit import get_header
import logging

logger = logging.getLogger(__name__)


class SystemUserManager:
    """
    Selection and accounting for system user tokens.

    Attributes:
        hourly_limit: Calls per hour per system user (default: 200)
        availability_threshold: Users at or above this usage are skipped (default: 180)
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        self.hourly_limit = settings.SYSTEM_USER_LIMIT
        self.availability_threshold = settings.SYSTEM_USER_THRESHOLD

    async def is_internal_account(self, ad_account_id: str) -> bool:
        result = await self.db.execute(
            select(InternalAdAccount.id).where(
                InternalAdAccount.ad_account_id == ad_account_id,
                InternalAdAccount.is_active.is_(True),
                InternalAdAccount.use_system_users.is_(True),
            )
        )
        return result.first() is not None

    async def get_available_system_user(self) -> Optional[SystemUser]:
        """
        Least used active system user with capacity left.

        Users whose reset time has passed are reset first.
        """
        now = datetime.utcnow()
        await self.db.execute(
            update(SystemUser)
            .where(SystemUser.rate_limit_reset_at <= now)
            .values(rate_limit_used=0, rate_limit_reset_at=None)
        )
        await self.db.commit()

        result = await self.db.execute(
            select(SystemUser)
            .where(
                SystemUser.is_active.is_(True),
                or_(
                    SystemUser.rate_limit_used < self.availability_threshold,
                    SystemUser.rate_limit_reset_at.is_(None),
                ),
            )
            .order_by(SystemUser.rate_limit_used.asc(), SystemUser.id.asc())
            .limit(1)
        )
        system_user = result.scalar_one_or_none()

        if system_user is None:
            logger.warning("No system user with available capacity")
        return system_user

    async def increment_usage(self, system_user: SystemUser, increment_by: int = 1) -> SystemUser:
        system_user.rate_limit_used += increment_by
        if system_user.rate_limit_used >= self.hourly_limit:
            system_user.rate_limit_reset_at = datetime.utcnow() + timedelta(hours=1)
            logger.info(f"System user {system_user.name} reached its hourly limit")
        await self.db.commit()
        return system_user

    async def update_from_headers(self, system_user: SystemUser, headers: Mapping[str, str]) -> SystemUser:
        """Sync usage with what Facebook reports (``call_count`` / ``total_time``)."""
        business_usage = get_header(headers, "x-business-use-case-usage")
        if not business_usage and not get_header(headers, "x-app-usage"):
            return system_user

        call_count, reset_at = 0, None
        if business_usage:
            try:
                usage = json.loads(business_usage)
                entries = next(iter(usage.values()), None)
            except (ValueError, AttributeError) as e:
                logger.warning(f"Could not parse usage header for system user {system_user.id}: {e}")
                return system_user
            if entries:
                call_count = entries[0].get("call_count") or 0
                total_time = entries[0].get("total_time") or 3600
                reset_at = datetime.utcnow() + timedelta(seconds=total_time)

        system_user.rate_limit_used = call_count
        system_user.rate_limit_reset_at = reset_at
        await self.db.commit()
        return system_user

    async def add_system_user(
        self,
        name: str,
        system_user_id: str,
        access_token: str,
        business_manager_id: str,
    ) -> SystemUser:
        system_user = SystemUser(
            name=name,
            system_user_id=system_user_id,
            access_token=access_token,
            business_manager_id=business_manager_id,
            rate_limit_used=0,
            is_active=True,
        )
        self.db.add(system_user)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ValidationError(
                f"System user {system_user_id} already exists",
                context={"field_name": "systemUserId"},
                original_exception=e,
            )
        await self.db.refresh(system_user)
        logger.info(f"Added system user {name} ({system_user_id})")
        return system_user

    async def add_internal_account(
        self,
        ad_account_id: str,
        business_manager_id: str,
        business_manager_name: Optional[str] = None,
    ) -> InternalAdAccount:
        """Create the internal account, or reactivate and update an existing one."""
        result = await self.db.execute(
            select(InternalAdAccount).where(InternalAdAccount.ad_account_id == ad_account_id)
        )
        account = result.scalar_one_or_none()

        if account is None:
            account = InternalAdAccount(
                ad_account_id=ad_account_id,
                business_manager_id=business_manager_id,
                business_manager_name=business_manager_name,
                use_system_users=True,
                is_active=True,
            )
            self.db.add(account)
        else:
            account.business_manager_id = business_manager_id
            account.business_manager_name = business_manager_name
            account.is_active = True

        try:
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise DatabaseError(
                "Failed to save internal ad account",
                context={"operation": "UPSERT", "table_name": "internal_ad_accounts"},
                original_exception=e,
            )
        await self.db.refresh(account)
        return account

    async def get_system_users_status(self) -> List[Dict[str, Any]]:
        result = await self.db.execute(select(SystemUser).order_by(SystemUser.id.asc()))
        return [
            {
                "id": su.id,
                "name": su.name,
                "systemUserId": su.system_user_id,
                "businessManagerId": su.business_manager_id,
                "usage": f"{su.rate_limit_used}/{self.hourly_limit}",
                "usagePercent": f"{su.rate_limit_used / self.hourly_limit * 100:.1f}",
                "resetAt": su.rate_limit_reset_at.isoformat() if su.rate_limit_reset_at else None,
                "isActive": su.is_active,
                "available": su.rate_limit_used < self.availability_threshold and su.is_active,
            }
            for su in result.scalars().all()
        ]
