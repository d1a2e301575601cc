"""
Rate limit administration: system users, internal accounts, request queue
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_current_user_id
from core.config import settings
from core.exceptions import ValidationError
from models.base import QueueStatus
from schemas.api import success_response
from schemas.rate_limits import SystemUserCreate, InternalAccountCreate, serialize_queued_request
from services.rate_limit import RateLimitService
from services.system_users import SystemUserManager
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/rate-limits", tags=["Rate Limits"])


@router.get("/system-users/status")
async def system_users_status(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    system_users = await SystemUserManager(db).get_system_users_status()
    return success_response(
        systemUsers=system_users,
        totalCapacity=len(system_users) * settings.SYSTEM_USER_LIMIT,
    )


@router.post("/system-users")
async def add_system_user(
    payload: SystemUserCreate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    system_user = await SystemUserManager(db).add_system_user(
        name=payload.name,
        system_user_id=payload.system_user_id,
        access_token=payload.access_token,
        business_manager_id=payload.business_manager_id,
    )
    return success_response(
        message="System User added successfully",
        systemUser={
            "id": system_user.id,
            "name": system_user.name,
            "systemUserId": system_user.system_user_id,
            "businessManagerId": system_user.business_manager_id,
        },
    )


@router.post("/internal-accounts")
async def add_internal_account(
    payload: InternalAccountCreate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    account = await SystemUserManager(db).add_internal_account(
        ad_account_id=payload.ad_account_id,
        business_manager_id=payload.business_manager_id,
        business_manager_name=payload.business_manager_name,
    )
    return success_response(
        message="Internal account added successfully",
        account={
            "id": account.id,
            "adAccountId": account.ad_account_id,
            "businessManagerId": account.business_manager_id,
            "businessManagerName": account.business_manager_name,
        },
    )


@router.get("/queue/my-requests")
async def my_queued_requests(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    requests = await RateLimitService(db).get_user_queued_requests(user_id)
    return success_response(
        requests=[serialize_queued_request(r) for r in requests],
        count=len(requests),
    )


@router.delete("/queue/{request_id}")
async def cancel_queued_request(
    request_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    queued = await RateLimitService(db).cancel_request(user_id, request_id)
    logger.info(f"User {user_id} cancelled queued request {request_id}")
    return success_response(message="Request cancelled", request=serialize_queued_request(queued))


@router.get("/rate-limit/status")
async def rate_limit_status(
    ad_account_id: Optional[str] = Query(None, alias="adAccountId"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    if not ad_account_id:
        raise ValidationError("adAccountId is required", context={"field_name": "adAccountId"})

    status = await RateLimitService(db).check_rate_limit(user_id, ad_account_id)
    return success_response(rateLimit=status.as_response())


@router.get("/queue/all")
async def all_queued_requests(
    status: str = Query("queued", description="Queue status or 'all'"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    status_filter = None
    if status != "all":
        try:
            status_filter = QueueStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid status: {status}", context={"field_name": "status"})

    listing = await RateLimitService(db).list_requests(status_filter, page, limit)
    return success_response(
        requests=[serialize_queued_request(r) for r in listing["requests"]],
        pagination={
            "total": listing["total"],
            "page": listing["page"],
            "limit": listing["limit"],
            "totalPages": listing["total_pages"],
        },
    )
