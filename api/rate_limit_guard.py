"""
Rate limit dispatch for campaign mutation routes.

Decides, per request, which token serves the call:

    internal account + free system user -> system user token
    user under the queue threshold       -> user token (with app rotation)
    user over the threshold              -> request queued, HTTP 202

The route receives a ``DispatchContext`` and, after its Graph API call,
hands the usage headers back through ``record_usage``.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Type
from fastapi import Depends, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ValidationError as PayloadError
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_current_user_id, get_db
from core.exceptions import RequestQueuedError
from models.base import ActionType
from models.system_user import SystemUser
from services.accounts import get_active_auth
from services.campaign_actions import build_request_body
from services.rate_limit import RateLimitService, RateLimitStatus
from services.system_users import SystemUserManager

logger = logging.getLogger(__name__)

QUEUE_PRIORITY = 5


class DispatchContext(BaseModel):
    user_id: int
    ad_account_id: Optional[str] = None
    access_token: Optional[str] = None
    using_system_user: bool = False
    system_user_id: Optional[int] = None
    rate_limit_status: Optional[RateLimitStatus] = None

    @property
    def rotate(self) -> bool:
        """System user tokens are sent as-is; user tokens go through app rotation."""
        return not self.using_system_user


def determine_action_type(path: str, method: str) -> ActionType:
    path = path.lower()
    is_post = method.upper() == "POST"

    if "/duplicate" in path or "/strategy-150" in path:
        return ActionType.DUPLICATE_CAMPAIGN
    if "/batch" in path:
        return ActionType.BATCH_OPERATION
    if "/campaign" in path:
        return ActionType.CREATE_CAMPAIGN if is_post else ActionType.UPDATE_CAMPAIGN
    if "/adset" in path:
        return ActionType.CREATE_ADSET if is_post else ActionType.UPDATE_ADSET
    if "/ad" in path:
        return ActionType.CREATE_AD if is_post else ActionType.UPDATE_AD
    return ActionType.CREATE_CAMPAIGN


async def _read_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def resolve_ad_account_id(request: Request, body: Dict[str, Any]) -> Optional[str]:
    return (
        body.get("adAccountId")
        or body.get("ad_account_id")
        or request.path_params.get("ad_account_id")
        or request.query_params.get("adAccountId")
    )


def rate_limit_guard(schema: Type[BaseModel]) -> Callable[..., Awaitable[DispatchContext]]:
    """
    Build the dispatch dependency for a route whose body is ``schema``.

    The body is validated before any token is picked, so an invalid
    payload is rejected with 400 without charging a system user or being
    queued.
    """

    async def guard(
        request: Request,
        user_id: int = Depends(get_current_user_id),
        db: AsyncSession = Depends(get_db),
    ) -> DispatchContext:
        """
        Raises:
            RequestValidationError: The body does not match ``schema`` (400)
            RequestQueuedError: The request was stored in the queue (202)
            HTTPException: 401 when a queued request has no token to run with
        """
        body = await _read_body(request)
        try:
            payload = schema.parse_obj(body)
        except PayloadError as e:
            raise RequestValidationError(e.errors())

        auth = await get_active_auth(db, user_id)
        ad_account_id = resolve_ad_account_id(request, body) or (auth.selected_ad_account_id if auth else None)

        ctx = DispatchContext(
            user_id=user_id,
            ad_account_id=ad_account_id,
            access_token=auth.access_token if auth else None,
        )
        if not ad_account_id:
            return ctx

        try:
            return await _dispatch(request, db, ctx, payload)
        except (RequestQueuedError, HTTPException):
            raise
        except Exception as e:
            # Dispatch problems never block the user's request
            logger.error(f"Rate limit guard error for user {user_id} / {ad_account_id}: {e}")
            await db.rollback()
            return ctx

    return guard


async def _dispatch(request: Request, db: AsyncSession, ctx: DispatchContext, payload: BaseModel) -> DispatchContext:
    system_users = SystemUserManager(db)
    if await system_users.is_internal_account(ctx.ad_account_id):
        system_user = await system_users.get_available_system_user()
        if system_user is not None:
            await system_users.increment_usage(system_user)
            ctx.access_token = system_user.access_token
            ctx.using_system_user = True
            ctx.system_user_id = system_user.id
            logger.info(f"Using system user {system_user.system_user_id} for internal account {ctx.ad_account_id}")
            return ctx
        logger.info(f"No available system users, falling back to OAuth for {ctx.ad_account_id}")

    rate_limits = RateLimitService(db)
    status = await rate_limits.check_rate_limit(ctx.user_id, ctx.ad_account_id)
    ctx.rate_limit_status = status
    if status.can_proceed:
        return ctx

    logger.info(
        f"Rate limit exceeded for user {ctx.user_id} on {ctx.ad_account_id} "
        f"({status.usage_percentage:.1f}%), queueing request"
    )
    if not ctx.access_token:
        raise HTTPException(status_code=401, detail="No access token available for queued request")

    action_type = determine_action_type(request.url.path, request.method)
    queued = await rate_limits.queue_request(
        user_id=ctx.user_id,
        ad_account_id=ctx.ad_account_id,
        action_type=action_type,
        request_data={
            "method": request.method,
            "path": request.url.path,
            "params": dict(request.path_params),
            "query": dict(request.query_params),
            "body": build_request_body(action_type, dict(request.path_params), payload.dict(exclude_none=True)),
        },
        access_token=ctx.access_token,
        priority=QUEUE_PRIORITY,
        process_after=status.reset_at,
    )
    raise RequestQueuedError(
        "Request queued due to rate limit",
        queue_id=queued["request"].id,
        estimated_wait_minutes=queued["estimated_wait_minutes"],
        process_after=queued["request"].process_after,
        rate_limit_status=status.as_response(),
    )


async def record_usage(db: AsyncSession, ctx: DispatchContext, headers: Mapping[str, str]) -> None:
    """Feed Graph API usage headers back into the right tracker."""
    if not headers or not ctx.ad_account_id:
        return

    if ctx.using_system_user and ctx.system_user_id:
        system_user = await db.get(SystemUser, ctx.system_user_id)
        if system_user is not None:
            await SystemUserManager(db).update_from_headers(system_user, headers)
        return

    await RateLimitService(db).update_from_headers(ctx.user_id, ctx.ad_account_id, headers)
