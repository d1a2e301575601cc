"""
Campaign management endpoints.

Every mutation goes through ``rate_limit_guard``: it validates the body,
then either picks the token (system user or the user's own) or queues
the request and answers 202.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, Optional
from api.dependencies import get_db, get_graph_client, get_facebook_auth
from api.rate_limit_guard import DispatchContext, rate_limit_guard, record_usage
from core.exceptions import ValidationError
from facebook.graph_client import GraphAPIClient
from models.base import ActionType
from models.facebook_auth import FacebookAuth
from schemas.api import success_response
from schemas.campaigns import CampaignCreate, CampaignEdit, BudgetUpdate, CampaignDuplicate, BatchOperation
from services.campaign_actions import build_request_body, execute_action
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/campaigns", tags=["Campaigns"])

CAMPAIGN_FIELDS = (
    "id", "name", "objective", "status", "effective_status",
    "daily_budget", "lifetime_budget", "bid_strategy", "created_time", "updated_time",
)


async def _dispatch(
    db: AsyncSession,
    graph: GraphAPIClient,
    ctx: DispatchContext,
    action_type: ActionType,
    path_params: Dict[str, Any],
    body: Dict[str, Any],
) -> Dict[str, Any]:
    if not ctx.access_token:
        raise HTTPException(status_code=401, detail="Facebook account not connected")

    result = await execute_action(
        graph,
        action_type,
        ctx.ad_account_id,
        {"body": build_request_body(action_type, path_params, body)},
        ctx.access_token,
        rotate=ctx.rotate,
    )
    await record_usage(db, ctx, graph.last_headers)
    return result


@router.post("/create")
async def create_campaign(
    payload: CampaignCreate,
    ctx: DispatchContext = Depends(rate_limit_guard(CampaignCreate)),
    graph: GraphAPIClient = Depends(get_graph_client),
    db: AsyncSession = Depends(get_db)
):
    if not ctx.ad_account_id:
        raise ValidationError("Ad account ID is required", context={"field_name": "adAccountId"})

    result = await _dispatch(db, graph, ctx, ActionType.CREATE_CAMPAIGN, {}, payload.dict())
    logger.info(f"User {ctx.user_id} created campaign {payload.name} in {ctx.ad_account_id}")
    return success_response(result, message="Campaign created successfully", usedSystemUser=ctx.using_system_user)


@router.put("/{campaign_id}/edit")
async def edit_campaign(
    campaign_id: str,
    payload: CampaignEdit,
    ctx: DispatchContext = Depends(rate_limit_guard(CampaignEdit)),
    graph: GraphAPIClient = Depends(get_graph_client),
    db: AsyncSession = Depends(get_db)
):
    updates = payload.dict(exclude_none=True)
    updates.pop("ad_account_id", None)

    result = await _dispatch(db, graph, ctx, ActionType.UPDATE_CAMPAIGN, {"campaign_id": campaign_id}, updates)
    return success_response(result, message="Campaign updated successfully")


@router.put("/{campaign_id}/budget")
async def update_budget(
    campaign_id: str,
    payload: BudgetUpdate,
    ctx: DispatchContext = Depends(rate_limit_guard(BudgetUpdate)),
    graph: GraphAPIClient = Depends(get_graph_client),
    db: AsyncSession = Depends(get_db)
):
    budget = {"daily_budget": payload.daily_budget, "lifetime_budget": payload.lifetime_budget}
    result = await _dispatch(db, graph, ctx, ActionType.UPDATE_CAMPAIGN, {"campaign_id": campaign_id}, budget)
    return success_response(result, message="Budget updated successfully")


@router.post("/{campaign_id}/duplicate")
async def duplicate_campaign(
    campaign_id: str,
    payload: CampaignDuplicate,
    ctx: DispatchContext = Depends(rate_limit_guard(CampaignDuplicate)),
    graph: GraphAPIClient = Depends(get_graph_client),
    db: AsyncSession = Depends(get_db)
):
    result = await _dispatch(
        db, graph, ctx, ActionType.DUPLICATE_CAMPAIGN, {"campaign_id": campaign_id}, payload.dict()
    )
    return success_response(result, message=f"Campaign duplicated {payload.number_of_copies} time(s)")


@router.post("/batch")
async def batch_operation(
    payload: BatchOperation,
    ctx: DispatchContext = Depends(rate_limit_guard(BatchOperation)),
    graph: GraphAPIClient = Depends(get_graph_client),
    db: AsyncSession = Depends(get_db)
):
    result = await _dispatch(db, graph, ctx, ActionType.BATCH_OPERATION, {}, payload.dict())
    return success_response(result, message=f"Batch {payload.action} completed")


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    fields: Optional[str] = Query(None, description="Comma separated Graph fields"),
    auth: FacebookAuth = Depends(get_facebook_auth),
    graph: GraphAPIClient = Depends(get_graph_client)
):
    requested = [f.strip() for f in fields.split(",") if f.strip()] if fields else list(CAMPAIGN_FIELDS)
    campaign = await graph.get_entity(campaign_id, requested, auth.access_token)
    return success_response(campaign)
