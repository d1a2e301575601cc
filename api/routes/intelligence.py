"""
Campaign intelligence endpoints: backfill, snapshots, account scores, pixel
health, patterns, rules, expert rules, actions and notifications.

Every route answers 503 unless ENABLE_INTELLIGENCE is set. Running jobs and
changing expert rules need the superadmin role.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from api.dependencies import (
    get_current_user_id,
    get_db,
    get_facebook_auth,
    get_graph_client,
    require_admin,
    require_intelligence,
)
from api.workers import intelligence_scheduler
from core.exceptions import AppException, ValidationError
from facebook.graph_client import GraphAPIClient
from models.base import BackfillStatus, EntityType, ExpertRuleType, PatternType, RuleType
from models.facebook_auth import FacebookAuth
from schemas.api import success_response
from schemas.intelligence import (
    BackfillStart,
    BackfillBatch,
    BackfillPause,
    RulePayload,
    ActionReject,
    PredictRequest,
    PatternLearnRequest,
    ScoreCalculateRequest,
    PixelCollectRequest,
    ExpertRuleSeed,
    ExpertRuleUpdate,
    ExpertRuleValidate,
)
from services.accounts import get_active_auth
from services.notifications import NotificationService, list_serialized, serialize_notification
from intelligence.backfill import (
    BackfillProgressStore,
    InsightsCollector,
    run_backfill,
    serialize_backfill,
    serialize_snapshot,
)
from intelligence.account_scores import AccountScoreService, serialize_score
from intelligence.expert_rules import ExpertRulesService, serialize_expert_rule
from intelligence.patterns import PatternLearningService, serialize_pattern
from intelligence.pixel_health import PixelHealthService
from intelligence.rules_engine import AutomationRulesEngine, serialize_rule, serialize_action
import logging

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/intelligence",
    tags=["Intelligence"],
    dependencies=[Depends(require_intelligence)],
)


def _entity_type(value: str) -> EntityType:
    try:
        return EntityType(value)
    except ValueError:
        raise ValidationError(f"Invalid entity type: {value}", context={"field_name": "entity_type"})


async def _resolve_account(db: AsyncSession, user_id: int, ad_account_id: Optional[str]) -> str:
    if not ad_account_id:
        auth = await get_active_auth(db, user_id)
        ad_account_id = auth.selected_ad_account_id if auth else None
    if not ad_account_id:
        raise ValidationError("Ad account ID is required", context={"field_name": "adAccountId"})
    return ad_account_id


@router.get("/status")
async def intelligence_status(user_id: int = Depends(get_current_user_id)):
    return success_response(intelligence_scheduler.get_status())


@router.post("/jobs/{job_name}/run")
async def run_intelligence_job(job_name: str, user_id: int = Depends(require_admin)):
    """Run a scheduler job now, across every account."""
    result = await intelligence_scheduler.run_job(job_name)
    return success_response(result, message=f"Job {job_name} completed")


# ============================================================================
# Backfill
# ============================================================================

@router.post("/backfill/start")
async def start_backfill(
    payload: BackfillStart,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    graph: GraphAPIClient = Depends(get_graph_client)
):
    store = BackfillProgressStore(db)
    record, created = await store.get_or_create(user_id, payload.ad_account_id, payload.type, payload.days)

    if not created:
        if record.status == BackfillStatus.IN_PROGRESS:
            raise ValidationError(
                "Backfill already in progress for this account",
                context={"ad_account_id": payload.ad_account_id}
            )
        record = await store.reset(record, payload.type, payload.days)

    background_tasks.add_task(run_backfill, record.id, graph_client=graph)
    logger.info(f"Backfill queued for user {user_id} / {payload.ad_account_id} ({payload.days} days)")

    return success_response(
        message="Backfill started",
        backfill={
            "ad_account_id": record.ad_account_id,
            "backfill_type": record.backfill_type.value,
            "days": payload.days,
            "status": record.status.value,
            "start_date": record.start_date.isoformat(),
            "end_date": record.end_date.isoformat(),
        },
    )


@router.post("/backfill/batch")
async def start_backfill_batch(
    payload: BackfillBatch,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    graph: GraphAPIClient = Depends(get_graph_client)
):
    store = BackfillProgressStore(db)
    results = {"started": [], "skipped": [], "errors": []}

    for ad_account_id in payload.ad_account_ids:
        try:
            record, created = await store.get_or_create(user_id, ad_account_id, payload.type, payload.days)
            if not created:
                if record.status == BackfillStatus.IN_PROGRESS:
                    results["skipped"].append({"ad_account_id": ad_account_id, "reason": "Already in progress"})
                    continue
                record = await store.reset(record, payload.type, payload.days)

            background_tasks.add_task(run_backfill, record.id, graph_client=graph)
            results["started"].append(ad_account_id)
        except AppException as e:
            await db.rollback()
            results["errors"].append({"ad_account_id": ad_account_id, "error": e.message})

    return success_response(
        message=f"Started {len(results['started'])} backfill(s)",
        results=results,
    )


@router.post("/backfill/pause")
async def pause_backfill(
    payload: BackfillPause,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    record = await BackfillProgressStore(db).pause(user_id, payload.ad_account_id)
    return success_response(message="Backfill paused", backfill=serialize_backfill(record))


@router.delete("/backfill/{ad_account_id}")
async def cancel_backfill(
    ad_account_id: str,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    deleted = await BackfillProgressStore(db).delete(user_id, ad_account_id)
    return success_response(message="Backfill cancelled", deleted=deleted)


@router.get("/backfill/status")
async def backfill_status(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await BackfillProgressStore(db).get_user_status(user_id))


# ============================================================================
# Snapshots
# ============================================================================

@router.get("/snapshots/{entity_type}/{entity_id}")
async def entity_snapshots(
    entity_type: str,
    entity_id: str,
    days: int = Query(30, ge=1, le=1095),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    snapshots = await InsightsCollector(db).get_entity_snapshots(user_id, _entity_type(entity_type), entity_id, days)
    return success_response([serialize_snapshot(s) for s in snapshots], count=len(snapshots))


@router.get("/snapshots/{entity_type}/{entity_id}/trend")
async def entity_trend(
    entity_type: str,
    entity_id: str,
    days: int = Query(7, ge=1, le=365),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    trend = await InsightsCollector(db).get_performance_trend(user_id, _entity_type(entity_type), entity_id, days)
    return success_response(trend)


@router.get("/accounts/{ad_account_id}/summary")
async def account_summary(
    ad_account_id: str,
    days: int = Query(7, ge=1, le=365),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await InsightsCollector(db).get_account_summary(user_id, ad_account_id, days))


# ============================================================================
# Account scores
# ============================================================================

@router.get("/scores")
async def account_scores(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await AccountScoreService(db).get_dashboard_data(user_id))


@router.post("/scores/calculate")
async def calculate_account_score(
    payload: Optional[ScoreCalculateRequest] = None,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    ad_account_id = await _resolve_account(db, user_id, payload.ad_account_id if payload else None)
    score = await AccountScoreService(db).calculate_score_for_account(user_id, ad_account_id)
    return success_response(serialize_score(score), message="Account score calculated")


@router.get("/scores/{ad_account_id}")
async def account_score_detail(
    ad_account_id: str,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await AccountScoreService(db).get_account_detail(user_id, ad_account_id))


# ============================================================================
# Pixel health
# ============================================================================

@router.get("/pixels")
async def pixel_health(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await PixelHealthService(db).get_health_summary(user_id))


@router.post("/pixels/collect")
async def collect_pixel_health(
    payload: Optional[PixelCollectRequest] = None,
    auth: FacebookAuth = Depends(get_facebook_auth),
    db: AsyncSession = Depends(get_db),
    graph: GraphAPIClient = Depends(get_graph_client)
):
    ad_account_id = (payload.ad_account_id if payload else None) or auth.selected_ad_account_id
    if not ad_account_id:
        raise ValidationError("Ad account ID is required", context={"field_name": "adAccountId"})

    service = PixelHealthService(db, graph_client=graph)
    collected = await service.collect_for_account(auth.user_id, ad_account_id, auth.access_token)
    summary = await service.get_health_summary(auth.user_id)
    return success_response(summary, message=f"Collected {collected} pixel(s)")


@router.get("/pixels/{pixel_id}/trends")
async def pixel_trends(
    pixel_id: str,
    days: int = Query(30, ge=1, le=365),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await PixelHealthService(db).get_pixel_trends(user_id, pixel_id, days))


# ============================================================================
# Patterns
# ============================================================================

@router.post("/patterns/learn")
async def learn_patterns(
    payload: Optional[PatternLearnRequest] = None,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    ad_account_id = await _resolve_account(db, user_id, payload.ad_account_id if payload else None)
    counts = await PatternLearningService(db).learn_for_account(user_id, ad_account_id)
    if counts is None:
        return success_response(message="Pattern learning already in progress")
    return success_response(counts, message="Pattern learning complete")


@router.get("/patterns")
async def list_patterns(
    ad_account_id: Optional[str] = Query(None, alias="adAccountId"),
    pattern_type: Optional[PatternType] = Query(None, alias="type"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    patterns = await PatternLearningService(db).get_active_patterns(user_id, ad_account_id, pattern_type)
    return success_response([serialize_pattern(p) for p in patterns], count=len(patterns))


@router.get("/patterns/insights")
async def pattern_insights(
    ad_account_id: Optional[str] = Query(None, alias="adAccountId"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await PatternLearningService(db).get_pattern_insights(user_id, ad_account_id))


@router.get("/patterns/training-status")
async def training_status(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await PatternLearningService(db).get_training_status(user_id))


@router.get("/patterns/history")
async def training_history(
    days: int = Query(30, ge=1, le=365),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await PatternLearningService(db).get_training_history(user_id, days))


@router.get("/patterns/clusters")
async def cluster_visualization(
    ad_account_id: Optional[str] = Query(None, alias="adAccountId"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await PatternLearningService(db).get_cluster_visualization(user_id, ad_account_id))


@router.post("/patterns/predict")
async def predict_performance(
    payload: PredictRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    predictions = await PatternLearningService(db).predict_performance(user_id, payload.metrics, payload.ad_account_id)
    return success_response(predictions)


# ============================================================================
# Rules
# ============================================================================

@router.get("/rules")
async def list_rules(
    active_only: bool = Query(False, alias="activeOnly"),
    rule_type: Optional[RuleType] = Query(None, alias="ruleType"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    rules = await AutomationRulesEngine(db).get_rules_for_user(user_id, active_only, rule_type)
    return success_response([serialize_rule(r) for r in rules], count=len(rules))


@router.post("/rules", status_code=201)
async def create_rule(
    payload: RulePayload,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    rule = await AutomationRulesEngine(db).create_rule(user_id, payload.changes())
    return success_response(serialize_rule(rule), message="Rule created")


@router.get("/rules/templates")
async def rule_templates(user_id: int = Depends(get_current_user_id)):
    return success_response(AutomationRulesEngine.get_default_rule_templates())


@router.get("/rules/stats")
async def rule_stats(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await AutomationRulesEngine(db).get_rule_stats(user_id))


@router.post("/rules/evaluate")
async def evaluate_rules(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    result = await AutomationRulesEngine(db).evaluate_user_rules(user_id)
    return success_response(result, message="Rules evaluated")


@router.put("/rules/{rule_id}")
async def update_rule(
    rule_id: int,
    payload: RulePayload,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    rule = await AutomationRulesEngine(db).update_rule(user_id, rule_id, payload.changes())
    return success_response(serialize_rule(rule), message="Rule updated")


@router.delete("/rules/{rule_id}")
async def delete_rule(
    rule_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    await AutomationRulesEngine(db).delete_rule(user_id, rule_id)
    return success_response(message="Rule deleted")


# ============================================================================
# Expert rules
# ============================================================================

@router.get("/expert-rules")
async def list_expert_rules(
    vertical: Optional[str] = Query(None),
    rule_type: Optional[ExpertRuleType] = Query(None, alias="ruleType"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    rules = await ExpertRulesService(db).get_rules(vertical, rule_type)
    return success_response([serialize_expert_rule(r) for r in rules], count=len(rules))


@router.get("/expert-rules/summary")
async def expert_rules_summary(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await ExpertRulesService(db).get_rules_summary())


@router.get("/expert-rules/benchmarks")
async def expert_benchmarks(
    vertical: str = Query("all"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return success_response(await ExpertRulesService(db).get_benchmarks(vertical))


@router.post("/expert-rules/seed")
async def seed_expert_rules(
    payload: ExpertRuleSeed,
    user_id: int = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    results = await ExpertRulesService(db).parse_and_seed_rules(payload.form_submissions)
    return success_response(results, message="Expert rules seeded")


@router.get("/expert-rules/{rule_id}")
async def expert_rule_detail(
    rule_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    rule = await ExpertRulesService(db).get_rule(rule_id)
    return success_response(serialize_expert_rule(rule))


@router.put("/expert-rules/{rule_id}")
async def update_expert_rule(
    rule_id: int,
    payload: ExpertRuleUpdate,
    user_id: int = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    rule = await ExpertRulesService(db).update_rule(rule_id, payload.changes())
    return success_response(serialize_expert_rule(rule), message="Expert rule updated")


@router.post("/expert-rules/{rule_id}/validate")
async def validate_expert_rule(
    rule_id: int,
    payload: ExpertRuleValidate,
    user_id: int = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    result = await ExpertRulesService(db).validate_rule(rule_id, payload.performance_data)
    return success_response(result)


# ============================================================================
# Actions
# ============================================================================

@router.get("/actions/pending")
async def pending_actions(
    limit: int = Query(50, ge=1, le=200),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    actions = await AutomationRulesEngine(db).get_pending_actions(user_id, limit)
    return success_response([serialize_action(a) for a in actions], count=len(actions))


@router.post("/actions/{action_id}/approve")
async def approve_action(
    action_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    action = await AutomationRulesEngine(db).approve_action(user_id, action_id)
    return success_response(serialize_action(action), message="Action approved")


@router.post("/actions/{action_id}/reject")
async def reject_action(
    action_id: int,
    payload: Optional[ActionReject] = None,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    action = await AutomationRulesEngine(db).reject_action(user_id, action_id, payload.reason if payload else None)
    return success_response(serialize_action(action), message="Action rejected")


# ============================================================================
# Notifications
# ============================================================================

@router.get("/notifications")
async def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(50, ge=1, le=200),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    listing = await NotificationService(db).list_for_user(user_id, unread_only, limit)
    return success_response(
        list_serialized(listing["notifications"]),
        unreadCount=listing["unread_count"],
    )


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    notification = await NotificationService(db).mark_read(user_id, notification_id)
    return success_response(serialize_notification(notification), message="Notification marked as read")
