"""
Insights collection and historical backfill.

Hourly collection stores today's campaign, ad set and ad insights for every
connected account. Backfills walk a date range one day at a time using
account level insights (one call per level / breakdown per day) and keep
their progress in ``intel_backfill_progress``. Pixel backfills are delegated
to PixelHealthService, which stores one pixel health row per day.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.database import session_scope
from core.exceptions import (
    AppException,
    FacebookApiError,
    InvalidTokenError,
    RateLimitError,
    ResourceNotFoundError,
)
from facebook.graph_client import GraphAPIClient, normalize_ad_account_id
from intelligence import metrics
from intelligence.pixel_health import PixelHealthService
from models.base import BackfillStatus, BackfillType, EntityType
from models.intel_backfill_progress import IntelBackfillProgress
from models.intel_performance_snapshot import IntelPerformanceSnapshot
from services.accounts import get_active_auth, list_active_auths

logger = logging.getLogger(__name__)

BASE_FIELDS = [
    "campaign_id", "campaign_name", "adset_id", "adset_name",
    "spend", "impressions", "clicks", "reach", "actions", "action_values",
    "cpm", "cpc", "ctr", "frequency",
]
AD_FIELDS = BASE_FIELDS + ["ad_id", "ad_name"]
BREAKDOWN_FIELDS = ["spend", "impressions", "clicks", "reach", "actions", "action_values"]

HOURLY_BREAKDOWN = "hourly_stats_aggregated_by_advertiser_time_zone"
BREAKDOWNS: List[Tuple[EntityType, List[str]]] = [
    (EntityType.GEO, ["region"]),
    (EntityType.HOURLY, [HOURLY_BREAKDOWN]),
    (EntityType.AGE_GENDER, ["age", "gender"]),
    (EntityType.DEVICE, ["device_platform"]),
    (EntityType.PLACEMENT, ["publisher_platform", "platform_position"]),
]

DAILY_SNAPSHOT_HOUR = 23
MAX_RATE_LIMIT_RETRIES = 5

ProgressCallback = Callable[[int, date, Dict[str, int]], Awaitable[None]]


def day_of_week(day: date) -> int:
    """0 = Sunday ... 6 = Saturday"""
    return day.isoweekday() % 7


def _entity_identity(entity_type: EntityType, row: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Optional[int]]:
    """(entity_id, entity_name, hour override) for an insights row."""
    if entity_type == EntityType.CAMPAIGN:
        return row.get("campaign_id"), row.get("campaign_name"), None
    if entity_type == EntityType.ADSET:
        return row.get("adset_id"), row.get("adset_name"), None
    if entity_type == EntityType.AD:
        return row.get("ad_id"), row.get("ad_name"), None
    if entity_type == EntityType.GEO:
        region = row.get("region")
        return region or "unknown", region or "Unknown Region", None
    if entity_type == EntityType.HOURLY:
        raw = str(row.get(HOURLY_BREAKDOWN) or "0")
        try:
            hour = int(raw.split(":")[0])
        except ValueError:
            hour = 0
        return f"hour_{hour}", f"Hour {hour}:00", hour
    if entity_type == EntityType.AGE_GENDER:
        age = row.get("age") or "unknown"
        gender = row.get("gender") or "unknown"
        return f"{age}_{gender}", f"{age} {gender}", None
    if entity_type == EntityType.DEVICE:
        device = row.get("device_platform") or "unknown"
        return device, device.capitalize(), None
    if entity_type == EntityType.PLACEMENT:
        platform = row.get("publisher_platform") or "unknown"
        position = row.get("platform_position") or "unknown"
        return f"{platform}_{position}", f"{platform} - {position}", None
    return None, None, None


class InsightsCollector:
    """
    Fetches Graph insights and stores them as performance snapshots.

    Attributes:
        day_delay: Seconds slept between backfill days
        rate_limit_wait: Seconds slept before retrying a rate limited day
    """

    def __init__(
        self,
        db_session: AsyncSession,
        graph_client: Optional[GraphAPIClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        day_delay: Optional[float] = None,
        rate_limit_wait: Optional[float] = None,
    ):
        self.db = db_session
        self.graph = graph_client or GraphAPIClient()
        self._sleep = sleep
        self.day_delay = settings.BACKFILL_DAY_DELAY_SECONDS if day_delay is None else day_delay
        self.rate_limit_wait = settings.BACKFILL_RATE_LIMIT_WAIT_SECONDS if rate_limit_wait is None else rate_limit_wait

    # ------------------------------------------------------------------
    # Snapshot storage
    # ------------------------------------------------------------------

    async def store_snapshot(
        self,
        user_id: int,
        ad_account_id: str,
        entity_type: EntityType,
        row: Dict[str, Any],
        day: date,
        hour: int = DAILY_SNAPSHOT_HOUR,
        is_backfill: bool = True,
        entity_meta: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Upsert one snapshot. Rows without an entity id or without spend are skipped.

        Returns:
            True when a snapshot was written
        """
        entity_id, entity_name, hour_override = _entity_identity(entity_type, row)
        if not entity_id or metrics.to_float(row.get("spend")) == 0:
            return False

        snapshot_hour = hour_override if hour_override is not None else hour
        values = metrics.parse_insights(row)
        meta = entity_meta or {}

        result = await self.db.execute(
            select(IntelPerformanceSnapshot).where(
                IntelPerformanceSnapshot.ad_account_id == ad_account_id,
                IntelPerformanceSnapshot.entity_type == entity_type,
                IntelPerformanceSnapshot.entity_id == str(entity_id),
                IntelPerformanceSnapshot.snapshot_date == day,
                IntelPerformanceSnapshot.snapshot_hour == snapshot_hour,
            )
        )
        snapshot = result.scalar_one_or_none()
        if snapshot is None:
            snapshot = IntelPerformanceSnapshot(
                user_id=user_id,
                ad_account_id=ad_account_id,
                entity_type=entity_type,
                entity_id=str(entity_id),
                snapshot_date=day,
                snapshot_hour=snapshot_hour,
            )
            self.db.add(snapshot)

        snapshot.entity_name = entity_name
        for key, value in values.items():
            setattr(snapshot, key, value)
        snapshot.is_backfill = is_backfill
        snapshot.hour_of_day = snapshot_hour
        snapshot.day_of_week = day_of_week(day)
        snapshot.effective_status = meta.get("effective_status")
        stage = meta.get("learning_stage_info") or {}
        snapshot.learning_phase = stage.get("status") or stage.get("stage")
        snapshot.days_since_creation = metrics.days_since(meta.get("created_time"))
        snapshot.raw_insights = row
        await self.db.flush()
        return True

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _fetch_level(self, ad_account_id: str, token: str, level: str, day: date) -> List[Dict[str, Any]]:
        fields = AD_FIELDS if level == "ad" else BASE_FIELDS
        return await self.graph.get_account_insights(
            ad_account_id, token, level=level, since=day.isoformat(), until=day.isoformat(), fields=fields
        )

    async def _fetch_breakdown(self, ad_account_id: str, token: str, breakdowns: List[str], day: date) -> List[Dict[str, Any]]:
        try:
            return await self.graph.get_account_insights(
                ad_account_id,
                token,
                level="account",
                since=day.isoformat(),
                until=day.isoformat(),
                fields=BREAKDOWN_FIELDS,
                breakdowns=breakdowns,
            )
        except (RateLimitError, InvalidTokenError):
            raise
        except FacebookApiError as e:
            # Breakdowns are not available for every account
            logger.debug(f"Breakdown {breakdowns} unavailable for {ad_account_id} on {day}: {e.message}")
            return []

    async def fetch_day(self, user_id: int, ad_account_id: str, token: str, day: date) -> Dict[str, int]:
        """Fetch and store every level and breakdown for one day."""
        counts = {"campaigns": 0, "adsets": 0, "ads": 0, "breakdowns": 0}

        for level, entity_type, key in (
            ("campaign", EntityType.CAMPAIGN, "campaigns"),
            ("adset", EntityType.ADSET, "adsets"),
            ("ad", EntityType.AD, "ads"),
        ):
            for row in await self._fetch_level(ad_account_id, token, level, day):
                if await self.store_snapshot(user_id, ad_account_id, entity_type, row, day):
                    counts[key] += 1

        for entity_type, breakdowns in BREAKDOWNS:
            for row in await self._fetch_breakdown(ad_account_id, token, breakdowns, day):
                if await self.store_snapshot(user_id, ad_account_id, entity_type, row, day):
                    counts["breakdowns"] += 1

        await self.db.commit()
        return counts

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def backfill_account(
        self,
        user_id: int,
        ad_account_id: str,
        access_token: str,
        start_date: date,
        end_date: date,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Dict[str, int]:
        """
        Fetch insights day by day from ``start_date`` to ``end_date`` (inclusive).

        Rate limited days are retried after ``rate_limit_wait`` seconds;
        an invalid token stops the backfill; other API errors skip the day.

        Returns:
            Dictionary with days_completed, total_days, total_insights_saved
        """
        total_days = (end_date - start_date).days + 1
        days_completed = 0
        total_saved = 0
        rate_limit_retries = 0

        logger.info(f"Backfill for {ad_account_id}: {start_date} to {end_date} ({total_days} days)")

        current = start_date
        while current <= end_date:
            try:
                counts = await self.fetch_day(user_id, ad_account_id, access_token, current)
            except RateLimitError as e:
                rate_limit_retries += 1
                if rate_limit_retries > MAX_RATE_LIMIT_RETRIES:
                    raise
                logger.warning(
                    f"Backfill rate limited on {current}; waiting {self.rate_limit_wait}s "
                    f"(retry {rate_limit_retries}/{MAX_RATE_LIMIT_RETRIES}): {e.message}"
                )
                await self._sleep(self.rate_limit_wait)
                continue
            except InvalidTokenError:
                logger.error(f"Backfill for {ad_account_id} stopped on {current}: access token rejected")
                raise
            except AppException as e:
                logger.warning(f"Backfill for {ad_account_id}: skipping {current} - {e.message}")
                counts = None

            rate_limit_retries = 0
            days_completed += 1
            if counts:
                total_saved += sum(counts.values())

            if days_completed % 5 == 0 or days_completed == total_days:
                logger.info(
                    f"Backfill progress {ad_account_id}: {days_completed}/{total_days} days, "
                    f"{total_saved} snapshots"
                )

            if progress_callback:
                await progress_callback(days_completed, current, counts or {})

            current += timedelta(days=1)
            if current <= end_date and self.day_delay:
                await self._sleep(self.day_delay)

        logger.info(f"Backfill complete for {ad_account_id}: {days_completed}/{total_days} days, {total_saved} snapshots")
        return {"days_completed": days_completed, "total_days": total_days, "total_insights_saved": total_saved}

    # ------------------------------------------------------------------
    # Hourly collection
    # ------------------------------------------------------------------

    async def _fetch_entity_meta(self, ad_account_id: str, token: str, edge: str) -> Dict[str, Dict[str, Any]]:
        fields = "id,name,effective_status,created_time"
        if edge == "adsets":
            fields += ",learning_stage_info"
        data = await self.graph.get(
            f"{normalize_ad_account_id(ad_account_id)}/{edge}", token, params={"fields": fields, "limit": 500}
        )
        return {entity["id"]: entity for entity in data.get("data", [])}

    async def collect_for_account(self, user_id: int, ad_account_id: str, access_token: str) -> int:
        """Store today's insights for one account. Returns snapshots written."""
        now = datetime.utcnow()
        today = now.date()
        written = 0

        for level, entity_type, edge in (
            ("campaign", EntityType.CAMPAIGN, "campaigns"),
            ("adset", EntityType.ADSET, "adsets"),
            ("ad", EntityType.AD, None),
        ):
            meta = await self._fetch_entity_meta(ad_account_id, access_token, edge) if edge else {}
            for row in await self._fetch_level(ad_account_id, access_token, level, today):
                entity_id, _, _ = _entity_identity(entity_type, row)
                stored = await self.store_snapshot(
                    user_id,
                    ad_account_id,
                    entity_type,
                    row,
                    today,
                    hour=now.hour,
                    is_backfill=False,
                    entity_meta=meta.get(entity_id),
                )
                written += int(stored)

        await self.db.commit()
        logger.info(f"Collected {written} snapshots for {ad_account_id}")
        return written

    async def collect_all(self) -> Dict[str, Any]:
        """Collect today's insights for every connected account."""
        results = {"success": 0, "failed": 0, "snapshots": 0, "errors": []}

        accounts = [
            (auth.user_id, auth.selected_ad_account_id, auth.access_token)
            for auth in await list_active_auths(self.db)
        ]
        for user_id, ad_account_id, token in accounts:
            try:
                results["snapshots"] += await self.collect_for_account(user_id, ad_account_id, token)
                results["success"] += 1
            except AppException as e:
                await self.db.rollback()
                logger.error(f"Collection failed for {ad_account_id}: {e.message}")
                results["failed"] += 1
                results["errors"].append({"ad_account_id": ad_account_id, "error": e.message})

        logger.info(f"Insights collection complete: {results['success']} success, {results['failed']} failed")
        return results

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_entity_snapshots(self, user_id: int, entity_type: EntityType, entity_id: str, days: int = 30) -> List[IntelPerformanceSnapshot]:
        since = datetime.utcnow().date() - timedelta(days=days)
        result = await self.db.execute(
            select(IntelPerformanceSnapshot)
            .where(
                IntelPerformanceSnapshot.user_id == user_id,
                IntelPerformanceSnapshot.entity_type == entity_type,
                IntelPerformanceSnapshot.entity_id == entity_id,
                IntelPerformanceSnapshot.snapshot_date >= since,
            )
            .order_by(IntelPerformanceSnapshot.snapshot_date.asc(), IntelPerformanceSnapshot.snapshot_hour.asc())
        )
        return list(result.scalars().all())

    async def get_performance_trend(self, user_id: int, entity_type: EntityType, entity_id: str, days: int = 7) -> Dict[str, Any]:
        snapshots = await self.get_entity_snapshots(user_id, entity_type, entity_id, days)
        return metrics.performance_trend(snapshots)

    async def get_account_summary(self, user_id: int, ad_account_id: str, days: int = 7) -> Dict[str, Any]:
        """Campaign level totals for an account over the last ``days`` days."""
        since = datetime.utcnow().date() - timedelta(days=days)
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(IntelPerformanceSnapshot.spend), 0),
                func.coalesce(func.sum(IntelPerformanceSnapshot.impressions), 0),
                func.coalesce(func.sum(IntelPerformanceSnapshot.clicks), 0),
                func.coalesce(func.sum(IntelPerformanceSnapshot.conversions), 0),
                func.coalesce(func.sum(IntelPerformanceSnapshot.revenue), 0),
                func.count(func.distinct(IntelPerformanceSnapshot.entity_id)),
                func.count(IntelPerformanceSnapshot.id),
            ).where(
                IntelPerformanceSnapshot.user_id == user_id,
                IntelPerformanceSnapshot.ad_account_id == ad_account_id,
                IntelPerformanceSnapshot.entity_type == EntityType.CAMPAIGN,
                IntelPerformanceSnapshot.snapshot_date >= since,
            )
        )
        spend, impressions, clicks, conversions, revenue, campaigns, snapshots = result.one()

        return {
            "ad_account_id": ad_account_id,
            "days": days,
            "campaigns": campaigns,
            "snapshots": snapshots,
            "spend": round(float(spend), 2),
            "impressions": int(impressions),
            "clicks": int(clicks),
            "conversions": int(conversions),
            "revenue": round(float(revenue), 2),
            "ctr": round(metrics.ctr(clicks, impressions), 2),
            "cpc": round(metrics.cpc(spend, clicks), 2),
            "cpa": round(metrics.cpa(spend, conversions), 2),
            "roas": round(metrics.roas(revenue, spend), 2),
        }


class BackfillProgressStore:
    """Reads and writes ``intel_backfill_progress`` rows."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get(self, user_id: int, ad_account_id: str) -> Optional[IntelBackfillProgress]:
        result = await self.db.execute(
            select(IntelBackfillProgress).where(
                IntelBackfillProgress.user_id == user_id,
                IntelBackfillProgress.ad_account_id == ad_account_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, record_id: int) -> IntelBackfillProgress:
        record = await self.db.get(IntelBackfillProgress, record_id)
        if record is None:
            raise ResourceNotFoundError(f"Backfill {record_id} not found", context={"backfill_id": record_id})
        return record

    async def get_or_create(
        self,
        user_id: int,
        ad_account_id: str,
        backfill_type: BackfillType = BackfillType.ALL,
        days: int = 90,
    ) -> Tuple[IntelBackfillProgress, bool]:
        record = await self.get(user_id, ad_account_id)
        if record is not None:
            return record, False

        end = datetime.utcnow().date()
        record = IntelBackfillProgress(
            user_id=user_id,
            ad_account_id=ad_account_id,
            backfill_type=backfill_type,
            status=BackfillStatus.PENDING,
            start_date=end - timedelta(days=days - 1),
            end_date=end,
            total_days=days,
            days_completed=0,
        )
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)
        return record, True

    async def reset(self, record: IntelBackfillProgress, backfill_type: BackfillType, days: int) -> IntelBackfillProgress:
        """Prepare an existing record for a restart."""
        end = datetime.utcnow().date()
        record.backfill_type = backfill_type
        record.status = BackfillStatus.PENDING
        record.start_date = end - timedelta(days=days - 1)
        record.end_date = end
        record.current_date = None
        record.total_days = days
        record.days_completed = 0
        record.campaigns_fetched = 0
        record.adsets_fetched = 0
        record.ads_fetched = 0
        record.snapshots_created = 0
        record.error_message = None
        record.completed_at = None
        record.pixel_summary = None
        await self.db.commit()
        return record

    async def mark_started(self, record: IntelBackfillProgress) -> IntelBackfillProgress:
        record.status = BackfillStatus.IN_PROGRESS
        record.started_at = datetime.utcnow()
        await self.db.commit()
        return record

    async def update_progress(
        self,
        record: IntelBackfillProgress,
        days_completed: int,
        current_date: Optional[date] = None,
        counts: Optional[Dict[str, int]] = None,
    ) -> IntelBackfillProgress:
        """Record progress; completes the backfill once every day is fetched."""
        now = datetime.utcnow()
        record.days_completed = days_completed
        record.current_date = current_date
        record.last_fetch_at = now

        counts = counts or {}
        record.campaigns_fetched += counts.get("campaigns", 0)
        record.adsets_fetched += counts.get("adsets", 0)
        record.ads_fetched += counts.get("ads", 0)
        record.snapshots_created += sum(counts.values())

        if record.started_at and days_completed:
            per_day = (now - record.started_at).total_seconds() / days_completed
            record.estimated_remaining_seconds = int(per_day * max(record.total_days - days_completed, 0))

        if days_completed >= record.total_days:
            record.status = BackfillStatus.COMPLETED
            record.completed_at = now
            record.estimated_remaining_seconds = 0

        await self.db.commit()
        return record

    async def mark_completed(self, record: IntelBackfillProgress) -> IntelBackfillProgress:
        record.status = BackfillStatus.COMPLETED
        record.completed_at = datetime.utcnow()
        record.days_completed = max(record.days_completed, record.total_days)
        record.estimated_remaining_seconds = 0
        await self.db.commit()
        return record

    async def mark_failed(self, record: IntelBackfillProgress, error_message: str) -> IntelBackfillProgress:
        record.status = BackfillStatus.FAILED
        record.error_message = error_message
        record.retry_count += 1
        await self.db.commit()
        return record

    async def pause(self, user_id: int, ad_account_id: str) -> IntelBackfillProgress:
        record = await self.get(user_id, ad_account_id)
        if record is None:
            raise ResourceNotFoundError("Backfill not found", context={"ad_account_id": ad_account_id})
        record.status = BackfillStatus.PAUSED
        await self.db.commit()
        return record

    async def delete(self, user_id: int, ad_account_id: str) -> bool:
        result = await self.db.execute(
            delete(IntelBackfillProgress).where(
                IntelBackfillProgress.user_id == user_id,
                IntelBackfillProgress.ad_account_id == ad_account_id,
            )
        )
        await self.db.commit()
        return bool(result.rowcount)

    async def get_pending(self) -> List[IntelBackfillProgress]:
        result = await self.db.execute(
            select(IntelBackfillProgress)
            .where(IntelBackfillProgress.status.in_([BackfillStatus.PENDING, BackfillStatus.IN_PROGRESS]))
            .order_by(IntelBackfillProgress.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_user_status(self, user_id: int) -> Dict[str, Any]:
        result = await self.db.execute(
            select(IntelBackfillProgress)
            .where(IntelBackfillProgress.user_id == user_id)
            .order_by(IntelBackfillProgress.updated_at.desc())
        )
        records = list(result.scalars().all())

        summary = {"total_accounts": len(records), "overall_progress": 0}
        for status in BackfillStatus:
            summary[status.value] = sum(1 for r in records if r.status == status)

        total_days = sum(r.total_days for r in records)
        if total_days:
            completed_days = sum(min(r.days_completed, r.total_days) for r in records)
            summary["overall_progress"] = round(completed_days / total_days * 100)

        return {"accounts": [serialize_backfill(r) for r in records], "summary": summary}


def serialize_backfill(record: IntelBackfillProgress) -> Dict[str, Any]:
    def _iso(value):
        return value.isoformat() if value else None

    return {
        "ad_account_id": record.ad_account_id,
        "backfill_type": record.backfill_type.value,
        "status": record.status.value,
        "progress": record.completion_percentage(),
        "days_completed": record.days_completed,
        "total_days": record.total_days,
        "start_date": _iso(record.start_date),
        "end_date": _iso(record.end_date),
        "current_date": _iso(record.current_date),
        "snapshots_created": record.snapshots_created,
        "estimated_remaining_seconds": record.estimated_remaining_seconds,
        "pixel_summary": record.pixel_summary,
        "error_message": record.error_message,
        "last_fetch_at": _iso(record.last_fetch_at),
    }


def serialize_snapshot(snapshot: IntelPerformanceSnapshot) -> Dict[str, Any]:
    return {
        "id": snapshot.id,
        "ad_account_id": snapshot.ad_account_id,
        "entity_type": snapshot.entity_type.value,
        "entity_id": snapshot.entity_id,
        "entity_name": snapshot.entity_name,
        "snapshot_date": snapshot.snapshot_date.isoformat(),
        "snapshot_hour": snapshot.snapshot_hour,
        **snapshot.metrics(),
        "is_backfill": snapshot.is_backfill,
    }


async def _learn_patterns(session: AsyncSession, user_id: int, ad_account_id: str):
    from intelligence.patterns import PatternLearningService

    return await PatternLearningService(session).learn_for_account(user_id, ad_account_id)


async def run_backfill(
    record_id: int,
    session_factory=None,
    graph_client: Optional[GraphAPIClient] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    learn_patterns: Callable[[AsyncSession, int, str], Awaitable[Any]] = _learn_patterns,
) -> Optional[Dict[str, Any]]:
    """
    Background task running one backfill record to completion.

    Failures are written to the record (status ``failed``) instead of being
    raised. Pattern learning runs afterwards; its failure does not fail the
    backfill.
    """
    async with session_scope(session_factory) as session:
        store = BackfillProgressStore(session)
        record = await store.get_by_id(record_id)
        user_id, ad_account_id = record.user_id, record.ad_account_id
        collector = InsightsCollector(session, graph_client=graph_client, sleep=sleep)

        try:
            auth = await get_active_auth(session, user_id)
            if auth is None:
                raise InvalidTokenError("No Facebook auth record found for user", context={"user_id": user_id})
            token = auth.access_token

            await store.mark_started(record)
            result: Dict[str, Any] = {}

            if record.backfill_type in (BackfillType.ALL, BackfillType.INSIGHTS):
                async def on_progress(days_completed: int, current: date, counts: Dict[str, int]):
                    await store.update_progress(record, days_completed, current, counts)

                result["insights"] = await collector.backfill_account(
                    user_id, ad_account_id, token, record.start_date, record.end_date, on_progress
                )

            if record.backfill_type in (BackfillType.ALL, BackfillType.PIXEL):
                pixels = await PixelHealthService(session, graph_client=graph_client).backfill_account(
                    user_id, ad_account_id, token, record.start_date, record.end_date
                )
                record.pixel_summary = pixels
                result["pixels"] = pixels

            await store.mark_completed(record)
        except Exception as e:
            await session.rollback()
            await session.refresh(record)
            message = e.message if isinstance(e, AppException) else str(e)
            logger.error(f"Backfill failed for user {user_id} / {ad_account_id}: {message}")
            await store.mark_failed(record, message)
            return None

        try:
            result["patterns"] = await learn_patterns(session, user_id, ad_account_id)
        except Exception as e:
            await session.rollback()
            logger.warning(f"Pattern learning after backfill failed for {ad_account_id}: {e}")

        return result
