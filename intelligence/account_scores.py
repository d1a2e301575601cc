"""
Daily account health scores.

Each tracked (user, ad account) gets one 0-100 score per day, built from
five components:

    performance  ROAS and CPA trend of the last 30 days of ad set snapshots
    efficiency   share of spend that produced no conversion
    pixel_health latest pixel health row of the account
    learning     share of ad sets that left the learning phase (7 days)
    consistency  coefficient of variation of daily ROAS (30 days)

Components without data score 50.
"""

import logging
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence
import numpy as np
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from core.exceptions import AppException
from intelligence import metrics
from intelligence.pixel_health import PixelHealthService
from models.base import BackfillStatus, EntityType, NotificationPriority, NotificationType, ScoreTrend
from models.intel_account_score import COMPONENT_WEIGHTS, IntelAccountScore
from models.intel_backfill_progress import IntelBackfillProgress
from models.intel_performance_snapshot import IntelPerformanceSnapshot
from models.intel_pixel_health import IntelPixelHealth
from services.notifications import NotificationService

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50
RECOMMENDATION_THRESHOLD = 70
TREND_THRESHOLD = 5
NOTIFY_CHANGE_THRESHOLD = 10
CPA_TREND_THRESHOLD = 10.0
MIN_CONSISTENCY_DAYS = 8

RECOMMENDATIONS = OrderedDict([
    ("performance", "Focus on optimizing ROAS by reviewing underperforming ad sets"),
    ("efficiency", "Reduce wasted spend by pausing low-performing entities"),
    ("pixel_health", "Improve pixel tracking by implementing server-side events"),
    ("learning", "Optimize budget allocation to help ad sets exit learning phase"),
    ("consistency", "Investigate causes of performance volatility"),
])

COMPONENT_DESCRIPTIONS = {
    "performance": "Based on ROAS, CPA trends",
    "efficiency": "Based on spend efficiency, waste reduction",
    "pixel_health": "Based on pixel event quality",
    "learning": "Based on learning phase success rate",
    "consistency": "Based on performance consistency over time",
}


# ============================================================================
# Component scores
# ============================================================================

def performance_score(performance: Optional[Dict[str, Any]]) -> int:
    if not performance:
        return NEUTRAL_SCORE
    score = NEUTRAL_SCORE
    if performance["roas"] > 200:
        score += 30
    elif performance["roas"] > 100:
        score += 15
    if performance["cpa_trend"] == "decreasing":
        score += 20
    elif performance["cpa_trend"] == "stable":
        score += 10
    return score


def efficiency_score(performance: Optional[Dict[str, Any]]) -> int:
    if not performance:
        return NEUTRAL_SCORE
    return round(max(0.0, 100 - performance["waste_percentage"] * 2))


def pixel_health_score(pixel: Optional[IntelPixelHealth]) -> int:
    if pixel is None:
        return NEUTRAL_SCORE
    return pixel.health_score()


def learning_score(learning: Optional[Dict[str, Any]]) -> int:
    if not learning:
        return NEUTRAL_SCORE
    return round(learning["success_rate"])


def consistency_score(daily_roas: Sequence[float]) -> int:
    if len(daily_roas) < MIN_CONSISTENCY_DAYS:
        return NEUTRAL_SCORE
    values = np.asarray(daily_roas, dtype=float)
    mean = values.mean()
    cv = values.std() / mean if mean > 0 else 1.0
    return round(max(0.0, 100 - cv * 100))


def cpa_trend(daily: Dict[date, Dict[str, float]]) -> str:
    """Compare the CPA of the first seven days with the last seven."""
    days = sorted(daily)
    if len(days) < 7:
        return "stable"

    def period_cpa(period):
        spend = sum(daily[d]["spend"] for d in period)
        conversions = sum(daily[d]["conversions"] for d in period)
        return metrics.cpa(spend, conversions)

    first, last = period_cpa(days[:7]), period_cpa(days[-7:])
    if first <= 0 or last <= 0:
        return "stable"
    change = (last - first) / first * 100
    if change < -CPA_TREND_THRESHOLD:
        return "decreasing"
    if change > CPA_TREND_THRESHOLD:
        return "increasing"
    return "stable"


def compute_components(
    performance: Optional[Dict[str, Any]],
    pixel: Optional[IntelPixelHealth],
    learning: Optional[Dict[str, Any]],
    daily_roas: Sequence[float],
) -> Dict[str, Any]:
    components = {
        "performance": performance_score(performance),
        "efficiency": efficiency_score(performance),
        "pixel_health": pixel_health_score(pixel),
        "learning": learning_score(learning),
        "consistency": consistency_score(daily_roas),
    }
    overall = round(sum(components[name] * weight for name, weight in COMPONENT_WEIGHTS.items()))
    recommendations = [
        message for name, message in RECOMMENDATIONS.items() if components[name] < RECOMMENDATION_THRESHOLD
    ]
    return {"overall": overall, "components": components, "recommendations": recommendations}


def score_trend(overall: int, previous: Optional[int]):
    """(trend, percentage change) against the previous score."""
    if not previous:
        return ScoreTrend.STABLE, 0.0
    change = overall - previous
    percentage = round(change / previous * 100, 2)
    if change > TREND_THRESHOLD:
        return ScoreTrend.IMPROVING, percentage
    if change < -TREND_THRESHOLD:
        return ScoreTrend.DECLINING, percentage
    return ScoreTrend.STABLE, percentage


class AccountScoreService:
    """
    Calculates and serves account scores.

    ``calculation_in_progress`` is process wide so the daily job and a
    manual run never overlap.
    """

    calculation_in_progress = False

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        self.notifications = NotificationService(db_session)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def _adset_snapshots(self, user_id: int, ad_account_id: str, days: int) -> List[IntelPerformanceSnapshot]:
        since = datetime.utcnow().date() - timedelta(days=days)
        result = await self.db.execute(
            select(IntelPerformanceSnapshot).where(
                IntelPerformanceSnapshot.user_id == user_id,
                IntelPerformanceSnapshot.ad_account_id == ad_account_id,
                IntelPerformanceSnapshot.entity_type == EntityType.ADSET,
                IntelPerformanceSnapshot.snapshot_date >= since,
            )
        )
        return list(result.scalars().all())

    async def get_performance_metrics(self, user_id: int, ad_account_id: str) -> Optional[Dict[str, Any]]:
        snapshots = await self._adset_snapshots(user_id, ad_account_id, 30)
        if not snapshots:
            return None

        spend = revenue = wasted = 0.0
        conversions = 0
        daily: Dict[date, Dict[str, float]] = {}
        for s in snapshots:
            spend += s.spend
            revenue += s.revenue
            conversions += s.conversions
            if s.conversions == 0 and s.spend > 0:
                wasted += s.spend
            day = daily.setdefault(s.snapshot_date, {"spend": 0.0, "revenue": 0.0, "conversions": 0})
            day["spend"] += s.spend
            day["revenue"] += s.revenue
            day["conversions"] += s.conversions

        return {
            "total_spend": spend,
            "total_revenue": revenue,
            "total_conversions": conversions,
            "roas": metrics.roas(revenue, spend),
            "cpa": metrics.cpa(spend, conversions),
            "waste_percentage": wasted / spend * 100 if spend else 0.0,
            "cpa_trend": cpa_trend(daily),
        }

    async def get_learning_stats(self, user_id: int, ad_account_id: str) -> Dict[str, Any]:
        since = datetime.utcnow().date() - timedelta(days=7)
        result = await self.db.execute(
            select(IntelPerformanceSnapshot.entity_id, IntelPerformanceSnapshot.learning_phase)
            .where(
                IntelPerformanceSnapshot.user_id == user_id,
                IntelPerformanceSnapshot.ad_account_id == ad_account_id,
                IntelPerformanceSnapshot.entity_type == EntityType.ADSET,
                IntelPerformanceSnapshot.snapshot_date >= since,
            )
            .distinct()
        )
        rows = list(result.all())

        counts = {"LEARNING": 0, "LEARNING_LIMITED": 0, "SUCCESS": 0}
        for _, phase in rows:
            if phase in counts:
                counts[phase] += 1

        adsets = len({entity_id for entity_id, _ in rows})
        return {
            "total_adsets": adsets,
            "learning": counts["LEARNING"],
            "learning_limited": counts["LEARNING_LIMITED"],
            "success": counts["SUCCESS"],
            "success_rate": counts["SUCCESS"] / adsets * 100 if adsets else NEUTRAL_SCORE,
        }

    async def get_daily_roas(self, user_id: int, ad_account_id: str) -> List[float]:
        since = datetime.utcnow().date() - timedelta(days=30)
        result = await self.db.execute(
            select(
                IntelPerformanceSnapshot.snapshot_date,
                func.sum(IntelPerformanceSnapshot.spend),
                func.sum(IntelPerformanceSnapshot.revenue),
            )
            .where(
                IntelPerformanceSnapshot.user_id == user_id,
                IntelPerformanceSnapshot.ad_account_id == ad_account_id,
                IntelPerformanceSnapshot.entity_type == EntityType.ADSET,
                IntelPerformanceSnapshot.snapshot_date >= since,
            )
            .group_by(IntelPerformanceSnapshot.snapshot_date)
            .order_by(IntelPerformanceSnapshot.snapshot_date.asc())
        )
        return [metrics.roas(float(revenue or 0), float(spend or 0)) for _, spend, revenue in result.all()]

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    async def _score_for_day(self, user_id: int, ad_account_id: str, day: date) -> Optional[IntelAccountScore]:
        result = await self.db.execute(
            select(IntelAccountScore).where(
                IntelAccountScore.user_id == user_id,
                IntelAccountScore.ad_account_id == ad_account_id,
                IntelAccountScore.score_date == day,
            )
        )
        return result.scalar_one_or_none()

    async def get_previous_score(self, user_id: int, ad_account_id: str, before: date) -> Optional[IntelAccountScore]:
        result = await self.db.execute(
            select(IntelAccountScore)
            .where(
                IntelAccountScore.user_id == user_id,
                IntelAccountScore.ad_account_id == ad_account_id,
                IntelAccountScore.score_date < before,
            )
            .order_by(IntelAccountScore.score_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def calculate_score_for_account(self, user_id: int, ad_account_id: str) -> IntelAccountScore:
        """Calculate and upsert today's score. Big swings notify the user."""
        today = datetime.utcnow().date()
        performance = await self.get_performance_metrics(user_id, ad_account_id)
        pixel = await PixelHealthService(self.db).get_latest_for_account(user_id, ad_account_id)
        learning = await self.get_learning_stats(user_id, ad_account_id)
        daily_roas = await self.get_daily_roas(user_id, ad_account_id)

        computed = compute_components(performance, pixel, learning, daily_roas)
        previous = await self.get_previous_score(user_id, ad_account_id, today)
        trend, trend_percentage = score_trend(computed["overall"], previous.overall_score if previous else None)

        score = await self._score_for_day(user_id, ad_account_id, today)
        if score is None:
            score = IntelAccountScore(user_id=user_id, ad_account_id=ad_account_id, score_date=today)
            self.db.add(score)

        components = computed["components"]
        score.overall_score = computed["overall"]
        score.performance_score = components["performance"]
        score.efficiency_score = components["efficiency"]
        score.pixel_health_score = components["pixel_health"]
        score.learning_score = components["learning"]
        score.consistency_score = components["consistency"]
        score.score_trend = trend
        score.trend_percentage = trend_percentage
        score.score_breakdown = {
            name: {"score": components[name], "weight": weight} for name, weight in COMPONENT_WEIGHTS.items()
        }
        score.recommendations = computed["recommendations"]
        await self.db.flush()

        if previous and abs(score.overall_score - previous.overall_score) > NOTIFY_CHANGE_THRESHOLD:
            await self._notify_score_change(score, previous.overall_score)

        await self.db.commit()
        return score

    async def _notify_score_change(self, score: IntelAccountScore, previous: int):
        dropped = score.overall_score < previous
        await self.notifications.create(
            user_id=score.user_id,
            type=NotificationType.SCORE_CHANGE,
            title=f"Account score {'dropped' if dropped else 'improved'}: {score.ad_account_id}",
            message=f"Account health score changed from {previous} to {score.overall_score}.",
            priority=NotificationPriority.HIGH if dropped else NotificationPriority.LOW,
            entity_type="ad_account",
            entity_id=score.ad_account_id,
            metadata={"previous_score": previous, "new_score": score.overall_score, "trend": score.score_trend.value},
            commit=False,
        )

    async def tracked_accounts(self) -> List[tuple]:
        """(user, ad account) pairs from completed backfills and stored snapshots."""
        backfills = await self.db.execute(
            select(IntelBackfillProgress.user_id, IntelBackfillProgress.ad_account_id)
            .where(IntelBackfillProgress.status == BackfillStatus.COMPLETED)
            .distinct()
        )
        snapshots = await self.db.execute(
            select(IntelPerformanceSnapshot.user_id, IntelPerformanceSnapshot.ad_account_id).distinct()
        )
        accounts = OrderedDict()
        for user_id, ad_account_id in list(backfills.all()) + list(snapshots.all()):
            accounts[(user_id, ad_account_id)] = None
        return list(accounts)

    async def calculate_all_scores(self) -> Optional[Dict[str, int]]:
        cls = type(self)
        if cls.calculation_in_progress:
            logger.info("Score calculation already in progress, skipping")
            return None

        cls.calculation_in_progress = True
        try:
            results = {"success": 0, "failed": 0}
            for user_id, ad_account_id in await self.tracked_accounts():
                try:
                    await self.calculate_score_for_account(user_id, ad_account_id)
                    results["success"] += 1
                except AppException as e:
                    await self.db.rollback()
                    logger.error(f"Score calculation failed for {ad_account_id}: {e.message}")
                    results["failed"] += 1

            logger.info(f"Account scores complete: {results['success']} success, {results['failed']} failed")
            return results
        finally:
            cls.calculation_in_progress = False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_score_history(self, user_id: int, ad_account_id: str, days: int = 30) -> List[IntelAccountScore]:
        since = datetime.utcnow().date() - timedelta(days=days)
        result = await self.db.execute(
            select(IntelAccountScore)
            .where(
                IntelAccountScore.user_id == user_id,
                IntelAccountScore.ad_account_id == ad_account_id,
                IntelAccountScore.score_date >= since,
            )
            .order_by(IntelAccountScore.score_date.asc())
        )
        return list(result.scalars().all())

    async def get_account_rankings(self, user_id: int) -> List[IntelAccountScore]:
        """Latest score of each account, best first."""
        latest = (
            select(IntelAccountScore.ad_account_id, func.max(IntelAccountScore.score_date).label("latest_date"))
            .where(IntelAccountScore.user_id == user_id)
            .group_by(IntelAccountScore.ad_account_id)
            .subquery()
        )
        result = await self.db.execute(
            select(IntelAccountScore)
            .join(
                latest,
                (IntelAccountScore.ad_account_id == latest.c.ad_account_id)
                & (IntelAccountScore.score_date == latest.c.latest_date),
            )
            .where(IntelAccountScore.user_id == user_id)
            .order_by(IntelAccountScore.overall_score.desc())
        )
        return list(result.scalars().all())

    async def get_dashboard_data(self, user_id: int) -> Dict[str, Any]:
        rankings = await self.get_account_rankings(user_id)
        if not rankings:
            return {
                "has_data": False,
                "message": "No account scores calculated yet. Scores are updated daily.",
            }

        trends = {}
        for score in rankings:
            history = await self.get_score_history(user_id, score.ad_account_id, 14)
            trends[score.ad_account_id] = [
                {"date": h.score_date.isoformat(), "score": h.overall_score} for h in history
            ]

        best, worst = rankings[0], rankings[-1]
        return {
            "has_data": True,
            "summary": {
                "total_accounts": len(rankings),
                "average_score": round(sum(r.overall_score for r in rankings) / len(rankings)),
                "best_account": {"id": best.ad_account_id, "score": best.overall_score, "grade": best.grade()},
                "worst_account": {"id": worst.ad_account_id, "score": worst.overall_score, "grade": worst.grade()},
            },
            "accounts": [serialize_score(r) for r in rankings],
            "trends": trends,
        }

    async def get_account_detail(self, user_id: int, ad_account_id: str) -> Dict[str, Any]:
        history = await self.get_score_history(user_id, ad_account_id, 30)
        if not history:
            return {"has_data": False}

        score = history[-1]
        return {
            "has_data": True,
            "current": {
                **serialize_score(score),
                "date": score.score_date.isoformat(),
                "components": {
                    name: {
                        "score": value,
                        "weight": f"{round(COMPONENT_WEIGHTS[name] * 100)}%",
                        "description": COMPONENT_DESCRIPTIONS[name],
                    }
                    for name, value in score.components().items()
                },
            },
            "history": [
                {"date": h.score_date.isoformat(), "score": h.overall_score, "trend": h.score_trend.value}
                for h in history
            ],
        }


def serialize_score(score: IntelAccountScore) -> Dict[str, Any]:
    return {
        "ad_account_id": score.ad_account_id,
        "overall_score": score.overall_score,
        "grade": score.grade(),
        "status": score.status_label(),
        "trend": score.score_trend.value,
        "trend_percentage": score.trend_percentage,
        "components": score.components(),
        "improvement_priority": score.improvement_priority(),
        "recommendations": score.recommendations or [],
    }
