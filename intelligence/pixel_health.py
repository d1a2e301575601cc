"""
Pixel health collection.

The daily job stores one ``intel_pixel_health`` row per pixel with the last
24 hours of event counts, event match quality and server event share.
Backfills walk the pixel's event stats over a date range and store one row
per day that has events.
"""

import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from core.exceptions import AppException, FacebookApiError, InvalidTokenError, RateLimitError
from facebook.graph_client import GraphAPIClient, normalize_ad_account_id
from models.intel_pixel_health import EVENT_COLUMNS, IntelPixelHealth
from services.accounts import list_active_auths

logger = logging.getLogger(__name__)

PIXEL_FIELDS = "id,name,is_unavailable,last_fired_time,owner_business"
EMQ_FIELDS = "event_stats,data_use_setting,first_party_cookie_status"

EMQ_TREND_THRESHOLD = 0.5
VOLUME_TREND_THRESHOLD = 20.0


def event_key(name: Optional[str]) -> Optional[str]:
    """'PageView' / 'Page View' -> 'page_view'"""
    if not name:
        return None
    snake = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", name.strip())
    return re.sub(r"[\s_]+", "_", snake).lower()


def iter_event_counts(buckets: Iterable[Dict[str, Any]]) -> Iterable[Tuple[Dict[str, Any], str, int, Optional[str]]]:
    """
    Yield (bucket, event name, count, source) from a ``/stats`` response.

    Buckets normally nest their entries under ``data`` as ``{value, count}``;
    flat ``{event, count, source}`` entries are accepted too.
    """
    for bucket in buckets:
        entries = bucket.get("data") if isinstance(bucket.get("data"), list) else [bucket]
        for entry in entries:
            name = entry.get("value") or entry.get("event")
            if not name:
                continue
            try:
                count = int(entry.get("count") or 0)
            except (TypeError, ValueError):
                count = 0
            yield bucket, name, count, entry.get("source") or bucket.get("source")


def summarize_events(buckets: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Funnel event counts plus the server side share of all events."""
    stats: Dict[str, Any] = {event: 0 for event in EVENT_COLUMNS}
    total = browser = server = 0

    for _, name, count, source in iter_event_counts(buckets):
        key = event_key(name)
        if key in EVENT_COLUMNS:
            stats[key] += count
        total += count
        if source == "browser":
            browser += count
        elif source == "server":
            server += count

    stats["total"] = total
    stats["has_server_events"] = server > 0
    stats["server_percentage"] = server / (browser + server) * 100 if browser + server else 0.0
    return stats


def bucket_day(bucket: Dict[str, Any], default: date) -> date:
    start = bucket.get("start_time")
    if start:
        try:
            return date.fromisoformat(str(start)[:10])
        except ValueError:
            return default
    timestamp = bucket.get("timestamp")
    if timestamp:
        return datetime.utcfromtimestamp(int(timestamp)).date()
    return default


def pixel_recommendations(pixel: IntelPixelHealth) -> List[Dict[str, str]]:
    recommendations = []

    if not pixel.is_active:
        recommendations.append({
            "priority": "critical",
            "category": "activity",
            "message": "Pixel is inactive. Check pixel installation on your website.",
        })
    if pixel.event_match_quality is not None and pixel.event_match_quality < 6:
        recommendations.append({
            "priority": "high",
            "category": "emq",
            "message": (
                f"EMQ score is {pixel.event_match_quality}. Improve by implementing Conversions API "
                "and passing more customer information parameters."
            ),
        })
    if not pixel.has_server_events:
        recommendations.append({
            "priority": "high",
            "category": "capi",
            "message": "Conversions API is not configured. Server-side tracking improves match quality.",
        })
    if not pixel.domain_verified:
        recommendations.append({
            "priority": "medium",
            "category": "domain",
            "message": "Domain is not verified. Verify your domain in Business Manager for better attribution.",
        })

    checkout_to_purchase = pixel.funnel_rates()["checkout_to_purchase"]
    if pixel.initiate_checkout_count and checkout_to_purchase < 20:
        recommendations.append({
            "priority": "medium",
            "category": "funnel",
            "message": f"Low checkout-to-purchase rate ({checkout_to_purchase}%). Investigate checkout drop-offs.",
        })

    return recommendations


def serialize_pixel(pixel: IntelPixelHealth) -> Dict[str, Any]:
    return {
        "id": pixel.pixel_id,
        "name": pixel.pixel_name,
        "ad_account_id": pixel.ad_account_id,
        "snapshot_date": pixel.snapshot_date.isoformat(),
        "health_score": pixel.health_score(),
        "emq": pixel.event_match_quality,
        "is_active": pixel.is_active,
        "has_server_events": pixel.has_server_events,
        "domain_verified": pixel.domain_verified,
        "events": pixel.event_counts(),
        "funnel": pixel.funnel_rates(),
        "recommendations": pixel_recommendations(pixel),
    }


class PixelHealthService:
    """Fetches pixel data from the Graph API and keeps ``intel_pixel_health`` current."""

    def __init__(self, db_session: AsyncSession, graph_client: Optional[GraphAPIClient] = None):
        self.db = db_session
        self.graph = graph_client or GraphAPIClient()

    # ------------------------------------------------------------------
    # Graph reads
    # ------------------------------------------------------------------

    async def fetch_pixels(self, ad_account_id: str, token: str) -> List[Dict[str, Any]]:
        try:
            data = await self.graph.get(
                f"{normalize_ad_account_id(ad_account_id)}/adspixels", token, params={"fields": PIXEL_FIELDS}
            )
        except (RateLimitError, InvalidTokenError):
            raise
        except FacebookApiError as e:
            logger.info(f"No pixel data for {ad_account_id}: {e.message}")
            return []
        return data.get("data", [])

    async def fetch_stats(self, pixel_id: str, token: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        try:
            data = await self.graph.get(
                f"{pixel_id}/stats",
                token,
                params={
                    "aggregation": "event",
                    "start_time": int(start.timestamp()),
                    "end_time": int(end.timestamp()),
                },
            )
        except (RateLimitError, InvalidTokenError):
            raise
        except FacebookApiError as e:
            logger.debug(f"Stats unavailable for pixel {pixel_id}: {e.message}")
            return []
        return data.get("data", [])

    async def fetch_event_match_quality(self, pixel_id: str, token: str) -> Optional[Dict[str, Any]]:
        """Purchase event match quality and domain verification, None when not permitted."""
        try:
            data = await self.graph.get(pixel_id, token, params={"fields": EMQ_FIELDS})
        except (RateLimitError, InvalidTokenError):
            raise
        except FacebookApiError as e:
            logger.debug(f"EMQ unavailable for pixel {pixel_id}: {e.message}")
            return None

        emq = None
        for stat in data.get("event_stats") or []:
            if stat.get("event") == "Purchase" and stat.get("match_quality_score"):
                emq = float(stat["match_quality_score"])
                break

        return {
            "emq": emq,
            "domain_verified": data.get("first_party_cookie_status") == "verified",
            "domain": (data.get("data_use_setting") or {}).get("domain"),
        }

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def _get_row(self, pixel_id: str, day: date) -> Optional[IntelPixelHealth]:
        result = await self.db.execute(
            select(IntelPixelHealth).where(
                IntelPixelHealth.pixel_id == pixel_id,
                IntelPixelHealth.snapshot_date == day,
            )
        )
        return result.scalar_one_or_none()

    async def store_pixel_health(
        self,
        user_id: int,
        ad_account_id: str,
        pixel: Dict[str, Any],
        stats: Dict[str, Any],
        emq: Optional[Dict[str, Any]],
        day: date,
    ) -> IntelPixelHealth:
        """Upsert today's row for one pixel."""
        row = await self._get_row(pixel["id"], day)
        if row is None:
            row = IntelPixelHealth(pixel_id=pixel["id"], snapshot_date=day)
            self.db.add(row)

        row.user_id = user_id
        row.ad_account_id = ad_account_id
        row.pixel_name = pixel.get("name")
        row.is_active = not pixel.get("is_unavailable", False)
        row.last_fired_time = _parse_time(pixel.get("last_fired_time"))
        for event, column in EVENT_COLUMNS.items():
            setattr(row, column, stats.get(event, 0))
        row.has_server_events = stats["has_server_events"]
        row.server_event_percentage = round(stats["server_percentage"], 2)
        row.event_match_quality = emq["emq"] if emq else None
        row.domain_verified = bool(emq and emq["domain_verified"])
        row.domain_name = emq["domain"] if emq else None
        row.raw_pixel_data = {"pixel": pixel, "stats": stats, "emq": emq}
        await self.db.flush()
        return row

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def collect_for_account(self, user_id: int, ad_account_id: str, token: str) -> int:
        """Store today's health for each pixel of the account. Returns pixels stored."""
        now = datetime.utcnow()
        pixels = await self.fetch_pixels(ad_account_id, token)

        for pixel in pixels:
            buckets = await self.fetch_stats(pixel["id"], token, now - timedelta(days=1), now)
            emq = await self.fetch_event_match_quality(pixel["id"], token)
            stats = summarize_events(buckets)
            await self.store_pixel_health(user_id, ad_account_id, pixel, stats, emq, now.date())
            logger.debug(f"Pixel {pixel.get('name')}: EMQ={emq['emq'] if emq else 'n/a'}, events={stats['total']}")

        await self.db.commit()
        return len(pixels)

    async def collect_all(self) -> Dict[str, Any]:
        results = {"success": 0, "failed": 0, "pixels": 0, "errors": []}

        accounts = [
            (auth.user_id, auth.selected_ad_account_id, auth.access_token)
            for auth in await list_active_auths(self.db)
        ]
        for user_id, ad_account_id, token in accounts:
            try:
                results["pixels"] += await self.collect_for_account(user_id, ad_account_id, token)
                results["success"] += 1
            except AppException as e:
                await self.db.rollback()
                logger.error(f"Pixel collection failed for {ad_account_id}: {e.message}")
                results["failed"] += 1
                results["errors"].append({"ad_account_id": ad_account_id, "error": e.message})

        logger.info(f"Pixel health collection complete: {results['success']} success, {results['failed']} failed")
        return results

    async def backfill_account(
        self,
        user_id: int,
        ad_account_id: str,
        token: str,
        start_date: date,
        end_date: date,
    ) -> Dict[str, Any]:
        """
        Store daily event counts for every pixel between the two dates.

        Days that already have a row are left alone. Returns a per-pixel
        summary of the whole range.
        """
        start = datetime.combine(start_date, datetime.min.time())
        end = datetime.combine(end_date, datetime.max.time())
        summaries = []

        for pixel in await self.fetch_pixels(ad_account_id, token):
            buckets = await self.fetch_stats(pixel["id"], token, start, end)

            by_day: Dict[date, List[Dict[str, Any]]] = {}
            events: Dict[str, int] = {}
            for bucket, name, count, _ in iter_event_counts(buckets):
                events[name] = events.get(name, 0) + count
            for bucket in buckets:
                by_day.setdefault(bucket_day(bucket, end_date), []).append(bucket)

            stored = 0
            for day, day_buckets in sorted(by_day.items()):
                if await self._get_row(pixel["id"], day) is not None:
                    continue
                stats = summarize_events(day_buckets)
                self.db.add(IntelPixelHealth(
                    user_id=user_id,
                    ad_account_id=ad_account_id,
                    pixel_id=pixel["id"],
                    pixel_name=pixel.get("name"),
                    snapshot_date=day,
                    is_active=not pixel.get("is_unavailable", False),
                    has_server_events=stats["has_server_events"],
                    server_event_percentage=round(stats["server_percentage"], 2),
                    **{column: stats[event] for event, column in EVENT_COLUMNS.items()},
                ))
                stored += 1
            await self.db.flush()

            summaries.append({
                "pixel_id": pixel["id"],
                "name": pixel.get("name"),
                "last_fired_time": pixel.get("last_fired_time"),
                "days_with_data": len(by_day),
                "days_stored": stored,
                "total_events": sum(events.values()),
                "events": events,
            })

        await self.db.commit()
        logger.info(f"Pixel backfill for {ad_account_id}: {len(summaries)} pixel(s)")
        return {"pixels_processed": len(summaries), "pixels": summaries}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_latest_for_user(self, user_id: int) -> List[IntelPixelHealth]:
        """Most recent row of each of the user's pixels."""
        latest = (
            select(IntelPixelHealth.pixel_id, func.max(IntelPixelHealth.snapshot_date).label("latest_date"))
            .where(IntelPixelHealth.user_id == user_id)
            .group_by(IntelPixelHealth.pixel_id)
            .subquery()
        )
        result = await self.db.execute(
            select(IntelPixelHealth)
            .join(
                latest,
                (IntelPixelHealth.pixel_id == latest.c.pixel_id)
                & (IntelPixelHealth.snapshot_date == latest.c.latest_date),
            )
            .where(IntelPixelHealth.user_id == user_id)
            .order_by(IntelPixelHealth.pixel_id.asc())
        )
        return list(result.scalars().all())

    async def get_latest_for_account(self, user_id: int, ad_account_id: str) -> Optional[IntelPixelHealth]:
        result = await self.db.execute(
            select(IntelPixelHealth)
            .where(IntelPixelHealth.user_id == user_id, IntelPixelHealth.ad_account_id == ad_account_id)
            .order_by(IntelPixelHealth.snapshot_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_health_summary(self, user_id: int) -> Dict[str, Any]:
        pixels = await self.get_latest_for_user(user_id)
        if not pixels:
            return {"pixels": [], "summary": None}

        emq_values = [p.event_match_quality for p in pixels if p.event_match_quality]
        summary = {
            "total_pixels": len(pixels),
            "active_pixels": sum(1 for p in pixels if p.is_active),
            "avg_emq": round(sum(emq_values) / len(emq_values), 1) if emq_values else None,
            "pixels_with_server_events": sum(1 for p in pixels if p.has_server_events),
            "total_purchases": sum(p.purchase_count for p in pixels),
        }
        return {"pixels": [serialize_pixel(p) for p in pixels], "summary": summary}

    async def get_pixel_trends(self, user_id: int, pixel_id: str, days: int = 30) -> Dict[str, Any]:
        since = datetime.utcnow().date() - timedelta(days=days)
        result = await self.db.execute(
            select(IntelPixelHealth)
            .where(
                IntelPixelHealth.user_id == user_id,
                IntelPixelHealth.pixel_id == pixel_id,
                IntelPixelHealth.snapshot_date >= since,
            )
            .order_by(IntelPixelHealth.snapshot_date.asc())
        )
        history = list(result.scalars().all())
        if not history:
            return {"emq_trend": "no_data", "volume_trend": "no_data", "data": []}

        return {
            "emq_trend": emq_trend(history),
            "volume_trend": volume_trend([h.purchase_count for h in history]),
            "data": [
                {
                    "date": h.snapshot_date.isoformat(),
                    "emq": h.event_match_quality,
                    "purchases": h.purchase_count,
                    "health_score": h.health_score(),
                }
                for h in history
            ],
        }


def emq_trend(history: List[IntelPixelHealth]) -> str:
    values = [h.event_match_quality for h in history if h.event_match_quality is not None]
    if len(values) < 2:
        return "stable"
    change = values[-1] - values[0]
    if change > EMQ_TREND_THRESHOLD:
        return "improving"
    if change < -EMQ_TREND_THRESHOLD:
        return "declining"
    return "stable"


def volume_trend(counts: List[int]) -> str:
    """Compare the average of the first half (rounded up) with the rest."""
    if len(counts) < 2:
        return "stable"
    middle = (len(counts) + 1) // 2
    first = sum(counts[:middle]) / middle
    last = sum(counts[middle:]) / (len(counts) - middle)
    if first <= 0:
        return "stable"
    change = (last - first) / first * 100
    if change > VOLUME_TREND_THRESHOLD:
        return "increasing"
    if change < -VOLUME_TREND_THRESHOLD:
        return "decreasing"
    return "stable"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")
    except ValueError:
        return None
    return parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
