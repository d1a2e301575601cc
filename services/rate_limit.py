"""
Per user / ad account rate limit tracking and the request queue.

Usage is learned from the Graph API response headers after every call.
When a user is at or above the queue threshold (80% by default) new
campaign operations are stored in ``request_queue`` and replayed later by
the queue processor.
"""

import json
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional
from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.exceptions import ResourceNotFoundError, ValidationError
from models.base import ActionType, QueueStatus
from models.rate_limit_tracker import RateLimitTracker
from models.request_queue import QueuedRequest
import logging

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
RETRY_BASE_DELAY_MINUTES = 15


class HeaderUsage(BaseModel):
    call_count: int = 0
    call_limit: int = 200
    regain_access_seconds: int = DEFAULT_WINDOW_SECONDS


class RateLimitStatus(BaseModel):
    can_proceed: bool
    usage_percentage: float = 0.0
    calls_used: int = 0
    calls_limit: int = 200
    reset_at: Optional[datetime] = None
    should_queue: bool = False

    def as_response(self) -> Dict[str, Any]:
        return {
            "canProceed": self.can_proceed,
            "usagePercentage": round(self.usage_percentage, 2),
            "callsUsed": self.calls_used,
            "callsLimit": self.calls_limit,
            "resetAt": self.reset_at.isoformat() if self.reset_at else None,
            "shouldQueue": self.should_queue,
        }


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def parse_usage_headers(headers: Mapping[str, str], default_limit: Optional[int] = None) -> Optional[HeaderUsage]:
    """
    Read call usage from Graph API response headers.

    ``x-business-use-case-usage`` is preferred: the first entry of the first
    account gives ``call_count`` and ``estimated_time_to_regain_access``.
    Falls back to ``x-app-usage``. Returns None if neither header is present
    or parseable.
    """
    default_limit = default_limit or settings.RATE_LIMIT_DEFAULT_LIMIT
    business_usage = get_header(headers, "x-business-use-case-usage")
    app_usage = get_header(headers, "x-app-usage")

    try:
        if business_usage:
            usage = json.loads(business_usage)
            entries = next(iter(usage.values()), None)
            if entries and not isinstance(entries, list):
                raise ValueError(f"expected a list of usage entries, got {type(entries).__name__}")
            if entries:
                entry = entries[0]
                return HeaderUsage(
                    call_count=entry.get("call_count") or 0,
                    call_limit=default_limit,
                    regain_access_seconds=entry.get("estimated_time_to_regain_access") or DEFAULT_WINDOW_SECONDS,
                )
            return HeaderUsage(call_limit=default_limit)

        if app_usage:
            usage = json.loads(app_usage)
            return HeaderUsage(call_count=usage.get("call_count") or 0, call_limit=default_limit)
    except (ValueError, AttributeError, TypeError, KeyError, IndexError) as e:
        logger.warning(f"Could not parse rate limit headers: {e}")

    return None


class RateLimitService:
    """
    Rate limit tracking and request queue operations.

    Attributes:
        queue_threshold: Usage percentage at which requests are queued
        default_limit: Calls per hour assumed for a user token
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        self.queue_threshold = settings.RATE_LIMIT_QUEUE_THRESHOLD
        self.default_limit = settings.RATE_LIMIT_DEFAULT_LIMIT

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    async def get_tracker(self, user_id: int, ad_account_id: str) -> Optional[RateLimitTracker]:
        result = await self.db.execute(
            select(RateLimitTracker).where(
                RateLimitTracker.user_id == user_id,
                RateLimitTracker.ad_account_id == ad_account_id,
            )
        )
        return result.scalar_one_or_none()

    async def update_from_headers(
        self,
        user_id: int,
        ad_account_id: str,
        headers: Mapping[str, str]
    ) -> Optional[RateLimitStatus]:
        """Upsert the tracker from response headers. No-op without usage headers."""
        usage = parse_usage_headers(headers, self.default_limit)
        if usage is None:
            return None

        now = datetime.utcnow()
        usage_percentage = usage.call_count / usage.call_limit * 100
        reset_at = now + timedelta(seconds=usage.regain_access_seconds)

        tracker = await self.get_tracker(user_id, ad_account_id)
        if tracker is None:
            tracker = RateLimitTracker(user_id=user_id, ad_account_id=ad_account_id)
            self.db.add(tracker)

        tracker.calls_used = usage.call_count
        tracker.calls_limit = usage.call_limit
        tracker.usage_percentage = usage_percentage
        tracker.window_reset_at = reset_at
        tracker.last_response_headers = {
            "business_use_case_usage": get_header(headers, "x-business-use-case-usage"),
            "app_usage": get_header(headers, "x-app-usage"),
            "timestamp": now.isoformat(),
        }
        await self.db.commit()

        logger.debug(
            f"Rate limit for user {user_id} / {ad_account_id}: "
            f"{usage.call_count}/{usage.call_limit} ({usage_percentage:.1f}%)"
        )

        return RateLimitStatus(
            can_proceed=usage_percentage < self.queue_threshold,
            usage_percentage=usage_percentage,
            calls_used=usage.call_count,
            calls_limit=usage.call_limit,
            reset_at=reset_at,
            should_queue=usage_percentage >= self.queue_threshold,
        )

    async def check_rate_limit(self, user_id: int, ad_account_id: str) -> RateLimitStatus:
        tracker = await self.get_tracker(user_id, ad_account_id)

        if tracker is None:
            return RateLimitStatus(can_proceed=True, calls_limit=self.default_limit)

        now = datetime.utcnow()
        if tracker.window_reset_at and tracker.window_reset_at <= now:
            tracker.calls_used = 0
            tracker.usage_percentage = 0.0
            tracker.window_reset_at = now + timedelta(seconds=DEFAULT_WINDOW_SECONDS)
            await self.db.commit()
            return RateLimitStatus(
                can_proceed=True,
                calls_limit=tracker.calls_limit,
                reset_at=tracker.window_reset_at,
            )

        should_queue = tracker.usage_percentage >= self.queue_threshold
        return RateLimitStatus(
            can_proceed=not should_queue,
            usage_percentage=tracker.usage_percentage,
            calls_used=tracker.calls_used,
            calls_limit=tracker.calls_limit,
            reset_at=tracker.window_reset_at,
            should_queue=should_queue,
        )

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    async def queue_request(
        self,
        user_id: int,
        ad_account_id: str,
        action_type: ActionType,
        request_data: Dict[str, Any],
        access_token: Optional[str],
        priority: int = 5,
        process_after: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Store a request for later execution.

        Returns:
            Dictionary with the queued row and ``estimated_wait_minutes``
        """
        now = datetime.utcnow()
        process_after = process_after or now + timedelta(seconds=DEFAULT_WINDOW_SECONDS)

        queued = QueuedRequest(
            user_id=user_id,
            ad_account_id=ad_account_id,
            action_type=action_type,
            request_data=request_data,
            access_token=access_token,
            priority=priority,
            status=QueueStatus.QUEUED,
            process_after=process_after,
            attempts=0,
            max_attempts=3,
        )
        self.db.add(queued)
        await self.db.commit()
        await self.db.refresh(queued)

        estimated_wait_minutes = max(0, math.ceil((process_after - now).total_seconds() / 60))
        logger.info(
            f"Queued {action_type.value} for user {user_id} / {ad_account_id} "
            f"(id={queued.id}, wait ~{estimated_wait_minutes} min)"
        )

        return {"request": queued, "estimated_wait_minutes": estimated_wait_minutes}

    async def get_ready_requests(self, limit: Optional[int] = None) -> List[QueuedRequest]:
        result = await self.db.execute(
            select(QueuedRequest)
            .where(
                QueuedRequest.status == QueueStatus.QUEUED,
                QueuedRequest.process_after <= datetime.utcnow(),
                QueuedRequest.attempts < QueuedRequest.max_attempts,
            )
            .order_by(QueuedRequest.priority.asc(), QueuedRequest.created_at.asc())
            .limit(limit or settings.QUEUE_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def _get_request(self, request_id: int) -> QueuedRequest:
        queued = await self.db.get(QueuedRequest, request_id)
        if queued is None:
            raise ResourceNotFoundError(
                f"Queued request {request_id} not found",
                context={"request_id": request_id}
            )
        return queued

    async def mark_processing(self, request_id: int) -> QueuedRequest:
        queued = await self._get_request(request_id)
        queued.status = QueueStatus.PROCESSING
        queued.attempts += 1
        await self.db.commit()
        return queued

    async def reschedule(self, request_id: int, process_after: Optional[datetime]) -> QueuedRequest:
        """Put a request back in the queue without counting a failure."""
        queued = await self._get_request(request_id)
        queued.status = QueueStatus.QUEUED
        queued.process_after = process_after or datetime.utcnow() + timedelta(seconds=DEFAULT_WINDOW_SECONDS)
        await self.db.commit()
        return queued

    async def mark_completed(self, request_id: int, result: Any) -> QueuedRequest:
        queued = await self._get_request(request_id)
        queued.status = QueueStatus.COMPLETED
        queued.result = result
        queued.error = None
        queued.processed_at = datetime.utcnow()
        await self.db.commit()
        return queued

    async def mark_failed(self, request_id: int, error: str) -> QueuedRequest:
        """
        Record a failed attempt.

        Requeues with exponential backoff (2^attempts * 15 minutes) while
        attempts remain; otherwise the request is marked failed.
        """
        queued = await self._get_request(request_id)
        queued.error = error

        if queued.attempts < queued.max_attempts:
            delay_minutes = (2 ** queued.attempts) * RETRY_BASE_DELAY_MINUTES
            queued.status = QueueStatus.QUEUED
            queued.process_after = datetime.utcnow() + timedelta(minutes=delay_minutes)
            logger.warning(
                f"Queued request {request_id} failed (attempt {queued.attempts}/{queued.max_attempts}); "
                f"retrying in {delay_minutes} min: {error}"
            )
        else:
            queued.status = QueueStatus.FAILED
            queued.processed_at = datetime.utcnow()
            logger.error(f"Queued request {request_id} permanently failed: {error}")

        await self.db.commit()
        return queued

    async def cancel_request(self, user_id: int, request_id: int) -> QueuedRequest:
        queued = await self._get_request(request_id)
        if queued.user_id != user_id:
            raise ResourceNotFoundError(
                f"Queued request {request_id} not found",
                context={"request_id": request_id}
            )
        if queued.status != QueueStatus.QUEUED:
            raise ValidationError(
                f"Only queued requests can be cancelled (status: {queued.status.value})",
                context={"request_id": request_id}
            )
        queued.status = QueueStatus.CANCELLED
        await self.db.commit()
        return queued

    async def get_user_queued_requests(self, user_id: int) -> List[QueuedRequest]:
        result = await self.db.execute(
            select(QueuedRequest)
            .where(
                QueuedRequest.user_id == user_id,
                QueuedRequest.status.in_([QueueStatus.QUEUED, QueueStatus.PROCESSING]),
            )
            .order_by(QueuedRequest.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_requests(
        self,
        status: Optional[QueueStatus] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        query = select(QueuedRequest)
        count_query = select(func.count()).select_from(QueuedRequest)
        if status is not None:
            query = query.where(QueuedRequest.status == status)
            count_query = count_query.where(QueuedRequest.status == status)

        total = (await self.db.execute(count_query)).scalar() or 0
        result = await self.db.execute(
            query.order_by(QueuedRequest.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )

        return {
            "requests": list(result.scalars().all()),
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    async def count_queued(self) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(QueuedRequest).where(QueuedRequest.status == QueueStatus.QUEUED)
        )
        return result.scalar() or 0
