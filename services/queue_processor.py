"""
Background processor for the request queue.

Every ``QUEUE_PROCESS_INTERVAL_SECONDS`` the processor picks up requests
whose ``process_after`` has passed, re-checks the user's rate limit and
replays the stored operation against the Graph API.
"""

import logging
from typing import Any, Dict, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.database import session_scope
from core.exceptions import AppException
from facebook.graph_client import GraphAPIClient
from models.base import NotificationType, NotificationPriority, QueueStatus
from models.request_queue import QueuedRequest
from services.accounts import get_active_auth
from services.campaign_actions import execute_action
from services.notifications import NotificationService
from services.rate_limit import RateLimitService

logger = logging.getLogger(__name__)


def describe_action(action_type) -> str:
    """``create_campaign`` -> ``create campaign``"""
    return action_type.value.replace("_", " ")


class QueueProcessor:
    def __init__(self, session_factory=None, graph_client: Optional[GraphAPIClient] = None):
        self.scheduler = AsyncIOScheduler()
        self.session_factory = session_factory
        self.graph = graph_client or GraphAPIClient()
        self.is_processing = False

    async def process_queue(self) -> Dict[str, int]:
        """Process one batch of ready requests."""
        stats = {"processed": 0, "completed": 0, "failed": 0, "rescheduled": 0}

        if self.is_processing:
            logger.debug("Queue processor: previous run still active, skipping")
            return stats

        self.is_processing = True
        try:
            async with session_scope(self.session_factory) as session:
                rate_limits = RateLimitService(session)
                ready_ids = [queued.id for queued in await rate_limits.get_ready_requests()]
                if not ready_ids:
                    return stats

                logger.info(f"Queue processor: {len(ready_ids)} request(s) ready")
                for request_id in ready_ids:
                    # reloaded per request: a rollback expires everything in the session
                    queued = await session.get(QueuedRequest, request_id)
                    outcome = await self.process_request(session, queued)
                    stats["processed"] += 1
                    stats[outcome] += 1
        except Exception as e:
            logger.error(f"Queue processor: run failed - {e}")
        finally:
            self.is_processing = False

        return stats

    async def process_request(self, session, queued: QueuedRequest) -> str:
        """
        Replay a single queued request.

        A failure anywhere after the request was marked processing, saving
        the result included, rolls the session back and records a failed
        attempt, so the request never stays in ``processing``.

        Returns:
            "completed", "failed" or "rescheduled"
        """
        rate_limits = RateLimitService(session)
        notifications = NotificationService(session)
        request_id, user_id, action_type = queued.id, queued.user_id, queued.action_type
        action = describe_action(action_type)

        await rate_limits.mark_processing(request_id)

        status = await rate_limits.check_rate_limit(user_id, queued.ad_account_id)
        if not status.can_proceed:
            # A reschedule is not a failed attempt
            queued.attempts = max(queued.attempts - 1, 0)
            await rate_limits.reschedule(request_id, status.reset_at)
            logger.info(f"Queued request {request_id} still rate limited; rescheduled to {status.reset_at}")
            return "rescheduled"

        try:
            token = await self._resolve_token(session, queued)
            result = await execute_action(
                self.graph,
                action_type,
                queued.ad_account_id,
                queued.request_data or {},
                token,
            )
            if self.graph.last_headers:
                await rate_limits.update_from_headers(user_id, queued.ad_account_id, self.graph.last_headers)

            await notifications.create(
                user_id=user_id,
                type=NotificationType.QUEUE_COMPLETED,
                title="Queued request completed",
                message=f"Your {action} has been completed successfully!",
                metadata={"queue_id": request_id, "action_type": action_type.value},
                commit=False,
            )
            await rate_limits.mark_completed(request_id, result)
            logger.info(f"Queued request {request_id} ({action}) completed")
            return "completed"

        except Exception as e:
            await session.rollback()
            error = e.message if isinstance(e, AppException) else str(e)
            updated = await rate_limits.mark_failed(request_id, error)
            if updated.status == QueueStatus.FAILED:
                await notifications.create(
                    user_id=user_id,
                    type=NotificationType.QUEUE_FAILED,
                    priority=NotificationPriority.HIGH,
                    title="Queued request failed",
                    message=f"Your {action} failed: {error}",
                    metadata={"queue_id": request_id, "action_type": action_type.value},
                )
            return "failed"

    async def _resolve_token(self, session, queued: QueuedRequest) -> str:
        token = queued.access_token
        if token:
            return token
        auth = await get_active_auth(session, queued.user_id)
        if auth is None:
            raise AppException(
                "No Facebook access token available for queued request",
                context={"queue_id": queued.id, "user_id": queued.user_id}
            )
        return auth.access_token

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.scheduler.running,
            "is_processing": self.is_processing,
            "interval_seconds": settings.QUEUE_PROCESS_INTERVAL_SECONDS,
        }

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.process_queue,
            trigger=IntervalTrigger(seconds=settings.QUEUE_PROCESS_INTERVAL_SECONDS),
            id="request_queue_job",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("Queue processor started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Queue processor stopped")
