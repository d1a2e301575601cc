"""
Unit tests for rate limit tracking and the request queue
"""

import pytest
from datetime import datetime, timedelta
from core.exceptions import ResourceNotFoundError, ValidationError
from models.base import ActionType, QueueStatus
from models.rate_limit_tracker import RateLimitTracker
from services.rate_limit import RateLimitService, parse_usage_headers


class TestParseUsageHeaders:
    """Test Graph API usage header parsing"""

    def test_business_use_case_header(self, usage_headers):
        usage = parse_usage_headers(usage_headers, default_limit=200)

        assert usage.call_count == 50
        assert usage.call_limit == 200
        assert usage.regain_access_seconds == 3600

    def test_regain_access_time_is_used(self):
        headers = {"X-Business-Use-Case-Usage": '{"1": [{"call_count": 10, "estimated_time_to_regain_access": 120}]}'}

        usage = parse_usage_headers(headers, default_limit=200)

        assert usage.call_count == 10
        assert usage.regain_access_seconds == 120

    def test_falls_back_to_app_usage(self):
        usage = parse_usage_headers({"x-app-usage": '{"call_count": 42}'}, default_limit=200)

        assert usage.call_count == 42

    def test_no_headers(self):
        assert parse_usage_headers({}, default_limit=200) is None

    def test_malformed_header(self):
        assert parse_usage_headers({"x-app-usage": "not json"}, default_limit=200) is None

    @pytest.mark.parametrize("value", [
        '{"123": {"call_count": 10}}',
        '{"123": ["busy"]}',
        '["not", "a", "mapping"]',
    ])
    def test_unexpected_business_usage_shape(self, value):
        assert parse_usage_headers({"x-business-use-case-usage": value}, default_limit=200) is None


class TestRateLimitService:
    """Test rate limit checks against stored trackers"""

    @pytest.mark.asyncio
    async def test_unknown_account_can_proceed(self, db_session):
        status = await RateLimitService(db_session).check_rate_limit(1, "act_1")

        assert status.can_proceed is True
        assert status.usage_percentage == 0

    @pytest.mark.asyncio
    async def test_update_from_headers_creates_tracker(self, db_session, usage_headers):
        service = RateLimitService(db_session)

        status = await service.update_from_headers(1, "act_1", usage_headers)
        tracker = await service.get_tracker(1, "act_1")

        assert status.usage_percentage == 25.0
        assert status.can_proceed is True
        assert tracker.calls_used == 50
        assert tracker.last_response_headers["business_use_case_usage"] is not None

    @pytest.mark.asyncio
    async def test_update_without_headers_is_noop(self, db_session):
        service = RateLimitService(db_session)

        assert await service.update_from_headers(1, "act_1", {}) is None
        assert await service.get_tracker(1, "act_1") is None

    @pytest.mark.asyncio
    async def test_threshold_queues(self, db_session):
        db_session.add(RateLimitTracker(
            user_id=1,
            ad_account_id="act_1",
            calls_used=170,
            calls_limit=200,
            usage_percentage=85.0,
            window_reset_at=datetime.utcnow() + timedelta(minutes=30),
        ))
        await db_session.commit()

        status = await RateLimitService(db_session).check_rate_limit(1, "act_1")

        assert status.can_proceed is False
        assert status.should_queue is True
        assert status.as_response()["usagePercentage"] == 85.0

    @pytest.mark.asyncio
    async def test_expired_window_resets(self, db_session):
        db_session.add(RateLimitTracker(
            user_id=1,
            ad_account_id="act_1",
            calls_used=190,
            calls_limit=200,
            usage_percentage=95.0,
            window_reset_at=datetime.utcnow() - timedelta(minutes=1),
        ))
        await db_session.commit()

        service = RateLimitService(db_session)
        status = await service.check_rate_limit(1, "act_1")
        tracker = await service.get_tracker(1, "act_1")

        assert status.can_proceed is True
        assert tracker.calls_used == 0
        assert tracker.usage_percentage == 0.0


class TestRequestQueue:
    """Test queue lifecycle"""

    async def _queue(self, service, user_id=1, process_after=None):
        return await service.queue_request(
            user_id=user_id,
            ad_account_id="act_1",
            action_type=ActionType.CREATE_CAMPAIGN,
            request_data={"method": "POST", "path": "/api/campaigns/create", "body": {"name": "Test"}},
            access_token="user-token-abcdef123456",
            process_after=process_after,
        )

    @pytest.mark.asyncio
    async def test_queue_request_stores_encrypted_token(self, db_session):
        queued = await self._queue(RateLimitService(db_session), process_after=datetime.utcnow() + timedelta(minutes=30))

        request = queued["request"]
        assert request.status == QueueStatus.QUEUED
        assert request.access_token_encrypted != "user-token-abcdef123456"
        assert request.access_token == "user-token-abcdef123456"
        assert 29 <= queued["estimated_wait_minutes"] <= 30

    @pytest.mark.asyncio
    async def test_ready_requests_respect_process_after(self, db_session):
        service = RateLimitService(db_session)
        await self._queue(service, process_after=datetime.utcnow() - timedelta(minutes=1))
        await self._queue(service, process_after=datetime.utcnow() + timedelta(hours=1))

        ready = await service.get_ready_requests()

        assert len(ready) == 1

    @pytest.mark.asyncio
    async def test_mark_failed_retries_with_backoff(self, db_session):
        service = RateLimitService(db_session)
        queued = (await self._queue(service))["request"]

        await service.mark_processing(queued.id)
        updated = await service.mark_failed(queued.id, "boom")

        assert updated.status == QueueStatus.QUEUED
        assert updated.error == "boom"
        assert updated.process_after > datetime.utcnow() + timedelta(minutes=25)

    @pytest.mark.asyncio
    async def test_mark_failed_after_max_attempts(self, db_session):
        service = RateLimitService(db_session)
        queued = (await self._queue(service))["request"]

        for _ in range(3):
            await service.mark_processing(queued.id)
        updated = await service.mark_failed(queued.id, "boom")

        assert updated.status == QueueStatus.FAILED
        assert updated.processed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_only_own_requests(self, db_session):
        service = RateLimitService(db_session)
        queued = (await self._queue(service, user_id=1))["request"]

        with pytest.raises(ResourceNotFoundError):
            await service.cancel_request(2, queued.id)

        cancelled = await service.cancel_request(1, queued.id)
        assert cancelled.status == QueueStatus.CANCELLED

        with pytest.raises(ValidationError):
            await service.cancel_request(1, queued.id)

    @pytest.mark.asyncio
    async def test_list_requests_pagination(self, db_session):
        service = RateLimitService(db_session)
        for _ in range(3):
            await self._queue(service)

        listing = await service.list_requests(QueueStatus.QUEUED, page=1, limit=2)

        assert listing["total"] == 3
        assert listing["total_pages"] == 2
        assert len(listing["requests"]) == 2
        assert await service.count_queued() == 3
