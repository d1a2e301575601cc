"""
Unit tests for the Graph API client
"""

import json
import httpx
import pytest
from unittest.mock import AsyncMock
from urllib.parse import parse_qs
from core.exceptions import (
    AllAppsExhaustedError,
    FacebookApiError,
    InvalidTokenError,
    NetworkError,
    RateLimitError,
)
from facebook.app_rotation import AppRotationService
from facebook.backup_apps import BackupApp, MAIN_APP_ID
from facebook.graph_client import (
    GraphAPIClient,
    RequestStats,
    _encode_form,
    is_invalid_token_error,
    is_rate_limit_error,
    normalize_ad_account_id,
)

USER_TOKEN = "user-token-abcdef123456"
BACKUP_1_TOKEN = "backup-token-1-abcdef"
BACKUP_2_TOKEN = "backup-token-2-abcdef"


def make_rotation():
    return AppRotationService(apps=[
        BackupApp(app_id=MAIN_APP_ID, name="Main", priority=1, is_backup=False),
        BackupApp(app_id="backup_1", name="Backup 1", access_token=BACKUP_1_TOKEN, priority=2),
        BackupApp(app_id="backup_2", name="Backup 2", access_token=BACKUP_2_TOKEN, priority=3),
    ])


def make_client(handler, rotation=None, **kwargs):
    return GraphAPIClient(
        rotation=rotation or make_rotation(),
        base_url="https://graph.test/v19.0",
        transport=httpx.MockTransport(handler),
        sleep=AsyncMock(),
        **kwargs,
    )


def fb_error(status_code, code, message="error", subcode=None):
    error = {"message": message, "code": code, "type": "OAuthException"}
    if subcode:
        error["error_subcode"] = subcode
    return httpx.Response(status_code, json={"error": error})


def token_of(request):
    return request.url.params["access_token"]


class TestHelpers:
    """Test error classification and encoding helpers"""

    def test_normalize_ad_account_id(self):
        assert normalize_ad_account_id("123") == "act_123"
        assert normalize_ad_account_id("act_123") == "act_123"
        assert normalize_ad_account_id(" 456 ") == "act_456"

    @pytest.mark.parametrize("status_code,error", [
        (429, {}),
        (400, {"code": 4}),
        (400, {"code": 17}),
        (400, {"code": 613}),
        (400, {"code": 100, "error_subcode": 80004}),
        (400, {"message": "User request limit reached: Rate Limit"}),
    ])
    def test_rate_limit_errors(self, status_code, error):
        assert is_rate_limit_error(status_code, error) is True

    def test_other_errors_are_not_rate_limits(self):
        assert is_rate_limit_error(400, {"code": 100, "message": "Invalid parameter"}) is False

    def test_invalid_token(self):
        assert is_invalid_token_error(401, {}) is True
        assert is_invalid_token_error(400, {"code": 190}) is True
        assert is_invalid_token_error(400, {"code": 100}) is False

    def test_encode_form(self):
        encoded = _encode_form({
            "name": "Test",
            "daily_budget": 5000,
            "targeting": {"geo_locations": {"countries": ["US"]}},
            "special_ad_categories": [],
            "is_dynamic": True,
            "bid_amount": None,
        })

        assert encoded["daily_budget"] == "5000"
        assert json.loads(encoded["targeting"]) == {"geo_locations": {"countries": ["US"]}}
        assert encoded["special_ad_categories"] == "[]"
        assert encoded["is_dynamic"] == "true"
        assert "bid_amount" not in encoded
        assert _encode_form(None) is None


class TestRequest:
    """Test request flow and rotation"""

    @pytest.mark.asyncio
    async def test_success_uses_user_token_and_captures_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json={"id": "123"},
                headers={"x-app-usage": '{"call_count": 5}', "x-other": "ignored"},
            )

        client = make_client(handler)
        response = await client.request("GET", "act_1/campaigns", USER_TOKEN)

        assert response.data == {"id": "123"}
        assert response.app_id == MAIN_APP_ID
        assert token_of(seen[0]) == USER_TOKEN
        assert seen[0].url.path == "/v19.0/act_1/campaigns"
        assert client.last_headers == {"x-app-usage": '{"call_count": 5}'}
        assert client.rotation.usage[MAIN_APP_ID] == 1

    @pytest.mark.asyncio
    async def test_rotates_to_backup_on_rate_limit(self):
        def handler(request):
            if token_of(request) == USER_TOKEN:
                return fb_error(400, 17, "User request limit reached")
            return httpx.Response(200, json={"id": "c1"})

        client = make_client(handler)
        response = await client.request("POST", "act_1/campaigns", USER_TOKEN, data={"name": "Test"})

        assert response.app_id == "backup_1"
        assert MAIN_APP_ID in client.rotation.exhausted_apps
        assert client.stats.rotation_count == 1
        assert client.stats.success_count == 1

    @pytest.mark.asyncio
    async def test_post_sends_form_body(self):
        seen = []

        def handler(request):
            seen.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"id": "c1"})

        client = make_client(handler)
        await client.create_campaign("1", {"name": "Test", "special_ad_categories": []}, USER_TOKEN)

        assert seen[0]["name"] == ["Test"]
        assert seen[0]["special_ad_categories"] == ["[]"]

    @pytest.mark.asyncio
    async def test_invalid_backup_token_rotates(self):
        def handler(request):
            token = token_of(request)
            if token == USER_TOKEN:
                return fb_error(429, 4)
            if token == BACKUP_1_TOKEN:
                return fb_error(400, 190, "Invalid OAuth access token")
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler)
        response = await client.request("GET", "me", USER_TOKEN)

        assert response.app_id == "backup_2"

    @pytest.mark.asyncio
    async def test_invalid_user_token_raises(self):
        client = make_client(lambda request: fb_error(401, 190, "Session has expired"))

        with pytest.raises(InvalidTokenError) as exc_info:
            await client.request("GET", "me", USER_TOKEN)

        assert exc_info.value.app_name == "Main"
        assert client.rotation.exhausted_apps == set()

    @pytest.mark.asyncio
    async def test_every_app_rate_limited(self):
        client = make_client(lambda request: fb_error(429, 4))

        with pytest.raises(AllAppsExhaustedError):
            await client.request("GET", "me", USER_TOKEN)

        assert len(client.rotation.exhausted_apps) == 3

    @pytest.mark.asyncio
    async def test_explicit_token_rate_limit_is_raised(self):
        seen = []

        def handler(request):
            seen.append(token_of(request))
            return fb_error(400, 100, subcode=80004)

        client = make_client(handler)

        with pytest.raises(RateLimitError):
            await client.request("GET", "me", "system-user-token-abcdef", rotate=False)

        assert seen == ["system-user-token-abcdef"]
        assert client.rotation.exhausted_apps == set()

    @pytest.mark.asyncio
    async def test_timeouts_retried_then_network_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        client = make_client(handler)

        with pytest.raises(NetworkError):
            await client.request("GET", "me", USER_TOKEN)

        assert client._sleep.await_count == 2
        assert client.stats.failure_count == 3

    @pytest.mark.asyncio
    async def test_other_errors_mapped(self):
        client = make_client(lambda request: fb_error(400, 100, "Invalid parameter"))

        with pytest.raises(FacebookApiError) as exc_info:
            await client.request("POST", "act_1/campaigns", USER_TOKEN, data={})

        assert exc_info.value.fb_code == 100
        assert exc_info.value.message == "Invalid parameter"

    @pytest.mark.asyncio
    async def test_shared_stats(self):
        stats = RequestStats()
        handler = lambda request: httpx.Response(200, json={})

        await make_client(handler, stats=stats).get("me", USER_TOKEN)
        await make_client(handler, stats=stats).get("me", USER_TOKEN)

        assert stats.request_count == 2
        assert make_client(handler, stats=stats).get_stats()["successRate"] == 100.0


class TestInsights:
    """Test paged insight retrieval"""

    @pytest.mark.asyncio
    async def test_follows_paging(self):
        pages = {
            None: {
                "data": [{"campaign_id": "1"}],
                "paging": {"cursors": {"after": "abc"}, "next": "https://graph.test/next"},
            },
            "abc": {"data": [{"campaign_id": "2"}], "paging": {"cursors": {"after": "def"}}},
        }

        def handler(request):
            return httpx.Response(200, json=pages[request.url.params.get("after")])

        client = make_client(handler)
        rows = await client.get_account_insights(
            "123", USER_TOKEN, level="campaign", since="2024-01-01", until="2024-01-01",
            fields=["spend", "impressions"],
        )

        assert [row["campaign_id"] for row in rows] == ["1", "2"]
