"""
Unit tests for campaign operations
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from core.exceptions import FacebookApiError, ValidationError
from api.rate_limit_guard import determine_action_type
from models.base import ActionType
from services.campaign_actions import (
    build_request_body,
    clamp_copies,
    execute_action,
    graph_payload,
)


@pytest.fixture
def graph():
    graph = MagicMock()
    graph.create_campaign = AsyncMock(return_value={"id": "c_new"})
    graph.update_entity = AsyncMock(return_value={"success": True})
    graph.duplicate_campaign = AsyncMock(return_value={"copied_campaign_id": "c_copy"})
    return graph


class TestRequestBodies:
    """Test conversion of client payloads"""

    def test_graph_payload_converts_money_and_drops_account(self):
        payload = graph_payload({
            "name": "Spring",
            "daily_budget": 50.25,
            "adAccountId": "act_1",
            "bid_strategy": None,
        })

        assert payload == {"name": "Spring", "daily_budget": 5025}

    def test_update_body(self):
        body = build_request_body(ActionType.UPDATE_CAMPAIGN, {"campaign_id": "c1"}, {"status": "PAUSED"})

        assert body == {"entity_id": "c1", "updates": {"status": "PAUSED"}}

    def test_duplicate_body_clamps_copies(self):
        body = build_request_body(ActionType.DUPLICATE_CAMPAIGN, {"campaign_id": "c1"}, {"number_of_copies": 50})

        assert body["number_of_copies"] == 10
        assert body["campaign_id"] == "c1"

    @pytest.mark.parametrize("value,expected", [(0, 1), ("3", 3), (None, 1), ("x", 1), (11, 10)])
    def test_clamp_copies(self, value, expected):
        assert clamp_copies(value) == expected


class TestExecuteAction:
    """Test dispatch to the Graph client"""

    @pytest.mark.asyncio
    async def test_create_campaign(self, graph):
        result = await execute_action(
            graph, ActionType.CREATE_CAMPAIGN, "act_1", {"body": {"name": "Spring"}}, "token"
        )

        assert result == {"campaign": {"id": "c_new"}}
        graph.create_campaign.assert_awaited_once_with("act_1", {"name": "Spring"}, "token", rotate=True)

    @pytest.mark.asyncio
    async def test_update_requires_fields(self, graph):
        with pytest.raises(ValidationError):
            await execute_action(
                graph, ActionType.UPDATE_CAMPAIGN, "act_1", {"body": {"entity_id": "c1", "updates": {}}}, "token"
            )

    @pytest.mark.asyncio
    async def test_explicit_token_is_not_rotated(self, graph):
        body = {"entity_id": "c1", "updates": {"status": "ACTIVE"}}

        await execute_action(graph, ActionType.UPDATE_CAMPAIGN, "act_1", {"body": body}, "su-token", rotate=False)

        graph.update_entity.assert_awaited_once_with("c1", {"status": "ACTIVE"}, "su-token", rotate=False)

    @pytest.mark.asyncio
    async def test_duplicate_names_each_copy(self, graph):
        body = {"campaign_id": "c1", "new_name": "Clone", "number_of_copies": 2}

        result = await execute_action(graph, ActionType.DUPLICATE_CAMPAIGN, "act_1", {"body": body}, "token")

        assert [copy["name"] for copy in result["copies"]] == ["Clone - Copy 1", "Clone - Copy 2"]
        assert graph.duplicate_campaign.await_count == 2

    @pytest.mark.asyncio
    async def test_batch_collects_failures(self, graph):
        graph.update_entity.side_effect = [{"success": True}, FacebookApiError("Campaign not found")]
        body = {"campaign_ids": ["c1", "c2"], "action": "pause"}

        result = await execute_action(graph, ActionType.BATCH_OPERATION, "act_1", {"body": body}, "token")

        assert result["succeeded"] == 1
        assert result["failed"] == 1
        assert result["results"][1]["error"] == "Campaign not found"
        graph.update_entity.assert_any_await("c1", {"status": "PAUSED"}, "token", rotate=True)

    @pytest.mark.asyncio
    async def test_batch_rejects_unknown_action(self, graph):
        body = {"campaign_ids": ["c1"], "action": "delete"}

        with pytest.raises(ValidationError):
            await execute_action(graph, ActionType.BATCH_OPERATION, "act_1", {"body": body}, "token")


class TestDetermineActionType:
    """Test mapping of routes to queued action types"""

    @pytest.mark.parametrize("path,method,expected", [
        ("/api/campaigns/create", "POST", ActionType.CREATE_CAMPAIGN),
        ("/api/campaigns/123/edit", "PUT", ActionType.UPDATE_CAMPAIGN),
        ("/api/campaigns/123/duplicate", "POST", ActionType.DUPLICATE_CAMPAIGN),
        ("/api/campaigns/batch", "POST", ActionType.BATCH_OPERATION),
        ("/api/adsets/create", "POST", ActionType.CREATE_ADSET),
        ("/api/ads/55/edit", "PUT", ActionType.UPDATE_AD),
    ])
    def test_paths(self, path, method, expected):
        assert determine_action_type(path, method) == expected
