"""
API endpoint tests
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient
from sqlalchemy import select
from api.main import app
from api.dependencies import get_db, get_graph_client
from api.workers import intelligence_scheduler
from core.config import settings
from facebook.app_rotation import get_rotation_service
from models.base import NotificationType
from models.rate_limit_tracker import RateLimitTracker
from models.system_user import SystemUser
from intelligence.expert_rules import KILL_QUESTION, STATES_QUESTION, VERTICAL_QUESTION
from intelligence.rules_engine import DEFAULT_RULE_TEMPLATES
from services.notifications import NotificationService
from services.system_users import SystemUserManager


@pytest.fixture
def graph():
    graph = MagicMock()
    graph.create_campaign = AsyncMock(return_value={"id": "c_new"})
    graph.update_entity = AsyncMock(return_value={"success": True})
    graph.get_entity = AsyncMock(return_value={"id": "c1", "name": "Spring Sale"})
    graph.get_stats.return_value = {"totalRequests": 0}
    graph.last_headers = {}
    return graph


@pytest.fixture
def client(file_session_factory, graph):
    """Create test client with database and Graph API overrides"""

    async def override_get_db():
        async with file_session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_graph_client] = lambda: graph

    with TestClient(app, headers={"X-User-ID": "1"}) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def add_tracker(usage_percentage):
    async def add(session):
        session.add(RateLimitTracker(
            user_id=1,
            ad_account_id="act_123",
            calls_used=int(usage_percentage * 2),
            calls_limit=200,
            usage_percentage=usage_percentage,
            window_reset_at=datetime.utcnow() + timedelta(minutes=30),
        ))
        await session.commit()

    return add


# ============================================================================
# Health
# ============================================================================

def test_health_endpoint(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["database_connected"] is True
    assert data["status"] == "healthy"
    assert data["queued_requests"] == 0
    assert data["app_rotation"]["total_apps"] == len(get_rotation_service().apps)
    assert "X-Request-ID" in response.headers


def test_root_lists_endpoints(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["intelligence"] == "/api/intelligence"


# ============================================================================
# Campaigns
# ============================================================================

def test_create_campaign(client, graph, run_db, add_auth):
    run_db(add_auth)

    response = client.post("/api/campaigns/create", json={"name": "Spring Sale", "daily_budget": 50})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"] == {"campaign": {"id": "c_new"}}
    assert body["usedSystemUser"] is False

    account, fields, token = graph.create_campaign.await_args.args
    assert account == "act_123"
    assert fields["daily_budget"] == 5000
    assert token == "user-token-abcdef123456"
    assert graph.create_campaign.await_args.kwargs == {"rotate": True}


def test_create_campaign_is_queued_when_rate_limited(client, graph, run_db, add_auth):
    run_db(add_auth)
    run_db(add_tracker(90.0))

    response = client.post("/api/campaigns/create", json={"name": "Spring Sale"})

    assert response.status_code == 202
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "queued"
    assert "error" not in body
    assert body["queue"]["estimatedWaitMinutes"] in (29, 30)
    assert body["rateLimitStatus"]["shouldQueue"] is True
    graph.create_campaign.assert_not_awaited()

    queued = client.get("/api/rate-limits/queue/my-requests").json()
    assert queued["count"] == 1
    assert queued["requests"][0]["actionType"] == "create_campaign"
    assert "accessToken" not in queued["requests"][0]

    cancelled = client.delete(f"/api/rate-limits/queue/{body['queue']['id']}")
    assert cancelled.status_code == 200
    assert cancelled.json()["request"]["status"] == "cancelled"


def test_internal_account_uses_system_user(client, graph, run_db, add_auth):
    run_db(add_auth)

    async def setup(session):
        manager = SystemUserManager(session)
        await manager.add_system_user("SU 1", "su_1", "system-token-abcdef123456", "bm_1")
        await manager.add_internal_account("act_123", "bm_1")

    run_db(setup)

    response = client.put("/api/campaigns/c1/edit", json={"status": "paused"})

    assert response.status_code == 200
    graph.update_entity.assert_awaited_once_with(
        "c1", {"status": "PAUSED"}, "system-token-abcdef123456", rotate=False
    )


def test_campaign_without_login(client):
    response = client.post("/api/campaigns/create", json={"name": "Spring Sale", "adAccountId": "act_9"})

    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Facebook account not connected"}


def test_campaign_validation_error(client, run_db, add_auth):
    run_db(add_auth)

    response = client.post("/api/campaigns/create", json={"name": ""})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"].startswith("name")


def test_invalid_body_is_not_queued(client, graph, run_db, add_auth):
    run_db(add_auth)
    run_db(add_tracker(90.0))

    response = client.post("/api/campaigns/create", json={"name": ""})

    assert response.status_code == 400
    assert client.get("/api/rate-limits/queue/my-requests").json()["count"] == 0
    graph.create_campaign.assert_not_awaited()


def test_invalid_body_does_not_use_system_user(client, graph, run_db, add_auth):
    run_db(add_auth)

    async def setup(session):
        manager = SystemUserManager(session)
        await manager.add_system_user("SU 1", "su_1", "system-token-abcdef123456", "bm_1")
        await manager.add_internal_account("act_123", "bm_1")

    run_db(setup)

    edit = client.put("/api/campaigns/c1/edit", json={})
    budget = client.put("/api/campaigns/c1/budget", json={})

    assert edit.status_code == 400
    assert "No fields to update" in edit.json()["error"]
    assert budget.status_code == 400
    graph.update_entity.assert_not_awaited()

    async def usage(session):
        return (await session.execute(select(SystemUser.rate_limit_used))).scalar_one()

    assert run_db(usage) == 0


def test_missing_user_header(client):
    response = client.get("/api/rate-limits/queue/my-requests", headers={"X-User-ID": ""})

    assert response.status_code == 401
    assert response.json()["error"] == "Authentication required"


def test_get_campaign(client, graph, run_db, add_auth):
    run_db(add_auth)

    response = client.get("/api/campaigns/c1?fields=id,name")

    assert response.json()["data"]["name"] == "Spring Sale"
    graph.get_entity.assert_awaited_once_with("c1", ["id", "name"], "user-token-abcdef123456")


# ============================================================================
# Rate limits
# ============================================================================

def test_rate_limit_status(client, run_db):
    run_db(add_tracker(90.0))

    response = client.get("/api/rate-limits/rate-limit/status?adAccountId=act_123")

    rate_limit = response.json()["rateLimit"]
    assert rate_limit["canProceed"] is False
    assert rate_limit["usagePercentage"] == 90.0


def test_rate_limit_status_requires_account(client):
    response = client.get("/api/rate-limits/rate-limit/status")

    assert response.status_code == 400


def test_system_user_admin(client):
    created = client.post("/api/rate-limits/system-users", json={
        "name": "SU 1",
        "systemUserId": "su_1",
        "accessToken": "system-token-abcdef123456",
        "businessManagerId": "bm_1",
    })
    assert created.status_code == 200

    status = client.get("/api/rate-limits/system-users/status").json()
    assert len(status["systemUsers"]) == 1
    assert status["totalCapacity"] == settings.SYSTEM_USER_LIMIT

    account = client.post("/api/rate-limits/internal-accounts", json={"adAccountId": "123", "businessManagerId": "bm_1"})
    assert account.json()["account"]["adAccountId"] == "act_123"


def test_queue_listing_rejects_unknown_status(client):
    assert client.get("/api/rate-limits/queue/all?status=lost").status_code == 400
    assert client.get("/api/rate-limits/queue/all?status=all").json()["pagination"]["total"] == 0


# ============================================================================
# App rotation admin
# ============================================================================

def test_app_rotation_status(client):
    response = client.get("/api/admin/app-rotation/status")

    body = response.json()
    assert body["summary"]["totalApps"] == len(body["apps"])
    assert all("accessToken" not in app for app in body["apps"])


def test_app_rotation_reset_and_lookup(client):
    assert client.post("/api/admin/app-rotation/reset").json()["summary"]["exhaustedApps"] == 0
    assert client.get("/api/admin/app-rotation/app/main_app").json()["data"]["appId"] == "main_app"
    assert client.get("/api/admin/app-rotation/app/nope").status_code == 404


def test_app_rotation_stats(client):
    assert client.get("/api/admin/app-rotation/stats").json()["data"] == {"totalRequests": 0}


# ============================================================================
# Intelligence
# ============================================================================

def test_intelligence_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "ENABLE_INTELLIGENCE", False)

    response = client.get("/api/intelligence/status")

    assert response.status_code == 503
    assert response.json()["error"] == "Intelligence module is disabled"


def test_intelligence_status(client):
    data = client.get("/api/intelligence/status").json()["data"]

    assert data["enabled"] is True
    assert set(data["jobs"]) == {"hourly", "daily"}


def test_start_backfill(client, graph):
    with patch("api.routes.intelligence.run_backfill") as run_backfill:
        response = client.post("/api/intelligence/backfill/start", json={"adAccountId": "act_123", "days": 30})

    assert response.status_code == 200
    backfill = response.json()["backfill"]
    assert backfill["status"] == "pending"
    assert backfill["end_date"] == datetime.utcnow().date().isoformat()
    assert backfill["start_date"] == (datetime.utcnow().date() - timedelta(days=29)).isoformat()
    run_backfill.assert_called_once()
    assert run_backfill.call_args.kwargs == {"graph_client": graph}

    status = client.get("/api/intelligence/backfill/status").json()["data"]
    assert status["summary"]["total_accounts"] == 1
    assert status["accounts"][0]["total_days"] == 30


def test_start_backfill_validates_days(client):
    response = client.post("/api/intelligence/backfill/start", json={"adAccountId": "act_123", "days": 5000})

    assert response.status_code == 400


def test_start_backfill_accepts_snake_case_type(client):
    with patch("api.routes.intelligence.run_backfill"):
        response = client.post("/api/intelligence/backfill/start", json={
            "adAccountId": "act_123",
            "days": 10,
            "backfill_type": "insights",
        })

    assert response.status_code == 200
    assert response.json()["backfill"]["backfill_type"] == "insights"


def test_run_job_requires_admin(client):
    with patch.object(intelligence_scheduler, "run_job",
                      AsyncMock(return_value={"success": 1, "failed": 0})) as run_job:
        denied = client.post("/api/intelligence/jobs/scores/run")
        allowed = client.post("/api/intelligence/jobs/scores/run", headers={"X-User-Roles": "viewer, superadmin"})

    assert denied.status_code == 403
    assert denied.json() == {"success": False, "error": "Admin access required"}
    assert allowed.status_code == 200
    assert allowed.json()["data"] == {"success": 1, "failed": 0}
    run_job.assert_awaited_once_with("scores")


def test_account_scores(client, run_db, add_auth):
    assert client.get("/api/intelligence/scores").json()["data"]["has_data"] is False
    assert client.post("/api/intelligence/scores/calculate").status_code == 400

    run_db(add_auth)
    calculated = client.post("/api/intelligence/scores/calculate")

    assert calculated.status_code == 200
    score = calculated.json()["data"]
    assert score["ad_account_id"] == "act_123"
    assert score["overall_score"] == 50
    assert score["grade"] == "F"

    detail = client.get("/api/intelligence/scores/act_123").json()["data"]
    assert detail["current"]["components"]["efficiency"]["weight"] == "25%"
    dashboard = client.get("/api/intelligence/scores").json()["data"]
    assert dashboard["summary"]["total_accounts"] == 1


def test_pixel_health(client, graph, run_db, add_auth):
    assert client.get("/api/intelligence/pixels").json()["data"] == {"pixels": [], "summary": None}
    assert client.post("/api/intelligence/pixels/collect").status_code == 401

    async def fake_get(path, token, params=None, rotate=True):
        if path.endswith("/adspixels"):
            return {"data": [{"id": "px1", "name": "Main Pixel"}]}
        if path.endswith("/stats"):
            return {"data": [{"data": [{"value": "Purchase", "count": 4}]}]}
        return {"event_stats": []}

    graph.get = AsyncMock(side_effect=fake_get)
    run_db(add_auth)

    response = client.post("/api/intelligence/pixels/collect")

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Collected 1 pixel(s)"
    assert body["data"]["summary"]["total_purchases"] == 4
    assert body["data"]["pixels"][0]["id"] == "px1"
    assert graph.get.await_args_list[0].args == ("act_123/adspixels", "user-token-abcdef123456")

    trends = client.get("/api/intelligence/pixels/px1/trends?days=7").json()["data"]
    assert trends["volume_trend"] == "stable"
    assert len(trends["data"]) == 1


def test_expert_rules(client):
    admin = {"X-User-Roles": "superadmin"}
    submissions = [
        {VERTICAL_QUESTION: "Medicare", KILL_QUESTION: "-$50 after 3 days", STATES_QUESTION: "Texas"},
        {VERTICAL_QUESTION: "Medicare", KILL_QUESTION: "-$70 after 3 days", STATES_QUESTION: "Texas"},
    ]

    assert client.post("/api/intelligence/expert-rules/seed", json={"formSubmissions": submissions}).status_code == 403
    seeded = client.post("/api/intelligence/expert-rules/seed", json={"formSubmissions": submissions}, headers=admin)
    assert seeded.json()["data"] == {
        "kill_rules": 1,
        "scale_rules": 0,
        "benchmark_rules": 0,
        "targeting_rules": 1,
        "structure_rules": 0,
    }

    assert client.get("/api/intelligence/expert-rules").json()["count"] == 2
    assert client.get("/api/intelligence/expert-rules/summary").json()["data"]["total"] == 2
    assert client.get("/api/intelligence/expert-rules/benchmarks?vertical=medicare").json()["data"] == {}
    kill = client.get("/api/intelligence/expert-rules?ruleType=kill").json()["data"]
    assert len(kill) == 1
    rule_id = kill[0]["id"]
    assert client.get(f"/api/intelligence/expert-rules/{rule_id}").json()["data"]["vertical"] == "medicare"
    assert client.get("/api/intelligence/expert-rules/999").status_code == 404

    validated = client.post(f"/api/intelligence/expert-rules/{rule_id}/validate", headers=admin,
                            json={"performanceData": [{"metrics": {"profit": -80}, "outcome": "loss"}]})
    assert validated.json()["data"] == {"accuracy": 1.0, "matches": 1, "total": 1}

    assert client.put(f"/api/intelligence/expert-rules/{rule_id}", json={"is_active": False}).status_code == 403
    assert client.put(f"/api/intelligence/expert-rules/{rule_id}", json={"confidence_score": 2},
                      headers=admin).status_code == 400
    updated = client.put(f"/api/intelligence/expert-rules/{rule_id}", json={"is_active": False}, headers=admin)
    assert updated.json()["data"]["is_active"] is False
    assert client.get("/api/intelligence/expert-rules").json()["count"] == 1


def test_pause_and_cancel_backfill(client):
    with patch("api.routes.intelligence.run_backfill"):
        client.post("/api/intelligence/backfill/batch", json={"adAccountIds": ["act_1", "act_2"], "days": 10})

    paused = client.post("/api/intelligence/backfill/pause", json={"adAccountId": "act_1"})
    assert paused.json()["backfill"]["status"] == "paused"

    assert client.delete("/api/intelligence/backfill/act_2").json()["deleted"] is True
    assert client.post("/api/intelligence/backfill/pause", json={"adAccountId": "act_2"}).status_code == 404


def test_rule_crud(client):
    created = client.post("/api/intelligence/rules", json=DEFAULT_RULE_TEMPLATES[0])
    assert created.status_code == 201
    rule_id = created.json()["data"]["id"]

    rules = client.get("/api/intelligence/rules").json()
    assert rules["count"] == 1
    assert rules["data"][0]["rule_type"] == "loss_prevention"

    updated = client.put(f"/api/intelligence/rules/{rule_id}", json={"is_active": False})
    assert updated.json()["data"]["is_active"] is False
    assert client.get("/api/intelligence/rules?activeOnly=true").json()["count"] == 0

    assert client.delete(f"/api/intelligence/rules/{rule_id}").status_code == 200
    assert client.delete(f"/api/intelligence/rules/{rule_id}").status_code == 404


def test_invalid_rule(client):
    response = client.post("/api/intelligence/rules", json={
        "name": "Broken",
        "conditions": [{"metric": "cpa", "operator": "~", "value": 1}],
        "actions": [{"action": "pause"}],
    })

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_rule_templates(client):
    templates = client.get("/api/intelligence/rules/templates").json()["data"]

    assert [t["name"] for t in templates] == [t["name"] for t in DEFAULT_RULE_TEMPLATES]


def test_learn_patterns_requires_account(client):
    response = client.post("/api/intelligence/patterns/learn")

    assert response.status_code == 400


def test_notifications(client, run_db):
    async def notify(session):
        service = NotificationService(session)
        await service.create(1, NotificationType.ALERT, "CPA spike", "CPA doubled")
        return (await service.create(1, NotificationType.ALERT, "Budget", "Budget spent")).id

    notification_id = run_db(notify)

    listing = client.get("/api/intelligence/notifications").json()
    assert len(listing["data"]) == 2
    assert listing["unreadCount"] == 2

    assert client.post(f"/api/intelligence/notifications/{notification_id}/read").status_code == 200
    assert client.get("/api/intelligence/notifications?unreadOnly=true").json()["unreadCount"] == 1
    assert client.post(f"/api/intelligence/notifications/{notification_id}/read",
                       headers={"X-User-ID": "2"}).status_code == 404


def test_unknown_action_is_not_found(client):
    assert client.post("/api/intelligence/actions/999/approve").status_code == 404
    assert client.get("/api/intelligence/actions/pending").json()["count"] == 0
