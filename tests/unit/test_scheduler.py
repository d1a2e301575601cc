import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from core.exceptions import IntelligenceDisabledError, ValidationError
from intelligence.scheduler import IntelligenceScheduler
from services.queue_processor import QueueProcessor, describe_action
from models.base import ActionType


@pytest.mark.asyncio
async def test_scheduler_initialization():
    scheduler = IntelligenceScheduler(graph_client=MagicMock(), enabled=True)
    assert scheduler.scheduler is not None
    assert scheduler.get_status()["enabled"] is True
    assert scheduler.get_status()["last_runs"] == {}


@pytest.mark.asyncio
async def test_disabled_scheduler_rejects_jobs():
    scheduler = IntelligenceScheduler(graph_client=MagicMock(), enabled=False)

    with pytest.raises(IntelligenceDisabledError):
        await scheduler.run_job("rules")

    scheduler.start()
    assert scheduler.scheduler.running is False


@pytest.mark.asyncio
async def test_unknown_job():
    scheduler = IntelligenceScheduler(graph_client=MagicMock(), enabled=True)

    with pytest.raises(ValidationError):
        await scheduler.run_job("reindex")


@pytest.mark.asyncio
async def test_run_job_records_last_run(session_factory):
    scheduler = IntelligenceScheduler(session_factory=session_factory, graph_client=MagicMock(), enabled=True)

    result = await scheduler.run_job("rules")

    assert result["rules_evaluated"] == 0
    assert "rules" in scheduler.get_status()["last_runs"]


@pytest.mark.asyncio
async def test_hourly_job_failure_does_not_stop_others():
    scheduler = IntelligenceScheduler(graph_client=MagicMock(), enabled=True)

    with patch.object(scheduler, "collect_insights", AsyncMock(side_effect=RuntimeError("graph down"))), \
            patch.object(scheduler, "collect_pixel_health", AsyncMock(return_value={"pixels": 0})), \
            patch.object(scheduler, "evaluate_rules", AsyncMock(return_value={"rules_evaluated": 2})), \
            patch.object(scheduler, "execute_actions", AsyncMock(return_value={"processed": 0})), \
            patch.object(scheduler, "expire_actions", AsyncMock(return_value=0)):
        results = await scheduler.run_hourly_jobs()

    assert results["insights"] == {"error": "graph down"}
    assert results["rules"] == {"rules_evaluated": 2}
    assert "insights" not in scheduler.last_runs
    assert "rules" in scheduler.last_runs


@pytest.mark.asyncio
async def test_daily_jobs(session_factory):
    scheduler = IntelligenceScheduler(session_factory=session_factory, graph_client=MagicMock(), enabled=True)

    results = await scheduler.run_daily_jobs()

    assert results["scores"] == {"success": 0, "failed": 0}
    assert results["patterns"] == {"accounts": 0}
    assert results["cleanup"] == 0


def test_describe_action():
    assert describe_action(ActionType.CREATE_CAMPAIGN) == "create campaign"


@pytest.mark.asyncio
async def test_queue_processor_skips_overlapping_runs():
    processor = QueueProcessor(graph_client=MagicMock())
    processor.is_processing = True

    stats = await processor.process_queue()

    assert stats == {"processed": 0, "completed": 0, "failed": 0, "rescheduled": 0}
