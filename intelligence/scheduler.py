import logging
from datetime import datetime
from typing import Any, Dict, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.database import session_scope
from core.exceptions import IntelligenceDisabledError, ValidationError
from facebook.graph_client import GraphAPIClient
from intelligence.account_scores import AccountScoreService
from intelligence.action_executor import ActionExecutor
from intelligence.backfill import InsightsCollector
from intelligence.patterns import PatternLearningService
from intelligence.pixel_health import PixelHealthService
from intelligence.rules_engine import AutomationRulesEngine
from services.notifications import NotificationService, RETENTION_DAYS

logger = logging.getLogger(__name__)

JOB_NAMES = ("insights", "pixels", "rules", "actions", "expire", "scores", "patterns", "cleanup", "hourly", "daily")


class IntelligenceScheduler:
    def __init__(self, session_factory=None, graph_client: Optional[GraphAPIClient] = None, enabled: Optional[bool] = None):
        self.scheduler = AsyncIOScheduler()
        self.session_factory = session_factory
        self.graph = graph_client or GraphAPIClient()
        self.enabled = settings.ENABLE_INTELLIGENCE if enabled is None else enabled
        self.last_runs: Dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Individual jobs
    # ------------------------------------------------------------------

    async def collect_insights(self):
        async with session_scope(self.session_factory) as session:
            return await InsightsCollector(session, graph_client=self.graph).collect_all()

    async def collect_pixel_health(self):
        async with session_scope(self.session_factory) as session:
            return await PixelHealthService(session, graph_client=self.graph).collect_all()

    async def evaluate_rules(self):
        async with session_scope(self.session_factory) as session:
            return await AutomationRulesEngine(session).evaluate_all_rules()

    async def execute_actions(self):
        async with session_scope(self.session_factory) as session:
            return await ActionExecutor(session, graph_client=self.graph).process_approved_actions()

    async def expire_actions(self):
        async with session_scope(self.session_factory) as session:
            return await AutomationRulesEngine(session).expire_old_actions()

    async def calculate_scores(self):
        async with session_scope(self.session_factory) as session:
            return await AccountScoreService(session).calculate_all_scores()

    async def learn_patterns(self):
        async with session_scope(self.session_factory) as session:
            return await PatternLearningService(session).learn_all_patterns()

    async def cleanup_notifications(self):
        async with session_scope(self.session_factory) as session:
            return await NotificationService(session).cleanup_old(RETENTION_DAYS)

    # ------------------------------------------------------------------
    # Scheduled groups
    # ------------------------------------------------------------------

    async def run_hourly_jobs(self) -> Dict[str, Any]:
        """Collect insights and pixel health, evaluate rules, execute approved actions, expire stale ones."""
        logger.info("Intelligence scheduler: running hourly jobs")
        started = datetime.utcnow()
        results: Dict[str, Any] = {}

        for name, job in (
            ("insights", self.collect_insights),
            ("pixels", self.collect_pixel_health),
            ("rules", self.evaluate_rules),
            ("actions", self.execute_actions),
            ("expire", self.expire_actions),
        ):
            try:
                results[name] = await job()
                self.last_runs[name] = datetime.utcnow()
            except Exception as e:
                logger.error(f"Intelligence scheduler: {name} job failed - {e}")
                results[name] = {"error": str(e)}

        duration = (datetime.utcnow() - started).total_seconds()
        logger.info(f"Intelligence scheduler: hourly jobs completed in {duration:.2f}s")
        return results

    async def run_daily_jobs(self) -> Dict[str, Any]:
        """Score accounts, learn patterns, then drop old notifications."""
        logger.info("Intelligence scheduler: running daily jobs")
        results: Dict[str, Any] = {}

        for name, job in (
            ("scores", self.calculate_scores),
            ("patterns", self.learn_patterns),
            ("cleanup", self.cleanup_notifications),
        ):
            try:
                results[name] = await job()
                self.last_runs[name] = datetime.utcnow()
            except Exception as e:
                logger.error(f"Intelligence scheduler: {name} job failed - {e}")
                results[name] = {"error": str(e)}

        return results

    async def run_job(self, name: str):
        """Run one job (or a whole group) on demand."""
        if not self.enabled:
            raise IntelligenceDisabledError()

        jobs = {
            "insights": self.collect_insights,
            "pixels": self.collect_pixel_health,
            "rules": self.evaluate_rules,
            "actions": self.execute_actions,
            "expire": self.expire_actions,
            "scores": self.calculate_scores,
            "patterns": self.learn_patterns,
            "cleanup": self.cleanup_notifications,
            "hourly": self.run_hourly_jobs,
            "daily": self.run_daily_jobs,
        }
        if name not in jobs:
            raise ValidationError(f"Unknown job: {name}", context={"available": list(JOB_NAMES)})

        logger.info(f"Intelligence scheduler: manually running {name}")
        result = await jobs[name]()
        self.last_runs[name] = datetime.utcnow()
        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self.scheduler.running,
            "dry_run": settings.INTEL_DRY_RUN,
            "jobs": {
                "hourly": {
                    "interval_minutes": settings.INTEL_COLLECTION_INTERVAL_MINUTES,
                    "services": ["insights", "pixels", "rules", "actions", "expire"],
                },
                "daily": {"interval_hours": 24, "services": ["scores", "patterns", "cleanup"]},
            },
            "last_runs": {name: value.isoformat() for name, value in self.last_runs.items()},
        }

    def start(self):
        """Start the scheduler (no-op unless ENABLE_INTELLIGENCE)"""
        if not self.enabled:
            logger.info("Intelligence scheduler disabled - set ENABLE_INTELLIGENCE=true to enable")
            return
        if self.scheduler.running:
            return

        self.scheduler.add_job(
            self.run_hourly_jobs,
            trigger=IntervalTrigger(minutes=settings.INTEL_COLLECTION_INTERVAL_MINUTES),
            id="intel_hourly_job",
            replace_existing=True
        )
        self.scheduler.add_job(
            self.run_daily_jobs,
            trigger=IntervalTrigger(hours=24),
            id="intel_daily_job",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("Intelligence scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Intelligence scheduler stopped")
