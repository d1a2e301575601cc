"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class, JSONType and shared enums
    facebook_auth: Connected Facebook logins (encrypted user tokens)
    system_user: Business Manager system users with hourly usage counters
    internal_ad_account: Ad accounts eligible for system user tokens
    rate_limit_tracker: Per user / ad account call usage windows
    request_queue: Campaign operations deferred while rate limited
    intel_backfill_progress: Historical backfill progress per ad account
    intel_performance_snapshot: Campaign / ad set / ad performance snapshots
    intel_learned_pattern: Learned statistical patterns
    intel_automation_rule: Automation rules
    intel_automation_action: Actions proposed by rules
    intel_notification: In-app notifications
    intel_account_score: Daily account health scores
    intel_pixel_health: Daily pixel health snapshots
    intel_expert_rule: Media buyer rules, benchmarks and targeting

Usage:
    from models import QueuedRequest, RateLimitTracker
    from models.base import QueueStatus, ActionType

Example:
    queued = QueuedRequest(
        user_id=1,
        ad_account_id="act_123",
        action_type=ActionType.CREATE_CAMPAIGN,
        request_data={"method": "POST", "path": "/api/campaigns/create", "body": {}},
    )
    session.add(queued)
    await session.commit()

Importing this package registers every table on ``Base.metadata``
(required by alembic and ``scripts/init_db.py``).
"""

from models.base import Base
from models.facebook_auth import FacebookAuth
from models.system_user import SystemUser
from models.internal_ad_account import InternalAdAccount
from models.rate_limit_tracker import RateLimitTracker
from models.request_queue import QueuedRequest
from models.intel_backfill_progress import IntelBackfillProgress
from models.intel_performance_snapshot import IntelPerformanceSnapshot
from models.intel_learned_pattern import IntelLearnedPattern
from models.intel_automation_rule import IntelAutomationRule
from models.intel_automation_action import IntelAutomationAction
from models.intel_notification import IntelNotification
from models.intel_account_score import IntelAccountScore
from models.intel_pixel_health import IntelPixelHealth
from models.intel_expert_rule import IntelExpertRule

__all__ = [
    "Base",
    "FacebookAuth",
    "SystemUser",
    "InternalAdAccount",
    "RateLimitTracker",
    "QueuedRequest",
    "IntelBackfillProgress",
    "IntelPerformanceSnapshot",
    "IntelLearnedPattern",
    "IntelAutomationRule",
    "IntelAutomationAction",
    "IntelNotification",
    "IntelAccountScore",
    "IntelPixelHealth",
    "IntelExpertRule",
]
