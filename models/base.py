from sqlalchemy import JSON
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class QueueStatus(str, enum.Enum):
    """Request queue status"""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ActionType(str, enum.Enum):
    """Campaign operations that can be deferred to the request queue"""
    CREATE_CAMPAIGN = "create_campaign"
    DUPLICATE_CAMPAIGN = "duplicate_campaign"
    CREATE_ADSET = "create_adset"
    CREATE_AD = "create_ad"
    UPDATE_CAMPAIGN = "update_campaign"
    UPDATE_ADSET = "update_adset"
    UPDATE_AD = "update_ad"
    BATCH_OPERATION = "batch_operation"


class BackfillType(str, enum.Enum):
    INSIGHTS = "insights"
    PIXEL = "pixel"
    ALL = "all"


class BackfillStatus(str, enum.Enum):
    """Backfill progress status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class EntityType(str, enum.Enum):
    """Snapshot entity type. Breakdown types are produced by backfills only."""
    CAMPAIGN = "campaign"
    ADSET = "adset"
    AD = "ad"
    GEO = "geo"
    HOURLY = "hourly"
    AGE_GENDER = "age_gender"
    DEVICE = "device"
    PLACEMENT = "placement"


class PatternType(str, enum.Enum):
    TIME_PERFORMANCE = "time_performance"
    BUDGET_CORRELATION = "budget_correlation"
    AUDIENCE_FATIGUE = "audience_fatigue"
    CREATIVE_LIFECYCLE = "creative_lifecycle"
    LEARNING_PREDICTOR = "learning_predictor"
    WINNER_PROFILE = "winner_profile"
    LOSER_PROFILE = "loser_profile"
    CLUSTER = "cluster"


class AutomationActionType(str, enum.Enum):
    PAUSE = "pause"
    ACTIVATE = "activate"
    INCREASE_BUDGET = "increase_budget"
    DECREASE_BUDGET = "decrease_budget"
    ADJUST_BID = "adjust_bid"
    NOTIFY = "notify"
    CREATE_REPORT = "create_report"
    DUPLICATE = "duplicate"
    ARCHIVE = "archive"


class AutomationActionStatus(str, enum.Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"
    EXPIRED = "expired"


class NotificationType(str, enum.Enum):
    ACTION_PENDING = "action_pending"
    ACTION_EXECUTED = "action_executed"
    ACTION_FAILED = "action_failed"
    RULE_TRIGGERED = "rule_triggered"
    ALERT = "alert"
    INSIGHT = "insight"
    RECOMMENDATION = "recommendation"
    SCORE_CHANGE = "score_change"
    QUEUE_COMPLETED = "queue_completed"
    QUEUE_FAILED = "queue_failed"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RuleType(str, enum.Enum):
    LOSS_PREVENTION = "loss_prevention"
    SCALING = "scaling"
    LEARNING_PROTECTION = "learning_protection"
    FATIGUE_DETECTION = "fatigue_detection"
    SCHEDULE = "schedule"
    CUSTOM = "custom"


class ScoreTrend(str, enum.Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class ExpertRuleType(str, enum.Enum):
    """Kind of knowledge an expert rule carries"""
    KILL = "kill"
    SCALE = "scale"
    BUDGET_INCREASE = "budget_increase"
    BENCHMARK = "benchmark"
    STRUCTURE = "structure"
    TARGETING = "targeting"


class ExpertRuleSource(str, enum.Enum):
    FORM_SUBMISSION = "form_submission"
    MANUAL = "manual"
    LEARNED = "learned"
    VALIDATED = "validated"
