"""
Rate limit handling, system users and the request queue.

Modules:
    rate_limit: Usage header parsing, per user / ad account tracking, queue storage
    system_users: Business Manager system user pool for internal ad accounts
    campaign_actions: Campaign operations shared by routes and the queue
    queue_processor: APScheduler job replaying queued requests
    notifications: In-app notifications
    accounts: Connected Facebook login lookups

Request Flow:
    internal account + free system user -> call with system user token
    else usage < 80%                     -> call with user token
    else                                 -> queue (HTTP 202), replayed later
"""

__all__ = [
    "RateLimitService",
    "RateLimitStatus",
    "parse_usage_headers",
    "SystemUserManager",
    "QueueProcessor",
    "NotificationService",
    "execute_action",
]
