"""
Facebook Graph API access with backup app rotation.

Modules:
    backup_apps: App registry (main OAuth app + backup apps from env) and validation
    app_rotation: Hourly per-app usage counters and priority based selection
    graph_client: httpx based Graph API client with rotation, retries and error mapping

Rotation Order:
    main app (user token) -> backup app 1 -> backup app 2 -> request queue

    An app is skipped once it is exhausted (HTTP 429 / code 4 / subcode
    80004) or has made ``APP_RATE_LIMIT`` calls in the current hour.
    Counters reset every hour.

Usage:
    from facebook.graph_client import GraphAPIClient

Example:
    client = GraphAPIClient()
    campaigns = await client.get(
        "act_123/campaigns",
        user_token,
        params={"fields": "id,name,status"},
    )

Error Handling:
    AllAppsExhaustedError, InvalidTokenError, NetworkError and
    FacebookApiError from core.exceptions propagate to the caller;
    routes turn them into JSON error responses.
"""

__all__ = [
    "BackupApp",
    "load_backup_apps",
    "validate_config",
    "AppRotationService",
    "get_rotation_service",
    "GraphAPIClient",
    "GraphResponse",
    "normalize_ad_account_id",
]
