"""
Core utilities and configuration for the ads campaign backend.

This package provides foundational components used by the API, the
request queue and the intelligence jobs:

Modules:
    config: Application configuration and environment variable management
    database: Database engine and session management
    exceptions: Custom exception hierarchy with HTTP status mapping
    logging: Logging configuration (request id aware)
    security: Access token encryption

Usage:
    from core.config import settings
    from core.database import async_session_maker, session_scope
    from core.exceptions import FacebookApiError, AllAppsExhaustedError
    from core.logging import setup_logging
    from core.security import encrypt_token, decrypt_token

Example:
    # Initialize logging
    setup_logging()

    # Background job session
    async with session_scope() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "session_scope",
    "setup_logging",
    "encrypt_token",
    "decrypt_token",
    # Exceptions
    "AppException",
    "RetryableError",
    "NonRetryableError",
    "FacebookApiError",
    "NetworkError",
    "RateLimitError",
    "AllAppsExhaustedError",
    "InvalidTokenError",
    "AppRotationError",
    "RequestQueuedError",
    "ValidationError",
    "ResourceNotFoundError",
    "PermissionDeniedError",
    "IntelligenceDisabledError",
    "DatabaseError",
]
