"""
Pydantic schemas for request validation and response serialization.

Schemas:
    api: Response envelope, health check and error schemas
    campaigns: Campaign create / edit / budget / duplicate / batch bodies
    rate_limits: System user and internal account bodies, queue serialization
    intelligence: Backfill, rule, action and prediction bodies

Request bodies accept the camelCase names the frontend sends
(``adAccountId``) as well as the snake_case field names.
"""

__all__ = [
    "APIResponse",
    "HealthCheckResponse",
    "CampaignCreate",
    "CampaignEdit",
    "BudgetUpdate",
    "CampaignDuplicate",
    "BatchOperation",
    "SystemUserCreate",
    "InternalAccountCreate",
    "BackfillStart",
    "RulePayload",
]
