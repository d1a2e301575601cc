"""
Facebook Graph API client with app rotation, retry logic and error mapping.

This module provides resilient Graph API access with:
- Automatic rotation to backup apps when an app is rate limited
- Retry with linear backoff on timeouts and connection errors
- Facebook error payloads mapped to the custom exception hierarchy
- Rate limit usage headers exposed to callers
- Per-client request statistics
"""

import asyncio
import json
import httpx
from typing import Any, Awaitable, Callable, Dict, List, Optional
from pydantic import BaseModel
from core.config import settings
from core.exceptions import (
    FacebookApiError,
    NetworkError,
    RateLimitError,
    AllAppsExhaustedError,
    InvalidTokenError,
)
from core.security import mask_token
from facebook.app_rotation import AppRotationService, get_rotation_service
import logging

logger = logging.getLogger(__name__)

RATE_LIMIT_CODES = {4, 17, 32, 613}
RATE_LIMIT_SUBCODES = {80004}
INVALID_TOKEN_CODE = 190

USAGE_HEADERS = ("x-business-use-case-usage", "x-app-usage", "x-ad-account-usage")


class GraphResponse(BaseModel):
    """Parsed Graph API response plus the usage headers Facebook sent back"""
    data: Any = None
    headers: Dict[str, str] = {}
    app_id: Optional[str] = None
    app_name: Optional[str] = None


def normalize_ad_account_id(ad_account_id: str) -> str:
    """'123' -> 'act_123'; already prefixed ids are returned unchanged."""
    ad_account_id = str(ad_account_id).strip()
    return ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"


def _error_payload(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text[:500]}
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {"message": response.text[:500]}


def is_rate_limit_error(status_code: int, error: Dict[str, Any]) -> bool:
    if status_code == 429:
        return True
    if error.get("code") in RATE_LIMIT_CODES or error.get("error_subcode") in RATE_LIMIT_SUBCODES:
        return True
    return "rate limit" in str(error.get("message", "")).lower()


def is_invalid_token_error(status_code: int, error: Dict[str, Any]) -> bool:
    return status_code == 401 or error.get("code") == INVALID_TOKEN_CODE


def parse_facebook_error(response: httpx.Response, context: Optional[Dict[str, Any]] = None) -> FacebookApiError:
    error = _error_payload(response)
    return FacebookApiError(
        error.get("error_user_msg") or error.get("message") or f"Graph API error {response.status_code}",
        context={**(context or {}), "status_code": response.status_code, "fbtrace_id": error.get("fbtrace_id")},
        fb_code=error.get("code"),
        fb_subcode=error.get("error_subcode"),
        fb_type=error.get("type"),
    )


def _encode_form(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    """Graph API takes form fields; nested objects (targeting, promoted_object) go as JSON."""
    if data is None:
        return None
    encoded = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            encoded[key] = json.dumps(value)
        elif isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        else:
            encoded[key] = str(value)
    return encoded


class RequestStats:
    """Request counters; one instance can be shared by many clients"""

    def __init__(self):
        self.request_count = 0
        self.success_count = 0
        self.failure_count = 0
        self.rotation_count = 0


shared_stats = RequestStats()


class GraphAPIClient:
    """
    Graph API access with automatic app rotation.

    Features:
    - Main app (user OAuth token) first, then backup apps by priority
    - 429 / code 4 / subcode 80004 marks the app exhausted and rotates
    - Invalid backup app tokens rotate; an invalid user token is raised
    - Timeouts retried with 1s, 2s, ... backoff
    - ``rotate=False`` sends the call with exactly the given token
      (system users, tokens stored with queued requests)

    Attributes:
        max_attempts: Apps tried per request (default: 3)
        timeout: Request timeout in seconds (default: 30.0)
        last_headers: Usage headers of the most recent response
    """

    def __init__(
        self,
        rotation: Optional[AppRotationService] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        stats: Optional[RequestStats] = None,
    ):
        self.rotation = rotation or get_rotation_service()
        self.base_url = (base_url or settings.GRAPH_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.GRAPH_API_TIMEOUT
        self.max_attempts = max_attempts or settings.GRAPH_API_MAX_ATTEMPTS
        self._transport = transport
        self._sleep = sleep
        self.last_headers: Dict[str, str] = {}

        self.stats = stats if stats is not None else RequestStats()

    # ------------------------------------------------------------------
    # Core request
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _send(
        self,
        method: str,
        path: str,
        token: str,
        params: Optional[Dict[str, Any]],
        data: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        query = {**(params or {}), "access_token": token}
        async with self._client() as client:
            return await client.request(method, url, params=query, data=_encode_form(data))

    async def request(
        self,
        method: str,
        path: str,
        access_token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        rotate: bool = True,
    ) -> GraphResponse:
        """
        Make a Graph API call.

        Args:
            method: HTTP method
            path: Graph path without version (e.g. "act_123/campaigns")
            access_token: User token (main app) or the explicit token when rotate=False
            params: Query parameters
            data: Form body for POST requests
            rotate: Use app rotation

        Returns:
            GraphResponse with parsed JSON and usage headers

        Raises:
            AllAppsExhaustedError: Every app is rate limited
            InvalidTokenError: The user (or explicit) token was rejected
            NetworkError: Timeouts / connection errors after all attempts
            FacebookApiError: Any other Graph API error
        """
        method = method.upper()
        self.stats.request_count += 1
        last_network_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            if rotate:
                app = self.rotation.get_next_available_app(access_token)
                token, app_id, app_name, is_backup = app.access_token, app.app_id, app.name, app.is_backup
            else:
                token, app_id, app_name, is_backup = access_token, None, "explicit token", False

            if not token:
                raise InvalidTokenError("No access token available", app_name=app_name)

            logger.debug(
                f"Graph {method} /{path} attempt {attempt + 1}/{self.max_attempts} "
                f"via {app_name} ({mask_token(token)})"
            )

            try:
                response = await self._send(method, path, token, params, data)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_network_error = e
                self.stats.failure_count += 1
                if attempt < self.max_attempts - 1:
                    delay = 1.0 * (attempt + 1)
                    logger.warning(f"Graph request to /{path} failed ({type(e).__name__}). Retrying in {delay}s")
                    await self._sleep(delay)
                    continue
                raise NetworkError(
                    f"Graph request failed after {self.max_attempts} attempts",
                    context={"path": path, "timeout": self.timeout, "retry_count": attempt + 1},
                    original_exception=e,
                )

            self.last_headers = {
                name: response.headers[name] for name in USAGE_HEADERS if name in response.headers
            }
            if app_id:
                self.rotation.record_call(app_id)

            if response.is_success:
                self.stats.success_count += 1
                try:
                    payload = response.json()
                except ValueError:
                    payload = {"raw": response.text}
                return GraphResponse(
                    data=payload, headers=self.last_headers, app_id=app_id, app_name=app_name
                )

            self.stats.failure_count += 1
            error = _error_payload(response)
            context = {"path": path, "method": method, "app_name": app_name, "attempt": attempt + 1}

            if is_rate_limit_error(response.status_code, error):
                if not rotate:
                    raise RateLimitError(
                        error.get("message", "Rate limit reached"),
                        context=context,
                        retry_after=3600,
                    )
                self.rotation.mark_exhausted(app_id)
                self.stats.rotation_count += 1
                logger.warning(f"App {app_name} rate limited on /{path}; rotating")
                continue

            if is_invalid_token_error(response.status_code, error):
                if rotate and is_backup:
                    logger.warning(f"Backup app {app_name} token rejected; rotating")
                    self.rotation.mark_exhausted(app_id)
                    self.stats.rotation_count += 1
                    continue
                raise InvalidTokenError(
                    error.get("message") or "Access token is invalid or expired",
                    context=context,
                    app_name=app_name,
                )

            raise parse_facebook_error(response, context)

        if last_network_error is not None and not rotate:
            raise NetworkError(
                f"Graph request failed after {self.max_attempts} attempts",
                context={"path": path},
                original_exception=last_network_error,
            )
        raise AllAppsExhaustedError(
            context={"path": path, "attempts": self.max_attempts}
        )

    async def get(self, path: str, access_token: Optional[str] = None, params=None, rotate: bool = True) -> Any:
        return (await self.request("GET", path, access_token, params=params, rotate=rotate)).data

    async def post(self, path: str, access_token: Optional[str] = None, data=None, params=None, rotate: bool = True) -> Any:
        return (await self.request("POST", path, access_token, params=params, data=data, rotate=rotate)).data

    async def delete(self, path: str, access_token: Optional[str] = None, rotate: bool = True) -> Any:
        return (await self.request("DELETE", path, access_token, rotate=rotate)).data

    def get_stats(self) -> Dict[str, Any]:
        return {
            "totalRequests": self.stats.request_count,
            "successfulRequests": self.stats.success_count,
            "failedRequests": self.stats.failure_count,
            "rotations": self.stats.rotation_count,
            "successRate": round(self.stats.success_count / self.stats.request_count * 100, 2) if self.stats.request_count else 0,
            "appRotation": self.rotation.get_summary(),
        }

    # ------------------------------------------------------------------
    # Campaign operations
    # ------------------------------------------------------------------

    async def create_campaign(self, ad_account_id: str, fields: Dict[str, Any], access_token: str, rotate: bool = True):
        return await self.post(f"{normalize_ad_account_id(ad_account_id)}/campaigns", access_token, data=fields, rotate=rotate)

    async def create_adset(self, ad_account_id: str, fields: Dict[str, Any], access_token: str, rotate: bool = True):
        return await self.post(f"{normalize_ad_account_id(ad_account_id)}/adsets", access_token, data=fields, rotate=rotate)

    async def create_ad(self, ad_account_id: str, fields: Dict[str, Any], access_token: str, rotate: bool = True):
        return await self.post(f"{normalize_ad_account_id(ad_account_id)}/ads", access_token, data=fields, rotate=rotate)

    async def update_entity(self, entity_id: str, fields: Dict[str, Any], access_token: str, rotate: bool = True):
        return await self.post(entity_id, access_token, data=fields, rotate=rotate)

    async def get_entity(self, entity_id: str, fields: List[str], access_token: str, rotate: bool = True):
        return await self.get(entity_id, access_token, params={"fields": ",".join(fields)}, rotate=rotate)

    async def duplicate_campaign(
        self,
        campaign_id: str,
        access_token: str,
        new_name: Optional[str] = None,
        deep_copy: bool = True,
        status: str = "PAUSED",
        rotate: bool = True,
    ):
        data = {"deep_copy": deep_copy, "status_option": status}
        copy = await self.post(f"{campaign_id}/copies", access_token, data=data, rotate=rotate)
        new_id = copy.get("copied_campaign_id") if isinstance(copy, dict) else None
        if new_id and new_name:
            await self.update_entity(new_id, {"name": new_name}, access_token, rotate=rotate)
        return copy

    async def batch(self, requests: List[Dict[str, Any]], access_token: str, rotate: bool = True):
        """Graph batch request (max 50 operations per call)."""
        return await self.post("", access_token, data={"batch": requests, "include_headers": False}, rotate=rotate)

    async def get_account_insights(
        self,
        ad_account_id: str,
        access_token: str,
        level: str,
        since: str,
        until: str,
        fields: List[str],
        breakdowns: Optional[List[str]] = None,
        rotate: bool = True,
    ) -> List[Dict[str, Any]]:
        """All insight rows for one level and date range (follows paging)."""
        path = f"{normalize_ad_account_id(ad_account_id)}/insights"
        params = {
            "level": level,
            "fields": ",".join(fields),
            "time_range": json.dumps({"since": since, "until": until}),
            "limit": 500,
        }
        if breakdowns:
            params["breakdowns"] = ",".join(breakdowns)

        rows: List[Dict[str, Any]] = []
        after: Optional[str] = None
        while True:
            page_params = dict(params)
            if after:
                page_params["after"] = after
            page = await self.get(path, access_token, params=page_params, rotate=rotate)
            rows.extend(page.get("data", []))
            after = page.get("paging", {}).get("cursors", {}).get("after")
            if not after or not page.get("paging", {}).get("next"):
                break
        return rows
