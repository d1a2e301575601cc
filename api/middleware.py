import time
import uuid
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from core.logging import request_id_ctx

logger = logging.getLogger(__name__)

# Responses that mean the Graph API budget ran out for this caller
RATE_LIMITED_STATUSES = {202: "queued", 429: "rate limited"}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects:
    - request_id (reuses an incoming X-Request-ID)
    - api_latency_ms

    Queued (202) and rate limited (429) responses are logged with the
    caller's user id so dispatch decisions can be traced per request.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.perf_counter()

        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)

        try:
            response: Response = await call_next(request)

            outcome = RATE_LIMITED_STATUSES.get(response.status_code)
            if outcome and request.url.path.startswith("/api/"):
                logger.info(
                    f"{request.method} {request.url.path} {outcome} "
                    f"for user {request.headers.get('X-User-ID', '-')}"
                )
        finally:
            request_id_ctx.reset(token)

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        return response
