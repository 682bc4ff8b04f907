"""Redis-backed per-organization rate limiter.

Starlette middleware that enforces requests-per-minute per organization via
a Redis INCR + EXPIRE pipeline over fixed one-minute windows.  Individual
organizations can be given their own limit.  Degrades gracefully (allows
the request) when Redis is unavailable.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

_logger = logging.getLogger("migration_gateway.security")

# Paths excluded from rate limiting
_EXCLUDED_PATHS: set[str] = {"/health", "/health/"}

_WINDOW_SECONDS: int = 60

ORGANIZATION_HEADER = "X-Organization-ID"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-organization rate limiting with Redis fixed windows.

    Args:
        app:          The wrapped ASGI app.
        rpm:          Default requests per minute per organization.
        redis_client: ``redis.asyncio`` client; ``None`` disables limiting.
        overrides:    Organization id → requests per minute.
    """

    def __init__(
        self,
        app: Any,
        rpm: int = 100,
        redis_client: Any = None,
        overrides: dict[str, int] | None = None,
    ) -> None:
        super().__init__(app)
        self.rpm = rpm
        self.redis_client = redis_client
        self.overrides = dict(overrides or {})

    def limit_for(self, organization_id: str) -> int:
        return self.overrides.get(organization_id, self.rpm)

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if request.url.path in _EXCLUDED_PATHS:
            return await call_next(request)

        organization_id = self._extract_organization(request)
        limit = self.limit_for(organization_id)
        now = int(time.time())
        window_reset = now - (now % _WINDOW_SECONDS) + _WINDOW_SECONDS

        count = await self._increment(organization_id, window_reset)

        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(max(0, limit - count)),
            "X-RateLimit-Reset": str(window_reset),
        }

        if count > limit:
            retry_after = max(1, window_reset - int(time.time()))
            headers["Retry-After"] = str(retry_after)
            _logger.warning(
                "Rate limit exceeded for organization %s (%d/%d per minute)",
                organization_id,
                count,
                limit,
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Rate limit exceeded",
                    "code": "RATE_LIMITED",
                    "organization_id": organization_id,
                    "retry_after": retry_after,
                },
                headers=headers,
            )

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response

    async def _increment(self, organization_id: str, window_reset: int) -> int:
        """Atomically increment the request count for *organization_id*.

        Returns the current count.  On Redis failure, returns 0 (allow).
        """
        if self.redis_client is None:
            return 0

        key = f"ratelimit:{organization_id}:{window_reset}"
        try:
            pipe = self.redis_client.pipeline()
            pipe.incr(key)
            pipe.expire(key, _WINDOW_SECONDS + 1)
            results = await pipe.execute()
            return int(results[0])
        except Exception:
            _logger.warning("Redis error during rate limiting, allowing request", exc_info=True)
            return 0

    @staticmethod
    def _extract_organization(request: Request) -> str:
        """Organization header, else client IP."""
        organization_id = request.headers.get(ORGANIZATION_HEADER)
        if organization_id:
            return organization_id
        client = request.client
        return client.host if client else "unknown"
