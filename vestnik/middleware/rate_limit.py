from __future__ import annotations

import hashlib
import logging
import time
from typing import Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from vestnik.core.config import settings
from vestnik.db.redis import redis_client

logger = logging.getLogger(__name__)

# Media is CDN-fronted and video players issue many range requests per view.
EXEMPT_PREFIXES = ("/health", "/metrics", "/media/")


class RedisRateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed one-minute windows per (scope, subject) in Redis.

    Admin routes get a separate window with their own limit. Fails open.
    """

    def __init__(
        self,
        app,
        limit_per_minute: int | None = None,
        admin_limit_per_minute: int | None = None,
        redis=None,
        api_prefix: str | None = None,
    ):
        super().__init__(app)
        self.limit_per_minute = limit_per_minute or settings.rate_limit_per_minute
        self.admin_limit_per_minute = admin_limit_per_minute or settings.admin_rate_limit_per_minute
        self.redis = redis if redis is not None else redis_client
        self.admin_prefix = f"{(api_prefix or settings.api_prefix).rstrip('/')}/admin"

    @staticmethod
    def _resolve_subject(request: Request) -> str:
        auth = (request.headers.get("authorization") or "").strip()
        if auth.lower().startswith("bearer "):
            token = auth[7:].strip()
            if token:
                # Claims are not verified here; the token digest only isolates callers.
                return "jwt:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:32]

        forwarded = (request.headers.get("x-forwarded-for") or "").strip()
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"

        real_ip = (request.headers.get("x-real-ip") or "").strip()
        if real_ip:
            return f"ip:{real_ip}"

        ip = request.client.host if request.client else "unknown"
        return f"ip:{ip}"

    def _scope(self, path: str) -> tuple[str, int]:
        if path.startswith(self.admin_prefix):
            return "admin", self.admin_limit_per_minute
        return "api", self.limit_per_minute

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable]):
        path = request.url.path
        if path.startswith(EXEMPT_PREFIXES):
            return await call_next(request)

        scope, limit = self._scope(path)
        minute_bucket = int(time.time() // 60)
        key = f"rl:{scope}:{self._resolve_subject(request)}:{minute_bucket}"

        try:
            count = await self.redis.incr(key)
            if count == 1:
                await self.redis.expire(key, 65)
        except Exception as exc:
            logger.debug("Rate limit skipped, Redis unavailable: %s", exc)
            return await call_next(request)

        if count > limit:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded"},
                headers={"Retry-After": "60"},
            )
        return await call_next(request)
