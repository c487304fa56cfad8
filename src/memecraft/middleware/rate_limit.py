"""Redis sliding-window rate limiter for the money-moving endpoints.

Provider webhooks and health probes are never limited. When Redis is
unavailable requests pass through unthrottled.
"""

import secrets
import time
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from memecraft.api.dependencies import decode_session_token, token_from_request

log = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitRule:
    path: str
    limit: int
    window: int  # seconds
    key: str = "user"  # "user" falls back to the client IP for anonymous callers
    method: Optional[str] = None
    exact: bool = False

    def matches(self, path: str, method: str) -> bool:
        if self.exact:
            if path.rstrip("/") != self.path:
                return False
        elif not path.startswith(self.path):
            return False
        return self.method is None or self.method.upper() == method.upper()


# First matching rule wins
RATE_LIMIT_RULES = [
    RateLimitRule(path="/api/v1/payments", limit=5, window=3600, method="POST", exact=True),
    RateLimitRule(path="/api/v1/credits/charge", limit=30, window=60, method="POST"),
]

SKIP_PATHS = {"/health", "/health/payments", "/docs", "/openapi.json", "/redoc"}
SKIP_PREFIXES = ("/api/v1/payments/webhook",)


@dataclass(frozen=True)
class WindowUsage:
    """Requests seen inside the current window for one identifier."""

    count: int
    rule: RateLimitRule
    reset_at: int

    @property
    def exceeded(self) -> bool:
        return self.count > self.rule.limit

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.rule.limit),
            "X-RateLimit-Remaining": str(max(0, self.rule.limit - self.count)),
            "X-RateLimit-Reset": str(self.reset_at),
        }

    def rejection(self) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests. Please try again later.", "code": "rate_limited"},
            headers={**self.headers(), "Retry-After": str(self.rule.window)},
        )


def find_matching_rule(path: str, method: str) -> RateLimitRule | None:
    if path in SKIP_PATHS or path.startswith(SKIP_PREFIXES):
        return None
    for rule in RATE_LIMIT_RULES:
        if rule.matches(path, method):
            return rule
    return None


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _resolve_identifier(request: Request, rule: RateLimitRule) -> str:
    if rule.key == "user":
        token = token_from_request(request)
        user_id = decode_session_token(token) if token else None
        if user_id:
            return f"user:{user_id}"
    return f"ip:{_get_client_ip(request)}"


async def _record_request(redis, key: str, rule: RateLimitRule) -> WindowUsage:
    """Add this request to the sorted-set window and count what remains in it."""
    now = time.time()
    pipe = redis.pipeline()
    pipe.zremrangebyscore(key, 0, now - rule.window)
    pipe.zadd(key, {f"{now}:{secrets.token_hex(4)}": now})
    pipe.zcard(key)
    pipe.expire(key, rule.window)
    _, _, count, _ = await pipe.execute()
    return WindowUsage(count=count, rule=rule, reset_at=int(now) + rule.window)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-backed sliding window rate limiter."""

    async def dispatch(self, request: Request, call_next):
        rule = find_matching_rule(request.url.path, request.method)
        if rule is None:
            return await call_next(request)

        identifier = _resolve_identifier(request, rule)
        try:
            usage = await _record_request(
                request.app.state.redis, f"ratelimit:{rule.path}:{identifier}", rule,
            )
        except Exception as exc:
            log.warning("rate_limit_redis_error", error=str(exc), path=request.url.path)
            return await call_next(request)

        if usage.exceeded:
            log.warning(
                "rate_limit_exceeded",
                path=request.url.path,
                identifier=identifier,
                limit=rule.limit,
                count=usage.count,
            )
            return usage.rejection()

        response = await call_next(request)
        response.headers.update(usage.headers())
        return response
