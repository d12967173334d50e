"""HTTP middleware: rate limiting, request logging, security headers."""

import logging
import time
import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

import redis.asyncio as redis

from consultpay.config import settings

logger = logging.getLogger(__name__)

# Gateway callbacks and cron triggers retry on their own schedule and are never throttled.
EXEMPT_PREFIXES = ("/health", "/docs", "/redoc", "/openapi.json")
EXEMPT_SEGMENTS = ("/webhooks/", "/payments/return", "/cron/")

# POSTs that move money or touch bank details get the tighter budget.
MONEY_SEGMENTS = ("/payouts", "/bank-account", "/payments/initiate", "/disputes")

WINDOW_SECONDS = 60


def client_key(request: Request) -> str:
    """Identify the caller: bearer token if present, else the client address."""
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return "tok:" + auth[7:][-24:]

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return "ip:" + forwarded.split(",")[0].strip()
    return "ip:" + (request.client.host if request.client else "unknown")


def is_exempt(path: str) -> bool:
    return path.startswith(EXEMPT_PREFIXES) or any(s in path for s in EXEMPT_SEGMENTS)


def is_money_request(request: Request) -> bool:
    return request.method == "POST" and any(s in request.url.path for s in MONEY_SEGMENTS)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed one-minute window per caller, counted with INCR in Redis.

    Money-moving POSTs are counted in a separate, smaller bucket. If Redis is
    unreachable requests pass through.
    """

    def __init__(
        self,
        app,
        requests_per_minute: int = 100,
        money_requests_per_minute: int = 20,
        redis_url: str | None = None,
    ):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.money_requests_per_minute = money_requests_per_minute
        self.redis_url = redis_url or settings.redis_url
        self._redis: redis.Redis | None = None

    async def get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def _count(self, bucket: str) -> int:
        window = int(time.time()) // WINDOW_SECONDS
        key = f"rate_limit:{bucket}:{window}"
        client = await self.get_redis()
        async with client.pipeline(transaction=True) as pipe:
            await pipe.incr(key)
            await pipe.expire(key, WINDOW_SECONDS)
            count, _ = await pipe.execute()
        return int(count)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if is_exempt(request.url.path):
            return await call_next(request)

        caller = client_key(request)
        if is_money_request(request):
            bucket, limit = f"money:{caller}", self.money_requests_per_minute
        else:
            bucket, limit = caller, self.requests_per_minute

        try:
            count = await self._count(bucket)
        except redis.RedisError as e:
            logger.warning(f"Rate limiter unavailable, allowing request: {e}")
            return await call_next(request)

        if count > limit:
            logger.info(f"Rate limited {caller} on {request.method} {request.url.path} ({count}/{limit})")
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please try again later."},
                headers={
                    "Retry-After": str(WINDOW_SECONDS),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - count))
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Attach a request id, log every request and flag slow ones."""

    slow_request_seconds = 1.0

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"{request.method} {request.url.path} failed request_id={request_id}")
            raise

        duration = time.perf_counter() - started
        response.headers["X-Request-ID"] = request_id

        message = (
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"in {duration * 1000:.0f}ms request_id={request_id}"
        )
        if duration > self.slow_request_seconds:
            logger.warning(f"SLOW {message}")
        else:
            logger.info(message)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Security headers on every response; API payloads are never cached."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith(settings.api_prefix):
            response.headers["Cache-Control"] = "no-store"
        if not settings.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response
