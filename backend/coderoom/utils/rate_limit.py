"""
Rate limiting utility with Redis backend.
Supports both HTTP endpoints and WebSocket rate limiting.
"""
import time
from typing import Optional, Callable
from functools import wraps
from fastapi import Request, Response, HTTPException, status
from redis.asyncio import Redis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from coderoom.config import settings
from coderoom.utils.logging_config import get_logger

logger = get_logger("rate_limit")


class RateLimiter:
    """
    Redis-based rate limiter with sliding window algorithm.
    Falls back to in-memory storage if Redis is not available.
    """

    def __init__(self, redis_url: str = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis: Optional[Redis] = None
        self._fallback_store: dict = {}  # Fallback in-memory storage
        self._use_fallback = not (settings.REDIS_ENABLED and settings.RATE_LIMIT_USE_REDIS)

    async def get_redis(self) -> Optional[Redis]:
        """Get or create Redis connection."""
        if self._redis is None and not self._use_fallback:
            try:
                self._redis = Redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=False
                )
                await self._redis.ping()
            except (RedisError, OSError) as e:
                logger.warning("Rate limiter falling back to memory", extra={"error": str(e)})
                self._use_fallback = True
                self._redis = None
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _cleanup_fallback(self):
        """Remove expired entries from fallback storage."""
        now = time.time()
        expired_keys = [
            k for k, v in self._fallback_store.items()
            if v.get("reset_at", 0) < now
        ]
        for k in expired_keys:
            del self._fallback_store[k]

    async def is_allowed(
        self,
        key: str,
        limit: int,
        window: int
    ) -> tuple[bool, dict]:
        """
        Check if request is allowed under rate limit.

        Args:
            key: Unique identifier (e.g., IP, user_id)
            limit: Maximum requests allowed
            window: Time window in seconds

        Returns:
            Tuple of (is_allowed, info_dict)
        """
        now = time.time()
        window_start = now - window
        reset_at = int(now + window)

        if not self._use_fallback:
            try:
                redis = await self.get_redis()
                if redis:
                    pipe = redis.pipeline()
                    pipe.zremrangebyscore(key, 0, window_start)
                    pipe.zcard(key)
                    pipe.zadd(key, {str(now): now})
                    pipe.expire(key, window)
                    results = await pipe.execute()

                    current_count = results[1]  # Count after cleanup
                    is_allowed = current_count < limit

                    return is_allowed, {
                        "limit": limit,
                        "remaining": max(0, limit - current_count - 1),
                        "reset": reset_at
                    }
            except (RedisError, OSError) as e:
                logger.warning("Rate limiter redis error, using memory", extra={"error": str(e)})
                self._use_fallback = True
                self._redis = None

        # Fallback: fixed window in memory
        self._cleanup_fallback()
        data = self._fallback_store.get(key, {"count": 0, "reset_at": 0})

        if data["reset_at"] < now:
            data = {"count": 0, "reset_at": reset_at}

        data["count"] += 1
        self._fallback_store[key] = data

        is_allowed = data["count"] <= limit
        return is_allowed, {
            "limit": limit,
            "remaining": max(0, limit - data["count"]),
            "reset": data["reset_at"]
        }


# Global rate limiter instance
limiter = RateLimiter()


async def close_rate_limiter():
    """Close the rate limiter connection (call on shutdown)."""
    await limiter.close()


def get_client_identifier(request: Request) -> str:
    """
    Get a unique identifier for the client.
    Uses authenticated user ID if available, otherwise IP address.
    """
    user = getattr(request.state, "user", None)
    if user is not None:
        return f"user:{user.id}"

    # Use forwarded IP if behind proxy
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip: str = "unknown"
        if request.client is not None:
            ip = request.client.host

    return f"ip:{ip}"


def rate_limit(
    limit: int,
    window: int,
    key_func: Optional[Callable] = None,
    identifier: str = "default"
):
    """
    Rate limiting decorator for FastAPI endpoints.

    The decorated endpoint must accept a ``request: Request`` parameter.

    Args:
        limit: Maximum requests allowed
        window: Time window in seconds
        key_func: Optional function to generate custom key
        identifier: Endpoint identifier for the key

    Raises:
        HTTPException: When rate limit is exceeded
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            if not isinstance(request, Request):
                request = next((a for a in args if isinstance(a, Request)), None)

            if request is not None and settings.RATE_LIMIT_ENABLED:
                client_key = key_func(request) if key_func else get_client_identifier(request)
                full_key = f"rate_limit:{identifier}:{client_key}"

                is_allowed, info = await limiter.is_allowed(full_key, limit, window)
                request.state.rate_limit_info = info

                if not is_allowed:
                    logger.warning("HTTP rate limit exceeded", extra={"key": full_key})
                    raise HTTPException(
                        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                        detail="Rate limit exceeded. Please try again later.",
                        headers={
                            "X-RateLimit-Limit": str(info["limit"]),
                            "X-RateLimit-Remaining": "0",
                            "X-RateLimit-Reset": str(info["reset"]),
                            "Retry-After": str(window)
                        }
                    )

            return await func(*args, **kwargs)

        return wrapper
    return decorator


class RateLimitHeaderMiddleware(BaseHTTPMiddleware):
    """
    Adds X-RateLimit-* headers to HTTP responses.
    Values are left in request.state.rate_limit_info by the rate_limit decorator.
    """

    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        info = getattr(request.state, "rate_limit_info", None)
        if info:
            response.headers["X-RateLimit-Limit"] = str(info.get("limit", 0))
            response.headers["X-RateLimit-Remaining"] = str(info.get("remaining", 0))
            response.headers["X-RateLimit-Reset"] = str(info.get("reset", 0))

        return response


class WebSocketRateLimiter:
    """
    Rate limiter for WebSocket connections.
    Limits messages per connection within a time window.
    """

    def __init__(
        self,
        message_limit: int = 60,
        window_seconds: int = 60,
        burst_limit: int = 10,
        burst_window: int = 1
    ):
        """
        Args:
            message_limit: Max messages per window
            window_seconds: Time window in seconds
            burst_limit: Max messages in burst window
            burst_window: Burst window in seconds
        """
        self.message_limit = message_limit
        self.window = window_seconds
        self.burst_limit = burst_limit
        self.burst_window = burst_window
        # {connection_id: {"messages": [timestamps], "burst_start": ts, "burst_count": n}}
        self.connections: dict = {}

    def check_rate_limit(self, connection_id: str) -> tuple[bool, Optional[str]]:
        """
        Check if a message on this connection is allowed.

        Returns:
            Tuple of (is_allowed, error_message)
        """
        now = time.monotonic()

        conn_data = self.connections.setdefault(connection_id, {
            "messages": [],
            "burst_start": now,
            "burst_count": 0
        })

        conn_data["messages"] = [
            ts for ts in conn_data["messages"]
            if now - ts < self.window
        ]

        if len(conn_data["messages"]) >= self.message_limit:
            return False, f"Rate limit exceeded: max {self.message_limit} messages per {self.window} seconds"

        if now - conn_data["burst_start"] > self.burst_window:
            conn_data["burst_start"] = now
            conn_data["burst_count"] = 0

        if conn_data["burst_count"] >= self.burst_limit:
            return False, f"Too many messages: max {self.burst_limit} messages per {self.burst_window} seconds"

        conn_data["messages"].append(now)
        conn_data["burst_count"] += 1

        return True, None

    def cleanup(self, connection_id: str):
        """Remove connection from tracking."""
        self.connections.pop(connection_id, None)


# Event classes for the team-coding socket
ws_limiters: dict[str, WebSocketRateLimiter] = {
    # code-change fires on every keystroke batch
    "edit": WebSocketRateLimiter(message_limit=600, window_seconds=60, burst_limit=30, burst_window=1),
    "chat": WebSocketRateLimiter(message_limit=60, window_seconds=60, burst_limit=10, burst_window=1),
    # cursor-move / typing
    "presence": WebSocketRateLimiter(message_limit=900, window_seconds=60, burst_limit=40, burst_window=1),
    "default": WebSocketRateLimiter(message_limit=120, window_seconds=60, burst_limit=20, burst_window=1),
}

EVENT_CLASSES: dict[str, str] = {
    "code-change": "edit",
    "send-message": "chat",
    "cursor-move": "presence",
    "typing": "presence",
}


def check_websocket_rate_limit(
    connection_id: str,
    message_type: str = "default"
) -> tuple[bool, Optional[str]]:
    """
    Check WebSocket rate limit based on the event class of ``message_type``.

    Args:
        connection_id: Unique connection identifier
        message_type: Client event type (code-change, send-message, ...)

    Returns:
        Tuple of (is_allowed, error_message)
    """
    if not settings.RATE_LIMIT_ENABLED:
        return True, None
    event_class = EVENT_CLASSES.get(message_type, "default")
    return ws_limiters[event_class].check_rate_limit(connection_id)


def cleanup_websocket_rate_limit(connection_id: str):
    """Clean up rate limit tracking for a connection."""
    for ws_limiter in ws_limiters.values():
        ws_limiter.cleanup(connection_id)
