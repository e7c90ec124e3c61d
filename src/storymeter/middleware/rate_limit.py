"""Rate limiting: slowapi defaults for the API and a fixed-window limiter for chat."""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as redis
import structlog
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from storymeter.config import settings

logger = structlog.get_logger()


def get_client_identifier(request: Request) -> str:
    """Get unique client identifier for rate limiting.

    Priority:
    1. Authenticated user ID
    2. X-Forwarded-For header (if behind trusted proxy)
    3. Direct client IP
    """
    if hasattr(request.state, "user_id") and request.state.user_id:
        return f"user:{request.state.user_id}"

    # Only trust X-Forwarded-For if explicitly configured
    if settings.TRUST_PROXY:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"

    return f"ip:{get_remote_address(request)}"


def _create_limiter() -> Limiter:
    """Create the default API limiter, in memory unless REDIS_URL is set."""
    storage_uri = settings.REDIS_URL
    try:
        limiter_instance = Limiter(
            key_func=get_client_identifier,
            storage_uri=storage_uri,
            storage_options={"socket_connect_timeout": 5} if storage_uri else {},  # type: ignore[dict-item]
            strategy="fixed-window",
            headers_enabled=True,
            enabled=settings.RATE_LIMIT_ENABLED,
        )
    except Exception as e:
        logger.warning(
            "Failed to initialize Redis rate limiter, falling back to in-memory",
            error=str(e),
        )
        return Limiter(
            key_func=get_client_identifier,
            strategy="fixed-window",
            headers_enabled=True,
            enabled=settings.RATE_LIMIT_ENABLED,
        )
    else:
        return limiter_instance


limiter = _create_limiter()

RATE_LIMIT_STANDARD = "100/minute"  # General API endpoints
RATE_LIMIT_WEBHOOK = "60/minute"  # Payment provider callbacks
RATE_LIMIT_HEALTH = "1000/minute"  # Health checks


# ============================================================================
# Chat rate limiting - fixed window per user
# ============================================================================

CHAT_RATE_LIMIT_PREFIX = "storymeter:ratelimit:chat:"


@dataclass
class RateLimitEntry:
    """Request count for the current window and the time it ends (epoch seconds)."""

    count: int
    reset_time: float


class RateLimitStore(Protocol):
    """Backing store for fixed-window counters."""

    async def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Count one request for key. Returns False when the window is full."""
        ...


class InMemoryRateLimitStore:
    """Per-process counters.

    Read and update happen without an await in between, so a single event
    loop cannot interleave two hits for the same key. Expired windows are
    swept from inside hit() at most once per window.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._next_prune = 0.0

    async def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        if now >= self._next_prune:
            self.prune()
            self._next_prune = now + window_seconds

        entry = self._entries.get(key)

        if entry is None or now > entry.reset_time:
            self._entries[key] = RateLimitEntry(count=1, reset_time=now + window_seconds)
            return True

        if entry.count >= limit:
            return False

        entry.count += 1
        return True

    def get_entry(self, key: str) -> RateLimitEntry | None:
        return self._entries.get(key)

    def __len__(self) -> int:
        return len(self._entries)

    def prune(self) -> int:
        """Drop expired windows. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.reset_time]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Pruned expired rate limit windows", count=len(expired))
        return len(expired)


class RedisRateLimitStore:
    """Counters shared across instances.

    The window starts with the first request (SET NX EX) and every request
    increments it. Redis failures fail open: chat stays available and the
    quota check still applies.
    """

    def __init__(self, client: Any, prefix: str = CHAT_RATE_LIMIT_PREFIX) -> None:
        self._client = client
        self._prefix = prefix

    async def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        redis_key = f"{self._prefix}{key}"
        try:
            pipe = self._client.pipeline()
            pipe.set(redis_key, 0, ex=window_seconds, nx=True)
            pipe.incr(redis_key)
            results = await pipe.execute()
        except redis.RedisError as e:
            logger.warning("Chat rate limit check failed - allowing (fail-open)", error=str(e))
            return True

        return int(results[1]) <= limit


class FixedWindowRateLimiter:
    """Allows at most `limit` requests per user in each `window_seconds` window."""

    def __init__(self, store: RateLimitStore, limit: int = 20, window_seconds: int = 60) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    async def allow(self, user_id: str) -> bool:
        allowed = await self.store.hit(user_id, self.limit, self.window_seconds)
        if not allowed:
            logger.warning("Chat rate limit exceeded", user_id=user_id, limit=self.limit)
        return allowed


def build_chat_rate_limiter(redis_client: Any | None = None) -> FixedWindowRateLimiter:
    """Build the chat limiter from settings."""
    store: RateLimitStore
    if settings.CHAT_RATE_LIMIT_BACKEND == "redis" and redis_client is not None:
        store = RedisRateLimitStore(redis_client)
        logger.info("Chat rate limiter using Redis store")
    else:
        if settings.CHAT_RATE_LIMIT_BACKEND == "redis":
            logger.warning("REDIS_URL not configured, chat rate limiting is per process")
        store = InMemoryRateLimitStore()
    return FixedWindowRateLimiter(
        store,
        limit=settings.CHAT_RATE_LIMIT_REQUESTS,
        window_seconds=settings.CHAT_RATE_LIMIT_WINDOW_SECONDS,
    )


# ============================================================================
# Redis client
# ============================================================================


class _RedisClientHolder:
    """Container for Redis client to avoid global statement."""

    client: Any = None


_redis_holder = _RedisClientHolder()


def get_redis_client() -> Any | None:
    """Get or create the Redis client, or None when REDIS_URL is unset."""
    if not settings.REDIS_URL:
        return None
    if _redis_holder.client is None:
        _redis_holder.client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
        )
    return _redis_holder.client


async def close_redis_client() -> None:
    """Close Redis client connection."""
    if _redis_holder.client:
        await _redis_holder.client.aclose()
        _redis_holder.client = None
