"""
Passport Gateway Rate Limiting.

Sheds load before the passport ledger is touched. Counters live in a
shared expiring store (Redis in production) so every gateway instance
enforces the same limits; they expire by TTL and are never reset by hand.
"""

import time
import logging
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Tuple

from redis.exceptions import RedisError

from passport_gateway import config
from passport_gateway.errors import RateLimiterUnavailableError

logger = logging.getLogger(__name__)


class RateLimitScope(str, Enum):
    """Dimension a counter is keyed by."""

    IP = "ip"
    GLOBAL = "global"
    # Enforced by the ledger quota, never counted here.
    PASSPORT = "passport"


class FailurePolicy(str, Enum):
    """What to do when the limiter store is unreachable."""

    OPEN = "open"
    CLOSED = "closed"


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiterInterface(ABC):
    """Abstract interface for rate limiter implementations."""

    @abstractmethod
    async def check_limit(
        self, key: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        """
        Consume one unit of budget for ``key`` if the ceiling allows it.

        A check that would exceed ``max_requests`` is denied and does not
        consume budget.

        Args:
            key: Identifier for rate limiting (e.g., "ip:10.0.0.1").
            max_requests: Maximum requests allowed in the window.
            window_seconds: Window length in seconds.

        Returns:
            RateLimitResult with allowed status and metadata.

        Raises:
            RateLimiterUnavailableError: If the backing store cannot be reached.
        """
        pass

    async def ping(self) -> bool:
        """Check the backing store is reachable."""
        return True


class MemoryRateLimiter(RateLimiterInterface):
    """
    In-memory fixed window rate limiter.

    Suitable for single-instance deployments and tests. For multi-instance
    deployments, use RedisRateLimiter.

    Example:
        >>> limiter = MemoryRateLimiter()
        >>> result = await limiter.check_limit("ip:10.0.0.1", max_requests=30, window_seconds=3600)
        >>> if not result.allowed:
        ...     raise RateLimitedError("ip", result.retry_after)
    """

    def __init__(self, cleanup_interval: int = 300):
        """
        Initialize the rate limiter.

        Args:
            cleanup_interval: Seconds between cleanup runs.
        """
        # key -> (count, window_expires_at)
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = time.time()

    async def check_limit(
        self, key: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        """Check and consume using a fixed window counter."""
        async with self._lock:
            self._maybe_cleanup()

            now = time.time()
            count, expires_at = self._windows.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + window_seconds

            if count >= max_requests:
                retry_after = expires_at - now
                self._windows[key] = (count, expires_at)
                return RateLimitResult(
                    allowed=False, remaining=0, reset_at=expires_at, retry_after=retry_after
                )

            count += 1
            self._windows[key] = (count, expires_at)
            return RateLimitResult(
                allowed=True, remaining=max_requests - count, reset_at=expires_at
            )

    def _maybe_cleanup(self) -> None:
        """Drop expired windows."""
        now = time.time()
        if now - self._last_cleanup >= self._cleanup_interval:
            expired = [k for k, (_, expires_at) in self._windows.items() if expires_at <= now]
            for key in expired:
                del self._windows[key]
            self._last_cleanup = now


# Increment only while below the ceiling, set the TTL on the first increment.
# Returns {allowed, count, pttl_ms}.
_FIXED_WINDOW_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[1]) then
    return {0, current, redis.call('PTTL', KEYS[1])}
end
current = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
    ttl = tonumber(ARGV[2])
end
return {1, current, ttl}
"""


class RedisRateLimiter(RateLimiterInterface):
    """
    Redis-backed fixed window rate limiter.

    The check and the increment run as a single Lua script, so concurrent
    gateways can never push a counter past its ceiling.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> limiter = RedisRateLimiter(client)
        >>> result = await limiter.check_limit("global:all", max_requests=600, window_seconds=60)
    """

    def __init__(self, redis_client, key_prefix: str = "passport:ratelimit:"):
        """
        Initialize Redis rate limiter.

        Args:
            redis_client: An async Redis client.
            key_prefix: Prefix for rate limit keys.
        """
        self._redis = redis_client
        self._prefix = key_prefix

    def _key(self, key: str) -> str:
        """Generate prefixed key."""
        return f"{self._prefix}{key}"

    async def check_limit(
        self, key: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        """Check and consume atomically in Redis."""
        try:
            allowed, count, ttl_ms = await self._redis.eval(
                _FIXED_WINDOW_SCRIPT, 1, self._key(key), max_requests, window_seconds * 1000
            )
        except (RedisError, OSError) as e:
            raise RateLimiterUnavailableError(f"Redis rate limit error: {e}") from e

        now = time.time()
        ttl = max(int(ttl_ms), 0) / 1000.0
        if int(allowed) == 1:
            return RateLimitResult(
                allowed=True, remaining=max(max_requests - int(count), 0), reset_at=now + ttl
            )
        return RateLimitResult(allowed=False, remaining=0, reset_at=now + ttl, retry_after=ttl)

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            return await self._redis.ping()
        except (RedisError, OSError):
            return False


@dataclass
class ScopeLimit:
    """Ceiling and failure policy for one scope."""

    max_requests: int
    window_seconds: int
    on_failure: FailurePolicy = FailurePolicy.OPEN


class ScopedRateLimiter:
    """
    Applies per-scope ceilings on top of a base limiter.

    The per-passport scope is deliberately left unconfigured: the ledger's
    usage limit is the authoritative quota for a passport.

    Example:
        >>> limiter = ScopedRateLimiter(base_limiter)
        >>> limiter.add_limit(RateLimitScope.IP, 30, 3600, FailurePolicy.OPEN)
        >>> limiter.add_limit(RateLimitScope.GLOBAL, 600, 60, FailurePolicy.CLOSED)
        >>>
        >>> result = await limiter.check_and_consume(RateLimitScope.IP, "10.0.0.1")
    """

    def __init__(self, base_limiter: RateLimiterInterface, metrics=None):
        """
        Initialize scoped rate limiter.

        Args:
            base_limiter: The underlying rate limiter to use.
            metrics: Optional GatewayMetrics for store-failure decisions.
        """
        self._limiter = base_limiter
        self._metrics = metrics
        self._limits: Dict[RateLimitScope, ScopeLimit] = {}

    @classmethod
    def from_config(cls, base_limiter: RateLimiterInterface, metrics=None) -> "ScopedRateLimiter":
        """Build the IP and global scopes from environment configuration."""
        limiter = cls(base_limiter, metrics=metrics)
        limiter.add_limit(
            RateLimitScope.IP,
            config.IP_LIMIT_MAX_REQUESTS,
            config.IP_LIMIT_WINDOW_SECONDS,
            FailurePolicy(config.IP_LIMIT_ON_FAILURE),
        )
        limiter.add_limit(
            RateLimitScope.GLOBAL,
            config.GLOBAL_LIMIT_MAX_REQUESTS,
            config.GLOBAL_LIMIT_WINDOW_SECONDS,
            FailurePolicy(config.GLOBAL_LIMIT_ON_FAILURE),
        )
        return limiter

    def add_limit(
        self,
        scope: RateLimitScope,
        max_requests: int,
        window_seconds: int,
        on_failure: FailurePolicy = FailurePolicy.OPEN,
    ) -> None:
        """Configure the ceiling for a scope."""
        if scope == RateLimitScope.PASSPORT:
            raise ValueError("Passport scope is enforced by the ledger quota")
        self._limits[scope] = ScopeLimit(max_requests, window_seconds, FailurePolicy(on_failure))

    async def ping(self) -> bool:
        """Check the base limiter's store."""
        return await self._limiter.ping()

    async def check_and_consume(self, scope: RateLimitScope, key: str) -> RateLimitResult:
        """
        Check one scope, consuming budget when allowed.

        Unconfigured scopes always allow. A store failure is resolved by the
        scope's failure policy and logged.
        """
        limit = self._limits.get(scope)
        if limit is None:
            return RateLimitResult(allowed=True, remaining=-1, reset_at=time.time())

        try:
            return await self._limiter.check_limit(
                f"{scope.value}:{key}", limit.max_requests, limit.window_seconds
            )
        except RateLimiterUnavailableError as e:
            if self._metrics is not None:
                self._metrics.record_limiter_failure(scope.value, limit.on_failure.value)

            if limit.on_failure == FailurePolicy.OPEN:
                logger.warning(f"Rate limiter unavailable, failing open for {scope.value} scope: {e}")
                return RateLimitResult(
                    allowed=True, remaining=-1, reset_at=time.time() + limit.window_seconds
                )

            logger.error(f"Rate limiter unavailable, failing closed for {scope.value} scope: {e}")
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=time.time() + limit.window_seconds,
                retry_after=float(limit.window_seconds),
            )
