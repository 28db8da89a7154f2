# passport_gateway/config.py
"""
Centralized configuration for the Passport Gateway.

All configurable values are read from environment variables with sensible
defaults, so dev, staging and production differ only in their environment.

Usage:
    from passport_gateway.config import DATABASE_URL, IP_LIMIT_MAX_REQUESTS

Environment Variables:
    PASSPORT_GATEWAY_DATABASE_URL: SQLAlchemy async URL of the passport ledger
    PASSPORT_GATEWAY_REDIS_URL: Redis URL for shared rate limits (empty = in-process)
    PASSPORT_GATEWAY_BACKEND_URL: Base URL of the text-generation backend
    PASSPORT_GATEWAY_CHALLENGE: The challenge message clients sign
"""

import os
from typing import Dict, Final


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


# =============================================================================
# Storage
# =============================================================================

DATABASE_URL: Final[str] = os.getenv(
    "PASSPORT_GATEWAY_DATABASE_URL",
    "sqlite+aiosqlite:///./passports.db"
)

# Empty means the in-process MemoryRateLimiter (single instance only)
REDIS_URL: Final[str] = os.getenv("PASSPORT_GATEWAY_REDIS_URL", "")

REDIS_KEY_PREFIX: Final[str] = os.getenv("PASSPORT_GATEWAY_REDIS_PREFIX", "passport:ratelimit:")

# =============================================================================
# Identity
# =============================================================================

# Fixed challenge signed by every client. Not nonced: see DESIGN.md.
CHALLENGE_MESSAGE: Final[str] = os.getenv(
    "PASSPORT_GATEWAY_CHALLENGE",
    "Codex Passport: prove ownership of this key"
)

PASSPORT_ID_PREFIX: Final[str] = os.getenv("PASSPORT_GATEWAY_ID_PREFIX", "cdx-")

TIER_LIMITS: Final[Dict[str, int]] = {
    "free": _env_int("PASSPORT_GATEWAY_FREE_LIMIT", 100),
    "pro": _env_int("PASSPORT_GATEWAY_PRO_LIMIT", 1000),
}

# =============================================================================
# Rate Limiting
# =============================================================================

IP_LIMIT_MAX_REQUESTS: Final[int] = _env_int("PASSPORT_GATEWAY_IP_LIMIT", 30)
IP_LIMIT_WINDOW_SECONDS: Final[int] = _env_int("PASSPORT_GATEWAY_IP_WINDOW", 3600)

GLOBAL_LIMIT_MAX_REQUESTS: Final[int] = _env_int("PASSPORT_GATEWAY_GLOBAL_LIMIT", 600)
GLOBAL_LIMIT_WINDOW_SECONDS: Final[int] = _env_int("PASSPORT_GATEWAY_GLOBAL_WINDOW", 60)

# "open" lets requests through when the limiter store is down, "closed" rejects them
IP_LIMIT_ON_FAILURE: Final[str] = os.getenv("PASSPORT_GATEWAY_IP_ON_FAILURE", "open")
GLOBAL_LIMIT_ON_FAILURE: Final[str] = os.getenv("PASSPORT_GATEWAY_GLOBAL_ON_FAILURE", "closed")

# Only honour X-Forwarded-For when the gateway sits behind a trusted proxy
TRUST_FORWARDED_FOR: Final[bool] = os.getenv("PASSPORT_GATEWAY_TRUST_FORWARDED_FOR", "false").lower() in (
    "1", "true", "yes"
)

# =============================================================================
# Ledger
# =============================================================================

LEDGER_MAX_RETRIES: Final[int] = _env_int("PASSPORT_GATEWAY_LEDGER_RETRIES", 3)
LEDGER_RETRY_BACKOFF: Final[float] = _env_float("PASSPORT_GATEWAY_LEDGER_BACKOFF", 0.05)
LEDGER_TIMEOUT: Final[float] = _env_float("PASSPORT_GATEWAY_LEDGER_TIMEOUT", 5.0)

# =============================================================================
# Generation Backend
# =============================================================================

BACKEND_URL: Final[str] = os.getenv("PASSPORT_GATEWAY_BACKEND_URL", "http://127.0.0.1:8080")
BACKEND_MODEL: Final[str] = os.getenv("PASSPORT_GATEWAY_BACKEND_MODEL", "default")
BACKEND_API_KEY: Final[str] = os.getenv("PASSPORT_GATEWAY_BACKEND_API_KEY", "")

BACKEND_CONNECT_TIMEOUT: Final[float] = _env_float("PASSPORT_GATEWAY_CONNECT_TIMEOUT", 10.0)
STREAM_IDLE_TIMEOUT: Final[float] = _env_float("PASSPORT_GATEWAY_IDLE_TIMEOUT", 30.0)
STREAM_TOTAL_TIMEOUT: Final[float] = _env_float("PASSPORT_GATEWAY_TOTAL_TIMEOUT", 120.0)

MAX_SNIPPET_CHARS: Final[int] = _env_int("PASSPORT_GATEWAY_MAX_SNIPPET", 20000)

# =============================================================================
# Server
# =============================================================================

HOST: Final[str] = os.getenv("PASSPORT_GATEWAY_HOST", "127.0.0.1")
PORT: Final[int] = _env_int("PASSPORT_GATEWAY_PORT", 8000)


def _redact_url(url: str) -> str:
    """Hide credentials embedded in a connection URL."""
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


def print_config() -> None:
    """Print current configuration (useful for debugging)."""
    print("Passport Gateway Configuration:")
    print(f"  DATABASE_URL:   {_redact_url(DATABASE_URL)}")
    print(f"  REDIS_URL:      {_redact_url(REDIS_URL) or '(in-process)'}")
    print(f"  BACKEND_URL:    {BACKEND_URL}")
    print(f"  BACKEND_MODEL:  {BACKEND_MODEL}")
    print(f"  ID_PREFIX:      {PASSPORT_ID_PREFIX}")
    print(f"  TIER_LIMITS:    {TIER_LIMITS}")
    print(f"  IP_LIMIT:       {IP_LIMIT_MAX_REQUESTS}/{IP_LIMIT_WINDOW_SECONDS}s "
          f"(on failure: {IP_LIMIT_ON_FAILURE})")
    print(f"  GLOBAL_LIMIT:   {GLOBAL_LIMIT_MAX_REQUESTS}/{GLOBAL_LIMIT_WINDOW_SECONDS}s "
          f"(on failure: {GLOBAL_LIMIT_ON_FAILURE})")
    print(f"  TIMEOUTS:       idle={STREAM_IDLE_TIMEOUT}s total={STREAM_TOTAL_TIMEOUT}s")
    print(f"  LISTEN:         {HOST}:{PORT}")


if __name__ == "__main__":
    print_config()
