"""
Passport Gateway - Ed25519 passport admission for streaming generation.

Callers prove ownership of an Ed25519 key by signing a fixed challenge. The
gateway maps the key to a metered passport, applies layered rate limits and
relays the backend's completion as newline-delimited JSON frames.
"""

__version__ = "0.4.0"

# Core types
from .errors import (
    GatewayError,
    InvalidRequestError,
    MalformedCredentialError,
    InvalidSignatureError,
    RateLimitedError,
    PassportSuspendedError,
    UsageLimitReachedError,
    LedgerUnavailableError,
    LedgerCorruptionError,
    BackendFailureError,
)
from .keys import (
    PassportKeyPair,
    verify_signature,
    derive_passport_id,
    generate_keypair,
    sign_challenge,
)


# Heavier components (lazy imports so key helpers stay cheap to import)
def __getattr__(name):
    """Lazy loading of gateway components."""
    if name in ("AdmissionController", "AdmissionRequest", "Admission"):
        from . import admission

        return getattr(admission, name)
    elif name in ("MemoryLedger", "SQLLedger", "LedgerInterface", "PassportSnapshot"):
        from . import ledger

        return getattr(ledger, name)
    elif name in (
        "MemoryRateLimiter",
        "RedisRateLimiter",
        "ScopedRateLimiter",
        "RateLimitScope",
        "FailurePolicy",
        "RateLimitResult",
    ):
        from . import ratelimit

        return getattr(ratelimit, name)
    elif name in ("StreamOrchestrator", "StreamSession", "StreamState", "Frame"):
        from . import stream

        return getattr(stream, name)
    elif name in ("GenerationBackend", "GenerationStream", "HttpGenerationBackend"):
        from . import backend

        return getattr(backend, name)
    elif name == "GatewayMetrics":
        from . import metrics

        return getattr(metrics, name)
    elif name == "create_app":
        from .server import create_app

        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "__version__",
    # Errors
    "GatewayError",
    "InvalidRequestError",
    "MalformedCredentialError",
    "InvalidSignatureError",
    "RateLimitedError",
    "PassportSuspendedError",
    "UsageLimitReachedError",
    "LedgerUnavailableError",
    "LedgerCorruptionError",
    "BackendFailureError",
    # Keys
    "PassportKeyPair",
    "verify_signature",
    "derive_passport_id",
    "generate_keypair",
    "sign_challenge",
    # Components
    "AdmissionController",
    "AdmissionRequest",
    "Admission",
    "MemoryLedger",
    "SQLLedger",
    "LedgerInterface",
    "PassportSnapshot",
    "MemoryRateLimiter",
    "RedisRateLimiter",
    "ScopedRateLimiter",
    "RateLimitScope",
    "FailurePolicy",
    "RateLimitResult",
    "StreamOrchestrator",
    "StreamSession",
    "StreamState",
    "Frame",
    "GenerationBackend",
    "GenerationStream",
    "HttpGenerationBackend",
    "GatewayMetrics",
    "create_app",
]
