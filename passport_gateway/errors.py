"""
Passport Gateway Errors.

Every rejection the gateway can produce maps to exactly one exception class
with a stable machine-readable ``kind`` and a human-readable message. The
HTTP layer turns them into structured responses; nothing here ever carries
a raw store or backend stack trace.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base exception for Passport Gateway rejections."""

    kind = "gateway_error"
    status_code = 500
    default_message = "The request could not be processed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Client-facing representation."""
        return {"kind": self.kind, "message": self.message}


class InvalidRequestError(GatewayError):
    """Raised when the request body is empty or too large."""

    kind = "invalid_request"
    status_code = 400
    default_message = "The request body is invalid"


class MalformedCredentialError(GatewayError):
    """Raised when the signature or public key has a bad encoding or length."""

    kind = "malformed_credential"
    status_code = 400
    default_message = "Passport credentials are malformed"


class InvalidSignatureError(GatewayError):
    """Raised when the passport signature does not verify."""

    kind = "invalid_signature"
    status_code = 401
    default_message = "Passport signature is invalid"


class RateLimitedError(GatewayError):
    """Raised when a rate limit scope sheds the request."""

    kind = "rate_limited"
    status_code = 429

    def __init__(self, scope: str, retry_after: Optional[float] = None):
        self.scope = scope
        self.retry_after = retry_after
        super().__init__(f"Too many requests ({scope} limit). Try again later.")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["scope"] = self.scope
        if self.retry_after is not None:
            data["retryAfter"] = round(self.retry_after, 3)
        return data


class PassportSuspendedError(GatewayError):
    """Raised when the resolved passport is suspended."""

    kind = "passport_suspended"
    status_code = 403
    default_message = "This passport has been suspended"


class UsageLimitReachedError(GatewayError):
    """Raised when the resolved passport has exhausted its quota."""

    kind = "usage_limit_reached"
    status_code = 403
    default_message = "This passport has reached its usage limit"


class LedgerUnavailableError(GatewayError):
    """Raised when the durable store cannot be reached within the retry budget."""

    kind = "ledger_unavailable"
    status_code = 503
    default_message = "Passport ledger is temporarily unavailable"


class LedgerCorruptionError(GatewayError):
    """Raised on an unexpected ledger invariant violation. Never retried."""

    kind = "ledger_corruption"
    status_code = 500
    default_message = "Passport ledger rejected the request"


class BackendFailureError(GatewayError):
    """Raised when the generation backend errors out or times out."""

    kind = "backend_failure"
    status_code = 502
    default_message = "The generation backend failed"

    def __init__(self, category: str = "backend_error", message: Optional[str] = None):
        self.category = category
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["category"] = self.category
        return data


class RateLimiterUnavailableError(Exception):
    """Raised by a rate limiter whose backing store cannot be reached."""

    pass
