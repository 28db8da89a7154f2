"""
Passport Gateway Admission Controller.

Composes request validation, the signature verifier, the rate limiter and
the passport ledger into the per-request authorization decision. Holds no
state of its own and stops at the first failing step; nothing after that
step runs, so the only side effects are those the completed steps committed.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from passport_gateway.backend import build_prompt
from passport_gateway.config import CHALLENGE_MESSAGE, MAX_SNIPPET_CHARS
from passport_gateway.errors import (
    GatewayError,
    InvalidRequestError,
    InvalidSignatureError,
    PassportSuspendedError,
    RateLimitedError,
    UsageLimitReachedError,
)
from passport_gateway.keys import challenge_bytes, decode_credentials, verify_signature
from passport_gateway.ledger import LedgerInterface, PassportSnapshot
from passport_gateway.models import PassportStatus
from passport_gateway.ratelimit import RateLimitScope, ScopedRateLimiter

logger = logging.getLogger(__name__)

GLOBAL_KEY = "all"


@dataclass
class AdmissionRequest:
    """Everything the controller needs from one inbound request."""

    code_snippet: str
    signature_hex: str
    public_key_hex: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Admission:
    """A granted admission, ready to be streamed."""

    snapshot: PassportSnapshot
    prompt: str
    public_key_hex: str


class AdmissionController:
    """
    Request-level admission decisions.

    Order of checks: body validation, credential decoding, per-IP limit,
    signature, global limit, then the ledger. Malformed credentials are
    rejected before any store is touched; unauthenticated load is shed by
    the IP limit before paying for signature verification.

    Example:
        >>> controller = AdmissionController(limiter, ledger)
        >>> admission = await controller.admit(AdmissionRequest(
        ...     code_snippet="print('hi')",
        ...     signature_hex=sig,
        ...     public_key_hex=pub,
        ...     ip_address="203.0.113.7",
        ... ))
        >>> admission.snapshot.usage
        '1/100'
    """

    def __init__(
        self,
        rate_limiter: ScopedRateLimiter,
        ledger: LedgerInterface,
        challenge: str = CHALLENGE_MESSAGE,
        max_snippet_chars: int = MAX_SNIPPET_CHARS,
        metrics=None,
    ):
        self._rate_limiter = rate_limiter
        self._ledger = ledger
        self._challenge = challenge_bytes(challenge)
        self._max_snippet_chars = max_snippet_chars
        self._metrics = metrics

    @property
    def rate_limiter(self) -> ScopedRateLimiter:
        return self._rate_limiter

    async def admit(self, request: AdmissionRequest) -> Admission:
        """
        Decide whether a request may consume quota and stream.

        Raises:
            GatewayError: The first failing check, as its specific subclass.
        """
        passport_id = None
        try:
            self._validate_body(request)
            signature, public_key = decode_credentials(
                request.signature_hex, request.public_key_hex
            )

            await self._check_scope(RateLimitScope.IP, request.ip_address or "unknown")

            if not verify_signature(self._challenge, signature, public_key):
                raise InvalidSignatureError()

            await self._check_scope(RateLimitScope.GLOBAL, GLOBAL_KEY)

            public_key_hex = public_key.hex()
            snapshot = await self._ledger.resolve_and_admit(
                public_key_hex, request.ip_address, request.user_agent
            )
            passport_id = snapshot.passport_id

            if not snapshot.can_proceed:
                if snapshot.status == PassportStatus.SUSPENDED.value:
                    raise PassportSuspendedError()
                raise UsageLimitReachedError()

        except GatewayError as e:
            logger.warning(
                f"Rejected request: kind={e.kind} ip={request.ip_address} "
                f"passport={passport_id or '-'}"
            )
            if self._metrics is not None:
                self._metrics.record_rejection(e.kind)
            raise

        logger.info(
            f"Admitted passport {snapshot.passport_id} ({snapshot.usage}, {snapshot.status}) "
            f"ip={request.ip_address}"
        )
        if self._metrics is not None:
            self._metrics.record_admission()

        return Admission(
            snapshot=snapshot,
            prompt=build_prompt(request.code_snippet),
            public_key_hex=public_key_hex,
        )

    def _validate_body(self, request: AdmissionRequest) -> None:
        snippet = request.code_snippet
        if not isinstance(snippet, str) or not snippet.strip():
            raise InvalidRequestError("codeSnippet must be a non-empty string")
        if len(snippet) > self._max_snippet_chars:
            raise InvalidRequestError(
                f"codeSnippet exceeds {self._max_snippet_chars} characters"
            )

    async def _check_scope(self, scope: RateLimitScope, key: str) -> None:
        result = await self._rate_limiter.check_and_consume(scope, key)
        if not result.allowed:
            raise RateLimitedError(scope.value, result.retry_after)
