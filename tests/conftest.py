"""
Shared pytest fixtures for Passport Gateway tests.
"""

import asyncio
from typing import List, Optional

import pytest

from passport_gateway.admission import Admission, AdmissionController
from passport_gateway.backend import GenerationBackend, GenerationStream, build_prompt
from passport_gateway.errors import BackendFailureError
from passport_gateway.keys import PassportKeyPair, generate_keypair, sign_challenge
from passport_gateway.ledger import MemoryLedger, PassportSnapshot
from passport_gateway.metrics import GatewayMetrics
from passport_gateway.ratelimit import (
    FailurePolicy,
    MemoryRateLimiter,
    RateLimitScope,
    ScopedRateLimiter,
)


class FakeGenerationStream(GenerationStream):
    """Scripted chunk stream that records whether it was released."""

    def __init__(
        self,
        chunks: List[str],
        delay: float = 0.0,
        fail_after: Optional[int] = None,
        tokens_used: Optional[int] = None,
    ):
        self._chunks = chunks
        self._delay = delay
        self._fail_after = fail_after
        self._final_tokens = tokens_used
        self.tokens_used = None
        self.closed = False
        self.reads = 0

    async def __aiter__(self):
        for index, chunk in enumerate(self._chunks):
            if self.closed:
                return
            if self._fail_after is not None and index >= self._fail_after:
                raise BackendFailureError("backend_error")
            if self._delay:
                await asyncio.sleep(self._delay)
            self.reads += 1
            yield chunk
        self.tokens_used = self._final_tokens

    async def aclose(self) -> None:
        self.closed = True


class FakeBackend(GenerationBackend):
    """Backend double handing out FakeGenerationStreams."""

    def __init__(self, chunks=None, open_error=None, open_delay: float = 0.0, **stream_kwargs):
        self.chunks = chunks if chunks is not None else ["a", "b", "c"]
        self.open_error = open_error
        self.open_delay = open_delay
        self.stream_kwargs = stream_kwargs
        self.prompts: List[str] = []
        self.streams: List[FakeGenerationStream] = []

    async def open(self, prompt: str) -> GenerationStream:
        self.prompts.append(prompt)
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error
        stream = FakeGenerationStream(list(self.chunks), **self.stream_kwargs)
        self.streams.append(stream)
        return stream


@pytest.fixture
def keypair() -> PassportKeyPair:
    """Generate a fresh passport keypair for testing."""
    return generate_keypair()


@pytest.fixture
def signature(keypair: PassportKeyPair) -> str:
    """Valid challenge signature for ``keypair``."""
    return sign_challenge(keypair.private_key_hex)


@pytest.fixture
def metrics() -> GatewayMetrics:
    """Metrics on a private registry."""
    return GatewayMetrics()


@pytest.fixture
def memory_limiter() -> MemoryRateLimiter:
    """Create a memory rate limiter for testing."""
    return MemoryRateLimiter()


@pytest.fixture
def scoped_limiter(memory_limiter: MemoryRateLimiter, metrics: GatewayMetrics) -> ScopedRateLimiter:
    """IP and global scopes with generous ceilings."""
    limiter = ScopedRateLimiter(memory_limiter, metrics=metrics)
    limiter.add_limit(RateLimitScope.IP, 30, 3600, FailurePolicy.OPEN)
    limiter.add_limit(RateLimitScope.GLOBAL, 600, 60, FailurePolicy.CLOSED)
    return limiter


@pytest.fixture
def ledger() -> MemoryLedger:
    """In-memory ledger with the default tier limits."""
    return MemoryLedger(tier_limits={"free": 100, "pro": 1000})


@pytest.fixture
def controller(scoped_limiter, ledger, metrics) -> AdmissionController:
    return AdmissionController(scoped_limiter, ledger, metrics=metrics)


@pytest.fixture
def backend() -> FakeBackend:
    """Backend emitting a, b, c then completing."""
    return FakeBackend()


@pytest.fixture
def admission() -> Admission:
    """An admission granted outside any ledger."""
    snapshot = PassportSnapshot(
        passport_id="cdx-1a2b3c4d",
        tier="free",
        usage_count=1,
        usage_limit=100,
        status="active",
        can_proceed=True,
        usage_log_id="log-1",
    )
    return Admission(
        snapshot=snapshot,
        prompt=build_prompt("print('hi')"),
        public_key_hex="1a2b3c4d" + "00" * 28,
    )
