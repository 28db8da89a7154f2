"""
Passport Gateway HTTP Server.

Single POST endpoint that admits a signed request and streams the backend's
answer as newline-delimited JSON frames.

Usage:
    # Start the gateway
    passport-gateway serve

    # Or with uvicorn directly
    uvicorn passport_gateway.server:create_app --factory --port 8000

Endpoints:
    POST /api/explain  - Admit and stream (application/x-ndjson)
    GET  /status       - Health check
    GET  /metrics      - Prometheus metrics
"""

from __future__ import annotations

import logging
import math
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, ConfigDict, Field

from passport_gateway import __version__, config
from passport_gateway.admission import AdmissionController, AdmissionRequest
from passport_gateway.backend import HttpGenerationBackend
from passport_gateway.errors import GatewayError, InvalidRequestError, RateLimitedError
from passport_gateway.ledger import SQLLedger
from passport_gateway.metrics import GatewayMetrics
from passport_gateway.ratelimit import MemoryRateLimiter, RedisRateLimiter, ScopedRateLimiter
from passport_gateway.stream import StreamOrchestrator

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


# =============================================================================
# Models
# =============================================================================


class ExplainRequest(BaseModel):
    """Inbound request body."""

    model_config = ConfigDict(populate_by_name=True)

    code_snippet: str = Field("", alias="codeSnippet")
    passport_signature: str = Field("", alias="passportSignature")
    passport_public_key: str = Field("", alias="passportPublicKey")


class StatusResponse(BaseModel):
    status: str
    version: str
    rate_limiter: str


# =============================================================================
# Helpers
# =============================================================================


def client_ip(request: Request, trust_forwarded_for: bool = config.TRUST_FORWARDED_FOR) -> Optional[str]:
    """Resolve the caller's IP, honouring X-Forwarded-For only behind a trusted proxy."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def error_response(error: GatewayError) -> JSONResponse:
    """Structured, non-streamed rejection."""
    headers = {}
    if isinstance(error, RateLimitedError) and error.retry_after is not None:
        headers["Retry-After"] = str(max(1, math.ceil(error.retry_after)))
    return JSONResponse(
        status_code=error.status_code, content={"error": error.to_dict()}, headers=headers
    )


@asynccontextmanager
async def default_components(app: FastAPI):
    """Wire ledger, limiter and backend from environment configuration."""
    metrics: GatewayMetrics = app.state.metrics
    async with AsyncExitStack() as stack:
        ledger = SQLLedger.from_url(config.DATABASE_URL)
        stack.push_async_callback(ledger.dispose)
        await ledger.create_tables()

        if config.REDIS_URL:
            client = redis.from_url(config.REDIS_URL)
            stack.push_async_callback(client.aclose)
            base_limiter = RedisRateLimiter(client, key_prefix=config.REDIS_KEY_PREFIX)
        else:
            logger.warning("No Redis configured; rate limits are per process")
            base_limiter = MemoryRateLimiter()

        backend = await stack.enter_async_context(HttpGenerationBackend())

        app.state.controller = AdmissionController(
            ScopedRateLimiter.from_config(base_limiter, metrics=metrics),
            ledger,
            metrics=metrics,
        )
        app.state.orchestrator = StreamOrchestrator(backend, usage_recorder=ledger, metrics=metrics)
        logger.info("Passport gateway components ready")
        yield


# =============================================================================
# Application
# =============================================================================


def create_app(
    controller: Optional[AdmissionController] = None,
    orchestrator: Optional[StreamOrchestrator] = None,
    metrics: Optional[GatewayMetrics] = None,
    trust_forwarded_for: bool = config.TRUST_FORWARDED_FOR,
) -> FastAPI:
    """
    Build the gateway application.

    Components passed in are used as-is (tests, embedding); otherwise they
    are built from configuration when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.controller is not None and app.state.orchestrator is not None:
            yield
            return
        async with default_components(app):
            yield

    app = FastAPI(
        title="Passport Gateway",
        description="Ed25519 passport admission in front of a streaming generation backend",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.metrics = metrics or GatewayMetrics()
    app.state.controller = controller
    app.state.orchestrator = orchestrator

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return error_response(InvalidRequestError("Request body must be a JSON object of strings"))

    @app.get("/status", response_model=StatusResponse)
    async def get_status():
        """Health check, including the rate limiter store."""
        limiter_ok = await app.state.controller.rate_limiter.ping()
        if not limiter_ok:
            logger.warning("Rate limiter store unreachable")
        return StatusResponse(
            status="ok" if limiter_ok else "degraded",
            version=__version__,
            rate_limiter="ok" if limiter_ok else "unavailable",
        )

    @app.get("/metrics")
    async def get_prometheus_metrics():
        return Response(app.state.metrics.get_prometheus_metrics(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/api/explain")
    async def explain(body: ExplainRequest, http_request: Request):
        """Admit the request, then stream frames."""
        try:
            admission = await app.state.controller.admit(
                AdmissionRequest(
                    code_snippet=body.code_snippet,
                    signature_hex=body.passport_signature,
                    public_key_hex=body.passport_public_key,
                    ip_address=client_ip(http_request, trust_forwarded_for),
                    user_agent=http_request.headers.get("user-agent"),
                )
            )
        except GatewayError as e:
            return error_response(e)

        session = app.state.orchestrator.open_session(admission)

        async def body_iterator():
            frames = session.frames()
            try:
                async for frame in frames:
                    yield frame.to_ndjson()
            finally:
                await frames.aclose()

        return StreamingResponse(
            body_iterator(),
            media_type=NDJSON_MEDIA_TYPE,
            headers={"Cache-Control": "no-store", "X-Accel-Buffering": "no"},
        )

    return app
