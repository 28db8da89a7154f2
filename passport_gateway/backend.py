"""
Passport Gateway Generation Backend.

The gateway consumes the language-model provider through one narrow
capability: submit a prompt, read an ordered stream of text chunks, cancel
at any time. ``HttpGenerationBackend`` speaks a small NDJSON streaming
protocol over httpx; anything else can plug in by implementing
``GenerationBackend``.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from typing import AsyncIterator, Optional

import httpx

from passport_gateway.config import (
    BACKEND_API_KEY,
    BACKEND_CONNECT_TIMEOUT,
    BACKEND_MODEL,
    BACKEND_URL,
    STREAM_IDLE_TIMEOUT,
)
from passport_gateway.errors import BackendFailureError

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = (
    "Explain what the following code does, step by step, "
    "and point out anything surprising.\n\n```\n{code}\n```"
)


# Largest token count the ledger column can hold (signed 32-bit INTEGER).
MAX_TOKENS_USED = 2**31 - 1


def _valid_token_count(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= MAX_TOKENS_USED


def build_prompt(code_snippet: str) -> str:
    """Wrap a caller's code snippet into the explanation prompt."""
    return PROMPT_TEMPLATE.format(code=code_snippet.strip("\n"))


class GenerationStream(ABC):
    """
    One open completion stream. Exclusively owned by a single session.

    ``tokens_used`` is populated by the backend once it reports usage,
    typically at the end of the stream.
    """

    tokens_used: Optional[int] = None

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[str]:
        """Iterate over text chunks in backend order."""
        pass

    @abstractmethod
    async def aclose(self) -> None:
        """Release the underlying connection. Safe to call more than once."""
        pass


class GenerationBackend(ABC):
    """Abstract text-generation backend."""

    @abstractmethod
    async def open(self, prompt: str) -> GenerationStream:
        """
        Submit a prompt and return its chunk stream.

        Raises:
            BackendFailureError: If the stream cannot be opened.
        """
        pass


class HttpGenerationStream(GenerationStream):
    """NDJSON chunk stream read from an open httpx response."""

    def __init__(self, response: httpx.Response, exit_stack: AsyncExitStack):
        self._response = response
        self._exit_stack = exit_stack
        self._closed = False
        self.tokens_used = None

    async def __aiter__(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Backend sent a non-JSON line ({len(line)} bytes)")
                    raise BackendFailureError("protocol_error")

                if not isinstance(message, dict):
                    raise BackendFailureError("protocol_error")
                if "error" in message:
                    logger.warning("Backend reported an in-stream error")
                    raise BackendFailureError("backend_error")
                if "usage" in message:
                    usage = message["usage"] or {}
                    total = usage.get("total_tokens") if isinstance(usage, dict) else None
                    if _valid_token_count(total):
                        self.tokens_used = total
                    else:
                        logger.warning("Backend reported an unusable token count, ignoring it")
                text = message.get("text")
                if text:
                    yield text
        except httpx.TimeoutException as e:
            raise BackendFailureError("timeout") from e
        except httpx.HTTPError as e:
            raise BackendFailureError("connection_error") from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._exit_stack.aclose()


class HttpGenerationBackend(GenerationBackend):
    """
    Streaming HTTP client for the generation backend.

    Example:
        >>> async with HttpGenerationBackend("http://llm.internal:8080") as backend:
        ...     stream = await backend.open(build_prompt(code))
        ...     try:
        ...         async for chunk in stream:
        ...             print(chunk, end="")
        ...     finally:
        ...         await stream.aclose()
    """

    def __init__(
        self,
        base_url: str = BACKEND_URL,
        model: str = BACKEND_MODEL,
        api_key: str = BACKEND_API_KEY,
        connect_timeout: float = BACKEND_CONNECT_TIMEOUT,
        read_timeout: float = STREAM_IDLE_TIMEOUT,
        max_connections: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the backend client.

        Args:
            base_url: Backend root URL.
            model: Model name forwarded with every request.
            api_key: Optional bearer token.
            connect_timeout: Seconds allowed to establish a connection.
            read_timeout: Seconds allowed between two reads.
            max_connections: Max concurrent backend connections.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self._limits = httpx.Limits(max_connections=max_connections)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            limits=self._limits,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def open(self, prompt: str) -> GenerationStream:
        if self._client is None:
            raise RuntimeError("HttpGenerationBackend must be used as an async context manager")

        headers = {"Accept": "application/x-ndjson"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        exit_stack = AsyncExitStack()
        try:
            response = await exit_stack.enter_async_context(
                self._client.stream(
                    "POST",
                    "/v1/generate",
                    json={"model": self._model, "prompt": prompt, "stream": True},
                    headers=headers,
                )
            )
            if response.status_code != 200:
                logger.warning(f"Backend answered HTTP {response.status_code}")
                category = "overloaded" if response.status_code in (429, 503) else "backend_error"
                raise BackendFailureError(category)
        except httpx.TimeoutException as e:
            await exit_stack.aclose()
            raise BackendFailureError("timeout") from e
        except httpx.HTTPError as e:
            await exit_stack.aclose()
            logger.warning(f"Backend connection failed: {type(e).__name__}")
            raise BackendFailureError("connection_error") from e
        except BaseException:
            # Includes cancellation while connecting.
            await exit_stack.aclose()
            raise

        logger.debug(f"Opened backend stream (prompt {len(prompt)} chars)")
        return HttpGenerationStream(response, exit_stack)
