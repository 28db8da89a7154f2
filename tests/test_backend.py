"""
Tests for the HTTP generation backend client.
"""

import json

import httpx
import pytest

from passport_gateway.backend import HttpGenerationBackend, build_prompt
from passport_gateway.errors import BackendFailureError


def _ndjson(*messages) -> bytes:
    return b"".join(json.dumps(m).encode() + b"\n" for m in messages)


def _backend(handler, **kwargs) -> HttpGenerationBackend:
    return HttpGenerationBackend(
        base_url="http://backend.test",
        model="test-model",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


async def _drain(stream):
    try:
        return [chunk async for chunk in stream]
    finally:
        await stream.aclose()


class TestBuildPrompt:
    def test_wraps_snippet(self):
        prompt = build_prompt("\nx = 1\n")
        assert "```\nx = 1\n```" in prompt


class TestHttpGenerationBackend:
    """Streaming protocol handling."""

    @pytest.mark.asyncio
    async def test_streams_chunks_and_usage(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(
                200,
                content=_ndjson(
                    {"text": "a"}, {"text": "b"}, {"text": "c"}, {"usage": {"total_tokens": 12}}
                ),
            )

        async with _backend(handler, api_key="secret") as backend:
            stream = await backend.open("explain this")
            chunks = await _drain(stream)

        assert chunks == ["a", "b", "c"]
        assert stream.tokens_used == 12
        assert seen["url"] == "http://backend.test/v1/generate"
        assert seen["body"] == {"model": "test-model", "prompt": "explain this", "stream": True}
        assert seen["auth"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_blank_lines_skipped(self):
        def handler(request):
            return httpx.Response(200, content=b'{"text":"a"}\n\n{"text":"b"}\n')

        async with _backend(handler) as backend:
            assert await _drain(await backend.open("p")) == ["a", "b"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, category", [(429, "overloaded"), (503, "overloaded"), (500, "backend_error")])
    async def test_http_status_errors(self, status, category):
        def handler(request):
            return httpx.Response(status, content=b"upstream detail")

        async with _backend(handler) as backend:
            with pytest.raises(BackendFailureError) as exc_info:
                await backend.open("p")

        assert exc_info.value.category == category
        assert "upstream detail" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _backend(handler) as backend:
            with pytest.raises(BackendFailureError) as exc_info:
                await backend.open("p")
        assert exc_info.value.category == "connection_error"

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        async with _backend(handler) as backend:
            with pytest.raises(BackendFailureError) as exc_info:
                await backend.open("p")
        assert exc_info.value.category == "timeout"

    @pytest.mark.asyncio
    async def test_malformed_line(self):
        def handler(request):
            return httpx.Response(200, content=b'{"text":"a"}\nnot json\n')

        async with _backend(handler) as backend:
            stream = await backend.open("p")
            received = []
            with pytest.raises(BackendFailureError) as exc_info:
                async for chunk in stream:
                    received.append(chunk)
            await stream.aclose()

        assert received == ["a"]
        assert exc_info.value.category == "protocol_error"

    @pytest.mark.asyncio
    async def test_in_stream_error(self):
        def handler(request):
            return httpx.Response(200, content=_ndjson({"text": "a"}, {"error": "model crashed"}))

        async with _backend(handler) as backend:
            stream = await backend.open("p")
            with pytest.raises(BackendFailureError) as exc_info:
                await _drain(stream)
        assert exc_info.value.category == "backend_error"

    @pytest.mark.asyncio
    async def test_aclose_idempotent(self):
        def handler(request):
            return httpx.Response(200, content=_ndjson({"text": "a"}))

        async with _backend(handler) as backend:
            stream = await backend.open("p")
            await stream.aclose()
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        backend = _backend(lambda request: httpx.Response(200))
        with pytest.raises(RuntimeError):
            await backend.open("p")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("total", [2**70, 2**31, 0, -5, True, "12", None])
    async def test_unusable_token_count_ignored(self, total):
        def handler(request):
            return httpx.Response(200, content=_ndjson({"text": "a"}, {"usage": {"total_tokens": total}}))

        async with _backend(handler) as backend:
            stream = await backend.open("p")
            assert await _drain(stream) == ["a"]
        assert stream.tokens_used is None
