"""
Passport Gateway Stream Orchestrator.

Relays an admitted request's backend completion to the caller as typed
frames: one ``passport`` frame, the backend's ``chunk`` frames in order,
then exactly one terminal ``done`` or ``error`` frame. A cancelled session
emits no terminal frame at all.

Sessions are transport-agnostic. ``StreamSession.frames()`` is a
cancellable async generator that HTTP, WebSocket or test code can consume
directly; ``StreamSession.run()`` pushes the same frames into an abstract
sink.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from passport_gateway.admission import Admission
from passport_gateway.backend import GenerationBackend, GenerationStream
from passport_gateway.config import (
    BACKEND_CONNECT_TIMEOUT,
    STREAM_IDLE_TIMEOUT,
    STREAM_TOTAL_TIMEOUT,
)
from passport_gateway.errors import BackendFailureError
from passport_gateway.ledger import LedgerInterface, PassportSnapshot

logger = logging.getLogger(__name__)

# Upper bound for releasing a backend connection or recording token usage.
RELEASE_TIMEOUT = 5.0


class FrameType(str, Enum):
    PASSPORT = "passport"
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


@dataclass
class Frame:
    """One discrete typed message of a streamed response."""

    type: str
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        frame = {"type": self.type}
        if self.data is not None:
            frame["data"] = self.data
        return frame

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    def to_ndjson(self) -> bytes:
        return (self.to_json() + "\n").encode("utf-8")

    @classmethod
    def passport(cls, snapshot: PassportSnapshot) -> "Frame":
        return cls(FrameType.PASSPORT.value, snapshot.to_frame_data())

    @classmethod
    def chunk(cls, text: str) -> "Frame":
        return cls(FrameType.CHUNK.value, text)

    @classmethod
    def done(cls) -> "Frame":
        return cls(FrameType.DONE.value)

    @classmethod
    def error(cls, failure: BackendFailureError) -> "Frame":
        return cls(FrameType.ERROR.value, failure.to_dict())


class StreamState(str, Enum):
    IDLE = "idle"
    AUTHORIZED = "authorized"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    StreamState.IDLE: {StreamState.AUTHORIZED, StreamState.CANCELLED},
    StreamState.AUTHORIZED: {StreamState.STREAMING, StreamState.FAILED, StreamState.CANCELLED},
    StreamState.STREAMING: {StreamState.COMPLETED, StreamState.FAILED, StreamState.CANCELLED},
    StreamState.COMPLETED: set(),
    StreamState.FAILED: set(),
    StreamState.CANCELLED: set(),
}

TERMINAL_STATES = frozenset(
    {StreamState.COMPLETED, StreamState.FAILED, StreamState.CANCELLED}
)


class ClientDisconnected(Exception):
    """Raised by a frame sink when the client has gone away."""

    pass


FrameSink = Callable[[Frame], Awaitable[None]]


class StreamSession:
    """
    Per-request stream state machine.

    Idle -> Authorized -> Streaming -> {Completed | Failed | Cancelled}.
    The backend stream is owned by the session and released on every
    terminal path.
    """

    def __init__(
        self,
        admission: Admission,
        backend: GenerationBackend,
        usage_recorder: Optional[LedgerInterface] = None,
        idle_timeout: float = STREAM_IDLE_TIMEOUT,
        total_timeout: float = STREAM_TOTAL_TIMEOUT,
        connect_timeout: float = BACKEND_CONNECT_TIMEOUT,
        metrics=None,
    ):
        self.admission = admission
        self.state = StreamState.IDLE
        self.failure: Optional[BackendFailureError] = None
        self.chunks_sent = 0
        self._backend = backend
        self._usage_recorder = usage_recorder
        self._idle_timeout = idle_timeout
        self._total_timeout = total_timeout
        self._connect_timeout = connect_timeout
        self._metrics = metrics
        self._started_at: Optional[float] = None

    @property
    def passport_id(self) -> str:
        return self.admission.snapshot.passport_id

    def _transition(self, new_state: StreamState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal stream transition {self.state.value} -> {new_state.value}")
        self.state = new_state

        if new_state in TERMINAL_STATES:
            elapsed = asyncio.get_running_loop().time() - (self._started_at or 0.0)
            logger.info(
                f"Stream {new_state.value} for passport {self.passport_id} "
                f"({self.chunks_sent} chunks, {elapsed:.2f}s)"
            )
            if self._metrics is not None:
                self._metrics.record_stream(new_state.value, elapsed)

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise BackendFailureError("timeout")
        return remaining

    async def _open(self, deadline: float) -> GenerationStream:
        timeout = min(self._connect_timeout, self._remaining(deadline))
        try:
            return await asyncio.wait_for(self._backend.open(self.admission.prompt), timeout)
        except asyncio.TimeoutError as e:
            raise BackendFailureError("timeout") from e

    async def _next_chunk(self, chunks: AsyncIterator[str], deadline: float) -> str:
        timeout = min(self._idle_timeout, self._remaining(deadline))
        try:
            return await asyncio.wait_for(chunks.__anext__(), timeout)
        except asyncio.TimeoutError as e:
            raise BackendFailureError("timeout") from e

    async def _release(self, stream: Optional[GenerationStream], chunks) -> None:
        if stream is None:
            return
        try:
            close_iterator = getattr(chunks, "aclose", None)
            if close_iterator is not None and chunks is not stream:
                await asyncio.wait_for(close_iterator(), RELEASE_TIMEOUT)
            await asyncio.wait_for(stream.aclose(), RELEASE_TIMEOUT)
        except (asyncio.TimeoutError, RuntimeError, OSError) as e:
            logger.warning(f"Backend release for passport {self.passport_id} failed: {e!r}")

    async def _record_usage(self, stream: GenerationStream) -> None:
        tokens = stream.tokens_used
        log_id = self.admission.snapshot.usage_log_id
        if self._usage_recorder is None or tokens is None or log_id is None:
            return
        try:
            await asyncio.wait_for(
                self._usage_recorder.record_tokens(log_id, tokens), RELEASE_TIMEOUT
            )
        except Exception as e:
            logger.warning(
                f"Could not record token usage for passport {self.passport_id}: "
                f"{getattr(e, 'kind', type(e).__name__)}"
            )

    async def frames(self) -> AsyncIterator[Frame]:
        """
        Produce this session's frames.

        Closing the generator (``aclose()``) or cancelling the consuming task
        moves the session to Cancelled and releases the backend at once.
        """
        loop = asyncio.get_running_loop()
        self._started_at = loop.time()
        deadline = self._started_at + self._total_timeout

        stream: Optional[GenerationStream] = None
        chunks = None
        failure: Optional[BackendFailureError] = None
        try:
            self._transition(StreamState.AUTHORIZED)
            yield Frame.passport(self.admission.snapshot)

            stream = await self._open(deadline)
            self._transition(StreamState.STREAMING)
            chunks = stream.__aiter__()
            while True:
                try:
                    text = await self._next_chunk(chunks, deadline)
                except StopAsyncIteration:
                    break
                self.chunks_sent += 1
                yield Frame.chunk(text)

        except BackendFailureError as e:
            failure = e
        except (asyncio.CancelledError, GeneratorExit):
            self._transition(StreamState.CANCELLED)
            raise
        except Exception:
            logger.exception(f"Unexpected backend error for passport {self.passport_id}")
            failure = BackendFailureError("backend_error")
        finally:
            await self._release(stream, chunks)

        if failure is not None:
            self.failure = failure
            self._transition(StreamState.FAILED)
            yield Frame.error(failure)
            return

        self._transition(StreamState.COMPLETED)
        await self._record_usage(stream)
        yield Frame.done()

    async def run(self, sink: FrameSink) -> StreamState:
        """
        Push every frame into ``sink``.

        A sink raising ClientDisconnected cancels the session; this is not
        treated as an error.
        """
        frames = self.frames()
        try:
            async for frame in frames:
                await sink(frame)
        except ClientDisconnected:
            logger.info(f"Client disconnected from passport {self.passport_id} stream")
        finally:
            await frames.aclose()
        return self.state


class StreamOrchestrator:
    """
    Creates stream sessions for admitted requests.

    Example:
        >>> orchestrator = StreamOrchestrator(backend, usage_recorder=ledger)
        >>> session = orchestrator.open_session(admission)
        >>> async for frame in session.frames():
        ...     await websocket.send_text(frame.to_json())
    """

    def __init__(
        self,
        backend: GenerationBackend,
        usage_recorder: Optional[LedgerInterface] = None,
        idle_timeout: float = STREAM_IDLE_TIMEOUT,
        total_timeout: float = STREAM_TOTAL_TIMEOUT,
        connect_timeout: float = BACKEND_CONNECT_TIMEOUT,
        metrics=None,
    ):
        self._backend = backend
        self._usage_recorder = usage_recorder
        self._idle_timeout = idle_timeout
        self._total_timeout = total_timeout
        self._connect_timeout = connect_timeout
        self._metrics = metrics

    def open_session(self, admission: Admission) -> StreamSession:
        return StreamSession(
            admission,
            self._backend,
            usage_recorder=self._usage_recorder,
            idle_timeout=self._idle_timeout,
            total_timeout=self._total_timeout,
            connect_timeout=self._connect_timeout,
            metrics=self._metrics,
        )

    async def stream(self, admission: Admission, sink: FrameSink) -> StreamState:
        """Open a session and run it into ``sink``."""
        return await self.open_session(admission).run(sink)
