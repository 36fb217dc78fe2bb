"""Streaming orchestration: producer task, heartbeat pump and terminal handling.

One streaming request moves through::

    STARTED -> STREAMING (first chunk) -> COMPLETE | FILTERED | ERRORED | CANCELLED

The inference call runs as its own task (the producer) and hands events to
the pump through a queue.  The pump forwards chunks in arrival order, emits
keep-alive heartbeats only until the first chunk shows up, and reacts to the
caller's cancellation signal by cancelling the producer.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import time
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass, field
from typing import Any

from guardchat.errors import TransientUpstreamError, UpstreamError
from guardchat.llm.client import ChatInput, InferenceClient, StreamEvent
from guardchat.models import RequestMeta, Verdict
from guardchat.store.base import ConversationStore, SecurityLogSink
from guardchat.telemetry import NoOpTelemetrySink, TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)

STREAM_ERROR_MESSAGE = "Error comunicando con la IA"


class StreamState(str, enum.Enum):
    STARTED = "started"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FILTERED = "filtered"
    ERRORED = "errored"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {StreamState.COMPLETE, StreamState.FILTERED, StreamState.ERRORED, StreamState.CANCELLED}
)

_ALLOWED: dict[StreamState, frozenset[StreamState]] = {
    StreamState.STARTED: frozenset({StreamState.STREAMING, *TERMINAL_STATES}),
    StreamState.STREAMING: TERMINAL_STATES,
}


@dataclass
class StreamSession:
    """Transient state of one streaming request; never persisted."""

    conversation_id: int
    model: str
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)
    buffer: list[str] = field(default_factory=list)
    first_token: bool = False
    state: StreamState = StreamState.STARTED

    def advance(self, new_state: StreamState) -> None:
        if new_state not in _ALLOWED.get(self.state, frozenset()):
            raise RuntimeError(f"Illegal stream transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def text(self) -> str:
        return "".join(self.buffer)


@dataclass(frozen=True)
class StreamFrame:
    """One unit of the consumer-facing event-stream protocol."""

    kind: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def start(cls, conversation_id: int, model: str) -> StreamFrame:
        return cls("start", {"conversation_id": conversation_id, "model": model})

    @classmethod
    def token(cls, content: str) -> StreamFrame:
        return cls("token", {"content": content})

    @classmethod
    def heartbeat(cls) -> StreamFrame:
        return cls("heartbeat")

    @classmethod
    def filtered(cls, reason: str) -> StreamFrame:
        return cls("filtered", {"reason": reason})

    @classmethod
    def done(cls, conversation_id: int) -> StreamFrame:
        return cls("done", {"conversation_id": conversation_id})

    @classmethod
    def error(cls, message: str) -> StreamFrame:
        return cls("error", {"error": message})

    @property
    def terminal(self) -> bool:
        return self.kind in ("filtered", "done", "error")

    def encode(self) -> str:
        if self.kind == "heartbeat":
            return ": heartbeat\n\n"
        payload = json.dumps(self.data, ensure_ascii=False)
        if self.kind in ("token", "error"):
            return f"data: {payload}\n\n"
        return f"event: {self.kind}\ndata: {payload}\n\n"


class StreamOrchestrator:
    """Bridges a slow streaming inference call to an incrementally flushed consumer."""

    def __init__(
        self,
        client: InferenceClient,
        conversations: ConversationStore,
        security_log: SecurityLogSink,
        *,
        refusal: str,
        heartbeat_interval: float = 15.0,
        ceiling: float = 600.0,
        telemetry_sink: TelemetrySink | None = None,
    ) -> None:
        self.client = client
        self.conversations = conversations
        self.security_log = security_log
        self.refusal = refusal
        self.heartbeat_interval = heartbeat_interval
        self.ceiling = ceiling
        self.telemetry = telemetry_sink or NoOpTelemetrySink()

    def _emit(self, name: str, **attrs: Any) -> None:
        self.telemetry.emit(TelemetryEvent(name=name, attributes=attrs))

    def open_session(
        self, conversation_id: int, model: str, cancel: asyncio.Event | None = None
    ) -> StreamSession:
        return StreamSession(
            conversation_id=conversation_id,
            model=model,
            cancel=cancel if cancel is not None else asyncio.Event(),
        )

    # ── producer ──────────────────────────────────────────────────

    async def _drain(
        self, messages: ChatInput, model: str, queue: asyncio.Queue[StreamEvent]
    ) -> None:
        async with contextlib.aclosing(self.client.stream_chat(messages, model)) as events:
            async for event in events:
                queue.put_nowait(event)
                if event.terminal:
                    return
        queue.put_nowait(
            StreamEvent(event="error", error=UpstreamError("stream ended without a result"))
        )

    async def _produce(
        self, messages: ChatInput, model: str, queue: asyncio.Queue[StreamEvent]
    ) -> None:
        try:
            await asyncio.wait_for(self._drain(messages, model, queue), timeout=self.ceiling)
        except asyncio.TimeoutError:
            logger.error("Streaming call exceeded the %.0fs ceiling", self.ceiling)
            queue.put_nowait(
                StreamEvent(
                    event="error",
                    error=TransientUpstreamError(f"stream exceeded {self.ceiling:.0f}s ceiling"),
                )
            )
        except Exception as exc:
            logger.exception("Streaming producer failed")
            queue.put_nowait(StreamEvent(event="error", error=UpstreamError(str(exc))))

    # ── terminal handling ─────────────────────────────────────────

    def _persist(self, session: StreamSession, content: str, verdict: Verdict | None) -> None:
        try:
            self.conversations.append_message(
                session.conversation_id,
                "assistant",
                content,
                filtered=verdict is not None,
                filter_reason=verdict.rule_name if verdict is not None else None,
            )
        except Exception:
            logger.exception("Error saving assistant response for conversation %d", session.conversation_id)
        try:
            self.conversations.touch(session.conversation_id)
        except Exception:
            logger.exception("Error touching conversation %d", session.conversation_id)

    def _finish_filtered(
        self,
        session: StreamSession,
        verdict: Verdict,
        meta: RequestMeta,
        original_content: str,
    ) -> StreamFrame:
        session.advance(StreamState.FILTERED)
        self._persist(session, self.refusal, verdict)
        try:
            self.security_log.record_violation(
                meta.user_id,
                verdict.rule_id,
                original_content,
                verdict.action,
                meta.client_ip,
                meta.user_agent,
            )
        except Exception:
            logger.exception("Error recording security violation for user %d", meta.user_id)
        logger.warning(
            "Stream for conversation %d filtered by '%s'", session.conversation_id, verdict.rule_name
        )
        return StreamFrame.filtered(verdict.reason)

    def _finish(
        self,
        session: StreamSession,
        event: StreamEvent,
        meta: RequestMeta,
        original_content: str,
    ) -> StreamFrame:
        if event.event == "error":
            session.advance(StreamState.ERRORED)
            logger.error("Streaming error for conversation %d: %s", session.conversation_id, event.error)
            return StreamFrame.error(STREAM_ERROR_MESSAGE)

        if event.verdict is not None and event.verdict.blocked:
            return self._finish_filtered(session, event.verdict, meta, original_content)

        session.advance(StreamState.COMPLETE)
        self._persist(session, event.text, None)
        return StreamFrame.done(session.conversation_id)

    # ── pump ──────────────────────────────────────────────────────

    async def run(
        self,
        session: StreamSession,
        messages: Sequence[Any],
        *,
        meta: RequestMeta,
        original_content: str,
    ) -> AsyncGenerator[StreamFrame, None]:
        """Yield frames: start, heartbeat*/token*, then one terminal frame.

        Nothing is yielded after cancellation, and no partial text is
        persisted for a cancelled stream.
        """
        yield StreamFrame.start(session.conversation_id, session.model)

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        producer = asyncio.create_task(self._produce(messages, session.model, queue))
        cancel_wait = asyncio.create_task(session.cancel.wait())
        next_beat = loop.time() + self.heartbeat_interval

        try:
            while not session.terminal:
                timeout = None if session.first_token else max(0.0, next_beat - loop.time())
                getter = asyncio.create_task(queue.get())
                try:
                    done, _pending = await asyncio.wait(
                        {getter, cancel_wait},
                        timeout=timeout,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    if not getter.done():
                        getter.cancel()

                if cancel_wait in done:
                    session.advance(StreamState.CANCELLED)
                    logger.info("Client disconnected during stream %d", session.conversation_id)
                    break

                if getter not in done:
                    if not session.first_token:
                        self._emit("stream.heartbeat", conversation_id=session.conversation_id)
                        logger.debug("Heartbeat sent, waiting for model response...")
                        yield StreamFrame.heartbeat()
                    next_beat += self.heartbeat_interval
                    if next_beat <= loop.time():
                        # Fell behind; skip missed ticks instead of bursting.
                        next_beat = loop.time() + self.heartbeat_interval
                    continue

                event = getter.result()
                if event.event == "chunk":
                    if not session.first_token:
                        session.first_token = True
                        session.advance(StreamState.STREAMING)
                    session.buffer.append(event.text)
                    yield StreamFrame.token(event.text)
                    continue

                yield self._finish(session, event, meta, original_content)
        finally:
            if not session.terminal:
                session.advance(StreamState.CANCELLED)
            cancel_wait.cancel()
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer
            self._emit(
                "stream.terminal",
                conversation_id=session.conversation_id,
                state=session.state.value,
                chars=len(session.text),
                elapsed_ms=(time.monotonic() - session.started_at) * 1000,
            )
