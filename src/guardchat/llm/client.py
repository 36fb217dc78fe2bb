from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from guardchat.config import Settings
from guardchat.errors import (
    FatalUpstreamError,
    TransientUpstreamError,
    UpstreamError,
    UpstreamProtocolError,
    UpstreamUnavailable,
)
from guardchat.llm.wire import (
    ChatOptions,
    WireMessage,
    build_chat_payload,
    parse_chat_response,
    parse_stream_line,
)
from guardchat.models import Message, ModelInfo, Verdict
from guardchat.rules.engine import RuleEngine
from guardchat.telemetry import NoOpTelemetrySink, TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)

ChatInput = Sequence[Message | WireMessage]


@dataclass
class ChatResult:
    """Outcome of a synchronous chat call.

    ``verdict`` holds the blocking verdict when the turn was refused; any
    warn/log verdicts are collected in ``notices``.  ``error`` is set instead
    of raising when the upstream call failed.
    """

    text: str = ""
    verdict: Verdict | None = None
    error: UpstreamError | None = None
    model: str = ""
    notices: list[Verdict] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.verdict is not None and self.verdict.blocked


@dataclass
class StreamEvent:
    """One step of a streaming call: chunk* then blocked | final | error."""

    event: str
    text: str = ""
    verdict: Verdict | None = None
    error: UpstreamError | None = None
    notices: list[Verdict] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.event != "chunk"


def _to_wire(messages: ChatInput) -> list[WireMessage]:
    result: list[WireMessage] = []
    for item in messages:
        if isinstance(item, Message):
            result.append(item.as_wire())
        else:
            result.append({"role": str(item.get("role", "")), "content": str(item.get("content", ""))})
    return result


def _status_error(status_code: int, body: str) -> UpstreamError:
    message = f"inference server error {status_code}: {body[:500]}"
    if status_code >= 500:
        return TransientUpstreamError(message, status_code)
    return FatalUpstreamError(message, status_code)


class InferenceClient:
    """HTTP client for the local inference server with policy checks built in.

    Every call checks the latest user turn before anything goes on the
    wire and checks the produced text once it is complete.
    """

    def __init__(
        self,
        settings: Settings,
        rule_engine: RuleEngine,
        *,
        options: ChatOptions | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        telemetry_sink: TelemetrySink | None = None,
    ) -> None:
        self.settings = settings
        self.rule_engine = rule_engine
        self.options = options if options is not None else ChatOptions()
        self.telemetry = telemetry_sink or NoOpTelemetrySink()
        self._http = httpx.AsyncClient(
            base_url=settings.ollama_url,
            timeout=settings.timeout,
            transport=transport,
        )
        self._sleep = sleep
        self._clock = clock

        self._model = settings.model
        self._model_lock = threading.Lock()

        self._available = False
        self._last_check: float | None = None
        self._state_lock = threading.Lock()
        self._probe_lock = asyncio.Lock()

    async def __aenter__(self) -> InferenceClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _emit(self, name: str, **attrs: Any) -> None:
        self.telemetry.emit(TelemetryEvent(name=name, attributes=attrs))

    # ── model selection ───────────────────────────────────────────

    def get_model(self) -> str:
        with self._model_lock:
            return self._model

    def set_model(self, name: str) -> str:
        name = name.strip()
        if not name:
            raise ValueError("model name must not be empty")
        with self._model_lock:
            self._model = name
        logger.info("Inference model changed to: %s", name)
        return name

    def resolve_model(self, override: str | None = None) -> str:
        """Return the per-conversation override when set, else the global model."""
        if override and override.strip():
            return override.strip()
        return self.get_model()

    # ── availability ──────────────────────────────────────────────

    def _mark_available(self, available: bool) -> None:
        with self._state_lock:
            self._available = available
            self._last_check = self._clock()

    def _cached_availability(self) -> bool | None:
        with self._state_lock:
            if self._last_check is None:
                return None
            if self._clock() - self._last_check >= self.settings.availability_ttl:
                return None
            return self._available

    async def _probe(self) -> bool:
        try:
            response = await self._http.get("/api/tags", timeout=self.settings.probe_timeout)
        except httpx.HTTPError as exc:
            logger.debug("Liveness probe failed: %s", exc)
            return False
        return response.status_code == 200

    async def is_available(self) -> bool:
        """Return the cached liveness flag, probing the server when it is stale."""
        cached = self._cached_availability()
        if cached is not None:
            return cached

        async with self._probe_lock:
            # Another caller may have refreshed the cache while we waited.
            cached = self._cached_availability()
            if cached is not None:
                return cached
            available = await self._probe()
            self._mark_available(available)

        if available:
            logger.info("Inference server available at %s", self.settings.ollama_url)
        else:
            logger.warning("Inference server not available at %s", self.settings.ollama_url)
        return available

    async def list_models(self) -> list[ModelInfo]:
        try:
            response = await self._http.get("/api/tags")
        except httpx.TransportError as exc:
            self._mark_available(False)
            raise TransientUpstreamError(f"error connecting to inference server: {exc}") from exc
        if response.status_code != 200:
            raise _status_error(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamProtocolError("model list is not valid JSON") from exc
        models = data.get("models") if isinstance(data, dict) else None
        return [ModelInfo.model_validate(item) for item in models or [] if isinstance(item, dict)]

    # ── message assembly ──────────────────────────────────────────

    def _with_system_prompt(self, messages: list[WireMessage]) -> list[WireMessage]:
        prompt = self.settings.system_prompt
        if messages and messages[0]["role"] == "system" and messages[0]["content"] == prompt:
            return messages
        return [{"role": "system", "content": prompt}, *messages]

    def _check_input(self, messages: list[WireMessage]) -> Verdict | None:
        if not messages or messages[-1]["role"] != "user":
            return None
        return self.rule_engine.check_input(messages[-1]["content"])

    def _report_verdict(self, direction: str, verdict: Verdict, model: str) -> None:
        if verdict.blocked:
            logger.warning(
                "Policy filter '%s' blocked %s (matched %r)",
                verdict.rule_name, direction, verdict.matched_text,
            )
            self._emit(
                "policy.blocked",
                direction=direction, rule=verdict.rule_name, severity=verdict.severity, model=model,
            )
        else:
            logger.info("Policy filter '%s' flagged %s (%s)", verdict.rule_name, direction, verdict.action)
            self._emit(
                "policy.notice",
                direction=direction, rule=verdict.rule_name, action=verdict.action, model=model,
            )

    # ── synchronous chat ──────────────────────────────────────────

    async def _post_with_retry(self, payload: dict[str, Any]) -> httpx.Response:
        attempts = self.settings.retries
        last_error: UpstreamError | None = None

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                delay = self.settings.backoff_base * 2 ** (attempt - 2)
                logger.info(
                    "Retrying inference server (attempt %d/%d) in %.1fs...",
                    attempt, attempts, delay,
                )
                self._emit("llm.chat.retry", attempt=attempt, delay=delay, error=str(last_error))
                await self._sleep(delay)

            try:
                response = await self._http.post("/api/chat", json=payload)
            except httpx.TransportError as exc:
                self._mark_available(False)
                last_error = TransientUpstreamError(f"error connecting to inference server: {exc}")
                continue
            except httpx.RequestError as exc:
                raise UpstreamProtocolError(f"invalid exchange with inference server: {exc}") from exc

            if 200 <= response.status_code < 300:
                return response

            error = _status_error(response.status_code, response.text)
            if isinstance(error, FatalUpstreamError):
                raise error
            last_error = error

        raise UpstreamUnavailable(
            f"inference server unavailable after {attempts} attempts: {last_error}", attempts
        ) from last_error

    async def chat(self, messages: ChatInput, model: str | None = None) -> ChatResult:
        resolved = self.resolve_model(model)
        wire = _to_wire(messages)
        notices: list[Verdict] = []

        verdict = self._check_input(wire)
        if verdict is not None:
            self._report_verdict("input", verdict, resolved)
            if verdict.blocked:
                return ChatResult(verdict=verdict, model=resolved)
            notices.append(verdict)

        payload = build_chat_payload(
            resolved, self._with_system_prompt(wire), stream=False, options=self.options
        )
        self._emit("llm.chat.start", model=resolved, messages=len(payload["messages"]))
        started = time.monotonic()

        try:
            response = await self._post_with_retry(payload)
            try:
                data = response.json()
            except ValueError as exc:
                raise UpstreamProtocolError("chat response is not valid JSON") from exc
            text = parse_chat_response(data)
        except UpstreamError as exc:
            logger.error("Inference call failed: %s", exc)
            self._emit("llm.chat.error", model=resolved, error=type(exc).__name__)
            return ChatResult(error=exc, model=resolved, notices=notices)

        self._mark_available(True)
        self._emit(
            "llm.chat.complete",
            model=resolved,
            latency_ms=(time.monotonic() - started) * 1000,
            chars=len(text),
        )

        verdict = self.rule_engine.check_output(text)
        if verdict is not None:
            self._report_verdict("output", verdict, resolved)
            if verdict.blocked:
                return ChatResult(
                    text=self.settings.output_refusal, verdict=verdict, model=resolved, notices=notices
                )
            notices.append(verdict)

        return ChatResult(text=text, model=resolved, notices=notices)

    # ── streaming chat ────────────────────────────────────────────

    async def stream_chat(
        self, messages: ChatInput, model: str | None = None
    ) -> AsyncGenerator[StreamEvent, None]:
        """Yield StreamEvents: chunk* then exactly one of blocked | final | error.

        Chunks are never filtered individually; the output check runs once
        on the concatenated text and its verdict rides on the final event.
        """
        resolved = self.resolve_model(model)
        wire = _to_wire(messages)
        notices: list[Verdict] = []

        verdict = self._check_input(wire)
        if verdict is not None:
            self._report_verdict("input", verdict, resolved)
            if verdict.blocked:
                yield StreamEvent(event="blocked", verdict=verdict)
                return
            notices.append(verdict)

        payload = build_chat_payload(
            resolved, self._with_system_prompt(wire), stream=True, options=self.options
        )
        self._emit("llm.stream.start", model=resolved, messages=len(payload["messages"]))
        started = time.monotonic()
        collected: list[str] = []
        failure: UpstreamError | None = None

        try:
            async with self._http.stream(
                "POST",
                "/api/chat",
                json=payload,
                timeout=httpx.Timeout(None, connect=self.settings.timeout),
            ) as response:
                if not 200 <= response.status_code < 300:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise _status_error(response.status_code, body)

                async for line in response.aiter_lines():
                    chunk = parse_stream_line(line)
                    if chunk is None:
                        continue
                    if chunk.error is not None:
                        raise UpstreamProtocolError(f"inference server error: {chunk.error}")
                    if chunk.content:
                        collected.append(chunk.content)
                        yield StreamEvent(event="chunk", text=chunk.content)
                    if chunk.done:
                        break
        except httpx.TransportError as exc:
            self._mark_available(False)
            failure = TransientUpstreamError(f"error connecting to inference server: {exc}")
        except httpx.RequestError as exc:
            failure = UpstreamProtocolError(f"invalid exchange with inference server: {exc}")
        except UpstreamError as exc:
            failure = exc

        if failure is not None:
            logger.error("Streaming inference call failed: %s", failure)
            self._emit("llm.stream.error", model=resolved, error=type(failure).__name__)
            yield StreamEvent(event="error", error=failure, notices=notices)
            return

        self._mark_available(True)
        full_text = "".join(collected)
        self._emit(
            "llm.stream.complete",
            model=resolved,
            chars=len(full_text),
            elapsed_ms=(time.monotonic() - started) * 1000,
        )

        verdict = self.rule_engine.check_output(full_text)
        if verdict is not None:
            self._report_verdict("output", verdict, resolved)
            if not verdict.blocked:
                notices.append(verdict)
        yield StreamEvent(event="final", text=full_text, verdict=verdict, notices=notices)
