"""Test fixtures for guardchat tests."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from guardchat.config import Settings
from guardchat.context import ContextAssembler
from guardchat.llm.client import InferenceClient
from guardchat.models import FilterRule
from guardchat.rules.engine import RuleEngine
from guardchat.service import ChatService
from guardchat.store.memory import InMemoryStore
from guardchat.telemetry import InMemoryTelemetrySink


def make_rule(
    name: str = "test_rule",
    kind: str = "keyword",
    pattern: str = "secreto",
    action: str = "block",
    applies_to: str = "both",
    severity: str = "medium",
    rule_id: int = 1,
    active: bool = True,
) -> FilterRule:
    """Create a minimal filter rule for testing."""
    return FilterRule(
        id=rule_id,
        name=name,
        kind=kind,
        pattern=pattern,
        action=action,
        applies_to=applies_to,
        severity=severity,
        active=active,
    )


def make_settings(**overrides: Any) -> Settings:
    """Create Settings pointing at the fake inference server."""
    values: dict[str, Any] = {
        "ollama_url": "http://ollama.test",
        "model": "test-model",
        "system_prompt": "You are a test assistant.",
        "heartbeat_interval": 10.0,
        "stream_ceiling": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


class FakeOllama:
    """Scripted stand-in for the inference server behind ``httpx.MockTransport``.

    ``script`` is consumed one entry per ``POST /api/chat``: an int status
    code, ``"connect"`` to raise a connection error, or ``"redirects"`` to
    raise a non-transport request error.  Once it is empty
    every call succeeds with ``reply`` (or ``chunks`` when streaming).
    """

    def __init__(
        self,
        *,
        reply: str = "Hola, soy AQUILA.",
        chunks: list[str] | None = None,
        script: list[int | str] | None = None,
        models: list[str] | None = None,
        tags_status: int = 200,
        stream_lines: list[str] | None = None,
    ) -> None:
        self.reply = reply
        self.chunks = chunks if chunks is not None else [reply[:5], reply[5:]]
        self.script = list(script or [])
        self.models = models if models is not None else ["test-model", "llama3:8b"]
        self.tags_status = tags_status
        self.stream_lines = stream_lines
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/tags":
            if self.tags_status != 200:
                return httpx.Response(self.tags_status, text="unavailable")
            return httpx.Response(
                200, json={"models": [{"name": name, "size": 1024} for name in self.models]}
            )
        if request.url.path != "/api/chat":
            return httpx.Response(404)

        if self.script:
            step = self.script.pop(0)
            if step == "connect":
                raise httpx.ConnectError("connection refused", request=request)
            if step == "redirects":
                raise httpx.TooManyRedirects("too many redirects", request=request)
            if step != 200:
                return httpx.Response(int(step), text="boom")

        payload = json.loads(request.content)
        if payload.get("stream"):
            lines = self.stream_lines
            if lines is None:
                lines = [
                    json.dumps({"message": {"role": "assistant", "content": c}, "done": False})
                    for c in self.chunks
                ]
                lines.append(json.dumps({"message": {"role": "assistant", "content": ""}, "done": True}))
            return httpx.Response(200, content=("\n".join(lines) + "\n").encode())
        return httpx.Response(
            200, json={"message": {"role": "assistant", "content": self.reply}, "done": True}
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def chat_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/chat"]

    def payload(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.chat_requests[index].content)


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()


def make_service(
    fake: FakeOllama | None = None,
    rules: tuple[FilterRule, ...] | list[FilterRule] = (),
    store: InMemoryStore | None = None,
    **settings: Any,
) -> tuple[ChatService, FakeOllama, InMemoryStore]:
    """Wire a ChatService to a FakeOllama and an in-memory store."""
    fake = fake or FakeOllama()
    store = store or InMemoryStore()
    cfg = make_settings(**settings)
    engine = RuleEngine(list(rules))
    client = InferenceClient(cfg, engine, transport=fake.transport(), sleep=RecordingSleep())
    service = ChatService(
        cfg,
        engine,
        client,
        ContextAssembler(cfg.system_prompt),
        store,
        store,
        store,
        rule_source=store,
        telemetry_sink=InMemoryTelemetrySink(),
    )
    return service, fake, store
