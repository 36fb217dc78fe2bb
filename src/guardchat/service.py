"""ChatService facade -- one entry point wiring policy, inference and persistence."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Iterable
from datetime import datetime, timezone
from typing import Any

from guardchat.config import Settings
from guardchat.context import ContextAssembler
from guardchat.errors import AccessDenied, ValidationError, log_and_return_error
from guardchat.extract import HttpUrlTextExtractor
from guardchat.llm.client import InferenceClient
from guardchat.models import ChatReply, Conversation, FilterRule, Message, RequestMeta, Verdict
from guardchat.rules.engine import RuleEngine, RuleSet
from guardchat.rules.loader import load_rules
from guardchat.store.base import (
    ConversationStore,
    KnowledgeStore,
    RuleSource,
    SecurityLogSink,
    UrlTextExtractor,
)
from guardchat.stream import STREAM_ERROR_MESSAGE, StreamFrame, StreamOrchestrator
from guardchat.telemetry import NoOpTelemetrySink, TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 50
_ALLOWED_CONTROL = {"\t", "\n", "\r"}


def sanitize_for_storage(text: str) -> str:
    """Drop NUL and control characters other than tab, newline and CR."""
    return "".join(ch for ch in text if ch in _ALLOWED_CONTROL or (ch >= " " and ch != "\x7f"))


def validate_user_text(text: str, max_length: int) -> str:
    cleaned = sanitize_for_storage(text).strip()
    if not cleaned:
        raise ValidationError("El mensaje no puede estar vacio")
    if len(cleaned) > max_length:
        raise ValidationError(f"El mensaje excede el limite de {max_length} caracteres")
    return cleaned


def truncate_title(text: str, limit: int = TITLE_MAX_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class ChatService:
    """Single entry point for chat turns, streaming turns and admin actions."""

    def __init__(
        self,
        settings: Settings,
        rule_engine: RuleEngine,
        client: InferenceClient,
        assembler: ContextAssembler,
        conversations: ConversationStore,
        knowledge: KnowledgeStore,
        security_log: SecurityLogSink,
        *,
        rule_source: RuleSource | None = None,
        telemetry_sink: TelemetrySink | None = None,
    ) -> None:
        self.settings = settings
        self.rule_engine = rule_engine
        self.client = client
        self.assembler = assembler
        self.conversations = conversations
        self.knowledge = knowledge
        self.security_log = security_log
        self.rule_source = rule_source
        self.telemetry = telemetry_sink or NoOpTelemetrySink()
        self.orchestrator = StreamOrchestrator(
            client,
            conversations,
            security_log,
            refusal=settings.policy_refusal,
            heartbeat_interval=settings.heartbeat_interval,
            ceiling=settings.stream_ceiling,
            telemetry_sink=self.telemetry,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: Any,
        *,
        rules: Iterable[FilterRule] | None = None,
        url_extractor: UrlTextExtractor | None = None,
        transport: Any = None,
        telemetry_sink: TelemetrySink | None = None,
    ) -> ChatService:
        """Build a service whose collaborators all live on *store*.

        Rules come from *rules* when given, else from ``settings.rules_path``
        when set, else from the store's active rules.
        """
        sink = telemetry_sink or NoOpTelemetrySink()
        if rules is None:
            rules = load_rules(settings.rules_path) if settings.rules_path else store.fetch_active_rules()
        engine = RuleEngine(rules, enabled=settings.filters_enabled, telemetry_sink=sink)
        client = InferenceClient(settings, engine, transport=transport, telemetry_sink=sink)
        assembler = ContextAssembler(
            settings.system_prompt,
            url_extractor=url_extractor if url_extractor is not None else HttpUrlTextExtractor(),
            url_char_budget=settings.url_char_budget,
        )
        return cls(
            settings,
            engine,
            client,
            assembler,
            store,
            store,
            store,
            rule_source=store,
            telemetry_sink=sink,
        )

    async def aclose(self) -> None:
        await self.client.aclose()
        closer = getattr(self.assembler.url_extractor, "aclose", None)
        if closer is not None:
            await closer()

    def _emit(self, name: str, **attrs: Any) -> None:
        self.telemetry.emit(TelemetryEvent(name=name, attributes=attrs))

    # ── preparation ───────────────────────────────────────────────

    def validate_user_text(self, text: str) -> str:
        return validate_user_text(text, self.settings.max_message_length)

    def resolve_conversation(
        self,
        user_id: int,
        conversation_id: int | None,
        text: str,
        model: str | None = None,
    ) -> tuple[Conversation, str]:
        """Return the conversation for this turn and the model to use for it.

        A missing or zero id starts a new conversation titled after *text*.
        An existing conversation must belong to *user_id*.
        """
        if not conversation_id:
            chosen = model.strip() if model and model.strip() else self.client.get_model()
            conversation = self.conversations.create_conversation(
                user_id, truncate_title(text), chosen
            )
            logger.info("Conversation %d created for user %d", conversation.id, user_id)
            return conversation, chosen

        conversation = self.conversations.get_conversation(conversation_id)
        if conversation is None or conversation.owner_user_id != user_id:
            logger.warning(
                "User %d denied access to conversation %d", user_id, conversation_id
            )
            raise AccessDenied("Conversacion no encontrada")
        return conversation, self.client.resolve_model(model or conversation.model_name)

    async def _prepare(
        self,
        user_id: int,
        text: str,
        conversation_id: int | None,
        model: str | None,
    ) -> tuple[Conversation, str, str, list[Message]]:
        content = self.validate_user_text(text)
        conversation, resolved = self.resolve_conversation(user_id, conversation_id, content, model)
        history = self.conversations.fetch_history(conversation.id)
        self.conversations.append_message(conversation.id, "user", content)
        snippets = self.knowledge.fetch_active_snippets()
        messages = await self.assembler.build(history, snippets, content)
        return conversation, resolved, content, messages

    # ── turns ─────────────────────────────────────────────────────

    async def send(
        self,
        user_id: int,
        text: str,
        *,
        conversation_id: int | None = None,
        model: str | None = None,
        meta: RequestMeta | None = None,
    ) -> ChatReply:
        """Run one synchronous turn.

        Raises ``ValidationError`` or ``AccessDenied`` before anything is
        stored.  Upstream failures come back in ``ChatReply.error``.
        """
        meta = meta or RequestMeta(user_id=user_id)
        conversation, resolved, content, messages = await self._prepare(
            user_id, text, conversation_id, model
        )

        result = await self.client.chat(messages, resolved)
        notices = [verdict.reason for verdict in result.notices]

        if result.error is not None:
            self._emit("chat.turn", conversation_id=conversation.id, model=resolved, outcome="error")
            return ChatReply(
                conversation_id=conversation.id,
                error=log_and_return_error(
                    operation="chat", exc=result.error, user_message=STREAM_ERROR_MESSAGE
                ),
                notices=notices,
            )

        verdict = result.verdict
        if result.blocked and verdict is not None:
            self._persist_reply(conversation.id, self.settings.policy_refusal, verdict)
            self._record_violation(meta, verdict, content)
            self._emit("chat.turn", conversation_id=conversation.id, model=resolved, outcome="filtered")
            return ChatReply(
                conversation_id=conversation.id,
                response=self.settings.policy_refusal,
                filtered=True,
                filter_reason=verdict.reason,
                notices=notices,
            )

        self._persist_reply(conversation.id, result.text, None)
        self._emit("chat.turn", conversation_id=conversation.id, model=resolved, outcome="complete")
        return ChatReply(conversation_id=conversation.id, response=result.text, notices=notices)

    def _persist_reply(self, conversation_id: int, content: str, verdict: Verdict | None) -> None:
        # The reply is delivered even when the store fails; failures are logged.
        try:
            self.conversations.append_message(
                conversation_id,
                "assistant",
                content,
                filtered=verdict is not None,
                filter_reason=verdict.rule_name if verdict is not None else None,
            )
        except Exception:
            logger.exception("Error saving assistant response for conversation %d", conversation_id)
        try:
            self.conversations.touch(conversation_id)
        except Exception:
            logger.exception("Error touching conversation %d", conversation_id)

    def _record_violation(self, meta: RequestMeta, verdict: Verdict, content: str) -> None:
        try:
            self.security_log.record_violation(
                meta.user_id,
                verdict.rule_id,
                content,
                verdict.action,
                meta.client_ip,
                meta.user_agent,
            )
        except Exception:
            logger.exception("Error recording security violation for user %d", meta.user_id)

    async def stream(
        self,
        user_id: int,
        text: str,
        *,
        conversation_id: int | None = None,
        model: str | None = None,
        meta: RequestMeta | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamFrame, None]:
        """Prepare a streaming turn and return its frame generator.

        Validation and access errors raise here, before any frame exists.
        """
        meta = meta or RequestMeta(user_id=user_id)
        conversation, resolved, content, messages = await self._prepare(
            user_id, text, conversation_id, model
        )
        session = self.orchestrator.open_session(conversation.id, resolved, cancel)
        return self.orchestrator.run(session, messages, meta=meta, original_content=content)

    # ── admin ─────────────────────────────────────────────────────

    def reload_rules(self, source: str | RuleSource | None = None) -> RuleSet:
        """Swap in a fresh rule set from a YAML path, a RuleSource or the default source."""
        if isinstance(source, str):
            rules = load_rules(source)
        elif source is not None:
            rules = source.fetch_active_rules()
        elif self.settings.rules_path:
            rules = load_rules(self.settings.rules_path)
        elif self.rule_source is not None:
            rules = self.rule_source.fetch_active_rules()
        else:
            raise ValueError("no rule source configured")
        return self.rule_engine.reload(rules)

    def set_model(self, name: str) -> str:
        return self.client.set_model(name)

    async def health(self) -> dict[str, Any]:
        return {
            "available": await self.client.is_available(),
            "model": self.client.get_model(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
