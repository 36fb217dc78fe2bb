"""In-process store implementing every collaborator contract.

Used by tests and the interactive CLI when no database is configured.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Iterable
from datetime import datetime

from guardchat.models import Conversation, FilterRule, KnowledgeSnippet, Message, Role
from guardchat.store.base import ViolationRecord, utcnow


class InMemoryStore:
    """Thread-safe dictionaries behind the conversation, knowledge, log and rule contracts."""

    def __init__(
        self,
        *,
        rules: Iterable[FilterRule] = (),
        snippets: Iterable[KnowledgeSnippet] = (),
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._lock = threading.RLock()
        self._now = now
        self._conversation_ids = itertools.count(1)
        self._message_ids = itertools.count(1)
        self._conversations: dict[int, Conversation] = {}
        self._messages: dict[int, list[Message]] = {}
        self.rules: list[FilterRule] = list(rules)
        self.snippets: list[KnowledgeSnippet] = list(snippets)
        self.violations: list[ViolationRecord] = []

    # ── ConversationStore ────────────────────────────────────────

    def create_conversation(
        self, owner_user_id: int, title: str, model_name: str | None = None
    ) -> Conversation:
        with self._lock:
            now = self._now()
            conversation = Conversation(
                id=next(self._conversation_ids),
                owner_user_id=owner_user_id,
                title=title,
                model_name=model_name or None,
                created_at=now,
                updated_at=now,
            )
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            return conversation

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def append_message(
        self,
        conversation_id: int,
        role: Role,
        content: str,
        filtered: bool = False,
        filter_reason: str | None = None,
    ) -> Message:
        with self._lock:
            if conversation_id not in self._conversations:
                raise KeyError(f"Unknown conversation: {conversation_id}")
            message = Message(
                id=next(self._message_ids),
                conversation_id=conversation_id,
                role=role,
                content=content,
                filtered=filtered,
                filter_reason=filter_reason or None,
                created_at=self._now(),
            )
            self._messages[conversation_id].append(message)
            return message

    def fetch_history(self, conversation_id: int) -> list[Message]:
        with self._lock:
            return list(self._messages.get(conversation_id, []))

    def touch(self, conversation_id: int) -> None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is not None:
                self._conversations[conversation_id] = conversation.model_copy(
                    update={"updated_at": self._now()}
                )

    # ── KnowledgeStore / RuleSource ──────────────────────────────

    def fetch_active_snippets(self) -> list[KnowledgeSnippet]:
        with self._lock:
            return list(self.snippets)

    def fetch_active_rules(self) -> list[FilterRule]:
        with self._lock:
            return [rule for rule in self.rules if rule.active]

    def set_rule_active(self, name: str, active: bool) -> bool:
        with self._lock:
            for index, rule in enumerate(self.rules):
                if rule.name == name:
                    self.rules[index] = rule.model_copy(update={"active": active})
                    return True
            return False

    # ── SecurityLogSink ──────────────────────────────────────────

    def record_violation(
        self,
        user_id: int,
        rule_id: int | None,
        original_content: str,
        action_taken: str,
        client_ip: str = "",
        user_agent: str = "",
    ) -> None:
        with self._lock:
            self.violations.append(
                ViolationRecord(
                    user_id=user_id,
                    rule_id=rule_id,
                    original_content=original_content,
                    action_taken=action_taken,
                    client_ip=client_ip,
                    user_agent=user_agent,
                    created_at=self._now(),
                )
            )
