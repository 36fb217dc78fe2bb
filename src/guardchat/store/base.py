"""Collaborator contracts consumed by the core.

The core never talks to a database or the web directly; it only calls the
narrow operations below.  Any object with matching methods satisfies the
protocols at runtime (they are ``runtime_checkable``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from guardchat.models import Conversation, FilterRule, KnowledgeSnippet, Message, Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ViolationRecord:
    user_id: int
    rule_id: int | None
    original_content: str
    action_taken: str
    client_ip: str = ""
    user_agent: str = ""
    created_at: datetime = field(default_factory=utcnow)


@runtime_checkable
class ConversationStore(Protocol):
    def create_conversation(
        self, owner_user_id: int, title: str, model_name: str | None = None
    ) -> Conversation: ...

    def get_conversation(self, conversation_id: int) -> Conversation | None: ...

    def append_message(
        self,
        conversation_id: int,
        role: Role,
        content: str,
        filtered: bool = False,
        filter_reason: str | None = None,
    ) -> Message: ...

    def fetch_history(self, conversation_id: int) -> list[Message]:
        """Return the conversation's messages, oldest first."""
        ...

    def touch(self, conversation_id: int) -> None:
        """Bump the conversation's ``updated_at``."""
        ...


@runtime_checkable
class KnowledgeStore(Protocol):
    def fetch_active_snippets(self) -> list[KnowledgeSnippet]: ...


@runtime_checkable
class SecurityLogSink(Protocol):
    def record_violation(
        self,
        user_id: int,
        rule_id: int | None,
        original_content: str,
        action_taken: str,
        client_ip: str = "",
        user_agent: str = "",
    ) -> None: ...


@runtime_checkable
class RuleSource(Protocol):
    def fetch_active_rules(self) -> list[FilterRule]: ...


@runtime_checkable
class UrlTextExtractor(Protocol):
    async def extract(self, url: str, max_chars: int) -> str:
        """Return readable text for *url*, at most *max_chars* of body text.

        Raises:
            ExtractionError: the page could not be fetched or parsed.
        """
        ...
