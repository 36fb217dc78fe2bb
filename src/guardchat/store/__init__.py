"""Persistence collaborators -- contracts plus in-memory and SQLite implementations."""

from guardchat.store.base import (
    ConversationStore,
    KnowledgeStore,
    RuleSource,
    SecurityLogSink,
    UrlTextExtractor,
    ViolationRecord,
)
from guardchat.store.memory import InMemoryStore
from guardchat.store.sqlite import SQLiteStore

__all__ = [
    "ConversationStore",
    "InMemoryStore",
    "KnowledgeStore",
    "RuleSource",
    "SQLiteStore",
    "SecurityLogSink",
    "UrlTextExtractor",
    "ViolationRecord",
]
