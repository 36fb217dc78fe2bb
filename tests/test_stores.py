"""Tests for the in-memory and SQLite stores against the collaborator contracts."""

import sqlite3

import pytest
from conftest import make_rule

from guardchat.models import KnowledgeSnippet
from guardchat.store import (
    ConversationStore,
    InMemoryStore,
    KnowledgeStore,
    RuleSource,
    SecurityLogSink,
    SQLiteStore,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        yield InMemoryStore()
    else:
        sqlite_store = SQLiteStore(sqlite3.connect(":memory:", check_same_thread=False))
        yield sqlite_store
        sqlite_store.close()


class TestContracts:
    def test_implements_protocols(self, store):
        assert isinstance(store, ConversationStore)
        assert isinstance(store, KnowledgeStore)
        assert isinstance(store, SecurityLogSink)
        assert isinstance(store, RuleSource)


class TestConversations:
    def test_create_and_get(self, store):
        created = store.create_conversation(7, "Mi titulo", "llama3:8b")
        fetched = store.get_conversation(created.id)
        assert fetched is not None
        assert fetched.owner_user_id == 7
        assert fetched.title == "Mi titulo"
        assert fetched.model_name == "llama3:8b"

    def test_missing_conversation(self, store):
        assert store.get_conversation(12345) is None

    def test_empty_model_stored_as_none(self, store):
        assert store.create_conversation(7, "t", "").model_name is None

    def test_history_in_insertion_order(self, store):
        conversation = store.create_conversation(7, "t")
        store.append_message(conversation.id, "user", "uno")
        store.append_message(conversation.id, "assistant", "dos", filtered=True, filter_reason="regla")
        store.append_message(conversation.id, "user", "tres")
        history = store.fetch_history(conversation.id)
        assert [m.content for m in history] == ["uno", "dos", "tres"]
        assert history[1].filtered is True
        assert history[1].filter_reason == "regla"
        assert history[0].filtered is False
        assert all(m.conversation_id == conversation.id for m in history)

    def test_histories_are_separate(self, store):
        a = store.create_conversation(7, "a")
        b = store.create_conversation(7, "b")
        store.append_message(a.id, "user", "para a")
        assert store.fetch_history(b.id) == []

    def test_touch_updates_timestamp(self, store):
        conversation = store.create_conversation(7, "t")
        store.touch(conversation.id)
        assert store.get_conversation(conversation.id).updated_at >= conversation.updated_at


class TestKnowledgeAndRules:
    def test_rules_round_trip(self, store):
        if isinstance(store, SQLiteStore):
            store.add_rule(make_rule(name="a", pattern="x"))
            store.add_rule(make_rule(name="b", pattern="y", kind="regex", severity="high"))
        else:
            store.rules.extend([
                make_rule(name="a", pattern="x"),
                make_rule(name="b", pattern="y", kind="regex", severity="high"),
            ])
        assert sorted(r.name for r in store.fetch_active_rules()) == ["a", "b"]

        assert store.set_rule_active("a", False) is True
        assert [r.name for r in store.fetch_active_rules()] == ["b"]
        assert store.set_rule_active("missing", False) is False

    def test_snippets(self, store):
        snippet = KnowledgeSnippet(title="VPN", category="IT", content="Usa el cliente.")
        if isinstance(store, SQLiteStore):
            store.add_snippet(snippet.title, snippet.content, snippet.category)
        else:
            store.snippets.append(snippet)
        assert store.fetch_active_snippets() == [snippet]


class TestSecurityLog:
    def test_record_violation(self, store):
        store.record_violation(7, 3, "drop table", "block", "10.0.0.1", "curl")
        store.record_violation(8, None, "otro", "block")
        if isinstance(store, SQLiteStore):
            records = list(reversed(store.violations()))
        else:
            records = store.violations
        assert [(v.user_id, v.rule_id) for v in records] == [(7, 3), (8, None)]
        assert records[0].client_ip == "10.0.0.1"
        assert records[0].user_agent == "curl"
        assert records[1].client_ip == ""


class TestSQLiteSpecifics:
    def test_add_rule_assigns_database_id(self):
        store = SQLiteStore(sqlite3.connect(":memory:"))
        saved = store.add_rule(make_rule(name="a", rule_id=999))
        assert saved.id != 999
        assert store.fetch_active_rules()[0].id == saved.id

    def test_open_persists_to_file(self, tmp_path):
        path = str(tmp_path / "chat.db")
        store = SQLiteStore.open(path)
        conversation = store.create_conversation(7, "t")
        store.append_message(conversation.id, "user", "hola")
        store.close()

        reopened = SQLiteStore.open(path)
        assert [m.content for m in reopened.fetch_history(conversation.id)] == ["hola"]
        reopened.close()

    def test_violations_limit(self):
        store = SQLiteStore(sqlite3.connect(":memory:"))
        for i in range(5):
            store.record_violation(i, None, "x", "block")
        assert [v.user_id for v in store.violations(limit=2)] == [4, 3]


class TestInMemorySpecifics:
    def test_append_to_unknown_conversation_raises(self):
        with pytest.raises(KeyError):
            InMemoryStore().append_message(99, "user", "hola")
