"""Conversation, knowledge, rule and security-log persistence backed by SQLite.

A reference implementation of the collaborator contracts in
:mod:`guardchat.store.base`, sharing one connection across threads under a
re-entrant lock.  Conversation length is not bounded here.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from typing import Any

from guardchat.models import Conversation, FilterRule, KnowledgeSnippet, Message, Role
from guardchat.store.base import ViolationRecord, utcnow

_CREATE_SQL = """\
CREATE TABLE IF NOT EXISTS conversations (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id       INTEGER NOT NULL,
    title         TEXT NOT NULL DEFAULT '',
    model         TEXT,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS messages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role            TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant')),
    content         TEXT NOT NULL,
    filtered        INTEGER NOT NULL DEFAULT 0,
    filter_reason   TEXT,
    created_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, id);
CREATE TABLE IF NOT EXISTS knowledge (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    title       TEXT NOT NULL,
    category    TEXT,
    content     TEXT NOT NULL,
    active      INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS filter_rules (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL UNIQUE,
    description TEXT,
    kind        TEXT NOT NULL CHECK (kind IN ('keyword', 'regex', 'category')),
    pattern     TEXT NOT NULL,
    action      TEXT NOT NULL CHECK (action IN ('block', 'warn', 'log')),
    applies_to  TEXT NOT NULL DEFAULT 'both',
    severity    TEXT NOT NULL DEFAULT 'medium',
    active      INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS security_logs (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id          INTEGER NOT NULL,
    filter_id        INTEGER,
    original_content TEXT NOT NULL,
    action_taken     TEXT NOT NULL,
    ip_address       TEXT,
    user_agent       TEXT,
    created_at       TEXT NOT NULL
);
"""


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


class SQLiteStore:
    """Thread-safe persistence sharing an existing SQLite connection.

    Parameters
    ----------
    conn:
        An open ``sqlite3.Connection``.  ``row_factory`` is set to
        ``sqlite3.Row``.  Open it with ``check_same_thread=False`` when the
        store is shared across threads.
    lock:
        Optional ``threading.RLock``.  One is created automatically if not
        supplied.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        lock: threading.RLock | None = None,
    ) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row
        self._lock = lock if lock is not None else threading.RLock()
        with self._lock:
            self._conn.executescript(_CREATE_SQL)

    @classmethod
    def open(cls, path: str) -> SQLiteStore:
        return cls(sqlite3.connect(path, check_same_thread=False))

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            owner_user_id=row["user_id"],
            title=row["title"],
            model_name=row["model"] or None,
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            filtered=bool(row["filtered"]),
            filter_reason=row["filter_reason"] or None,
            created_at=_parse_ts(row["created_at"]),
        )

    # ── ConversationStore ────────────────────────────────────────

    def create_conversation(
        self, owner_user_id: int, title: str, model_name: str | None = None
    ) -> Conversation:
        now = utcnow().isoformat()
        with self._lock:
            cursor = self._conn.execute(
                """INSERT INTO conversations (user_id, title, model, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (owner_user_id, title, model_name or None, now, now),
            )
            self._conn.commit()
            conversation = self.get_conversation(cursor.lastrowid)
        if conversation is None:
            raise RuntimeError(f"conversation {cursor.lastrowid} vanished after insert")
        return conversation

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return self._conversation(row) if row is not None else None

    def append_message(
        self,
        conversation_id: int,
        role: Role,
        content: str,
        filtered: bool = False,
        filter_reason: str | None = None,
    ) -> Message:
        now = utcnow().isoformat()
        with self._lock:
            cursor = self._conn.execute(
                """INSERT INTO messages
                   (conversation_id, role, content, filtered, filter_reason, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (conversation_id, role, content, int(filtered), filter_reason or None, now),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT * FROM messages WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        return self._message(row)

    def fetch_history(self, conversation_id: int) -> list[Message]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM messages WHERE conversation_id = ?
                   ORDER BY id ASC""",
                (conversation_id,),
            ).fetchall()
        return [self._message(r) for r in rows]

    def touch(self, conversation_id: int) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (utcnow().isoformat(), conversation_id),
            )
            self._conn.commit()

    # ── KnowledgeStore ───────────────────────────────────────────

    def add_snippet(self, title: str, content: str, category: str | None = None) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO knowledge (title, category, content) VALUES (?, ?, ?)",
                (title, category, content),
            )
            self._conn.commit()

    def fetch_active_snippets(self) -> list[KnowledgeSnippet]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT title, category, content FROM knowledge
                   WHERE active = 1 ORDER BY category, title"""
            ).fetchall()
        return [
            KnowledgeSnippet(title=r["title"], category=r["category"], content=r["content"])
            for r in rows
        ]

    # ── RuleSource ───────────────────────────────────────────────

    def add_rule(self, rule: FilterRule) -> FilterRule:
        """Insert *rule* (its ``id`` is reassigned by the database)."""
        with self._lock:
            cursor = self._conn.execute(
                """INSERT INTO filter_rules
                   (name, description, kind, pattern, action, applies_to, severity, active)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    rule.name,
                    rule.description,
                    rule.kind,
                    rule.pattern,
                    rule.action,
                    rule.applies_to,
                    rule.severity,
                    int(rule.active),
                ),
            )
            self._conn.commit()
        return rule.model_copy(update={"id": cursor.lastrowid})

    def set_rule_active(self, name: str, active: bool) -> bool:
        """Activate or deactivate a rule by name.  Returns True if a row was updated."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE filter_rules SET active = ? WHERE name = ?", (int(active), name)
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def fetch_active_rules(self) -> list[FilterRule]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM filter_rules WHERE active = 1 ORDER BY name"
            ).fetchall()
        return [
            FilterRule(
                id=r["id"],
                name=r["name"],
                description=r["description"],
                kind=r["kind"],
                pattern=r["pattern"],
                action=r["action"],
                applies_to=r["applies_to"],
                severity=r["severity"],
                active=bool(r["active"]),
            )
            for r in rows
        ]

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
            self._conn.execute(
                """INSERT INTO security_logs
                   (user_id, filter_id, original_content, action_taken,
                    ip_address, user_agent, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    user_id,
                    rule_id,
                    original_content,
                    action_taken,
                    client_ip or None,
                    user_agent or None,
                    utcnow().isoformat(),
                ),
            )
            self._conn.commit()

    def violations(self, *, limit: int = 50) -> list[ViolationRecord]:
        """Return the most recent violations, newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM security_logs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._violation(dict(r)) for r in rows]

    @staticmethod
    def _violation(row: dict[str, Any]) -> ViolationRecord:
        return ViolationRecord(
            user_id=row["user_id"],
            rule_id=row["filter_id"],
            original_content=row["original_content"],
            action_taken=row["action_taken"],
            client_ip=row["ip_address"] or "",
            user_agent=row["user_agent"] or "",
            created_at=_parse_ts(row["created_at"]),
        )
