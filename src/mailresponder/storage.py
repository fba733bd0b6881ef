"""Storage module for conversations, reply bookkeeping and audit logging."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Generator

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    """Processing status of an inbound message."""

    PENDING = "pending"
    REPLIED = "replied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class Conversation:
    """Conversation between one account and one participant."""

    id: int
    account: str
    participant: str
    created_at: str
    last_message_at: str
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConversationMessage:
    """A single message inside a conversation."""

    id: int
    conversation_id: int
    role: str  # user or assistant
    content: str
    subject: str | None
    email_message_id: str | None
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        account=row["account"],
        participant=row["participant"],
        created_at=row["created_at"],
        last_message_at=row["last_message_at"],
        message_count=row["message_count"] if "message_count" in row.keys() else 0,
    )


def _message(row: sqlite3.Row) -> ConversationMessage:
    return ConversationMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        subject=row["subject"],
        email_message_id=row["email_message_id"],
        created_at=row["created_at"],
    )


class Storage:
    """SQLite-based storage for conversations, processed messages and audit logs."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str | Path):
        """Initialize storage with database path."""
        self.db_path = Path(db_path)
        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                );

                -- One conversation per account and participant
                CREATE TABLE IF NOT EXISTS conversations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account TEXT NOT NULL,
                    participant TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_message_at TEXT NOT NULL,
                    UNIQUE (account, participant)
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER NOT NULL REFERENCES conversations(id),
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    subject TEXT,
                    email_message_id TEXT,
                    -- Message-ID, or source:<id> when the mail has none
                    message_key TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (conversation_id, message_key)
                );

                -- Reply bookkeeping, one row per inbound message
                CREATE TABLE IF NOT EXISTS processed_messages (
                    account TEXT NOT NULL,
                    message_key TEXT NOT NULL,
                    source_id TEXT,
                    status TEXT NOT NULL,
                    error TEXT,
                    claimed_at TEXT NOT NULL,
                    completed_at TEXT,
                    PRIMARY KEY (account, message_key)
                );

                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    account TEXT NOT NULL,
                    message_id TEXT,
                    sender TEXT,
                    subject TEXT,
                    action TEXT NOT NULL,
                    reason TEXT,
                    success INTEGER NOT NULL,
                    error TEXT,
                    details_json TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);
                """
            )

            cursor = conn.execute("SELECT version FROM schema_version")
            if cursor.fetchone() is None:
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper handling."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Conversations

    def get_or_create_conversation(self, account: str, participant: str) -> Conversation:
        """Return the conversation with a participant, creating it if needed."""
        participant = participant.lower()
        now = datetime.now().isoformat()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO conversations (account, participant, created_at, last_message_at)
                VALUES (?, ?, ?, ?)
                """,
                (account, participant, now, now),
            )
            row = conn.execute(
                "SELECT * FROM conversations WHERE account = ? AND participant = ?",
                (account, participant),
            ).fetchone()
            return _conversation(row)

    def add_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        subject: str | None = None,
        email_message_id: str | None = None,
        message_key: str | None = None,
    ) -> ConversationMessage:
        """Append a message to a conversation.

        A message whose key (``message_key``, falling back to the email
        Message-ID) is already stored in this conversation is not inserted
        again; the existing row is returned instead.
        """
        key = message_key or email_message_id or None
        now = datetime.now().isoformat()
        with self._get_connection() as conn:
            if key:
                row = conn.execute(
                    "SELECT * FROM messages WHERE conversation_id = ? AND message_key = ?",
                    (conversation_id, key),
                ).fetchone()
                if row is not None:
                    logger.debug(f"Message {key} already stored in conversation {conversation_id}")
                    return _message(row)

            cursor = conn.execute(
                """
                INSERT INTO messages
                    (conversation_id, role, content, subject, email_message_id, message_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (conversation_id, role, content, subject, email_message_id or None, key, now),
            )
            conn.execute(
                "UPDATE conversations SET last_message_at = ? WHERE id = ?",
                (now, conversation_id),
            )
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return _message(row)

    def get_history(self, conversation_id: int, limit: int = 20) -> list[ConversationMessage]:
        """Return the last `limit` messages of a conversation, oldest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM messages WHERE conversation_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            )
            rows = cursor.fetchall()
        return [_message(row) for row in reversed(rows)]

    def get_messages(self, conversation_id: int) -> list[ConversationMessage]:
        """Return all messages of a conversation, oldest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at, id",
                (conversation_id,),
            )
            return [_message(row) for row in cursor.fetchall()]

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT c.*, (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id) AS message_count
                FROM conversations c WHERE c.id = ?
                """,
                (conversation_id,),
            ).fetchone()
            return _conversation(row) if row else None

    def list_conversations(self, account: str | None = None) -> list[Conversation]:
        """List conversations, most recently active first."""
        query = """
            SELECT c.*, (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id) AS message_count
            FROM conversations c
        """
        params: tuple = ()
        if account:
            query += " WHERE c.account = ?"
            params = (account,)
        query += " ORDER BY c.last_message_at DESC, c.id DESC"

        with self._get_connection() as conn:
            return [_conversation(row) for row in conn.execute(query, params).fetchall()]

    # Processed messages

    def claim_message(self, account: str, key: str, source_id: str | None = None) -> bool:
        """Atomically record a pending claim on a message.

        Returns False if the message was already claimed or processed.
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO processed_messages (account, message_key, source_id, status, claimed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (account, key, source_id, MessageStatus.PENDING.value, datetime.now().isoformat()),
            )
            return cursor.rowcount == 1

    def complete_message(
        self,
        account: str,
        key: str,
        status: MessageStatus,
        error: str | None = None,
    ) -> None:
        """Set the final status of a claimed message."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE processed_messages SET status = ?, error = ?, completed_at = ?
                WHERE account = ? AND message_key = ?
                """,
                (MessageStatus(status).value, error, datetime.now().isoformat(), account, key),
            )
        logger.debug(f"Message {key} for {account} marked {MessageStatus(status).value}")

    def release_message(self, account: str, key: str) -> None:
        """Drop a claim so the message is picked up again by a later cycle."""
        with self._get_connection() as conn:
            conn.execute(
                "DELETE FROM processed_messages WHERE account = ? AND message_key = ? AND status = ?",
                (account, key, MessageStatus.PENDING.value),
            )

    def is_processed(self, account: str, key: str) -> bool:
        """Check if a message has been claimed or processed."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT 1 FROM processed_messages WHERE account = ? AND message_key = ?",
                (account, key),
            )
            return cursor.fetchone() is not None

    def get_message_status(self, account: str, key: str) -> MessageStatus | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT status FROM processed_messages WHERE account = ? AND message_key = ?",
                (account, key),
            ).fetchone()
            return MessageStatus(row["status"]) if row else None

    # Audit log

    def log_action(
        self,
        account: str,
        action: str,
        success: bool,
        message_id: str | None = None,
        sender: str | None = None,
        subject: str | None = None,
        reason: str | None = None,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log an action to the audit log."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    timestamp, account, message_id, sender, subject, action,
                    reason, success, error, details_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    datetime.now().isoformat(),
                    account,
                    message_id,
                    sender,
                    subject,
                    action,
                    reason,
                    1 if success else 0,
                    error,
                    json.dumps(details) if details else None,
                ),
            )

    def get_audit_log(
        self,
        since: datetime | None = None,
        limit: int = 100,
        account: str | None = None,
    ) -> list[dict[str, Any]]:
        """Get audit log entries, newest first."""
        clauses = []
        params: list[Any] = []
        if since:
            clauses.append("timestamp >= ?")
            params.append(since.isoformat())
        if account:
            clauses.append("account = ?")
            params.append(account)
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"SELECT * FROM audit_log {where_clause} ORDER BY timestamp DESC, id DESC LIMIT ?",
                (*params, limit),
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_statistics(self, since: datetime | None = None) -> dict[str, Any]:
        """Get processing statistics."""
        with self._get_connection() as conn:
            where_clause = ""
            params: tuple = ()
            if since:
                where_clause = "WHERE timestamp >= ?"
                params = (since.isoformat(),)

            cursor = conn.execute(f"SELECT COUNT(*) as total FROM audit_log {where_clause}", params)
            total = cursor.fetchone()["total"]

            cursor = conn.execute(
                f"SELECT action, COUNT(*) as count FROM audit_log {where_clause} GROUP BY action",
                params,
            )
            by_action = {row["action"]: row["count"] for row in cursor.fetchall()}

            cursor = conn.execute(
                f"SELECT account, COUNT(*) as count FROM audit_log {where_clause} GROUP BY account",
                params,
            )
            by_account = {row["account"]: row["count"] for row in cursor.fetchall()}

            cursor = conn.execute(
                "SELECT status, COUNT(*) as count FROM processed_messages GROUP BY status"
            )
            by_status = {row["status"]: row["count"] for row in cursor.fetchall()}

            conversations = conn.execute("SELECT COUNT(*) as n FROM conversations").fetchone()["n"]
            messages = conn.execute("SELECT COUNT(*) as n FROM messages").fetchone()["n"]

            return {
                "total_actions": total,
                "by_action": by_action,
                "by_account": by_account,
                "by_status": by_status,
                "replied": by_status.get(MessageStatus.REPLIED.value, 0),
                "failed": by_status.get(MessageStatus.FAILED.value, 0),
                "conversations": conversations,
                "messages": messages,
            }

    def export_audit_jsonl(self, output_path: str | Path) -> int:
        """Export audit log to JSONL format. Returns number of entries."""
        output_path = Path(output_path)
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM audit_log ORDER BY timestamp, id")

            count = 0
            with open(output_path, "w", encoding="utf-8") as f:
                for row in cursor:
                    entry = dict(row)
                    details_json = entry.pop("details_json", None)
                    if details_json:
                        entry["details"] = json.loads(details_json)
                    entry["success"] = bool(entry["success"])
                    f.write(json.dumps(entry) + "\n")
                    count += 1

            return count
