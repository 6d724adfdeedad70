"""Chat and message persistence."""

from __future__ import annotations

import sqlite3
import time
import uuid
from pathlib import Path
from typing import Protocol

from coder_stream.errors import ChatNotFoundError, MessageNotFoundError
from coder_stream.types import ROLES, Chat, Message


class MessageStore(Protocol):
    """What the engine needs from persistence."""

    async def append_message(self, chat_id: str, role: str, content: str) -> Message:
        """Store a message at the next position of *chat_id*."""
        ...

    async def load_messages(self, chat_id: str, upto_position: int | None = None) -> list[Message]:
        """Messages of *chat_id* ordered by position, up to and including
        *upto_position* (all if ``None``)."""
        ...

    async def get_message(self, message_id: str) -> Message:
        ...


class SQLiteMessageStore:
    """SQLite-backed chat and message store.

    Positions are assigned inside the INSERT itself, so concurrent appends
    to one chat interleave but never collide.
    """

    def __init__(self, db_path: str = "~/.coder_stream/chats.db") -> None:
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        # One connection, only ever touched from the event loop's thread at
        # a time; the server may create it on a different thread.
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._init_schema()

    def _init_schema(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                model TEXT NOT NULL,
                quality TEXT NOT NULL DEFAULT 'high',
                title TEXT NOT NULL DEFAULT '',
                created_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                position INTEGER NOT NULL,
                created_at REAL NOT NULL,
                UNIQUE (chat_id, position)
            );
            CREATE INDEX IF NOT EXISTS idx_msg_chat ON messages(chat_id, position);
        """)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def create_chat(self, model: str, quality: str = "high", title: str = "") -> Chat:
        chat = Chat(id=uuid.uuid4().hex, model=model, quality=quality, title=title)
        self._conn.execute(
            "INSERT INTO chats (id, model, quality, title, created_at) VALUES (?, ?, ?, ?, ?)",
            (chat.id, chat.model, chat.quality, chat.title, chat.created_at),
        )
        self._conn.commit()
        return chat

    async def get_chat(self, chat_id: str) -> Chat:
        row = self._conn.execute(
            "SELECT id, model, quality, title, created_at FROM chats WHERE id = ?",
            (chat_id,),
        ).fetchone()
        if row is None:
            raise ChatNotFoundError(f"Chat not found: {chat_id}")
        return Chat(*row)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(self, chat_id: str, role: str, content: str) -> Message:
        if role not in ROLES:
            raise ValueError(f"Invalid role: {role}")
        await self.get_chat(chat_id)
        message_id = uuid.uuid4().hex
        now = time.time()
        with self._conn:
            self._conn.execute(
                "INSERT INTO messages (id, chat_id, role, content, position, created_at) "
                "SELECT ?, ?, ?, ?, COALESCE(MAX(position), -1) + 1, ? "
                "FROM messages WHERE chat_id = ?",
                (message_id, chat_id, role, content, now, chat_id),
            )
        return await self.get_message(message_id)

    async def get_message(self, message_id: str) -> Message:
        row = self._conn.execute(
            "SELECT id, chat_id, role, content, position, created_at "
            "FROM messages WHERE id = ?",
            (message_id,),
        ).fetchone()
        if row is None:
            raise MessageNotFoundError(f"Message not found: {message_id}")
        return Message(*row)

    async def load_messages(self, chat_id: str, upto_position: int | None = None) -> list[Message]:
        if upto_position is None:
            rows = self._conn.execute(
                "SELECT id, chat_id, role, content, position, created_at "
                "FROM messages WHERE chat_id = ? ORDER BY position",
                (chat_id,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT id, chat_id, role, content, position, created_at "
                "FROM messages WHERE chat_id = ? AND position <= ? ORDER BY position",
                (chat_id, upto_position),
            ).fetchall()
        return [Message(*row) for row in rows]

    def close(self):
        self._conn.close()


def trim_history(messages: list[Message], limit: int = 10) -> list[Message]:
    """Keep the opening exchange and the most recent turns.

    Beyond *limit* messages, the first 3 (system prompt and initial
    request/answer) are kept together with the last ``limit - 3``.
    """
    if limit <= 3 or len(messages) <= limit:
        return list(messages)
    return messages[:3] + messages[-(limit - 3):]
