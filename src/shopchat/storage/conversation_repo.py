"""Conversation repository: bot sessions and the append-only chat message log."""

from __future__ import annotations

from datetime import datetime

from shopchat.core.types import Channel, Role
from shopchat.log import get_logger
from shopchat.storage.database import Database
from shopchat.storage.models import (
    ChatMessage,
    ConversationKey,
    ConversationSession,
    MemoryClearResult,
)

logger = get_logger(__name__)


class ConversationRepository:
    """CRUD over bot_sessions and bot_chat_messages."""

    def __init__(self, db: Database):
        self._db = db

    async def upsert_session(self, session: ConversationSession) -> None:
        """Create the session or touch its last_active_at."""
        key = session.key
        await self._db.conn.execute(
            """INSERT INTO bot_sessions (owner_user_id, channel, external_user_id, tenant_id)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(owner_user_id, channel, external_user_id)
               DO UPDATE SET last_active_at = strftime('%Y-%m-%dT%H:%M:%f','now'),
                             tenant_id = COALESCE(excluded.tenant_id, bot_sessions.tenant_id)""",
            (key.owner_user_id, key.channel.value, key.external_user_id, session.tenant_id),
        )
        await self._db.conn.commit()

    async def get_session(self, key: ConversationKey) -> ConversationSession | None:
        cursor = await self._db.conn.execute(
            """SELECT * FROM bot_sessions
               WHERE owner_user_id = ? AND channel = ? AND external_user_id = ?""",
            (key.owner_user_id, key.channel.value, key.external_user_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return ConversationSession(
            key=key,
            tenant_id=row["tenant_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_active_at=datetime.fromisoformat(row["last_active_at"]),
        )

    async def save_message(self, message: ChatMessage) -> int:
        """Append a message and return its ID."""
        cursor = await self._db.conn.execute(
            """INSERT INTO bot_chat_messages
               (owner_user_id, tenant_id, channel, external_user_id, role, content)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                message.owner_user_id,
                message.tenant_id,
                message.channel.value,
                message.external_user_id,
                message.role.value,
                message.content,
            ),
        )
        await self._db.conn.commit()
        return cursor.lastrowid  # type: ignore[return-value]

    async def recent_messages(self, key: ConversationKey, limit: int) -> list[ChatMessage]:
        """Last ``limit`` messages of a conversation, oldest first."""
        if limit <= 0:
            return []
        cursor = await self._db.conn.execute(
            """SELECT * FROM (
                   SELECT * FROM bot_chat_messages
                   WHERE owner_user_id = ? AND channel = ? AND external_user_id = ?
                   ORDER BY id DESC
                   LIMIT ?
               ) ORDER BY id ASC""",
            (key.owner_user_id, key.channel.value, key.external_user_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def delete_owner(self, owner_user_id: str) -> MemoryClearResult:
        """Delete every session and message of an owner. Returns deleted row counts."""
        sessions = await self._db.conn.execute(
            "DELETE FROM bot_sessions WHERE owner_user_id = ?", (owner_user_id,)
        )
        messages = await self._db.conn.execute(
            "DELETE FROM bot_chat_messages WHERE owner_user_id = ?", (owner_user_id,)
        )
        await self._db.conn.commit()
        return MemoryClearResult(
            sessions_deleted=sessions.rowcount,
            messages_deleted=messages.rowcount,
        )

    @staticmethod
    def _row_to_message(row) -> ChatMessage:
        return ChatMessage(
            id=row["id"],
            owner_user_id=row["owner_user_id"],
            tenant_id=row["tenant_id"],
            channel=Channel(row["channel"]),
            external_user_id=row["external_user_id"],
            role=Role(row["role"]),
            content=row["content"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
