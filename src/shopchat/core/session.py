"""Session/memory store: per-conversation message log and context windows."""

from __future__ import annotations

from shopchat.core.types import Role
from shopchat.log import get_logger
from shopchat.storage.conversation_repo import ConversationRepository
from shopchat.storage.models import (
    ChatMessage,
    ConversationKey,
    ConversationSession,
    MemoryClearResult,
)

logger = get_logger(__name__)

_ROLE_TAGS = {Role.USER: "User", Role.BOT: "Bot"}


def format_turns(messages: list[ChatMessage]) -> str:
    """Render messages oldest-first as ``User: ...`` / ``Bot: ...`` lines."""
    return "\n".join(f"{_ROLE_TAGS[m.role]}: {m.content}" for m in messages)


class SessionManager:
    """Owns conversation sessions and their append-only message history."""

    def __init__(self, conversation_repo: ConversationRepository):
        self._repo = conversation_repo

    async def append_message(self, session: ConversationSession, message: ChatMessage) -> int:
        """Touch (or create) the session, then append the message to its log."""
        await self._repo.upsert_session(session)
        return await self._repo.save_message(message)

    async def log_turn(
        self, session: ConversationSession, role: Role, content: str
    ) -> int:
        key = session.key
        return await self.append_message(
            session,
            ChatMessage(
                owner_user_id=key.owner_user_id,
                channel=key.channel,
                external_user_id=key.external_user_id,
                role=role,
                content=content,
                tenant_id=session.tenant_id,
            ),
        )

    async def recent_context(
        self,
        session: ConversationSession | ConversationKey,
        max_turns: int,
        exclude_id: int | None = None,
    ) -> str:
        """The last ``max_turns`` messages as one role-tagged string ('' if none).

        ``exclude_id`` leaves out one message, typically the inbound turn
        that was logged just before the context is built.
        """
        if max_turns <= 0:
            return ""
        key = session.key if isinstance(session, ConversationSession) else session
        fetch = max_turns + 1 if exclude_id is not None else max_turns
        messages = await self._repo.recent_messages(key, fetch)
        if exclude_id is not None:
            messages = [m for m in messages if m.id != exclude_id]
        return format_turns(messages[-max_turns:])

    async def clear_memory(self, owner_user_id: str) -> MemoryClearResult:
        """Delete every session and message of ``owner_user_id``. Irreversible."""
        result = await self._repo.delete_owner(owner_user_id)
        logger.info(
            "bot_memory_cleared",
            owner_user_id=owner_user_id,
            sessions_deleted=result.sessions_deleted,
            messages_deleted=result.messages_deleted,
        )
        return result

    @property
    def repo(self) -> ConversationRepository:
        return self._repo
