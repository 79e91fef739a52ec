"""Abstract outbound transport for a chat channel."""

from __future__ import annotations

from abc import ABC, abstractmethod

from shopchat.core.types import Channel
from shopchat.messenger.models import OutgoingMessage


class ChannelTransport(ABC):
    """Sends replies through one platform's API.

    Transports are stateless with respect to bindings: every call carries the
    credential (page token or bot token) of the binding it acts for. To add a
    channel, subclass this and implement the abstract methods.
    """

    max_message_length: int = 2000

    @property
    @abstractmethod
    def channel(self) -> Channel:
        ...

    @abstractmethod
    async def send_message(self, credential: str, message: OutgoingMessage) -> None:
        """Deliver one message that already fits ``max_message_length``."""
        ...

    @abstractmethod
    async def send_typing(self, credential: str, chat_id: str) -> None:
        """Show typing/processing indicator."""
        ...

    async def typing_done(self, credential: str, chat_id: str) -> None:
        """Clear the typing indicator where the platform needs it."""

    async def send_text(self, credential: str, chat_id: str, text: str) -> None:
        for chunk in split_message(text, self.max_message_length):
            await self.send_message(credential, OutgoingMessage(chat_id=chat_id, text=chunk))

    async def close(self) -> None:
        """Release network resources."""


def split_message(text: str, max_length: int) -> list[str]:
    """Split a message into chunks that fit within platform limits."""
    if len(text) <= max_length:
        return [text]

    chunks = []
    while text:
        if len(text) <= max_length:
            chunks.append(text)
            break
        # Try to split at a newline
        split_pos = text.rfind("\n", 0, max_length)
        if split_pos <= 0:
            split_pos = max_length
        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip("\n")
    return chunks
