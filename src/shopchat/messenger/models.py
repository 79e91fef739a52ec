"""Channel-neutral message models shared by the Messenger and Telegram adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from shopchat.core.types import Channel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """One text message from an end-user, already stripped of its platform envelope.

    ``recipient_id`` is the page id (Messenger) or bot id (Telegram) the
    message was addressed to. ``chat_id`` is where the reply goes; on
    Messenger it equals ``sender_id``.
    """

    channel: Channel
    recipient_id: str
    sender_id: str
    chat_id: str
    text: str
    message_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    chat_id: str
    text: str
