"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from shopchat.core.types import Channel, Role


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ConversationKey:
    """Identifies one external end-user talking to one owner's channel."""

    owner_user_id: str
    channel: Channel
    external_user_id: str


@dataclass
class ConversationSession:
    key: ConversationKey
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_active_at: datetime = field(default_factory=_utcnow)


@dataclass
class ChatMessage:
    owner_user_id: str
    channel: Channel
    external_user_id: str
    role: Role
    content: str
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    id: Optional[int] = None


@dataclass(frozen=True, slots=True)
class MemoryClearResult:
    sessions_deleted: int
    messages_deleted: int


@dataclass(frozen=True, slots=True)
class TenantMembership:
    user_id: str
    tenant_id: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class ChannelBinding:
    """Maps an external channel identity to its owner and send credential."""

    channel: Channel
    external_id: str  # Facebook page id or Telegram bot id
    owner_user_id: str
    credential: str  # page token or bot token
    is_active: bool = True
    name: Optional[str] = None
    secret: Optional[str] = None  # Telegram webhook path segment


@dataclass(frozen=True, slots=True)
class Product:
    id: str
    tenant_id: str
    name: str
    description: str = ""
    sku: Optional[str] = None
    size: Optional[str] = None
    price: Optional[float] = None
    image_url: Optional[str] = None
    category_name: Optional[str] = None
    stock: Optional[int] = None
    embedding: Optional[list[float]] = None
