"""Shared fixtures: temporary databases, fake model clients and recording transports."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from shopchat.ai.client import LLMClient, LLMResponse
from shopchat.config import AppConfig
from shopchat.core.session import SessionManager
from shopchat.core.types import Channel
from shopchat.errors import ExternalServiceError
from shopchat.messenger.base import ChannelTransport
from shopchat.messenger.models import OutgoingMessage
from shopchat.storage.binding_repo import BindingRepository
from shopchat.storage.catalog_repo import CatalogRepository
from shopchat.storage.conversation_repo import ConversationRepository
from shopchat.storage.database import Database
from shopchat.storage.models import Product

DIM = 8


def unit(index: int, dim: int = DIM) -> list[float]:
    """Unit vector along axis ``index``."""
    vec = [0.0] * dim
    vec[index] = 1.0
    return vec


class FakeLLM(LLMClient):
    """Answers JSON-mode calls with ``enhance_reply`` and plain calls with ``answer_reply``.

    Either reply may be an exception instance, which is raised instead.
    """

    def __init__(
        self,
        enhance_reply: Any = '{"optimized": "red shirt", "keywords": ["red", "shirt"], "intent": "find shirts"}',
        answer_reply: Any = "We have the Red Shirt for $20.",
    ):
        self.enhance_reply = enhance_reply
        self.answer_reply = answer_reply
        self.calls: list[dict[str, Any]] = []

    async def chat(
        self,
        system: str,
        messages: list[dict[str, Any]],
        model: str,
        max_tokens: int = 400,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> LLMResponse:
        self.calls.append(
            {"system": system, "messages": messages, "model": model, "json_mode": json_mode}
        )
        reply = self.enhance_reply if json_mode else self.answer_reply
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(text=reply, input_tokens=10, output_tokens=5)

    @property
    def answer_calls(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if not c["json_mode"]]


class FakeEmbedder:
    """Deterministic embeddings: explicit ``vectors`` first, else a hash-picked axis."""

    def __init__(self, vectors: Optional[dict[str, list[float]]] = None, dim: int = DIM):
        self.vectors = vectors or {}
        self.dimension = dim
        self.calls: list[str] = []
        self.error: Optional[Exception] = None

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        if text in self.vectors:
            return self.vectors[text]
        axis = int(hashlib.sha256(text.encode()).hexdigest(), 16) % self.dimension
        return unit(axis, self.dimension)


class RecordingTransport(ChannelTransport):
    """Channel transport that records every call instead of hitting a platform API."""

    def __init__(self, channel: Channel, max_length: int = 2000):
        self._channel = channel
        self.max_message_length = max_length
        self.sent: list[tuple[str, OutgoingMessage]] = []
        self.typing: list[tuple[str, str]] = []
        self.typing_cleared: list[tuple[str, str]] = []
        self.fail_typing = False
        self.fail_send = False
        # Messenger / Telegram connect flows
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []
        self.webhooks: dict[str, str] = {}
        self.webhook_secrets: dict[str, Optional[str]] = {}
        self.deleted_webhooks: list[str] = []
        self.me: tuple[str, str] = ("4242", "shop_bot")

    @property
    def channel(self) -> Channel:
        return self._channel

    async def send_message(self, credential: str, message: OutgoingMessage) -> None:
        if self.fail_send:
            raise ExternalServiceError(self._channel.value, "send failed", status=500)
        self.sent.append((credential, message))

    async def send_typing(self, credential: str, chat_id: str) -> None:
        if self.fail_typing:
            raise ExternalServiceError(self._channel.value, "typing failed", status=500)
        self.typing.append((credential, chat_id))

    async def typing_done(self, credential: str, chat_id: str) -> None:
        self.typing_cleared.append((credential, chat_id))

    async def subscribe_app(self, page_id: str, page_token: str) -> bool:
        self.subscribed.append(page_id)
        return True

    async def unsubscribe_app(self, page_id: str, page_token: str) -> bool:
        self.unsubscribed.append(page_id)
        return True

    async def get_me(self, token: str) -> tuple[str, str]:
        return self.me

    async def set_webhook(self, token: str, url: str, secret_token: Optional[str] = None) -> bool:
        self.webhooks[token] = url
        self.webhook_secrets[token] = secret_token
        return True

    async def delete_webhook(self, token: str) -> bool:
        self.deleted_webhooks.append(token)
        return True

    @property
    def texts(self) -> list[str]:
        return [m.text for _, m in self.sent]


def make_config(tmp_path: Path, **overrides: Any) -> AppConfig:
    data: dict[str, Any] = {
        "storage": {"db_path": str(tmp_path / "shopchat.db")},
        "embedding": {"project_id": "test-project", "dimension": DIM},
        "openai": {"api_key": "test-key"},
        "server": {"public_url": "https://shop.example.com"},
    }
    for section, values in overrides.items():
        if isinstance(values, dict):
            data.setdefault(section, {}).update(values)
        else:
            data[section] = values
    return AppConfig(**data)


def product(
    pid: str,
    tenant_id: str,
    name: str,
    embedding: Optional[list[float]] = None,
    description: str = "",
    price: float = 10.0,
    **kwargs: Any,
) -> Product:
    return Product(
        id=pid,
        tenant_id=tenant_id,
        name=name,
        description=description,
        price=price,
        embedding=embedding,
        **kwargs,
    )


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def conversation_repo(db) -> ConversationRepository:
    return ConversationRepository(db)


@pytest.fixture
def binding_repo(db) -> BindingRepository:
    return BindingRepository(db)


@pytest.fixture
def catalog_repo(db) -> CatalogRepository:
    return CatalogRepository(db)


@pytest.fixture
def session_manager(conversation_repo) -> SessionManager:
    return SessionManager(conversation_repo)


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def messenger_transport() -> RecordingTransport:
    return RecordingTransport(Channel.MESSENGER, max_length=2000)


@pytest.fixture
def telegram_transport() -> RecordingTransport:
    return RecordingTransport(Channel.TELEGRAM, max_length=4096)


@pytest.fixture
def shop_factory(tmp_path, fake_llm, fake_embedder, messenger_transport, telegram_transport):
    """Build a ShopchatApp over fakes. Keyword arguments override config sections."""
    from shopchat.app import ShopchatApp

    def _factory(**overrides: Any) -> ShopchatApp:
        return ShopchatApp(
            make_config(tmp_path, **overrides),
            llm=fake_llm,
            embedder=fake_embedder,
            messenger_transport=messenger_transport,  # type: ignore[arg-type]
            telegram_transport=telegram_transport,  # type: ignore[arg-type]
        )

    return _factory


@pytest.fixture
def client_factory(shop_factory):
    """TestClient over a fresh app; use as a context manager to run startup/shutdown."""
    from fastapi.testclient import TestClient

    from shopchat.web.server import create_app

    def _factory(**overrides: Any) -> TestClient:
        return TestClient(create_app(shop_factory(**overrides)))

    return _factory


def run(client, fn: Callable[..., Any], *args: Any) -> Any:
    """Run an async callable on the app's event loop (client must be entered)."""
    return client.portal.call(fn, *args)
