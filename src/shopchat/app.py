"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from typing import Optional

import httpx

from shopchat.ai.client import AnthropicClient, LLMClient, OpenAIClient
from shopchat.config import AppConfig
from shopchat.core import tasks
from shopchat.core.rate_limit import InMemoryRateLimiter, RateLimiter
from shopchat.core.session import SessionManager
from shopchat.core.types import Channel
from shopchat.errors import ConfigurationError
from shopchat.log import get_logger
from shopchat.messenger.base import ChannelTransport
from shopchat.messenger.bindings import BindingService
from shopchat.messenger.facebook import MessengerTransport
from shopchat.messenger.handler import ChannelMessageHandler
from shopchat.messenger.telegram import TelegramTransport
from shopchat.rag.cache import QueryCache
from shopchat.rag.context import ContextComposer
from shopchat.rag.embeddings import EmbeddingProvider
from shopchat.rag.engine import Embedder, RagOrchestrator
from shopchat.rag.enhancer import EnhancedQuery, QueryEnhancer
from shopchat.rag.search import HybridSearch
from shopchat.storage.binding_repo import BindingRepository
from shopchat.storage.catalog_repo import CatalogRepository
from shopchat.storage.conversation_repo import ConversationRepository
from shopchat.storage.database import Database

logger = get_logger(__name__)


class ShopchatApp:
    """Top-level application orchestrator.

    Collaborators that talk to the outside world (LLM, embeddings, channel
    transports, rate limiter) can be passed in; everything else is built
    from ``config``.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        llm: Optional[LLMClient] = None,
        embedder: Optional[Embedder] = None,
        messenger_transport: Optional[MessengerTransport] = None,
        telegram_transport: Optional[TelegramTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.http = http_client or httpx.AsyncClient()

        # Storage
        self.db = Database(config.storage.db_path)
        self.conversation_repo = ConversationRepository(self.db)
        self.binding_repo = BindingRepository(self.db)
        self.catalog_repo = CatalogRepository(self.db)
        self.session_manager = SessionManager(self.conversation_repo)

        # RAG pipeline
        self.enhancement_cache: QueryCache[EnhancedQuery] = QueryCache(
            config.cache.enhancement_size, config.cache.enhancement_ttl_seconds
        )
        self.embedding_cache: QueryCache[list[float]] = QueryCache(
            config.cache.embedding_size, config.cache.embedding_ttl_seconds
        )
        self.llm = llm or self._create_llm_client()
        self.embedder = embedder or EmbeddingProvider(
            config.embedding, self.http, cache=self.embedding_cache
        )

        rag = config.rag
        self.enhancer = QueryEnhancer(
            self.llm,
            model=rag.enhancer_model or config.llm.model,
            max_tokens=rag.enhancer_max_tokens,
            temperature=rag.enhancer_temperature,
            cache=self.enhancement_cache,
            enabled=rag.enhance_queries,
        )
        self.search = HybridSearch(
            self.catalog_repo,
            dimension=config.embedding.dimension,
            match_count=rag.match_count,
            vector_threshold=rag.vector_threshold,
            alpha=rag.hybrid_alpha,
        )
        self.composer = ContextComposer(
            self.search,
            self.llm,
            model=config.llm.model,
            top_k=rag.top_k,
            max_context_chars=rag.max_context_chars,
            max_tokens=config.llm.max_tokens,
            temperature=config.llm.temperature,
        )
        self.orchestrator = RagOrchestrator(self.enhancer, self.embedder, self.composer)

        # Channels
        self.messenger = messenger_transport or MessengerTransport(config.facebook, self.http)
        self.telegram = telegram_transport or TelegramTransport(config.telegram)
        self.transports: dict[Channel, ChannelTransport] = {
            Channel.MESSENGER: self.messenger,
            Channel.TELEGRAM: self.telegram,
        }
        self.handler = ChannelMessageHandler(
            self.binding_repo,
            self.session_manager,
            self.orchestrator,
            self.transports,
            history_turns=rag.history_turns,
        )
        self.bindings = BindingService(
            self.binding_repo,
            self.messenger,
            self.telegram,
            public_url=config.server.public_url,
        )
        self.rate_limiter = rate_limiter or InMemoryRateLimiter(
            config.rate_limit.requests, config.rate_limit.interval_seconds
        )

    async def start(self) -> None:
        """Initialize and start all components."""
        await self.db.initialize()

        if not self.config.facebook.app_secret:
            logger.warning("messenger_signature_verification_disabled")
        if not self.config.server.admin_token:
            logger.warning("admin_routes_unprotected")

        logger.info(
            "shopchat_started",
            llm_backend=self.config.llm.backend,
            model=self.config.llm.model,
            embedding_dimension=self.config.embedding.dimension,
        )

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        await tasks.drain()
        for transport in self.transports.values():
            try:
                await transport.close()
            except Exception as e:
                logger.error("transport_close_error", channel=transport.channel.value, error=str(e))
        await self.http.aclose()
        await self.db.close()
        logger.info("shopchat_stopped")

    def _create_llm_client(self) -> LLMClient:
        match self.config.llm.backend:
            case "openai":
                return OpenAIClient(self.config.openai)
            case "anthropic":
                if not self.config.anthropic:
                    raise ConfigurationError(
                        "llm.backend is 'anthropic' but there is no 'anthropic' section in config"
                    )
                return AnthropicClient(self.config.anthropic)
            case _:
                raise ConfigurationError(f"Unknown LLM backend: {self.config.llm.backend}")
