"""The RAG pipeline: enhance, embed, retrieve and complete."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

from shopchat.log import get_logger
from shopchat.rag.context import ContextComposer
from shopchat.rag.enhancer import EnhancedQuery, QueryEnhancer, fallback_enhancement
from shopchat.rag.search import ScoredProduct

logger = get_logger(__name__)

APOLOGY_REPLY = (
    "Sorry, something went wrong while looking that up. Please try again in a moment."
)


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


@dataclass
class RagAnswer:
    reply: str
    query: EnhancedQuery
    products: list[ScoredProduct] = field(default_factory=list)
    failed: bool = False


class RagOrchestrator:
    """Stateless: one instance is shared by every webhook and playground request."""

    def __init__(self, enhancer: QueryEnhancer, embedder: Embedder, composer: ContextComposer):
        self._enhancer = enhancer
        self._embedder = embedder
        self._composer = composer

    async def run(
        self,
        tenant_ids: Sequence[str],
        user_text: str,
        conversation_context: Optional[str] = None,
    ) -> str:
        answer = await self.answer(tenant_ids, user_text, conversation_context)
        return answer.reply

    async def answer(
        self,
        tenant_ids: Sequence[str],
        user_text: str,
        conversation_context: Optional[str] = None,
    ) -> RagAnswer:
        tenant_ids = list(tenant_ids)
        query = fallback_enhancement(user_text)
        stage = "enhance"
        try:
            query = await self._enhancer.enhance(
                user_text, conversation_context or None, scope=tenant_ids
            )
            logger.info("rag_query_enhanced", original=query.original, optimized=query.optimized)

            stage = "embed"
            embedding = await self._embedder.embed(query.optimized)
            logger.info("rag_query_embedded", dimension=len(embedding))

            stage = "retrieve"
            composed = await self._composer.compose(tenant_ids, embedding, query.optimized)

            stage = "complete"
            reply = await self._composer.reply(composed, user_text, conversation_context or None)
        except Exception as e:
            logger.error(
                "rag_pipeline_failed",
                tenant_ids=tenant_ids,
                original=user_text,
                stage=stage,
                error=str(e),
                error_type=type(e).__name__,
            )
            return RagAnswer(reply=APOLOGY_REPLY, query=query, failed=True)

        logger.info("rag_reply_ready", products=len(composed.products), reply=reply[:80])
        return RagAnswer(reply=reply, query=query, products=composed.products)
