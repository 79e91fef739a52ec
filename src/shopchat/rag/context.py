"""Grounded completion: retrieved products rendered into a bounded prompt context."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from shopchat.ai.client import LLMClient
from shopchat.log import get_logger
from shopchat.rag.prompts import build_rag_system_prompt
from shopchat.rag.search import HybridSearch, ScoredProduct
from shopchat.storage.models import Product

logger = get_logger(__name__)

NO_ANSWER_REPLY = "Sorry, I couldn't find that."
DESCRIPTION_LIMIT = 140


def _format_price(price: Optional[float]) -> str:
    if price is None:
        return "price on request"
    return f"${price:,.2f}".replace(".00", "")


def format_product(index: int, product: Product) -> str:
    """One numbered context block for a product."""
    description = " ".join((product.description or "").split())[:DESCRIPTION_LIMIT]
    lines = [f"#{index} {product.name} - {_format_price(product.price)}"]
    if product.category_name:
        lines.append(f"Category: {product.category_name}")
    if product.size:
        lines.append(f"Size: {product.size}")
    lines.append(f"Key: {description}")
    if product.image_url:
        lines.append(f"Image: {product.image_url}")
    if product.sku:
        lines.append(f"SKU: {product.sku}")
    if product.stock:
        lines.append(f"Stock: {product.stock}")
    return "\n".join(lines)


def build_context(products: Sequence[Product], max_chars: int) -> str:
    """Join product blocks until the next whole block would exceed ``max_chars``."""
    blocks: list[str] = []
    used = 0
    for i, product in enumerate(products, start=1):
        block = format_product(i, product)
        cost = len(block) + (1 if blocks else 0)
        if used + cost > max_chars:
            break
        blocks.append(block)
        used += cost
    return "\n".join(blocks)


@dataclass
class ComposedContext:
    products: list[ScoredProduct] = field(default_factory=list)
    context: str = ""


class ContextComposer:
    def __init__(
        self,
        search: HybridSearch,
        llm: LLMClient,
        model: str,
        top_k: int = 5,
        max_context_chars: int = 4000,
        max_tokens: int = 400,
        temperature: float = 0.7,
    ):
        self._search = search
        self._llm = llm
        self._model = model
        self._top_k = top_k
        self._max_chars = max_context_chars
        self._max_tokens = max_tokens
        self._temperature = temperature

    async def compose(
        self,
        tenant_ids: Sequence[str],
        query_embedding: Sequence[float],
        query_text: str,
    ) -> ComposedContext:
        ranked = await self._search.search(tenant_ids, query_embedding, query_text)
        top = ranked[: self._top_k]
        return ComposedContext(
            products=top,
            context=build_context([r.product for r in top], self._max_chars),
        )

    async def complete(
        self,
        tenant_ids: Sequence[str],
        query_embedding: Sequence[float],
        original_query: str,
        optimized_query: str,
        conversation_context: Optional[str] = None,
    ) -> str:
        composed = await self.compose(tenant_ids, query_embedding, optimized_query)
        return await self.reply(composed, original_query, conversation_context)

    async def reply(
        self,
        composed: ComposedContext,
        original_query: str,
        conversation_context: Optional[str] = None,
    ) -> str:
        """Ask the model to answer ``original_query`` from an already composed context."""
        system = build_rag_system_prompt(composed.context, conversation_context)
        response = await self._llm.chat(
            system=system,
            messages=[{"role": "user", "content": original_query}],
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )
        text = response.text.strip()
        logger.debug(
            "rag_completion_done",
            products=len(composed.products),
            context_chars=len(composed.context),
            output_tokens=response.output_tokens,
        )
        return text or NO_ANSWER_REPLY
