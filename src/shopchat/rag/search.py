"""Hybrid product retrieval: cosine similarity over stored embeddings merged with FTS5 bm25."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from shopchat.errors import EmbeddingDimensionError, ValidationError
from shopchat.log import get_logger
from shopchat.storage.catalog_repo import CatalogRepository
from shopchat.storage.models import Product

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ScoredProduct:
    product: Product
    score: float
    vector_score: float = 0.0
    lexical_score: float = 0.0


def lexical_score(bm25: float) -> float:
    """Map an FTS5 bm25 rank (lower is better, usually negative) into [0, 1)."""
    s = max(-bm25, 0.0)
    return s / (1.0 + s)


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * query_norm
    dots = matrix @ query
    return np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)


class HybridSearch:
    def __init__(
        self,
        catalog: CatalogRepository,
        dimension: int,
        match_count: int = 20,
        vector_threshold: float = 0.3,
        alpha: float = 0.5,
    ):
        self._catalog = catalog
        self._dimension = dimension
        self._match_count = match_count
        self._threshold = vector_threshold
        self._alpha = alpha

    async def search(
        self,
        tenant_ids: Sequence[str],
        query_embedding: Sequence[float],
        query_text: str,
    ) -> list[ScoredProduct]:
        """Products of ``tenant_ids`` ordered by merged score, best first.

        Ordering is deterministic: ties break on ascending product id.
        Catalog failures propagate as :class:`RetrievalError`.
        """
        if not tenant_ids:
            raise ValidationError("tenant_ids must not be empty")
        if len(query_embedding) != self._dimension:
            raise EmbeddingDimensionError(self._dimension, len(query_embedding))

        vector_hits = await self._vector_matches(tenant_ids, query_embedding)
        lexical_hits = await self._catalog.keyword_search(
            tenant_ids, query_text, self._match_count
        )

        products: dict[str, Product] = {}
        vec: dict[str, float] = {}
        lex: dict[str, float] = {}
        for product, similarity in vector_hits:
            products[product.id] = product
            vec[product.id] = similarity
        for product, rank in lexical_hits:
            products.setdefault(product.id, product)
            lex[product.id] = lexical_score(rank)

        results = [
            ScoredProduct(
                product=products[pid],
                score=self._alpha * vec.get(pid, 0.0) + (1 - self._alpha) * lex.get(pid, 0.0),
                vector_score=vec.get(pid, 0.0),
                lexical_score=lex.get(pid, 0.0),
            )
            for pid in products
        ]
        results.sort(key=lambda r: (-r.score, r.product.id))

        logger.debug(
            "hybrid_search_done",
            tenant_ids=list(tenant_ids),
            vector_hits=len(vector_hits),
            lexical_hits=len(lexical_hits),
            merged=len(results),
        )
        return results

    async def _vector_matches(
        self, tenant_ids: Sequence[str], query_embedding: Sequence[float]
    ) -> list[tuple[Product, float]]:
        candidates = await self._catalog.embedded_products(tenant_ids)

        usable: list[Product] = []
        for product in candidates:
            if not product.embedding or len(product.embedding) != self._dimension:
                logger.warning(
                    "product_embedding_skipped",
                    product_id=product.id,
                    length=len(product.embedding or []),
                )
                continue
            usable.append(product)
        if not usable:
            return []

        matrix = np.asarray([p.embedding for p in usable], dtype=np.float64)
        scores = cosine_scores(np.asarray(query_embedding, dtype=np.float64), matrix)

        hits = [
            (product, float(score))
            for product, score in zip(usable, scores)
            if score >= self._threshold
        ]
        hits.sort(key=lambda h: (-h[1], h[0].id))
        return hits[: self._match_count]
