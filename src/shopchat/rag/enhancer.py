"""Rewrites a raw customer utterance into a search-optimised query.

The rewrite is produced by the chat model in JSON mode. Every failure path
(service error, unparsable output, empty rewrite) falls back to the original
text, so enhancement can only ever improve retrieval, never break it.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

from shopchat.ai.client import LLMClient
from shopchat.log import get_logger
from shopchat.rag.cache import QueryCache
from shopchat.rag.prompts import ENHANCER_SYSTEM_PROMPT, build_enhancer_user_prompt

logger = get_logger(__name__)

_KHMER = re.compile(r"[\u1780-\u17FF]")
_NON_WORD = re.compile(r"[^\w\s\u1780-\u17FF]")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")

FILLER_WORDS = frozenset({
    "i", "want", "need", "looking", "for", "do", "you", "have", "any",
    "can", "get", "please", "thanks", "thank", "hello", "hi", "hey",
    "the", "a", "an", "is", "are", "was", "were", "be", "been",
    "what", "where", "when", "how", "why", "which", "who",
})


@dataclass(frozen=True)
class EnhancedQuery:
    original: str
    optimized: str
    keywords: list[str] = field(default_factory=list)
    intent: str = "query"


def detect_language(text: str) -> str:
    return "Khmer" if _KHMER.search(text) else "English"


def _tokens(text: str) -> list[str]:
    return _NON_WORD.sub(" ", text.lower()).split()


def extract_keywords(text: str, limit: int = 10) -> list[str]:
    """Unique non-filler words longer than two characters, in order of appearance."""
    keywords: list[str] = []
    for word in _tokens(text):
        if len(word) > 2 and word not in FILLER_WORDS and word not in keywords:
            keywords.append(word)
    return keywords[:limit]


def fallback_enhancement(query: str) -> EnhancedQuery:
    return EnhancedQuery(
        original=query,
        optimized=query,
        keywords=extract_keywords(query),
        intent="query",
    )


def preserve_terms(original: str, rewrite: str) -> str:
    """Prefix ``original`` when the rewrite kept none of its content words."""
    content = {w for w in _tokens(original) if w not in FILLER_WORDS}
    if not content or content & set(_tokens(rewrite)):
        return rewrite
    return f"{original} {rewrite}"


class QueryEnhancer:
    """``enhance(raw_query, conversation_context)`` never raises and never returns an empty rewrite."""

    def __init__(
        self,
        llm: LLMClient,
        model: str,
        max_tokens: int = 200,
        temperature: float = 0.2,
        cache: Optional[QueryCache[EnhancedQuery]] = None,
        enabled: bool = True,
    ):
        self._llm = llm
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._cache = cache
        self._enabled = enabled

    async def enhance(
        self,
        raw_query: str,
        conversation_context: Optional[str] = None,
        scope: Sequence[str] = (),
    ) -> EnhancedQuery:
        """``scope`` (the tenant ids) partitions cached rewrites between shops."""
        query = raw_query.strip()
        if not query or not self._enabled:
            return fallback_enhancement(raw_query)

        if self._cache is not None:
            cached = self._cache.get(query, conversation_context, scope)
            if cached is not None:
                logger.debug("enhancement_cache_hit", query=query)
                return cached

        try:
            enhanced = await self._rewrite(query, conversation_context)
        except Exception as e:
            logger.warning("query_enhancement_failed", query=query, error=str(e))
            return fallback_enhancement(query)

        if self._cache is not None and enhanced.optimized != enhanced.original:
            self._cache.set(query, enhanced, conversation_context, scope)
        return enhanced

    async def _rewrite(self, query: str, conversation_context: Optional[str]) -> EnhancedQuery:
        system = ENHANCER_SYSTEM_PROMPT.format(language=detect_language(query))
        response = await self._llm.chat(
            system=system,
            messages=[
                {"role": "user", "content": build_enhancer_user_prompt(query, conversation_context)}
            ],
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            json_mode=True,
        )

        content = _CODE_FENCE.sub("", response.text.strip())
        try:
            parsed = json.loads(content or "{}")
        except json.JSONDecodeError:
            logger.warning("query_enhancement_unparsable", query=query, content=content[:200])
            return fallback_enhancement(query)
        if not isinstance(parsed, dict):
            return fallback_enhancement(query)

        rewrite = parsed.get("optimized")
        if not isinstance(rewrite, str) or not rewrite.strip():
            return fallback_enhancement(query)

        keywords = parsed.get("keywords")
        if not isinstance(keywords, list):
            keywords = extract_keywords(query)

        return EnhancedQuery(
            original=query,
            optimized=preserve_terms(query, rewrite.strip()),
            keywords=[str(k) for k in keywords],
            intent=str(parsed.get("intent") or "general query"),
        )
