"""TTL + LRU cache for query enhancements and query embeddings."""

from __future__ import annotations

import hashlib
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Sequence, TypeVar

T = TypeVar("T")

_WHITESPACE = re.compile(r"\s+")


@dataclass
class _Entry(Generic[T]):
    value: T
    stored_at: float
    hits: int = 0


class QueryCache(Generic[T]):
    """Bounded cache keyed on normalised query text, a context digest and a tenant scope."""

    def __init__(
        self,
        max_size: int = 500,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: OrderedDict[str, _Entry[T]] = OrderedDict()
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock

    @staticmethod
    def make_key(
        query: str, context: Optional[str] = None, scope: Sequence[str] = ()
    ) -> str:
        normalized = _WHITESPACE.sub(" ", query.strip().lower())
        digest = hashlib.sha256(context.encode("utf-8")).hexdigest() if context else ""
        tenants = ",".join(sorted(set(scope)))
        return f"{tenants}|{normalized}|{digest}"

    def get(
        self, query: str, context: Optional[str] = None, scope: Sequence[str] = ()
    ) -> T | None:
        key = self.make_key(query, context, scope)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self._ttl:
            del self._entries[key]
            return None
        entry.hits += 1
        self._entries.move_to_end(key)
        return entry.value

    def set(
        self,
        query: str,
        value: T,
        context: Optional[str] = None,
        scope: Sequence[str] = (),
    ) -> None:
        key = self.make_key(query, context, scope)
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self._max_size:
            self._entries.popitem(last=False)
        self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, float]:
        now = self._clock()
        entries = list(self._entries.values())
        total_hits = sum(e.hits for e in entries)
        return {
            "size": len(entries),
            "max_size": self._max_size,
            "total_hits": total_hits,
            "avg_hits": total_hits / len(entries) if entries else 0.0,
            "avg_age_seconds": (
                round(sum(now - e.stored_at for e in entries) / len(entries), 3) if entries else 0.0
            ),
        }
