"""Per-run caches for knowledge retrieval results."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from ..orchestration.types import SearchResult
from .embeddings import Vector, cosine_similarity


@dataclass(slots=True)
class _CacheEntry:
    query: str
    vector: Vector | None
    results: tuple[SearchResult, ...]
    created_at: float


@dataclass(slots=True)
class RetrievalCacheStats:
    hits: int = 0
    misses: int = 0
    size: int = 0


class RetrievalCache:
    """FIFO cache of recent retrievals matched by query-vector similarity.

    Lookups compare the query vector against cached vectors and return the
    results of the most similar entry at or above ``threshold``. Queries
    without a vector fall back to exact text matching.
    """

    def __init__(self, *, max_entries: int = 20) -> None:
        self._max_entries = max(1, int(max_entries))
        self._entries: deque[_CacheEntry] = deque()
        self._stats = RetrievalCacheStats()

    @property
    def stats(self) -> RetrievalCacheStats:
        self._stats.size = len(self._entries)
        return self._stats

    def find(self, query: str, vector: Vector | None, *, threshold: float) -> tuple[SearchResult, ...] | None:
        if vector is not None:
            best: _CacheEntry | None = None
            best_score = threshold
            for entry in self._entries:
                if entry.vector is None:
                    continue
                score = cosine_similarity(vector, entry.vector)
                if score >= best_score:
                    best, best_score = entry, score
            if best is not None:
                self._stats.hits += 1
                return best.results
        else:
            for entry in self._entries:
                if entry.query == query:
                    self._stats.hits += 1
                    return entry.results
        self._stats.misses += 1
        return None

    def store(self, query: str, vector: Vector | None, results: Sequence[SearchResult]) -> None:
        self._entries.append(
            _CacheEntry(query=query, vector=vector, results=tuple(results), created_at=time.time())
        )
        while len(self._entries) > self._max_entries:
            self._entries.popleft()

    def clear(self) -> None:
        self._entries.clear()


@dataclass(slots=True, frozen=True)
class RetrievalTurn:
    """One retrieval recorded for temporal aggregation."""

    query: str
    vector: Vector | None
    results: tuple[SearchResult, ...]
    timestamp: float = field(default_factory=time.time)


class RetrievalHistory:
    """Bounded ring buffer of recent retrievals (oldest first)."""

    def __init__(self, *, capacity: int = 10) -> None:
        self._buffer: deque[RetrievalTurn] = deque(maxlen=max(1, int(capacity)))

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def capacity(self) -> int:
        return self._buffer.maxlen or 0

    def __iter__(self) -> Iterator[RetrievalTurn]:
        return iter(self._buffer)

    def resize(self, capacity: int) -> None:
        """Change the capacity, keeping the newest turns."""
        capacity = max(1, int(capacity))
        if capacity != self._buffer.maxlen:
            self._buffer = deque(self._buffer, maxlen=capacity)

    def append(self, turn: RetrievalTurn) -> None:
        self._buffer.append(turn)

    def recent(self, count: int) -> list[RetrievalTurn]:
        """Return up to ``count`` turns, newest first."""
        if count <= 0:
            return []
        return list(reversed(self._buffer))[:count]

    def recent_vectors(self, count: int) -> list[Vector]:
        return [turn.vector for turn in self.recent(len(self._buffer)) if turn.vector is not None][:count]


__all__ = ["RetrievalCache", "RetrievalCacheStats", "RetrievalHistory", "RetrievalTurn"]
