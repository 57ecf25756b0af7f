"""Tests for the embedding and retrieval caches."""

from __future__ import annotations

import math
from types import SimpleNamespace

import pytest

from promptloom.ai.memory.embeddings import (
    EmbeddingCache,
    OpenAIEmbeddingService,
    blend_vectors,
    cosine_similarity,
)
from promptloom.ai.memory.retrieval_cache import RetrievalCache, RetrievalHistory, RetrievalTurn
from promptloom.services.settings import EmbeddingEndpointSettings

from tests.helpers import result


def test_embedding_cache_is_lru() -> None:
    cache = EmbeddingCache(max_items=2)
    cache.set("a", "m", [1.0])
    cache.set("b", "m", [2.0])
    assert cache.get("a", "m") == (1.0,)

    cache.set("c", "m", [3.0])

    assert cache.get("b", "m") is None
    assert cache.get("a", "m") == (1.0,)
    assert cache.get("a", "other-model") is None
    assert cache.stats.hits == 2


def test_cosine_similarity_edge_cases() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0], [1.0, 2.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_blend_vectors_weights_previous_turns_by_decay() -> None:
    blended = blend_vectors([1.0, 0.0], [[0.0, 1.0], [0.0, 1.0], [9.0]], 0.5)

    total = 1.0 + 0.5 + 0.25
    assert blended[0] == pytest.approx(1.0 / total)
    assert blended[1] == pytest.approx(0.75 / total)


def test_retrieval_cache_matches_similar_vectors() -> None:
    cache = RetrievalCache(max_entries=2)
    hits = [result("e1", "alpha", 0.9)]
    cache.store("first", (1.0, 0.0), hits)

    assert cache.find("other text", (0.99, 0.05), threshold=0.95) == tuple(hits)
    assert cache.find("other text", (0.0, 1.0), threshold=0.95) is None
    assert cache.stats.hits == 1
    assert cache.stats.misses == 1


def test_retrieval_cache_without_vector_uses_exact_query() -> None:
    cache = RetrievalCache()
    cache.store("same", None, [result("e1", "alpha", 0.9)])

    assert cache.find("same", None, threshold=0.95) is not None
    assert cache.find("different", None, threshold=0.95) is None


def test_retrieval_cache_evicts_oldest() -> None:
    cache = RetrievalCache(max_entries=1)
    cache.store("a", None, [])
    cache.store("b", None, [])

    assert cache.find("a", None, threshold=0.9) is None
    assert cache.stats.size == 1


def test_retrieval_history_ring_buffer() -> None:
    ring = RetrievalHistory(capacity=2)
    for name in ("one", "two", "three"):
        ring.append(RetrievalTurn(query=name, vector=None if name == "two" else (1.0,), results=()))

    assert [turn.query for turn in ring.recent(5)] == ["three", "two"]
    assert ring.recent_vectors(3) == [(1.0,)]

    ring.resize(1)
    assert ring.capacity == 1
    assert [turn.query for turn in ring] == ["three"]


class _FakeEmbeddings:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(data=[SimpleNamespace(index=0, embedding=[0.5, math.sqrt(0.75)])])


@pytest.mark.asyncio
async def test_openai_embedding_service_uses_client() -> None:
    embeddings = _FakeEmbeddings()
    client = SimpleNamespace(embeddings=embeddings)
    service = OpenAIEmbeddingService(EmbeddingEndpointSettings(model="default-model"), client=client)  # type: ignore[arg-type]

    vector = await service.embed("hello", "text-embedding-3-large")

    assert vector == [0.5, math.sqrt(0.75)]
    assert embeddings.calls == [{"model": "text-embedding-3-large", "input": ["hello"]}]
