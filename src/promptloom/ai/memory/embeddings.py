"""Embedding provider adapters, the per-run query embedding cache, and vector math."""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Sequence

from openai import APIConnectionError, APIError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ...services.settings import EmbeddingEndpointSettings

LOGGER = logging.getLogger(__name__)
Vector = tuple[float, ...]


class OpenAIEmbeddingService:
    """Embedding service that wraps :class:`openai.AsyncOpenAI`.

    ``model_id`` passed to :meth:`embed` wins over the configured default
    model; the ``profile`` argument is accepted for protocol compatibility and
    only used for logging.
    """

    def __init__(
        self,
        settings: EmbeddingEndpointSettings,
        *,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or AsyncOpenAI(
            api_key=settings.api_key or None,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
        )

    @property
    def settings(self) -> EmbeddingEndpointSettings:
        return self._settings

    async def embed(self, text: str, model_id: str | None = None, profile: str | None = None) -> list[float]:
        model = model_id or self._settings.model
        LOGGER.debug("Embedding %s chars with %s (profile=%s)", len(text), model, profile)
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.embeddings.create(model=model, input=[text])
        data = sorted(response.data, key=lambda item: getattr(item, "index", 0))
        if not data:
            raise RuntimeError(f"Embedding endpoint returned no vectors for model {model}")
        return normalize_vector(getattr(data[0], "embedding", []))

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIConnectionError,
                    APITimeoutError,
                    RateLimitError,
                    APIStatusError,
                    APIError,
                )
            ),
        )


@dataclass(slots=True)
class EmbeddingCacheStats:
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class EmbeddingCache:
    """LRU cache of query embeddings keyed by model and exact query text."""

    def __init__(self, *, max_items: int = 100) -> None:
        self._max_items = max(1, int(max_items))
        self._entries: OrderedDict[str, Vector] = OrderedDict()
        self.stats = EmbeddingCacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, text: str, model_id: str) -> Vector | None:
        key = self._key(text, model_id)
        vector = self._entries.get(key)
        if vector is None:
            self.stats.misses += 1
            return None
        self._entries.move_to_end(key)
        self.stats.hits += 1
        return vector

    def set(self, text: str, model_id: str, vector: Sequence[float]) -> None:
        key = self._key(text, model_id)
        self._entries[key] = tuple(float(component) for component in vector)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_items:
            self._entries.popitem(last=False)

    @staticmethod
    def _key(text: str, model_id: str) -> str:
        return f"{model_id}:{text}"


def cosine_similarity(lhs: Sequence[float], rhs: Sequence[float]) -> float:
    if not lhs or not rhs:
        return 0.0
    if len(lhs) != len(rhs):
        return 0.0
    dot = sum(a * b for a, b in zip(lhs, rhs))
    left = math.sqrt(sum(a * a for a in lhs))
    right = math.sqrt(sum(b * b for b in rhs))
    if left == 0 or right == 0:
        return 0.0
    return dot / (left * right)


def blend_vectors(current: Sequence[float], previous: Sequence[Sequence[float]], decay: float) -> list[float]:
    """Weighted average of ``current`` (weight 1) and ``previous`` (newest first).

    The i-th previous vector gets weight ``decay ** (i + 1)``; vectors whose
    dimension differs from ``current`` are ignored.
    """

    dims = len(current)
    totals = [float(component) for component in current]
    total_weight = 1.0
    for index, vector in enumerate(previous):
        if len(vector) != dims:
            continue
        weight = decay ** (index + 1)
        for position, component in enumerate(vector):
            totals[position] += float(component) * weight
        total_weight += weight
    return [component / total_weight for component in totals]


def normalize_vector(value: object) -> list[float]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return [float(component) for component in value]
    raise TypeError("Embedding vector must be a sequence")


__all__ = [
    "EmbeddingCache",
    "EmbeddingCacheStats",
    "OpenAIEmbeddingService",
    "Vector",
    "blend_vectors",
    "cosine_similarity",
    "normalize_vector",
]
