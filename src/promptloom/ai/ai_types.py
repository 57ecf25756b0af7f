"""Shared typing contracts for the services the pipeline consumes.

Every service method may be implemented synchronously or as a coroutine;
the pipeline awaits results when they are awaitable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Awaitable, Protocol, Sequence, TypeVar, Union

if TYPE_CHECKING:
    from .orchestration.types import Attachment, KnowledgeEntry, SearchResult

T = TypeVar("T")
MaybeAwaitable = Union[T, Awaitable[T]]


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class TokenCountingService(Protocol):
    """Counts tokens for a model, optionally including attachment cost."""

    def count(self, text: str, model_id: str | None) -> MaybeAwaitable[int]:
        ...

    def count_message(
        self,
        text: str,
        model_id: str | None,
        attachments: Sequence[Attachment] = (),
    ) -> MaybeAwaitable[int]:
        ...


class EmbeddingService(Protocol):
    def embed(self, text: str, model_id: str, profile: str | None = None) -> MaybeAwaitable[Sequence[float]]:
        """Return the embedding vector for *text*."""
        ...


class KnowledgeSearchService(Protocol):
    """Keyword/vector search over the knowledge bases."""

    def search(
        self,
        query: str,
        *,
        vector: Sequence[float] | None = None,
        limit: int = 5,
        min_score: float = 0.3,
        source_id: str | None = None,
        model_id: str | None = None,
    ) -> MaybeAwaitable[Sequence[SearchResult]]:
        ...

    def get_entries(self, ids: Sequence[str]) -> MaybeAwaitable[Sequence[tuple[str, str, KnowledgeEntry]]]:
        """Return ``(kb_id, kb_name, entry)`` triples for the given entry ids."""
        ...


class AttachmentService(Protocol):
    def wait_for_completion(self, attachments: Sequence[Attachment]) -> MaybeAwaitable[Sequence[Attachment]]:
        """Wait for pending transcription/extraction jobs and return updated snapshots."""
        ...

    def read_binary(self, path: str) -> MaybeAwaitable[bytes]:
        ...


__all__ = [
    "AttachmentService",
    "EmbeddingService",
    "KnowledgeSearchService",
    "TokenCounterProtocol",
    "TokenCountingService",
]
