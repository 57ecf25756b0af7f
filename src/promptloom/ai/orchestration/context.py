"""Per-run pipeline context: inputs, services, shared state and log entries."""

from __future__ import annotations

import inspect
import logging
import math
import random
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Literal, Sequence, TypeVar

from ...services.settings import (
    ContextManagementSettings,
    FormatRule,
    KnowledgeSettings,
    PipelineSettings,
    WorldbookSettings,
)
from ...utils.logging import resolve_level
from ..ai_types import AttachmentService, EmbeddingService, KnowledgeSearchService, TokenCountingService
from ..memory.embeddings import EmbeddingCache
from ..memory.retrieval_cache import RetrievalCache, RetrievalHistory
from .types import (
    AgentConfig,
    Attachment,
    ChatSession,
    KnowledgeEntry,
    ModelCapabilities,
    ProcessableMessage,
    SearchResult,
    UserProfile,
    Worldbook,
    WorldbookEntry,
)

LOGGER = logging.getLogger(__name__)
T = TypeVar("T")
LogLevel = Literal["debug", "info", "warn", "error"]

__all__ = [
    "FormatDelta",
    "PipelineContext",
    "PipelineLog",
    "PipelineServices",
    "SharedState",
    "TruncationStats",
    "maybe_await",
]


async def maybe_await(value: T | Awaitable[T]) -> T:
    if inspect.isawaitable(value):
        return await value  # type: ignore[no-any-return]
    return value  # type: ignore[return-value]


def estimate_tokens(text: str) -> int:
    """Rough token cost used when no counting service is configured."""
    return math.ceil(len(text) / 4) if text else 0


# -----------------------------------------------------------------------------
# Log Entries & Statistics
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class PipelineLog:
    processor_id: str
    level: LogLevel
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "processorId": self.processor_id,
            "level": self.level,
            "message": self.message,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


@dataclass(slots=True)
class TruncationStats:
    """Outcome of the token limiter, kept for preview/diagnostics."""

    original_history_count: int = 0
    final_history_count: int = 0
    truncated_count: int = 0
    partially_truncated_count: int = 0
    preset_tokens: int = 0
    history_tokens: int = 0
    total_tokens: int = 0
    saved_tokens: int = 0
    max_context_tokens: int = 0

    def as_payload(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class FormatDelta:
    """Token and character totals before and after the shape formatter."""

    tokens_before: int = 0
    tokens_after: int = 0
    chars_before: int = 0
    chars_after: int = 0

    @property
    def token_delta(self) -> int:
        return self.tokens_after - self.tokens_before

    @property
    def char_delta(self) -> int:
        return self.chars_after - self.chars_before


# -----------------------------------------------------------------------------
# Shared State
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class SharedState:
    """Typed cross-stage signals for one run.

    Attributes:
        worldbooks: Worldbooks preloaded by the caller for this agent.
        activated_entries: Entries committed by the worldbook stage.
        outlet_entries: Outlet-positioned entries keyed by outlet name.
        embedding_cache: Query embedding cache for the knowledge stage.
        retrieval_cache: Similarity cache of recent retrievals.
        knowledge_history: Recent retrievals used for temporal aggregation.
        truncation_stats: Written by the token limiter.
        format_delta: Written by the shape formatter.
        model_format_rules: Model-level defaults for the shape formatter.
        variables: ``setvar``/``getvar`` macro storage.
    """

    worldbooks: list[Worldbook] = field(default_factory=list)
    activated_entries: list[WorldbookEntry] = field(default_factory=list)
    outlet_entries: dict[str, list[WorldbookEntry]] = field(default_factory=dict)
    embedding_cache: EmbeddingCache = field(default_factory=EmbeddingCache)
    retrieval_cache: RetrievalCache = field(default_factory=RetrievalCache)
    knowledge_history: RetrievalHistory = field(default_factory=RetrievalHistory)
    truncation_stats: TruncationStats | None = None
    format_delta: FormatDelta | None = None
    model_format_rules: list[FormatRule] = field(default_factory=list)
    variables: dict[str, str] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Services
# -----------------------------------------------------------------------------


class PipelineServices:
    """Async facade over the optional external services.

    Services may be synchronous or return awaitables; every method here is a
    coroutine so stages never have to care.
    """

    def __init__(
        self,
        *,
        token_counter: TokenCountingService | None = None,
        embedder: EmbeddingService | None = None,
        knowledge: KnowledgeSearchService | None = None,
        attachments: AttachmentService | None = None,
    ) -> None:
        self.token_counter = token_counter
        self.embedder = embedder
        self.knowledge = knowledge
        self.attachments = attachments

    async def count(self, text: str, model_id: str | None) -> int:
        if self.token_counter is None:
            return estimate_tokens(text)
        return int(await maybe_await(self.token_counter.count(text, model_id)))

    async def count_message(self, text: str, model_id: str | None, attachments: Sequence[Attachment] = ()) -> int:
        if self.token_counter is None:
            return estimate_tokens(text)
        return int(await maybe_await(self.token_counter.count_message(text, model_id, attachments)))

    async def embed(self, text: str, model_id: str, profile: str | None = None) -> list[float]:
        if self.embedder is None:
            raise RuntimeError("No embedding service configured")
        vector = await maybe_await(self.embedder.embed(text, model_id, profile))
        return [float(component) for component in vector]

    async def search(self, query: str, **kwargs: Any) -> list[SearchResult]:
        if self.knowledge is None:
            raise RuntimeError("No knowledge search service configured")
        return list(await maybe_await(self.knowledge.search(query, **kwargs)))

    async def get_entries(self, ids: Sequence[str]) -> list[tuple[str, str, KnowledgeEntry]]:
        if self.knowledge is None:
            raise RuntimeError("No knowledge search service configured")
        return list(await maybe_await(self.knowledge.get_entries(ids)))

    async def wait_for_completion(self, attachments: Sequence[Attachment]) -> list[Attachment]:
        if self.attachments is None:
            return list(attachments)
        return list(await maybe_await(self.attachments.wait_for_completion(attachments)))

    async def read_binary(self, path: str) -> bytes:
        if self.attachments is None:
            raise RuntimeError("No attachment service configured")
        return await maybe_await(self.attachments.read_binary(path))


# -----------------------------------------------------------------------------
# Pipeline Context
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class PipelineContext:
    """Mutable state shared by all stages of one pipeline run."""

    session: ChatSession | None
    agent: AgentConfig
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    user_profile: UserProfile | None = None
    model_id: str = ""
    capabilities: ModelCapabilities | None = None
    services: PipelineServices = field(default_factory=PipelineServices)
    rng: random.Random = field(default_factory=random.Random)
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_preview: bool = False
    messages: list[ProcessableMessage] = field(default_factory=list)
    logs: list[PipelineLog] = field(default_factory=list)
    shared: SharedState = field(default_factory=SharedState)

    @property
    def effective_model_id(self) -> str:
        return self.model_id or self.agent.model_id

    @property
    def effective_capabilities(self) -> ModelCapabilities:
        return self.capabilities or self.agent.capabilities

    @property
    def worldbook_settings(self) -> WorldbookSettings:
        return self.agent.worldbook_settings or self.settings.worldbook

    @property
    def knowledge_settings(self) -> KnowledgeSettings:
        return self.agent.knowledge_settings or self.settings.knowledge

    @property
    def context_management(self) -> ContextManagementSettings:
        return self.agent.context_management or self.settings.context_management

    def history_messages(self) -> list[ProcessableMessage]:
        return [message for message in self.messages if message.is_history]

    def log(self, processor_id: str, level: LogLevel, message: str, **details: Any) -> PipelineLog:
        """Record a pipeline log entry and mirror it to the module logger."""
        entry = PipelineLog(processor_id=processor_id, level=level, message=message, details=details)
        self.logs.append(entry)
        LOGGER.log(resolve_level(level), message, extra={"stage": processor_id})
        return entry
