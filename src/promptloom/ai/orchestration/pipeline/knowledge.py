"""Knowledge stage: resolve ``【kb】`` placeholders with retrieved entries.

Placeholder syntax is ``【kb::name::limit::min_score::mode::params】`` (``knowledge``
is accepted as an alias for ``kb`` and every segment is optional). Modes:

``always``
    Retrieve on every run (default).
``gate``
    Retrieve only when one of the comma separated keywords appears in the
    most recent messages.
``turn``
    Retrieve when the number of user messages is a multiple of the interval.
``static``
    Load the listed entry ids directly, with no scoring or gating.

Placeholders whose mode is inactive are removed from the message.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal, Sequence

from ....services.settings import AggregationSettings, KnowledgeSettings
from ...memory.embeddings import Vector, blend_vectors
from ...memory.retrieval_cache import RetrievalHistory, RetrievalTurn
from ..context import PipelineContext
from ..types import ProcessableMessage, SearchResult

LOGGER = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"【(?:kb|knowledge)(?:::([^【】]*?))?】")
_QUERY_BLEND_TURNS = 3
_AGGREGATION_EXTRA = 2

Mode = Literal["always", "gate", "turn", "static"]
_MODES = frozenset({"always", "gate", "turn", "static"})

__all__ = [
    "KnowledgePlaceholder",
    "KnowledgeStage",
    "aggregate_results",
    "format_results",
    "parse_placeholder",
    "scan_placeholders",
]


@dataclass(slots=True, frozen=True)
class KnowledgePlaceholder:
    raw: str
    message_index: int
    kb_name: str | None = None
    limit: int | None = None
    min_score: float | None = None
    mode: Mode = "always"
    params: tuple[str, ...] = ()


def _to_int(value: str) -> int | None:
    try:
        return int(value.strip())
    except ValueError:
        return None


def _to_float(value: str) -> float | None:
    try:
        return float(value.strip())
    except ValueError:
        return None


def parse_placeholder(raw: str, body: str | None, message_index: int = 0) -> KnowledgePlaceholder:
    """Parse the ``name::limit::min_score::mode::params`` body of a placeholder."""

    parts = (body or "").split("::")
    parts += [""] * (5 - len(parts))
    mode = parts[3].strip().lower() or "always"
    if mode not in _MODES:
        LOGGER.debug("Unknown knowledge placeholder mode %r, using 'always'", mode)
        mode = "always"
    params = tuple(item.strip() for item in parts[4].split(",") if item.strip()) if parts[4] else ()
    return KnowledgePlaceholder(
        raw=raw,
        message_index=message_index,
        kb_name=parts[0].strip() or None,
        limit=_to_int(parts[1]) if parts[1].strip() else None,
        min_score=_to_float(parts[2]) if parts[2].strip() else None,
        mode=mode,  # type: ignore[arg-type]
        params=params,
    )


def scan_placeholders(messages: Sequence[ProcessableMessage]) -> list[KnowledgePlaceholder]:
    found: list[KnowledgePlaceholder] = []
    for index, message in enumerate(messages):
        for match in PLACEHOLDER_RE.finditer(message.text):
            found.append(parse_placeholder(match.group(0), match.group(1), index))
    return found


# -----------------------------------------------------------------------------
# Result Handling
# -----------------------------------------------------------------------------


def _result_key(result: SearchResult) -> str:
    return result.entry.id or result.entry.key


def aggregate_results(
    current: Sequence[SearchResult],
    history: RetrievalHistory,
    settings: AggregationSettings,
) -> list[SearchResult]:
    """Blend ``current`` with decayed results from recent turns.

    The i-th most recent turn contributes its scores multiplied by
    ``result_decay ** (i + 1)``; an entry seen more than once keeps its
    highest weighted score.
    """

    merged: dict[str, SearchResult] = {_result_key(result): result for result in current}
    for index, turn in enumerate(history.recent(settings.aggregation_turns)):
        weight = settings.result_decay ** (index + 1)
        for result in turn.results:
            key = _result_key(result)
            weighted = result.score * weight
            existing = merged.get(key)
            if existing is None:
                merged[key] = result.with_score(weighted)
            elif weighted > existing.score:
                merged[key] = existing.with_score(weighted)
    ranked = sorted(merged.values(), key=lambda result: result.score, reverse=True)
    return ranked[: len(current) + _AGGREGATION_EXTRA]


def _limit_chars(results: Sequence[SearchResult], max_chars: int | None) -> list[SearchResult]:
    if not max_chars or max_chars <= 0:
        return list(results)
    kept: list[SearchResult] = []
    total = 0
    for result in results:
        size = len(result.entry.content)
        if total + size > max_chars:
            break
        kept.append(result)
        total += size
    return kept


def format_results(results: Sequence[SearchResult], settings: KnowledgeSettings) -> str:
    if not results:
        return settings.empty_text
    items = []
    for result in results:
        item = settings.item_template
        item = item.replace("{kb_name}", result.kb_name or "Unknown knowledge base")
        item = item.replace("{key}", result.entry.key or "Untitled")
        item = item.replace("{content}", result.entry.content)
        item = item.replace("{score}", f"{result.score:.2f}")
        item = item.replace("{tags}", ", ".join(result.entry.tags))
        items.append(item)
    block = settings.result_template.replace("{count}", str(len(results)))
    return block.replace("{items}", "\n\n".join(items))


# -----------------------------------------------------------------------------
# Stage
# -----------------------------------------------------------------------------


class KnowledgeStage:
    """Replace knowledge placeholders with formatted retrieval results."""

    id = "knowledge"
    name = "Knowledge Resolver"

    async def execute(self, context: PipelineContext) -> None:
        placeholders = scan_placeholders(context.messages)
        if not placeholders:
            return

        settings = context.knowledge_settings
        history = context.shared.knowledge_history
        history.resize(settings.aggregation.history_limit)
        removed = 0
        resolved = 0
        for placeholder in placeholders:
            message = context.messages[placeholder.message_index]
            if not self._is_active(placeholder, context, settings):
                self._replace(message, placeholder.raw, "")
                removed += 1
                continue
            try:
                if placeholder.mode == "static":
                    results = await self._load_static(placeholder, context)
                else:
                    results = await self._retrieve(placeholder, context, settings)
            except Exception as exc:
                LOGGER.debug("Knowledge retrieval failed", exc_info=True)
                context.log(self.id, "warn", f"Knowledge retrieval failed for {placeholder.raw}: {exc}")
                self._replace(message, placeholder.raw, "")
                removed += 1
                continue

            self._replace(message, placeholder.raw, format_results(results, settings))
            resolved += 1
            context.log(
                self.id,
                "info",
                f"Resolved knowledge placeholder {placeholder.raw} with {len(results)} result(s)",
                kb_name=placeholder.kb_name,
                mode=placeholder.mode,
                results=len(results),
            )

        if removed:
            context.log(self.id, "info", f"Removed {removed} inactive knowledge placeholder(s)", removed=removed)

    @staticmethod
    def _replace(message: ProcessableMessage, raw: str, replacement: str) -> None:
        message.replace_text(re.compile(re.escape(raw)), lambda _match: replacement, count=1)

    @staticmethod
    def _is_active(placeholder: KnowledgePlaceholder, context: PipelineContext, settings: KnowledgeSettings) -> bool:
        if placeholder.mode == "turn":
            interval = _to_int(placeholder.params[0]) if placeholder.params else 1
            interval = interval if interval and interval > 0 else 1
            user_turns = sum(1 for message in context.messages if message.role == "user")
            return user_turns % interval == 0
        if placeholder.mode == "gate":
            if not placeholder.params:
                return True
            depth = settings.gate_scan_depth if settings.gate_scan_depth > 0 else 3
            recent = [PLACEHOLDER_RE.sub("", message.text) for message in context.messages[-depth:]]
            return any(keyword in text for text in recent for keyword in placeholder.params)
        return True

    async def _load_static(self, placeholder: KnowledgePlaceholder, context: PipelineContext) -> list[SearchResult]:
        if not placeholder.params:
            return []
        rows = await context.services.get_entries(list(placeholder.params))
        return [
            SearchResult(entry=entry, score=1.0, kb_id=kb_id, kb_name=kb_name, match_type="key")
            for kb_id, kb_name, entry in rows
        ]

    async def _retrieve(
        self,
        placeholder: KnowledgePlaceholder,
        context: PipelineContext,
        settings: KnowledgeSettings,
    ) -> list[SearchResult]:
        aggregation = settings.aggregation
        query = self._build_query(context, aggregation.context_window)
        vector = await self._build_vector(query, context, settings)

        cache = context.shared.retrieval_cache
        cached = cache.find(query, vector, threshold=aggregation.cache_similarity_threshold) if aggregation.enable_cache else None
        if cached is not None:
            results = list(cached)
            LOGGER.debug("Retrieval cache hit for %r", query)
        else:
            results = await context.services.search(
                query,
                vector=list(vector) if vector is not None else None,
                limit=placeholder.limit or settings.default_limit or 5,
                min_score=placeholder.min_score if placeholder.min_score is not None else settings.default_min_score,
                source_id=settings.default_engine_id,
                model_id=settings.embedding_model_id,
            )
            if aggregation.enable_cache:
                cache.store(query, vector, results)

        if aggregation.enable_result_aggregation:
            results = aggregate_results(results, context.shared.knowledge_history, aggregation)
        if placeholder.kb_name:
            results = [result for result in results if result.kb_name == placeholder.kb_name]
        results = _limit_chars(results, settings.max_recall_chars)

        context.shared.knowledge_history.append(RetrievalTurn(query=query, vector=vector, results=tuple(results)))
        return results

    @staticmethod
    def _build_query(context: PipelineContext, window: int) -> str:
        user_texts = [message.text for message in context.messages if message.role == "user"]
        return "\n".join(user_texts[-max(1, window):])

    async def _build_vector(self, query: str, context: PipelineContext, settings: KnowledgeSettings) -> Vector | None:
        model_id = settings.embedding_model_id
        if not model_id or context.services.embedder is None or not query:
            return None
        cache = context.shared.embedding_cache
        vector = cache.get(query, model_id)
        if vector is None:
            try:
                raw = await context.services.embed(query, model_id, settings.embedding_profile)
            except Exception as exc:
                LOGGER.debug("Embedding failed", exc_info=True)
                context.log(self.id, "warn", f"Embedding failed, falling back to text search: {exc}")
                return None
            cache.set(query, model_id, raw)
            vector = tuple(raw)

        decay = settings.aggregation.query_decay
        if 0 < decay < 1.0:
            previous = context.shared.knowledge_history.recent_vectors(_QUERY_BLEND_TURNS)
            if previous:
                return tuple(blend_vectors(vector, previous, decay))
        return vector
