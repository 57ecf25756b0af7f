"""Tests for knowledge placeholder resolution."""

from __future__ import annotations

import pytest

from promptloom.ai.memory.retrieval_cache import RetrievalHistory, RetrievalTurn
from promptloom.ai.orchestration.context import PipelineServices, SharedState
from promptloom.ai.orchestration.pipeline.knowledge import (
    KnowledgeStage,
    aggregate_results,
    format_results,
    parse_placeholder,
    scan_placeholders,
)
from promptloom.ai.orchestration.types import KnowledgeEntry, ProcessableMessage, SearchResult, SourceType
from promptloom.services.settings import AggregationSettings, KnowledgeSettings, PipelineSettings

from tests.helpers import StubEmbedder, StubKnowledge, WordCounter, history, make_context, result


def _settings(**overrides) -> PipelineSettings:
    knowledge = KnowledgeSettings(item_template="{key}: {content} ({score})", result_template="{count}|{items}")
    for name, value in overrides.items():
        setattr(knowledge, name, value)
    return PipelineSettings(knowledge=knowledge)


def _prompt(text: str) -> ProcessableMessage:
    return ProcessableMessage(role="system", content=text, source_type=SourceType.PRESET, source_id="preset")


def _context(placeholder: str, *texts: str, knowledge=None, embedder=None, shared=None, **overrides):
    services = PipelineServices(token_counter=WordCounter(), knowledge=knowledge, embedder=embedder)
    return make_context(
        [_prompt(f"Facts:\n{placeholder}"), *history(*(texts or ("tell me about dragons",)))],
        services=services,
        settings=_settings(**overrides),
        shared=shared or SharedState(),
    )


# -----------------------------------------------------------------------------
# Parsing & formatting
# -----------------------------------------------------------------------------


def test_parse_full_placeholder() -> None:
    placeholder = parse_placeholder("raw", "Lore::3::0.5::gate::dragon, castle", 2)

    assert placeholder.kb_name == "Lore"
    assert placeholder.limit == 3
    assert placeholder.min_score == 0.5
    assert placeholder.mode == "gate"
    assert placeholder.params == ("dragon", "castle")
    assert placeholder.message_index == 2


def test_parse_defaults_and_unknown_mode() -> None:
    bare = parse_placeholder("【kb】", None)
    odd = parse_placeholder("raw", "::x::::sometimes")

    assert (bare.kb_name, bare.limit, bare.min_score, bare.mode) == (None, None, None, "always")
    assert odd.limit is None
    assert odd.mode == "always"


def test_scan_placeholders_across_messages() -> None:
    messages = [_prompt("a 【kb】 b 【knowledge::Lore】"), *history("plain", "【kb::Other::2】")]

    found = scan_placeholders(messages)

    assert [(item.raw, item.message_index) for item in found] == [
        ("【kb】", 0),
        ("【knowledge::Lore】", 0),
        ("【kb::Other::2】", 2),
    ]


def test_format_results_defaults_and_empty() -> None:
    settings = KnowledgeSettings(empty_text="(nothing)")
    bare = SearchResult(entry=KnowledgeEntry(id="x", key="", content="body", tags=("a", "b")), score=0.5)

    assert format_results([], settings) == "(nothing)"
    text = format_results([bare], settings)
    assert "**[Unknown knowledge base]** Untitled" in text
    assert "(score: 0.50)" in text
    assert "Relevant knowledge (1 entries)" in text


def test_aggregate_results_decays_older_turns() -> None:
    past = RetrievalHistory(capacity=5)
    past.append(RetrievalTurn(query="old", vector=None, results=(result("e2", "older", 0.9), result("e1", "x", 0.2))))
    settings = AggregationSettings(enable_result_aggregation=True, result_decay=0.8)

    merged = aggregate_results([result("e1", "x", 0.5)], past, settings)

    assert [item.entry.id for item in merged] == ["e2", "e1"]
    assert merged[0].score == pytest.approx(0.72)
    assert merged[1].score == pytest.approx(0.5)


# -----------------------------------------------------------------------------
# Stage
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_always_mode_searches_and_replaces() -> None:
    knowledge = StubKnowledge([result("e1", "Dragons fly", 0.9)])
    context = _context("【kb】", knowledge=knowledge)

    await KnowledgeStage().execute(context)

    assert context.messages[0].text == "Facts:\n1|e1: Dragons fly (0.90)"
    call = knowledge.search_calls[0]
    assert call["query"] == "tell me about dragons"
    assert call["limit"] == 5
    assert call["min_score"] == 0.3
    assert call["vector"] is None
    assert len(context.shared.knowledge_history) == 1


@pytest.mark.asyncio
async def test_placeholder_overrides_limit_and_zero_min_score() -> None:
    knowledge = StubKnowledge([])
    context = _context("【kb::Lore::2::0】", knowledge=knowledge)

    await KnowledgeStage().execute(context)

    assert knowledge.search_calls[0]["limit"] == 2
    assert knowledge.search_calls[0]["min_score"] == 0.0
    assert context.messages[0].text == "Facts:\n"


@pytest.mark.asyncio
async def test_gate_mode_requires_keyword() -> None:
    knowledge = StubKnowledge([result("e1", "Unicorns exist", 0.9)])
    closed = _context("【kb::Lore::::::gate::unicorn】", knowledge=knowledge)

    await KnowledgeStage().execute(closed)

    assert closed.messages[0].text == "Facts:\n"
    assert knowledge.search_calls == []
    assert closed.logs[-1].message == "Removed 1 inactive knowledge placeholder(s)"

    opened = _context("【kb::Lore::::::gate::unicorn】", "is the unicorn real?", knowledge=knowledge)
    await KnowledgeStage().execute(opened)
    assert opened.messages[0].text == "Facts:\n1|e1: Unicorns exist (0.90)"


@pytest.mark.asyncio
async def test_turn_mode_uses_user_message_count() -> None:
    knowledge = StubKnowledge([result("e1", "x", 0.9)])
    odd = _context("【kb::Lore::::::turn::2】", "one", knowledge=knowledge)
    await KnowledgeStage().execute(odd)
    assert odd.messages[0].text == "Facts:\n"

    even = _context("【kb::Lore::::::turn::2】", "one", "reply", "two", knowledge=knowledge)
    await KnowledgeStage().execute(even)
    assert even.messages[0].text == "Facts:\n1|e1: x (0.90)"


@pytest.mark.asyncio
async def test_static_mode_loads_exact_entries() -> None:
    entries = {
        "e1": ("kb-1", "Lore", KnowledgeEntry(id="e1", key="First", content="one")),
        "e2": ("kb-1", "Lore", KnowledgeEntry(id="e2", key="Second", content="two")),
    }
    knowledge = StubKnowledge(entries=entries)
    context = _context("【kb::::::::static::e2, e1, missing】", knowledge=knowledge)

    await KnowledgeStage().execute(context)

    assert context.messages[0].text == "Facts:\n2|Second: two (1.00)\n\nFirst: one (1.00)"
    assert knowledge.search_calls == []
    assert len(context.shared.knowledge_history) == 0


@pytest.mark.asyncio
async def test_repeated_query_hits_retrieval_cache() -> None:
    knowledge = StubKnowledge([result("e1", "Dragons fly", 0.9)])
    shared = SharedState()

    for _ in range(2):
        context = _context("【kb】", knowledge=knowledge, shared=shared)
        await KnowledgeStage().execute(context)
        assert context.messages[0].text == "Facts:\n1|e1: Dragons fly (0.90)"

    assert len(knowledge.search_calls) == 1
    assert shared.retrieval_cache.stats.hits == 1


@pytest.mark.asyncio
async def test_query_embedding_is_cached() -> None:
    knowledge = StubKnowledge([result("e1", "Dragons fly", 0.9)])
    embedder = StubEmbedder(default=(0.0, 1.0))
    shared = SharedState()

    for _ in range(2):
        context = _context("【kb】", knowledge=knowledge, embedder=embedder, shared=shared, embedding_model_id="emb")
        await KnowledgeStage().execute(context)

    assert embedder.calls == [("tell me about dragons", "emb", None)]
    assert knowledge.search_calls[0]["vector"] == [0.0, 1.0]
    assert knowledge.search_calls[0]["model_id"] == "emb"


@pytest.mark.asyncio
async def test_kb_filter_and_character_budget() -> None:
    knowledge = StubKnowledge(
        [
            result("e1", "12345678", 0.9),
            result("e2", "elsewhere", 0.8, kb_name="Other"),
            result("e3", "abcdefghij", 0.7),
        ]
    )
    context = _context("【kb::Lore】", knowledge=knowledge, max_recall_chars=15)

    await KnowledgeStage().execute(context)

    assert context.messages[0].text == "Facts:\n1|e1: 12345678 (0.90)"


@pytest.mark.asyncio
async def test_backend_failure_removes_placeholder() -> None:
    context = _context("【kb】", knowledge=StubKnowledge(error=RuntimeError("index offline")))

    await KnowledgeStage().execute(context)

    assert context.messages[0].text == "Facts:\n"
    warning = context.logs[0]
    assert warning.level == "warn"
    assert "index offline" in warning.message


@pytest.mark.asyncio
async def test_no_placeholders_is_noop() -> None:
    context = make_context(history("hello"))

    await KnowledgeStage().execute(context)

    assert context.messages[0].text == "hello"
    assert context.logs == []
