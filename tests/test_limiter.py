"""Tests for the token budget limiter."""

from __future__ import annotations

import pytest

from promptloom.ai.orchestration.context import PipelineServices
from promptloom.ai.orchestration.pipeline.limiter import TRUNCATION_MARKER, TokenLimiterStage, truncate_message
from promptloom.ai.orchestration.types import Attachment, ContentPart, ProcessableMessage, SourceType
from promptloom.services.settings import ContextManagementSettings, PipelineSettings

from tests.helpers import WordCounter, history, make_context


def _settings(max_tokens: int | None, retained: int = 0, enabled: bool = True) -> PipelineSettings:
    return PipelineSettings(
        context_management=ContextManagementSettings(
            enabled=enabled,
            max_context_tokens=max_tokens,
            retained_characters=retained,
        )
    )


def _messages() -> list[ProcessableMessage]:
    preset = ProcessableMessage(role="system", content="a b c", source_type=SourceType.PRESET, source_id="p")
    return [preset, *history("one two", "three four five", "six")]


def _texts(context) -> list[str]:
    return [message.text for message in context.messages]


def test_truncate_message_keeps_prefix_and_parts() -> None:
    image = ContentPart(type="image", data="abc", media_type="image/png")
    message = ProcessableMessage(role="user", content=[ContentPart.text_part("abcdefgh"), image], source_id="m")

    shortened = truncate_message(message, 3)

    assert shortened is not None
    assert shortened.text == "abc" + TRUNCATION_MARKER
    assert shortened.content[-1] is image
    assert shortened.is_truncated
    assert truncate_message(message, 0) is None
    assert truncate_message(ProcessableMessage(role="user", content=""), 5) is None


@pytest.mark.asyncio
async def test_under_budget_changes_nothing() -> None:
    messages = _messages()
    context = make_context(messages, settings=_settings(100))

    await TokenLimiterStage().execute(context)

    assert context.messages == messages
    stats = context.shared.truncation_stats
    assert stats is not None
    assert stats.truncated_count == 0
    assert stats.total_tokens == 9


@pytest.mark.asyncio
async def test_drops_oldest_history_first() -> None:
    context = make_context(_messages(), settings=_settings(7))

    await TokenLimiterStage().execute(context)

    assert _texts(context) == ["a b c", "three four five", "six"]
    assert sum(message.token_count or 0 for message in context.messages) <= 7
    stats = context.shared.truncation_stats
    assert stats.original_history_count == 3
    assert stats.final_history_count == 2
    assert stats.truncated_count == 1
    assert stats.preset_tokens == 3
    assert stats.history_tokens == 4
    assert stats.saved_tokens == 2


@pytest.mark.asyncio
async def test_oversized_protected_messages_drop_all_history() -> None:
    context = make_context(_messages(), settings=_settings(2))

    await TokenLimiterStage().execute(context)

    assert _texts(context) == ["a b c"]
    assert context.logs[0].level == "warn"
    assert context.shared.truncation_stats.final_history_count == 0


@pytest.mark.asyncio
async def test_partial_truncation_of_boundary_message() -> None:
    context = make_context(_messages(), settings=_settings(6, retained=3))

    await TokenLimiterStage().execute(context)

    assert _texts(context) == ["a b c", "thr" + TRUNCATION_MARKER, "six"]
    assert context.messages[1].is_truncated
    stats = context.shared.truncation_stats
    assert stats.partially_truncated_count == 1
    assert stats.truncated_count == 2


@pytest.mark.asyncio
async def test_injections_keep_their_position() -> None:
    messages = _messages()
    injected = ProcessableMessage(role="system", content="note", source_type=SourceType.DEPTH_INJECTION)
    messages.insert(3, injected)
    context = make_context(messages, settings=_settings(8))

    await TokenLimiterStage().execute(context)

    assert _texts(context) == ["a b c", "three four five", "note", "six"]


@pytest.mark.asyncio
async def test_disabled_or_unbounded_is_skipped() -> None:
    for settings in (_settings(1, enabled=False), _settings(None)):
        context = make_context(_messages(), settings=settings)
        await TokenLimiterStage().execute(context)
        assert len(context.messages) == 4
        assert context.shared.truncation_stats is None


@pytest.mark.asyncio
async def test_attachment_cost_counts_against_budget() -> None:
    messages = _messages()
    messages[2].attachments = [Attachment(id="a", name="photo.png", type="image")]
    counter = WordCounter()
    counter.attachment_cost = 50
    context = make_context(messages, settings=_settings(50), services=PipelineServices(token_counter=counter))

    await TokenLimiterStage().execute(context)

    assert _texts(context) == ["a b c", "six"]
