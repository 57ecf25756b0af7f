"""Tests for the message shape formatter."""

from __future__ import annotations

import pytest

from promptloom.ai.orchestration.context import PipelineServices
from promptloom.ai.orchestration.pipeline.formatting import (
    CONVERT_SYSTEM_TO_USER,
    ENSURE_ALTERNATING_ROLES,
    MERGE_CONSECUTIVE_ROLES,
    MERGE_SYSTEM_TO_HEAD,
    FormatterStage,
    convert_system_to_user,
    ensure_alternating_roles,
    merge_consecutive_roles,
    merge_system_to_head,
    resolve_rules,
)
from promptloom.ai.orchestration.types import AgentConfig, ContentPart, ProcessableMessage, SourceType
from promptloom.services.settings import FormatRule

from tests.helpers import FailingCounter, make_context


def _msg(role: str, text: str, source_id: str | None = None) -> ProcessableMessage:
    return ProcessableMessage(role=role, content=text, source_id=source_id)  # type: ignore[arg-type]


def _shape(messages) -> list[tuple[str, str]]:
    return [(message.role, message.text) for message in messages]


def test_resolve_rules_defaults() -> None:
    rules = {rule.type: rule for rule in resolve_rules([], [])}

    assert rules[MERGE_SYSTEM_TO_HEAD].enabled
    assert rules[MERGE_CONSECUTIVE_ROLES].enabled
    assert not rules[CONVERT_SYSTEM_TO_USER].enabled
    assert not rules[ENSURE_ALTERNATING_ROLES].enabled


def test_agent_rules_override_model_rules() -> None:
    model = [
        FormatRule(type=CONVERT_SYSTEM_TO_USER, enabled=True),
        FormatRule(type=MERGE_CONSECUTIVE_ROLES, enabled=True, separator=" | "),
    ]
    agent = [
        FormatRule(type=CONVERT_SYSTEM_TO_USER, enabled=False),
        FormatRule(type=MERGE_CONSECUTIVE_ROLES, enabled=True),
    ]

    rules = {rule.type: rule for rule in resolve_rules(model, agent)}

    assert not rules[CONVERT_SYSTEM_TO_USER].enabled
    assert rules[MERGE_CONSECUTIVE_ROLES].separator == " | "
    assert [rule.type for rule in resolve_rules(model, agent)] == [
        MERGE_SYSTEM_TO_HEAD,
        MERGE_CONSECUTIVE_ROLES,
        CONVERT_SYSTEM_TO_USER,
        ENSURE_ALTERNATING_ROLES,
    ]


def test_merge_system_to_head() -> None:
    messages = [_msg("system", "A", "p1"), _msg("user", "u"), _msg("system", "B", "p2"), _msg("assistant", "a")]

    merged = merge_system_to_head(messages)

    assert _shape(merged) == [("system", "A\n\n---\n\nB"), ("user", "u"), ("assistant", "a")]
    assert merged[0].source_type is SourceType.MERGED
    assert merged[0].metadata["merged_from"] == ["p1", "p2"]
    single = [_msg("user", "u"), _msg("system", "only")]
    assert merge_system_to_head(single) == single


def test_merge_consecutive_roles_keeps_non_text_parts() -> None:
    image = ContentPart(type="image", data="x", media_type="image/png")
    with_image = ProcessableMessage(role="user", content=[ContentPart.text_part("look"), image])
    messages = [_msg("user", "hi"), with_image, _msg("assistant", "ok"), _msg("assistant", "sure")]

    merged = merge_consecutive_roles(messages, separator="\n")

    assert _shape(merged) == [("user", "hi\nlook"), ("assistant", "ok\nsure")]
    assert merged[0].content[-1] is image


def test_convert_system_to_user() -> None:
    converted = convert_system_to_user([_msg("system", "rules"), _msg("assistant", "ok")])

    assert [message.role for message in converted] == ["user", "assistant"]


def test_ensure_alternating_roles_inserts_placeholders() -> None:
    messages = [
        _msg("system", "s1"),
        _msg("system", "s2"),
        _msg("user", "u1"),
        _msg("user", "u2"),
        _msg("assistant", "a1"),
        _msg("assistant", "a2"),
    ]

    result = ensure_alternating_roles(messages, user_placeholder="Go on", assistant_placeholder="Okay")

    assert _shape(result) == [
        ("system", "s1"),
        ("user", "Go on"),
        ("system", "s2"),
        ("user", "u1"),
        ("assistant", "Okay"),
        ("user", "u2"),
        ("assistant", "a1"),
        ("user", "Go on"),
        ("assistant", "a2"),
    ]
    assert all(left.role != right.role for left, right in zip(result, result[1:]))
    assert result[1].source_type is SourceType.PLACEHOLDER


@pytest.mark.asyncio
async def test_stage_applies_defaults_and_records_delta() -> None:
    context = make_context(
        [
            _msg("system", "You are helpful"),
            _msg("system", "Be brief"),
            _msg("user", "hi"),
            _msg("user", "there"),
            _msg("assistant", "hello"),
        ]
    )

    await FormatterStage().execute(context)

    assert _shape(context.messages) == [
        ("system", "You are helpful\n\n---\n\nBe brief"),
        ("user", "hi\n\n---\n\nthere"),
        ("assistant", "hello"),
    ]
    delta = context.shared.format_delta
    assert delta is not None
    assert (delta.tokens_before, delta.tokens_after) == (8, 10)
    assert context.logs[-1].details["rules"] == [MERGE_SYSTEM_TO_HEAD, MERGE_CONSECUTIVE_ROLES]


@pytest.mark.asyncio
async def test_stage_uses_agent_and_model_rules() -> None:
    agent = AgentConfig(
        id="a",
        name="A",
        format_rules=(
            FormatRule(type=MERGE_CONSECUTIVE_ROLES, enabled=False),
            FormatRule(type=ENSURE_ALTERNATING_ROLES, enabled=True),
        ),
    )
    context = make_context([_msg("system", "rules"), _msg("assistant", "hi")], agent=agent)
    context.shared.model_format_rules = [FormatRule(type=CONVERT_SYSTEM_TO_USER, enabled=True)]

    await FormatterStage().execute(context)

    assert _shape(context.messages) == [("user", "rules"), ("assistant", "hi")]


@pytest.mark.asyncio
async def test_stage_still_formats_when_counter_fails() -> None:
    context = make_context(
        [_msg("system", "s1"), _msg("system", "s2"), _msg("user", "u1"), _msg("assistant", "a1")],
        services=PipelineServices(token_counter=FailingCounter()),
    )
    context.shared.model_format_rules = [FormatRule(type=CONVERT_SYSTEM_TO_USER, enabled=True)]

    await FormatterStage().execute(context)

    assert _shape(context.messages) == [("user", "s1\n\n---\n\ns2"), ("user", "u1"), ("assistant", "a1")]
    delta = context.shared.format_delta
    assert delta is not None
    assert (delta.tokens_before, delta.tokens_after) == (4, 5)
    assert [entry.level for entry in context.logs] == ["warn", "warn", "info"]
