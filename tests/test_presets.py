"""Tests for preset assembly, model matching and depth injection."""

from __future__ import annotations

import pytest

from promptloom.ai.orchestration.macros import MacroProcessor
from promptloom.ai.orchestration.pipeline.presets import (
    PresetStage,
    apply_model_match,
    matches_model,
    parse_depth_config,
)
from promptloom.ai.orchestration.types import (
    AgentConfig,
    InjectionStrategy,
    ModelMatch,
    PresetMessage,
    SourceType,
    UserProfile,
)

from tests.helpers import history, make_context


def _agent(*presets: PresetMessage) -> AgentConfig:
    return AgentConfig(id="agent-1", name="Aria", model_id="openai:gpt-4o", presets=presets)


def _texts(context) -> list[str]:
    return [message.text for message in context.messages]


# -----------------------------------------------------------------------------
# Model matching
# -----------------------------------------------------------------------------


def test_matches_model_strips_profile_and_provider() -> None:
    assert matches_model(["gpt-4.*"], "openai/gpt-4o")
    assert matches_model(["^gpt-4o$"], "work:openai/gpt-4o")
    assert matches_model(["CLAUDE"], "anthropic:claude-3-opus")
    assert not matches_model(["gpt-4.*"], "claude-3")
    assert not matches_model(["gpt"], "")


def test_invalid_model_pattern_reports_and_continues() -> None:
    failures: list[str] = []

    matched = matches_model(["(", "gpt"], "gpt-4o", on_error=lambda pattern, exc: failures.append(pattern))

    assert matched
    assert failures == ["("]


def test_apply_model_match_disables_in_place() -> None:
    gated = PresetMessage(id="p1", content="GPT only", model_match=ModelMatch(enabled=True, patterns=("gpt-4.*",)))
    plain = PresetMessage(id="p2", content="always")
    off_gate = PresetMessage(id="p3", content="gate off", model_match=ModelMatch(enabled=False, patterns=("nothing",)))

    kept = apply_model_match([gated, plain, off_gate], "openai/gpt-4o")
    dropped = apply_model_match([gated, plain, off_gate], "claude-3")

    assert [preset.is_enabled for preset in kept] == [True, True, True]
    assert [preset.id for preset in dropped] == ["p1", "p2", "p3"]
    assert [preset.is_enabled for preset in dropped] == [False, True, True]


@pytest.mark.asyncio
async def test_model_disabled_preset_keeps_source_indices() -> None:
    agent = _agent(
        PresetMessage(id="p0", content="gpt", model_match=ModelMatch(enabled=True, patterns=("gpt-4.*",))),
        PresetMessage(id="p1", content="general"),
    )
    context = make_context(history("hi"), agent=agent, model_id="claude-3")

    await PresetStage().execute(context)

    assert _texts(context) == ["general", "hi"]
    assert context.messages[0].source_index == 1
    assert context.logs[-1].details["disabled_by_model"] == 1


# -----------------------------------------------------------------------------
# Depth configuration
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("config", "length", "expected"),
    [
        ("5", 10, [5]),
        ("3, 10", 5, [3]),
        ("10~5", 30, [10, 15, 20, 25, 30]),
        ("2:3", 7, [2, 5]),
        ("12", 5, []),
        ("x, 1", 5, [1]),
    ],
)
def test_parse_depth_config(config: str, length: int, expected: list[int]) -> None:
    assert parse_depth_config(config, length) == expected


@pytest.mark.asyncio
async def test_depth_injection_counts_back_from_history_end() -> None:
    agent = _agent(
        PresetMessage(id="sys", content="system prompt"),
        PresetMessage(id="hist", type="chat_history"),
        PresetMessage(id="inj", role="user", content="reminder", injection_strategy=InjectionStrategy(depth=2)),
    )
    context = make_context(history("h0", "h1", "h2", "h3", "h4"), agent=agent)

    await PresetStage().execute(context)

    assert _texts(context) == ["system prompt", "h0", "h1", "h2", "reminder", "h3", "h4"]
    injected = context.messages[4]
    assert injected.source_type is SourceType.DEPTH_INJECTION
    assert injected.role == "user"


@pytest.mark.asyncio
async def test_depth_config_and_order_within_a_depth() -> None:
    agent = _agent(
        PresetMessage(id="b", content="second", injection_strategy=InjectionStrategy(depth=0, order=20)),
        PresetMessage(id="a", content="first", injection_strategy=InjectionStrategy(depth=0, order=10)),
        PresetMessage(id="r", content="every two", injection_strategy=InjectionStrategy(depth_config="1~2")),
    )
    context = make_context(history("h0", "h1", "h2"), agent=agent)

    await PresetStage().execute(context)

    assert _texts(context) == ["every two", "h0", "h1", "every two", "h2", "first", "second"]


# -----------------------------------------------------------------------------
# Skeleton & anchors
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_skeleton_anchors_and_user_profile_template() -> None:
    agent = _agent(
        PresetMessage(id="p0", content="You are {{char}}."),
        PresetMessage(id="p1", type="user_profile"),
        PresetMessage(id="p2", type="chat_history"),
        PresetMessage(id="p3", role="user", content="Stay in character."),
        PresetMessage(
            id="p4",
            content="History begins",
            injection_strategy=InjectionStrategy(anchor_target="chat_history", anchor_position="before"),
        ),
        PresetMessage(
            id="p5",
            content="History ends",
            injection_strategy=InjectionStrategy(anchor_target="chat_history", anchor_position="after"),
        ),
        PresetMessage(id="p6", content="Profile note", injection_strategy=InjectionStrategy(anchor_target="user_profile")),
    )
    profile = UserProfile(id="u", name="Sam", content="Sam likes tea")
    context = make_context(history("hi", "hello"), agent=agent, user_profile=profile)

    await PresetStage().execute(context)

    assert _texts(context) == [
        "You are Aria.",
        "Sam likes tea",
        "Profile note",
        "History begins",
        "hi",
        "hello",
        "History ends",
        "Stay in character.",
    ]
    assert [message.source_type for message in context.messages] == [
        SourceType.PRESET,
        SourceType.PRESET,
        SourceType.ANCHOR_INJECTION,
        SourceType.ANCHOR_INJECTION,
        SourceType.HISTORY,
        SourceType.HISTORY,
        SourceType.ANCHOR_INJECTION,
        SourceType.PRESET,
    ]
    assert context.messages[0].source_index == 0


@pytest.mark.asyncio
async def test_legacy_profile_text_and_missing_profile_render_nothing() -> None:
    agent = _agent(
        PresetMessage(id="legacy", type="user_profile", content="User Profile"),
        PresetMessage(id="empty", type="user_profile"),
        PresetMessage(id="hist", type="chat_history"),
    )
    context = make_context(history("hi"), agent=agent)

    await PresetStage().execute(context)

    assert _texts(context) == ["hi"]


@pytest.mark.asyncio
async def test_history_without_anchor_goes_last() -> None:
    agent = _agent(PresetMessage(id="a", content="one"), PresetMessage(id="b", content="two", is_enabled=False))
    context = make_context(history("hi"), agent=agent)

    await PresetStage().execute(context)

    assert _texts(context) == ["one", "hi"]


@pytest.mark.asyncio
async def test_no_active_presets_passes_history_through() -> None:
    context = make_context(history("hi", "there"), agent=_agent())

    await PresetStage().execute(context)

    assert _texts(context) == ["hi", "there"]
    assert context.logs[-1].level == "info"


@pytest.mark.asyncio
async def test_macro_failure_keeps_raw_content() -> None:
    macros = MacroProcessor()
    macros.register("explode", lambda _scope, _args: str(1 / 0))
    agent = _agent(PresetMessage(id="p", content="Hello {{explode}} {{char}}"))
    context = make_context(history("hi"), agent=agent)

    await PresetStage(macros=macros).execute(context)

    assert context.messages[0].text == "Hello {{explode}} {{char}}"
    assert any(entry.level == "warn" for entry in context.logs)


def test_presets_without_placement_are_ignored_by_injection_helpers() -> None:
    conversation = history("h0", "h1")
    loose = PresetMessage(id="loose", content="no strategy")
    unanchored = PresetMessage(id="unanchored", content="empty", injection_strategy=InjectionStrategy())

    assert PresetStage._apply_depth(conversation, [loose], lambda *_: None) == conversation
    assert PresetStage._anchor_groups([loose, unanchored]) == {}
