"""Shared pytest fixtures."""

from __future__ import annotations

import random

import pytest

from promptloom.ai.orchestration.context import PipelineServices
from promptloom.ai.orchestration.types import AgentConfig

from tests.helpers import WordCounter, build_session


@pytest.fixture
def word_counter() -> WordCounter:
    return WordCounter()


@pytest.fixture
def services(word_counter: WordCounter) -> PipelineServices:
    return PipelineServices(token_counter=word_counter)


@pytest.fixture
def agent() -> AgentConfig:
    return AgentConfig(id="agent-1", name="Aria", model_id="openai:gpt-4o")


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def five_turn_session():
    return build_session(
        [
            ("user", "one"),
            ("assistant", "two"),
            ("user", "three"),
            ("assistant", "four"),
            ("user", "five"),
        ]
    )
