"""Tests for the token counting helpers."""

from __future__ import annotations

from promptloom.ai.client import ApproxByteCounter, TokenCalculator, TokenCounterRegistry, _bare_model_name
from promptloom.ai.orchestration.types import Attachment


class _FixedCounter:
    model_name = "fixed"

    def count(self, text: str) -> int:
        return 7

    def estimate(self, text: str) -> int:
        return 7


def test_approx_counter_uses_byte_length() -> None:
    counter = ApproxByteCounter()

    assert counter.count("") == 0
    assert counter.count("abcd") == 1
    assert counter.count("abcde") == 2
    assert counter.count("é") == 1


def test_registry_falls_back_without_auto_register() -> None:
    registry = TokenCounterRegistry(auto_register=False)

    assert registry.count("gpt-4o", "abcdefgh") == 2
    assert not registry.has("gpt-4o")


def test_registry_prefers_registered_counter() -> None:
    registry = TokenCounterRegistry(auto_register=False)
    registry.register("GPT-4o", _FixedCounter())

    assert registry.has("gpt-4o")
    assert registry.count("gpt-4o", "anything") == 7

    registry.unregister("gpt-4o")
    assert not registry.has("gpt-4o")


def test_calculator_adds_attachment_costs() -> None:
    calculator = TokenCalculator(TokenCounterRegistry(auto_register=False), attachment_costs={"image": 10})
    image = Attachment(id="a1", name="cat.png", type="image")
    transcript = Attachment(id="a2", name="memo.mp3", type="audio", extracted_text="abcdefgh")

    assert calculator.count("", "gpt-4o") == 0
    assert calculator.count_message("abcd", "gpt-4o", [image]) == 1 + 10
    assert calculator.count_message("abcd", "gpt-4o", [transcript]) == 1 + 2


def test_bare_model_name_strips_profile_and_provider() -> None:
    assert _bare_model_name("work:openai/gpt-4o") == "gpt-4o"
    assert _bare_model_name("gpt-4o-mini") == "gpt-4o-mini"
