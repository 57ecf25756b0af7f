"""Request regex stage: apply configured find/replace rules to outgoing history."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from ....services.settings import RegexPreset, RegexRule
from ..context import PipelineContext
from ..types import ProcessableMessage
from ..errors import PatternError
from ..patterns import compile_pattern, convert_replacement, parse_literal

LOGGER = logging.getLogger(__name__)

__all__ = ["RegexRulesStage", "collect_rules"]


@dataclass(slots=True, frozen=True)
class _WeightedRule:
    rule: RegexRule
    priority: int
    order: int


def collect_rules(*preset_groups: Iterable[RegexPreset]) -> list[RegexRule]:
    """Flatten enabled rules from every source, ordered by preset priority then rule order."""

    weighted: list[_WeightedRule] = []
    for presets in preset_groups:
        for preset in sorted((p for p in presets if p.enabled), key=lambda p: p.order):
            for rule in preset.rules:
                if rule.enabled and rule.pattern:
                    weighted.append(_WeightedRule(rule=rule, priority=preset.priority, order=rule.order))
    weighted.sort(key=lambda item: (item.priority, item.order))
    return [item.rule for item in weighted]


def _applies(rule: RegexRule, role: str, depth: int) -> bool:
    if rule.target_roles and role not in rule.target_roles:
        return False
    minimum, maximum = rule.depth_range
    if minimum is not None and depth < minimum:
        return False
    if maximum is not None and depth > maximum:
        return False
    return True


class RegexRulesStage:
    """Rewrite message text with regex rules from settings, agent and user profile.

    Depth is counted from the newest message (depth 0). Rules without target
    roles apply to every role. The ``g`` flag replaces every occurrence;
    without it only the first occurrence is replaced.
    """

    id = "regex-rules"
    name = "Request Regex Rules"

    async def execute(self, context: PipelineContext) -> None:
        if not context.messages:
            return
        profile_presets: Sequence[RegexPreset] = context.user_profile.regex_presets if context.user_profile else ()
        rules = collect_rules(context.settings.regex_presets, context.agent.regex_presets, profile_presets)
        if not rules:
            context.log(self.id, "debug", "No request regex rules configured")
            return

        replacements = 0
        total = len(context.messages)
        for index, message in enumerate(context.messages):
            depth = total - 1 - index
            for rule in rules:
                if not _applies(rule, message.role, depth):
                    continue
                try:
                    replacements += self._apply(rule, message)
                except PatternError as exc:
                    context.log(
                        self.id,
                        "error",
                        f"Rule {rule.name or rule.pattern!r} failed: {exc.message}",
                        pattern=rule.pattern,
                    )
        context.log(self.id, "info", f"Applied {replacements} regex replacement(s)", replacements=replacements)

    @staticmethod
    def _apply(rule: RegexRule, message: ProcessableMessage) -> int:
        parsed = parse_literal(rule.pattern)
        body, literal_flags = parsed if parsed else (rule.pattern, "")
        flags = rule.flags or literal_flags or "gm"
        pattern = compile_pattern(body, flags)
        count = 0 if "g" in flags else 1
        try:
            return message.replace_text(pattern, convert_replacement(rule.replacement), count=count)
        except re.error as exc:
            raise PatternError(message=f"Invalid replacement {rule.replacement!r}: {exc}", pattern=rule.pattern) from exc
