"""Formatter stage: reshape the final message list for the target model."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from ....services.settings import FormatRule
from ..context import FormatDelta, PipelineContext, estimate_tokens
from ..types import ContentPart, MessageRole, ProcessableMessage, SourceType

LOGGER = logging.getLogger(__name__)

MERGE_SYSTEM_TO_HEAD = "merge-system-to-head"
MERGE_CONSECUTIVE_ROLES = "merge-consecutive-roles"
CONVERT_SYSTEM_TO_USER = "convert-system-to-user"
ENSURE_ALTERNATING_ROLES = "ensure-alternating-roles"

DEFAULT_SEPARATOR = "\n\n---\n\n"
DEFAULT_USER_PLACEHOLDER = "Continue"
DEFAULT_ASSISTANT_PLACEHOLDER = "OK"

# Fixed execution order, with the built-in enabled state of each rule.
RULE_ORDER: tuple[tuple[str, bool], ...] = (
    (MERGE_SYSTEM_TO_HEAD, True),
    (MERGE_CONSECUTIVE_ROLES, True),
    (CONVERT_SYSTEM_TO_USER, False),
    (ENSURE_ALTERNATING_ROLES, False),
)

__all__ = [
    "CONVERT_SYSTEM_TO_USER",
    "DEFAULT_SEPARATOR",
    "ENSURE_ALTERNATING_ROLES",
    "FormatterStage",
    "MERGE_CONSECUTIVE_ROLES",
    "MERGE_SYSTEM_TO_HEAD",
    "ResolvedRule",
    "convert_system_to_user",
    "ensure_alternating_roles",
    "merge_consecutive_roles",
    "merge_system_to_head",
    "resolve_rules",
]


@dataclass(slots=True, frozen=True)
class ResolvedRule:
    type: str
    enabled: bool
    separator: str = DEFAULT_SEPARATOR
    user_placeholder: str = DEFAULT_USER_PLACEHOLDER
    assistant_placeholder: str = DEFAULT_ASSISTANT_PLACEHOLDER


def resolve_rules(model_rules: Iterable[FormatRule], agent_rules: Iterable[FormatRule]) -> list[ResolvedRule]:
    """Resolve every rule through built-in default, model default and agent override."""

    tiers = [{rule.type: rule for rule in model_rules}, {rule.type: rule for rule in agent_rules}]
    resolved: list[ResolvedRule] = []
    for rule_type, default_enabled in RULE_ORDER:
        enabled = default_enabled
        separator = DEFAULT_SEPARATOR
        user_placeholder = DEFAULT_USER_PLACEHOLDER
        assistant_placeholder = DEFAULT_ASSISTANT_PLACEHOLDER
        for tier in tiers:
            rule = tier.get(rule_type)
            if rule is None:
                continue
            enabled = rule.enabled
            separator = rule.separator or separator
            user_placeholder = rule.user_placeholder or user_placeholder
            assistant_placeholder = rule.assistant_placeholder or assistant_placeholder
        resolved.append(ResolvedRule(rule_type, enabled, separator, user_placeholder, assistant_placeholder))
    return resolved


# -----------------------------------------------------------------------------
# Rule Handlers
# -----------------------------------------------------------------------------


def _merge(group: Sequence[ProcessableMessage], separator: str, role: MessageRole) -> ProcessableMessage:
    text = separator.join(message.text for message in group if message.text)
    extra_parts: list[ContentPart] = []
    attachments = []
    for message in group:
        if not isinstance(message.content, str):
            extra_parts.extend(part for part in message.content if part.type != "text")
        attachments.extend(message.attachments)
    content: str | list[ContentPart] = text
    if extra_parts:
        content = ([ContentPart.text_part(text)] if text else []) + extra_parts
    return ProcessableMessage(
        role=role,
        content=content,
        source_type=SourceType.MERGED,
        attachments=attachments,
        metadata={"merged_from": [message.source_id for message in group]},
    )


def merge_system_to_head(messages: Sequence[ProcessableMessage], separator: str = DEFAULT_SEPARATOR) -> list[ProcessableMessage]:
    system = [message for message in messages if message.role == "system"]
    if len(system) <= 1:
        return list(messages)
    rest = [message for message in messages if message.role != "system"]
    return [_merge(system, separator, "system"), *rest]


def merge_consecutive_roles(messages: Sequence[ProcessableMessage], separator: str = DEFAULT_SEPARATOR) -> list[ProcessableMessage]:
    result: list[ProcessableMessage] = []
    group: list[ProcessableMessage] = []
    for message in messages:
        if group and message.role != group[-1].role:
            result.append(group[0] if len(group) == 1 else _merge(group, separator, group[0].role))
            group = []
        group.append(message)
    if group:
        result.append(group[0] if len(group) == 1 else _merge(group, separator, group[0].role))
    return result


def convert_system_to_user(messages: Sequence[ProcessableMessage]) -> list[ProcessableMessage]:
    for message in messages:
        if message.role == "system":
            message.role = "user"
    return list(messages)


def ensure_alternating_roles(
    messages: Sequence[ProcessableMessage],
    user_placeholder: str = DEFAULT_USER_PLACEHOLDER,
    assistant_placeholder: str = DEFAULT_ASSISTANT_PLACEHOLDER,
) -> list[ProcessableMessage]:
    """Insert placeholder turns so that no two adjacent messages share a role."""

    result: list[ProcessableMessage] = []
    for message in messages:
        if result and result[-1].role == message.role:
            filler_role: MessageRole = "assistant" if message.role == "user" else "user"
            filler = assistant_placeholder if filler_role == "assistant" else user_placeholder
            result.append(ProcessableMessage(role=filler_role, content=filler, source_type=SourceType.PLACEHOLDER))
        result.append(message)
    return result


# -----------------------------------------------------------------------------
# Stage
# -----------------------------------------------------------------------------


class FormatterStage:
    id = "formatter"
    name = "Message Shape Formatter"

    async def execute(self, context: PipelineContext) -> None:
        if not context.messages:
            return
        rules = resolve_rules(context.shared.model_format_rules, context.agent.format_rules)
        before = list(context.messages)
        messages = before
        applied: list[str] = []
        for rule in rules:
            if not rule.enabled:
                continue
            if rule.type == MERGE_SYSTEM_TO_HEAD:
                messages = merge_system_to_head(messages, rule.separator)
            elif rule.type == MERGE_CONSECUTIVE_ROLES:
                messages = merge_consecutive_roles(messages, rule.separator)
            elif rule.type == CONVERT_SYSTEM_TO_USER:
                messages = convert_system_to_user(messages)
            elif rule.type == ENSURE_ALTERNATING_ROLES:
                messages = ensure_alternating_roles(messages, rule.user_placeholder, rule.assistant_placeholder)
            applied.append(rule.type)

        context.shared.format_delta = FormatDelta(
            tokens_before=await self._tokens(context, before),
            tokens_after=await self._tokens(context, messages),
            chars_before=sum(len(message.text) for message in before),
            chars_after=sum(len(message.text) for message in messages),
        )
        context.messages = messages
        context.log(
            self.id,
            "info",
            f"Applied {len(applied)} format rule(s): {len(before)} -> {len(messages)} message(s)",
            rules=applied,
            token_delta=context.shared.format_delta.token_delta,
        )

    async def _tokens(self, context: PipelineContext, messages: Sequence[ProcessableMessage]) -> int:
        model_id = context.effective_model_id
        try:
            counts = await asyncio.gather(*(context.services.count(message.text, model_id) for message in messages))
        except Exception as exc:
            LOGGER.debug("Formatter token counting failed", exc_info=True)
            context.log(self.id, "warn", f"Token counting failed, format delta uses estimates: {exc}")
            return sum(estimate_tokens(message.text) for message in messages)
        return sum(counts)
