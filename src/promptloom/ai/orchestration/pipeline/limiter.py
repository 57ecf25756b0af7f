"""Token limiter stage: drop the oldest history until the prompt fits the budget."""

from __future__ import annotations

import asyncio
import logging

from ..context import PipelineContext, TruncationStats
from ..types import ContentPart, ProcessableMessage

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n...(truncated)"

__all__ = ["TRUNCATION_MARKER", "TokenLimiterStage", "truncate_message"]


def truncate_message(message: ProcessableMessage, retained_characters: int) -> ProcessableMessage | None:
    """Return a copy keeping the first ``retained_characters`` of text, or ``None``.

    Non-text parts and attachments are carried over unchanged.
    """

    text = message.text
    if retained_characters <= 0 or not text:
        return None
    shortened = text[:retained_characters] + TRUNCATION_MARKER
    if isinstance(message.content, str):
        content: str | list[ContentPart] = shortened
    else:
        content = [ContentPart.text_part(shortened)]
        content.extend(part for part in message.content if part.type != "text")
    return ProcessableMessage(
        role=message.role,
        content=content,
        source_type=message.source_type,
        source_id=message.source_id,
        source_index=message.source_index,
        attachments=list(message.attachments),
        is_truncated=True,
        metadata=dict(message.metadata),
    )


class TokenLimiterStage:
    """Keep preset and injected messages; fit history into what remains.

    History is walked newest to oldest. The first message that does not fit is
    either dropped or, when ``retained_characters`` is configured, shortened
    and kept if the shortened copy fits. Everything older is dropped.
    """

    id = "token-limiter"
    name = "Token Budget Limiter"

    async def execute(self, context: PipelineContext) -> None:
        management = context.context_management
        if not management.enabled or not management.max_context_tokens:
            return
        messages = context.messages
        if not messages:
            return

        max_tokens = int(management.max_context_tokens)
        costs = await asyncio.gather(*(self._cost(context, message) for message in messages))
        for message, cost in zip(messages, costs):
            message.token_count = cost

        protected_tokens = sum(cost for message, cost in zip(messages, costs) if not message.is_history)
        history = [(index, message) for index, message in enumerate(messages) if message.is_history]
        original_history_tokens = sum(costs[index] for index, _ in history)
        available = max_tokens - protected_tokens

        stats = TruncationStats(
            original_history_count=len(history),
            preset_tokens=protected_tokens,
            max_context_tokens=max_tokens,
        )

        kept: dict[int, ProcessableMessage] = {}
        used = 0
        if available <= 0:
            context.log(
                self.id,
                "warn",
                f"Preset messages use {protected_tokens} of {max_tokens} tokens; history dropped entirely",
                preset_tokens=protected_tokens,
            )
        else:
            for index, message in reversed(history):
                cost = costs[index]
                if used + cost <= available:
                    kept[index] = message
                    used += cost
                    continue
                shortened = truncate_message(message, management.retained_characters)
                if shortened is not None:
                    shortened.token_count = await self._cost(context, shortened)
                    if used + shortened.token_count <= available:
                        kept[index] = shortened
                        used += shortened.token_count
                        stats.partially_truncated_count += 1
                break

        context.messages = [
            kept[index] if message.is_history else message
            for index, message in enumerate(messages)
            if not message.is_history or index in kept
        ]
        stats.final_history_count = len(kept)
        stats.truncated_count = len(history) - len(kept) + stats.partially_truncated_count
        stats.history_tokens = used
        stats.total_tokens = protected_tokens + used
        stats.saved_tokens = max(0, original_history_tokens - used)
        context.shared.truncation_stats = stats

        dropped = len(history) - len(kept)
        context.log(
            self.id,
            "info",
            f"Kept {len(kept)} of {len(history)} history message(s) ({stats.total_tokens}/{max_tokens} tokens)",
            dropped=dropped,
            partially_truncated=stats.partially_truncated_count,
            saved_tokens=stats.saved_tokens,
        )

    async def _cost(self, context: PipelineContext, message: ProcessableMessage) -> int:
        try:
            return await context.services.count_message(message.text, context.effective_model_id, message.attachments)
        except Exception as exc:
            LOGGER.debug("Token counting failed for %s", message.source_id, exc_info=True)
            context.log(self.id, "warn", f"Token counting failed for {message.source_id}: {exc}")
            return 0
