"""Context Pipeline: assembles the final message list for a completion call.

This module provides the :class:`ContextPipeline` class that wires the stages
(history → regex rules → attachment text → worldbook → presets → knowledge →
token limiter → formatter → attachment binary) into one sequential run over a
shared :class:`PipelineContext`.
"""

from __future__ import annotations

import copy
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from ...services.settings import FormatRule, PipelineSettings
from .context import FormatDelta, PipelineContext, PipelineLog, PipelineServices, SharedState, TruncationStats
from .errors import ErrorCode
from .pipeline import (
    AttachmentBinaryStage,
    AttachmentTextStage,
    FormatterStage,
    HistoryStage,
    KnowledgeStage,
    PipelineStage,
    PresetStage,
    RegexRulesStage,
    TokenLimiterStage,
    WorldbookStage,
)
from .types import AgentConfig, ChatSession, ModelCapabilities, ProcessableMessage, UserProfile, Worldbook

__all__ = [
    "ContextPipeline",
    "DEFAULT_STAGES",
    "PipelineResult",
    "RunnerConfig",
]

LOGGER = logging.getLogger(__name__)


def default_stages() -> tuple[PipelineStage, ...]:
    """Return fresh instances of the configurable stages, in execution order."""

    return (
        HistoryStage(),
        RegexRulesStage(),
        AttachmentTextStage(),
        WorldbookStage(),
        PresetStage(),
        KnowledgeStage(),
        TokenLimiterStage(),
        FormatterStage(),
    )


DEFAULT_STAGES: tuple[str, ...] = tuple(stage.id for stage in default_stages())


# -----------------------------------------------------------------------------
# Runner Configuration & Result
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RunnerConfig:
    """Configuration for the context pipeline.

    Attributes:
        log_pipeline_stages: Whether to log stage start/finish at debug level.
        stop_without_session: Skip every stage after the linearizer when no
            session is supplied.
    """

    log_pipeline_stages: bool = True
    stop_without_session: bool = True


@dataclass(slots=True)
class PipelineResult:
    """Outcome of one pipeline run.

    Attributes:
        messages: ``{role, content}`` records ready for the completion call.
        logs: Ordered diagnostic entries from every stage.
        format_delta: Token/character totals around the formatter, if it ran.
        shared: Shared state of the run (caches, truncation statistics, ...).
        processable: The final working messages, for preview tooling.
        duration_ms: Wall-clock duration of the run.
    """

    messages: list[dict[str, Any]] = field(default_factory=list)
    logs: list[PipelineLog] = field(default_factory=list)
    format_delta: FormatDelta | None = None
    shared: SharedState = field(default_factory=SharedState)
    processable: list[ProcessableMessage] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def truncation_stats(self) -> TruncationStats | None:
        return self.shared.truncation_stats

    def log_payloads(self) -> list[dict[str, Any]]:
        return [entry.as_payload() for entry in self.logs]


# -----------------------------------------------------------------------------
# Context Pipeline
# -----------------------------------------------------------------------------


class ContextPipeline:
    """Runs the context stages sequentially over one :class:`PipelineContext`.

    The stage tuple is the single source of truth for ordering. The binary
    attachment stage is not part of it and always runs last, after any custom
    stage list.

    Example:
        >>> pipeline = ContextPipeline(services=PipelineServices(token_counter=calculator))
        >>> result = await pipeline.run(session, agent, model_id="openai:gpt-4o")
        >>> send(result.messages)
    """

    def __init__(
        self,
        *,
        stages: Sequence[PipelineStage] | None = None,
        settings: PipelineSettings | None = None,
        services: PipelineServices | None = None,
        config: RunnerConfig | None = None,
    ) -> None:
        self._stages: tuple[PipelineStage, ...] = tuple(stages) if stages is not None else default_stages()
        self._final_stage = AttachmentBinaryStage()
        self._settings = settings or PipelineSettings()
        self._services = services or PipelineServices()
        self._config = config or RunnerConfig()

    @property
    def stages(self) -> tuple[PipelineStage, ...]:
        """Every stage in execution order, including the final binary stage."""
        return (*self._stages, self._final_stage)

    async def run(
        self,
        session: ChatSession | None,
        agent: AgentConfig,
        *,
        user_profile: UserProfile | None = None,
        model_id: str = "",
        capabilities: ModelCapabilities | None = None,
        settings: PipelineSettings | None = None,
        services: PipelineServices | None = None,
        worldbooks: Iterable[Worldbook] = (),
        model_format_rules: Iterable[FormatRule] = (),
        shared: SharedState | None = None,
        rng: random.Random | None = None,
        seed: int | None = None,
        now: datetime | None = None,
        is_preview: bool = False,
    ) -> PipelineResult:
        """Assemble the messages for one completion call.

        Args:
            session: Conversation tree; ``None`` yields an empty message list.
            agent: Agent configuration snapshot.
            user_profile: Active user profile, if any.
            model_id: Target model (``profile:provider/model``); defaults to
                the agent's model.
            capabilities: Target model capabilities; defaults to the agent's.
            settings: Overrides the pipeline's global settings for this run.
            services: Overrides the pipeline's services for this run.
            worldbooks: Worldbooks preloaded for the agent.
            model_format_rules: Model-level formatter defaults.
            shared: Shared state to reuse, e.g. to carry retrieval history
                across turns. A fresh state is created when omitted.
            rng: Random source for probabilistic activation.
            seed: Seed for a new random source when ``rng`` is not given.
            now: Timestamp used by time macros.
            is_preview: Marks the run as a preview.
        """

        started = time.perf_counter()
        state = shared or SharedState()
        if worldbooks:
            state.worldbooks = list(worldbooks)
        if model_format_rules:
            state.model_format_rules = list(model_format_rules)

        context = PipelineContext(
            session=session,
            agent=agent,
            settings=settings or self._settings,
            user_profile=user_profile,
            model_id=model_id,
            capabilities=capabilities,
            services=services or self._services,
            rng=rng or random.Random(seed),
            is_preview=is_preview,
            shared=state,
        )
        if now is not None:
            context.now = now

        for stage in self._stages:
            await self._run_stage(stage, context)
            if session is None and self._config.stop_without_session:
                break
        else:
            await self._run_stage(self._final_stage, context)

        duration = (time.perf_counter() - started) * 1000
        LOGGER.debug("Context pipeline finished with %s message(s) in %.1fms", len(context.messages), duration)
        return PipelineResult(
            messages=[message.to_payload() for message in context.messages],
            logs=list(context.logs),
            format_delta=state.format_delta,
            shared=state,
            processable=list(context.messages),
            duration_ms=duration,
        )

    async def _run_stage(self, stage: PipelineStage, context: PipelineContext) -> None:
        if self._config.log_pipeline_stages:
            LOGGER.debug("Running stage %s with %s message(s)", stage.id, len(context.messages))
        snapshot = copy.deepcopy(context.messages)
        try:
            await stage.execute(context)
        except Exception as exc:
            LOGGER.exception("Stage %s failed", stage.id)
            context.messages = snapshot
            context.log(
                stage.id,
                "error",
                f"Stage {stage.name} failed: {exc}",
                error=ErrorCode.STAGE_FAILED,
                exception=type(exc).__name__,
            )
