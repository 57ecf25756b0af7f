"""Preset stage: filter presets by model, expand macros and assemble the prompt.

Presets fall into three groups. Skeleton messages keep their configured order
and are split around the ``chat_history`` anchor. Depth injections are spliced
into the conversation counted back from its end. Anchor injections are
rendered before or after the named anchor wherever it appears.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Iterable, Sequence

from ..context import PipelineContext
from ..errors import MacroError, PatternError
from ..macros import MacroProcessor, MacroScope
from ..patterns import compile_pattern
from ..types import PresetMessage, ProcessableMessage, SourceType

LOGGER = logging.getLogger(__name__)

CHAT_HISTORY_ANCHOR = "chat_history"
USER_PROFILE_ANCHOR = "user_profile"

# Anchors that render their own (macro-expanded) body; value is the body used when empty.
TEMPLATE_ANCHORS: dict[str, str] = {USER_PROFILE_ANCHOR: "{{persona}}"}
_LEGACY_FIXED_TEXTS = frozenset({"用户档案", "user_profile", "User Profile"})
_DEPTH_RANGE_RE = re.compile(r"^(\d+)\s*[~:]\s*(\d+)$")

__all__ = [
    "CHAT_HISTORY_ANCHOR",
    "PresetStage",
    "TEMPLATE_ANCHORS",
    "USER_PROFILE_ANCHOR",
    "apply_model_match",
    "matches_model",
    "parse_depth_config",
]


# -----------------------------------------------------------------------------
# Model Matching
# -----------------------------------------------------------------------------


def matches_model(patterns: Iterable[str], model_id: str, *, on_error=None) -> bool:
    """Return whether any pattern matches ``model_id``.

    The ``profile:`` prefix is removed first; each pattern is tried against
    the remainder and then against the segment after its last ``/``.
    """

    bare = model_id.split(":", 1)[1] if ":" in model_id else model_id
    if not bare:
        return False
    short = bare.rsplit("/", 1)[-1]
    for pattern in patterns:
        try:
            regex = compile_pattern(pattern, "i")
        except PatternError as exc:
            if on_error is not None:
                on_error(pattern, exc)
            continue
        if regex.search(bare) or (short != bare and short and regex.search(short)):
            return True
    return False


def apply_model_match(presets: Sequence[PresetMessage], model_id: str, *, on_error=None) -> list[PresetMessage]:
    """Disable presets whose model patterns miss ``model_id``; positions are kept."""

    result: list[PresetMessage] = []
    for preset in presets:
        match = preset.model_match
        if preset.is_enabled and match is not None and match.enabled and match.patterns:
            if not matches_model(match.patterns, model_id, on_error=on_error):
                preset = replace(preset, is_enabled=False)
        result.append(preset)
    return result


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------


def parse_depth_config(config: str, history_length: int) -> list[int]:
    """Expand a depth expression such as ``"3, 10~5"`` into concrete depths.

    ``start~interval`` (or ``start:interval``) repeats every ``interval``
    messages from ``start``. Depths beyond ``history_length`` are dropped.
    """

    depths: list[int] = []
    for segment in (part.strip() for part in config.split(",")):
        if not segment:
            continue
        ranged = _DEPTH_RANGE_RE.match(segment)
        if ranged:
            start, interval = int(ranged.group(1)), int(ranged.group(2))
            if interval <= 0:
                candidates: Iterable[int] = [start]
            else:
                candidates = range(start, history_length + 1, interval)
            for depth in candidates:
                if depth <= history_length and depth not in depths:
                    depths.append(depth)
            continue
        if segment.isdigit():
            depth = int(segment)
            if depth <= history_length and depth not in depths:
                depths.append(depth)
    return depths


@dataclass(slots=True)
class _AnchorGroup:
    before: list[PresetMessage] = field(default_factory=list)
    after: list[PresetMessage] = field(default_factory=list)


@dataclass(slots=True)
class _Classified:
    skeleton: list[PresetMessage] = field(default_factory=list)
    depth: list[PresetMessage] = field(default_factory=list)
    anchor: list[PresetMessage] = field(default_factory=list)


def _classify(presets: Sequence[PresetMessage]) -> _Classified:
    groups = _Classified()
    for preset in presets:
        strategy = preset.injection_strategy
        kind = strategy.kind if strategy is not None else "skeleton"
        if kind == "depth":
            groups.depth.append(preset)
        elif kind == "anchor":
            groups.anchor.append(preset)
        else:
            groups.skeleton.append(preset)
    return groups


def _order(preset: PresetMessage) -> int:
    strategy = preset.injection_strategy
    return strategy.order if strategy is not None else 100


# -----------------------------------------------------------------------------
# Stage
# -----------------------------------------------------------------------------


class PresetStage:
    """Assemble presets, injections and history into one ordered list."""

    id = "presets"
    name = "Preset Assembler"

    def __init__(self, macros: MacroProcessor | None = None) -> None:
        self._macros = macros or MacroProcessor()

    async def execute(self, context: PipelineContext) -> None:
        def _invalid(pattern: str, exc: PatternError) -> None:
            context.log(self.id, "warn", f"Invalid model match pattern {pattern!r}: {exc.message}", pattern=pattern)

        presets = apply_model_match(context.agent.presets, context.effective_model_id, on_error=_invalid)
        index_of = {preset.id: index for index, preset in enumerate(presets)}
        active = [preset for preset in presets if preset.is_enabled]
        if not active:
            context.log(self.id, "info", "Agent has no active presets; history passes through")
            return

        contents = self._expand_macros(context, active)
        groups = _classify(active)
        conversation = list(context.messages)

        def _build(preset: PresetMessage, source_type: SourceType, content: str | None = None) -> ProcessableMessage:
            return ProcessableMessage(
                role=preset.role,
                content=content if content is not None else contents.get(preset.id, preset.content),
                source_type=source_type,
                source_id=preset.id,
                source_index=index_of[preset.id],
            )

        with_depth = self._apply_depth(conversation, groups.depth, _build)
        anchors = self._anchor_groups(groups.anchor)

        def _anchored(target: str, position: str) -> list[ProcessableMessage]:
            group = anchors.get(target)
            if group is None:
                return []
            chosen = group.before if position == "before" else group.after
            return [_build(preset, SourceType.ANCHOR_INJECTION) for preset in chosen]

        history_at = next(
            (index for index, preset in enumerate(groups.skeleton) if preset.type == CHAT_HISTORY_ANCHOR),
            None,
        )
        if history_at is None:
            before_history, after_history = groups.skeleton, []
        else:
            before_history = groups.skeleton[:history_at]
            after_history = groups.skeleton[history_at + 1 :]

        assembled: list[ProcessableMessage] = []
        for preset in before_history:
            assembled.extend(self._render_skeleton(preset, contents, _build, _anchored))
        assembled.extend(_anchored(CHAT_HISTORY_ANCHOR, "before"))
        assembled.extend(with_depth)
        assembled.extend(_anchored(CHAT_HISTORY_ANCHOR, "after"))
        for preset in after_history:
            assembled.extend(self._render_skeleton(preset, contents, _build, _anchored))

        context.messages = assembled
        context.log(
            self.id,
            "info",
            f"Assembled {len(assembled)} message(s)",
            skeleton=len(groups.skeleton),
            depth_injections=len(groups.depth),
            anchor_injections=len(groups.anchor),
            history=len(conversation),
            disabled_by_model=sum(1 for a, b in zip(context.agent.presets, presets) if a.is_enabled and not b.is_enabled),
        )

    def _expand_macros(self, context: PipelineContext, presets: Sequence[PresetMessage]) -> dict[str, str]:
        scope = MacroScope.from_context(context)
        contents: dict[str, str] = {}
        for preset in presets:
            body = preset.content
            if not body and preset.type in TEMPLATE_ANCHORS:
                body = TEMPLATE_ANCHORS[preset.type]
            if "{{" not in body:
                continue
            try:
                contents[preset.id] = self._macros.substitute(body, scope)
            except MacroError as exc:
                context.log(self.id, "warn", f"Macro expansion failed for preset {preset.name or preset.id}: {exc.message}")
        return contents

    @staticmethod
    def _apply_depth(conversation: list[ProcessableMessage], presets: Sequence[PresetMessage], build) -> list[ProcessableMessage]:
        if not presets:
            return conversation
        by_depth: dict[int, list[PresetMessage]] = {}
        for preset in presets:
            strategy = preset.injection_strategy
            if strategy is None:
                continue
            if strategy.depth_config and strategy.depth_config.strip():
                depths = parse_depth_config(strategy.depth_config, len(conversation))
                if not depths:
                    LOGGER.debug("Depth config %r of preset %s produced no depths", strategy.depth_config, preset.id)
            else:
                depths = [strategy.depth] if strategy.depth is not None else []
            for depth in depths:
                by_depth.setdefault(depth, []).append(preset)

        result = list(conversation)
        for depth in sorted(by_depth, reverse=True):
            group = sorted(by_depth[depth], key=_order)
            index = max(0, len(result) - depth)
            result[index:index] = [build(preset, SourceType.DEPTH_INJECTION) for preset in group]
        return result

    @staticmethod
    def _anchor_groups(presets: Sequence[PresetMessage]) -> dict[str, _AnchorGroup]:
        groups: dict[str, _AnchorGroup] = {}
        for preset in sorted(presets, key=_order):
            strategy = preset.injection_strategy
            if strategy is None or not strategy.anchor_target:
                LOGGER.debug("Anchor preset %s has no anchor target", preset.id)
                continue
            group = groups.setdefault(strategy.anchor_target, _AnchorGroup())
            (group.before if strategy.anchor_position == "before" else group.after).append(preset)
        return groups

    @staticmethod
    def _render_skeleton(preset: PresetMessage, contents: dict[str, str], build, anchored) -> list[ProcessableMessage]:
        if preset.type == "message":
            return [build(preset, SourceType.PRESET)]
        rendered = anchored(preset.type, "before")
        if preset.type in TEMPLATE_ANCHORS:
            body = contents.get(preset.id, preset.content)
            if body.strip() and body.strip() not in _LEGACY_FIXED_TEXTS:
                rendered.append(build(preset, SourceType.PRESET, body))
        rendered.extend(anchored(preset.type, "after"))
        return rendered
