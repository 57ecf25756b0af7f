"""Worldbook stage: keyword-triggered knowledge injection.

The engine scans recent history (plus optional character fields) for entry
keywords, runs a bounded recursive activation loop in which activated content
can trigger further entries, resolves inclusion-group competition with the
run's seedable random source, enforces a token budget, and finally splices the
activated entries into the message list.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable, Sequence

from ..context import PipelineContext, estimate_tokens
from ..errors import PatternError
from ..patterns import compile_pattern, parse_literal
from ..types import (
    AgentConfig,
    ProcessableMessage,
    SelectiveLogic,
    SourceType,
    Worldbook,
    WorldbookEntry,
    WorldbookPosition,
)

LOGGER = logging.getLogger(__name__)

_MATCHER = "\x01"
_JOINER = "\n" + _MATCHER
_HARD_LOOP_LIMIT = 20
_ROLE_NAMES = {0: "system", 1: "user", 2: "assistant"}

__all__ = [
    "ActivatedEntry",
    "ScanGlobals",
    "WorldbookEngine",
    "WorldbookScanner",
    "WorldbookStage",
    "match_key",
]


# -----------------------------------------------------------------------------
# Keyword Matching
# -----------------------------------------------------------------------------


def match_key(haystack: str, key: str, *, case_sensitive: bool = False, whole_words: bool = False) -> bool:
    """Return whether ``key`` occurs in ``haystack``.

    ``/pattern/flags`` keys are treated as regular expressions; an invalid
    expression never matches.
    """

    key = key.strip()
    if not key or not haystack:
        return False
    literal = parse_literal(key)
    if literal is not None:
        try:
            return compile_pattern(*literal).search(haystack) is not None
        except PatternError:
            LOGGER.debug("Ignoring invalid worldbook key pattern %s", key)
            return False
    if not case_sensitive:
        haystack = haystack.lower()
        key = key.lower()
    if whole_words:
        if len(key.split()) > 1:
            return key in haystack
        return re.search(rf"(?:^|\W)({re.escape(key)})(?:$|\W)", haystack) is not None
    return key in haystack


@dataclass(slots=True, frozen=True)
class ScanGlobals:
    """Character/persona fields an entry may opt into scanning."""

    persona: str = ""
    character_description: str = ""
    character_personality: str = ""
    character_depth_prompt: str = ""
    scenario: str = ""
    creator_notes: str = ""

    @classmethod
    def from_context(cls, context: PipelineContext) -> ScanGlobals:
        agent = context.agent
        first_system = next((p.content for p in agent.presets if p.role == "system" and p.type == "message"), "")
        return cls(
            persona=context.user_profile.content if context.user_profile else "",
            character_description=agent.description or first_system,
            character_personality=agent.personality,
            character_depth_prompt=agent.depth_prompt,
            scenario=agent.scenario,
            creator_notes=agent.creator_notes,
        )


class WorldbookScanner:
    """Builds the text an entry's keys are matched against."""

    def __init__(self, history: Sequence[str], globals_: ScanGlobals, *, default_scan_depth: int) -> None:
        self._history = list(history)
        self._globals = globals_
        self._default_scan_depth = default_scan_depth
        self._recursion: list[str] = []

    @property
    def history_count(self) -> int:
        return len(self._history)

    def add_recursion(self, content: str) -> None:
        self._recursion.append(content)

    def scan_text(self, entry: WorldbookEntry) -> str:
        depth = entry.scan_depth if entry.scan_depth is not None else self._default_scan_depth
        parts = self._history[: max(0, depth)]
        glob = self._globals
        optional = (
            (entry.match_persona_description, glob.persona),
            (entry.match_character_description, glob.character_description),
            (entry.match_character_personality, glob.character_personality),
            (entry.match_character_depth_prompt, glob.character_depth_prompt),
            (entry.match_scenario, glob.scenario),
            (entry.match_creator_notes, glob.creator_notes),
        )
        parts.extend(text for enabled, text in optional if enabled and text)
        if self._recursion and not entry.exclude_recursion:
            parts.extend(self._recursion)
        return _JOINER.join(parts)

    def matches(self, text: str, key: str, entry: WorldbookEntry) -> bool:
        return match_key(
            text,
            key,
            case_sensitive=bool(entry.case_sensitive),
            whole_words=bool(entry.match_whole_words),
        )

    def matched_in_history(self, entry: WorldbookEntry, depth: int) -> bool:
        recent = _JOINER.join(self._history[: max(0, depth)])
        return any(self.matches(recent, key, entry) for key in entry.key)


# -----------------------------------------------------------------------------
# Activation Engine
# -----------------------------------------------------------------------------


class _ScanState(Enum):
    INITIAL = "initial"
    RECURSION = "recursion"
    DONE = "done"


@dataclass(slots=True)
class ActivatedEntry:
    entry: WorldbookEntry
    book_name: str
    matched_keys: list[str] = field(default_factory=list)
    tokens: int = 0

    @property
    def key(self) -> str:
        return f"{self.entry.uid}-{self.book_name}"


TokenCost = Callable[[str], Awaitable[int]]


class WorldbookEngine:
    """Runs the recursive activation loop over a set of entries."""

    def __init__(
        self,
        books: Iterable[Worldbook],
        scanner: WorldbookScanner,
        *,
        agent: AgentConfig,
        rng,
        token_cost: TokenCost,
        max_tokens: int,
        max_recursion_steps: int = 0,
        disable_recursion: bool = False,
    ) -> None:
        self._candidates = [(entry, book.name) for book in books for entry in book.entries if not entry.disable]
        self._scanner = scanner
        self._agent = agent
        self._rng = rng
        self._token_cost = token_cost
        self._max_tokens = max_tokens
        self._max_steps = max_recursion_steps
        self._disable_recursion = disable_recursion
        self.used_tokens = 0
        self.loops = 0

    async def run(self) -> list[ActivatedEntry]:
        activated: dict[str, ActivatedEntry] = {}
        delay_levels = sorted({entry.recursion_level for entry, _ in self._candidates if entry.delay_until_recursion})
        current_level = delay_levels.pop(0) if delay_levels else 0
        state = _ScanState.INITIAL

        while state is not _ScanState.DONE:
            if self._max_steps > 0 and self.loops >= self._max_steps:
                break
            if self.loops >= _HARD_LOOP_LIMIT:
                LOGGER.debug("Worldbook recursion stopped at the hard loop limit")
                break
            self.loops += 1

            round_hits: list[ActivatedEntry] = []
            for entry, book_name in self._candidates:
                if f"{entry.uid}-{book_name}" in activated:
                    continue
                if self._filtered_by_character(entry):
                    continue
                if entry.delay_until_recursion:
                    if state is not _ScanState.RECURSION or entry.recursion_level > current_level:
                        continue
                matched, keys = self.check_activation(entry)
                if not matched:
                    continue
                if entry.use_probability and entry.probability < 100:
                    if self._rng.random() * 100 > entry.probability:
                        continue
                round_hits.append(ActivatedEntry(entry=entry, book_name=book_name, matched_keys=keys))

            winners = self._resolve_groups(round_hits, activated.values())
            if winners:
                added_for_recursion = False
                for winner in winners:
                    cost = await self._token_cost(winner.entry.content)
                    if not winner.entry.ignore_budget and self.used_tokens + cost > self._max_tokens:
                        LOGGER.debug("Worldbook entry %s skipped by budget", winner.entry.uid)
                        continue
                    winner.tokens = cost
                    activated[winner.key] = winner
                    self.used_tokens += cost
                    if not winner.entry.prevent_recursion and not self._disable_recursion:
                        self._scanner.add_recursion(winner.entry.content)
                        added_for_recursion = True
                state = _ScanState.RECURSION if added_for_recursion else _ScanState.DONE
            elif delay_levels:
                current_level = delay_levels.pop(0)
                state = _ScanState.RECURSION
            else:
                state = _ScanState.DONE

        return list(activated.values())

    def check_activation(self, entry: WorldbookEntry) -> tuple[bool, list[str]]:
        """Evaluate the temporal gates and keyword logic for one entry."""

        if entry.constant:
            return True, []
        scanner = self._scanner
        if entry.delay and scanner.history_count < entry.delay:
            return False, []
        if entry.cooldown and entry.cooldown > 0 and scanner.matched_in_history(entry, entry.cooldown):
            return False, []

        text = scanner.scan_text(entry)
        matched_keys = [key for key in entry.key if scanner.matches(text, key, entry)]
        matched = bool(matched_keys)
        if not matched and entry.sticky and entry.sticky > 0:
            matched = scanner.matched_in_history(entry, entry.sticky)
        if not matched:
            return False, []

        if entry.selective and entry.keysecondary:
            hits = sum(1 for key in entry.keysecondary if scanner.matches(text, key, entry))
            total = len(entry.keysecondary)
            logic = entry.selective_logic
            if logic is SelectiveLogic.AND_ALL:
                passed = hits == total
            elif logic is SelectiveLogic.NOT_ANY:
                passed = hits == 0
            elif logic is SelectiveLogic.NOT_ALL:
                passed = hits < total
            else:
                passed = hits > 0
            if not passed:
                return False, []
        return True, matched_keys

    def _filtered_by_character(self, entry: WorldbookEntry) -> bool:
        flt = entry.character_filter
        if flt is None or (not flt.names and not flt.tags):
            return False
        agent_names = {self._agent.name, self._agent.label}
        name_hit = any(name in agent_names for name in flt.names)
        tag_hit = any(tag in self._agent.tags for tag in flt.tags)
        hit = name_hit or tag_hit
        return hit if flt.is_exclude else not hit

    def _resolve_groups(
        self,
        hits: list[ActivatedEntry],
        already: Iterable[ActivatedEntry],
    ) -> list[ActivatedEntry]:
        """Keep one winner per inclusion group.

        An entry that loses in any of its groups is excluded for this round,
        so two members of one group never activate together.
        """

        active_groups = {name for item in already for name in item.entry.groups}
        groups: dict[str, list[ActivatedEntry]] = {}
        ungrouped: list[ActivatedEntry] = []
        for item in hits:
            names = item.entry.groups
            if not names:
                ungrouped.append(item)
                continue
            for name in names:
                groups.setdefault(name, []).append(item)

        chosen: list[ActivatedEntry] = []
        losers: set[int] = set()
        for name, members in groups.items():
            if name in active_groups:
                losers.update(id(member) for member in members)
                continue
            winner = next((member for member in members if member.entry.group_override), None)
            if winner is None:
                winner = self._weighted_pick(members)
            losers.update(id(member) for member in members if member is not winner)
            if all(winner is not item for item in chosen):
                chosen.append(winner)

        winners = list(ungrouped)
        winners.extend(item for item in chosen if id(item) not in losers)
        return winners

    def _weighted_pick(self, members: list[ActivatedEntry]) -> ActivatedEntry:
        weights = [max(0, member.entry.group_weight if member.entry.group_weight is not None else 100) for member in members]
        total = sum(weights)
        if total <= 0:
            return members[0]
        roll = self._rng.random() * total
        for member, weight in zip(members, weights):
            roll -= weight
            if roll <= 0:
                return member
        return members[-1]


# -----------------------------------------------------------------------------
# Injection
# -----------------------------------------------------------------------------


def inject_entries(context: PipelineContext, activated: Sequence[ActivatedEntry]) -> int:
    """Splice activated entries into ``context.messages``; return the number injected."""

    injected = 0
    for item in sorted(activated, key=lambda hit: hit.entry.order, reverse=True):
        entry = item.entry
        if entry.position is WorldbookPosition.OUTLET:
            context.shared.outlet_entries.setdefault(entry.outlet_name or entry.comment or str(entry.uid), []).append(entry)
            continue
        message = ProcessableMessage(
            role=_ROLE_NAMES.get(entry.role, "system"),  # type: ignore[arg-type]
            content=entry.content,
            source_type=SourceType.DEPTH_INJECTION if entry.position is WorldbookPosition.DEPTH else SourceType.ANCHOR_INJECTION,
            source_id=str(entry.uid),
            metadata={"worldbook": item.book_name},
        )
        messages = context.messages
        history_indices = [index for index, msg in enumerate(messages) if msg.is_history]
        history_anchor = history_indices[0] if history_indices else len(messages)
        preset_anchor = next((i for i, msg in enumerate(messages) if msg.source_type is SourceType.PRESET), history_anchor)
        char_anchor = next(
            (i for i, msg in enumerate(messages) if msg.source_type is SourceType.PRESET and msg.role == "system"),
            preset_anchor,
        )

        position = entry.position
        if position is WorldbookPosition.BEFORE_CHAR:
            index = char_anchor
        elif position is WorldbookPosition.AFTER_CHAR:
            index = min(char_anchor + 1, len(messages))
        elif position in (WorldbookPosition.BEFORE_AN, WorldbookPosition.BEFORE_EM):
            index = history_anchor
        elif position in (WorldbookPosition.AFTER_AN, WorldbookPosition.AFTER_EM):
            index = min(history_anchor + 1, len(messages))
        elif position is WorldbookPosition.DEPTH:
            if history_indices:
                index = max(0, history_indices[-1] + 1 - max(0, entry.depth))
            else:
                index = len(messages)
        else:
            index = history_anchor
        messages.insert(index, message)
        injected += 1
    return injected


class WorldbookStage:
    id = "worldbook"
    name = "Worldbook Engine"

    async def execute(self, context: PipelineContext) -> None:
        books = [book for book in context.shared.worldbooks if book.entries]
        if not books:
            return
        settings = context.worldbook_settings
        history = [message.text for message in context.messages if message.is_history]
        history.reverse()
        scanner = WorldbookScanner(history, ScanGlobals.from_context(context), default_scan_depth=settings.default_scan_depth)
        model_id = context.effective_model_id

        counter_failed = False

        async def _cost(text: str) -> int:
            nonlocal counter_failed
            try:
                return await context.services.count(text, model_id)
            except Exception as exc:
                LOGGER.debug("Worldbook token counting failed", exc_info=True)
                if not counter_failed:
                    counter_failed = True
                    context.log(self.id, "warn", f"Token counting failed, using estimates: {exc}")
                return estimate_tokens(text)

        engine = WorldbookEngine(
            books,
            scanner,
            agent=context.agent,
            rng=context.rng,
            token_cost=_cost,
            max_tokens=settings.max_tokens,
            max_recursion_steps=settings.max_recursion_steps,
            disable_recursion=settings.disable_recursion,
        )
        activated = await engine.run()
        if not activated:
            context.log(self.id, "debug", "No worldbook entries activated", loops=engine.loops)
            return

        context.shared.activated_entries = [item.entry for item in activated]
        injected = inject_entries(context, activated)
        context.log(
            self.id,
            "info",
            f"Activated {len(activated)} worldbook entries (budget: {engine.used_tokens} tokens)",
            injected=injected,
            loops=engine.loops,
            tokens=engine.used_tokens,
            activated=[
                {"uid": item.entry.uid, "name": item.entry.comment or (item.entry.key[0] if item.entry.key else ""), "worldbook": item.book_name}
                for item in activated
            ],
        )
