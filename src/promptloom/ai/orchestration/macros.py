"""``{{macro}}`` substitution for preset bodies and anchor templates.

Macros take the form ``{{name}}`` or ``{{name::arg::arg}}``. Names are case
insensitive. Unknown macros are left verbatim so that downstream consumers can
still see them.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Mapping

from .errors import MacroError

if TYPE_CHECKING:
    from .context import PipelineContext

LOGGER = logging.getLogger(__name__)

_MACRO_RE = re.compile(r"\{\{([^{}]*)\}\}")
_DICE_RE = re.compile(r"^\s*(\d*)\s*d\s*(\d+)\s*([+-]\s*\d+)?\s*$", re.IGNORECASE)
_TRIM_MARKER = "\x00trim\x00"
_TRIM_RE = re.compile(r"\s*" + re.escape(_TRIM_MARKER) + r"\s*")
_MAX_PASSES = 3

MacroHandler = Callable[["MacroScope", list[str]], "str | None"]


@dataclass(slots=True)
class MacroScope:
    """Values visible to macros during one substitution."""

    user: str = "User"
    char: str = "Assistant"
    persona: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    last_message: str = ""
    last_user_message: str = ""
    last_char_message: str = ""
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rng: random.Random = field(default_factory=random.Random)
    variables: dict[str, str] = field(default_factory=dict)
    outlets: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_context(cls, context: PipelineContext) -> MacroScope:
        history = context.history_messages()
        last_user = next((m.text for m in reversed(history) if m.role == "user"), "")
        last_char = next((m.text for m in reversed(history) if m.role == "assistant"), "")
        profile = context.user_profile
        outlets = {
            name: "\n".join(entry.content for entry in entries)
            for name, entries in context.shared.outlet_entries.items()
        }
        return cls(
            user=profile.label if profile else "User",
            char=context.agent.label,
            persona=profile.content if profile else "",
            description=context.agent.description,
            personality=context.agent.personality,
            scenario=context.agent.scenario,
            last_message=history[-1].text if history else "",
            last_user_message=last_user,
            last_char_message=last_char,
            now=context.now,
            rng=context.rng,
            variables=context.shared.variables,
            outlets=outlets,
        )


class MacroProcessor:
    """Expands macros using a registry of named handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, MacroHandler] = {}
        for name, handler in _BUILTINS.items():
            self.register(name, handler)

    def register(self, name: str, handler: MacroHandler) -> None:
        self._handlers[name.strip().lower()] = handler

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def substitute(self, text: str, scope: MacroScope) -> str:
        """Expand every macro in ``text``; raises :class:`MacroError` on handler failure."""

        if not text or "{{" not in text:
            return text
        result = text
        for _ in range(_MAX_PASSES):
            expanded = _MACRO_RE.sub(lambda match: self._expand(match, scope), result)
            if expanded == result:
                break
            result = expanded
        if _TRIM_MARKER in result:
            result = _TRIM_RE.sub("", result)
        return result

    def _expand(self, match: re.Match[str], scope: MacroScope) -> str:
        body = match.group(1)
        name, *args = body.split("::")
        handler = self._handlers.get(name.strip().lower())
        if handler is None:
            return match.group(0)
        try:
            value = handler(scope, args)
        except Exception as exc:
            raise MacroError(message=f"Macro {{{{{name}}}}} failed: {exc}", macro=name) from exc
        return match.group(0) if value is None else value


# -----------------------------------------------------------------------------
# Built-in Handlers
# -----------------------------------------------------------------------------


def _field(attribute: str) -> MacroHandler:
    return lambda scope, _args: str(getattr(scope, attribute))


def _choices(args: list[str]) -> list[str]:
    if len(args) == 1 and "," in args[0]:
        return [item.strip() for item in args[0].split(",")]
    return args


def _random(scope: MacroScope, args: list[str]) -> str | None:
    options = _choices(args)
    if not options:
        return None
    return scope.rng.choice(options)


def _roll(scope: MacroScope, args: list[str]) -> str | None:
    if not args:
        return None
    match = _DICE_RE.match(args[0])
    if match is None:
        if args[0].strip().isdigit():
            return str(scope.rng.randint(1, max(1, int(args[0]))))
        return None
    count = int(match.group(1) or 1)
    sides = max(1, int(match.group(2)))
    modifier = int(match.group(3).replace(" ", "")) if match.group(3) else 0
    total = sum(scope.rng.randint(1, sides) for _ in range(min(count, 100)))
    return str(total + modifier)


def _setvar(scope: MacroScope, args: list[str]) -> str:
    if not args:
        raise ValueError("setvar requires a variable name")
    scope.variables[args[0].strip()] = "::".join(args[1:])
    return ""


def _getvar(scope: MacroScope, args: list[str]) -> str:
    if not args:
        raise ValueError("getvar requires a variable name")
    return scope.variables.get(args[0].strip(), "")


def _outlet(scope: MacroScope, args: list[str]) -> str:
    if not args:
        return ""
    return scope.outlets.get(args[0].strip(), "")


def _local(scope: MacroScope) -> datetime:
    return scope.now.astimezone() if scope.now.tzinfo else scope.now


_BUILTINS: Mapping[str, MacroHandler] = {
    "user": _field("user"),
    "char": _field("char"),
    "persona": _field("persona"),
    "description": _field("description"),
    "personality": _field("personality"),
    "scenario": _field("scenario"),
    "lastmessage": _field("last_message"),
    "lastusermessage": _field("last_user_message"),
    "lastcharmessage": _field("last_char_message"),
    "input": _field("last_user_message"),
    "time": lambda scope, _args: _local(scope).strftime("%H:%M"),
    "date": lambda scope, _args: _local(scope).strftime("%Y-%m-%d"),
    "isotime": lambda scope, _args: scope.now.strftime("%H:%M:%S"),
    "isodate": lambda scope, _args: scope.now.strftime("%Y-%m-%d"),
    "timestamp": lambda scope, _args: str(int(scope.now.timestamp() * 1000)),
    "weekday": lambda scope, _args: _local(scope).strftime("%A"),
    "random": _random,
    "pick": _random,
    "roll": _roll,
    "newline": lambda _scope, _args: "\n",
    "trim": lambda _scope, _args: _TRIM_MARKER,
    "setvar": _setvar,
    "getvar": _getvar,
    "outlet": _outlet,
}


__all__ = ["MacroProcessor", "MacroScope"]
