"""Helpers for the ``/pattern/flags`` regex literal syntax used in configs."""

from __future__ import annotations

import re
from functools import lru_cache

from .errors import PatternError

__all__ = ["compile_literal", "compile_pattern", "convert_replacement", "parse_literal"]

# An unescaped slash ends the body; flags are limited to g, i, m, s, u and y.
_LITERAL_RE = re.compile(r"^/((?:\\.|[^/\\])+)/([gimsuy]*)$", re.DOTALL)
_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
_REPLACEMENT_TOKEN_RE = re.compile(r"\$(\$|&|\d{1,2}|<[^>]+>)")


def parse_literal(value: str) -> tuple[str, str] | None:
    """Split ``/body/flags`` into its parts; return ``None`` for plain strings."""

    match = _LITERAL_RE.match(value.strip())
    if not match:
        return None
    return match.group(1), match.group(2)


def compile_literal(value: str) -> re.Pattern[str] | None:
    """Compile ``value`` if it uses the literal syntax, else return ``None``.

    Raises :class:`PatternError` when the literal does not compile.
    """

    parsed = parse_literal(value)
    if parsed is None:
        return None
    body, flags = parsed
    return compile_pattern(body, flags)


def compile_pattern(body: str, flags: str = "") -> re.Pattern[str]:
    """Compile ``body`` honoring the i/m/s flag letters (g, u, y are ignored)."""

    try:
        return _compile(body, flags)
    except re.error as exc:
        raise PatternError(message=f"Invalid regular expression: {exc}", pattern=body) from exc


@lru_cache(maxsize=256)
def _compile(body: str, flags: str) -> re.Pattern[str]:
    value = 0
    for letter in flags:
        value |= _FLAG_MAP.get(letter, 0)
    return re.compile(body, value)


def convert_replacement(template: str) -> str:
    """Translate ``$1``, ``$&``, ``$<name>`` and ``$$`` into :mod:`re` syntax."""

    def _swap(match: re.Match[str]) -> str:
        token = match.group(1)
        if token == "$":
            return "$"
        if token == "&":
            return r"\g<0>"
        if token.startswith("<"):
            return rf"\g{token}"
        return rf"\g<{int(token)}>"

    escaped = template.replace("\\", "\\\\")
    return _REPLACEMENT_TOKEN_RE.sub(_swap, escaped)
