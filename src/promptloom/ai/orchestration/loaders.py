"""Load worldbooks from the common JSON export format.

Exports store ``entries`` either as a mapping keyed by uid or as a list, with
camelCase field names. Payloads are validated with :mod:`jsonschema` before any
entry is built so that a malformed file fails with one readable error instead
of a half-imported book.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Sequence

import jsonschema

from .errors import WorldbookFormatError
from .types import CharacterFilter, SelectiveLogic, Worldbook, WorldbookEntry, WorldbookPosition

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 20

_KEY_LIST = {"type": "array", "items": {"type": "string"}}
_OPTIONAL_INT = {"type": ["integer", "null"]}

ENTRY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "uid": {"type": ["integer", "string"]},
        "key": _KEY_LIST,
        "keysecondary": _KEY_LIST,
        "content": {"type": "string"},
        "comment": {"type": "string"},
        "position": {"type": "integer", "minimum": 0, "maximum": 7},
        "depth": {"type": "integer", "minimum": 0},
        "order": {"type": "integer"},
        "role": {"type": ["integer", "null"], "minimum": 0, "maximum": 2},
        "constant": {"type": "boolean"},
        "disable": {"type": "boolean"},
        "selective": {"type": "boolean"},
        "selectiveLogic": {"type": "integer", "minimum": 0, "maximum": 3},
        "probability": {"type": ["number", "null"], "minimum": 0, "maximum": 100},
        "useProbability": {"type": "boolean"},
        "group": {"type": "string"},
        "groupWeight": {"type": ["number", "null"]},
        "groupOverride": {"type": "boolean"},
        "preventRecursion": {"type": "boolean"},
        "excludeRecursion": {"type": "boolean"},
        "delayUntilRecursion": {"type": ["boolean", "integer"]},
        "sticky": _OPTIONAL_INT,
        "cooldown": _OPTIONAL_INT,
        "delay": _OPTIONAL_INT,
        "scanDepth": _OPTIONAL_INT,
        "caseSensitive": {"type": ["boolean", "null"]},
        "matchWholeWords": {"type": ["boolean", "null"]},
        "ignoreBudget": {"type": "boolean"},
        "outletName": {"type": "string"},
        "characterFilter": {
            "type": ["object", "null"],
            "properties": {
                "names": _KEY_LIST,
                "tags": _KEY_LIST,
                "isExclude": {"type": "boolean"},
            },
        },
    },
}

WORLDBOOK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["entries"],
    "properties": {
        "name": {"type": "string"},
        "entries": {
            "oneOf": [
                {"type": "object", "additionalProperties": ENTRY_SCHEMA},
                {"type": "array", "items": ENTRY_SCHEMA},
            ]
        },
    },
}

_MATCH_FLAGS = {
    "matchPersonaDescription": "match_persona_description",
    "matchCharacterDescription": "match_character_description",
    "matchCharacterPersonality": "match_character_personality",
    "matchCharacterDepthPrompt": "match_character_depth_prompt",
    "matchScenario": "match_scenario",
    "matchCreatorNotes": "match_creator_notes",
}

__all__ = ["ENTRY_SCHEMA", "WORLDBOOK_SCHEMA", "load_worldbook", "load_worldbook_file", "validate_worldbook"]


def validate_worldbook(payload: Any) -> list[str]:
    """Return schema violations for ``payload`` (empty when valid)."""

    validator = jsonschema.Draft202012Validator(WORLDBOOK_SCHEMA)
    errors: list[str] = []
    for issue in validator.iter_errors(payload):
        path = "/".join(str(part) for part in issue.absolute_path)
        errors.append(f"{path}: {issue.message}" if path else issue.message)
        if len(errors) >= MAX_SCHEMA_ERRORS:
            errors.append("Too many validation errors; stopping early.")
            break
    return errors


def load_worldbook(payload: str | Mapping[str, Any], *, book_id: str = "", name: str | None = None) -> Worldbook:
    """Build a :class:`Worldbook` from an export payload.

    Raises:
        WorldbookFormatError: If the payload is not JSON or violates the schema.
    """

    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise WorldbookFormatError(message=f"Worldbook is not valid JSON: {exc.msg}", details={"line": exc.lineno}) from exc

    errors = validate_worldbook(payload)
    if errors:
        raise WorldbookFormatError(message=f"Worldbook failed validation: {errors[0]}", details={"errors": errors})

    if not isinstance(payload, Mapping):
        raise WorldbookFormatError(message="Worldbook payload must be an object")
    raw_entries = payload["entries"]
    if isinstance(raw_entries, Mapping):
        items: Sequence[tuple[Any, Mapping[str, Any]]] = list(raw_entries.items())
    else:
        items = list(enumerate(raw_entries))
    entries = tuple(_build_entry(uid, raw) for uid, raw in items)
    book_name = name if name is not None else str(payload.get("name") or book_id or "Worldbook")
    LOGGER.debug("Loaded worldbook %s with %s entries", book_name, len(entries))
    return Worldbook(id=book_id or book_name, name=book_name, entries=entries)


def load_worldbook_file(path: Path | str) -> Worldbook:
    file_path = Path(path)
    return load_worldbook(file_path.read_text(encoding="utf-8"), book_id=file_path.stem, name=None)


def _build_entry(fallback_uid: Any, raw: Mapping[str, Any]) -> WorldbookEntry:
    delay_until = raw.get("delayUntilRecursion", False)
    level: int | None = None
    if not isinstance(delay_until, bool) and isinstance(delay_until, int):
        level = delay_until if delay_until > 0 else None
        delay_until = delay_until > 0

    filter_raw = raw.get("characterFilter")
    character_filter = None
    if filter_raw:
        character_filter = CharacterFilter(
            names=tuple(filter_raw.get("names") or ()),
            tags=tuple(filter_raw.get("tags") or ()),
            is_exclude=bool(filter_raw.get("isExclude", False)),
        )

    probability = raw.get("probability")
    group_weight = raw.get("groupWeight")
    role = raw.get("role")
    flags = {field_name: bool(raw.get(key, False)) for key, field_name in _MATCH_FLAGS.items()}
    return WorldbookEntry(
        uid=raw.get("uid", fallback_uid),
        key=tuple(raw.get("key") or ()),
        keysecondary=tuple(raw.get("keysecondary") or ()),
        content=raw.get("content", ""),
        comment=raw.get("comment", ""),
        position=WorldbookPosition(raw.get("position", 0)),
        depth=raw.get("depth", 4),
        order=raw.get("order", 100),
        role=role if role is not None else 0,
        constant=raw.get("constant", False),
        disable=raw.get("disable", False),
        selective=raw.get("selective", True),
        selective_logic=SelectiveLogic(raw.get("selectiveLogic", 0)),
        probability=int(probability) if probability is not None else 100,
        use_probability=raw.get("useProbability", True),
        group=raw.get("group", ""),
        group_weight=int(group_weight) if group_weight is not None else 100,
        group_override=raw.get("groupOverride", False),
        prevent_recursion=raw.get("preventRecursion", False),
        exclude_recursion=raw.get("excludeRecursion", False),
        delay_until_recursion=bool(delay_until),
        delay_until_recursion_level=level,
        sticky=raw.get("sticky"),
        cooldown=raw.get("cooldown"),
        delay=raw.get("delay"),
        scan_depth=raw.get("scanDepth"),
        case_sensitive=raw.get("caseSensitive"),
        match_whole_words=raw.get("matchWholeWords"),
        ignore_budget=raw.get("ignoreBudget", False),
        character_filter=character_filter,
        outlet_name=raw.get("outletName", ""),
        **flags,
    )
