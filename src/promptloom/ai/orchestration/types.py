"""Core type definitions for the context pipeline.

Session data (nodes, presets, worldbook entries) is supplied by the caller as
plain snapshots and treated as read-only. :class:`ProcessableMessage` is the
pipeline's mutable working unit and never outlives a single run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Literal, Mapping, Sequence

from ...services.settings import (
    ContextManagementSettings,
    FormatRule,
    KnowledgeSettings,
    RegexPreset,
    WorldbookSettings,
)

__all__ = [
    # Session tree
    "Attachment",
    "AttachmentKind",
    "ChatSession",
    "MessageNode",
    "MessageRole",
    # Working messages
    "ContentPart",
    "ProcessableMessage",
    "SourceType",
    # Agent configuration
    "AgentConfig",
    "InjectionStrategy",
    "ModelCapabilities",
    "ModelMatch",
    "PresetMessage",
    "UserProfile",
    # Worldbook
    "CharacterFilter",
    "SelectiveLogic",
    "Worldbook",
    "WorldbookEntry",
    "WorldbookPosition",
    # Knowledge
    "KnowledgeEntry",
    "SearchResult",
]


MessageRole = Literal["system", "user", "assistant"]
AttachmentKind = Literal["image", "document", "audio", "video", "text", "other"]


# -----------------------------------------------------------------------------
# Attachments & Content Parts
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Attachment:
    """Reference to a file attached to a message.

    Attributes:
        id: Stable attachment identifier.
        name: Display/file name.
        type: Coarse content kind used to pick the wire representation.
        mime_type: MIME type reported by the asset store.
        path: Location understood by the attachment service's ``read_binary``.
        size: Size in bytes, when known.
        status: Transcription/extraction job status (``pending``, ``complete``,
            ``error``) or ``None`` when no job applies.
        extracted_text: Transcript or extracted document text, once available.
    """

    id: str
    name: str
    type: AttachmentKind = "other"
    mime_type: str = "application/octet-stream"
    path: str = ""
    size: int = 0
    status: str | None = None
    extracted_text: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


@dataclass(slots=True)
class ContentPart:
    """A typed element of multi-part message content."""

    type: Literal["text", "image", "document", "audio", "video"]
    text: str | None = None
    data: str | None = None
    media_type: str | None = None
    filename: str | None = None
    source_kind: Literal["base64", "file_data"] = "base64"

    @classmethod
    def text_part(cls, text: str) -> ContentPart:
        return cls(type="text", text=text)

    def to_payload(self) -> dict[str, Any]:
        """Render the wire representation handed to the completion call."""
        if self.type == "text":
            return {"type": "text", "text": self.text or ""}
        if self.type == "image":
            return {"type": "image", "image_base64": self.data or "", "media_type": self.media_type}
        if self.source_kind == "file_data":
            source: dict[str, Any] = {
                "type": "file_data",
                "filename": self.filename,
                "file_data": f"data:{self.media_type};base64,{self.data or ''}",
            }
        else:
            source = {"type": "base64", "media_type": self.media_type, "data": self.data or ""}
        return {"type": self.type, "source": source}


# -----------------------------------------------------------------------------
# Session Tree
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class InjectionStrategy:
    """Placement rule for preset messages.

    ``depth`` (or a ``depth_config`` expression) takes precedence over an
    anchor target; a strategy carrying neither places the message in the
    skeleton.
    """

    depth: int | None = None
    depth_config: str | None = None
    anchor_target: str | None = None
    anchor_position: Literal["before", "after"] = "after"
    order: int = 100

    @property
    def kind(self) -> Literal["depth", "anchor", "skeleton"]:
        if self.depth is not None or (self.depth_config and self.depth_config.strip()):
            return "depth"
        if self.anchor_target:
            return "anchor"
        return "skeleton"


@dataclass(slots=True, frozen=True)
class MessageNode:
    id: str
    parent_id: str | None
    role: MessageRole
    content: str = ""
    children_ids: tuple[str, ...] = ()
    is_enabled: bool = True
    injection_strategy: InjectionStrategy | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    attachments: tuple[Attachment, ...] = ()

    @property
    def is_compression_node(self) -> bool:
        return bool(self.metadata.get("isCompressionNode"))

    @property
    def compressed_node_ids(self) -> tuple[str, ...]:
        return tuple(self.metadata.get("compressedNodeIds") or ())


@dataclass(slots=True, frozen=True)
class ChatSession:
    """Arena of message nodes plus the tip of the active branch."""

    id: str
    nodes: Mapping[str, MessageNode]
    active_leaf_id: str | None
    name: str = ""

    @classmethod
    def from_nodes(cls, session_id: str, nodes: Sequence[MessageNode], *, active_leaf_id: str | None = None) -> ChatSession:
        arena = {node.id: node for node in nodes}
        leaf = active_leaf_id if active_leaf_id is not None else (nodes[-1].id if nodes else None)
        return cls(id=session_id, nodes=arena, active_leaf_id=leaf)


# -----------------------------------------------------------------------------
# Working Messages
# -----------------------------------------------------------------------------


class SourceType(str, Enum):
    HISTORY = "session_history"
    PRESET = "agent_preset"
    DEPTH_INJECTION = "depth_injection"
    ANCHOR_INJECTION = "anchor_injection"
    MERGED = "merged"
    PLACEHOLDER = "placeholder"


@dataclass(slots=True)
class ProcessableMessage:
    """Mutable message flowing through the pipeline stages.

    Attributes:
        role: Chat role.
        content: Plain text or a list of typed parts.
        source_type: Where the message came from; the limiter only truncates
            ``SourceType.HISTORY``.
        source_id: Node/preset/entry identifier the message was built from.
        source_index: Position in the originating list, when meaningful.
        attachments: Attachments not yet converted into content parts.
        token_count: Transient cost computed by the limiter.
        is_truncated: Set when the limiter kept a shortened copy.
    """

    role: MessageRole
    content: str | list[ContentPart]
    source_type: SourceType = SourceType.HISTORY
    source_id: str | None = None
    source_index: int | None = None
    attachments: list[Attachment] = field(default_factory=list)
    token_count: int | None = None
    is_truncated: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Concatenated text of the message (text parts joined by newlines)."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.text or "" for part in self.content if part.type == "text")

    @property
    def is_history(self) -> bool:
        return self.source_type is SourceType.HISTORY

    def replace_text(self, pattern: re.Pattern[str], replacement: Any, count: int = 0) -> int:
        """Substitute ``pattern`` in every text segment and return the number of replacements."""
        if isinstance(self.content, str):
            self.content, total = pattern.subn(replacement, self.content, count=count)
            return total
        total = 0
        for part in self.content:
            if part.type != "text" or not part.text:
                continue
            part.text, replaced = pattern.subn(replacement, part.text, count=count)
            total += replaced
        return total

    def append_text(self, text: str) -> None:
        """Append ``text`` as an inline text part."""
        if isinstance(self.content, str):
            parts = [ContentPart.text_part(self.content)] if self.content else []
            self.content = parts
        self.content.append(ContentPart.text_part(text))

    def to_payload(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [part.to_payload() for part in self.content]}


# -----------------------------------------------------------------------------
# Agent Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ModelMatch:
    enabled: bool = False
    patterns: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class PresetMessage:
    """A preset message from the agent configuration.

    ``type`` is ``"message"`` for literal content and an anchor identifier
    (``chat_history``, ``user_profile``, ...) for anchor placeholders.
    """

    id: str
    role: MessageRole = "system"
    content: str = ""
    type: str = "message"
    name: str = ""
    is_enabled: bool = True
    injection_strategy: InjectionStrategy | None = None
    model_match: ModelMatch | None = None


@dataclass(slots=True, frozen=True)
class ModelCapabilities:
    vision: bool = True
    document: bool = False
    document_format: Literal["base64", "openai_file"] = "base64"


@dataclass(slots=True, frozen=True)
class UserProfile:
    id: str
    name: str
    display_name: str = ""
    content: str = ""
    regex_presets: tuple[RegexPreset, ...] = ()

    @property
    def label(self) -> str:
        return self.display_name or self.name


@dataclass(slots=True, frozen=True)
class AgentConfig:
    """Snapshot of an agent's configuration for one pipeline run."""

    id: str
    name: str
    model_id: str = ""
    profile_id: str = ""
    display_name: str = ""
    tags: tuple[str, ...] = ()
    description: str = ""
    personality: str = ""
    scenario: str = ""
    creator_notes: str = ""
    depth_prompt: str = ""
    presets: tuple[PresetMessage, ...] = ()
    worldbook_settings: WorldbookSettings | None = None
    knowledge_settings: KnowledgeSettings | None = None
    context_management: ContextManagementSettings | None = None
    format_rules: tuple[FormatRule, ...] = ()
    regex_presets: tuple[RegexPreset, ...] = ()
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)

    @property
    def label(self) -> str:
        return self.display_name or self.name


# -----------------------------------------------------------------------------
# Worldbook
# -----------------------------------------------------------------------------


class WorldbookPosition(IntEnum):
    BEFORE_CHAR = 0
    AFTER_CHAR = 1
    BEFORE_AN = 2
    AFTER_AN = 3
    DEPTH = 4
    BEFORE_EM = 5
    AFTER_EM = 6
    OUTLET = 7


class SelectiveLogic(IntEnum):
    AND_ANY = 0
    NOT_ALL = 1
    NOT_ANY = 2
    AND_ALL = 3


@dataclass(slots=True, frozen=True)
class CharacterFilter:
    names: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    is_exclude: bool = False


@dataclass(slots=True, frozen=True)
class WorldbookEntry:
    """A keyword-triggered knowledge snippet.

    Field semantics follow the common lorebook conventions: ``key`` holds the
    primary keywords, ``keysecondary`` the selective filter, ``role`` is
    0/1/2 for system/user/assistant when the entry is injected at depth.
    """

    uid: int | str
    key: tuple[str, ...] = ()
    keysecondary: tuple[str, ...] = ()
    content: str = ""
    comment: str = ""
    position: WorldbookPosition = WorldbookPosition.BEFORE_CHAR
    depth: int = 4
    order: int = 100
    role: int = 0
    constant: bool = False
    disable: bool = False
    selective: bool = True
    selective_logic: SelectiveLogic = SelectiveLogic.AND_ANY
    probability: int = 100
    use_probability: bool = True
    group: str = ""
    group_weight: int = 100
    group_override: bool = False
    prevent_recursion: bool = False
    exclude_recursion: bool = False
    delay_until_recursion: bool = False
    delay_until_recursion_level: int | None = None
    sticky: int | None = None
    cooldown: int | None = None
    delay: int | None = None
    scan_depth: int | None = None
    case_sensitive: bool | None = None
    match_whole_words: bool | None = None
    ignore_budget: bool = False
    character_filter: CharacterFilter | None = None
    outlet_name: str = ""
    match_persona_description: bool = False
    match_character_description: bool = False
    match_character_personality: bool = False
    match_character_depth_prompt: bool = False
    match_scenario: bool = False
    match_creator_notes: bool = False

    @property
    def groups(self) -> tuple[str, ...]:
        if not self.group:
            return ()
        return tuple(name for name in re.split(r",\s*", self.group.strip()) if name)

    @property
    def recursion_level(self) -> int:
        return int(self.delay_until_recursion_level or 1)


@dataclass(slots=True, frozen=True)
class Worldbook:
    id: str
    name: str
    entries: tuple[WorldbookEntry, ...] = ()


# -----------------------------------------------------------------------------
# Knowledge Retrieval
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class KnowledgeEntry:
    id: str
    key: str
    content: str
    tags: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class SearchResult:
    entry: KnowledgeEntry
    score: float
    kb_id: str = ""
    kb_name: str = ""
    match_type: str = "vector"

    def with_score(self, score: float) -> SearchResult:
        return SearchResult(
            entry=self.entry,
            score=score,
            kb_id=self.kb_id,
            kb_name=self.kb_name,
            match_type=self.match_type,
        )
