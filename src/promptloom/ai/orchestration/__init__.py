"""Context assembly pipeline: data types, shared context and stages."""

from .types import (
    AgentConfig,
    Attachment,
    ChatSession,
    ContentPart,
    InjectionStrategy,
    MessageNode,
    ModelCapabilities,
    ModelMatch,
    PresetMessage,
    ProcessableMessage,
    SourceType,
    UserProfile,
    Worldbook,
    WorldbookEntry,
    WorldbookPosition,
)

__all__ = [
    "AgentConfig",
    "Attachment",
    "ChatSession",
    "ContentPart",
    "InjectionStrategy",
    "MessageNode",
    "ModelCapabilities",
    "ModelMatch",
    "PresetMessage",
    "ProcessableMessage",
    "SourceType",
    "UserProfile",
    "Worldbook",
    "WorldbookEntry",
    "WorldbookPosition",
]
