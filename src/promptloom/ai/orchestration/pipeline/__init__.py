"""Context pipeline stages, in their default execution order."""

from .attachments import AttachmentBinaryStage, AttachmentTextStage
from .base import PipelineStage
from .formatting import FormatterStage
from .history import HistoryStage
from .knowledge import KnowledgeStage
from .limiter import TokenLimiterStage
from .presets import PresetStage
from .regex_rules import RegexRulesStage
from .worldbook import WorldbookStage

__all__ = [
    "AttachmentBinaryStage",
    "AttachmentTextStage",
    "FormatterStage",
    "HistoryStage",
    "KnowledgeStage",
    "PipelineStage",
    "PresetStage",
    "RegexRulesStage",
    "TokenLimiterStage",
    "WorldbookStage",
]
