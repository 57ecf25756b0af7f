"""Service layer helpers (settings persistence)."""

from .settings import (
    AggregationSettings,
    ContextManagementSettings,
    ContextOptimizationSettings,
    EmbeddingEndpointSettings,
    FormatRule,
    KnowledgeSettings,
    PipelineSettings,
    RegexPreset,
    RegexRule,
    SecretVault,
    SettingsStore,
    TranscriptionSettings,
    WorldbookSettings,
)

__all__ = [
    "AggregationSettings",
    "ContextManagementSettings",
    "ContextOptimizationSettings",
    "EmbeddingEndpointSettings",
    "FormatRule",
    "KnowledgeSettings",
    "PipelineSettings",
    "RegexPreset",
    "RegexRule",
    "SecretVault",
    "SettingsStore",
    "TranscriptionSettings",
    "WorldbookSettings",
]
