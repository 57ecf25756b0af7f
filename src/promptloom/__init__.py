"""Context assembly pipeline for LLM chat agents."""

from .ai.orchestration.runner import ContextPipeline, PipelineResult

__all__ = ["ContextPipeline", "PipelineResult"]

__version__ = "0.1.0"
