"""Stage contract shared by every pipeline stage."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..context import PipelineContext


@runtime_checkable
class PipelineStage(Protocol):
    """A single step of the context pipeline.

    Stages receive the run's :class:`PipelineContext`, may replace
    ``context.messages`` wholesale, and record what they did through
    ``context.log``.
    """

    id: str
    name: str

    async def execute(self, context: PipelineContext) -> None:
        ...


__all__ = ["PipelineStage"]
