"""Shared test helpers and stub services.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Mapping, Sequence

from promptloom.ai.orchestration.context import PipelineContext, PipelineServices
from promptloom.ai.orchestration.types import (
    AgentConfig,
    Attachment,
    ChatSession,
    KnowledgeEntry,
    MessageNode,
    ProcessableMessage,
    SearchResult,
    SourceType,
)


class WordCounter:
    """Token counting stub: one token per whitespace separated word."""

    attachment_cost = 100

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []

    def count(self, text: str, model_id: str | None) -> int:
        self.calls.append((text, model_id))
        return len(text.split())

    def count_message(self, text: str, model_id: str | None, attachments: Sequence[Attachment] = ()) -> int:
        return self.count(text, model_id) + self.attachment_cost * len(attachments)


class AsyncWordCounter(WordCounter):
    async def count(self, text: str, model_id: str | None) -> int:  # type: ignore[override]
        return len(text.split())

    async def count_message(self, text: str, model_id: str | None, attachments: Sequence[Attachment] = ()) -> int:  # type: ignore[override]
        return len(text.split()) + self.attachment_cost * len(attachments)


class FailingCounter:
    """Token counting stub whose every call raises."""

    def count(self, text: str, model_id: str | None) -> int:
        raise RuntimeError("counter offline")

    def count_message(self, text: str, model_id: str | None, attachments: Sequence[Attachment] = ()) -> int:
        raise RuntimeError("counter offline")


class StubEmbedder:
    """Returns fixed vectors per query text and records every call."""

    def __init__(self, vectors: Mapping[str, Sequence[float]] | None = None, default: Sequence[float] = (1.0, 0.0)) -> None:
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.calls: list[tuple[str, str, str | None]] = []

    async def embed(self, text: str, model_id: str, profile: str | None = None) -> list[float]:
        self.calls.append((text, model_id, profile))
        return list(self.vectors.get(text, self.default))


class StubKnowledge:
    """Knowledge search stub returning canned results."""

    def __init__(
        self,
        results: Sequence[SearchResult] = (),
        entries: Mapping[str, tuple[str, str, KnowledgeEntry]] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.results = list(results)
        self.entries = dict(entries or {})
        self.error = error
        self.search_calls: list[dict[str, Any]] = []

    def search(self, query: str, **kwargs: Any) -> list[SearchResult]:
        self.search_calls.append({"query": query, **kwargs})
        if self.error is not None:
            raise self.error
        return list(self.results)

    async def get_entries(self, ids: Sequence[str]) -> list[tuple[str, str, KnowledgeEntry]]:
        return [self.entries[item] for item in ids if item in self.entries]


class StubAttachments:
    """Attachment service stub with canned completions and file contents."""

    def __init__(
        self,
        completed: Mapping[str, Attachment] | None = None,
        files: Mapping[str, bytes] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.completed = dict(completed or {})
        self.files = dict(files or {})
        self.delay = delay
        self.waited: list[str] = []

    async def wait_for_completion(self, attachments: Sequence[Attachment]) -> list[Attachment]:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.waited.extend(item.id for item in attachments)
        return [self.completed.get(item.id, item) for item in attachments]

    def read_binary(self, path: str) -> bytes:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]


def build_session(turns: Iterable[tuple[str, str]], *, session_id: str = "session-1") -> ChatSession:
    """Build a linear session: a root node followed by one node per turn."""

    nodes = [MessageNode(id="root", parent_id=None, role="system", content="")]
    for index, (role, content) in enumerate(turns, start=1):
        nodes.append(MessageNode(id=f"n{index}", parent_id=nodes[-1].id, role=role, content=content))  # type: ignore[arg-type]
    return ChatSession.from_nodes(session_id, nodes)


def history(*texts: str, roles: Sequence[str] = ("user", "assistant")) -> list[ProcessableMessage]:
    """Chronological history messages alternating through ``roles``."""

    return [
        ProcessableMessage(
            role=roles[index % len(roles)],  # type: ignore[arg-type]
            content=text,
            source_type=SourceType.HISTORY,
            source_id=f"h{index}",
            source_index=index,
        )
        for index, text in enumerate(texts)
    ]


def make_context(
    messages: Sequence[ProcessableMessage] = (),
    *,
    agent: AgentConfig | None = None,
    services: PipelineServices | None = None,
    **kwargs: Any,
) -> PipelineContext:
    context = PipelineContext(
        session=kwargs.pop("session", None),
        agent=agent or AgentConfig(id="agent-1", name="Aria", model_id="openai:gpt-4o"),
        services=services or PipelineServices(token_counter=WordCounter()),
        **kwargs,
    )
    context.messages = list(messages)
    return context


def result(entry_id: str, content: str, score: float, kb_name: str = "Lore", key: str | None = None) -> SearchResult:
    return SearchResult(
        entry=KnowledgeEntry(id=entry_id, key=key or entry_id, content=content),
        score=score,
        kb_id="kb-1",
        kb_name=kb_name,
    )
