"""History stage: linearize the session tree into chronological messages.

The active branch is walked from ``active_leaf_id`` to the root. Nodes
summarized by an enabled compression node on that path are hidden, the root is
excluded, and empty nodes are dropped. Older message bodies can optionally be
reduced from HTML to Markdown (or plain text) to save tokens.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from bs4 import BeautifulSoup
from markdown_it import MarkdownIt
from markdownify import markdownify

from ..context import PipelineContext
from ..types import ChatSession, MessageNode, ProcessableMessage, SourceType

LOGGER = logging.getLogger(__name__)

_MARKUP_RE = re.compile(r"<[a-z][\s\S]*>", re.IGNORECASE)
_COMMENT_RE = re.compile(r"<!--[\s\S]*?-->")
_EMPTY_LINK_RE = re.compile(r"!?\[\]\(\s*\)")
_TRAILING_WS_RE = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n{3,}")

__all__ = ["HistoryStage", "LinearizedBranch", "linearize_branch", "reduce_markup"]


@dataclass(slots=True)
class LinearizedBranch:
    nodes: list[MessageNode] = field(default_factory=list)
    hidden_ids: set[str] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)


def linearize_branch(session: ChatSession) -> LinearizedBranch:
    """Return the active branch in chronological order, root excluded."""

    branch = LinearizedBranch()
    path = _walk_to_root(session, branch)
    for node in path:
        if node.is_compression_node and node.is_enabled:
            branch.hidden_ids.update(node.compressed_node_ids)
    for node in path:
        if node.parent_id is None or node.id in branch.hidden_ids or not node.is_enabled:
            continue
        branch.nodes.append(node)
    branch.nodes.reverse()
    return branch


def _walk_to_root(session: ChatSession, branch: LinearizedBranch) -> list[MessageNode]:
    path: list[MessageNode] = []
    visited: set[str] = set()
    current_id = session.active_leaf_id
    while current_id is not None:
        if current_id in visited:
            branch.warnings.append(f"Cycle detected at node {current_id}; stopping traversal")
            break
        visited.add(current_id)
        node = session.nodes.get(current_id)
        if node is None:
            branch.warnings.append(f"Node {current_id} is missing from the session; stopping traversal")
            break
        path.append(node)
        current_id = node.parent_id
    return path


def reduce_markup(text: str, *, mode: str = "markdown") -> str:
    """Convert an HTML-ish body into Markdown, or plain text when ``mode == "plain"``."""

    soup = BeautifulSoup(text, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    converted = markdownify(
        str(soup),
        heading_style="ATX",
        escape_asterisks=False,
        escape_underscores=False,
    )
    if mode == "plain":
        rendered = MarkdownIt("commonmark").render(converted)
        converted = BeautifulSoup(rendered, "html.parser").get_text()
    converted = _COMMENT_RE.sub("", converted)
    converted = _EMPTY_LINK_RE.sub("", converted)
    converted = _TRAILING_WS_RE.sub("", converted)
    converted = _BLANK_RUN_RE.sub("\n\n", converted)
    return converted.strip()


class HistoryStage:
    """Turn the session tree into the initial message list."""

    id = "history"
    name = "History Linearizer"

    async def execute(self, context: PipelineContext) -> None:
        session = context.session
        if session is None:
            context.messages = []
            context.log(self.id, "warn", "No session supplied; nothing to assemble")
            return

        branch = linearize_branch(session)
        for warning in branch.warnings:
            context.log(self.id, "warn", warning)

        messages: list[ProcessableMessage] = []
        for node in branch.nodes:
            if not node.content.strip() and not node.attachments:
                continue
            messages.append(
                ProcessableMessage(
                    role=node.role,
                    content=node.content,
                    source_type=SourceType.HISTORY,
                    source_id=node.id,
                    source_index=len(messages),
                    attachments=list(node.attachments),
                )
            )

        converted = self._reduce_older_markup(context, messages)
        context.messages = messages
        context.log(
            self.id,
            "info",
            f"Loaded {len(messages)} history message(s)",
            hidden=len(branch.hidden_ids),
            converted=converted,
        )

    def _reduce_older_markup(self, context: PipelineContext, messages: list[ProcessableMessage]) -> int:
        options = context.settings.context_optimization
        if not options.convert_markup:
            return 0
        keep_recent = max(0, options.keep_recent_markup)
        converted = 0
        for index, message in enumerate(messages):
            if len(messages) - index <= keep_recent:
                break
            if not isinstance(message.content, str) or not _MARKUP_RE.search(message.content):
                continue
            try:
                reduced = reduce_markup(message.content, mode=options.markup_mode)
            except Exception as exc:
                LOGGER.debug("Markup reduction failed for %s", message.source_id, exc_info=True)
                context.log(self.id, "warn", f"Markup reduction failed for {message.source_id}: {exc}")
                continue
            if reduced != message.content:
                message.content = reduced
                converted += 1
        return converted
