"""Attachment stages.

The text phase runs early so that transcripts and extracted document text take
part in keyword scanning and token accounting. The binary phase runs after
every other stage and turns the attachments still left on a message into wire
content parts.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re

import fitz

from ..context import PipelineContext
from ..types import Attachment, ContentPart, ModelCapabilities, ProcessableMessage

LOGGER = logging.getLogger(__name__)

_FILE_PLACEHOLDER_RE = re.compile(r"【file::([^\s】]+)】")
_MEDIA_KINDS = frozenset({"audio", "video"})
_PDF_MIME = "application/pdf"
_PDF_RENDER_SCALE = 1.5

__all__ = ["AttachmentBinaryStage", "AttachmentTextStage", "render_attachment_text", "render_pdf_pages"]


def render_attachment_text(attachment: Attachment) -> str | None:
    """Return the inline rendering of an attachment's extracted text, if any."""

    text = attachment.extracted_text
    if not text:
        return None
    if attachment.type in _MEDIA_KINDS:
        return f"[Transcript: {attachment.name}]\n{text}"
    return f"[File: {attachment.name}]\n```\n{text}\n```"


def _attachment_label(index: int, attachment: Attachment) -> str:
    return f"[Attachment: {index + 1} - {attachment.name}]"


# -----------------------------------------------------------------------------
# Text Phase
# -----------------------------------------------------------------------------


class AttachmentTextStage:
    """Wait for pending transcription jobs and inline the resulting text."""

    id = "attachment-text"
    name = "Attachment Text Resolver"

    async def execute(self, context: PipelineContext) -> None:
        if not any(message.attachments for message in context.messages):
            return
        updated = await self._await_pending(context)

        inlined = 0
        labelled = 0
        for message in context.messages:
            if not message.attachments:
                continue
            current = [updated.get(item.id, item) for item in message.attachments]
            message.attachments = current
            claimed, labels = self._replace_placeholders(message, current)
            labelled += labels
            for attachment in current:
                if attachment.id in claimed:
                    continue
                rendered = render_attachment_text(attachment)
                if rendered is not None:
                    message.append_text(rendered)
                    claimed.add(attachment.id)
            inlined += len(claimed)
            message.attachments = [item for item in current if item.id not in claimed]

        if inlined or labelled:
            context.log(
                self.id,
                "info",
                f"Inlined text for {inlined} attachment(s)",
                inlined=inlined,
                labelled=labelled,
            )

    async def _await_pending(self, context: PipelineContext) -> dict[str, Attachment]:
        pending: dict[str, Attachment] = {}
        for message in context.messages:
            for attachment in message.attachments:
                if attachment.is_pending:
                    pending.setdefault(attachment.id, attachment)
        if not pending or not context.settings.transcription.enabled:
            return {}
        timeout = context.settings.transcription.wait_timeout
        try:
            resolved = await asyncio.wait_for(
                context.services.wait_for_completion(list(pending.values())),
                timeout=timeout if timeout and timeout > 0 else None,
            )
        except asyncio.TimeoutError:
            context.log(self.id, "warn", f"Timed out after {timeout}s waiting for {len(pending)} attachment job(s)")
            return {}
        except Exception as exc:
            LOGGER.debug("Attachment wait failed", exc_info=True)
            context.log(self.id, "warn", f"Waiting for attachment jobs failed: {exc}")
            return {}
        return {item.id: item for item in resolved}

    @staticmethod
    def _replace_placeholders(message: ProcessableMessage, attachments: list[Attachment]) -> tuple[set[str], int]:
        by_id = {item.id: (index, item) for index, item in enumerate(attachments)}
        claimed: set[str] = set()
        labels = 0

        def _swap(match: re.Match[str]) -> str:
            nonlocal labels
            found = by_id.get(match.group(1))
            if found is None:
                return match.group(0)
            index, attachment = found
            rendered = render_attachment_text(attachment)
            if rendered is not None:
                claimed.add(attachment.id)
                return rendered
            labels += 1
            return _attachment_label(index, attachment)

        message.replace_text(_FILE_PLACEHOLDER_RE, _swap)
        return claimed, labels


# -----------------------------------------------------------------------------
# Binary Phase
# -----------------------------------------------------------------------------


def render_pdf_pages(payload: bytes, *, scale: float = _PDF_RENDER_SCALE, max_pages: int | None = None) -> list[bytes]:
    """Rasterize the pages of a PDF into PNG images."""

    images: list[bytes] = []
    with fitz.open(stream=payload, filetype="pdf") as document:
        matrix = fitz.Matrix(scale, scale)
        for index, page in enumerate(document):
            if max_pages is not None and index >= max_pages:
                break
            images.append(page.get_pixmap(matrix=matrix).tobytes("png"))
    return images


class AttachmentBinaryStage:
    """Convert remaining attachments into base64 content parts.

    PDFs sent to a model without native document support but with vision
    are rendered to one image part per page; when rendering fails the PDF is
    sent as a document part.
    """

    id = "attachment-binary"
    name = "Attachment Binary Resolver"

    def __init__(self, *, max_pdf_pages: int | None = 20) -> None:
        self._max_pdf_pages = max_pdf_pages

    async def execute(self, context: PipelineContext) -> None:
        capabilities = context.effective_capabilities
        converted = 0
        failures = 0
        skipped = 0
        for message in context.messages:
            if not message.attachments:
                continue
            parts: list[ContentPart] = []
            for attachment in message.attachments:
                if not self._is_supported(attachment, capabilities):
                    skipped += 1
                    context.log(
                        self.id,
                        "warn",
                        f"Skipping unsupported attachment {attachment.name} ({attachment.type})",
                    )
                    continue
                try:
                    payload = await context.services.read_binary(attachment.path)
                except Exception as exc:
                    failures += 1
                    LOGGER.debug("Reading attachment %s failed", attachment.id, exc_info=True)
                    context.log(self.id, "warn", f"Failed to read attachment {attachment.name}: {exc}")
                    continue
                if self._needs_rasterizing(attachment, capabilities):
                    pages = await self._rasterize(context, attachment, payload)
                    if pages:
                        parts.extend(pages)
                        converted += 1
                        continue
                parts.append(self._to_part(attachment, base64.b64encode(payload).decode("ascii"), capabilities))
                converted += 1
            message.attachments = []
            if not parts:
                continue
            text = message.content
            if isinstance(text, str):
                message.content = ([ContentPart.text_part(text)] if text else []) + parts
            else:
                text.extend(parts)

        if converted or failures or skipped:
            context.log(
                self.id,
                "warn" if failures else "info",
                f"Converted {converted} attachment(s), {failures} failed, {skipped} skipped",
                converted=converted,
                failed=failures,
                skipped=skipped,
            )

    @staticmethod
    def _needs_rasterizing(attachment: Attachment, capabilities: ModelCapabilities) -> bool:
        return (
            attachment.type == "document"
            and attachment.mime_type == _PDF_MIME
            and not capabilities.document
            and capabilities.vision
        )

    async def _rasterize(self, context: PipelineContext, attachment: Attachment, payload: bytes) -> list[ContentPart]:
        try:
            images = await asyncio.to_thread(render_pdf_pages, payload, max_pages=self._max_pdf_pages)
        except Exception as exc:
            LOGGER.debug("Rendering PDF %s failed", attachment.id, exc_info=True)
            context.log(self.id, "warn", f"Could not render {attachment.name} to images, sending it as a document: {exc}")
            return []
        context.log(self.id, "info", f"Rendered {attachment.name} to {len(images)} page image(s)", pages=len(images))
        return [
            ContentPart(type="image", data=base64.b64encode(image).decode("ascii"), media_type="image/png")
            for image in images
        ]

    @staticmethod
    def _is_supported(attachment: Attachment, capabilities: ModelCapabilities) -> bool:
        if attachment.type == "image":
            return capabilities.vision
        return attachment.type in {"document", "audio", "video"}

    @staticmethod
    def _to_part(attachment: Attachment, data: str, capabilities: ModelCapabilities) -> ContentPart:
        if attachment.type == "image":
            return ContentPart(type="image", data=data, media_type=attachment.mime_type)
        if attachment.type == "document" and capabilities.document_format == "openai_file":
            return ContentPart(
                type="document",
                data=data,
                media_type=attachment.mime_type,
                filename=attachment.name,
                source_kind="file_data",
            )
        return ContentPart(type=attachment.type, data=data, media_type=attachment.mime_type)  # type: ignore[arg-type]
