"""Token counting for pipeline budgets.

Counts come from tiktoken when an encoding is known for the model and from a
byte-length heuristic otherwise. :class:`TokenCalculator` is the counting
service stages use; it also prices attachments that still carry binary media.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Sequence

import tiktoken

from .ai_types import TokenCounterProtocol
from .orchestration.types import Attachment

LOGGER = logging.getLogger(__name__)

_FALLBACK_ENCODING = "cl100k_base"

# Flat per-attachment costs used when a message still carries binary media.
_ATTACHMENT_TOKEN_COSTS: Mapping[str, int] = {
    "image": 765,
    "document": 1_500,
    "audio": 1_000,
    "video": 2_000,
}

__all__ = [
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCalculator",
    "TokenCounterRegistry",
]


def _bare_model_name(model_id: str) -> str:
    """Strip ``profile:`` and ``provider/`` prefixes from a model identifier."""
    name = model_id.split(":", 1)[1] if ":" in model_id else model_id
    return name.rsplit("/", 1)[-1]


@lru_cache(maxsize=32)
def _encoding_for(model_name: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model_name)
    except KeyError:
        LOGGER.debug("No tiktoken encoding registered for %s; using %s", model_name, _FALLBACK_ENCODING)
        return tiktoken.get_encoding(_FALLBACK_ENCODING)


@dataclass(slots=True)
class ApproxByteCounter:
    """Estimate tokens as UTF-8 bytes divided by ``bytes_per_token``."""

    model_name: str | None = None
    bytes_per_token: int = 4

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        size = len(text.encode("utf-8", errors="ignore"))
        return max(1, math.ceil(size / max(1, self.bytes_per_token)))


class TiktokenCounter:
    """Exact counts from the model's tiktoken encoding."""

    def __init__(self, model_name: str) -> None:
        bare = _bare_model_name(model_name)
        if not bare:
            raise ValueError("TiktokenCounter needs a model name")
        self.model_name = model_name
        self._encoding = _encoding_for(bare)
        self._approx = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except ValueError:
            LOGGER.debug("tiktoken could not encode text for %s", self.model_name, exc_info=True)
            return self._approx.estimate(text)

    def estimate(self, text: str) -> int:
        return self._approx.estimate(text)


class TokenCounterRegistry:
    """Model name to counter mapping.

    Keys are bare, lower-cased model names, so ``work:openai/GPT-4o`` and
    ``gpt-4o`` share one counter. With ``auto_register`` a
    :class:`TiktokenCounter` is created on first use of an unknown model.
    """

    _default: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None, auto_register: bool = True) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._auto_register = auto_register
        self._by_model: dict[str, TokenCounterProtocol] = {}

    @classmethod
    def default(cls) -> TokenCounterRegistry:
        if cls._default is None:
            cls._default = cls()
        return cls._default

    @staticmethod
    def _key(model_name: str | None) -> str:
        return _bare_model_name(model_name or "").strip().lower()

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._key(model_name)
        if not key:
            raise ValueError("Cannot register a token counter without a model name")
        self._by_model[key] = counter

    def unregister(self, model_name: str) -> None:
        self._by_model.pop(self._key(model_name), None)

    def has(self, model_name: str | None) -> bool:
        return self._key(model_name) in self._by_model

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._key(model_name)
        if not key:
            return self._fallback
        if key not in self._by_model:
            if not self._auto_register:
                return self._fallback
            self._by_model[key] = self._create(key)
        return self._by_model[key]

    def count(self, model_name: str | None, text: str) -> int:
        counter = self.get(model_name)
        try:
            return counter.count(text)
        except Exception:
            LOGGER.warning("Token counter for %s failed; using estimate", model_name, exc_info=True)
            return counter.estimate(text)

    def _create(self, key: str) -> TokenCounterProtocol:
        try:
            return TiktokenCounter(key)
        except Exception as exc:
            # Encodings are downloaded on first use and may be unavailable offline.
            LOGGER.debug("tiktoken unavailable for %s (%s); using byte estimate", key, exc)
            return ApproxByteCounter(model_name=key)


class TokenCalculator:
    """Default token counting service used by the pipeline.

    ``count_message`` adds a flat cost per attachment that still carries
    binary media; attachments with extracted text are costed by their text.
    """

    def __init__(
        self,
        registry: TokenCounterRegistry | None = None,
        *,
        attachment_costs: Mapping[str, int] | None = None,
    ) -> None:
        self._registry = registry or TokenCounterRegistry.default()
        self._attachment_costs = {**_ATTACHMENT_TOKEN_COSTS, **(attachment_costs or {})}

    @property
    def registry(self) -> TokenCounterRegistry:
        return self._registry

    def count(self, text: str, model_id: str | None) -> int:
        return self._registry.count(model_id, text) if text else 0

    def count_message(self, text: str, model_id: str | None, attachments: Sequence[Attachment] = ()) -> int:
        return self.count(text, model_id) + sum(self.attachment_cost(item, model_id) for item in attachments)

    def attachment_cost(self, attachment: Attachment, model_id: str | None) -> int:
        if attachment.extracted_text:
            return self.count(attachment.extracted_text, model_id)
        return self._attachment_costs.get(attachment.type, 0)
