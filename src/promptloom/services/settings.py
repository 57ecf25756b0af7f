"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "AggregationSettings",
    "ContextManagementSettings",
    "ContextOptimizationSettings",
    "DEFAULT_ITEM_TEMPLATE",
    "DEFAULT_RESULT_TEMPLATE",
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
    "apply_overrides",
    "environment_overrides",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".promptloom"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_API_KEY_FIELD = "api_key_ciphertext"


def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Environment variable -> (dotted settings path, converter).
_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "PROMPTLOOM_EMBEDDING_BASE_URL": ("embedding.base_url", str),
    "PROMPTLOOM_EMBEDDING_API_KEY": ("embedding.api_key", str),
    "PROMPTLOOM_EMBEDDING_MODEL": ("embedding.model", str),
    "PROMPTLOOM_KNOWLEDGE_ENGINE": ("knowledge.default_engine_id", str),
    "PROMPTLOOM_MARKUP_MODE": ("context_optimization.markup_mode", str),
    "PROMPTLOOM_LOG_LEVEL": ("log_level", str),
    "PROMPTLOOM_CONTEXT_LIMIT_ENABLED": ("context_management.enabled", _as_bool),
    "PROMPTLOOM_CONVERT_MARKUP": ("context_optimization.convert_markup", _as_bool),
    "PROMPTLOOM_DISABLE_RECURSION": ("worldbook.disable_recursion", _as_bool),
    "PROMPTLOOM_KNOWLEDGE_CACHE": ("knowledge.aggregation.enable_cache", _as_bool),
    "PROMPTLOOM_TRANSCRIPTION_TIMEOUT": ("transcription.wait_timeout", float),
    "PROMPTLOOM_KNOWLEDGE_MIN_SCORE": ("knowledge.default_min_score", float),
    "PROMPTLOOM_MAX_CONTEXT_TOKENS": ("context_management.max_context_tokens", int),
    "PROMPTLOOM_RETAINED_CHARACTERS": ("context_management.retained_characters", int),
    "PROMPTLOOM_WORLDBOOK_MAX_TOKENS": ("worldbook.max_tokens", int),
}

DEFAULT_RESULT_TEMPLATE = "---\nRelevant knowledge ({count} entries)\n\n{items}\n---"
DEFAULT_ITEM_TEMPLATE = "**[{kb_name}]** {key}\n> {content}\n(score: {score})"


@dataclass(slots=True)
class ContextManagementSettings:
    """Token ceiling applied by the limiter stage."""

    enabled: bool = False
    max_context_tokens: int | None = None
    retained_characters: int = 0


@dataclass(slots=True)
class ContextOptimizationSettings:
    """Markup reduction applied to older history messages."""

    convert_markup: bool = False
    keep_recent_markup: int = 5
    markup_mode: str = "markdown"


@dataclass(slots=True)
class WorldbookSettings:
    max_tokens: int = 4_000
    default_scan_depth: int = 2
    max_recursion_steps: int = 0
    disable_recursion: bool = False


@dataclass(slots=True)
class AggregationSettings:
    """Query/result blending across turns for knowledge retrieval."""

    enable_cache: bool = True
    cache_similarity_threshold: float = 0.95
    context_window: int = 1
    query_decay: float = 1.0
    enable_result_aggregation: bool = False
    result_decay: float = 0.8
    aggregation_turns: int = 3
    history_limit: int = 10


@dataclass(slots=True)
class KnowledgeSettings:
    default_engine_id: str | None = None
    embedding_model_id: str | None = None
    embedding_profile: str | None = None
    default_limit: int = 5
    default_min_score: float = 0.3
    max_recall_chars: int | None = None
    gate_scan_depth: int = 3
    result_template: str = DEFAULT_RESULT_TEMPLATE
    item_template: str = DEFAULT_ITEM_TEMPLATE
    empty_text: str = ""
    aggregation: AggregationSettings = field(default_factory=AggregationSettings)


@dataclass(slots=True)
class TranscriptionSettings:
    enabled: bool = True
    wait_timeout: float = 30.0


@dataclass(slots=True)
class EmbeddingEndpointSettings:
    """OpenAI-compatible endpoint used by the bundled embedding service."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "text-embedding-3-small"
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0


@dataclass(slots=True)
class FormatRule:
    """A message-shape rule toggle, optionally carrying rule parameters."""

    type: str
    enabled: bool = True
    separator: str | None = None
    user_placeholder: str | None = None
    assistant_placeholder: str | None = None


@dataclass(slots=True)
class RegexRule:
    """A single find/replace rule applied to outgoing request messages.

    ``pattern`` accepts either a plain expression (compiled with ``flags``) or
    the ``/pattern/flags`` literal form. ``depth_range`` is measured from the
    newest message (depth 0) and either bound may be ``None``.
    """

    pattern: str
    replacement: str = ""
    name: str = ""
    enabled: bool = True
    flags: str = ""
    target_roles: tuple[str, ...] = ()
    depth_range: tuple[int | None, int | None] = (None, None)
    order: int = 0


@dataclass(slots=True)
class RegexPreset:
    name: str = ""
    enabled: bool = True
    priority: int = 100
    order: int = 0
    rules: list[RegexRule] = field(default_factory=list)


@dataclass(slots=True)
class PipelineSettings:
    """Global defaults consumed by the context pipeline."""

    context_management: ContextManagementSettings = field(default_factory=ContextManagementSettings)
    context_optimization: ContextOptimizationSettings = field(default_factory=ContextOptimizationSettings)
    worldbook: WorldbookSettings = field(default_factory=WorldbookSettings)
    knowledge: KnowledgeSettings = field(default_factory=KnowledgeSettings)
    transcription: TranscriptionSettings = field(default_factory=TranscriptionSettings)
    embedding: EmbeddingEndpointSettings = field(default_factory=EmbeddingEndpointSettings)
    format_rules: list[FormatRule] = field(default_factory=list)
    regex_presets: list[RegexPreset] = field(default_factory=list)
    log_level: str = "info"


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------


def _write_atomically(path: Path, data: bytes, *, private: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(path.name + ".partial")
    staging.write_bytes(data)
    if private and os.name != "nt":  # pragma: no cover - POSIX only
        staging.chmod(0o600)
    staging.replace(path)


class SecretVault:
    """Fernet encryption for secrets stored inside the settings file.

    Ciphertexts are written as ``fernet:<token>``; the key lives next to the
    settings file and is generated on first use.
    """

    PREFIX = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._cipher: Fernet | None = None

    @property
    def cipher(self) -> Fernet:
        if self._cipher is None:
            if self._key_path.exists():
                key = self._key_path.read_bytes().strip()
            else:
                key = Fernet.generate_key()
                _write_atomically(self._key_path, key, private=True)
                LOGGER.debug("Generated settings key at %s", self._key_path)
            self._cipher = Fernet(key)
        return self._cipher

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        return f"{self.PREFIX}:{self.cipher.encrypt(secret.encode('utf-8')).decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext for ``token``; raises ``ValueError`` if it was tampered with."""

        if not token:
            return ""
        scheme, sep, body = token.partition(":")
        if scheme != self.PREFIX or not sep or not body:
            LOGGER.warning("Secret is not a %s ciphertext; using it verbatim", self.PREFIX)
            return token
        try:
            return self.cipher.decrypt(body.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Secret could not be decrypted with the current key") from exc


def environment_overrides(environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Collect dotted-path overrides from ``PROMPTLOOM_*`` environment variables."""

    env = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for name, (path, convert) in _ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None:
            continue
        try:
            overrides[path] = convert(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: expected %s", name, raw, getattr(convert, "__name__", "value"))
    return overrides


def apply_overrides(settings: PipelineSettings, overrides: Mapping[str, Any], *, source: str = "runtime") -> PipelineSettings:
    """Return a copy of ``settings`` with dotted-path ``overrides`` applied.

    Unknown paths are skipped; a mapping value for a nested section is
    merged into it.
    """

    applied: list[str] = []
    for key, value in overrides.items():
        if value is None:
            continue
        updated = _replace_path(settings, key.split("."), value)
        if updated is None:
            LOGGER.debug("Unknown %s override %s", source, key)
            continue
        settings = updated
        applied.append(key)
    if applied:
        LOGGER.debug("Applied %s overrides: %s", source, ", ".join(sorted(applied)))
    return settings


class SettingsStore:
    """Loads and saves :class:`PipelineSettings` as JSON.

    Precedence on load is file, then runtime ``overrides``, then environment.
    The embedding API key is stored encrypted under ``api_key_ciphertext``.
    """

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> PipelineSettings:
        settings = self._decode(self._read())
        if overrides:
            settings = apply_overrides(settings, overrides, source="runtime")
        env = environment_overrides()
        if env:
            settings = apply_overrides(settings, env, source="environment")
        return settings

    def save(self, settings: PipelineSettings) -> Path:
        body = json.dumps(self._encode(settings), indent=2, sort_keys=True)
        _write_atomically(self._path, body.encode("utf-8"))
        LOGGER.debug("Saved settings to %s", self._path)
        return self._path

    def _read(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring malformed settings file %s: %s", self._path, exc)
            return {}
        if isinstance(payload, dict):
            return payload
        LOGGER.warning("Ignoring settings file %s: top level is not an object", self._path)
        return {}

    def _decode(self, payload: Dict[str, Any]) -> PipelineSettings:
        if not payload:
            return PipelineSettings()
        section = payload.get("embedding")
        if isinstance(section, dict) and _API_KEY_FIELD in section:
            ciphertext = section.pop(_API_KEY_FIELD)
            try:
                section["api_key"] = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Embedding API key dropped: %s", exc)
        return _build_dataclass(PipelineSettings, payload)

    def _encode(self, settings: PipelineSettings) -> Dict[str, Any]:
        data = asdict(settings)
        section = data["embedding"]
        secret = section.pop("api_key", "") or ""
        if secret:
            section[_API_KEY_FIELD] = self._vault.encrypt(secret)
        data["version"] = _SETTINGS_VERSION
        return data


def _replace_path(target: Any, path: list[str], value: Any) -> Any | None:
    head, *rest = path
    allowed = {item.name for item in fields(target)}
    if head not in allowed:
        return None
    if rest:
        child = getattr(target, head)
        if not is_dataclass(child):
            return None
        updated = _replace_path(child, rest, value)
        if updated is None:
            return None
        return replace(target, **{head: updated})
    current = getattr(target, head)
    if is_dataclass(current) and isinstance(value, Mapping):
        value = _build_dataclass(type(current), {**asdict(current), **value})
    return replace(target, **{head: value})


_NESTED_TYPES: Mapping[str, type] = {
    "context_management": ContextManagementSettings,
    "context_optimization": ContextOptimizationSettings,
    "worldbook": WorldbookSettings,
    "knowledge": KnowledgeSettings,
    "aggregation": AggregationSettings,
    "transcription": TranscriptionSettings,
    "embedding": EmbeddingEndpointSettings,
}


def _build_dataclass(cls: type, payload: Mapping[str, Any]) -> Any:
    """Build ``cls`` from a JSON mapping, dropping unknown keys and bad sections."""

    allowed = {item.name for item in fields(cls)}
    data: Dict[str, Any] = {}
    for key, value in payload.items():
        if key not in allowed:
            continue
        nested = _NESTED_TYPES.get(key)
        if nested is not None and isinstance(value, Mapping):
            value = _build_dataclass(nested, value)
        elif key == "format_rules" and isinstance(value, list):
            value = [_build_dataclass(FormatRule, item) for item in value if isinstance(item, Mapping)]
        elif key == "regex_presets" and isinstance(value, list):
            value = [_build_regex_preset(item) for item in value if isinstance(item, Mapping)]
        data[key] = value
    try:
        return cls(**data)
    except TypeError as exc:
        LOGGER.warning("Settings section %s contained unexpected data: %s", cls.__name__, exc)
        return cls()


def _build_regex_preset(payload: Mapping[str, Any]) -> RegexPreset:
    rules: list[RegexRule] = []
    for raw in payload.get("rules") or ():
        if not isinstance(raw, Mapping) or not raw.get("pattern"):
            continue
        rule = _build_dataclass(RegexRule, {k: v for k, v in raw.items() if k not in {"target_roles", "depth_range"}})
        roles = raw.get("target_roles") or ()
        depth = raw.get("depth_range") or (None, None)
        if isinstance(depth, Mapping):
            depth = (depth.get("min"), depth.get("max"))
        rules.append(replace(rule, target_roles=tuple(roles), depth_range=(depth[0], depth[1])))
    header = {k: v for k, v in payload.items() if k != "rules"}
    preset = _build_dataclass(RegexPreset, header)
    return replace(preset, rules=rules)


def redact_secret(value: str) -> str:
    """Mask a secret for display, keeping two characters at each end of longer values."""

    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]
