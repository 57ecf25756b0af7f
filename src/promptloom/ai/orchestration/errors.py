"""Error types raised inside the context pipeline.

Stages catch these at the item level and record a log entry; the runner
catches anything else at the stage level so one failing stage never aborts
the stages after it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Constants for error codes attached to pipeline errors."""

    PATTERN_INVALID = "pattern_invalid"
    MACRO_FAILED = "macro_failed"
    WORLDBOOK_INVALID = "worldbook_invalid"
    ATTACHMENT_FAILED = "attachment_failed"
    STAGE_FAILED = "stage_failed"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------


@dataclass
class PipelineError(Exception):
    """Base exception for pipeline failures.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured information for log entries.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class PatternError(PipelineError, ValueError):
    """A regex pattern (keyword, model match, request rule) failed to compile."""

    error_code: str = field(default=ErrorCode.PATTERN_INVALID)
    message: str = field(default="Invalid regular expression")
    details: dict[str, Any] = field(default_factory=dict)

    pattern: str | None = field(default=None)

    severity: ClassVar[str] = "warn"

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.pattern is not None:
            result["pattern"] = self.pattern
        return result


@dataclass
class MacroError(PipelineError):
    """A macro expansion failed."""

    error_code: str = field(default=ErrorCode.MACRO_FAILED)
    message: str = field(default="Macro substitution failed")
    details: dict[str, Any] = field(default_factory=dict)

    macro: str | None = field(default=None)

    severity: ClassVar[str] = "warn"


@dataclass
class WorldbookFormatError(PipelineError, ValueError):
    """A worldbook payload does not match the expected schema."""

    error_code: str = field(default=ErrorCode.WORLDBOOK_INVALID)
    message: str = field(default="Worldbook payload is invalid")
    details: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "ErrorCode",
    "MacroError",
    "PatternError",
    "PipelineError",
    "WorldbookFormatError",
]
