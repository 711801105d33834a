"""
Error taxonomy for the translation pipeline and the table that classifies
PostgreSQL execution failures.

Four categories drive what the import scheduler does with a failure:

    missing-dependency   referenced relation/function/schema/type not created yet;
                         retried in a later pass, never sent to the assistant.
    conversion-error     any other execution failure of a translated statement;
                         sent to the assistant once, then terminal.
    gap                  untranslatable input (unknown intent, unparseable criteria).
    assistant-unavailable no credential or SDK; reported as skipped.

The SQLSTATE table is data, not code: new engine versions that introduce other
"undefined object" codes only need a register() call.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    MISSING_DEPENDENCY = "missing-dependency"
    CONVERSION_ERROR = "conversion-error"
    GAP = "gap"
    ASSISTANT_UNAVAILABLE = "assistant-unavailable"


class MigrationError(Exception):
    """Base exception for access_to_pg errors."""

    category = ErrorCategory.CONVERSION_ERROR


class ConversionError(MigrationError):
    """A single translation unit could not be translated.

    Raised by converter.translate(); callers building a batch catch it per unit
    so one bad query never aborts the rest.
    """

    def __init__(self, message: str, unit: str = "", warnings: Optional[list[str]] = None):
        super().__init__(message)
        self.unit = unit
        self.warnings = list(warnings or [])

    def __str__(self) -> str:
        msg = super().__str__()
        return f"{self.unit}: {msg}" if self.unit else msg


class CriteriaError(ConversionError):
    """Domain-function criteria fragment that cannot be parsed."""

    category = ErrorCategory.GAP


class AssistantUnavailable(MigrationError):
    """No API key configured or the anthropic SDK is not installed."""

    category = ErrorCategory.ASSISTANT_UNAVAILABLE


class AssistantError(MigrationError):
    """The assistant call failed or returned something unusable."""


# -----------------------------------------------------------------------------
# SQLSTATE classification
# -----------------------------------------------------------------------------
# Class 42 / 3F codes PostgreSQL raises when a referenced object is not there yet.
DEFAULT_SQLSTATE_CATEGORIES: dict[str, ErrorCategory] = {
    "42P01": ErrorCategory.MISSING_DEPENDENCY,  # undefined_table
    "42883": ErrorCategory.MISSING_DEPENDENCY,  # undefined_function
    "3F000": ErrorCategory.MISSING_DEPENDENCY,  # invalid_schema_name
    "42704": ErrorCategory.MISSING_DEPENDENCY,  # undefined_object (types, aggregates)
}

# Used when the driver gives no SQLSTATE (e.g. errors replayed from a report).
DEFAULT_MESSAGE_PATTERNS: list[tuple[str, ErrorCategory]] = [
    (r'relation\s+"[^"]+"\s+does not exist', ErrorCategory.MISSING_DEPENDENCY),
    (r"function\s+\S+\(.*?\)\s+does not exist", ErrorCategory.MISSING_DEPENDENCY),
    (r'schema\s+"[^"]+"\s+does not exist', ErrorCategory.MISSING_DEPENDENCY),
    (r'type\s+"[^"]+"\s+does not exist', ErrorCategory.MISSING_DEPENDENCY),
]

_RELATION_NOT_EXIST_PATTERN = re.compile(
    r'(?:relation|view|table|schema|type)\s+"([^"]+)"\s+does not exist', re.IGNORECASE
)
_FUNCTION_NOT_EXIST_PATTERN = re.compile(
    r"function\s+([\w.\"]+)\s*\(", re.IGNORECASE
)


class ErrorClassifier:
    """Maps an execution failure (SQLSTATE and/or message) to an ErrorCategory."""

    def __init__(
        self,
        codes: Optional[dict[str, ErrorCategory]] = None,
        patterns: Optional[list[tuple[str, ErrorCategory]]] = None,
    ):
        self._codes: dict[str, ErrorCategory] = dict(
            DEFAULT_SQLSTATE_CATEGORIES if codes is None else codes
        )
        self._patterns: list[tuple[re.Pattern, ErrorCategory]] = [
            (re.compile(p, re.IGNORECASE), cat)
            for p, cat in (DEFAULT_MESSAGE_PATTERNS if patterns is None else patterns)
        ]

    def register(self, sqlstate: str, category: ErrorCategory) -> None:
        self._codes[sqlstate.upper()] = category

    def register_pattern(self, pattern: str, category: ErrorCategory) -> None:
        self._patterns.append((re.compile(pattern, re.IGNORECASE), category))

    def classify(self, sqlstate: Optional[str], message: str = "") -> ErrorCategory:
        if sqlstate:
            cat = self._codes.get(sqlstate.upper())
            if cat is not None:
                return cat
            # A known code that is not in the table is a real defect, not a
            # missing object; do not second-guess it from the message.
            return ErrorCategory.CONVERSION_ERROR
        for rx, cat in self._patterns:
            if rx.search(message or ""):
                return cat
        return ErrorCategory.CONVERSION_ERROR

    def is_dependency_error(self, sqlstate: Optional[str], message: str = "") -> bool:
        return self.classify(sqlstate, message) == ErrorCategory.MISSING_DEPENDENCY


def missing_object_name(message: str) -> Optional[str]:
    """Name of the missing relation/function in a PostgreSQL error, lowercased."""
    if not message:
        return None
    m = _RELATION_NOT_EXIST_PATTERN.search(message)
    if m:
        return m.group(1).lower()
    m = _FUNCTION_NOT_EXIST_PATTERN.search(message)
    if m:
        return m.group(1).replace('"', "").lower()
    return None
