"""Per-file diagnostic sets, replaced atomically on every validation pass."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from .surface import EditorSurface

LOGGER = logging.getLogger(__name__)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Map ``value`` case-insensitively; anything unrecognised is ``INFO``."""

        if isinstance(value, Severity):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.INFO


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """One validator finding. ``line`` is 1-based, ``column`` 0-based."""

    line: int
    column: int
    message: str
    severity: str = "error"
    source: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ValidationIssue":
        return cls(
            line=int(payload.get("line") or 0),
            column=int(payload.get("column") or 0),
            message=str(payload.get("message") or ""),
            severity=str(payload.get("severity") or "error"),
            source=payload.get("source"),
        )


@dataclass(frozen=True, slots=True)
class DiagnosticRecord:
    """A diagnostic as published to the editor. ``line``/``column`` are 0-based."""

    file: str
    line: int
    column: int
    severity: Severity
    message: str
    source: str


class DiagnosticsReconciler:
    """Owns the per-file diagnostic map and its publication.

    Validation passes are ordered by sequence numbers from :meth:`begin_pass`.
    A pass is published only if its number is newer than both the last
    accepted pass and the last :meth:`clear` for that file, so a slow stale
    pass can never overwrite newer state.
    """

    def __init__(self, surface: EditorSurface, *, source: str = "kalai") -> None:
        self._surface = surface
        self._source = source
        self._seq = itertools.count(1)
        self._latest: dict[str, int] = {}
        self._records: dict[str, tuple[DiagnosticRecord, ...]] = {}

    def begin_pass(self, file: str) -> int:
        """Reserve a sequence number for a validation pass over ``file``."""
        return next(self._seq)

    def is_current(self, file: str, seq: int) -> bool:
        return seq > self._latest.get(file, 0)

    def reconcile(self, file: str, issues: Iterable[ValidationIssue], seq: int | None = None) -> bool:
        """Replace the diagnostics for ``file`` with ``issues``.

        Returns ``False`` (and publishes nothing) when ``seq`` is stale.
        """

        if seq is None:
            seq = self.begin_pass(file)
        if not self.is_current(file, seq):
            LOGGER.debug(
                "Discarding stale diagnostics for %s (seq=%d, latest=%d)",
                file,
                seq,
                self._latest.get(file, 0),
            )
            return False
        records = tuple(self._to_record(file, issue) for issue in issues)
        self._latest[file] = seq
        self._records[file] = records
        self._surface.publish_diagnostics(file, records)
        LOGGER.debug("Published %d diagnostic(s) for %s (seq=%d)", len(records), file, seq)
        return True

    def clear(self, file: str) -> None:
        """Clear ``file`` unconditionally and invalidate every earlier pass."""

        self._latest[file] = next(self._seq)
        self._records.pop(file, None)
        self._surface.publish_diagnostics(file, ())
        LOGGER.debug("Cleared diagnostics for %s", file)

    def diagnostics(self, file: str) -> tuple[DiagnosticRecord, ...]:
        return self._records.get(file, ())

    def files(self) -> tuple[str, ...]:
        return tuple(self._records)

    def _to_record(self, file: str, issue: ValidationIssue) -> DiagnosticRecord:
        return DiagnosticRecord(
            file=file,
            line=max(0, int(issue.line) - 1),
            column=max(0, int(issue.column)),
            severity=Severity.parse(issue.severity),
            message=issue.message,
            source=issue.source or self._source,
        )


__all__ = ["Severity", "ValidationIssue", "DiagnosticRecord", "DiagnosticsReconciler"]
