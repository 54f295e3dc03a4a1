"""Validators run by the feedback engine."""

from __future__ import annotations

import logging
from pathlib import PurePath
from typing import Protocol, Sequence

from ..ai.errors import ValidationEngineError
from .diagnostics import ValidationIssue

LOGGER = logging.getLogger(__name__)

CODE_EXTENSIONS: frozenset[str] = frozenset(
    {".ts", ".js", ".tsx", ".jsx", ".py", ".java", ".cpp", ".c", ".cs", ".php"}
)


def is_code_file(path: str) -> bool:
    return PurePath(path).suffix.lower() in CODE_EXTENSIONS


class Validator(Protocol):
    """Produces issues for one file's text.

    Issue lines are 1-based and columns 0-based, the way editors report a
    cursor position; only the line is shifted when diagnostics are published.
    """

    async def validate(self, file: str, text: str) -> Sequence[ValidationIssue]:  # pragma: no cover - protocol stub
        ...


class PythonSyntaxValidator:
    """Reports syntax errors in Python sources; other files yield no issues."""

    source = "python-syntax"

    async def validate(self, file: str, text: str) -> Sequence[ValidationIssue]:
        if PurePath(file).suffix.lower() != ".py":
            return ()
        try:
            compile(text, file, "exec", dont_inherit=True)
        except SyntaxError as exc:
            return (
                ValidationIssue(
                    line=exc.lineno or 1,
                    column=max((exc.offset or 1) - 1, 0),
                    message=exc.msg or "invalid syntax",
                    severity="error",
                    source=self.source,
                ),
            )
        except ValueError as exc:
            # Raised for null bytes on interpreters before 3.12.
            raise ValidationEngineError(message=f"Cannot validate {file}: {exc}", file=file) from exc
        return ()


__all__ = ["CODE_EXTENSIONS", "Validator", "PythonSyntaxValidator", "is_code_file"]
