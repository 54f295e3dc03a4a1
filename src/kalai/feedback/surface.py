"""Callbacks the feedback pipeline invokes on the editing surface."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .activity import FeedbackItem, ProgressTask
    from .diagnostics import DiagnosticRecord

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class EditorSurface(Protocol):
    """Rendering side of the editor integration.

    Every call receives immutable values; implementations may keep them.
    """

    def publish_diagnostics(self, file: str, records: Sequence["DiagnosticRecord"]) -> None:
        """Replace the whole diagnostic set shown for ``file``."""

    def show_progress(self, task: "ProgressTask") -> None:
        """Show or update a progress task (same id means update)."""

    def remove_progress(self, task_id: str) -> None:
        ...

    def show_feedback_item(self, item: "FeedbackItem") -> None:
        ...

    def remove_feedback_item(self, item_id: str) -> None:
        ...


class LoggingSurface:
    """Surface that writes everything to the log; used when no editor is attached."""

    def publish_diagnostics(self, file: str, records: Sequence["DiagnosticRecord"]) -> None:
        LOGGER.info("Diagnostics for %s: %d record(s)", file, len(records))
        for record in records:
            LOGGER.info(
                "  %s:%d:%d %s %s",
                file,
                record.line + 1,
                record.column + 1,
                record.severity.value,
                record.message,
            )

    def show_progress(self, task: "ProgressTask") -> None:
        LOGGER.info("Progress %s: %s %d%%", task.id, task.title, task.progress)

    def remove_progress(self, task_id: str) -> None:
        LOGGER.debug("Progress %s removed", task_id)

    def show_feedback_item(self, item: "FeedbackItem") -> None:
        LOGGER.info("[%s] %s: %s", item.type.value, item.title, item.message)

    def remove_feedback_item(self, item_id: str) -> None:
        LOGGER.debug("Feedback item %s removed", item_id)


__all__ = ["EditorSurface", "LoggingSurface"]
