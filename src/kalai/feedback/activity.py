"""Activity feed and progress tracking owned by the feedback engine."""

from __future__ import annotations

import itertools
import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from ..conversation.models import now_ms
from .diagnostics import Severity
from .surface import EditorSurface

LOGGER = logging.getLogger(__name__)

DEFAULT_FEED_CAPACITY = 10


class FeedbackType(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUGGESTION = "suggestion"


@dataclass(frozen=True, slots=True)
class FeedbackAction:
    """A button offered next to a feedback item."""

    label: str
    command: str
    arguments: tuple[Any, ...] = ()


@dataclass(frozen=True, slots=True)
class FeedbackItem:
    """One entry of the activity feed.

    ``line`` and ``column`` are 0-based when present.
    """

    id: str
    type: FeedbackType
    title: str
    message: str
    severity: Severity = Severity.INFO
    file: str | None = None
    line: int | None = None
    column: int | None = None
    timestamp: int = field(default_factory=now_ms)
    dismissible: bool = True
    actions: tuple[FeedbackAction, ...] = ()

    @classmethod
    def create(
        cls,
        type: FeedbackType | str,
        title: str,
        message: str,
        **kwargs: Any,
    ) -> "FeedbackItem":
        item_id = kwargs.pop("id", None) or f"feedback-{uuid.uuid4().hex[:12]}"
        return cls(id=item_id, type=FeedbackType(type), title=title, message=message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "timestamp": self.timestamp,
            "dismissible": self.dismissible,
            "actions": [
                {"label": action.label, "command": action.command, "arguments": list(action.arguments)}
                for action in self.actions
            ],
        }


class ActivityFeed:
    """Capped feed of the most recent feedback items.

    Items are ordered newest first by timestamp; among equal timestamps the
    later insertion comes first.
    """

    def __init__(self, surface: EditorSurface | None = None, *, capacity: int = DEFAULT_FEED_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._surface = surface
        self._capacity = capacity
        self._seq = itertools.count()
        self._entries: list[tuple[int, FeedbackItem]] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def items(self) -> tuple[FeedbackItem, ...]:
        return tuple(item for _, item in self._entries)

    def get(self, item_id: str) -> FeedbackItem | None:
        for _, item in self._entries:
            if item.id == item_id:
                return item
        return None

    def add(self, item: FeedbackItem) -> bool:
        """Insert ``item``; returns ``False`` if it fell outside the capacity."""

        self._entries = [(seq, existing) for seq, existing in self._entries if existing.id != item.id]
        self._entries.append((next(self._seq), item))
        self._entries.sort(key=lambda entry: (-entry[1].timestamp, -entry[0]))
        evicted = self._entries[self._capacity :]
        del self._entries[self._capacity :]
        retained = all(existing.id != item.id for _, existing in evicted)
        if self._surface is not None:
            for _, old in evicted:
                if old.id != item.id:
                    self._surface.remove_feedback_item(old.id)
            if retained:
                self._surface.show_feedback_item(item)
        return retained

    def post(self, type: FeedbackType | str, title: str, message: str, **kwargs: Any) -> FeedbackItem:
        item = FeedbackItem.create(type, title, message, **kwargs)
        self.add(item)
        return item

    def dismiss(self, item_id: str) -> bool:
        """Remove a dismissible item; repeated calls are no-ops."""

        for index, (_, item) in enumerate(self._entries):
            if item.id != item_id:
                continue
            if not item.dismissible:
                LOGGER.debug("Feedback item %s is not dismissible", item_id)
                return False
            del self._entries[index]
            if self._surface is not None:
                self._surface.remove_feedback_item(item_id)
            return True
        return False

    def clear(self) -> int:
        removed = [item.id for _, item in self._entries]
        self._entries = []
        if self._surface is not None:
            for item_id in removed:
                self._surface.remove_feedback_item(item_id)
        return len(removed)


@dataclass(frozen=True, slots=True)
class ProgressTask:
    """Immutable view of a long-running operation; ``progress`` is 0-100."""

    id: str
    title: str
    message: str = ""
    progress: int = 0
    cancellable: bool = False
    on_cancel: Callable[[], Any] | None = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "progress": self.progress,
            "cancellable": self.cancellable,
        }


class ProgressTracker:
    """Tracks progress tasks; reported progress never moves backwards."""

    def __init__(self, surface: EditorSurface | None = None) -> None:
        self._surface = surface
        self._tasks: dict[str, ProgressTask] = {}

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, task_id: str) -> ProgressTask | None:
        return self._tasks.get(task_id)

    def tasks(self) -> tuple[ProgressTask, ...]:
        return tuple(self._tasks.values())

    def start(
        self,
        title: str,
        *,
        message: str = "",
        cancellable: bool = False,
        on_cancel: Callable[[], Any] | None = None,
        task_id: str | None = None,
    ) -> ProgressTask:
        """Register a new task.

        Raises:
            ValueError: if ``task_id`` is already tracked.
        """

        task_id = task_id or f"progress-{uuid.uuid4().hex[:12]}"
        if task_id in self._tasks:
            raise ValueError(f"Progress task {task_id!r} already exists")
        task = ProgressTask(
            id=task_id,
            title=title,
            message=message,
            cancellable=cancellable,
            on_cancel=on_cancel,
        )
        self._tasks[task_id] = task
        self._show(task)
        return task

    def update(self, task_id: str, progress: float, message: str | None = None) -> ProgressTask | None:
        """Report progress; lower values than the current one are ignored."""

        task = self._tasks.get(task_id)
        if task is None:
            return None
        value = max(task.progress, _clamp(progress))
        text = task.message if message is None else message
        if value == task.progress and text == task.message:
            return task
        task = replace(task, progress=value, message=text)
        self._tasks[task_id] = task
        self._show(task)
        return task

    def complete(self, task_id: str) -> bool:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        if self._surface is not None:
            self._surface.remove_progress(task_id)
        return True

    def cancel(self, task_id: str) -> bool:
        """Run the task's cancel callback, then remove it."""

        task = self._tasks.get(task_id)
        if task is None:
            return False
        if not task.cancellable:
            LOGGER.debug("Progress task %s is not cancellable", task_id)
            return False
        if task.on_cancel is not None:
            try:
                task.on_cancel()
            except Exception:
                LOGGER.exception("Cancel callback for progress task %s failed", task_id)
        return self.complete(task_id)

    def _show(self, task: ProgressTask) -> None:
        if self._surface is not None:
            self._surface.show_progress(task)


def _clamp(value: float) -> int:
    return int(min(100, max(0, value)))


__all__ = [
    "DEFAULT_FEED_CAPACITY",
    "FeedbackType",
    "FeedbackAction",
    "FeedbackItem",
    "ActivityFeed",
    "ProgressTask",
    "ProgressTracker",
]
