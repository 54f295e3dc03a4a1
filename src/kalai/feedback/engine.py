"""Feedback engine: debounced validation, activity feed and progress.

The engine listens to editing-surface events on the :class:`EventBus`.
Bursts of ``TextChanged`` events for a file collapse into a single validation
pass once the file has been quiet for ``debounce_seconds``. At most one pass
per file runs at a time; a trigger that fires while a pass is running marks
the file for exactly one follow-up pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from ..ai.errors import ValidationEngineError
from ..events import EventBus, FileCreated, FileDeleted, SubscriptionSet, TextChanged
from ..services import telemetry
from .activity import DEFAULT_FEED_CAPACITY, ActivityFeed, FeedbackType, ProgressTracker
from .debounce import KeyedDebouncer
from .diagnostics import DiagnosticRecord, DiagnosticsReconciler, Severity, ValidationIssue
from .surface import EditorSurface
from .validators import PythonSyntaxValidator, Validator, is_code_file

LOGGER = logging.getLogger(__name__)

TextProvider = Callable[[str], "str | None"]


@dataclass(slots=True)
class FeedbackEngineConfig:
    """Tunable parameters for the feedback engine."""

    debounce_seconds: float = 0.5
    feed_capacity: int = DEFAULT_FEED_CAPACITY
    code_files_only: bool = True


class FeedbackEngine:
    """Turns noisy source-mutation events into a calm feedback stream."""

    def __init__(
        self,
        bus: EventBus,
        surface: EditorSurface,
        validator: Validator | None = None,
        *,
        config: FeedbackEngineConfig | None = None,
        reconciler: DiagnosticsReconciler | None = None,
        text_provider: TextProvider | None = None,
    ) -> None:
        self._bus = bus
        self._surface = surface
        self._validator = validator or PythonSyntaxValidator()
        self._config = config or FeedbackEngineConfig()
        self._reconciler = reconciler or DiagnosticsReconciler(surface)
        self._text_provider = text_provider or _read_text
        self._feed = ActivityFeed(surface, capacity=self._config.feed_capacity)
        self._progress = ProgressTracker(surface)
        self._debouncer: KeyedDebouncer[str] = KeyedDebouncer(
            self._config.debounce_seconds, self._on_quiescent
        )
        self._subscriptions = SubscriptionSet()
        # Latest buffer per file not yet handed to a validation pass.
        self._texts: dict[str, str] = {}
        self._running: dict[str, asyncio.Task[None]] = {}
        self._rerun: set[str] = set()
        self._pass_count = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def feed(self) -> ActivityFeed:
        return self._feed

    @property
    def progress(self) -> ProgressTracker:
        return self._progress

    @property
    def reconciler(self) -> DiagnosticsReconciler:
        return self._reconciler

    @property
    def pass_count(self) -> int:
        """Number of validation passes started so far."""
        return self._pass_count

    def is_validating(self, file: str) -> bool:
        return file in self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe to editing-surface events. Calling twice is a no-op."""

        if len(self._subscriptions):
            return
        self._subscriptions.add(self._bus.subscribe(TextChanged, self._on_text_changed))
        self._subscriptions.add(self._bus.subscribe(FileCreated, self._on_file_created))
        self._subscriptions.add(self._bus.subscribe(FileDeleted, self._on_file_deleted))

    async def aclose(self) -> None:
        """Dispose subscriptions and abandon pending and running passes."""

        self._subscriptions.dispose()
        self._debouncer.close()
        self._rerun.clear()
        tasks = list(self._running.values())
        self._running.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def idle(self) -> None:
        """Wait until no debounce timer is pending and no pass is running."""

        while len(self._debouncer) or self._running:
            if self._running:
                await asyncio.wait(set(self._running.values()))
            else:
                await asyncio.sleep(self._debouncer.delay / 2)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_text_changed(self, event: TextChanged) -> None:
        if self._config.code_files_only and not is_code_file(event.file):
            return
        if event.text is not None:
            self._texts[event.file] = event.text
        self._debouncer.trigger(event.file)

    def _on_file_created(self, event: FileCreated) -> None:
        self._feed.post(
            FeedbackType.SUCCESS,
            "File Created",
            f"New file: {event.file}",
            severity=Severity.INFO,
            file=event.file,
        )

    def _on_file_deleted(self, event: FileDeleted) -> None:
        file = event.file
        self._debouncer.cancel(file)
        self._rerun.discard(file)
        self._texts.pop(file, None)
        task = self._running.pop(file, None)
        if task is not None:
            LOGGER.debug("Abandoning in-flight validation of deleted file %s", file)
            task.cancel()
        self._reconciler.clear(file)
        self._feed.dismiss(_validation_item_id(file))
        self._feed.post(
            FeedbackType.WARNING,
            "File Deleted",
            f"File removed: {file}",
            severity=Severity.WARNING,
            file=file,
        )

    # ------------------------------------------------------------------
    # Validation passes
    # ------------------------------------------------------------------

    def _on_quiescent(self, file: str) -> None:
        if file in self._running:
            LOGGER.debug("Validation of %s already running; scheduling one re-run", file)
            self._rerun.add(file)
            return
        self._start_pass(file)

    def _start_pass(self, file: str) -> None:
        seq = self._reconciler.begin_pass(file)
        self._pass_count += 1
        task = asyncio.ensure_future(self._validate(file, seq))
        self._running[file] = task
        task.add_done_callback(lambda done, file=file: self._on_pass_done(file, done))

    def _on_pass_done(self, file: str, task: asyncio.Task[None]) -> None:
        if self._running.get(file) is task:
            del self._running[file]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            LOGGER.error("Validation pass for %s crashed", file, exc_info=error)
        if file in self._rerun:
            self._rerun.discard(file)
            self._start_pass(file)

    async def _validate(self, file: str, seq: int) -> None:
        started = time.perf_counter()
        text = self._texts.pop(file, None)
        if text is None:
            text = self._text_provider(file)
        if text is None:
            LOGGER.debug("No text available for %s; skipping validation", file)
            return
        try:
            issues: Sequence[ValidationIssue] = await self._validator.validate(file, text)
        except ValidationEngineError as exc:
            self._degrade(file, exc)
            return
        except Exception as exc:
            LOGGER.debug("Validator raised for %s", file, exc_info=True)
            self._degrade(file, ValidationEngineError(message=f"Validation failed: {exc}", file=file))
            return

        published = self._reconciler.reconcile(file, issues, seq)
        if published:
            self._summarize(file, self._reconciler.diagnostics(file))
        telemetry.emit(
            "validation.pass",
            {
                "file": file,
                "seq": seq,
                "issues": len(issues),
                "published": published,
                "duration_ms": round((time.perf_counter() - started) * 1000, 3),
            },
        )

    def _degrade(self, file: str, error: ValidationEngineError) -> None:
        LOGGER.warning("Validation of %s failed: %s", file, error.message)
        self._feed.post(
            FeedbackType.INFO,
            "Validation Unavailable",
            error.message,
            severity=Severity.INFO,
            file=file,
        )

    def _summarize(self, file: str, records: Sequence[DiagnosticRecord]) -> None:
        item_id = _validation_item_id(file)
        if not records:
            self._feed.dismiss(item_id)
            return
        errors = sum(1 for record in records if record.severity is Severity.ERROR)
        warnings = sum(1 for record in records if record.severity is Severity.WARNING)
        if errors:
            kind, severity = FeedbackType.ERROR, Severity.ERROR
        elif warnings:
            kind, severity = FeedbackType.WARNING, Severity.WARNING
        else:
            kind, severity = FeedbackType.INFO, Severity.INFO
        first = records[0]
        self._feed.post(
            kind,
            "Validation",
            f"{len(records)} issue(s) in {Path(file).name}: {errors} error(s), {warnings} warning(s)",
            id=item_id,
            severity=severity,
            file=file,
            line=first.line,
            column=first.column,
        )


def _validation_item_id(file: str) -> str:
    return f"validation:{file}"


def _read_text(file: str) -> str | None:
    try:
        return Path(file).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        LOGGER.debug("Unable to read %s: %s", file, exc)
        return None


__all__ = ["FeedbackEngine", "FeedbackEngineConfig", "TextProvider"]
