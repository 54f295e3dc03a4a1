"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from kalai.ai.client import Completion, Usage
from kalai.feedback.activity import FeedbackItem, ProgressTask
from kalai.feedback.diagnostics import DiagnosticRecord, ValidationIssue


@dataclass(slots=True)
class Delayed:
    """Scripted outcome that resolves after ``seconds``."""

    seconds: float
    outcome: Any = "ok"


class ScriptedClient:
    """Completion client that replays scripted outcomes, one per call.

    An outcome is a reply string, an exception instance to raise, or a
    :class:`Delayed` wrapping either. When the script runs out ``default`` is
    used. ``gates[i]`` blocks call ``i`` until the event is set.

    Example:
        client = ScriptedClient(NetworkError(), "second try")
    """

    def __init__(self, *outcomes: Any, default: Any = "ok") -> None:
        self.calls: list[dict[str, Any]] = []
        self.gates: dict[int, asyncio.Event] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self._outcomes = list(outcomes)
        self._default = default
        self._called = asyncio.Event()

    def gate(self, index: int) -> asyncio.Event:
        event = self.gates.setdefault(index, asyncio.Event())
        return event

    async def wait_for_calls(self, count: int, timeout: float = 1.0) -> None:
        async def _wait() -> None:
            while len(self.calls) < count:
                self._called.clear()
                await self._called.wait()

        await asyncio.wait_for(_wait(), timeout)

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Completion:
        index = len(self.calls)
        self.calls.append(
            {
                "messages": [dict(message) for message in messages],
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        self._called.set()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            gate = self.gates.get(index)
            if gate is not None:
                await gate.wait()
            outcome = self._outcomes.pop(0) if self._outcomes else self._default
            if isinstance(outcome, Delayed):
                await asyncio.sleep(outcome.seconds)
                outcome = outcome.outcome
            if isinstance(outcome, BaseException):
                raise outcome
            return Completion(
                content=str(outcome),
                model=model or "test-model",
                usage=Usage(prompt_tokens=10, completion_tokens=5),
                finish_reason="stop",
            )
        finally:
            self.in_flight -= 1

    def models(self) -> list[str | None]:
        return [call["model"] for call in self.calls]


@dataclass
class RecordingSurface:
    """Editor surface that records every callback it receives."""

    diagnostics: dict[str, tuple[DiagnosticRecord, ...]] = field(default_factory=dict)
    publications: list[tuple[str, tuple[DiagnosticRecord, ...]]] = field(default_factory=list)
    progress: dict[str, ProgressTask] = field(default_factory=dict)
    progress_history: list[ProgressTask] = field(default_factory=list)
    removed_progress: list[str] = field(default_factory=list)
    feedback: dict[str, FeedbackItem] = field(default_factory=dict)
    removed_feedback: list[str] = field(default_factory=list)

    def publish_diagnostics(self, file: str, records: Sequence[DiagnosticRecord]) -> None:
        self.diagnostics[file] = tuple(records)
        self.publications.append((file, tuple(records)))

    def show_progress(self, task: ProgressTask) -> None:
        self.progress[task.id] = task
        self.progress_history.append(task)

    def remove_progress(self, task_id: str) -> None:
        self.progress.pop(task_id, None)
        self.removed_progress.append(task_id)

    def show_feedback_item(self, item: FeedbackItem) -> None:
        self.feedback[item.id] = item

    def remove_feedback_item(self, item_id: str) -> None:
        self.feedback.pop(item_id, None)
        self.removed_feedback.append(item_id)


class StubValidator:
    """Validator returning fixed issues, optionally held behind a gate."""

    def __init__(self, issues: Sequence[ValidationIssue] = (), *, error: Exception | None = None) -> None:
        self.issues = tuple(issues)
        self.error = error
        self.calls: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def validate(self, file: str, text: str) -> Sequence[ValidationIssue]:
        self.calls.append((file, text))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.issues


async def settle(delay: float) -> None:
    """Sleep long enough for loop timers scheduled ``delay`` seconds out to fire."""

    await asyncio.sleep(delay)
