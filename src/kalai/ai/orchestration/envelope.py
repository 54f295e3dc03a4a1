"""Request envelope, lifecycle states and timeout budgets."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence

from ..errors import AssistantError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TimeoutBudgets:
    """Nested timeout budgets (seconds) for one outbound request.

    Attributes:
        ui: How long the caller waits for a reply, measured from ``send``.
        queue: How long the envelope may spend in the dispatch queue, measured
            from submission: waiting behind earlier requests plus every provider
            attempt and backoff once active.
        net: Upper bound for a single raw provider call.

    Raises:
        ValueError: unless ``ui > queue > net > 0``.
    """

    ui: float = 90.0
    queue: float = 75.0
    net: float = 30.0

    def __post_init__(self) -> None:
        if not self.net > 0:
            raise ValueError(f"net budget must be positive, got {self.net!r}")
        if not self.queue > self.net:
            raise ValueError(
                f"queue budget ({self.queue!r}) must exceed net budget ({self.net!r})"
            )
        if not self.ui > self.queue:
            raise ValueError(
                f"ui budget ({self.ui!r}) must exceed queue budget ({self.queue!r})"
            )

    def as_dict(self) -> dict[str, float]:
        return {"ui": self.ui, "queue": self.queue, "net": self.net}


class RequestState(Enum):
    """Lifecycle of a :class:`RequestEnvelope`.

    Values:
        QUEUED: Waiting for the conversation's active slot.
        SENDING: Active; provider attempts are running.
        SUCCEEDED: A completion was received and recorded.
        FAILED: A terminal provider error or exhausted retries.
        TIMED_OUT: The queue budget expired.
        CANCELLED: Cancelled by the caller.
    """

    QUEUED = "queued"
    SENDING = "sending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        RequestState.SUCCEEDED,
        RequestState.FAILED,
        RequestState.TIMED_OUT,
        RequestState.CANCELLED,
    }
)
_ALLOWED_TRANSITIONS: Mapping[RequestState, frozenset[RequestState]] = {
    RequestState.QUEUED: frozenset(
        {RequestState.SENDING, RequestState.FAILED, RequestState.TIMED_OUT, RequestState.CANCELLED}
    ),
    RequestState.SENDING: _TERMINAL_STATES,
}


@dataclass(slots=True)
class RequestEnvelope:
    """Parameters, budgets and lifecycle of one outbound AI request.

    ``models`` is the ordered list walked by retries: attempt ``i`` (0-based)
    uses ``models[min(i, len(models) - 1)]``. ``messages`` is filled in when
    the envelope becomes active so the context reflects every earlier reply.
    ``submitted_at`` is the event-loop clock reading taken when the envelope
    entered the dispatch queue.
    """

    instruction: str
    models: tuple[str, ...]
    budgets: TimeoutBudgets = field(default_factory=TimeoutBudgets)
    max_tokens: int | None = None
    temperature: float | None = None
    id: str = field(default_factory=lambda: f"req-{uuid.uuid4().hex[:12]}")
    messages: tuple[dict[str, str], ...] = ()
    attempt: int = 0
    state: RequestState = RequestState.QUEUED
    error: AssistantError | None = None
    created_at: float = field(default_factory=time.monotonic)
    finished_at: float | None = None
    submitted_at: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.models:
            raise ValueError("RequestEnvelope requires at least one model")

    @classmethod
    def create(
        cls,
        instruction: str,
        *,
        model: str,
        fallback_models: Sequence[str] = (),
        **kwargs: Any,
    ) -> "RequestEnvelope":
        chain: list[str] = [model]
        for candidate in fallback_models:
            if candidate and candidate not in chain:
                chain.append(candidate)
        return cls(instruction=instruction, models=tuple(chain), **kwargs)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def queue_remaining(self, now: float) -> float:
        """Seconds left of the ``queue`` budget at loop time ``now``."""
        if self.submitted_at is None:
            return self.budgets.queue
        return self.budgets.queue - (now - self.submitted_at)

    @property
    def model(self) -> str:
        """Model used by the current (or next) attempt."""
        return self.model_for_attempt(max(self.attempt - 1, 0))

    def model_for_attempt(self, index: int) -> str:
        return self.models[min(max(index, 0), len(self.models) - 1)]

    @property
    def user_turn_id(self) -> str:
        return f"{self.id}:user"

    @property
    def assistant_turn_id(self) -> str:
        return f"{self.id}:assistant"

    def transition(self, state: RequestState, *, error: AssistantError | None = None) -> bool:
        """Move to ``state``; returns ``False`` when the envelope is already terminal.

        Raises:
            ValueError: for a transition the lifecycle does not allow.
        """

        if self.state.is_terminal:
            LOGGER.debug(
                "RequestEnvelope %s: ignoring %s -> %s (terminal)",
                self.id,
                self.state.value,
                state.value,
            )
            return False
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise ValueError(f"Invalid transition {self.state.value} -> {state.value}")
        LOGGER.debug("RequestEnvelope %s: %s -> %s", self.id, self.state.value, state.value)
        self.state = state
        if error is not None:
            self.error = error
        if state.is_terminal:
            self.finished_at = time.monotonic()
        return True


__all__ = ["TimeoutBudgets", "RequestState", "RequestEnvelope"]
