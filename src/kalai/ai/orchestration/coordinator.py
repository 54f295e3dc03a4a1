"""Request coordinator: one outbound call at a time per conversation.

Envelopes are processed strictly FIFO by a single worker task, so turns are
appended in issue order no matter how long individual provider calls take.
Each envelope is guarded by three nested budgets (see
:class:`~kalai.ai.orchestration.envelope.TimeoutBudgets`):

* ``net`` bounds one provider call and is retried on the next fallback model;
* ``queue`` bounds the envelope from submission until completion, time spent
  waiting behind earlier envelopes and every retry included;
* ``ui`` bounds how long :meth:`RequestCoordinator.send` keeps the caller
  waiting. When it expires the caller gets a fallback reply while the request
  carries on, and a later success is still recorded in the store.
  :meth:`RequestHandle.reply` accepts a shorter wait for the same purpose.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, Sequence

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from ...conversation.assembler import ContextAssembler, FileContext
from ...conversation.models import Role, Turn, now_ms
from ...conversation.store import ConversationStore
from ...events import EventBus, RequestStateChanged
from ...services import telemetry
from ..client import Completion, Usage, translate_provider_error
from ..errors import (
    AssistantError,
    ContextOverflowError,
    NetworkError,
    RequestCancelledError,
    RequestManagementTimeoutError,
    RequestTimeoutError,
)
from ..utils.tokens import estimate_tokens
from .envelope import RequestEnvelope, RequestState, TimeoutBudgets
from .fallbacks import fallback_message

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (NetworkError, RequestTimeoutError)


class CompletionClient(Protocol):
    """The part of :class:`~kalai.ai.client.AIClient` the coordinator uses."""

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Completion:  # pragma: no cover - protocol stub
        ...


@dataclass(frozen=True, slots=True)
class ChatReply:
    """Typed outcome handed to the chat surface; never a raw exception.

    Attributes:
        envelope_id: Request the reply belongs to.
        state: Envelope state when the reply was produced. A UI-timeout reply
            carries a non-terminal state.
        text: Model answer, or a fallback message when ``is_fallback``.
        is_fallback: ``True`` when ``text`` is not a model answer.
        error: Terminal error, if any.
        usage: Provider token accounting on success.
        model: Model that produced (or was last asked for) the answer.
    """

    envelope_id: str
    state: RequestState
    text: str
    is_fallback: bool = False
    error: AssistantError | None = None
    usage: Usage | None = None
    model: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is RequestState.SUCCEEDED and not self.is_fallback

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "envelope_id": self.envelope_id,
            "state": self.state.value,
            "text": self.text,
            "is_fallback": self.is_fallback,
            "model": self.model,
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        if self.usage is not None:
            payload["usage"] = {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
            }
        return payload


class RequestHandle:
    """Caller-side view of a submitted envelope."""

    __slots__ = ("_coordinator", "_envelope", "_future", "_submitted_at")

    def __init__(
        self,
        coordinator: "RequestCoordinator",
        envelope: RequestEnvelope,
        future: asyncio.Future[ChatReply],
        submitted_at: float,
    ) -> None:
        self._coordinator = coordinator
        self._envelope = envelope
        self._future = future
        self._submitted_at = submitted_at

    @property
    def id(self) -> str:
        return self._envelope.id

    @property
    def envelope(self) -> RequestEnvelope:
        return self._envelope

    @property
    def state(self) -> RequestState:
        return self._envelope.state

    def done(self) -> bool:
        return self._future.done()

    async def result(self) -> ChatReply:
        """Wait for the terminal outcome, however long it takes."""
        return await asyncio.shield(self._future)

    async def reply(self, timeout: float | None = None) -> ChatReply:
        """Wait at most the remaining ``ui`` budget, then fall back.

        ``timeout`` can shorten the wait for surfaces that want an early
        "still working" notice; it never extends it past the ``ui`` budget.
        The request itself is never cancelled here.
        """

        if self._future.done():
            return self._future.result()
        loop = asyncio.get_running_loop()
        remaining = self._envelope.budgets.ui - (loop.time() - self._submitted_at)
        if timeout is not None:
            remaining = min(remaining, timeout)
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout=max(remaining, 0.0))
        except asyncio.TimeoutError:
            envelope = self._envelope
            LOGGER.info(
                "Request %s still %s after %.2fs; returning fallback",
                envelope.id,
                envelope.state.value,
                loop.time() - self._submitted_at,
            )
            return ChatReply(
                envelope_id=envelope.id,
                state=envelope.state,
                text=fallback_message(None, envelope.instruction),
                is_fallback=True,
                model=envelope.model,
            )

    def cancel(self) -> bool:
        return self._coordinator.cancel(self.id)

    def add_done_callback(self, callback: Callable[["RequestHandle"], Any]) -> None:
        """Call ``callback(handle)`` once the request reaches a terminal state."""
        self._future.add_done_callback(lambda _future: callback(self))


class RequestCoordinator:
    """Serializes provider calls for one conversation and records the results.

    Only successful exchanges are written to ``store``: the user turn and the
    assistant turn are appended together, with ids derived from the envelope
    id so a repeated append is a no-op.
    """

    def __init__(
        self,
        client: CompletionClient,
        store: ConversationStore,
        assembler: ContextAssembler | None = None,
        *,
        model: str,
        fallback_models: Sequence[str] = (),
        budgets: TimeoutBudgets | None = None,
        max_attempts: int = 3,
        max_tokens: int | None = None,
        temperature: float | None = 0.7,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 6.0,
        event_bus: EventBus | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._client = client
        self._store = store
        self._assembler = assembler or ContextAssembler()
        self._model = model
        self._fallback_models = tuple(fallback_models)
        self._budgets = budgets or TimeoutBudgets()
        self._max_attempts = max_attempts
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._retry_min = retry_min_seconds
        self._retry_max = retry_max_seconds
        self._bus = event_bus
        self._queue: asyncio.Queue[RequestEnvelope] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._pending: dict[str, RequestEnvelope] = {}
        self._futures: dict[str, asyncio.Future[ChatReply]] = {}
        self._file_contexts: dict[str, FileContext] = {}
        self._deadlines: dict[str, asyncio.TimerHandle] = {}
        self._active: RequestEnvelope | None = None
        self._active_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def model(self) -> str:
        return self._model

    @property
    def budgets(self) -> TimeoutBudgets:
        return self._budgets

    @property
    def active(self) -> RequestEnvelope | None:
        return self._active

    def pending(self) -> tuple[RequestEnvelope, ...]:
        """Envelopes that have not reached a terminal state, in issue order."""
        return tuple(self._pending.values())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send(
        self,
        instruction: str,
        *,
        file_context: FileContext | None = None,
        model: str | None = None,
        budgets: TimeoutBudgets | None = None,
    ) -> ChatReply:
        """Submit ``instruction`` and wait for a reply within the ``ui`` budget."""

        handle = self.submit(instruction, file_context=file_context, model=model, budgets=budgets)
        return await handle.reply()

    def submit(
        self,
        instruction: str,
        *,
        file_context: FileContext | None = None,
        model: str | None = None,
        budgets: TimeoutBudgets | None = None,
    ) -> RequestHandle:
        """Queue ``instruction`` behind any in-flight request and return its handle."""

        loop = asyncio.get_running_loop()
        envelope = RequestEnvelope.create(
            instruction,
            model=model or self._model,
            fallback_models=self._fallback_models,
            budgets=budgets or self._budgets,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )
        envelope.metadata["submitted_ms"] = now_ms()
        envelope.submitted_at = loop.time()
        future: asyncio.Future[ChatReply] = loop.create_future()
        self._futures[envelope.id] = future
        handle = RequestHandle(self, envelope, future, envelope.submitted_at)
        self._publish_state(envelope)

        instruction_tokens = estimate_tokens(instruction)
        ceiling = self._assembler.ceiling
        if instruction_tokens > ceiling:
            self._finish(
                envelope,
                RequestState.FAILED,
                error=ContextOverflowError(instruction_tokens=instruction_tokens, ceiling=ceiling),
            )
            return handle

        self._pending[envelope.id] = envelope
        if file_context is not None:
            self._file_contexts[envelope.id] = file_context
        self._ensure_worker().put_nowait(envelope)
        self._deadlines[envelope.id] = loop.call_later(envelope.budgets.queue, self._expire, envelope.id)
        LOGGER.debug(
            "RequestCoordinator.submit: %s queued behind %d request(s)",
            envelope.id,
            len(self._pending) - 1,
        )
        return handle

    def cancel(self, envelope_id: str) -> bool:
        """Cancel a queued or active request; returns ``False`` if it already finished."""

        envelope = self._pending.get(envelope_id)
        if envelope is None:
            return False
        self._finish(envelope, RequestState.CANCELLED, error=RequestCancelledError())
        task = self._active_task
        if self._active is envelope and task is not None and not task.done():
            task.cancel()
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for envelope_id in list(self._pending):
            if self.cancel(envelope_id):
                cancelled += 1
        return cancelled

    async def aclose(self) -> None:
        """Cancel outstanding requests and stop the worker."""

        self.cancel_all()
        worker, self._worker = self._worker, None
        self._queue = None
        if worker is None or worker.done():
            return
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> asyncio.Queue[RequestEnvelope]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_worker(self._queue), name="kalai-request-worker")
        return self._queue

    async def _run_worker(self, queue: asyncio.Queue[RequestEnvelope]) -> None:
        while True:
            envelope = await queue.get()
            try:
                if envelope.is_terminal:
                    continue
                task = asyncio.create_task(self._process(envelope), name=f"kalai-request-{envelope.id}")
                self._active, self._active_task = envelope, task
                try:
                    await asyncio.wait({task})
                except asyncio.CancelledError:
                    task.cancel()
                    raise
                if not task.cancelled() and task.exception() is not None:
                    LOGGER.error(
                        "Request %s crashed", envelope.id, exc_info=task.exception()
                    )
            finally:
                self._active = None
                self._active_task = None
                queue.task_done()

    def _expire(self, envelope_id: str) -> None:
        envelope = self._pending.get(envelope_id)
        if envelope is None or envelope.state is not RequestState.QUEUED:
            return
        self._time_out(envelope)

    def _time_out(self, envelope: RequestEnvelope) -> None:
        budgets = envelope.budgets
        LOGGER.warning(
            "Request %s exceeded queue budget %.1fs while %s",
            envelope.id,
            budgets.queue,
            envelope.state.value,
        )
        self._finish(
            envelope,
            RequestState.TIMED_OUT,
            error=RequestManagementTimeoutError(timeout=budgets.queue),
        )

    async def _process(self, envelope: RequestEnvelope) -> None:
        remaining = envelope.queue_remaining(asyncio.get_running_loop().time())
        if remaining <= 0:
            self._time_out(envelope)
            return
        self._transition(envelope, RequestState.SENDING)
        try:
            bounded = self._assembler.assemble(
                self._store.snapshot(),
                envelope.instruction,
                self._file_contexts.get(envelope.id),
            )
            envelope.messages = bounded.messages
            completion = await asyncio.wait_for(self._attempt_all(envelope), timeout=remaining)
        except asyncio.CancelledError:
            self._finish(envelope, RequestState.CANCELLED, error=RequestCancelledError())
            raise
        except AssistantError as exc:
            LOGGER.warning("Request %s failed: %s", envelope.id, exc)
            self._finish(envelope, RequestState.FAILED, error=exc)
            return
        except asyncio.TimeoutError:
            self._time_out(envelope)
            return
        except Exception as exc:
            LOGGER.exception("Request %s raised an unexpected error", envelope.id)
            self._finish(envelope, RequestState.FAILED, error=AssistantError(message=str(exc)))
            return

        if envelope.is_terminal:
            LOGGER.debug("Request %s finished after cancellation; result dropped", envelope.id)
            return
        self._record_success(envelope, completion)

    async def _attempt_all(self, envelope: RequestEnvelope) -> Completion:
        completion: Completion | None = None
        async for attempt in self._retrying():
            with attempt:
                completion = await self._attempt(envelope, attempt.retry_state.attempt_number)
        if completion is None:  # pragma: no cover - tenacity re-raises on failure
            raise NetworkError(message="No completion received")
        return completion

    async def _attempt(self, envelope: RequestEnvelope, number: int) -> Completion:
        if envelope.is_terminal:
            raise RequestCancelledError()
        envelope.attempt = number
        model = envelope.model_for_attempt(number - 1)
        self._publish_state(envelope)
        net = envelope.budgets.net
        try:
            return await asyncio.wait_for(
                self._client.complete(
                    envelope.messages,
                    model=model,
                    max_tokens=envelope.max_tokens,
                    temperature=envelope.temperature,
                ),
                timeout=net,
            )
        except AssistantError:
            raise
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(
                timeout=net, details={"model": model, "attempt": number}
            ) from exc
        except Exception as exc:
            raise translate_provider_error(exc) from exc

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_min, max=self._retry_max),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
            before_sleep=self._log_retry,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        LOGGER.info(
            "Attempt %d failed (%s); retrying in %.2fs",
            retry_state.attempt_number,
            error,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _record_success(self, envelope: RequestEnvelope, completion: Completion) -> None:
        submitted_ms = int(envelope.metadata.get("submitted_ms") or now_ms())
        turns = (
            Turn.create(Role.USER, envelope.instruction, turn_id=envelope.user_turn_id, timestamp=submitted_ms),
            Turn.create(Role.ASSISTANT, completion.content, turn_id=envelope.assistant_turn_id),
        )
        self._store.append_turns(turns)
        reply = ChatReply(
            envelope_id=envelope.id,
            state=RequestState.SUCCEEDED,
            text=completion.content,
            usage=completion.usage,
            model=completion.model,
        )
        self._finish(envelope, RequestState.SUCCEEDED, reply=reply)
        telemetry.emit(
            "request.usage",
            {
                "envelope_id": envelope.id,
                "model": completion.model,
                "attempt": envelope.attempt,
                "prompt_tokens": completion.usage.prompt_tokens,
                "completion_tokens": completion.usage.completion_tokens,
            },
        )

    def _transition(self, envelope: RequestEnvelope, state: RequestState) -> bool:
        changed = envelope.transition(state)
        if changed:
            self._publish_state(envelope)
        return changed

    def _finish(
        self,
        envelope: RequestEnvelope,
        state: RequestState,
        *,
        error: AssistantError | None = None,
        reply: ChatReply | None = None,
    ) -> bool:
        if not envelope.transition(state, error=error):
            return False
        self._pending.pop(envelope.id, None)
        self._file_contexts.pop(envelope.id, None)
        deadline = self._deadlines.pop(envelope.id, None)
        if deadline is not None:
            deadline.cancel()
        if reply is None:
            reply = ChatReply(
                envelope_id=envelope.id,
                state=state,
                text=fallback_message(error, envelope.instruction),
                is_fallback=True,
                error=error,
                model=envelope.model,
            )
        future = self._futures.pop(envelope.id, None)
        if future is not None and not future.done():
            future.set_result(reply)
        self._publish_state(envelope)
        return True

    def _publish_state(self, envelope: RequestEnvelope) -> None:
        error_code = envelope.error.error_code if envelope.error is not None else None
        telemetry.emit(
            "request.state",
            {
                "envelope_id": envelope.id,
                "state": envelope.state.value,
                "model": envelope.model,
                "attempt": envelope.attempt,
                "error_code": error_code,
            },
        )
        if self._bus is not None:
            self._bus.publish(
                RequestStateChanged(
                    envelope_id=envelope.id,
                    state=envelope.state.value,
                    model=envelope.model,
                    attempt=envelope.attempt,
                    error_code=error_code,
                )
            )


__all__ = ["ChatReply", "CompletionClient", "RequestCoordinator", "RequestHandle"]
