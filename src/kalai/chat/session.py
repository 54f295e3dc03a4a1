"""Assistant session: wires the conversation, request and feedback pipelines.

The session is what a chat surface talks to. It owns the conversation store,
the request coordinator and the feedback engine, and it dispatches every
:mod:`kalai.chat.messages` variant to the component that handles it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from ..ai.client import AIClient
from ..ai.orchestration.coordinator import ChatReply, CompletionClient, RequestCoordinator, RequestHandle
from ..conversation.assembler import AssemblerConfig, ContextAssembler, FileContext
from ..conversation.history import ArchivedSession, ChatHistoryArchive
from ..conversation.persistence import ConversationPersistence
from ..conversation.store import ConversationStore
from ..events import EventBus
from ..feedback.engine import FeedbackEngine, FeedbackEngineConfig
from ..feedback.surface import EditorSurface, LoggingSurface
from ..feedback.validators import Validator
from ..services.settings import Settings
from .messages import (
    CancelProgress,
    CancelRequest,
    ClearConversation,
    ClearFeedback,
    DismissFeedback,
    GetState,
    NewChat,
    SendMessage,
    SurfaceMessage,
    parse_surface_message,
)

LOGGER = logging.getLogger(__name__)

_PROGRESS_PREVIEW_CHARS = 60


@dataclass(slots=True)
class SessionPaths:
    """Where the session keeps its state; ``None`` means the default location."""

    conversation: Path | None = None
    history: Path | None = None


class AssistantSession:
    """Facade over store, coordinator and feedback engine for one chat surface."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        coordinator: RequestCoordinator,
        engine: FeedbackEngine,
        archive: ChatHistoryArchive,
        bus: EventBus,
        client: AIClient | None = None,
    ) -> None:
        self._store = store
        self._coordinator = coordinator
        self._engine = engine
        self._archive = archive
        self._bus = bus
        self._client = client
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        client: CompletionClient | None = None,
        surface: EditorSurface | None = None,
        bus: EventBus | None = None,
        validator: Validator | None = None,
        paths: SessionPaths | None = None,
    ) -> "AssistantSession":
        """Build a fully wired session from ``settings``.

        When ``client`` is omitted an :class:`AIClient` is created from the
        settings and closed together with the session.

        Raises:
            ValueError: if the configured timeout budgets are not nested.
        """

        paths = paths or SessionPaths()
        bus = bus or EventBus()
        surface = surface or LoggingSurface()
        budgets = settings.timeout_budgets()
        owned_client: AIClient | None = None
        if client is None:
            owned_client = AIClient(settings.client_settings())
            client = owned_client

        store = ConversationStore.open(ConversationPersistence(paths.conversation), event_bus=bus)
        assembler = ContextAssembler(
            AssemblerConfig(
                model_max_tokens=settings.model_max_tokens,
                reserved_response_tokens=settings.reserved_response_tokens,
                preserve_recent_exchanges=settings.preserve_recent_exchanges,
            )
        )
        coordinator = RequestCoordinator(
            client,
            store,
            assembler,
            model=settings.model_name,
            fallback_models=settings.fallback_models,
            budgets=budgets,
            max_attempts=settings.max_attempts,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            event_bus=bus,
        )
        engine = FeedbackEngine(
            bus,
            surface,
            validator,
            config=FeedbackEngineConfig(
                debounce_seconds=settings.debounce_seconds,
                feed_capacity=settings.feed_capacity,
            ),
        )
        archive = ChatHistoryArchive(paths.history, limit=settings.history_limit)
        LOGGER.debug(
            "AssistantSession.from_settings: model=%s fallbacks=%d budgets=%s",
            settings.model_name,
            len(settings.fallback_models),
            budgets.as_dict(),
        )
        return cls(
            store=store,
            coordinator=coordinator,
            engine=engine,
            archive=archive,
            bus=bus,
            client=owned_client,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def coordinator(self) -> RequestCoordinator:
        return self._coordinator

    @property
    def engine(self) -> FeedbackEngine:
        return self._engine

    @property
    def archive(self) -> ChatHistoryArchive:
        return self._archive

    @property
    def bus(self) -> EventBus:
        return self._bus

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._engine.start()

    async def aclose(self) -> None:
        """Cancel outstanding work and release the provider client."""

        if self._closed:
            return
        self._closed = True
        await self._coordinator.aclose()
        await self._engine.aclose()
        if self._client is not None:
            await self._client.aclose()

    async def __aenter__(self) -> "AssistantSession":
        self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Chat operations
    # ------------------------------------------------------------------

    def submit(
        self,
        text: str,
        *,
        file_context: FileContext | None = None,
        model: str | None = None,
    ) -> RequestHandle:
        """Queue a chat request and show a cancellable progress task for it."""

        handle = self._coordinator.submit(text, file_context=file_context, model=model)
        progress = self._engine.progress
        task = progress.start(
            f"Waiting for {handle.envelope.model}",
            message=_preview(text),
            cancellable=True,
            on_cancel=handle.cancel,
            task_id=_progress_id(handle.id),
        )
        handle.add_done_callback(lambda done: progress.complete(task.id))
        return handle

    async def ask(
        self,
        text: str,
        *,
        file_context: FileContext | None = None,
        model: str | None = None,
    ) -> ChatReply:
        """Send ``text`` and wait for a reply within the UI budget."""

        return await self.submit(text, file_context=file_context, model=model).reply()

    def cancel(self, envelope_id: str | None = None) -> int:
        """Cancel one request, or all of them when ``envelope_id`` is ``None``."""

        if envelope_id is None:
            return self._coordinator.cancel_all()
        return int(self._coordinator.cancel(envelope_id))

    def clear_conversation(self) -> None:
        self._coordinator.cancel_all()
        self._store.clear()

    def new_chat(self) -> ArchivedSession | None:
        """Archive the current conversation, then start a fresh one."""

        self._coordinator.cancel_all()
        archived = self._archive.archive(self._store.snapshot())
        self._store.clear()
        if archived is not None:
            LOGGER.info("Archived session %s", archived.session_id)
        return archived

    def state(self) -> dict[str, Any]:
        snapshot = self._store.snapshot()
        return {
            "session_id": snapshot.session_id,
            "last_update": snapshot.last_update,
            "turns": [turn.to_dict() for turn in snapshot.turns],
            "pending": [
                {"id": envelope.id, "state": envelope.state.value, "model": envelope.model}
                for envelope in self._coordinator.pending()
            ],
            "feedback": [item.to_dict() for item in self._engine.feed.items()],
            "progress": [task.to_dict() for task in self._engine.progress.tasks()],
        }

    # ------------------------------------------------------------------
    # Surface messages
    # ------------------------------------------------------------------

    async def handle_payload(self, payload: Mapping[str, Any] | str | bytes) -> Any:
        """Parse a raw surface payload and dispatch it.

        Raises:
            MessageError: if the payload is not a valid message.
        """

        return await self.handle(parse_surface_message(payload))

    async def handle(self, message: SurfaceMessage) -> Any:
        if isinstance(message, SendMessage):
            file_context = None
            if message.file is not None:
                file_context = FileContext(
                    path=message.file.path,
                    content=message.file.content,
                    language=message.file.language,
                )
            return await self.ask(message.text, file_context=file_context, model=message.model)
        if isinstance(message, CancelRequest):
            return self.cancel(message.envelope_id)
        if isinstance(message, ClearConversation):
            return self.clear_conversation()
        if isinstance(message, NewChat):
            return self.new_chat()
        if isinstance(message, DismissFeedback):
            return self._engine.feed.dismiss(message.item_id)
        if isinstance(message, ClearFeedback):
            return self._engine.feed.clear()
        if isinstance(message, CancelProgress):
            return self._engine.progress.cancel(message.task_id)
        if isinstance(message, GetState):
            return self.state()
        raise TypeError(f"Unhandled surface message {message!r}")


def _progress_id(envelope_id: str) -> str:
    return f"request:{envelope_id}"


def _preview(text: str) -> str:
    text = " ".join(text.split())
    if len(text) <= _PROGRESS_PREVIEW_CHARS:
        return text
    return text[: _PROGRESS_PREVIEW_CHARS - 3] + "..."


__all__ = ["AssistantSession", "SessionPaths"]
