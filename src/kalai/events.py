"""Event bus infrastructure for decoupled component communication.

The editing surface publishes source-mutation events here; the feedback engine
and the chat surface subscribe without holding references to each other.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

# Type variable for event types
E = TypeVar("E", bound="Event")

# Handler type: a callable that takes an event and returns None
Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events in the system.

    Example::

        @dataclass(slots=True)
        class FileCreated(Event):
            file: str
    """

    pass


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Editing-surface Events
# =============================================================================


@dataclass(slots=True)
class TextChanged(Event):
    """Emitted by the editing surface whenever a buffer's text changes.

    Attributes:
        file: Path of the changed file.
        version: Editor-assigned, increasing document version.
        text: Current buffer contents, when the surface provides them.
    """

    file: str
    version: int
    text: str | None = None


_QUIET_EVENT_TYPES.add(TextChanged)


@dataclass(slots=True)
class FileCreated(Event):
    """Emitted when a file appears in the workspace."""

    file: str


@dataclass(slots=True)
class FileDeleted(Event):
    """Emitted when a file is removed from the workspace."""

    file: str


# =============================================================================
# Conversation Events
# =============================================================================


@dataclass(slots=True)
class ConversationChanged(Event):
    """Emitted after the conversation store mutates.

    Attributes:
        session_id: Conversation the change belongs to.
        turn_count: Number of turns after the change.
        last_update: Monotonic epoch (ms) of the change.
        reason: One of ``append``, ``restore`` or ``clear``.
    """

    session_id: str
    turn_count: int
    last_update: int
    reason: str


@dataclass(slots=True)
class RequestStateChanged(Event):
    """Emitted on every request envelope state transition."""

    envelope_id: str
    state: str
    model: str
    attempt: int
    error_code: str | None = None


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`; disposing it unsubscribes."""

    __slots__ = ("_bus", "_event_type", "_handler_ref", "_disposed")

    def __init__(self, bus: "EventBus[Any]", event_type: type[Event], handler_ref: "_HandlerRef") -> None:
        self._bus = bus
        self._event_type = event_type
        self._handler_ref = handler_ref
        self._disposed = False

    @property
    def event_type(self) -> type[Event]:
        return self._event_type

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        """Remove the handler. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        self._bus._remove_ref(self._event_type, self._handler_ref)


class SubscriptionSet:
    """Owns several subscriptions and disposes them in reverse order."""

    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[Subscription] = []

    def add(self, subscription: Subscription) -> Subscription:
        self._items.append(subscription)
        return subscription

    def dispose(self) -> None:
        while self._items:
            self._items.pop().dispose()

    def __len__(self) -> int:
        return len(self._items)


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus for decoupled communication.

    Handlers are stored as weak references where possible (bound methods) to
    prevent leaks; plain functions and lambdas are held strongly.

    Thread Safety:
        This implementation is NOT thread-safe. All operations should be
        performed from the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> Subscription:
        """Register a handler to receive events of the specified type.

        Returns:
            A :class:`Subscription` whose ``dispose()`` removes exactly this
            registration.
        """
        handler_ref = _HandlerRef.create(handler)
        self._handlers[event_type].append(handler_ref)
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )
        return Subscription(self, event_type, handler_ref)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; no-op when absent."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Broadcast an event to all registered handlers.

        Handlers are invoked synchronously in the order they were
        registered. If a handler raises an exception, it is logged
        and remaining handlers continue to be invoked.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if not handlers:
            if not is_quiet:
                logger.debug("No handlers for event type %s", event_type.__name__)
            return

        if not is_quiet:
            logger.debug(
                "Publishing %s to %d handler(s)",
                event_type.__name__,
                len(handlers),
            )

        dead: list[_HandlerRef] = []
        # Iterate over a copy: handlers may dispose their own subscription.
        for handler_ref in list(handlers):
            handler = handler_ref.resolve()
            if handler is None:
                dead.append(handler_ref)
                continue

            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for handler_ref in dead:
            self._remove_ref(event_type, handler_ref)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the number of registered handlers (for one type or all)."""
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())

    def _remove_ref(self, event_type: type[Event], handler_ref: "_HandlerRef") -> None:
        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        for i, candidate in enumerate(handlers):
            if candidate is handler_ref:
                handlers.pop(i)
                return


class _HandlerRef:
    """Wrapper for handler references supporting both weak and strong refs."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        # Bound methods are held weakly so owners can be collected.
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    """Get a human-readable name for a handler for logging purposes."""
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "Subscription",
    "SubscriptionSet",
    "TextChanged",
    "FileCreated",
    "FileDeleted",
    "ConversationChanged",
    "RequestStateChanged",
]
