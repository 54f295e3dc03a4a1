"""Conversation state store.

The store is the only writer of conversation turns. Internally it keeps an
immutable tuple that is replaced on every mutation, so snapshots handed out
earlier are never affected by later appends.
"""

from __future__ import annotations

import logging
from typing import Iterable

from ..events import ConversationChanged, EventBus
from .models import ConversationSnapshot, Turn, greeting_turn, new_session_id, now_ms
from .persistence import ConversationPersistence

LOGGER = logging.getLogger(__name__)


class ConversationStore:
    """Append-only, restart-safe log of conversation turns.

    Every mutation is mirrored to ``persistence`` when one is configured.
    Use :meth:`open` to obtain a store whose state was reloaded from disk
    before any caller can interact with it.
    """

    def __init__(
        self,
        *,
        persistence: ConversationPersistence | None = None,
        event_bus: EventBus | None = None,
        snapshot: ConversationSnapshot | None = None,
    ) -> None:
        self._persistence = persistence
        self._bus = event_bus
        initial = snapshot or _fresh_snapshot()
        self._session_id = initial.session_id
        self._turns: tuple[Turn, ...] = tuple(initial.turns)
        self._ids: frozenset[str] = frozenset(turn.id for turn in self._turns)
        self._last_update = initial.last_update

    @classmethod
    def open(
        cls,
        persistence: ConversationPersistence,
        *,
        event_bus: EventBus | None = None,
    ) -> "ConversationStore":
        """Create a store from the last persisted snapshot (or a fresh greeting)."""

        snapshot = persistence.load()
        if snapshot is None:
            LOGGER.debug("ConversationStore.open: no snapshot at %s", persistence.path)
            store = cls(persistence=persistence, event_bus=event_bus)
            store._persist()
            return store
        LOGGER.debug(
            "ConversationStore.open: restored %d turn(s) for %s",
            len(snapshot.turns),
            snapshot.session_id,
        )
        return cls(persistence=persistence, event_bus=event_bus, snapshot=snapshot)

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def last_update(self) -> int:
        return self._last_update

    def __len__(self) -> int:
        return len(self._turns)

    def __contains__(self, turn_id: object) -> bool:
        return turn_id in self._ids

    def snapshot(self) -> ConversationSnapshot:
        """Return an immutable point-in-time copy of the conversation."""
        return ConversationSnapshot(
            session_id=self._session_id,
            turns=self._turns,
            last_update=self._last_update,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append_turn(self, turn: Turn) -> bool:
        """Append ``turn``; returns ``False`` when a turn with its id already exists."""

        if turn.id in self._ids:
            LOGGER.debug("ConversationStore.append_turn: duplicate id %s ignored", turn.id)
            return False
        self._turns = self._turns + (turn,)
        self._ids = self._ids | {turn.id}
        self._commit("append")
        return True

    def append_turns(self, turns: Iterable[Turn]) -> int:
        """Append several turns with a single persistence write."""

        added = [turn for turn in turns if turn.id not in self._ids]
        unique: dict[str, Turn] = {}
        for turn in added:
            unique.setdefault(turn.id, turn)
        if not unique:
            return 0
        self._turns = self._turns + tuple(unique.values())
        self._ids = self._ids | set(unique)
        self._commit("append")
        return len(unique)

    def restore(self, snapshot: ConversationSnapshot) -> None:
        """Replace the whole conversation with ``snapshot``."""

        self._session_id = snapshot.session_id
        self._turns = tuple(snapshot.turns)
        self._ids = frozenset(turn.id for turn in self._turns)
        self._last_update = max(self._last_update, snapshot.last_update)
        self._commit("restore")

    def clear(self) -> None:
        """Reset to a new session containing only the greeting turn."""

        fresh = _fresh_snapshot()
        self._session_id = fresh.session_id
        self._turns = fresh.turns
        self._ids = frozenset(turn.id for turn in self._turns)
        self._commit("clear")

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    def _commit(self, reason: str) -> None:
        self._last_update = max(self._last_update + 1, now_ms())
        self._persist()
        LOGGER.debug(
            "ConversationStore.%s: session=%s turns=%d last_update=%d",
            reason,
            self._session_id,
            len(self._turns),
            self._last_update,
        )
        if self._bus is not None:
            self._bus.publish(
                ConversationChanged(
                    session_id=self._session_id,
                    turn_count=len(self._turns),
                    last_update=self._last_update,
                    reason=reason,
                )
            )

    def _persist(self) -> bool:
        if self._persistence is None:
            return False
        try:
            self._persistence.save(self.snapshot())
            return True
        except OSError as exc:
            LOGGER.warning("ConversationStore: failed to persist snapshot: %s", exc)
            return False


def _fresh_snapshot() -> ConversationSnapshot:
    return ConversationSnapshot(
        session_id=new_session_id(),
        turns=(greeting_turn(),),
        last_update=0,
    )


__all__ = ["ConversationStore"]
