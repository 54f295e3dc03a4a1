"""Conversation data models.

Turns and snapshots are frozen so that any reader holding one can never observe
a later mutation of the store.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from ..ai.utils.tokens import estimate_tokens

GREETING_TEXT = "👋 Hi! I'm kalai. How can I help you with your code today?"


def now_ms() -> int:
    return int(time.time() * 1000)


class Role(str, Enum):
    """Author of a turn."""

    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True, slots=True)
class Turn:
    """One user or assistant message in a conversation.

    Attributes:
        id: Stable identifier; appending the same id twice is a no-op.
        role: Who authored the turn.
        text: Message body.
        timestamp: Epoch milliseconds when the turn was created.
        estimated_tokens: Token estimate of ``text``; recomputed when loaded.
        pinned: Pinned turns survive routine history trimming.
    """

    id: str
    role: Role
    text: str
    timestamp: int
    estimated_tokens: int
    pinned: bool = False

    @classmethod
    def create(
        cls,
        role: Role | str,
        text: str,
        *,
        turn_id: str | None = None,
        timestamp: int | None = None,
        pinned: bool = False,
    ) -> "Turn":
        return cls(
            id=turn_id or f"turn-{uuid.uuid4().hex[:12]}",
            role=Role(role),
            text=text,
            timestamp=now_ms() if timestamp is None else int(timestamp),
            estimated_tokens=estimate_tokens(text),
            pinned=pinned,
        )

    def with_text(self, text: str) -> "Turn":
        """Return a copy carrying ``text`` with a refreshed token estimate."""
        return replace(self, text=text, estimated_tokens=estimate_tokens(text))

    def as_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.text}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "timestamp": self.timestamp,
            "estimated_tokens": self.estimated_tokens,
            "pinned": self.pinned,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Turn":
        text = str(payload.get("text", ""))
        return cls(
            id=str(payload.get("id") or f"turn-{uuid.uuid4().hex[:12]}"),
            role=Role(str(payload.get("role", "user"))),
            text=text,
            timestamp=int(payload.get("timestamp") or 0),
            estimated_tokens=estimate_tokens(text),
            pinned=bool(payload.get("pinned", False)),
        )


def greeting_turn() -> Turn:
    """The assistant turn every fresh conversation starts with."""
    return Turn.create(Role.ASSISTANT, GREETING_TEXT, turn_id="greeting")


@dataclass(frozen=True, slots=True)
class ConversationSnapshot:
    """Point-in-time copy of a conversation."""

    session_id: str
    turns: tuple[Turn, ...] = field(default_factory=tuple)
    last_update: int = 0

    @property
    def last_user_turn(self) -> Turn | None:
        for turn in reversed(self.turns):
            if turn.role is Role.USER:
                return turn
        return None

    @property
    def total_tokens(self) -> int:
        return sum(turn.estimated_tokens for turn in self.turns)

    def __len__(self) -> int:
        return len(self.turns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "last_update": self.last_update,
            "turns": [turn.to_dict() for turn in self.turns],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConversationSnapshot":
        raw_turns = payload.get("turns") or []
        turns = tuple(Turn.from_dict(item) for item in raw_turns if isinstance(item, Mapping))
        return cls(
            session_id=str(payload.get("session_id") or new_session_id()),
            turns=turns,
            last_update=int(payload.get("last_update") or 0),
        )


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:12]}"


__all__ = [
    "GREETING_TEXT",
    "Role",
    "Turn",
    "ConversationSnapshot",
    "greeting_turn",
    "new_session_id",
    "now_ms",
]
