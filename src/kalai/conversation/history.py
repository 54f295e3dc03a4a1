"""Archive of finished chat sessions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .models import ConversationSnapshot, now_ms

__all__ = ["ArchivedSession", "ChatHistoryArchive", "default_history_path"]

LOGGER = logging.getLogger(__name__)
_HISTORY_FILENAME = "chat_history.json"
_HISTORY_VERSION = 1
DEFAULT_HISTORY_LIMIT = 50
PREVIEW_CHARS = 100


def default_history_path() -> Path:
    return Path.home() / ".kalai" / _HISTORY_FILENAME


@dataclass(frozen=True, slots=True)
class ArchivedSession:
    """A conversation moved out of the live store by "new chat"."""

    session_id: str
    archived_at: int
    preview: str
    snapshot: ConversationSnapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "archived_at": self.archived_at,
            "preview": self.preview,
            "snapshot": self.snapshot.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ArchivedSession":
        raw_snapshot = payload.get("snapshot")
        snapshot = ConversationSnapshot.from_dict(raw_snapshot if isinstance(raw_snapshot, Mapping) else {})
        return cls(
            session_id=str(payload.get("session_id") or snapshot.session_id),
            archived_at=int(payload.get("archived_at") or 0),
            preview=str(payload.get("preview") or ""),
            snapshot=snapshot,
        )


class ChatHistoryArchive:
    """Keeps the most recent archived sessions, newest first.

    Sessions without any user turn (a bare greeting) are not archived.
    """

    def __init__(self, path: Path | str | None = None, *, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        self._path = Path(path).expanduser() if path else default_history_path()
        self._limit = limit
        self._sessions: list[ArchivedSession] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def sessions(self) -> tuple[ArchivedSession, ...]:
        return tuple(self._sessions)

    def get(self, session_id: str) -> ArchivedSession | None:
        for session in self._sessions:
            if session.session_id == session_id:
                return session
        return None

    def archive(self, snapshot: ConversationSnapshot) -> ArchivedSession | None:
        """Store ``snapshot`` at the head of the archive."""

        if snapshot.last_user_turn is None:
            LOGGER.debug("ChatHistoryArchive: skipping empty session %s", snapshot.session_id)
            return None
        entry = ArchivedSession(
            session_id=snapshot.session_id,
            archived_at=now_ms(),
            preview=_preview(snapshot),
            snapshot=snapshot,
        )
        self._sessions = [s for s in self._sessions if s.session_id != entry.session_id]
        self._sessions.insert(0, entry)
        del self._sessions[self._limit :]
        self._save()
        return entry

    def clear(self) -> None:
        self._sessions = []
        self._save()

    def _load(self) -> list[ArchivedSession]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Failed to load chat history from %s: %s", self._path, exc)
            return []
        if not isinstance(data, Mapping) or data.get("version") != _HISTORY_VERSION:
            return []
        try:
            sessions = [
                ArchivedSession.from_dict(item)
                for item in data.get("sessions") or []
                if isinstance(item, Mapping)
            ]
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Chat history %s is malformed; starting fresh: %s", self._path, exc)
            return []
        return sessions[: self._limit]

    def _save(self) -> None:
        payload = {
            "version": _HISTORY_VERSION,
            "sessions": [session.to_dict() for session in self._sessions],
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            LOGGER.warning("Failed to save chat history to %s: %s", self._path, exc)


def _preview(snapshot: ConversationSnapshot) -> str:
    last = snapshot.turns[-1] if snapshot.turns else None
    if last is None:
        return "Empty chat"
    text = " ".join(last.text.split())
    if len(text) <= PREVIEW_CHARS:
        return text
    return text[:PREVIEW_CHARS] + "..."

