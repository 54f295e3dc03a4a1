"""Durable storage for conversation snapshots."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from .models import ConversationSnapshot

__all__ = ["ConversationPersistence", "default_conversation_path"]

LOGGER = logging.getLogger(__name__)
_STATE_DIR = Path.home() / ".kalai"
_CONVERSATION_FILENAME = "conversation.json"
_CONVERSATION_VERSION = 1


def default_conversation_path() -> Path:
    return _STATE_DIR / _CONVERSATION_FILENAME


class ConversationPersistence:
    """JSON file adapter for :class:`ConversationSnapshot`."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path).expanduser() if path else default_conversation_path()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> ConversationSnapshot | None:
        """Return the last persisted snapshot or ``None`` when nothing usable exists."""

        payload = self._read_payload()
        if not payload:
            return None
        version = payload.get("version")
        if version != _CONVERSATION_VERSION:
            LOGGER.warning(
                "Conversation file %s has unsupported version %r; starting fresh", self._path, version
            )
            return None
        try:
            return ConversationSnapshot.from_dict(payload)
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Conversation file %s is malformed: %s", self._path, exc)
            return None

    def save(self, snapshot: ConversationSnapshot) -> Path:
        payload = {"version": _CONVERSATION_VERSION, **snapshot.to_dict()}
        body = json.dumps(payload, indent=2, ensure_ascii=False)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        return self._path

    def _read_payload(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            LOGGER.warning("Conversation file %s is unreadable; starting fresh: %s", self._path, exc)
            return {}
        if not isinstance(data, Mapping):
            LOGGER.warning("Conversation file %s does not contain an object", self._path)
            return {}
        return dict(data)
