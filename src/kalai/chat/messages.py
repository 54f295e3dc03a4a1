"""Messages sent by the chat surface, parsed into a closed set of variants."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Union

from jsonschema import Draft7Validator, ValidationError


class MessageType(str, Enum):
    """Discriminator values accepted in the ``type`` field."""

    SEND_MESSAGE = "send_message"
    CANCEL_REQUEST = "cancel_request"
    CLEAR_CONVERSATION = "clear_conversation"
    NEW_CHAT = "new_chat"
    DISMISS_FEEDBACK = "dismiss_feedback"
    CLEAR_FEEDBACK = "clear_feedback"
    CANCEL_PROGRESS = "cancel_progress"
    GET_STATE = "get_state"


class MessageError(ValueError):
    """Raised when a surface payload is not a valid message."""


@dataclass(frozen=True, slots=True)
class AttachedFile:
    path: str
    content: str
    language: str = "text"


@dataclass(frozen=True, slots=True)
class SendMessage:
    text: str
    file: AttachedFile | None = None
    model: str | None = None


@dataclass(frozen=True, slots=True)
class CancelRequest:
    """Cancel one request, or every outstanding request when ``envelope_id`` is ``None``."""

    envelope_id: str | None = None


@dataclass(frozen=True, slots=True)
class ClearConversation:
    pass


@dataclass(frozen=True, slots=True)
class NewChat:
    pass


@dataclass(frozen=True, slots=True)
class DismissFeedback:
    item_id: str


@dataclass(frozen=True, slots=True)
class ClearFeedback:
    pass


@dataclass(frozen=True, slots=True)
class CancelProgress:
    task_id: str


@dataclass(frozen=True, slots=True)
class GetState:
    pass


SurfaceMessage = Union[
    SendMessage,
    CancelRequest,
    ClearConversation,
    NewChat,
    DismissFeedback,
    ClearFeedback,
    CancelProgress,
    GetState,
]

_ID_SCHEMA: Dict[str, Any] = {"type": "string", "minLength": 1}
_FILE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["path", "content"],
    "properties": {
        "path": _ID_SCHEMA,
        "content": {"type": "string"},
        "language": {"type": "string"},
    },
}


def _schema(properties: Dict[str, Any] | None = None, required: tuple[str, ...] = ()) -> Dict[str, Any]:
    return {
        "type": "object",
        "required": ["type", *required],
        "properties": {"type": {"type": "string"}, **(properties or {})},
        "additionalProperties": False,
    }


MESSAGE_SCHEMAS: Dict[MessageType, Dict[str, Any]] = {
    MessageType.SEND_MESSAGE: _schema(
        {
            "text": {"type": "string", "minLength": 1, "pattern": r"\S"},
            "file": {"oneOf": [_FILE_SCHEMA, {"type": "null"}]},
            "model": {"type": ["string", "null"]},
        },
        ("text",),
    ),
    MessageType.CANCEL_REQUEST: _schema({"envelope_id": {"type": ["string", "null"]}}),
    MessageType.CLEAR_CONVERSATION: _schema(),
    MessageType.NEW_CHAT: _schema(),
    MessageType.DISMISS_FEEDBACK: _schema({"item_id": _ID_SCHEMA}, ("item_id",)),
    MessageType.CLEAR_FEEDBACK: _schema(),
    MessageType.CANCEL_PROGRESS: _schema({"task_id": _ID_SCHEMA}, ("task_id",)),
    MessageType.GET_STATE: _schema(),
}
_VALIDATORS: Dict[MessageType, Draft7Validator] = {
    kind: Draft7Validator(schema) for kind, schema in MESSAGE_SCHEMAS.items()
}


def parse_surface_message(payload: Mapping[str, Any] | str | bytes) -> SurfaceMessage:
    """Validate ``payload`` and return the matching message variant.

    Raises:
        MessageError: for malformed JSON, unknown types or schema violations.
    """

    data = _coerce_payload(payload)
    raw_type = data.get("type")
    try:
        kind = MessageType(str(raw_type).strip().lower())
    except ValueError:
        raise MessageError(f"Unknown message type {raw_type!r}") from None
    data["type"] = kind.value
    try:
        _VALIDATORS[kind].validate(data)
    except ValidationError as error:
        raise MessageError(_format_validation_error(error)) from error
    return _build(kind, data)


def message_to_dict(message: SurfaceMessage) -> Dict[str, Any]:
    """Inverse of :func:`parse_surface_message`."""

    if isinstance(message, SendMessage):
        payload: Dict[str, Any] = {"type": MessageType.SEND_MESSAGE.value, "text": message.text}
        if message.file is not None:
            payload["file"] = {
                "path": message.file.path,
                "content": message.file.content,
                "language": message.file.language,
            }
        if message.model is not None:
            payload["model"] = message.model
        return payload
    if isinstance(message, CancelRequest):
        return {"type": MessageType.CANCEL_REQUEST.value, "envelope_id": message.envelope_id}
    if isinstance(message, ClearConversation):
        return {"type": MessageType.CLEAR_CONVERSATION.value}
    if isinstance(message, NewChat):
        return {"type": MessageType.NEW_CHAT.value}
    if isinstance(message, DismissFeedback):
        return {"type": MessageType.DISMISS_FEEDBACK.value, "item_id": message.item_id}
    if isinstance(message, ClearFeedback):
        return {"type": MessageType.CLEAR_FEEDBACK.value}
    if isinstance(message, CancelProgress):
        return {"type": MessageType.CANCEL_PROGRESS.value, "task_id": message.task_id}
    if isinstance(message, GetState):
        return {"type": MessageType.GET_STATE.value}
    raise TypeError(f"Unsupported message {message!r}")


def _build(kind: MessageType, data: Mapping[str, Any]) -> SurfaceMessage:
    if kind is MessageType.SEND_MESSAGE:
        file_payload = data.get("file")
        attached = None
        if isinstance(file_payload, Mapping):
            attached = AttachedFile(
                path=file_payload["path"],
                content=file_payload["content"],
                language=file_payload.get("language") or "text",
            )
        return SendMessage(text=data["text"], file=attached, model=data.get("model"))
    if kind is MessageType.CANCEL_REQUEST:
        return CancelRequest(envelope_id=data.get("envelope_id"))
    if kind is MessageType.CLEAR_CONVERSATION:
        return ClearConversation()
    if kind is MessageType.NEW_CHAT:
        return NewChat()
    if kind is MessageType.DISMISS_FEEDBACK:
        return DismissFeedback(item_id=data["item_id"])
    if kind is MessageType.CLEAR_FEEDBACK:
        return ClearFeedback()
    if kind is MessageType.CANCEL_PROGRESS:
        return CancelProgress(task_id=data["task_id"])
    if kind is MessageType.GET_STATE:
        return GetState()
    raise TypeError(f"Unhandled message type {kind!r}")


def _coerce_payload(payload: Mapping[str, Any] | str | bytes) -> Dict[str, Any]:
    if isinstance(payload, Mapping):
        return dict(payload)
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            raise MessageError("Message payload is empty")
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MessageError(f"Message payload is not valid JSON: {exc.msg}") from exc
        if not isinstance(parsed, Mapping):
            raise MessageError("Message payload must decode to an object")
        return dict(parsed)
    raise MessageError("Message payload must be a mapping or JSON string")


def _format_validation_error(error: ValidationError) -> str:
    path = ".".join(str(part) for part in error.absolute_path)
    if path:
        return f"{path}: {error.message}"
    return error.message


__all__ = [
    "MessageType",
    "MessageError",
    "AttachedFile",
    "SendMessage",
    "CancelRequest",
    "ClearConversation",
    "NewChat",
    "DismissFeedback",
    "ClearFeedback",
    "CancelProgress",
    "GetState",
    "SurfaceMessage",
    "MESSAGE_SCHEMAS",
    "parse_surface_message",
    "message_to_dict",
]
