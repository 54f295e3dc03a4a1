"""Chat-surface messages and the assistant session facade."""

from .messages import (
    AttachedFile,
    CancelProgress,
    CancelRequest,
    ClearConversation,
    ClearFeedback,
    DismissFeedback,
    GetState,
    MessageError,
    MessageType,
    NewChat,
    SendMessage,
    SurfaceMessage,
    message_to_dict,
    parse_surface_message,
)
from .session import AssistantSession, SessionPaths

__all__ = [
    "AssistantSession",
    "AttachedFile",
    "CancelProgress",
    "CancelRequest",
    "ClearConversation",
    "ClearFeedback",
    "DismissFeedback",
    "GetState",
    "MessageError",
    "MessageType",
    "NewChat",
    "SendMessage",
    "SessionPaths",
    "SurfaceMessage",
    "message_to_dict",
    "parse_surface_message",
]
