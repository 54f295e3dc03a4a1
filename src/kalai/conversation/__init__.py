"""Conversation state: turns, the durable store and context assembly."""

from .assembler import AssemblerConfig, BoundedContext, ContextAssembler, FileContext
from .history import ArchivedSession, ChatHistoryArchive
from .models import ConversationSnapshot, Role, Turn
from .persistence import ConversationPersistence
from .store import ConversationStore

__all__ = [
    "AssemblerConfig",
    "BoundedContext",
    "ContextAssembler",
    "FileContext",
    "ArchivedSession",
    "ChatHistoryArchive",
    "ConversationSnapshot",
    "Role",
    "Turn",
    "ConversationPersistence",
    "ConversationStore",
]
