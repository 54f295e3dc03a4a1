"""Outbound request orchestration: envelopes, budgets and the FIFO coordinator."""

from .coordinator import ChatReply, CompletionClient, RequestCoordinator, RequestHandle
from .envelope import RequestEnvelope, RequestState, TimeoutBudgets
from .fallbacks import fallback_message

__all__ = [
    "ChatReply",
    "CompletionClient",
    "RequestCoordinator",
    "RequestHandle",
    "RequestEnvelope",
    "RequestState",
    "TimeoutBudgets",
    "fallback_message",
]
