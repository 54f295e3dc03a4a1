"""Replies shown to the user when no model answer is available."""

from __future__ import annotations

from ..errors import (
    AssistantError,
    AuthError,
    ContextOverflowError,
    RateLimitError,
    RequestCancelledError,
    RequestManagementTimeoutError,
    RequestTimeoutError,
)

_RATE_LIMIT_REPLY = """⚠️ **Rate Limit Reached**

The AI service is currently rate-limited. This is a temporary issue that will resolve automatically.

**What you can do:**
- Wait a few minutes and try again
- Consider using a different model in settings"""

_CONTEXT_REPLY = """⚠️ **Token Limit Exceeded**

Your request contains too much text for the AI model to process at once.

**What you can do:**
- Try breaking your request into smaller parts
- Ask about specific files rather than the entire codebase"""

_AUTH_REPLY = """⚠️ **Authentication Failed**

The AI service rejected the configured API key.

**What you can do:**
- Set a valid key in the `KALAI_API_KEY` environment variable
- Check that the endpoint matches the provider that issued the key"""

_PENDING_REPLY = """⏳ **Still Working**

The AI service is taking longer than usual to answer "{instruction}".

The request is still running; the reply will be added to the conversation as soon as it arrives."""

_TIMEOUT_REPLY = """⚠️ **Request Timed Out**

The AI service did not answer in time, including retries on fallback models.

**What you can do:**
- Send the message again
- Pick a faster model in settings"""

_GENERIC_REPLY = """I understand you're asking: "{instruction}"

I'm currently experiencing connectivity issues with the AI service.

**What you can do:**
- Check your network connection and the configured endpoint
- Try again in a moment{detail}"""

_PREVIEW_CHARS = 80


def fallback_message(error: AssistantError | None, instruction: str) -> str:
    """Return the reply text to show instead of a model answer.

    ``error`` is ``None`` when the caller stopped waiting while the request
    itself is still in flight.
    """

    preview = _preview(instruction)
    if error is None:
        return _PENDING_REPLY.format(instruction=preview)
    if isinstance(error, RateLimitError):
        if error.retry_after:
            return f"{_RATE_LIMIT_REPLY}\n\nRetry after about {int(error.retry_after)} second(s)."
        return _RATE_LIMIT_REPLY
    if isinstance(error, ContextOverflowError):
        return _CONTEXT_REPLY
    if isinstance(error, AuthError):
        return _AUTH_REPLY
    if isinstance(error, (RequestTimeoutError, RequestManagementTimeoutError)):
        return _TIMEOUT_REPLY
    if isinstance(error, RequestCancelledError):
        return "Request cancelled."
    detail = f"\n\n_Details: {error.message}_" if error.message else ""
    return _GENERIC_REPLY.format(instruction=preview, detail=detail)


def _preview(instruction: str) -> str:
    text = " ".join(instruction.split())
    if len(text) <= _PREVIEW_CHARS:
        return text
    return text[:_PREVIEW_CHARS] + "..."


__all__ = ["fallback_message"]
