"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, cast

import httpx
import openai
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam

from .errors import (
    AssistantError,
    AuthError,
    ContextOverflowError,
    MalformedResponseError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
)

LOGGER = logging.getLogger(__name__)
_CONTEXT_OVERFLOW_HINTS = ("context_length_exceeded", "maximum context length", "too many tokens")


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 30.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(frozen=True, slots=True)
class Usage:
    """Token accounting reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True, slots=True)
class Completion:
    """Normalized, non-streamed chat completion."""

    content: str
    model: str
    usage: Usage
    finish_reason: str | None = None


class AIClient:
    """Async client issuing single chat completions with a typed error surface.

    Retries are disabled at this layer; the request coordinator
    owns retry, fallback-model selection and timeouts.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def complete(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = 0.7,
        metadata: Mapping[str, str] | None = None,
    ) -> Completion:
        """Send ``messages`` and return the assistant's reply.

        Raises:
            AuthError, RateLimitError, NetworkError, RequestTimeoutError,
            MalformedResponseError, ContextOverflowError.
        """

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            model=model or self._settings.model,
            max_tokens=max_tokens,
            temperature=temperature,
            metadata=metadata,
        )
        LOGGER.debug(
            "Starting chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        try:
            response = await self._client.chat.completions.create(**payload)
        except AssistantError:
            raise
        except Exception as exc:
            raise translate_provider_error(exc) from exc
        return self._normalize_completion(response, payload["model"])

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            await close()

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key or "missing-api-key",
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:  # pragma: no cover
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: List[ChatCompletionMessageParam],
        model: str,
        max_tokens: int | None,
        temperature: float | None,
        metadata: Mapping[str, str] | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": model, "messages": list(messages)}
        merged_metadata = self._merge_metadata(metadata)
        if merged_metadata:
            payload["metadata"] = merged_metadata
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return payload

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    def _normalize_completion(self, response: Any, requested_model: str) -> Completion:
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise MalformedResponseError(details={"reason": "no choices"})
        first = choices[0]
        message = getattr(first, "message", None)
        content = getattr(message, "content", None)
        if not isinstance(content, str) or not content.strip():
            raise MalformedResponseError(details={"reason": "empty content"})
        raw_usage = getattr(response, "usage", None)
        usage = Usage(
            prompt_tokens=int(getattr(raw_usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(raw_usage, "completion_tokens", 0) or 0),
        )
        return Completion(
            content=content,
            model=str(getattr(response, "model", None) or requested_model),
            usage=usage,
            finish_reason=getattr(first, "finish_reason", None),
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        except (TypeError, ValueError):  # pragma: no cover
            serialized = repr(payload)
        LOGGER.debug("Chat payload:\n%s", serialized)


def translate_provider_error(exc: BaseException) -> AssistantError:
    """Map SDK/transport exceptions onto the assistant's error taxonomy."""

    if isinstance(exc, AssistantError):
        return exc
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthError(details={"status": getattr(exc, "status_code", None)})
    if isinstance(exc, openai.RateLimitError):
        return RateLimitError(retry_after=_retry_after(exc), details={"status": 429})
    if isinstance(exc, (openai.APITimeoutError, httpx.TimeoutException)):
        return RequestTimeoutError(details={"reason": str(exc)})
    if isinstance(exc, (openai.APIConnectionError, httpx.TransportError)):
        return NetworkError(details={"reason": str(exc)})
    if isinstance(exc, openai.APIStatusError):
        status = int(getattr(exc, "status_code", 0) or 0)
        text = str(exc).lower()
        if status == 400 and any(hint in text for hint in _CONTEXT_OVERFLOW_HINTS):
            return ContextOverflowError(message="The request exceeded the model's context window")
        if status >= 500:
            return NetworkError(message=f"AI service error ({status})", details={"status": status})
        return MalformedResponseError(message=f"API Error ({status})", details={"status": status})
    if isinstance(exc, openai.APIResponseValidationError):
        return MalformedResponseError(details={"reason": str(exc)})
    LOGGER.debug("Unclassified provider error %s", type(exc).__name__, exc_info=exc)
    return NetworkError(message=f"Failed to get AI response: {exc}")


def _retry_after(exc: BaseException) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


__all__ = ["AIClient", "ClientSettings", "Completion", "Usage", "translate_provider_error"]
