"""Context assembly: conversation + file context + instruction -> bounded payload.

The assembler is stateless. It reads an immutable conversation snapshot and
returns the message list for one request whose estimated size never exceeds
``model_max_tokens - reserved_response_tokens``.

Trimming happens in phases, stopping as soon as the payload fits:

1. drop the oldest non-pinned turns outside the recent-exchange window;
2. shrink the file context around a truncation marker (or drop it);
3. drop the remaining protected and pinned turns, oldest first;
4. drop the system prompt;
5. shorten the most recent user turn, keeping its head and tail.

The instruction and the most recent user turn are never removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from ..ai.errors import ContextOverflowError
from ..ai.utils.tokens import CHARS_PER_TOKEN, TRUNCATION_MARKER, estimate_tokens, truncate_to_tokens
from .models import ConversationSnapshot, Role, Turn

LOGGER = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are kalai, an AI programming assistant. Follow these guidelines:\n"
    "1. Provide clear, concise, and practical solutions\n"
    "2. Include only necessary code without explanations unless asked\n"
    "3. Follow the current code style and conventions\n"
    "4. Focus on production-quality, maintainable code\n"
)

__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "AssemblerConfig",
    "FileContext",
    "BoundedContext",
    "ContextAssembler",
]


@dataclass(slots=True)
class AssemblerConfig:
    """Token limits applied by :class:`ContextAssembler`."""

    model_max_tokens: int = 8_192
    reserved_response_tokens: int = 1_024
    preserve_recent_exchanges: int = 2
    system_prompt: str | None = DEFAULT_SYSTEM_PROMPT

    def __post_init__(self) -> None:
        if self.reserved_response_tokens < 0:
            raise ValueError("reserved_response_tokens must be non-negative")
        if self.preserve_recent_exchanges < 0:
            raise ValueError("preserve_recent_exchanges must be non-negative")
        if self.ceiling <= 0:
            raise ValueError("model_max_tokens must exceed reserved_response_tokens")

    @property
    def ceiling(self) -> int:
        return self.model_max_tokens - self.reserved_response_tokens


@dataclass(frozen=True, slots=True)
class FileContext:
    """Source file attached to a request."""

    path: str
    content: str
    language: str = "text"

    def render(self, content: str | None = None) -> str:
        body = self.content if content is None else content
        return f"Context for {self.language} file {self.path}:\n```{self.language}\n{body}\n```\n\n"


@dataclass(frozen=True, slots=True)
class BoundedContext:
    """Result of :meth:`ContextAssembler.assemble`.

    ``messages`` is ready to hand to the provider client. ``included_turns``
    mirrors the history part of ``messages`` (a shortened last user turn shows
    up here with its shortened text).
    """

    messages: tuple[dict[str, str], ...]
    estimated_tokens: int
    ceiling: int
    included_turns: tuple[Turn, ...] = ()
    dropped_turns: tuple[str, ...] = ()
    file_context_truncated: bool = False
    system_prompt_included: bool = True

    def as_payload(self) -> dict[str, Any]:
        return {
            "estimated_tokens": self.estimated_tokens,
            "ceiling": self.ceiling,
            "messages": len(self.messages),
            "dropped_turns": len(self.dropped_turns),
            "file_context_truncated": self.file_context_truncated,
        }


@dataclass(slots=True)
class _Draft:
    system: str | None
    turns: list[Turn]
    file_block: str
    instruction: str
    dropped: list[str] = field(default_factory=list)
    file_truncated: bool = False

    def total(self) -> int:
        return (
            estimate_tokens(self.system or "")
            + sum(estimate_tokens(turn.text) for turn in self.turns)
            + estimate_tokens(self.file_block)
            + estimate_tokens(self.instruction)
        )

    def drop(self, turn: Turn) -> None:
        self.turns.remove(turn)
        self.dropped.append(turn.id)


class ContextAssembler:
    """Builds token-bounded request payloads from conversation snapshots."""

    def __init__(self, config: AssemblerConfig | None = None) -> None:
        self._config = config or AssemblerConfig()

    @property
    def config(self) -> AssemblerConfig:
        return self._config

    @property
    def ceiling(self) -> int:
        return self._config.ceiling

    def assemble(
        self,
        snapshot: ConversationSnapshot,
        instruction: str,
        file_context: FileContext | None = None,
    ) -> BoundedContext:
        """Return the bounded message list for ``instruction``.

        Raises:
            ContextOverflowError: if the instruction alone exceeds the ceiling.
        """

        ceiling = self.ceiling
        instruction_tokens = estimate_tokens(instruction)
        if instruction_tokens > ceiling:
            raise ContextOverflowError(
                details={"instruction_tokens": instruction_tokens, "ceiling": ceiling},
                instruction_tokens=instruction_tokens,
                ceiling=ceiling,
            )

        draft = _Draft(
            system=self._config.system_prompt or None,
            turns=list(snapshot.turns),
            file_block=file_context.render() if file_context is not None else "",
            instruction=instruction,
        )
        last_user = snapshot.last_user_turn
        last_user_id = last_user.id if last_user is not None else None

        if draft.total() > ceiling:
            self._drop_old_turns(draft, ceiling, last_user_id)
        if draft.total() > ceiling and file_context is not None:
            self._truncate_file_context(draft, file_context, ceiling)
        if draft.total() > ceiling:
            self._drop_protected_turns(draft, ceiling, last_user_id)
        if draft.total() > ceiling and draft.system:
            LOGGER.debug("ContextAssembler: dropping system prompt to fit %d tokens", ceiling)
            draft.system = None
        if draft.total() > ceiling and last_user_id is not None:
            self._shorten_last_user_turn(draft, file_context, ceiling, last_user_id)

        bounded = self._finalize(draft, ceiling)
        if bounded.dropped_turns or bounded.file_context_truncated:
            LOGGER.debug(
                "ContextAssembler: trimmed context to %d/%d tokens (dropped=%d, file_truncated=%s)",
                bounded.estimated_tokens,
                ceiling,
                len(bounded.dropped_turns),
                bounded.file_context_truncated,
            )
        return bounded

    # ------------------------------------------------------------------
    # Trimming phases
    # ------------------------------------------------------------------

    def _protected_ids(self, turns: Sequence[Turn], last_user_id: str | None) -> set[str]:
        window = self._config.preserve_recent_exchanges * 2
        protected = {turn.id for turn in turns[-window:]} if window else set()
        if last_user_id is not None:
            protected.add(last_user_id)
        return protected

    def _drop_old_turns(self, draft: _Draft, ceiling: int, last_user_id: str | None) -> None:
        protected = self._protected_ids(draft.turns, last_user_id)
        for turn in list(draft.turns):
            if draft.total() <= ceiling:
                return
            if turn.pinned or turn.id in protected:
                continue
            draft.drop(turn)

    def _truncate_file_context(self, draft: _Draft, file_context: FileContext, ceiling: int) -> None:
        budget = ceiling - (draft.total() - estimate_tokens(draft.file_block))
        content_budget = budget - estimate_tokens(file_context.render(""))
        content = truncate_to_tokens(file_context.content, content_budget) if content_budget > 0 else ""
        draft.file_block = file_context.render(content) if content else ""
        draft.file_truncated = True

    def _drop_protected_turns(self, draft: _Draft, ceiling: int, last_user_id: str | None) -> None:
        for turn in list(draft.turns):
            if draft.total() <= ceiling:
                return
            if turn.id == last_user_id:
                continue
            draft.drop(turn)

    def _shorten_last_user_turn(
        self,
        draft: _Draft,
        file_context: FileContext | None,
        ceiling: int,
        last_user_id: str,
    ) -> None:
        index = next(i for i, turn in enumerate(draft.turns) if turn.id == last_user_id)
        turn = draft.turns[index]
        budget = ceiling - (draft.total() - estimate_tokens(turn.text))
        if budget < estimate_tokens(TRUNCATION_MARKER) and draft.file_block:
            draft.file_block = ""
            draft.file_truncated = True
            if draft.total() <= ceiling:
                return
            budget = ceiling - (draft.total() - estimate_tokens(turn.text))
        text = truncate_to_tokens(turn.text, budget) or _head_to_tokens(turn.text, budget)
        draft.turns[index] = turn.with_text(text)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    def _finalize(self, draft: _Draft, ceiling: int) -> BoundedContext:
        messages: list[dict[str, str]] = []
        if draft.system:
            messages.append({"role": "system", "content": draft.system})
        messages.extend(turn.as_message() for turn in draft.turns)
        messages.append({"role": Role.USER.value, "content": f"{draft.file_block}{draft.instruction}"})
        estimated = sum(estimate_tokens(message["content"]) for message in messages)
        return BoundedContext(
            messages=tuple(messages),
            estimated_tokens=estimated,
            ceiling=ceiling,
            included_turns=tuple(draft.turns),
            dropped_turns=tuple(draft.dropped),
            file_context_truncated=draft.file_truncated,
            system_prompt_included=draft.system is not None,
        )


def _head_to_tokens(text: str, max_tokens: int) -> str:
    keep = int(max(0, max_tokens) * CHARS_PER_TOKEN)
    candidate = text[:keep]
    while candidate and estimate_tokens(candidate) > max_tokens:
        candidate = candidate[: len(candidate) - max(1, len(candidate) // 10)]
    return candidate
