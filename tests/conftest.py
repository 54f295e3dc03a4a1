"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Iterator

import pytest

from kalai.conversation.models import ConversationSnapshot, Role, Turn
from kalai.services import telemetry


@pytest.fixture(autouse=True)
def _reset_telemetry() -> Iterator[None]:
    telemetry.reset()
    yield
    telemetry.reset()


@pytest.fixture
def telemetry_sink() -> telemetry.InMemoryTelemetrySink:
    sink = telemetry.InMemoryTelemetrySink()
    telemetry.add_sink(sink)
    return sink


@pytest.fixture
def sample_snapshot() -> ConversationSnapshot:
    turns = (
        Turn.create(Role.ASSISTANT, "Hello!", turn_id="greeting"),
        Turn.create(Role.USER, "How do I reverse a list?", turn_id="u1"),
        Turn.create(Role.ASSISTANT, "Use reversed() or slicing.", turn_id="a1"),
    )
    return ConversationSnapshot(session_id="session-test", turns=turns, last_update=1)


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> None:
    log_dir = tmp_path_factory.mktemp("logs")
    monkeypatch.setenv("KALAI_LOG_DIR", str(log_dir))
    for name in ("KALAI_API_KEY", "KALAI_MODEL", "KALAI_DEBUG", "KALAI_DEBUG_LOGGING", "KALAI_FALLBACK_MODELS"):
        monkeypatch.delenv(name, raising=False)
