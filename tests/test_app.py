"""Tests for the command-line entry point."""

from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Any

import pytest

from kalai import app
from kalai.ai.errors import AuthError
from kalai.chat.session import AssistantSession, SessionPaths
from kalai.services.settings import Settings, SettingsStore
from tests.helpers import RecordingSurface, ScriptedClient


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda *args, **kwargs: None)


def _session(tmp_path: Path, client: ScriptedClient) -> AssistantSession:
    settings = Settings(
        request_timeout_net=1.0,
        request_timeout_queue=1.5,
        request_timeout_ui=2.0,
        retry_min_seconds=0.0,
        retry_max_seconds=0.0,
        fallback_models=[],
    )
    return AssistantSession.from_settings(
        settings,
        client=client,
        surface=RecordingSurface(),
        paths=SessionPaths(conversation=tmp_path / "conversation.json", history=tmp_path / "history.json"),
    )


class TestCliOverrides:
    def test_overrides_are_coerced(self) -> None:
        overrides = app._coerce_cli_overrides(["max_tokens=128", "fallback_models=a,b"])
        assert overrides == {"max_tokens": 128, "fallback_models": ["a", "b"]}

    def test_invalid_override_exits_with_usage_error(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code = app.main(["--settings", str(tmp_path / "s.json"), "--set", "nonsense"])

        assert code == 2
        assert "Invalid --set override" in capsys.readouterr().err


class TestDumpSettings:
    """``--dump-settings`` prints the effective settings without secrets."""

    def test_dump_redacts_api_key(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("KALAI_API_KEY", "sk-1234567890")
        settings_path = tmp_path / "settings.json"
        SettingsStore(settings_path).save(Settings(model_name="stored-model"))

        code = app.main(["--dump-settings", "--settings", str(settings_path), "--set", "max_tokens=77"])

        assert code == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["settings"]["api_key"] == "sk-1…7890"
        assert payload["settings"]["model_name"] == "stored-model"
        assert payload["settings"]["max_tokens"] == 77
        assert payload["meta"]["path"] == str(settings_path)
        assert payload["meta"]["cli_overrides"] == ["max_tokens"]
        assert "KALAI_API_KEY" in payload["meta"]["environment_variables"]

    def test_load_settings_falls_back_on_errors(self, tmp_path: Path) -> None:
        class _BrokenStore(SettingsStore):
            def load(self, *, overrides: Any = None) -> Settings:
                raise OSError("disk on fire")

        assert app.load_settings(store=_BrokenStore(tmp_path / "s.json")) == Settings()


class TestMain:
    def test_misordered_budgets_are_rejected(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code = app.main(
            [
                "--settings",
                str(tmp_path / "s.json"),
                "--conversation",
                str(tmp_path / "c.json"),
                "--set",
                "request_timeout_ui=1",
            ]
        )

        assert code == 2
        assert "Invalid configuration" in capsys.readouterr().err

    def test_runs_repl_with_built_session(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: list[AssistantSession] = []

        async def _fake_repl(session: AssistantSession, **_kwargs: Any) -> None:
            seen.append(session)
            await session.aclose()

        monkeypatch.setattr(app, "run_repl", _fake_repl)

        code = app.main(
            ["--settings", str(tmp_path / "s.json"), "--conversation", str(tmp_path / "c.json")]
        )

        assert code == 0
        assert len(seen) == 1
        assert seen[0].coordinator.model == Settings().model_name


class TestRepl:
    """The REPL answers chat lines, commands and JSON payloads."""

    @pytest.mark.asyncio
    async def test_chat_line_and_commands(self, tmp_path: Path) -> None:
        session = _session(tmp_path, ScriptedClient("Hi there"))
        stdin = io.StringIO("hello\n\n/state\n/bogus\n/quit\nnever read\n")
        stdout = io.StringIO()

        await app.run_repl(session, stdin=stdin, stdout=stdout)

        output = stdout.getvalue()
        assert output.startswith("Type /help for commands.")
        assert "assistant> Hi there" in output
        assert '"session_id"' in output
        assert "Unknown command /bogus" in output
        assert [turn.text for turn in session.store.snapshot().turns][-2:] == ["hello", "Hi there"]

    @pytest.mark.asyncio
    async def test_json_payloads(self, tmp_path: Path) -> None:
        session = _session(tmp_path, ScriptedClient())
        stdin = io.StringIO('{"type": "get_state"}\n{"type": "nope"}\n')
        stdout = io.StringIO()

        await app.run_repl(session, stdin=stdin, stdout=stdout)

        output = stdout.getvalue()
        assert '"turns"' in output
        assert "! " in output

    @pytest.mark.asyncio
    async def test_new_and_history_commands(self, tmp_path: Path) -> None:
        session = _session(tmp_path, ScriptedClient("answer"))
        stdin = io.StringIO("question\n/new\n/history\n/cancel\n/clear\n")
        stdout = io.StringIO()

        await app.run_repl(session, stdin=stdin, stdout=stdout)

        output = stdout.getvalue()
        assert "Archived " in output
        assert "answer" in output.split("Archived ", 1)[1]
        assert "Cancelled 0 request(s)." in output
        assert "Conversation cleared." in output

    @pytest.mark.asyncio
    async def test_fallback_reply_shows_state(self, tmp_path: Path) -> None:
        session = _session(tmp_path, ScriptedClient(AuthError()))
        stdin = io.StringIO("hello\n")
        stdout = io.StringIO()

        await app.run_repl(session, stdin=stdin, stdout=stdout)

        assert "assistant (failed)> " in stdout.getvalue()
