"""Tests for :mod:`kalai.ai.orchestration.coordinator`."""

from __future__ import annotations

import asyncio

import pytest

from kalai.ai.errors import (
    AuthError,
    ContextOverflowError,
    NetworkError,
    RateLimitError,
    RequestCancelledError,
    RequestManagementTimeoutError,
)
from kalai.ai.orchestration import RequestCoordinator, RequestState, TimeoutBudgets
from kalai.conversation.assembler import AssemblerConfig, ContextAssembler, FileContext
from kalai.conversation.models import Role
from kalai.conversation.store import ConversationStore
from kalai.events import EventBus, RequestStateChanged
from kalai.services import telemetry
from tests.helpers import Delayed, ScriptedClient

FAST = TimeoutBudgets(ui=2.0, queue=1.5, net=1.0)


def _coordinator(
    client: ScriptedClient,
    store: ConversationStore | None = None,
    **kwargs,
) -> RequestCoordinator:
    kwargs.setdefault("model", "primary")
    kwargs.setdefault("budgets", FAST)
    kwargs.setdefault("retry_min_seconds", 0)
    kwargs.setdefault("retry_max_seconds", 0)
    return RequestCoordinator(client, store or ConversationStore(), **kwargs)


def _texts(store: ConversationStore) -> list[tuple[str, str]]:
    return [(turn.role.value, turn.text) for turn in store.snapshot().turns[1:]]


class TestSuccessfulExchange:
    """A successful request appends the user and assistant turns together."""

    @pytest.mark.asyncio
    async def test_send_appends_user_and_assistant_turns(self) -> None:
        store = ConversationStore()
        coordinator = _coordinator(ScriptedClient("Use reversed()."), store)

        reply = await coordinator.send("How do I reverse a list?")

        assert reply.succeeded
        assert reply.state is RequestState.SUCCEEDED
        assert reply.text == "Use reversed()."
        assert reply.usage is not None and reply.usage.total_tokens == 15
        assert _texts(store) == [("user", "How do I reverse a list?"), ("assistant", "Use reversed().")]
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_turn_ids_derive_from_envelope_id(self) -> None:
        store = ConversationStore()
        coordinator = _coordinator(ScriptedClient("answer"), store)

        handle = coordinator.submit("question")
        await handle.result()

        assert f"{handle.id}:user" in store
        assert f"{handle.id}:assistant" in store
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_payload_ends_with_instruction_and_file_context(self) -> None:
        client = ScriptedClient("done")
        coordinator = _coordinator(client)

        await coordinator.send(
            "Explain this",
            file_context=FileContext(path="src/app.py", content="print('hi')", language="python"),
        )

        last = client.calls[0]["messages"][-1]
        assert last["role"] == "user"
        assert last["content"].startswith("Context for python file src/app.py:")
        assert last["content"].endswith("Explain this")
        assert client.calls[0]["model"] == "primary"
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_context_is_assembled_when_the_request_becomes_active(self) -> None:
        client = ScriptedClient("first answer", "second answer")
        coordinator = _coordinator(client)

        first = coordinator.submit("first question")
        second = coordinator.submit("second question")
        await second.result()

        assert (await first.result()).succeeded
        contents = [message["content"] for message in client.calls[1]["messages"]]
        assert "first question" in contents
        assert "first answer" in contents
        await coordinator.aclose()


class TestOrdering:
    """Requests are processed strictly FIFO, one at a time."""

    @pytest.mark.asyncio
    async def test_turns_are_appended_in_issue_order(self) -> None:
        store = ConversationStore()
        client = ScriptedClient(Delayed(0.1, "slow"), "fast", Delayed(0.02, "medium"))
        coordinator = _coordinator(client, store)

        handles = [coordinator.submit(text) for text in ("one", "two", "three")]
        await asyncio.gather(*(handle.result() for handle in handles))

        assert _texts(store) == [
            ("user", "one"),
            ("assistant", "slow"),
            ("user", "two"),
            ("assistant", "fast"),
            ("user", "three"),
            ("assistant", "medium"),
        ]
        assert client.max_in_flight == 1
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_pending_lists_queued_envelopes(self) -> None:
        client = ScriptedClient()
        gate = client.gate(0)
        coordinator = _coordinator(client)

        first = coordinator.submit("one")
        second = coordinator.submit("two")
        await client.wait_for_calls(1)

        assert [envelope.id for envelope in coordinator.pending()] == [first.id, second.id]
        assert coordinator.active is first.envelope
        assert second.state is RequestState.QUEUED

        gate.set()
        await second.result()
        assert coordinator.pending() == ()
        await coordinator.aclose()


class TestCancellation:
    """Cancelled requests reach CANCELLED and never touch the store."""

    @pytest.mark.asyncio
    async def test_cancel_queued_request(self) -> None:
        store = ConversationStore()
        client = ScriptedClient("first", "never")
        gate = client.gate(0)
        coordinator = _coordinator(client, store)

        first = coordinator.submit("one")
        second = coordinator.submit("two")
        await client.wait_for_calls(1)

        assert second.cancel() is True
        gate.set()
        reply = await second.result()

        assert reply.state is RequestState.CANCELLED
        assert isinstance(reply.error, RequestCancelledError)
        assert (await first.result()).succeeded
        assert len(client.calls) == 1
        assert _texts(store) == [("user", "one"), ("assistant", "first")]
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_cancel_active_request_never_appends(self) -> None:
        store = ConversationStore()
        client = ScriptedClient("late answer")
        client.gate(0)
        coordinator = _coordinator(client, store)

        handle = coordinator.submit("question")
        await client.wait_for_calls(1)
        assert coordinator.cancel(handle.id) is True

        reply = await handle.result()
        await asyncio.sleep(0.01)

        assert reply.state is RequestState.CANCELLED
        assert reply.is_fallback
        assert _texts(store) == []
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_cancel_finished_request_returns_false(self) -> None:
        coordinator = _coordinator(ScriptedClient("ok"))
        handle = coordinator.submit("question")
        await handle.result()

        assert coordinator.cancel(handle.id) is False
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_aclose_cancels_outstanding_requests(self) -> None:
        client = ScriptedClient()
        client.gate(0)
        coordinator = _coordinator(client)

        first = coordinator.submit("one")
        second = coordinator.submit("two")
        await client.wait_for_calls(1)
        await coordinator.aclose()

        assert first.state is RequestState.CANCELLED
        assert second.state is RequestState.CANCELLED


class TestTimeouts:
    """The three nested budgets."""

    @pytest.mark.asyncio
    async def test_ui_budget_returns_fallback_and_store_updates_later(self) -> None:
        store = ConversationStore()
        client = ScriptedClient("first answer", "second answer")
        gate = client.gate(0)
        coordinator = _coordinator(client, store)

        coordinator.submit("first question")
        await client.wait_for_calls(1)
        handle = coordinator.submit("second question")

        reply = await handle.reply(timeout=0.1)

        assert reply.is_fallback
        assert reply.state is RequestState.QUEUED
        assert "Still Working" in reply.text
        assert ("assistant", "second answer") not in _texts(store)

        gate.set()
        final = await handle.result()

        assert final.succeeded
        assert _texts(store)[-2:] == [("user", "second question"), ("assistant", "second answer")]
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_net_timeout_retries_on_fallback_model(self) -> None:
        client = ScriptedClient(Delayed(1.0, "too late"), "backup answer")
        coordinator = _coordinator(
            client,
            fallback_models=("backup",),
            budgets=TimeoutBudgets(ui=2.0, queue=1.0, net=0.05),
        )

        reply = await coordinator.send("question")

        assert reply.succeeded
        assert reply.text == "backup answer"
        assert client.models() == ["primary", "backup"]
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_queue_budget_times_out_request(self) -> None:
        store = ConversationStore()
        client = ScriptedClient(default=Delayed(0.04, NetworkError()))
        coordinator = _coordinator(
            client,
            store,
            max_attempts=50,
            budgets=TimeoutBudgets(ui=1.0, queue=0.15, net=0.1),
        )

        reply = await coordinator.submit("question").result()

        assert reply.state is RequestState.TIMED_OUT
        assert isinstance(reply.error, RequestManagementTimeoutError)
        assert reply.error.timeout == pytest.approx(0.15)
        assert _texts(store) == []
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_queue_budget_counts_time_spent_waiting(self) -> None:
        store = ConversationStore()
        client = ScriptedClient(Delayed(0.3, "first"), Delayed(0.3, "second"), Delayed(0.3, "third"))
        coordinator = _coordinator(client, store)
        tight = TimeoutBudgets(ui=1.0, queue=0.4, net=0.35)

        first = coordinator.submit("one", budgets=tight)
        second = coordinator.submit("two")
        third = coordinator.submit("three", budgets=tight)

        reply = await third.result()

        assert reply.state is RequestState.TIMED_OUT
        assert isinstance(reply.error, RequestManagementTimeoutError)
        assert reply.error.error_code == "request_management_timeout"
        assert not second.done()
        assert (await first.result()).succeeded
        assert (await second.result()).succeeded
        assert len(client.calls) == 2
        assert ("user", "three") not in _texts(store)
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_active_request_gets_only_the_rest_of_its_queue_budget(self) -> None:
        client = ScriptedClient(Delayed(0.3, "first"), Delayed(0.3, "second"))
        coordinator = _coordinator(client)
        tight = TimeoutBudgets(ui=1.0, queue=0.4, net=0.35)
        loop = asyncio.get_running_loop()

        started = loop.time()
        first = coordinator.submit("one", budgets=tight)
        second = coordinator.submit("two", budgets=tight)
        reply = await second.result()

        assert (await first.result()).succeeded
        assert reply.state is RequestState.TIMED_OUT
        assert isinstance(reply.error, RequestManagementTimeoutError)
        assert len(client.calls) == 2
        assert loop.time() - started < 0.55
        await coordinator.aclose()


class TestFailures:
    """Retryable errors walk the model chain; terminal errors stop at once."""

    @pytest.mark.asyncio
    async def test_network_error_retries_with_next_model(self) -> None:
        client = ScriptedClient(NetworkError(), "from backup")
        coordinator = _coordinator(client, fallback_models=("backup", "last"))

        reply = await coordinator.send("question")

        assert reply.succeeded
        assert reply.model == "backup"
        assert client.models() == ["primary", "backup"]
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_last_model_is_reused_when_chain_is_exhausted(self) -> None:
        client = ScriptedClient(NetworkError(), NetworkError(), "third")
        coordinator = _coordinator(client, fallback_models=("backup",), max_attempts=3)

        reply = await coordinator.send("question")

        assert reply.succeeded
        assert client.models() == ["primary", "backup", "backup"]
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_retries_exhausted_fail_with_last_error(self) -> None:
        store = ConversationStore()
        client = ScriptedClient(default=NetworkError(message="boom"))
        coordinator = _coordinator(client, store, max_attempts=3)

        reply = await coordinator.send("question")

        assert reply.state is RequestState.FAILED
        assert isinstance(reply.error, NetworkError)
        assert "connectivity issues" in reply.text
        assert len(client.calls) == 3
        assert _texts(store) == []
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_auth_error_is_terminal(self) -> None:
        client = ScriptedClient(AuthError(), "unused")
        coordinator = _coordinator(client, fallback_models=("backup",))

        reply = await coordinator.send("question")

        assert reply.state is RequestState.FAILED
        assert isinstance(reply.error, AuthError)
        assert "Authentication Failed" in reply.text
        assert len(client.calls) == 1
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_rate_limit_is_terminal(self) -> None:
        client = ScriptedClient(RateLimitError(retry_after=30))
        coordinator = _coordinator(client)

        reply = await coordinator.send("question")

        assert reply.state is RequestState.FAILED
        assert "Rate Limit" in reply.text
        assert "30 second" in reply.text
        assert len(client.calls) == 1
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_unknown_exception_is_mapped_and_retried(self) -> None:
        client = ScriptedClient(RuntimeError("socket closed"), "recovered")
        coordinator = _coordinator(client)

        reply = await coordinator.send("question")

        assert reply.succeeded
        assert len(client.calls) == 2
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_instruction_overflow_fails_without_calling_provider(self) -> None:
        client = ScriptedClient()
        assembler = ContextAssembler(AssemblerConfig(model_max_tokens=100, reserved_response_tokens=50))
        coordinator = _coordinator(client, assembler=assembler)

        handle = coordinator.submit("x" * 400)

        assert handle.done()
        reply = await handle.reply()
        assert reply.state is RequestState.FAILED
        assert isinstance(reply.error, ContextOverflowError)
        assert reply.error.ceiling == 50
        assert "Token Limit" in reply.text
        assert client.calls == []
        await coordinator.aclose()

    def test_max_attempts_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            RequestCoordinator(ScriptedClient(), ConversationStore(), model="m", max_attempts=0)


class TestStateReporting:
    """State transitions are visible on the bus and in telemetry."""

    @pytest.mark.asyncio
    async def test_bus_receives_every_transition(self) -> None:
        bus = EventBus()
        seen: list[RequestStateChanged] = []
        bus.subscribe(RequestStateChanged, seen.append)
        coordinator = _coordinator(ScriptedClient("ok"), event_bus=bus)

        handle = coordinator.submit("question")
        await handle.result()

        states = [event.state for event in seen if event.envelope_id == handle.id]
        assert states[0] == "queued"
        assert "sending" in states
        assert states[-1] == "succeeded"
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_telemetry_records_usage(self, telemetry_sink: telemetry.InMemoryTelemetrySink) -> None:
        coordinator = _coordinator(ScriptedClient("ok"))

        await coordinator.send("question")

        usage = telemetry_sink.named("request.usage")
        assert len(usage) == 1
        assert usage[0].payload["prompt_tokens"] == 10
        assert usage[0].payload["model"] == "primary"
        assert telemetry_sink.named("request.state")[-1].payload["state"] == "succeeded"
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_error_code_reported_on_failure(self) -> None:
        bus = EventBus()
        seen: list[RequestStateChanged] = []
        bus.subscribe(RequestStateChanged, seen.append)
        coordinator = _coordinator(ScriptedClient(AuthError()), event_bus=bus)

        await coordinator.send("question")

        assert seen[-1].state == "failed"
        assert seen[-1].error_code == "auth"
        await coordinator.aclose()


class TestReplyPayload:
    @pytest.mark.asyncio
    async def test_to_dict_includes_usage_and_error(self) -> None:
        coordinator = _coordinator(ScriptedClient("ok", AuthError()))

        ok = await coordinator.send("one")
        failed = await coordinator.send("two")

        assert ok.to_dict()["usage"] == {"prompt_tokens": 10, "completion_tokens": 5}
        assert failed.to_dict()["error"]["error"] == "auth"
        assert failed.to_dict()["is_fallback"] is True
        await coordinator.aclose()

    @pytest.mark.asyncio
    async def test_roles_of_appended_turns(self) -> None:
        store = ConversationStore()
        coordinator = _coordinator(ScriptedClient("ok"), store)

        await coordinator.send("question")

        roles = [turn.role for turn in store.snapshot().turns]
        assert roles == [Role.ASSISTANT, Role.USER, Role.ASSISTANT]
        await coordinator.aclose()
