"""Tests for turn orchestration in ConversationService."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from conftest import (
    FailingLanguageModel,
    ScriptedLanguageModel,
    always_autonomous_step_factory,
    assistant_with_call,
    text_step,
    tool_step,
)

from toolgate.config import AgentSettings
from toolgate.core.stream import parse_sse_frames
from toolgate.errors import ConversationInconsistentError
from toolgate.models.conversation import ChatRequest
from toolgate.models.events import ErrorEvent, FinishEvent, MessagesEvent, TextDeltaEvent, ToolStateDeltaEvent
from toolgate.models.messages import CANCELLATION_MARKER, Message, unresolved_tool_invocations
from toolgate.services.conversation import ConversationService, ScheduledTaskRunner


@pytest.fixture
def make_service(registry, store, sessions, tool_services, settings):
    def factory(model, **overrides) -> ConversationService:
        return ConversationService(
            model=model,
            registry=registry,
            store=store,
            sessions=sessions,
            services=tool_services,
            settings=overrides.get("settings", settings),
        )

    return factory


def _finish(events) -> FinishEvent:
    assert isinstance(events[-1], FinishEvent)
    return events[-1]


class TestTurnLifecycle:
    """Tests for a full turn: load, resolve, loop, persist."""

    def test_simple_turn_persists_history(self, make_service, store):
        """Test that a completed turn is stored and announced with messages then finish."""
        service = make_service(ScriptedLanguageModel([text_step("Hello!")]))

        events = asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_1", message="hi")))

        assert [type(e) for e in events] == [TextDeltaEvent, MessagesEvent, FinishEvent]
        assert _finish(events).status == "done"
        assert _finish(events).steps == 1
        stored = asyncio.run(store.load("conv_1"))
        assert [m.role for m in stored] == ["user", "assistant"]
        assert stored[1].text == "Hello!"

    def test_new_conversation_gets_generated_id(self, make_service, store):
        """Test that a request without conversation id starts a new conversation."""
        service = make_service(ScriptedLanguageModel([text_step("Hi")]))

        events = asyncio.run(service.run_turn(ChatRequest(message="hello")))

        conversation_id = _finish(events).conversation_id
        assert conversation_id
        assert len(asyncio.run(store.load(conversation_id))) == 2

    def test_pause_then_approve(self, make_service, store):
        """Test the approval round trip: pause on a confirmed call, then continue after YES."""
        model = ScriptedLanguageModel(
            [tool_step(("call_w", "getWeatherInformation", {"city": "Paris"})), text_step("It's sunny in Paris.")]
        )
        service = make_service(model)

        first = asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_w", message="weather in Paris?")))
        assert _finish(first).status == "tool-pending"
        stored = asyncio.run(store.load("conv_w"))
        assert stored[-1].parts[-1].state == "input-available"

        second = asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_w", approvals={"call_w": "YES"})))

        assert _finish(second).status == "done"
        deltas = [e for e in second if isinstance(e, ToolStateDeltaEvent)]
        assert deltas[0].tool_call_id == "call_w"
        assert deltas[0].output == "The weather in Paris is sunny"
        stored = asyncio.run(store.load("conv_w"))
        assert unresolved_tool_invocations(stored) == []
        assert stored[-1].text == "It's sunny in Paris."

    def test_rejection_writes_marker(self, make_service, store):
        """Test that NO resolves the pending call to the cancellation marker."""
        model = ScriptedLanguageModel(
            [tool_step(("call_w", "getWeatherInformation", {"city": "Paris"})), text_step("Okay, I won't.")]
        )
        service = make_service(model)
        asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_r", message="weather?")))

        asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_r", approvals={"call_w": "NO"})))

        stored = asyncio.run(store.load("conv_r"))
        call = next(p for m in stored for p in m.tool_invocations())
        assert call.output == CANCELLATION_MARKER

    def test_pending_without_decision_does_not_call_model(self, make_service, store):
        """Test that a request without a decision for the pending call stays tool-pending."""
        model = ScriptedLanguageModel(
            [
                tool_step(
                    ("call_t", "getLocalTime", {"location": "UTC"}),
                    ("call_w", "getWeatherInformation", {"city": "Paris"}),
                )
            ]
        )
        service = make_service(model)
        asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_p", message="time and weather?")))

        # call_t is already resolved, so this decision is a replay and is ignored
        events = asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_p", approvals={"call_t": "YES"})))

        assert _finish(events).status == "tool-pending"
        assert _finish(events).steps == 0
        assert len(model.calls) == 1

    def test_new_message_abandons_pending_call(self, make_service, store):
        """Test that sending a message instead of a decision drops the pending call."""
        model = ScriptedLanguageModel(
            [tool_step(("call_w", "getWeatherInformation", {"city": "Paris"})), text_step("Sure, what else?")]
        )
        service = make_service(model)
        asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_a", message="weather?")))

        events = asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_a", message="actually, never mind")))

        assert _finish(events).status == "done"
        stored = asyncio.run(store.load("conv_a"))
        assert all(p.tool_call_id != "call_w" for m in stored for p in m.tool_invocations())
        assert all(p.tool_call_id != "call_w" for m in model.calls[1] for p in m.tool_invocations())

    def test_transport_failure_persists_nothing(self, make_service, store):
        """Test that a model failure aborts the turn and leaves the store untouched."""
        asyncio.run(store.replace("conv_t", [Message.user_text("earlier")]))
        service = make_service(FailingLanguageModel(partial_text="Partial answer"))

        events = asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_t", message="hello")))

        assert isinstance(events[-2], ErrorEvent)
        assert _finish(events).status == "aborted"
        assert not any(isinstance(e, MessagesEvent) for e in events)
        stored = asyncio.run(store.load("conv_t"))
        assert [m.text for m in stored] == ["earlier"]

    def test_approved_call_is_committed_before_model_failure(self, make_service, store, calendar):
        """Test that an approved call runs once even if the model fails afterwards and the approval is resent."""
        event_input = {"title": "Review", "startTime": "2026-11-02T10:00:00"}
        asyncio.run(
            store.replace(
                "conv_k",
                [Message.user_text("book a review"), assistant_with_call("call_c", "createCalendarEvent", event_input)],
            )
        )

        failed = asyncio.run(
            make_service(FailingLanguageModel()).run_turn(
                ChatRequest(conversation_id="conv_k", approvals={"call_c": "YES"})
            )
        )

        assert _finish(failed).status == "aborted"
        stored = asyncio.run(store.load("conv_k"))
        assert stored[-1].parts[-1].state == "output-available"
        assert len(calendar.events) == 1

        retried = asyncio.run(
            make_service(ScriptedLanguageModel([text_step("Your review is booked.")])).run_turn(
                ChatRequest(conversation_id="conv_k", approvals={"call_c": "YES"})
            )
        )

        assert _finish(retried).status == "done"
        assert [event.title for event in calendar.events] == ["Review"]

    def test_pending_call_survives_failed_message_turn(self, make_service, store):
        """Test that a model failure leaves an earlier persisted pending call untouched."""
        history = [Message.user_text("weather?"), assistant_with_call("call_w", "getWeatherInformation", {"city": "Oslo"})]
        asyncio.run(store.replace("conv_kp", history))

        asyncio.run(make_service(FailingLanguageModel()).run_turn(ChatRequest(conversation_id="conv_kp", message="hm")))

        stored = asyncio.run(store.load("conv_kp"))
        assert stored[-1].parts[-1].state == "input-available"

    def test_step_budget_from_settings(self, make_service):
        """Test that budget exhaustion is reported in the finish event."""
        model = ScriptedLanguageModel(step_factory=always_autonomous_step_factory())
        service = make_service(model, settings=AgentSettings(step_budget=2))

        events = asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_b", message="go")))

        assert _finish(events).status == "step-budget-exhausted"
        assert _finish(events).steps == 2
        assert any(isinstance(e, MessagesEvent) for e in events)


class TestValidationAndFlags:
    """Tests for request validation and inconsistent conversations."""

    def test_message_too_long(self, make_service):
        """Test that over-long messages are rejected before the turn starts."""
        service = make_service(ScriptedLanguageModel(), settings=AgentSettings(max_message_chars=10))

        with pytest.raises(ValueError, match="too long"):
            asyncio.run(service.stream_turn(ChatRequest(message="x" * 11)))

    def test_empty_message(self, make_service):
        """Test that whitespace-only messages are rejected."""
        service = make_service(ScriptedLanguageModel())

        with pytest.raises(ValueError, match="empty"):
            asyncio.run(service.stream_turn(ChatRequest(message="   ")))

    def test_invalid_approval_value(self, make_service):
        """Test that unknown approval values are rejected."""
        service = make_service(ScriptedLanguageModel())

        with pytest.raises(ValueError, match="Invalid approval value"):
            asyncio.run(service.stream_turn(ChatRequest(approvals={"call_1": "maybe"})))

    def test_unknown_decision_flags_conversation(self, make_service, sessions, store):
        """Test that a decision for an unknown call flags the conversation and later turns are refused."""
        service = make_service(ScriptedLanguageModel())
        asyncio.run(store.replace("conv_f", [Message.user_text("hello")]))

        events = asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_f", approvals={"call_zzz": "YES"})))

        assert _finish(events).status == "aborted"
        assert sessions.get_session("conv_f").inconsistent
        with pytest.raises(ConversationInconsistentError):
            asyncio.run(service.stream_turn(ChatRequest(conversation_id="conv_f", message="hi")))

    def test_acknowledge_clears_flag(self, make_service, sessions):
        """Test that operator acknowledgement allows turns again."""
        service = make_service(ScriptedLanguageModel([text_step("Back again")]))
        sessions.get_or_create_session("conv_ack").flag_inconsistent("duplicate tool call id call_1")

        assert service.acknowledge_inconsistency("conv_ack")
        events = asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_ack", message="hi")))

        assert _finish(events).status == "done"

    def test_acknowledge_unknown_conversation(self, make_service):
        """Test that acknowledging an unknown conversation reports False."""
        assert not make_service(ScriptedLanguageModel()).acknowledge_inconsistency("conv_none")


class TestConversationAccess:
    """Tests for reading and deleting conversations."""

    def test_get_and_delete(self, make_service):
        """Test snapshot retrieval and deletion."""
        service = make_service(ScriptedLanguageModel([text_step("Hi")]))
        asyncio.run(service.run_turn(ChatRequest(conversation_id="conv_g", message="hello")))

        snapshot = asyncio.run(service.get_conversation("conv_g"))
        assert snapshot.conversation_id == "conv_g"
        assert not snapshot.inconsistent
        assert len(snapshot.messages) == 2

        assert asyncio.run(service.delete_conversation("conv_g"))
        assert asyncio.run(service.get_conversation("conv_g")) is None
        assert not asyncio.run(service.delete_conversation("conv_g"))


class TestStreaming:
    """Tests for the SSE stream produced by stream_turn."""

    def test_stream_yields_sse_frames_in_order(self, make_service):
        """Test that the byte stream carries every event, finish last."""
        service = make_service(ScriptedLanguageModel([text_step("Hello")]))

        async def collect():
            conversation_id, stream = await service.stream_turn(ChatRequest(conversation_id="conv_s", message="hi"))
            return conversation_id, b"".join([chunk async for chunk in stream]).decode()

        conversation_id, raw = asyncio.run(collect())

        events = parse_sse_frames(raw)
        assert conversation_id == "conv_s"
        assert [e.type for e in events] == ["text-delta", "messages", "finish"]
        assert raw.startswith("event: text-delta\n")

    def test_abandoned_stream_persists_nothing(self, make_service, store):
        """Test that closing the stream early cancels the turn before it is stored."""
        gate = asyncio.Event()

        class SlowModel(ScriptedLanguageModel):
            async def stream_step(self, messages, tools):
                async for event in super().stream_step(messages, tools):
                    yield event
                    await gate.wait()

        service = make_service(SlowModel([text_step("Thinking")]))

        async def abandon():
            _, stream = await service.stream_turn(ChatRequest(conversation_id="conv_c", message="hi"))
            first = await anext(stream)
            await stream.aclose()
            return first

        first = asyncio.run(abandon())

        assert first.startswith(b"event: text-delta")
        assert asyncio.run(store.load("conv_c")) == []


class TestScheduledTaskRunner:
    """Tests for the background scheduled task runner."""

    def test_due_task_runs_as_user_message(self, make_service, schedules, store):
        """Test that a due task is fed back into its conversation."""
        model = ScriptedLanguageModel([text_step("Stretching reminder sent.")])
        service = make_service(model)
        runner = ScheduledTaskRunner(service, schedules)
        asyncio.run(
            schedules.schedule("conv_sched", "delayed", "stretch", time=datetime.now(UTC) - timedelta(seconds=1))
        )

        fired = asyncio.run(runner.run_once())

        assert fired == 1
        stored = asyncio.run(store.load("conv_sched"))
        assert stored[0].text == "Running scheduled task: stretch"
        assert stored[-1].text == "Stretching reminder sent."
        assert schedules.tasks == {}

    def test_future_task_waits(self, make_service, schedules):
        """Test that tasks in the future are not fired."""
        runner = ScheduledTaskRunner(make_service(ScriptedLanguageModel()), schedules)
        asyncio.run(schedules.schedule("conv_later", "delayed", "later", time=datetime.now(UTC) + timedelta(hours=1)))

        assert asyncio.run(runner.run_once()) == 0
        assert len(schedules.tasks) == 1

    def test_refused_task_is_kept_for_retry(self, make_service, schedules, sessions, store):
        """Test that a task for a flagged conversation is not lost and fires after acknowledgement."""
        service = make_service(ScriptedLanguageModel([text_step("Done stretching.")]))
        runner = ScheduledTaskRunner(service, schedules)
        sessions.get_or_create_session("conv_flag").flag_inconsistent("duplicate tool call id call_1")
        asyncio.run(schedules.schedule("conv_flag", "delayed", "stretch", time=datetime.now(UTC) - timedelta(seconds=1)))

        assert asyncio.run(runner.run_once()) == 0
        assert len(schedules.tasks) == 1

        service.acknowledge_inconsistency("conv_flag")

        assert asyncio.run(runner.run_once()) == 1
        assert schedules.tasks == {}
        assert asyncio.run(store.load("conv_flag"))[0].text == "Running scheduled task: stretch"

    def test_aborted_task_is_kept_for_retry(self, make_service, schedules):
        """Test that a task whose turn aborts stays due."""
        runner = ScheduledTaskRunner(make_service(FailingLanguageModel()), schedules)
        asyncio.run(schedules.schedule("conv_down", "delayed", "ping", time=datetime.now(UTC) - timedelta(seconds=1)))

        assert asyncio.run(runner.run_once()) == 0
        assert len(schedules.tasks) == 1

    def test_cron_task_fires_and_rearms(self, make_service, schedules, store):
        """Test that a cron task fires into its conversation and is armed for its next occurrence."""
        runner = ScheduledTaskRunner(make_service(ScriptedLanguageModel([text_step("Checked.")])), schedules)
        task = asyncio.run(schedules.schedule("conv_cron", "cron", "check inbox", cron="*/5 * * * *"))
        first = task.time

        assert asyncio.run(runner.run_once(now=first)) == 1

        assert asyncio.run(store.load("conv_cron"))[0].text == "Running scheduled task: check inbox"
        assert schedules.tasks[task.id].time == first + timedelta(minutes=5)


class GatedLanguageModel(ScriptedLanguageModel):
    """Scripted model that holds every step until its gate opens and tracks overlapping steps."""

    def __init__(self, steps):
        super().__init__(steps)
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    async def stream_step(self, messages, tools):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate.wait()
            async for event in super().stream_step(messages, tools):
                yield event
        finally:
            self.active -= 1


async def _wait_until(predicate) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout=1)


class TestConcurrency:
    """Tests for one-turn-at-a-time per conversation."""

    def test_same_conversation_turns_are_serialised(self, make_service, store):
        """Test that a second turn waits for the first and sees its persisted history."""
        model = GatedLanguageModel([text_step("Reply one"), text_step("Reply two")])
        service = make_service(model)

        async def go():
            model.gate = asyncio.Event()
            first = asyncio.create_task(service.run_turn(ChatRequest(conversation_id="conv_x", message="one")))
            second = asyncio.create_task(service.run_turn(ChatRequest(conversation_id="conv_x", message="two")))
            await _wait_until(lambda: model.active == 1)
            for _ in range(10):
                await asyncio.sleep(0)
            assert model.active == 1
            model.gate.set()
            return await asyncio.gather(first, second)

        first_events, second_events = asyncio.run(go())

        assert _finish(first_events).status == "done"
        assert _finish(second_events).status == "done"
        assert model.max_active == 1
        assert [m.text for m in model.calls[1]] == ["one", "Reply one", "two"]
        assert [m.text for m in asyncio.run(store.load("conv_x"))] == ["one", "Reply one", "two", "Reply two"]

    def test_distinct_conversations_run_in_parallel(self, make_service, store):
        """Test that turns of different conversations are in flight at the same time."""
        model = GatedLanguageModel([text_step("Hi A"), text_step("Hi B")])
        service = make_service(model)

        async def go():
            model.gate = asyncio.Event()
            turns = asyncio.gather(
                service.run_turn(ChatRequest(conversation_id="conv_a1", message="a")),
                service.run_turn(ChatRequest(conversation_id="conv_b1", message="b")),
            )
            await _wait_until(lambda: model.active == 2)
            model.gate.set()
            return await turns

        results = asyncio.run(go())

        assert [_finish(events).status for events in results] == ["done", "done"]
        assert model.max_active == 2
        assert len(asyncio.run(store.load("conv_a1"))) == 2
        assert len(asyncio.run(store.load("conv_b1"))) == 2
