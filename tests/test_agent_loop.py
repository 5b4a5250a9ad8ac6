"""
End-to-end tests for the agent loop driven through TurnRunner with a
scripted model.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from pydantic import BaseModel

from coachloop.config import LoopConfig
from coachloop.domain import (
    EventType,
    KnowledgeReason,
    LoopState,
    SessionState,
    StreamEventType,
)
from coachloop.errors import SequenceCollision, SessionBusy, SessionOwnershipError
from coachloop.llm.base import Model
from coachloop.runtime import TurnRunner, Wire
from coachloop.runtime.loop import GENERIC_ERROR_MESSAGE, INCOMPLETE_MESSAGE
from coachloop.storage import InMemorySessionStore
from coachloop.tools import ToolDefinition

from support import (
    WORKOUT_SOURCES,
    BlockingModel,
    CharTokenCounter,
    StaticSelector,
    make_knowledge_registry,
    make_tool_registry,
    reply,
    scripted_model,
    tool_call,
    workout_model,
)

WORKOUT_REQUEST = "give me a 30-minute light workout"


class NoArgs(BaseModel):
    pass


class SlowModel(Model):
    delay: float = 1.0

    async def arun_stream(self, messages, tools=None, response_format=None):
        await asyncio.sleep(self.delay)
        for chunk in reply(tool_call("idle")):
            yield chunk


def _types(events):
    return [e.type for e in events]


# ============================================================================
# Happy path
# ============================================================================


class TestWorkoutTurn:
    @pytest.mark.asyncio
    async def test_log_contents(self, make_runner, store):
        model = workout_model()
        runner = make_runner(model, StaticSelector(WORKOUT_SOURCES))

        result = await runner.run_turn("s1", "alice", WORKOUT_REQUEST)

        assert result.state == LoopState.IDLE
        assert result.iterations == 3
        events = await store.get_events("s1")
        assert [e.sequence for e in events] == list(range(1, 11))
        assert _types(events) == [
            EventType.KNOWLEDGE,
            EventType.KNOWLEDGE,
            EventType.KNOWLEDGE,
            EventType.KNOWLEDGE,
            EventType.USER_MESSAGE,
            EventType.ACTION,
            EventType.OBSERVATION,
            EventType.ACTION,
            EventType.OBSERVATION,
            EventType.ACTION,
        ]
        assert [e.payload.source for e in events[:4]] == ["goals", "preferences", "history", "equipment"]
        assert events[2].payload.params == {"days": 14}
        assert events[4].payload.content == WORKOUT_REQUEST
        assert [e.payload.tool for e in events if e.type == EventType.ACTION] == [
            "generate_workout",
            "message_notify_user",
            "idle",
        ]
        # Every observation pairs with the action right before it
        for action, observation in ((events[5], events[6]), (events[7], events[8])):
            assert action.payload.call_id == observation.payload.call_id

    @pytest.mark.asyncio
    async def test_message_attaches_resolved_displayable(self, make_runner, store):
        runner = make_runner(workout_model(), StaticSelector(WORKOUT_SOURCES))

        result = await runner.run_turn("s1", "alice", WORKOUT_REQUEST)

        (message,) = result.messages
        assert message.content == "Here's your workout"
        (attachment,) = message.attachments
        assert attachment["kind"] == "workout"
        assert attachment["payload"]["title"] == "30-minute light workout"

        session = await store.get_session("s1")
        assert attachment["id"] in session.displayables
        assert session.state == SessionState.IDLE
        assert session.last_turn_state == LoopState.IDLE
        assert [ref.source for ref in session.knowledge_in_context] == [
            "goals",
            "preferences",
            "history",
            "equipment",
        ]

    @pytest.mark.asyncio
    async def test_model_sees_stable_prefix_and_tools(self, make_runner, store):
        model = workout_model()
        runner = make_runner(model, StaticSelector(WORKOUT_SOURCES))

        await runner.run_turn("s1", "alice", WORKOUT_REQUEST)

        session = await store.get_session("s1")
        first = model.calls[0]
        assert first["messages"][0] == {"role": "system", "content": session.stable_prefix}
        assert first["messages"][-1]["content"].endswith(WORKOUT_REQUEST)
        tool_names = {t["function"]["name"] for t in first["tools"]}
        assert {"generate_workout", "idle", "message_notify_user", "message_ask_user", "fetch_data"} <= tool_names
        # Each later call only extends the earlier prompt
        assert model.calls[1]["messages"][: len(first["messages"])] == first["messages"]

    @pytest.mark.asyncio
    async def test_usage_is_accumulated(self, make_runner, store):
        runner = make_runner(workout_model(), StaticSelector(WORKOUT_SOURCES))

        result = await runner.run_turn("s1", "alice", WORKOUT_REQUEST)

        assert result.input_tokens == 300
        assert result.output_tokens == 30
        session = await store.get_session("s1")
        assert session.usage.model_calls == 3

    @pytest.mark.asyncio
    async def test_stream_events(self, make_runner):
        runner = make_runner(workout_model(), StaticSelector(WORKOUT_SOURCES))
        wire = Wire()

        await runner.run_turn("s1", "alice", WORKOUT_REQUEST, wire=wire)
        await wire.close()
        events = [event async for event in wire.read()]

        assert [e.type for e in events] == [
            StreamEventType.THINKING,
            StreamEventType.THINKING,
            StreamEventType.THINKING,
            StreamEventType.THINKING,
            StreamEventType.TOOL_START,
            StreamEventType.TOOL_END,
            StreamEventType.TOOL_START,
            StreamEventType.TOOL_END,
            StreamEventType.MESSAGE,
            StreamEventType.TOOL_START,
            StreamEventType.TOOL_END,
            StreamEventType.DONE,
        ]
        assert [e.content for e in events[:4]] == [
            "Checking your goals",
            "Loading preferences",
            "Loading workout history",
            "Loading equipment",
        ]
        assert events[4].content == "Building your workout"
        assert events[5].success is True
        assert events[8].attachments[0]["kind"] == "workout"
        assert events[-1].state == "idle"

    @pytest.mark.asyncio
    async def test_follow_up_turn_reuses_knowledge(self, make_runner, store, fetch_log):
        selector = StaticSelector(WORKOUT_SOURCES, [{"source": "history", "params": {"days": 7}}])
        model = workout_model()
        model.script.append(reply(tool_call("idle")))
        runner = make_runner(model, selector)

        await runner.run_turn("s1", "alice", WORKOUT_REQUEST)
        await runner.run_turn("s1", "alice", "what did I do this week?")

        assert len(fetch_log) == 4
        events = await store.get_events("s1")
        assert _types(events[10:]) == [EventType.USER_MESSAGE, EventType.ACTION]
        assert [ref.source for ref in selector.calls[1]["existing"]] == [
            "goals",
            "preferences",
            "history",
            "equipment",
        ]

    @pytest.mark.asyncio
    async def test_client_context_is_injected_first(self, make_runner, store):
        runner = make_runner(scripted_model(reply(tool_call("idle"))))

        await runner.run_turn(
            "s1",
            "alice",
            "swap the squats",
            client_context={"current_workout": {"title": "Leg day"}},
        )

        events = await store.get_events("s1")
        assert _types(events) == [EventType.KNOWLEDGE, EventType.USER_MESSAGE, EventType.ACTION]
        assert events[0].payload.reason == KnowledgeReason.CLIENT_PROVIDED
        assert events[0].payload.source == "current_workout"

    @pytest.mark.asyncio
    async def test_ask_user_ends_the_turn(self, make_runner, store):
        model = scripted_model(
            reply(
                tool_call(
                    "message_ask_user",
                    {"text": "Morning or evening?", "options": ["morning", "evening"]},
                )
            )
        )
        runner = make_runner(model)

        result = await runner.run_turn("s1", "alice", "schedule my run")

        assert result.state == LoopState.IDLE
        assert result.iterations == 1
        assert result.messages[0].content == "Morning or evening?"
        assert _types(await store.get_events("s1")) == [
            EventType.USER_MESSAGE,
            EventType.ACTION,
            EventType.OBSERVATION,
        ]

    @pytest.mark.asyncio
    async def test_tool_call_parsed_from_json_content(self, make_runner, store):
        model = scripted_model(reply(content='```json\n{"tool": "idle", "arguments": {}}\n```'))
        runner = make_runner(model)

        result = await runner.run_turn("s1", "alice", "thanks!")

        assert result.state == LoopState.IDLE
        (action,) = await store.get_events("s1", event_type=EventType.ACTION)
        assert action.payload.tool == "idle"
        assert action.payload.call_id.startswith("call_")

    @pytest.mark.asyncio
    async def test_reused_provider_call_ids_are_made_unique(self, make_runner, store):
        model = scripted_model(
            reply(tool_call("generate_workout", {"duration_minutes": 30}, call_id="call_0")),
            reply(tool_call("idle", call_id="call_0")),
            reply(tool_call("idle", call_id="call_0")),
        )
        runner = make_runner(model)

        await runner.run_turn("s1", "alice", WORKOUT_REQUEST)
        await runner.run_turn("s1", "alice", "thanks")

        actions = await store.get_events("s1", event_type=EventType.ACTION)
        assert [a.payload.call_id for a in actions] == ["call_0", "call_0_2", "call_0_3"]
        (observation,) = await store.get_events("s1", event_type=EventType.OBSERVATION)
        assert observation.payload.call_id == "call_0"

        # Each idle still renders as plain assistant text, not a pending call
        session = await store.get_session("s1")
        messages = runner.builder.build(session, await store.get_events("s1")).messages
        assistant = [m for m in messages if m["role"] == "assistant"]
        assert [bool(m.get("tool_calls")) for m in assistant] == [True, False, False]


# ============================================================================
# Recoverable tool errors
# ============================================================================


class TestRecoverableErrors:
    @pytest.mark.asyncio
    async def test_invalid_arguments_reach_the_model(self, make_runner, store):
        model = scripted_model(
            reply(tool_call("generate_workout", {"duration_minutes": 1})),
            reply(tool_call("idle")),
        )
        runner = make_runner(model)

        result = await runner.run_turn("s1", "alice", "a one minute workout")

        assert result.state == LoopState.IDLE
        tool_message = model.calls[1]["messages"][-1]
        assert tool_message["role"] == "tool"
        assert tool_message["content"].startswith("error: Invalid arguments for generate_workout")
        observation = (await store.get_events("s1", event_type=EventType.OBSERVATION))[0]
        assert observation.payload.success is False

    @pytest.mark.asyncio
    async def test_failing_tool_does_not_end_the_turn(self, store, knowledge):
        async def broken(args, context):
            raise RuntimeError("calendar sync failed")

        tools = make_tool_registry(knowledge)
        tools.register(ToolDefinition(name="sync_calendar", description="", args_model=NoArgs, execute=broken))
        model = scripted_model(reply(tool_call("sync_calendar")), reply(tool_call("idle")))
        runner = TurnRunner(store, model, tools, knowledge, StaticSelector(), token_counter=CharTokenCounter())

        result = await runner.run_turn("s1", "alice", "sync please")

        assert result.state == LoopState.IDLE
        assert result.iterations == 2


# ============================================================================
# Turn failures
# ============================================================================


class TestTurnFailures:
    @pytest.mark.asyncio
    async def test_iteration_cap(self, make_runner, store):
        model = scripted_model(
            fallback=lambda messages: reply(tool_call("message_notify_user", {"text": "working on it"}))
        )
        runner = make_runner(model)

        result = await runner.run_turn("s1", "alice", "plan my whole year")

        assert result.state == LoopState.ITERATION_CAP_REACHED
        assert result.iterations == 10
        assert result.notice == INCOMPLETE_MESSAGE
        assert len(model.calls) == 10
        events = await store.get_events("s1")
        assert _types(events).count(EventType.ACTION) == 10
        assert _types(events).count(EventType.OBSERVATION) == 10
        session = await store.get_session("s1")
        assert session.state == SessionState.IDLE
        assert session.last_turn_state == LoopState.ITERATION_CAP_REACHED

    @pytest.mark.asyncio
    async def test_protocol_violation_is_retried_once(self, make_runner, store):
        model = scripted_model(
            reply(tool_call("generate_workout", {"duration_minutes": 30}), tool_call("idle")),
            reply(tool_call("idle")),
        )
        runner = make_runner(model)

        result = await runner.run_turn("s1", "alice", "quick workout")

        assert result.state == LoopState.IDLE
        assert len(model.calls) == 2
        correction = model.calls[1]["messages"][-1]
        assert correction["role"] == "user"
        assert "2 tool calls" in correction["content"]
        # The corrective note is never written to the log
        events = await store.get_events("s1")
        assert _types(events) == [EventType.USER_MESSAGE, EventType.ACTION]
        assert events[1].payload.tool == "idle"

    @pytest.mark.asyncio
    async def test_repeated_protocol_violation_fails_the_turn(self, make_runner, store):
        model = scripted_model(
            reply(content="Sure, here is a workout: squats."),
            reply(content="Squats and lunges."),
            reply(tool_call("idle")),
        )
        runner = make_runner(model)

        result = await runner.run_turn("s1", "alice", "quick workout")

        assert result.state == LoopState.ERROR
        assert result.error_type == "ModelProtocolViolation"
        assert result.notice == GENERIC_ERROR_MESSAGE
        assert _types(await store.get_events("s1")) == [EventType.USER_MESSAGE]
        assert (await store.get_session("s1")).state == SessionState.ERROR

        # The session is still usable
        result = await runner.run_turn("s1", "alice", "try again")
        assert result.state == LoopState.IDLE
        assert (await store.get_session("s1")).state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_model_timeout(self, make_runner, store):
        runner = make_runner(SlowModel(id="test/slow", name="slow"), model_timeout=0.05)

        result = await runner.run_turn("s1", "alice", "hello")

        assert result.state == LoopState.ERROR
        assert result.error_type == "ModelTimeout"
        assert _types(await store.get_events("s1")) == [EventType.USER_MESSAGE]

    @pytest.mark.asyncio
    async def test_tool_timeout_leaves_log_intact(self, store, knowledge):
        async def slow(args, context):
            await asyncio.sleep(1)

        tools = make_tool_registry(knowledge)
        tools.register(ToolDefinition(name="analyze_history", description="", args_model=NoArgs, execute=slow))
        model = scripted_model(
            reply(tool_call("generate_workout", {"duration_minutes": 30})),
            reply(tool_call("analyze_history")),
            reply(tool_call("idle")),
        )
        runner = TurnRunner(
            store,
            model,
            tools,
            knowledge,
            StaticSelector(),
            config=LoopConfig(tool_timeout=0.05),
            token_counter=CharTokenCounter(),
        )

        wire = Wire()
        result = await runner.run_turn("s1", "alice", "analyze my runs", wire=wire)

        assert result.state == LoopState.ERROR
        assert result.error_type == "ToolTimeout"
        await wire.close()
        tool_events = [e for e in [event async for event in wire.read()] if e.tool]
        assert [(e.type, e.tool, e.success) for e in tool_events[-2:]] == [
            (StreamEventType.TOOL_START, "analyze_history", None),
            (StreamEventType.TOOL_END, "analyze_history", False),
        ]
        events = await store.get_events("s1")
        assert _types(events) == [EventType.USER_MESSAGE, EventType.ACTION, EventType.OBSERVATION]
        session = await store.get_session("s1")
        assert len(session.displayables) == 1

        result = await runner.run_turn("s1", "alice", "never mind")
        assert result.state == LoopState.IDLE

    @pytest.mark.asyncio
    async def test_failed_append_rolls_back_displayables(self, knowledge):
        class RejectingStore(InMemorySessionStore):
            async def insert_events(self, events):
                if any(e.type == EventType.ACTION for e in events):
                    raise SequenceCollision(events[0].session_id, events[0].sequence)
                await super().insert_events(events)

        store = RejectingStore()
        model = scripted_model(reply(tool_call("generate_workout", {"duration_minutes": 30})))
        runner = TurnRunner(
            store,
            model,
            make_tool_registry(knowledge),
            knowledge,
            StaticSelector(),
            config=LoopConfig(append_max_attempts=2),
            token_counter=CharTokenCounter(),
        )

        wire = Wire()
        result = await runner.run_turn("s1", "alice", "workout", wire=wire)

        assert result.state == LoopState.ERROR
        assert result.error_type == "SequenceConflict"
        await wire.close()
        events = [event async for event in wire.read()]
        assert [(e.type, e.success) for e in events] == [
            (StreamEventType.TOOL_START, None),
            (StreamEventType.TOOL_END, False),
            (StreamEventType.DONE, None),
        ]
        session = await store.get_session("s1")
        assert session.displayables == {}
        assert _types(await store.get_events("s1")) == [EventType.USER_MESSAGE]


# ============================================================================
# Checkpointing during a turn
# ============================================================================


class TestCheckpointInTurn:
    @pytest.mark.asyncio
    async def test_context_over_threshold_is_checkpointed(self, store):
        knowledge = make_knowledge_registry(history_size=200)
        model = scripted_model(
            reply(tool_call("generate_workout", {"duration_minutes": 30, "intensity": "light"})),
            reply(tool_call("idle")),
            reply(tool_call("idle")),
        )
        runner = TurnRunner(
            store,
            model,
            make_tool_registry(knowledge),
            knowledge,
            StaticSelector(WORKOUT_SOURCES),
            token_counter=CharTokenCounter(),
        )
        await runner.run_turn("s1", "alice", WORKOUT_REQUEST)
        previous_max = await store.get_max_sequence("s1")

        # Shrink the window so the current context sits at 85% of it
        session = await store.get_session("s1")
        estimated = await runner.checkpoints.estimate_tokens(session)
        runner.checkpoints.context_window_tokens = int(estimated / 0.85)

        result = await runner.run_turn("s1", "alice", "make it harder")

        assert result.state == LoopState.IDLE
        events = await store.get_events("s1")
        checkpoints = [e for e in events if e.type == EventType.CHECKPOINT]
        (checkpoint,) = checkpoints
        assert checkpoint.sequence > previous_max + 1
        assert checkpoint.payload.summarized_range.start == 1
        assert checkpoint.payload.summarized_range.end == checkpoint.sequence - 1
        assert checkpoint.payload.open_request == "make it harder"
        assert len(checkpoint.payload.current_state_snapshot["displayables"]) == 1

        session = await store.get_session("s1")
        assert session.context_start_sequence == checkpoint.sequence
        assert session.knowledge_in_context == []

        # The model saw the checkpoint instead of the raw history
        prompt = model.calls[-1]["messages"]
        assert prompt[1]["content"].startswith(f'<checkpoint range="1-{checkpoint.sequence - 1}">')
        assert all("<knowledge" not in (m.get("content") or "") for m in prompt[1:])

        # Nothing was deleted
        assert [e.sequence for e in events] == list(range(1, checkpoint.sequence + 2))


# ============================================================================
# Concurrency and ownership
# ============================================================================


class TestSessionAccess:
    @pytest.mark.asyncio
    async def test_busy_session_rejects_second_turn(self, make_runner):
        model = BlockingModel(id="test/blocking", name="blocking")
        runner = make_runner(model)

        first = asyncio.create_task(runner.run_turn("s1", "alice", "first"))
        await model.started.wait()

        assert runner.is_busy("s1")
        assert not runner.is_busy("s2")
        with pytest.raises(SessionBusy):
            await runner.run_turn("s1", "alice", "second")

        model.release.set()
        assert (await first).state == LoopState.IDLE
        assert not runner.is_busy("s1")

    @pytest.mark.asyncio
    async def test_queue_policy_serializes_turns(self, make_runner, store):
        model = BlockingModel(id="test/blocking", name="blocking")
        runner = make_runner(model, busy_policy="queue")

        first = asyncio.create_task(runner.run_turn("s1", "alice", "first"))
        await model.started.wait()
        second = asyncio.create_task(runner.run_turn("s1", "alice", "second"))
        await asyncio.sleep(0.01)
        model.release.set()

        results = await asyncio.gather(first, second)

        assert [r.state for r in results] == [LoopState.IDLE, LoopState.IDLE]
        events = await store.get_events("s1")
        assert [(e.type, getattr(e.payload, "content", None)) for e in events] == [
            (EventType.USER_MESSAGE, "first"),
            (EventType.ACTION, None),
            (EventType.USER_MESSAGE, "second"),
            (EventType.ACTION, None),
        ]

    @pytest.mark.asyncio
    async def test_session_belongs_to_its_user(self, make_runner):
        runner = make_runner(scripted_model(reply(tool_call("idle"))))
        await runner.run_turn("s1", "alice", "hi")

        with pytest.raises(SessionOwnershipError):
            await runner.run_turn("s1", "mallory", "hi")

    @pytest.mark.asyncio
    async def test_session_state_lists_recent_actions(self, make_runner):
        runner = make_runner(workout_model(), StaticSelector(WORKOUT_SOURCES))
        await runner.run_turn("s1", "alice", WORKOUT_REQUEST)

        session, actions = await runner.get_session_state("s1", "alice", recent_actions=2)

        assert session.user_id == "alice"
        assert [a.payload.tool for a in actions] == ["idle", "message_notify_user"]

    @pytest.mark.asyncio
    async def test_session_locks_are_released_after_turns(self, make_runner):
        runner = make_runner(scripted_model(fallback=reply(tool_call("idle"))))

        await runner.run_turn("s1", "alice", "hi")
        await runner.run_turn("s2", "alice", "hi")

        assert runner._locks == {}
        assert runner._lock_holders == {}


class TestArchival:
    @pytest.mark.asyncio
    async def test_archival_skips_session_updated_by_concurrent_turn(self, knowledge):
        class GatedStore(InMemorySessionStore):
            """Holds every COMPLETED save until ``gate`` opens."""

            def __init__(self):
                super().__init__()
                self.archiving = asyncio.Event()
                self.gate = asyncio.Event()

            async def save_session(self, session):
                if session.state == SessionState.COMPLETED:
                    self.archiving.set()
                    await self.gate.wait()
                await super().save_session(session)

        store = GatedStore()
        runner = TurnRunner(
            store,
            workout_model(),
            make_tool_registry(knowledge),
            knowledge,
            StaticSelector(WORKOUT_SOURCES),
            token_counter=CharTokenCounter(),
        )
        now = datetime.now()
        for session_id, age in (("recent", 30), ("x", 72)):
            await runner.get_or_create_session(session_id, "alice")
            store.sessions[session_id].state = SessionState.IDLE
            store.sessions[session_id].updated_at = now - timedelta(hours=age)

        # Archival lists both sessions, then stalls saving the newer one
        archival = asyncio.create_task(runner.archive_inactive_sessions(timedelta(hours=24)))
        await store.archiving.wait()

        result = await runner.run_turn("x", "alice", WORKOUT_REQUEST)
        assert result.state == LoopState.IDLE

        store.gate.set()
        assert await archival == ["recent"]

        stored = await store.get_session("x")
        assert stored.state == SessionState.IDLE
        assert stored.last_turn_state == LoopState.IDLE
        assert len(stored.displayables) == 1
        assert store.sessions["recent"].state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_archival_completes_stale_sessions(self, make_runner, store):
        runner = make_runner(scripted_model(fallback=reply(tool_call("idle"))))
        await runner.run_turn("old", "alice", "hi")
        await runner.run_turn("fresh", "alice", "hi")
        store.sessions["old"].updated_at = datetime.now() - timedelta(hours=48)

        assert await runner.archive_inactive_sessions(timedelta(hours=24)) == ["old"]
        assert store.sessions["old"].state == SessionState.COMPLETED
        assert store.sessions["fresh"].state == SessionState.IDLE
        assert runner._locks == {}
