"""Unit tests for the action dispatcher state machine and built-in actions."""

from __future__ import annotations

from nocturne.config import DispatcherConfig
from nocturne.engine.actions import Action
from nocturne.engine.actions import ActionResponse
from nocturne.engine.builtin_actions import CONTINUE
from nocturne.engine.builtin_actions import continue_action
from nocturne.engine.builtin_actions import default_actions
from nocturne.engine.builtin_actions import ignore_action
from nocturne.engine.builtin_actions import trailing_action_streak
from nocturne.engine.dispatcher import ActionDispatcher
from nocturne.engine.dispatcher import DispatchState
from nocturne.engine.generation import DraftResponse
from nocturne.errors import ActionExecutionError
from nocturne.errors import ActionValidationRejected
from nocturne.memory import create_memory_record
from nocturne.observability import latency_metrics_snapshot

APOLOGY = "Something went wrong."


def _message(text: str = "hello", room: str = "room"):
    return create_memory_record(text, agent_id="agent", user_id="alice", room_id=room)


def _agent_reply(text: str, action: str | None = None, room: str = "room"):
    return create_memory_record(
        text, agent_id="agent", user_id="agent", room_id=room, action=action
    )


class _FakeRuntime:
    def __init__(self, draft: DraftResponse) -> None:
        self.draft = draft
        self.calls = 0

    async def continue_conversation(self, message):
        self.calls += 1
        return self.draft


def _dispatcher(actions, store=None) -> ActionDispatcher:
    return ActionDispatcher(
        actions, store=store, config=DispatcherConfig(apology_text=APOLOGY)
    )


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestDispatchStates:
    async def test_no_tag_passes_through(self):
        result = await _dispatcher(default_actions()).dispatch(
            DraftResponse(text="Good evening."), _message()
        )
        assert result.state is DispatchState.NO_ACTION
        assert result.texts == ["Good evening."]
        assert result.responses[0].action is None
        assert result.transitions == [DispatchState.NO_ACTION]

    async def test_unregistered_tag_passes_through(self):
        result = await _dispatcher(default_actions()).dispatch(
            DraftResponse(text="Rain tonight.", action="WEATHER"), _message()
        )
        assert result.state is DispatchState.REJECTED
        assert result.rejection_reason == "unmatched"
        assert result.texts == ["Rain tonight."]
        assert result.tag == "WEATHER"
        assert result.transitions == [
            DispatchState.DETECTED,
            DispatchState.VALIDATING,
            DispatchState.REJECTED,
        ]

    async def test_completed_action_annotates_first_response(self):
        async def handler(ctx):
            return ActionResponse(text="The candle is lit.")

        action = Action(name="LIGHT_CANDLE", handler=handler)
        result = await _dispatcher([action]).dispatch(
            DraftResponse(text="Let me light it.", action="light_candle"), _message()
        )

        assert result.state is DispatchState.COMPLETED
        assert result.action == "LIGHT_CANDLE"
        assert result.texts == ["Let me light it.", "The candle is lit."]
        assert [r.action for r in result.responses] == ["LIGHT_CANDLE", None]
        assert result.transitions == [
            DispatchState.DETECTED,
            DispatchState.VALIDATING,
            DispatchState.EXECUTING,
            DispatchState.COMPLETED,
        ]

    async def test_async_generator_handler_streams_responses(self):
        async def handler(ctx):
            yield ActionResponse(text="one")
            yield ActionResponse(text="two")

        action = Action(name="COUNT", handler=handler)
        result = await _dispatcher([action]).dispatch(
            DraftResponse(text="", action="COUNT"), _message()
        )
        assert result.texts == ["one", "two"]
        assert result.responses[0].action == "COUNT"

    async def test_handler_failure_substitutes_apology(self):
        async def handler(ctx):
            ctx.enqueue_followup("never sent", action="COUNT")
            raise RuntimeError("kaboom")

        action = Action(name="COUNT", handler=handler)
        result = await _dispatcher([action]).dispatch(
            DraftResponse(text="Counting...", action="COUNT"), _message()
        )

        assert result.state is DispatchState.COMPLETED
        assert result.texts == ["Counting...", APOLOGY]
        assert result.error == "RuntimeError: kaboom"
        assert result.followups == []

    async def test_action_execution_error_substitutes_apology(self):
        async def handler(ctx):
            raise ActionExecutionError("oracle offline")

        action = Action(name="ORACLE", handler=handler, suppress_initial_message=True)
        result = await _dispatcher([action]).dispatch(
            DraftResponse(text="Let me ask.", action="ORACLE"), _message()
        )
        assert result.state is DispatchState.COMPLETED
        assert result.texts == [APOLOGY]
        assert "oracle offline" in result.error

    async def test_failed_validation_rejects(self):
        async def validate(ctx):
            return False

        action = Action(name="COUNT", handler=lambda ctx: None, validate=validate)
        result = await _dispatcher([action]).dispatch(
            DraftResponse(text="Counting.", action="COUNT"), _message()
        )
        assert result.state is DispatchState.REJECTED
        assert result.rejection_reason == "validation_failed"
        assert result.texts == ["Counting."]
        assert result.action == "COUNT"

    async def test_raising_validator_rejects(self):
        async def validate(ctx):
            raise ValueError("bad predicate")

        action = Action(name="COUNT", handler=lambda ctx: None, validate=validate)
        result = await _dispatcher([action]).dispatch(
            DraftResponse(text="x", action="COUNT"), _message()
        )
        assert result.state is DispatchState.REJECTED

    async def test_validation_rejected_error_rejects(self):
        async def validate(ctx):
            raise ActionValidationRejected("not in this room")

        action = Action(name="COUNT", handler=lambda ctx: None, validate=validate)
        result = await _dispatcher([action]).dispatch(
            DraftResponse(text="x", action="COUNT"), _message()
        )
        assert result.state is DispatchState.REJECTED
        assert result.rejection_reason == "validation_failed"

    async def test_ignore_suppresses_reply(self):
        result = await _dispatcher([ignore_action()]).dispatch(
            DraftResponse(text="Whatever.", action="IGNORE"), _message()
        )
        assert result.state is DispatchState.COMPLETED
        assert result.responses == []

    async def test_handler_sees_context(self):
        seen = {}

        async def handler(ctx):
            seen["draft"] = ctx.draft_text
            seen["state"] = ctx.state
            seen["runtime"] = ctx.runtime
            seen["action"] = ctx.action_name

        action = Action(name="PEEK", handler=handler)
        await _dispatcher([action]).dispatch(
            DraftResponse(text="draft", action="PEEK"),
            _message(),
            runtime="rt",
            state={"k": 1},
        )
        assert seen == {"draft": "draft", "state": {"k": 1}, "runtime": "rt", "action": "PEEK"}

    async def test_records_latency(self):
        await _dispatcher([]).dispatch(DraftResponse(text="x"), _message())
        assert latency_metrics_snapshot()["action_dispatcher.dispatch"]["count"] == 1


# ---------------------------------------------------------------------------
# CONTINUE
# ---------------------------------------------------------------------------


class TestContinueAction:
    async def test_streak_counts_trailing_agent_continues(self, store):
        await store.create(_agent_reply("old", action=CONTINUE))
        await store.create(_message("interrupt"))
        await store.create(_agent_reply("a", action=CONTINUE))
        await store.create(_agent_reply("b", action=CONTINUE))

        seen = {}

        async def peek(ctx):
            seen["streak"] = await trailing_action_streak(ctx, CONTINUE, 10)

        peek_action = Action(name="PEEK", handler=peek)
        dispatcher = _dispatcher([peek_action], store=store)
        await dispatcher.dispatch(DraftResponse(text="", action="PEEK"), _message())
        assert seen["streak"] == 2

    async def test_continue_below_cap_runs_follow_on_generation(self, store):
        await store.create(_agent_reply("a", action=CONTINUE))
        runtime = _FakeRuntime(DraftResponse(text="...and then the bells stopped."))

        result = await _dispatcher([continue_action(3)], store=store).dispatch(
            DraftResponse(text="I remember.", action=CONTINUE), _message(), runtime=runtime
        )

        assert result.state is DispatchState.COMPLETED
        assert runtime.calls == 1
        assert result.texts == ["I remember.", "...and then the bells stopped."]
        assert result.followups == []

    async def test_continue_with_action_enqueues_followup(self, store):
        runtime = _FakeRuntime(DraftResponse(text="More.", action=CONTINUE))
        result = await _dispatcher([continue_action()], store=store).dispatch(
            DraftResponse(text="I remember.", action=CONTINUE), _message(), runtime=runtime
        )

        assert result.texts == ["I remember."]
        assert len(result.followups) == 1
        assert result.followups[0].text == "More."
        assert result.followups[0].content.action == CONTINUE

    async def test_fourth_consecutive_continue_is_rejected(self, store):
        for text in ("one", "two", "three"):
            await store.create(_agent_reply(text, action=CONTINUE))
        runtime = _FakeRuntime(DraftResponse(text="never"))

        result = await _dispatcher([continue_action(3)], store=store).dispatch(
            DraftResponse(text="four", action=CONTINUE), _message(), runtime=runtime
        )

        assert result.state is DispatchState.REJECTED
        assert result.rejection_reason == "validation_failed"
        assert result.texts == ["four"]
        assert runtime.calls == 0

    async def test_user_message_resets_the_streak(self, store):
        for text in ("one", "two", "three"):
            await store.create(_agent_reply(text, action=CONTINUE))
        await store.create(_message("go on"))
        runtime = _FakeRuntime(DraftResponse(text="gladly"))

        result = await _dispatcher([continue_action(3)], store=store).dispatch(
            DraftResponse(text="Then...", action=CONTINUE), _message(), runtime=runtime
        )
        assert result.state is DispatchState.COMPLETED

    async def test_streak_can_span_user_messages(self, store):
        for text in ("one", "two"):
            await store.create(_agent_reply(text, action=CONTINUE))
            await store.create(_message("go on"))
        await store.create(_agent_reply("three", action=CONTINUE))
        await store.create(_message("and?"))
        runtime = _FakeRuntime(DraftResponse(text="never"))

        result = await _dispatcher(
            [continue_action(3, across_user_turns=True)], store=store
        ).dispatch(
            DraftResponse(text="four", action=CONTINUE), _message(), runtime=runtime
        )

        assert result.state is DispatchState.REJECTED
        assert runtime.calls == 0

    async def test_spanning_streak_stops_at_other_agent_reply(self, store):
        await store.create(_agent_reply("one", action=CONTINUE))
        await store.create(_agent_reply("plain reply"))
        await store.create(_message("go on"))
        await store.create(_agent_reply("two", action=CONTINUE))
        await store.create(_message("and?"))

        seen = {}

        async def peek(ctx):
            seen["streak"] = await trailing_action_streak(
                ctx, CONTINUE, 10, across_user_turns=True
            )

        dispatcher = _dispatcher([Action(name="PEEK", handler=peek)], store=store)
        await dispatcher.dispatch(DraftResponse(text="", action="PEEK"), _message())
        assert seen["streak"] == 1

    async def test_streak_is_bounded_by_limit(self, store):
        for text in ("one", "two", "three"):
            await store.create(_agent_reply(text, action=CONTINUE))

        seen = {}

        async def peek(ctx):
            seen["streak"] = await trailing_action_streak(ctx, CONTINUE, 2)

        dispatcher = _dispatcher([Action(name="PEEK", handler=peek)], store=store)
        await dispatcher.dispatch(DraftResponse(text="", action="PEEK"), _message())
        assert seen["streak"] == 2

    async def test_simile_tag_resolves_to_continue(self, store):
        runtime = _FakeRuntime(DraftResponse(text="more"))
        result = await _dispatcher(default_actions(), store=store).dispatch(
            DraftResponse(text="Also,", action="keep talking"), _message(), runtime=runtime
        )
        assert result.action == CONTINUE

    async def test_without_runtime_hook_emits_only_draft(self, store):
        result = await _dispatcher([continue_action()], store=store).dispatch(
            DraftResponse(text="Hmm.", action=CONTINUE), _message()
        )
        assert result.texts == ["Hmm."]
