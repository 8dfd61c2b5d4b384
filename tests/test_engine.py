from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator

import pytest
from fixtures_plugins.engine_fakes import BusRecorder, Clock, RecordingActions, ScriptedModel, call, tool_response

from hopline.actions import ActionOutcome
from hopline.agents import AgentCatalog
from hopline.app import Hopline
from hopline.config import Settings
from hopline.engine import HopOutcome, WorkQueueScheduler, check_transition
from hopline.errors import InvalidTransitionError
from hopline.model import ModelResponse
from hopline.types import ProcessingStatus, Role, StepType


def _session(hopline: Hopline, agent: str = "assistant") -> str:
    session_id = hopline.service.create_new_chat_session(None, agent).session_id
    assert session_id is not None
    return session_id


async def _turn(hopline: Hopline, session_id: str, text: str, turn: str) -> None:
    result = await hopline.service.send_message(session_id, text, turn_identifier=turn)
    assert result.success
    await hopline.drain()


def _step_types(hopline: Hopline, turn: str) -> list[StepType]:
    return [step.step_type for step in hopline.store.steps(turn)]


def _tool_payloads(hopline: Hopline, session_id: str) -> list[dict]:
    return [json.loads(message.content) for message in hopline.store.messages(session_id) if message.role is Role.TOOL]


@pytest.mark.asyncio
async def test_plain_turn_runs_three_hops(hopline: Hopline, model: ScriptedModel, bus_log: BusRecorder) -> None:
    session_id = _session(hopline)
    model.reply(ModelResponse(content="Hi there"))

    await _turn(hopline, session_id, "hello", "t1")

    steps = hopline.store.steps("t1")
    assert [step.sequence_number for step in steps] == [1, 2, 3]
    assert _step_types(hopline, "t1") == [
        StepType.PREPARE_MODEL_CALL,
        StepType.MODEL_RESPONSE_RECEIVED,
        StepType.FINALIZE,
    ]
    assert [(final.success, final.final_message_content) for final in bus_log.finals] == [(True, "Hi there")]
    assert bus_log.finals[0].final_message_id == "msg-t1-1"
    assert [message.external_id for message in hopline.store.messages(session_id)] == ["t1", "msg-t1-1"]
    assert hopline.store.get_turn("t1").processing_status is ProcessingStatus.IDLE


@pytest.mark.asyncio
async def test_tool_turn_runs_seven_contiguous_hops(
    hopline: Hopline, model: ScriptedModel, bus_log: BusRecorder
) -> None:
    session_id = _session(hopline)
    model.reply(tool_response(call("echo", text="ping")), ModelResponse(content="pong"))

    await _turn(hopline, session_id, "echo ping", "t1")

    assert [step.sequence_number for step in hopline.store.steps("t1")] == list(range(1, 8))
    assert _step_types(hopline, "t1")[2:5] == [
        StepType.DISPATCH_ACTIONS,
        StepType.ACTION_RESULT_RECEIVED,
        StepType.PREPARE_FOLLOWUP,
    ]
    ids = [message.external_id for message in hopline.store.messages(session_id)]
    assert ids == ["t1", "msg-t1-1", "tool-t1-3-call-1", "msg-t1-5"]
    assert _tool_payloads(hopline, session_id) == [{"text": "ping"}]
    assert bus_log.finals[0].final_message_content == "pong"

    followup = model.requests[-1]
    assert followup.messages[-1]["role"] == "tool"
    assert followup.messages[-1]["tool_call_id"] == "call-1"


@pytest.mark.asyncio
async def test_concurrent_redelivery_runs_the_action_once(
    hopline: Hopline, model: ScriptedModel, bus_log: BusRecorder
) -> None:
    runs: list[str] = []

    async def slow_verify(arguments_json: str, backend_config_json: str) -> ActionOutcome:
        runs.append(arguments_json)
        await asyncio.sleep(0.01)
        return ActionOutcome.ok({"verified": True})

    hopline.actions.register_native("verify_identity", slow_verify)
    session_id = _session(hopline)
    model.reply(tool_response(call("verify_identity")), ModelResponse(content="verified"))
    await hopline.service.send_message(session_id, "verify me", turn_identifier="t1")

    assert isinstance(hopline.scheduler, WorkQueueScheduler)
    assert await hopline.scheduler.run_next()
    assert await hopline.scheduler.run_next()
    dispatch = bus_log.events[-1]
    assert dispatch.next_step_type is StepType.DISPATCH_ACTIONS

    outcomes = await asyncio.gather(hopline.machine.run_hop(dispatch), hopline.machine.run_hop(dispatch))
    await hopline.drain()

    assert sorted(outcomes) == [HopOutcome.ADVANCED, HopOutcome.DUPLICATE]
    assert len(runs) == 1
    assert [step.sequence_number for step in hopline.store.steps("t1")] == list(range(1, 8))
    assert _tool_payloads(hopline, session_id) == [{"verified": True}]
    assert [final.final_message_content for final in bus_log.finals] == ["verified"]


@pytest.mark.asyncio
async def test_redelivered_event_is_discarded(hopline: Hopline, bus_log: BusRecorder) -> None:
    session_id = _session(hopline)
    await _turn(hopline, session_id, "hello", "t1")
    before = hopline.store.messages(session_id)

    outcome = await hopline.machine.run_hop(bus_log.events[1])

    assert outcome is HopOutcome.DUPLICATE
    assert len(hopline.store.steps("t1")) == 3
    assert hopline.store.messages(session_id) == before
    assert len(bus_log.finals) == 1


@pytest.mark.asyncio
async def test_newer_turn_makes_queued_hops_stale(hopline: Hopline, bus_log: BusRecorder) -> None:
    session_id = _session(hopline)

    await hopline.service.send_message(session_id, "first", turn_identifier="t1")
    await hopline.service.send_message(session_id, "second", turn_identifier="t2")
    await hopline.drain()

    assert hopline.store.steps("t1") == []
    assert [final.turn_identifier for final in bus_log.finals] == ["t2"]
    assert hopline.store.get_turn("t1").processing_status is ProcessingStatus.IDLE
    assert hopline.store.find_message(session_id, "msg-t1-1") is None


@pytest.mark.asyncio
async def test_entire_session_prerequisite_carries_across_turns(
    hopline: Hopline, model: ScriptedModel, recorder: RecordingActions
) -> None:
    session_id = _session(hopline)
    model.reply(tool_response(call("authenticate")), ModelResponse(content="signed in"))
    await _turn(hopline, session_id, "log me in", "t1")

    model.reply(tool_response(call("lookup_order", order="o1")), ModelResponse(content="found it"))
    await _turn(hopline, session_id, "where is o1", "t2")

    assert recorder.names() == ["authenticate", "lookup_order"]
    assert hopline.store.satisfied_capabilities(session_id) == {"authenticate"}


@pytest.mark.asyncio
async def test_current_turn_prerequisite_does_not_carry_over(
    hopline: Hopline, model: ScriptedModel, recorder: RecordingActions, bus_log: BusRecorder
) -> None:
    session_id = _session(hopline)
    model.reply(tool_response(call("verify_identity")), ModelResponse(content="verified"))
    await _turn(hopline, session_id, "verify me", "t1")

    model.reply(tool_response(call("place_order", item="book")), ModelResponse(content="cannot yet"))
    await _turn(hopline, session_id, "order a book", "t2")

    assert recorder.names() == ["verify_identity"]
    blocked = _tool_payloads(hopline, session_id)[-1]
    assert blocked["error"] == "prerequisite_not_met"
    assert blocked["missing"] == ["verify_identity"]
    assert [final.success for final in bus_log.finals] == [True, True]


@pytest.mark.asyncio
async def test_prerequisite_met_earlier_in_same_batch(
    hopline: Hopline, model: ScriptedModel, recorder: RecordingActions
) -> None:
    session_id = _session(hopline)
    model.reply(tool_response(call("verify_identity", "c1"), call("place_order", "c2", item="book")))

    await _turn(hopline, session_id, "verify and order", "t1")

    assert recorder.names() == ["verify_identity", "place_order"]
    assert hopline.store.satisfied_capabilities(session_id) == set()


@pytest.mark.asyncio
async def test_model_failure_fails_turn_once(hopline: Hopline, model: ScriptedModel, bus_log: BusRecorder) -> None:
    session_id = _session(hopline)
    model.reply(RuntimeError("upstream down"), RuntimeError("upstream down"), RuntimeError("upstream down"))

    await _turn(hopline, session_id, "hello", "t1")

    assert _step_types(hopline, "t1") == [StepType.PREPARE_MODEL_CALL, StepType.FAILED]
    assert hopline.store.steps("t1")[0].payload["error"] == "model_call_error: upstream down"
    errors = [message for message in hopline.store.messages(session_id) if message.is_system_error]
    assert [message.external_id for message in errors] == ["error-t1-2"]
    assert errors[0].content == "System Error: model_call_error: upstream down"
    assert [(final.success, final.error_details) for final in bus_log.finals] == [
        (False, "model_call_error: upstream down")
    ]
    assert hopline.store.get_turn("t1").processing_status is ProcessingStatus.FAILED


@pytest.mark.asyncio
async def test_model_recovers_within_retry_budget(hopline: Hopline, model: ScriptedModel, bus_log: BusRecorder) -> None:
    session_id = _session(hopline)
    model.reply(RuntimeError("blip"), ModelResponse(content="recovered"))

    await _turn(hopline, session_id, "hello", "t1")

    assert bus_log.finals[0].final_message_content == "recovered"
    assert hopline.store.steps("t1")[0].payload["model_calls"] == 1


@pytest.fixture
def limited(settings: Settings, catalog: AgentCatalog, model: ScriptedModel) -> Iterator[Hopline]:
    capped = settings.model_copy(update={"max_model_calls_per_turn": 2})
    app = Hopline(capped, catalog=catalog, model=model, plugins=[RecordingActions()], clock=Clock())
    yield app
    app.close()


@pytest.mark.asyncio
async def test_model_call_budget_fails_turn(limited: Hopline, model: ScriptedModel) -> None:
    bus_log = BusRecorder(limited)
    session_id = _session(limited)
    model.reply(tool_response(call("echo", text="a")), tool_response(call("echo", text="b")))

    await _turn(limited, session_id, "loop forever", "t1")

    steps = limited.store.steps("t1")
    assert steps[-1].step_type is StepType.FAILED
    assert steps[-2].step_type is StepType.PREPARE_FOLLOWUP
    assert steps[-2].payload["error"] == "max_model_calls_reached=2"
    assert bus_log.finals[0].error_details == "max_model_calls_reached=2"
    assert len([request for request in model.requests if request.purpose == "turn"]) == 2


@pytest.mark.asyncio
async def test_unknown_function_is_reported_back_to_model(
    hopline: Hopline, model: ScriptedModel, bus_log: BusRecorder
) -> None:
    session_id = _session(hopline)
    model.reply(tool_response(call("teleport", destination="mars")), ModelResponse(content="I cannot do that"))

    await _turn(hopline, session_id, "teleport me", "t1")

    assert _tool_payloads(hopline, session_id)[0]["error"] == "unknown_capability"
    assert bus_log.finals[0].success
    assert bus_log.finals[0].final_message_content == "I cannot do that"


@pytest.mark.asyncio
async def test_invalid_arguments_never_reach_the_action(
    hopline: Hopline, model: ScriptedModel, recorder: RecordingActions
) -> None:
    session_id = _session(hopline)
    model.reply(tool_response(call("delete_record", record=7)))

    await _turn(hopline, session_id, "delete it", "t1")

    assert recorder.calls == []
    assert _tool_payloads(hopline, session_id)[0]["error"] == "invalid_arguments"
    assert hopline.store.get_turn("t1").pending_action is None


@pytest.mark.asyncio
async def test_transient_progress_messages(hopline: Hopline, model: ScriptedModel, bus_log: BusRecorder) -> None:
    session_id = _session(hopline)
    model.reply(tool_response(call("echo", text="x")))

    await _turn(hopline, session_id, "echo x", "t1")

    assert [(message.message_id, message.content) for message in bus_log.transients] == [
        ("t1:1:thinking", "Thinking..."),
        ("t1:3:run:call-1", "Running echo..."),
        ("t1:5:thinking", "Thinking..."),
    ]


@pytest.mark.asyncio
async def test_transient_messages_can_be_disabled(hopline: Hopline, model: ScriptedModel, bus_log: BusRecorder) -> None:
    session_id = _session(hopline, "quiet")
    model.reply(tool_response(call("echo", text="x")))

    await _turn(hopline, session_id, "echo x", "t1")

    assert bus_log.transients == []
    assert bus_log.finals[0].success


@pytest.mark.asyncio
async def test_summary_buffer_folds_old_turns(hopline: Hopline, model: ScriptedModel) -> None:
    session_id = _session(hopline, "summarizer")

    await _turn(hopline, session_id, "one", "t1")
    await _turn(hopline, session_id, "two", "t2")
    assert not [request for request in model.requests if request.purpose == "summary"]

    await _turn(hopline, session_id, "three", "t3")

    assert [request.purpose for request in model.requests][-2:] == ["summary", "turn"]
    session = hopline.store.require_session(session_id)
    assert session.summary == "SUMMARY"
    assert session.summary_through_id == hopline.store.find_message(session_id, "msg-t2-1").id
    last = model.requests[-1].messages
    assert last[0]["role"] == "system"
    assert last[0]["content"].endswith("SUMMARY")
    assert [message["content"] for message in last[1:]] == ["three"]
    assert hopline.store.steps("t3")[0].payload["summarized"] is True


@pytest.mark.asyncio
async def test_unexpected_hop_error_fails_turn_and_reaches_observers(
    hopline: Hopline,
    model: ScriptedModel,
    recorder: RecordingActions,
    bus_log: BusRecorder,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    session_id = _session(hopline)
    model.reply(tool_response(call("echo", text="x")))

    def _broken(session_id: str) -> set[str]:
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(hopline.store, "satisfied_capabilities", _broken)
    await _turn(hopline, session_id, "echo x", "t1")

    assert _step_types(hopline, "t1") == [
        StepType.PREPARE_MODEL_CALL,
        StepType.MODEL_RESPONSE_RECEIVED,
        StepType.FAILED,
    ]
    assert [stage for stage, _ in recorder.errors] == ["hop:dispatch_actions"]
    assert bus_log.finals[0].error_details == "RuntimeError: ledger unavailable"
    assert hopline.store.find_message(session_id, "error-t1-3") is not None


@pytest.mark.asyncio
async def test_fail_turn_skips_finished_turns(hopline: Hopline, bus_log: BusRecorder) -> None:
    session_id = _session(hopline)
    await _turn(hopline, session_id, "hello", "t1")

    outcome = await hopline.machine.fail_turn(bus_log.events[0], "too late")

    assert outcome is HopOutcome.STALE
    assert len(bus_log.finals) == 1
    assert len(hopline.store.steps("t1")) == 3


def test_transition_table_rejects_illegal_moves() -> None:
    check_transition(ProcessingStatus.AWAITING_FOLLOWUP, ProcessingStatus.PROCESSING)
    with pytest.raises(InvalidTransitionError):
        check_transition(ProcessingStatus.IDLE, ProcessingStatus.AWAITING_ACTION)
    with pytest.raises(InvalidTransitionError):
        check_transition(ProcessingStatus.FAILED, ProcessingStatus.PROCESSING)
