from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from hopline.actions import ActionCatalog, ActionDispatcher, ActionOutcome, DispatchResult, register_builtin_actions
from hopline.agents import parse_agent_catalog
from hopline.capabilities import CapabilityRegistry
from hopline.types import ToolCall

CATALOG: dict[str, Any] = {
    "actions": [
        {
            "name": "echo",
            "implementation_kind": "native",
            "implementation_ref": "echo",
            "input_schema": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
            "config_schema": {"type": "object", "properties": {"prefix": {"type": "string"}}},
        },
        {"name": "explode", "implementation_kind": "native", "implementation_ref": "explode"},
        {"name": "shout", "implementation_kind": "custom_code", "implementation_ref": "shout_actions:shout"},
        {"name": "refund", "implementation_kind": "workflow", "implementation_ref": "refund_flow"},
        {"name": "login", "implementation_kind": "native", "implementation_ref": "echo"},
        {"name": "checkout", "implementation_kind": "native", "implementation_ref": "echo"},
    ],
    "agents": [
        {
            "developer_name": "clerk",
            "capabilities": [
                {"function_name": "echo", "action": "echo", "backend_config": {"prefix": ">> "}},
                {"function_name": "explode", "action": "explode"},
                {"function_name": "shout", "action": "shout"},
                {"function_name": "refund", "action": "refund", "backend_config": {"queue": "refunds"}},
                {"function_name": "login", "action": "login", "prerequisite_scope": "entire_session"},
                {"function_name": "verify", "action": "login"},
                {"function_name": "checkout", "action": "checkout", "prerequisites": ["login", "verify"]},
            ],
        }
    ],
}


def _dispatcher(catalog: ActionCatalog | None = None) -> ActionDispatcher:
    actions = catalog or ActionCatalog()
    register_builtin_actions(actions)
    registry = CapabilityRegistry(parse_agent_catalog(CATALOG))
    return ActionDispatcher(registry, actions)


def _call(name: str, arguments: Any = None, call_id: str = "c1") -> ToolCall:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments or {})
    return ToolCall(id=call_id, name=name, arguments=raw)


def _error(result: DispatchResult) -> dict[str, Any]:
    assert not result.success
    return json.loads(result.outcome.result_json)


@pytest.mark.asyncio
async def test_native_action_receives_binding_config() -> None:
    result = await _dispatcher().dispatch("clerk", _call("echo", {"text": "hi"}))

    assert result.success
    assert json.loads(result.outcome.result_json) == {"text": ">> hi"}
    assert result.to_payload()["call_id"] == "c1"


@pytest.mark.asyncio
async def test_schema_violation_never_invokes_the_action() -> None:
    invoked: list[str] = []
    actions = ActionCatalog()

    @actions.register_native("explode")
    def explode(arguments_json: str, backend_config_json: str) -> ActionOutcome:
        invoked.append(arguments_json)
        return ActionOutcome.ok("boom")

    dispatcher = _dispatcher(actions)
    missing = await dispatcher.dispatch("clerk", _call("echo", {}))
    wrong_type = await dispatcher.dispatch("clerk", _call("echo", {"text": 5}))
    not_json = await dispatcher.dispatch("clerk", _call("echo", "{not json"))

    for result in (missing, wrong_type, not_json):
        assert _error(result)["error"] == "invalid_arguments"
    assert invoked == []


@pytest.mark.asyncio
async def test_unknown_function_is_a_structured_result() -> None:
    result = await _dispatcher().dispatch("clerk", _call("teleport"))

    assert _error(result)["error"] == "unknown_capability"


@pytest.mark.asyncio
async def test_action_exception_becomes_failure_result() -> None:
    actions = ActionCatalog()

    @actions.register_native("explode")
    def explode(arguments_json: str, backend_config_json: str) -> ActionOutcome:
        raise RuntimeError("kaboom")

    result = await _dispatcher(actions).dispatch("clerk", _call("explode"))

    assert "kaboom" in (result.outcome.error_message or "")
    assert _error(result)["error"] == "action_failed"


@pytest.mark.asyncio
async def test_async_handlers_and_tuple_results_are_supported() -> None:
    actions = ActionCatalog()

    async def explode(arguments_json: str, backend_config_json: str) -> tuple[str, bool, str | None]:
        return '{"async": true}', True, None

    actions.register_native("explode", explode)
    result = await _dispatcher(actions).dispatch("clerk", _call("explode"))

    assert result.success
    assert json.loads(result.outcome.result_json) == {"async": True}


@pytest.mark.asyncio
async def test_custom_code_is_imported_from_reference(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "shout_actions.py").write_text(
        "\n".join(
            [
                "import json",
                "",
                "def shout(arguments_json, backend_config_json):",
                "    text = json.loads(arguments_json).get('text', '')",
                "    return json.dumps({'text': text.upper()}), True, None",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.syspath_prepend(str(tmp_path))

    result = await _dispatcher().dispatch("clerk", _call("shout", {"text": "quiet"}))

    assert json.loads(result.outcome.result_json) == {"text": "QUIET"}


@pytest.mark.asyncio
async def test_registered_custom_handler_wins_over_import() -> None:
    actions = ActionCatalog()
    actions.register_custom(
        "shout_actions:shout", lambda arguments_json, config_json: ActionOutcome.ok({"via": "registry"})
    )

    result = await _dispatcher(actions).dispatch("clerk", _call("shout"))

    assert json.loads(result.outcome.result_json) == {"via": "registry"}


@pytest.mark.asyncio
async def test_workflow_without_runner_fails_cleanly() -> None:
    result = await _dispatcher().dispatch("clerk", _call("refund"))

    assert "no workflow runner" in (result.outcome.error_message or "")


@pytest.mark.asyncio
async def test_workflow_runner_gets_name_arguments_and_config() -> None:
    seen: list[tuple[str, str, str]] = []

    class Runner:
        def run(self, workflow_name: str, arguments_json: str, backend_config_json: str) -> ActionOutcome:
            seen.append((workflow_name, arguments_json, backend_config_json))
            return ActionOutcome.ok({"status": "queued"})

    actions = ActionCatalog()
    actions.set_workflow_runner(Runner())
    result = await _dispatcher(actions).dispatch("clerk", _call("refund", {"order": "o1"}))

    assert result.success
    assert seen == [("refund_flow", '{"order": "o1"}', '{"queue": "refunds"}')]


def test_prerequisites_follow_their_own_scope() -> None:
    dispatcher = _dispatcher()
    checkout = _call("checkout")

    blocked = dispatcher.prepare("clerk", checkout)
    assert isinstance(blocked, DispatchResult)
    assert _error(blocked)["missing"] == ["login", "verify"]

    same_turn = dispatcher.prepare("clerk", checkout, executed_this_turn=["login", "verify"])
    assert not isinstance(same_turn, DispatchResult)

    login_from_earlier_turn = dispatcher.prepare(
        "clerk", checkout, executed_this_turn=["verify"], satisfied_in_session={"login"}
    )
    assert not isinstance(login_from_earlier_turn, DispatchResult)

    verify_from_earlier_turn = dispatcher.prepare(
        "clerk", checkout, executed_this_turn=["login"], satisfied_in_session={"verify"}
    )
    assert isinstance(verify_from_earlier_turn, DispatchResult)
    assert _error(verify_from_earlier_turn)["missing"] == ["verify"]


def test_validate_returns_arguments_or_refusal() -> None:
    capability = CapabilityRegistry(parse_agent_catalog(CATALOG)).resolve("clerk", "echo")

    parsed = ActionDispatcher.validate(capability, '{"text": "hi"}')
    refused = ActionDispatcher.validate(capability, "[1, 2]")

    assert parsed == {"text": "hi"}
    assert isinstance(refused, ActionOutcome)
    assert not refused.success
    assert json.loads(refused.result_json)["message"] == "arguments must be a JSON object"
