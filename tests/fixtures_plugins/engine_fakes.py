"""Fakes shared by the engine tests: a scripted model, a recording action plugin, bus capture."""

from __future__ import annotations

import json
from typing import Any

from hopline.actions import ActionCatalog, ActionOutcome
from hopline.app import Hopline
from hopline.events import FinalResult, OrchestrationEvent, TransientMessage
from hopline.hooks import hookimpl
from hopline.model import ModelRequest, ModelResponse
from hopline.types import ToolCall

TEST_CATALOG: dict[str, Any] = {
    "actions": [
        {
            "name": "echo",
            "implementation_kind": "native",
            "implementation_ref": "echo",
            "input_schema": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
        },
        {"name": "authenticate", "implementation_kind": "native", "implementation_ref": "authenticate"},
        {"name": "lookup_order", "implementation_kind": "native", "implementation_ref": "lookup_order"},
        {"name": "verify_identity", "implementation_kind": "native", "implementation_ref": "verify_identity"},
        {"name": "place_order", "implementation_kind": "native", "implementation_ref": "place_order"},
        {
            "name": "delete_record",
            "implementation_kind": "native",
            "implementation_ref": "delete_record",
            "input_schema": {
                "type": "object",
                "properties": {"record_id": {"type": "string"}},
                "required": ["record_id"],
            },
        },
    ],
    "agents": [
        {
            "developer_name": "assistant",
            "label": "Assistant",
            "system_prompt": "You help with orders.",
            "welcome_message": "Hello! Ask me about your orders.",
            "memory": {"strategy": "buffer_window", "size": 50},
            "capabilities": [
                {"function_name": "echo", "action": "echo"},
                {"function_name": "authenticate", "action": "authenticate", "prerequisite_scope": "entire_session"},
                {"function_name": "lookup_order", "action": "lookup_order", "prerequisites": ["authenticate"]},
                {"function_name": "verify_identity", "action": "verify_identity"},
                {"function_name": "place_order", "action": "place_order", "prerequisites": ["verify_identity"]},
                {"function_name": "delete_record", "action": "delete_record", "requires_confirmation": True},
            ],
        },
        {
            "developer_name": "quiet",
            "transient_messages_enabled": False,
            "capabilities": [{"function_name": "echo", "action": "echo"}],
        },
        {
            "developer_name": "summarizer",
            "memory": {"strategy": "summary_buffer", "retention_turns": 1, "threshold_messages": 3},
        },
    ],
}


class ScriptedModel:
    """Answers turn requests from a script; summary requests get a fixed summary."""

    def __init__(self) -> None:
        self.script: list[ModelResponse | Exception] = []
        self.default = ModelResponse(content="done")
        self.requests: list[ModelRequest] = []

    def reply(self, *items: ModelResponse | Exception) -> None:
        self.script.extend(items)

    async def complete(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if request.purpose == "summary":
            return ModelResponse(content="SUMMARY")
        if not self.script:
            return self.default
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class RecordingActions:
    """Plugin registering the native test actions and recording every invocation."""

    NAMES = ("authenticate", "lookup_order", "verify_identity", "place_order", "delete_record")

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.errors: list[tuple[str, Exception]] = []

    @hookimpl
    def register_actions(self, catalog: ActionCatalog) -> None:
        for name in self.NAMES:
            catalog.register_native(name, self._handler(name))

    @hookimpl
    def on_error(self, stage: str, error: Exception) -> None:
        self.errors.append((stage, error))

    def _handler(self, name: str):
        def handler(arguments_json: str, backend_config_json: str) -> ActionOutcome:
            arguments = json.loads(arguments_json)
            self.calls.append((name, arguments))
            return ActionOutcome.ok({"action": name, "ok": True})

        return handler

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class Clock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


class BusRecorder:
    def __init__(self, hopline: Hopline) -> None:
        self.finals: list[FinalResult] = []
        self.transients: list[TransientMessage] = []
        self.events: list[OrchestrationEvent] = []
        hopline.bus.on_final_result(self._final)
        hopline.bus.on_transient(self._transient)
        hopline.bus.on_orchestration(self._orchestration)

    async def _final(self, result: FinalResult) -> None:
        self.finals.append(result)

    async def _transient(self, message: TransientMessage) -> None:
        self.transients.append(message)

    async def _orchestration(self, batch: Any) -> None:
        self.events.extend(item for item in batch if isinstance(item, OrchestrationEvent))


def call(name: str, call_id: str = "call-1", **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=json.dumps(arguments))


def tool_response(*calls: ToolCall, content: str = "") -> ModelResponse:
    return ModelResponse(content=content, tool_calls=list(calls))
