"""Core records shared by the engine, the store and the service layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ProcessingStatus(StrEnum):
    IDLE = "idle"
    PROCESSING = "processing"
    AWAITING_ACTION = "awaiting_action"
    AWAITING_FOLLOWUP = "awaiting_followup"
    FAILED = "failed"


class StepType(StrEnum):
    PREPARE_MODEL_CALL = "prepare_model_call"
    MODEL_RESPONSE_RECEIVED = "model_response_received"
    DISPATCH_ACTIONS = "dispatch_actions"
    ACTION_RESULT_RECEIVED = "action_result_received"
    PREPARE_FOLLOWUP = "prepare_followup"
    FINALIZE = "finalize"
    FAILED = "failed"


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class PrerequisiteScope(StrEnum):
    CURRENT_TURN_ONLY = "current_turn_only"
    ENTIRE_SESSION = "entire_session"


class ImplementationKind(StrEnum):
    NATIVE = "native"
    CUSTOM_CODE = "custom_code"
    WORKFLOW = "workflow"


@dataclass(frozen=True)
class ToolCall:
    """One function call requested by the model."""

    id: str
    name: str
    arguments: str = "{}"

    def to_payload(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ToolCall:
        arguments = data.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        return cls(id=str(data["id"]), name=str(data["name"]), arguments=arguments)

    def to_model(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class PendingAction:
    """A call held back by the confirmation gate, plus everything needed to resume the batch."""

    call: ToolCall
    deferred: tuple[ToolCall, ...] = ()
    results: tuple[dict[str, Any], ...] = ()
    executed: tuple[str, ...] = ()
    model_calls: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "call": self.call.to_payload(),
            "deferred": [call.to_payload() for call in self.deferred],
            "results": list(self.results),
            "executed": list(self.executed),
            "model_calls": self.model_calls,
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> PendingAction:
        return cls(
            call=ToolCall.from_payload(data["call"]),
            deferred=tuple(ToolCall.from_payload(item) for item in data.get("deferred", [])),
            results=tuple(data.get("results", [])),
            executed=tuple(data.get("executed", [])),
            model_calls=int(data.get("model_calls", 0)),
        )


@dataclass
class Session:
    session_id: str
    user_id: str
    agent_id: str
    created_at: float
    context_record_id: str | None = None
    turn_count: int = 0
    active_turn_identifier: str | None = None
    summary: str = ""
    summary_through_id: int = 0


@dataclass
class Turn:
    """The active user-message-to-final-answer cycle of one session."""

    session_id: str
    user_id: str
    agent_id: str
    turn_identifier: str
    turn_count: int
    processing_status: ProcessingStatus
    last_activity_at: float
    pending_action: PendingAction | None = None
    resume_reply_id: str | None = None


@dataclass(frozen=True)
class ExecutionStep:
    turn_identifier: str
    sequence_number: int
    step_type: StepType
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0


@dataclass
class ChatMessage:
    """Append-only conversation record."""

    session_id: str
    role: Role
    content: str
    external_id: str
    timestamp: float
    turn_identifier: str | None = None
    tool_calls_data: str | None = None
    tool_result_data: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_system_error: bool = False
    id: int | None = None

    @property
    def tool_calls(self) -> list[ToolCall]:
        if not self.tool_calls_data:
            return []
        try:
            raw = json.loads(self.tool_calls_data)
        except json.JSONDecodeError:
            return []
        if not isinstance(raw, list):
            return []
        return [ToolCall.from_payload(item) for item in raw if isinstance(item, dict) and "id" in item]
