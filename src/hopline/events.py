"""Bus message models."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hopline.errors import EventValidationError
from hopline.types import StepType

REQUIRED_PAYLOAD_KEYS: dict[StepType, tuple[str, ...]] = {
    StepType.PREPARE_MODEL_CALL: (),
    StepType.MODEL_RESPONSE_RECEIVED: ("assistant_message_id", "content", "tool_calls"),
    StepType.DISPATCH_ACTIONS: ("tool_calls",),
    StepType.ACTION_RESULT_RECEIVED: ("results",),
    StepType.PREPARE_FOLLOWUP: (),
    StepType.FINALIZE: ("final_message_id", "content"),
    StepType.FAILED: ("error",),
}


class OrchestrationEvent(BaseModel):
    """Durable description of the next hop of a turn.

    Carries everything the hop needs besides persisted rows, so it can run in a fresh
    process with no memory of the previous hop.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    turn_identifier: str = Field(..., min_length=1)
    turn_count: int = Field(..., ge=1)
    next_step_type: StepType
    sequence_number: int = Field(..., ge=1)
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def hop_id(self) -> str:
        return f"{self.turn_identifier}:{self.sequence_number}"

    def successor(self, step_type: StepType, payload: dict[str, Any]) -> OrchestrationEvent:
        return self.model_copy(
            update={
                "next_step_type": step_type,
                "sequence_number": self.sequence_number + 1,
                "payload": payload,
            }
        )


class FinalResult(BaseModel):
    """Authoritative outcome of one turn, published once per turn."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    turn_identifier: str
    success: bool
    final_message_content: str | None = None
    final_message_id: str | None = None
    error_details: str | None = None


class TransientMessage(BaseModel):
    """Best-effort progress notification; consumers dedupe by message_id."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    message_id: str
    content: str


def validate_event(raw: OrchestrationEvent | Mapping[str, Any]) -> OrchestrationEvent:
    """Parse one bus message and check the payload keys its step type needs."""

    if isinstance(raw, OrchestrationEvent):
        event = raw
    else:
        try:
            event = OrchestrationEvent.model_validate(dict(raw))
        except ValidationError as exc:
            raise EventValidationError(str(exc)) from exc
        except (TypeError, ValueError) as exc:
            raise EventValidationError(f"event is not a mapping: {exc}") from exc

    missing = [key for key in REQUIRED_PAYLOAD_KEYS[event.next_step_type] if key not in event.payload]
    if missing:
        raise EventValidationError(f"{event.next_step_type} event is missing payload keys: {', '.join(missing)}")
    if event.next_step_type is StepType.DISPATCH_ACTIONS and not event.payload["tool_calls"]:
        raise EventValidationError("dispatch_actions event carries no tool calls")
    return event
