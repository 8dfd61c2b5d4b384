"""Confirmation gate for capabilities that need explicit user approval."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from enum import StrEnum
from typing import Any

from hopline.actions import ActionOutcome, DispatchResult, PreparedCall
from hopline.types import PendingAction, ToolCall

AFFIRMATIVE_REPLIES = frozenset(
    {"yes", "y", "ok", "okay", "sure", "approve", "approved", "confirm", "confirmed", "proceed", "go ahead", "do it"}
)
NEGATIVE_REPLIES = frozenset(
    {"no", "n", "nope", "deny", "denied", "decline", "declined", "cancel", "stop", "reject", "don't", "do not"}
)
_PUNCTUATION = re.compile(r"[^\w\s']+")


class ConfirmationDecision(StrEnum):
    APPROVE = "approve"
    DENY = "deny"


class ConfirmationGate:
    """Suspends a dispatch batch at the first gated call and resumes it later."""

    @staticmethod
    def requires_confirmation(prepared: PreparedCall) -> bool:
        return prepared.capability.binding.requires_confirmation

    @staticmethod
    def suspend(
        prepared: PreparedCall,
        *,
        deferred: Sequence[ToolCall],
        results: Sequence[dict[str, Any]],
        executed: Sequence[str],
        model_calls: int,
    ) -> PendingAction:
        validated = ToolCall(
            id=prepared.call.id,
            name=prepared.call.name,
            arguments=json.dumps(prepared.arguments, ensure_ascii=False, sort_keys=True),
        )
        return PendingAction(
            call=validated,
            deferred=tuple(deferred),
            results=tuple(results),
            executed=tuple(executed),
            model_calls=model_calls,
        )

    @staticmethod
    def classify_reply(text: str) -> ConfirmationDecision | None:
        normalized = " ".join(_PUNCTUATION.sub(" ", text.casefold()).split())
        if normalized in AFFIRMATIVE_REPLIES:
            return ConfirmationDecision.APPROVE
        if normalized in NEGATIVE_REPLIES:
            return ConfirmationDecision.DENY
        return None

    @staticmethod
    def resume_payload(pending: PendingAction, decision: ConfirmationDecision, reply: str = "") -> dict[str, Any]:
        return {
            "tool_calls": [pending.call.to_payload(), *(call.to_payload() for call in pending.deferred)],
            "results": list(pending.results),
            "executed": list(pending.executed),
            "model_calls": pending.model_calls,
            "confirmation": {"call_id": pending.call.id, "decision": str(decision), "reply": reply},
        }

    @staticmethod
    def declined(call: ToolCall) -> DispatchResult:
        return DispatchResult(call, ActionOutcome.failure("The user declined this action.", kind="declined"))

    @staticmethod
    def prompt(pending: PendingAction) -> str:
        return (
            f"Confirmation required: {pending.call.name} with {pending.call.arguments}. "
            "Reply yes to approve or no to decline."
        )
