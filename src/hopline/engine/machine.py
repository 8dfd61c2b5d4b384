"""Step state machine: runs one hop of a turn and persists exactly one step for it."""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, assert_never

from loguru import logger

from hopline.actions import ActionDispatcher, ActionOutcome, DispatchResult
from hopline.agents import AgentConfig
from hopline.bus import BusProtocol
from hopline.capabilities import CapabilityRegistry
from hopline.config import Settings
from hopline.confirmation import ConfirmationDecision, ConfirmationGate
from hopline.errors import (
    DuplicateStepError,
    InvalidTransitionError,
    ModelCallError,
    OutOfOrderStepError,
    SessionNotFoundError,
    StaleTurnError,
)
from hopline.events import FinalResult, OrchestrationEvent
from hopline.hooks import ErrorObservers
from hopline.logging_utils import turn_scope
from hopline.memory import SummaryBuffer, build_memory_strategy
from hopline.model import ModelClient, ModelRequest, ModelResponse, complete_with_retry
from hopline.notifier import TransientNotifier
from hopline.store import EngineStore, HopCommit
from hopline.types import (
    ChatMessage,
    ExecutionStep,
    PendingAction,
    PrerequisiteScope,
    ProcessingStatus,
    Role,
    Session,
    StepType,
    ToolCall,
    Turn,
)

TRANSITIONS: frozenset[tuple[ProcessingStatus, ProcessingStatus]] = frozenset(
    {
        (ProcessingStatus.IDLE, ProcessingStatus.PROCESSING),
        (ProcessingStatus.PROCESSING, ProcessingStatus.PROCESSING),
        (ProcessingStatus.PROCESSING, ProcessingStatus.AWAITING_ACTION),
        (ProcessingStatus.PROCESSING, ProcessingStatus.AWAITING_FOLLOWUP),
        (ProcessingStatus.PROCESSING, ProcessingStatus.IDLE),
        (ProcessingStatus.PROCESSING, ProcessingStatus.FAILED),
        (ProcessingStatus.AWAITING_ACTION, ProcessingStatus.PROCESSING),
        (ProcessingStatus.AWAITING_ACTION, ProcessingStatus.FAILED),
        (ProcessingStatus.AWAITING_FOLLOWUP, ProcessingStatus.PROCESSING),
        (ProcessingStatus.AWAITING_FOLLOWUP, ProcessingStatus.FAILED),
        (ProcessingStatus.FAILED, ProcessingStatus.IDLE),
    }
)
TERMINAL_STATUSES = frozenset({ProcessingStatus.IDLE, ProcessingStatus.FAILED})


def check_transition(current: ProcessingStatus, target: ProcessingStatus) -> None:
    if (current, target) not in TRANSITIONS:
        raise InvalidTransitionError(f"{current} -> {target}")


class HopOutcome(StrEnum):
    ADVANCED = "advanced"
    SUSPENDED = "suspended"
    FINALIZED = "finalized"
    FAILED = "failed"
    STALE = "stale"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class HopContext:
    event: OrchestrationEvent
    session: Session
    turn: Turn
    agent: AgentConfig

    @property
    def executed(self) -> list[str]:
        return [str(name) for name in self.event.payload.get("executed", [])]

    @property
    def model_calls(self) -> int:
        return int(self.event.payload.get("model_calls", 0))


@dataclass
class HopPlan:
    """The hop's single commit plus what to publish once it is durable."""

    commit: HopCommit
    outcome: HopOutcome
    next_event: OrchestrationEvent | None = None
    final_result: FinalResult | None = None


class StepStateMachine:
    """Executes orchestration events one hop at a time.

    A hop loads persisted state, does its work, commits one ExecutionStep at the event's
    sequence number together with every other write, then emits at most one successor
    event or publishes the turn's final result.
    """

    def __init__(
        self,
        *,
        store: EngineStore,
        registry: CapabilityRegistry,
        actions: ActionDispatcher,
        model: ModelClient,
        bus: BusProtocol,
        settings: Settings,
        observers: ErrorObservers | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._registry = registry
        self._actions = actions
        self._model = model
        self._bus = bus
        self._settings = settings
        self._observers = observers
        self._notifier = TransientNotifier(bus)
        self._clock = clock
        self._in_flight: set[str] = set()

    async def run_hop(self, event: OrchestrationEvent) -> HopOutcome:
        # A redelivered hop may arrive while the original is still working; only one may run.
        if event.hop_id in self._in_flight:
            logger.info("hop.discarded hop={} reason=already running", event.hop_id)
            return HopOutcome.DUPLICATE
        self._in_flight.add(event.hop_id)
        try:
            return await self._run_claimed(event)
        finally:
            self._in_flight.discard(event.hop_id)

    async def _run_claimed(self, event: OrchestrationEvent) -> HopOutcome:
        scope = logger.contextualize(turn=event.turn_identifier, step=str(event.next_step_type))
        with turn_scope(event.turn_identifier), scope:
            logger.info("hop.start step={} seq={}", event.next_step_type, event.sequence_number)
            try:
                context = self._load(event)
                plan = await self._plan(context)
                outcome = await self._apply(plan)
            except StaleTurnError as exc:
                logger.info("hop.stale seq={} reason={}", event.sequence_number, exc)
                return HopOutcome.STALE
            except (DuplicateStepError, OutOfOrderStepError) as exc:
                logger.info("hop.discarded seq={} reason={}", event.sequence_number, exc)
                return HopOutcome.DUPLICATE
            except SessionNotFoundError as exc:
                logger.warning("hop.session_missing session={} error={}", event.session_id, exc)
                return HopOutcome.STALE
            except Exception as exc:
                logger.exception("hop.error seq={}", event.sequence_number)
                if self._observers is not None:
                    await self._observers.notify(stage=f"hop:{event.next_step_type}", error=exc, event=event)
                return await self.fail_turn(event, f"{type(exc).__name__}: {exc}")
            logger.info("hop.end seq={} outcome={}", event.sequence_number, outcome)
            return outcome

    async def fail_turn(self, event: OrchestrationEvent, error: str) -> HopOutcome:
        """Move the turn to Failed at the next free sequence number, once."""
        turn = self._store.get_turn(event.turn_identifier)
        if turn is None or turn.processing_status in TERMINAL_STATUSES:
            logger.info("hop.fail_skipped turn={} error={}", event.turn_identifier, error)
            return HopOutcome.STALE
        failure = event.model_copy(
            update={
                "next_step_type": StepType.FAILED,
                "sequence_number": self._store.last_sequence(event.turn_identifier) + 1,
                "payload": {"error": error},
            }
        )
        try:
            return await self._apply(self._failed(failure, turn, error))
        except (StaleTurnError, DuplicateStepError, OutOfOrderStepError, SessionNotFoundError) as exc:
            logger.info("hop.fail_discarded turn={} reason={}", event.turn_identifier, exc)
            return HopOutcome.STALE

    def _load(self, event: OrchestrationEvent) -> HopContext:
        session = self._store.require_session(event.session_id)
        if session.turn_count != event.turn_count or session.active_turn_identifier != event.turn_identifier:
            raise StaleTurnError(f"session is at turn {session.turn_count} ({session.active_turn_identifier})")
        turn = self._store.get_turn(event.turn_identifier)
        if turn is None:
            raise StaleTurnError(f"turn {event.turn_identifier} no longer exists")

        last = self._store.last_sequence(event.turn_identifier)
        if event.sequence_number <= last:
            raise DuplicateStepError(f"step {event.sequence_number} already applied (last={last})")
        if event.sequence_number != last + 1:
            raise OutOfOrderStepError(f"step {event.sequence_number} does not follow {last}")
        if turn.processing_status in TERMINAL_STATUSES or turn.processing_status is ProcessingStatus.AWAITING_ACTION:
            raise DuplicateStepError(f"turn is {turn.processing_status}")
        return HopContext(event=event, session=session, turn=turn, agent=self._registry.agent(session.agent_id))

    async def _apply(self, plan: HopPlan) -> HopOutcome:
        self._store.commit_hop(plan.commit)
        if plan.next_event is not None:
            await self._bus.publish_orchestration(plan.next_event)
        if plan.final_result is not None:
            await self._bus.publish_final_result(plan.final_result)
        return plan.outcome

    async def _plan(self, context: HopContext) -> HopPlan:
        step_type = context.event.next_step_type
        match step_type:
            case StepType.PREPARE_MODEL_CALL:
                return await self._prepare_model_call(context)
            case StepType.MODEL_RESPONSE_RECEIVED:
                return self._model_response_received(context)
            case StepType.DISPATCH_ACTIONS:
                return await self._dispatch_actions(context)
            case StepType.ACTION_RESULT_RECEIVED:
                return self._action_result_received(context)
            case StepType.PREPARE_FOLLOWUP:
                return await self._prepare_model_call(context)
            case StepType.FINALIZE:
                return self._finalize(context)
            case StepType.FAILED:
                return self._failed(context.event, context.turn, str(context.event.payload["error"]))
            case _:
                assert_never(step_type)

    # Hops

    async def _prepare_model_call(self, context: HopContext) -> HopPlan:
        event = context.event
        check_transition(context.turn.processing_status, ProcessingStatus.PROCESSING)

        limit = self._settings.max_model_calls_per_turn
        if context.model_calls >= limit:
            detail = {"model_calls": context.model_calls}
            return self._step_then_fail(context, f"max_model_calls_reached={limit}", detail)

        await self._notify(context, "thinking", "Thinking...")
        strategy = build_memory_strategy(context.agent.memory)
        memory = strategy.assemble(self._store.messages(event.session_id), context.session)
        summary_update: tuple[str, int] | None = None
        try:
            pending = memory.pending_summary
            if pending is not None and isinstance(strategy, SummaryBuffer):
                summary = await self._complete(strategy.summary_request(pending))
                memory = strategy.apply_summary(memory, summary.content)
                summary_update = (memory.summary, pending.through_id)
            request = ModelRequest(
                system_prompt=context.agent.system_prompt,
                messages=memory.to_model_messages(),
                tools=self._registry.model_tools(context.agent.developer_name),
            )
            response = await self._complete(request)
        except ModelCallError as exc:
            return self._step_then_fail(context, str(exc), {"model_calls": context.model_calls + 1})

        return self._model_answered(context, response, summary_update, len(request.messages))

    def _model_answered(
        self,
        context: HopContext,
        response: ModelResponse,
        summary_update: tuple[str, int] | None,
        context_size: int,
    ) -> HopPlan:
        event = context.event
        model_calls = context.model_calls + 1
        calls = [call.to_payload() for call in response.tool_calls]
        message_id = f"msg-{event.turn_identifier}-{event.sequence_number}"
        assistant = ChatMessage(
            session_id=event.session_id,
            role=Role.ASSISTANT,
            content=response.content,
            external_id=message_id,
            timestamp=self._clock(),
            turn_identifier=event.turn_identifier,
            tool_calls_data=json.dumps(calls, ensure_ascii=False) if calls else None,
        )
        commit = self._commit(
            context,
            {
                "model_calls": model_calls,
                "context_messages": context_size,
                "summarized": summary_update is not None,
                "assistant_message_id": message_id,
                "tool_calls": len(calls),
            },
            status=ProcessingStatus.PROCESSING,
            messages=[assistant],
            summary=summary_update,
        )
        successor = event.successor(
            StepType.MODEL_RESPONSE_RECEIVED,
            {
                "assistant_message_id": message_id,
                "content": response.content,
                "tool_calls": calls,
                "executed": context.executed,
                "model_calls": model_calls,
            },
        )
        return HopPlan(commit=commit, outcome=HopOutcome.ADVANCED, next_event=successor)

    def _model_response_received(self, context: HopContext) -> HopPlan:
        payload = context.event.payload
        calls = list(payload["tool_calls"])
        commit = self._commit(
            context,
            {"assistant_message_id": payload["assistant_message_id"], "tool_calls": len(calls)},
            status=ProcessingStatus.PROCESSING,
        )
        if calls:
            successor = context.event.successor(
                StepType.DISPATCH_ACTIONS,
                {"tool_calls": calls, "results": [], "executed": context.executed, "model_calls": context.model_calls},
            )
        else:
            successor = context.event.successor(
                StepType.FINALIZE,
                {"final_message_id": payload["assistant_message_id"], "content": payload["content"]},
            )
        return HopPlan(commit=commit, outcome=HopOutcome.ADVANCED, next_event=successor)

    async def _dispatch_actions(self, context: HopContext) -> HopPlan:
        event = context.event
        agent_id = context.agent.developer_name
        calls = [ToolCall.from_payload(item) for item in event.payload["tool_calls"]]
        results: list[dict[str, Any]] = list(event.payload.get("results", []))
        executed = context.executed
        confirmation = event.payload.get("confirmation")
        satisfied = self._store.satisfied_capabilities(event.session_id)

        messages: list[ChatMessage] = []
        newly_satisfied: list[str] = []
        dispatched: list[str] = []

        for index, call in enumerate(calls):
            if confirmation and call.id == confirmation.get("call_id"):
                result = await self._resume_confirmed(context, call, confirmation, executed, satisfied)
            else:
                prepared = self._actions.prepare(
                    agent_id, call, executed_this_turn=executed, satisfied_in_session=satisfied
                )
                if isinstance(prepared, DispatchResult):
                    result = prepared
                elif ConfirmationGate.requires_confirmation(prepared):
                    pending = ConfirmationGate.suspend(
                        prepared,
                        deferred=calls[index + 1 :],
                        results=results,
                        executed=executed,
                        model_calls=context.model_calls,
                    )
                    check_transition(context.turn.processing_status, ProcessingStatus.AWAITING_ACTION)
                    await self._notify(context, "confirm", ConfirmationGate.prompt(pending))
                    logger.info("hop.suspended call={} name={}", call.id, call.name)
                    commit = self._commit(
                        context,
                        {"dispatched": dispatched, "suspended_call_id": call.id, "deferred": len(pending.deferred)},
                        status=ProcessingStatus.AWAITING_ACTION,
                        pending_action=pending,
                        messages=messages,
                        satisfied=newly_satisfied,
                    )
                    return HopPlan(commit=commit, outcome=HopOutcome.SUSPENDED)
                else:
                    await self._notify(context, f"run:{call.id}", f"Running {call.name}...")
                    result = await self._actions.execute(prepared)

            dispatched.append(call.id)
            results.append(result.to_payload())
            messages.append(self._tool_message(context, result))
            if result.success:
                executed.append(call.name)
                capability = self._registry.get(agent_id, call.name)
                if capability is not None and capability.binding.prerequisite_scope is PrerequisiteScope.ENTIRE_SESSION:
                    newly_satisfied.append(call.name)

        step_payload: dict[str, Any] = {
            "dispatched": dispatched,
            "succeeded": sum(1 for item in results if item.get("success")),
            "failed": sum(1 for item in results if not item.get("success")),
        }
        if confirmation:
            step_payload["confirmation"] = confirmation
        commit = self._commit(
            context,
            step_payload,
            status=ProcessingStatus.PROCESSING,
            clear_pending=bool(confirmation),
            messages=messages,
            satisfied=newly_satisfied,
        )
        successor = event.successor(
            StepType.ACTION_RESULT_RECEIVED,
            {"results": results, "executed": executed, "model_calls": context.model_calls},
        )
        return HopPlan(commit=commit, outcome=HopOutcome.ADVANCED, next_event=successor)

    async def _resume_confirmed(
        self,
        context: HopContext,
        call: ToolCall,
        confirmation: dict[str, Any],
        executed: list[str],
        satisfied: set[str],
    ) -> DispatchResult:
        pending = context.turn.pending_action
        if pending is None or pending.call.id != call.id:
            logger.warning("hop.confirmation_missing call={}", call.id)
            return DispatchResult(
                call,
                ActionOutcome.failure("No pending confirmation for this call.", kind="confirmation_missing"),
            )
        if confirmation.get("decision") != ConfirmationDecision.APPROVE:
            logger.info("hop.confirmation_denied call={} name={}", call.id, call.name)
            return ConfirmationGate.declined(pending.call)

        # Run exactly what was shown to the user, not whatever the resume event carries.
        prepared = self._actions.prepare(
            context.agent.developer_name,
            pending.call,
            executed_this_turn=executed,
            satisfied_in_session=satisfied,
        )
        if isinstance(prepared, DispatchResult):
            return prepared
        await self._notify(context, f"run:{call.id}", f"Running {call.name}...")
        return await self._actions.execute(prepared)

    def _action_result_received(self, context: HopContext) -> HopPlan:
        results = list(context.event.payload["results"])
        check_transition(context.turn.processing_status, ProcessingStatus.AWAITING_FOLLOWUP)
        commit = self._commit(
            context,
            {"results": len(results), "failed": sum(1 for item in results if not item.get("success"))},
            status=ProcessingStatus.AWAITING_FOLLOWUP,
        )
        successor = context.event.successor(
            StepType.PREPARE_FOLLOWUP,
            {"executed": context.executed, "model_calls": context.model_calls},
        )
        return HopPlan(commit=commit, outcome=HopOutcome.ADVANCED, next_event=successor)

    def _finalize(self, context: HopContext) -> HopPlan:
        event = context.event
        check_transition(context.turn.processing_status, ProcessingStatus.IDLE)
        final_message_id = str(event.payload["final_message_id"])
        commit = self._commit(
            context,
            {"final_message_id": final_message_id},
            status=ProcessingStatus.IDLE,
            clear_pending=True,
        )
        final = FinalResult(
            session_id=event.session_id,
            turn_identifier=event.turn_identifier,
            success=True,
            final_message_content=str(event.payload["content"]),
            final_message_id=final_message_id,
        )
        return HopPlan(commit=commit, outcome=HopOutcome.FINALIZED, final_result=final)

    def _failed(self, event: OrchestrationEvent, turn: Turn, error: str) -> HopPlan:
        check_transition(turn.processing_status, ProcessingStatus.FAILED)
        message = ChatMessage(
            session_id=event.session_id,
            role=Role.SYSTEM,
            content=f"System Error: {error}",
            external_id=f"error-{event.turn_identifier}-{event.sequence_number}",
            timestamp=self._clock(),
            turn_identifier=event.turn_identifier,
            is_system_error=True,
        )
        commit = HopCommit(
            session_id=event.session_id,
            turn_count=event.turn_count,
            step=ExecutionStep(
                turn_identifier=event.turn_identifier,
                sequence_number=event.sequence_number,
                step_type=StepType.FAILED,
                payload={"error": error},
                created_at=self._clock(),
            ),
            status=ProcessingStatus.FAILED,
            clear_pending=True,
            messages=[message],
        )
        final = FinalResult(
            session_id=event.session_id,
            turn_identifier=event.turn_identifier,
            success=False,
            error_details=error,
        )
        logger.warning("turn.failed turn={} error={}", event.turn_identifier, error)
        return HopPlan(commit=commit, outcome=HopOutcome.FAILED, final_result=final)

    # Helpers

    def _step_then_fail(self, context: HopContext, error: str, payload: dict[str, Any]) -> HopPlan:
        """Record this hop's step and hand the turn to a Failed hop."""
        commit = self._commit(context, {**payload, "error": error}, status=ProcessingStatus.PROCESSING)
        successor = context.event.successor(StepType.FAILED, {"error": error})
        return HopPlan(commit=commit, outcome=HopOutcome.ADVANCED, next_event=successor)

    def _commit(
        self,
        context: HopContext,
        payload: dict[str, Any],
        *,
        status: ProcessingStatus | None = None,
        pending_action: PendingAction | None = None,
        clear_pending: bool = False,
        messages: list[ChatMessage] | None = None,
        satisfied: list[str] | None = None,
        summary: tuple[str, int] | None = None,
    ) -> HopCommit:
        event = context.event
        return HopCommit(
            session_id=event.session_id,
            turn_count=event.turn_count,
            step=ExecutionStep(
                turn_identifier=event.turn_identifier,
                sequence_number=event.sequence_number,
                step_type=event.next_step_type,
                payload=payload,
                created_at=self._clock(),
            ),
            status=status,
            pending_action=pending_action,
            clear_pending=clear_pending,
            messages=messages or [],
            satisfied_capabilities=satisfied or [],
            summary=summary,
        )

    def _tool_message(self, context: HopContext, result: DispatchResult) -> ChatMessage:
        event = context.event
        return ChatMessage(
            session_id=event.session_id,
            role=Role.TOOL,
            content=result.outcome.result_json,
            external_id=f"tool-{event.turn_identifier}-{event.sequence_number}-{result.call.id}",
            timestamp=self._clock(),
            turn_identifier=event.turn_identifier,
            tool_result_data=json.dumps(result.to_payload(), ensure_ascii=False),
            tool_call_id=result.call.id,
            tool_name=result.call.name,
        )

    async def _complete(self, request: ModelRequest) -> ModelResponse:
        return await complete_with_retry(
            self._model,
            request,
            max_attempts=self._settings.model_max_attempts,
            backoff_seconds=self._settings.model_backoff_seconds,
            timeout_seconds=self._settings.model_timeout_seconds,
        )

    async def _notify(self, context: HopContext, suffix: str, content: str) -> None:
        event = context.event
        await self._notifier.notify(
            event.session_id,
            TransientNotifier.message_id(event.turn_identifier, event.sequence_number, suffix),
            content,
            enabled=context.agent.transient_messages_enabled,
        )
