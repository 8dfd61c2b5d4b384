"""Action dispatcher: validate, check prerequisites, invoke, report uniformly."""

from __future__ import annotations

import json
import time
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any

import jsonschema
from loguru import logger

from hopline.actions.catalog import ActionCatalog, ActionOutcome
from hopline.capabilities import CapabilityRegistry, ResolvedCapability
from hopline.errors import ActionExecutionError, PrerequisiteNotMetError, UnknownCapabilityError
from hopline.types import PrerequisiteScope, ToolCall


def _shorten_text(text: str, width: int = 30, placeholder: str = "...") -> str:
    if len(text) <= width:
        return text
    available = width - len(placeholder)
    if available <= 0:
        return placeholder
    return text[:available] + placeholder


@dataclass(frozen=True)
class PreparedCall:
    """A call that passed resolution, validation and prerequisite checks."""

    call: ToolCall
    capability: ResolvedCapability
    arguments: dict[str, Any]


@dataclass(frozen=True)
class DispatchResult:
    call: ToolCall
    outcome: ActionOutcome

    @property
    def success(self) -> bool:
        return self.outcome.success

    def to_payload(self) -> dict[str, Any]:
        return {
            "call_id": self.call.id,
            "name": self.call.name,
            "success": self.outcome.success,
            "result": self.outcome.result_json,
            "error": self.outcome.error_message,
        }


class ActionDispatcher:
    """Runs model-requested calls against the agent's capabilities."""

    def __init__(self, registry: CapabilityRegistry, catalog: ActionCatalog) -> None:
        self._registry = registry
        self._catalog = catalog

    def prepare(
        self,
        agent_id: str,
        call: ToolCall,
        *,
        executed_this_turn: Collection[str] = (),
        satisfied_in_session: Collection[str] = (),
    ) -> PreparedCall | DispatchResult:
        """Resolve and check one call; a DispatchResult means it must not run."""
        try:
            capability = self._registry.resolve(agent_id, call.name)
        except UnknownCapabilityError as exc:
            return DispatchResult(call, ActionOutcome.failure(str(exc), kind="unknown_capability"))

        arguments = self.validate(capability, call.arguments)
        if isinstance(arguments, ActionOutcome):
            return DispatchResult(call, arguments)

        try:
            self.check_prerequisites(
                capability,
                executed_this_turn=executed_this_turn,
                satisfied_in_session=satisfied_in_session,
            )
        except PrerequisiteNotMetError as exc:
            logger.info("action.prerequisite_not_met name={} missing={}", call.name, exc.missing)
            return DispatchResult(
                call,
                ActionOutcome.failure(str(exc), kind="prerequisite_not_met", missing=exc.missing),
            )
        return PreparedCall(call=call, capability=capability, arguments=arguments)

    @staticmethod
    def validate(capability: ResolvedCapability, arguments_json: str) -> dict[str, Any] | ActionOutcome:
        """Parsed arguments, or the invalid_arguments outcome explaining why they were refused."""
        try:
            arguments = json.loads(arguments_json or "{}")
        except json.JSONDecodeError as exc:
            return ActionOutcome.failure(f"arguments are not valid JSON: {exc.msg}", kind="invalid_arguments")
        if not isinstance(arguments, dict):
            return ActionOutcome.failure("arguments must be a JSON object", kind="invalid_arguments")

        schema = capability.input_schema
        validator = jsonschema.validators.validator_for(schema)(schema)
        errors = sorted(validator.iter_errors(arguments), key=lambda error: list(error.path))
        if errors:
            messages = [
                f"{'/'.join(str(part) for part in error.path) or '<root>'}: {error.message}" for error in errors
            ]
            return ActionOutcome.failure(
                "arguments do not match the input schema", kind="invalid_arguments", details=messages
            )
        return arguments

    def check_prerequisites(
        self,
        capability: ResolvedCapability,
        *,
        executed_this_turn: Collection[str],
        satisfied_in_session: Collection[str],
    ) -> None:
        missing: list[str] = []
        for name in capability.binding.prerequisites:
            if name in executed_this_turn:
                continue
            prerequisite = self._registry.get(capability.agent_id, name)
            scope = prerequisite.binding.prerequisite_scope if prerequisite is not None else None
            if scope is PrerequisiteScope.ENTIRE_SESSION and name in satisfied_in_session:
                continue
            missing.append(name)
        if missing:
            raise PrerequisiteNotMetError(capability.name, missing)

    async def execute(self, prepared: PreparedCall) -> DispatchResult:
        call = prepared.call
        self._log_call(call.name, prepared.arguments)
        arguments_json = json.dumps(prepared.arguments, ensure_ascii=False)
        start = time.monotonic()
        try:
            implementation = self._catalog.implementation_for(prepared.capability.action)
            outcome = await implementation.invoke(arguments_json, prepared.capability.backend_config_json)
        except ActionExecutionError as exc:
            logger.warning("action.call.error name={} error={}", call.name, exc)
            outcome = ActionOutcome.failure(str(exc))
        except Exception as exc:
            logger.exception("action.call.error name={}", call.name)
            outcome = ActionOutcome.failure(f"{type(exc).__name__}: {exc}")
        finally:
            duration = time.monotonic() - start
            logger.info("action.call.end name={} duration={:.3f}ms", call.name, duration * 1000)
        return DispatchResult(call, outcome)

    async def dispatch(
        self,
        agent_id: str,
        call: ToolCall,
        *,
        executed_this_turn: Collection[str] = (),
        satisfied_in_session: Collection[str] = (),
    ) -> DispatchResult:
        prepared = self.prepare(
            agent_id,
            call,
            executed_this_turn=executed_this_turn,
            satisfied_in_session=satisfied_in_session,
        )
        if isinstance(prepared, DispatchResult):
            return prepared
        return await self.execute(prepared)

    @staticmethod
    def _log_call(name: str, arguments: dict[str, Any]) -> None:
        params: list[str] = []
        for key, value in arguments.items():
            try:
                rendered = json.dumps(value, ensure_ascii=False)
            except TypeError:
                rendered = repr(value)
            params.append(f"{key}={_shorten_text(rendered)}")
        logger.info("action.call.start name={} {{ {} }}", name, ", ".join(params))
