"""Action implementations behind one calling convention.

Every implementation kind is invoked as ``handler(arguments_json, backend_config_json)`` and
answers with an :class:`ActionOutcome` (or an equivalent three-item tuple).
"""

from __future__ import annotations

import importlib
import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, NamedTuple, Protocol, assert_never

from hopline.agents import ActionDefinition
from hopline.errors import ActionExecutionError
from hopline.types import ImplementationKind


class ActionOutcome(NamedTuple):
    result_json: str
    success: bool
    error_message: str | None = None

    @classmethod
    def ok(cls, result: Any) -> ActionOutcome:
        return cls(result_json=_dump(result), success=True)

    @classmethod
    def failure(cls, message: str, *, kind: str = "action_failed", **details: Any) -> ActionOutcome:
        payload = {"error": kind, "message": message, **details}
        return cls(result_json=_dump(payload), success=False, error_message=message)


ActionHandler = Callable[[str, str], "ActionOutcome | tuple[str, bool, str | None] | Awaitable[Any]"]


class WorkflowRunner(Protocol):
    """External declarative-workflow engine."""

    def run(self, workflow_name: str, arguments_json: str, backend_config_json: str) -> Any: ...


@dataclass(frozen=True)
class ActionImplementation:
    """Tagged union over native, custom-code and workflow implementations."""

    kind: ImplementationKind
    ref: str
    handler: ActionHandler

    async def invoke(self, arguments_json: str, backend_config_json: str) -> ActionOutcome:
        value = self.handler(arguments_json, backend_config_json)
        if inspect.isawaitable(value):
            value = await value
        return _coerce_outcome(value)


class ActionCatalog:
    """Resolves action definitions to invokable implementations."""

    def __init__(self) -> None:
        self._native: dict[str, ActionHandler] = {}
        self._custom: dict[str, ActionHandler] = {}
        self._workflow_runner: WorkflowRunner | None = None

    def register_native(self, name: str, handler: ActionHandler | None = None) -> Any:
        """Register a native action; usable as a decorator."""

        def _register(func: ActionHandler) -> ActionHandler:
            self._native[name] = func
            return func

        if handler is not None:
            return _register(handler)
        return _register

    def register_custom(self, ref: str, handler: ActionHandler) -> None:
        self._custom[ref] = handler

    def set_workflow_runner(self, runner: WorkflowRunner) -> None:
        self._workflow_runner = runner

    @property
    def native_names(self) -> list[str]:
        return sorted(self._native)

    def implementation_for(self, action: ActionDefinition) -> ActionImplementation:
        kind = action.implementation_kind
        match kind:
            case ImplementationKind.NATIVE:
                native = self._native.get(action.implementation_ref)
                if native is None:
                    raise ActionExecutionError(f"no native action named {action.implementation_ref}")
                handler = native
            case ImplementationKind.CUSTOM_CODE:
                handler = self._custom.get(action.implementation_ref) or _load_reference(action.implementation_ref)
            case ImplementationKind.WORKFLOW:
                if self._workflow_runner is None:
                    raise ActionExecutionError(f"no workflow runner configured for {action.implementation_ref}")
                handler = partial(self._workflow_runner.run, action.implementation_ref)
            case _:
                assert_never(kind)
        return ActionImplementation(kind=kind, ref=action.implementation_ref, handler=handler)


def _load_reference(ref: str) -> ActionHandler:
    module_name, separator, attribute = ref.partition(":")
    if not separator or not module_name or not attribute:
        raise ActionExecutionError(f"custom code reference must look like module:attribute, got {ref!r}")
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ActionExecutionError(f"cannot import {module_name}: {exc}") from exc
    for part in attribute.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise ActionExecutionError(f"{ref} does not exist")
    if not callable(target):
        raise ActionExecutionError(f"{ref} is not callable")
    return target  # type: ignore[no-any-return]


def _coerce_outcome(value: Any) -> ActionOutcome:
    if isinstance(value, ActionOutcome):
        return value
    if isinstance(value, tuple) and len(value) == 3:
        result_json, success, error_message = value
        if not isinstance(result_json, str):
            result_json = _dump(result_json)
        return ActionOutcome(result_json, bool(success), error_message)
    raise ActionExecutionError(f"action returned {type(value).__name__}, expected (result_json, success, error)")


def _dump(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except TypeError:
        return json.dumps(str(value), ensure_ascii=False)
