"""Built-in native actions."""

from __future__ import annotations

import json
from datetime import UTC, datetime

from hopline.actions.catalog import ActionCatalog, ActionOutcome


def register_builtin_actions(catalog: ActionCatalog) -> None:
    """Register native actions that ship with Hopline."""

    @catalog.register_native("echo")
    def echo(arguments_json: str, backend_config_json: str) -> ActionOutcome:
        arguments = json.loads(arguments_json or "{}")
        config = json.loads(backend_config_json or "{}")
        prefix = config.get("prefix")
        if prefix and isinstance(arguments.get("text"), str):
            arguments["text"] = f"{prefix}{arguments['text']}"
        return ActionOutcome.ok(arguments)

    @catalog.register_native("current_time")
    def current_time(arguments_json: str, backend_config_json: str) -> ActionOutcome:
        _ = arguments_json, backend_config_json
        return ActionOutcome.ok({"now": datetime.now(UTC).isoformat()})
