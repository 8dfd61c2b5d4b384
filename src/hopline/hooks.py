"""Pluggy hook namespace and extension hook specifications."""

from __future__ import annotations

import inspect
from typing import Any

import pluggy
from loguru import logger

from hopline.actions import ActionCatalog

HOPLINE_HOOK_NAMESPACE = "hopline"
hookspec = pluggy.HookspecMarker(HOPLINE_HOOK_NAMESPACE)
hookimpl = pluggy.HookimplMarker(HOPLINE_HOOK_NAMESPACE)


class HoplineHookSpecs:
    """Hook contract for Hopline extensions."""

    @hookspec
    def register_actions(self, catalog: ActionCatalog) -> None:
        """Register native or custom-code handlers, or a workflow runner."""

    @hookspec
    def on_error(self, stage: str, error: Exception, event: Any | None) -> None:
        """Observe failures from dispatching or running hops."""


def create_plugin_manager(plugins: list[Any] | None = None) -> pluggy.PluginManager:
    manager = pluggy.PluginManager(HOPLINE_HOOK_NAMESPACE)
    manager.add_hookspecs(HoplineHookSpecs)
    for plugin in plugins or []:
        manager.register(plugin)
    return manager


class ErrorObservers:
    """Calls on_error hooks, isolating observer failures."""

    def __init__(self, plugin_manager: pluggy.PluginManager) -> None:
        self._plugin_manager = plugin_manager

    async def notify(self, *, stage: str, error: Exception, event: Any | None = None) -> None:
        kwargs = {"stage": stage, "error": error, "event": event}
        for impl in reversed(self._plugin_manager.hook.on_error.get_hookimpls()):
            call_kwargs = {name: kwargs[name] for name in impl.argnames if name in kwargs}
            try:
                value = impl.function(**call_kwargs)
                if inspect.isawaitable(value):
                    await value
            except Exception:
                logger.opt(exception=True).warning(
                    "hook.on_error_failed stage={} adapter={}",
                    stage,
                    impl.plugin_name or "<unknown>",
                )
