"""Application wiring: one engine instance over one store and one bus."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from loguru import logger

from hopline.actions import ActionCatalog, ActionDispatcher, register_builtin_actions
from hopline.agents import AgentCatalog, load_agent_catalog_or_default
from hopline.bus import MessageBus
from hopline.capabilities import CapabilityRegistry
from hopline.config import Settings, get_settings
from hopline.engine import APSchedulerHopScheduler, HopScheduler, StepStateMachine, TurnDispatcher, WorkQueueScheduler
from hopline.engine.scheduler import HopRunner
from hopline.hooks import ErrorObservers, create_plugin_manager
from hopline.model import EchoModelClient, ModelClient
from hopline.service import ChatService
from hopline.store import EngineStore

SchedulerFactory = Callable[[HopRunner], HopScheduler]


def durable_scheduler(settings: Settings) -> SchedulerFactory:
    """APScheduler-backed scheduling, persisted to the JSON job store when one is configured."""

    def _factory(runner: HopRunner) -> HopScheduler:
        return APSchedulerHopScheduler(runner, jobstore_path=settings.jobstore_path)

    return _factory


class Hopline:
    """Wires settings, store, bus, actions, the state machine, scheduling and the chat service."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        catalog: AgentCatalog | None = None,
        model: ModelClient | None = None,
        scheduler_factory: SchedulerFactory | None = None,
        plugins: list[Any] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog or load_agent_catalog_or_default(self.settings.resolve_agents_file())
        self.store = EngineStore(self.settings.resolve_database_path())
        self.bus = MessageBus()
        self.plugin_manager = create_plugin_manager(plugins)
        self.observers = ErrorObservers(self.plugin_manager)

        self.actions = ActionCatalog()
        register_builtin_actions(self.actions)
        self.plugin_manager.hook.register_actions(catalog=self.actions)
        self.registry = CapabilityRegistry(self.catalog)

        self.machine = StepStateMachine(
            store=self.store,
            registry=self.registry,
            actions=ActionDispatcher(self.registry, self.actions),
            model=model or EchoModelClient(),
            bus=self.bus,
            settings=self.settings,
            observers=self.observers,
            clock=clock,
        )
        self.scheduler = (scheduler_factory or WorkQueueScheduler)(self.machine.run_hop)
        self.dispatcher = TurnDispatcher(
            self.scheduler,
            self.machine.fail_turn,
            max_attempts=self.settings.enqueue_max_attempts,
            backoff_seconds=self.settings.enqueue_backoff_seconds,
            observers=self.observers,
        )
        self._detach = self.dispatcher.attach(self.bus)
        self.service = ChatService(
            store=self.store,
            registry=self.registry,
            bus=self.bus,
            settings=self.settings,
            fail_turn=self.machine.fail_turn,
            clock=clock,
        )
        logger.debug("hopline.ready agents={} natives={}", len(self.catalog.agents), self.actions.native_names)

    def __enter__(self) -> Hopline:
        if isinstance(self.scheduler, APSchedulerHopScheduler):
            self.scheduler.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    async def drain(self, max_hops: int = 1000) -> int:
        """Run queued hops until the work queue is empty; a no-op for other schedulers."""
        if isinstance(self.scheduler, WorkQueueScheduler):
            return await self.scheduler.run_until_idle(max_hops)
        return 0

    def close(self) -> None:
        if isinstance(self.scheduler, APSchedulerHopScheduler):
            self.scheduler.shutdown()
        self._detach()
        self.store.close()
