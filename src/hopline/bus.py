"""Signal-based bus carrying the three durable channels."""

from __future__ import annotations

from collections.abc import Callable, Coroutine, Sequence
from typing import Any, Protocol

from blinker import Signal

from hopline.events import FinalResult, OrchestrationEvent, TransientMessage

OrchestrationHandler = Callable[[Sequence[Any]], Coroutine[Any, Any, None]]
FinalResultHandler = Callable[[FinalResult], Coroutine[Any, Any, None]]
TransientHandler = Callable[[TransientMessage], Coroutine[Any, Any, None]]


class BusProtocol(Protocol):
    """Contract the engine needs from a message bus provider."""

    async def publish_orchestration(self, *events: OrchestrationEvent) -> None: ...

    async def publish_final_result(self, result: FinalResult) -> None: ...

    async def publish_transient(self, message: TransientMessage) -> None: ...


class MessageBus:
    """In-process bus backed by blinker signals.

    Orchestration deliveries are batches; subscribers receive the whole batch and are
    expected to isolate failures per event.
    """

    def __init__(self) -> None:
        self._orchestration = Signal("hopline.orchestration")
        self._final_result = Signal("hopline.final_result")
        self._transient = Signal("hopline.transient")

    async def publish_orchestration(self, *events: OrchestrationEvent) -> None:
        await self.deliver_orchestration(list(events))

    async def deliver_orchestration(self, batch: Sequence[Any]) -> None:
        """Deliver raw bus messages, which may not be valid events."""
        await self._orchestration.send_async(self, batch=list(batch))

    async def publish_final_result(self, result: FinalResult) -> None:
        await self._final_result.send_async(self, message=result)

    async def publish_transient(self, message: TransientMessage) -> None:
        await self._transient.send_async(self, message=message)

    def on_orchestration(self, handler: OrchestrationHandler) -> Callable[[], None]:
        async def _receiver(sender: Any, *, batch: list[Any]) -> None:
            await handler(batch)

        self._orchestration.connect(_receiver, weak=False)
        return lambda: self._orchestration.disconnect(_receiver)

    def on_final_result(self, handler: FinalResultHandler) -> Callable[[], None]:
        async def _receiver(sender: Any, *, message: FinalResult) -> None:
            await handler(message)

        self._final_result.connect(_receiver, weak=False)
        return lambda: self._final_result.disconnect(_receiver)

    def on_transient(self, handler: TransientHandler) -> Callable[[], None]:
        async def _receiver(sender: Any, *, message: TransientMessage) -> None:
            await handler(message)

        self._transient.connect(_receiver, weak=False)
        return lambda: self._transient.disconnect(_receiver)
