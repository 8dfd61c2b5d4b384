"""Turn dispatcher: bus subscriber that hands each orchestration event to the scheduler."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from hopline.bus import MessageBus
from hopline.engine.scheduler import HopScheduler
from hopline.errors import EnqueueError, EventValidationError
from hopline.events import OrchestrationEvent, validate_event
from hopline.hooks import ErrorObservers

FailureHandler = Callable[[OrchestrationEvent, str], Awaitable[Any]]


@dataclass
class DispatchReport:
    scheduled: list[str] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class TurnDispatcher:
    """Validates and schedules a batch of events, isolating failures per event."""

    def __init__(
        self,
        scheduler: HopScheduler,
        on_enqueue_failure: FailureHandler,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
        observers: ErrorObservers | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._on_enqueue_failure = on_enqueue_failure
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._observers = observers

    def attach(self, bus: MessageBus) -> Callable[[], None]:
        async def _consume(batch: Sequence[Any]) -> None:
            await self.consume(batch)

        return bus.on_orchestration(_consume)

    async def consume(self, batch: Sequence[Any]) -> DispatchReport:
        report = DispatchReport()
        for index, raw in enumerate(batch):
            try:
                event = validate_event(raw)
            except EventValidationError as exc:
                logger.warning("dispatch.invalid_event index={} error={}", index, exc)
                report.skipped.append(index)
                continue

            try:
                await self._schedule(event)
            except EnqueueError as exc:
                logger.error("dispatch.enqueue_failed hop={} error={}", event.hop_id, exc)
                report.failed.append(event.hop_id)
                if self._observers is not None:
                    await self._observers.notify(stage="enqueue", error=exc, event=event)
                await self._on_enqueue_failure(event, f"enqueue_failed: {exc}")
                continue
            report.scheduled.append(event.hop_id)
        return report

    async def _schedule(self, event: OrchestrationEvent) -> None:
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._scheduler.schedule(event)
                return
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "dispatch.enqueue_retry hop={} attempt={} max_attempts={} error={}",
                    event.hop_id,
                    attempt,
                    self._max_attempts,
                    exc,
                )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff_seconds * 2 ** (attempt - 1))
        raise EnqueueError(str(last_error)) from last_error
