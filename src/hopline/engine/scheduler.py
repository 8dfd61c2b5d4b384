"""Hop schedulers: each scheduled hop runs later, in its own task, with no shared stack."""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from loguru import logger

from hopline.engine.jobstore import JSONJobStore
from hopline.errors import EnqueueError
from hopline.events import OrchestrationEvent

HopRunner = Callable[[OrchestrationEvent], Awaitable[Any]]

runner: HopRunner | None = None


def set_runner(hop_runner: HopRunner | None) -> None:
    global runner
    runner = hop_runner


async def run_scheduled_hop(event_payload: dict[str, Any]) -> None:
    """APScheduler job target; looks the runner up at run time so persisted jobs stay importable."""
    if runner is None:
        logger.error("cannot run scheduled hop: runner is not set")
        return
    event = OrchestrationEvent.model_validate(event_payload)
    await runner(event)


class HopScheduler(Protocol):
    def schedule(self, event: OrchestrationEvent) -> None: ...


class APSchedulerHopScheduler:
    """Schedules each hop as a one-shot APScheduler job keyed by the hop id."""

    def __init__(
        self,
        hop_runner: HopRunner,
        *,
        jobstore_path: Path | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        if scheduler is None:
            scheduler = AsyncIOScheduler()
            if jobstore_path is not None:
                scheduler.add_jobstore(JSONJobStore(jobstore_path), alias="default")
        self.scheduler = scheduler
        set_runner(hop_runner)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

    def schedule(self, event: OrchestrationEvent) -> None:
        job_id = f"hop:{event.hop_id}"
        try:
            self.scheduler.add_job(
                run_scheduled_hop,
                trigger=DateTrigger(run_date=datetime.now(UTC)),
                args=[event.model_dump(mode="json")],
                id=job_id,
                misfire_grace_time=None,
                replace_existing=False,
            )
        except ConflictingIdError:
            logger.info("hop.schedule.duplicate job_id={}", job_id)
            return
        except Exception as exc:
            raise EnqueueError(f"cannot schedule {job_id}: {exc}") from exc
        logger.debug("hop.scheduled job_id={}", job_id)


class WorkQueueScheduler:
    """In-process FIFO of hops, drained one hop at a time by the caller."""

    def __init__(self, hop_runner: HopRunner | None = None) -> None:
        self._runner = hop_runner
        self._queue: deque[OrchestrationEvent] = deque()

    def bind(self, hop_runner: HopRunner) -> None:
        self._runner = hop_runner

    @property
    def pending(self) -> int:
        return len(self._queue)

    def schedule(self, event: OrchestrationEvent) -> None:
        if self._runner is None:
            raise EnqueueError("work queue has no hop runner")
        self._queue.append(event)

    async def run_next(self) -> bool:
        if not self._queue or self._runner is None:
            return False
        event = self._queue.popleft()
        await self._runner(event)
        return True

    async def run_until_idle(self, max_hops: int = 1000) -> int:
        """Drain the queue, including hops scheduled while draining; returns hops run."""
        count = 0
        while count < max_hops and await self.run_next():
            count += 1
        return count
