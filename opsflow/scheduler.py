"""Time-driven wake-ups: delayed workflows and due sync retries."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from .errors import OpsflowError
from .persistence import Repository
from .utils import utcnow

if TYPE_CHECKING:
    from .dispatch import TriggerDispatcher
    from .execute import WorkflowEngine
    from .sync.service import SyncService

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    resumed: int = 0
    synced: int = 0


class Scheduler:
    """Scans persisted state for due work.

    Ticks are safe to repeat or to run from several processes: resuming is a
    compare-and-set on the execution and sync records are claimed the same way.
    With a dispatcher, resumes are enqueued for workers instead of run inline.
    """

    def __init__(
        self,
        repository: Repository,
        engine: "WorkflowEngine",
        sync: Optional["SyncService"] = None,
        dispatcher: Optional["TriggerDispatcher"] = None,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._sync = sync
        self._dispatcher = dispatcher
        self._batch_size = batch_size
        self._clock = clock

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        now = now or self._clock()
        result = TickResult()
        due = await self._repository.list_due_waiting(now, limit=self._batch_size)
        for execution in due:
            if self._dispatcher is not None:
                await self._dispatcher.enqueue_resume(execution.id)
                result.resumed += 1
                continue
            try:
                await self._engine.resume(execution.id, now=now)
            except OpsflowError as e:
                logger.error(f"Could not resume execution {execution.id}: {e}")
                continue
            result.resumed += 1

        if self._sync is not None:
            result.synced = len(await self._sync.process_due(now))

        if result.resumed or result.synced:
            logger.info(
                f"Scheduler tick resumed {result.resumed} execution(s), "
                f"attempted {result.synced} sync record(s)"
            )
        return result

    async def run_forever(
        self, interval: float = 1.0, lifespan: Optional[float] = None
    ) -> None:
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while lifespan is None or loop.time() - start_time < lifespan:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed; retrying next interval")
            await asyncio.sleep(interval)
