"""
Notification Dispatcher

Runs fan-outs after the originating transaction has committed, without
holding up the inbound acknowledgment. Every submitted fan-out is a
tracked asyncio task: failures are logged when the task finishes and
`drain()` waits for whatever is still pending (used on shutdown and in
tests).
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Set

from folioflow.core.models import NotificationRequest
from folioflow.services.notifications import DispatchReport, FanoutEngine, get_fanout_engine

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    _instance: Optional["NotificationDispatcher"] = None

    def __init__(self, engine: Optional[FanoutEngine] = None):
        self._engine = engine
        self._pending: Set[asyncio.Task] = set()
        self._history: List[DispatchReport] = []
        self._max_history = 500

    @classmethod
    def get_instance(cls) -> "NotificationDispatcher":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def engine(self) -> FanoutEngine:
        return self._engine or get_fanout_engine()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def recent(self, limit: int = 50) -> List[DispatchReport]:
        return self._history[-limit:]

    async def run(self, request: NotificationRequest) -> DispatchReport:
        report = await self.engine.dispatch_request(request)
        self._history.append(report)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        return report

    async def dispatch_all(self, requests: Iterable[NotificationRequest]) -> List[DispatchReport]:
        """Run fan-outs one after another; a failing one does not stop the rest."""
        reports = []
        for request in requests:
            try:
                reports.append(await self.run(request))
            except Exception as exc:
                logger.error("Fan-out %s %s failed: %s", request.record_code, request.event_kind, exc, exc_info=exc)
        return reports

    def submit(self, requests: Iterable[NotificationRequest]) -> List[asyncio.Task]:
        """Schedule fan-outs on the running loop. Call only after commit."""
        loop = asyncio.get_running_loop()
        tasks = []
        for request in requests:
            task = loop.create_task(self.run(request))
            task.add_done_callback(self._on_done)
            self._pending.add(task)
            tasks.append(task)
            logger.debug("Queued fan-out %s %s", request.record_code, request.event_kind)
        return tasks

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("Fan-out task cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Fan-out task failed: %s", exc, exc_info=exc)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every pending fan-out to finish."""
        while self._pending:
            batch = list(self._pending)
            done, not_done = await asyncio.wait(batch, timeout=timeout)
            if not_done:
                logger.warning("%d fan-out tasks still running after drain timeout", len(not_done))
                return


def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher.get_instance()


def reset_dispatcher() -> None:
    NotificationDispatcher._instance = None
