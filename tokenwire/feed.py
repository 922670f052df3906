"""
Feed processor - serializes the observation feed into the collector.

One consumer task pulls events off an ordered queue. Request events are
ingested inline; snapshot requests spawn a scan task so the (possibly slow)
fetch never holds up the queue or the collection lock.
"""

import asyncio
import logging
from typing import Optional, Set

from .collector import Collector, IngestOutcome
from .context import ContextTracker
from .errors import ScanFailure
from .events import CookiesSnapshotRequested, RequestObserved, StorageSnapshotRequested
from .snapshots import SnapshotProvider

logger = logging.getLogger("tokenwire.feed")

DEFAULT_MAX_PENDING = 1000


class FeedProcessor:
    def __init__(self, collector: Collector, tracker: ContextTracker, snapshots: SnapshotProvider,
                 auto_adopt: bool = False, max_pending: int = DEFAULT_MAX_PENDING):
        self._collector = collector
        self._tracker = tracker
        self._snapshots = snapshots
        self._auto_adopt = auto_adopt
        self._queue: asyncio.Queue = asyncio.Queue(max_pending)
        self._worker: Optional[asyncio.Task] = None
        self._scans: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self):
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="tokenwire-feed")
        logger.debug("Feed processor started")

    async def stop(self):
        tasks = list(self._scans)
        if self._worker:
            tasks.append(self._worker)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if future is not None and not future.done():
                future.cancel()
        self._worker = None
        self._scans.clear()
        logger.debug("Feed processor stopped")

    def post(self, event) -> bool:
        """Queue an event without waiting for its outcome."""
        try:
            self._queue.put_nowait((event, None))
            return True
        except asyncio.QueueFull:
            logger.warning("Feed queue full; dropping %s for %s", event.type, event.context_id)
            return False

    async def submit(self, event) -> Optional[IngestOutcome]:
        """Queue an event and wait until it has been applied.

        Returns None when the event was discarded for a non-active context.
        Scan failures are raised as ScanFailure.
        """
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((event, future))
        return await future

    async def _run(self):
        while True:
            event, future = await self._queue.get()
            try:
                await self._dispatch(event, future)
            except Exception as e:
                logger.exception("Feed event %s failed", getattr(event, "type", type(event).__name__))
                _settle(future, exc=e)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event, future):
        if not await self._accepts(event.context_id):
            logger.debug("Discarding %s for inactive context %s", event.type, event.context_id)
            _settle(future, result=None)
            return

        generation = self._collector.generation
        if isinstance(event, RequestObserved):
            self._tracker.note_request(event.url)
            self._snapshots.observe_request(event)
            outcome = await self._collector.ingest(event, generation)
            _settle(future, result=outcome)
        elif isinstance(event, (StorageSnapshotRequested, CookiesSnapshotRequested)):
            task = asyncio.create_task(self._scan(event, generation))
            self._scans.add(task)
            task.add_done_callback(lambda t: self._scan_done(t, event, future))
        else:
            raise TypeError(f"Unsupported feed event: {type(event).__name__}")

    async def _accepts(self, context_id: str) -> bool:
        if self._tracker.is_active(context_id):
            return True
        if self._auto_adopt and self._tracker.active_context_id is None:
            await self._tracker.on_context_changed(context_id)
            return True
        return False

    async def _scan(self, event, generation: int) -> IngestOutcome:
        try:
            if isinstance(event, StorageSnapshotRequested):
                snapshot = await self._snapshots.fetch_storage(event.context_id)
            else:
                snapshot = await self._snapshots.fetch_cookies(event.context_id, event.url)
        except ScanFailure:
            raise
        except Exception as e:
            raise ScanFailure(f"Snapshot fetch failed: {e}") from e
        return await self._collector.ingest(snapshot, generation)

    def _scan_done(self, task: asyncio.Task, event, future):
        self._scans.discard(task)
        if task.cancelled():
            _settle(future, exc=ScanFailure("Scan cancelled"))
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Scan for %s failed: %s", event.context_id, exc)
            _settle(future, exc=exc)
        else:
            _settle(future, result=task.result())


def _settle(future, result=None, exc=None):
    if future is None or future.done():
        return
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(result)
