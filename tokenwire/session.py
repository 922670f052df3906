"""
MonitorSession - one monitored session's engine, wired together.

Built once per session and handed to the HTTP surfaces by reference;
tests build as many as they like.
"""

import logging
from pathlib import Path
from typing import Optional

from .collector import CollectionChanged, Collector
from .config import save_policy
from .context import ContextTracker
from .display import render_collection, resolve_handle
from .errors import ScanFailure
from .events import CookiesSnapshotRequested, StorageSnapshot, StorageSnapshotRequested
from .feed import FeedProcessor
from .lifecycle import LifecycleManager
from .mirror import SessionMirror
from .policy import DetectionSource, Policy
from .snapshots import SnapshotStore

logger = logging.getLogger("tokenwire.session")


class MonitorSession:
    def __init__(self, policy: Policy, mirror_path, settings_path: Optional[Path] = None,
                 snapshots: Optional[SnapshotStore] = None, auto_adopt: bool = False):
        self.settings_path = settings_path
        self.collector = Collector(policy)
        self.tracker = ContextTracker(self.collector)
        self.snapshots = snapshots if snapshots is not None else SnapshotStore()
        self.feed = FeedProcessor(self.collector, self.tracker, self.snapshots, auto_adopt=auto_adopt)
        self.mirror = SessionMirror(mirror_path)
        self.lifecycle = LifecycleManager(self.collector, self.mirror, self.snapshots)
        self.collector.subscribe(self._mirror_change)

    async def start(self):
        await self.mirror.open()
        await self.feed.start()
        logger.info("Monitor session started (policy=%s)", self.collector.policy.to_dict())

    async def stop(self):
        await self.feed.stop()
        await self.lifecycle.on_environment_shutdown_signal(0)
        # auto_cleanup only governs the in-memory collection; the file never outlives the session
        await self.mirror.wipe()

    async def _mirror_change(self, change: CollectionChanged):
        await self.mirror.sync(self.collector.list_entries)

    # --- Display surface ---

    def get_collection(self) -> dict:
        generation = self.collector.generation
        return render_collection(self.collector.list_entries(), self.collector.capacity(), generation)

    def copy_token(self, handle: str) -> Optional[str]:
        generation = self.collector.generation
        return resolve_handle(self.collector.list_entries(), handle, generation)

    async def request_scan(self) -> dict:
        """Run an on-demand storage/cookie scan of the active context and wait for it."""
        source = self.collector.policy.detection_source
        if source is DetectionSource.REQUEST_HEADERS:
            return self.get_collection()
        context_id = self.tracker.active_context_id
        if context_id is None:
            raise ScanFailure("No active context to scan")
        if source is DetectionSource.BROWSER_STORAGE:
            event = StorageSnapshotRequested(context_id=context_id)
        else:
            url = self.tracker.active_url
            if not url:
                raise ScanFailure(f"No known URL for context {context_id}")
            event = CookiesSnapshotRequested(context_id=context_id, url=url)
        outcome = await self.feed.submit(event)
        logger.info("Scan of %s finished: %s", context_id, outcome.value if outcome else "discarded")
        return self.get_collection()

    async def clear_all(self) -> bool:
        return await self.lifecycle.on_explicit_clear_command()

    # --- Settings surface ---

    def get_policy(self) -> Policy:
        return self.collector.policy

    async def set_policy(self, data: dict) -> Policy:
        policy = Policy.from_dict(data)
        await self.collector.apply_policy(policy)
        if self.settings_path is not None:
            try:
                save_policy(self.settings_path, policy)
            except OSError as e:
                logger.warning("Could not persist settings to %s: %s", self.settings_path, e)
        return policy

    # --- Host signals ---

    async def context_changed(self, context_id: str, url: Optional[str] = None) -> bool:
        previous = self.tracker.active_context_id
        reset = await self.tracker.on_context_changed(context_id, url)
        if reset and previous is not None:
            self.snapshots.forget(previous)
        return reset

    async def content_changed(self, context_id: str, url: Optional[str] = None) -> bool:
        reset = await self.tracker.on_content_changed(context_id, url)
        if reset:
            self.snapshots.forget(context_id)
        return reset

    def record_storage(self, snapshot: StorageSnapshot) -> bool:
        """Keep a pushed storage snapshot unless another context is being monitored."""
        active = self.tracker.active_context_id
        if active is not None and snapshot.context_id != active:
            logger.debug("Ignoring storage snapshot for inactive context %s", snapshot.context_id)
            return False
        self.snapshots.record_storage(snapshot)
        return True

    async def environment_shutdown(self, remaining_contexts: int = 0) -> bool:
        return await self.lifecycle.on_environment_shutdown_signal(remaining_contexts)
