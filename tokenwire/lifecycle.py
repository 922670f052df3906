"""
Lifecycle manager - environment shutdown and explicit clear commands.
"""

import logging
from typing import Optional

from .collector import Collector
from .mirror import SessionMirror
from .snapshots import SnapshotStore

logger = logging.getLogger("tokenwire.lifecycle")


class LifecycleManager:
    def __init__(self, collector: Collector, mirror: SessionMirror,
                 snapshots: Optional[SnapshotStore] = None):
        self._collector = collector
        self._mirror = mirror
        self._snapshots = snapshots

    async def on_environment_shutdown_signal(self, remaining_contexts: int = 0) -> bool:
        """Wipe collected state once the last monitored context is gone.

        Safe to call once per closing window; only the call that sees no
        remaining contexts does anything, and only with auto_cleanup set.
        """
        if remaining_contexts > 0:
            logger.debug("Shutdown signal with %d context(s) remaining; keeping state", remaining_contexts)
            return False
        if not self._collector.policy.auto_cleanup:
            logger.info("Environment closed; auto cleanup disabled, keeping state")
            return False
        await self._collector.reset()
        self._forget_snapshots()
        await self._mirror.wipe()
        logger.info("Environment closed - all collected tokens wiped")
        return True

    async def on_explicit_clear_command(self) -> bool:
        await self._collector.clear()
        self._forget_snapshots()
        # Rewrite rather than delete: an accept racing the clear must stay mirrored
        await self._mirror.sync(self._collector.list_entries)
        return True

    def _forget_snapshots(self):
        if self._snapshots is not None:
            self._snapshots.clear()
