"""
Tracks the single browsing context under observation.
"""

import logging
from typing import Optional

from .collector import Collector

logger = logging.getLogger("tokenwire.context")


class ContextTracker:
    def __init__(self, collector: Collector):
        self._collector = collector
        self._active: Optional[str] = None
        self._url: Optional[str] = None
        self._last_request_url: Optional[str] = None

    @property
    def active_context_id(self) -> Optional[str]:
        return self._active

    @property
    def active_url(self) -> Optional[str]:
        """Page URL of the active context, else the last request URL seen in it."""
        return self._url or self._last_request_url

    def is_active(self, context_id: str) -> bool:
        return self._active is not None and context_id == self._active

    def note_request(self, url: str):
        self._last_request_url = url

    async def on_context_changed(self, new_context_id: str, url: Optional[str] = None) -> bool:
        """Switch observation to another context. Returns True if a reset happened."""
        if new_context_id == self._active:
            if url:
                self._url = url
            return False
        previous = self._active
        # Set before awaiting the reset so events from the old context are filtered immediately
        self._active = new_context_id
        self._url = url
        self._last_request_url = None
        logger.info("Active context %s -> %s", previous, new_context_id)
        await self._collector.reset()
        return True

    async def on_content_changed(self, context_id: str, url: Optional[str] = None) -> bool:
        """Navigation or reload inside a context; resets only for the active one."""
        if not self.is_active(context_id):
            logger.debug("Ignoring content change for inactive context %s", context_id)
            return False
        if url:
            self._url = url
        self._last_request_url = None
        logger.info("Active context %s reloaded", context_id)
        await self._collector.reset()
        return True
