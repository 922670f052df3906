"""
On-demand storage and cookie snapshots for the monitored context.

A proxy never sees page storage, so the host (a page agent or browser
extension) pushes localStorage/sessionStorage contents; cookies are
harvested from the Cookie headers of observed requests.
"""

import logging
from typing import Dict, Protocol, Set, Tuple
from urllib.parse import urlparse

from .errors import ScanFailure
from .events import Cookie, CookieSnapshot, RequestObserved, StorageSnapshot

logger = logging.getLogger("tokenwire.snapshots")


class SnapshotProvider(Protocol):
    def observe_request(self, event: RequestObserved) -> None: ...

    async def fetch_storage(self, context_id: str) -> StorageSnapshot: ...

    async def fetch_cookies(self, context_id: str, url: str) -> CookieSnapshot: ...


def parse_cookie_header(value: str):
    for part in value.split(";"):
        name, sep, val = part.strip().partition("=")
        if sep and name:
            yield name.strip(), val.strip()


def domain_matches(host: str, domain: str) -> bool:
    domain = domain.lstrip(".").lower()
    host = host.lower()
    return bool(domain) and (host == domain or host.endswith("." + domain))


class SnapshotStore:
    def __init__(self):
        self._storage: Dict[str, StorageSnapshot] = {}
        # context_id -> (domain, name) -> Cookie
        self._cookies: Dict[str, Dict[Tuple[str, str], Cookie]] = {}

    def record_storage(self, snapshot: StorageSnapshot):
        self._storage[snapshot.context_id] = snapshot
        logger.debug("Storage snapshot recorded for %s (%d items)", snapshot.context_id, len(snapshot.items))

    def observe_request(self, event: RequestObserved):
        """Harvest cookies from the Cookie headers of an observed request."""
        host = urlparse(event.url).hostname or ""
        jar = self._cookies.setdefault(event.context_id, {})
        for header in event.headers:
            if header.name.lower() != "cookie":
                continue
            for name, value in parse_cookie_header(header.value):
                jar[(host, name)] = Cookie(name=name, value=value, domain=host)

    def forget(self, context_id: str):
        self._storage.pop(context_id, None)
        self._cookies.pop(context_id, None)

    def clear(self):
        self._storage.clear()
        self._cookies.clear()
        logger.debug("Snapshot store cleared")

    def contexts(self) -> Set[str]:
        """Context ids with recorded storage or harvested cookies."""
        return set(self._storage) | set(self._cookies)

    async def fetch_storage(self, context_id: str) -> StorageSnapshot:
        snapshot = self._storage.get(context_id)
        if snapshot is None:
            raise ScanFailure(f"Storage unavailable for context {context_id}")
        return snapshot

    async def fetch_cookies(self, context_id: str, url: str) -> CookieSnapshot:
        jar = self._cookies.get(context_id)
        if jar is None:
            raise ScanFailure(f"No cookies observed for context {context_id}")
        host = urlparse(url).hostname
        if not host:
            raise ScanFailure(f"Cannot read cookies for {url!r}")
        cookies = [c for c in jar.values() if domain_matches(host, c.domain)]
        return CookieSnapshot(context_id=context_id, url=url, cookies=cookies)
