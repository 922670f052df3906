"""
Collector - the bounded, deduplicated token collection for one monitored session.

All mutations are serialized by a single asyncio.Lock. Reads go through an
immutable tuple that is swapped in on commit, so readers never block and
never observe a half-applied change.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .matcher import CandidateToken, match_all
from .policy import Policy

logger = logging.getLogger("tokenwire.collector")


class IngestOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE_IGNORED = "duplicate_ignored"
    CAPACITY_REACHED = "capacity_reached"
    NO_MATCH = "no_match"


# Highest first: the outcome reported for a multi-candidate event
_OUTCOME_RANK = (
    IngestOutcome.ACCEPTED,
    IngestOutcome.CAPACITY_REACHED,
    IngestOutcome.DUPLICATE_IGNORED,
    IngestOutcome.NO_MATCH,
)


class ChangeReason(str, Enum):
    ACCEPTED = "accepted"
    RESET = "reset"
    CLEAR = "clear"
    POLICY = "policy"


@dataclass(frozen=True)
class CollectionEntry:
    token: str
    representative_source: str
    first_seen_at: datetime


@dataclass(frozen=True)
class CollectionChanged:
    reason: ChangeReason
    size: int
    generation: int


Subscriber = Callable[[CollectionChanged], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Collector:
    def __init__(self, policy: Policy, clock: Callable[[], datetime] = _utcnow):
        self._policy = policy
        self._clock = clock
        self._entries: Dict[str, CollectionEntry] = {}
        self._view: Tuple[CollectionEntry, ...] = ()
        self._generation = 0
        self._lock = asyncio.Lock()
        self._subscribers: List[Subscriber] = []

    @property
    def policy(self) -> Policy:
        return self._policy

    @property
    def generation(self) -> int:
        """Bumped on every reset, clear and policy change."""
        return self._generation

    def list_entries(self) -> List[CollectionEntry]:
        return list(self._view)

    def current_size(self) -> int:
        return len(self._view)

    def capacity(self) -> int:
        return self._policy.max_entries

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    async def ingest(self, event, generation: Optional[int] = None) -> IngestOutcome:
        """Match one event and admit its candidates.

        ``generation`` pins the ingest to the session generation the event was
        produced in; if the collection has been reset since, the candidates
        are dropped.
        """
        policy = self._policy
        if generation is None:
            generation = self._generation
        try:
            candidates = match_all(event, policy)
        except Exception as e:
            logger.warning("Match failure on %s: %s", type(event).__name__, e)
            return IngestOutcome.NO_MATCH
        if not candidates:
            return IngestOutcome.NO_MATCH
        outcomes = await self.admit(candidates, generation)
        return next(o for o in _OUTCOME_RANK if o in outcomes)

    async def admit(self, candidates: List[CandidateToken], generation: int) -> List[IngestOutcome]:
        accepted = False
        async with self._lock:
            if generation != self._generation:
                logger.debug("Dropping %d stale candidate(s) from generation %d (current %d)",
                              len(candidates), generation, self._generation)
                return [IngestOutcome.NO_MATCH] * len(candidates)
            entries = dict(self._entries)
            outcomes = []
            for candidate in candidates:
                if candidate.value in entries:
                    outcomes.append(IngestOutcome.DUPLICATE_IGNORED)
                elif len(entries) >= self._policy.max_entries:
                    logger.debug("Collection full (%d); discarding candidate from %s",
                                 len(entries), candidate.source_label)
                    outcomes.append(IngestOutcome.CAPACITY_REACHED)
                else:
                    entries[candidate.value] = CollectionEntry(
                        token=candidate.value,
                        representative_source=candidate.source_label,
                        first_seen_at=self._clock(),
                    )
                    outcomes.append(IngestOutcome.ACCEPTED)
                    accepted = True
                    logger.info("Token accepted from %s (%d/%d)",
                                candidate.source_label, len(entries), self._policy.max_entries)
            if accepted:
                self._commit(entries)
        if accepted:
            await self._notify(ChangeReason.ACCEPTED)
        return outcomes

    async def reset(self):
        async with self._lock:
            self._wipe()
        await self._notify(ChangeReason.RESET)

    async def clear(self):
        """Same in-memory effect as reset; subscribers see reason CLEAR."""
        async with self._lock:
            self._wipe()
        logger.info("Collection cleared on request")
        await self._notify(ChangeReason.CLEAR)

    async def apply_policy(self, policy: Policy):
        async with self._lock:
            self._policy = policy
            self._wipe()
        logger.info("Policy replaced (kind=%s source=%s max=%d)",
                    policy.detection_kind.value, policy.detection_source.value, policy.max_entries)
        await self._notify(ChangeReason.POLICY)

    def _commit(self, entries: Dict[str, CollectionEntry]):
        self._entries = entries
        self._view = tuple(entries.values())

    def _wipe(self):
        self._generation += 1
        self._commit({})

    async def _notify(self, reason: ChangeReason):
        change = CollectionChanged(reason=reason, size=len(self._view), generation=self._generation)
        for callback in list(self._subscribers):
            try:
                await callback(change)
            except Exception:
                logger.exception("Collection subscriber failed (%s)", reason.value)
