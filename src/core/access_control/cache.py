"""
Decision Cache - process-level memoization of resolver outputs.

Keys: (subject, target, relation, content action)

Invalidation:
- Tag-epoch based. A single monotonically increasing epoch counter; every
  ``invalidate`` bumps it and stamps each affected tag with the new value.
- ``begin()`` returns the current epoch and must be called BEFORE the
  decision is read from the database. ``put`` records that token on the
  entry. An entry is served only while none of its tags has been stamped
  after its token, so a read that raced a mutation can never repopulate a
  stale decision.
- ``clear()`` stamps only the global tag and forgets every per-tag stamp.
  An invalidation that pushes the stamp table past its bound does the same.
- TTL expiry is a safety net for writes that bypass the mutation path.
- Cached decisions are only served for instants inside their validity
  interval; outside it the lookup is a miss.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Optional, Tuple, Any
from uuid import UUID

from .models import ContentAction, RelationKind
from .resolver import Decision, Tag

logger = logging.getLogger(__name__)

# Tag stamped by clear(); every entry carries it
GLOBAL_TAG: Tag = ("*",)

CacheKey = Tuple[UUID, UUID, str, Optional[str]]


# =============================================================================
# CACHE ENTRY
# =============================================================================

@dataclass
class CacheEntry:
    """Cached decision plus the bookkeeping needed to validate it."""
    decision: Decision
    tags: FrozenSet[Tag]
    epoch: int
    expires_at: float

    def is_expired(self, clock: float) -> bool:
        return clock >= self.expires_at


# =============================================================================
# DECISION CACHE
# =============================================================================

class DecisionCache:
    """
    Thread-safe LRU cache with TTL and tag-epoch invalidation.

    Usage:
        token = cache.begin()
        decision = cache.get(user_id, target_id, RelationKind.PERMISSION, now)
        if decision is None:
            decision, tags = resolver.decide(...)
            cache.put(user_id, target_id, RelationKind.PERMISSION, decision, tags, token)
    """

    def __init__(
        self,
        maxsize: int = 10000,
        ttl_seconds: int = 300,
        enabled: bool = True,
        timer=time.monotonic,
    ):
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        self.maxsize = maxsize
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self._timer = timer
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._tag_epochs: Dict[Tag, int] = {}
        self._max_tag_stamps = max(1024, 4 * maxsize)
        self._epoch = 0
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    @classmethod
    def from_settings(cls, settings) -> "DecisionCache":
        return cls(
            maxsize=settings.cache_max_entries,
            ttl_seconds=settings.cache_ttl_seconds,
            enabled=settings.cache_enabled,
        )

    @staticmethod
    def _key(
        subject_id: UUID,
        target_id: UUID,
        relation: RelationKind,
        action: Optional[ContentAction] = None,
    ) -> CacheKey:
        return (
            subject_id,
            target_id,
            RelationKind(relation).value,
            ContentAction(action).value if action is not None else None,
        )

    def begin(self) -> int:
        """Epoch token; take it before reading the data a decision depends on."""
        with self._lock:
            return self._epoch

    def get(
        self,
        subject_id: UUID,
        target_id: UUID,
        relation: RelationKind,
        now: datetime,
        action: Optional[ContentAction] = None,
    ) -> Optional[Decision]:
        """Cached decision valid at ``now``, or None on miss."""
        if not self.enabled:
            return None

        key = self._key(subject_id, target_id, relation, action)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(self._timer()) or self._is_stale(entry):
                del self._entries[key]
                self._misses += 1
                return None

            if not entry.decision.holds_at(now):
                # Window crossed; keep the entry for callers still inside it
                self._misses += 1
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            return entry.decision

    def put(
        self,
        subject_id: UUID,
        target_id: UUID,
        relation: RelationKind,
        decision: Decision,
        tags: Iterable[Tag],
        token: int,
        action: Optional[ContentAction] = None,
    ) -> bool:
        """
        Store a decision computed after ``begin()`` returned ``token``.

        Returns False (and stores nothing) if any of the decision's tags was
        invalidated since the token was taken.
        """
        if not self.enabled:
            return False

        tags = frozenset(tags) | {GLOBAL_TAG}
        key = self._key(subject_id, target_id, relation, action)
        with self._lock:
            entry = CacheEntry(
                decision=decision,
                tags=tags,
                epoch=token,
                expires_at=self._timer() + self.ttl_seconds,
            )
            if self._is_stale(entry):
                return False

            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.maxsize:
                self._entries.popitem(last=False)
            return True

    def _is_stale(self, entry: CacheEntry) -> bool:
        """Must hold lock."""
        for tag in entry.tags:
            if self._tag_epochs.get(tag, 0) > entry.epoch:
                return True
        return False

    def invalidate_tags(self, tags: Iterable[Tag]) -> int:
        """
        Invalidate every entry carrying any of ``tags``.

        Returns the number of entries dropped eagerly. Entries computed
        concurrently are rejected lazily through their epoch token.
        """
        tags = set(tags)
        if not tags:
            return 0

        with self._lock:
            self._epoch += 1
            for tag in tags:
                self._tag_epochs[tag] = self._epoch

            if len(self._tag_epochs) > self._max_tag_stamps:
                # Too many stamps: collapse them into the global one
                doomed = list(self._entries)
                self._entries.clear()
                self._tag_epochs = {GLOBAL_TAG: self._epoch}
            else:
                doomed = [key for key, entry in self._entries.items() if entry.tags & tags]
                for key in doomed:
                    del self._entries[key]

            self._invalidations += 1

        logger.debug(
            "Decision cache invalidated",
            extra={"extra_data": {"tags": sorted(str(t) for t in tags), "dropped": len(doomed)}},
        )
        return len(doomed)

    def invalidate(
        self,
        subject_id: Optional[UUID] = None,
        target_id: Optional[UUID] = None,
        relation_kind: Optional[RelationKind] = None,
    ) -> int:
        """
        Invalidate by subject and/or target.

        With neither id every entry is dropped. A target without a relation
        kind is treated as a target of any relation.
        """
        if subject_id is None and target_id is None:
            return self.clear()

        tags = set()
        if subject_id is not None:
            tags.add(("user", subject_id))
        if target_id is not None:
            if relation_kind is not None:
                tags.add((RelationKind(relation_kind).value, target_id))
            else:
                tags.update((kind.value, target_id) for kind in RelationKind)
        return self.invalidate_tags(tags)

    def invalidate_role(self, role_id: UUID) -> int:
        """Invalidate every decision that consulted ``role_id``."""
        return self.invalidate_tags({("role", role_id)})

    def clear(self) -> int:
        """Drop everything, including decisions being computed right now."""
        with self._lock:
            dropped = len(self._entries)
            self._epoch += 1
            # The global stamp outranks every older per-tag stamp
            self._tag_epochs = {GLOBAL_TAG: self._epoch}
            self._entries.clear()
            self._invalidations += 1
        return dropped

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                "size": len(self._entries),
                "maxsize": self.maxsize,
                "ttl_seconds": self.ttl_seconds,
                "enabled": self.enabled,
                "epoch": self._epoch,
                "tag_stamps": len(self._tag_epochs),
                "hits": self._hits,
                "misses": self._misses,
                "invalidations": self._invalidations,
            }
