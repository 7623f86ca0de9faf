"""
Process-local permission cache.

Holds the effective permission set per user for a bounded time (TTL).
WARNING: single-process only. Each worker/instance keeps its own cache,
so out-of-band datastore edits become visible after at most one TTL.

Invalidation deletes the entry and bumps a generation counter. A reader
captures the generation before it hits the datastore and hands it back
to put(); a stale token means an invalidation happened in between and
the refill is dropped.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from loguru import logger

from rbac.permissions import Permission

DEFAULT_PERMISSION_TTL = 300

# Sweep expired entries every N writes
CLEANUP_INTERVAL = 100

# Per-user invalidation counters kept before they are folded into a new epoch
MAX_TRACKED_GENERATIONS = 10000

Generation = Tuple[int, int]


@dataclass(frozen=True)
class CacheEntry:
    user_id: str
    permission_set: FrozenSet[Permission]
    computed_at: datetime
    ttl: int
    generation: Optional[Generation] = None

    @property
    def expires_at(self) -> datetime:
        return self.computed_at + timedelta(seconds=self.ttl)


class PermissionCache(ABC):
    """Narrow interface the resolver depends on"""

    @abstractmethod
    def get(self, user_id: str) -> Optional[FrozenSet[Permission]]:
        """Return the cached permission set, or None on miss/expiry"""

    @abstractmethod
    def put(
        self,
        user_id: str,
        permission_set: Iterable[Permission],
        ttl: Optional[int] = None,
        generation: Optional[Generation] = None,
    ) -> bool:
        """Store a permission set; returns False if the write was dropped"""

    @abstractmethod
    def invalidate(self, user_id: str) -> None:
        """Drop the entry for one user"""

    @abstractmethod
    def invalidate_all(self) -> None:
        """Drop every entry"""

    def generation(self, user_id: str) -> Optional[Generation]:
        """Token to pass back to put(); None disables the staleness check"""
        return None


class InMemoryPermissionCache(PermissionCache):
    """Permission cache using a Python dict guarded by a lock"""

    def __init__(
        self,
        default_ttl: int = DEFAULT_PERMISSION_TTL,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.default_ttl = default_ttl
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, CacheEntry] = {}
        self._user_generations: Dict[str, int] = {}
        self._epoch = 0
        self._puts_since_cleanup = 0
        self.lock = threading.Lock()
        logger.debug(f"[CACHE] In-memory permission cache initialized (ttl={default_ttl}s)")

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._now() >= entry.expires_at

    def _current_generation(self, user_id: str) -> Generation:
        return (self._epoch, self._user_generations.get(user_id, 0))

    def generation(self, user_id: str) -> Generation:
        with self.lock:
            return self._current_generation(user_id)

    def get(self, user_id: str) -> Optional[FrozenSet[Permission]]:
        with self.lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            if self._is_expired(entry):
                del self._entries[user_id]
                logger.debug(f"[CACHE] Expired permissions for user {user_id}")
                return None
            return entry.permission_set

    def get_entry(self, user_id: str) -> Optional[CacheEntry]:
        """Raw entry (no expiry check), for inspection"""
        with self.lock:
            return self._entries.get(user_id)

    def put(
        self,
        user_id: str,
        permission_set: Iterable[Permission],
        ttl: Optional[int] = None,
        generation: Optional[Generation] = None,
    ) -> bool:
        with self.lock:
            if generation is not None and generation != self._current_generation(user_id):
                logger.debug(f"[CACHE] Dropping stale refill for user {user_id}")
                return False
            self._entries[user_id] = CacheEntry(
                user_id=user_id,
                permission_set=frozenset(permission_set),
                computed_at=self._now(),
                ttl=ttl or self.default_ttl,
                generation=self._current_generation(user_id),
            )
            self._puts_since_cleanup += 1
            if self._puts_since_cleanup >= CLEANUP_INTERVAL:
                self._cleanup_expired()
            return True

    def invalidate(self, user_id: str) -> None:
        with self.lock:
            self._entries.pop(user_id, None)
            self._user_generations[user_id] = self._user_generations.get(user_id, 0) + 1
            if len(self._user_generations) > MAX_TRACKED_GENERATIONS:
                # A new epoch makes every outstanding token stale, so the counters can go
                self._user_generations.clear()
                self._epoch += 1
        logger.debug(f"[CACHE] Invalidated permissions for user {user_id}")

    def invalidate_all(self) -> None:
        with self.lock:
            self._entries.clear()
            self._user_generations.clear()
            self._epoch += 1
        logger.info("[CACHE] Invalidated all cached permissions")

    def _cleanup_expired(self) -> int:
        """Caller holds the lock"""
        expired = [uid for uid, entry in self._entries.items() if self._is_expired(entry)]
        for user_id in expired:
            del self._entries[user_id]
        self._puts_since_cleanup = 0
        if expired:
            logger.debug(f"[CACHE] Cleaned up {len(expired)} expired entries")
        return len(expired)

    def cleanup_expired(self) -> int:
        """Drop expired entries; returns how many were removed"""
        with self.lock:
            return self._cleanup_expired()

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)
