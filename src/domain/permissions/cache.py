import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from math import ceil
from typing import Any

from loguru import logger

from src.config.settings import settings


@dataclass(frozen=True)
class PermissionCacheEntry:
    permissions: frozenset[str]
    stored_at: float
    expires_at: float


class PermissionCache:
    """Process-local TTL cache of computed permission sets, keyed by user id.

    Constructed once per process (``app.state.permission_cache`` in the web app,
    the worker context in arq) and injected wherever permissions are computed
    or mutated. Mutations must call ``invalidate`` before reporting success.
    """

    EVICTION_RATIO = 0.2

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_size: int | None = None,
        enabled: bool | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = settings.PERMISSION_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.max_size = settings.PERMISSION_CACHE_MAX_SIZE if max_size is None else max_size
        self.enabled = settings.PERMISSION_CACHE_ENABLED if enabled is None else enabled
        self._clock = clock
        self._entries: dict[str, PermissionCacheEntry] = {}
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "invalidations": 0}

    def get(self, user_id: str) -> frozenset[str] | None:
        if not self.enabled:
            return None

        entry = self._entries.get(user_id)
        if entry is None:
            self._stats["misses"] += 1
            return None

        if self._clock() >= entry.expires_at:
            del self._entries[user_id]
            self._stats["misses"] += 1
            return None

        self._stats["hits"] += 1
        return entry.permissions

    def set(self, user_id: str, permissions: frozenset[str] | set[str], valid_until: float | None = None) -> None:
        """Stores a computed set.

        Args:
            user_id: Identity id of the user.
            permissions: The computed permission set.
            valid_until: Optional epoch timestamp after which the set is wrong
                regardless of TTL (the earliest temporary-grant expiry).
        """
        if not self.enabled:
            return

        now = self._clock()
        expires_at = now + self.ttl_seconds
        if valid_until is not None:
            expires_at = min(expires_at, valid_until)

        self._entries[user_id] = PermissionCacheEntry(frozenset(permissions), stored_at=now, expires_at=expires_at)
        self._enforce_size()

    def invalidate(self, user_id: str) -> bool:
        removed = self._entries.pop(user_id, None) is not None
        self._stats["invalidations"] += 1
        logger.debug(f"Permission cache invalidated for {user_id} (entry present: {removed})")
        return removed

    def invalidate_many(self, user_ids: Iterable[str]) -> int:
        return sum(1 for user_id in user_ids if self.invalidate(user_id))

    def sweep_expired(self) -> int:
        now = self._clock()
        expired = [user_id for user_id, entry in self._entries.items() if now >= entry.expires_at]
        for user_id in expired:
            del self._entries[user_id]
        if expired:
            logger.debug(f"Swept {len(expired)} expired permission cache entries")
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "invalidations": 0}

    def _enforce_size(self) -> None:
        if len(self._entries) <= self.max_size:
            return

        self.sweep_expired()
        if len(self._entries) <= self.max_size:
            return

        remove_count = ceil(self.max_size * self.EVICTION_RATIO)
        oldest = sorted(self._entries.items(), key=lambda item: item[1].stored_at)[:remove_count]
        for user_id, _ in oldest:
            del self._entries[user_id]
        self._stats["evictions"] += len(oldest)
        logger.info(f"Permission cache over capacity; evicted {len(oldest)} oldest entries")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    def stats(self) -> dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        hit_rate = (self._stats["hits"] / total) * 100 if total else 0.0
        return {
            **self._stats,
            "enabled": self.enabled,
            "totalChecks": total,
            "hitRate": round(hit_rate, 2),
            "cacheSize": len(self._entries),
            "maxSize": self.max_size,
            "ttlSeconds": self.ttl_seconds,
        }
