"""
Response cache keyed by ``source:endpoint``.

Backed by a bounded cachetools LRUCache. Entries are never evicted on expiry:
an expired entry stays available as a fallback candidate and is reported as
STALE, never promoted back to FRESH.
"""
import itertools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from cachetools import LRUCache

logger = logging.getLogger(__name__)


class CacheState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    ABSENT = "absent"


@dataclass(frozen=True)
class CacheEntry:
    payload: Any
    written_at: float
    ttl_s: float
    version: int

    def is_fresh(self, now: float) -> bool:
        return now - self.written_at < self.ttl_s

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payload": self.payload,
            "written_at": self.written_at,
            "ttl_s": self.ttl_s,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            payload=data["payload"],
            written_at=float(data["written_at"]),
            ttl_s=float(data["ttl_s"]),
            version=int(data["version"]),
        )


@dataclass(frozen=True)
class CacheLookup:
    state: CacheState
    entry: Optional[CacheEntry] = None

    @property
    def value(self) -> Any:
        return self.entry.payload if self.entry else None


def cache_key(source_id: str, endpoint: str) -> str:
    return f"{source_id}:{endpoint}"


class ResponseCache:
    def __init__(self, max_entries: int = 512, clock: Callable[[], float] = time.time):
        self._entries: LRUCache = LRUCache(maxsize=max_entries)
        self._clock = clock
        self._versions = itertools.count(1)
        self.hits = 0
        self.stale_hits = 0
        self.misses = 0

    def get(self, key: str) -> CacheLookup:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return CacheLookup(CacheState.ABSENT)
        if entry.is_fresh(self._clock()):
            self.hits += 1
            return CacheLookup(CacheState.FRESH, entry)
        self.stale_hits += 1
        return CacheLookup(CacheState.STALE, entry)

    def put(self, key: str, payload: Any, ttl_s: float) -> CacheEntry:
        entry = CacheEntry(payload=payload, written_at=self._clock(), ttl_s=ttl_s, version=next(self._versions))
        self._entries[key] = entry
        return entry

    def restore(self, key: str, entry: CacheEntry) -> None:
        """Load a persisted entry at startup, keeping its original timestamp."""
        current = self._entries.get(key)
        if current is not None and current.written_at >= entry.written_at:
            return
        self._entries[key] = entry
        # keep versions monotonic across restarts
        next_version = next(self._versions)
        if entry.version >= next_version:
            self._versions = itertools.count(entry.version + 1)
        else:
            self._versions = itertools.count(next_version)

    def invalidate(self, key_or_prefix: str) -> int:
        """Drop one key, or every key starting with ``key_or_prefix``."""
        if key_or_prefix in self._entries:
            del self._entries[key_or_prefix]
            return 1
        doomed = [key for key in self._entries if key.startswith(key_or_prefix)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.info(f"Invalidated {len(doomed)} cache entries with prefix '{key_or_prefix}'")
        return len(doomed)

    def clear_all(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"Response cache cleared ({count} entries)")

    def items(self) -> Iterator[Tuple[str, CacheEntry]]:
        return iter(list(self._entries.items()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        fresh = sum(1 for entry in self._entries.values() if entry.is_fresh(now))
        return {
            "size": len(self._entries),
            "max_entries": self._entries.maxsize,
            "fresh": fresh,
            "stale": len(self._entries) - fresh,
            "hits": self.hits,
            "stale_hits": self.stale_hits,
            "misses": self.misses,
        }
