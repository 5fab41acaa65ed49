"""
Per-family entity cache with TTL and a durable cold-start mirror.

Each family (companies, players, users) holds one list of records stamped
with the wall-clock time it was written. read() serves only fresh entries;
read_mirror() serves whatever was last mirrored to durable storage under
`cached_<family>`, which is what a cold start without network can show.

Usage:
    cache = EntityCache(durable, ttl_seconds=1800)

    entry = cache.read("players")
    if entry is None:
        players = await fetch_players()
        cache.write("players", players)
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from core.durable_store import DurableStore, StorageKeys

logger = logging.getLogger(__name__)

FAMILIES = ("companies", "players", "users")


@dataclass(frozen=True)
class CacheEntry:
    data: list
    stamped_at: float

    def is_fresh(self, now: float, ttl: float) -> bool:
        return now - self.stamped_at < ttl


def record_id(record: Any) -> Optional[str]:
    """Id of a record (`id` or `_id`), as a string."""
    if not isinstance(record, dict):
        return None
    value = record.get("id", record.get("_id"))
    return str(value) if value is not None else None


class EntityCache:
    """In-memory entries with TTL, mirrored to the durable store."""

    def __init__(
        self,
        durable: DurableStore,
        ttl_seconds: float = 1800.0,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._durable = durable
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._stats = {"hits": 0, "misses": 0, "writes": 0, "invalidations": 0}

    @staticmethod
    def _check_family(family: str) -> None:
        if family not in FAMILIES:
            raise ValueError(f"Unknown entity family: {family}")

    def read(self, family: str) -> Optional[CacheEntry]:
        """Fresh entry for a family, or None."""
        self._check_family(family)
        entry = self._entries.get(family)
        if entry is not None and entry.is_fresh(self._clock(), self._ttl):
            self._stats["hits"] += 1
            logger.debug(f"Cache HIT: {family}")
            return entry
        if entry is not None:
            del self._entries[family]
        self._stats["misses"] += 1
        logger.debug(f"Cache MISS: {family}")
        return None

    def read_mirror(self, family: str) -> Optional[list]:
        """Last mirrored list for a family, regardless of age."""
        self._check_family(family)
        data = self._durable.get_json(StorageKeys.cached(family))
        if not isinstance(data, list):
            return None
        return data

    def write(self, family: str, data: list) -> CacheEntry:
        self._check_family(family)
        records = list(data)
        entry = CacheEntry(data=records, stamped_at=self._clock())
        self._entries[family] = entry
        self._stats["writes"] += 1
        self._durable.set_json(StorageKeys.cached(family), records)
        logger.debug(f"Cache SET: {family} ({len(records)} records)")
        return entry

    def upsert(self, family: str, record: dict) -> None:
        """Insert or replace one record in a fresh entry (optimistic update)."""
        entry = self.read(family)
        if entry is None:
            self.invalidate(family)
            return
        rid = record_id(record)
        records = [r for r in entry.data if rid is None or record_id(r) != rid]
        records.append(record)
        self.write(family, records)

    def remove(self, family: str, rid: str) -> None:
        entry = self.read(family)
        if entry is None:
            self.invalidate(family)
            return
        self.write(family, [r for r in entry.data if record_id(r) != str(rid)])

    def invalidate(self, family: str) -> None:
        """Drop the in-memory entry. The mirror is kept for degraded reads."""
        self._check_family(family)
        if self._entries.pop(family, None) is not None:
            self._stats["invalidations"] += 1
            logger.debug(f"Cache INVALIDATE: {family}")

    def invalidate_all(self, include_mirror: bool = False) -> None:
        self._entries.clear()
        self._stats["invalidations"] += 1
        if include_mirror:
            self._durable.delete(*(StorageKeys.cached(f) for f in FAMILIES))
        logger.info(f"Cache cleared (mirror {'included' if include_mirror else 'kept'})")

    def apply_shadow(self, family: str, mutate: Callable[[list], list]) -> list:
        """
        Apply a local mutation to the mirror while the server is unreachable.

        The in-memory entry is dropped so the next online list() refetches.
        """
        self._check_family(family)
        records = mutate(list(self.read_mirror(family) or []))
        self._durable.set_json(StorageKeys.cached(family), records)
        self._entries.pop(family, None)
        logger.debug(f"Cache SHADOW: {family} ({len(records)} records)")
        return records

    def stats(self) -> dict:
        total = self._stats["hits"] + self._stats["misses"]
        return dict(
            self._stats,
            hit_rate=round(self._stats["hits"] / total, 3) if total else 0.0,
            families=sorted(self._entries),
        )
