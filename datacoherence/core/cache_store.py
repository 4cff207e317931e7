"""
Keyed cache store with staleness and garbage-collection bookkeeping.

The store is the only shared mutable resource of the data layer; every write
to a ``CacheEntry`` goes through it. Entries are addressed by tuple keys from
the key factory and can be invalidated by prefix pattern.

Each entry carries three deadlines:

- ``fetched_at`` when the value was written,
- ``stale_at`` after which it is still served but should be refreshed,
- ``gc_at`` after which it is evicted unless a consumer is observing it.

Fetches run as tasks owned by the store, so a consumer going away never
cancels a fetch other consumers may be waiting on. A fetch result is only
applied if the fetch is still the current one for its key: starting an
optimistic mutation cancels it, and an invalidation issued while it was in
flight leaves the result marked stale.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import itertools
import time
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pympler import asizeof

from datacoherence.core.cache_keys import check_pattern, key_matches
from datacoherence.core.logging import component_logger
from datacoherence.core.task_manager import ManagedObject
from datacoherence.datastructures.type_aliases import (
    ByteSize,
    CacheKey,
    DurationSeconds,
    EntityKind,
    KeyPattern,
    Timestamp,
    VersionNumber,
)

cache_store_log = component_logger("cache_store")


class CacheChangeType(Enum):
    """Notifications delivered to observers of a key."""

    SET = "set"
    INVALIDATED = "invalidated"
    REMOVED = "removed"
    EVICTED = "evicted"


@dataclass(frozen=True, slots=True)
class StalenessPolicy:
    """How long values of one entity kind stay fresh and stay cached."""

    stale_seconds: DurationSeconds
    gc_seconds: DurationSeconds

    def __post_init__(self) -> None:
        if self.stale_seconds < 0:
            raise ValueError("stale_seconds must be >= 0")
        if self.gc_seconds < self.stale_seconds:
            raise ValueError("gc_seconds must be >= stale_seconds")


DEFAULT_POLICY = StalenessPolicy(stale_seconds=60.0, gc_seconds=300.0)


@dataclass(slots=True)
class CacheEntry:
    """A cached value and its lifecycle metadata."""

    key: CacheKey
    value: Any
    fetched_at: Timestamp
    stale_at: Timestamp
    gc_at: Timestamp
    in_flight_version: VersionNumber | None = None
    version: VersionNumber = 0
    invalidated: bool = False
    optimistic: bool = False
    size_bytes: ByteSize = 0

    def __post_init__(self) -> None:
        if self.stale_at < self.fetched_at:
            raise ValueError("stale_at must be >= fetched_at")
        if self.gc_at < self.stale_at:
            raise ValueError("gc_at must be >= stale_at")

    def is_stale(self, now: Timestamp | None = None) -> bool:
        now = time.time() if now is None else now
        return self.invalidated or now >= self.stale_at

    def is_expired(self, now: Timestamp | None = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.gc_at

    def snapshot(self) -> CacheEntry:
        """Deep, detached copy used for rollback."""
        return dataclasses.replace(self, value=copy.deepcopy(self.value))


@dataclass(frozen=True, slots=True)
class CacheChange:
    change_type: CacheChangeType
    key: CacheKey
    entry: CacheEntry | None = None


@dataclass(frozen=True, slots=True)
class ObserverHandle:
    observer_id: int
    key: CacheKey


type CacheObserver = Callable[[CacheChange], Any]
type Loader = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class CacheStoreStatistics:
    hits: int = 0
    stale_hits: int = 0
    misses: int = 0
    writes: int = 0
    invalidations: int = 0
    evictions: int = 0
    fetches: int = 0
    fetch_failures: int = 0
    cancelled_fetches: int = 0
    discarded_fetch_results: int = 0
    entry_count: int = 0
    memory_bytes: ByteSize = 0

    def hit_rate(self) -> float:
        total = self.hits + self.stale_hits + self.misses
        return (self.hits + self.stale_hits) / total if total > 0 else 0.0


@dataclass(slots=True)
class _InFlightFetch:
    version: VersionNumber
    task: asyncio.Task[CacheEntry | None]
    started_seq: int
    cancelled: bool = False


class CacheStore(ManagedObject):
    """Shared keyed cache with per-kind staleness and observer-aware GC."""

    def __init__(
        self,
        policy_for: Callable[[EntityKind], StalenessPolicy] | None = None,
        *,
        gc_interval_seconds: DurationSeconds = 30.0,
        clock: Callable[[], Timestamp] = time.time,
        enable_sizing: bool = True,
        invalidation_log_size: int = 1024,
    ) -> None:
        super().__init__(name=f"CacheStore-{id(self)}")
        self._policy_for = policy_for or (lambda _kind: DEFAULT_POLICY)
        self.gc_interval_seconds = gc_interval_seconds
        self.clock = clock
        self.enable_sizing = enable_sizing

        self._entries: dict[CacheKey, CacheEntry] = {}
        self._in_flight: dict[CacheKey, _InFlightFetch] = {}
        self._observers: dict[CacheKey, dict[int, CacheObserver]] = defaultdict(dict)
        self._observer_ids = itertools.count(1)
        self._versions = itertools.count(1)
        self._seq = itertools.count(1)
        self._invalidation_log: deque[tuple[int, KeyPattern]] = deque(
            maxlen=invalidation_log_size
        )
        self.statistics = CacheStoreStatistics()
        self._gc_task: asyncio.Task[None] | None = None

    # Lifecycle

    def start(self) -> None:
        """Start the periodic garbage collector."""
        if self._gc_task is None or self._gc_task.done():
            self._gc_task = self.create_task(
                self._periodic_gc(), name="cache_store_gc"
            )

    async def _periodic_gc(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.gc_interval_seconds)
                evicted = self.collect_garbage()
                if evicted:
                    cache_store_log.debug(f"GC evicted {len(evicted)} entries")
        except asyncio.CancelledError:
            cache_store_log.debug("Cache GC task cancelled")
            raise

    async def shutdown(self) -> None:
        for key in list(self._in_flight):
            self.cancel_in_flight(key)
        await super().shutdown()
        self.clear()
        cache_store_log.info("Cache store shutdown complete")

    # Policies

    def policy_for(self, kind: EntityKind) -> StalenessPolicy:
        return self._policy_for(kind)

    # Reads

    def get(self, key: CacheKey) -> CacheEntry | None:
        """Entry for ``key`` (possibly stale), or None.

        An entry past ``gc_at`` is evicted on access unless it is observed.
        """
        entry = self._entries.get(key)
        now = self.clock()
        if entry is None:
            self.statistics.misses += 1
            return None

        if entry.is_expired(now) and not self.has_observers(key):
            self._evict(key, reason="expired on access")
            self.statistics.misses += 1
            return None

        if entry.is_stale(now):
            self.statistics.stale_hits += 1
        else:
            self.statistics.hits += 1
        return entry

    def peek(self, key: CacheKey) -> CacheEntry | None:
        """Entry for ``key`` without touching statistics or expiry."""
        return self._entries.get(key)

    def keys(self, pattern: KeyPattern | None = None) -> list[CacheKey]:
        if pattern is None:
            return list(self._entries)
        return [key for key in self._entries if key_matches(pattern, key)]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # Writes

    def set(
        self,
        key: CacheKey,
        value: Any,
        policy: StalenessPolicy | None = None,
        *,
        optimistic: bool = False,
    ) -> CacheEntry:
        """Write ``value`` under ``key`` with fresh deadlines."""
        policy = policy or self.policy_for(key[0])
        now = self.clock()
        previous = self._entries.get(key)
        entry = CacheEntry(
            key=key,
            value=value,
            fetched_at=now,
            stale_at=now + policy.stale_seconds,
            gc_at=now + policy.gc_seconds,
            in_flight_version=previous.in_flight_version if previous else None,
            version=next(self._versions),
            optimistic=optimistic,
            size_bytes=self._estimate_size(value),
        )
        self._store(entry, previous)
        return entry

    def restore(self, key: CacheKey, snapshot: CacheEntry | None) -> None:
        """Put back an exact snapshot taken earlier (or drop the key if None)."""
        if snapshot is None:
            if key in self._entries:
                self._remove_key(key, CacheChangeType.REMOVED)
            return
        restored = snapshot.snapshot()
        self._store(restored, self._entries.get(key))
        cache_store_log.debug(f"Restored snapshot for {key}")

    def _store(self, entry: CacheEntry, previous: CacheEntry | None) -> None:
        if previous is not None:
            self.statistics.memory_bytes -= previous.size_bytes
        self._entries[entry.key] = entry
        self.statistics.memory_bytes += entry.size_bytes
        self.statistics.writes += 1
        self.statistics.entry_count = len(self._entries)
        self._notify(CacheChange(CacheChangeType.SET, entry.key, entry))

    def invalidate(self, key_or_pattern: KeyPattern) -> list[CacheKey]:
        """Mark every held key under ``key_or_pattern`` stale.

        Values stay readable; observers are told to refetch. Returns the
        concrete keys that were affected.
        """
        pattern = check_pattern(key_or_pattern)
        seq = next(self._seq)
        self._invalidation_log.append((seq, pattern))

        now = self.clock()
        affected = []
        for key in self.keys(pattern):
            entry = self._entries[key]
            entry.invalidated = True
            entry.stale_at = max(entry.fetched_at, min(entry.stale_at, now))
            affected.append(key)

        self.statistics.invalidations += len(affected)
        for key in affected:
            self._notify(
                CacheChange(CacheChangeType.INVALIDATED, key, self._entries[key])
            )

        cache_store_log.debug(f"Invalidated {len(affected)} entries under {pattern}")
        return affected

    def remove(self, key_or_pattern: KeyPattern) -> list[CacheKey]:
        """Hard-delete every held key under ``key_or_pattern``."""
        pattern = check_pattern(key_or_pattern)
        removed = self.keys(pattern)
        for key in removed:
            self.cancel_in_flight(key)
            self._remove_key(key, CacheChangeType.REMOVED)
        if removed:
            cache_store_log.info(f"Removed {len(removed)} entries under {pattern}")
        return removed

    def clear(self) -> None:
        for key in list(self._in_flight):
            self.cancel_in_flight(key)
        self._entries.clear()
        self._invalidation_log.clear()
        self.statistics.entry_count = 0
        self.statistics.memory_bytes = 0

    # Fetching

    def is_fetching(self, key: CacheKey) -> bool:
        return key in self._in_flight

    def cancel_in_flight(self, key: CacheKey) -> bool:
        """Cancel the fetch running for ``key``; its result will be discarded."""
        in_flight = self._in_flight.pop(key, None)
        if in_flight is None:
            return False

        in_flight.cancelled = True
        in_flight.task.cancel()
        entry = self._entries.get(key)
        if entry is not None and entry.in_flight_version == in_flight.version:
            entry.in_flight_version = None
        self.statistics.cancelled_fetches += 1
        cache_store_log.debug(f"Cancelled in-flight fetch v{in_flight.version} for {key}")
        return True

    async def fetch(
        self,
        key: CacheKey,
        loader: Loader,
        *,
        timeout: DurationSeconds | None = None,
        policy: StalenessPolicy | None = None,
    ) -> CacheEntry | None:
        """Load ``key`` through ``loader`` and store the result.

        Concurrent fetches of one key share a single load. If the fetch is
        cancelled through :meth:`cancel_in_flight`, the current entry is
        returned untouched. Loader errors (including timeouts) propagate after
        the existing entry, if any, has been marked stale.
        """
        in_flight = self._in_flight.get(key)
        if in_flight is None:
            in_flight = self._start_fetch(key, loader, timeout, policy)

        task = in_flight.task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return self._entries.get(key)
            raise

    def _start_fetch(
        self,
        key: CacheKey,
        loader: Loader,
        timeout: DurationSeconds | None,
        policy: StalenessPolicy | None,
    ) -> _InFlightFetch:
        version = next(self._versions)
        started_seq = next(self._seq)
        task = self.create_task(
            self._run_fetch(key, loader, version, started_seq, timeout, policy),
            name=f"fetch:{key}",
        )
        in_flight = _InFlightFetch(version=version, task=task, started_seq=started_seq)
        self._in_flight[key] = in_flight
        entry = self._entries.get(key)
        if entry is not None:
            entry.in_flight_version = version
        self.statistics.fetches += 1
        return in_flight

    async def _run_fetch(
        self,
        key: CacheKey,
        loader: Loader,
        version: VersionNumber,
        started_seq: int,
        timeout: DurationSeconds | None,
        policy: StalenessPolicy | None,
    ) -> CacheEntry | None:
        try:
            if timeout is None:
                value = await loader()
            else:
                value = await asyncio.wait_for(loader(), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.statistics.fetch_failures += 1
            if self._is_current(key, version):
                self._in_flight.pop(key, None)
                self._mark_failed(key, version)
            raise

        if not self._is_current(key, version):
            self.statistics.discarded_fetch_results += 1
            cache_store_log.debug(f"Discarded superseded fetch v{version} for {key}")
            return self._entries.get(key)

        self._in_flight.pop(key, None)
        entry = self.set(key, value, policy)
        entry.in_flight_version = None
        if self._invalidated_since(key, started_seq):
            entry.invalidated = True
            entry.stale_at = entry.fetched_at
        return entry

    def _is_current(self, key: CacheKey, version: VersionNumber) -> bool:
        in_flight = self._in_flight.get(key)
        return in_flight is not None and in_flight.version == version

    def _mark_failed(self, key: CacheKey, version: VersionNumber) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        if entry.in_flight_version == version:
            entry.in_flight_version = None
        entry.stale_at = max(entry.fetched_at, min(entry.stale_at, self.clock()))

    def _invalidated_since(self, key: CacheKey, seq: int) -> bool:
        return any(
            logged_seq > seq and key_matches(pattern, key)
            for logged_seq, pattern in self._invalidation_log
        )

    # Observers

    def observe(self, key: CacheKey, callback: CacheObserver) -> ObserverHandle:
        """Register interest in ``key``; observed entries are never collected."""
        observer_id = next(self._observer_ids)
        self._observers[key][observer_id] = callback
        return ObserverHandle(observer_id=observer_id, key=key)

    def release(self, handle: ObserverHandle) -> None:
        observers = self._observers.get(handle.key)
        if observers is None:
            return
        observers.pop(handle.observer_id, None)
        if not observers:
            del self._observers[handle.key]

    def has_observers(self, key: CacheKey) -> bool:
        return bool(self._observers.get(key))

    def observed_keys(self) -> list[CacheKey]:
        return [key for key, observers in self._observers.items() if observers]

    def _notify(self, change: CacheChange) -> None:
        for callback in list(self._observers.get(change.key, {}).values()):
            try:
                result = callback(change)
                if asyncio.iscoroutine(result):
                    self.create_task(result, name=f"observer:{change.key}")
            except Exception as e:
                cache_store_log.error(f"Observer for {change.key} failed: {e}")

    # Garbage collection

    def collect_garbage(self, now: Timestamp | None = None) -> list[CacheKey]:
        """Evict expired entries nobody is observing."""
        now = self.clock() if now is None else now
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.is_expired(now)
            and not self.has_observers(key)
            and key not in self._in_flight
        ]
        for key in expired:
            self._evict(key, reason="gc")
        return expired

    def _evict(self, key: CacheKey, reason: str) -> None:
        self._remove_key(key, CacheChangeType.EVICTED)
        self.statistics.evictions += 1
        cache_store_log.debug(f"Evicted {key}: {reason}")

    def _remove_key(self, key: CacheKey, change_type: CacheChangeType) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        self.statistics.memory_bytes -= entry.size_bytes
        self.statistics.entry_count = len(self._entries)
        self._notify(CacheChange(change_type, key, None))

    def _estimate_size(self, value: Any) -> ByteSize:
        if not self.enable_sizing:
            return 0
        try:
            return asizeof.asizeof(value)
        except Exception as e:
            cache_store_log.warning(f"Failed to size cached value with pympler: {e}")
            return len(repr(value).encode("utf-8"))

    def describe(self, keys: Iterable[CacheKey] | None = None) -> dict[str, Any]:
        """Summary used by health checks and debugging."""
        selected = self._entries if keys is None else {
            k: self._entries[k] for k in keys if k in self._entries
        }
        now = self.clock()
        return {
            "entries": len(selected),
            "stale": sum(1 for e in selected.values() if e.is_stale(now)),
            "optimistic": sum(1 for e in selected.values() if e.optimistic),
            "in_flight": len(self._in_flight),
            "observed": len(self.observed_keys()),
            "memory_bytes": self.statistics.memory_bytes,
            "hit_rate": self.statistics.hit_rate(),
        }
