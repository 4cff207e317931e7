"""
Optimistic mutation engine.

Each mutation moves through ``IDLE -> PENDING -> COMMITTED | ROLLED_BACK``:

- IDLE -> PENDING: cancel any fetch in flight for the target key, snapshot the
  current entry, write the speculative value.
- PENDING -> COMMITTED: the remote call succeeded; its (validated) response
  replaces the speculative value and the declared dependents are invalidated.
- PENDING -> ROLLED_BACK: the remote call failed or timed out, or its response
  did not validate; the snapshot is restored exactly and nothing is
  invalidated.

Mutations of one key run one at a time, in the order they were issued, so a
second mutation always snapshots the state the first one left behind. When an
identity's partitions are dropped, unfinished mutations on them are detached:
they still report the remote outcome but no longer write the cache.
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections import Counter, deque
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import ulid

from datacoherence.core.cache_keys import key_matches
from datacoherence.core.cache_store import CacheEntry, CacheStore
from datacoherence.core.errors import (
    AuthorizationFailure,
    DataLayerFailure,
    Err,
    Ok,
    Result,
    TimeoutFailure,
    failure_from_exception,
)
from datacoherence.core.invalidation import InvalidationCoordinator, InvalidationRequest
from datacoherence.core.logging import component_logger
from datacoherence.core.validation import SchemaValidator
from datacoherence.datastructures.type_aliases import (
    CacheKey,
    DurationSeconds,
    EntityId,
    EntityKind,
    ErrorCode,
    IdentityId,
    KeyPattern,
    MutationId,
    Timestamp,
)

mutation_log = component_logger("mutations")

type OptimisticUpdate = Callable[[Any | None], Any]
type RemoteCall = Callable[[], Awaitable[Any]]
type MergeFn = Callable[[Any, Any], Any]


class MutationState(Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


def _new_mutation_id() -> MutationId:
    return str(ulid.new())


@dataclass(frozen=True, slots=True)
class MutationIntent:
    """What a caller wants to change and which cache key shows it."""

    entity_kind: EntityKind
    operation: str
    target_key: CacheKey
    payload: Any = None
    scope: IdentityId | None = None
    entity_id: EntityId | None = None
    result_kind: EntityKind | None = None
    mutation_id: MutationId = field(default_factory=_new_mutation_id)

    def invalidation_request(self) -> InvalidationRequest:
        return InvalidationRequest(
            kind=self.entity_kind,
            operation=str(self.operation),
            scope=self.scope,
            entity_id=self.entity_id,
        )


@dataclass(slots=True)
class MutationRecord:
    """Lifecycle of one mutation, kept for observability."""

    mutation_id: MutationId
    entity_kind: EntityKind
    operation: str
    target_key: CacheKey
    state: MutationState = MutationState.IDLE
    started_at: Timestamp = field(default_factory=time.time)
    finished_at: Timestamp | None = None
    error_code: ErrorCode | None = None
    transitions: list[tuple[MutationState, Timestamp]] = field(default_factory=list)

    def transition(self, state: MutationState) -> None:
        now = time.time()
        self.state = state
        self.transitions.append((state, now))
        if state in (MutationState.COMMITTED, MutationState.ROLLED_BACK):
            self.finished_at = now

    @property
    def duration(self) -> DurationSeconds | None:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass(slots=True)
class MutationStatistics:
    started: int = 0
    committed: int = 0
    rolled_back: int = 0
    timeouts: int = 0
    rejected_responses: int = 0
    detached: int = 0
    failures_by_code: Counter[ErrorCode] = field(default_factory=Counter)


class KeyedMutationQueue:
    """One FIFO lock per cache key; locks are dropped once nobody waits."""

    def __init__(self) -> None:
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._users: Counter[CacheKey] = Counter()

    @asynccontextmanager
    async def hold(self, key: CacheKey) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                del self._users[key]
                self._locks.pop(key, None)

    def pending(self, key: CacheKey) -> int:
        """Mutations running or waiting for ``key``."""
        return self._users.get(key, 0)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(slots=True, eq=False)
class _Ticket:
    """A mutation issued but not yet finished; detached ones leave the cache alone."""

    key: CacheKey
    detached: bool = False


class OptimisticMutationEngine:
    """Runs mutations with speculative cache writes and exact rollback."""

    def __init__(
        self,
        cache: CacheStore,
        coordinator: InvalidationCoordinator,
        validator: SchemaValidator,
        *,
        default_timeout: DurationSeconds | None = None,
        history_size: int = 200,
    ) -> None:
        self.cache = cache
        self.coordinator = coordinator
        self.validator = validator
        self.default_timeout = default_timeout
        self.queue = KeyedMutationQueue()
        self.statistics = MutationStatistics()
        self.history: deque[MutationRecord] = deque(maxlen=history_size)
        self._tickets: set[_Ticket] = set()

    async def execute(
        self,
        intent: MutationIntent,
        optimistic_update: OptimisticUpdate,
        remote_call: RemoteCall,
        *,
        timeout: DurationSeconds | None = None,
        merge: MergeFn | None = None,
    ) -> Result[Any]:
        """Apply ``intent`` optimistically, then commit or roll back.

        ``optimistic_update`` receives a copy of the current cached value (or
        None) and returns the speculative value. ``merge``, if given, combines
        the speculative value with the authoritative response; otherwise the
        response wins outright.
        """
        ticket = _Ticket(intent.target_key)
        self._tickets.add(ticket)
        try:
            async with self.queue.hold(intent.target_key):
                if ticket.detached:
                    return self._abandon(intent)
                return await self._run(
                    intent,
                    optimistic_update,
                    remote_call,
                    timeout if timeout is not None else self.default_timeout,
                    merge,
                    ticket,
                )
        finally:
            self._tickets.discard(ticket)

    def detach(self, patterns: Iterable[KeyPattern]) -> int:
        """Stop unfinished mutations under ``patterns`` from writing the cache.

        Called when those partitions are dropped (identity change). Pending
        mutations still report their remote outcome; queued ones never start.
        """
        patterns = tuple(patterns)
        count = 0
        for ticket in self._tickets:
            if not ticket.detached and any(key_matches(p, ticket.key) for p in patterns):
                ticket.detached = True
                count += 1
        self.statistics.detached += count
        if count:
            mutation_log.info(f"Detached {count} unfinished mutations from the cache")
        return count

    async def _run(
        self,
        intent: MutationIntent,
        optimistic_update: OptimisticUpdate,
        remote_call: RemoteCall,
        timeout: DurationSeconds | None,
        merge: MergeFn | None,
        ticket: _Ticket,
    ) -> Result[Any]:
        key = intent.target_key
        record = MutationRecord(
            mutation_id=intent.mutation_id,
            entity_kind=intent.entity_kind,
            operation=str(intent.operation),
            target_key=key,
        )
        record.transition(MutationState.IDLE)
        self.history.append(record)
        self.statistics.started += 1

        # IDLE -> PENDING
        self.cache.cancel_in_flight(key)
        current = self.cache.peek(key)
        snapshot = current.snapshot() if current is not None else None
        previous_value = copy.deepcopy(snapshot.value) if snapshot is not None else None
        speculative = optimistic_update(previous_value)
        self.cache.set(key, speculative, optimistic=True)
        record.transition(MutationState.PENDING)
        mutation_log.debug(f"Mutation {intent.mutation_id} pending on {key}")

        try:
            if timeout is None:
                response = await remote_call()
            else:
                response = await asyncio.wait_for(remote_call(), timeout=timeout)
        except asyncio.CancelledError:
            self._restore(key, snapshot, ticket)
            record.transition(MutationState.ROLLED_BACK)
            self.statistics.rolled_back += 1
            raise
        except Exception as e:
            return self._rollback(
                record,
                key,
                snapshot,
                failure_from_exception(e, timeout_seconds=timeout),
                ticket,
            )

        authoritative = response
        if intent.result_kind is not None and response is not None:
            match self.validator.validate(
                intent.result_kind, response, source_id=intent.entity_id
            ):
                case Ok(data=entity):
                    authoritative = entity
                case Err(error=failure):
                    self.statistics.rejected_responses += 1
                    return self._rollback(record, key, snapshot, failure, ticket)

        if merge is not None:
            value = merge(speculative, authoritative)
        elif authoritative is None:
            value = speculative
        else:
            value = authoritative

        # PENDING -> COMMITTED
        if ticket.detached:
            mutation_log.debug(f"Mutation {intent.mutation_id} committed after detach")
        else:
            # Fetches started while pending read pre-commit server state.
            self.cache.cancel_in_flight(key)
            self.cache.set(key, value)
        record.transition(MutationState.COMMITTED)
        self.statistics.committed += 1
        result: Result[Any] = Ok(value)
        self.coordinator.apply(result, intent.invalidation_request())
        mutation_log.info(
            f"Mutation {intent.mutation_id} {intent.entity_kind}/{intent.operation}"
            f" committed on {key}"
        )
        return result

    def _rollback(
        self,
        record: MutationRecord,
        key: CacheKey,
        snapshot: CacheEntry | None,
        failure: DataLayerFailure,
        ticket: _Ticket,
    ) -> Err:
        self._restore(key, snapshot, ticket)
        record.error_code = failure.code
        record.transition(MutationState.ROLLED_BACK)
        self.statistics.rolled_back += 1
        self.statistics.failures_by_code[failure.code] += 1
        if isinstance(failure, TimeoutFailure):
            self.statistics.timeouts += 1

        result = Err(failure)
        # No-op for Err; only counted.
        self.coordinator.apply(
            result,
            InvalidationRequest(kind=record.entity_kind, operation=record.operation),
        )
        mutation_log.warning(
            f"Mutation {record.mutation_id} on {key} rolled back: "
            f"[{failure.code}] {failure.message}"
        )
        return result

    def _restore(
        self, key: CacheKey, snapshot: CacheEntry | None, ticket: _Ticket
    ) -> None:
        if ticket.detached:
            return
        self.cache.cancel_in_flight(key)
        self.cache.restore(key, snapshot)

    def _abandon(self, intent: MutationIntent) -> Err:
        self.statistics.failures_by_code["AUTHENTICATION_REQUIRED"] += 1
        mutation_log.info(
            f"Mutation {intent.mutation_id} on {intent.target_key} dropped:"
            " its partition was cleared before it started"
        )
        return Err(
            AuthorizationFailure(
                code="AUTHENTICATION_REQUIRED",
                message=f"Identity {intent.scope} signed out before the mutation ran",
                user_message="Please sign in to continue.",
            )
        )

    def recent(self, limit: int = 20) -> list[MutationRecord]:
        return list(self.history)[-limit:]
