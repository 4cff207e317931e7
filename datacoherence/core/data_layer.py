"""
Collaborator-facing data layer.

``DataLayer`` is constructed explicitly once per session and owns the cache
store, key factory, validator, invalidation coordinator, mutation engine and
(when a transport is given) the realtime bridge. Consumers read through
:meth:`DataLayer.read`, write through :meth:`DataLayer.mutate` and attach
interest with :meth:`DataLayer.watch`. Nothing raised by a remote collaborator
escapes: reads return a ``QueryResult`` and mutations an ``Ok``/``Err``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from datacoherence.config import DataLayerSettings
from datacoherence.core.cache_keys import (
    EntityKeys,
    IsolationLevel,
    KeyFactory,
    default_key_factory,
)
from datacoherence.core.cache_store import (
    CacheObserver,
    CacheStore,
    ObserverHandle,
    StalenessPolicy,
)
from datacoherence.core.errors import (
    AuthorizationFailure,
    DataLayerConfigurationError,
    DataLayerFailure,
    Err,
    MissingIdentityError,
    Ok,
    RemoteAuthorizationError,
    RemoteConflictError,
    RemoteError,
    Result,
    ValidationFailure,
    failure_from_exception,
)
from datacoherence.core.interfaces import (
    IdentityProvider,
    RealtimeTransport,
    RemoteDataSource,
)
from datacoherence.core.invalidation import InvalidationCoordinator, InvalidationRuleTable
from datacoherence.core.logging import component_logger
from datacoherence.core.mutations import (
    MergeFn,
    MutationIntent,
    OptimisticMutationEngine,
    OptimisticUpdate,
)
from datacoherence.core.realtime import (
    EventHandler,
    RealtimeEventBridge,
    SecureChannelNameGenerator,
    SubscriptionHandle,
)
from datacoherence.core.validation import EntitySchemaRegistry, SchemaValidator
from datacoherence.core.validation_monitor import ValidationMonitor
from datacoherence.datastructures.type_aliases import (
    CacheKey,
    DurationSeconds,
    EntityId,
    EntityKind,
    IdentityId,
)

data_layer_log = component_logger("data_layer")

type KeyBuilder = Callable[[EntityKeys], CacheKey]


class QueryStatus(Enum):
    SUCCESS = "success"
    STALE = "stale"
    ERROR = "error"
    EMPTY = "empty"


@dataclass(frozen=True, slots=True)
class QueryResult[T]:
    """What a read returns: data (possibly stale) plus status and error."""

    data: T | None
    status: QueryStatus
    error: DataLayerFailure | None = None
    failures: tuple[ValidationFailure, ...] = ()
    is_stale: bool = False
    key: CacheKey = ()

    @property
    def has_data(self) -> bool:
        return self.data is not None and self.data != ()


class InvalidRemoteRecord(Exception):
    """A fetched single record failed validation."""

    def __init__(self, failure: ValidationFailure) -> None:
        super().__init__(failure.message)
        self.failure = failure


def _is_empty(value: Any) -> bool:
    return value is None or value == ()


class DataLayer:
    """Session-scoped entry point wiring all data-layer components together."""

    def __init__(
        self,
        remote: RemoteDataSource,
        identity_provider: IdentityProvider,
        *,
        settings: DataLayerSettings | None = None,
        transport: RealtimeTransport | None = None,
        key_factory: KeyFactory | None = None,
        schema_registry: EntitySchemaRegistry | None = None,
        rules: InvalidationRuleTable | None = None,
        monitor: ValidationMonitor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or DataLayerSettings()
        self.remote = remote
        self.identity_provider = identity_provider
        self.key_factory = key_factory or default_key_factory()
        self.monitor = monitor or ValidationMonitor()
        self.validator = SchemaValidator(
            self.monitor, schema_registry, tolerance_for=self.settings.tolerance_for
        )
        self.cache = CacheStore(
            self.staleness_policy,
            gc_interval_seconds=self.settings.gc_interval_seconds,
            clock=clock,
        )
        self.coordinator = InvalidationCoordinator(self.cache, self.key_factory, rules)
        self.mutations = OptimisticMutationEngine(
            self.cache,
            self.coordinator,
            self.validator,
            default_timeout=self.settings.mutation_timeout_seconds,
        )
        self._session_identity = identity_provider.current_identity()
        self._batch_failures: dict[CacheKey, tuple[ValidationFailure, ...]] = {}

        self.realtime: RealtimeEventBridge | None = None
        if transport is not None:
            self.realtime = RealtimeEventBridge(
                transport,
                self.key_factory,
                self.validator,
                self.coordinator,
                self.monitor,
                SecureChannelNameGenerator.from_settings(self.settings),
                subscribe_timeout=self.settings.subscribe_timeout_seconds,
                identity=self._session_identity,
            )

    # Lifecycle

    async def start(self) -> None:
        self.cache.start()
        data_layer_log.info("Data layer started")

    async def shutdown(self) -> None:
        if self.realtime is not None:
            await self.realtime.shutdown()
        await self.cache.shutdown()
        data_layer_log.info("Data layer shut down")

    async def __aenter__(self) -> DataLayer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # Identity and keys

    @property
    def identity(self) -> IdentityId | None:
        return self.identity_provider.current_identity()

    def staleness_policy(self, kind: EntityKind) -> StalenessPolicy:
        return StalenessPolicy(
            stale_seconds=self.settings.stale_seconds_for(kind),
            gc_seconds=self.settings.gc_seconds_for(kind),
        )

    def keys(self, kind: EntityKind, *, fallback_to_global: bool = False) -> EntityKeys:
        return self.key_factory.keys_for(
            kind, self.identity, fallback_to_global=fallback_to_global
        )

    async def on_identity_change(self, new_identity: IdentityId | None = None) -> None:
        """Drop the previous identity's partitions and realtime channels."""
        if new_identity is None:
            new_identity = self.identity
        previous = self._session_identity
        if previous == new_identity:
            return

        removed = self.clear_identity_partitions(previous)
        if self.realtime is not None:
            await self.realtime.set_identity(new_identity)
        self._session_identity = new_identity
        data_layer_log.info(
            f"Identity changed; cleared {len(removed)} identity-scoped entries"
        )

    def clear_identity_partitions(self, identity: IdentityId | None) -> list[CacheKey]:
        """Hard-delete every identity-scoped entry belonging to ``identity``.

        Unfinished mutations on those entries are detached first so they
        cannot write the partition back when they complete.
        """
        patterns = [
            pattern
            for kind in self.key_factory.kinds(IsolationLevel.USER_SPECIFIC)
            for pattern in self.key_factory.invalidation_keys(
                kind, identity, include_fallbacks=True
            )
        ]
        self.mutations.detach(patterns)
        removed: list[CacheKey] = []
        for pattern in patterns:
            removed.extend(self.cache.remove(pattern))
        for key in removed:
            self._batch_failures.pop(key, None)
        return removed

    # Reads

    async def read(
        self,
        kind: EntityKind,
        key_builder: KeyBuilder | None = None,
        params: Mapping[str, Any] | None = None,
        *,
        many: bool = False,
        force: bool = False,
        timeout: DurationSeconds | None = None,
    ) -> QueryResult[Any]:
        """Read ``kind`` through the cache.

        Fresh cache hits are served without a remote call. Stale or missing
        entries are fetched (with retry) and validated; lists go through batch
        validation and keep their valid items. If the fetch fails, whatever
        is cached is returned with status ``STALE`` and the error attached.
        """
        params = dict(params or {})
        identity = self.identity
        try:
            keys = self.key_factory.keys_for(kind, identity)
        except MissingIdentityError as e:
            return QueryResult(
                data=None,
                status=QueryStatus.ERROR,
                error=AuthorizationFailure(
                    code="AUTHENTICATION_REQUIRED",
                    message=str(e),
                    user_message="Please sign in to continue.",
                ),
            )

        if key_builder is not None:
            key = key_builder(keys)
        elif many:
            key = keys.list(params)
        else:
            key = keys.all()

        entry = self.cache.get(key)
        if (
            entry is not None
            and not force
            and not entry.is_stale(self.cache.clock())
        ):
            return self._result_from_value(key, entry.value, is_stale=False)

        timeout = timeout if timeout is not None else self.settings.fetch_timeout_seconds

        async def loader() -> Any:
            raw = await self._fetch_with_retry(kind, params, identity, timeout)
            return self._validate_fetched(kind, key, raw, many)

        failure: DataLayerFailure | None = None
        try:
            entry = await self.cache.fetch(key, loader)
        except InvalidRemoteRecord as e:
            failure = e.failure
        except Exception as e:
            failure = failure_from_exception(e, timeout_seconds=timeout)

        if failure is None:
            if entry is None:
                return QueryResult(data=None, status=QueryStatus.EMPTY, key=key)
            return self._result_from_value(
                key, entry.value, entry.is_stale(self.cache.clock())
            )

        if isinstance(failure, AuthorizationFailure):
            self.clear_identity_partitions(identity)
            return QueryResult(
                data=None, status=QueryStatus.ERROR, error=failure, key=key
            )

        data_layer_log.warning(f"Read of {key} failed: [{failure.code}] {failure.message}")
        cached = self.cache.peek(key)
        if cached is not None:
            return QueryResult(
                data=cached.value,
                status=QueryStatus.STALE,
                error=failure,
                failures=self._batch_failures.get(key, ()),
                is_stale=True,
                key=key,
            )
        return QueryResult(data=None, status=QueryStatus.ERROR, error=failure, key=key)

    def _result_from_value(
        self, key: CacheKey, value: Any, is_stale: bool
    ) -> QueryResult[Any]:
        return QueryResult(
            data=value,
            status=QueryStatus.EMPTY if _is_empty(value) else QueryStatus.SUCCESS,
            failures=self._batch_failures.get(key, ()),
            is_stale=is_stale,
            key=key,
        )

    def _validate_fetched(
        self, kind: EntityKind, key: CacheKey, raw: Any, many: bool
    ) -> Any:
        if many:
            if raw is None:
                raw = ()
            elif isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
                raise InvalidRemoteRecord(self._malformed_batch(kind, raw))
            batch = self.validator.validate_batch(kind, raw)
            self._batch_failures[key] = batch.failures
            return batch.valid

        if raw is None:
            return None
        match self.validator.validate(kind, raw):
            case Ok(data=entity):
                return entity
            case Err(error=ValidationFailure() as failure):
                raise InvalidRemoteRecord(failure)

    def _malformed_batch(self, kind: EntityKind, raw: Any) -> ValidationFailure:
        code = f"{kind.upper()}_BATCH_MALFORMED"
        message = f"Expected a list of {kind} records, got {type(raw).__name__}"
        self.monitor.record_failure(kind, code, message, received_value=type(raw).__name__)
        return ValidationFailure(
            code=code,
            message=message,
            user_message="Some items could not be loaded.",
            entity_kind=kind,
            received_value=type(raw).__name__,
        )

    async def _fetch_with_retry(
        self,
        kind: EntityKind,
        params: Mapping[str, Any],
        identity: IdentityId | None,
        timeout: DurationSeconds,
    ) -> Any:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    self.remote.fetch(kind, params, identity=identity), timeout=timeout
                )
            except (RemoteAuthorizationError, RemoteConflictError):
                raise
            except (RemoteError, TimeoutError) as e:
                if attempt >= self.settings.fetch_retries:
                    raise
                delay = min(
                    self.settings.retry_base_delay_seconds * 2**attempt,
                    self.settings.retry_max_delay_seconds,
                )
                attempt += 1
                data_layer_log.debug(
                    f"Fetch of {kind} failed ({e!r}); retry {attempt} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    # Mutations

    def intent(
        self,
        kind: EntityKind,
        operation: str,
        target_key: CacheKey,
        payload: Any = None,
        *,
        entity_id: EntityId | None = None,
        result_kind: EntityKind | None = None,
        scope: IdentityId | None = None,
    ) -> MutationIntent:
        """Build a ``MutationIntent`` scoped to ``scope`` or the current identity."""
        return MutationIntent(
            entity_kind=kind,
            operation=str(operation),
            target_key=target_key,
            payload=payload,
            scope=scope if scope is not None else self.identity,
            entity_id=entity_id,
            result_kind=result_kind,
        )

    async def mutate(
        self,
        intent: MutationIntent,
        optimistic_update: OptimisticUpdate,
        *,
        merge: MergeFn | None = None,
        timeout: DurationSeconds | None = None,
    ) -> Result[Any]:
        """Run ``intent`` through the optimistic mutation engine."""
        if self.key_factory.spec(intent.entity_kind).identity_scoped and not intent.scope:
            return Err(
                AuthorizationFailure(
                    code="AUTHENTICATION_REQUIRED",
                    message=f"{intent.entity_kind} mutation needs an identity",
                    user_message="Please sign in to continue.",
                )
            )

        async def remote_call() -> Any:
            return await self.remote.mutate(
                intent.entity_kind,
                intent.operation,
                intent.payload,
                identity=intent.scope,
            )

        result = await self.mutations.execute(
            intent, optimistic_update, remote_call, timeout=timeout, merge=merge
        )
        if isinstance(result, Err) and isinstance(result.error, AuthorizationFailure):
            self.clear_identity_partitions(intent.scope)
        return result

    # Subscriptions

    def watch(self, key: CacheKey, callback: CacheObserver) -> ObserverHandle:
        """Attach interest in ``key``; it will not be collected while watched."""
        return self.cache.observe(key, callback)

    def release(self, handle: ObserverHandle) -> None:
        self.cache.release(handle)

    async def subscribe(
        self, kind: EntityKind, handler: EventHandler
    ) -> Result[SubscriptionHandle]:
        if self.realtime is None:
            raise DataLayerConfigurationError("No realtime transport configured")
        spec = self.key_factory.spec(kind)
        scope = self.identity if spec.identity_scoped else None
        return await self.realtime.subscribe(kind, scope, handler)

    async def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        if self.realtime is None:
            return False
        return await self.realtime.unsubscribe(handle)

    # Health

    def health(self) -> dict[str, Any]:
        report = self.monitor.health_status()
        return {
            "status": report.status.value,
            "issues": list(report.issues),
            "cache": self.cache.describe(),
            "invalidations": self.coordinator.statistics.keys_invalidated,
            "mutations": {
                "committed": self.mutations.statistics.committed,
                "rolled_back": self.mutations.statistics.rolled_back,
            },
        }
