"""
Realtime event bridge.

Change events arrive on opaque channels, one channel per ``(kind, isolation,
identity)``. The channel name is an HMAC of that tuple under a shared secret,
so it can be neither guessed nor enumerated, and two identities never share a
channel for identity-scoped data.

Every subscription owns an ``asyncio.Queue`` drained by a single worker task,
which gives per-subscription arrival ordering. The worker decodes each
message, validates it, invalidates what the event makes stale and then calls
the subscriber's handler. A malformed event is dropped and reported to the
validation monitor; the subscription keeps running.
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import hmac
import inspect
import itertools
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from datacoherence.config import DataLayerSettings
from datacoherence.core.cache_keys import IsolationLevel, KeyFactory
from datacoherence.core.entities import NonEmptyStr
from datacoherence.core.errors import (
    DataLayerConfigurationError,
    Err,
    MissingIdentityError,
    Ok,
    Result,
    failure_from_exception,
)
from datacoherence.core.interfaces import RealtimeTransport
from datacoherence.core.invalidation import InvalidationCoordinator
from datacoherence.core.logging import component_logger
from datacoherence.core.serialization import JsonSerializer, Serializer
from datacoherence.core.task_manager import ManagedObject
from datacoherence.core.validation import SchemaValidator
from datacoherence.core.validation_monitor import ValidationMonitor
from datacoherence.datastructures.type_aliases import (
    ChannelId,
    DurationSeconds,
    EntityKind,
    IdentityId,
    RawMessage,
    SubscriptionId,
)

realtime_log = component_logger("realtime")

CHANNEL_PREFIX = "sec-"
MALFORMED_EVENT_CODE = "REALTIME_EVENT_MALFORMED"

_DATABASE_OPERATIONS = {"INSERT": "create", "UPDATE": "update", "DELETE": "delete"}


class ChangeEvent(BaseModel):
    """Envelope of a realtime change notification.

    Database change payloads (``eventType`` plus ``new``/``old`` rows) are
    accepted and normalised into the same shape. Numeric ids and scopes are
    read as strings, matching how record ids are keyed.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", coerce_numbers_to_str=True)

    kind: NonEmptyStr
    operation: NonEmptyStr
    entity_id: str | None = None
    scope: str | None = None
    record: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_database_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "operation" not in data and "eventType" in data:
            event_type = str(data["eventType"]).upper()
            data["operation"] = _DATABASE_OPERATIONS.get(event_type, event_type.lower())
        if data.get("record") is None:
            row = data.get("new") or data.get("old")
            if isinstance(row, dict) and row:
                data["record"] = row
        record = data.get("record")
        if data.get("entity_id") is None and isinstance(record, dict):
            if record.get("id") is not None:
                data["entity_id"] = str(record["id"])
        return data


type EventHandler = Callable[[ChangeEvent, Any], None | Awaitable[None]]


class SecureChannelNameGenerator:
    """Derives opaque channel names with HMAC-SHA256."""

    def __init__(self, secret: bytes | str, token_length: int = 32) -> None:
        if not secret:
            raise DataLayerConfigurationError("A channel secret is required")
        if not 16 <= token_length <= 64:
            raise DataLayerConfigurationError("token_length must be within 16..64")
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self.token_length = token_length

    @classmethod
    def from_settings(cls, settings: DataLayerSettings) -> SecureChannelNameGenerator:
        if settings.channel_secret is None:
            raise DataLayerConfigurationError(
                "channel_secret must be configured to use realtime channels"
            )
        return cls(
            settings.channel_secret.get_secret_value(), settings.channel_token_length
        )

    def channel_for(
        self,
        kind: EntityKind,
        isolation: IsolationLevel,
        identity: IdentityId | None = None,
    ) -> ChannelId:
        if isolation is IsolationLevel.USER_SPECIFIC:
            if not identity:
                raise MissingIdentityError(
                    f"Channel for identity-scoped kind {kind!r} needs an identity"
                )
            subject = identity
        else:
            subject = ""
        message = f"{kind}|{isolation.value}|{subject}".encode()
        digest = hmac.new(self._secret, message, hashlib.sha256).hexdigest()
        return f"{CHANNEL_PREFIX}{digest[: self.token_length]}"


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    subscription_id: SubscriptionId
    channel_id: ChannelId
    kind: EntityKind
    scope: IdentityId | None


@dataclass(slots=True)
class ChannelSubscription:
    handle: SubscriptionHandle
    handler: EventHandler
    identity_scoped: bool
    queue: asyncio.Queue[RawMessage] = field(default_factory=asyncio.Queue)
    worker: asyncio.Task[None] | None = None
    closed: bool = False


@dataclass(slots=True)
class RealtimeStatistics:
    received: int = 0
    delivered: int = 0
    dropped_malformed: int = 0
    dropped_invalid_record: int = 0
    dropped_unrelated: int = 0
    dropped_after_close: int = 0
    handler_errors: int = 0
    subscriptions_opened: int = 0
    subscriptions_closed: int = 0


class RealtimeEventBridge(ManagedObject):
    """Turns realtime change events into validated, ordered invalidations."""

    def __init__(
        self,
        transport: RealtimeTransport,
        key_factory: KeyFactory,
        validator: SchemaValidator,
        coordinator: InvalidationCoordinator,
        monitor: ValidationMonitor,
        channel_names: SecureChannelNameGenerator,
        *,
        subscribe_timeout: DurationSeconds = 5.0,
        serializer: Serializer | None = None,
        identity: IdentityId | None = None,
    ) -> None:
        super().__init__(name="RealtimeEventBridge")
        self.transport = transport
        self.key_factory = key_factory
        self.validator = validator
        self.coordinator = coordinator
        self.monitor = monitor
        self.channel_names = channel_names
        self.subscribe_timeout = subscribe_timeout
        self.serializer = serializer or JsonSerializer()
        self.statistics = RealtimeStatistics()
        self._identity = identity
        self._subscriptions: dict[SubscriptionId, ChannelSubscription] = {}
        self._ids = itertools.count(1)
        self._lifecycle_lock = asyncio.Lock()

    @property
    def identity(self) -> IdentityId | None:
        return self._identity

    def subscriptions(self) -> list[SubscriptionHandle]:
        return [sub.handle for sub in self._subscriptions.values()]

    async def subscribe(
        self,
        kind: EntityKind,
        scope: IdentityId | None,
        handler: EventHandler,
    ) -> Result[SubscriptionHandle]:
        """Open the channel for ``kind`` in ``scope`` and start its worker.

        Identity-scoped kinds can only be subscribed for the current identity.
        Handshake failures and timeouts come back as ``Err``.
        """
        spec = self.key_factory.spec(kind)
        async with self._lifecycle_lock:
            if spec.identity_scoped:
                scope = scope or self._identity
                if not scope:
                    raise MissingIdentityError(
                        f"Cannot subscribe to {kind!r} without an identity"
                    )
                if scope != self._identity:
                    raise DataLayerConfigurationError(
                        f"Cannot subscribe to {kind!r} for another identity"
                    )
            else:
                scope = None

            channel_id = self.channel_names.channel_for(kind, spec.isolation, scope)
            handle = SubscriptionHandle(
                subscription_id=f"sub-{next(self._ids)}",
                channel_id=channel_id,
                kind=kind,
                scope=scope,
            )
            subscription = ChannelSubscription(
                handle=handle, handler=handler, identity_scoped=spec.identity_scoped
            )
            deliver = functools.partial(self._enqueue, subscription)

            try:
                await asyncio.wait_for(
                    self.transport.subscribe(channel_id, deliver),
                    timeout=self.subscribe_timeout,
                )
            except Exception as e:
                failure = failure_from_exception(
                    e, timeout_seconds=self.subscribe_timeout
                )
                realtime_log.warning(
                    f"Subscribe to {kind} channel failed: [{failure.code}] {failure.message}"
                )
                return Err(failure)

            subscription.worker = self.create_task(
                self._worker(subscription), name=f"realtime:{channel_id}"
            )
            self._subscriptions[handle.subscription_id] = subscription
            self.statistics.subscriptions_opened += 1
            realtime_log.info(f"Subscribed {handle.subscription_id} to {kind} updates")
            return Ok(handle)

    async def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        async with self._lifecycle_lock:
            subscription = self._subscriptions.pop(handle.subscription_id, None)
            if subscription is None:
                return False
            await self._close(subscription)
            return True

    async def set_identity(self, identity: IdentityId | None) -> list[SubscriptionHandle]:
        """Switch identity, tearing down every identity-scoped subscription first."""
        async with self._lifecycle_lock:
            if identity == self._identity:
                return []
            scoped = [
                sub for sub in self._subscriptions.values() if sub.identity_scoped
            ]
            for subscription in scoped:
                del self._subscriptions[subscription.handle.subscription_id]
                await self._close(subscription)
            self._identity = identity
            realtime_log.info(
                f"Identity changed; closed {len(scoped)} identity-scoped subscriptions"
            )
            return [sub.handle for sub in scoped]

    async def shutdown(self) -> None:
        async with self._lifecycle_lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
            for subscription in subscriptions:
                await self._close(subscription)
        await super().shutdown()

    async def _close(self, subscription: ChannelSubscription) -> None:
        subscription.closed = True
        channel_id = subscription.handle.channel_id
        try:
            await asyncio.wait_for(
                self.transport.unsubscribe(channel_id), timeout=self.subscribe_timeout
            )
        except Exception as e:
            realtime_log.warning(f"Unsubscribe from {channel_id} failed: {e}")
        if subscription.worker is not None:
            await self._task_manager.cancel_task(subscription.worker)
        self.statistics.subscriptions_closed += 1

    # Inbound path

    def _enqueue(self, subscription: ChannelSubscription, message: RawMessage) -> None:
        if subscription.closed:
            self.statistics.dropped_after_close += 1
            return
        self.statistics.received += 1
        subscription.queue.put_nowait(message)

    async def _worker(self, subscription: ChannelSubscription) -> None:
        while True:
            message = await subscription.queue.get()
            try:
                await self._process(subscription, message)
            except Exception as e:
                self.statistics.handler_errors += 1
                realtime_log.error(
                    f"Handler for {subscription.handle.subscription_id} failed: {e}"
                )
            finally:
                subscription.queue.task_done()

    async def _process(
        self, subscription: ChannelSubscription, message: RawMessage
    ) -> None:
        handle = subscription.handle
        event = self.decode(message, default_kind=handle.kind)
        if event is None:
            return

        if event.kind != handle.kind:
            self.statistics.dropped_unrelated += 1
            realtime_log.debug(f"Dropped {event.kind} event on {handle.kind} channel")
            return
        if subscription.identity_scoped:
            if event.scope is None:
                event = event.model_copy(update={"scope": handle.scope})
            elif event.scope != handle.scope:
                self.statistics.dropped_unrelated += 1
                realtime_log.warning(
                    f"Dropped {event.kind} event for a different scope on "
                    f"{handle.subscription_id}"
                )
                return
        elif event.scope is not None:
            event = event.model_copy(update={"scope": None})

        entity = None
        if event.record is not None and event.kind in self.validator.registry:
            match self.validator.validate(
                event.kind, event.record, source_id=event.entity_id
            ):
                case Ok(data=validated):
                    entity = validated
                case Err():
                    self.statistics.dropped_invalid_record += 1
                    return

        self.coordinator.apply_event(event)
        result = subscription.handler(event, entity)
        if inspect.isawaitable(result):
            await result
        self.statistics.delivered += 1

    def decode(
        self, message: RawMessage, default_kind: EntityKind | None = None
    ) -> ChangeEvent | None:
        """Parse a raw message into a ``ChangeEvent``; None if malformed."""
        try:
            data = (
                self.serializer.deserialize(message)
                if isinstance(message, bytes | str)
                else message
            )
            if isinstance(data, Mapping):
                data = dict(data)
                if default_kind:
                    data.setdefault("kind", default_kind)
            return ChangeEvent.model_validate(data)
        except (ValueError, ValidationError) as e:
            self.statistics.dropped_malformed += 1
            self.monitor.record_failure(
                "realtime",
                MALFORMED_EVENT_CODE,
                f"Malformed change event: {e}",
                received_value=message,
            )
            return None
