"""Collaborators the data layer consumes but does not implement."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from datacoherence.datastructures.type_aliases import (
    ChannelId,
    EntityKind,
    IdentityId,
    RawMessage,
)

type MessageSink = Callable[[RawMessage], None]


@runtime_checkable
class RemoteDataSource(Protocol):
    """Query/mutate capability keyed by entity kind.

    Implementations return raw (unvalidated) records and signal failures by
    raising ``RemoteNetworkError``, ``RemoteAuthorizationError`` or
    ``RemoteConflictError``.
    """

    async def fetch(
        self,
        kind: EntityKind,
        params: Mapping[str, Any],
        *,
        identity: IdentityId | None,
    ) -> Any:
        """Return one raw record, a list of raw records, or None."""
        ...

    async def mutate(
        self,
        kind: EntityKind,
        operation: str,
        payload: Any,
        *,
        identity: IdentityId | None,
    ) -> Any:
        """Apply a mutation and return the raw authoritative result."""
        ...


@runtime_checkable
class RealtimeTransport(Protocol):
    """Channel subscribe/unsubscribe plus message delivery."""

    async def subscribe(self, channel_id: ChannelId, deliver: MessageSink) -> None:
        """Complete the subscribe handshake, then call ``deliver`` per message."""
        ...

    async def unsubscribe(self, channel_id: ChannelId) -> None:
        """Stop delivery for ``channel_id``."""
        ...


@runtime_checkable
class IdentityProvider(Protocol):
    """Accessor for the current (possibly anonymous) identity."""

    def current_identity(self) -> IdentityId | None:
        """Opaque identity value, or None when signed out."""
        ...
