"""
Semantic type aliases for datacoherence.

These aliases keep signatures self-documenting: an ``IdentityId`` and an
``EntityId`` are both strings on the wire, but they are never interchangeable.
"""

from collections.abc import Mapping
from typing import Any

# Time and timestamp types
type Timestamp = float
type DurationSeconds = float

# ID and identifier types
type IdentityId = str
type EntityId = str
type EntityKind = str
type MutationId = str
type SubscriptionId = str
type ChannelId = str

# Cache-related types
type KeySegment = str | int | float | bool | tuple[tuple[str, Any], ...] | None
type CacheKey = tuple[KeySegment, ...]
type KeyPattern = tuple[KeySegment, ...]
type VersionNumber = int

# Payload types
type RawRecord = Mapping[str, Any]
type RawMessage = Mapping[str, Any] | bytes | str
type JsonDict = dict[str, Any]

# Validation and monitoring types
type ErrorCode = str
type FieldPath = str
type ValidationPattern = str

# Statistics types
type HitCount = int
type MissCount = int
type EvictionCount = int
type EntryCount = int
type ByteSize = int
