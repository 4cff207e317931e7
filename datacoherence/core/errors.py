"""
Failure taxonomy and result types.

Remote collaborators signal problems by raising ``RemoteError`` subclasses.
The data layer never lets those (or malformed payloads) escape: they are
converted into ``DataLayerFailure`` values and returned inside ``Err``.
Exceptions that do propagate are configuration mistakes made by the caller
(unknown entity kind, duplicate invalidation rule, missing identity).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from datacoherence.datastructures.type_aliases import (
    EntityId,
    EntityKind,
    ErrorCode,
    FieldPath,
)


class FailureKind(Enum):
    """Top-level failure categories."""

    VALIDATION = "validation"
    NETWORK = "network"
    AUTHORIZATION = "authorization"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"


@dataclass(frozen=True, slots=True)
class DataLayerFailure:
    """Base failure value surfaced to callers."""

    code: ErrorCode
    message: str
    user_message: str = "Something went wrong. Please try again."
    details: dict[str, Any] | None = None

    @property
    def kind(self) -> FailureKind:
        raise NotImplementedError

    @property
    def retryable(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class ValidationFailure(DataLayerFailure):
    """A single malformed record. Contained locally, never aborts a batch."""

    entity_kind: EntityKind = ""
    source_id: EntityId | int | None = None
    field_path: FieldPath | None = None
    received_value: Any = None

    @property
    def kind(self) -> FailureKind:
        return FailureKind.VALIDATION


@dataclass(frozen=True, slots=True)
class NetworkFailure(DataLayerFailure):
    """Transient transport problem; stale data stays readable."""

    @property
    def kind(self) -> FailureKind:
        return FailureKind.NETWORK

    @property
    def retryable(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class TimeoutFailure(NetworkFailure):
    """A remote call exceeded its configured timeout."""

    timeout_seconds: float = 0.0

    @property
    def kind(self) -> FailureKind:
        return FailureKind.TIMEOUT


@dataclass(frozen=True, slots=True)
class AuthorizationFailure(DataLayerFailure):
    """The current identity is no longer valid; its cache partitions get cleared."""

    @property
    def kind(self) -> FailureKind:
        return FailureKind.AUTHORIZATION


@dataclass(frozen=True, slots=True)
class ConflictFailure(DataLayerFailure):
    """The remote rejected an optimistic mutation."""

    @property
    def kind(self) -> FailureKind:
        return FailureKind.CONFLICT


@dataclass(frozen=True, slots=True)
class Ok[T]:
    data: T
    ok: Literal[True] = True


@dataclass(frozen=True, slots=True)
class Err:
    error: DataLayerFailure
    ok: Literal[False] = False


type Result[T] = Ok[T] | Err


# Exceptions raised by remote collaborators


@dataclass(eq=False)
class RemoteError(Exception):
    """Base class for failures reported by the remote data source."""

    message: str = "Remote call failed"
    code: ErrorCode = "REMOTE_ERROR"
    user_message: str | None = None
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(eq=False)
class RemoteNetworkError(RemoteError):
    code: ErrorCode = "NETWORK_ERROR"


@dataclass(eq=False)
class RemoteAuthorizationError(RemoteError):
    code: ErrorCode = "AUTHENTICATION_REQUIRED"


@dataclass(eq=False)
class RemoteConflictError(RemoteError):
    code: ErrorCode = "CONFLICT"


# Exceptions raised on caller misconfiguration


class DataLayerConfigurationError(Exception):
    """Programming error in how the layer was configured or called."""


class MissingIdentityError(DataLayerConfigurationError):
    """An identity-scoped key was requested without an identity."""


_DEFAULT_USER_MESSAGES: dict[type[DataLayerFailure], str] = {
    NetworkFailure: "Unable to reach the server. Please try again.",
    TimeoutFailure: "The request took too long. Please try again.",
    AuthorizationFailure: "Please sign in again to continue.",
    ConflictFailure: "Your change could not be saved. Please review and retry.",
}


def failure_from_exception(
    exc: BaseException, *, timeout_seconds: float | None = None
) -> DataLayerFailure:
    """Convert anything raised by a remote call into a failure value."""
    if isinstance(exc, TimeoutError | asyncio.TimeoutError):
        return TimeoutFailure(
            code="TIMEOUT",
            message=f"Remote call timed out after {timeout_seconds}s",
            user_message=_DEFAULT_USER_MESSAGES[TimeoutFailure],
            timeout_seconds=timeout_seconds or 0.0,
        )

    failure_type: type[DataLayerFailure]
    match exc:
        case RemoteAuthorizationError():
            failure_type = AuthorizationFailure
        case RemoteConflictError():
            failure_type = ConflictFailure
        case RemoteError():
            failure_type = NetworkFailure
        case _:
            return NetworkFailure(
                code="UNKNOWN_ERROR",
                message=f"{type(exc).__name__}: {exc}",
                user_message=_DEFAULT_USER_MESSAGES[NetworkFailure],
            )

    return failure_type(
        code=exc.code,
        message=exc.message,
        user_message=exc.user_message or _DEFAULT_USER_MESSAGES[failure_type],
        details=exc.details,
    )
