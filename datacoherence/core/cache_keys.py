"""
Hierarchical cache key factory.

Keys are plain tuples ``(kind, [identity], shape..., [params])`` so that two
keys are equal exactly when their segments are, and a shorter key acts as a
prefix pattern over every key below it. Identity-scoped kinds always carry the
owning identity as their second segment; asking for one without an identity is
an error unless the caller opts into the explicit ``global-fallback`` marker.
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from datacoherence.core.errors import DataLayerConfigurationError, MissingIdentityError
from datacoherence.core.logging import component_logger
from datacoherence.datastructures.type_aliases import (
    CacheKey,
    EntityId,
    EntityKind,
    IdentityId,
    KeyPattern,
)

key_log = component_logger("cache_keys")

GLOBAL_FALLBACK = "global-fallback"


class IsolationLevel(Enum):
    """How an entity kind's keys are partitioned."""

    USER_SPECIFIC = "user-specific"
    ADMIN_GLOBAL = "admin-global"
    GLOBAL = "global"


class KeyShape(Enum):
    """Well-known sub-trees below an entity kind's root key."""

    ALL = "all"
    LISTS = "list"
    DETAIL = "detail"
    STATS = "stats"


@dataclass(frozen=True, slots=True)
class EntityKindSpec:
    kind: EntityKind
    isolation: IsolationLevel

    @property
    def identity_scoped(self) -> bool:
        return self.isolation is IsolationLevel.USER_SPECIFIC


type KeyExtension = Callable[..., CacheKey]


def _canonical(value: Any) -> Any:
    if isinstance(value, Mapping):
        return tuple(sorted((str(k), _canonical(v)) for k, v in value.items()))
    if isinstance(value, list | tuple):
        return tuple(_canonical(v) for v in value)
    if isinstance(value, set | frozenset):
        return tuple(sorted(_canonical(v) for v in value))
    return value


def canonical_params(filters: Mapping[str, Any]) -> tuple[tuple[str, Any], ...]:
    """Order-independent, hashable form of a filter mapping."""
    return _canonical(filters)


def key_matches(pattern: KeyPattern, key: CacheKey) -> bool:
    """True if ``pattern`` is a prefix of ``key`` (or equal to it)."""
    return len(pattern) <= len(key) and key[: len(pattern)] == pattern


def check_pattern(pattern: KeyPattern) -> KeyPattern:
    if not pattern:
        raise DataLayerConfigurationError(
            "Refusing the empty key pattern; it would match every cached entry"
        )
    return tuple(pattern)


@dataclass(frozen=True, slots=True)
class EntityKeys:
    """Key builders for one entity kind within one scope."""

    kind: EntityKind
    scope: tuple[str, ...] = ()
    extensions: Mapping[str, KeyExtension] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def all(self) -> CacheKey:
        return (self.kind, *self.scope)

    def lists(self) -> CacheKey:
        return (*self.all(), KeyShape.LISTS.value)

    def list(self, filters: Mapping[str, Any] | None = None) -> CacheKey:
        if not filters:
            return self.lists()
        return (*self.lists(), canonical_params(filters))

    def details(self) -> CacheKey:
        return (*self.all(), KeyShape.DETAIL.value)

    def detail(self, entity_id: EntityId) -> CacheKey:
        return (*self.details(), entity_id)

    def stats(self) -> CacheKey:
        return (*self.all(), KeyShape.STATS.value)

    def shape(self, shape: KeyShape, entity_id: EntityId | None = None) -> CacheKey:
        """Key for a :class:`KeyShape`; ``DETAIL`` needs an entity id."""
        match shape:
            case KeyShape.ALL:
                return self.all()
            case KeyShape.LISTS:
                return self.lists()
            case KeyShape.STATS:
                return self.stats()
            case KeyShape.DETAIL:
                if entity_id is None:
                    return self.details()
                return self.detail(entity_id)

    def extension(self, name: str, *args: Any) -> CacheKey:
        try:
            builder = self.extensions[name]
        except KeyError:
            raise AttributeError(
                f"No key extension {name!r} registered for {self.kind!r}"
            ) from None
        return builder(self, *args)

    def __getattr__(self, name: str) -> Callable[..., CacheKey]:
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self.extensions:
            return functools.partial(self.extension, name)
        raise AttributeError(f"No key extension {name!r} registered for {self.kind!r}")


DEFAULT_ENTITY_KINDS: tuple[EntityKindSpec, ...] = (
    EntityKindSpec("cart", IsolationLevel.USER_SPECIFIC),
    EntityKindSpec("orders", IsolationLevel.USER_SPECIFIC),
    EntityKindSpec("auth", IsolationLevel.USER_SPECIFIC),
    EntityKindSpec("notifications", IsolationLevel.USER_SPECIFIC),
    EntityKindSpec("products", IsolationLevel.GLOBAL),
    EntityKindSpec("categories", IsolationLevel.GLOBAL),
    EntityKindSpec("stock", IsolationLevel.GLOBAL),
    EntityKindSpec("inventory", IsolationLevel.ADMIN_GLOBAL),
)


class KeyFactory:
    """Derives deterministic keys for registered entity kinds."""

    def __init__(self, specs: Iterable[EntityKindSpec] = DEFAULT_ENTITY_KINDS) -> None:
        self._specs: dict[EntityKind, EntityKindSpec] = {}
        self._extensions: dict[EntityKind, dict[str, KeyExtension]] = {}
        for spec in specs:
            self.register_kind(spec)

    def register_kind(self, spec: EntityKindSpec) -> None:
        if spec.kind in self._specs:
            raise DataLayerConfigurationError(
                f"Entity kind {spec.kind!r} already registered"
            )
        self._specs[spec.kind] = spec
        self._extensions[spec.kind] = {}

    def register_extension(
        self, kind: EntityKind, name: str, builder: KeyExtension
    ) -> None:
        """Add a key builder composed from the kind's base keys.

        ``builder`` receives the :class:`EntityKeys` for the requested scope as
        its first argument, so extension keys always live under the scoped root.
        """
        self.spec(kind)
        if name in self._extensions[kind] or hasattr(EntityKeys, name):
            raise DataLayerConfigurationError(
                f"Key extension {name!r} already defined for {kind!r}"
            )
        self._extensions[kind][name] = builder

    def spec(self, kind: EntityKind) -> EntityKindSpec:
        try:
            return self._specs[kind]
        except KeyError:
            raise DataLayerConfigurationError(
                f"Unknown entity kind {kind!r}"
            ) from None

    def isolation_of(self, kind: EntityKind) -> IsolationLevel:
        return self.spec(kind).isolation

    def kinds(self, isolation: IsolationLevel | None = None) -> tuple[EntityKind, ...]:
        return tuple(
            kind
            for kind, spec in self._specs.items()
            if isolation is None or spec.isolation is isolation
        )

    def keys_for(
        self,
        kind: EntityKind,
        identity: IdentityId | None = None,
        *,
        fallback_to_global: bool = False,
    ) -> EntityKeys:
        """Key builders for ``kind``, scoped to ``identity`` where required."""
        spec = self.spec(kind)
        extensions = MappingProxyType(dict(self._extensions[kind]))

        if not spec.identity_scoped:
            return EntityKeys(kind=kind, extensions=extensions)

        if identity:
            return EntityKeys(kind=kind, scope=(identity,), extensions=extensions)

        if fallback_to_global:
            key_log.warning(f"{kind} falling back to global key (identity unavailable)")
            return EntityKeys(kind=kind, scope=(GLOBAL_FALLBACK,), extensions=extensions)

        raise MissingIdentityError(
            f"Entity kind {kind!r} is identity-scoped and no identity was given"
        )

    def invalidation_keys(
        self,
        kind: EntityKind,
        identity: IdentityId | None,
        *,
        include_fallbacks: bool = False,
    ) -> list[KeyPattern]:
        """Root patterns to invalidate for ``kind`` in ``identity``'s scope.

        With ``include_fallbacks`` the explicit ``global-fallback`` partition is
        included as well, for callers that may have read it while signed out.
        """
        spec = self.spec(kind)
        if not spec.identity_scoped:
            return [(kind,)]

        patterns: list[KeyPattern] = []
        if identity:
            patterns.append(self.keys_for(kind, identity).all())
        if include_fallbacks or not identity:
            patterns.append((kind, GLOBAL_FALLBACK))
        return patterns


def default_key_factory() -> KeyFactory:
    """Key factory with the storefront kinds and their extra key builders."""
    factory = KeyFactory()
    factory.register_extension(
        "products", "search", lambda keys, query: (*keys.lists(), "search", query)
    )
    factory.register_extension(
        "products",
        "by_category",
        lambda keys, category_id: (*keys.lists(), "category", category_id),
    )
    factory.register_extension(
        "cart", "session", lambda keys, session_id: (*keys.all(), "session", session_id)
    )
    factory.register_extension(
        "orders", "by_status", lambda keys, status: (*keys.lists(), "status", status)
    )
    return factory
