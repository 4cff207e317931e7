"""
Declared invalidation cascades.

Which cache keys a mutation of one entity kind makes stale is declared once, in
an ``InvalidationRuleTable``. The coordinator resolves a rule into concrete key
patterns for the mutating identity and hands them to the cache store. There is
no code path that invalidates everything: a mutation without a rule only
invalidates its own entity, and the empty pattern is rejected by the store.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from datacoherence.core.cache_keys import KeyFactory, KeyShape
from datacoherence.core.cache_store import CacheStore
from datacoherence.core.errors import DataLayerConfigurationError, Err, Result
from datacoherence.core.logging import component_logger
from datacoherence.datastructures.type_aliases import (
    CacheKey,
    EntityId,
    EntityKind,
    IdentityId,
)

if TYPE_CHECKING:
    from datacoherence.core.realtime import ChangeEvent

invalidation_log = component_logger("invalidation")


class MutationOperation(StrEnum):
    """Standard operations. Rules may also use domain verbs such as ``checkout``."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ScopeMode(Enum):
    """Which scope a dependent key is resolved in."""

    SAME_SCOPE = "same_scope"
    GLOBAL = "global"


@dataclass(frozen=True, slots=True)
class InvalidationTarget:
    kind: EntityKind
    key_shape: KeyShape = KeyShape.ALL
    scope_mode: ScopeMode = ScopeMode.SAME_SCOPE


@dataclass(frozen=True, slots=True)
class InvalidationRule:
    """Everything that goes stale when ``source_kind`` sees ``operation``."""

    source_kind: EntityKind
    operation: str
    targets: tuple[InvalidationTarget, ...]

    def __post_init__(self) -> None:
        if not self.targets:
            raise DataLayerConfigurationError(
                f"Rule {self.source_kind}/{self.operation} declares no targets"
            )


@dataclass(frozen=True, slots=True)
class InvalidationRequest:
    """A committed mutation or change event to resolve against the rules."""

    kind: EntityKind
    operation: str
    scope: IdentityId | None = None
    entity_id: EntityId | None = None


class InvalidationRuleTable:
    """Immutable ``(source_kind, operation) -> rule`` mapping."""

    __slots__ = ("_rules",)

    def __init__(self, rules: Mapping[tuple[EntityKind, str], InvalidationRule]) -> None:
        self._rules = MappingProxyType(dict(rules))

    @classmethod
    def from_rules(cls, rules: Iterable[InvalidationRule]) -> InvalidationRuleTable:
        table: dict[tuple[EntityKind, str], InvalidationRule] = {}
        for rule in rules:
            key = (rule.source_kind, str(rule.operation))
            if key in table:
                raise DataLayerConfigurationError(
                    f"Duplicate invalidation rule for {key[0]}/{key[1]}"
                )
            table[key] = rule
        return cls(table)

    def get(self, kind: EntityKind, operation: str) -> InvalidationRule | None:
        return self._rules.get((kind, str(operation)))

    def rules(self) -> tuple[InvalidationRule, ...]:
        return tuple(self._rules.values())

    def kinds(self) -> frozenset[EntityKind]:
        return frozenset(
            {rule.source_kind for rule in self._rules.values()}
            | {t.kind for rule in self._rules.values() for t in rule.targets}
        )

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, key: object) -> bool:
        return key in self._rules


def _rule(kind: EntityKind, operations: Iterable[str], *targets: InvalidationTarget):
    return [InvalidationRule(kind, str(op), tuple(targets)) for op in operations]


def default_rule_table() -> InvalidationRuleTable:
    """Cascades of the storefront domain."""
    own_cart = InvalidationTarget("cart")
    stock = InvalidationTarget("stock")
    order_lists = InvalidationTarget("orders", KeyShape.LISTS)
    order_detail = InvalidationTarget("orders", KeyShape.DETAIL)
    order_stats = InvalidationTarget("orders", KeyShape.STATS)
    product_lists = InvalidationTarget("products", KeyShape.LISTS)
    product_detail = InvalidationTarget("products", KeyShape.DETAIL)
    standard = tuple(MutationOperation)

    return InvalidationRuleTable.from_rules(
        [
            *_rule("cart", standard, own_cart, stock),
            *_rule("cart", ["checkout"], own_cart, stock, order_lists, order_stats),
            *_rule("orders", ["create"], order_lists, order_stats),
            *_rule("orders", ["update", "delete"], order_lists, order_detail),
            *_rule("products", ["create"], product_lists, stock),
            *_rule("products", ["update", "delete"], product_detail, product_lists, stock),
            *_rule("stock", standard, stock),
            *_rule("categories", standard, InvalidationTarget("categories"), product_lists),
        ]
    )


@dataclass(slots=True)
class InvalidationStatistics:
    applied: int = 0
    events_applied: int = 0
    keys_invalidated: int = 0
    entries_invalidated: int = 0
    skipped_on_error: int = 0
    unruled: int = 0
    by_kind: dict[EntityKind, int] = field(default_factory=dict)


def _dedupe(keys: Iterable[CacheKey]) -> list[CacheKey]:
    return list(dict.fromkeys(keys))


class InvalidationCoordinator:
    """Resolves invalidation rules into keys and applies them to the cache."""

    def __init__(
        self,
        cache: CacheStore,
        key_factory: KeyFactory,
        rules: InvalidationRuleTable | None = None,
    ) -> None:
        self.cache = cache
        self.key_factory = key_factory
        self.rules = rules or default_rule_table()
        self.statistics = InvalidationStatistics()

        for kind in self.rules.kinds():
            # Fail at construction for rules naming kinds nobody registered.
            self.key_factory.spec(kind)

    def compute_invalidation_set(
        self,
        kind: EntityKind,
        operation: str,
        scope: IdentityId | None = None,
        entity_id: EntityId | None = None,
    ) -> list[CacheKey]:
        """Keys a mutation of ``kind`` via ``operation`` makes stale."""
        rule = self.rules.get(kind, operation)
        if rule is None:
            self.statistics.unruled += 1
            keys = self.key_factory.keys_for(kind, scope)
            direct = keys.detail(entity_id) if entity_id is not None else keys.all()
            invalidation_log.debug(
                f"No rule for {kind}/{operation}; invalidating {direct} only"
            )
            return [direct]

        return _dedupe(
            self._resolve_target(target, scope, entity_id) for target in rule.targets
        )

    def _resolve_target(
        self,
        target: InvalidationTarget,
        scope: IdentityId | None,
        entity_id: EntityId | None,
    ) -> CacheKey:
        spec = self.key_factory.spec(target.kind)
        if target.scope_mode is ScopeMode.GLOBAL and spec.identity_scoped:
            return (target.kind,)
        keys = self.key_factory.keys_for(target.kind, scope)
        return keys.shape(target.key_shape, entity_id)

    def invalidate(self, request: InvalidationRequest) -> list[CacheKey]:
        keys = self.compute_invalidation_set(
            request.kind, request.operation, request.scope, request.entity_id
        )
        affected = 0
        for key in keys:
            affected += len(self.cache.invalidate(key))

        self.statistics.keys_invalidated += len(keys)
        self.statistics.entries_invalidated += affected
        self.statistics.by_kind[request.kind] = (
            self.statistics.by_kind.get(request.kind, 0) + 1
        )
        invalidation_log.info(
            f"{request.kind}/{request.operation} invalidated {len(keys)} patterns"
            f" ({affected} cached entries)"
        )
        return keys

    def apply(self, result: Result[Any], request: InvalidationRequest) -> list[CacheKey]:
        """Invalidate the dependents of a mutation, unless it failed."""
        if isinstance(result, Err):
            self.statistics.skipped_on_error += 1
            invalidation_log.debug(
                f"Skipping invalidation for failed {request.kind}/{request.operation}"
            )
            return []
        self.statistics.applied += 1
        return self.invalidate(request)

    def apply_event(self, event: ChangeEvent) -> list[CacheKey]:
        """Invalidate what a realtime change event makes stale."""
        self.statistics.events_applied += 1
        return self.invalidate(
            InvalidationRequest(
                kind=event.kind,
                operation=event.operation,
                scope=event.scope,
                entity_id=event.entity_id,
            )
        )
