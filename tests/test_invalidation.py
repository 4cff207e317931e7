"""
Tests for declared invalidation cascades.

Covers:
- Rule table construction (duplicates, empty rules, immutability)
- Resolution of storefront cascades into concrete keys
- Direct-key fallback for mutations without a rule
- Skipping invalidation for failed mutations
- Event-driven invalidation
"""

import pytest

from datacoherence.core.cache_keys import KeyShape
from datacoherence.core.errors import (
    ConflictFailure,
    DataLayerConfigurationError,
    Err,
    Ok,
)
from datacoherence.core.invalidation import (
    InvalidationCoordinator,
    InvalidationRequest,
    InvalidationRule,
    InvalidationRuleTable,
    InvalidationTarget,
    MutationOperation,
    ScopeMode,
    default_rule_table,
)
from datacoherence.core.realtime import ChangeEvent


class TestRuleTable:
    """Test rule table construction."""

    def test_duplicate_rule_rejected(self):
        rule = InvalidationRule("cart", "update", (InvalidationTarget("cart"),))

        with pytest.raises(DataLayerConfigurationError):
            InvalidationRuleTable.from_rules([rule, rule])

    def test_rule_without_targets_rejected(self):
        with pytest.raises(DataLayerConfigurationError):
            InvalidationRule("cart", "update", ())

    def test_lookup(self):
        table = default_rule_table()

        assert table.get("cart", MutationOperation.UPDATE) is not None
        assert table.get("cart", "update") is table.get("cart", MutationOperation.UPDATE)
        assert table.get("notifications", "update") is None
        assert ("cart", "checkout") in table

    def test_table_is_read_only(self):
        table = default_rule_table()

        with pytest.raises(TypeError):
            table._rules[("x", "y")] = None

    def test_rules_must_name_registered_kinds(self, cache, key_factory):
        table = InvalidationRuleTable.from_rules(
            [InvalidationRule("cart", "update", (InvalidationTarget("unicorns"),))]
        )

        with pytest.raises(DataLayerConfigurationError):
            InvalidationCoordinator(cache, key_factory, table)


class TestComputeInvalidationSet:
    """Test resolution of rules into keys."""

    def test_cart_mutation(self, coordinator):
        keys = coordinator.compute_invalidation_set("cart", "update", "u1")

        assert keys == [("cart", "u1"), ("stock",)]

    def test_cart_mutation_never_touches_catalog(self, coordinator):
        for operation in ("create", "update", "delete", "checkout"):
            keys = coordinator.compute_invalidation_set("cart", operation, "u1")
            assert all(key[0] != "products" for key in keys)
            assert () not in keys

    def test_checkout_includes_order_lists(self, coordinator):
        keys = coordinator.compute_invalidation_set("cart", "checkout", "u1")

        assert keys == [
            ("cart", "u1"),
            ("stock",),
            ("orders", "u1", "list"),
            ("orders", "u1", "stats"),
        ]

    def test_order_update(self, coordinator):
        keys = coordinator.compute_invalidation_set("orders", "update", "u1", "o1")

        assert keys == [("orders", "u1", "list"), ("orders", "u1", "detail", "o1")]

    def test_product_update(self, coordinator):
        keys = coordinator.compute_invalidation_set("products", "update", None, "p1")

        assert keys == [("products", "detail", "p1"), ("products", "list"), ("stock",)]

    def test_unruled_mutation_invalidates_only_itself(self, coordinator):
        assert coordinator.compute_invalidation_set("notifications", "update", "u1") == [
            ("notifications", "u1")
        ]
        assert coordinator.compute_invalidation_set(
            "notifications", "update", "u1", "n1"
        ) == [("notifications", "u1", "detail", "n1")]
        assert coordinator.statistics.unruled == 2

    def test_global_scope_mode(self, cache, key_factory):
        table = InvalidationRuleTable.from_rules(
            [
                InvalidationRule(
                    "products",
                    "update",
                    (
                        InvalidationTarget("cart", KeyShape.ALL, ScopeMode.GLOBAL),
                        InvalidationTarget("products", KeyShape.LISTS),
                    ),
                )
            ]
        )
        coordinator = InvalidationCoordinator(cache, key_factory, table)

        keys = coordinator.compute_invalidation_set("products", "update", None, "p1")

        assert keys == [("cart",), ("products", "list")]

    def test_keys_are_deduplicated(self, cache, key_factory):
        table = InvalidationRuleTable.from_rules(
            [
                InvalidationRule(
                    "stock",
                    "update",
                    (InvalidationTarget("stock"), InvalidationTarget("stock")),
                )
            ]
        )
        coordinator = InvalidationCoordinator(cache, key_factory, table)

        assert coordinator.compute_invalidation_set("stock", "update") == [("stock",)]


class TestApply:
    """Test applying invalidations to the cache."""

    def test_apply_success_invalidates_dependents_only(self, coordinator, cache, clock):
        cache.set(("cart", "u1"), "cart")
        cache.set(("stock", "detail", "p1"), 5)
        cache.set(("products", "list"), ["p1"])
        cache.set(("cart", "u2"), "other cart")

        keys = coordinator.apply(
            Ok("ok"), InvalidationRequest("cart", "update", scope="u1")
        )

        assert keys == [("cart", "u1"), ("stock",)]
        assert cache.peek(("cart", "u1")).is_stale(clock.now)
        assert cache.peek(("stock", "detail", "p1")).is_stale(clock.now)
        assert not cache.peek(("products", "list")).is_stale(clock.now)
        assert not cache.peek(("cart", "u2")).is_stale(clock.now)
        assert coordinator.statistics.entries_invalidated == 2

    def test_apply_error_is_noop(self, coordinator, cache, clock):
        cache.set(("cart", "u1"), "cart")
        failure = ConflictFailure(code="CONFLICT", message="rejected")

        keys = coordinator.apply(
            Err(failure), InvalidationRequest("cart", "update", scope="u1")
        )

        assert keys == []
        assert not cache.peek(("cart", "u1")).is_stale(clock.now)
        assert coordinator.statistics.skipped_on_error == 1

    def test_apply_event(self, coordinator, cache, clock):
        cache.set(("orders", "u1", "list"), [])
        cache.set(("orders", "u1", "detail", "o1"), {})
        cache.set(("orders", "u1", "detail", "o2"), {})
        event = ChangeEvent(kind="orders", operation="update", entity_id="o1", scope="u1")

        keys = coordinator.apply_event(event)

        assert keys == [("orders", "u1", "list"), ("orders", "u1", "detail", "o1")]
        assert not cache.peek(("orders", "u1", "detail", "o2")).is_stale(clock.now)
        assert coordinator.statistics.events_applied == 1
