"""
Tests for the cache key factory.

Covers:
- Key shapes (all/lists/list/details/detail/stats) and determinism
- Identity scoping and isolation
- Explicit global fallback for missing identities
- Registered key extensions
- Prefix pattern matching
"""

import pytest

from datacoherence.core.cache_keys import (
    GLOBAL_FALLBACK,
    EntityKindSpec,
    IsolationLevel,
    KeyFactory,
    KeyShape,
    check_pattern,
    default_key_factory,
    key_matches,
)
from datacoherence.core.errors import DataLayerConfigurationError, MissingIdentityError


class TestKeyShapes:
    """Test base key builders."""

    def test_global_kind_shapes(self, key_factory):
        keys = key_factory.keys_for("products")

        assert keys.all() == ("products",)
        assert keys.lists() == ("products", "list")
        assert keys.details() == ("products", "detail")
        assert keys.detail("p1") == ("products", "detail", "p1")
        assert keys.stats() == ("products", "stats")

    def test_identity_scoped_shapes(self, key_factory):
        keys = key_factory.keys_for("orders", "u1")

        assert keys.all() == ("orders", "u1")
        assert keys.lists() == ("orders", "u1", "list")
        assert keys.detail("o1") == ("orders", "u1", "detail", "o1")

    def test_list_without_filters_is_lists_root(self, key_factory):
        keys = key_factory.keys_for("products")

        assert keys.list() == keys.lists()
        assert keys.list({}) == keys.lists()

    def test_filters_are_order_independent(self, key_factory):
        keys = key_factory.keys_for("products")

        first = keys.list({"category": "fruit", "page": 2})
        second = keys.list({"page": 2, "category": "fruit"})

        assert first == second
        assert hash(first) == hash(second)
        assert key_matches(keys.lists(), first)

    def test_nested_filter_values_are_hashable(self, key_factory):
        key = key_factory.keys_for("products").list({"tags": ["a", "b"], "r": {"x": 1}})

        assert isinstance(hash(key), int)

    def test_shape_dispatch(self, key_factory):
        keys = key_factory.keys_for("orders", "u1")

        assert keys.shape(KeyShape.ALL) == keys.all()
        assert keys.shape(KeyShape.LISTS) == keys.lists()
        assert keys.shape(KeyShape.STATS) == keys.stats()
        assert keys.shape(KeyShape.DETAIL, "o1") == keys.detail("o1")
        assert keys.shape(KeyShape.DETAIL) == keys.details()


class TestIdentityScoping:
    """Test identity isolation."""

    def test_distinct_identities_never_share_keys(self, key_factory):
        for kind in key_factory.kinds(IsolationLevel.USER_SPECIFIC):
            a = key_factory.keys_for(kind, "alice")
            b = key_factory.keys_for(kind, "bob")
            assert a.all() != b.all()
            assert not key_matches(a.all(), b.detail("x"))

    def test_global_kinds_ignore_identity(self, key_factory):
        assert (
            key_factory.keys_for("products", "alice").all()
            == key_factory.keys_for("products", "bob").all()
        )

    def test_missing_identity_raises(self, key_factory):
        with pytest.raises(MissingIdentityError):
            key_factory.keys_for("cart", None)

    def test_explicit_global_fallback(self, key_factory):
        keys = key_factory.keys_for("cart", None, fallback_to_global=True)

        assert keys.all() == ("cart", GLOBAL_FALLBACK)

    def test_invalidation_keys(self, key_factory):
        assert key_factory.invalidation_keys("cart", "u1") == [("cart", "u1")]
        assert key_factory.invalidation_keys("cart", "u1", include_fallbacks=True) == [
            ("cart", "u1"),
            ("cart", GLOBAL_FALLBACK),
        ]
        assert key_factory.invalidation_keys("cart", None) == [
            ("cart", GLOBAL_FALLBACK)
        ]
        assert key_factory.invalidation_keys("stock", "u1") == [("stock",)]


class TestExtensions:
    """Test registered key extensions."""

    def test_default_extensions(self, key_factory):
        assert key_factory.keys_for("products").search("milk") == (
            "products",
            "list",
            "search",
            "milk",
        )
        assert key_factory.keys_for("products").by_category("c1") == (
            "products",
            "list",
            "category",
            "c1",
        )
        assert key_factory.keys_for("cart", "u1").session("s1") == (
            "cart",
            "u1",
            "session",
            "s1",
        )
        assert key_factory.keys_for("orders", "u1").by_status("ready") == (
            "orders",
            "u1",
            "list",
            "status",
            "ready",
        )

    def test_extension_keys_stay_under_scope(self, key_factory):
        keys = key_factory.keys_for("orders", "u1")

        assert key_matches(keys.all(), keys.by_status("ready"))
        assert key_matches(keys.lists(), keys.extension("by_status", "ready"))

    def test_unknown_extension(self, key_factory):
        with pytest.raises(AttributeError):
            key_factory.keys_for("products").nonexistent()

    def test_duplicate_or_clashing_extension_rejected(self):
        factory = default_key_factory()

        with pytest.raises(DataLayerConfigurationError):
            factory.register_extension("products", "search", lambda keys: keys.all())
        with pytest.raises(DataLayerConfigurationError):
            factory.register_extension("products", "detail", lambda keys: keys.all())

    def test_extension_for_unknown_kind(self):
        with pytest.raises(DataLayerConfigurationError):
            KeyFactory().register_extension("unicorns", "x", lambda keys: keys.all())


class TestRegistry:
    def test_duplicate_kind_rejected(self):
        factory = KeyFactory([EntityKindSpec("a", IsolationLevel.GLOBAL)])

        with pytest.raises(DataLayerConfigurationError):
            factory.register_kind(EntityKindSpec("a", IsolationLevel.GLOBAL))

    def test_unknown_kind(self, key_factory):
        with pytest.raises(DataLayerConfigurationError):
            key_factory.keys_for("unicorns")

    def test_isolation_lookup(self, key_factory):
        assert key_factory.isolation_of("cart") is IsolationLevel.USER_SPECIFIC
        assert key_factory.isolation_of("inventory") is IsolationLevel.ADMIN_GLOBAL
        assert "stock" in key_factory.kinds(IsolationLevel.GLOBAL)


class TestPatterns:
    def test_prefix_matching(self):
        assert key_matches(("cart",), ("cart", "u1"))
        assert key_matches(("cart", "u1"), ("cart", "u1"))
        assert not key_matches(("cart", "u1"), ("cart",))
        assert not key_matches(("cart", "u2"), ("cart", "u1", "detail"))

    def test_empty_pattern_rejected(self):
        with pytest.raises(DataLayerConfigurationError):
            check_pattern(())
