"""
Tests for cart operations.

Covers:
- Reading the cart (empty cart substitution, total reconciliation)
- Adding, updating and removing items with optimistic writes
- Stock checks that never reach the server
- Signed-out users and user-facing error messages
- Rollback of failed cart mutations
- Identity changes while cart mutations are pending or queued
"""

import asyncio

import pytest

from datacoherence.core.cart import CART_ERROR_MESSAGES, CartOperations, cart_with_items
from datacoherence.core.data_layer import QueryStatus
from datacoherence.core.entities import Cart, CartItem, Product
from datacoherence.core.errors import (
    AuthorizationFailure,
    ConflictFailure,
    Err,
    Ok,
    RemoteConflictError,
    RemoteNetworkError,
    ValidationFailure,
)
from tests.conftest import raw_cart, raw_cart_item, raw_product, wait_for_condition


def product(product_id="p1", price=9.99, stock=10):
    return Product.model_validate(raw_product(product_id, price, stock_quantity=stock))


@pytest.fixture
def cart_ops(data_layer):
    return CartOperations(data_layer)


class TestGetCart:
    async def test_missing_cart_is_empty(self, cart_ops, remote):
        remote.records["cart"] = None

        result = await cart_ops.get_cart()

        assert result.status is QueryStatus.EMPTY
        assert result.data.user_id == "user-1"
        assert result.data.items == ()
        assert result.data.total == 0.0

    async def test_drifted_total_corrected(self, cart_ops, remote, monitor):
        remote.records["cart"] = raw_cart(
            "user-1", [raw_cart_item("p1", 9.99, 2)], total=20.00
        )

        result = await cart_ops.get_cart()

        assert result.status is QueryStatus.SUCCESS
        assert result.data.total == 19.98
        assert monitor.metrics().calculation_mismatches == 1

    def test_validate_cart_total(self, cart_ops):
        cart = Cart(
            user_id="user-1",
            items=(CartItem(product=product(), quantity=2),),
            total=20.00,
        )

        assert cart_ops.validate_cart_total(cart).total == 19.98


class TestAddItem:
    """Test adding items."""

    async def test_add_new_item(self, cart_ops, remote, data_layer):
        result = await cart_ops.add_item(product(), 2)

        assert isinstance(result, Ok)
        assert result.data.total == 19.98
        cached = data_layer.cache.peek(cart_ops.cart_key).value
        assert cached.find_item("p1").quantity == 2
        assert remote.mutate_calls == [
            (
                "cart",
                "update",
                {"action": "add_item", "product_id": "p1", "quantity": 2},
                "user-1",
            )
        ]

    async def test_add_existing_item_increments(self, cart_ops):
        await cart_ops.add_item(product(), 1)

        result = await cart_ops.add_item(product(), 2)

        assert result.data.find_item("p1").quantity == 3
        assert result.data.item_count == 3
        assert len(result.data.items) == 1

    async def test_server_cart_replaces_speculation(self, cart_ops, remote):
        remote.mutate_results["cart"] = lambda payload: raw_cart(
            "user-1", [raw_cart_item("p1", 8.50, payload["quantity"])]
        )

        result = await cart_ops.add_item(product(price=9.99), 2)

        assert result.data.total == 17.0

    async def test_insufficient_stock_rejected_locally(self, cart_ops, remote):
        result = await cart_ops.add_item(product(stock=3), 4)

        assert isinstance(result.error, ConflictFailure)
        assert result.error.code == "STOCK_INSUFFICIENT"
        assert result.error.details == {
            "product_id": "p1",
            "requested_quantity": 4,
            "available_quantity": 3,
        }
        assert remote.mutate_calls == []

    async def test_stock_check_counts_items_already_in_cart(self, cart_ops, remote):
        await cart_ops.add_item(product(stock=5), 4)

        result = await cart_ops.add_item(product(stock=5), 2)

        assert result.error.code == "STOCK_INSUFFICIENT"
        assert len(remote.mutate_calls) == 1

    async def test_invalid_quantity(self, cart_ops, remote):
        result = await cart_ops.add_item(product(), 0)

        assert isinstance(result.error, ValidationFailure)
        assert result.error.code == "INVALID_QUANTITY"
        assert remote.mutate_calls == []


class TestUpdateAndRemove:
    """Test changing and removing items."""

    async def test_update_quantity(self, cart_ops):
        await cart_ops.add_item(product(), 1)

        result = await cart_ops.update_quantity("p1", 4)

        assert result.data.find_item("p1").quantity == 4
        assert result.data.total == 39.96

    async def test_update_to_zero_removes(self, cart_ops, remote):
        await cart_ops.add_item(product(), 1)

        result = await cart_ops.update_quantity("p1", 0)

        assert result.data.items == ()
        assert remote.mutate_calls[-1][1] == "delete"

    async def test_update_missing_item(self, cart_ops):
        await cart_ops.add_item(product(), 1)

        result = await cart_ops.update_quantity("p2", 1)

        assert result.error.code == "PRODUCT_NOT_FOUND"

    async def test_update_beyond_stock(self, cart_ops):
        await cart_ops.add_item(product(stock=5), 1)

        result = await cart_ops.update_quantity("p1", 6)

        assert result.error.code == "STOCK_INSUFFICIENT"

    async def test_remove_missing_item(self, cart_ops):
        await cart_ops.add_item(product(), 1)

        result = await cart_ops.remove_item("p9")

        assert result.error.code == "PRODUCT_NOT_FOUND"

    async def test_clear_cart(self, cart_ops):
        await cart_ops.add_item(product("p1"), 1)
        await cart_ops.add_item(product("p2"), 1)

        result = await cart_ops.clear_cart()

        assert result.data.items == ()
        assert result.data.total == 0.0


class TestFailures:
    """Test user-facing failures."""

    async def test_signed_out(self, cart_ops, identity, remote):
        identity.identity = None

        result = await cart_ops.add_item(product(), 1)

        assert isinstance(result.error, AuthorizationFailure)
        assert result.error.user_message == CART_ERROR_MESSAGES["AUTHENTICATION_REQUIRED"]
        assert remote.mutate_calls == []

    async def test_network_error_rolls_back(self, cart_ops, remote, data_layer):
        await cart_ops.add_item(product(), 1)
        before = data_layer.cache.peek(cart_ops.cart_key).value
        remote.mutate_errors["cart"].append(RemoteNetworkError("offline"))

        result = await cart_ops.add_item(product(), 1)

        assert isinstance(result, Err)
        assert result.error.user_message == CART_ERROR_MESSAGES["NETWORK_ERROR"]
        assert data_layer.cache.peek(cart_ops.cart_key).value == before

    async def test_sign_out_while_add_is_pending(self, cart_ops, identity, remote, data_layer):
        remote.gate = asyncio.Event()
        task = asyncio.create_task(cart_ops.add_item(product(), 1))
        await wait_for_condition(lambda: remote.mutate_calls)

        identity.identity = "user-2"
        await data_layer.on_identity_change()
        remote.gate.set()
        result = await task

        assert isinstance(result, Ok)
        assert ("cart", "user-1") not in data_layer.cache

    async def test_queued_update_keeps_issuing_identity(self, cart_ops, identity, remote):
        remote.gate = asyncio.Event()
        remote.mutate_errors["cart"].append(RemoteConflictError("rejected"))
        first = asyncio.create_task(cart_ops.add_item(product("p1"), 1))
        await wait_for_condition(lambda: remote.mutate_calls)
        second = asyncio.create_task(cart_ops.add_item(product("p2"), 1))
        await wait_for_condition(
            lambda: cart_ops.data_layer.mutations.queue.pending(("cart", "user-1")) == 2
        )

        identity.identity = None
        remote.gate.set()
        first_result, second_result = await asyncio.gather(first, second)

        assert isinstance(first_result, Err)
        assert isinstance(second_result, Ok)
        assert second_result.data.user_id == "user-1"
        assert [item.product.id for item in second_result.data.items] == ["p2"]
        assert remote.mutate_calls[-1][-1] == "user-1"


def test_cart_with_items_sums_line_items():
    cart = cart_with_items(
        "u1",
        (
            CartItem(product=product("p1", 1.10), quantity=3),
            CartItem(product=product("p2", 2.25), quantity=1),
        ),
    )

    assert cart.total == 5.55
