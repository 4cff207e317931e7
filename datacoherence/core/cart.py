"""
Cart operations on top of the data layer.

Every operation builds the next cart locally, writes it optimistically and
lets the mutation engine commit or roll it back. Totals of optimistic carts
are always recomputed from their line items; totals coming back from the
server are reconciled by the validator.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from typing import Any

from datacoherence.core.data_layer import DataLayer, QueryResult, QueryStatus
from datacoherence.core.entities import Cart, CartItem, Product
from datacoherence.core.errors import (
    AuthorizationFailure,
    ConflictFailure,
    DataLayerFailure,
    Err,
    Result,
    ValidationFailure,
)
from datacoherence.core.invalidation import MutationOperation
from datacoherence.core.logging import component_logger
from datacoherence.core.validation import reconcile_cart_total
from datacoherence.datastructures.type_aliases import CacheKey, EntityId, ErrorCode

cart_log = component_logger("cart")

CART_KIND = "cart"

CART_ERROR_MESSAGES: dict[ErrorCode, str] = {
    "AUTHENTICATION_REQUIRED": "Please sign in to use your cart.",
    "STOCK_INSUFFICIENT": "Not enough items in stock.",
    "PRODUCT_NOT_FOUND": "This product is no longer available.",
    "NETWORK_ERROR": "Unable to update your cart. Please check your connection.",
    "TIMEOUT": "Unable to update your cart. Please check your connection.",
    "UNKNOWN_ERROR": "Unable to update your cart. Please try again.",
}


def _cart_failure(failure: DataLayerFailure) -> DataLayerFailure:
    """Attach the cart-specific user message for ``failure.code``."""
    message = CART_ERROR_MESSAGES.get(failure.code)
    if message is None:
        return failure
    return dataclasses.replace(failure, user_message=message)


def cart_with_items(user_id: str, items: tuple[CartItem, ...]) -> Cart:
    """A cart whose total is the exact sum of its line items."""
    return Cart(
        user_id=user_id,
        items=items,
        total=round(sum(item.subtotal for item in items), 2),
    )


def empty_cart(user_id: str) -> Cart:
    return cart_with_items(user_id, ())


class CartOperations:
    """Typed cart reads and optimistic cart mutations for the current identity."""

    def __init__(self, data_layer: DataLayer) -> None:
        self.data_layer = data_layer

    @property
    def cart_key(self) -> CacheKey:
        return self.data_layer.keys(CART_KIND).all()

    async def get_cart(self) -> QueryResult[Cart]:
        """The current cart; an empty cart when the server has none."""
        result = await self.data_layer.read(CART_KIND)
        if result.status is QueryStatus.EMPTY and self.data_layer.identity:
            return dataclasses.replace(
                result, data=empty_cart(self.data_layer.identity)
            )
        return result

    def validate_cart_total(self, cart: Cart) -> Cart:
        """Recompute the total and correct it if it drifted beyond tolerance."""
        tolerance = self.data_layer.settings.tolerance_for(CART_KIND)
        return reconcile_cart_total(cart, self.data_layer.monitor, tolerance)

    async def add_item(self, product: Product, quantity: int = 1) -> Result[Cart]:
        if quantity < 1:
            return self._invalid_quantity(product.id, quantity)

        current = self._cached_cart()
        existing = current.find_item(product.id) if current else None
        requested = quantity + (existing.quantity if existing else 0)
        if stock_failure := self._check_stock(product, requested):
            return Err(stock_failure)

        def update(previous: Cart | None, user_id: str) -> Cart:
            cart = previous or empty_cart(user_id)
            items = list(cart.items)
            for index, item in enumerate(items):
                if item.product.id == product.id:
                    items[index] = CartItem(
                        product=item.product, quantity=item.quantity + quantity
                    )
                    break
            else:
                items.append(CartItem(product=product, quantity=quantity))
            return cart_with_items(cart.user_id, tuple(items))

        return await self._mutate(
            MutationOperation.UPDATE,
            {"action": "add_item", "product_id": product.id, "quantity": quantity},
            update,
            entity_id=product.id,
        )

    async def update_quantity(self, product_id: EntityId, quantity: int) -> Result[Cart]:
        """Set an item's quantity; zero or less removes it."""
        if quantity <= 0:
            return await self.remove_item(product_id)

        current = self._cached_cart()
        existing = current.find_item(product_id) if current else None
        if current is not None and existing is None:
            return Err(self._not_found(product_id))
        if existing is not None:
            if stock_failure := self._check_stock(existing.product, quantity):
                return Err(stock_failure)

        def update(previous: Cart | None, user_id: str) -> Cart:
            cart = previous or empty_cart(user_id)
            items = tuple(
                CartItem(product=item.product, quantity=quantity)
                if item.product.id == product_id
                else item
                for item in cart.items
            )
            return cart_with_items(cart.user_id, items)

        return await self._mutate(
            MutationOperation.UPDATE,
            {"action": "update_quantity", "product_id": product_id, "quantity": quantity},
            update,
            entity_id=product_id,
        )

    async def remove_item(self, product_id: EntityId) -> Result[Cart]:
        current = self._cached_cart()
        if current is not None and current.find_item(product_id) is None:
            return Err(self._not_found(product_id))

        def update(previous: Cart | None, user_id: str) -> Cart:
            cart = previous or empty_cart(user_id)
            items = tuple(i for i in cart.items if i.product.id != product_id)
            return cart_with_items(cart.user_id, items)

        return await self._mutate(
            MutationOperation.DELETE,
            {"action": "remove_item", "product_id": product_id},
            update,
            entity_id=product_id,
        )

    async def clear_cart(self) -> Result[Cart]:
        return await self._mutate(
            MutationOperation.DELETE,
            {"action": "clear"},
            lambda previous, user_id: empty_cart(user_id),
        )

    async def _mutate(
        self,
        operation: str,
        payload: dict[str, Any],
        build: Callable[[Cart | None, str], Cart],
        *,
        entity_id: EntityId | None = None,
    ) -> Result[Cart]:
        user_id = self.data_layer.identity
        if not user_id:
            return Err(
                _cart_failure(
                    AuthorizationFailure(
                        code="AUTHENTICATION_REQUIRED",
                        message="Cart operations need a signed-in identity",
                    )
                )
            )

        # Bound to the identity at issue time; the update may run after a sign-out.
        intent = self.data_layer.intent(
            CART_KIND,
            operation,
            self.data_layer.key_factory.keys_for(CART_KIND, user_id).all(),
            payload,
            entity_id=entity_id,
            result_kind=CART_KIND,
            scope=user_id,
        )
        result = await self.data_layer.mutate(
            intent, lambda previous: build(previous, user_id)
        )
        if isinstance(result, Err):
            cart_log.warning(
                f"Cart {payload['action']} failed: [{result.error.code}]"
                f" {result.error.message}"
            )
            return Err(_cart_failure(result.error))
        return result

    def _cached_cart(self) -> Cart | None:
        if not self.data_layer.identity:
            return None
        entry = self.data_layer.cache.peek(self.cart_key)
        if entry is None or not isinstance(entry.value, Cart):
            return None
        return entry.value

    def _check_stock(self, product: Product, requested: int) -> ConflictFailure | None:
        available = product.stock_quantity
        if available is None or requested <= available:
            return None
        return ConflictFailure(
            code="STOCK_INSUFFICIENT",
            message=(
                f"Requested {requested} of {product.id} but only {available} in stock"
            ),
            user_message=CART_ERROR_MESSAGES["STOCK_INSUFFICIENT"],
            details={
                "product_id": product.id,
                "requested_quantity": requested,
                "available_quantity": available,
            },
        )

    def _not_found(self, product_id: EntityId) -> ValidationFailure:
        return ValidationFailure(
            code="PRODUCT_NOT_FOUND",
            message=f"Product {product_id} is not in the cart",
            user_message="Item not found in cart.",
            entity_kind=CART_KIND,
            source_id=product_id,
            details={"product_id": product_id},
        )

    def _invalid_quantity(self, product_id: EntityId, quantity: int) -> Err:
        return Err(
            ValidationFailure(
                code="INVALID_QUANTITY",
                message=f"Quantity must be at least 1, got {quantity}",
                user_message="Please choose a quantity of at least 1.",
                entity_kind=CART_KIND,
                source_id=product_id,
                field_path="quantity",
                received_value=quantity,
            )
        )
