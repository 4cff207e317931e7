"""
Validated entity contracts.

Every model here is the *output* contract of the validator: frozen, with every
field a downstream consumer needs always present. Database nulls are modelled
explicitly; where a field has a deterministic default (``False`` for an unset
flag, ``""`` for an unknown timestamp, a total recomputed from line items) the
default is applied during the single validation pass. Nothing is invented:
an unknown email stays ``None``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StringConstraints,
    computed_field,
    model_validator,
)

from datacoherence.datastructures.type_aliases import JsonDict


def _null_to(default: Any) -> Callable[[Any], Any]:
    def convert(value: Any) -> Any:
        return default if value is None else value

    return convert


NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
TextOrEmpty = Annotated[str, BeforeValidator(_null_to(""))]
FlagDefaultFalse = Annotated[bool, BeforeValidator(_null_to(False))]
FlagDefaultTrue = Annotated[bool, BeforeValidator(_null_to(True))]
Money = Annotated[float, Field(ge=0, allow_inf_nan=False)]

OrderStatus = Literal[
    "pending", "confirmed", "preparing", "ready", "completed", "cancelled"
]
UserRole = Literal["customer", "staff", "manager", "admin"]


class EntityModel(BaseModel):
    """Base class for all validated entities."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    def to_raw(self) -> JsonDict:
        """Serialize back to a raw record that validates to an equal entity."""
        return self.model_dump(mode="json")


class Category(EntityModel):
    id: NonEmptyStr
    name: NonEmptyStr
    description: TextOrEmpty = ""
    is_active: FlagDefaultTrue = True


class Product(EntityModel):
    id: NonEmptyStr
    name: NonEmptyStr
    description: TextOrEmpty = ""
    price: Money
    stock_quantity: int | None = Field(default=None, ge=0)
    category_id: str | None = None
    image_url: str | None = None
    unit: str | None = None
    sku: str | None = None
    is_available: FlagDefaultTrue = True
    is_weekly_special: FlagDefaultFalse = False
    is_bundle: FlagDefaultFalse = False
    is_pre_order: FlagDefaultFalse = False
    seasonal_availability: FlagDefaultFalse = False
    tags: Annotated[tuple[str, ...], BeforeValidator(_null_to(()))] = ()
    created_at: TextOrEmpty = ""
    updated_at: TextOrEmpty = ""


class CartItem(EntityModel):
    product: Product
    quantity: int = Field(ge=1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def subtotal(self) -> float:
        return round(self.product.price * self.quantity, 2)


def _sum_line_items(items: Any, price_of: Callable[[Any], Any]) -> float | None:
    """Best-effort total over raw line items; ``None`` if they are malformed."""
    if items is None:
        return 0.0
    try:
        return round(
            sum(float(price_of(item)) * int(item["quantity"]) for item in items), 2
        )
    except (KeyError, TypeError, ValueError, AttributeError):
        return None


def _cart_item_price(item: Any) -> Any:
    if isinstance(item, CartItem):
        return item.product.price
    return item["product"]["price"]


class Cart(EntityModel):
    """A user's cart. ``total`` is the stored total, reconciled on validation."""

    user_id: NonEmptyStr
    items: Annotated[tuple[CartItem, ...], BeforeValidator(_null_to(()))] = ()
    total: Money

    @model_validator(mode="before")
    @classmethod
    def _default_total(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("total") is None:
            data = {**data, "total": _sum_line_items(data.get("items"), _cart_item_price)}
        return data

    @property
    def calculated_total(self) -> float:
        return round(sum(item.subtotal for item in self.items), 2)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def find_item(self, product_id: str) -> CartItem | None:
        return next((i for i in self.items if i.product.id == product_id), None)


class OrderItem(EntityModel):
    product_id: NonEmptyStr
    product_name: TextOrEmpty = ""
    unit_price: Money
    quantity: int = Field(ge=1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def subtotal(self) -> float:
        return round(self.unit_price * self.quantity, 2)


def _order_item_price(item: Any) -> Any:
    if isinstance(item, OrderItem):
        return item.unit_price
    return item["unit_price"]


class Order(EntityModel):
    id: NonEmptyStr
    user_id: NonEmptyStr
    status: OrderStatus
    items: Annotated[tuple[OrderItem, ...], BeforeValidator(_null_to(()))] = ()
    subtotal: Money
    tax_amount: Annotated[Money, BeforeValidator(_null_to(0.0))] = 0.0
    total: Money
    customer_email: str | None = None
    customer_name: str | None = None
    pickup_date: str | None = None
    created_at: TextOrEmpty = ""
    updated_at: TextOrEmpty = ""

    @model_validator(mode="before")
    @classmethod
    def _default_amounts(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("subtotal") is None:
            data["subtotal"] = _sum_line_items(data.get("items"), _order_item_price)
        if data.get("total") is None and data.get("subtotal") is not None:
            try:
                data["total"] = round(
                    float(data["subtotal"]) + float(data.get("tax_amount") or 0.0), 2
                )
            except (TypeError, ValueError):
                pass
        return data

    @property
    def calculated_subtotal(self) -> float:
        return round(sum(item.subtotal for item in self.items), 2)

    @property
    def calculated_total(self) -> float:
        return round(self.subtotal + self.tax_amount, 2)


class StockLevel(EntityModel):
    product_id: NonEmptyStr
    available_quantity: int = Field(ge=0)
    reserved_quantity: Annotated[int, BeforeValidator(_null_to(0))] = Field(
        default=0, ge=0
    )
    updated_at: TextOrEmpty = ""


class UserProfile(EntityModel):
    id: NonEmptyStr
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    role: Annotated[UserRole, BeforeValidator(_null_to("customer"))] = "customer"
