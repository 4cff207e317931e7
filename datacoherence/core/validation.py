"""
Schema validation and transformation of raw remote records.

``SchemaValidator.validate`` turns one untrusted raw record into one frozen
entity in a single pydantic pass (structure checks and shape transformation
together), or returns a ``ValidationFailure``. ``validate_batch`` applies the
same per item: one malformed record never aborts its siblings, and
``len(valid) + len(failures) == len(raws)`` always holds.

Entity kinds whose stored aggregates can be recomputed from their line items
(cart totals, order subtotals) are reconciled after validation through the
monitor's calculation-mismatch correction.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from datacoherence.core.entities import (
    Cart,
    Category,
    EntityModel,
    Order,
    Product,
    StockLevel,
    UserProfile,
)
from datacoherence.core.errors import (
    DataLayerConfigurationError,
    Err,
    Ok,
    Result,
    ValidationFailure,
)
from datacoherence.core.logging import component_logger
from datacoherence.core.validation_monitor import ValidationMonitor
from datacoherence.datastructures.type_aliases import EntityKind, ErrorCode

validation_log = component_logger("validation")

TRANSFORMATION_PATTERN = "transformation_schema"
DEFAULT_TOLERANCE = 0.01

type Reconciler = Callable[[Any, ValidationMonitor, float], Any]


@dataclass(frozen=True, slots=True)
class EntitySchema:
    """Validation contract for one entity kind."""

    kind: EntityKind
    model: type[EntityModel]
    error_code: ErrorCode
    reconcile: Reconciler | None = None

    @property
    def contract_fields(self) -> frozenset[str]:
        return frozenset(self.model.model_fields) | frozenset(
            self.model.model_computed_fields
        )


def reconcile_cart_total(
    cart: Cart, monitor: ValidationMonitor, tolerance: float
) -> Cart:
    """Replace a drifted stored cart total with the recomputed one."""
    corrected = monitor.record_calculation_mismatch(
        "cart_total",
        expected=cart.calculated_total,
        actual=cart.total,
        tolerance=tolerance,
        entity_id=cart.user_id,
    )
    if corrected == cart.total:
        return cart
    return cart.model_copy(update={"total": corrected})


def reconcile_order_amounts(
    order: Order, monitor: ValidationMonitor, tolerance: float
) -> Order:
    """Reconcile subtotal against line items, then total against subtotal + tax."""
    updates: dict[str, float] = {}
    subtotal = order.subtotal
    if order.items:
        subtotal = monitor.record_calculation_mismatch(
            "order_subtotal",
            expected=order.calculated_subtotal,
            actual=order.subtotal,
            tolerance=tolerance,
            entity_id=order.id,
        )
        if subtotal != order.subtotal:
            updates["subtotal"] = subtotal

    total = monitor.record_calculation_mismatch(
        "order_total",
        expected=round(subtotal + order.tax_amount, 2),
        actual=order.total,
        tolerance=tolerance,
        entity_id=order.id,
    )
    if total != order.total:
        updates["total"] = total

    return order.model_copy(update=updates) if updates else order


class EntitySchemaRegistry:
    """Maps entity kinds to their validation contracts."""

    def __init__(self, schemas: Iterable[EntitySchema] = ()) -> None:
        self._schemas: dict[EntityKind, EntitySchema] = {}
        for schema in schemas:
            self.register(schema)

    def register(self, schema: EntitySchema) -> None:
        if schema.kind in self._schemas:
            raise DataLayerConfigurationError(
                f"Schema for entity kind {schema.kind!r} already registered"
            )
        self._schemas[schema.kind] = schema

    def get(self, kind: EntityKind) -> EntitySchema:
        try:
            return self._schemas[kind]
        except KeyError:
            raise DataLayerConfigurationError(
                f"No schema registered for entity kind {kind!r}"
            ) from None

    def kinds(self) -> tuple[EntityKind, ...]:
        return tuple(self._schemas)

    def __contains__(self, kind: object) -> bool:
        return kind in self._schemas


def default_schema_registry() -> EntitySchemaRegistry:
    """Schemas for the storefront entity kinds."""
    return EntitySchemaRegistry(
        [
            EntitySchema("products", Product, "PRODUCT_VALIDATION_FAILED"),
            EntitySchema("categories", Category, "CATEGORY_VALIDATION_FAILED"),
            EntitySchema(
                "cart", Cart, "CART_VALIDATION_FAILED", reconcile=reconcile_cart_total
            ),
            EntitySchema(
                "orders",
                Order,
                "ORDER_VALIDATION_FAILED",
                reconcile=reconcile_order_amounts,
            ),
            EntitySchema("stock", StockLevel, "STOCK_VALIDATION_FAILED"),
            EntitySchema("auth", UserProfile, "USER_PROFILE_VALIDATION_FAILED"),
        ]
    )


@dataclass(frozen=True, slots=True)
class BatchValidationResult[T]:
    """Outcome of validating a batch: everything valid plus every failure."""

    valid: tuple[T, ...] = ()
    failures: tuple[ValidationFailure, ...] = ()

    @property
    def total(self) -> int:
        return len(self.valid) + len(self.failures)

    @property
    def all_valid(self) -> bool:
        return not self.failures


@dataclass(slots=True)
class ValidatorStatistics:
    validated: int = 0
    rejected: int = 0
    passthrough: int = 0
    by_kind: dict[EntityKind, int] = field(default_factory=dict)


def _source_id(raw: Mapping[str, Any], fallback: Any) -> Any:
    for id_field in ("id", "product_id", "user_id"):
        value = raw.get(id_field)
        if value not in (None, ""):
            return value
    return fallback


class SchemaValidator:
    """Validates and transforms raw records into entities."""

    def __init__(
        self,
        monitor: ValidationMonitor,
        registry: EntitySchemaRegistry | None = None,
        tolerance_for: Callable[[EntityKind], float] | None = None,
    ) -> None:
        self.monitor = monitor
        self.registry = registry or default_schema_registry()
        self._tolerance_for = tolerance_for or (lambda _kind: DEFAULT_TOLERANCE)
        self.statistics = ValidatorStatistics()

    def contract_fields(self, kind: EntityKind) -> frozenset[str]:
        """Fields every entity of ``kind`` is guaranteed to carry."""
        return self.registry.get(kind).contract_fields

    def validate(
        self, kind: EntityKind, raw: Any, *, source_id: Any = None
    ) -> Result[EntityModel]:
        """Validate a single raw record of ``kind``."""
        schema = self.registry.get(kind)

        # Already-validated entities are passed through untouched.
        if isinstance(raw, schema.model):
            self.statistics.passthrough += 1
            return Ok(raw)

        if not isinstance(raw, Mapping):
            return Err(
                self._reject(
                    schema,
                    source_id,
                    message=f"Expected a mapping, got {type(raw).__name__}",
                    field_path=None,
                    received_value=raw,
                )
            )

        record_id = _source_id(raw, source_id)
        try:
            entity = schema.model.model_validate(dict(raw))
        except ValidationError as e:
            first = e.errors()[0]
            field_path = ".".join(str(part) for part in first["loc"]) or None
            return Err(
                self._reject(
                    schema,
                    record_id,
                    message=f"{first['msg']} ({e.error_count()} error(s))",
                    field_path=field_path,
                    received_value=first.get("input"),
                )
            )

        if schema.reconcile is not None:
            entity = schema.reconcile(
                entity, self.monitor, self._tolerance_for(schema.kind)
            )

        self.statistics.validated += 1
        self.statistics.by_kind[kind] = self.statistics.by_kind.get(kind, 0) + 1
        self.monitor.record_success(TRANSFORMATION_PATTERN, kind)
        return Ok(entity)

    def validate_batch(
        self, kind: EntityKind, raws: Iterable[Any]
    ) -> BatchValidationResult[EntityModel]:
        """Validate every record independently, keeping the valid ones."""
        valid: list[EntityModel] = []
        failures: list[ValidationFailure] = []

        for index, raw in enumerate(raws):
            match self.validate(kind, raw, source_id=index):
                case Ok(data=entity):
                    valid.append(entity)
                case Err(error=ValidationFailure() as failure):
                    failures.append(failure)

        if failures:
            validation_log.info(
                f"Batch of {kind}: {len(valid)} valid, {len(failures)} rejected"
            )
        return BatchValidationResult(valid=tuple(valid), failures=tuple(failures))

    def _reject(
        self,
        schema: EntitySchema,
        source_id: Any,
        *,
        message: str,
        field_path: str | None,
        received_value: Any,
    ) -> ValidationFailure:
        self.statistics.rejected += 1
        failure = ValidationFailure(
            code=schema.error_code,
            message=message,
            user_message="Some items could not be loaded.",
            entity_kind=schema.kind,
            source_id=source_id,
            field_path=field_path,
            received_value=received_value,
        )
        self.monitor.record_failure(
            schema.kind,
            schema.error_code,
            message,
            field_path=field_path,
            received_value=received_value,
            source_id=source_id,
        )
        return failure

