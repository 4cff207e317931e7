"""Pytest configuration and fixtures for datacoherence testing.

Provides in-memory fakes for the three collaborators the data layer consumes
(remote data source, realtime transport, identity provider), a controllable
clock, raw record builders and a fully wired ``DataLayer`` that is shut down
after every test so no background task outlives it.
"""

import asyncio
from collections import defaultdict, deque
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio

from datacoherence.config import DataLayerSettings
from datacoherence.core.cache_keys import default_key_factory
from datacoherence.core.cache_store import CacheStore
from datacoherence.core.data_layer import DataLayer
from datacoherence.core.invalidation import InvalidationCoordinator
from datacoherence.core.mutations import OptimisticMutationEngine
from datacoherence.core.validation import SchemaValidator
from datacoherence.core.validation_monitor import ValidationMonitor

FIXED_TIME_BASE = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock for staleness and GC tests."""

    def __init__(self, now: float = FIXED_TIME_BASE) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdentityProvider:
    def __init__(self, identity: str | None = "user-1") -> None:
        self.identity = identity

    def current_identity(self) -> str | None:
        return self.identity


class FakeRemote:
    """Remote data source returning canned raw records.

    ``records[kind]`` is returned by ``fetch``; queued exceptions in
    ``fetch_errors[kind]`` / ``mutate_errors[kind]`` are raised first, one per
    call. ``mutate_results[kind]`` is the raw response of a mutation (a
    callable receives the payload). ``gate`` pauses remote calls until set.
    """

    def __init__(self) -> None:
        self.records: dict[str, Any] = {}
        self.fetch_errors: dict[str, deque[BaseException]] = defaultdict(deque)
        self.mutate_errors: dict[str, deque[BaseException]] = defaultdict(deque)
        self.mutate_results: dict[str, Any] = {}
        self.fetch_calls: list[tuple[str, dict[str, Any], str | None]] = []
        self.mutate_calls: list[tuple[str, str, Any, str | None]] = []
        self.gate: asyncio.Event | None = None

    async def _wait_gate(self) -> None:
        if self.gate is not None:
            await self.gate.wait()

    async def fetch(self, kind, params, *, identity):
        self.fetch_calls.append((kind, dict(params), identity))
        await self._wait_gate()
        if self.fetch_errors[kind]:
            raise self.fetch_errors[kind].popleft()
        return self.records.get(kind)

    async def mutate(self, kind, operation, payload, *, identity):
        self.mutate_calls.append((kind, operation, payload, identity))
        await self._wait_gate()
        if self.mutate_errors[kind]:
            raise self.mutate_errors[kind].popleft()
        result = self.mutate_results.get(kind)
        if callable(result):
            return result(payload)
        return result

    def fetch_count(self, kind: str) -> int:
        return sum(1 for call in self.fetch_calls if call[0] == kind)


class FakeTransport:
    """Realtime transport that records channels and lets tests publish."""

    def __init__(self) -> None:
        self.sinks: dict[str, Any] = {}
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []
        self.handshake_delay = 0.0
        self.fail_subscribe: BaseException | None = None

    async def subscribe(self, channel_id, deliver):
        if self.handshake_delay:
            await asyncio.sleep(self.handshake_delay)
        if self.fail_subscribe is not None:
            raise self.fail_subscribe
        self.sinks[channel_id] = deliver
        self.subscribed.append(channel_id)

    async def unsubscribe(self, channel_id):
        self.sinks.pop(channel_id, None)
        self.unsubscribed.append(channel_id)

    def publish(self, channel_id: str, message: Any) -> None:
        self.sinks[channel_id](message)


def raw_product(product_id: str = "p1", price: float = 9.99, **overrides: Any):
    record = {
        "id": product_id,
        "name": f"Product {product_id}",
        "description": None,
        "price": price,
        "stock_quantity": 10,
        "category_id": "c1",
        "is_available": True,
        "is_weekly_special": None,
        "tags": None,
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": None,
    }
    record.update(overrides)
    return record


def raw_cart(user_id: str = "user-1", items=(), total: float | None = None):
    record: dict[str, Any] = {"user_id": user_id, "items": list(items)}
    if total is not None:
        record["total"] = total
    return record


def raw_cart_item(product_id: str = "p1", price: float = 9.99, quantity: int = 1):
    return {"product": raw_product(product_id, price), "quantity": quantity}


def raw_order(order_id: str = "o1", user_id: str = "user-1", **overrides: Any):
    record = {
        "id": order_id,
        "user_id": user_id,
        "status": "pending",
        "items": [
            {
                "product_id": "p1",
                "product_name": "Product p1",
                "unit_price": 9.99,
                "quantity": 2,
            }
        ],
        "subtotal": 19.98,
        "tax_amount": None,
        "total": 19.98,
        "customer_email": None,
    }
    record.update(overrides)
    return record


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> DataLayerSettings:
    return DataLayerSettings(
        _env_file=None,
        channel_secret="test-channel-secret",
        fetch_retries=1,
        retry_base_delay_seconds=0.0,
        fetch_timeout_seconds=1.0,
        mutation_timeout_seconds=1.0,
        subscribe_timeout_seconds=0.5,
    )


@pytest.fixture
def monitor() -> ValidationMonitor:
    return ValidationMonitor()


@pytest.fixture
def validator(monitor: ValidationMonitor) -> SchemaValidator:
    return SchemaValidator(monitor)


@pytest.fixture
def key_factory():
    return default_key_factory()


@pytest_asyncio.fixture
async def cache(clock: FakeClock) -> AsyncGenerator[CacheStore, None]:
    store = CacheStore(clock=clock)
    try:
        yield store
    finally:
        await store.shutdown()


@pytest.fixture
def coordinator(cache: CacheStore, key_factory) -> InvalidationCoordinator:
    return InvalidationCoordinator(cache, key_factory)


@pytest.fixture
def engine(
    cache: CacheStore,
    coordinator: InvalidationCoordinator,
    validator: SchemaValidator,
) -> OptimisticMutationEngine:
    return OptimisticMutationEngine(cache, coordinator, validator)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest_asyncio.fixture
async def data_layer(
    remote: FakeRemote,
    identity: FakeIdentityProvider,
    transport: FakeTransport,
    settings: DataLayerSettings,
    monitor: ValidationMonitor,
    clock: FakeClock,
) -> AsyncGenerator[DataLayer, None]:
    layer = DataLayer(
        remote,
        identity,
        settings=settings,
        transport=transport,
        monitor=monitor,
        clock=clock,
    )
    await layer.start()
    try:
        yield layer
    finally:
        await layer.shutdown()


async def wait_for_condition(condition, timeout: float = 1.0, interval: float = 0.005):
    """Poll ``condition`` until it is truthy or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not met within timeout")
        await asyncio.sleep(interval)
