"""
Shared pytest fixtures for the service tests.

This module provides:
- In-memory SQLite databases (aiosqlite + StaticPool), one per service
- A recording stand-in for the Redis Pub/Sub client
- A deterministic payment gateway
- ``stack``: every service app wired together through httpx.ASGITransport,
  with Customer CUST_1 (active) and Product PROD_1 (stock=5) seeded
"""

from __future__ import annotations

import json
import random
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.pool import StaticPool

from services.common.db import create_database, init_schema
from services.customer.app import main as customer_main
from services.customer.app import queries as customer_queries
from services.customer.app.tables import metadata as customer_metadata
from services.inventory.app import commands as inventory_commands
from services.inventory.app import main as inventory_main
from services.inventory.app.tables import metadata as inventory_metadata
from services.order.app import main as order_main
from services.order.app.clients import CustomerClient, PaymentClient, ProductClient
from services.order.app.orchestrator import OrderSagaOrchestrator
from services.order.app.tables import metadata as order_metadata
from services.payment.app import main as payment_main
from services.payment.app.gateway import SimulatedGateway
from services.payment.app.tables import metadata as payment_metadata

CUSTOMER_URL = "http://customer-service"
PRODUCT_URL = "http://product-service"
PAYMENT_URL = "http://payment-service"


# ============================================================================
# Test doubles
# ============================================================================


class FakeRedis:
    """Records every publish call; optionally fails like an unreachable server."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise RedisConnectionError("redis is down")
        self.published.append((channel, json.loads(message)))
        return 1

    def events(self, channel: str) -> list[dict]:
        return [payload for name, payload in self.published if name == channel]


class RecordingPublisher:
    """Collects TransactionMessages instead of sending them to RabbitMQ."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.messages = []

    async def publish(self, message) -> bool:
        if self.succeed:
            self.messages.append(message)
        return self.succeed


async def _no_sleep(_delay: float) -> None:
    return None


def make_gateway(succeed: bool = True, **kwargs) -> SimulatedGateway:
    return SimulatedGateway(
        rng=random.Random(7),
        decide=lambda _amount: succeed,
        sleep=_no_sleep,
        **kwargs,
    )


# ============================================================================
# Database fixtures
# ============================================================================


@pytest_asyncio.fixture
async def database():
    """Factory: creates an isolated in-memory database for the given metadata."""
    engines = []

    async def _create(metadata):
        engine, session_factory = create_database(
            "sqlite+aiosqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        await init_schema(engine, metadata)
        engines.append(engine)
        return session_factory

    yield _create

    for engine in engines:
        await engine.dispose()


@pytest_asyncio.fixture
async def order_db(database):
    return await database(order_metadata)


@pytest_asyncio.fixture
async def payment_db(database):
    return await database(payment_metadata)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def failing_redis() -> FakeRedis:
    return FakeRedis(fail=True)


@pytest.fixture
def gateway() -> SimulatedGateway:
    return make_gateway()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


# ============================================================================
# Full stack
# ============================================================================


@pytest_asyncio.fixture
async def stack(database, fake_redis, gateway, publisher):
    """
    Order service plus its collaborators, each on its own in-memory database.

    The order service reaches the others over httpx mounts backed by
    ASGITransport, so every call goes through the real HTTP handlers.
    """
    customer_db = await database(customer_metadata)
    inventory_db = await database(inventory_metadata)
    payment_db = await database(payment_metadata)
    order_db = await database(order_metadata)

    async with customer_db() as session:
        await customer_queries.create_customer(
            session, name="Taro Yamada", email="taro@example.com", customer_id="CUST_1"
        )
        await customer_queries.create_customer(
            session,
            name="Hanako Sato",
            email="hanako@example.com",
            customer_id="CUST_INACTIVE",
            is_active=False,
        )
    async with inventory_db() as session:
        await inventory_commands.create_product(
            session, name="Laptop", price=50000, category="pc", stock=5, product_id="PROD_1"
        )
        await inventory_commands.create_product(
            session, name="Mouse", price=1500, category="pc", stock=0, product_id="PROD_EMPTY"
        )

    customer_main.app.dependency_overrides[customer_main.get_session_factory] = lambda: customer_db
    inventory_main.app.dependency_overrides[inventory_main.get_session_factory] = lambda: inventory_db
    payment_main.app.dependency_overrides.update(
        {
            payment_main.get_session_factory: lambda: payment_db,
            payment_main.get_gateway: lambda: gateway,
            payment_main.get_publisher: lambda: publisher,
        }
    )

    http = httpx.AsyncClient(
        mounts={
            "all://customer-service": httpx.ASGITransport(app=customer_main.app),
            "all://product-service": httpx.ASGITransport(app=inventory_main.app),
            "all://payment-service": httpx.ASGITransport(app=payment_main.app),
        }
    )
    orchestrator = OrderSagaOrchestrator(
        order_db,
        CustomerClient(http, CUSTOMER_URL, 5.0),
        ProductClient(http, PRODUCT_URL, 5.0),
        PaymentClient(http, PAYMENT_URL, 10.0),
        redis=fake_redis,
    )
    order_main.app.dependency_overrides.update(
        {
            order_main.get_session_factory: lambda: order_db,
            order_main.get_redis: lambda: fake_redis,
            order_main.get_orchestrator: lambda: orchestrator,
            order_main.get_transitions: lambda: None,
        }
    )
    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=order_main.app), base_url="http://order-service"
    )

    yield SimpleNamespace(
        client=client,
        http=http,
        orchestrator=orchestrator,
        redis=fake_redis,
        gateway=gateway,
        publisher=publisher,
        customer_db=customer_db,
        inventory_db=inventory_db,
        payment_db=payment_db,
        order_db=order_db,
    )

    await client.aclose()
    await http.aclose()
    for app in (order_main.app, customer_main.app, inventory_main.app, payment_main.app):
        app.dependency_overrides.clear()
