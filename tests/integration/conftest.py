"""
Integration Test Layer Configuration

Runs the real PostgreSQL lock store and order repository against a live
database configured through the usual POSTGRES_* variables. Every test
gets a throwaway schema that is dropped afterwards. Without a reachable
database the tests are skipped.

Usage:
    POSTGRES_HOST=localhost pytest tests/integration -v
"""
import dataclasses
import uuid
from decimal import Decimal
from typing import AsyncGenerator, List

import pytest
import pytest_asyncio

from core.config import InfraConfig
from core.distributed_lock import PostgresLockStore
from core.postgres_client import AsyncPostgresClient
from microservices.order_service.models import OrderCreateRequest
from microservices.order_service.order_repository import OrderRepository
from microservices.order_service.order_service import OrderService


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncPostgresClient, None]:
    config = dataclasses.replace(InfraConfig.from_env(), postgres_schema=f"dropship_it_{uuid.uuid4().hex[:8]}")
    client = AsyncPostgresClient("integration_tests", config=config)
    try:
        await client.connect()
    except Exception as e:
        pytest.skip(f"Requires PostgreSQL infrastructure: {e}")

    try:
        yield client
    finally:
        await client.execute(f"DROP SCHEMA IF EXISTS {client.schema} CASCADE")
        await client.close()


@pytest_asyncio.fixture
async def lock_store(db) -> PostgresLockStore:
    store = PostgresLockStore(db)
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def order_repo(db) -> OrderRepository:
    repository = OrderRepository(db=db)
    await repository.initialize()
    return repository


@pytest.fixture
def order_service(order_repo) -> OrderService:
    return OrderService(order_repo)


def order_request(prices: List[str]) -> OrderCreateRequest:
    return OrderCreateRequest(
        user_id="user_it",
        items=[{"name": f"Item {i + 1}", "price": price} for i, price in enumerate(prices)],
        shipping=Decimal("0"),
    )
