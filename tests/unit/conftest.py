"""Unit test fixtures."""

import pytest

from terraplan import (
    DynamoDBBackend,
    Engine,
    LocalBackend,
    MemoryBackend,
    ProviderRegistry,
    StateStore,
)
from tests.fixtures.configs import SCHEMAS, VNET
from tests.fixtures.moto import aws_credentials, mock_dynamodb  # noqa: F401
from tests.fixtures.providers import FakeProvider


@pytest.fixture
def provider():
    """FakeProvider handling azurerm_* types."""
    return FakeProvider(schemas=SCHEMAS, computed={VNET: {"guid": "guid-1"}})


@pytest.fixture
def registry(provider):
    return ProviderRegistry([provider])


@pytest.fixture
async def memory_store():
    """StateStore on a fresh MemoryBackend."""
    store = StateStore(MemoryBackend(), holder="tester@test")
    async with store:
        yield store


@pytest.fixture
async def local_store(tmp_path):
    """StateStore on a LocalBackend under a temporary directory."""
    store = StateStore(LocalBackend(tmp_path / "state"), holder="tester@test")
    async with store:
        yield store


@pytest.fixture
async def dynamodb_backend(mock_dynamodb):  # noqa: F811
    """DynamoDBBackend with its table created in moto."""
    backend = DynamoDBBackend("test-terraplan-state", region="us-east-1")
    await backend.create_table()
    yield backend
    await backend.close()


@pytest.fixture(params=["memory", "local", "dynamodb"])
def backend(request, tmp_path):
    """Every state backend; DynamoDB runs against moto."""
    if request.param == "memory":
        return MemoryBackend()
    if request.param == "local":
        return LocalBackend(tmp_path / "state")
    request.getfixturevalue("mock_dynamodb")
    return DynamoDBBackend("test-terraplan-state", region="us-east-1")


@pytest.fixture
async def store(backend):
    """StateStore on every backend."""
    if isinstance(backend, DynamoDBBackend):
        await backend.create_table()
    store = StateStore(backend, holder="tester@test")
    async with store:
        yield store


@pytest.fixture
async def engine(registry):
    """Engine on a memory backend with the fake provider."""
    engine = Engine(StateStore(MemoryBackend(), holder="tester@test"), registry, parallelism=4)
    async with engine:
        yield engine
