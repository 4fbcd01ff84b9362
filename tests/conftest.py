"""Shared fixtures: every test gets its own store, metrics and app."""
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from ingest.main import create_app
from ingest.metrics import Instrumentation
from ingest.store import EventStore


@pytest.fixture
def store():
    return EventStore()


@pytest.fixture
def instrumentation():
    return Instrumentation()


@pytest.fixture
def app(store, instrumentation):
    return create_app(store=store, instrumentation=instrumentation)


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
