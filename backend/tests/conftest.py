"""
Customer Provisioning — Test Configuration (conftest.py)
=========================================================

Fixture Hierarchy (all function-scoped):
    engine          → fresh SQLite file database (aiosqlite) with the schema
    store           → CustomerLinkStore over that database
    mock_provider   → AsyncMock with the PaymentProvider interface
    coordinator     → ProvisioningCoordinator(store, mock_provider)
    test_client     → HTTPX AsyncClient against create_app() with the above
                      components placed on app.state

The store is exercised against a real database so the unique constraint,
not a mock, decides who wins an insert race.
"""

import os

# Before any provisioning import: Settings() is instantiated at import time
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_not_real"
os.environ["INTERNAL_API_KEYS"] = "test-internal-key"

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from provisioning.config import Settings
from provisioning.database import create_schema, dispose_engine, make_engine, make_session_factory
from provisioning.schemas.customer import ProvisionRequest
from provisioning.services.link_store import CustomerLinkStore
from provisioning.services.provider_base import PaymentProvider
from provisioning.services.provisioning_service import ProvisioningCoordinator

INTERNAL_KEY = "test-internal-key"


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A throwaway SQLite database per test."""
    db_engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'links.db'}")
    await create_schema(db_engine)
    yield db_engine
    await dispose_engine(db_engine)


@pytest.fixture
def store(engine):
    return CustomerLinkStore(make_session_factory(engine))


@pytest.fixture
def mock_provider():
    """
    Provider double. create_customer succeeds with "cus_test123" by default;
    tests override side_effect to simulate rejections and outages.
    """
    provider = AsyncMock(spec=PaymentProvider)
    provider.create_customer.return_value = "cus_test123"
    provider.find_customer_by_account.return_value = None
    provider.health_check.return_value = True
    return provider


@pytest.fixture
def coordinator(store, mock_provider):
    return ProvisioningCoordinator(store=store, provider=mock_provider)


@pytest.fixture
def make_request():
    """Factory for valid ProvisionRequest objects."""

    def _make(account_key: str = "acct-1", **overrides) -> ProvisionRequest:
        fields = {
            "account_key": account_key,
            "display_name": "Ada Lovelace",
            "contact_email": "ada@example.com",
            "metadata": {"company_id": "co-42"},
        }
        fields.update(overrides)
        return ProvisionRequest(**fields)

    return _make


@pytest_asyncio.fixture
async def test_client(engine, mock_provider, coordinator):
    """
    HTTPX client talking to the app in-process.

    ASGITransport does not run the lifespan, so the components are placed on
    app.state directly.
    """
    from provisioning.main import create_app

    app = create_app(
        Settings(
            internal_api_keys=INTERNAL_KEY,
            reconcile_stale_after=30,
            reconcile_min_age=0,
            log_level="WARNING",
        )
    )
    app.state.engine = engine
    app.state.provider = mock_provider
    app.state.coordinator = coordinator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
