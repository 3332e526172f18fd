"""
Pytest configuration and fixtures for wallet ledger tests.
"""

import os
import sys
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

# Add app directory to Python path for imports
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.append(ROOT_DIR)
sys.path.append(os.path.join(ROOT_DIR, "app"))

from wallet_ledger.adapters.base import ProviderPayment  # noqa: E402
from wallet_ledger.config import Settings  # noqa: E402
from wallet_ledger.database import create_engine, create_schema, create_sessionmaker  # noqa: E402
from wallet_ledger.ledger import WalletLedger  # noqa: E402
from wallet_ledger.payment_service import PaymentService  # noqa: E402
from tests.helpers import WEBHOOK_SECRET  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        database_url="sqlite+aiosqlite:///:memory:",
        COINGATE_API_KEY=None,
        COINGATE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        PROVIDER_TIMEOUT_SECONDS=0.2,
        WEBHOOK_RATE_LIMIT=1000,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return create_sessionmaker(engine)


@pytest.fixture
def ledger(sessionmaker):
    return WalletLedger(sessionmaker)


@pytest.fixture
def mock_redis():
    """Mock Redis client for testing."""
    redis_mock = AsyncMock()
    redis_mock.ping.return_value = True
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.delete.return_value = 1
    return redis_mock


@pytest.fixture
def provider():
    """Provider double that hands out sequential payment ids."""
    provider_mock = AsyncMock()
    counter = {"n": 0}

    async def create_payment(amount, currency, order_id, **kwargs):
        counter["n"] += 1
        payment_id = f"cg-{counter['n']}"
        return ProviderPayment(
            id=payment_id,
            status="new",
            payment_url=f"https://pay.example/{payment_id}",
            payment_address="0xabc",
        )

    provider_mock.create_payment.side_effect = create_payment
    return provider_mock


@pytest.fixture
def payment_service(sessionmaker, provider, ledger, settings):
    return PaymentService(sessionmaker, provider, ledger, settings)
