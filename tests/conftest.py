"""
Shared fixtures for the settlement test-suite.

Environment is set before any project module reads Config. Every test gets
its own file-backed SQLite database (so concurrent sessions use separate
connections) and in-memory fakes for the ledger node, funding source and
payment gateway.
"""

import os
import sys

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GATEWAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("GATEWAY_KEY_SECRET", "test_gateway_secret")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("OFFRAMP_DEPOSIT_ADDRESS", "0x" + "d" * 64)
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import logging
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import Config
from models import Base
from services.ledger_signer import LedgerSigner
from services.settlement_orchestrator import SettlementOrchestrator
from services.settlement_store import SettlementStore
from tests.settlement_test_foundation import FakeFundingClient, FakeGatewayClient, FakeLedgerClient

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return SettlementStore(session_factory)


@pytest.fixture
def fake_ledger():
    return FakeLedgerClient()


@pytest.fixture
def fake_funding(fake_ledger):
    return FakeFundingClient(fake_ledger)


@pytest.fixture
def fake_gateway():
    return FakeGatewayClient()


@pytest.fixture
def signer():
    return LedgerSigner.generate()


@pytest.fixture(autouse=True)
def fast_timings():
    """No real waiting in tests"""
    with patch.object(Config, "FUNDING_SETTLE_DELAY_SECONDS", 0), \
            patch.object(Config, "SIMULATED_TRANSFER_MIN_DELAY", 0), \
            patch.object(Config, "SIMULATED_TRANSFER_MAX_DELAY", 0), \
            patch.object(Config, "IDENTITY_SHARED_SECRET", None):
        yield


@pytest_asyncio.fixture
async def orchestrator(store, fake_ledger, signer, fake_gateway, fake_funding):
    orchestrator = SettlementOrchestrator(
        store=store,
        ledger_client=fake_ledger,
        signer=signer,
        gateway_client=fake_gateway,
        funding_client=fake_funding,
        allow_demo_deposit_acceptance=False,
    )
    yield orchestrator
    await orchestrator.close()
