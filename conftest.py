from datetime import date

import pytest

from config import settings
from services.custody import CustodyService
from services.memory_ledger import DEMO_RELAYER_ADDRESS, InMemoryLedger
from services.registry import BatchRegistry
from services.settlement import InMemorySessionTracker, SettlementReconciler

RELAYER = DEMO_RELAYER_ADDRESS
FARMER = settings.DEFAULT_FARMER_ADDRESS
DISTRIBUTOR = settings.DEFAULT_DISTRIBUTOR_ADDRESS
RETAILER = settings.DEFAULT_RETAILER_ADDRESS
CONSUMER = settings.DEFAULT_CONSUMER_ADDRESS
STRANGER = "0x5555555555555555555555555555555555555555"


@pytest.fixture
def ledger():
    chain = InMemoryLedger(signer=RELAYER)
    chain.verifiers.add(RELAYER.lower())
    return chain


@pytest.fixture
def custody(ledger):
    return CustodyService(ledger)


@pytest.fixture
def registry(ledger):
    return BatchRegistry(ledger)


@pytest.fixture
def tracker():
    return InMemorySessionTracker()


@pytest.fixture
def reconciler(custody, tracker):
    return SettlementReconciler(custody, tracker)


@pytest.fixture
def register_tomatoes(custody):
    """Coroutine factory registering the reference Tomatoes batch."""

    async def _register(**overrides):
        params = dict(
            crop_type="Tomatoes",
            quantity_kg=100,
            base_price_inr=5000,
            harvest_date=date(2025, 9, 1),
        )
        params.update(overrides)
        return await custody.register(**params)

    return _register
