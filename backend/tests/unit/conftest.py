"""
Conftest for unit tests.

All tests in this directory are automatically marked as unit tests. The engine
runs against the in-memory store; Supabase adapters are tested against a
mocked client.
"""
import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock, patch
from decimal import Decimal
import sys
from pathlib import Path

# Add parent directory to path to import main
backend_path = Path(__file__).parent.parent.parent
sys.path.insert(0, str(backend_path))
sys.path.insert(0, str(Path(__file__).parent))

from main import app
from config import Settings
from models.product import ProductInfo
from models.trade import DisputeReason, TradeDisputeCreate
from repositories.memory import (
    InMemoryAddressBook,
    InMemoryLedger,
    InMemoryProductCatalog,
    InMemoryTradeStore,
)
from services.events import EventDispatcher
from services.ports import StaticModeratorDirectory
from services.trade_engine import TradeEngine

from factories import (
    INITIATOR,
    MODERATOR,
    OUTSIDER,
    RECEIVER,
    FakeClock,
    MockTableManager,
    offer,
    shipment,
)


def pytest_collection_modifyitems(items):
    """Automatically mark all tests in this directory as unit tests."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)


# ============== Engine fixtures ==============

@pytest.fixture
def products():
    """Listings: alice owns car_a*, bob owns car_b*, carol owns car_c1."""
    return [
        ProductInfo(product_id="car_a1", owner_id=INITIATOR, price=Decimal("100.00")),
        ProductInfo(product_id="car_a2", owner_id=INITIATOR, price=Decimal("50.00")),
        ProductInfo(product_id="car_a3", owner_id=INITIATOR, price=Decimal("30.00")),
        ProductInfo(product_id="car_b1", owner_id=RECEIVER, price=Decimal("120.00")),
        ProductInfo(product_id="car_b2", owner_id=RECEIVER, price=Decimal("80.00")),
        ProductInfo(product_id="car_b_private", owner_id=RECEIVER, is_trade_enabled=False, price=Decimal("60.00")),
        ProductInfo(product_id="car_b_sold", owner_id=RECEIVER, status="sold", price=Decimal("40.00")),
        ProductInfo(product_id="car_c1", owner_id=OUTSIDER, price=Decimal("75.00")),
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(moderator_user_ids=[MODERATOR], max_counter_offers=3)


@pytest.fixture
def store():
    return InMemoryTradeStore()


@pytest.fixture
def catalog(products):
    return InMemoryProductCatalog(products)


@pytest.fixture
def addresses():
    return InMemoryAddressBook({
        INITIATOR: {"addr_alice"},
        RECEIVER: {"addr_bob"},
        OUTSIDER: {"addr_carol"},
    })


@pytest.fixture
def engine(store, catalog, addresses, settings, clock):
    return TradeEngine(
        store=store,
        catalog=catalog,
        addresses=addresses,
        moderators=StaticModeratorDirectory(settings.moderator_user_ids),
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def dispatcher(store, notifier, ledger, clock):
    return EventDispatcher(store, notifier, ledger, clock=clock)


@pytest.fixture
def client(engine, dispatcher):
    """Create a test client for the FastAPI app wired to the test engine."""
    with patch("main.engine", engine), patch("main.dispatcher", dispatcher):
        yield TestClient(app)


@pytest.fixture
def mock_supabase():
    """Create a mock Supabase client whose tables are MockTableManager mocks."""
    mock = MagicMock()
    manager = MockTableManager()
    mock.table.side_effect = manager.table_handler
    mock.manager = manager
    return mock


# ============== Trade fixtures ==============

@pytest.fixture
def pending_trade(engine):
    """alice offers car_a1 plus 25.00 for bob's car_b1."""
    return engine.create_trade(INITIATOR, offer(cash_amount=Decimal("25.00"), message="Swap?"))


@pytest.fixture
def accepted_trade(engine, pending_trade):
    return engine.accept_trade(pending_trade.trade_id, RECEIVER)


@pytest.fixture
def both_shipped_trade(engine, accepted_trade):
    engine.mark_shipped(accepted_trade.trade_id, INITIATOR, shipment(INITIATOR))
    return engine.mark_shipped(accepted_trade.trade_id, RECEIVER, shipment(RECEIVER))


@pytest.fixture
def disputed_trade(engine, both_shipped_trade):
    return engine.raise_dispute(
        both_shipped_trade.trade_id,
        RECEIVER,
        TradeDisputeCreate(reason=DisputeReason.DAMAGED, description="Box crushed, axle bent"),
    )
