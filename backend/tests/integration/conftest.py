"""
Integration test fixtures for testing with real local Supabase database.

These fixtures connect to a local Supabase instance and perform real database operations.
Run `supabase start` before running integration tests.
All tests in this directory are automatically marked as integration tests.
"""
import pytest
import subprocess
import warnings
import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv
from supabase import create_client, Client
from uuid import uuid4

from config import Settings
from repositories.supabase_catalog import (
    SupabaseAddressBook,
    SupabaseLedger,
    SupabaseModeratorDirectory,
    SupabaseProductCatalog,
)
from repositories.supabase_store import SupabaseTradeStore
from services.events import EventDispatcher
from services.ports import LoggingNotifier
from services.trade_engine import TradeEngine

# Path to the project root (where supabase/ folder is located)
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent


def pytest_collection_modifyitems(items):
    """Automatically mark all tests in this directory as integration tests."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def setup_test_environment():
    """Load .env.test at session start."""
    env_test_path = Path(__file__).parent.parent.parent / ".env.test"
    load_dotenv(env_test_path, override=True)
    yield


@pytest.fixture(scope="session")
def supabase_client(setup_test_environment) -> Client:
    """Create a real Supabase client connected to local instance."""
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY")

    if not url or not key:
        pytest.skip("SUPABASE_URL and SERVICE_ROLE_KEY must be set in .env.test")

    return create_client(url, key)


@pytest.fixture(scope="session")
def reset_database(setup_test_environment):
    """
    Reset the database before the test session.

    Skipped with a warning when the supabase CLI is not available.
    """
    try:
        result = subprocess.run(
            ["supabase", "db", "reset", "--no-seed"],
            cwd=str(PROJECT_ROOT),
            capture_output=True,
            text=True,
            timeout=60
        )
        if result.returncode != 0:
            warnings.warn(f"Could not reset database: {result.stderr}")
    except FileNotFoundError:
        warnings.warn("supabase CLI not found. Skipping database reset.")
    except subprocess.TimeoutExpired:
        warnings.warn("Database reset timed out. Continuing anyway.")

    yield


@pytest.fixture
def clean_test_data(supabase_client):
    """
    Track and clean up test-created rows after each test.

    Usage:
        clean_test_data.add("user", "user_id", user_id)
    """
    class TestDataTracker:
        def __init__(self, client):
            self.client = client
            self.items = []  # List of (table, column, value) tuples

        def add(self, table: str, column: str, value):
            """Track a record for cleanup."""
            self.items.append((table, column, value))

        def cleanup(self):
            """Delete all tracked records in reverse order."""
            for table, column, value in reversed(self.items):
                self.client.table(table).delete().eq(column, value).execute()

    tracker = TestDataTracker(supabase_client)
    yield tracker
    tracker.cleanup()


def _create_user(client, tracker, prefix, role="user"):
    user_id = f"{prefix}_{uuid4().hex[:8]}"
    result = client.table("user").insert({
        "user_id": user_id,
        "user_name": f"Test {prefix} {user_id}",
        "role": role,
    }).execute()
    if not result.data:
        pytest.fail("Failed to create test user")
    tracker.add("user", "user_id", user_id)
    return user_id


@pytest.fixture
def trade_users(supabase_client, clean_test_data, reset_database):
    """
    Initiator, receiver and moderator, each with one address and the
    initiator and receiver with two listings each.
    """
    initiator = _create_user(supabase_client, clean_test_data, "initiator")
    receiver = _create_user(supabase_client, clean_test_data, "receiver")
    moderator = _create_user(supabase_client, clean_test_data, "moderator", role="moderator")

    products = {}
    for owner in (initiator, receiver):
        products[owner] = []
        for price in ("45.00", "80.00"):
            product_id = str(uuid4())
            supabase_client.table("product").insert({
                "product_id": product_id,
                "seller_id": owner,
                "title": f"Diecast {product_id[:6]}",
                "status": "active",
                "is_trade_enabled": True,
                "price": price,
            }).execute()
            clean_test_data.add("product", "product_id", product_id)
            products[owner].append(product_id)

    addresses = {}
    for user in (initiator, receiver):
        address_id = str(uuid4())
        supabase_client.table("address").insert({
            "address_id": address_id,
            "user_id": user,
            "line1": "Test street 1",
            "city": "Istanbul",
        }).execute()
        clean_test_data.add("address", "address_id", address_id)
        addresses[user] = address_id

    yield {
        "initiator": initiator,
        "receiver": receiver,
        "moderator": moderator,
        "products": products,
        "addresses": addresses,
    }

    # Trade rows reference users and products; remove them before the tracker runs
    for user in (initiator, receiver):
        trades = supabase_client.table("trade").select("trade_id").or_(
            f"initiator_id.eq.{user},receiver_id.eq.{user}"
        ).execute()
        for trade in trades.data or []:
            trade_id = trade["trade_id"]
            supabase_client.table("trade_ledger").delete().eq("trade_id", trade_id).execute()
            supabase_client.table("trade_event").delete().eq("trade_id", trade_id).execute()
            supabase_client.table("trade_history").delete().eq("trade_id", trade_id).execute()
            supabase_client.table("trade_item_lock").delete().eq("trade_id", trade_id).execute()
            supabase_client.table("trade").delete().eq("trade_id", trade_id).execute()


@pytest.fixture
def integration_store(supabase_client):
    return SupabaseTradeStore(supabase_client)


@pytest.fixture
def integration_engine(supabase_client, integration_store):
    """TradeEngine wired to the local Supabase instance."""
    return TradeEngine(
        store=integration_store,
        catalog=SupabaseProductCatalog(supabase_client),
        addresses=SupabaseAddressBook(supabase_client),
        moderators=SupabaseModeratorDirectory(supabase_client),
        settings=Settings(cash_commission_rate=Decimal("0.05")),
    )


@pytest.fixture
def integration_dispatcher(supabase_client, integration_store):
    return EventDispatcher(integration_store, LoggingNotifier(), SupabaseLedger(supabase_client))
