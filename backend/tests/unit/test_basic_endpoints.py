"""Tests for basic API endpoints and service wiring."""
import json

import pytest

from config import Settings
from errors import InvalidItemOwnership
from main import build_engine
from models.trade import TradeStatus

from factories import INITIATOR, RECEIVER, offer, shipment


class TestRootEndpoint:
    """Tests for the root endpoint."""

    def test_read_root(self, client):
        """Test GET / returns welcome message."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json() == {"message": "Trade Service API"}


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_check(self, client):
        """Test GET /health returns healthy status."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestIdentityHeader:

    def test_missing_user_header_is_rejected(self, client):
        response = client.get("/trades")
        assert response.status_code == 401
        assert response.json()["detail"] == "Missing X-User-Id header"


class TestMemoryMode:
    """build_engine without a Supabase client."""

    @pytest.fixture
    def seed_file(self, tmp_path):
        path = tmp_path / "seed.json"
        path.write_text(json.dumps({
            "products": [
                {"product_id": "car_a1", "owner_id": INITIATOR, "price": "100.00"},
                {"product_id": "car_b1", "owner_id": RECEIVER, "price": "120.00"},
            ],
            "addresses": {INITIATOR: ["addr_alice"], RECEIVER: ["addr_bob"]},
        }))
        return path

    def test_seed_file_fills_catalog_and_addresses(self, seed_file):
        engine, _ = build_engine(Settings(memory_seed_file=str(seed_file)))

        trade = engine.create_trade(INITIATOR, offer(("car_a1",), ("car_b1",)))
        engine.accept_trade(trade.trade_id, RECEIVER)
        shipped = engine.mark_shipped(trade.trade_id, INITIATOR, shipment(INITIATOR))

        assert shipped.status == TradeStatus.INITIATOR_SHIPPED
        assert shipped.initiator_items[0].value_at_trade == 100

    def test_without_seed_nothing_is_tradeable(self):
        engine, _ = build_engine(Settings())

        with pytest.raises(InvalidItemOwnership):
            engine.create_trade(INITIATOR, offer(("car_a1",), ("car_b1",)))
