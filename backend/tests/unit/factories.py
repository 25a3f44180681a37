"""Shared builders for unit tests."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, Mock

from models.trade import TradeCreate, TradeItem, TradeShip


INITIATOR = "alice"
RECEIVER = "bob"
OUTSIDER = "carol"
MODERATOR = "mod_1"


class FakeClock:
    """Settable clock so deadlines can be crossed without sleeping."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class MockTableManager:
    """Manages mock tables with proper state tracking across calls."""

    def __init__(self):
        self.tables = {}

    def create_table(self, table_name, responses=None, default_response=None):
        """Create a mock table with optional response sequence."""
        mock = MagicMock()
        for method in ("select", "insert", "update", "delete", "eq", "in_", "or_", "is_", "order", "limit"):
            getattr(mock, method).return_value = mock
        mock.not_ = mock

        if responses:
            mock.execute.side_effect = [Mock(data=r) for r in responses]
        elif default_response is not None:
            mock.execute.return_value = Mock(data=default_response)
        else:
            mock.execute.return_value = Mock(data=[])

        self.tables[table_name] = mock
        return mock

    def get_table(self, table_name):
        """Get a table mock, creating a default one if not exists."""
        if table_name not in self.tables:
            self.create_table(table_name)
        return self.tables[table_name]

    def table_handler(self, table_name):
        """Handler function to be used as side_effect for supabase.table()."""
        return self.get_table(table_name)


def offer(initiator_items=("car_a1",), receiver_items=("car_b1",), cash_amount=None, receiver_id=RECEIVER, message=None):
    """Build a TradeCreate from product ids."""
    return TradeCreate(
        receiver_id=receiver_id,
        initiator_items=[TradeItem(product_id=pid) for pid in initiator_items],
        receiver_items=[TradeItem(product_id=pid) for pid in receiver_items],
        cash_amount=cash_amount,
        message=message,
    )


def offer_json(initiator_items=("car_a1",), receiver_items=("car_b1",), cash_amount=None, receiver_id=RECEIVER):
    body = {
        "receiver_id": receiver_id,
        "initiator_items": [{"product_id": pid, "quantity": 1} for pid in initiator_items],
        "receiver_items": [{"product_id": pid, "quantity": 1} for pid in receiver_items],
    }
    if cash_amount is not None:
        body["cash_amount"] = cash_amount
    return body


def shipment(user_id, carrier="aras"):
    return TradeShip(carrier=carrier, from_address_id=f"addr_{user_id}")
