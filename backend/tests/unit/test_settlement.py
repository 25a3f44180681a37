"""Tests for cash-leg arithmetic."""
import pytest
from datetime import datetime, timezone
from decimal import Decimal

from errors import InvalidCashAmount, InvalidRefundAmount
from models.trade import Trade, TradeItemRecord
from services.settlement import (
    commission_for,
    compute_balance,
    normalize_cash_amount,
    settlement_payload,
    validate_refund,
)


MAX = Decimal("1000000")
RATE = Decimal("0.05")
NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def make_trade(cash="0"):
    return Trade(
        trade_id="t1",
        trade_number="TRD-1-ABCD",
        initiator_id="alice",
        receiver_id="bob",
        initiator_items=[TradeItemRecord(product_id="car_a1", value_at_trade=Decimal("100.00"))],
        receiver_items=[
            TradeItemRecord(product_id="car_b1", value_at_trade=Decimal("60.00"), quantity=2),
        ],
        cash_amount=Decimal(cash),
        created_at=NOW,
        updated_at=NOW,
    )


class TestNormalizeCashAmount:

    def test_none_means_no_cash(self):
        assert normalize_cash_amount(None, MAX) == Decimal("0")

    @pytest.mark.parametrize("raw,expected", [
        ("25", Decimal("25.00")),
        ("-12.5", Decimal("-12.50")),
        ("1000000", Decimal("1000000.00")),
    ])
    def test_valid_amounts_are_quantized(self, raw, expected):
        result = normalize_cash_amount(Decimal(raw), MAX)
        assert result == expected
        assert result.as_tuple().exponent == -2

    @pytest.mark.parametrize("raw", ["1000000.01", "-1000001", "1e30"])
    def test_amounts_beyond_bound(self, raw):
        with pytest.raises(InvalidCashAmount):
            normalize_cash_amount(Decimal(raw), MAX)

    @pytest.mark.parametrize("raw", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_amounts(self, raw):
        with pytest.raises(InvalidCashAmount):
            normalize_cash_amount(Decimal(raw), MAX)

    def test_sub_cent_precision_rejected(self):
        with pytest.raises(InvalidCashAmount):
            normalize_cash_amount(Decimal("10.005"), MAX)


class TestCommission:

    def test_rounds_half_up(self):
        # 0.05 * 10.10 = 0.505
        assert commission_for(Decimal("10.10"), RATE) == Decimal("0.51")

    def test_sign_does_not_matter(self):
        assert commission_for(Decimal("-40"), RATE) == Decimal("2.00")


class TestComputeBalance:

    def test_initiator_pays(self):
        balance = compute_balance(make_trade("20.00"), RATE)
        assert balance.initiator_items_value == Decimal("100.00")
        assert balance.receiver_items_value == Decimal("120.00")
        assert balance.cash_payer_id == "alice"
        assert balance.cash_payee_id == "bob"
        assert balance.commission == Decimal("1.00")
        assert balance.payer_total == Decimal("21.00")
        assert balance.value_gap == Decimal("0.00")

    def test_receiver_pays(self):
        balance = compute_balance(make_trade("-30.00"), RATE)
        assert balance.cash_payer_id == "bob"
        assert balance.cash_payee_id == "alice"
        assert balance.value_gap == Decimal("-50.00")

    def test_no_cash(self):
        balance = compute_balance(make_trade(), RATE)
        assert balance.cash_payer_id is None
        assert balance.commission == Decimal("0")
        assert balance.payer_total == Decimal("0")


class TestRefunds:

    def test_refund_within_cash_leg(self):
        assert validate_refund(make_trade("-40.00"), Decimal("15")) == Decimal("15.00")

    def test_full_refund_allowed(self):
        assert validate_refund(make_trade("40.00"), Decimal("40.00")) == Decimal("40.00")

    @pytest.mark.parametrize("refund", [
        None, Decimal("0"), Decimal("-5"), Decimal("40.01"), Decimal("0.004"), Decimal("12.345"),
    ])
    def test_invalid_refunds(self, refund):
        with pytest.raises(InvalidRefundAmount):
            validate_refund(make_trade("40.00"), refund)

    def test_no_cash_leg(self):
        with pytest.raises(InvalidRefundAmount):
            validate_refund(make_trade(), Decimal("1"))

    def test_settlement_net_of_refund(self):
        payload = settlement_payload(make_trade("40.00"), RATE, refund=Decimal("10.00"))
        assert payload == {
            "payer_id": "alice",
            "payee_id": "bob",
            "amount": "30.00",
            "refund": "10.00",
            "commission": "1.50",
        }
