# backend/services/settlement.py
"""Cash-leg arithmetic: bounds, payer/payee, commission and refunds."""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from errors import InvalidCashAmount, InvalidRefundAmount
from models.trade import Trade, TradeBalance


CENT = Decimal("0.01")
ZERO = Decimal("0")


def normalize_cash_amount(amount: Optional[Decimal], max_amount: Decimal) -> Decimal:
    """Validate a proposed cash leg and return it quantized to cents.

    Positive means the initiator pays the receiver, negative the reverse.
    """
    if amount is None:
        return ZERO
    try:
        amount = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidCashAmount(f"Cash amount {amount!r} is not a number")

    if not amount.is_finite():
        raise InvalidCashAmount("Cash amount must be a finite number")
    if abs(amount) > max_amount:
        raise InvalidCashAmount(f"Cash amount exceeds the maximum of {max_amount}")
    if amount != amount.quantize(CENT, rounding=ROUND_HALF_UP):
        raise InvalidCashAmount("Cash amount cannot have more than two decimal places")

    return amount.quantize(CENT)


def commission_for(amount: Decimal, rate: Decimal) -> Decimal:
    """Platform commission charged on top to the cash payer."""
    return (abs(amount) * rate).quantize(CENT, rounding=ROUND_HALF_UP)


def items_value(items) -> Decimal:
    return sum((item.value_at_trade * item.quantity for item in items), ZERO)


def compute_balance(trade: Trade, commission_rate: Decimal) -> TradeBalance:
    initiator_value = items_value(trade.initiator_items)
    receiver_value = items_value(trade.receiver_items)
    commission = commission_for(trade.cash_amount, commission_rate)

    return TradeBalance(
        trade_id=trade.trade_id,
        initiator_items_value=initiator_value,
        receiver_items_value=receiver_value,
        cash_amount=trade.cash_amount,
        cash_payer_id=trade.cash_payer_id,
        cash_payee_id=trade.cash_payee_id,
        commission=commission,
        payer_total=abs(trade.cash_amount) + commission,
        value_gap=initiator_value + trade.cash_amount - receiver_value,
    )


def validate_refund(trade: Trade, refund: Optional[Decimal]) -> Decimal:
    """A partial refund must be a positive part of the original cash leg."""
    cash = abs(trade.cash_amount)
    if cash == ZERO:
        raise InvalidRefundAmount(
            "Trade has no cash leg to refund", trade_id=trade.trade_id
        )
    if refund is None:
        raise InvalidRefundAmount(
            "partial_refund requires a refund_amount", trade_id=trade.trade_id
        )
    refund = Decimal(refund)
    if not refund.is_finite() or refund <= ZERO or refund > cash:
        raise InvalidRefundAmount(
            f"Refund must be greater than 0 and at most {cash}", trade_id=trade.trade_id
        )
    if refund != refund.quantize(CENT):
        raise InvalidRefundAmount(
            "Refund cannot have more than two decimal places", trade_id=trade.trade_id
        )
    return refund.quantize(CENT)


def settlement_payload(trade: Trade, commission_rate: Decimal, refund: Decimal = ZERO) -> dict:
    """Ledger instruction for settling the cash leg, net of any refund."""
    cash = abs(trade.cash_amount)
    return {
        "payer_id": trade.cash_payer_id,
        "payee_id": trade.cash_payee_id,
        "amount": str(cash - refund),
        "refund": str(refund),
        "commission": str(commission_for(cash - refund, commission_rate)),
    }
