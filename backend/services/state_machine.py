# backend/services/state_machine.py
"""Trade status graph and the guards built on it."""

from errors import InvalidStateForAction
from models.trade import Trade, TradeStatus


TERMINAL_STATUSES = frozenset({
    TradeStatus.COMPLETED,
    TradeStatus.CANCELLED,
    TradeStatus.REJECTED,
    TradeStatus.RESOLVED,
})

# Countered trades are closed but did not end the negotiation.
CLOSED_STATUSES = TERMINAL_STATUSES | {TradeStatus.COUNTERED}

ACTIVE_STATUSES = frozenset(TradeStatus) - CLOSED_STATUSES

SHIPPABLE_STATUSES = frozenset({
    TradeStatus.ACCEPTED,
    TradeStatus.INITIATOR_SHIPPED,
    TradeStatus.RECEIVER_SHIPPED,
    TradeStatus.INITIATOR_DELIVERED,
    TradeStatus.RECEIVER_DELIVERED,
})

CONFIRMABLE_STATUSES = frozenset({
    TradeStatus.INITIATOR_SHIPPED,
    TradeStatus.RECEIVER_SHIPPED,
    TradeStatus.BOTH_SHIPPED,
    TradeStatus.INITIATOR_DELIVERED,
    TradeStatus.RECEIVER_DELIVERED,
})

DISPUTABLE_STATUSES = CONFIRMABLE_STATUSES

CANCELLABLE_STATUSES = frozenset({TradeStatus.PENDING, TradeStatus.ACCEPTED})

TRANSITIONS: dict[TradeStatus, frozenset[TradeStatus]] = {
    TradeStatus.PENDING: frozenset({
        TradeStatus.ACCEPTED,
        TradeStatus.REJECTED,
        TradeStatus.COUNTERED,
        TradeStatus.CANCELLED,
    }),
    TradeStatus.ACCEPTED: frozenset({
        TradeStatus.INITIATOR_SHIPPED,
        TradeStatus.RECEIVER_SHIPPED,
        TradeStatus.CANCELLED,
    }),
    TradeStatus.INITIATOR_SHIPPED: frozenset({
        TradeStatus.BOTH_SHIPPED,
        TradeStatus.INITIATOR_DELIVERED,
        TradeStatus.DISPUTED,
    }),
    TradeStatus.RECEIVER_SHIPPED: frozenset({
        TradeStatus.BOTH_SHIPPED,
        TradeStatus.RECEIVER_DELIVERED,
        TradeStatus.DISPUTED,
    }),
    TradeStatus.INITIATOR_DELIVERED: frozenset({
        TradeStatus.BOTH_SHIPPED,
        TradeStatus.DISPUTED,
    }),
    TradeStatus.RECEIVER_DELIVERED: frozenset({
        TradeStatus.BOTH_SHIPPED,
        TradeStatus.DISPUTED,
    }),
    TradeStatus.BOTH_SHIPPED: frozenset({
        TradeStatus.COMPLETED,
        TradeStatus.DISPUTED,
    }),
    TradeStatus.DISPUTED: frozenset({TradeStatus.RESOLVED}),
    TradeStatus.COUNTERED: frozenset(),
    TradeStatus.REJECTED: frozenset(),
    TradeStatus.CANCELLED: frozenset(),
    TradeStatus.COMPLETED: frozenset(),
    TradeStatus.RESOLVED: frozenset(),
}


def can_transition(current: TradeStatus, target: TradeStatus) -> bool:
    return target in TRANSITIONS[current]


def is_active(status: TradeStatus) -> bool:
    return status in ACTIVE_STATUSES


def require_status(trade: Trade, allowed: frozenset, action: str) -> None:
    """Raise InvalidStateForAction unless the trade is in one of ``allowed``."""
    if trade.status not in allowed:
        raise InvalidStateForAction(
            f"Cannot {action} a trade in status '{trade.status.value}'",
            trade_id=trade.trade_id,
        )


def transition(trade: Trade, target: TradeStatus, action: str) -> None:
    """Move ``trade`` to ``target`` if the graph has that edge."""
    if trade.status == target:
        return
    if not can_transition(trade.status, target):
        raise InvalidStateForAction(
            f"Cannot {action}: no transition from '{trade.status.value}' to '{target.value}'",
            trade_id=trade.trade_id,
        )
    trade.status = target


def fulfilment_status(trade: Trade) -> TradeStatus:
    """Derive the shipping/delivery status from the recorded legs.

    A leg is confirmed by the party that received it, so the initiator's
    shipment carries the receiver's confirmation and vice versa.
    """
    initiator_leg = trade.initiator_shipment
    receiver_leg = trade.receiver_shipment

    initiator_leg_confirmed = initiator_leg is not None and initiator_leg.confirmed_at is not None
    receiver_leg_confirmed = receiver_leg is not None and receiver_leg.confirmed_at is not None

    if initiator_leg_confirmed and receiver_leg_confirmed:
        return TradeStatus.COMPLETED
    if initiator_leg and receiver_leg:
        return TradeStatus.BOTH_SHIPPED
    if initiator_leg:
        return TradeStatus.INITIATOR_DELIVERED if initiator_leg_confirmed else TradeStatus.INITIATOR_SHIPPED
    if receiver_leg:
        return TradeStatus.RECEIVER_DELIVERED if receiver_leg_confirmed else TradeStatus.RECEIVER_SHIPPED
    return TradeStatus.ACCEPTED
