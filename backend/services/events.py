# backend/services/events.py
import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from models.trade import LEDGER_EVENT_TYPES, Trade, TradeEvent, TradeEventType
from repositories.base import TradeStore
from services.ports import Notifier, PaymentLedger


logger = logging.getLogger(__name__)


def new_event(
    trade: Trade,
    event_type: TradeEventType,
    created_at: datetime,
    recipients: Optional[list[str]] = None,
    **payload,
) -> TradeEvent:
    if recipients is None:
        recipients = [trade.initiator_id, trade.receiver_id]
    return TradeEvent(
        event_id=str(uuid4()),
        trade_id=trade.trade_id,
        event_type=event_type,
        recipients=recipients,
        payload={"trade_number": trade.trade_number, "status": trade.status.value, **payload},
        created_at=created_at,
    )


class EventDispatcher:
    """Drains the outbox: ledger events to the payment ledger, everything else to the notifier."""

    def __init__(
        self,
        store: TradeStore,
        notifier: Notifier,
        ledger: PaymentLedger,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.notifier = notifier
        self.ledger = ledger
        self.clock = clock

    def dispatch(self, limit: int = 100) -> int:
        """Deliver pending events in creation order; returns how many were delivered."""
        delivered = 0
        for event in self.store.pending_events(limit=limit):
            try:
                if event.event_type in LEDGER_EVENT_TYPES:
                    self.ledger.post(event)
                else:
                    self.notifier.notify(event)
            except Exception:
                logger.exception(
                    "Failed to dispatch %s event %s for trade %s (attempt %d)",
                    event.event_type.value, event.event_id, event.trade_id, event.attempts + 1,
                )
                self.store.record_failed_attempt(event.event_id)
                continue

            self.store.mark_dispatched(event.event_id, self.clock())
            delivered += 1

        if delivered:
            logger.debug("Dispatched %d trade events", delivered)
        return delivered
