# backend/repositories/base.py
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Iterable, Optional

from models.trade import Trade, TradeEvent, TradeHistoryEntry, TradeStatus


class TradeStore(ABC):
    """Persistence for trades, the product lock index, history and the event outbox.

    Every engine operation runs inside ``transaction()``; anything written
    inside a transaction that raises must not stay visible.
    """

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        pass

    # ---------- Trades ----------

    @abstractmethod
    def get(self, trade_id: str) -> Optional[Trade]:
        pass

    @abstractmethod
    def insert(self, trade: Trade) -> None:
        pass

    @abstractmethod
    def save(self, trade: Trade) -> None:
        """Persist ``trade`` if its version still matches, then bump the version.

        Raises ConcurrentModification when another writer got there first.
        """

    @abstractmethod
    def find(
        self,
        user_id: Optional[str] = None,
        role: str = "any",
        statuses: Optional[Iterable[TradeStatus]] = None,
        disputed_only: bool = False,
    ) -> list[Trade]:
        """Trades matching the filters, newest first."""

    # ---------- Product locks ----------

    @abstractmethod
    def lock_holder(self, product_id: str) -> Optional[str]:
        pass

    @abstractmethod
    def acquire_items(self, trade_id: str, product_ids: Iterable[str]) -> None:
        """Lock every product for ``trade_id`` or none of them.

        Raises ItemAlreadyCommitted naming the products held by other trades.
        """

    @abstractmethod
    def release_items(self, trade_id: str, product_ids: Optional[Iterable[str]] = None) -> None:
        pass

    @abstractmethod
    def transfer_items(self, from_trade_id: str, to_trade_id: str, product_ids: Iterable[str]) -> None:
        pass

    @abstractmethod
    def items_locked_by(self, trade_id: str) -> set[str]:
        pass

    # ---------- History ----------

    @abstractmethod
    def append_history(self, entry: TradeHistoryEntry) -> None:
        pass

    @abstractmethod
    def history(self, root_trade_id: str) -> list[TradeHistoryEntry]:
        pass

    @abstractmethod
    def next_sequence(self, root_trade_id: str) -> int:
        pass

    # ---------- Outbox ----------

    @abstractmethod
    def add_event(self, event: TradeEvent) -> None:
        pass

    @abstractmethod
    def pending_events(self, limit: int = 100) -> list[TradeEvent]:
        pass

    @abstractmethod
    def mark_dispatched(self, event_id: str, dispatched_at: datetime) -> None:
        pass

    @abstractmethod
    def record_failed_attempt(self, event_id: str) -> None:
        pass
