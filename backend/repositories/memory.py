# backend/repositories/memory.py
"""Process-local store used for development and tests."""
import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from errors import ConcurrentModification, ItemAlreadyCommitted
from models.product import ProductInfo
from models.trade import Trade, TradeEvent, TradeHistoryEntry, TradeStatus
from repositories.base import TradeStore
from services.ports import AddressBook, PaymentLedger, ProductCatalog


logger = logging.getLogger(__name__)


class InMemoryTradeStore(TradeStore):
    """Trades in a dict plus a ``product_id -> trade_id`` lock index.

    A single re-entrant lock serializes transactions. The outermost
    transaction snapshots all state and restores it if the block raises.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._trades: dict[str, Trade] = {}
        self._item_locks: dict[str, str] = {}
        self._history: list[TradeHistoryEntry] = []
        self._events: dict[str, TradeEvent] = {}

    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = self._snapshot() if self._depth == 0 else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                if snapshot is not None:
                    self._restore(snapshot)
                    logger.debug("Rolled back in-memory transaction")
                raise
            finally:
                self._depth -= 1

    def _snapshot(self):
        return copy.deepcopy((self._trades, self._item_locks, self._history, self._events))

    def _restore(self, snapshot) -> None:
        self._trades, self._item_locks, self._history, self._events = snapshot

    # ---------- Trades ----------

    def get(self, trade_id: str) -> Optional[Trade]:
        with self._lock:
            trade = self._trades.get(trade_id)
            return trade.model_copy(deep=True) if trade else None

    def insert(self, trade: Trade) -> None:
        with self._lock:
            if trade.trade_id in self._trades:
                raise ConcurrentModification(f"Trade {trade.trade_id} already exists", trade_id=trade.trade_id)
            self._trades[trade.trade_id] = trade.model_copy(deep=True)

    def save(self, trade: Trade) -> None:
        with self._lock:
            current = self._trades.get(trade.trade_id)
            if current is None or current.version != trade.version:
                raise ConcurrentModification(
                    f"Trade {trade.trade_id} was modified concurrently; reload and retry",
                    trade_id=trade.trade_id,
                )
            trade.version += 1
            self._trades[trade.trade_id] = trade.model_copy(deep=True)

    def find(
        self,
        user_id: Optional[str] = None,
        role: str = "any",
        statuses: Optional[Iterable[TradeStatus]] = None,
        disputed_only: bool = False,
    ) -> list[Trade]:
        statuses = set(statuses) if statuses else None
        with self._lock:
            matches = []
            for trade in self._trades.values():
                if user_id is not None:
                    if role == "initiator" and trade.initiator_id != user_id:
                        continue
                    if role == "receiver" and trade.receiver_id != user_id:
                        continue
                    if role == "any" and user_id not in (trade.initiator_id, trade.receiver_id):
                        continue
                if statuses is not None and trade.status not in statuses:
                    continue
                if disputed_only and trade.dispute is None:
                    continue
                matches.append(trade.model_copy(deep=True))

        matches.sort(key=lambda t: t.created_at, reverse=True)
        return matches

    # ---------- Product locks ----------

    def lock_holder(self, product_id: str) -> Optional[str]:
        with self._lock:
            return self._item_locks.get(product_id)

    def acquire_items(self, trade_id: str, product_ids: Iterable[str]) -> None:
        product_ids = list(product_ids)
        with self._lock:
            conflicts = [
                pid for pid in product_ids
                if self._item_locks.get(pid) not in (None, trade_id)
            ]
            if conflicts:
                raise ItemAlreadyCommitted(
                    f"Products already committed to another active trade: {', '.join(conflicts)}",
                    product_ids=conflicts,
                    trade_id=trade_id,
                )
            for pid in product_ids:
                self._item_locks[pid] = trade_id

    def release_items(self, trade_id: str, product_ids: Optional[Iterable[str]] = None) -> None:
        with self._lock:
            targets = set(product_ids) if product_ids is not None else set(self._item_locks)
            for pid in targets:
                if self._item_locks.get(pid) == trade_id:
                    del self._item_locks[pid]

    def transfer_items(self, from_trade_id: str, to_trade_id: str, product_ids: Iterable[str]) -> None:
        with self._lock:
            for pid in product_ids:
                if self._item_locks.get(pid) == from_trade_id:
                    self._item_locks[pid] = to_trade_id

    def items_locked_by(self, trade_id: str) -> set[str]:
        with self._lock:
            return {pid for pid, holder in self._item_locks.items() if holder == trade_id}

    # ---------- History ----------

    def append_history(self, entry: TradeHistoryEntry) -> None:
        with self._lock:
            self._history.append(entry.model_copy(deep=True))

    def history(self, root_trade_id: str) -> list[TradeHistoryEntry]:
        with self._lock:
            entries = [e.model_copy(deep=True) for e in self._history if e.root_trade_id == root_trade_id]
        return sorted(entries, key=lambda e: e.sequence_number)

    def next_sequence(self, root_trade_id: str) -> int:
        with self._lock:
            numbers = [e.sequence_number for e in self._history if e.root_trade_id == root_trade_id]
        return max(numbers, default=0) + 1

    # ---------- Outbox ----------

    def add_event(self, event: TradeEvent) -> None:
        with self._lock:
            self._events[event.event_id] = event.model_copy(deep=True)

    def pending_events(self, limit: int = 100) -> list[TradeEvent]:
        with self._lock:
            pending = [e for e in self._events.values() if e.dispatched_at is None]
            pending.sort(key=lambda e: e.created_at)
            return [e.model_copy(deep=True) for e in pending[:limit]]

    def mark_dispatched(self, event_id: str, dispatched_at: datetime) -> None:
        with self._lock:
            self._events[event_id].dispatched_at = dispatched_at

    def record_failed_attempt(self, event_id: str) -> None:
        with self._lock:
            self._events[event_id].attempts += 1

    def all_events(self) -> list[TradeEvent]:
        with self._lock:
            return sorted(
                (e.model_copy(deep=True) for e in self._events.values()),
                key=lambda e: e.created_at,
            )


class InMemoryProductCatalog(ProductCatalog):

    def __init__(self, products: Iterable[ProductInfo] = ()):
        self._products = {p.product_id: p for p in products}

    def add(self, product: ProductInfo) -> None:
        self._products[product.product_id] = product

    def get_products(self, product_ids: Iterable[str]) -> dict[str, ProductInfo]:
        return {pid: self._products[pid] for pid in product_ids if pid in self._products}


class InMemoryAddressBook(AddressBook):

    def __init__(self, addresses: Optional[dict[str, set[str]]] = None):
        self._addresses = {user: set(ids) for user, ids in (addresses or {}).items()}

    def add(self, user_id: str, address_id: str) -> None:
        self._addresses.setdefault(user_id, set()).add(address_id)

    def belongs_to(self, user_id: str, address_id: str) -> bool:
        return address_id in self._addresses.get(user_id, set())


class MemorySeed(BaseModel):
    """Listings and addresses served by the in-memory catalog and address book."""
    products: list[ProductInfo] = Field(default_factory=list)
    addresses: dict[str, list[str]] = Field(default_factory=dict, description="user_id -> address ids")


def load_memory_seed(path: str) -> tuple[InMemoryProductCatalog, InMemoryAddressBook]:
    seed = MemorySeed.model_validate_json(Path(path).read_text())
    logger.info(
        "Loaded %d products and %d address books from %s",
        len(seed.products), len(seed.addresses), path,
    )
    return InMemoryProductCatalog(seed.products), InMemoryAddressBook(seed.addresses)


class InMemoryLedger(PaymentLedger):
    """Collects ledger instructions in order of arrival."""

    def __init__(self):
        self.entries: list[TradeEvent] = []

    def post(self, event: TradeEvent) -> None:
        self.entries.append(event)
