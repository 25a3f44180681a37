# backend/repositories/supabase_store.py
"""Supabase-backed trade store.

PostgREST has no multi-statement transactions, so ``transaction()`` keeps an
undo stack of compensating writes and replays it in reverse when the block
raises. Concurrent writers are kept apart by the ``version`` compare-and-set
on ``trade`` and the primary key on ``trade_item_lock.product_id``.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from postgrest.exceptions import APIError
from supabase import Client

from errors import ConcurrentModification, ItemAlreadyCommitted
from models.trade import Trade, TradeEvent, TradeHistoryEntry, TradeStatus
from repositories.base import TradeStore


logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

COMPUTED_FIELDS = {"cash_payer_id", "cash_payee_id"}


def trade_to_row(trade: Trade) -> dict:
    return trade.model_dump(mode="json", exclude=COMPUTED_FIELDS)


class SupabaseTradeStore(TradeStore):
    """Tables: ``trade``, ``trade_item_lock``, ``trade_history``, ``trade_event``."""

    def __init__(self, client: Client):
        self.client = client
        self._local = threading.local()

    # ---------- Transactions ----------

    @contextmanager
    def transaction(self):
        if getattr(self._local, "undo", None) is not None:
            yield self
            return

        self._local.undo = []
        try:
            yield self
        except BaseException:
            undo, self._local.undo = self._local.undo, None
            self._rollback(undo)
            raise
        self._local.undo = None

    def _compensate(self, action: Callable[[], None]) -> None:
        undo = getattr(self._local, "undo", None)
        if undo is not None:
            undo.append(action)

    def _rollback(self, undo: list) -> None:
        for action in reversed(undo):
            try:
                action()
            except APIError as exc:
                # Keep unwinding; the remaining compensations are independent.
                logger.error("Compensation failed during rollback: %s", exc.message)
        logger.debug("Rolled back %d writes", len(undo))

    # ---------- Trades ----------

    def get(self, trade_id: str) -> Optional[Trade]:
        result = self.client.table("trade").select("*").eq("trade_id", trade_id).execute()
        if not result.data:
            return None
        return Trade.model_validate(result.data[0])

    def insert(self, trade: Trade) -> None:
        try:
            self.client.table("trade").insert(trade_to_row(trade)).execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                raise ConcurrentModification(f"Trade {trade.trade_id} already exists", trade_id=trade.trade_id)
            raise

        self._compensate(
            lambda: self.client.table("trade").delete().eq("trade_id", trade.trade_id).execute()
        )

    def save(self, trade: Trade) -> None:
        expected = trade.version
        previous = self.client.table("trade").select("*").eq(
            "trade_id", trade.trade_id
        ).eq("version", expected).execute()
        if not previous.data:
            raise ConcurrentModification(
                f"Trade {trade.trade_id} was modified concurrently; reload and retry",
                trade_id=trade.trade_id,
            )

        row = trade_to_row(trade)
        row["version"] = expected + 1
        result = self.client.table("trade").update(row).eq(
            "trade_id", trade.trade_id
        ).eq("version", expected).execute()
        if not result.data:
            raise ConcurrentModification(
                f"Trade {trade.trade_id} was modified concurrently; reload and retry",
                trade_id=trade.trade_id,
            )
        trade.version = expected + 1

        restore = previous.data[0]
        self._compensate(
            lambda: self.client.table("trade").update(restore).eq(
                "trade_id", trade.trade_id
            ).eq("version", expected + 1).execute()
        )

    def find(
        self,
        user_id: Optional[str] = None,
        role: str = "any",
        statuses: Optional[Iterable[TradeStatus]] = None,
        disputed_only: bool = False,
    ) -> list[Trade]:
        query = self.client.table("trade").select("*")

        if user_id is not None:
            if role == "initiator":
                query = query.eq("initiator_id", user_id)
            elif role == "receiver":
                query = query.eq("receiver_id", user_id)
            else:
                query = query.or_(f"initiator_id.eq.{user_id},receiver_id.eq.{user_id}")

        if statuses:
            query = query.in_("status", [TradeStatus(s).value for s in statuses])

        if disputed_only:
            query = query.not_.is_("dispute", "null")

        result = query.order("created_at", desc=True).execute()
        return [Trade.model_validate(row) for row in result.data or []]

    # ---------- Product locks ----------

    def lock_holder(self, product_id: str) -> Optional[str]:
        result = self.client.table("trade_item_lock").select("trade_id").eq(
            "product_id", product_id
        ).execute()
        return result.data[0]["trade_id"] if result.data else None

    def acquire_items(self, trade_id: str, product_ids: Iterable[str]) -> None:
        product_ids = list(product_ids)
        if not product_ids:
            return

        existing = self.client.table("trade_item_lock").select("*").in_(
            "product_id", product_ids
        ).execute()
        held = {row["product_id"]: row["trade_id"] for row in existing.data or []}
        conflicts = [pid for pid in product_ids if held.get(pid) not in (None, trade_id)]
        if conflicts:
            raise ItemAlreadyCommitted(
                f"Products already committed to another active trade: {', '.join(conflicts)}",
                product_ids=conflicts,
                trade_id=trade_id,
            )

        new_ids = [pid for pid in product_ids if pid not in held]
        if not new_ids:
            return

        locked_at = datetime.now(timezone.utc).isoformat()
        rows = [{"product_id": pid, "trade_id": trade_id, "locked_at": locked_at} for pid in new_ids]
        try:
            # One statement, so a unique violation on any row inserts none of them.
            self.client.table("trade_item_lock").insert(rows).execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                raise ItemAlreadyCommitted(
                    "Products were committed to another trade concurrently",
                    product_ids=new_ids,
                    trade_id=trade_id,
                )
            raise

        self._compensate(
            lambda: self.client.table("trade_item_lock").delete().eq(
                "trade_id", trade_id
            ).in_("product_id", new_ids).execute()
        )

    def release_items(self, trade_id: str, product_ids: Optional[Iterable[str]] = None) -> None:
        query = self.client.table("trade_item_lock").select("*").eq("trade_id", trade_id)
        if product_ids is not None:
            product_ids = list(product_ids)
            if not product_ids:
                return
            query = query.in_("product_id", product_ids)

        rows = query.execute().data or []
        if not rows:
            return

        released = [row["product_id"] for row in rows]
        self.client.table("trade_item_lock").delete().eq(
            "trade_id", trade_id
        ).in_("product_id", released).execute()

        self._compensate(lambda: self.client.table("trade_item_lock").insert(rows).execute())

    def transfer_items(self, from_trade_id: str, to_trade_id: str, product_ids: Iterable[str]) -> None:
        product_ids = list(product_ids)
        if not product_ids:
            return

        self.client.table("trade_item_lock").update({"trade_id": to_trade_id}).eq(
            "trade_id", from_trade_id
        ).in_("product_id", product_ids).execute()

        self._compensate(
            lambda: self.client.table("trade_item_lock").update({"trade_id": from_trade_id}).eq(
                "trade_id", to_trade_id
            ).in_("product_id", product_ids).execute()
        )

    def items_locked_by(self, trade_id: str) -> set[str]:
        result = self.client.table("trade_item_lock").select("product_id").eq(
            "trade_id", trade_id
        ).execute()
        return {row["product_id"] for row in result.data or []}

    # ---------- History ----------

    def append_history(self, entry: TradeHistoryEntry) -> None:
        try:
            self.client.table("trade_history").insert(entry.model_dump(mode="json")).execute()
        except APIError as exc:
            # (root_trade_id, sequence_number) is unique; another writer took this slot.
            if exc.code == UNIQUE_VIOLATION:
                raise ConcurrentModification(
                    f"Trade {entry.trade_id} history was appended concurrently; reload and retry",
                    trade_id=entry.trade_id,
                )
            raise
        self._compensate(
            lambda: self.client.table("trade_history").delete().eq(
                "history_id", entry.history_id
            ).execute()
        )

    def history(self, root_trade_id: str) -> list[TradeHistoryEntry]:
        result = self.client.table("trade_history").select("*").eq(
            "root_trade_id", root_trade_id
        ).order("sequence_number").execute()
        return [TradeHistoryEntry.model_validate(row) for row in result.data or []]

    def next_sequence(self, root_trade_id: str) -> int:
        result = self.client.table("trade_history").select("sequence_number").eq(
            "root_trade_id", root_trade_id
        ).order("sequence_number", desc=True).limit(1).execute()
        return result.data[0]["sequence_number"] + 1 if result.data else 1

    # ---------- Outbox ----------

    def add_event(self, event: TradeEvent) -> None:
        self.client.table("trade_event").insert(event.model_dump(mode="json")).execute()
        self._compensate(
            lambda: self.client.table("trade_event").delete().eq("event_id", event.event_id).execute()
        )

    def pending_events(self, limit: int = 100) -> list[TradeEvent]:
        result = self.client.table("trade_event").select("*").is_(
            "dispatched_at", "null"
        ).order("created_at").limit(limit).execute()
        return [TradeEvent.model_validate(row) for row in result.data or []]

    def mark_dispatched(self, event_id: str, dispatched_at: datetime) -> None:
        self.client.table("trade_event").update(
            {"dispatched_at": dispatched_at.isoformat()}
        ).eq("event_id", event_id).execute()

    def record_failed_attempt(self, event_id: str) -> None:
        result = self.client.table("trade_event").select("attempts").eq("event_id", event_id).execute()
        if not result.data:
            return
        self.client.table("trade_event").update(
            {"attempts": result.data[0]["attempts"] + 1}
        ).eq("event_id", event_id).execute()
