# backend/repositories/supabase_catalog.py
"""Supabase adapters for the marketplace tables the trade engine reads or writes."""
import logging
from typing import Iterable

from postgrest.exceptions import APIError
from supabase import Client

from models.product import ProductInfo
from models.trade import TradeEvent
from repositories.supabase_store import UNIQUE_VIOLATION
from services.ports import AddressBook, ModeratorDirectory, PaymentLedger, ProductCatalog


logger = logging.getLogger(__name__)

MODERATOR_ROLES = ("moderator", "admin", "super_admin")


class SupabaseProductCatalog(ProductCatalog):

    def __init__(self, client: Client):
        self.client = client

    def get_products(self, product_ids: Iterable[str]) -> dict[str, ProductInfo]:
        product_ids = list(product_ids)
        if not product_ids:
            return {}

        result = self.client.table("product").select(
            "product_id, seller_id, status, is_trade_enabled, price"
        ).in_("product_id", product_ids).execute()

        return {
            row["product_id"]: ProductInfo(
                product_id=row["product_id"],
                owner_id=row["seller_id"],
                status=row.get("status") or "active",
                is_trade_enabled=bool(row.get("is_trade_enabled", True)),
                price=row.get("price") or 0,
            )
            for row in result.data or []
        }


class SupabaseAddressBook(AddressBook):

    def __init__(self, client: Client):
        self.client = client

    def belongs_to(self, user_id: str, address_id: str) -> bool:
        result = self.client.table("address").select("address_id").eq(
            "address_id", address_id
        ).eq("user_id", user_id).execute()
        return bool(result.data)


class SupabaseModeratorDirectory(ModeratorDirectory):
    """Moderators are users whose ``role`` is one of MODERATOR_ROLES."""

    def __init__(self, client: Client):
        self.client = client

    def is_moderator(self, user_id: str) -> bool:
        result = self.client.table("user").select("role").eq("user_id", user_id).execute()
        return bool(result.data) and result.data[0].get("role") in MODERATOR_ROLES


class SupabaseLedger(PaymentLedger):
    """Appends ledger instructions to ``trade_ledger`` for the payments service."""

    def __init__(self, client: Client):
        self.client = client

    def post(self, event: TradeEvent) -> None:
        try:
            self.client.table("trade_ledger").insert({
                "event_id": event.event_id,
                "trade_id": event.trade_id,
                "entry_type": event.event_type.value,
                "payload": event.payload,
                "created_at": event.created_at.isoformat(),
            }).execute()
        except APIError as exc:
            # A redelivered event was already posted.
            if exc.code == UNIQUE_VIOLATION:
                logger.info("Ledger entry %s already posted", event.event_id)
                return
            raise
        logger.info("Posted %s for trade %s to the ledger", event.event_type.value, event.trade_id)
