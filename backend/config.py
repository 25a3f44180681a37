# backend/config.py
import logging
import os
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _split_csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class Settings(BaseModel):
    """Runtime settings for the trade service."""
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    response_deadline_hours: int = Field(default=72, ge=1)
    shipping_deadline_days: int = Field(default=7, ge=1)
    cash_commission_rate: Decimal = Field(default=Decimal("0.05"), ge=0, lt=1)
    max_cash_amount: Decimal = Field(default=Decimal("1000000"), gt=0)
    max_counter_offers: int = Field(default=10, ge=0)
    supported_carriers: list[str] = Field(
        default_factory=lambda: ["aras", "yurtici", "mng", "ptt", "ups"]
    )
    moderator_user_ids: list[str] = Field(default_factory=list)
    memory_seed_file: Optional[str] = Field(
        default=None, description="JSON file with products and addresses for the in-memory catalog"
    )

    log_level: str = "INFO"
    cors_allowed_origins: list[str] = Field(default_factory=lambda: ["*"])

    @property
    def use_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build settings from the environment, loading a .env file first if present."""
    load_dotenv(env_file)

    values = {
        "supabase_url": os.getenv("SUPABASE_URL"),
        "supabase_key": os.getenv("SUPABASE_KEY"),
        "log_level": os.getenv("LOG_LEVEL", "INFO").upper(),
        "memory_seed_file": os.getenv("TRADE_MEMORY_SEED_FILE") or None,
    }

    numeric = {
        "response_deadline_hours": "TRADE_RESPONSE_DEADLINE_HOURS",
        "shipping_deadline_days": "TRADE_SHIPPING_DEADLINE_DAYS",
        "cash_commission_rate": "TRADE_CASH_COMMISSION_RATE",
        "max_cash_amount": "TRADE_MAX_CASH_AMOUNT",
        "max_counter_offers": "TRADE_MAX_COUNTER_OFFERS",
    }
    for field, variable in numeric.items():
        raw = os.getenv(variable)
        if raw:
            values[field] = raw

    carriers = _split_csv(os.getenv("TRADE_SUPPORTED_CARRIERS"))
    if carriers:
        values["supported_carriers"] = [c.lower() for c in carriers]

    values["moderator_user_ids"] = _split_csv(os.getenv("MODERATOR_USER_IDS"))

    origins = _split_csv(os.getenv("CORS_ALLOWED_ORIGINS"))
    if origins:
        values["cors_allowed_origins"] = origins

    return Settings(**values)


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    if not any(getattr(h, "_trade_service", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._trade_service = True
        root.addHandler(handler)
    root.setLevel(level)
