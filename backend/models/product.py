# backend/models/product.py
from decimal import Decimal
from pydantic import BaseModel, Field, ConfigDict


class ProductInfo(BaseModel):
    """The slice of a marketplace listing the trade engine needs."""
    product_id: str
    owner_id: str
    status: str = Field(default="active", description="Listing status; only active products can be traded")
    is_trade_enabled: bool = True
    price: Decimal = Decimal("0")

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_active(self) -> bool:
        return self.status == "active"
