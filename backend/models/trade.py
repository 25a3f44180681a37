# backend/models/trade.py
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict, computed_field
from typing import Annotated, Literal, Optional, Any, Union


# ============== Enums ==============

class TradeStatus(str, Enum):
    """Trade lifecycle states."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTERED = "countered"  # Superseded by a counter-offer
    CANCELLED = "cancelled"
    INITIATOR_SHIPPED = "initiator_shipped"
    RECEIVER_SHIPPED = "receiver_shipped"
    BOTH_SHIPPED = "both_shipped"
    INITIATOR_DELIVERED = "initiator_delivered"  # Initiator's leg confirmed, receiver not shipped yet
    RECEIVER_DELIVERED = "receiver_delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    RESOLVED = "resolved"


class TradeRole(str, Enum):
    INITIATOR = "initiator"
    RECEIVER = "receiver"

    @property
    def other(self) -> "TradeRole":
        return TradeRole.RECEIVER if self is TradeRole.INITIATOR else TradeRole.INITIATOR


class DisputeReason(str, Enum):
    NOT_AS_DESCRIBED = "not_as_described"
    DAMAGED = "damaged"
    WRONG_ITEM = "wrong_item"
    NOT_RECEIVED = "not_received"


class DisputeResolution(str, Enum):
    COMPLETE_TRADE = "complete_trade"
    CANCEL_TRADE = "cancel_trade"
    PARTIAL_REFUND = "partial_refund"


class TradeHistoryAction(str, Enum):
    """Actions that can be recorded in trade history."""
    CREATED = "created"
    ACCEPTED = "accepted"
    COUNTER_OFFERED = "counter_offered"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SHIPPED = "shipped"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    RESOLVED = "resolved"


class TradeEventType(str, Enum):
    TRADE_PROPOSED = "trade_proposed"
    TRADE_COUNTERED = "trade_countered"
    TRADE_ACCEPTED = "trade_accepted"
    TRADE_REJECTED = "trade_rejected"
    TRADE_CANCELLED = "trade_cancelled"
    TRADE_EXPIRED = "trade_expired"
    LEG_SHIPPED = "leg_shipped"
    RECEIPT_CONFIRMED = "receipt_confirmed"
    TRADE_COMPLETED = "trade_completed"
    DISPUTE_RAISED = "dispute_raised"
    DISPUTE_RESOLVED = "dispute_resolved"
    OWNERSHIP_TRANSFER = "ownership_transfer"
    CASH_SETTLEMENT = "cash_settlement"
    CASH_REFUND = "cash_refund"


LEDGER_EVENT_TYPES = frozenset({
    TradeEventType.OWNERSHIP_TRANSFER,
    TradeEventType.CASH_SETTLEMENT,
    TradeEventType.CASH_REFUND,
})


# ============== Base Schemas ==============

class TradeItem(BaseModel):
    """A product offered or requested in a trade."""
    product_id: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1, description="Number of units to trade")


class TradeItemRecord(TradeItem):
    """Trade item as stored, with the catalog price captured at proposal time."""
    value_at_trade: Decimal = Decimal("0")


# ============== Create Schemas ==============

class TradeCreate(BaseModel):
    """Schema for creating a new trade offer."""
    receiver_id: str = Field(min_length=1, description="User ID of the trade receiver")
    initiator_items: list[TradeItem] = Field(
        min_length=1,
        description="Products the initiator is offering"
    )
    receiver_items: list[TradeItem] = Field(
        min_length=1,
        description="Products the initiator wants from the receiver"
    )
    cash_amount: Optional[Decimal] = Field(
        default=None,
        description="Positive: initiator pays receiver. Negative: receiver pays initiator."
    )
    message: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Optional message to receiver"
    )


# ============== Action Schemas ==============

class TradeAccept(BaseModel):
    """Schema for accepting a trade offer."""
    message: Optional[str] = Field(default=None, max_length=500)


class TradeReject(BaseModel):
    """Schema for rejecting a trade offer."""
    reason: Optional[str] = Field(default=None, max_length=500)


class TradeCancel(BaseModel):
    """Schema for cancelling a trade."""
    reason: str = Field(min_length=1, max_length=500, description="Cancellation reason")


class TradeCounterOffer(BaseModel):
    """Counter-offer from the receiver; roles swap in the resulting trade.

    ``initiator_items`` are what the counter-offerer gives, ``receiver_items``
    what they want from the original initiator.
    """
    initiator_items: list[TradeItem] = Field(min_length=1)
    receiver_items: list[TradeItem] = Field(min_length=1)
    cash_amount: Optional[Decimal] = None
    message: Optional[str] = Field(default=None, max_length=500)


class TradeShip(BaseModel):
    carrier: str = Field(min_length=1, description='Carrier code, e.g. "aras", "yurtici", "mng"')
    from_address_id: str = Field(min_length=1)


class TradeConfirmReceipt(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class TradeDisputeCreate(BaseModel):
    reason: DisputeReason
    description: str = Field(min_length=1, max_length=1000)
    evidence_urls: list[str] = Field(default_factory=list)


class TradeDisputeResolve(BaseModel):
    resolution: DisputeResolution
    notes: str = Field(min_length=1, max_length=1000)
    refund_amount: Optional[Decimal] = Field(
        default=None,
        description="Required for partial_refund; refunded to the cash payer"
    )


# ============== Commands ==============
# One command type per response verb, discriminated on ``action``.

class AcceptCommand(TradeAccept):
    action: Literal["accept"] = "accept"


class RejectCommand(TradeReject):
    action: Literal["reject"] = "reject"


class CounterCommand(TradeCounterOffer):
    action: Literal["counter"] = "counter"


class CancelCommand(TradeCancel):
    action: Literal["cancel"] = "cancel"


TradeCommand = Annotated[
    Union[AcceptCommand, RejectCommand, CounterCommand, CancelCommand],
    Field(discriminator="action"),
]


class TradeRespond(BaseModel):
    """Body of the generic respond endpoint."""
    command: TradeCommand


# ============== Record Schemas ==============

class ShipmentLeg(BaseModel):
    """One party's outbound shipment."""
    carrier: str
    from_address_id: str
    tracking_number: str
    shipped_at: datetime
    confirmed_at: Optional[datetime] = None
    confirmation_notes: Optional[str] = None


class Dispute(BaseModel):
    raised_by: str
    reason: DisputeReason
    description: str
    evidence_urls: list[str] = []
    raised_at: datetime

    # Set on resolution
    resolution: Optional[DisputeResolution] = None
    resolution_notes: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


class Trade(BaseModel):
    """Full trade record."""
    trade_id: str
    trade_number: str
    initiator_id: str
    receiver_id: str
    initiator_items: list[TradeItemRecord]
    receiver_items: list[TradeItemRecord]
    cash_amount: Decimal = Decimal("0")
    status: TradeStatus = TradeStatus.PENDING
    message: Optional[str] = None
    receiver_message: Optional[str] = None

    # Counter-offer chain tracking
    root_trade_id: Optional[str] = None
    supersedes: Optional[str] = None
    counter_count: int = 0

    # Optimistic concurrency
    version: int = 0

    # Fulfilment
    initiator_shipment: Optional[ShipmentLeg] = None
    receiver_shipment: Optional[ShipmentLeg] = None
    dispute: Optional[Dispute] = None

    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    # Deadlines
    response_deadline: Optional[datetime] = None
    shipping_deadline: Optional[datetime] = None

    # Lifecycle timestamps
    created_at: datetime
    updated_at: datetime
    responded_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def cash_payer_id(self) -> Optional[str]:
        """User who pays the cash leg, if any."""
        if self.cash_amount > 0:
            return self.initiator_id
        if self.cash_amount < 0:
            return self.receiver_id
        return None

    @computed_field
    @property
    def cash_payee_id(self) -> Optional[str]:
        if self.cash_amount > 0:
            return self.receiver_id
        if self.cash_amount < 0:
            return self.initiator_id
        return None

    def role_of(self, user_id: str) -> Optional[TradeRole]:
        if user_id == self.initiator_id:
            return TradeRole.INITIATOR
        if user_id == self.receiver_id:
            return TradeRole.RECEIVER
        return None

    def user_for(self, role: TradeRole) -> str:
        return self.initiator_id if role is TradeRole.INITIATOR else self.receiver_id

    def items_of(self, role: TradeRole) -> list[TradeItemRecord]:
        return self.initiator_items if role is TradeRole.INITIATOR else self.receiver_items

    def leg(self, role: TradeRole) -> Optional[ShipmentLeg]:
        return self.initiator_shipment if role is TradeRole.INITIATOR else self.receiver_shipment

    def set_leg(self, role: TradeRole, leg: ShipmentLeg) -> None:
        if role is TradeRole.INITIATOR:
            self.initiator_shipment = leg
        else:
            self.receiver_shipment = leg

    def product_ids(self) -> list[str]:
        return [item.product_id for item in self.initiator_items + self.receiver_items]


# ============== Query Schemas ==============

class TradeListResponse(BaseModel):
    """Paginated list of trades."""
    trades: list[Trade]
    total: int
    page: int
    page_size: int


# ============== Statistics Schemas ==============

class TradeSummary(BaseModel):
    """Summary statistics for a user's trades."""
    user_id: str
    total_trades: int
    active_trades: int
    completed_trades: int
    cancelled_trades: int
    rejected_trades: int
    disputed_trades: int
    resolved_trades: int


class TradeBalance(BaseModel):
    """Value and cash breakdown of a trade."""
    trade_id: str
    initiator_items_value: Decimal
    receiver_items_value: Decimal
    cash_amount: Decimal
    cash_payer_id: Optional[str] = None
    cash_payee_id: Optional[str] = None
    commission: Decimal
    payer_total: Decimal
    value_gap: Decimal = Field(
        description="Initiator side (items + cash) minus receiver side; zero is a balanced trade"
    )


# ============== Trade History Schemas ==============

class TradeHistoryEntry(BaseModel):
    """Append-only audit entry for a negotiation chain."""
    history_id: str
    trade_id: str
    root_trade_id: str
    sequence_number: int = Field(ge=0, description="Order of this action in the chain")
    actor_user_id: str
    action: TradeHistoryAction
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TradeHistoryListResponse(BaseModel):
    """List of trade history entries for a trade chain."""
    history: list[TradeHistoryEntry]
    total: int


# ============== Outbox Schemas ==============

class TradeEvent(BaseModel):
    """Side effect recorded in the same transaction as the transition that caused it."""
    event_id: str
    trade_id: str
    event_type: TradeEventType
    recipients: list[str] = []
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    dispatched_at: Optional[datetime] = None
    attempts: int = 0


# ============== Admin Schemas ==============

class TradeExpiryResponse(BaseModel):
    """Response from the overdue-trade sweep."""
    trades_expired: int = Field(description="Number of trades cancelled for missing a deadline")
    trade_ids: list[str] = []
    dry_run: bool = Field(description="Whether this was a preview (no actual cancellation)")
