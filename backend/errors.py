# backend/errors.py
from typing import Optional


# ============== Categories ==============

VALIDATION = "validation"
AUTHORIZATION = "authorization"
NOT_FOUND = "not_found"
STATE = "state"
CONFLICT = "conflict"
BUSINESS_RULE = "business_rule"

STATUS_CODES = {
    VALIDATION: 422,
    AUTHORIZATION: 403,
    NOT_FOUND: 404,
    STATE: 409,
    CONFLICT: 409,
    BUSINESS_RULE: 400,
}


class TradeError(Exception):
    """Base class for every error raised by the trade engine.

    ``kind`` is the machine-readable name returned to API callers, ``category``
    groups errors by how a caller should react to them.
    """
    kind = "trade_error"
    category = BUSINESS_RULE
    retryable = False

    def __init__(self, message: str, trade_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.trade_id = trade_id

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.category]

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "error": self.kind,
            "category": self.category,
            "retryable": self.retryable,
        }


# ============== Validation ==============

class DuplicateItem(TradeError):
    kind = "duplicate_item"
    category = VALIDATION


class InvalidCashAmount(TradeError):
    kind = "invalid_cash_amount"
    category = VALIDATION


class InvalidAddress(TradeError):
    kind = "invalid_address"
    category = VALIDATION


class UnsupportedCarrier(TradeError):
    kind = "unsupported_carrier"
    category = VALIDATION


class InvalidRefundAmount(TradeError):
    kind = "invalid_refund_amount"
    category = VALIDATION


# ============== Business rules ==============

class SelfTradeNotAllowed(TradeError):
    kind = "self_trade_not_allowed"


class InvalidItemOwnership(TradeError):
    kind = "invalid_item_ownership"


class ItemNotTradeable(TradeError):
    kind = "item_not_tradeable"


class CounterLimitReached(TradeError):
    kind = "counter_limit_reached"


# ============== Authorization ==============

class InvalidActor(TradeError):
    kind = "invalid_actor"
    category = AUTHORIZATION


class UnauthorizedResolver(TradeError):
    kind = "unauthorized_resolver"
    category = AUTHORIZATION


# ============== Lookup ==============

class TradeNotFound(TradeError):
    kind = "trade_not_found"
    category = NOT_FOUND


# ============== State ==============

class InvalidStateForAction(TradeError):
    kind = "invalid_state_for_action"
    category = STATE


class AlreadyShipped(TradeError):
    kind = "already_shipped"
    category = STATE


class NothingToConfirm(TradeError):
    kind = "nothing_to_confirm"
    category = STATE


class AlreadyConfirmed(TradeError):
    kind = "already_confirmed"
    category = STATE


class DisputeAlreadyOpen(TradeError):
    kind = "dispute_already_open"
    category = STATE


class DisputeNotOpen(TradeError):
    kind = "dispute_not_open"
    category = STATE


class ResponseDeadlinePassed(TradeError):
    kind = "response_deadline_passed"
    category = STATE


# ============== Conflicts ==============

class ItemAlreadyCommitted(TradeError):
    """A product is locked by another active trade."""
    kind = "item_already_committed"
    category = CONFLICT
    retryable = True

    def __init__(self, message: str, product_ids: Optional[list[str]] = None, trade_id: Optional[str] = None):
        super().__init__(message, trade_id=trade_id)
        self.product_ids = product_ids or []

    def to_dict(self) -> dict:
        return {**super().to_dict(), "product_ids": self.product_ids}


class ItemNoLongerAvailable(TradeError):
    kind = "item_no_longer_available"
    category = CONFLICT
    retryable = True


class ConcurrentModification(TradeError):
    kind = "concurrent_modification"
    category = CONFLICT
    retryable = True
