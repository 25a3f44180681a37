# backend/services/ports.py
"""Collaborators the trade engine calls but does not own."""
import logging
from abc import ABC, abstractmethod
from typing import Iterable

from models.product import ProductInfo
from models.trade import TradeEvent


logger = logging.getLogger(__name__)


class ProductCatalog(ABC):
    """Read access to marketplace listings."""

    @abstractmethod
    def get_products(self, product_ids: Iterable[str]) -> dict[str, ProductInfo]:
        """Return the known products keyed by id; unknown ids are omitted."""


class AddressBook(ABC):

    @abstractmethod
    def belongs_to(self, user_id: str, address_id: str) -> bool:
        """Whether ``address_id`` is one of ``user_id``'s saved addresses."""


class ModeratorDirectory(ABC):

    @abstractmethod
    def is_moderator(self, user_id: str) -> bool:
        pass


class Notifier(ABC):

    @abstractmethod
    def notify(self, event: TradeEvent) -> None:
        pass


class PaymentLedger(ABC):
    """Receives ownership transfers, cash settlements and refunds."""

    @abstractmethod
    def post(self, event: TradeEvent) -> None:
        pass


class StaticModeratorDirectory(ModeratorDirectory):
    """Moderators listed in configuration."""

    def __init__(self, moderator_ids: Iterable[str] = ()):
        self.moderator_ids = frozenset(moderator_ids)

    def is_moderator(self, user_id: str) -> bool:
        return user_id in self.moderator_ids


class LoggingNotifier(Notifier):
    """Hands notifications to the log; delivery channels live elsewhere."""

    def notify(self, event: TradeEvent) -> None:
        logger.info(
            "Notify %s: %s for trade %s",
            ",".join(event.recipients) or "-",
            event.event_type.value,
            event.trade_id,
        )
