# backend/services/trade_engine.py
"""Trade negotiation and settlement.

Every mutating operation loads the trade, checks the actor and the current
status, applies the transition and writes history and outbox events inside a
single store transaction, so a failed call leaves nothing behind.

The version-checked save comes first and releasing product locks comes last,
so a command that loses a race never frees products it does not own.
"""
import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from uuid import uuid4

from config import Settings
from errors import (
    AlreadyConfirmed,
    AlreadyShipped,
    CounterLimitReached,
    DisputeAlreadyOpen,
    DisputeNotOpen,
    DuplicateItem,
    InvalidActor,
    InvalidAddress,
    InvalidItemOwnership,
    ItemAlreadyCommitted,
    ItemNoLongerAvailable,
    ItemNotTradeable,
    NothingToConfirm,
    ResponseDeadlinePassed,
    SelfTradeNotAllowed,
    TradeError,
    TradeNotFound,
    UnauthorizedResolver,
    UnsupportedCarrier,
)
from models.trade import (
    AcceptCommand,
    CancelCommand,
    CounterCommand,
    Dispute,
    DisputeResolution,
    RejectCommand,
    ShipmentLeg,
    Trade,
    TradeAccept,
    TradeBalance,
    TradeCancel,
    TradeConfirmReceipt,
    TradeCounterOffer,
    TradeCreate,
    TradeDisputeCreate,
    TradeDisputeResolve,
    TradeEventType,
    TradeExpiryResponse,
    TradeHistoryAction,
    TradeHistoryEntry,
    TradeHistoryListResponse,
    TradeItem,
    TradeItemRecord,
    TradeListResponse,
    TradeReject,
    TradeRole,
    TradeShip,
    TradeStatus,
    TradeSummary,
)
from repositories.base import TradeStore
from services import settlement
from services.events import new_event
from services.ports import AddressBook, ModeratorDirectory, ProductCatalog
from services.state_machine import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    CONFIRMABLE_STATUSES,
    DISPUTABLE_STATUSES,
    SHIPPABLE_STATUSES,
    fulfilment_status,
    require_status,
    transition,
)


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
EXPIRED_REASON = "expired"

_BASE36 = string.digits + string.ascii_uppercase


def _base36(number: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def _random_suffix(length: int = 4) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_trade_number(now: datetime) -> str:
    return f"TRD-{_base36(int(now.timestamp() * 1000))}-{_random_suffix()}"


def generate_tracking_number(now: datetime) -> str:
    return f"TRK{_base36(int(now.timestamp() * 1000))}{_random_suffix()}"


def _paginate(trades: list[Trade], page: int, page_size: int) -> TradeListResponse:
    start = (page - 1) * page_size
    return TradeListResponse(
        trades=trades[start:start + page_size],
        total=len(trades),
        page=page,
        page_size=page_size,
    )


class TradeEngine:
    """Owns every state transition of a trade."""

    def __init__(
        self,
        store: TradeStore,
        catalog: ProductCatalog,
        addresses: AddressBook,
        moderators: ModeratorDirectory,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.addresses = addresses
        self.moderators = moderators
        self.settings = settings or Settings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._handlers = {
            AcceptCommand: self._accept,
            RejectCommand: self._reject,
            CounterCommand: self._counter,
            CancelCommand: self._cancel,
        }

    # ============== Proposal ==============

    def create_trade(self, initiator_id: str, payload: TradeCreate) -> Trade:
        """Propose a trade; every referenced product is locked to it."""
        with self.store.transaction():
            initiator_items, receiver_items, cash = self._validate_offer(
                initiator_id,
                payload.receiver_id,
                payload.initiator_items,
                payload.receiver_items,
                payload.cash_amount,
            )
            now = self.clock()
            trade_id = str(uuid4())
            trade = Trade(
                trade_id=trade_id,
                trade_number=generate_trade_number(now),
                initiator_id=initiator_id,
                receiver_id=payload.receiver_id,
                initiator_items=initiator_items,
                receiver_items=receiver_items,
                cash_amount=cash,
                message=payload.message,
                root_trade_id=trade_id,
                response_deadline=now + timedelta(hours=self.settings.response_deadline_hours),
                created_at=now,
                updated_at=now,
            )

            self.store.insert(trade)
            self.store.acquire_items(trade.trade_id, trade.product_ids())

            self._record(trade, initiator_id, TradeHistoryAction.CREATED, **self._offer_details(trade))
            self._emit(trade, TradeEventType.TRADE_PROPOSED, recipients=[trade.receiver_id])

        logger.info("Trade %s proposed by %s to %s", trade.trade_id, initiator_id, trade.receiver_id)
        return trade

    def respond_to_trade(self, trade_id: str, actor_id: str, command) -> Trade:
        """Apply an accept, reject, counter or cancel command.

        Returns the updated trade, or the new trade for a counter-offer.
        """
        handler = self._handlers[type(command)]
        with self.store.transaction():
            trade = self._load(trade_id)
            self._require_participant(trade, actor_id, command.action)
            result = handler(trade, actor_id, command)

        logger.info(
            "Trade %s: %s by %s -> %s", trade_id, command.action, actor_id, result.status.value
        )
        return result

    def accept_trade(self, trade_id: str, actor_id: str, payload: Optional[TradeAccept] = None) -> Trade:
        payload = payload or TradeAccept()
        return self.respond_to_trade(trade_id, actor_id, AcceptCommand(**payload.model_dump()))

    def reject_trade(self, trade_id: str, actor_id: str, payload: Optional[TradeReject] = None) -> Trade:
        payload = payload or TradeReject()
        return self.respond_to_trade(trade_id, actor_id, RejectCommand(**payload.model_dump()))

    def counter_trade(self, trade_id: str, actor_id: str, payload: TradeCounterOffer) -> Trade:
        return self.respond_to_trade(trade_id, actor_id, CounterCommand(**payload.model_dump()))

    def cancel_trade(self, trade_id: str, actor_id: str, payload: TradeCancel) -> Trade:
        return self.respond_to_trade(trade_id, actor_id, CancelCommand(**payload.model_dump()))

    def _accept(self, trade: Trade, actor_id: str, command: AcceptCommand) -> Trade:
        require_status(trade, frozenset({TradeStatus.PENDING}), "accept")
        if trade.role_of(actor_id) is not TradeRole.RECEIVER:
            raise InvalidActor("Only the receiver can accept a trade", trade_id=trade.trade_id)
        now = self.clock()
        self._check_response_deadline(trade, now)

        # Another writer may have taken a product or its listing may have changed
        # since the offer was made.
        for product_id in trade.product_ids():
            holder = self.store.lock_holder(product_id)
            if holder != trade.trade_id:
                raise ItemNoLongerAvailable(
                    f"Product {product_id} is no longer reserved for this trade",
                    trade_id=trade.trade_id,
                )
        self._recheck_listings(trade)
        self.store.acquire_items(trade.trade_id, trade.product_ids())

        transition(trade, TradeStatus.ACCEPTED, "accept")
        trade.receiver_message = command.message
        trade.responded_at = now
        trade.accepted_at = now
        trade.shipping_deadline = now + timedelta(days=self.settings.shipping_deadline_days)
        trade.updated_at = now
        self.store.save(trade)

        self._record(trade, actor_id, TradeHistoryAction.ACCEPTED, message=command.message)
        self._emit(trade, TradeEventType.TRADE_ACCEPTED, recipients=[trade.initiator_id])
        return trade

    def _reject(self, trade: Trade, actor_id: str, command: RejectCommand) -> Trade:
        require_status(trade, frozenset({TradeStatus.PENDING}), "reject")
        if trade.role_of(actor_id) is not TradeRole.RECEIVER:
            raise InvalidActor("Only the receiver can reject a trade", trade_id=trade.trade_id)
        return self._close_as_rejected(trade, actor_id, command.reason)

    def _close_as_rejected(self, trade: Trade, actor_id: str, reason: Optional[str]) -> Trade:
        now = self.clock()
        transition(trade, TradeStatus.REJECTED, "reject")
        trade.cancel_reason = reason
        trade.cancelled_by = actor_id
        trade.responded_at = now
        trade.resolved_at = now
        trade.updated_at = now
        self.store.save(trade)

        self._record(trade, actor_id, TradeHistoryAction.REJECTED, reason=reason)
        self._emit(trade, TradeEventType.TRADE_REJECTED, recipients=[trade.initiator_id], reason=reason)
        self.store.release_items(trade.trade_id)
        return trade

    def _counter(self, trade: Trade, actor_id: str, command: CounterCommand) -> Trade:
        require_status(trade, frozenset({TradeStatus.PENDING}), "counter")
        if trade.role_of(actor_id) is not TradeRole.RECEIVER:
            raise InvalidActor("Only the receiver can counter a trade", trade_id=trade.trade_id)
        if trade.counter_count + 1 > self.settings.max_counter_offers:
            raise CounterLimitReached(
                f"A negotiation allows at most {self.settings.max_counter_offers} counter-offers",
                trade_id=trade.trade_id,
            )
        now = self.clock()
        self._check_response_deadline(trade, now)

        # Roles swap: the counter-offerer proposes to the original initiator.
        initiator_items, receiver_items, cash = self._validate_offer(
            actor_id,
            trade.initiator_id,
            command.initiator_items,
            command.receiver_items,
            command.cash_amount,
            reusable_locks_of=trade.trade_id,
        )

        counter_id = str(uuid4())
        counter = Trade(
            trade_id=counter_id,
            trade_number=generate_trade_number(now),
            initiator_id=actor_id,
            receiver_id=trade.initiator_id,
            initiator_items=initiator_items,
            receiver_items=receiver_items,
            cash_amount=cash,
            message=command.message,
            root_trade_id=trade.root_trade_id or trade.trade_id,
            supersedes=trade.trade_id,
            counter_count=trade.counter_count + 1,
            response_deadline=now + timedelta(hours=self.settings.response_deadline_hours),
            created_at=now,
            updated_at=now,
        )

        transition(trade, TradeStatus.COUNTERED, "counter")
        trade.responded_at = now
        trade.resolved_at = now
        trade.updated_at = now
        self.store.save(trade)
        self.store.insert(counter)

        # Products stay locked through the negotiation: new ones are acquired,
        # shared ones move to the counter-offer, dropped ones are released.
        held = self.store.items_locked_by(trade.trade_id)
        wanted = set(counter.product_ids())
        self.store.acquire_items(counter_id, wanted - held)
        self.store.transfer_items(trade.trade_id, counter_id, held & wanted)

        self._record(
            counter,
            actor_id,
            TradeHistoryAction.COUNTER_OFFERED,
            supersedes=trade.trade_id,
            **self._offer_details(counter),
        )
        self._emit(
            counter,
            TradeEventType.TRADE_COUNTERED,
            recipients=[counter.receiver_id],
            supersedes=trade.trade_id,
        )
        self.store.release_items(trade.trade_id, held - wanted)
        return counter

    def _cancel(self, trade: Trade, actor_id: str, command: CancelCommand) -> Trade:
        require_status(trade, CANCELLABLE_STATUSES, "cancel")
        role = trade.role_of(actor_id)

        # The receiver cannot withdraw an offer they never made; declining it is a rejection.
        if trade.status == TradeStatus.PENDING and role is TradeRole.RECEIVER:
            return self._close_as_rejected(trade, actor_id, command.reason)

        self._close_as_cancelled(trade, actor_id, command.reason, TradeHistoryAction.CANCELLED)
        return trade

    def _close_as_cancelled(
        self,
        trade: Trade,
        actor_id: str,
        reason: str,
        action: TradeHistoryAction,
    ) -> None:
        now = self.clock()
        transition(trade, TradeStatus.CANCELLED, "cancel")
        trade.cancel_reason = reason
        trade.cancelled_by = actor_id
        trade.cancelled_at = now
        trade.resolved_at = now
        trade.updated_at = now
        self.store.save(trade)

        self._record(trade, actor_id, action, reason=reason)
        event_type = (
            TradeEventType.TRADE_EXPIRED if action is TradeHistoryAction.EXPIRED
            else TradeEventType.TRADE_CANCELLED
        )
        self._emit(trade, event_type, reason=reason)
        self.store.release_items(trade.trade_id)

    # ============== Shipment & delivery ==============

    def mark_shipped(self, trade_id: str, actor_id: str, payload: TradeShip) -> Trade:
        """Record the actor's outbound leg."""
        with self.store.transaction():
            trade = self._load(trade_id)
            role = self._require_participant(trade, actor_id, "ship")

            if trade.leg(role) is not None and trade.status in CONFIRMABLE_STATUSES:
                raise AlreadyShipped("You have already shipped your items", trade_id=trade_id)
            require_status(trade, SHIPPABLE_STATUSES, "ship")

            carrier = payload.carrier.strip().lower()
            if carrier not in self.settings.supported_carriers:
                raise UnsupportedCarrier(
                    f"Carrier '{payload.carrier}' is not supported", trade_id=trade_id
                )
            if not self.addresses.belongs_to(actor_id, payload.from_address_id):
                raise InvalidAddress("Address not found", trade_id=trade_id)

            now = self.clock()
            leg = ShipmentLeg(
                carrier=carrier,
                from_address_id=payload.from_address_id,
                tracking_number=generate_tracking_number(now),
                shipped_at=now,
            )
            trade.set_leg(role, leg)
            transition(trade, fulfilment_status(trade), "ship")
            if trade.shipped_at is None:
                trade.shipped_at = now
            trade.updated_at = now
            self.store.save(trade)

            self._record(
                trade, actor_id, TradeHistoryAction.SHIPPED,
                carrier=carrier, tracking_number=leg.tracking_number,
            )
            self._emit(
                trade,
                TradeEventType.LEG_SHIPPED,
                recipients=[trade.user_for(role.other)],
                shipper_id=actor_id,
                carrier=carrier,
                tracking_number=leg.tracking_number,
            )

        logger.info("Trade %s: %s shipped via %s -> %s", trade_id, role.value, carrier, trade.status.value)
        return trade

    def confirm_receipt(
        self,
        trade_id: str,
        actor_id: str,
        payload: Optional[TradeConfirmReceipt] = None,
    ) -> Trade:
        """Confirm the counterparty's leg arrived; the second confirmation completes the trade."""
        payload = payload or TradeConfirmReceipt()
        with self.store.transaction():
            trade = self._load(trade_id)
            role = self._require_participant(trade, actor_id, "confirm receipt")
            incoming = trade.leg(role.other)

            if incoming is not None and incoming.confirmed_at is not None:
                raise AlreadyConfirmed("You have already confirmed receipt", trade_id=trade_id)
            require_status(trade, CONFIRMABLE_STATUSES | {TradeStatus.ACCEPTED}, "confirm receipt")
            if incoming is None:
                raise NothingToConfirm(
                    "The other party has not shipped yet", trade_id=trade_id
                )

            now = self.clock()
            incoming.confirmed_at = now
            incoming.confirmation_notes = payload.notes
            if trade.delivered_at is None:
                trade.delivered_at = now
            transition(trade, fulfilment_status(trade), "confirm receipt")
            if trade.status == TradeStatus.COMPLETED:
                trade.resolved_at = now
            trade.updated_at = now
            self.store.save(trade)

            self._record(trade, actor_id, TradeHistoryAction.CONFIRMED, notes=payload.notes)
            self._emit(
                trade,
                TradeEventType.RECEIPT_CONFIRMED,
                recipients=[trade.user_for(role.other)],
                confirmed_by=actor_id,
            )

            if trade.status == TradeStatus.COMPLETED:
                self._settle(trade)
                self._record(trade, SYSTEM_ACTOR, TradeHistoryAction.COMPLETED)
                self._emit(trade, TradeEventType.TRADE_COMPLETED)
                self.store.release_items(trade.trade_id)

        logger.info("Trade %s: receipt confirmed by %s -> %s", trade_id, actor_id, trade.status.value)
        return trade

    # ============== Disputes ==============

    def raise_dispute(self, trade_id: str, actor_id: str, payload: TradeDisputeCreate) -> Trade:
        with self.store.transaction():
            trade = self._load(trade_id)
            self._require_participant(trade, actor_id, "dispute")
            if trade.status == TradeStatus.DISPUTED:
                raise DisputeAlreadyOpen("A dispute is already open for this trade", trade_id=trade_id)
            require_status(trade, DISPUTABLE_STATUSES, "dispute")

            now = self.clock()
            trade.dispute = Dispute(
                raised_by=actor_id,
                reason=payload.reason,
                description=payload.description,
                evidence_urls=list(payload.evidence_urls),
                raised_at=now,
            )
            transition(trade, TradeStatus.DISPUTED, "dispute")
            trade.updated_at = now
            self.store.save(trade)

            self._record(
                trade, actor_id, TradeHistoryAction.DISPUTED,
                reason=payload.reason.value, description=payload.description,
            )
            self._emit(trade, TradeEventType.DISPUTE_RAISED, raised_by=actor_id, reason=payload.reason.value)

        logger.warning("Trade %s disputed by %s: %s", trade_id, actor_id, payload.reason.value)
        return trade

    def resolve_dispute(self, trade_id: str, moderator_id: str, payload: TradeDisputeResolve) -> Trade:
        """Close a dispute with one of the three resolutions.

        complete_trade settles as if both parties had confirmed, cancel_trade
        returns the items and releases any cash hold, partial_refund settles
        with part of the cash leg returned to the payer.
        """
        if not self.moderators.is_moderator(moderator_id):
            raise UnauthorizedResolver("Only moderators can resolve disputes", trade_id=trade_id)

        with self.store.transaction():
            trade = self._load(trade_id)
            if trade.status != TradeStatus.DISPUTED or trade.dispute is None:
                raise DisputeNotOpen("Trade has no open dispute", trade_id=trade_id)

            refund = settlement.ZERO
            if payload.resolution is DisputeResolution.PARTIAL_REFUND:
                refund = settlement.validate_refund(trade, payload.refund_amount)

            now = self.clock()
            dispute = trade.dispute
            dispute.resolution = payload.resolution
            dispute.resolution_notes = payload.notes
            dispute.resolved_by = moderator_id
            dispute.resolved_at = now
            if payload.resolution is DisputeResolution.PARTIAL_REFUND:
                dispute.refund_amount = refund

            transition(trade, TradeStatus.RESOLVED, "resolve dispute")
            trade.resolved_at = now
            trade.updated_at = now
            self.store.save(trade)

            if payload.resolution is DisputeResolution.CANCEL_TRADE:
                if trade.cash_amount != settlement.ZERO:
                    self._emit(
                        trade,
                        TradeEventType.CASH_REFUND,
                        recipients=[trade.cash_payer_id],
                        payer_id=trade.cash_payer_id,
                        amount=str(abs(trade.cash_amount)),
                        release_hold=True,
                    )
            else:
                self._settle(trade, refund)
                if refund:
                    self._emit(
                        trade,
                        TradeEventType.CASH_REFUND,
                        recipients=[trade.cash_payer_id],
                        payer_id=trade.cash_payer_id,
                        amount=str(refund),
                        release_hold=False,
                    )

            self._record(
                trade, moderator_id, TradeHistoryAction.RESOLVED,
                resolution=payload.resolution.value, notes=payload.notes,
                refund_amount=str(refund) if refund else None,
            )
            self._emit(trade, TradeEventType.DISPUTE_RESOLVED, resolution=payload.resolution.value)
            self.store.release_items(trade.trade_id)

        logger.info("Trade %s dispute resolved by %s: %s", trade_id, moderator_id, payload.resolution.value)
        return trade

    # ============== Expiry ==============

    def expire_overdue_trades(self, dry_run: bool = False, now: Optional[datetime] = None) -> TradeExpiryResponse:
        """Cancel pending trades nobody answered and accepted trades nobody shipped."""
        now = now or self.clock()
        candidates = [
            trade for trade in self.store.find(statuses=[TradeStatus.PENDING, TradeStatus.ACCEPTED])
            if self._is_overdue(trade, now)
        ]
        if dry_run:
            return TradeExpiryResponse(
                trades_expired=len(candidates),
                trade_ids=[t.trade_id for t in candidates],
                dry_run=True,
            )

        expired = []
        for candidate in candidates:
            try:
                with self.store.transaction():
                    trade = self._load(candidate.trade_id)
                    if not self._is_overdue(trade, now):
                        continue
                    self._close_as_cancelled(trade, SYSTEM_ACTOR, EXPIRED_REASON, TradeHistoryAction.EXPIRED)
            except TradeError as exc:
                logger.warning("Could not expire trade %s: %s", candidate.trade_id, exc.message)
                continue
            expired.append(candidate.trade_id)

        if expired:
            logger.info("Expired %d overdue trades", len(expired))
        return TradeExpiryResponse(trades_expired=len(expired), trade_ids=expired, dry_run=False)

    @staticmethod
    def _is_overdue(trade: Trade, now: datetime) -> bool:
        if trade.status == TradeStatus.PENDING:
            return trade.response_deadline is not None and now > trade.response_deadline
        if trade.status == TradeStatus.ACCEPTED:
            return trade.shipping_deadline is not None and now > trade.shipping_deadline
        return False

    # ============== Reads ==============

    def get_trade(self, trade_id: str, viewer_id: str) -> Trade:
        trade = self._load(trade_id)
        if trade.role_of(viewer_id) is None and not self.moderators.is_moderator(viewer_id):
            raise InvalidActor("You are not a party to this trade", trade_id=trade_id)
        return trade

    def list_trades(
        self,
        user_id: str,
        status: Optional[TradeStatus] = None,
        role: str = "any",
        page: int = 1,
        page_size: int = 20,
    ) -> TradeListResponse:
        trades = self.store.find(
            user_id=user_id,
            role=role or "any",
            statuses=[status] if status else None,
        )
        return _paginate(trades, page, page_size)

    def list_all_trades(
        self,
        viewer_id: str,
        status: Optional[TradeStatus] = None,
        disputed_only: bool = False,
        page: int = 1,
        page_size: int = 20,
    ) -> TradeListResponse:
        if not self.moderators.is_moderator(viewer_id):
            raise InvalidActor("Moderator access required")
        trades = self.store.find(statuses=[status] if status else None, disputed_only=disputed_only)
        return _paginate(trades, page, page_size)

    def get_history(self, trade_id: str, viewer_id: str) -> TradeHistoryListResponse:
        trade = self.get_trade(trade_id, viewer_id)
        entries = self.store.history(trade.root_trade_id or trade.trade_id)
        return TradeHistoryListResponse(history=entries, total=len(entries))

    def compute_balance(self, trade_id: str, viewer_id: str) -> TradeBalance:
        trade = self.get_trade(trade_id, viewer_id)
        return settlement.compute_balance(trade, self.settings.cash_commission_rate)

    def summarize(self, user_id: str, viewer_id: str) -> TradeSummary:
        if viewer_id != user_id and not self.moderators.is_moderator(viewer_id):
            raise InvalidActor("You can only view your own trade summary")
        trades = self.store.find(user_id=user_id)

        def count(*statuses: TradeStatus) -> int:
            return sum(1 for t in trades if t.status in statuses)

        return TradeSummary(
            user_id=user_id,
            total_trades=count(*(set(TradeStatus) - {TradeStatus.COUNTERED})),
            active_trades=sum(1 for t in trades if t.status in ACTIVE_STATUSES),
            completed_trades=count(TradeStatus.COMPLETED),
            cancelled_trades=count(TradeStatus.CANCELLED),
            rejected_trades=count(TradeStatus.REJECTED),
            disputed_trades=count(TradeStatus.DISPUTED),
            resolved_trades=count(TradeStatus.RESOLVED),
        )

    # ============== Helpers ==============

    def _load(self, trade_id: str) -> Trade:
        trade = self.store.get(trade_id)
        if trade is None:
            raise TradeNotFound(f"Trade {trade_id} not found", trade_id=trade_id)
        return trade

    @staticmethod
    def _require_participant(trade: Trade, actor_id: str, action: str) -> TradeRole:
        role = trade.role_of(actor_id)
        if role is None:
            raise InvalidActor(
                f"Only the parties of a trade can {action} it", trade_id=trade.trade_id
            )
        return role

    @staticmethod
    def _check_response_deadline(trade: Trade, now: datetime) -> None:
        if trade.response_deadline is not None and now > trade.response_deadline:
            raise ResponseDeadlinePassed("The response deadline has passed", trade_id=trade.trade_id)

    def _validate_offer(
        self,
        initiator_id: str,
        receiver_id: str,
        initiator_items: list[TradeItem],
        receiver_items: list[TradeItem],
        cash_amount,
        reusable_locks_of: Optional[str] = None,
    ):
        if initiator_id == receiver_id:
            raise SelfTradeNotAllowed("You cannot trade with yourself")

        product_ids = [item.product_id for item in initiator_items + receiver_items]
        duplicates = sorted({pid for pid in product_ids if product_ids.count(pid) > 1})
        if duplicates:
            raise DuplicateItem(f"Products listed more than once: {', '.join(duplicates)}")

        cash = settlement.normalize_cash_amount(cash_amount, self.settings.max_cash_amount)

        offered = self._check_items(initiator_id, initiator_items, requested=False)
        requested = self._check_items(receiver_id, receiver_items, requested=True)

        committed = [
            pid for pid in product_ids
            if self.store.lock_holder(pid) not in (None, reusable_locks_of)
        ]
        if committed:
            raise ItemAlreadyCommitted(
                f"Products already committed to another active trade: {', '.join(committed)}",
                product_ids=committed,
            )

        return offered, requested, cash

    def _check_items(self, owner_id: str, items: Iterable[TradeItem], requested: bool) -> list[TradeItemRecord]:
        items = list(items)
        products = self.catalog.get_products(item.product_id for item in items)
        records = []
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                raise InvalidItemOwnership(f"Product {item.product_id} does not exist")
            if product.owner_id != owner_id:
                raise InvalidItemOwnership(
                    f"Product {item.product_id} does not belong to user {owner_id}"
                )
            if not product.is_active:
                raise ItemNotTradeable(f"Product {item.product_id} is not an active listing")
            if requested and not product.is_trade_enabled:
                raise ItemNotTradeable(f"Product {item.product_id} is not open to trades")
            records.append(TradeItemRecord(
                product_id=item.product_id,
                quantity=item.quantity,
                value_at_trade=product.price,
            ))
        return records

    def _recheck_listings(self, trade: Trade) -> None:
        products = self.catalog.get_products(trade.product_ids())
        for role in TradeRole:
            owner_id = trade.user_for(role)
            for item in trade.items_of(role):
                product = products.get(item.product_id)
                if product is None or product.owner_id != owner_id or not product.is_active:
                    raise ItemNoLongerAvailable(
                        f"Product {item.product_id} is no longer available", trade_id=trade.trade_id
                    )

    def _settle(self, trade: Trade, refund=settlement.ZERO) -> None:
        """Queue the ownership transfer and, when there is a cash leg, its settlement."""
        transfers = [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "from_user_id": trade.user_for(role),
                "to_user_id": trade.user_for(role.other),
            }
            for role in TradeRole
            for item in trade.items_of(role)
        ]
        self._emit(trade, TradeEventType.OWNERSHIP_TRANSFER, transfers=transfers)

        if trade.cash_amount != settlement.ZERO:
            self._emit(
                trade,
                TradeEventType.CASH_SETTLEMENT,
                recipients=[trade.cash_payer_id, trade.cash_payee_id],
                **settlement.settlement_payload(trade, self.settings.cash_commission_rate, refund),
            )

    @staticmethod
    def _offer_details(trade: Trade) -> dict:
        return {
            "initiator_items": [item.model_dump(mode="json") for item in trade.initiator_items],
            "receiver_items": [item.model_dump(mode="json") for item in trade.receiver_items],
            "cash_amount": str(trade.cash_amount),
            "message": trade.message,
        }

    def _record(self, trade: Trade, actor_id: str, action: TradeHistoryAction, **details) -> None:
        root = trade.root_trade_id or trade.trade_id
        self.store.append_history(TradeHistoryEntry(
            history_id=str(uuid4()),
            trade_id=trade.trade_id,
            root_trade_id=root,
            sequence_number=self.store.next_sequence(root),
            actor_user_id=actor_id,
            action=action,
            details={k: v for k, v in details.items() if v is not None},
            created_at=self.clock(),
        ))

    def _emit(self, trade: Trade, event_type: TradeEventType, recipients=None, **payload) -> None:
        self.store.add_event(new_event(trade, event_type, self.clock(), recipients=recipients, **payload))
