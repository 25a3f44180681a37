from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from supabase import create_client, Client
from typing import Optional

from config import Settings, configure_logging, load_settings
from errors import TradeError
from models.trade import (
    Trade,
    TradeAccept,
    TradeBalance,
    TradeCancel,
    TradeConfirmReceipt,
    TradeCounterOffer,
    TradeCreate,
    TradeDisputeCreate,
    TradeDisputeResolve,
    TradeExpiryResponse,
    TradeHistoryListResponse,
    TradeListResponse,
    TradeReject,
    TradeRespond,
    TradeShip,
    TradeStatus,
    TradeSummary,
)
from repositories.memory import (
    InMemoryAddressBook,
    InMemoryLedger,
    InMemoryProductCatalog,
    InMemoryTradeStore,
    load_memory_seed,
)
from repositories.supabase_catalog import (
    SupabaseAddressBook,
    SupabaseLedger,
    SupabaseModeratorDirectory,
    SupabaseProductCatalog,
)
from repositories.supabase_store import SupabaseTradeStore
from services.events import EventDispatcher
from services.ports import LoggingNotifier, StaticModeratorDirectory
from services.trade_engine import TradeEngine

settings = load_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Trade Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Supabase client, only when configured
supabase: Optional[Client] = (
    create_client(settings.supabase_url, settings.supabase_key) if settings.use_supabase else None
)


def build_engine(settings: Settings, client: Optional[Client] = None) -> tuple[TradeEngine, EventDispatcher]:
    """Wire the engine and outbox dispatcher to Supabase or to process memory."""
    if client is not None:
        store = SupabaseTradeStore(client)
        engine = TradeEngine(
            store=store,
            catalog=SupabaseProductCatalog(client),
            addresses=SupabaseAddressBook(client),
            moderators=SupabaseModeratorDirectory(client),
            settings=settings,
        )
        ledger = SupabaseLedger(client)
    else:
        logger.warning("SUPABASE_URL/SUPABASE_KEY not set; trades are kept in memory")
        if settings.memory_seed_file:
            catalog, addresses = load_memory_seed(settings.memory_seed_file)
        else:
            logger.warning("TRADE_MEMORY_SEED_FILE not set; no products can be traded")
            catalog, addresses = InMemoryProductCatalog(), InMemoryAddressBook()
        store = InMemoryTradeStore()
        engine = TradeEngine(
            store=store,
            catalog=catalog,
            addresses=addresses,
            moderators=StaticModeratorDirectory(settings.moderator_user_ids),
            settings=settings,
        )
        ledger = InMemoryLedger()

    return engine, EventDispatcher(store, LoggingNotifier(), ledger)


engine, dispatcher = build_engine(settings, supabase)


@app.exception_handler(TradeError)
async def trade_error_handler(request: Request, exc: TradeError):
    logger.info(
        "%s %s rejected: %s (%s)", request.method, request.url.path, exc.kind, exc.message
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """The acting user, as forwarded by the auth gateway."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def dispatch_events():
    """Drain the outbox; run as a background task after each command."""
    dispatcher.dispatch()


@app.get("/")
def read_root():
    return {"message": "Trade Service API"}

@app.get("/health")
def health_check():
    return {"status": "healthy", "store": "supabase" if supabase is not None else "memory"}


# ============== Trade Endpoints ==============

@app.post("/trades", response_model=Trade, status_code=201)
def create_trade(
    trade: TradeCreate,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
):
    """Propose a trade to another user."""
    result = engine.create_trade(user_id, trade)
    background_tasks.add_task(dispatch_events)
    return result


@app.get("/trades", response_model=TradeListResponse)
def list_trades(
    user_id: str = Depends(current_user),
    status: Optional[TradeStatus] = Query(None),
    role: str = Query("any", pattern="^(initiator|receiver|any)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    """List the caller's trades, newest first."""
    return engine.list_trades(user_id, status=status, role=role, page=page, page_size=page_size)


@app.get("/trades/{trade_id}", response_model=Trade)
def get_trade(trade_id: str, user_id: str = Depends(current_user)):
    return engine.get_trade(trade_id, user_id)


@app.get("/trades/{trade_id}/history", response_model=TradeHistoryListResponse)
def get_trade_history(trade_id: str, user_id: str = Depends(current_user)):
    """Audit log for the whole negotiation chain of a trade."""
    return engine.get_history(trade_id, user_id)


@app.get("/trades/{trade_id}/balance", response_model=TradeBalance)
def get_trade_balance(trade_id: str, user_id: str = Depends(current_user)):
    return engine.compute_balance(trade_id, user_id)


@app.post("/trades/{trade_id}/respond", response_model=Trade)
def respond_to_trade(
    trade_id: str,
    body: TradeRespond,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
):
    """Accept, reject, counter or cancel, chosen by ``command.action``."""
    result = engine.respond_to_trade(trade_id, user_id, body.command)
    background_tasks.add_task(dispatch_events)
    return result


@app.post("/trades/{trade_id}/accept", response_model=Trade)
def accept_trade(
    trade_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[TradeAccept] = None,
    user_id: str = Depends(current_user),
):
    result = engine.accept_trade(trade_id, user_id, body)
    background_tasks.add_task(dispatch_events)
    return result


@app.post("/trades/{trade_id}/reject", response_model=Trade)
def reject_trade(
    trade_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[TradeReject] = None,
    user_id: str = Depends(current_user),
):
    result = engine.reject_trade(trade_id, user_id, body)
    background_tasks.add_task(dispatch_events)
    return result


@app.post("/trades/{trade_id}/counter", response_model=Trade, status_code=201)
def counter_trade(
    trade_id: str,
    body: TradeCounterOffer,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
):
    """Create a counter-offer; returns the new trade."""
    result = engine.counter_trade(trade_id, user_id, body)
    background_tasks.add_task(dispatch_events)
    return result


@app.post("/trades/{trade_id}/cancel", response_model=Trade)
def cancel_trade(
    trade_id: str,
    body: TradeCancel,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
):
    result = engine.cancel_trade(trade_id, user_id, body)
    background_tasks.add_task(dispatch_events)
    return result


# ============== Fulfilment Endpoints ==============

@app.post("/trades/{trade_id}/ship", response_model=Trade)
def ship_trade(
    trade_id: str,
    body: TradeShip,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
):
    result = engine.mark_shipped(trade_id, user_id, body)
    background_tasks.add_task(dispatch_events)
    return result


@app.post("/trades/{trade_id}/confirm", response_model=Trade)
def confirm_trade_receipt(
    trade_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[TradeConfirmReceipt] = None,
    user_id: str = Depends(current_user),
):
    result = engine.confirm_receipt(trade_id, user_id, body)
    background_tasks.add_task(dispatch_events)
    return result


@app.post("/trades/{trade_id}/dispute", response_model=Trade)
def raise_trade_dispute(
    trade_id: str,
    body: TradeDisputeCreate,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
):
    result = engine.raise_dispute(trade_id, user_id, body)
    background_tasks.add_task(dispatch_events)
    return result


@app.post("/trades/{trade_id}/resolve", response_model=Trade)
def resolve_trade_dispute(
    trade_id: str,
    body: TradeDisputeResolve,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
):
    """Moderators only."""
    result = engine.resolve_dispute(trade_id, user_id, body)
    background_tasks.add_task(dispatch_events)
    return result


# ============== Statistics Endpoints ==============

@app.get("/users/{user_id}/trades/summary", response_model=TradeSummary)
def get_trade_summary(user_id: str, viewer_id: str = Depends(current_user)):
    """Count a user's trades by outcome. Users see their own; moderators see anyone's."""
    return engine.summarize(user_id, viewer_id)


# ============== Admin Endpoints ==============

@app.get("/admin/trades", response_model=TradeListResponse)
def list_all_trades(
    user_id: str = Depends(current_user),
    status: Optional[TradeStatus] = Query(None),
    disputed_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    return engine.list_all_trades(
        user_id, status=status, disputed_only=disputed_only, page=page, page_size=page_size
    )


@app.post("/admin/trades/expire", response_model=TradeExpiryResponse)
def expire_overdue_trades(
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
    dry_run: bool = Query(False, description="Preview which trades would expire"),
):
    """
    Cancel trades past their response or shipping deadline and release their products.
    Normally run by a scheduler; moderators can trigger it manually.
    """
    if not engine.moderators.is_moderator(user_id):
        raise HTTPException(status_code=403, detail="Moderator access required")

    result = engine.expire_overdue_trades(dry_run=dry_run)
    if not dry_run:
        background_tasks.add_task(dispatch_events)
    return result


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
