"""
FastAPI application. HTTP surface of the quest ledger.

Public endpoints (no auth): health, tokens, quests, portfolios, snapshots,
leaderboards, participant registration.
Participant endpoints (API key): /me, join, buy, sell, submit portfolio.
Admin endpoints (admin key): tokens, create quest, lifecycle tick,
transaction log.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation

from fastapi import FastAPI

from questledger.api_errors import APIError, api_error_handler, translate_engine_error
from questledger.api_models import (
    RegisterRequest, RegisterResponse, EntryResponse, MeResponse,
    TokenResponse, CreateTokenRequest, UpdateTokenRequest,
    QuestSummary, QuestDetail, CreateQuestRequest, CreateQuestResponse,
    TradeRequest, HoldingResponse, SellResponse,
    SubmitPortfolioRequest, PortfolioResponse,
    SnapshotResponse, LeaderboardEntryResponse,
    TickResponse, TransactionResponse, HealthResponse,
)
from questledger.auth import AuthStore
from questledger.config import STATE_PATH, LOG_LEVEL, build_engine
from questledger.errors import LedgerError, StoreUnavailable
from questledger.middleware import ParticipantDep, AdminDep
from questledger.models import ZERO, reset_counters, utcnow
from questledger.persistence import save_snapshot, load_snapshot
from questledger.store import LedgerStore


logger = logging.getLogger(__name__)


def install_state(app: FastAPI, store: LedgerStore,
                  auth_store: AuthStore) -> None:
    """Attach a store and an engine reading `app.state.clock`."""
    app.state.store = store
    app.state.auth_store = auth_store
    app.state.clock = utcnow
    app.state.engine = build_engine(store, clock=lambda: app.state.clock())
    app.state.lock = asyncio.Lock()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if os.path.exists(STATE_PATH):
        store, auth_store = load_snapshot(STATE_PATH)
        logger.info("loaded state from %s (%d quests)", STATE_PATH,
                    len(store.quests))
    else:
        reset_counters()
        store, auth_store = LedgerStore(), AuthStore()
        logger.info("starting with empty state at %s", STATE_PATH)
    install_state(app, store, auth_store)
    yield


app = FastAPI(title="Quest Ledger API", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)


def _save():
    """Save state to disk. Called after every mutation."""
    try:
        save_snapshot(app.state.store, STATE_PATH,
                      auth_store=app.state.auth_store)
    except OSError as e:
        logger.error("saving state to %s failed: %s", STATE_PATH, e)
        raise translate_engine_error(
            StoreUnavailable(f"state could not be saved: {e}"))


# ---------------------------------------------------------------------------
# Parsing and rendering
# ---------------------------------------------------------------------------

def _decimal(value: str, field: str) -> Decimal:
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        raise APIError(400, "invalid_amount", f"Invalid {field}: {value}")
    if not parsed.is_finite():
        raise APIError(400, "invalid_amount", f"Invalid {field}: {value}")
    return parsed


def _datetime(value: str, field: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise APIError(400, "invalid_request",
                       f"Invalid {field}: {value} (ISO 8601 expected)")


def _iso(dt: datetime | None) -> str | None:
    return None if dt is None else dt.isoformat()


def _str(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _token(t) -> TokenResponse:
    return TokenResponse(token_id=t.id, symbol=t.symbol, name=t.name,
                         price=str(t.price))


def _summary_fields(q) -> dict:
    return dict(
        quest_id=q.id,
        name=q.name,
        status=q.status,
        entry_fee=str(q.entry_fee),
        prize_pool=str(q.prize_pool),
        start_time=q.start_time.isoformat(),
        end_time=q.end_time.isoformat(),
        duration_minutes=int(
            (q.end_time - q.start_time).total_seconds() // 60),
        participants=q.participant_count,
        max_participants=q.max_participants,
    )


def _holding(h) -> HoldingResponse:
    return HoldingResponse(
        token_id=h.token_id,
        quantity=str(h.quantity),
        total_cost=str(h.total_cost),
        average_cost=str(h.average_cost),
        entry_price=str(h.entry_price),
        current_value=str(h.current_value),
    )


def _entry(e) -> EntryResponse:
    return EntryResponse(
        quest_id=e.quest_id,
        participant_id=e.participant_id,
        joined_at=e.joined_at.isoformat(),
        entry_fee_paid=str(e.entry_fee_paid),
        fee_tx_id=e.fee_tx_id,
        final_rank=e.final_rank,
        prize_won=_str(e.prize_won),
    )


# ---------------------------------------------------------------------------
# Health + public data
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        quests=len(app.state.store.quests),
        tokens=len(app.state.store.tokens),
    )


@app.get("/v1/tokens")
async def list_tokens() -> list[TokenResponse]:
    return [_token(t) for t in app.state.store.tokens.values()]


@app.get("/v1/quests")
async def list_quests(status: str | None = None) -> list[QuestSummary]:
    """List quests: active ending soonest, then upcoming, then ended.

    Optional filter:
    - status: "upcoming", "active" or "ended"
    """
    try:
        quests = app.state.engine.list_quests(status)
    except LedgerError as e:
        raise translate_engine_error(e)
    return [QuestSummary(**_summary_fields(q)) for q in quests]


@app.get("/v1/quests/{quest_id}")
async def get_quest(quest_id: str) -> QuestDetail:
    try:
        q = app.state.engine.get_quest(quest_id)
    except LedgerError as e:
        raise translate_engine_error(e)
    return QuestDetail(
        **_summary_fields(q),
        description=q.description,
        token_ids=q.token_ids,
        treasury=q.treasury,
        creator=q.creator,
        created_at=q.created_at.isoformat(),
        started_at=_iso(q.started_at),
        settled_at=_iso(q.settled_at),
    )


@app.get("/v1/quests/{quest_id}/portfolio/{participant_id}")
async def get_portfolio(quest_id: str,
                        participant_id: str) -> PortfolioResponse:
    """A participant's holdings, revalued while the quest is active. Public."""
    async with app.state.lock:
        try:
            holdings = app.state.engine.get_portfolio(quest_id,
                                                      participant_id)
        except LedgerError as e:
            raise translate_engine_error(e)
    return PortfolioResponse(
        quest_id=quest_id,
        participant_id=participant_id,
        holdings=[_holding(h) for h in holdings],
    )


@app.get("/v1/quests/{quest_id}/snapshots")
async def get_snapshots(quest_id: str) -> list[SnapshotResponse]:
    try:
        snapshots = app.state.engine.get_snapshots(quest_id)
    except LedgerError as e:
        raise translate_engine_error(e)
    return [
        SnapshotResponse(
            token_id=s.token_id,
            symbol=s.symbol,
            price_at_start=_str(s.price_at_start),
            price_at_end=_str(s.price_at_end),
            start_status=s.start_status,
            end_status=s.end_status,
            price_change=str(s.price_change),
            price_change_percent=str(s.price_change_percent),
            snapshot_time=s.snapshot_time.isoformat(),
        )
        for s in snapshots
    ]


@app.get("/v1/quests/{quest_id}/leaderboard")
async def get_leaderboard(quest_id: str) -> list[LeaderboardEntryResponse]:
    """Final standings. Settles an ended quest the sweep has not reached."""
    async with app.state.lock:
        try:
            settled_before = app.state.store.get_settlement(quest_id)
            entries = app.state.engine.get_leaderboard(quest_id)
        except LedgerError as e:
            raise translate_engine_error(e)
        if settled_before is None:
            _save()
    return [
        LeaderboardEntryResponse(
            rank=e.rank,
            participant_id=e.participant_id,
            portfolio_value=str(e.portfolio_value),
            total_investment=str(e.total_investment),
            pnl=str(e.pnl),
            pnl_percent=str(e.pnl_percent),
            prize_won=str(e.prize_won),
            provisional=e.provisional,
            provisional_tokens=e.provisional_tokens,
        )
        for e in entries
    ]


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------

@app.post("/v1/participants/register")
async def register(req: RegisterRequest) -> RegisterResponse:
    """Register a wallet address and mint its API key."""
    wallet = req.wallet_address.strip()
    if not wallet or len(wallet) > 128:
        raise APIError(400, "invalid_wallet",
                       "Wallet address must be 1-128 characters")

    async with app.state.lock:
        try:
            participant, raw_key = app.state.auth_store.register(wallet)
        except ValueError as e:
            if str(e) == "participant_taken":
                raise APIError(409, "participant_taken",
                               f"Wallet '{wallet}' is already registered")
            raise
        _save()

    return RegisterResponse(api_key=raw_key,
                            participant_id=participant.participant_id)


@app.get("/v1/me")
async def get_me(participant: ParticipantDep) -> MeResponse:
    """The authenticated participant and every quest they joined."""
    entries = sorted(
        (e for e in app.state.store.entries.values()
         if e.participant_id == participant.participant_id),
        key=lambda e: e.seq,
    )
    return MeResponse(participant_id=participant.participant_id,
                      entries=[_entry(e) for e in entries])


@app.post("/v1/quests/{quest_id}/join")
async def join(quest_id: str, participant: ParticipantDep) -> EntryResponse:
    async with app.state.lock:
        try:
            entry = app.state.engine.join_quest(
                quest_id, participant.participant_id)
            _save()
        except LedgerError as e:
            raise translate_engine_error(e)
    return _entry(entry)


@app.post("/v1/quests/{quest_id}/buy")
async def buy(quest_id: str, req: TradeRequest,
              participant: ParticipantDep) -> HoldingResponse:
    """Buy tokens at the current oracle price."""
    quantity = _decimal(req.quantity, "quantity")
    if quantity <= ZERO:
        raise APIError(400, "invalid_quantity", "Quantity must be positive")

    async with app.state.lock:
        try:
            holding = app.state.engine.buy(
                quest_id, participant.participant_id, req.token_id, quantity)
            _save()
        except LedgerError as e:
            raise translate_engine_error(e)
    return _holding(holding)


@app.post("/v1/quests/{quest_id}/sell")
async def sell(quest_id: str, req: TradeRequest,
               participant: ParticipantDep) -> SellResponse:
    """Sell tokens. Quantities above the holding are clamped to it."""
    quantity = _decimal(req.quantity, "quantity")
    if quantity <= ZERO:
        raise APIError(400, "invalid_quantity", "Quantity must be positive")

    async with app.state.lock:
        try:
            result = app.state.engine.sell(
                quest_id, participant.participant_id, req.token_id, quantity)
            _save()
        except LedgerError as e:
            raise translate_engine_error(e)
    return SellResponse(
        token_id=result.token_id,
        requested=str(result.requested),
        sold=str(result.sold),
        clamped=result.clamped,
        realized_cost=str(result.realized_cost),
        proceeds=str(result.proceeds),
        holding=None if result.removed else _holding(result.holding),
    )


@app.post("/v1/quests/{quest_id}/portfolio")
async def submit_portfolio(quest_id: str, req: SubmitPortfolioRequest,
                           participant: ParticipantDep) -> PortfolioResponse:
    """Buy several tokens in one all-or-nothing call."""
    if not req.selections:
        raise APIError(400, "invalid_request", "No selections given")
    selections = [(s.token_id, _decimal(s.quantity, "quantity"))
                  for s in req.selections]

    async with app.state.lock:
        try:
            app.state.engine.submit_portfolio(
                quest_id, participant.participant_id, selections)
            holdings = app.state.engine.get_portfolio(
                quest_id, participant.participant_id)
            _save()
        except LedgerError as e:
            raise translate_engine_error(e)
    return PortfolioResponse(
        quest_id=quest_id,
        participant_id=participant.participant_id,
        holdings=[_holding(h) for h in holdings],
    )


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/admin/tokens")
async def admin_create_token(req: CreateTokenRequest,
                             _: AdminDep) -> TokenResponse:
    """Add a token to the registry, or replace it."""
    price = _decimal(req.price, "price")
    async with app.state.lock:
        try:
            token = app.state.engine.register_token(
                req.token_id, req.symbol, req.name, price)
            _save()
        except LedgerError as e:
            raise translate_engine_error(e)
    return _token(token)


@app.patch("/v1/admin/tokens/{token_id}")
async def admin_update_token(token_id: str, req: UpdateTokenRequest,
                             _: AdminDep) -> TokenResponse:
    """Set the registry price of a token (the mock market feed)."""
    price = _decimal(req.price, "price")
    async with app.state.lock:
        try:
            token = app.state.engine.update_token_price(token_id, price)
            _save()
        except LedgerError as e:
            raise translate_engine_error(e)
    return _token(token)


@app.post("/v1/admin/quests")
async def admin_create_quest(req: CreateQuestRequest,
                             _: AdminDep) -> CreateQuestResponse:
    entry_fee = _decimal(req.entry_fee, "entry_fee")
    prize_pool = _decimal(req.prize_pool, "prize_pool")
    start_time = _datetime(req.start_time, "start_time")
    end_time = _datetime(req.end_time, "end_time")

    async with app.state.lock:
        try:
            quest = app.state.engine.create_quest(
                name=req.name,
                entry_fee=entry_fee,
                prize_pool=prize_pool,
                start_time=start_time,
                end_time=end_time,
                token_ids=req.token_ids,
                description=req.description,
                max_participants=req.max_participants,
                treasury=req.treasury,
                creator=req.creator,
            )
            _save()
        except LedgerError as e:
            raise translate_engine_error(e)
    return CreateQuestResponse(quest_id=quest.id, status=quest.status,
                               token_ids=quest.token_ids)


@app.post("/v1/admin/lifecycle/tick")
async def admin_tick(_: AdminDep) -> TickResponse:
    """Run one lifecycle sweep. Safe to call from any scheduler."""
    async with app.state.lock:
        try:
            report = app.state.engine.tick_lifecycle()
        except LedgerError as e:
            raise translate_engine_error(e)
        _save()
    return TickResponse(**report)


@app.get("/v1/admin/transactions")
async def admin_transactions(
    _: AdminDep,
    quest_id: str | None = None,
    participant_id: str | None = None,
) -> list[TransactionResponse]:
    """The ledger transaction log, optionally filtered."""
    return [
        TransactionResponse(
            tx_id=tx.id,
            participant_id=tx.participant_id,
            quest_id=tx.quest_id,
            type=tx.type,
            amount=str(tx.amount),
            status=tx.status,
            token_id=tx.token_id,
            quantity=_str(tx.quantity),
            external_tx_id=tx.external_tx_id,
            error=tx.error,
            created_at=tx.created_at.isoformat(),
        )
        for tx in app.state.engine.transactions_for(quest_id, participant_id)
    ]
