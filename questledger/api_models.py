"""
Pydantic request/response models for the API.
All monetary values, prices and quantities are strings to avoid IEEE 754
issues. Timestamps are ISO 8601 strings.
"""

from pydantic import BaseModel


# --- Participants ---

class RegisterRequest(BaseModel):
    wallet_address: str

class RegisterResponse(BaseModel):
    api_key: str
    participant_id: str

class EntryResponse(BaseModel):
    quest_id: str
    participant_id: str
    joined_at: str
    entry_fee_paid: str
    fee_tx_id: str | None
    final_rank: int | None
    prize_won: str | None

class MeResponse(BaseModel):
    participant_id: str
    entries: list[EntryResponse]


# --- Tokens ---

class TokenResponse(BaseModel):
    token_id: str
    symbol: str
    name: str
    price: str

class CreateTokenRequest(BaseModel):
    token_id: str
    symbol: str
    name: str
    price: str

class UpdateTokenRequest(BaseModel):
    price: str


# --- Quests ---

class QuestSummary(BaseModel):
    quest_id: str
    name: str
    status: str
    entry_fee: str
    prize_pool: str
    start_time: str
    end_time: str
    duration_minutes: int
    participants: int
    max_participants: int | None

class QuestDetail(QuestSummary):
    description: str
    token_ids: list[str]
    treasury: str
    creator: str
    created_at: str
    started_at: str | None
    settled_at: str | None

class CreateQuestRequest(BaseModel):
    name: str
    entry_fee: str = "0"
    prize_pool: str = "0"
    start_time: str
    end_time: str
    token_ids: list[str] | None = None
    description: str = ""
    max_participants: int | None = None
    treasury: str = ""
    creator: str = ""

class CreateQuestResponse(BaseModel):
    quest_id: str
    status: str
    token_ids: list[str]


# --- Trading ---

class TradeRequest(BaseModel):
    token_id: str
    quantity: str

class HoldingResponse(BaseModel):
    token_id: str
    quantity: str
    total_cost: str
    average_cost: str
    entry_price: str
    current_value: str

class SellResponse(BaseModel):
    token_id: str
    requested: str
    sold: str
    clamped: bool
    realized_cost: str
    proceeds: str
    holding: HoldingResponse | None

class PortfolioSelection(BaseModel):
    token_id: str
    quantity: str

class SubmitPortfolioRequest(BaseModel):
    selections: list[PortfolioSelection]

class PortfolioResponse(BaseModel):
    quest_id: str
    participant_id: str
    holdings: list[HoldingResponse]


# --- Valuation ---

class SnapshotResponse(BaseModel):
    token_id: str
    symbol: str
    price_at_start: str | None
    price_at_end: str | None
    start_status: str
    end_status: str | None
    price_change: str
    price_change_percent: str
    snapshot_time: str

class LeaderboardEntryResponse(BaseModel):
    rank: int
    participant_id: str
    portfolio_value: str
    total_investment: str
    pnl: str
    pnl_percent: str
    prize_won: str
    provisional: bool
    provisional_tokens: list[str]


# --- Admin ---

class TickResponse(BaseModel):
    started: list[str]
    settled: list[str]

class TransactionResponse(BaseModel):
    tx_id: int
    participant_id: str
    quest_id: str
    type: str
    amount: str
    status: str
    token_id: str | None
    quantity: str | None
    external_tx_id: str | None
    error: str | None
    created_at: str

class HealthResponse(BaseModel):
    status: str
    quests: int
    tokens: int
