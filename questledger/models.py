"""
Data models for the quest trading ledger.

Three domains:
- Quest side: quests, entries (who joined), tokens (what can be traded)
- Ledger side: holdings and the append-only transaction log
- Valuation side: price snapshots and settlements (leaderboards)

A quest's status is derived from its start/end timestamps. The `status`
field stored on a Quest is a cache, refreshed by the lifecycle sweep and
never consulted at a decision point.

All monetary amounts, prices and quantities use Decimal. Two precisions:
- Money precision (6 dp) for costs, values, prizes
- Percent precision (4 dp) for PnL percentages
Holdings are kept at full precision; only derived views are quantized.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Optional
from uuid import uuid4


ZERO = Decimal("0")
HUNDRED = Decimal("100")

MONEY_PRECISION = 6
PERCENT_PRECISION = 4

UPCOMING = "upcoming"
ACTIVE = "active"
ENDED = "ended"
STATUSES = (UPCOMING, ACTIVE, ENDED)

# Snapshot capture outcomes
CAPTURED = "captured"
CACHED = "cached"
UNAVAILABLE = "unavailable"

# Ledger transaction types
QUEST_ENTRY = "quest_entry"
TRADE_BUY = "trade_buy"
TRADE_SELL = "trade_sell"
PRIZE_PAYOUT = "prize_payout"

COMPLETED = "completed"
FAILED = "failed"


def quantize_money(amount: Decimal, rounding=None) -> Decimal:
    """Quantize a money amount to MONEY_PRECISION."""
    quantum = Decimal(10) ** -MONEY_PRECISION
    if rounding is None:
        return amount.quantize(quantum)
    return amount.quantize(quantum, rounding=rounding)


def floor_money(amount: Decimal) -> Decimal:
    return quantize_money(amount, rounding=ROUND_FLOOR)


def quantize_percent(pct: Decimal) -> Decimal:
    return pct.quantize(Decimal(10) ** -PERCENT_PRECISION)


# ---------------------------------------------------------------------------
# Sequential IDs
# ---------------------------------------------------------------------------

_counters: dict[str, int] = defaultdict(int)


def next_id(kind: str) -> int:
    """Sequential ID. Kinds: tx, entry."""
    _counters[kind] += 1
    return _counters[kind]


def reset_counters() -> None:
    """Reset all counters. For testing."""
    _counters.clear()


def set_counter(kind: str, value: int) -> None:
    """Set a counter. For loading persisted state."""
    _counters[kind] = value


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Quest side
# ---------------------------------------------------------------------------

@dataclass
class Token:
    """
    A tradable token. `price` is the last known reference price; it feeds
    the mock-market oracle and is the cached fallback when a live oracle
    read fails during snapshotting.
    """
    id: str
    symbol: str
    name: str
    price: Decimal
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Quest:
    """
    A time-boxed trading competition.

    token_ids: the eligible universe, in the order snapshots are taken.
    treasury: address that receives entry fees and pays out prizes.
    status: cached derived state. Use lifecycle.quest_status() instead.
    """
    id: str
    name: str
    entry_fee: Decimal
    prize_pool: Decimal
    start_time: datetime
    end_time: datetime
    token_ids: list[str] = field(default_factory=list)
    description: str = ""
    max_participants: Optional[int] = None
    participant_count: int = 0
    treasury: str = ""
    creator: str = ""
    status: str = UPCOMING
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None     # start snapshot taken
    settled_at: Optional[datetime] = None     # settlement written

    @staticmethod
    def new(name: str, entry_fee: Decimal, prize_pool: Decimal,
            start_time: datetime, end_time: datetime,
            token_ids: list[str], description: str = "",
            max_participants: Optional[int] = None,
            treasury: str = "", creator: str = "") -> "Quest":
        return Quest(
            id=str(uuid4()),
            name=name,
            entry_fee=entry_fee,
            prize_pool=prize_pool,
            start_time=start_time,
            end_time=end_time,
            token_ids=list(token_ids),
            description=description,
            max_participants=max_participants,
            treasury=treasury,
            creator=creator,
        )

    @property
    def duration_hours(self) -> Decimal:
        seconds = (self.end_time - self.start_time).total_seconds()
        return Decimal(str(seconds)) / Decimal("3600")

    @property
    def is_full(self) -> bool:
        return (self.max_participants is not None
                and self.participant_count >= self.max_participants)


@dataclass
class QuestEntry:
    """
    A participant's registration in a quest.

    seq: global join sequence. Deterministic join order for ranking
    tie-breaks, independent of clock resolution.
    """
    quest_id: str
    participant_id: str
    seq: int
    joined_at: datetime = field(default_factory=utcnow)
    entry_fee_paid: Decimal = ZERO
    fee_tx_id: Optional[str] = None
    final_rank: Optional[int] = None
    prize_won: Optional[Decimal] = None

    @staticmethod
    def new(quest_id: str, participant_id: str, entry_fee_paid: Decimal,
            joined_at: datetime, fee_tx_id: Optional[str] = None
            ) -> "QuestEntry":
        return QuestEntry(
            quest_id=quest_id,
            participant_id=participant_id,
            seq=next_id("entry"),
            joined_at=joined_at,
            entry_fee_paid=entry_fee_paid,
            fee_tx_id=fee_tx_id,
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.quest_id, self.participant_id)


# ---------------------------------------------------------------------------
# Ledger side
# ---------------------------------------------------------------------------

@dataclass
class Holding:
    """
    One participant's position in one token within one quest.

    Invariants:
      quantity > 0 while the row exists (zero rows are deleted)
      average_cost == total_cost / quantity
    A partial sell removes cost at the existing average, so market moves
    never leak into the cost basis.
    """
    quest_id: str
    participant_id: str
    token_id: str
    quantity: Decimal
    total_cost: Decimal
    entry_price: Decimal
    current_value: Decimal
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.quest_id, self.participant_id, self.token_id)

    @property
    def average_cost(self) -> Decimal:
        return self.total_cost / self.quantity


@dataclass
class SellResult:
    """
    Outcome of a sell. `holding` is None when the position was closed.
    `clamped` is True when the request exceeded the held quantity and was
    reduced to it.
    """
    holding: Optional[Holding]
    token_id: str
    requested: Decimal
    sold: Decimal
    realized_cost: Decimal
    proceeds: Decimal
    clamped: bool

    @property
    def removed(self) -> bool:
        return self.holding is None


@dataclass
class LedgerTransaction:
    """
    Append-only ledger entry. Every entry fee, trade and prize payout
    gets one of these.

    external_tx_id: transaction id returned by the signer, if any.
    """
    id: int
    participant_id: str
    quest_id: str
    type: str          # quest_entry, trade_buy, trade_sell, prize_payout
    amount: Decimal
    status: str = COMPLETED
    token_id: Optional[str] = None
    quantity: Optional[Decimal] = None
    external_tx_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def new(participant_id: str, quest_id: str, type: str,
            amount: Decimal, status: str = COMPLETED,
            token_id: Optional[str] = None,
            quantity: Optional[Decimal] = None,
            external_tx_id: Optional[str] = None,
            error: Optional[str] = None,
            created_at: Optional[datetime] = None) -> "LedgerTransaction":
        return LedgerTransaction(
            id=next_id("tx"),
            participant_id=participant_id,
            quest_id=quest_id,
            type=type,
            amount=amount,
            status=status,
            token_id=token_id,
            quantity=quantity,
            external_tx_id=external_tx_id,
            error=error,
            created_at=created_at or utcnow(),
        )


# ---------------------------------------------------------------------------
# Valuation side
# ---------------------------------------------------------------------------

@dataclass
class PriceSnapshot:
    """
    Reference prices for one token in one quest.

    Written once at the start transition, completed once at the end
    transition, immutable afterwards. A None price means the token had no
    resolvable price at that instant (status "unavailable").
    """
    quest_id: str
    token_id: str
    symbol: str
    price_at_start: Optional[Decimal]
    start_status: str
    snapshot_time: datetime
    seed: Optional[str] = None
    price_at_end: Optional[Decimal] = None
    end_status: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.quest_id, self.token_id)

    @property
    def has_end(self) -> bool:
        return self.end_status is not None

    @property
    def price_change(self) -> Decimal:
        if self.price_at_start is None or self.price_at_end is None:
            return ZERO
        return self.price_at_end - self.price_at_start

    @property
    def price_change_percent(self) -> Decimal:
        if not self.price_at_start or self.price_at_end is None:
            return ZERO
        return self.price_change / self.price_at_start * HUNDRED


@dataclass
class LeaderboardEntry:
    rank: int
    participant_id: str
    portfolio_value: Decimal
    total_investment: Decimal
    pnl: Decimal
    pnl_percent: Decimal
    prize_won: Decimal = ZERO
    provisional: bool = False
    provisional_tokens: list[str] = field(default_factory=list)


@dataclass
class Settlement:
    """The immutable result of settling a quest. Written exactly once."""
    quest_id: str
    settled_at: datetime
    prize_pool: Decimal
    prize_policy: str
    entries: list[LeaderboardEntry] = field(default_factory=list)

    @property
    def provisional(self) -> bool:
        return any(e.provisional for e in self.entries)
