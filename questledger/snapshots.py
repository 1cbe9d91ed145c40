"""
Price snapshots. Start and end reference prices for every token a quest
trades, used to value holdings at settlement.

Two price models:
- simulated (mock market): start = base price with ±1% jitter, end = a
  volatility-bounded random walk over the quest's duration
- market: start and end are plain oracle reads at the two instants

Random walk, per token:
    delta = (U(0,1) - 0.45) * volatility * elapsed_hours
    10% of the time delta is doubled (tail move)
    end = max(start * (1 + delta), start * 0.5)

The slight 0.45 centre gives a mild upward drift. The 50% floor keeps
prices away from zero.

Replayability: every draw comes from a random.Random seeded with
"{seed}:{quest_id}:{token_id}:{phase}". Same seed, same inputs, same
prices, whatever order the sweep visits quests or tokens in.
"""

import logging
import random
from datetime import datetime
from decimal import Decimal
from typing import Optional

from questledger.errors import OracleUnavailable, TokenNotFound
from questledger.models import (
    PriceSnapshot, Token, ZERO,
    CAPTURED, CACHED, UNAVAILABLE,
)


logger = logging.getLogger(__name__)

# Max fractional move per hour. Large caps move less than the long tail.
VOLATILITY: dict[str, Decimal] = {
    "BTC": Decimal("0.02"),
    "ETH": Decimal("0.03"),
    "APT": Decimal("0.05"),
    "SOL": Decimal("0.04"),
}
DEFAULT_VOLATILITY = Decimal("0.06")

START_JITTER = Decimal("0.02")       # total width, i.e. ±1%
DRIFT_CENTRE = Decimal("0.45")
TAIL_PROBABILITY = 0.1
PRICE_FLOOR = Decimal("0.5")

DEFAULT_SEED = "quest-ledger"


def _uniform(rng: random.Random) -> Decimal:
    return Decimal(str(rng.random()))


# ---------------------------------------------------------------------------
# Pure price model
# ---------------------------------------------------------------------------

def volatility_for(symbol: str) -> Decimal:
    return VOLATILITY.get(symbol.upper(), DEFAULT_VOLATILITY)


def jittered_price(base_price: Decimal, rng: random.Random) -> Decimal:
    """Base price moved by a symmetric ±1% factor."""
    variation = (_uniform(rng) - Decimal("0.5")) * START_JITTER
    return base_price * (1 + variation)


def price_change(symbol: str, elapsed_hours: Decimal,
                 rng: random.Random) -> Decimal:
    """Fractional change over the window. Two draws: move, then tail."""
    change = (_uniform(rng) - DRIFT_CENTRE) * volatility_for(symbol) \
        * elapsed_hours
    if rng.random() < TAIL_PROBABILITY:
        change *= 2
    return change


def simulated_price(symbol: str, start_price: Decimal,
                    elapsed_hours: Decimal, rng: random.Random) -> Decimal:
    moved = start_price * (1 + price_change(symbol, elapsed_hours, rng))
    return max(moved, start_price * PRICE_FLOOR)


def start_prices(tokens: list[Token], base_prices: dict[str, Decimal],
                 rng: random.Random) -> dict[str, Decimal]:
    """
    Start prices for a batch. Tokens without a base price are left out;
    callers record them as unavailable.
    """
    prices = {}
    for token in tokens:
        base = base_prices.get(token.id)
        if base is None:
            continue
        prices[token.id] = jittered_price(base, rng)
    return prices


def end_prices(tokens: list[Token], start: dict[str, Decimal],
               elapsed_hours: Decimal,
               rng: random.Random) -> dict[str, Decimal]:
    """End prices for a batch. Falls back to the token's own price."""
    prices = {}
    for token in tokens:
        base = start.get(token.id) or token.price
        if not base:
            continue
        prices[token.id] = simulated_price(
            token.symbol, base, elapsed_hours, rng)
    return prices


# ---------------------------------------------------------------------------
# Snapshot service
# ---------------------------------------------------------------------------

class PriceSnapshotService:
    """
    Captures and stores snapshots. Both captures are create-if-absent, so
    a repeated or concurrent sweep never overwrites a recorded price.
    """

    def __init__(self, store, oracle, seed: str = DEFAULT_SEED,
                 simulate: bool = True):
        self.store = store
        self.oracle = oracle
        self.seed = seed
        self.simulate = simulate

    def seed_label(self, quest_id: str, token_id: str, phase: str) -> str:
        return f"{self.seed}:{quest_id}:{token_id}:{phase}"

    def _rng(self, quest_id: str, token_id: str,
             phase: str) -> random.Random:
        return random.Random(self.seed_label(quest_id, token_id, phase))

    def _symbol(self, token_id: str) -> str:
        token = self.store.get_token(token_id)
        return token.symbol if token else token_id.upper()

    def resolve_price(self, token_id: str) -> tuple[Optional[Decimal], str]:
        """
        Live oracle price, else the last cached registry price, else
        nothing. Returns (price, status).
        """
        try:
            return self.oracle.price(token_id), CAPTURED
        except (OracleUnavailable, TokenNotFound) as e:
            token = self.store.get_token(token_id)
            if token is not None and token.price > ZERO:
                logger.warning("oracle failed for %s (%s), using cached "
                               "price %s", token_id, e.reason, token.price)
                return token.price, CACHED
            logger.warning("no price for %s: %s", token_id, e.reason)
            return None, UNAVAILABLE

    def capture_start(self, quest, now: datetime) -> list[PriceSnapshot]:
        """Start snapshot for every token in the quest's universe."""
        created = []
        for token_id in quest.token_ids:
            if self.store.get_snapshot(quest.id, token_id) is not None:
                continue
            base, status = self.resolve_price(token_id)
            price = base
            if base is not None and self.simulate:
                price = jittered_price(
                    base, self._rng(quest.id, token_id, "start"))
            snap = PriceSnapshot(
                quest_id=quest.id,
                token_id=token_id,
                symbol=self._symbol(token_id),
                price_at_start=price,
                start_status=status,
                snapshot_time=now,
                seed=self.seed if self.simulate else None,
            )
            if self.store.put_snapshot_if_absent(snap):
                created.append(snap)
        if created:
            logger.info("quest %s: start snapshot for %d tokens",
                        quest.id, len(created))
        return created

    def capture_end(self, quest, now: datetime) -> list[PriceSnapshot]:
        """Fill end prices. Snapshots that already have one are left alone."""
        completed = []
        for token_id in quest.token_ids:
            snap = self.store.get_snapshot(quest.id, token_id)
            if snap is None or snap.has_end:
                continue
            if self.simulate:
                price, status = self._simulated_end(quest, snap)
            else:
                price, status = self.resolve_price(token_id)
            snap.price_at_end = price
            snap.end_status = status
            snap.updated_at = now
            completed.append(snap)
        if completed:
            logger.info("quest %s: end snapshot for %d tokens",
                        quest.id, len(completed))
        return completed

    def _simulated_end(self, quest,
                       snap: PriceSnapshot) -> tuple[Optional[Decimal], str]:
        start = snap.price_at_start
        status = CAPTURED
        if start is None:
            token = self.store.get_token(snap.token_id)
            if token is None or token.price <= ZERO:
                return None, UNAVAILABLE
            start, status = token.price, CACHED
        rng = self._rng(quest.id, snap.token_id, "end")
        return simulated_price(
            snap.symbol, start, quest.duration_hours, rng), status

    def snapshots_for(self, quest) -> list[PriceSnapshot]:
        """A quest's snapshots in universe order."""
        order = {tid: i for i, tid in enumerate(quest.token_ids)}
        return sorted(
            self.store.snapshots_for(quest.id),
            key=lambda s: (order.get(s.token_id, len(order)), s.token_id),
        )
