"""
Settlement and ranking. Pure PnL math plus the engine that writes the
one-and-only settlement record of a quest.

Valuation follows the token's price trajectory, not order-book
liquidity:

    start_value  = total_cost                      (what was invested)
    pnl_pct      = (price_at_end - price_at_start) / price_at_start * 100
    end_value    = start_value * (1 + pnl_pct / 100)

Per participant: total_investment = sum(start_value),
total_value = sum(end_value), pnl = total_value - total_investment,
pnl_percent = pnl / total_investment * 100, or 0 with nothing invested.

Ranking (dense, from 1):
  1. participants who invested, by pnl_percent descending
  2. participants who never traded
  ties: join order, then participant id

A missing end price values the holding at its start price (pnl 0) and
marks the entry provisional. Settlement never blocks on one token.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from questledger.lifecycle import require_ended
from questledger.models import (
    LeaderboardEntry, Settlement, LedgerTransaction,
    ZERO, HUNDRED, quantize_money, quantize_percent, floor_money,
    PRIZE_PAYOUT, COMPLETED, FAILED,
)


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# PnL math
# ---------------------------------------------------------------------------

@dataclass
class ValuedHolding:
    token_id: str
    investment: Decimal
    price_at_start: Decimal
    price_at_end: Decimal
    provisional: bool = False


@dataclass
class ParticipantPnL:
    participant_id: str
    seq: int
    holdings: list[ValuedHolding] = field(default_factory=list)
    total_investment: Decimal = ZERO
    total_value: Decimal = ZERO
    total_pnl: Decimal = ZERO
    total_pnl_percent: Decimal = ZERO

    @property
    def invested(self) -> bool:
        return self.total_investment > ZERO

    @property
    def provisional_tokens(self) -> list[str]:
        return [h.token_id for h in self.holdings if h.provisional]


def token_pnl(investment: Decimal, price_at_start: Decimal,
              price_at_end: Decimal) -> tuple[Decimal, Decimal, Decimal]:
    """Returns (end_value, pnl, pnl_percent) for one holding."""
    if price_at_start <= ZERO:
        return investment, ZERO, ZERO
    pnl_percent = (price_at_end - price_at_start) / price_at_start * HUNDRED
    end_value = investment * (1 + pnl_percent / HUNDRED)
    return end_value, end_value - investment, pnl_percent


def portfolio_pnl(p: ParticipantPnL) -> ParticipantPnL:
    """Fill in the totals of a participant from its valued holdings."""
    total_investment = ZERO
    total_value = ZERO
    for h in p.holdings:
        end_value, _, _ = token_pnl(
            h.investment, h.price_at_start, h.price_at_end)
        total_investment += h.investment
        total_value += end_value
    p.total_investment = total_investment
    p.total_value = total_value
    p.total_pnl = total_value - total_investment
    if total_investment > ZERO:
        p.total_pnl_percent = p.total_pnl / total_investment * HUNDRED
    else:
        p.total_pnl_percent = ZERO
    return p


def rank_participants(participants: list[ParticipantPnL]
                      ) -> list[ParticipantPnL]:
    """
    Deterministic order. Percentages are compared at display precision
    so that equal-looking returns tie instead of splitting on dust.
    """
    return sorted(
        participants,
        key=lambda p: (
            0 if p.invested else 1,
            -quantize_percent(p.total_pnl_percent),
            p.seq,
            p.participant_id,
        ),
    )


# ---------------------------------------------------------------------------
# Prize policies: (ranked entries, prize_pool) -> {participant_id: amount}
# ---------------------------------------------------------------------------

PrizePolicy = Callable[[list[LeaderboardEntry], Decimal], dict[str, Decimal]]


def _eligible(entries: list[LeaderboardEntry]) -> list[LeaderboardEntry]:
    return [e for e in entries if e.total_investment > ZERO]


def winner_takes_all(entries: list[LeaderboardEntry],
                     prize_pool: Decimal) -> dict[str, Decimal]:
    eligible = _eligible(entries)
    if not eligible or prize_pool <= ZERO:
        return {}
    return {eligible[0].participant_id: floor_money(prize_pool)}


def top_heavy(weights: tuple = (Decimal("0.5"), Decimal("0.3"),
                                Decimal("0.2"))) -> PrizePolicy:
    """
    Split the pool over the top len(weights) ranks. With fewer eligible
    participants the used weights are renormalized, so the pool is still
    paid out. Amounts are rounded down; dust stays in the pool.
    """
    weights = tuple(Decimal(str(w)) for w in weights)

    def policy(entries: list[LeaderboardEntry],
               prize_pool: Decimal) -> dict[str, Decimal]:
        winners = _eligible(entries)[:len(weights)]
        if not winners or prize_pool <= ZERO:
            return {}
        used = weights[:len(winners)]
        total_weight = sum(used, ZERO)
        return {
            e.participant_id: floor_money(prize_pool * w / total_weight)
            for e, w in zip(winners, used)
        }

    policy.__name__ = "top_heavy"
    return policy


PRIZE_POLICIES: dict[str, Callable[[], PrizePolicy]] = {
    "winner_takes_all": lambda: winner_takes_all,
    "top_heavy": top_heavy,
}


# ---------------------------------------------------------------------------
# Settlement engine
# ---------------------------------------------------------------------------

class SettlementEngine:

    def __init__(self, store, prize_policy: Optional[PrizePolicy] = None,
                 signer=None):
        self.store = store
        self.prize_policy = prize_policy or top_heavy()
        self.signer = signer

    def value_participants(self, quest) -> list[ParticipantPnL]:
        """PnL for every entry of the quest, in join order."""
        result = []
        for entry in self.store.entries_for(quest.id):
            p = ParticipantPnL(participant_id=entry.participant_id,
                               seq=entry.seq)
            for h in self.store.holdings_for(quest.id, entry.participant_id):
                p.holdings.append(self._value_holding(quest.id, h))
            result.append(portfolio_pnl(p))
        return result

    def _value_holding(self, quest_id: str, holding) -> ValuedHolding:
        snap = self.store.get_snapshot(quest_id, holding.token_id)
        start = snap.price_at_start if snap is not None else None
        end = snap.price_at_end if snap is not None else None
        if start is None:
            start = holding.entry_price
        provisional = end is None
        if provisional:
            end = start
        return ValuedHolding(
            token_id=holding.token_id,
            investment=holding.total_cost,
            price_at_start=start,
            price_at_end=end,
            provisional=provisional,
        )

    def settle(self, quest, now: datetime) -> list[LeaderboardEntry]:
        """
        Settle an ended quest. Settle-if-unsettled: a second call returns
        the stored leaderboard and pays nothing.
        Raises QuestNotEnded.
        """
        require_ended(quest, now)
        with self.store.locked("settlement", quest.id):
            existing = self.store.get_settlement(quest.id)
            if existing is not None:
                return existing.entries

            ranked = rank_participants(self.value_participants(quest))
            entries = [
                LeaderboardEntry(
                    rank=i + 1,
                    participant_id=p.participant_id,
                    portfolio_value=quantize_money(p.total_value),
                    total_investment=quantize_money(p.total_investment),
                    pnl=quantize_money(p.total_pnl),
                    pnl_percent=quantize_percent(p.total_pnl_percent),
                    provisional=bool(p.provisional_tokens),
                    provisional_tokens=p.provisional_tokens,
                )
                for i, p in enumerate(ranked)
            ]
            prizes = self.prize_policy(entries, quest.prize_pool)
            for e in entries:
                e.prize_won = prizes.get(e.participant_id, ZERO)

            settlement = Settlement(
                quest_id=quest.id,
                settled_at=now,
                prize_pool=quest.prize_pool,
                prize_policy=getattr(self.prize_policy, "__name__",
                                     "custom"),
                entries=entries,
            )
            self.store.put_settlement_if_absent(settlement)
            for e in entries:
                record = self.store.get_entry(quest.id, e.participant_id)
                record.final_rank = e.rank
                record.prize_won = e.prize_won
            self._pay_prizes(quest, entries, now)
            quest.settled_at = now

        if settlement.provisional:
            logger.warning("quest %s settled with provisional valuations",
                           quest.id)
        logger.info("quest %s settled: %d participants", quest.id,
                    len(entries))
        return entries

    def _pay_prizes(self, quest, entries: list[LeaderboardEntry],
                    now: datetime) -> None:
        """
        Request each payout once. A rejected payout is recorded as a
        failed transaction for an operator to resolve; it is not retried.
        """
        for e in entries:
            if e.prize_won <= ZERO:
                continue
            status, tx_id, error = COMPLETED, None, None
            if self.signer is not None:
                result = self.signer.transfer(
                    e.prize_won, quest.treasury, e.participant_id)
                tx_id, error = result.tx_id, result.error
                if not result.success:
                    status = FAILED
                    logger.warning("quest %s: prize payout to %s failed: %s",
                                   quest.id, e.participant_id, error)
            self.store.append_transaction(LedgerTransaction.new(
                participant_id=e.participant_id,
                quest_id=quest.id,
                type=PRIZE_PAYOUT,
                amount=e.prize_won,
                status=status,
                external_tx_id=tx_id,
                error=error,
                created_at=now,
            ))
