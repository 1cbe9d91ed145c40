"""
Quest engine. The inbound surface of the system: quests, joins, trading,
portfolios, leaderboards and the lifecycle sweep.

The engine owns no ledger math. It checks the quest phase at every
decision point (re-reading start/end from the store, never the cached
status) and delegates:
  - holdings      -> PortfolioLedger
  - price capture -> PriceSnapshotService
  - ranking       -> SettlementEngine

Lifecycle sweep (tick_lifecycle), per quest:
  now >= start: start snapshot (create-if-absent)
  now >= end:   end snapshot (fill-if-empty), then settle-if-unsettled
Safe to run on any interval, twice at the same instant, or from several
schedulers at once. A double fire changes nothing.

All times are timezone-aware datetimes. `clock` is injectable so tests
and replays control "now".
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from questledger.errors import (
    ValidationError, QuestNotFound, AlreadyJoined, QuestFull,
    TransferRejected, TokenNotFound,
)
from questledger.lifecycle import (
    validate_window, quest_status, listing_key,
    require_registration_open, require_trading_open,
)
from questledger.models import (
    Quest, QuestEntry, Token, LedgerTransaction, ZERO, utcnow,
    ACTIVE, ENDED, QUEST_ENTRY, STATUSES,
)
from questledger.portfolio import PortfolioLedger
from questledger.settlement import SettlementEngine
from questledger.snapshots import PriceSnapshotService


logger = logging.getLogger(__name__)


class QuestEngine:

    def __init__(self, store, oracle, signer=None,
                 snapshots: Optional[PriceSnapshotService] = None,
                 prize_policy=None, fund_trades: bool = False,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.oracle = oracle
        self.signer = signer
        self.clock = clock
        self.snapshots = snapshots or PriceSnapshotService(store, oracle)
        self.ledger = PortfolioLedger(store, oracle, signer=signer,
                                      fund_trades=fund_trades)
        self.settlement = SettlementEngine(store, prize_policy=prize_policy,
                                           signer=signer)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def register_token(self, token_id: str, symbol: str, name: str,
                       price: Decimal) -> Token:
        if price <= ZERO:
            raise ValidationError("token price must be positive",
                                  kind="invalid_amount")
        token = Token(id=token_id, symbol=symbol.upper(), name=name,
                      price=price, updated_at=self.clock())
        self.store.put_token(token)
        return token

    def update_token_price(self, token_id: str, price: Decimal) -> Token:
        if price <= ZERO:
            raise ValidationError("token price must be positive",
                                  kind="invalid_amount")
        token = self.store.get_token(token_id)
        if token is None:
            raise TokenNotFound(f"token {token_id} not found")
        token.price = price
        token.updated_at = self.clock()
        return token

    # ------------------------------------------------------------------
    # Quests
    # ------------------------------------------------------------------

    def create_quest(self, name: str, entry_fee: Decimal,
                     prize_pool: Decimal, start_time: datetime,
                     end_time: datetime, token_ids: list[str] | None = None,
                     description: str = "",
                     max_participants: int | None = None,
                     treasury: str = "", creator: str = "") -> Quest:
        """
        Create a quest. An empty token universe means every registered
        token. Raises ValidationError on a bad window or amounts.
        """
        if not name.strip():
            raise ValidationError("quest name is required")
        validate_window(start_time, end_time)
        if entry_fee < ZERO or prize_pool < ZERO:
            raise ValidationError("entry fee and prize pool must be >= 0",
                                  kind="invalid_amount")
        if max_participants is not None and max_participants < 1:
            raise ValidationError("max participants must be at least 1")

        if token_ids:
            for tid in token_ids:
                if self.store.get_token(tid) is None:
                    raise ValidationError(f"unknown token {tid}",
                                          kind="unknown_token")
            universe = list(dict.fromkeys(token_ids))
        else:
            universe = list(self.store.tokens)

        quest = Quest.new(
            name=name.strip(),
            entry_fee=entry_fee,
            prize_pool=prize_pool,
            start_time=start_time,
            end_time=end_time,
            token_ids=universe,
            description=description,
            max_participants=max_participants,
            treasury=treasury,
            creator=creator,
        )
        quest.status = quest_status(start_time, end_time, self.clock())
        self.store.put_quest(quest)
        logger.info("quest %s created: %r %s -> %s", quest.id, quest.name,
                    start_time.isoformat(), end_time.isoformat())
        return quest

    def get_quest(self, quest_id: str) -> Quest:
        quest = self.store.get_quest(quest_id)
        if quest is None:
            raise QuestNotFound(f"quest {quest_id} not found")
        quest.status = quest_status(
            quest.start_time, quest.end_time, self.clock())
        return quest

    def list_quests(self, status: str | None = None) -> list[Quest]:
        """
        Active quests ending soonest first, then upcoming starting
        soonest, then ended most recent first.
        """
        if status is not None and status not in STATUSES:
            raise ValidationError(f"unknown status {status}")
        now = self.clock()
        result = []
        for quest in self.store.quests.values():
            quest.status = quest_status(quest.start_time, quest.end_time, now)
            if status is None or quest.status == status:
                result.append(quest)
        return sorted(result, key=lambda q: listing_key(q, now))

    # ------------------------------------------------------------------
    # Joining
    # ------------------------------------------------------------------

    def join_quest(self, quest_id: str, participant_id: str) -> QuestEntry:
        """
        Register a participant. Pays the entry fee first (when there is
        one and a signer is configured), then records the entry.
        Raises RegistrationClosed, AlreadyJoined, QuestFull,
        TransferRejected.
        """
        if not participant_id:
            raise ValidationError("participant id is required")
        with self.store.locked("quest", quest_id):
            quest = self.get_quest(quest_id)
            now = self.clock()
            require_registration_open(quest, now)
            if self.store.get_entry(quest_id, participant_id) is not None:
                raise AlreadyJoined(
                    f"participant {participant_id} already joined "
                    f"quest {quest_id}")
            if quest.is_full:
                raise QuestFull(
                    f"quest {quest_id} is full "
                    f"({quest.max_participants} participants)")

            fee_tx_id = None
            if quest.entry_fee > ZERO and self.signer is not None:
                result = self.signer.transfer(
                    quest.entry_fee, participant_id, quest.treasury)
                if not result.success:
                    logger.warning("quest %s: entry fee from %s rejected: %s",
                                   quest_id, participant_id, result.error)
                    raise TransferRejected(
                        f"entry fee transfer rejected: {result.error}")
                fee_tx_id = result.tx_id

            entry = QuestEntry.new(
                quest_id=quest_id,
                participant_id=participant_id,
                entry_fee_paid=quest.entry_fee,
                joined_at=now,
                fee_tx_id=fee_tx_id,
            )
            self.store.put_entry(entry)
            quest.participant_count += 1
            if quest.entry_fee > ZERO:
                self.store.append_transaction(LedgerTransaction.new(
                    participant_id=participant_id,
                    quest_id=quest_id,
                    type=QUEST_ENTRY,
                    amount=quest.entry_fee,
                    external_tx_id=fee_tx_id,
                    created_at=now,
                ))

        logger.info("quest %s: %s joined (%d participants)", quest_id,
                    participant_id, quest.participant_count)
        return entry

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def _trading_quest(self, quest_id: str, token_id: str) -> Quest:
        quest = self.get_quest(quest_id)
        require_trading_open(quest, self.clock())
        if token_id not in quest.token_ids:
            raise ValidationError(
                f"token {token_id} is not tradable in quest {quest_id}",
                kind="unknown_token")
        return quest

    def buy(self, quest_id: str, participant_id: str, token_id: str,
            quantity: Decimal):
        quest = self._trading_quest(quest_id, token_id)
        return self.ledger.buy(quest.id, participant_id, token_id, quantity,
                               now=self.clock(), treasury=quest.treasury)

    def sell(self, quest_id: str, participant_id: str, token_id: str,
             quantity: Decimal):
        quest = self._trading_quest(quest_id, token_id)
        return self.ledger.sell(quest.id, participant_id, token_id, quantity,
                                now=self.clock(), treasury=quest.treasury)

    def submit_portfolio(self, quest_id: str, participant_id: str,
                         selections: list[tuple[str, Decimal]]):
        quest = self.get_quest(quest_id)
        require_trading_open(quest, self.clock())
        for token_id, _ in selections:
            if token_id not in quest.token_ids:
                raise ValidationError(
                    f"token {token_id} is not tradable in quest {quest_id}",
                    kind="unknown_token")
        return self.ledger.submit_portfolio(
            quest.id, participant_id, selections, now=self.clock(),
            treasury=quest.treasury)

    def get_portfolio(self, quest_id: str, participant_id: str):
        quest = self.get_quest(quest_id)
        return self.ledger.get_portfolio(
            quest.id, participant_id, token_order=quest.token_ids,
            revalue=quest.status == ACTIVE)

    def get_entry(self, quest_id: str, participant_id: str):
        return self.store.get_entry(quest_id, participant_id)

    # ------------------------------------------------------------------
    # Snapshots and leaderboard
    # ------------------------------------------------------------------

    def get_snapshots(self, quest_id: str):
        return self.snapshots.snapshots_for(self.get_quest(quest_id))

    def get_leaderboard(self, quest_id: str):
        """
        The settled leaderboard. An ended quest the sweep has not reached
        yet is advanced on the spot. Raises QuestNotEnded before the end.
        """
        quest = self.get_quest(quest_id)
        settlement = self.store.get_settlement(quest.id)
        if settlement is not None:
            return settlement.entries
        return self.settle(quest.id)

    def settle(self, quest_id: str):
        """Settle an ended quest, capturing its end prices first."""
        quest = self.get_quest(quest_id)
        if quest.status == ENDED:
            self._advance(quest, self.clock())
        return self.settlement.settle(quest, self.clock())

    def transactions_for(self, quest_id: str | None = None,
                         participant_id: str | None = None):
        return self.store.transactions_for(quest_id, participant_id)

    # ------------------------------------------------------------------
    # Lifecycle sweep
    # ------------------------------------------------------------------

    def tick_lifecycle(self) -> dict[str, list[str]]:
        """
        Perform every due transition. Returns the quest ids that were
        started and settled by this call.
        """
        now = self.clock()
        report = {"started": [], "settled": []}
        for quest in list(self.store.quests.values()):
            started, settled = self._advance(quest, now)
            if started:
                report["started"].append(quest.id)
            if settled:
                report["settled"].append(quest.id)
        return report

    def _advance(self, quest: Quest, now: datetime) -> tuple[bool, bool]:
        status = quest_status(quest.start_time, quest.end_time, now)
        started = settled = False
        with self.store.locked("lifecycle", quest.id):
            if status != quest.status:
                logger.info("quest %s: %s -> %s", quest.id, quest.status,
                            status)
            quest.status = status
            if status in (ACTIVE, ENDED) and quest.started_at is None:
                self.snapshots.capture_start(quest, now)
                quest.started_at = now
                started = True
            if status == ENDED and quest.settled_at is None:
                self.snapshots.capture_end(quest, now)
                self.settlement.settle(quest, now)
                settled = True
        return started, settled
