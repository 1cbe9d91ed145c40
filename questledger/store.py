"""
Ledger store. The single source of truth for quests, entries, holdings,
snapshots, settlements, tokens and the transaction log.

In-memory, serialized to disk by the persistence module. Every record is
keyed the way it is identified:
  quests:      quest_id
  entries:     (quest_id, participant_id)
  holdings:    (quest_id, participant_id, token_id)
  snapshots:   (quest_id, token_id)
  settlements: quest_id
  tokens:      token_id

Concurrency: callers serialize read-modify-write on one key through
`locked(key)`. One lock per key, so operations on different holdings never
wait on each other. Lock objects are not persisted.

Getters return the stored object. Nothing outside the store keeps a
reference across calls; re-read after taking the lock.
"""

import threading
from contextlib import contextmanager
from typing import Optional

from questledger.models import (
    Quest, QuestEntry, Holding, PriceSnapshot, Settlement, Token,
    LedgerTransaction,
)


class LedgerStore:

    def __init__(self):
        self.quests: dict[str, Quest] = {}
        self.entries: dict[tuple[str, str], QuestEntry] = {}
        self.holdings: dict[tuple[str, str, str], Holding] = {}
        self.snapshots: dict[tuple[str, str], PriceSnapshot] = {}
        self.settlements: dict[str, Settlement] = {}
        self.tokens: dict[str, Token] = {}
        self.transactions: list[LedgerTransaction] = []
        self._locks: dict[tuple, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Per-key serialization
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self, *key):
        """Exclusive section for one record key."""
        with self._locks_guard:
            lk = self._locks.get(key)
            if lk is None:
                lk = self._locks[key] = threading.Lock()
        with lk:
            yield

    # ------------------------------------------------------------------
    # Quests
    # ------------------------------------------------------------------

    def get_quest(self, quest_id: str) -> Optional[Quest]:
        return self.quests.get(quest_id)

    def put_quest(self, quest: Quest) -> None:
        self.quests[quest.id] = quest

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def get_entry(self, quest_id: str,
                  participant_id: str) -> Optional[QuestEntry]:
        return self.entries.get((quest_id, participant_id))

    def put_entry(self, entry: QuestEntry) -> None:
        self.entries[entry.key] = entry

    def entries_for(self, quest_id: str) -> list[QuestEntry]:
        """Entries of a quest in join order."""
        return sorted(
            (e for e in self.entries.values() if e.quest_id == quest_id),
            key=lambda e: e.seq,
        )

    # ------------------------------------------------------------------
    # Holdings
    # ------------------------------------------------------------------

    def get_holding(self, quest_id: str, participant_id: str,
                    token_id: str) -> Optional[Holding]:
        return self.holdings.get((quest_id, participant_id, token_id))

    def put_holding(self, holding: Holding) -> None:
        self.holdings[holding.key] = holding

    def delete_holding(self, quest_id: str, participant_id: str,
                       token_id: str) -> None:
        self.holdings.pop((quest_id, participant_id, token_id), None)

    def holdings_for(self, quest_id: str,
                     participant_id: str) -> list[Holding]:
        return [h for h in self.holdings.values()
                if h.quest_id == quest_id
                and h.participant_id == participant_id]

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def get_snapshot(self, quest_id: str,
                     token_id: str) -> Optional[PriceSnapshot]:
        return self.snapshots.get((quest_id, token_id))

    def put_snapshot_if_absent(self, snapshot: PriceSnapshot) -> bool:
        """Create-if-absent. Returns False when one already exists."""
        if snapshot.key in self.snapshots:
            return False
        self.snapshots[snapshot.key] = snapshot
        return True

    def snapshots_for(self, quest_id: str) -> list[PriceSnapshot]:
        return [s for s in self.snapshots.values() if s.quest_id == quest_id]

    # ------------------------------------------------------------------
    # Settlements
    # ------------------------------------------------------------------

    def get_settlement(self, quest_id: str) -> Optional[Settlement]:
        return self.settlements.get(quest_id)

    def put_settlement_if_absent(self, settlement: Settlement) -> bool:
        if settlement.quest_id in self.settlements:
            return False
        self.settlements[settlement.quest_id] = settlement
        return True

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def get_token(self, token_id: str) -> Optional[Token]:
        return self.tokens.get(token_id)

    def put_token(self, token: Token) -> None:
        self.tokens[token.id] = token

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def append_transaction(self, tx: LedgerTransaction) -> None:
        self.transactions.append(tx)

    def transactions_for(self, quest_id: Optional[str] = None,
                         participant_id: Optional[str] = None
                         ) -> list[LedgerTransaction]:
        return [
            tx for tx in self.transactions
            if (quest_id is None or tx.quest_id == quest_id)
            and (participant_id is None or tx.participant_id == participant_id)
        ]
