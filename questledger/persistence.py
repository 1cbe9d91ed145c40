"""
Persistence layer. JSON snapshot + atomic writes.

The snapshot contains the complete store:
  - tokens, quests, entries, holdings
  - price snapshots and settlements (immutable once written)
  - the ledger transaction log
  - ID counters (so IDs resume correctly after restart)
  - participant API keys (hashes only)

Save after every complete engine operation (join/buy/sell/tick/create).
On startup, load the snapshot. No replay needed.

Atomic write: write to .tmp, then os.replace. A crash mid-write
leaves the previous snapshot intact.
"""

import dataclasses
import json
import os
from datetime import datetime
from decimal import Decimal

from questledger.auth import AuthStore, Participant
from questledger.models import (
    Token, Quest, QuestEntry, Holding, PriceSnapshot, LeaderboardEntry,
    Settlement, LedgerTransaction,
    _counters, set_counter, reset_counters,
)
from questledger.store import LedgerStore


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize(obj):
    """Recursively serialize dataclasses, Decimals and datetimes."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj):
        return {
            f.name: _serialize(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, (list, tuple)):
        return [_serialize(item) for item in obj]
    if isinstance(obj, dict):
        return {str(k): _serialize(v) for k, v in obj.items()}
    return obj


# ---------------------------------------------------------------------------
# Deserialization helpers
# ---------------------------------------------------------------------------

def _dec(value):
    return None if value is None else Decimal(value)


def _dt(value):
    return None if value is None else datetime.fromisoformat(value)


def _load_token(d: dict) -> Token:
    return Token(
        id=d["id"],
        symbol=d["symbol"],
        name=d["name"],
        price=Decimal(d["price"]),
        updated_at=_dt(d["updated_at"]),
    )


def _load_quest(d: dict) -> Quest:
    return Quest(
        id=d["id"],
        name=d["name"],
        entry_fee=Decimal(d["entry_fee"]),
        prize_pool=Decimal(d["prize_pool"]),
        start_time=_dt(d["start_time"]),
        end_time=_dt(d["end_time"]),
        token_ids=d["token_ids"],
        description=d.get("description", ""),
        max_participants=d.get("max_participants"),
        participant_count=d["participant_count"],
        treasury=d.get("treasury", ""),
        creator=d.get("creator", ""),
        status=d["status"],
        created_at=_dt(d["created_at"]),
        started_at=_dt(d.get("started_at")),
        settled_at=_dt(d.get("settled_at")),
    )


def _load_entry(d: dict) -> QuestEntry:
    return QuestEntry(
        quest_id=d["quest_id"],
        participant_id=d["participant_id"],
        seq=d["seq"],
        joined_at=_dt(d["joined_at"]),
        entry_fee_paid=Decimal(d["entry_fee_paid"]),
        fee_tx_id=d.get("fee_tx_id"),
        final_rank=d.get("final_rank"),
        prize_won=_dec(d.get("prize_won")),
    )


def _load_holding(d: dict) -> Holding:
    return Holding(
        quest_id=d["quest_id"],
        participant_id=d["participant_id"],
        token_id=d["token_id"],
        quantity=Decimal(d["quantity"]),
        total_cost=Decimal(d["total_cost"]),
        entry_price=Decimal(d["entry_price"]),
        current_value=Decimal(d["current_value"]),
        created_at=_dt(d["created_at"]),
        updated_at=_dt(d["updated_at"]),
    )


def _load_snapshot(d: dict) -> PriceSnapshot:
    return PriceSnapshot(
        quest_id=d["quest_id"],
        token_id=d["token_id"],
        symbol=d["symbol"],
        price_at_start=_dec(d.get("price_at_start")),
        start_status=d["start_status"],
        snapshot_time=_dt(d["snapshot_time"]),
        seed=d.get("seed"),
        price_at_end=_dec(d.get("price_at_end")),
        end_status=d.get("end_status"),
        updated_at=_dt(d.get("updated_at")),
    )


def _load_leaderboard_entry(d: dict) -> LeaderboardEntry:
    return LeaderboardEntry(
        rank=d["rank"],
        participant_id=d["participant_id"],
        portfolio_value=Decimal(d["portfolio_value"]),
        total_investment=Decimal(d["total_investment"]),
        pnl=Decimal(d["pnl"]),
        pnl_percent=Decimal(d["pnl_percent"]),
        prize_won=Decimal(d["prize_won"]),
        provisional=d.get("provisional", False),
        provisional_tokens=d.get("provisional_tokens", []),
    )


def _load_settlement(d: dict) -> Settlement:
    return Settlement(
        quest_id=d["quest_id"],
        settled_at=_dt(d["settled_at"]),
        prize_pool=Decimal(d["prize_pool"]),
        prize_policy=d["prize_policy"],
        entries=[_load_leaderboard_entry(e) for e in d["entries"]],
    )


def _load_transaction(d: dict) -> LedgerTransaction:
    return LedgerTransaction(
        id=d["id"],
        participant_id=d["participant_id"],
        quest_id=d["quest_id"],
        type=d["type"],
        amount=Decimal(d["amount"]),
        status=d["status"],
        token_id=d.get("token_id"),
        quantity=_dec(d.get("quantity")),
        external_tx_id=d.get("external_tx_id"),
        error=d.get("error"),
        created_at=_dt(d["created_at"]),
    )


# ---------------------------------------------------------------------------
# Schema versioning
# ---------------------------------------------------------------------------

CURRENT_VERSION = 1

# version -> function upgrading a snapshot from that version to the next
_MIGRATIONS: dict[int, callable] = {}


def _apply_migrations(state: dict) -> dict:
    """Apply all needed migrations to bring state to CURRENT_VERSION."""
    version = state.get("version", 1)
    while version < CURRENT_VERSION:
        migrate = _MIGRATIONS.get(version)
        if migrate is None:
            raise ValueError(
                f"no migration from version {version} to {version + 1}")
        state = migrate(state)
        version = state["version"]
    return state


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def save_snapshot(store: LedgerStore, path: str, auth_store=None) -> None:
    """
    Save the complete store + participant keys to a JSON file.
    Atomic: writes to .tmp then renames.
    """
    state = {
        "version": CURRENT_VERSION,
        "counters": dict(_counters),
        "tokens": [_serialize(t) for t in store.tokens.values()],
        "quests": [_serialize(q) for q in store.quests.values()],
        "entries": [_serialize(e) for e in store.entries.values()],
        "holdings": [_serialize(h) for h in store.holdings.values()],
        "snapshots": [_serialize(s) for s in store.snapshots.values()],
        "settlements": [_serialize(s) for s in store.settlements.values()],
        "transactions": [_serialize(tx) for tx in store.transactions],
        "auth": _serialize_auth(auth_store) if auth_store
        else {"participants": []},
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp, path)


def _serialize_auth(auth_store: AuthStore) -> dict:
    return {"participants": [
        _serialize(p) for p in auth_store.participants.values()
    ]}


def _load_auth(auth_data: dict) -> AuthStore:
    store = AuthStore()
    for pdata in auth_data.get("participants", []):
        participant = Participant(
            participant_id=pdata["participant_id"],
            api_key_hash=pdata["api_key_hash"],
            created_at=pdata["created_at"],
            last_seen_at=pdata["last_seen_at"],
        )
        store.participants[participant.participant_id] = participant
        store.key_to_participant[participant.api_key_hash] = participant
    return store


def load_snapshot(path: str) -> tuple[LedgerStore, AuthStore]:
    """
    Load the store + participant keys from a JSON snapshot.
    Applies migrations automatically if the snapshot is an older version.
    """
    with open(path) as f:
        state = json.load(f)

    state = _apply_migrations(state)

    # Restore ID counters
    reset_counters()
    for kind, value in state["counters"].items():
        set_counter(kind, value)

    store = LedgerStore()
    for d in state["tokens"]:
        store.put_token(_load_token(d))
    for d in state["quests"]:
        store.put_quest(_load_quest(d))
    for d in state["entries"]:
        store.put_entry(_load_entry(d))
    for d in state["holdings"]:
        store.put_holding(_load_holding(d))
    for d in state["snapshots"]:
        store.put_snapshot_if_absent(_load_snapshot(d))
    for d in state["settlements"]:
        store.put_settlement_if_absent(_load_settlement(d))
    store.transactions = [_load_transaction(d) for d in state["transactions"]]

    return store, _load_auth(state.get("auth", {"participants": []}))
