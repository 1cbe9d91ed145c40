#!/usr/bin/env python3
"""
Quest ledger CLI. Every invocation: lock → load → execute → save → unlock.

Usage:
    python3 -m questledger.cli add-token TOKEN_ID SYMBOL NAME PRICE
    python3 -m questledger.cli set-price TOKEN_ID PRICE
    python3 -m questledger.cli create-quest NAME START END [--entry-fee X]
        [--prize-pool X] [--token TOKEN_ID ...] [--max-participants N]
        [--treasury ADDRESS]
    python3 -m questledger.cli join QUEST_ID PARTICIPANT
    python3 -m questledger.cli buy QUEST_ID PARTICIPANT TOKEN_ID QUANTITY
    python3 -m questledger.cli sell QUEST_ID PARTICIPANT TOKEN_ID QUANTITY
    python3 -m questledger.cli portfolio QUEST_ID PARTICIPANT
    python3 -m questledger.cli tick
    python3 -m questledger.cli leaderboard QUEST_ID
    python3 -m questledger.cli quests [--status STATUS]
    python3 -m questledger.cli quest QUEST_ID
    python3 -m questledger.cli snapshots QUEST_ID

START and END are ISO 8601 timestamps with a UTC offset.

Output: JSON, one line. {"ok": true, ...} or {"ok": false, "error": "..."}
State: QUEST_LEDGER_STATE env var, default ./quest_ledger_state.json
"""

import argparse
import fcntl
import json
import os
import sys
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal

from questledger.auth import AuthStore
from questledger.config import STATE_PATH, build_engine
from questledger.errors import LedgerError
from questledger.models import reset_counters
from questledger.persistence import save_snapshot, load_snapshot
from questledger.store import LedgerStore


@contextmanager
def file_lock(path):
    """Exclusive file lock. Prevents concurrent CLI invocations from corrupting state."""
    lock_path = path + ".lock"
    f = open(lock_path, "w")
    try:
        fcntl.flock(f, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(f, fcntl.LOCK_UN)
        f.close()


def load_or_create(path):
    if os.path.exists(path):
        return load_snapshot(path)
    reset_counters()
    return LedgerStore(), AuthStore()


def reply(data):
    print(json.dumps(data))


def _holding(h):
    return {"token_id": h.token_id, "quantity": str(h.quantity),
            "total_cost": str(h.total_cost),
            "average_cost": str(h.average_cost),
            "current_value": str(h.current_value)}


def _quest(q):
    return {"quest_id": q.id, "name": q.name, "status": q.status,
            "entry_fee": str(q.entry_fee), "prize_pool": str(q.prize_pool),
            "start_time": q.start_time.isoformat(),
            "end_time": q.end_time.isoformat(),
            "participants": q.participant_count,
            "token_ids": q.token_ids}


def cmd_add_token(engine, args):
    token = engine.register_token(args.token_id, args.symbol, args.name,
                                  Decimal(args.price))
    return {"ok": True, "token_id": token.id, "symbol": token.symbol,
            "price": str(token.price)}


def cmd_set_price(engine, args):
    token = engine.update_token_price(args.token_id, Decimal(args.price))
    return {"ok": True, "token_id": token.id, "price": str(token.price)}


def cmd_create_quest(engine, args):
    quest = engine.create_quest(
        name=args.name,
        entry_fee=Decimal(args.entry_fee),
        prize_pool=Decimal(args.prize_pool),
        start_time=datetime.fromisoformat(args.start),
        end_time=datetime.fromisoformat(args.end),
        token_ids=args.token or None,
        max_participants=args.max_participants,
        treasury=args.treasury,
    )
    return {"ok": True, "quest_id": quest.id, "status": quest.status,
            "token_ids": quest.token_ids}


def cmd_join(engine, args):
    entry = engine.join_quest(args.quest_id, args.participant)
    return {"ok": True, "quest_id": entry.quest_id,
            "participant_id": entry.participant_id,
            "entry_fee_paid": str(entry.entry_fee_paid),
            "fee_tx_id": entry.fee_tx_id}


def cmd_buy(engine, args):
    holding = engine.buy(args.quest_id, args.participant, args.token_id,
                         Decimal(args.quantity))
    return {"ok": True, **_holding(holding)}


def cmd_sell(engine, args):
    result = engine.sell(args.quest_id, args.participant, args.token_id,
                         Decimal(args.quantity))
    return {"ok": True, "token_id": result.token_id,
            "sold": str(result.sold), "clamped": result.clamped,
            "proceeds": str(result.proceeds),
            "holding": None if result.removed else _holding(result.holding)}


def cmd_portfolio(engine, args):
    holdings = engine.get_portfolio(args.quest_id, args.participant)
    return {"ok": True, "quest_id": args.quest_id,
            "participant_id": args.participant,
            "holdings": [_holding(h) for h in holdings]}


def cmd_tick(engine, args):
    return {"ok": True, **engine.tick_lifecycle()}


def cmd_leaderboard(engine, args):
    entries = engine.get_leaderboard(args.quest_id)
    return {"ok": True, "quest_id": args.quest_id, "leaderboard": [
        {"rank": e.rank, "participant_id": e.participant_id,
         "portfolio_value": str(e.portfolio_value),
         "total_investment": str(e.total_investment),
         "pnl": str(e.pnl), "pnl_percent": str(e.pnl_percent),
         "prize_won": str(e.prize_won), "provisional": e.provisional}
        for e in entries
    ]}


def cmd_quests(engine, args):
    return {"ok": True,
            "quests": [_quest(q) for q in engine.list_quests(args.status)]}


def cmd_quest(engine, args):
    return {"ok": True, **_quest(engine.get_quest(args.quest_id))}


def cmd_snapshots(engine, args):
    return {"ok": True, "quest_id": args.quest_id, "snapshots": [
        {"token_id": s.token_id, "symbol": s.symbol,
         "price_at_start": None if s.price_at_start is None
         else str(s.price_at_start),
         "price_at_end": None if s.price_at_end is None
         else str(s.price_at_end),
         "start_status": s.start_status, "end_status": s.end_status,
         "price_change_percent": str(s.price_change_percent)}
        for s in engine.get_snapshots(args.quest_id)
    ]}


# Commands that mutate state (need save after). A leaderboard read can
# settle an ended quest.
MUTATING = {"add-token", "set-price", "create-quest", "join",
            "buy", "sell", "tick", "leaderboard"}


def build_parser():
    parser = argparse.ArgumentParser(description="Quest ledger CLI")
    parser.add_argument("--state", default=STATE_PATH,
                        help="Path to state file")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("add-token")
    p.add_argument("token_id")
    p.add_argument("symbol")
    p.add_argument("name")
    p.add_argument("price")

    p = sub.add_parser("set-price")
    p.add_argument("token_id")
    p.add_argument("price")

    p = sub.add_parser("create-quest")
    p.add_argument("name")
    p.add_argument("start")
    p.add_argument("end")
    p.add_argument("--entry-fee", default="0")
    p.add_argument("--prize-pool", default="0")
    p.add_argument("--token", action="append",
                   help="Eligible token id (repeatable; default all)")
    p.add_argument("--max-participants", type=int, default=None)
    p.add_argument("--treasury", default="")

    p = sub.add_parser("join")
    p.add_argument("quest_id")
    p.add_argument("participant")

    for name in ("buy", "sell"):
        p = sub.add_parser(name)
        p.add_argument("quest_id")
        p.add_argument("participant")
        p.add_argument("token_id")
        p.add_argument("quantity")

    p = sub.add_parser("portfolio")
    p.add_argument("quest_id")
    p.add_argument("participant")

    sub.add_parser("tick")

    p = sub.add_parser("leaderboard")
    p.add_argument("quest_id")

    p = sub.add_parser("quests")
    p.add_argument("--status", default=None,
                   choices=["upcoming", "active", "ended"])

    for name in ("quest", "snapshots"):
        p = sub.add_parser(name)
        p.add_argument("quest_id")

    return parser


COMMANDS = {
    "add-token": cmd_add_token,
    "set-price": cmd_set_price,
    "create-quest": cmd_create_quest,
    "join": cmd_join,
    "buy": cmd_buy,
    "sell": cmd_sell,
    "portfolio": cmd_portfolio,
    "tick": cmd_tick,
    "leaderboard": cmd_leaderboard,
    "quests": cmd_quests,
    "quest": cmd_quest,
    "snapshots": cmd_snapshots,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    state_path = args.state

    try:
        with file_lock(state_path):
            store, auth_store = load_or_create(state_path)
            engine = build_engine(store)
            result = COMMANDS[args.command](engine, args)

            if args.command in MUTATING:
                save_snapshot(store, state_path, auth_store=auth_store)

            reply(result)
    except LedgerError as e:
        reply({"ok": False, "error": e.reason, "kind": e.kind})
        sys.exit(1)
    except Exception as e:
        reply({"ok": False, "error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
