"""
Runtime configuration from the environment, and engine assembly.

QUEST_LEDGER_STATE     snapshot path (default ./quest_ledger_state.json)
QUEST_PRICE_SEED       simulator seed; fix it to make settlements replayable
QUEST_MARKET_MODE      "simulated" (random walk) or "market" (oracle reads)
QUEST_ORACLE_URL       HTTP price feed; unset = token registry (mock market)
QUEST_ORACLE_TIMEOUT   seconds per oracle read
QUEST_SIGNER_URL       HTTP signer; unset = approve-everything mock signer
QUEST_SIGNER_KEY       bearer token for the signer
QUEST_FUND_TRADES      "1" to back every trade with a transfer
QUEST_PRIZE_POLICY     "top_heavy" or "winner_takes_all"
QUEST_LOG_LEVEL        logging level name
"""

import os

from questledger.engine import QuestEngine
from questledger.oracle import HttpPriceOracle, TokenRegistryOracle
from questledger.settlement import PRIZE_POLICIES
from questledger.signer import ApprovingSigner, HttpTransferSigner
from questledger.snapshots import PriceSnapshotService, DEFAULT_SEED


STATE_PATH = os.environ.get("QUEST_LEDGER_STATE",
                            "./quest_ledger_state.json")
PRICE_SEED = os.environ.get("QUEST_PRICE_SEED", DEFAULT_SEED)
MARKET_MODE = os.environ.get("QUEST_MARKET_MODE", "simulated")
ORACLE_URL = os.environ.get("QUEST_ORACLE_URL", "")
ORACLE_TIMEOUT = float(os.environ.get("QUEST_ORACLE_TIMEOUT", "5"))
SIGNER_URL = os.environ.get("QUEST_SIGNER_URL", "")
SIGNER_KEY = os.environ.get("QUEST_SIGNER_KEY", "")
FUND_TRADES = os.environ.get("QUEST_FUND_TRADES", "0") == "1"
PRIZE_POLICY = os.environ.get("QUEST_PRIZE_POLICY", "top_heavy")
LOG_LEVEL = os.environ.get("QUEST_LOG_LEVEL", "INFO")


def build_engine(store, clock=None) -> QuestEngine:
    """Wire collaborators from the environment around a store."""
    if MARKET_MODE not in ("simulated", "market"):
        raise ValueError(f"unknown QUEST_MARKET_MODE: {MARKET_MODE}")
    if PRIZE_POLICY not in PRIZE_POLICIES:
        raise ValueError(f"unknown QUEST_PRIZE_POLICY: {PRIZE_POLICY}")

    if ORACLE_URL:
        oracle = HttpPriceOracle(ORACLE_URL, timeout=ORACLE_TIMEOUT)
    else:
        oracle = TokenRegistryOracle(store)
    if SIGNER_URL:
        signer = HttpTransferSigner(SIGNER_URL, api_key=SIGNER_KEY or None)
    else:
        signer = ApprovingSigner()

    snapshots = PriceSnapshotService(
        store, oracle, seed=PRICE_SEED,
        simulate=MARKET_MODE == "simulated")
    kwargs = {"clock": clock} if clock is not None else {}
    return QuestEngine(
        store, oracle,
        signer=signer,
        snapshots=snapshots,
        prize_policy=PRIZE_POLICIES[PRIZE_POLICY](),
        fund_trades=FUND_TRADES,
        **kwargs,
    )
