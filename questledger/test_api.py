"""
API tests. Uses httpx AsyncClient with FastAPI's ASGI transport.

Covers:
- Participant registration and auth boundaries
- Public quest data (no auth)
- Full quest lifecycle via HTTP: create, join, trade, tick, leaderboard
- Error mapping from engine errors to HTTP status codes
- Admin operations
- Persistence after mutations
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

# Configure before importing app
os.environ["QUEST_ADMIN_KEY"] = "test-admin-key"
os.environ["QUEST_LEDGER_STATE"] = "/tmp/quest_ledger_test_state.json"
os.environ["QUEST_MARKET_MODE"] = "market"
os.environ["QUEST_PRIZE_POLICY"] = "top_heavy"

from questledger.api import app, install_state
from questledger.auth import AuthStore
from questledger.errors import OracleUnavailable
from questledger.models import reset_counters
from questledger.persistence import load_snapshot
from questledger.signer import TransferResult
from questledger.store import LedgerStore


STATE_PATH = "/tmp/quest_ledger_test_state.json"
ADMIN_HEADERS = {"Authorization": "Bearer test-admin-key"}

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
async def client():
    """Fresh app state for each test. The clock starts at T0 - 1h."""
    reset_counters()
    install_state(app, LedgerStore(), AuthStore())
    app.state.clock = Clock(T0 - HOUR)

    try:
        os.remove(STATE_PATH)
    except FileNotFoundError:
        pass

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _set_time(now):
    app.state.clock.now = now


def _user_headers(api_key: str) -> dict:
    return {"Authorization": f"Bearer {api_key}"}


async def _register(client, wallet="0xalice") -> dict:
    resp = await client.post("/v1/participants/register",
                             json={"wallet_address": wallet})
    assert resp.status_code == 200
    return _user_headers(resp.json()["api_key"])


async def _token(client, token_id="x", price="1"):
    resp = await client.post("/v1/admin/tokens", headers=ADMIN_HEADERS, json={
        "token_id": token_id, "symbol": token_id.upper(),
        "name": f"Token {token_id}", "price": price,
    })
    assert resp.status_code == 200
    return resp.json()


async def _quest(client, **overrides) -> str:
    body = {
        "name": "Test quest",
        "entry_fee": "0",
        "prize_pool": "100",
        "start_time": T0.isoformat(),
        "end_time": (T0 + HOUR).isoformat(),
    }
    body.update(overrides)
    resp = await client.post("/v1/admin/quests", headers=ADMIN_HEADERS,
                             json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()["quest_id"]


async def _tick(client) -> dict:
    resp = await client.post("/v1/admin/lifecycle/tick",
                             headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    return resp.json()


async def _active_quest(client, wallets=("0xalice",)):
    """Token x at 1, a started quest, and joined participants' headers."""
    await _token(client)
    quest_id = await _quest(client)
    headers = []
    for w in wallets:
        h = await _register(client, w)
        resp = await client.post(f"/v1/quests/{quest_id}/join", headers=h)
        assert resp.status_code == 200
        headers.append(h)
    _set_time(T0)
    await _tick(client)
    return quest_id, headers


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/v1/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "quests": 0, "tokens": 0}


# ---------------------------------------------------------------------------
# Registration and auth
# ---------------------------------------------------------------------------

class TestRegistration:
    async def test_register_and_me(self, client):
        headers = await _register(client, "0xabc")
        resp = await client.get("/v1/me", headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"participant_id": "0xabc", "entries": []}

    async def test_wallet_taken(self, client):
        await _register(client, "0xabc")
        resp = await client.post("/v1/participants/register",
                                 json={"wallet_address": "0xabc"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "participant_taken"

    async def test_blank_wallet(self, client):
        resp = await client.post("/v1/participants/register",
                                 json={"wallet_address": "  "})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_wallet"


class TestAuthBoundaries:
    async def test_no_auth_on_protected(self, client):
        resp = await client.get("/v1/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_required"

    async def test_bad_key(self, client):
        resp = await client.get("/v1/me", headers=_user_headers("nope"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_api_key"

    async def test_admin_key_rejected_on_participant_endpoint(self, client):
        resp = await client.get("/v1/me", headers=ADMIN_HEADERS)
        assert resp.status_code == 401

    async def test_participant_key_rejected_on_admin_endpoint(self, client):
        headers = await _register(client)
        resp = await client.post("/v1/admin/lifecycle/tick", headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "admin_required"

    async def test_public_endpoints_no_auth(self, client):
        await _token(client)
        quest_id = await _quest(client)
        for path in ["/v1/health", "/v1/tokens", "/v1/quests",
                     f"/v1/quests/{quest_id}",
                     f"/v1/quests/{quest_id}/snapshots",
                     f"/v1/quests/{quest_id}/portfolio/0xalice"]:
            resp = await client.get(path)
            assert resp.status_code == 200, path

    async def test_no_admin_key_configured(self, client, monkeypatch):
        monkeypatch.setattr("questledger.middleware.ADMIN_KEY", "")
        resp = await client.post("/v1/admin/lifecycle/tick",
                                 headers=ADMIN_HEADERS)
        assert resp.status_code == 500


# ---------------------------------------------------------------------------
# Public quest data
# ---------------------------------------------------------------------------

class TestPublicQuestData:
    async def test_list_and_detail(self, client):
        await _token(client, "x")
        await _token(client, "y", "2")
        quest_id = await _quest(client, description="weekly",
                                max_participants=10)

        resp = await client.get("/v1/quests")
        [summary] = resp.json()
        assert summary["quest_id"] == quest_id
        assert summary["status"] == "upcoming"
        assert summary["duration_minutes"] == 60
        assert summary["participants"] == 0

        resp = await client.get(f"/v1/quests/{quest_id}")
        detail = resp.json()
        assert detail["token_ids"] == ["x", "y"]
        assert detail["description"] == "weekly"
        assert detail["max_participants"] == 10
        assert detail["started_at"] is None

    async def test_filter_by_status(self, client):
        await _token(client)
        await _quest(client)
        resp = await client.get("/v1/quests", params={"status": "active"})
        assert resp.json() == []
        resp = await client.get("/v1/quests", params={"status": "upcoming"})
        assert len(resp.json()) == 1
        resp = await client.get("/v1/quests", params={"status": "bogus"})
        assert resp.status_code == 400

    async def test_quest_not_found(self, client):
        resp = await client.get("/v1/quests/missing")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "quest_not_found"

    async def test_tokens_listed(self, client):
        await _token(client, "x", "1.5")
        resp = await client.get("/v1/tokens")
        assert resp.json() == [{"token_id": "x", "symbol": "X",
                                "name": "Token x", "price": "1.5"}]


# ---------------------------------------------------------------------------
# Full lifecycle
# ---------------------------------------------------------------------------

class TestQuestLifecycle:
    async def test_join_trade_settle(self, client):
        quest_id, (alice, bob) = await _active_quest(
            client, wallets=("0xalice", "0xbob"))

        snaps = (await client.get(f"/v1/quests/{quest_id}/snapshots")).json()
        assert snaps[0]["price_at_start"] == "1"
        assert snaps[0]["start_status"] == "captured"
        assert snaps[0]["price_at_end"] is None

        resp = await client.post(f"/v1/quests/{quest_id}/buy", headers=alice,
                                 json={"token_id": "x", "quantity": "10"})
        assert resp.status_code == 200
        assert Decimal(resp.json()["total_cost"]) == Decimal("10")
        await client.post(f"/v1/quests/{quest_id}/buy", headers=bob,
                          json={"token_id": "x", "quantity": "10"})

        resp = await client.patch("/v1/admin/tokens/x", headers=ADMIN_HEADERS,
                                  json={"price": "1.2"})
        assert resp.status_code == 200

        resp = await client.post(f"/v1/quests/{quest_id}/sell", headers=alice,
                                 json={"token_id": "x", "quantity": "4"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["clamped"] is False
        assert Decimal(data["proceeds"]) == Decimal("4.8")
        assert Decimal(data["holding"]["quantity"]) == Decimal("6")
        assert Decimal(data["holding"]["total_cost"]) == Decimal("6")

        _set_time(T0 + HOUR)
        report = await _tick(client)
        assert report == {"started": [], "settled": [quest_id]}

        resp = await client.get(f"/v1/quests/{quest_id}/leaderboard")
        assert resp.status_code == 200
        board = resp.json()
        assert [e["participant_id"] for e in board] == ["0xalice", "0xbob"]
        assert [Decimal(e["pnl_percent"]) for e in board] == \
            [Decimal("20"), Decimal("20")]
        assert Decimal(board[0]["portfolio_value"]) == Decimal("7.2")
        assert Decimal(board[0]["prize_won"]) == Decimal("62.5")
        assert Decimal(board[1]["prize_won"]) == Decimal("37.5")

        resp = await client.get("/v1/me", headers=alice)
        [entry] = resp.json()["entries"]
        assert entry["final_rank"] == 1
        assert Decimal(entry["prize_won"]) == Decimal("62.5")

    async def test_oversized_sell_clamps(self, client):
        quest_id, (alice,) = await _active_quest(client)
        await client.post(f"/v1/quests/{quest_id}/buy", headers=alice,
                          json={"token_id": "x", "quantity": "10"})
        resp = await client.post(f"/v1/quests/{quest_id}/sell", headers=alice,
                                 json={"token_id": "x", "quantity": "100"})
        data = resp.json()
        assert data["clamped"] is True
        assert Decimal(data["sold"]) == Decimal("10")
        assert data["holding"] is None

        resp = await client.get(f"/v1/quests/{quest_id}/portfolio/0xalice")
        assert resp.json()["holdings"] == []

    async def test_submit_portfolio(self, client):
        await _token(client, "y", "2")
        quest_id, (alice,) = await _active_quest(client)
        resp = await client.post(
            f"/v1/quests/{quest_id}/portfolio", headers=alice,
            json={"selections": [{"token_id": "x", "quantity": "3"},
                                 {"token_id": "y", "quantity": "1"}]})
        assert resp.status_code == 200
        holdings = resp.json()["holdings"]
        assert [h["token_id"] for h in holdings] == ["y", "x"]
        assert [Decimal(h["quantity"]) for h in holdings] == \
            [Decimal("1"), Decimal("3")]

    async def test_empty_portfolio_rejected(self, client):
        quest_id, (alice,) = await _active_quest(client)
        resp = await client.post(f"/v1/quests/{quest_id}/portfolio",
                                 headers=alice, json={"selections": []})
        assert resp.status_code == 400

    async def test_leaderboard_settles_on_demand(self, client):
        quest_id, (alice,) = await _active_quest(client)
        await client.post(f"/v1/quests/{quest_id}/buy", headers=alice,
                          json={"token_id": "x", "quantity": "5"})
        _set_time(T0 + 2 * HOUR)

        resp = await client.get(f"/v1/quests/{quest_id}/leaderboard")
        assert resp.status_code == 200
        assert resp.json()[0]["rank"] == 1
        assert await _tick(client) == {"started": [], "settled": []}

    async def test_leaderboard_before_end(self, client):
        quest_id, _ = await _active_quest(client)
        resp = await client.get(f"/v1/quests/{quest_id}/leaderboard")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "quest_not_ended"

    async def test_entry_fee_recorded(self, client):
        await _token(client)
        quest_id = await _quest(client, entry_fee="5", treasury="0xtreasury")
        alice = await _register(client)
        resp = await client.post(f"/v1/quests/{quest_id}/join", headers=alice)
        assert resp.status_code == 200
        assert resp.json()["fee_tx_id"].startswith("0x")

        resp = await client.get("/v1/admin/transactions",
                                headers=ADMIN_HEADERS,
                                params={"quest_id": quest_id})
        [tx] = resp.json()
        assert tx["type"] == "quest_entry"
        assert tx["amount"] == "5"
        assert tx["participant_id"] == "0xalice"


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

class TestTradingErrors:
    async def test_join_after_start(self, client):
        quest_id, _ = await _active_quest(client)
        bob = await _register(client, "0xbob")
        resp = await client.post(f"/v1/quests/{quest_id}/join", headers=bob)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "registration_closed"

    async def test_join_twice(self, client):
        await _token(client)
        quest_id = await _quest(client)
        alice = await _register(client)
        await client.post(f"/v1/quests/{quest_id}/join", headers=alice)
        resp = await client.post(f"/v1/quests/{quest_id}/join", headers=alice)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_joined"

    async def test_buy_before_start(self, client):
        await _token(client)
        quest_id = await _quest(client)
        alice = await _register(client)
        await client.post(f"/v1/quests/{quest_id}/join", headers=alice)
        resp = await client.post(f"/v1/quests/{quest_id}/buy", headers=alice,
                                 json={"token_id": "x", "quantity": "1"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "quest_not_started"

    async def test_buy_not_joined(self, client):
        quest_id, _ = await _active_quest(client)
        bob = await _register(client, "0xbob")
        resp = await client.post(f"/v1/quests/{quest_id}/buy", headers=bob,
                                 json={"token_id": "x", "quantity": "1"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_a_participant"

    async def test_buy_invalid_quantity(self, client):
        quest_id, (alice,) = await _active_quest(client)
        resp = await client.post(f"/v1/quests/{quest_id}/buy", headers=alice,
                                 json={"token_id": "x", "quantity": "abc"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_amount"

        resp = await client.post(f"/v1/quests/{quest_id}/buy", headers=alice,
                                 json={"token_id": "x", "quantity": "-1"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_quantity"

    async def test_buy_unknown_token(self, client):
        quest_id, (alice,) = await _active_quest(client)
        resp = await client.post(f"/v1/quests/{quest_id}/buy", headers=alice,
                                 json={"token_id": "zzz", "quantity": "1"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "unknown_token"

    async def test_sell_without_holding(self, client):
        quest_id, (alice,) = await _active_quest(client)
        resp = await client.post(f"/v1/quests/{quest_id}/sell", headers=alice,
                                 json={"token_id": "x", "quantity": "1"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "holding_not_found"

    async def test_buy_after_end(self, client):
        quest_id, (alice,) = await _active_quest(client)
        _set_time(T0 + HOUR)
        resp = await client.post(f"/v1/quests/{quest_id}/buy", headers=alice,
                                 json={"token_id": "x", "quantity": "1"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "quest_ended"


class TestAdmin:
    async def test_create_quest_invalid_window(self, client):
        resp = await client.post("/v1/admin/quests", headers=ADMIN_HEADERS,
                                 json={"name": "Q",
                                       "start_time": T0.isoformat(),
                                       "end_time": T0.isoformat()})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_window"

    async def test_create_quest_bad_timestamp(self, client):
        resp = await client.post("/v1/admin/quests", headers=ADMIN_HEADERS,
                                 json={"name": "Q", "start_time": "tomorrow",
                                       "end_time": T0.isoformat()})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"

    async def test_create_quest_bad_fee(self, client):
        resp = await client.post("/v1/admin/quests", headers=ADMIN_HEADERS,
                                 json={"name": "Q", "entry_fee": "-1",
                                       "start_time": T0.isoformat(),
                                       "end_time": (T0 + HOUR).isoformat()})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_amount"

    async def test_create_quest_unknown_token(self, client):
        resp = await client.post("/v1/admin/quests", headers=ADMIN_HEADERS,
                                 json={"name": "Q", "token_ids": ["nope"],
                                       "start_time": T0.isoformat(),
                                       "end_time": (T0 + HOUR).isoformat()})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "unknown_token"

    async def test_update_unknown_token(self, client):
        resp = await client.patch("/v1/admin/tokens/nope",
                                  headers=ADMIN_HEADERS, json={"price": "1"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "token_not_found"

    async def test_non_positive_token_price(self, client):
        resp = await client.post("/v1/admin/tokens", headers=ADMIN_HEADERS,
                                 json={"token_id": "x", "symbol": "X",
                                       "name": "X", "price": "0"})
        assert resp.status_code == 400

    async def test_transactions_filtered(self, client):
        quest_id, (alice, bob) = await _active_quest(
            client, wallets=("0xalice", "0xbob"))
        await client.post(f"/v1/quests/{quest_id}/buy", headers=alice,
                          json={"token_id": "x", "quantity": "2"})
        await client.post(f"/v1/quests/{quest_id}/buy", headers=bob,
                          json={"token_id": "x", "quantity": "3"})

        resp = await client.get("/v1/admin/transactions",
                                headers=ADMIN_HEADERS,
                                params={"participant_id": "0xbob"})
        [tx] = resp.json()
        assert tx["type"] == "trade_buy"
        assert tx["quantity"] == "3"
        assert tx["status"] == "completed"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersistence:
    async def test_state_persists_through_save_load(self, client):
        quest_id, (alice,) = await _active_quest(client)
        await client.post(f"/v1/quests/{quest_id}/buy", headers=alice,
                          json={"token_id": "x", "quantity": "4"})

        assert os.path.exists(STATE_PATH)
        store, auth_store = load_snapshot(STATE_PATH)
        assert quest_id in store.quests
        assert store.get_holding(quest_id, "0xalice", "x").quantity == \
            Decimal("4")
        assert "0xalice" in auth_store.participants
        assert store.get_snapshot(quest_id, "x") is not None


class TestErrorFormat:
    async def test_error_format(self, client):
        resp = await client.get("/v1/quests/missing")
        data = resp.json()
        assert set(data) == {"error"}
        assert set(data["error"]) == {"code", "message", "details"}
        assert data["error"]["details"] == {}


class TestCollaboratorFailures:
    async def test_rejected_entry_fee(self, client):
        await _token(client)
        quest_id = await _quest(client, entry_fee="5", treasury="0xtreasury")
        alice = await _register(client)
        rejected = TransferResult(success=False, error="insufficient funds")
        with patch.object(app.state.engine.signer, "transfer",
                          return_value=rejected):
            resp = await client.post(f"/v1/quests/{quest_id}/join",
                                     headers=alice)
        assert resp.status_code == 402
        assert resp.json()["error"]["code"] == "transfer_rejected"

        resp = await client.get(f"/v1/quests/{quest_id}")
        assert resp.json()["participants"] == 0

    async def test_oracle_down_on_buy(self, client):
        quest_id, (alice,) = await _active_quest(client)
        with patch.object(app.state.engine.ledger.oracle, "price",
                          side_effect=OracleUnavailable("feed down")):
            resp = await client.post(f"/v1/quests/{quest_id}/buy",
                                     headers=alice,
                                     json={"token_id": "x", "quantity": "1"})
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "oracle_unavailable"

        resp = await client.get(f"/v1/quests/{quest_id}/portfolio/0xalice")
        assert resp.json()["holdings"] == []

    async def test_state_save_fails(self, client):
        with patch("questledger.api.save_snapshot",
                   side_effect=OSError("disk full")):
            resp = await client.post("/v1/admin/tokens",
                                     headers=ADMIN_HEADERS, json={
                                         "token_id": "x", "symbol": "X",
                                         "name": "Token X", "price": "1"})
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "store_unavailable"


class TestStateLock:
    async def test_portfolio_read_waits_for_lock(self, client):
        quest_id, _ = await _active_quest(client)
        await app.state.lock.acquire()
        try:
            request = asyncio.create_task(
                client.get(f"/v1/quests/{quest_id}/portfolio/0xalice"))
            await asyncio.sleep(0.05)
            assert not request.done()
        finally:
            app.state.lock.release()
        resp = await request
        assert resp.status_code == 200
