"""
HTTP collaborator tests. The price feed and the signer service are
replaced by httpx.MockTransport handlers.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from questledger.errors import OracleUnavailable
from questledger.models import Quest, Token, ZERO, CAPTURED, CACHED
from questledger.oracle import HttpPriceOracle
from questledger.signer import HttpTransferSigner
from questledger.snapshots import PriceSnapshotService
from questledger.store import LedgerStore


def _oracle(handler) -> HttpPriceOracle:
    client = httpx.Client(transport=httpx.MockTransport(handler),
                          base_url="http://feed")
    return HttpPriceOracle("http://feed", client=client)


def _signer(handler, api_key=None) -> HttpTransferSigner:
    headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
    client = httpx.Client(transport=httpx.MockTransport(handler),
                          base_url="http://signer", headers=headers)
    return HttpTransferSigner("http://signer", client=client)


# ---------------------------------------------------------------------------
# Price oracle
# ---------------------------------------------------------------------------

class TestHttpPriceOracle:

    def test_reads_price(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"price": "1.25"})

        assert _oracle(handler).price("btc") == Decimal("1.25")
        assert seen == ["/prices/btc"]

    def test_numeric_price_accepted(self):
        oracle = _oracle(lambda r: httpx.Response(200, json={"price": 3.5}))
        assert oracle.price("eth") == Decimal("3.5")

    @pytest.mark.parametrize("response", [
        httpx.Response(404, json={"error": "unknown"}),
        httpx.Response(500, text="boom"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"value": "1"}),
        httpx.Response(200, json={"price": "abc"}),
        httpx.Response(200, json={"price": "0"}),
        httpx.Response(200, json={"price": "-2"}),
    ])
    def test_bad_answers_are_unavailable(self, response):
        oracle = _oracle(lambda r: response)
        with pytest.raises(OracleUnavailable):
            oracle.price("btc")

    def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow feed", request=request)

        with pytest.raises(OracleUnavailable) as exc:
            _oracle(handler).price("btc")
        assert "timed out" in exc.value.reason

    def test_connection_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(OracleUnavailable):
            _oracle(handler).price("btc")

    def test_snapshot_falls_back_to_registry_price(self):
        store = LedgerStore()
        store.put_token(Token(id="btc", symbol="BTC", name="Bitcoin",
                              price=Decimal("60000")))
        store.put_token(Token(id="eth", symbol="ETH", name="Ether",
                              price=Decimal("3000")))

        def handler(request):
            if request.url.path.endswith("/btc"):
                return httpx.Response(200, json={"price": "61000"})
            raise httpx.ReadTimeout("slow feed", request=request)

        service = PriceSnapshotService(store, _oracle(handler),
                                       simulate=False)
        start = datetime(2026, 3, 1, tzinfo=timezone.utc)
        quest = Quest(id="q", name="Q", entry_fee=ZERO, prize_pool=ZERO,
                      start_time=start, end_time=start + timedelta(hours=1),
                      token_ids=["btc", "eth"])
        service.capture_start(quest, start)

        btc = store.get_snapshot("q", "btc")
        eth = store.get_snapshot("q", "eth")
        assert (btc.price_at_start, btc.start_status) == \
            (Decimal("61000"), CAPTURED)
        assert (eth.price_at_start, eth.start_status) == \
            (Decimal("3000"), CACHED)


# ---------------------------------------------------------------------------
# Transfer signer
# ---------------------------------------------------------------------------

class TestHttpTransferSigner:

    def test_successful_transfer(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"success": True,
                                             "tx_id": "0xabc"})

        result = _signer(handler, api_key="k").transfer(
            Decimal("10.5"), "alice", "treasury")

        assert result.success
        assert result.tx_id == "0xabc"
        [req] = requests
        assert req.method == "POST"
        assert req.url.path == "/transfers"
        assert req.headers["authorization"] == "Bearer k"
        assert json.loads(req.content) == {
            "amount": "10.5", "from": "alice", "to": "treasury"}

    def test_api_key_header_on_default_client(self):
        signer = HttpTransferSigner("http://signer/", api_key="secret")
        assert signer.base == "http://signer"
        assert signer._http.headers["authorization"] == "Bearer secret"
        signer.close()

    def test_rejection_carries_error(self):
        def handler(request):
            return httpx.Response(402, json={"success": False,
                                             "error": "insufficient funds"})

        result = _signer(handler).transfer(Decimal("1"), "alice", "t")
        assert not result.success
        assert result.error == "insufficient funds"
        assert result.tx_id is None

    def test_success_flag_required(self):
        result = _signer(lambda r: httpx.Response(200, json={})).transfer(
            Decimal("1"), "alice", "t")
        assert not result.success
        assert result.error == "signer returned 200"

    def test_non_json_error(self):
        result = _signer(lambda r: httpx.Response(502, text="bad gateway")) \
            .transfer(Decimal("1"), "alice", "t")
        assert not result.success
        assert result.error == "signer returned 502"

    def test_timeout_is_a_failed_transfer(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        result = _signer(handler).transfer(Decimal("1"), "alice", "t")
        assert not result.success
        assert result.error == "signer timed out"
