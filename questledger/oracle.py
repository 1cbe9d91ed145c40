"""
Price oracles. Anything with `price(token_id) -> Decimal` will do.

- TokenRegistryOracle: mock-market mode. Reads the reference price kept on
  the token registry; admins move it by updating the token.
- HttpPriceOracle: reads a market-data service over HTTP, with a timeout.

Every failure is raised as OracleUnavailable. Callers decide how to
degrade (snapshots fall back to the cached registry price, buys reject).
"""

import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx

from questledger.errors import OracleUnavailable, TokenNotFound
from questledger.models import ZERO


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class PriceOracle(Protocol):
    def price(self, token_id: str) -> Decimal:
        ...


class TokenRegistryOracle:
    """Mock market: the token registry is the market."""

    def __init__(self, store):
        self.store = store

    def price(self, token_id: str) -> Decimal:
        token = self.store.get_token(token_id)
        if token is None:
            raise TokenNotFound(f"token {token_id} not found")
        if token.price <= ZERO:
            raise OracleUnavailable(f"token {token_id} has no price")
        return token.price


class HttpPriceOracle:
    """
    GET {base_url}/prices/{token_id} -> {"price": "<decimal string>"}.

    Timeouts and transport errors surface as OracleUnavailable so a slow
    feed never stalls a quest transition.
    """

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT,
                 client: httpx.Client | None = None):
        self.base = base_url.rstrip("/")
        self._http = client or httpx.Client(
            base_url=self.base,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )

    def price(self, token_id: str) -> Decimal:
        try:
            resp = self._http.get(f"/prices/{token_id}")
        except httpx.TimeoutException:
            raise OracleUnavailable(f"price feed timed out for {token_id}")
        except httpx.HTTPError as e:
            raise OracleUnavailable(f"price feed error for {token_id}: {e}")

        if resp.status_code == 404:
            raise OracleUnavailable(f"price feed has no price for {token_id}")
        if resp.status_code != 200:
            raise OracleUnavailable(
                f"price feed returned {resp.status_code} for {token_id}")

        try:
            value = Decimal(str(resp.json()["price"]))
        except (KeyError, TypeError, InvalidOperation, json.JSONDecodeError,
                ValueError):
            raise OracleUnavailable(
                f"price feed returned a malformed price for {token_id}")
        if not value.is_finite() or value <= ZERO:
            raise OracleUnavailable(
                f"price feed returned non-positive price for {token_id}")
        logger.debug("oracle price %s = %s", token_id, value)
        return value

    def close(self) -> None:
        self._http.close()
