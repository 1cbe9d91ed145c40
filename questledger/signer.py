"""
Wallet / transaction signer collaborators.

The core never signs or encodes transactions. It asks a signer to move
funds and records the outcome:

    transfer(amount, from_address, to_address) -> TransferResult

"Pay first, record second": a failed transfer aborts the ledger mutation
it was meant to back. The core never retries a transfer.
"""

import json
import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

import httpx


logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    success: bool
    tx_id: Optional[str] = None
    error: Optional[str] = None


class TransferSigner(Protocol):
    def transfer(self, amount: Decimal, from_address: str,
                 to_address: str) -> TransferResult:
        ...


class ApprovingSigner:
    """
    Mock-market signer. Approves every transfer and hands back a synthetic
    transaction hash. Keeps a record of what it was asked to do.
    """

    def __init__(self):
        self.transfers: list[tuple[Decimal, str, str, str]] = []

    def transfer(self, amount: Decimal, from_address: str,
                 to_address: str) -> TransferResult:
        tx_id = "0x" + secrets.token_hex(32)
        self.transfers.append((amount, from_address, to_address, tx_id))
        return TransferResult(success=True, tx_id=tx_id)


class HttpTransferSigner:
    """
    POST {base_url}/transfers with {"amount", "from", "to"}.
    Expects {"success": bool, "tx_id": str | null, "error": str | null}.

    Transport failures come back as an unsuccessful TransferResult, not an
    exception: a transfer we could not confirm is a transfer that did not
    happen, as far as the ledger is concerned.
    """

    def __init__(self, base_url: str, api_key: str | None = None,
                 timeout: float = 15.0, client: httpx.Client | None = None):
        self.base = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._http = client or httpx.Client(
            base_url=self.base, headers=headers, timeout=timeout)

    def transfer(self, amount: Decimal, from_address: str,
                 to_address: str) -> TransferResult:
        body = {"amount": str(amount), "from": from_address, "to": to_address}
        try:
            resp = self._http.post("/transfers", json=body)
        except httpx.TimeoutException:
            logger.warning("signer timed out: %s -> %s (%s)",
                           from_address, to_address, amount)
            return TransferResult(success=False, error="signer timed out")
        except httpx.HTTPError as e:
            return TransferResult(success=False, error=f"signer error: {e}")

        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError):
            data = {}

        if resp.status_code >= 400 or not data.get("success"):
            error = data.get("error") or f"signer returned {resp.status_code}"
            return TransferResult(success=False, error=error)
        return TransferResult(success=True, tx_id=data.get("tx_id"))

    def close(self) -> None:
        self._http.close()
