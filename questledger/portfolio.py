"""
Portfolio ledger. Per (quest, participant) holdings with running-average
cost basis. The only code path that mutates holdings.

Buy:
  cost = quantity * current oracle price
  existing holding: quantity += q, total_cost += cost
  new holding: entry_price = current price

Sell (quantity silently clamped to what is held):
  average_cost = total_cost / quantity
  realized_cost = sold * average_cost
  remaining total_cost = remaining * average_cost
  remaining == 0 -> row deleted

The cost basis never sees the sell price. Market movement only shows up
in current_value and, at settlement, in the end snapshot.

Every mutation on one (quest, participant, token) runs under that key's
store lock, so operations on a holding apply in submission order.

Funded mode (fund_trades=True): each trade is backed by a signer transfer
that must succeed before the ledger is touched. Otherwise trades are
simulated, as in the mock market.
"""

import logging
from datetime import datetime
from decimal import Decimal

from questledger.errors import (
    ValidationError, NotAParticipant, HoldingNotFound, TransferRejected,
    OracleUnavailable, TokenNotFound,
)
from questledger.models import (
    Holding, SellResult, LedgerTransaction, ZERO,
    TRADE_BUY, TRADE_SELL,
)


logger = logging.getLogger(__name__)


def require_positive(quantity: Decimal, what: str = "quantity") -> Decimal:
    if not isinstance(quantity, Decimal):
        raise ValidationError(f"{what} must be a Decimal",
                              kind="invalid_quantity")
    if not quantity.is_finite() or quantity <= ZERO:
        raise ValidationError(f"{what} must be positive, got {quantity}",
                              kind="invalid_quantity")
    return quantity


class PortfolioLedger:

    def __init__(self, store, oracle, signer=None, fund_trades: bool = False):
        if fund_trades and signer is None:
            raise ValueError("funded trading needs a signer")
        self.store = store
        self.oracle = oracle
        self.signer = signer
        self.fund_trades = fund_trades

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def buy(self, quest_id: str, participant_id: str, token_id: str,
            quantity: Decimal, now: datetime, treasury: str = "") -> Holding:
        """
        Buy `quantity` of a token at the current oracle price.
        Raises NotAParticipant, OracleUnavailable, TransferRejected.
        """
        require_positive(quantity)
        self._require_entry(quest_id, participant_id)

        with self.store.locked(quest_id, participant_id, token_id):
            price = self.oracle.price(token_id)
            cost = quantity * price
            tx_id = self._fund(cost, participant_id, treasury)
            holding = self._apply_buy(
                quest_id, participant_id, token_id, quantity, price, now)
            self.store.append_transaction(LedgerTransaction.new(
                participant_id=participant_id,
                quest_id=quest_id,
                type=TRADE_BUY,
                amount=cost,
                token_id=token_id,
                quantity=quantity,
                external_tx_id=tx_id,
                created_at=now,
            ))

        logger.debug("quest %s: %s bought %s %s @ %s", quest_id,
                     participant_id, quantity, token_id, price)
        return holding

    def sell(self, quest_id: str, participant_id: str, token_id: str,
             quantity: Decimal, now: datetime,
             treasury: str = "") -> SellResult:
        """
        Sell up to `quantity`. Requests beyond the held quantity are
        clamped, and the result says so.
        Raises HoldingNotFound, TransferRejected.
        """
        require_positive(quantity)

        with self.store.locked(quest_id, participant_id, token_id):
            holding = self.store.get_holding(
                quest_id, participant_id, token_id)
            if holding is None:
                raise HoldingNotFound(
                    f"participant {participant_id} holds no {token_id} "
                    f"in quest {quest_id}")

            held = holding.quantity
            sold = min(quantity, held)
            average_cost = holding.total_cost / held
            remaining = held - sold
            realized_cost = holding.total_cost if remaining == ZERO \
                else sold * average_cost

            price = self._price_or_last_known(holding)
            proceeds = sold * price
            tx_id = None
            if self.fund_trades and proceeds > ZERO:
                tx_id = self._transfer(proceeds, treasury, participant_id)

            if remaining == ZERO:
                self.store.delete_holding(quest_id, participant_id, token_id)
                kept = None
            else:
                holding.quantity = remaining
                holding.total_cost = remaining * average_cost
                holding.current_value = remaining * price
                holding.updated_at = now
                self.store.put_holding(holding)
                kept = holding

            self.store.append_transaction(LedgerTransaction.new(
                participant_id=participant_id,
                quest_id=quest_id,
                type=TRADE_SELL,
                amount=proceeds,
                token_id=token_id,
                quantity=sold,
                external_tx_id=tx_id,
                created_at=now,
            ))

        if sold < quantity:
            logger.info("quest %s: sell of %s %s by %s clamped to %s",
                        quest_id, quantity, token_id, participant_id, sold)
        return SellResult(
            holding=kept,
            token_id=token_id,
            requested=quantity,
            sold=sold,
            realized_cost=realized_cost,
            proceeds=proceeds,
            clamped=sold < quantity,
        )

    def submit_portfolio(self, quest_id: str, participant_id: str,
                         selections: list[tuple[str, Decimal]],
                         now: datetime, treasury: str = "") -> list[Holding]:
        """
        Buy a whole basket at once. All-or-nothing: every quantity is
        validated and every price resolved before the first holding
        changes. Repeated token ids are merged.
        """
        if not selections:
            raise ValidationError("portfolio is empty",
                                  kind="invalid_request")
        merged: dict[str, Decimal] = {}
        for token_id, quantity in selections:
            require_positive(quantity)
            merged[token_id] = merged.get(token_id, ZERO) + quantity
        self._require_entry(quest_id, participant_id)

        prices = {tid: self.oracle.price(tid) for tid in merged}
        total = sum((merged[tid] * prices[tid] for tid in merged), ZERO)
        tx_id = self._fund(total, participant_id, treasury)

        holdings = []
        for token_id, quantity in merged.items():
            with self.store.locked(quest_id, participant_id, token_id):
                holdings.append(self._apply_buy(
                    quest_id, participant_id, token_id, quantity,
                    prices[token_id], now))
                self.store.append_transaction(LedgerTransaction.new(
                    participant_id=participant_id,
                    quest_id=quest_id,
                    type=TRADE_BUY,
                    amount=quantity * prices[token_id],
                    token_id=token_id,
                    quantity=quantity,
                    external_tx_id=tx_id,
                    created_at=now,
                ))
        logger.info("quest %s: %s submitted %d-token portfolio (%s)",
                    quest_id, participant_id, len(merged), total)
        return holdings

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_portfolio(self, quest_id: str, participant_id: str,
                      token_order: list[str] | None = None,
                      revalue: bool = True) -> list[Holding]:
        """
        Holdings of one participant. With revalue, current_value is
        refreshed from the oracle where it answers; otherwise the last
        known value stands.
        """
        order = {tid: i for i, tid in enumerate(token_order or [])}
        holdings = sorted(
            self.store.holdings_for(quest_id, participant_id),
            key=lambda h: (order.get(h.token_id, len(order)), h.token_id),
        )
        if revalue:
            for h in holdings:
                with self.store.locked(*h.key):
                    try:
                        h.current_value = h.quantity * \
                            self.oracle.price(h.token_id)
                    except (OracleUnavailable, TokenNotFound):
                        pass
        return holdings

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_entry(self, quest_id: str, participant_id: str) -> None:
        if self.store.get_entry(quest_id, participant_id) is None:
            raise NotAParticipant(
                f"participant {participant_id} has not joined "
                f"quest {quest_id}")

    def _apply_buy(self, quest_id: str, participant_id: str, token_id: str,
                   quantity: Decimal, price: Decimal,
                   now: datetime) -> Holding:
        """Caller holds the key lock."""
        cost = quantity * price
        holding = self.store.get_holding(quest_id, participant_id, token_id)
        if holding is not None:
            holding.quantity += quantity
            holding.total_cost += cost
            holding.current_value = holding.quantity * price
            holding.updated_at = now
        else:
            holding = Holding(
                quest_id=quest_id,
                participant_id=participant_id,
                token_id=token_id,
                quantity=quantity,
                total_cost=cost,
                entry_price=price,
                current_value=cost,
                created_at=now,
                updated_at=now,
            )
        self.store.put_holding(holding)
        return holding

    def _price_or_last_known(self, holding: Holding) -> Decimal:
        try:
            return self.oracle.price(holding.token_id)
        except (OracleUnavailable, TokenNotFound) as e:
            logger.warning("pricing sell of %s at last known value: %s",
                           holding.token_id, e.reason)
            return holding.current_value / holding.quantity

    def _fund(self, amount: Decimal, participant_id: str,
              treasury: str) -> str | None:
        if not self.fund_trades or amount == ZERO:
            return None
        return self._transfer(amount, participant_id, treasury)

    def _transfer(self, amount: Decimal, from_address: str,
                  to_address: str) -> str | None:
        result = self.signer.transfer(amount, from_address, to_address)
        if not result.success:
            logger.warning("transfer %s -> %s of %s rejected: %s",
                           from_address, to_address, amount, result.error)
            raise TransferRejected(
                f"transfer of {amount} from {from_address} to "
                f"{to_address} rejected: {result.error}")
        return result.tx_id
