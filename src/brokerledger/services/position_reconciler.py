"""
Position Reconciler - current holdings and weighted-average cost basis.

Holdings are derived in one of two ways:
- Snapshot replace: the end-of-period positions of the latest statement
  replace the portfolio's holdings wholesale.
- Transaction-driven: quantities are the signed sum of all recorded trades.

Average purchase price is always computed from BUY trades:

    avg = sum(price * quantity) / sum(quantity)

rounded half-up to 6 fractional digits. SELL trades never change it.
Average prices of debt instruments are in the trade's quoting unit
(percent of nominal).
"""

import logging
import sqlite3
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from brokerledger.core.database import atomic, reading
from brokerledger.core.exceptions import HoldingNotFoundError
from brokerledger.core.models import (
    EndOfPeriodHolding,
    Holding,
    SecurityKind,
    Transaction,
    TradeSide,
    round_price,
)

logger = logging.getLogger(__name__)


def weighted_average_price(trades: Iterable[Transaction]) -> Optional[Decimal]:
    """Weighted average price of the BUY trades, None if there are none."""
    total_cost = Decimal("0")
    total_qty = Decimal("0")
    for trade in trades:
        if trade.side is not TradeSide.BUY:
            continue
        total_cost += trade.price * trade.quantity
        total_qty += trade.quantity
    if total_qty <= 0:
        return None
    return round_price(total_cost / total_qty)


def _dec(value) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


@dataclass
class _Position:
    """Accumulator used while rebuilding holdings."""
    isin: str
    kind: SecurityKind
    quantity: Decimal
    security_name: Optional[str] = None
    currency: Optional[str] = None
    price: Optional[Decimal] = None
    price_is_percent: bool = False


class PositionReconciler:
    """
    Maintains the holdings table of a portfolio.

    All public methods are idempotent. Writes run inside atomic() and reads
    inside reading(); when called from an enclosing atomic() block they
    join that transaction.
    """

    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current_holdings(self, portfolio_id: int) -> List[Holding]:
        """Holdings with positive quantity, ordered by ISIN."""
        return [h for h in self._load(portfolio_id) if h.quantity > 0]

    def get_holding(self, portfolio_id: int, isin: str) -> Optional[Holding]:
        with reading(self.conn):
            row = self.conn.execute(
                "SELECT * FROM holdings WHERE portfolio_id = ? AND isin = ?",
                (portfolio_id, isin),
            ).fetchone()
        return self._row_to_holding(row) if row else None

    def holdings_requiring_price_input(self, portfolio_id: int) -> List[Holding]:
        """Held positions without an average purchase price."""
        return [h for h in self.current_holdings(portfolio_id) if h.average_price is None]

    # ------------------------------------------------------------------
    # Snapshot path
    # ------------------------------------------------------------------

    def replace_from_snapshot(self, portfolio_id: int, snapshot: List[EndOfPeriodHolding]) -> int:
        """
        Replace all holdings with an end-of-period snapshot.

        Average prices survive for ISINs present before and after. The last
        known price comes from the snapshot when it has one, otherwise the
        previous value is kept. Rows of the same ISIN are summed.

        Returns:
            Number of holdings written
        """
        merged: "OrderedDict[str, _Position]" = OrderedDict()
        for item in snapshot:
            if item.quantity <= 0:
                continue
            position = merged.get(item.isin)
            if position is None:
                merged[item.isin] = _Position(
                    isin=item.isin,
                    kind=item.kind,
                    quantity=item.quantity,
                    security_name=item.security_name,
                    currency=item.currency,
                    price=item.price,
                    price_is_percent=item.price_is_percent,
                )
            else:
                position.quantity += item.quantity
                if item.price is not None:
                    position.price = item.price
                    position.price_is_percent = item.price_is_percent

        with atomic(self.conn):
            previous = {h.isin: h for h in self._load(portfolio_id)}
            self.conn.execute("DELETE FROM holdings WHERE portfolio_id = ?", (portfolio_id,))
            for position in merged.values():
                self._insert(portfolio_id, position, previous.get(position.isin))

        logger.info(f"Portfolio {portfolio_id}: {len(merged)} holdings replaced from snapshot")
        return len(merged)

    # ------------------------------------------------------------------
    # Transaction path
    # ------------------------------------------------------------------

    def recompute_cost_basis(self, portfolio_id: int) -> Dict[str, Decimal]:
        """
        Recompute average prices from every BUY trade of the portfolio.

        ISINs without BUY trades keep whatever average they had.

        Returns:
            Mapping of ISIN to the new average price
        """
        totals: Dict[str, List[Decimal]] = {}
        with atomic(self.conn):
            rows = self.conn.execute(
                "SELECT isin, quantity, price FROM transactions WHERE portfolio_id = ? AND side = 'BUY'",
                (portfolio_id,),
            ).fetchall()
            for row in rows:
                qty, price = Decimal(row["quantity"]), Decimal(row["price"])
                cost_qty = totals.setdefault(row["isin"], [Decimal("0"), Decimal("0")])
                cost_qty[0] += price * qty
                cost_qty[1] += qty

            averages = {
                isin: round_price(cost / qty)
                for isin, (cost, qty) in totals.items()
                if qty > 0
            }

            for isin, average in averages.items():
                self.conn.execute(
                    """
                    UPDATE holdings SET average_price = ?, updated_at = ?
                    WHERE portfolio_id = ? AND isin = ?
                    """,
                    (str(average), _now(), portfolio_id, isin),
                )

        logger.debug(f"Portfolio {portfolio_id}: cost basis recomputed for {len(averages)} ISINs")
        return averages

    def rebuild_from_trades(self, portfolio_id: int) -> int:
        """
        Rebuild holdings from the signed sum of all trades.

        ISINs netting to zero or below are dropped. Average and last known
        prices carry over, then the cost basis is recomputed.

        Returns:
            Number of holdings written
        """
        positions: "OrderedDict[str, _Position]" = OrderedDict()
        with reading(self.conn):
            rows = self.conn.execute(
                """
                SELECT isin, security_kind, security_name, currency, side, quantity
                FROM transactions WHERE portfolio_id = ?
                ORDER BY trade_date, trade_time, id
                """,
                (portfolio_id,),
            ).fetchall()
        for row in rows:
            signed = Decimal(row["quantity"]) * TradeSide(row["side"]).sign
            position = positions.get(row["isin"])
            if position is None:
                positions[row["isin"]] = _Position(
                    isin=row["isin"],
                    kind=SecurityKind(row["security_kind"]),
                    quantity=signed,
                    security_name=row["security_name"],
                    currency=row["currency"],
                )
            else:
                position.quantity += signed
                position.security_name = row["security_name"] or position.security_name

        held = [p for p in positions.values() if p.quantity > 0]

        with atomic(self.conn):
            previous = {h.isin: h for h in self._load(portfolio_id)}
            self.conn.execute("DELETE FROM holdings WHERE portfolio_id = ?", (portfolio_id,))
            for position in held:
                self._insert(portfolio_id, position, previous.get(position.isin))
            self.recompute_cost_basis(portfolio_id)

        logger.info(f"Portfolio {portfolio_id}: {len(held)} holdings rebuilt from trades")
        return len(held)

    def apply_trade(self, portfolio_id: int, trade: Transaction) -> Optional[Holding]:
        """
        Apply one trade to the current holding.

        A BUY blends into the existing average with the existing position as
        one term and the trade as the other. A SELL reduces the quantity and
        leaves the average untouched; the holding is removed at zero.

        Returns:
            The updated holding, None if the position was closed
        """
        with atomic(self.conn):
            existing = self.get_holding(portfolio_id, trade.isin)

            if trade.side is TradeSide.BUY:
                if existing is None:
                    self._insert(portfolio_id, _Position(
                        isin=trade.isin,
                        kind=trade.kind,
                        quantity=trade.quantity,
                        security_name=trade.security_name,
                        currency=trade.currency,
                    ), None)
                    self._set_average(portfolio_id, trade.isin, round_price(trade.price))
                else:
                    if existing.average_price is None or existing.quantity <= 0:
                        average = round_price(trade.price)
                    else:
                        total_qty = existing.quantity + trade.quantity
                        average = round_price(
                            (existing.average_price * existing.quantity + trade.price * trade.quantity) / total_qty
                        )
                    self._set_quantity(portfolio_id, trade.isin, existing.quantity + trade.quantity)
                    self._set_average(portfolio_id, trade.isin, average)
            else:
                if existing is None:
                    logger.warning(f"SELL of {trade.isin} without a holding in portfolio {portfolio_id}")
                    return None
                remaining = existing.quantity - trade.quantity
                if remaining <= 0:
                    self.conn.execute(
                        "DELETE FROM holdings WHERE portfolio_id = ? AND isin = ?",
                        (portfolio_id, trade.isin),
                    )
                    return None
                self._set_quantity(portfolio_id, trade.isin, remaining)

            return self.get_holding(portfolio_id, trade.isin)

    def set_average_price(self, portfolio_id: int, isin: str, price: Decimal) -> Holding:
        """
        Set the average purchase price by hand.

        Raises:
            HoldingNotFoundError: If the portfolio does not hold isin
        """
        with atomic(self.conn):
            if self.get_holding(portfolio_id, isin) is None:
                raise HoldingNotFoundError(portfolio_id, isin)
            self._set_average(portfolio_id, isin, round_price(price))
            return self.get_holding(portfolio_id, isin)

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    def _load(self, portfolio_id: int) -> List[Holding]:
        with reading(self.conn):
            rows = self.conn.execute(
                "SELECT * FROM holdings WHERE portfolio_id = ? ORDER BY isin",
                (portfolio_id,),
            ).fetchall()
        return [self._row_to_holding(row) for row in rows]

    def _insert(self, portfolio_id: int, position: _Position, previous: Optional[Holding]) -> None:
        average = previous.average_price if previous else None
        if position.price is not None:
            last_price, is_percent, price_at = position.price, position.price_is_percent, _now()
        elif previous is not None:
            last_price = previous.last_known_price
            is_percent = previous.price_is_percent
            price_at = previous.price_updated_at.isoformat(timespec="seconds") if previous.price_updated_at else None
        else:
            last_price, is_percent, price_at = None, False, None

        self.conn.execute(
            """
            INSERT INTO holdings (
                portfolio_id, isin, security_kind, security_name, currency, quantity,
                average_price, last_known_price, price_is_percent, price_updated_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                portfolio_id,
                position.isin,
                position.kind.value,
                position.security_name or (previous.security_name if previous else None),
                position.currency or (previous.currency if previous else None),
                str(position.quantity),
                str(average) if average is not None else None,
                str(last_price) if last_price is not None else None,
                is_percent,
                price_at,
                _now(),
            ),
        )

    def _set_average(self, portfolio_id: int, isin: str, average: Decimal) -> None:
        self.conn.execute(
            "UPDATE holdings SET average_price = ?, updated_at = ? WHERE portfolio_id = ? AND isin = ?",
            (str(average), _now(), portfolio_id, isin),
        )

    def _set_quantity(self, portfolio_id: int, isin: str, quantity: Decimal) -> None:
        self.conn.execute(
            "UPDATE holdings SET quantity = ?, updated_at = ? WHERE portfolio_id = ? AND isin = ?",
            (str(quantity), _now(), portfolio_id, isin),
        )

    @staticmethod
    def _row_to_holding(row: sqlite3.Row) -> Holding:
        return Holding(
            id=row["id"],
            portfolio_id=row["portfolio_id"],
            isin=row["isin"],
            kind=SecurityKind(row["security_kind"]),
            quantity=Decimal(row["quantity"]),
            average_price=_dec(row["average_price"]),
            last_known_price=_dec(row["last_known_price"]),
            security_name=row["security_name"],
            currency=row["currency"],
            price_is_percent=bool(row["price_is_percent"]),
            price_updated_at=datetime.fromisoformat(row["price_updated_at"]) if row["price_updated_at"] else None,
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
        )
