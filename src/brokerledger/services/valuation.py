"""
Portfolio valuation.

Values every holding at its last known price (falling back to the
catalog's previous close), compares with the purchase value and adds
the free cash balance from ingested cash movements.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from brokerledger.core.database import reading
from brokerledger.core.models import Holding, SecurityKind, percent_of_nominal, round_money
from brokerledger.services.position_reconciler import PositionReconciler
from brokerledger.services.reference_catalog import SecurityCatalog

logger = logging.getLogger(__name__)


@dataclass
class PositionValue:
    """Valuation of a single holding."""
    isin: str
    kind: SecurityKind
    name: str
    quantity: Decimal
    current_price: Optional[Decimal] = None
    current_value: Optional[Decimal] = None
    previous_value: Optional[Decimal] = None
    purchase_value: Optional[Decimal] = None
    total_return: Optional[Decimal] = None
    total_return_percent: Optional[Decimal] = None
    decimals: Optional[int] = None


@dataclass
class PortfolioValue:
    """Valuation of a whole portfolio."""
    portfolio_id: int
    positions: List[PositionValue] = field(default_factory=list)
    cash_balance: Decimal = Decimal("0")
    total_value: Decimal = Decimal("0")
    previous_total_value: Decimal = Decimal("0")
    purchase_value: Decimal = Decimal("0")

    @property
    def daily_change(self) -> Decimal:
        return self.total_value - self.previous_total_value

    @property
    def daily_change_percent(self) -> Decimal:
        if self.previous_total_value <= 0:
            return Decimal("0")
        return round_money(self.daily_change / self.previous_total_value * 100)


class PortfolioValuationService:
    """Computes PortfolioValue from holdings, catalog and cash movements."""

    def __init__(self, db_connection: sqlite3.Connection, catalog: SecurityCatalog):
        self.conn = db_connection
        self.catalog = catalog
        self.reconciler = PositionReconciler(db_connection)

    def value(self, portfolio_id: int) -> PortfolioValue:
        result = PortfolioValue(portfolio_id=portfolio_id)

        # holdings and cash from the same committed state
        with reading(self.conn):
            holdings = self.reconciler.current_holdings(portfolio_id)
            cash_balance = self.cash_balance(portfolio_id)

        for holding in holdings:
            position = self._value_position(holding)
            result.positions.append(position)
            if position.current_value is not None:
                result.total_value += position.current_value
            if position.previous_value is not None:
                result.previous_total_value += position.previous_value
            if position.purchase_value is not None:
                result.purchase_value += position.purchase_value

        result.cash_balance = cash_balance
        result.total_value += result.cash_balance
        result.previous_total_value += result.cash_balance

        # Equities first, then debt; by name within each kind
        result.positions.sort(key=lambda p: (p.kind is not SecurityKind.EQUITY, p.name))
        return result

    def cash_balance(self, portfolio_id: int) -> Decimal:
        """Sum of credits minus debits over all stored cash movements."""
        balance = Decimal("0")
        with reading(self.conn):
            rows = self.conn.execute(
                "SELECT credit, debit FROM cash_movements WHERE portfolio_id = ?", (portfolio_id,)
            ).fetchall()
        for row in rows:
            balance += Decimal(row["credit"]) - Decimal(row["debit"])
        return round_money(balance)

    def _value_position(self, holding: Holding) -> PositionValue:
        identity = (
            self.catalog.find_bond(holding.isin) if holding.kind is SecurityKind.DEBT
            else self.catalog.find_stock(holding.isin)
        )
        nominal = identity.nominal if identity else None

        current_price = holding.last_known_price
        if current_price is not None and holding.price_is_percent:
            current_price = percent_of_nominal(current_price, nominal) if nominal else None
        previous_price = identity.prev_price if identity else None
        if holding.kind is SecurityKind.DEBT and previous_price is not None:
            previous_price = percent_of_nominal(previous_price, nominal) if nominal else None
        if current_price is None:
            current_price = previous_price

        position = PositionValue(
            isin=holding.isin,
            kind=holding.kind,
            name=holding.security_name or (identity.name if identity else None) or holding.isin,
            quantity=holding.quantity,
            current_price=current_price,
            decimals=identity.decimals if identity else None,
        )

        if current_price is not None:
            position.current_value = round_money(current_price * holding.quantity)
        if previous_price is not None:
            position.previous_value = round_money(previous_price * holding.quantity)

        average = holding.average_price
        if average is not None and holding.kind is SecurityKind.DEBT:
            # Debt averages come from trade prices in percent of nominal
            average = percent_of_nominal(average, nominal) if nominal else None
        if average is not None:
            position.purchase_value = round_money(average * holding.quantity)

        if position.current_value is not None and position.purchase_value:
            position.total_return = position.current_value - position.purchase_value
            position.total_return_percent = round_money(
                position.total_return / position.purchase_value * 100
            )
        return position
