"""
Core data models for the broker ledger.

Monetary values are Decimal; prices are rounded with ROUND_HALF_UP.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional


PRICE_QUANT = Decimal("0.000001")
MONEY_QUANT = Decimal("0.01")

ISIN_PATTERN = re.compile(r"^[A-Z]{2}[A-Z0-9]{9}[0-9]$")


def is_isin_shaped(value: Optional[str]) -> bool:
    """True if value looks like an ISIN (country prefix, 9 chars, check digit)."""
    if not value:
        return False
    return bool(ISIN_PATTERN.match(value.strip().upper()))


def round_price(value: Decimal) -> Decimal:
    """Round a unit price to 6 fractional digits, half-up."""
    return value.quantize(PRICE_QUANT, rounding=ROUND_HALF_UP)


def round_money(value: Decimal) -> Decimal:
    """Round a display amount to 2 fractional digits, half-up."""
    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def percent_of_nominal(percent: Decimal, nominal: Decimal) -> Decimal:
    """Convert a debt quote in percent of nominal to an absolute price."""
    return round_price(percent * nominal / Decimal("100"))


class SecurityKind(Enum):
    """Kind of instrument, decides how prices are quoted."""
    EQUITY = "EQUITY"
    DEBT = "DEBT"


class TradeSide(Enum):
    """Direction of an executed trade."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def sign(self) -> int:
        return 1 if self is TradeSide.BUY else -1


@dataclass(frozen=True)
class ReportingPeriod:
    """Inclusive date range covered by a statement."""

    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Period start {self.start} is after end {self.end}")

    def overlaps(self, other: "ReportingPeriod") -> bool:
        return self.start <= other.end and self.end >= other.start

    def contains(self, other: "ReportingPeriod") -> bool:
        """True if other lies entirely within this period (equality included)."""
        return self.start <= other.start and other.end <= self.end

    def strictly_within(self, other: "ReportingPeriod") -> bool:
        """True if this period is contained in other but not equal to it."""
        return other.contains(self) and self != other

    @property
    def is_single_day(self) -> bool:
        return self.start == self.end

    def __str__(self) -> str:
        return f"{self.start:%d.%m.%Y} - {self.end:%d.%m.%Y}"


@dataclass(frozen=True)
class SecurityIdentity:
    """Canonical identity of a security."""

    isin: str
    kind: SecurityKind
    name: Optional[str] = None
    nominal: Optional[Decimal] = None
    decimals: Optional[int] = None
    ticker: Optional[str] = None
    board: Optional[str] = None
    currency: Optional[str] = None
    prev_price: Optional[Decimal] = None

    @property
    def is_debt(self) -> bool:
        return self.kind is SecurityKind.DEBT


@dataclass(frozen=True)
class Transaction:
    """An executed trade as stated by the broker."""

    isin: str
    kind: SecurityKind
    trade_date: date
    side: TradeSide
    quantity: Decimal
    price: Decimal
    settlement_date: Optional[date] = None
    trade_time: Optional[time] = None
    currency: Optional[str] = None
    amount: Decimal = Decimal("0")
    accrued_interest: Decimal = Decimal("0")
    broker_commission: Decimal = Decimal("0")
    exchange_commission: Decimal = Decimal("0")
    trade_number: Optional[str] = None
    security_name: Optional[str] = None

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError(f"Trade quantity must be positive, got {self.quantity}")

    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity * self.side.sign


@dataclass(frozen=True)
class CashMovement:
    """Credit or debit on the brokerage cash account."""

    movement_date: date
    currency: Optional[str] = None
    credit: Decimal = Decimal("0")
    debit: Decimal = Decimal("0")
    venue: Optional[str] = None
    description: Optional[str] = None
    statement_id: Optional[int] = None

    @property
    def net(self) -> Decimal:
        return self.credit - self.debit


@dataclass(frozen=True)
class EndOfPeriodHolding:
    """Position snapshot at the statement's closing date."""

    isin: str
    kind: SecurityKind
    quantity: Decimal
    security_name: Optional[str] = None
    currency: Optional[str] = None
    price: Optional[Decimal] = None
    # True when a debt price could not be converted for lack of a nominal
    price_is_percent: bool = False


@dataclass
class ParsedStatement:
    """Structured content of one broker statement."""

    period: ReportingPeriod
    created_on: Optional[date] = None
    counterparty: Optional[str] = None
    contract_id: Optional[str] = None
    source_name: Optional[str] = None
    transactions: List[Transaction] = field(default_factory=list)
    cash_movements: List[CashMovement] = field(default_factory=list)
    holdings: List[EndOfPeriodHolding] = field(default_factory=list)
    security_hints: Dict[str, SecurityKind] = field(default_factory=dict)


@dataclass
class Holding:
    """Current position of a portfolio in one security."""

    portfolio_id: int
    isin: str
    kind: SecurityKind
    quantity: Decimal
    average_price: Optional[Decimal] = None
    last_known_price: Optional[Decimal] = None
    security_name: Optional[str] = None
    currency: Optional[str] = None
    price_is_percent: bool = False
    price_updated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def cost(self) -> Optional[Decimal]:
        if self.average_price is None:
            return None
        return self.average_price * self.quantity


@dataclass
class StatementRecord:
    """Metadata of an ingested statement."""

    portfolio_id: int
    period: ReportingPeriod
    created_on: Optional[date] = None
    counterparty: Optional[str] = None
    contract_id: Optional[str] = None
    source_name: Optional[str] = None
    source_digest: Optional[str] = None
    uploaded_by: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class IngestionSummary:
    """Outcome of one successful statement ingestion."""

    statement_id: int
    portfolio_id: int
    period: ReportingPeriod
    transactions_parsed: int = 0
    transactions_inserted: int = 0
    transactions_skipped: int = 0
    cash_movements_inserted: int = 0
    cash_movements_superseded: int = 0
    holdings_replaced: bool = False
    holdings_count: int = 0
    warnings: List[str] = field(default_factory=list)
