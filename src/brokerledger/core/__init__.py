"""
Core module - Foundation components for the broker ledger.

Provides:
- DatabaseManager / atomic / reading: SQLite connection, transactions and guarded reads
- Data models: SecurityIdentity, Transaction, Holding, ParsedStatement, ...
- Exceptions: LedgerError hierarchy
- LedgerSettings: defaults, JSON settings file, environment overrides
"""

from brokerledger.core.database import DatabaseManager, atomic, get_connection, reading
from brokerledger.core.exceptions import (
    LedgerError,
    DatabaseError,
    ConfigurationError,
    MarketDataError,
    PortfolioNotFoundError,
    HoldingNotFoundError,
    IngestionError,
    MalformedStatementError,
    UnresolvedIdentityError,
    UnresolvedIsinError,
    DuplicateStatementError,
    OverlappingStatementError,
)
from brokerledger.core.models import (
    SecurityKind,
    TradeSide,
    ReportingPeriod,
    SecurityIdentity,
    Transaction,
    CashMovement,
    EndOfPeriodHolding,
    ParsedStatement,
    Holding,
    StatementRecord,
    IngestionSummary,
)
from brokerledger.core.settings import LedgerSettings

__all__ = [
    "DatabaseManager",
    "atomic",
    "reading",
    "get_connection",
    "LedgerError",
    "DatabaseError",
    "ConfigurationError",
    "MarketDataError",
    "PortfolioNotFoundError",
    "HoldingNotFoundError",
    "IngestionError",
    "MalformedStatementError",
    "UnresolvedIdentityError",
    "UnresolvedIsinError",
    "DuplicateStatementError",
    "OverlappingStatementError",
    "SecurityKind",
    "TradeSide",
    "ReportingPeriod",
    "SecurityIdentity",
    "Transaction",
    "CashMovement",
    "EndOfPeriodHolding",
    "ParsedStatement",
    "Holding",
    "StatementRecord",
    "IngestionSummary",
    "LedgerSettings",
]
