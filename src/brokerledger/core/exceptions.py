"""
Custom exceptions for the broker ledger.

All ledger-specific exceptions inherit from LedgerError for easy catching.
Ingestion failures inherit from IngestionError and are terminal for the
current upload: nothing from a failed ingestion is committed.
"""

from datetime import date
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    def __init__(self, message: str, code: str = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items() if v is not None)
            if detail_str:
                return f"{self.message} ({detail_str})"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for callers that report errors to users."""
        return {
            "code": self.code,
            "message": self.message,
            "details": {
                k: (v.isoformat() if isinstance(v, date) else v)
                for k, v in self.details.items()
            },
        }


class DatabaseError(LedgerError):
    """Database operation errors."""

    def __init__(self, message: str, code: str = "DB_ERROR"):
        super().__init__(message, code)


class ConfigurationError(LedgerError):
    """Invalid settings file or environment override."""

    def __init__(self, message: str, key: str = None, code: str = "CONFIG_ERROR"):
        super().__init__(message, code, {"key": key})
        self.key = key


class MarketDataError(LedgerError):
    """Market data collaborator returned an unusable response."""

    def __init__(self, message: str, url: str = None, code: str = "MARKET_DATA_ERROR"):
        super().__init__(message, code, {"url": url})
        self.url = url


class PortfolioNotFoundError(LedgerError):
    """Raised when a portfolio id does not exist."""

    def __init__(self, portfolio_id: int, code: str = "PORTFOLIO_NOT_FOUND"):
        super().__init__(f"Portfolio not found: {portfolio_id}", code, {"portfolio_id": portfolio_id})
        self.portfolio_id = portfolio_id


class IngestionError(LedgerError):
    """Base class for errors that reject a statement upload."""


class MalformedStatementError(IngestionError):
    """Statement structure could not be parsed."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        row: Optional[int] = None,
        code: str = "MALFORMED_STATEMENT",
    ):
        super().__init__(message, code, {"table": table, "row": row})
        self.table = table
        self.row = row


class UnresolvedIdentityError(IngestionError):
    """No security kind could be determined for an ISIN."""

    def __init__(self, isin: str, name: Optional[str] = None, code: str = "UNRESOLVED_IDENTITY"):
        super().__init__(f"Unknown instrument isin={isin}", code, {"isin": isin, "name": name})
        self.isin = isin
        self.name = name


class UnresolvedIsinError(IngestionError):
    """A trade row names a security that matches no ISIN in the statement."""

    def __init__(self, name: str, security_code: Optional[str] = None, code: str = "UNRESOLVED_ISIN"):
        super().__init__(
            f"Cannot find ISIN for security '{name}'",
            code,
            {"name": name, "security_code": security_code},
        )
        self.name = name
        self.security_code = security_code


class DuplicateStatementError(IngestionError):
    """A statement with identical period bounds was already ingested."""

    def __init__(self, period_start: date, period_end: date, code: str = "DUPLICATE_STATEMENT"):
        super().__init__(
            f"Statement for period {period_start:%d.%m.%Y} - {period_end:%d.%m.%Y} has already been ingested",
            code,
            {"period_start": period_start, "period_end": period_end},
        )
        self.period_start = period_start
        self.period_end = period_end


class OverlappingStatementError(IngestionError):
    """A narrower statement would regress a wider one already on file."""

    def __init__(
        self,
        period_start: date,
        period_end: date,
        existing_start: date,
        existing_end: date,
        code: str = "OVERLAPPING_STATEMENT",
    ):
        super().__init__(
            f"Statement period {period_start:%d.%m.%Y} - {period_end:%d.%m.%Y} lies within "
            f"already ingested period {existing_start:%d.%m.%Y} - {existing_end:%d.%m.%Y}",
            code,
            {
                "period_start": period_start,
                "period_end": period_end,
                "existing_start": existing_start,
                "existing_end": existing_end,
            },
        )
        self.period_start = period_start
        self.period_end = period_end
        self.existing_start = existing_start
        self.existing_end = existing_end


class HoldingNotFoundError(LedgerError):
    """Raised when a portfolio holds no position in the given ISIN."""

    def __init__(self, portfolio_id: int, isin: str, code: str = "HOLDING_NOT_FOUND"):
        super().__init__(
            f"No holding of {isin} in portfolio {portfolio_id}",
            code,
            {"portfolio_id": portfolio_id, "isin": isin},
        )
        self.portfolio_id = portfolio_id
        self.isin = isin
