"""
Security reference catalogs.

Two local catalogs, one per security kind, keyed by ISIN and searchable
by exchange ticker (secid). Rows are filled by the market data refresher
and read by identity resolution, price sync and valuation.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional, Protocol

from brokerledger.core.database import atomic, reading
from brokerledger.core.models import SecurityIdentity, SecurityKind

logger = logging.getLogger(__name__)


class SecurityCatalog(Protocol):
    """Lookup capability consumed by identity resolution and price sync."""

    def find_bond(self, isin: str) -> Optional[SecurityIdentity]: ...

    def find_stock(self, isin: str) -> Optional[SecurityIdentity]: ...

    def find_by_ticker(self, ticker: str) -> Optional[SecurityIdentity]: ...


@dataclass
class CatalogEntry:
    """One row of a reference catalog."""

    isin: str
    kind: SecurityKind
    secid: Optional[str] = None
    board: Optional[str] = None
    short_name: Optional[str] = None
    full_name: Optional[str] = None
    face_value: Optional[Decimal] = None
    decimals: Optional[int] = None
    prev_price: Optional[Decimal] = None
    currency: Optional[str] = None
    lot_size: Optional[int] = None
    maturity_date: Optional[date] = None
    coupon_percent: Optional[Decimal] = None

    def to_identity(self) -> SecurityIdentity:
        return SecurityIdentity(
            isin=self.isin,
            kind=self.kind,
            name=self.short_name or self.full_name,
            nominal=self.face_value if self.kind is SecurityKind.DEBT else None,
            decimals=self.decimals,
            ticker=self.secid,
            board=self.board,
            currency=self.currency,
            prev_price=self.prev_price,
        )


def _dec(value) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _str(value) -> Optional[str]:
    return str(value) if value is not None else None


class ReferenceCatalog:
    """
    SQLite-backed bond and stock catalogs.

    Usage:
        catalog = ReferenceCatalog(conn)
        catalog.upsert(CatalogEntry(isin="RU000A100733", kind=SecurityKind.DEBT, face_value=Decimal("1000")))
        identity = catalog.find_bond("RU000A100733")
    """

    _TABLES = {SecurityKind.DEBT: "bond_catalog", SecurityKind.EQUITY: "stock_catalog"}

    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    def find_bond(self, isin: str) -> Optional[SecurityIdentity]:
        entry = self.get_entry(SecurityKind.DEBT, isin)
        return entry.to_identity() if entry else None

    def find_stock(self, isin: str) -> Optional[SecurityIdentity]:
        entry = self.get_entry(SecurityKind.EQUITY, isin)
        return entry.to_identity() if entry else None

    def find(self, isin: str) -> Optional[SecurityIdentity]:
        """Look up an ISIN in the bond catalog, then the stock catalog."""
        return self.find_bond(isin) or self.find_stock(isin)

    def find_by_ticker(self, ticker: str) -> Optional[SecurityIdentity]:
        """Look up a security by exchange ticker (secid), bonds first."""
        for kind in (SecurityKind.DEBT, SecurityKind.EQUITY):
            with reading(self.conn):
                row = self.conn.execute(
                    f"SELECT * FROM {self._TABLES[kind]} WHERE UPPER(secid) = UPPER(?) LIMIT 1",
                    (ticker,),
                ).fetchone()
            if row:
                return self._row_to_entry(kind, row).to_identity()
        return None

    def get_entry(self, kind: SecurityKind, isin: str) -> Optional[CatalogEntry]:
        with reading(self.conn):
            row = self.conn.execute(
                f"SELECT * FROM {self._TABLES[kind]} WHERE isin = ?",
                (isin.upper(),),
            ).fetchone()
        return self._row_to_entry(kind, row) if row else None

    def list_entries(self, kind: SecurityKind) -> List[CatalogEntry]:
        with reading(self.conn):
            rows = self.conn.execute(f"SELECT * FROM {self._TABLES[kind]} ORDER BY isin").fetchall()
        return [self._row_to_entry(kind, row) for row in rows]

    def upsert(self, entry: CatalogEntry) -> None:
        """Insert or update a catalog row keyed by ISIN."""
        with atomic(self.conn):
            if entry.kind is SecurityKind.DEBT:
                self.conn.execute(
                    """
                    INSERT INTO bond_catalog
                        (isin, secid, board, short_name, full_name, face_value, decimals,
                         prev_price, currency, lot_size, maturity_date, coupon_percent, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(isin) DO UPDATE SET
                        secid = excluded.secid,
                        board = excluded.board,
                        short_name = excluded.short_name,
                        full_name = excluded.full_name,
                        face_value = excluded.face_value,
                        decimals = excluded.decimals,
                        prev_price = excluded.prev_price,
                        currency = excluded.currency,
                        lot_size = excluded.lot_size,
                        maturity_date = excluded.maturity_date,
                        coupon_percent = excluded.coupon_percent,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (
                        entry.isin.upper(), entry.secid, entry.board, entry.short_name, entry.full_name,
                        _str(entry.face_value), entry.decimals, _str(entry.prev_price), entry.currency,
                        entry.lot_size, entry.maturity_date.isoformat() if entry.maturity_date else None,
                        _str(entry.coupon_percent),
                    ),
                )
            else:
                self.conn.execute(
                    """
                    INSERT INTO stock_catalog
                        (isin, secid, board, short_name, full_name, decimals,
                         prev_price, currency, lot_size, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(isin) DO UPDATE SET
                        secid = excluded.secid,
                        board = excluded.board,
                        short_name = excluded.short_name,
                        full_name = excluded.full_name,
                        decimals = excluded.decimals,
                        prev_price = excluded.prev_price,
                        currency = excluded.currency,
                        lot_size = excluded.lot_size,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (
                        entry.isin.upper(), entry.secid, entry.board, entry.short_name, entry.full_name,
                        entry.decimals, _str(entry.prev_price), entry.currency, entry.lot_size,
                    ),
                )
        logger.debug(f"Catalog upsert {entry.kind.value} {entry.isin}")

    def _row_to_entry(self, kind: SecurityKind, row: sqlite3.Row) -> CatalogEntry:
        keys = row.keys()
        maturity = row["maturity_date"] if "maturity_date" in keys else None
        return CatalogEntry(
            isin=row["isin"],
            kind=kind,
            secid=row["secid"],
            board=row["board"],
            short_name=row["short_name"],
            full_name=row["full_name"],
            face_value=_dec(row["face_value"]) if "face_value" in keys else None,
            decimals=row["decimals"],
            prev_price=_dec(row["prev_price"]),
            currency=row["currency"],
            lot_size=row["lot_size"],
            maturity_date=date.fromisoformat(maturity) if maturity else None,
            coupon_percent=_dec(row["coupon_percent"]) if "coupon_percent" in keys else None,
        )
