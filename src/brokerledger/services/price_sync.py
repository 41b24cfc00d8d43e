"""
Price Sync - refreshes last known prices of held securities.

Holdings of every portfolio are grouped by (board, ticker) so each
ticker is quoted once, however many portfolios hold it. Debt quotes
are percent of nominal and are converted to an absolute price with the
catalog's face value. A price is written only when it changed.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Tuple

from brokerledger.core.database import atomic, reading
from brokerledger.core.models import SecurityIdentity, SecurityKind, percent_of_nominal
from brokerledger.services.market.moex import BOND_BOARDS, DEFAULT_EQUITY_BOARD
from brokerledger.services.reference_catalog import SecurityCatalog

logger = logging.getLogger(__name__)


class QuoteProvider(Protocol):
    """Price lookup by symbol."""

    def get_quote(self, market: str, ticker: str) -> Optional[Decimal]: ...


@dataclass
class PriceSyncResult:
    """Outcome of one sync run."""
    skipped: bool = False
    tickers_quoted: int = 0
    holdings_updated: int = 0
    holdings_unchanged: int = 0
    holdings_without_ticker: int = 0
    failed_tickers: List[str] = field(default_factory=list)


@dataclass
class _Target:
    holding_id: int
    isin: str
    identity: SecurityIdentity
    last_known_price: Optional[Decimal]
    price_is_percent: bool


class PriceSyncJob:
    """
    Single-flight price refresher.

    A run started while another is still in progress returns immediately
    with skipped=True.

    Usage:
        job = PriceSyncJob(conn, ReferenceCatalog(conn), MoexIssClient())
        result = job.run()
    """

    def __init__(
        self,
        db_connection: sqlite3.Connection,
        catalog: SecurityCatalog,
        quotes: QuoteProvider,
        equity_board: str = DEFAULT_EQUITY_BOARD,
        bond_board: str = BOND_BOARDS[0],
    ):
        self.conn = db_connection
        self.catalog = catalog
        self.quotes = quotes
        self.equity_board = equity_board
        self.bond_board = bond_board
        self._running = threading.Lock()

    def run(self) -> PriceSyncResult:
        if not self._running.acquire(blocking=False):
            logger.info("Price sync already running, skipping this run")
            return PriceSyncResult(skipped=True)
        try:
            return self._sync()
        finally:
            self._running.release()

    def _sync(self) -> PriceSyncResult:
        result = PriceSyncResult()
        groups = self._group_by_ticker(result)

        for (board, ticker), targets in groups.items():
            key = f"{board}:{ticker}"
            try:
                quote = self.quotes.get_quote(board, ticker)
            except Exception as e:
                # A failing ticker must not abort the run
                logger.warning(f"Quote request for {key} failed: {e}")
                quote = None
            if quote is None:
                result.failed_tickers.append(key)
                continue

            result.tickers_quoted += 1
            with atomic(self.conn):
                for target in targets:
                    if self._apply(target, quote):
                        result.holdings_updated += 1
                    else:
                        result.holdings_unchanged += 1

        logger.info(
            f"Price sync: {result.tickers_quoted} tickers quoted, {result.holdings_updated} holdings updated, "
            f"{len(result.failed_tickers)} tickers failed, {result.holdings_without_ticker} holdings without ticker"
        )
        return result

    def _group_by_ticker(self, result: PriceSyncResult) -> Dict[Tuple[str, str], List[_Target]]:
        groups: Dict[Tuple[str, str], List[_Target]] = {}
        with reading(self.conn):
            rows = self.conn.execute(
                "SELECT id, isin, security_kind, quantity, last_known_price, price_is_percent FROM holdings"
            ).fetchall()

        for row in rows:
            if Decimal(row["quantity"]) <= 0:
                continue
            kind = SecurityKind(row["security_kind"])
            identity = self._identity(row["isin"], kind)
            if identity is None or not identity.ticker:
                result.holdings_without_ticker += 1
                logger.debug(f"No ticker for {row['isin']}, price not synced")
                continue

            board = identity.board or (self.bond_board if identity.is_debt else self.equity_board)
            groups.setdefault((board, identity.ticker), []).append(_Target(
                holding_id=row["id"],
                isin=row["isin"],
                identity=identity,
                last_known_price=Decimal(row["last_known_price"]) if row["last_known_price"] else None,
                price_is_percent=bool(row["price_is_percent"]),
            ))
        return groups

    def _identity(self, isin: str, kind: SecurityKind) -> Optional[SecurityIdentity]:
        if kind is SecurityKind.DEBT:
            return self.catalog.find_bond(isin) or self.catalog.find_stock(isin)
        return self.catalog.find_stock(isin) or self.catalog.find_bond(isin)

    def _apply(self, target: _Target, quote: Decimal) -> bool:
        price, is_percent = quote, False
        if target.identity.is_debt:
            if target.identity.nominal:
                price = percent_of_nominal(quote, target.identity.nominal)
            else:
                logger.warning(f"No nominal for bond {target.isin}, price kept in percent")
                is_percent = True

        if target.last_known_price == price and target.price_is_percent == is_percent:
            return False

        self.conn.execute(
            """
            UPDATE holdings
            SET last_known_price = ?, price_is_percent = ?, price_updated_at = ?
            WHERE id = ?
            """,
            (str(price), is_percent, datetime.now().isoformat(timespec="seconds"), target.holding_id),
        )
        logger.debug(f"{target.isin}: {target.last_known_price} -> {price}")
        return True
