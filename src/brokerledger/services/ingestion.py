"""
Statement ingestion.

One upload is one unit of work:

1. parse the document (identities resolved while parsing)
2. reject an exact period duplicate
3. reject a period strictly inside an already ingested one
4. record the statement
5. store trades, skipping trade numbers already on file
6. replace cash movements of statements the new period fully contains
7. when the statement is the latest, replace holdings from its snapshot
   and recompute cost basis

Steps 2-7 run in one database transaction while holding the portfolio's
lock. Parsing finishes before anything is written, so a failure at any
step leaves the ledger untouched.
"""

import logging
import sqlite3
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Tuple

from brokerledger.core.database import atomic, reading
from brokerledger.core.exceptions import DuplicateStatementError, OverlappingStatementError
from brokerledger.core.locks import PortfolioLocks
from brokerledger.core.models import (
    CashMovement,
    Holding,
    IngestionSummary,
    ParsedStatement,
    ReportingPeriod,
    SecurityKind,
    StatementRecord,
    TradeSide,
    Transaction,
)
from brokerledger.parsers.statement.parser import Document, StatementParser, read_document
from brokerledger.services.portfolios import PortfolioRegistry
from brokerledger.services.position_reconciler import PositionReconciler
from brokerledger.services.statement_tracker import StatementTracker, document_digest

logger = logging.getLogger(__name__)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


class IngestionCoordinator:
    """
    Entry point for statement uploads and ledger maintenance.

    Usage:
        coordinator = IngestionCoordinator(conn, StatementParser(resolver))
        summary = coordinator.ingest(portfolio_id, Path("report.html"), uploader="alice")
        holdings = coordinator.current_holdings(portfolio_id)
    """

    def __init__(
        self,
        db_connection: sqlite3.Connection,
        parser: StatementParser,
        reconciler: Optional[PositionReconciler] = None,
        locks: Optional[PortfolioLocks] = None,
    ):
        self.conn = db_connection
        self.parser = parser
        self.reconciler = reconciler or PositionReconciler(db_connection)
        self.tracker = StatementTracker(db_connection)
        self.portfolios = PortfolioRegistry(db_connection)
        self.locks = locks or PortfolioLocks()

    def ingest(
        self,
        portfolio_id: int,
        document: Document,
        uploader: Optional[str] = None,
        source_name: Optional[str] = None,
    ) -> IngestionSummary:
        """
        Ingest one statement into a portfolio.

        Args:
            portfolio_id: Target portfolio
            document: HTML statement (text, bytes, path or open file)
            uploader: Who uploaded it
            source_name: Original filename

        Returns:
            IngestionSummary

        Raises:
            PortfolioNotFoundError: Unknown portfolio
            MalformedStatementError: Statement structure not recognized
            UnresolvedIdentityError: A security could not be classified
            UnresolvedIsinError: A trade names an unknown security
            DuplicateStatementError: Same period already ingested
            OverlappingStatementError: Period lies inside an ingested one
        """
        self.portfolios.get(portfolio_id)

        if source_name is None and hasattr(document, "name"):
            source_name = Path(str(document.name)).name
        markup = read_document(document)
        statement = self.parser.parse(markup, source_name=source_name)
        period = statement.period

        with self.locks.hold(portfolio_id):
            with atomic(self.conn):
                contained = self._check_period(portfolio_id, period)
                previous_max_end = self.tracker.max_period_end(portfolio_id)

                record = StatementRecord(
                    portfolio_id=portfolio_id,
                    period=period,
                    created_on=statement.created_on,
                    counterparty=statement.counterparty,
                    contract_id=statement.contract_id,
                    source_name=source_name,
                    source_digest=document_digest(markup),
                    uploaded_by=uploader,
                    uploaded_at=datetime.now(),
                )
                statement_id = self.tracker.add(record)

                summary = IngestionSummary(
                    statement_id=statement_id,
                    portfolio_id=portfolio_id,
                    period=period,
                    transactions_parsed=len(statement.transactions),
                )

                summary.transactions_inserted, summary.transactions_skipped = self._store_transactions(
                    portfolio_id, statement_id, statement.transactions
                )
                summary.cash_movements_superseded = self._delete_cash_movements(contained)
                summary.cash_movements_inserted = self._store_cash_movements(
                    portfolio_id, statement_id, statement.cash_movements
                )

                if previous_max_end is None or period.end >= previous_max_end:
                    summary.holdings_count = self.reconciler.replace_from_snapshot(
                        portfolio_id, statement.holdings
                    )
                    self.reconciler.recompute_cost_basis(portfolio_id)
                    summary.holdings_replaced = True
                else:
                    summary.warnings.append(
                        f"Statement ends before {previous_max_end:%d.%m.%Y}; holdings left unchanged"
                    )
                    summary.holdings_count = len(self.reconciler.current_holdings(portfolio_id))

        self._log_summary(statement, summary)
        return summary

    def current_holdings(self, portfolio_id: int) -> List[Holding]:
        """Current holdings with positive quantity."""
        return self.reconciler.current_holdings(portfolio_id)

    def recompute_cost_basis(self, portfolio_id: int) -> dict:
        """Recompute average prices from all BUY trades of the portfolio."""
        with self.locks.hold(portfolio_id):
            return self.reconciler.recompute_cost_basis(portfolio_id)

    def record_trade(self, portfolio_id: int, trade: Transaction) -> bool:
        """
        Record one manually entered trade and update its holding.

        Returns:
            False if a trade with the same number is already on file
        """
        self.portfolios.get(portfolio_id)
        with self.locks.hold(portfolio_id):
            with atomic(self.conn):
                inserted, _ = self._store_transactions(portfolio_id, None, [trade])
                if not inserted:
                    logger.info(f"Trade {trade.trade_number} already recorded for portfolio {portfolio_id}")
                    return False
                self.reconciler.apply_trade(portfolio_id, trade)
        return True

    # ------------------------------------------------------------------

    def _check_period(self, portfolio_id: int, period: ReportingPeriod) -> List[StatementRecord]:
        """
        Validate the new period against ingested statements.

        Returns:
            Existing statements fully contained in the new period
        """
        if self.tracker.find_by_period(portfolio_id, period) is not None:
            raise DuplicateStatementError(period.start, period.end)

        contained = []
        for existing in self.tracker.find_overlapping(portfolio_id, period):
            if period.strictly_within(existing.period):
                raise OverlappingStatementError(
                    period.start, period.end, existing.period.start, existing.period.end
                )
            if period.contains(existing.period):
                contained.append(existing)
            else:
                logger.info(f"Statement {period} partially overlaps ingested {existing.period}")
        return contained

    def _store_transactions(
        self,
        portfolio_id: int,
        statement_id: Optional[int],
        transactions: List[Transaction],
    ) -> Tuple[int, int]:
        """Insert trades whose trade number is new. Returns (inserted, skipped)."""
        inserted = skipped = 0
        for trade in transactions:
            if trade.trade_number and self._trade_exists(portfolio_id, trade.trade_number):
                logger.debug(f"Skipping duplicate trade {trade.trade_number}")
                skipped += 1
                continue
            self.conn.execute(
                """
                INSERT INTO transactions (
                    portfolio_id, statement_id, isin, security_kind, security_name,
                    trade_date, settlement_date, trade_time, currency, side, quantity,
                    price, amount, accrued_interest, broker_commission,
                    exchange_commission, trade_number
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    portfolio_id,
                    statement_id,
                    trade.isin,
                    trade.kind.value,
                    trade.security_name,
                    trade.trade_date.isoformat(),
                    _iso(trade.settlement_date),
                    trade.trade_time.isoformat() if trade.trade_time else None,
                    trade.currency,
                    trade.side.value,
                    str(trade.quantity),
                    str(trade.price),
                    str(trade.amount),
                    str(trade.accrued_interest),
                    str(trade.broker_commission),
                    str(trade.exchange_commission),
                    trade.trade_number,
                ),
            )
            inserted += 1
        return inserted, skipped

    def _trade_exists(self, portfolio_id: int, trade_number: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM transactions WHERE portfolio_id = ? AND trade_number = ?",
            (portfolio_id, trade_number),
        ).fetchone()
        return row is not None

    def _delete_cash_movements(self, statements: List[StatementRecord]) -> int:
        deleted = 0
        for record in statements:
            cursor = self.conn.execute(
                "DELETE FROM cash_movements WHERE statement_id = ?", (record.id,)
            )
            deleted += cursor.rowcount
            if cursor.rowcount:
                logger.info(f"Superseded {cursor.rowcount} cash movements of statement {record.period}")
        return deleted

    def _store_cash_movements(self, portfolio_id: int, statement_id: int, movements: List[CashMovement]) -> int:
        for movement in movements:
            self.conn.execute(
                """
                INSERT INTO cash_movements (
                    portfolio_id, statement_id, movement_date, venue, description,
                    currency, credit, debit
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    portfolio_id,
                    statement_id,
                    movement.movement_date.isoformat(),
                    movement.venue,
                    movement.description,
                    movement.currency,
                    str(movement.credit),
                    str(movement.debit),
                ),
            )
        return len(movements)

    def list_cash_movements(self, portfolio_id: int) -> List[CashMovement]:
        with reading(self.conn):
            rows = self.conn.execute(
                """
                SELECT * FROM cash_movements WHERE portfolio_id = ?
                ORDER BY movement_date, id
                """,
                (portfolio_id,),
            ).fetchall()
        return [
            CashMovement(
                movement_date=date.fromisoformat(row["movement_date"]),
                venue=row["venue"],
                description=row["description"],
                currency=row["currency"],
                credit=Decimal(row["credit"]),
                debit=Decimal(row["debit"]),
                statement_id=row["statement_id"],
            )
            for row in rows
        ]

    def list_transactions(self, portfolio_id: int) -> List[Transaction]:
        with reading(self.conn):
            rows = self.conn.execute(
                "SELECT * FROM transactions WHERE portfolio_id = ? ORDER BY trade_date, trade_time, id",
                (portfolio_id,),
            ).fetchall()
        return [_row_to_transaction(row) for row in rows]

    @staticmethod
    def _log_summary(statement: ParsedStatement, summary: IngestionSummary) -> None:
        logger.info(
            f"Ingested statement {summary.period} into portfolio {summary.portfolio_id}: "
            f"{summary.transactions_inserted} trades added, {summary.transactions_skipped} duplicates skipped, "
            f"{summary.cash_movements_inserted} cash movements, "
            f"holdings {'replaced' if summary.holdings_replaced else 'unchanged'} ({summary.holdings_count})"
        )
        for warning in summary.warnings:
            logger.warning(warning)


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        isin=row["isin"],
        kind=SecurityKind(row["security_kind"]),
        trade_date=date.fromisoformat(row["trade_date"]),
        settlement_date=date.fromisoformat(row["settlement_date"]) if row["settlement_date"] else None,
        trade_time=time.fromisoformat(row["trade_time"]) if row["trade_time"] else None,
        currency=row["currency"],
        side=TradeSide(row["side"]),
        quantity=Decimal(row["quantity"]),
        price=Decimal(row["price"]),
        amount=Decimal(row["amount"] or "0"),
        accrued_interest=Decimal(row["accrued_interest"] or "0"),
        broker_commission=Decimal(row["broker_commission"] or "0"),
        exchange_commission=Decimal(row["exchange_commission"] or "0"),
        trade_number=row["trade_number"],
        security_name=row["security_name"],
    )
