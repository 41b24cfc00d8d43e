"""Statement Tracker - Tracks which statement periods have been ingested.

One record per successfully ingested statement. Used to reject exact
duplicates, to find overlapping periods, and to decide whether a new
statement is the latest one for the portfolio.
"""

import hashlib
import sqlite3
from datetime import date, datetime
from typing import List, Optional, Union

from brokerledger.core.database import reading
from brokerledger.core.models import ReportingPeriod, StatementRecord


def document_digest(markup: Union[str, bytes]) -> str:
    """SHA256 of the raw document."""
    data = markup.encode("utf-8") if isinstance(markup, str) else markup
    return hashlib.sha256(data).hexdigest()


class StatementTracker:
    """
    Repository of ingested statement periods.

    Callers wrap writes in atomic(); this class never commits. Reads
    take the connection guard through reading().
    """

    def __init__(self, db_connection: sqlite3.Connection):
        """
        Initialize with database connection.

        Args:
            db_connection: SQLite connection object
        """
        self.conn = db_connection

    def find_by_period(self, portfolio_id: int, period: ReportingPeriod) -> Optional[StatementRecord]:
        """Statement with exactly these bounds, if any."""
        with reading(self.conn):
            row = self.conn.execute("""
                SELECT * FROM statement_records
                WHERE portfolio_id = ? AND period_start = ? AND period_end = ?
            """, (portfolio_id, period.start.isoformat(), period.end.isoformat())).fetchone()
        return self._row_to_record(row) if row else None

    def find_overlapping(self, portfolio_id: int, period: ReportingPeriod) -> List[StatementRecord]:
        """Statements sharing at least one day with period."""
        with reading(self.conn):
            rows = self.conn.execute("""
                SELECT * FROM statement_records
                WHERE portfolio_id = ? AND period_start <= ? AND period_end >= ?
                ORDER BY period_start, period_end
            """, (portfolio_id, period.end.isoformat(), period.start.isoformat())).fetchall()
        return [self._row_to_record(row) for row in rows]

    def max_period_end(self, portfolio_id: int) -> Optional[date]:
        """Latest period end ingested for the portfolio, None if nothing yet."""
        with reading(self.conn):
            row = self.conn.execute(
                "SELECT MAX(period_end) FROM statement_records WHERE portfolio_id = ?",
                (portfolio_id,),
            ).fetchone()
        return date.fromisoformat(row[0]) if row and row[0] else None

    def list_statements(self, portfolio_id: int) -> List[StatementRecord]:
        with reading(self.conn):
            rows = self.conn.execute("""
                SELECT * FROM statement_records
                WHERE portfolio_id = ?
                ORDER BY period_start, period_end
            """, (portfolio_id,)).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self, portfolio_id: int) -> int:
        with reading(self.conn):
            row = self.conn.execute(
                "SELECT COUNT(*) FROM statement_records WHERE portfolio_id = ?", (portfolio_id,)
            ).fetchone()
        return row[0]

    def add(self, record: StatementRecord) -> int:
        """
        Insert a statement record.

        Returns:
            Record ID
        """
        cursor = self.conn.execute("""
            INSERT INTO statement_records (
                portfolio_id, period_start, period_end, created_on, counterparty,
                contract_id, source_name, source_digest, uploaded_by, uploaded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.portfolio_id,
            record.period.start.isoformat(),
            record.period.end.isoformat(),
            record.created_on.isoformat() if record.created_on else None,
            record.counterparty,
            record.contract_id,
            record.source_name,
            record.source_digest,
            record.uploaded_by,
            (record.uploaded_at or datetime.now()).isoformat(timespec="seconds"),
        ))
        record.id = cursor.lastrowid
        return record.id

    def _row_to_record(self, row: sqlite3.Row) -> StatementRecord:
        return StatementRecord(
            id=row["id"],
            portfolio_id=row["portfolio_id"],
            period=ReportingPeriod(
                date.fromisoformat(row["period_start"]),
                date.fromisoformat(row["period_end"]),
            ),
            created_on=date.fromisoformat(row["created_on"]) if row["created_on"] else None,
            counterparty=row["counterparty"],
            contract_id=row["contract_id"],
            source_name=row["source_name"],
            source_digest=row["source_digest"],
            uploaded_by=row["uploaded_by"],
            uploaded_at=datetime.fromisoformat(row["uploaded_at"]) if row["uploaded_at"] else None,
        )
