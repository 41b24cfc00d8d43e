"""
SQLite database initialization and connection management.

Provides the ledger schema and a singleton connection manager.

Thread Safety Notes:
- Uses check_same_thread=False for multi-threaded access
- The connection runs in autocommit mode; writes go through atomic()
- atomic() holds a per-connection guard, so write transactions issued
  from different threads against one connection never interleave
- reading() takes the same guard, so readers on other threads never see
  a transaction that is still open
- WAL mode is enabled for file databases
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from brokerledger.core.exceptions import DatabaseError, LedgerError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS portfolios (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    owner TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Reference catalogs (one per security kind)
CREATE TABLE IF NOT EXISTS bond_catalog (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    isin TEXT NOT NULL UNIQUE,
    secid TEXT,
    board TEXT,
    short_name TEXT,
    full_name TEXT,
    face_value TEXT,
    decimals INTEGER,
    prev_price TEXT,
    currency TEXT,
    lot_size INTEGER,
    maturity_date DATE,
    coupon_percent TEXT,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS stock_catalog (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    isin TEXT NOT NULL UNIQUE,
    secid TEXT,
    board TEXT,
    short_name TEXT,
    full_name TEXT,
    decimals INTEGER,
    prev_price TEXT,
    currency TEXT,
    lot_size INTEGER,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_bond_catalog_secid ON bond_catalog(secid);
CREATE INDEX IF NOT EXISTS idx_stock_catalog_secid ON stock_catalog(secid);

-- Ingested statements
CREATE TABLE IF NOT EXISTS statement_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    portfolio_id INTEGER NOT NULL,
    period_start DATE NOT NULL,
    period_end DATE NOT NULL,
    created_on DATE,
    counterparty TEXT,
    contract_id TEXT,
    source_name TEXT,
    source_digest TEXT,
    uploaded_by TEXT,
    uploaded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE,
    UNIQUE(portfolio_id, period_start, period_end),
    CHECK (period_start <= period_end)
);

CREATE INDEX IF NOT EXISTS idx_statement_period ON statement_records(portfolio_id, period_start, period_end);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    portfolio_id INTEGER NOT NULL,
    statement_id INTEGER,
    isin TEXT NOT NULL,
    security_kind TEXT NOT NULL CHECK(security_kind IN ('EQUITY', 'DEBT')),
    security_name TEXT,
    trade_date DATE NOT NULL,
    settlement_date DATE,
    trade_time TEXT,
    currency TEXT,
    side TEXT NOT NULL CHECK(side IN ('BUY', 'SELL')),
    quantity TEXT NOT NULL,
    price TEXT NOT NULL,
    amount TEXT,
    accrued_interest TEXT,
    broker_commission TEXT,
    exchange_commission TEXT,
    trade_number TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE,
    FOREIGN KEY (statement_id) REFERENCES statement_records(id) ON DELETE SET NULL,
    UNIQUE(portfolio_id, trade_number)
);

CREATE INDEX IF NOT EXISTS idx_transactions_isin ON transactions(portfolio_id, isin);

CREATE TABLE IF NOT EXISTS cash_movements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    portfolio_id INTEGER NOT NULL,
    statement_id INTEGER NOT NULL,
    movement_date DATE NOT NULL,
    venue TEXT,
    description TEXT,
    currency TEXT,
    credit TEXT NOT NULL DEFAULT '0',
    debit TEXT NOT NULL DEFAULT '0',
    FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE,
    FOREIGN KEY (statement_id) REFERENCES statement_records(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_cash_movements_statement ON cash_movements(statement_id);

CREATE TABLE IF NOT EXISTS holdings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    portfolio_id INTEGER NOT NULL,
    isin TEXT NOT NULL,
    security_kind TEXT NOT NULL CHECK(security_kind IN ('EQUITY', 'DEBT')),
    security_name TEXT,
    currency TEXT,
    quantity TEXT NOT NULL,
    average_price TEXT,
    last_known_price TEXT,
    price_is_percent BOOLEAN DEFAULT FALSE,
    price_updated_at TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE,
    UNIQUE(portfolio_id, isin)
);
"""


class DatabaseManager:
    """
    Singleton manager for the ledger database connection.

    Usage:
        db = DatabaseManager()
        conn = db.init("/path/to/ledger.db")
        with atomic(conn):
            conn.execute("INSERT INTO portfolios ...")
        db.close()
    """

    _instance: Optional["DatabaseManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "DatabaseManager":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._connection = None
                    cls._instance._db_path = None
        return cls._instance

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the current database connection."""
        if self._connection is None:
            raise DatabaseError("Database not initialized. Call init() first.")
        return self._connection

    def init(self, db_path: str) -> sqlite3.Connection:
        """
        Initialize the ledger database.

        Args:
            db_path: Path to database file or ":memory:" for in-memory database

        Returns:
            Database connection

        Raises:
            DatabaseError: If initialization fails
        """
        try:
            self._db_path = db_path

            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)

            # isolation_level=None: no implicit BEGIN, transactions are explicit
            self._connection = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")

            if db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.execute("PRAGMA busy_timeout = 5000")

            self._execute_schema()
            logger.debug(f"Ledger database ready at {db_path}")
            return self._connection

        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to initialize database: {e}") from e

    def _execute_schema(self) -> None:
        """Create all tables if not exist."""
        try:
            self._connection.executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to execute schema: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Atomic unit of work on the managed connection. See atomic()."""
        with atomic(self.connection) as conn:
            yield conn

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            _forget_guard(self._connection)
            self._connection.close()
            self._connection = None
            self._db_path = None

    def get_tables(self) -> list[str]:
        """Get list of all tables in database."""
        cursor = self.connection.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        )
        return [row[0] for row in cursor.fetchall()]

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)."""
        with cls._lock:
            if cls._instance and cls._instance._connection:
                _forget_guard(cls._instance._connection)
                cls._instance._connection.close()
            cls._instance = None


def get_connection() -> sqlite3.Connection:
    """Get the current database connection (convenience function)."""
    return DatabaseManager().connection


_guards: Dict[int, threading.RLock] = {}
_guards_lock = threading.Lock()


def _guard_for(conn: sqlite3.Connection) -> threading.RLock:
    with _guards_lock:
        guard = _guards.get(id(conn))
        if guard is None:
            guard = threading.RLock()
            _guards[id(conn)] = guard
        return guard


def _forget_guard(conn: sqlite3.Connection) -> None:
    with _guards_lock:
        _guards.pop(id(conn), None)


@contextmanager
def reading(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Context manager for reads on a shared connection.

    Takes the same guard as atomic(), so a reader on another thread waits
    until an open write transaction commits or rolls back instead of
    seeing its uncommitted rows. Inside atomic() on the same thread it
    is a no-op.

    Usage:
        with reading(conn):
            rows = conn.execute("SELECT * FROM holdings").fetchall()
    """
    with _guard_for(conn):
        yield conn


@contextmanager
def atomic(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Context manager for atomic writes.

    Usage:
        with atomic(conn):
            conn.execute("INSERT INTO statement_records ...")
            conn.execute("INSERT INTO transactions ...")
        # Commits on success, rolls back on exception

    Nested use on the same connection joins the outer transaction.
    Ledger errors propagate unchanged; sqlite errors are wrapped.

    Raises:
        DatabaseError: If the database rejects the transaction
    """
    guard = _guard_for(conn)
    with guard:
        if conn.in_transaction:
            yield conn
            return

        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to begin transaction: {e}") from e

        try:
            yield conn
        except LedgerError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            raise DatabaseError(f"Transaction failed: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()
