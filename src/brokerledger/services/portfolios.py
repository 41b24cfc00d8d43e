"""Portfolio registry."""

import sqlite3
from dataclasses import dataclass
from typing import List, Optional

from brokerledger.core.database import atomic, reading
from brokerledger.core.exceptions import PortfolioNotFoundError


@dataclass
class Portfolio:
    id: int
    name: str
    owner: Optional[str] = None


class PortfolioRegistry:
    """Create and look up portfolios."""

    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    def create(self, name: str, owner: Optional[str] = None) -> Portfolio:
        with atomic(self.conn):
            cursor = self.conn.execute(
                "INSERT INTO portfolios (name, owner) VALUES (?, ?)", (name, owner)
            )
        return Portfolio(id=cursor.lastrowid, name=name, owner=owner)

    def get(self, portfolio_id: int) -> Portfolio:
        """
        Raises:
            PortfolioNotFoundError: If no such portfolio exists
        """
        with reading(self.conn):
            row = self.conn.execute(
                "SELECT id, name, owner FROM portfolios WHERE id = ?", (portfolio_id,)
            ).fetchone()
        if row is None:
            raise PortfolioNotFoundError(portfolio_id)
        return Portfolio(id=row["id"], name=row["name"], owner=row["owner"])

    def get_or_create(self, name: str, owner: Optional[str] = None) -> Portfolio:
        with atomic(self.conn):
            row = self.conn.execute(
                "SELECT id, name, owner FROM portfolios WHERE name = ?", (name,)
            ).fetchone()
            if row:
                return Portfolio(id=row["id"], name=row["name"], owner=row["owner"])
            return self.create(name, owner)

    def list_all(self) -> List[Portfolio]:
        with reading(self.conn):
            rows = self.conn.execute("SELECT id, name, owner FROM portfolios ORDER BY id").fetchall()
        return [Portfolio(id=r["id"], name=r["name"], owner=r["owner"]) for r in rows]
