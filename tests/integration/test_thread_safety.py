"""
Integration tests for concurrent ingestion.

Uploads of one portfolio are serialized by its lock, so racing uploads of
the same statement end with exactly one success. Different portfolios
proceed independently against a shared WAL-mode file database, and
readers on other threads only ever see committed state.
"""

import threading
from datetime import date
from decimal import Decimal

import pytest

from brokerledger.core.database import DatabaseManager, atomic
from brokerledger.core.exceptions import DuplicateStatementError
from brokerledger.core.locks import PortfolioLocks
from brokerledger.core.models import SecurityKind, TradeSide, Transaction
from brokerledger.parsers.statement.parser import StatementParser
from brokerledger.services.identity_resolver import SecurityIdentityResolver
from brokerledger.services.ingestion import IngestionCoordinator
from brokerledger.services.portfolios import PortfolioRegistry
from brokerledger.services.position_reconciler import PositionReconciler
from brokerledger.services.price_sync import PriceSyncJob
from brokerledger.services.reference_catalog import CatalogEntry, ReferenceCatalog


class FixedQuotes:

    def get_quote(self, market, ticker):
        return Decimal("101.25")


@pytest.fixture
def file_db(tmp_path):
    DatabaseManager.reset_instance()
    manager = DatabaseManager()
    conn = manager.init(str(tmp_path / "concurrent.db"))
    catalog = ReferenceCatalog(conn)
    catalog.upsert(CatalogEntry(
        isin="RU000A100733", kind=SecurityKind.DEBT, secid="RU000A100733",
        board="TQCB", face_value=Decimal("1000"),
    ))
    yield conn
    manager.close()
    DatabaseManager.reset_instance()


@pytest.fixture
def file_coordinator(file_db):
    parser = StatementParser(SecurityIdentityResolver(ReferenceCatalog(file_db)))
    return IngestionCoordinator(file_db, parser)


def _run_threads(targets):
    errors = []
    results = []

    def wrap(target):
        try:
            results.append(target())
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=wrap, args=(t,)) for t in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results, errors


class TestSamePortfolio:

    def test_racing_duplicate_uploads(self, file_db, file_coordinator, monthly_statement):
        portfolio = PortfolioRegistry(file_db).create("IIS")

        results, errors = _run_threads([
            lambda: file_coordinator.ingest(portfolio.id, monthly_statement) for _ in range(4)
        ])

        assert len(results) == 1
        assert len(errors) == 3
        assert all(isinstance(e, DuplicateStatementError) for e in errors)
        count = file_db.execute(
            "SELECT COUNT(*) FROM transactions WHERE portfolio_id = ?", (portfolio.id,)
        ).fetchone()[0]
        assert count == 6

    def test_racing_manual_trades(self, file_db, file_coordinator):
        portfolio = PortfolioRegistry(file_db).create("IIS")
        trade = Transaction(
            isin="RU0007661625", kind=SecurityKind.EQUITY, trade_date=date(2020, 1, 22),
            side=TradeSide.BUY, quantity=Decimal("20"), price=Decimal("255.50"),
            trade_number="3090000001",
        )

        results, errors = _run_threads([
            lambda: file_coordinator.record_trade(portfolio.id, trade) for _ in range(5)
        ])

        assert errors == []
        assert sorted(results) == [False, False, False, False, True]
        holding = file_coordinator.reconciler.get_holding(portfolio.id, "RU0007661625")
        assert holding.quantity == Decimal("20")


class TestReadersDuringIngestion:

    def test_reader_waits_for_open_ingestion(self, file_db, file_coordinator, monthly_statement,
                                             daily_statement):
        portfolio = PortfolioRegistry(file_db).create("IIS")
        file_coordinator.ingest(portfolio.id, daily_statement)
        committed = [h.isin for h in file_coordinator.current_holdings(portfolio.id)]

        entered = threading.Event()
        release = threading.Event()

        class StalledReconciler(PositionReconciler):
            def recompute_cost_basis(self, portfolio_id):
                entered.set()
                release.wait(timeout=10)
                raise RuntimeError("recompute failed")

        failing = IngestionCoordinator(file_db, file_coordinator.parser,
                                       reconciler=StalledReconciler(file_db))
        errors = []
        seen = []

        def upload():
            try:
                failing.ingest(portfolio.id, monthly_statement)
            except RuntimeError as e:
                errors.append(e)

        def read_holdings():
            seen.append([h.isin for h in file_coordinator.current_holdings(portfolio.id)])

        writer = threading.Thread(target=upload)
        writer.start()
        assert entered.wait(timeout=10)

        # snapshot already replaced inside the open transaction
        reader = threading.Thread(target=read_holdings)
        reader.start()
        reader.join(timeout=0.5)
        assert reader.is_alive()
        assert seen == []

        release.set()
        writer.join(timeout=10)
        reader.join(timeout=10)

        assert len(errors) == 1
        assert seen == [committed]
        assert "RU0007661625" not in seen[0]

    def test_price_sync_reads_committed_holdings_only(self, file_db, file_coordinator, daily_statement):
        portfolio = PortfolioRegistry(file_db).create("IIS")
        file_coordinator.ingest(portfolio.id, daily_statement)
        entered = threading.Event()
        release = threading.Event()
        grouped = []

        class RecordingJob(PriceSyncJob):
            def _group_by_ticker(self, result):
                groups = super()._group_by_ticker(result)
                grouped.append(sorted(t.isin for targets in groups.values() for t in targets))
                return groups

        def stalled_write():
            with atomic(file_db):
                file_db.execute("DELETE FROM holdings WHERE portfolio_id = ?", (portfolio.id,))
                entered.set()
                release.wait(timeout=10)
                raise RuntimeError("abandoned")

        writer = threading.Thread(target=lambda: pytest.raises(RuntimeError, stalled_write))
        writer.start()
        assert entered.wait(timeout=10)

        job = RecordingJob(file_db, ReferenceCatalog(file_db), quotes=FixedQuotes())
        sync = threading.Thread(target=job.run)
        sync.start()
        sync.join(timeout=0.5)
        assert grouped == []

        release.set()
        writer.join(timeout=10)
        sync.join(timeout=10)

        # only the bond has a catalog ticker in this database
        assert grouped == [["RU000A100733"]]


class TestDifferentPortfolios:

    def test_parallel_ingestion(self, file_db, file_coordinator, monthly_statement, daily_statement):
        registry = PortfolioRegistry(file_db)
        portfolios = [registry.create(f"Account {n}") for n in range(3)]

        results, errors = _run_threads(
            [lambda p=p: file_coordinator.ingest(p.id, monthly_statement) for p in portfolios]
            + [lambda p=p: file_coordinator.ingest(p.id, daily_statement) for p in portfolios]
        )

        # the daily upload is rejected when the monthly landed first
        assert len(results) + len(errors) == 6
        for portfolio in portfolios:
            holdings = file_coordinator.current_holdings(portfolio.id)
            assert len(holdings) == 4
            assert all(h.quantity > 0 for h in holdings)


def test_lock_registry_reuses_locks():
    locks = PortfolioLocks()

    assert locks.lock_for(1) is locks.lock_for(1)
    assert locks.lock_for(1) is not locks.lock_for(2)

    with locks.hold(1):
        with locks.hold(1):
            pass
