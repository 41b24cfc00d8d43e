"""Tests for PriceSyncJob."""

import threading
from decimal import Decimal

import pytest

from brokerledger.core.models import EndOfPeriodHolding, SecurityKind
from brokerledger.services.portfolios import PortfolioRegistry
from brokerledger.services.position_reconciler import PositionReconciler
from brokerledger.services.price_sync import PriceSyncJob
from brokerledger.services.reference_catalog import CatalogEntry

AFLT = "RU0009062285"
MAGN = "RU0009084396"
BOND = "RU000A100733"
GAZP = "RU0007661625"


class FakeQuotes:
    """Quote provider backed by a dict; values that are exceptions are raised."""

    def __init__(self, quotes):
        self.quotes = quotes
        self.calls = []

    def get_quote(self, market, ticker):
        self.calls.append((market, ticker))
        value = self.quotes.get((market, ticker))
        if isinstance(value, Exception):
            raise value
        return value


def _hold(reconciler, portfolio_id, *items):
    reconciler.replace_from_snapshot(portfolio_id, [
        EndOfPeriodHolding(isin=isin, kind=kind, quantity=Decimal(qty)) for isin, kind, qty in items
    ])


@pytest.fixture
def reconciler(db_connection):
    return PositionReconciler(db_connection)


@pytest.fixture
def held(reconciler, catalog, sample_portfolio):
    _hold(
        reconciler, sample_portfolio.id,
        (AFLT, SecurityKind.EQUITY, "9"),
        (MAGN, SecurityKind.EQUITY, "200"),
        (BOND, SecurityKind.DEBT, "30"),
        (GAZP, SecurityKind.EQUITY, "20"),
    )
    return sample_portfolio.id


@pytest.fixture
def quotes():
    return FakeQuotes({
        ("TQBR", "AFLT"): Decimal("99.10"),
        ("TQCB", BOND): Decimal("101.75"),
        ("TQBR", "MAGN"): ConnectionError("timeout"),
    })


class TestPriceSync:

    def test_updates_prices(self, db_connection, catalog, held, reconciler, quotes):
        result = PriceSyncJob(db_connection, catalog, quotes).run()

        assert result.tickers_quoted == 2
        assert result.holdings_updated == 2
        assert result.failed_tickers == ["TQBR:MAGN"]
        assert result.holdings_without_ticker == 1
        assert reconciler.get_holding(held, AFLT).last_known_price == Decimal("99.10")

    def test_bond_quote_converted_with_nominal(self, db_connection, catalog, held, reconciler, quotes):
        PriceSyncJob(db_connection, catalog, quotes).run()

        bond = reconciler.get_holding(held, BOND)
        assert bond.last_known_price == Decimal("1017.500000")
        assert not bond.price_is_percent

    def test_failed_ticker_leaves_price_alone(self, db_connection, catalog, held, reconciler, quotes):
        PriceSyncJob(db_connection, catalog, quotes).run()
        assert reconciler.get_holding(held, MAGN).last_known_price is None

    def test_writes_only_on_change(self, db_connection, catalog, held, reconciler, quotes):
        job = PriceSyncJob(db_connection, catalog, quotes)
        job.run()
        stamp = reconciler.get_holding(held, AFLT).price_updated_at

        result = job.run()

        assert result.holdings_updated == 0
        assert result.holdings_unchanged == 2
        assert reconciler.get_holding(held, AFLT).price_updated_at == stamp

    def test_ticker_quoted_once_across_portfolios(self, db_connection, catalog, held, reconciler, quotes):
        other = PortfolioRegistry(db_connection).create("Other").id
        _hold(reconciler, other, (AFLT, SecurityKind.EQUITY, "1"))

        result = PriceSyncJob(db_connection, catalog, quotes).run()

        assert quotes.calls.count(("TQBR", "AFLT")) == 1
        assert result.holdings_updated == 3
        assert reconciler.get_holding(other, AFLT).last_known_price == Decimal("99.10")

    def test_bond_without_nominal_kept_in_percent(self, db_connection, catalog, reconciler, sample_portfolio):
        isin = "RU000A0JX0J2"
        catalog.upsert(CatalogEntry(isin=isin, kind=SecurityKind.DEBT, secid="SU26233RMFS5", board="TQOB"))
        _hold(reconciler, sample_portfolio.id, (isin, SecurityKind.DEBT, "5"))

        PriceSyncJob(db_connection, catalog, FakeQuotes({("TQOB", "SU26233RMFS5"): Decimal("99.25")})).run()

        holding = reconciler.get_holding(sample_portfolio.id, isin)
        assert holding.last_known_price == Decimal("99.25")
        assert holding.price_is_percent

    def test_single_flight(self, db_connection, catalog, held):
        started = threading.Event()
        release = threading.Event()

        class BlockingQuotes:
            def get_quote(self, market, ticker):
                started.set()
                release.wait(timeout=5)
                return None

        job = PriceSyncJob(db_connection, catalog, BlockingQuotes())
        results = []
        worker = threading.Thread(target=lambda: results.append(job.run()))
        worker.start()
        assert started.wait(timeout=5)

        concurrent = job.run()
        release.set()
        worker.join(timeout=5)

        assert concurrent.skipped
        assert not results[0].skipped
