"""
Tests for PositionReconciler.

Covers the snapshot path, the transaction path and the weighted-average
cost basis, including order independence.
"""

from datetime import date
from decimal import Decimal
from itertools import permutations

import pytest

from brokerledger.core.exceptions import HoldingNotFoundError
from brokerledger.core.models import EndOfPeriodHolding, SecurityKind, TradeSide, Transaction
from brokerledger.services.portfolios import PortfolioRegistry
from brokerledger.services.position_reconciler import PositionReconciler, weighted_average_price

AFLT = "RU0009062285"
MAGN = "RU0009084396"
BOND = "RU000A100733"


def _trade(isin, side, quantity, price, number=None, day=15, kind=SecurityKind.EQUITY):
    return Transaction(
        isin=isin,
        kind=kind,
        trade_date=date(2020, 1, day),
        side=side,
        quantity=Decimal(quantity),
        price=Decimal(price),
        trade_number=number,
        security_name=isin,
    )


def _snapshot(isin, quantity, price=None, kind=SecurityKind.EQUITY):
    return EndOfPeriodHolding(isin=isin, kind=kind, quantity=Decimal(quantity),
                              price=Decimal(price) if price else None)


@pytest.fixture
def reconciler(db_connection):
    return PositionReconciler(db_connection)


class TestWeightedAverage:

    TRADES = [
        _trade(AFLT, TradeSide.BUY, "5", "100.00"),
        _trade(AFLT, TradeSide.BUY, "4", "95.00"),
        _trade(AFLT, TradeSide.SELL, "3", "120.00"),
        _trade(AFLT, TradeSide.BUY, "1", "101.37"),
    ]

    def test_formula(self):
        # (500 + 380 + 101.37) / 10
        assert weighted_average_price(self.TRADES) == Decimal("98.137000")

    def test_order_independent(self):
        results = {weighted_average_price(p) for p in permutations(self.TRADES)}
        assert results == {Decimal("98.137000")}

    def test_rounds_half_up_to_six_places(self):
        trades = [_trade(AFLT, TradeSide.BUY, "5", "100"), _trade(AFLT, TradeSide.BUY, "4", "95")]
        assert weighted_average_price(trades) == Decimal("97.777778")

    def test_no_buys(self):
        assert weighted_average_price([_trade(AFLT, TradeSide.SELL, "1", "10")]) is None
        assert weighted_average_price([]) is None


class TestSnapshot:

    def test_replace_drops_missing_and_keeps_average(self, reconciler, sample_portfolio):
        pid = sample_portfolio.id
        reconciler.replace_from_snapshot(pid, [_snapshot(AFLT, "5", "100"), _snapshot(MAGN, "500", "45")])
        reconciler.set_average_price(pid, AFLT, Decimal("99.5"))

        count = reconciler.replace_from_snapshot(pid, [_snapshot(AFLT, "9", "98.50")])

        assert count == 1
        holdings = reconciler.current_holdings(pid)
        assert [h.isin for h in holdings] == [AFLT]
        assert holdings[0].quantity == Decimal("9")
        assert holdings[0].average_price == Decimal("99.500000")
        assert holdings[0].last_known_price == Decimal("98.50")
        assert holdings[0].price_updated_at is not None

    def test_missing_price_carries_previous(self, reconciler, sample_portfolio):
        pid = sample_portfolio.id
        reconciler.replace_from_snapshot(pid, [_snapshot(AFLT, "5", "100")])
        reconciler.replace_from_snapshot(pid, [_snapshot(AFLT, "6")])

        assert reconciler.get_holding(pid, AFLT).last_known_price == Decimal("100")

    def test_duplicate_isins_merged(self, reconciler, sample_portfolio):
        pid = sample_portfolio.id
        reconciler.replace_from_snapshot(pid, [_snapshot(AFLT, "5", "100"), _snapshot(AFLT, "4", "101")])

        holding = reconciler.get_holding(pid, AFLT)
        assert holding.quantity == Decimal("9")
        assert holding.last_known_price == Decimal("101")

    def test_percent_flag_stored(self, reconciler, sample_portfolio):
        pid = sample_portfolio.id
        snapshot = EndOfPeriodHolding(isin=BOND, kind=SecurityKind.DEBT, quantity=Decimal("3"),
                                      price=Decimal("99.1"), price_is_percent=True)
        reconciler.replace_from_snapshot(pid, [snapshot])

        holding = reconciler.get_holding(pid, BOND)
        assert holding.price_is_percent
        assert holding.kind is SecurityKind.DEBT

    def test_portfolios_isolated(self, reconciler, sample_portfolio, db_connection):
        other = PortfolioRegistry(db_connection).create("Other")
        reconciler.replace_from_snapshot(sample_portfolio.id, [_snapshot(AFLT, "5")])
        reconciler.replace_from_snapshot(other.id, [_snapshot(MAGN, "1")])

        assert [h.isin for h in reconciler.current_holdings(sample_portfolio.id)] == [AFLT]


class TestTradePath:

    def test_apply_buy_blends_average(self, reconciler, sample_portfolio):
        pid = sample_portfolio.id
        reconciler.apply_trade(pid, _trade(AFLT, TradeSide.BUY, "5", "100"))
        holding = reconciler.apply_trade(pid, _trade(AFLT, TradeSide.BUY, "4", "95"))

        assert holding.quantity == Decimal("9")
        assert holding.average_price == Decimal("97.777778")

    def test_apply_sell_keeps_average(self, reconciler, sample_portfolio):
        pid = sample_portfolio.id
        reconciler.apply_trade(pid, _trade(AFLT, TradeSide.BUY, "5", "100"))
        holding = reconciler.apply_trade(pid, _trade(AFLT, TradeSide.SELL, "2", "130"))

        assert holding.quantity == Decimal("3")
        assert holding.average_price == Decimal("100.000000")

    def test_apply_sell_closes_position(self, reconciler, sample_portfolio):
        pid = sample_portfolio.id
        reconciler.apply_trade(pid, _trade(AFLT, TradeSide.BUY, "5", "100"))

        assert reconciler.apply_trade(pid, _trade(AFLT, TradeSide.SELL, "5", "130")) is None
        assert reconciler.get_holding(pid, AFLT) is None

    def test_apply_sell_without_holding(self, reconciler, sample_portfolio):
        assert reconciler.apply_trade(sample_portfolio.id, _trade(MAGN, TradeSide.SELL, "1", "40")) is None
        assert reconciler.current_holdings(sample_portfolio.id) == []

    def test_set_average_price_unknown_holding(self, reconciler, sample_portfolio):
        with pytest.raises(HoldingNotFoundError):
            reconciler.set_average_price(sample_portfolio.id, AFLT, Decimal("1"))

    def test_holdings_requiring_price_input(self, reconciler, sample_portfolio):
        pid = sample_portfolio.id
        reconciler.replace_from_snapshot(pid, [_snapshot(AFLT, "5"), _snapshot(MAGN, "200")])
        reconciler.set_average_price(pid, AFLT, Decimal("97"))

        assert [h.isin for h in reconciler.holdings_requiring_price_input(pid)] == [MAGN]


class TestRecompute:
    """Cost basis recomputed from stored trades."""

    TRADES = [
        _trade(AFLT, TradeSide.BUY, "5", "100.00", "1", day=10),
        _trade(AFLT, TradeSide.BUY, "4", "95.00", "2", day=15),
        _trade(MAGN, TradeSide.SELL, "300", "43.79", "3", day=15),
        _trade(BOND, TradeSide.BUY, "20", "101.20", "4", day=15, kind=SecurityKind.DEBT),
        _trade(BOND, TradeSide.BUY, "10", "101.50", "5", day=15, kind=SecurityKind.DEBT),
    ]

    def _record(self, coordinator, portfolio_id, trades):
        for trade in trades:
            coordinator.record_trade(portfolio_id, trade)

    def test_arrival_order_does_not_matter(self, coordinator, db_connection):
        registry = PortfolioRegistry(db_connection)
        forward = registry.create("forward").id
        backward = registry.create("backward").id
        self._record(coordinator, forward, self.TRADES)
        self._record(coordinator, backward, list(reversed(self.TRADES)))

        first = coordinator.recompute_cost_basis(forward)
        second = coordinator.recompute_cost_basis(backward)

        assert first == second == {AFLT: Decimal("97.777778"), BOND: Decimal("101.300000")}

    def test_sells_do_not_change_average(self, coordinator, sample_portfolio):
        pid = sample_portfolio.id
        self._record(coordinator, pid, self.TRADES[:2])
        before = coordinator.recompute_cost_basis(pid)[AFLT]
        coordinator.record_trade(pid, _trade(AFLT, TradeSide.SELL, "3", "150", "6", day=20))

        assert coordinator.recompute_cost_basis(pid)[AFLT] == before

    def test_isin_without_buys_keeps_existing_average(self, reconciler, coordinator, sample_portfolio):
        pid = sample_portfolio.id
        reconciler.replace_from_snapshot(pid, [_snapshot(MAGN, "200")])
        reconciler.set_average_price(pid, MAGN, Decimal("41.5"))
        coordinator.record_trade(pid, _trade(MAGN, TradeSide.SELL, "100", "43.79", "3"))

        reconciler.recompute_cost_basis(pid)

        holding = reconciler.get_holding(pid, MAGN)
        assert holding.quantity == Decimal("100")
        assert holding.average_price == Decimal("41.500000")

    def test_rebuild_from_trades(self, reconciler, coordinator, sample_portfolio):
        pid = sample_portfolio.id
        self._record(coordinator, pid, self.TRADES)
        coordinator.record_trade(pid, _trade(AFLT, TradeSide.SELL, "9", "120", "7", day=25))

        count = reconciler.rebuild_from_trades(pid)

        holdings = {h.isin: h for h in reconciler.current_holdings(pid)}
        assert count == 1
        assert set(holdings) == {BOND}
        assert holdings[BOND].quantity == Decimal("30")
        # debt averages stay in percent of nominal
        assert holdings[BOND].average_price == Decimal("101.300000")
