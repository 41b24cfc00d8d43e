"""Unit tests for core data models."""

from datetime import date
from decimal import Decimal

import pytest

from brokerledger.core.models import (
    Holding,
    ReportingPeriod,
    SecurityKind,
    TradeSide,
    Transaction,
    percent_of_nominal,
    round_money,
    round_price,
)


class TestReportingPeriod:

    def test_start_after_end_rejected(self):
        with pytest.raises(ValueError):
            ReportingPeriod(date(2020, 2, 1), date(2020, 1, 31))

    def test_single_day(self):
        period = ReportingPeriod(date(2020, 1, 15), date(2020, 1, 15))
        assert period.is_single_day
        assert str(period) == "15.01.2020 - 15.01.2020"

    def test_overlaps(self):
        january = ReportingPeriod(date(2020, 1, 1), date(2020, 1, 31))
        assert january.overlaps(ReportingPeriod(date(2020, 1, 31), date(2020, 2, 29)))
        assert not january.overlaps(ReportingPeriod(date(2020, 2, 1), date(2020, 2, 29)))

    def test_contains_and_strictly_within(self):
        january = ReportingPeriod(date(2020, 1, 1), date(2020, 1, 31))
        day = ReportingPeriod(date(2020, 1, 15), date(2020, 1, 15))

        assert january.contains(day)
        assert january.contains(january)
        assert day.strictly_within(january)
        assert not january.strictly_within(january)
        assert not january.strictly_within(day)


class TestRounding:

    def test_round_price_half_up(self):
        assert round_price(Decimal("97.7777775")) == Decimal("97.777778")
        assert round_price(Decimal("1.0000004")) == Decimal("1.000000")

    def test_round_money(self):
        assert round_money(Decimal("2.675")) == Decimal("2.68")

    def test_percent_of_nominal(self):
        assert percent_of_nominal(Decimal("101.50"), Decimal("1000")) == Decimal("1015.000000")
        assert percent_of_nominal(Decimal("99.875"), Decimal("500")) == Decimal("499.375000")


class TestTransaction:

    def _trade(self, quantity, side=TradeSide.BUY):
        return Transaction(
            isin="RU0009062285",
            kind=SecurityKind.EQUITY,
            trade_date=date(2020, 1, 15),
            side=side,
            quantity=Decimal(quantity),
            price=Decimal("95"),
        )

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValueError):
            self._trade("0")
        with pytest.raises(ValueError):
            self._trade("-5")

    def test_signed_quantity(self):
        assert self._trade("4").signed_quantity == Decimal("4")
        assert self._trade("4", TradeSide.SELL).signed_quantity == Decimal("-4")


def test_holding_cost():
    holding = Holding(portfolio_id=1, isin="RU0009062285", kind=SecurityKind.EQUITY,
                      quantity=Decimal("9"), average_price=Decimal("97.777778"))
    assert holding.cost == Decimal("880.000002")
    assert Holding(portfolio_id=1, isin="X", kind=SecurityKind.EQUITY, quantity=Decimal("1")).cost is None
