"""Reports."""

from brokerledger.reports.holdings_report import HoldingsReport

__all__ = ["HoldingsReport"]
