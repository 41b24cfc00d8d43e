#!/usr/bin/env python3
"""
Broker ledger CLI.

Usage:
    brokerledger create-portfolio --name "IIS" --owner alice
    brokerledger ingest report_202001.html --portfolio 1 --uploader alice
    brokerledger holdings --portfolio 1
    brokerledger recompute --portfolio 1
    brokerledger sync-prices
    brokerledger value --portfolio 1
    brokerledger report --portfolio 1 --output holdings.xlsx
"""

import argparse
import logging
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from brokerledger.core.database import DatabaseManager
from brokerledger.core.exceptions import IngestionError, LedgerError
from brokerledger.core.locks import PortfolioLocks
from brokerledger.core.settings import LedgerSettings
from brokerledger.parsers.statement.parser import StatementParser
from brokerledger.reports.holdings_report import HoldingsReport
from brokerledger.services.identity_resolver import SecurityIdentityResolver
from brokerledger.services.ingestion import IngestionCoordinator
from brokerledger.services.market.cache import CachedQuoteProvider, TTLCache
from brokerledger.services.market.moex import MoexIssClient, MoexSecurityRefresher
from brokerledger.services.portfolios import PortfolioRegistry
from brokerledger.services.price_sync import PriceSyncJob
from brokerledger.services.reference_catalog import ReferenceCatalog
from brokerledger.services.valuation import PortfolioValuationService

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, debug: bool = False, level: Optional[str] = None):
    """Configure logging."""
    if debug:
        resolved = logging.DEBUG
    elif verbose:
        resolved = logging.INFO
    elif level:
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            resolved = logging.WARNING
    else:
        resolved = logging.WARNING

    logging.basicConfig(
        level=resolved,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@dataclass
class Services:
    """Wired ledger components sharing one connection."""
    catalog: ReferenceCatalog
    client: MoexIssClient
    coordinator: IngestionCoordinator
    price_sync: PriceSyncJob
    valuation: PortfolioValuationService
    portfolios: PortfolioRegistry


def build_services(conn, settings: LedgerSettings, client: Optional[MoexIssClient] = None) -> Services:
    """Wire the ledger components from settings."""
    market = settings.market_data
    catalog = ReferenceCatalog(conn)
    client = client or MoexIssClient(
        base_url=market.base_url, timeout=market.timeout, bond_boards=market.bond_boards
    )
    resolver = SecurityIdentityResolver(
        catalog,
        refresher=MoexSecurityRefresher(client, catalog, settings.domestic_prefixes),
        domestic_prefixes=settings.domestic_prefixes,
    )
    coordinator = IngestionCoordinator(conn, StatementParser(resolver), locks=PortfolioLocks())
    quotes = CachedQuoteProvider(client, TTLCache(market.quote_ttl_seconds))
    price_sync = PriceSyncJob(
        conn, catalog, quotes,
        equity_board=market.equity_board,
        bond_board=market.bond_boards[0] if market.bond_boards else "TQOB",
    )
    return Services(
        catalog=catalog,
        client=client,
        coordinator=coordinator,
        price_sync=price_sync,
        valuation=PortfolioValuationService(conn, catalog),
        portfolios=PortfolioRegistry(conn),
    )


def _fmt(value: Optional[Decimal], places: int = 2) -> str:
    if value is None:
        return "-"
    return f"{value:,.{places}f}"


def cmd_create_portfolio(args, services: Services) -> int:
    portfolio = services.portfolios.create(args.name, args.owner)
    print(f"Created portfolio {portfolio.id}: {portfolio.name}")
    return 0


def cmd_ingest(args, services: Services) -> int:
    """Handle ingest command - ingest statement files."""
    failures = 0
    for file_path in args.files:
        path = Path(file_path)
        try:
            summary = services.coordinator.ingest(args.portfolio, path, uploader=args.uploader)
        except IngestionError as e:
            failures += 1
            print(f"  {path.name}: rejected - {e}")
            continue
        print(
            f"  {path.name}: {summary.period} - "
            f"{summary.transactions_inserted} trades added, "
            f"{summary.transactions_skipped} duplicates skipped, "
            f"{summary.cash_movements_inserted} cash movements, "
            f"holdings {'replaced' if summary.holdings_replaced else 'unchanged'}"
        )
    return 1 if failures else 0


def cmd_holdings(args, services: Services) -> int:
    holdings = services.coordinator.current_holdings(args.portfolio)
    if not holdings:
        print("No holdings.")
        return 0
    print(f"{'ISIN':<14}{'Kind':<8}{'Quantity':>12}{'Avg price':>16}{'Last price':>16}  Name")
    for h in holdings:
        print(
            f"{h.isin:<14}{h.kind.value:<8}{_fmt(h.quantity, 0):>12}"
            f"{_fmt(h.average_price, 6):>16}{_fmt(h.last_known_price, 6):>16}  {h.security_name or ''}"
        )
    missing = services.coordinator.reconciler.holdings_requiring_price_input(args.portfolio)
    if missing:
        print(f"\n{len(missing)} holdings have no average price: {', '.join(h.isin for h in missing)}")
    return 0


def cmd_recompute(args, services: Services) -> int:
    if args.from_trades:
        count = services.coordinator.reconciler.rebuild_from_trades(args.portfolio)
        print(f"Rebuilt {count} holdings from trades")
    averages = services.coordinator.recompute_cost_basis(args.portfolio)
    print(f"Average price recomputed for {len(averages)} securities")
    return 0


def cmd_sync_prices(args, services: Services) -> int:
    result = services.price_sync.run()
    if result.skipped:
        print("Price sync already running")
        return 0
    print(
        f"Quoted {result.tickers_quoted} tickers, updated {result.holdings_updated} holdings, "
        f"{len(result.failed_tickers)} tickers failed"
    )
    return 0


def cmd_value(args, services: Services) -> int:
    valuation = services.valuation.value(args.portfolio)
    for p in valuation.positions:
        print(f"{p.name:<32}{_fmt(p.quantity, 0):>10}{_fmt(p.current_value):>16}{_fmt(p.total_return):>14}")
    print(f"\nCash balance: {_fmt(valuation.cash_balance)}")
    print(f"Total value:  {_fmt(valuation.total_value)}")
    return 0


def cmd_report(args, services: Services) -> int:
    valuation = services.valuation.value(args.portfolio)
    path = HoldingsReport().export_excel(valuation, Path(args.output))
    print(f"Report written to {path}")
    return 0


COMMANDS = {
    "create-portfolio": cmd_create_portfolio,
    "ingest": cmd_ingest,
    "holdings": cmd_holdings,
    "recompute": cmd_recompute,
    "sync-prices": cmd_sync_prices,
    "value": cmd_value,
    "report": cmd_report,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="brokerledger",
        description="Broker statement ingestion and portfolio reconciliation",
    )
    parser.add_argument("--db", help="Database path (overrides settings)")
    parser.add_argument("--config", help="JSON settings file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--debug", action="store_true", help="Debug output")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    create_parser = subparsers.add_parser("create-portfolio", help="Create a portfolio")
    create_parser.add_argument("--name", required=True, help="Portfolio name")
    create_parser.add_argument("--owner", help="Owner")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest statement files")
    ingest_parser.add_argument("files", nargs="+", help="HTML statement files")
    ingest_parser.add_argument("--portfolio", "-p", type=int, required=True, help="Portfolio ID")
    ingest_parser.add_argument("--uploader", help="Uploader name")

    for name, help_text in (
        ("holdings", "Show current holdings"),
        ("value", "Show portfolio valuation"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--portfolio", "-p", type=int, required=True, help="Portfolio ID")

    recompute_parser = subparsers.add_parser("recompute", help="Recompute cost basis")
    recompute_parser.add_argument("--portfolio", "-p", type=int, required=True, help="Portfolio ID")
    recompute_parser.add_argument("--from-trades", action="store_true",
                                  help="Rebuild quantities from trades first")

    subparsers.add_parser("sync-prices", help="Refresh last known prices")

    report_parser = subparsers.add_parser("report", help="Export holdings report to Excel")
    report_parser.add_argument("--portfolio", "-p", type=int, required=True, help="Portfolio ID")
    report_parser.add_argument("--output", "-o", default="holdings.xlsx", help="Output .xlsx path")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = LedgerSettings.load(Path(args.config) if args.config else None)
    except LedgerError as e:
        print(f"Configuration error: {e}")
        return 1

    setup_logging(args.verbose, args.debug, settings.log_level)

    db = DatabaseManager()
    try:
        conn = db.init(args.db or settings.database_path)
    except LedgerError as e:
        print(f"Database error: {e}")
        return 1

    try:
        services = build_services(conn, settings)
        return COMMANDS[args.command](args, services)
    except KeyboardInterrupt:
        print("\nOperation cancelled")
        return 130
    except LedgerError as e:
        print(f"\nError: {e}")
        if args.debug:
            import traceback
            traceback.print_exc()
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
