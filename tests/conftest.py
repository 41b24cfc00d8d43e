"""
Shared pytest fixtures for broker ledger tests.

Provides database connections, a seeded reference catalog, portfolios,
statement fixtures and a builder for synthetic statements.
"""

from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from typing import List, Optional, Sequence

import pytest

from brokerledger.core.database import DatabaseManager
from brokerledger.core.models import SecurityKind
from brokerledger.parsers.statement.parser import StatementParser
from brokerledger.services.identity_resolver import SecurityIdentityResolver
from brokerledger.services.ingestion import IngestionCoordinator
from brokerledger.services.portfolios import PortfolioRegistry
from brokerledger.services.reference_catalog import CatalogEntry, ReferenceCatalog


FIXTURES_DIR = Path(__file__).parent / "fixtures" / "statements"

BOND_ISIN = "RU000A100733"
AFLT_ISIN = "RU0009062285"
MAGN_ISIN = "RU0009084396"
GAZP_ISIN = "RU0007661625"


@pytest.fixture
def db_manager():
    """Provide a fresh DatabaseManager instance for each test."""
    DatabaseManager.reset_instance()
    manager = DatabaseManager()
    yield manager
    manager.close()
    DatabaseManager.reset_instance()


@pytest.fixture
def db_connection(db_manager):
    """Provide an initialized in-memory database connection."""
    conn = db_manager.init(":memory:")
    yield conn
    # Connection is closed by db_manager fixture


@pytest.fixture
def catalog(db_connection):
    """Reference catalog holding one bond and two shares."""
    catalog = ReferenceCatalog(db_connection)
    catalog.upsert(CatalogEntry(
        isin=BOND_ISIN,
        kind=SecurityKind.DEBT,
        secid=BOND_ISIN,
        board="TQCB",
        short_name="РЖД БО 001Р-13R",
        face_value=Decimal("1000"),
        decimals=2,
        prev_price=Decimal("101.1"),
        currency="SUR",
    ))
    catalog.upsert(CatalogEntry(
        isin=AFLT_ISIN,
        kind=SecurityKind.EQUITY,
        secid="AFLT",
        board="TQBR",
        short_name="Аэрофлот",
        decimals=2,
        prev_price=Decimal("97.5"),
        currency="SUR",
        lot_size=10,
    ))
    catalog.upsert(CatalogEntry(
        isin=MAGN_ISIN,
        kind=SecurityKind.EQUITY,
        secid="MAGN",
        board="TQBR",
        short_name="ММК",
        decimals=3,
        prev_price=Decimal("43.5"),
        currency="SUR",
        lot_size=100,
    ))
    return catalog


@pytest.fixture
def resolver(catalog):
    """Resolver without remote refresh."""
    return SecurityIdentityResolver(catalog)


@pytest.fixture
def parser(resolver):
    return StatementParser(resolver)


@pytest.fixture
def sample_portfolio(db_connection):
    """Create a sample portfolio in the database."""
    return PortfolioRegistry(db_connection).create("IIS", owner="ivanov")


@pytest.fixture
def coordinator(db_connection, parser):
    return IngestionCoordinator(db_connection, parser)


@pytest.fixture
def fixtures_path():
    """Path to statement fixtures."""
    return FIXTURES_DIR


@pytest.fixture
def monthly_statement(fixtures_path):
    return fixtures_path / "broker_report_202001.html"


@pytest.fixture
def daily_statement(fixtures_path):
    return fixtures_path / "broker_report_20200115.html"


# ----------------------------------------------------------------------
# Synthetic statements
# ----------------------------------------------------------------------

REFERENCE_HEADER = ["Наименование", "Код", "ISIN", "Эмитент", "Вид, Категория, Тип, иная информация"]
HOLDINGS_HEADER = [
    ["Наименование", "ISIN ценной бумаги", "Валюта рыночной цены", "Начало периода", "Конец периода"],
    ["Количество, шт", "Номинал", "Рыночная цена", "Рыночная стоимость", "НКД"] * 2,
]
TRADES_HEADER = [
    "Дата заключения", "Дата расчетов", "Время заключения", "Наименование ЦБ", "Код ЦБ",
    "Валюта", "Вид", "Количество, шт.", "Цена", "Сумма", "НКД",
    "Комиссия Брокера", "Комиссия Биржи", "Номер сделки", "Комментарий",
]
CASH_HEADER = ["Дата", "Торговая площадка", "Описание операции", "Валюта", "Сумма зачисления", "Сумма списания"]


def _row(cells: Sequence[str], tag: str = "td") -> str:
    return "<tr>" + "".join(f"<{tag}>{cell}</{tag}>" for cell in cells) + "</tr>"


def _table(header_rows: List[Sequence[str]], rows: Sequence[Sequence[str]]) -> str:
    body = [_row(h, "th") for h in header_rows] + [_row(r) for r in rows]
    return "<table>" + "\n".join(body) + "</table>"


def holding_row(name: str, isin: str, quantity: str, price: str = "-", nominal: str = "-",
                currency: str = "RUB") -> List[str]:
    """Holdings row with zero start-of-period columns."""
    return [name, isin, currency, "0", nominal, "0,00", "0,00", "0,00",
            quantity, nominal, price, "0,00", "0,00"]


def trade_row(trade_date: str, name: str, code: str, side: str, quantity: str, price: str,
              number: str, amount: str = "0,00") -> List[str]:
    return [trade_date, trade_date, "10:00:00", name, code, "RUB", side, quantity, price,
            amount, "0,00", "0,00", "0,00", number, ""]


def build_statement(
    heading: str = "Отчет брокера за период с 01.01.2020 по 31.01.2020, дата создания 03.02.2020",
    reference: Optional[Sequence[Sequence[str]]] = None,
    holdings: Optional[Sequence[Sequence[str]]] = None,
    trades: Optional[Sequence[Sequence[str]]] = None,
    cash: Optional[Sequence[Sequence[str]]] = None,
    extra: str = "",
) -> str:
    """
    Render a statement document. A table is omitted when its rows are None;
    the trades table gets its column-number row automatically.
    """
    parts = [
        "<html><head><meta charset=\"utf-8\"></head><body>",
        f"<h3>{heading}</h3>",
        "<p>Инвестор: Петров Петр</p>",
        "<p>Договор на брокерское обслуживание 77/20 от 10.01.2020</p>",
        extra,
    ]
    if reference is not None:
        parts.append(_table([REFERENCE_HEADER], reference))
    if holdings is not None:
        parts.append(_table(HOLDINGS_HEADER, holdings))
    if trades is not None:
        numbers = [str(i) for i in range(1, len(TRADES_HEADER) + 1)]
        parts.append(_table([TRADES_HEADER, numbers], trades))
    if cash is not None:
        parts.append(_table([CASH_HEADER], cash))
    parts.append("</body></html>")
    return "\n".join(parts)


@pytest.fixture
def statement_html():
    """Builder for synthetic statement documents."""
    return build_statement


@pytest.fixture
def rows():
    """Row helpers for statement_html: rows.holding(...), rows.trade(...)."""
    return SimpleNamespace(holding=holding_row, trade=trade_row)
