"""
Broker statement parser.

Parses the HTML brokerage report issued for an account, in both the
monthly (date-range) and daily (single-day) variants.

Statement layout:
- Heading: "Отчет брокера за период с 01.01.2020 по 31.01.2020, дата создания 05.02.2020"
  (daily variant: "за 15.01.2020")
- Paragraphs with "Инвестор: ..." and "Договор ... счета 12345 от ..."
- Security reference table: name, code, ISIN, issuer, type
- Holdings table: start-of-period and end-of-period columns
- Trades table: one row per executed trade
- Cash movements table (monthly variant only)

Tables are located by header text, see tables.py.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Sequence, TextIO, Tuple, Union

from bs4 import BeautifulSoup, Tag

from brokerledger.core.exceptions import MalformedStatementError, UnresolvedIsinError
from brokerledger.core.models import (
    CashMovement,
    EndOfPeriodHolding,
    ParsedStatement,
    ReportingPeriod,
    SecurityIdentity,
    SecurityKind,
    Transaction,
    TradeSide,
    percent_of_nominal,
)
from brokerledger.parsers.statement.tables import (
    DEFAULT_RULES,
    StatementTable,
    TableKind,
    TableRule,
    discover_tables,
    row_cells,
)
from brokerledger.parsers.statement.utils import (
    clean_text,
    extract_contract_number,
    is_blank,
    is_isin_shaped,
    isin_checksum_ok,
    normalize_name,
    parse_date,
    parse_decimal,
    parse_time,
)
from brokerledger.services.identity_resolver import SecurityIdentityResolver

logger = logging.getLogger(__name__)

Document = Union[str, bytes, Path, BinaryIO, TextIO]

PERIOD_RANGE = re.compile(r"за\s+период\s+с\s+(\d{2}\.\d{2}\.\d{4})\s+по\s+(\d{2}\.\d{2}\.\d{4})", re.IGNORECASE)
PERIOD_DAY = re.compile(r"\bза\s+(\d{2}\.\d{2}\.\d{4})", re.IGNORECASE)
CREATED_ON = re.compile(r"дата\s+создания\s+(\d{2}\.\d{2}\.\d{4})", re.IGNORECASE)

SKIP_MARKERS = ("Площадка", "Итого")

# Holdings table columns
H_NAME, H_ISIN, H_CURRENCY = 0, 1, 2
H_END_QTY, H_END_NOMINAL, H_END_PRICE = 8, 9, 10
H_MIN_CELLS = 9

# Trades table columns
T_TRADE_DATE, T_SETTLEMENT_DATE, T_TIME = 0, 1, 2
T_NAME, T_CODE, T_CURRENCY, T_SIDE = 3, 4, 5, 6
T_QTY, T_PRICE, T_AMOUNT, T_ACCRUED = 7, 8, 9, 10
T_BROKER_FEE, T_EXCHANGE_FEE, T_NUMBER = 11, 12, 13
T_MIN_CELLS = 10

# Security reference table columns
R_NAME, R_CODE, R_ISIN, R_ISSUER, R_TYPE = 0, 1, 2, 3, 4

# Cash movements table columns
C_DATE, C_VENUE, C_DESCRIPTION, C_CURRENCY, C_CREDIT, C_DEBIT = 0, 1, 2, 3, 4, 5
C_MIN_CELLS = 6

_SIDES = {
    "покупка": TradeSide.BUY,
    "продажа": TradeSide.SELL,
}


def kind_from_type_label(label: str) -> Optional[SecurityKind]:
    """
    Map a reference-table type label to a security kind.

    "Облигация федерального займа" -> DEBT; "Акция обыкновенная",
    "Пай", "ETF" and depositary receipts -> EQUITY. Unknown labels
    give None.
    """
    text = clean_text(label).lower()
    if not text:
        return None
    if "облигац" in text:
        return SecurityKind.DEBT
    if any(marker in text for marker in ("акци", "пай", "etf", "расписк", "депозитарн")):
        return SecurityKind.EQUITY
    return None


@dataclass(frozen=True)
class _NamedIsin:
    name: str
    isin: str
    code: Optional[str] = None


def _cell_text(cells: Sequence[Tag], index: int) -> str:
    if index >= len(cells):
        return ""
    return clean_text(cells[index].get_text(" "))


def _is_separator_row(cells: Sequence[Tag]) -> bool:
    """Venue sub-headings and totals rows carry no data."""
    if not cells:
        return True
    first = cells[0]
    try:
        if int(first.get("colspan", 1)) > 1:
            return True
    except (TypeError, ValueError):
        return True
    first_text = clean_text(first.get_text(" "))
    return any(marker in first_text for marker in SKIP_MARKERS)


def read_document(document: Document) -> Union[str, bytes]:
    if isinstance(document, Path):
        return document.read_bytes()
    if hasattr(document, "read"):
        return document.read()
    return document


class StatementParser:
    """
    Parser for broker statements.

    Usage:
        parser = StatementParser(resolver)
        statement = parser.parse(Path("report_202001.html"))
        for trade in statement.transactions:
            print(trade.isin, trade.side, trade.quantity)
    """

    def __init__(self, resolver: SecurityIdentityResolver, rules: Sequence[TableRule] = DEFAULT_RULES):
        self.resolver = resolver
        self.rules = tuple(rules)

    def parse(self, document: Document, source_name: Optional[str] = None) -> ParsedStatement:
        """
        Parse a statement document.

        Args:
            document: HTML as text, bytes, a path or an open file
            source_name: Original filename, kept on the result

        Returns:
            ParsedStatement

        Raises:
            MalformedStatementError: Missing period or holdings table, or unparseable cells
            UnresolvedIdentityError: A row's ISIN cannot be classified
            UnresolvedIsinError: A trade's security name matches no ISIN
        """
        if source_name is None and isinstance(document, Path):
            source_name = document.name

        soup = BeautifulSoup(read_document(document), "html.parser")
        return _ParseRun(self.resolver, soup, self.rules, source_name).run()


class _ParseRun:
    """State of one parse: discovered tables, hints and resolved identities."""

    def __init__(self, resolver: SecurityIdentityResolver, soup: BeautifulSoup,
                 rules: Sequence[TableRule], source_name: Optional[str]):
        self.resolver = resolver
        self.soup = soup
        self.source_name = source_name
        self.tables: Dict[TableKind, StatementTable] = discover_tables(soup, rules)
        self.hints: Dict[str, SecurityKind] = {}
        self.identities: Dict[str, SecurityIdentity] = {}
        self.reference_entries: List[_NamedIsin] = []
        self.holding_entries: List[_NamedIsin] = []

    def run(self) -> ParsedStatement:
        period, created_on = self._parse_period()

        if TableKind.HOLDINGS not in self.tables:
            raise MalformedStatementError(
                "Statement has no recognizable holdings table", table=TableKind.HOLDINGS.value
            )

        self._collect_reference()
        self._collect_holding_names()

        statement = ParsedStatement(
            period=period,
            created_on=created_on,
            counterparty=self._parse_investor(),
            contract_id=self._parse_contract(),
            source_name=self.source_name,
            security_hints=dict(self.hints),
        )
        statement.holdings = self._parse_holdings()
        statement.transactions = self._parse_trades()
        statement.cash_movements = self._parse_cash_movements()

        logger.info(
            f"Parsed statement {period}: {len(statement.holdings)} holdings, "
            f"{len(statement.transactions)} trades, {len(statement.cash_movements)} cash movements"
        )
        return statement

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _heading_texts(self) -> List[str]:
        texts = [clean_text(h.get_text(" ")) for h in self.soup.find_all(["h1", "h2", "h3", "h4"])]
        texts.append(clean_text(self.soup.get_text(" ")))
        return texts

    def _parse_period(self) -> Tuple[ReportingPeriod, Optional[date]]:
        for text in self._heading_texts():
            created_match = CREATED_ON.search(text)
            created_on = parse_date(created_match.group(1)) if created_match else None

            match = PERIOD_RANGE.search(text)
            if match:
                start, end = parse_date(match.group(1)), parse_date(match.group(2))
            else:
                match = PERIOD_DAY.search(text)
                if not match:
                    continue
                start = end = parse_date(match.group(1))
            try:
                return ReportingPeriod(start, end), created_on
            except ValueError as e:
                raise MalformedStatementError(f"Invalid statement period: {e}")

        raise MalformedStatementError("Statement period not found")

    def _paragraph_containing(self, marker: str) -> Optional[str]:
        """Text of the innermost block element mentioning marker."""
        candidates = [
            clean_text(element.get_text(" "))
            for element in self.soup.find_all(["p", "div", "span", "td"])
        ]
        matching = [text for text in candidates if marker in text]
        return min(matching, key=len) if matching else None

    def _parse_investor(self) -> Optional[str]:
        text = self._paragraph_containing("Инвестор:")
        if not text:
            return None
        name = text.split("Инвестор:", 1)[1]
        if "Договор" in name:
            name = name.split("Договор", 1)[0]
        return name.strip() or None

    def _parse_contract(self) -> Optional[str]:
        text = self._paragraph_containing("Договор")
        if not text:
            return None
        return extract_contract_number(text[text.find("Договор"):])

    # ------------------------------------------------------------------
    # Lookup sources
    # ------------------------------------------------------------------

    def _collect_reference(self) -> None:
        table = self.tables.get(TableKind.SECURITY_REFERENCE)
        if table is None:
            return
        for _, row in table.data_rows():
            cells = row_cells(row)
            if len(cells) <= R_ISIN or _is_separator_row(cells):
                continue
            isin = _cell_text(cells, R_ISIN).upper()
            if not is_isin_shaped(isin):
                continue
            self.reference_entries.append(
                _NamedIsin(name=_cell_text(cells, R_NAME), isin=isin, code=_cell_text(cells, R_CODE) or None)
            )
            kind = kind_from_type_label(_cell_text(cells, R_TYPE))
            if kind is not None:
                self.hints.setdefault(isin, kind)
            elif len(cells) > R_TYPE:
                logger.debug(f"No kind for type label '{_cell_text(cells, R_TYPE)}' of {isin}")

    def _collect_holding_names(self) -> None:
        table = self.tables[TableKind.HOLDINGS]
        for _, row in table.data_rows():
            cells = row_cells(row)
            if len(cells) <= H_ISIN or _is_separator_row(cells):
                continue
            isin = _cell_text(cells, H_ISIN).upper()
            if is_isin_shaped(isin):
                self.holding_entries.append(_NamedIsin(name=_cell_text(cells, H_NAME), isin=isin))

    def _identity(self, isin: str, name: Optional[str]) -> SecurityIdentity:
        identity = self.identities.get(isin)
        if identity is None:
            if not isin_checksum_ok(isin):
                logger.warning(f"ISIN {isin} fails check digit validation")
            identity = self.resolver.resolve(isin, name or None, self.hints)
            self.identities[isin] = identity
        return identity

    def lookup_isin(self, name: str, code: Optional[str] = None) -> str:
        """
        Find the ISIN of a security named in a trade row.

        The holdings table is searched before the reference table. Within
        a table names are compared exactly, by substring in either
        direction, and finally ignoring whitespace and case. The reference
        table also matches on its code column, ahead of the name steps.

        Raises:
            UnresolvedIsinError: If nothing matches
        """
        wanted = clean_text(name)
        isin = self._match_name(self.holding_entries, wanted)
        if isin is None and code:
            for entry in self.reference_entries:
                if entry.code and entry.code.lower() == code.lower():
                    return entry.isin
        if isin is None:
            isin = self._match_name(self.reference_entries, wanted)
        if isin is None:
            raise UnresolvedIsinError(name, code)
        return isin

    @staticmethod
    def _match_name(entries: Sequence[_NamedIsin], wanted: str) -> Optional[str]:
        entries = [e for e in entries if e.name]
        if not wanted or not entries:
            return None
        for entry in entries:
            if entry.name == wanted:
                return entry.isin
        for entry in entries:
            if wanted in entry.name or entry.name in wanted:
                return entry.isin
        normalized = normalize_name(wanted)
        for entry in entries:
            if normalize_name(entry.name) == normalized:
                return entry.isin
        return None

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def _parse_holdings(self) -> List[EndOfPeriodHolding]:
        table = self.tables[TableKind.HOLDINGS]
        holdings: List[EndOfPeriodHolding] = []

        for index, row in table.data_rows():
            cells = row_cells(row)
            if len(cells) < H_MIN_CELLS or _is_separator_row(cells):
                continue
            isin = _cell_text(cells, H_ISIN).upper()
            if not is_isin_shaped(isin):
                logger.debug(f"Holdings row {index}: no ISIN in '{isin}', skipped")
                continue

            try:
                quantity = parse_decimal(_cell_text(cells, H_END_QTY))
                statement_nominal = parse_decimal(_cell_text(cells, H_END_NOMINAL), default=None)
                price_text = _cell_text(cells, H_END_PRICE)
                price = None if is_blank(price_text) else parse_decimal(price_text)
            except ValueError as e:
                raise MalformedStatementError(str(e), table=TableKind.HOLDINGS.value, row=index) from e

            if quantity == 0:
                continue
            if quantity < 0:
                logger.warning(f"Holdings row {index}: negative quantity {quantity} for {isin}, skipped")
                continue

            name = _cell_text(cells, H_NAME)
            identity = self._identity(isin, name)

            price_is_percent = False
            if price is not None and identity.is_debt:
                nominal = identity.nominal or (statement_nominal if statement_nominal else None)
                if nominal:
                    price = percent_of_nominal(price, nominal)
                else:
                    logger.warning(f"No nominal for bond {isin}, price kept in percent")
                    price_is_percent = True

            holdings.append(EndOfPeriodHolding(
                isin=isin,
                kind=identity.kind,
                quantity=quantity,
                security_name=name or identity.name,
                currency=_cell_text(cells, H_CURRENCY) or None,
                price=price,
                price_is_percent=price_is_percent,
            ))

        return holdings

    def _parse_trades(self) -> List[Transaction]:
        table = self.tables.get(TableKind.TRADES)
        if table is None:
            return []

        transactions: List[Transaction] = []
        for index, row in table.data_rows():
            cells = row_cells(row)
            if len(cells) < T_MIN_CELLS or _is_separator_row(cells):
                continue
            try:
                trade_date = parse_date(_cell_text(cells, T_TRADE_DATE))
                if trade_date is None:
                    continue
                transaction = self._trade_from_cells(cells, trade_date)
            except ValueError as e:
                raise MalformedStatementError(str(e), table=TableKind.TRADES.value, row=index) from e
            transactions.append(transaction)
        return transactions

    def _trade_from_cells(self, cells: Sequence[Tag], trade_date: date) -> Transaction:
        name = _cell_text(cells, T_NAME)
        code = _cell_text(cells, T_CODE)
        isin = code.upper() if is_isin_shaped(code) else self.lookup_isin(name, code or None)
        identity = self._identity(isin, name)

        side_text = _cell_text(cells, T_SIDE).lower()
        side = next((s for label, s in _SIDES.items() if label in side_text), None)
        if side is None:
            raise ValueError(f"Unknown trade side: {_cell_text(cells, T_SIDE)!r}")

        quantity = parse_decimal(_cell_text(cells, T_QTY))
        if quantity <= 0:
            raise ValueError(f"Trade quantity must be positive: {_cell_text(cells, T_QTY)!r}")

        return Transaction(
            isin=isin,
            kind=identity.kind,
            trade_date=trade_date,
            settlement_date=parse_date(_cell_text(cells, T_SETTLEMENT_DATE)),
            trade_time=parse_time(_cell_text(cells, T_TIME)),
            currency=_cell_text(cells, T_CURRENCY) or None,
            side=side,
            quantity=quantity,
            price=parse_decimal(_cell_text(cells, T_PRICE)),
            amount=parse_decimal(_cell_text(cells, T_AMOUNT)),
            accrued_interest=parse_decimal(_cell_text(cells, T_ACCRUED)),
            broker_commission=parse_decimal(_cell_text(cells, T_BROKER_FEE)),
            exchange_commission=parse_decimal(_cell_text(cells, T_EXCHANGE_FEE)),
            trade_number=_cell_text(cells, T_NUMBER) or None,
            security_name=name or identity.name,
        )

    def _parse_cash_movements(self) -> List[CashMovement]:
        table = self.tables.get(TableKind.CASH_MOVEMENTS)
        if table is None:
            return []

        movements: List[CashMovement] = []
        for index, row in table.data_rows():
            cells = row_cells(row)
            if len(cells) < C_MIN_CELLS or _is_separator_row(cells):
                continue
            try:
                movement_date = parse_date(_cell_text(cells, C_DATE))
                if movement_date is None:
                    continue
                movements.append(CashMovement(
                    movement_date=movement_date,
                    venue=_cell_text(cells, C_VENUE) or None,
                    description=_cell_text(cells, C_DESCRIPTION) or None,
                    currency=_cell_text(cells, C_CURRENCY) or None,
                    credit=parse_decimal(_cell_text(cells, C_CREDIT)),
                    debit=parse_decimal(_cell_text(cells, C_DEBIT)),
                ))
            except ValueError as e:
                raise MalformedStatementError(str(e), table=TableKind.CASH_MOVEMENTS.value, row=index) from e
        return movements
