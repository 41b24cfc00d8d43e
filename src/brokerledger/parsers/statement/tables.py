"""
Header-driven table discovery for broker statements.

Each table kind owns a rule: phrases that must appear in its header rows
(any one of several alternatives) and phrases that must not. Rules are
tried against the first one or two rows of every table in the document
and the first table matching a kind wins. Position in the document
never matters.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup, Tag

from brokerledger.parsers.statement.utils import clean_text

logger = logging.getLogger(__name__)


class TableKind(Enum):
    """Logical tables of a statement."""
    SECURITY_REFERENCE = "security_reference"
    HOLDINGS = "holdings"
    TRADES = "trades"
    CASH_MOVEMENTS = "cash_movements"


@dataclass(frozen=True)
class TableRule:
    """
    Predicate over header text.

    Attributes:
        kind: Table kind recognized by this rule
        any_of: Alternatives; each is a group of phrases that must all occur
        none_of: Phrases whose presence rejects the table
        header_depth: Number of leading rows inspected
        data_offset: Index of the first data row
    """

    kind: TableKind
    any_of: Tuple[Tuple[str, ...], ...]
    none_of: Tuple[str, ...] = ()
    header_depth: int = 1
    data_offset: int = 1

    def matches(self, header_rows: Sequence[Sequence[str]]) -> bool:
        text = " | ".join(
            cell for row in header_rows[: self.header_depth] for cell in row
        )
        if not text:
            return False
        if any(phrase in text for phrase in self.none_of):
            return False
        return any(all(phrase in text for phrase in group) for group in self.any_of)


# Trades come before holdings: the trade table also has quantity and
# accrued interest columns, and is told apart by its trade-number header.
DEFAULT_RULES: Tuple[TableRule, ...] = (
    TableRule(
        kind=TableKind.TRADES,
        any_of=(("Номер сделки",), ("Вид", "Время заключения")),
        header_depth=1,
        data_offset=2,
    ),
    TableRule(
        kind=TableKind.HOLDINGS,
        any_of=(("Количество", "НКД"), ("Рыночная стоимость", "НКД")),
        none_of=("Номер сделки", "Время заключения", "Эмитент"),
        header_depth=2,
        data_offset=2,
    ),
    TableRule(
        kind=TableKind.SECURITY_REFERENCE,
        any_of=(("Вид, Категория, Тип",), ("Эмитент", "ISIN")),
        none_of=("НКД", "Номер сделки"),
        header_depth=1,
        data_offset=1,
    ),
    TableRule(
        kind=TableKind.CASH_MOVEMENTS,
        any_of=(("Сумма зачисления", "Сумма списания"),),
        header_depth=1,
        data_offset=1,
    ),
)


@dataclass
class StatementTable:
    """A discovered table with its rows split into cells."""

    kind: TableKind
    element: Tag
    rule: TableRule

    def rows(self) -> List[Tag]:
        return table_rows(self.element)

    def data_rows(self) -> Iterable[Tuple[int, Tag]]:
        """Yield (row index, row) pairs past the header rows."""
        for index, row in enumerate(self.rows()):
            if index >= self.rule.data_offset:
                yield index, row


def table_rows(table: Tag) -> List[Tag]:
    """Rows belonging to this table, excluding rows of nested tables."""
    return [row for row in table.find_all("tr") if row.find_parent("table") is table]


def row_cells(row: Tag) -> List[Tag]:
    return row.find_all(["td", "th"], recursive=False)


def header_texts(table: Tag, depth: int = 2) -> List[List[str]]:
    """Cell texts of the first `depth` rows."""
    return [
        [clean_text(cell.get_text(" ")) for cell in row_cells(row)]
        for row in table_rows(table)[:depth]
    ]


def classify_table(header_rows: Sequence[Sequence[str]], rules: Sequence[TableRule] = DEFAULT_RULES) -> Optional[TableRule]:
    """Return the first rule matching the header rows, if any."""
    for rule in rules:
        if rule.matches(header_rows):
            return rule
    return None


def discover_tables(soup: BeautifulSoup, rules: Sequence[TableRule] = DEFAULT_RULES) -> Dict[TableKind, StatementTable]:
    """
    Locate each logical table in a parsed document.

    Returns:
        Mapping of kind to the first table recognized as that kind
    """
    found: Dict[TableKind, StatementTable] = {}
    for index, table in enumerate(soup.find_all("table")):
        rule = classify_table(header_texts(table), rules)
        if rule is None:
            continue
        if rule.kind in found:
            logger.debug(f"Ignoring extra {rule.kind.value} table #{index}")
            continue
        logger.debug(f"Table #{index} recognized as {rule.kind.value}")
        found[rule.kind] = StatementTable(kind=rule.kind, element=table, rule=rule)
    return found
