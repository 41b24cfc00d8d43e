"""
Broker statement parser (HTML, monthly and daily variants).
"""

from brokerledger.parsers.statement.parser import StatementParser, kind_from_type_label
from brokerledger.parsers.statement.tables import TableKind, TableRule, classify_table, discover_tables

__all__ = [
    "StatementParser",
    "kind_from_type_label",
    "TableKind",
    "TableRule",
    "classify_table",
    "discover_tables",
]
