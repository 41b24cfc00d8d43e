"""
Holdings Report - portfolio valuation exported to Excel.

Lists every held security with quantity, prices, current and purchase
value and total return, followed by the cash balance and totals.
"""

import logging
from datetime import date
from pathlib import Path
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

from brokerledger.core.models import SecurityKind
from brokerledger.services.valuation import PortfolioValue

logger = logging.getLogger(__name__)

HEADERS = [
    "Name", "ISIN", "Kind", "Quantity", "Price",
    "Current Value", "Purchase Value", "Total Return", "Return %",
]
MONEY_COLUMNS = {5, 6, 7, 8}


class HoldingsReport:
    """
    Excel export of a PortfolioValue.

    Usage:
        valuation = PortfolioValuationService(conn, catalog).value(portfolio_id)
        HoldingsReport().export_excel(valuation, Path("holdings.xlsx"))
    """

    def __init__(self, money_format: str = "#,##0.00"):
        self.money_format = money_format

    def export_excel(self, valuation: PortfolioValue, output_path: Path,
                     as_of_date: Optional[date] = None) -> Path:
        """
        Export a valuation to Excel.

        Args:
            valuation: Result of PortfolioValuationService.value()
            output_path: Output file path (.xlsx)
            as_of_date: Date shown in the title (default: today)

        Returns:
            Path to generated Excel file
        """
        as_of_date = as_of_date or date.today()

        wb = Workbook()
        ws = wb.active
        ws.title = "Holdings"

        title_font = Font(bold=True, size=14)
        header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
        header_font = Font(bold=True, color="FFFFFF")
        bold = Font(bold=True)
        border = Border(
            left=Side(style="thin"),
            right=Side(style="thin"),
            top=Side(style="thin"),
            bottom=Side(style="thin"),
        )

        row = 1
        ws.cell(row=row, column=1, value=f"Portfolio {valuation.portfolio_id} - As of {as_of_date:%d.%m.%Y}")
        ws.cell(row=row, column=1).font = title_font
        ws.merge_cells(start_row=row, start_column=1, end_row=row, end_column=len(HEADERS))
        row += 2

        if valuation.positions:
            for col, header in enumerate(HEADERS, 1):
                cell = ws.cell(row=row, column=col, value=header)
                cell.font = header_font
                cell.fill = header_fill
                cell.border = border
                cell.alignment = Alignment(horizontal="center")
            row += 1

            for position in valuation.positions:
                data = [
                    position.name,
                    position.isin,
                    "Bond" if position.kind is SecurityKind.DEBT else "Stock",
                    position.quantity,
                    position.current_price,
                    position.current_value,
                    position.purchase_value,
                    position.total_return,
                    position.total_return_percent,
                ]
                for col, value in enumerate(data, 1):
                    cell = ws.cell(row=row, column=col, value=value)
                    cell.border = border
                    if col in MONEY_COLUMNS:
                        cell.number_format = self.money_format
                row += 1
        else:
            ws.cell(row=row, column=1, value="No holdings found.")
            row += 1

        row += 1
        for label, amount in (
            ("Cash balance", valuation.cash_balance),
            ("Purchase value", valuation.purchase_value),
            ("Total value", valuation.total_value),
        ):
            ws.cell(row=row, column=1, value=label).font = bold
            cell = ws.cell(row=row, column=6, value=amount)
            cell.font = bold
            cell.number_format = self.money_format
            row += 1

        for letter, width in zip("ABCDEFGHI", (32, 16, 8, 12, 14, 16, 16, 14, 10)):
            ws.column_dimensions[letter].width = width

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        wb.save(output_path)
        logger.info(f"Holdings report written to {output_path}")
        return output_path
