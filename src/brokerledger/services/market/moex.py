"""
MOEX ISS market data client.

ISS answers with blocks of the form

    {"securities": {"columns": ["SECID", "BOARDID", ...], "data": [[...], ...]},
     "marketdata": {"columns": [...], "data": [...]}}

Rows are turned into dicts keyed by lower-cased column names. Transport
and decoding failures are logged and reported as "no data"; callers never
see a requests exception.
"""

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

import requests

from brokerledger.core.models import SecurityKind
from brokerledger.services.identity_resolver import DEFAULT_DOMESTIC_PREFIXES, is_domestic_isin
from brokerledger.services.reference_catalog import CatalogEntry, ReferenceCatalog

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://iss.moex.com/iss"
BOND_BOARDS = ("TQOB", "TQCB")
DEFAULT_EQUITY_BOARD = "TQBR"

# Boards quoted on the bonds market; everything else is looked up under shares
_BOND_BOARD_PREFIXES = ("TQOB", "TQCB", "TQIR", "TQOD", "TQOE", "TQRD", "EQOB", "PSOB")


def market_for_board(board: str) -> str:
    return "bonds" if board.upper().startswith(_BOND_BOARD_PREFIXES) else "shares"


def rows(payload: Optional[Dict[str, Any]], block: str) -> List[Dict[str, Any]]:
    """Rows of an ISS block as dicts with lower-case keys."""
    if not payload:
        return []
    section = payload.get(block)
    if not isinstance(section, dict):
        return []
    columns = [str(c).lower() for c in section.get("columns", [])]
    return [dict(zip(columns, row)) for row in section.get("data", []) if isinstance(row, list)]


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


def _to_date(value: Any) -> Optional[date]:
    if not value or value == "0000-00-00":
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        return None


class MoexIssClient:
    """
    Thin ISS client.

    Usage:
        client = MoexIssClient(timeout=10)
        quote = client.get_quote("TQBR", "AFLT")
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        bond_boards: Iterable[str] = BOND_BOARDS,
    ):
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.bond_boards = tuple(bond_boards)

    def fetch(self, path: str, params: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
        """GET a path below the base URL, returning decoded JSON or None."""
        url = f"{self.base_url}{path}"
        query = {"iss.meta": "off"}
        query.update(params or {})
        try:
            response = self.session.get(url, params=query, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.warning(f"MOEX request failed for {url}: {e}")
        except ValueError as e:
            logger.warning(f"MOEX returned invalid JSON for {url}: {e}")
        return None

    def find_security(self, isin: str) -> Optional[Dict[str, Any]]:
        """General security record (secid, group, ...) for an ISIN."""
        payload = self.fetch(f"/securities/{isin}.json", {"iss.only": "securities"})
        for row in rows(payload, "securities"):
            if str(row.get("isin") or "").upper() == isin.upper():
                return row
        return None

    def fetch_bond(self, isin: str) -> Optional[CatalogEntry]:
        """
        Bond reference data for an ISIN.

        The secid found by ISIN is looked up on each bond board in turn. A
        bond missing from every board (e.g. matured) is built from the
        general record when its group says it is a bond.
        """
        general = self.find_security(isin)
        if general is None:
            logger.info(f"MOEX has no security with ISIN {isin}")
            return None

        secid = general.get("secid")
        if not secid:
            return None

        for board in self.bond_boards:
            payload = self.fetch(f"/engines/stock/markets/bonds/boards/{board}/securities/{secid}.json")
            securities = rows(payload, "securities")
            if securities:
                logger.debug(f"Bond {isin} found on board {board}")
                return self._bond_entry(isin, securities[0], board)

        group = str(general.get("group") or "").lower()
        if "bond" in group or "облигац" in group:
            return CatalogEntry(
                isin=isin.upper(),
                kind=SecurityKind.DEBT,
                secid=secid,
                short_name=general.get("shortname"),
                full_name=general.get("name"),
                face_value=to_decimal(general.get("facevalue")),
                currency=general.get("faceunit"),
            )

        logger.info(f"ISIN {isin} ({secid}) is not a bond, group={group!r}")
        return None

    def get_quote(self, market: str, ticker: str) -> Optional[Decimal]:
        """
        Current price of a ticker on a board.

        Uses LAST, then MARKETPRICE from marketdata, then PREVPRICE from
        securities. Bond prices are percent of nominal.
        """
        path = f"/engines/stock/markets/{market_for_board(market)}/boards/{market}/securities/{ticker}.json"
        payload = self.fetch(path, {"iss.only": "securities,marketdata"})
        if payload is None:
            return None

        for row in rows(payload, "marketdata"):
            price = to_decimal(row.get("last")) or to_decimal(row.get("marketprice"))
            if price:
                return price
        for row in rows(payload, "securities"):
            price = to_decimal(row.get("prevprice"))
            if price:
                return price
        logger.info(f"No quote for {market}:{ticker}")
        return None

    @staticmethod
    def _bond_entry(isin: str, row: Dict[str, Any], board: str) -> CatalogEntry:
        return CatalogEntry(
            isin=isin.upper(),
            kind=SecurityKind.DEBT,
            secid=row.get("secid"),
            board=row.get("boardid") or board,
            short_name=row.get("shortname"),
            full_name=row.get("secname"),
            face_value=to_decimal(row.get("facevalue")),
            decimals=_to_int(row.get("decimals")),
            prev_price=to_decimal(row.get("prevprice")),
            currency=row.get("faceunit") or row.get("currencyid"),
            lot_size=_to_int(row.get("lotsize")),
            maturity_date=_to_date(row.get("matdate")),
            coupon_percent=to_decimal(row.get("couponpercent")),
        )


class MoexSecurityRefresher:
    """
    Refreshes the local bond catalog from MOEX for one ISIN.

    Only domestic ISINs are looked up; anything else returns False without
    a request.
    """

    def __init__(
        self,
        client: MoexIssClient,
        catalog: ReferenceCatalog,
        domestic_prefixes: Iterable[str] = DEFAULT_DOMESTIC_PREFIXES,
    ):
        self.client = client
        self.catalog = catalog
        self.domestic_prefixes = tuple(domestic_prefixes)

    def refresh_security(self, isin: str) -> bool:
        if len(isin) != 12 or not is_domestic_isin(isin, self.domestic_prefixes):
            return False
        entry = self.client.fetch_bond(isin)
        if entry is None:
            return False
        self.catalog.upsert(entry)
        logger.info(f"Bond {isin} ({entry.secid}) loaded from MOEX")
        return True
