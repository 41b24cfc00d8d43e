"""
Security identity resolution.

Turns an ISIN (with an optional display name and the statement's own
reference-table hints) into a SecurityIdentity. Sources are consulted in
a fixed order:

1. local bond catalog
2. local stock catalog
3. one remote refresh for domestic ISINs missing from both, then 1-2 again
4. the kind hint from the statement's reference table
5. EQUITY for foreign ISINs (default_kind_for_foreign_isin)

Anything left over is an UnresolvedIdentityError.
"""

import logging
from dataclasses import replace
from typing import Iterable, Mapping, Optional, Protocol

from brokerledger.core.exceptions import UnresolvedIdentityError
from brokerledger.core.models import SecurityIdentity, SecurityKind, is_isin_shaped
from brokerledger.services.reference_catalog import SecurityCatalog

logger = logging.getLogger(__name__)

DEFAULT_DOMESTIC_PREFIXES = ("RU",)


class SecurityRefresher(Protocol):
    """On-demand remote catalog refresh for a single ISIN."""

    def refresh_security(self, isin: str) -> bool: ...


def is_domestic_isin(isin: str, domestic_prefixes: Iterable[str] = DEFAULT_DOMESTIC_PREFIXES) -> bool:
    prefix = isin[:2].upper()
    return any(prefix == p.upper() for p in domestic_prefixes)


def default_kind_for_foreign_isin(
    isin: str,
    domestic_prefixes: Iterable[str] = DEFAULT_DOMESTIC_PREFIXES,
) -> Optional[SecurityKind]:
    """
    Kind assumed for an ISIN that no catalog or hint could classify.

    Foreign ISINs are traded as shares or depositary receipts, so they
    default to EQUITY. Domestic ISINs and values that are not ISIN-shaped
    get no default.
    """
    if not is_isin_shaped(isin) or is_domestic_isin(isin, domestic_prefixes):
        return None
    return SecurityKind.EQUITY


class SecurityIdentityResolver:
    """
    Resolves ISINs to canonical identities.

    Usage:
        resolver = SecurityIdentityResolver(catalog, refresher=moex_refresher)
        identity = resolver.resolve("RU000A100733", "ОФЗ 26233", {"RU000A100733": SecurityKind.DEBT})
    """

    def __init__(
        self,
        catalog: SecurityCatalog,
        refresher: Optional[SecurityRefresher] = None,
        domestic_prefixes: Iterable[str] = DEFAULT_DOMESTIC_PREFIXES,
    ):
        self.catalog = catalog
        self.refresher = refresher
        self.domestic_prefixes = tuple(p.upper() for p in domestic_prefixes)

    def resolve(
        self,
        isin: str,
        name_hint: Optional[str] = None,
        statement_hints: Optional[Mapping[str, SecurityKind]] = None,
    ) -> SecurityIdentity:
        """
        Resolve an ISIN to a SecurityIdentity.

        Raises:
            UnresolvedIdentityError: If no source yields a kind
        """
        isin = isin.strip().upper()

        identity = self._from_catalogs(isin)
        if identity:
            return self._with_name(identity, name_hint)

        if is_domestic_isin(isin, self.domestic_prefixes) and self._refresh(isin):
            identity = self._from_catalogs(isin)
            if identity:
                logger.info(f"Resolved {isin} after remote refresh")
                return self._with_name(identity, name_hint)

        hinted = (statement_hints or {}).get(isin)
        if hinted is not None:
            logger.debug(f"Resolved {isin} as {hinted.value} from statement reference table")
            return SecurityIdentity(isin=isin, kind=hinted, name=name_hint)

        default_kind = default_kind_for_foreign_isin(isin, self.domestic_prefixes)
        if default_kind is not None:
            logger.debug(f"Defaulting foreign {isin} to {default_kind.value}")
            return SecurityIdentity(isin=isin, kind=default_kind, name=name_hint)

        raise UnresolvedIdentityError(isin, name_hint)

    def _from_catalogs(self, isin: str) -> Optional[SecurityIdentity]:
        return self.catalog.find_bond(isin) or self.catalog.find_stock(isin)

    def _refresh(self, isin: str) -> bool:
        if self.refresher is None:
            return False
        try:
            return bool(self.refresher.refresh_security(isin))
        except Exception as e:
            # Remote failures count as "not found"
            logger.warning(f"Remote refresh failed for {isin}: {e}")
            return False

    @staticmethod
    def _with_name(identity: SecurityIdentity, name_hint: Optional[str]) -> SecurityIdentity:
        if identity.name or not name_hint:
            return identity
        return replace(identity, name=name_hint)
