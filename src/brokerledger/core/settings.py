"""Runtime settings for the broker ledger.

Defaults are deep-merged with an optional JSON settings file, then
BROKERLEDGER_* environment variables take precedence over both.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from brokerledger.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "BROKERLEDGER_"

DEFAULT_SETTINGS = {
    "database": {
        "path": "data/ledger.db",
    },
    "identity": {
        # ISIN country prefixes of the domestic market
        "domestic_prefixes": ["RU"],
    },
    "market_data": {
        "base_url": "https://iss.moex.com/iss",
        "timeout": 10.0,
        "equity_board": "TQBR",
        "bond_boards": ["TQOB", "TQCB"],
        "quote_ttl_seconds": 60,
    },
    "display": {
        "decimal_places": 2,
    },
    "logging": {
        "level": "INFO",
    },
}

# env var suffix -> (section, key, converter)
_ENV_OVERRIDES = {
    "DB_PATH": ("database", "path", str),
    "DOMESTIC_PREFIXES": ("identity", "domestic_prefixes", lambda v: [p.strip().upper() for p in v.split(",") if p.strip()]),
    "MOEX_BASE_URL": ("market_data", "base_url", str),
    "HTTP_TIMEOUT": ("market_data", "timeout", float),
    "EQUITY_BOARD": ("market_data", "equity_board", str),
    "BOND_BOARDS": ("market_data", "bond_boards", lambda v: [b.strip().upper() for b in v.split(",") if b.strip()]),
    "QUOTE_TTL": ("market_data", "quote_ttl_seconds", int),
    "LOG_LEVEL": ("logging", "level", str),
}


@dataclass(frozen=True)
class MarketDataConfig:
    """Market data client configuration."""
    base_url: str = "https://iss.moex.com/iss"
    timeout: float = 10.0
    equity_board: str = "TQBR"
    bond_boards: Tuple[str, ...] = ("TQOB", "TQCB")
    quote_ttl_seconds: int = 60


@dataclass(frozen=True)
class LedgerSettings:
    """Resolved runtime settings."""

    database_path: str = "data/ledger.db"
    domestic_prefixes: Tuple[str, ...] = ("RU",)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    decimal_places: int = 2
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerSettings":
        market = data.get("market_data", {})
        return cls(
            database_path=data.get("database", {}).get("path", "data/ledger.db"),
            domestic_prefixes=tuple(data.get("identity", {}).get("domestic_prefixes", ["RU"])),
            market_data=MarketDataConfig(
                base_url=market.get("base_url", "https://iss.moex.com/iss").rstrip("/"),
                timeout=float(market.get("timeout", 10.0)),
                equity_board=market.get("equity_board", "TQBR"),
                bond_boards=tuple(market.get("bond_boards", ["TQOB", "TQCB"])),
                quote_ttl_seconds=int(market.get("quote_ttl_seconds", 60)),
            ),
            decimal_places=int(data.get("display", {}).get("decimal_places", 2)),
            log_level=data.get("logging", {}).get("level", "INFO"),
        )

    @classmethod
    def load(
        cls,
        config_path: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "LedgerSettings":
        """
        Load settings.

        Args:
            config_path: Optional JSON settings file
            env: Environment mapping (defaults to os.environ)

        Raises:
            ConfigurationError: If the file or an override cannot be parsed
        """
        data = _deep_merge({}, DEFAULT_SETTINGS)

        if config_path is not None:
            path = Path(config_path)
            if path.exists():
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        data = _deep_merge(data, json.load(f))
                    logger.debug(f"Loaded settings from {path}")
                except (json.JSONDecodeError, OSError) as e:
                    raise ConfigurationError(f"Cannot read settings file {path}: {e}", key=str(path)) from e
            else:
                logger.warning(f"Settings file {path} not found, using defaults")

        data = _apply_env(data, os.environ if env is None else env)
        return cls.from_dict(data)


def _deep_merge(base: Dict, override: Dict) -> Dict:
    """Deep merge override into a copy of base."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env(data: Dict, env: Mapping[str, str]) -> Dict:
    for suffix, (section, key, convert) in _ENV_OVERRIDES.items():
        name = ENV_PREFIX + suffix
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {name}: {raw!r}", key=name) from e
        data = _deep_merge(data, {section: {key: value}})
    return data
