"""
Rule Backtester -- Configuration sources and builders.

A :class:`ConfigSource` answers typed lookups by ``(section, key)``.
Absence and invalidity are different conditions: an absent key yields
the caller's default, while a present value that cannot be converted
raises :class:`ConfigInvalidError`.

Sources:
  - :class:`IniConfigSource`: INI files via :mod:`configparser`
  - :class:`EnvConfigSource`: ``SECTION_KEY`` environment variables,
    optionally seeded from a ``.env`` file via python-dotenv
  - :class:`DictConfigSource`: nested dicts, for callers building config in code

Example INI::

    [backtest]
    start_date = 2020-01-01
    end_date = 2024-12-31
    initial_capital = 100000
    exchange = ASX
    codes = BHP, CBA, WES

    [strategy]
    name = Golden cross
    entry_long = CROSS_ABOVE(SMA(50), SMA(200))
    exit_long = CROSS_BELOW(SMA(50), SMA(200))
    position_size = 0.25
    max_positions = 3
"""

from __future__ import annotations

import configparser
import os
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from dotenv import dotenv_values

from backtester.errors import ConfigError, ConfigInvalidError, ConfigMissingError, RuleParseError
from backtester.models import BacktestConfig, Strategy
from backtester.parser import parse_rule
from backtester.rules import Rule
from backtester.universe import parse_codes

_TRUE = {"true", "yes", "1", "on"}
_FALSE = {"false", "no", "0", "off"}


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

class ConfigSource(ABC):
    """Typed key lookup by section and key."""

    @abstractmethod
    def get_string(self, section: str, key: str) -> Optional[str]:
        """Raw string value, or ``None`` if the key is absent."""

    def has(self, section: str, key: str) -> bool:
        return self.get_string(section, key) is not None

    def get_int(self, section: str, key: str, default: int) -> int:
        raw = self.get_string(section, key)
        if raw is None or not raw.strip():
            return default
        try:
            return int(raw.strip())
        except ValueError:
            raise ConfigInvalidError(section, key, f"expected an integer, got '{raw}'") from None

    def get_float(self, section: str, key: str, default: float) -> float:
        raw = self.get_string(section, key)
        if raw is None or not raw.strip():
            return default
        try:
            return float(raw.strip())
        except ValueError:
            raise ConfigInvalidError(section, key, f"expected a number, got '{raw}'") from None

    def get_bool(self, section: str, key: str, default: bool) -> bool:
        raw = self.get_string(section, key)
        if raw is None or not raw.strip():
            return default
        value = raw.strip().lower()
        if value in _TRUE:
            return True
        if value in _FALSE:
            return False
        raise ConfigInvalidError(section, key, f"expected a boolean, got '{raw}'")


class IniConfigSource(ConfigSource):
    """INI-file configuration backed by :class:`configparser.ConfigParser`."""

    def __init__(self, parser: configparser.ConfigParser) -> None:
        self._parser = parser

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "IniConfigSource":
        """Load *path*.

        Raises:
            ConfigError: If the file is missing or not valid INI.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"config file not found: {path}")
        try:
            return cls.from_string(path.read_text())
        except ConfigError as e:
            raise ConfigError(f"{path}: {e}") from e

    @classmethod
    def from_string(cls, text: str) -> "IniConfigSource":
        parser = configparser.ConfigParser(interpolation=None)
        try:
            parser.read_string(text)
        except configparser.Error as e:
            raise ConfigError(f"invalid INI: {e}") from e
        return cls(parser)

    def get_string(self, section: str, key: str) -> Optional[str]:
        return self._parser.get(section, key, fallback=None)


class EnvConfigSource(ConfigSource):
    """Environment-variable configuration.

    ``(section, key)`` maps to the variable ``SECTION_KEY`` upper-cased,
    e.g. ``BACKTEST_INITIAL_CAPITAL``.  Values from *env_file* are read
    with :func:`dotenv.dotenv_values` and overridden by the process
    environment.

    Args:
        env_file: Optional path to a ``.env`` file.
        environ: Mapping to use instead of :data:`os.environ`.
    """

    def __init__(
        self,
        env_file: Union[str, Path, None] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        values: Dict[str, str] = {}
        if env_file is not None and Path(env_file).exists():
            values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        values.update(os.environ if environ is None else environ)
        self._values = values

    @staticmethod
    def env_key(section: str, key: str) -> str:
        return f"{section}_{key}".upper()

    def get_string(self, section: str, key: str) -> Optional[str]:
        return self._values.get(self.env_key(section, key))


class DictConfigSource(ConfigSource):
    """Configuration from a ``{section: {key: value}}`` mapping."""

    def __init__(self, data: Mapping[str, Mapping[str, object]]) -> None:
        self._data = data

    def get_string(self, section: str, key: str) -> Optional[str]:
        value = self._data.get(section, {}).get(key)
        return None if value is None else str(value)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _require_string(source: ConfigSource, section: str, key: str) -> str:
    value = source.get_string(section, key)
    if value is None or not value.strip():
        raise ConfigMissingError(section, key)
    return value.strip()


def _date(source: ConfigSource, key: str) -> date:
    raw = _require_string(source, "backtest", key)
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError:
        raise ConfigInvalidError(
            "backtest", key, f"invalid {key} format, expected YYYY-MM-DD"
        ) from None


def load_backtest_config(source: ConfigSource) -> BacktestConfig:
    """Build and validate a :class:`BacktestConfig` from ``[backtest]``.

    Raises:
        ConfigMissingError: If a start or end date is absent.
        ConfigInvalidError: If any value is malformed or out of range.
    """
    start = _date(source, "start_date")
    end = _date(source, "end_date")
    if start >= end:
        raise ConfigInvalidError("backtest", "start_date", "start_date must be before end_date")

    config = BacktestConfig(
        start_date=start,
        end_date=end,
        initial_capital=source.get_float("backtest", "initial_capital", 100_000.0),
        commission_per_trade=source.get_float("backtest", "commission_per_trade", 0.0),
        commission_pct=source.get_float("backtest", "commission_pct", 0.0),
        slippage_pct=source.get_float("backtest", "slippage_pct", 0.0),
        allow_shorting=source.get_bool("backtest", "allow_shorting", False),
        risk_free_rate=source.get_float("backtest", "risk_free_rate", 0.05),
    )

    if config.initial_capital <= 0:
        raise ConfigInvalidError("backtest", "initial_capital", "initial_capital must be positive")
    for key in ("commission_per_trade", "commission_pct", "slippage_pct"):
        if getattr(config, key) < 0:
            raise ConfigInvalidError("backtest", key, f"{key} must be non-negative")
    if not 0 <= config.risk_free_rate < 1:
        raise ConfigInvalidError("backtest", "risk_free_rate", "risk_free_rate must be between 0 and 1")
    return config


def load_exchange(source: ConfigSource) -> str:
    """``[backtest] exchange``, required for a run."""
    return _require_string(source, "backtest", "exchange").upper()


def resolve_codes(source: ConfigSource, override: Optional[str] = None) -> List[str]:
    """Instrument codes for a run.

    Precedence: *override*, then ``[backtest] codes`` (comma-separated),
    then ``[backtest] code``.

    Raises:
        ConfigMissingError: If no code is configured anywhere.
        UniverseError: On an empty token or duplicate in the code list.
    """
    if override:
        return parse_codes(override)
    codes = source.get_string("backtest", "codes")
    if codes is not None and codes.strip():
        return parse_codes(codes)
    code = source.get_string("backtest", "code")
    if code is not None and code.strip():
        return [code.strip().upper()]
    raise ConfigMissingError("backtest", "code")


def _rule(source: ConfigSource, key: str, required: bool) -> Optional[Rule]:
    text = source.get_string("strategy", key)
    if text is None or not text.strip():
        if required:
            raise ConfigMissingError("strategy", key)
        return None
    try:
        return parse_rule(text)
    except RuleParseError as e:
        raise e.with_key(key) from None


def load_strategy(source: ConfigSource) -> Strategy:
    """Build and validate a :class:`Strategy` from ``[strategy]``.

    Raises:
        ConfigMissingError: If ``entry_long`` or ``exit_long`` is absent.
        ConfigInvalidError: If a numeric setting is out of range.
        RuleParseError: If a rule fails to parse (annotated with its key).
    """
    position_size = source.get_float("strategy", "position_size", 0.25)
    if not 0 < position_size <= 1:
        raise ConfigInvalidError("strategy", "position_size", "position_size must be in (0, 1]")
    stop_loss = source.get_float("strategy", "stop_loss", 0.0)
    if stop_loss < 0:
        raise ConfigInvalidError("strategy", "stop_loss", "stop_loss must be non-negative")
    take_profit = source.get_float("strategy", "take_profit", 0.0)
    if take_profit < 0:
        raise ConfigInvalidError("strategy", "take_profit", "take_profit must be non-negative")
    max_positions = source.get_int("strategy", "max_positions", 1)
    if max_positions < 1:
        raise ConfigInvalidError("strategy", "max_positions", "max_positions must be at least 1")

    return Strategy(
        name=(source.get_string("strategy", "name") or "Unnamed").strip(),
        description=(source.get_string("strategy", "description") or "").strip(),
        entry_long=_rule(source, "entry_long", required=True),
        exit_long=_rule(source, "exit_long", required=True),
        entry_short=_rule(source, "entry_short", required=False),
        exit_short=_rule(source, "exit_short", required=False),
        position_size=position_size,
        stop_loss_pct=stop_loss,
        take_profit_pct=take_profit,
        max_positions=max_positions,
    )
