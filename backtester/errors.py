"""
Rule Backtester -- Exception hierarchy.

Every error raised by the package derives from :class:`BacktestError`.
Each class carries an ``exit_code`` that the command-line front end uses
as the process exit status.
"""

from __future__ import annotations

from typing import List, Optional


class BacktestError(Exception):
    """Base class for all backtester errors."""
    exit_code = 1


# ---------------------------------------------------------------------------
# Rule text
# ---------------------------------------------------------------------------

class RuleParseError(BacktestError):
    """Raised when rule text cannot be parsed.

    Attributes:
        message: Human-readable description of what was expected.
        position: Byte offset into the UTF-8 encoded input where parsing failed.
        key: Optional config key the rule text came from.
    """
    exit_code = 4

    def __init__(self, message: str, position: int, key: Optional[str] = None) -> None:
        self.message = message
        self.position = position
        self.key = key
        prefix = f"{key}: " if key else ""
        super().__init__(f"{prefix}parse error at position {position}: {message}")

    def display_with_context(self, text: str) -> str:
        """Render the input with a caret under the failing position."""
        column = len(text.encode("utf-8")[:self.position].decode("utf-8", errors="ignore"))
        caret = " " * column + "^"
        return f"  {text}\n  {caret}\n  {self.message}"

    def with_key(self, key: str) -> "RuleParseError":
        """Return a copy annotated with the config key the text came from."""
        return RuleParseError(self.message, self.position, key=key)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(BacktestError):
    """Raised when configuration cannot be loaded or is unusable."""
    exit_code = 2


class ConfigMissingError(ConfigError):
    """Raised when a required configuration key is absent."""

    def __init__(self, section: str, key: str) -> None:
        self.section = section
        self.key = key
        super().__init__(f"missing required config key [{section}] {key}")


class ConfigInvalidError(ConfigError):
    """Raised when a configuration value is present but invalid."""

    def __init__(self, section: str, key: str, reason: str) -> None:
        self.section = section
        self.key = key
        self.reason = reason
        super().__init__(f"invalid config value [{section}] {key}: {reason}")


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------

class DataError(BacktestError):
    """Base class for bar-source failures."""
    exit_code = 3


class BarSourceError(DataError):
    """Raised when the bar source is unreachable or returns garbage."""


class NoDataError(DataError):
    """Raised when a bar source has no bars for the requested instrument."""
    exit_code = 5

    def __init__(self, code: str, exchange: str) -> None:
        self.code = code
        self.exchange = exchange
        super().__init__(f"no data for {code}.{exchange}")


class InsufficientDataError(DataError):
    """Raised when an instrument has fewer bars than a run requires."""
    exit_code = 5

    def __init__(self, code: str, bars: int, minimum: int) -> None:
        self.code = code
        self.bars = bars
        self.minimum = minimum
        super().__init__(
            f"insufficient data for {code}: {bars} bars (minimum {minimum})"
        )


# ---------------------------------------------------------------------------
# Universe
# ---------------------------------------------------------------------------

class UniverseError(BacktestError):
    """Raised when a list of instrument codes is malformed."""
    exit_code = 2


class AllInstrumentsFailedError(BacktestError):
    """Raised when every instrument in a universe was skipped.

    Attributes:
        skipped: The :class:`~backtester.universe.SkippedInstrument` records.
    """
    exit_code = 5

    def __init__(self, message: str, skipped: Optional[List] = None) -> None:
        self.skipped = list(skipped or [])
        super().__init__(message)


class AllInstrumentsFetchFailedError(AllInstrumentsFailedError):
    """Every instrument failed because the bar source errored."""
    exit_code = 3


class AllInstrumentsInsufficientError(AllInstrumentsFailedError):
    """Every instrument failed for lack of history."""


# ---------------------------------------------------------------------------
# Programming errors
# ---------------------------------------------------------------------------

class InvariantViolation(BacktestError):
    """Raised when internal state breaks an invariant that validated input guarantees."""
