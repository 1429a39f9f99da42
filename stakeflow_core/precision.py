"""
Precision and time constants for StakeFlow.

All token amounts are integers in the smallest indivisible unit:

    1 STK = 1,000,000,000 units (9 decimal places)

Rates are expressed in basis points (1 bp = 1/10000).  No float ever
enters the accounting path; floats only appear in display helpers.
"""

from __future__ import annotations

# Number of decimal places of the staked / reward token.
TOKEN_DECIMALS: int = 9

# Smallest representable unit: 1 unit = 0.000000001 STK.
UNITS_PER_TOKEN: int = 10 ** TOKEN_DECIMALS  # 1_000_000_000

TOKEN_SYMBOL: str = "STK"

# 10000 bp == 100 %
BPS_DENOMINATOR: int = 10_000

# ── time ───────────────────────────────────────────────────────────────

SECONDS_PER_HOUR: int = 3_600
SECONDS_PER_DAY: int = 86_400
SECONDS_PER_WEEK: int = 7 * SECONDS_PER_DAY
# Lock durations are counted in flat 30-day months.
SECONDS_PER_MONTH: int = 30 * SECONDS_PER_DAY
SECONDS_PER_YEAR: int = 365 * SECONDS_PER_DAY
WEEKS_PER_YEAR: int = 52


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer division rounding up (for non-negative operands).

    >>> ceil_div(7, 2)
    4
    >>> ceil_div(0, 5)
    0
    """
    return -(-numerator // denominator)


def hours_remaining(seconds: int) -> int:
    return ceil_div(max(0, seconds), SECONDS_PER_HOUR)


def days_remaining(seconds: int) -> int:
    return ceil_div(max(0, seconds), SECONDS_PER_DAY)


def format_amount(units: int, symbol: str = TOKEN_SYMBOL) -> str:
    """Return a human-readable amount with all 9 decimal places."""
    sign = "-" if units < 0 else ""
    whole, frac = divmod(abs(units), UNITS_PER_TOKEN)
    return f"{sign}{whole}.{frac:0{TOKEN_DECIMALS}d} {symbol}"


def format_bps(bps: int) -> str:
    """``750`` → ``"7.50%"``."""
    whole, frac = divmod(bps, 100)
    return f"{whole}.{frac:02d}%"
