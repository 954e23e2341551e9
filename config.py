"""
Runtime configuration defaults and backend validation.

Presentation layers (CLI flags, dashboard widgets) collect values;
everything is re-validated here before a tracker is built.
"""

from dataclasses import dataclass
from typing import Optional, Tuple


# ---------------- Tracker ----------------
DEFAULT_SHORT_WINDOW = 5
DEFAULT_LONG_WINDOW = 20
TRADE_QUANTITY = 1

# ---------------- Scheduling ----------------
DEFAULT_INTERVAL = 10               # seconds
INTERVAL_CHOICES = (5, 10, 30, 60)  # seconds
THREAD_JOIN_TIMEOUT = 10.0          # seconds

# ---------------- Price sources ----------------
PRICE_SOURCES = ("coingecko", "binance", "simulated")
DEFAULT_PRICE_SOURCE = "coingecko"
DEFAULT_SYMBOL = "btcusdt"

COINGECKO_URL = "https://api.coingecko.com/api/v3/simple/price"
COINGECKO_PARAMS = {"ids": "bitcoin", "vs_currencies": "usd"}
HTTP_TIMEOUT = 5.0                  # seconds
FIRST_TRADE_TIMEOUT = 5.0           # seconds to wait for the first streamed trade
BINANCE_WS_URL = "wss://stream.binance.com:9443/ws/{symbol}@trade"

# Placeholder price range used whenever a real quote is unavailable
FALLBACK_PRICE_LOW = 20_000.0
FALLBACK_PRICE_HIGH = 22_000.0

# ---------------- Presentation ----------------
CHART_POINTS = 20
REFRESH_RATE = 1.0                  # seconds


@dataclass(frozen=True)
class TrackerConfig:
    short_window: int = DEFAULT_SHORT_WINDOW
    long_window: int = DEFAULT_LONG_WINDOW
    interval: int = DEFAULT_INTERVAL
    price_source: str = DEFAULT_PRICE_SOURCE
    symbol: str = DEFAULT_SYMBOL

    def __post_init__(self):
        valid, error = validate_config(
            self.short_window,
            self.long_window,
            self.interval,
            self.price_source,
        )
        if not valid:
            raise ValueError(error)


def validate_config(
    short_window: int,
    long_window: int,
    interval: int,
    price_source: str = DEFAULT_PRICE_SOURCE,
) -> Tuple[bool, Optional[str]]:
    """
    Backend validation - never trust frontend.
    Returns (valid: bool, error_message: str or None)
    """
    # 1. Windows must be positive integers
    for name, value in (("Short window", short_window), ("Long window", long_window)):
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            return False, f"{name} must be a positive integer"

    # 2. Long window is the baseline, it must cover more points
    if long_window <= short_window:
        return False, f"Long window ({long_window}) must exceed short window ({short_window})"

    # 3. Interval from the fixed menu only
    if interval not in INTERVAL_CHOICES:
        choices = ", ".join(f"{c}s" for c in INTERVAL_CHOICES)
        return False, f"Unsupported interval {interval!r} (choose from {choices})"

    # 4. Known price source
    if price_source not in PRICE_SOURCES:
        return False, f"Unknown price source {price_source!r}"

    return True, None
