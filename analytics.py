"""
Moving-average crossover engine.

Responsibilities:
- Keep short and long price windows in fixed-capacity ring buffers
- Compute simple moving averages per tick
- Edge-detect SMA crossovers into buy/sell signals
- Record executed trades in an append-only ledger

This module must never:
- Fetch prices or talk to the network
- Schedule ticks or sleep
- Know about Streamlit or UI
"""

import logging
import time
from typing import Dict, List, Optional, Tuple

import numpy as np

from config import DEFAULT_LONG_WINDOW, DEFAULT_SHORT_WINDOW, TRADE_QUANTITY
from utils import (
    PricePoint,
    RingBuffer,
    Signal,
    SignalState,
    Trade,
    format_currency,
)


logger = logging.getLogger("analytics")


# ============================================================
# PURE HELPER FUNCTIONS (no I/O, no side effects)
# ============================================================

def compute_sma(buffer: RingBuffer) -> float:
    """
    Arithmetic mean of the buffer contents, in `items()` order.

    Returns 0.0 for an empty buffer.
    """
    items = buffer.items()
    if not items:
        return 0.0
    return float(np.mean(np.asarray(items, dtype=np.float64)))


def format_trade_summary(trades) -> List[str]:
    """Numbered, human-readable trade lines, oldest first."""
    if not trades:
        return ["No trades executed"]

    lines = []
    for index, trade in enumerate(trades, start=1):
        when = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(trade.timestamp))
        lines.append(
            f"{index}. {trade.side.value.upper()} at {format_currency(trade.price)} - {when}"
        )
    return lines


class SignalGenerator:
    """
    Edge-triggered crossover detector.

    Fires once per crossover instead of once per tick while the
    condition holds: a signal equal to the active state is suppressed.
    """

    _TRANSITIONS = {
        Signal.BUY: SignalState.LAST_WAS_BUY,
        Signal.SELL: SignalState.LAST_WAS_SELL,
    }

    def __init__(self):
        self._state = SignalState.NO_SIGNAL_YET

    @property
    def state(self) -> SignalState:
        return self._state

    @property
    def last_signal(self) -> Optional[Signal]:
        if self._state is SignalState.NO_SIGNAL_YET:
            return None
        return Signal(self._state.value)

    def evaluate(self, short_sma: float, long_sma: float, price: float) -> Optional[Signal]:
        """
        Return BUY/SELL on a fresh crossover, else None.

        `price` is currently inert; it is kept for future filters.
        """
        if short_sma > long_sma:
            candidate = Signal.BUY
        elif short_sma < long_sma:
            candidate = Signal.SELL
        else:
            return None

        new_state = self._TRANSITIONS[candidate]
        if new_state is self._state:
            return None

        self._state = new_state
        return candidate


class TradeLedger:
    """Append-only record of executed trades."""

    def __init__(self):
        self._trades: List[Trade] = []

    def record(
        self,
        side: Signal,
        price: float,
        quantity: int = TRADE_QUANTITY,
        timestamp: Optional[float] = None,
    ) -> Trade:
        trade = Trade(
            side=Signal(side),
            price=float(price),
            quantity=quantity,
            timestamp=time.time() if timestamp is None else float(timestamp),
        )
        self._trades.append(trade)
        return trade

    def history(self) -> Tuple[Trade, ...]:
        """Read-only view, oldest first."""
        return tuple(self._trades)

    def __len__(self) -> int:
        return len(self._trades)


class PriceSeriesTracker:
    """
    Per-tick orchestration of buffers, SMAs, signals and trades.

    One instance per trading session. Not thread-safe: a multi-threaded
    host must serialize all calls (see ingest.SchedulerManager).
    """

    def __init__(
        self,
        short_window: int = DEFAULT_SHORT_WINDOW,
        long_window: int = DEFAULT_LONG_WINDOW,
    ):
        # Buffers validate capacities before the window relation is checked
        self._short_buffer: RingBuffer = RingBuffer(short_window)
        self._long_buffer: RingBuffer = RingBuffer(long_window)
        if long_window <= short_window:
            raise ValueError(
                f"long_window ({long_window}) must exceed short_window ({short_window})"
            )

        self.short_window = short_window
        self.long_window = long_window
        self._signals = SignalGenerator()
        self._ledger = TradeLedger()
        self._history: List[PricePoint] = []
        self._last_trade: Optional[Trade] = None

    # ------------------------------------------------------------
    # Tick processing
    # ------------------------------------------------------------

    def tick(self, price: float, timestamp: Optional[float] = None) -> PricePoint:
        """
        Consume one price observation.

        Signals are only evaluated once the long window is full: a long
        SMA over fewer points is not yet a meaningful baseline.
        """
        price = float(price)
        if timestamp is None:
            timestamp = time.time()

        self._short_buffer.push(price)
        self._long_buffer.push(price)

        short_sma = compute_sma(self._short_buffer)
        long_sma = compute_sma(self._long_buffer)

        point = PricePoint(
            timestamp=float(timestamp),
            price=price,
            short_sma=short_sma,
            long_sma=long_sma,
        )
        self._history.append(point)
        self._last_trade = None

        logger.debug(
            f"[TRACKER] price={price:.2f} short={short_sma:.2f} long={long_sma:.2f} "
            f"({self._long_buffer.size}/{self.long_window})"
        )

        if self._long_buffer.is_full():
            signal = self._signals.evaluate(short_sma, long_sma, price)
            if signal is not None:
                self._last_trade = self._ledger.record(signal, price, timestamp=point.timestamp)
                logger.info(
                    f"[TRACKER] Trade executed: {signal.value.upper()} at {format_currency(price)}"
                )

        return point

    # ------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------

    def history(self) -> Tuple[PricePoint, ...]:
        return tuple(self._history)

    @property
    def ledger(self) -> TradeLedger:
        return self._ledger

    @property
    def signal_state(self) -> SignalState:
        return self._signals.state

    @property
    def last_signal(self) -> Optional[Signal]:
        return self._signals.last_signal

    @property
    def last_trade(self) -> Optional[Trade]:
        """Trade recorded by the most recent tick, if any."""
        return self._last_trade

    @property
    def long_count(self) -> int:
        """Prices currently held by the long window."""
        return self._long_buffer.size

    def is_ready(self) -> bool:
        return self._long_buffer.is_full()

    def snapshot(self) -> Dict:
        """
        Latest values for presentation.

        FROZEN SCHEMA: every key is always present; price/SMA values are
        None until the first tick arrives.
        """
        latest = self._history[-1] if self._history else None
        long_count = self.long_count
        last_signal = self.last_signal

        return {
            "ready": self.is_ready(),
            "timestamp": latest.timestamp if latest else None,
            "price": latest.price if latest else None,
            "short_sma": latest.short_sma if latest else None,
            "long_sma": latest.long_sma if latest else None,
            "signal": last_signal.value if last_signal else None,
            "short_window": self.short_window,
            "long_window": self.long_window,
            "long_count": long_count,
            "long_pct": int(long_count / self.long_window * 100),
            "ticks": len(self._history),
            "trades": len(self._ledger),
        }
