"""
Price ingestion and tick scheduling.

Responsibilities:
- Fetch BTC/USD quotes (CoinGecko REST poll or Binance trade stream)
- Substitute a placeholder quote whenever the transport fails
- Drive the tracker one tick at a time on a fixed interval
- Support graceful stop and restart for interval changes
- Never block the presentation layer
"""

import asyncio
import json
import logging
import random
import threading
import time
from typing import Callable, Optional

import aiohttp
import websockets
from websockets.exceptions import InvalidStatus

from analytics import PriceSeriesTracker
from config import (
    BINANCE_WS_URL,
    COINGECKO_PARAMS,
    COINGECKO_URL,
    DEFAULT_INTERVAL,
    DEFAULT_SYMBOL,
    FALLBACK_PRICE_HIGH,
    FALLBACK_PRICE_LOW,
    FIRST_TRADE_TIMEOUT,
    HTTP_TIMEOUT,
    THREAD_JOIN_TIMEOUT,
)
from utils import PricePoint, Trade


logger = logging.getLogger("ingest")


def fallback_price(rng: Optional[random.Random] = None) -> float:
    """Placeholder quote in [FALLBACK_PRICE_LOW, FALLBACK_PRICE_HIGH)."""
    rng = rng or random
    return FALLBACK_PRICE_LOW + rng.random() * (FALLBACK_PRICE_HIGH - FALLBACK_PRICE_LOW)


# ============================================================
# PRICE SOURCES
# ============================================================

class PriceSource:
    """
    Async price provider.

    fetch_price() must always yield a number: transport failures are
    absorbed here and replaced by a fallback quote.
    """

    name = "base"

    async def start(self):
        pass

    async def fetch_price(self) -> float:
        raise NotImplementedError

    async def close(self):
        pass


class SimulatedPriceSource(PriceSource):
    """Offline source: every quote is a placeholder."""

    name = "simulated"

    def __init__(self, seed: Optional[int] = None):
        self._rng = random.Random(seed)

    async def fetch_price(self) -> float:
        return fallback_price(self._rng)


class CoinGeckoPriceSource(PriceSource):
    """
    Polls the CoinGecko simple-price endpoint once per call.

    A session may be injected; otherwise a short-lived one is opened per
    request so the source survives event-loop restarts.
    """

    name = "coingecko"

    def __init__(
        self,
        url: str = COINGECKO_URL,
        params: Optional[dict] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = HTTP_TIMEOUT,
    ):
        self.url = url
        self.params = dict(params or COINGECKO_PARAMS)
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _request(self, session) -> float:
        async with session.get(self.url, params=self.params) as resp:
            resp.raise_for_status()
            data = await resp.json()
            return float(data["bitcoin"]["usd"])

    async def fetch_price(self) -> float:
        try:
            if self._session is not None:
                return await self._request(self._session)
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                return await self._request(session)
        except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, TypeError, ValueError) as e:
            price = fallback_price()
            logger.warning(f"[INGEST] CoinGecko fetch failed ({e!r}), using placeholder {price:.2f}")
            return price


class BinanceTradeStream(PriceSource):
    """
    Keeps the last traded price from the Binance spot trade stream.

    The websocket runs as a background task on the scheduler's loop.
    start() waits a bounded time for the first trade so the opening tick
    sees a real quote; fetch_price() itself never waits on the network.
    """

    name = "binance"

    def __init__(
        self,
        symbol: str = DEFAULT_SYMBOL,
        url_template: str = BINANCE_WS_URL,
        first_trade_timeout: float = FIRST_TRADE_TIMEOUT,
    ):
        self.symbol = symbol.lower()
        self.url = url_template.format(symbol=self.symbol)
        self.first_trade_timeout = first_trade_timeout
        self.last_price: Optional[float] = None
        self.last_update: Optional[float] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._first_trade: Optional[asyncio.Event] = None

    def _handle_message(self, raw) -> Optional[float]:
        try:
            data = json.loads(raw)
            if data.get("e") != "trade" or "p" not in data:
                return None
            price = float(data["p"])
        except (ValueError, KeyError, AttributeError, TypeError) as e:
            logger.debug(f"[INGEST] Skipping malformed {self.symbol} frame: {e}")
            return None

        self.last_price = price
        self.last_update = time.time()
        if self._first_trade is not None:
            self._first_trade.set()
        return price

    async def _consume(self):
        backoff = 1

        while self._running:
            try:
                logger.info(f"[INGEST] Connecting to {self.symbol}")
                async with websockets.connect(
                    self.url,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=5
                ) as ws:
                    logger.info(f"[INGEST] ✓ Connected to {self.symbol}")
                    backoff = 1

                    async for msg in ws:
                        if not self._running:
                            break
                        self._handle_message(msg)

            except asyncio.CancelledError:
                logger.info(f"[INGEST] {self.symbol} stream cancelled")
                break
            except InvalidStatus as e:
                status = e.response.status_code
                if status == 451:
                    logger.error(f"[INGEST] ❌ {self.symbol.upper()} - Unavailable in your region (HTTP 451)")
                    break
                logger.warning(f"[INGEST] {self.symbol} HTTP error: {status}")
            except Exception as e:
                if not self._running:
                    break
                logger.warning(f"[INGEST] {self.symbol} error: {e}")

            if self._running:
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30)

    async def start(self):
        """Open the stream and wait (bounded) for the first trade."""
        self._running = True
        self._first_trade = asyncio.Event()
        if self.last_price is not None:
            self._first_trade.set()
        self._task = asyncio.create_task(self._consume())

        try:
            await asyncio.wait_for(self._first_trade.wait(), timeout=self.first_trade_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"[INGEST] No {self.symbol.upper()} trade within {self.first_trade_timeout}s"
            )

    async def fetch_price(self) -> float:
        if self.last_price is None:
            price = fallback_price()
            logger.warning(f"[INGEST] No {self.symbol.upper()} trade yet, using placeholder {price:.2f}")
            return price
        return self.last_price

    async def close(self):
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


def create_price_source(name: str, symbol: str = DEFAULT_SYMBOL) -> PriceSource:
    if name == "coingecko":
        return CoinGeckoPriceSource()
    if name == "binance":
        return BinanceTradeStream(symbol=symbol)
    if name == "simulated":
        return SimulatedPriceSource()
    raise ValueError(f"Unknown price source {name!r}")


# ============================================================
# SCHEDULING
# ============================================================

TickCallback = Callable[[PricePoint, Optional[Trade]], None]


class PollingScheduler:
    """
    Serial tick loop: fetch, tick, wait, repeat.

    Ticks never overlap. stop() only wakes the inter-tick wait, so a
    fetch or tick already in progress always runs to completion.
    """

    def __init__(
        self,
        tracker: PriceSeriesTracker,
        source: PriceSource,
        interval: float = DEFAULT_INTERVAL,
        clock: Callable[[], float] = time.time,
        on_tick: Optional[TickCallback] = None,
        lock: Optional[threading.Lock] = None,
        max_ticks: Optional[int] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.tracker = tracker
        self.source = source
        self.interval = interval
        self.on_tick = on_tick
        self.max_ticks = max_ticks
        self.ticks_processed = 0
        self._clock = clock
        self._lock = lock or threading.Lock()
        self._stop_requested = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None

    async def run_once(self) -> PricePoint:
        price = await self.source.fetch_price()

        with self._lock:
            point = self.tracker.tick(price, self._clock())
            trade = self.tracker.last_trade
        self.ticks_processed += 1

        if self.on_tick:
            self.on_tick(point, trade)
        return point

    async def run(self):
        """Tick immediately, then every `interval` seconds until stopped."""
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        await self.source.start()
        logger.info(f"[SCHEDULER] Started ({self.source.name}, every {self.interval}s)")

        try:
            while not self._stop_requested:
                try:
                    await self.run_once()
                except Exception:
                    logger.exception("[SCHEDULER] Error updating price")

                if self.max_ticks is not None and self.ticks_processed >= self.max_ticks:
                    break
                if self._stop_requested:
                    break

                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.source.close()
            self._loop = None
            logger.info(f"[SCHEDULER] Stopped after {self.ticks_processed} ticks")

    def stop(self):
        """Request a stop. Safe to call from any thread."""
        self._stop_requested = True
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None:
            return
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError:
            # Loop closed between the check and the call; nothing left to wake
            logger.debug("[SCHEDULER] Loop already closed")

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested


class SchedulerManager:
    """
    Hosts a PollingScheduler on a background thread.

    This manager:
    - Runs the tick loop in its own event loop on a daemon thread
    - Supports stopping and restarting with a new interval
    - Keeps the same tracker across restarts (buffers, ledger, history)
    - Serializes tracker access through one lock shared with readers
    """

    def __init__(
        self,
        tracker: PriceSeriesTracker,
        source_factory: Callable[[], PriceSource],
        interval: int = DEFAULT_INTERVAL,
        on_tick: Optional[TickCallback] = None,
        join_timeout: float = THREAD_JOIN_TIMEOUT,
    ):
        self.tracker = tracker
        self.lock = threading.Lock()
        self._join_timeout = join_timeout
        self._source_factory = source_factory
        self._interval = interval
        self._on_tick = on_tick
        self._scheduler: Optional[PollingScheduler] = None
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()

    def _run_async_loop(self, scheduler: PollingScheduler):
        """Run async event loop in thread."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

        try:
            loop.run_until_complete(scheduler.run())
        except Exception as e:
            logger.error(f"[SCHEDULER] Loop error: {e}")
        finally:
            loop.close()

    def start(self, interval: Optional[int] = None) -> bool:
        """Start ticking. Returns False if already running."""
        with self._thread_lock:
            if self.is_running:
                return False
            if interval is not None:
                self._interval = interval

            self._scheduler = PollingScheduler(
                tracker=self.tracker,
                source=self._source_factory(),
                interval=self._interval,
                on_tick=self._on_tick,
                lock=self.lock,
            )
            self._thread = threading.Thread(
                target=self._run_async_loop,
                args=(self._scheduler,),
                daemon=True
            )
            self._thread.start()
            logger.info(f"[SCHEDULER] Thread started (interval {self._interval}s)")
            return True

    def stop(self):
        """
        Stop ticking; an in-flight tick finishes first. If the thread
        outlives the join timeout it stays registered, so is_running
        remains True and start() refuses until it exits.
        """
        with self._thread_lock:
            if self._scheduler:
                self._scheduler.stop()

            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=self._join_timeout)
                if self._thread.is_alive():
                    logger.warning("[SCHEDULER] Tick still in flight after join timeout")
                    return

            self._scheduler = None
            self._thread = None
            logger.info("[SCHEDULER] Stopped")

    def restart(self, interval: int) -> bool:
        """
        Apply a new interval. A running schedule is stopped and started
        again; tracker state is untouched.
        """
        if interval == self._interval:
            logger.info("[SCHEDULER] Interval unchanged, skipping restart")
            return False

        logger.info(f"[SCHEDULER] Interval: {self._interval}s → {interval}s")
        if not self.is_running:
            self._interval = interval
            return False

        self._interval = interval
        self.stop()
        return self.start()

    def read(self, fn: Callable[[PriceSeriesTracker], object]):
        """Run `fn(tracker)` under the tracker lock."""
        with self.lock:
            return fn(self.tracker)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def interval(self) -> int:
        return self._interval
