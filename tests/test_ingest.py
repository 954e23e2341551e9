import asyncio
import json
import time

import aiohttp
import pytest

from analytics import PriceSeriesTracker
from config import FALLBACK_PRICE_HIGH, FALLBACK_PRICE_LOW
from ingest import (
    BinanceTradeStream,
    CoinGeckoPriceSource,
    PollingScheduler,
    PriceSource,
    SchedulerManager,
    SimulatedPriceSource,
    create_price_source,
    fallback_price,
)


def in_fallback_range(price: float) -> bool:
    return FALLBACK_PRICE_LOW <= price < FALLBACK_PRICE_HIGH


# ---------------- Fakes ----------------

class FakeResponse:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.error is not None:
            raise self.error

    async def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, params=None):
        self.calls.append((url, params))
        if self.error is not None:
            raise self.error
        return self.response


class ScriptedSource(PriceSource):
    name = "scripted"

    def __init__(self, prices, delay: float = 0.0):
        self.prices = list(prices)
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def fetch_price(self) -> float:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self.prices[(self.calls - 1) % len(self.prices)]
        finally:
            self.active -= 1

    async def close(self):
        self.closed = True


class FakeWebSocket:
    """Yields the scripted frames, then idles until cancelled."""

    def __init__(self, frames, delay: float = 0.0):
        self.frames = frames
        self.delay = delay

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            await asyncio.sleep(self.delay)
            yield frame
        await asyncio.sleep(3600)


def fake_connect(frames, delay: float = 0.0):
    urls = []

    def connect(url, **kwargs):
        urls.append(url)
        return FakeWebSocket(frames, delay)

    connect.urls = urls
    return connect


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


# ---------------- Price sources ----------------

def test_fallback_price_range() -> None:
    for _ in range(200):
        assert in_fallback_range(fallback_price())


@pytest.mark.asyncio
async def test_simulated_source_is_seedable() -> None:
    a, b = SimulatedPriceSource(seed=7), SimulatedPriceSource(seed=7)
    assert await a.fetch_price() == await b.fetch_price()
    assert in_fallback_range(await a.fetch_price())


@pytest.mark.asyncio
async def test_coingecko_reads_bitcoin_usd() -> None:
    session = FakeSession(FakeResponse({"bitcoin": {"usd": 64250.5}}))
    source = CoinGeckoPriceSource(session=session)

    assert await source.fetch_price() == 64250.5
    url, params = session.calls[0]
    assert url.endswith("/simple/price")
    assert params == {"ids": "bitcoin", "vs_currencies": "usd"}


@pytest.mark.asyncio
async def test_coingecko_http_error_uses_fallback() -> None:
    error = aiohttp.ClientError("API error: 429")
    source = CoinGeckoPriceSource(session=FakeSession(FakeResponse(error=error)))
    assert in_fallback_range(await source.fetch_price())


@pytest.mark.asyncio
async def test_coingecko_transport_error_uses_fallback() -> None:
    source = CoinGeckoPriceSource(session=FakeSession(error=aiohttp.ClientConnectionError("down")))
    assert in_fallback_range(await source.fetch_price())


@pytest.mark.asyncio
async def test_coingecko_timeout_uses_fallback() -> None:
    source = CoinGeckoPriceSource(session=FakeSession(error=asyncio.TimeoutError()))
    assert in_fallback_range(await source.fetch_price())


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{}, {"bitcoin": {}}, {"bitcoin": {"usd": "n/a"}}, None])
async def test_coingecko_malformed_body_uses_fallback(payload) -> None:
    source = CoinGeckoPriceSource(session=FakeSession(FakeResponse(payload)))
    assert in_fallback_range(await source.fetch_price())


def test_binance_parses_trade_messages() -> None:
    stream = BinanceTradeStream("BTCUSDT")
    assert stream.url == "wss://stream.binance.com:9443/ws/btcusdt@trade"

    msg = json.dumps({"e": "trade", "E": 1700000000000, "s": "BTCUSDT", "p": "43125.10", "q": "0.01"})
    assert stream._handle_message(msg) == 43125.10
    assert stream.last_price == 43125.10
    assert stream.last_update is not None


def test_binance_ignores_non_trade_messages() -> None:
    stream = BinanceTradeStream()
    assert stream._handle_message(json.dumps({"result": None, "id": 1})) is None
    assert stream.last_price is None


@pytest.mark.asyncio
async def test_binance_fetch_before_and_after_first_trade() -> None:
    stream = BinanceTradeStream()
    assert in_fallback_range(await stream.fetch_price())

    stream._handle_message(json.dumps({"e": "trade", "p": "50000.0"}))
    assert await stream.fetch_price() == 50000.0


@pytest.mark.asyncio
async def test_binance_close_without_start() -> None:
    stream = BinanceTradeStream()
    await stream.close()
    assert stream._task is None


@pytest.mark.parametrize(
    "frame",
    ["not json", "[1, 2]", json.dumps({"e": "trade", "p": "n/a"}), json.dumps({"e": "trade", "p": None})],
)
def test_binance_skips_malformed_frames(frame) -> None:
    stream = BinanceTradeStream()
    assert stream._handle_message(frame) is None
    assert stream.last_price is None


@pytest.mark.asyncio
async def test_binance_first_tick_uses_streamed_trade(monkeypatch) -> None:
    frames = ["garbage", json.dumps({"e": "trade", "p": "65000.0"})]
    connect = fake_connect(frames, delay=0.02)
    monkeypatch.setattr("ingest.websockets.connect", connect)

    tracker = PriceSeriesTracker(short_window=1, long_window=2)
    scheduler = PollingScheduler(tracker, BinanceTradeStream(), interval=0.01, max_ticks=2)
    await asyncio.wait_for(scheduler.run(), timeout=5)

    assert [p.price for p in tracker.history()] == [65000.0, 65000.0]
    # the malformed frame did not force a reconnect
    assert len(connect.urls) == 1


@pytest.mark.asyncio
async def test_binance_start_gives_up_after_first_trade_timeout(monkeypatch) -> None:
    monkeypatch.setattr("ingest.websockets.connect", fake_connect([]))

    stream = BinanceTradeStream(first_trade_timeout=0.05)
    await asyncio.wait_for(stream.start(), timeout=2)
    try:
        assert in_fallback_range(await stream.fetch_price())
    finally:
        await stream.close()


def test_create_price_source() -> None:
    assert isinstance(create_price_source("coingecko"), CoinGeckoPriceSource)
    assert isinstance(create_price_source("simulated"), SimulatedPriceSource)
    stream = create_price_source("binance", symbol="ETHUSDT")
    assert isinstance(stream, BinanceTradeStream)
    assert stream.symbol == "ethusdt"
    with pytest.raises(ValueError):
        create_price_source("kraken")


# ---------------- PollingScheduler ----------------

def test_scheduler_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        PollingScheduler(PriceSeriesTracker(1, 2), ScriptedSource([1]), interval=0)


@pytest.mark.asyncio
async def test_run_once_feeds_tracker_with_clock_timestamp() -> None:
    tracker = PriceSeriesTracker(short_window=1, long_window=2)
    scheduler = PollingScheduler(tracker, ScriptedSource([42.0]), interval=1, clock=lambda: 123.0)

    point = await scheduler.run_once()
    assert point.price == 42.0
    assert point.timestamp == 123.0
    assert tracker.history() == (point,)


@pytest.mark.asyncio
async def test_run_processes_max_ticks_serially() -> None:
    tracker = PriceSeriesTracker(short_window=2, long_window=3)
    source = ScriptedSource([1, 1, 1, 10, 10, 10, 1, 1, 1], delay=0.005)
    seen = []
    scheduler = PollingScheduler(
        tracker,
        source,
        interval=0.01,
        on_tick=lambda point, trade: seen.append((point.price, trade)),
        max_ticks=9,
    )

    await asyncio.wait_for(scheduler.run(), timeout=5)

    assert source.calls == 9
    assert source.max_active == 1
    assert source.started and source.closed
    assert len(tracker.history()) == 9
    assert [i for i, (_, trade) in enumerate(seen, start=1) if trade] == [4, 7]


@pytest.mark.asyncio
async def test_stop_wakes_the_interval_wait() -> None:
    tracker = PriceSeriesTracker(short_window=1, long_window=2)
    scheduler = PollingScheduler(tracker, ScriptedSource([5.0]), interval=60)

    task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=2)

    assert scheduler.ticks_processed == 1
    assert scheduler.stop_requested


@pytest.mark.asyncio
async def test_stop_before_run_skips_ticking() -> None:
    tracker = PriceSeriesTracker(short_window=1, long_window=2)
    scheduler = PollingScheduler(tracker, ScriptedSource([5.0]), interval=60)
    scheduler.stop()

    await asyncio.wait_for(scheduler.run(), timeout=2)
    assert scheduler.ticks_processed == 0


@pytest.mark.asyncio
async def test_callback_error_does_not_stop_the_loop() -> None:
    tracker = PriceSeriesTracker(short_window=1, long_window=2)
    calls = []

    def flaky(point, trade):
        calls.append(point)
        if len(calls) == 1:
            raise RuntimeError("render failed")

    scheduler = PollingScheduler(tracker, ScriptedSource([1.0]), interval=0.01, on_tick=flaky, max_ticks=3)
    await asyncio.wait_for(scheduler.run(), timeout=5)

    assert len(calls) == 3
    assert len(tracker.history()) == 3


# ---------------- SchedulerManager ----------------

def test_manager_restart_keeps_tracker_state() -> None:
    tracker = PriceSeriesTracker(short_window=1, long_window=2)
    manager = SchedulerManager(tracker, lambda: ScriptedSource([1.0, 2.0]), interval=5)

    try:
        assert manager.start()
        assert manager.is_running
        assert not manager.start()
        assert wait_for(lambda: len(tracker.history()) >= 1)

        ledger = tracker.ledger
        assert manager.restart(30)
        assert manager.interval == 30
        assert manager.is_running
        # restarted schedule ticks immediately on top of the existing history
        assert wait_for(lambda: len(tracker.history()) >= 2)
        assert manager.tracker is tracker
        assert tracker.ledger is ledger
    finally:
        manager.stop()

    assert not manager.is_running
    count = manager.read(lambda t: len(t.history()))
    assert count >= 2


def test_manager_restart_with_same_interval_is_noop() -> None:
    manager = SchedulerManager(PriceSeriesTracker(1, 2), lambda: ScriptedSource([1.0]), interval=10)
    assert not manager.restart(10)


def test_manager_restart_while_stopped_only_updates_interval() -> None:
    manager = SchedulerManager(PriceSeriesTracker(1, 2), lambda: ScriptedSource([1.0]), interval=10)
    assert not manager.restart(60)
    assert manager.interval == 60
    assert not manager.is_running


def test_manager_stays_running_while_tick_outlives_join() -> None:
    tracker = PriceSeriesTracker(1, 2)
    sources = []

    def make_source():
        sources.append(ScriptedSource([1.0], delay=0.5))
        return sources[-1]

    manager = SchedulerManager(tracker, make_source, interval=5, join_timeout=0.05)
    try:
        assert manager.start()
        assert wait_for(lambda: sources[0].active == 1)

        manager.stop()
        # the slow fetch is still in flight, so no second scheduler may start
        assert manager.is_running
        assert not manager.start()
        assert len(sources) == 1

        assert wait_for(lambda: not manager.is_running)
        assert len(tracker.history()) == 1
        assert manager.start()
        assert len(sources) == 2
    finally:
        manager.stop()
        assert wait_for(lambda: not manager.is_running)
