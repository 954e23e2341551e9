"""
Application entry point - headless SMA crossover tracker.

Responsibilities:
- Parse and validate runtime options
- Build the tracker, price source and scheduler
- Log every tick and executed trade
- Mirror ticks and trades into DuckDB
- Print a trade summary on shutdown

Single-command execution:
    python app.py --source coingecko --interval 10
"""

import argparse
import asyncio
import logging
from typing import List, Optional

from analytics import PriceSeriesTracker, format_trade_summary
from config import (
    DEFAULT_INTERVAL,
    DEFAULT_LONG_WINDOW,
    DEFAULT_PRICE_SOURCE,
    DEFAULT_SHORT_WINDOW,
    DEFAULT_SYMBOL,
    INTERVAL_CHOICES,
    PRICE_SOURCES,
    TrackerConfig,
)
from ingest import PollingScheduler, TickCallback, create_price_source
from storage import DuckDBStorage
from utils import PricePoint, Trade, format_currency


logger = logging.getLogger("app")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BTC/USD SMA crossover tracker")
    parser.add_argument("--source", choices=PRICE_SOURCES, default=DEFAULT_PRICE_SOURCE)
    parser.add_argument("--symbol", default=DEFAULT_SYMBOL, help="Binance symbol (binance source only)")
    parser.add_argument("--interval", type=int, choices=INTERVAL_CHOICES, default=DEFAULT_INTERVAL,
                        help="Seconds between ticks")
    parser.add_argument("--short-window", type=int, default=DEFAULT_SHORT_WINDOW)
    parser.add_argument("--long-window", type=int, default=DEFAULT_LONG_WINDOW)
    parser.add_argument("--max-ticks", type=int, default=None, help="Stop after N ticks")
    parser.add_argument("--log-level", default="INFO")
    return parser


def make_tick_logger(tracker: PriceSeriesTracker, storage: DuckDBStorage) -> TickCallback:
    """Per-tick callback: mirror into storage and log progress."""

    def on_tick(point: PricePoint, trade: Optional[Trade]):
        storage.insert_price_points([point])
        if trade is not None:
            storage.insert_trades([trade])
            logger.info(f"🚨 {trade.side.value.upper()} at {format_currency(trade.price)}")

        if tracker.is_ready():
            logger.info(
                f"📊 {format_currency(point.price)} | "
                f"SMA{tracker.short_window}={format_currency(point.short_sma)} | "
                f"SMA{tracker.long_window}={format_currency(point.long_sma)}"
            )
        else:
            logger.info(
                f"⏳ Buffering: {format_currency(point.price)} "
                f"({tracker.long_count}/{tracker.long_window})"
            )

    return on_tick


def log_summary(tracker: PriceSeriesTracker, storage: DuckDBStorage):
    logger.info("Trade Summary:")
    logger.info("-" * 34)
    for line in format_trade_summary(tracker.ledger.history()):
        logger.info(line)

    if len(tracker.ledger):
        summary = storage.trade_summary()
        logger.info("\n" + summary.to_string(index=False))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s"
    )

    try:
        config = TrackerConfig(
            short_window=args.short_window,
            long_window=args.long_window,
            interval=args.interval,
            price_source=args.source,
            symbol=args.symbol,
        )
    except ValueError as e:
        logger.error(f"❌ REJECTED: {e}")
        return 2

    logger.info("=" * 60)
    logger.info("🚀 SMA CROSSOVER TRACKER")
    logger.info(f"   Source: {config.price_source}")
    logger.info(f"   Windows: {config.short_window}/{config.long_window}")
    logger.info(f"   Interval: {config.interval}s")
    logger.info("=" * 60)

    tracker = PriceSeriesTracker(config.short_window, config.long_window)
    storage = DuckDBStorage()
    scheduler = PollingScheduler(
        tracker=tracker,
        source=create_price_source(config.price_source, config.symbol),
        interval=config.interval,
        on_tick=make_tick_logger(tracker, storage),
        max_ticks=args.max_ticks,
    )

    try:
        asyncio.run(scheduler.run())
    except KeyboardInterrupt:
        logger.info("")
        logger.info("🛑 Shutting down...")
    finally:
        logger.info("=" * 60)
        log_summary(tracker, storage)
        logger.info("=" * 60)
        storage.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
