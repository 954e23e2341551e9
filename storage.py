"""
In-memory query layer using DuckDB.

Responsibilities:
- Mirror price points and executed trades as they are produced
- Resample price history into OHLC bars (1m, 5m, 15m)
- Serve trade summary queries for the CLI and dashboard

This module must never:
- Fetch prices
- Perform signal logic
- Know about Streamlit or UI

Nothing here survives a restart: the default database is ":memory:".
"""

import logging
import threading
from typing import Iterable

import duckdb

from utils import PricePoint, Trade


logger = logging.getLogger("storage")

TABLES = ("price_points", "trades")


class DuckDBStorage:
    def __init__(self, db_path: str = ":memory:"):
        self.conn = duckdb.connect(db_path)
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS price_points (
                timestamp DOUBLE,
                price DOUBLE,
                short_sma DOUBLE,
                long_sma DOUBLE
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                timestamp DOUBLE,
                side TEXT,
                price DOUBLE,
                quantity INTEGER
            )
        """)

    def insert_price_points(self, points: Iterable[PricePoint]):
        rows = [(p.timestamp, p.price, p.short_sma, p.long_sma) for p in points]
        if not rows:
            return

        with self._lock:
            self.conn.executemany("INSERT INTO price_points VALUES (?, ?, ?, ?)", rows)

    def insert_trades(self, trades: Iterable[Trade]):
        rows = [(t.timestamp, t.side.value, t.price, t.quantity) for t in trades]
        if not rows:
            return

        with self._lock:
            self.conn.executemany("INSERT INTO trades VALUES (?, ?, ?, ?)", rows)
        logger.debug(f"💾 Stored {len(rows)} trade(s)")

    def count(self, table: str) -> int:
        if table not in TABLES:
            raise ValueError(f"Unknown table {table!r}")
        with self._lock:
            return self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def trade_summary(self):
        """
        Per-side trade statistics as a DataFrame:
        side, trades, quantity, avg_price, min_price, max_price
        """
        query = """
        SELECT
            side,
            COUNT(*) AS trades,
            SUM(quantity) AS quantity,
            AVG(price) AS avg_price,
            MIN(price) AS min_price,
            MAX(price) AS max_price
        FROM trades
        GROUP BY side
        ORDER BY side
        """
        with self._lock:
            return self.conn.execute(query).fetchdf()

    def resample_prices(self, timeframe: str):
        """
        timeframe: '1m', '5m', '15m'
        """
        bucket_map = {
            "1m": "1 minute",
            "5m": "5 minute",
            "15m": "15 minute"
        }

        if timeframe not in bucket_map:
            raise ValueError("Unsupported timeframe")

        interval = bucket_map[timeframe]

        query = f"""
        SELECT
            time_bucket(INTERVAL '{interval}', epoch_ms(CAST(timestamp * 1000 AS BIGINT))) AS ts,
            arg_min(price, timestamp) AS open,
            MAX(price) AS high,
            MIN(price) AS low,
            arg_max(price, timestamp) AS close,
            COUNT(*) AS ticks
        FROM price_points
        GROUP BY ts
        ORDER BY ts
        """

        with self._lock:
            return self.conn.execute(query).fetchdf()

    def close(self):
        with self._lock:
            self.conn.close()
