"""
Streamlit dashboard for the SMA crossover tracker.

Architecture:
- TradingSession (one per process, @st.cache_resource): owns the tracker,
  the background SchedulerManager and the DuckDB mirror.
- Frontend: renders status, chart and trade log from read-only views
  taken under the tracker lock.

UX Design:
- Start button: locks window/source config, starts ticking
- Stop button: stops ticking, keeps all state, unlocks config
- Refresh interval can change while running (schedule restarts, state kept)

Run with:
    streamlit run streamlit_app.py
"""

import time
import logging
from typing import Optional

import pandas as pd
import plotly.graph_objects as go
import streamlit as st

from analytics import PriceSeriesTracker
from config import (
    CHART_POINTS,
    DEFAULT_LONG_WINDOW,
    DEFAULT_SHORT_WINDOW,
    DEFAULT_SYMBOL,
    INTERVAL_CHOICES,
    PRICE_SOURCES,
    REFRESH_RATE,
    TrackerConfig,
    validate_config,
)
from ingest import SchedulerManager, create_price_source
from storage import DuckDBStorage
from utils import format_currency


# ---------------- LOGGING SETUP ----------------
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("dashboard")


# ---------------- TRADING SESSION (SINGLETON) ----------------
class TradingSession:
    def __init__(self):
        self.config: Optional[TrackerConfig] = None
        self.manager: Optional[SchedulerManager] = None
        self.storage = DuckDBStorage()

    def _build(self, config: TrackerConfig):
        tracker = PriceSeriesTracker(config.short_window, config.long_window)
        storage = DuckDBStorage()

        def on_tick(point, trade):
            storage.insert_price_points([point])
            if trade is not None:
                storage.insert_trades([trade])

        self.storage.close()
        self.storage = storage
        self.manager = SchedulerManager(
            tracker=tracker,
            source_factory=lambda: create_price_source(config.price_source, config.symbol),
            interval=config.interval,
            on_tick=on_tick,
        )
        self.config = config
        logger.info(f"🔧 New session: {config.short_window}/{config.long_window} via {config.price_source}")

    def start(self, config: TrackerConfig):
        """Resume the current session, or build a new one if windows/source changed."""
        current = self.config
        if (
            self.manager is None
            or current.short_window != config.short_window
            or current.long_window != config.long_window
            or current.price_source != config.price_source
            or current.symbol != config.symbol
        ):
            if self.manager is not None:
                self.manager.stop()
            self._build(config)
        self.manager.start(config.interval)
        self.config = config

    def stop(self):
        if self.manager:
            self.manager.stop()

    def set_interval(self, interval: int):
        if self.manager:
            self.manager.restart(interval)
        if self.config:
            self.config = TrackerConfig(
                short_window=self.config.short_window,
                long_window=self.config.long_window,
                interval=interval,
                price_source=self.config.price_source,
                symbol=self.config.symbol,
            )

    @property
    def running(self) -> bool:
        return self.manager is not None and self.manager.is_running

    def view(self):
        """(snapshot, price history, trades) taken atomically."""
        if self.manager is None:
            return None, (), ()
        return self.manager.read(
            lambda t: (t.snapshot(), t.history(), t.ledger.history())
        )


@st.cache_resource
def get_session() -> TradingSession:
    return TradingSession()


# ---------------- Page Config ----------------
st.set_page_config(
    page_title="SMA Crossover Tracker",
    layout="wide",
    initial_sidebar_state="expanded"
)

session = get_session()

# ---------------- Custom CSS ----------------
st.markdown("""
<style>
    .stMetric {
        background: linear-gradient(135deg, #1a1a2e 0%, #16213e 100%);
        padding: 12px;
        border-radius: 10px;
        border: 1px solid #0f3460;
    }
    .stMetric label { color: #e94560 !important; font-size: 0.85rem; }
    .stMetric [data-testid="stMetricValue"] { font-size: 1.5rem; }
    .status-running {
        background: linear-gradient(90deg, #2d6a4f, #40916c);
        padding: 10px 15px;
        border-radius: 8px;
        margin: 10px 0;
    }
    .status-stopped {
        background: linear-gradient(90deg, #6c757d, #495057);
        padding: 10px 15px;
        border-radius: 8px;
        margin: 10px 0;
    }
</style>
""", unsafe_allow_html=True)


# ================== SIDEBAR - CONFIGURATION ==================
with st.sidebar:
    st.header("⚙️ Configuration")

    is_running = session.running

    # ========== STRATEGY PARAMETERS ==========
    st.subheader("📈 Moving Averages")

    short_window = st.slider(
        "Short SMA Window",
        min_value=2,
        max_value=50,
        value=DEFAULT_SHORT_WINDOW,
        disabled=is_running
    )

    long_window = st.slider(
        "Long SMA Window",
        min_value=3,
        max_value=200,
        value=DEFAULT_LONG_WINDOW,
        disabled=is_running
    )

    # ========== PRICE SOURCE ==========
    st.subheader("📡 Price Source")

    price_source = st.selectbox(
        "Source",
        options=PRICE_SOURCES,
        index=0,
        disabled=is_running
    )

    symbol = DEFAULT_SYMBOL
    if price_source == "binance":
        symbol = st.text_input("Binance Symbol", value=DEFAULT_SYMBOL, disabled=is_running).lower().strip()

    interval = st.selectbox(
        "Polling Interval",
        options=INTERVAL_CHOICES,
        index=INTERVAL_CHOICES.index(session.config.interval) if session.config else 1,
        format_func=lambda x: f"{x}s",
        help="Can be changed while running"
    )

    st.divider()

    # ========== VALIDATION (FAIL-FAST) ==========
    valid, validation_error = validate_config(short_window, long_window, interval, price_source)
    if not valid:
        st.error(f"❌ {validation_error}")

    # Interval changes apply immediately, keeping all state
    if valid and session.config and interval != session.config.interval:
        session.set_interval(interval)

    # ========== START / STOP BUTTONS ==========
    st.subheader("🎮 Control")

    def start_callback():
        if valid:
            session.start(TrackerConfig(
                short_window=short_window,
                long_window=long_window,
                interval=interval,
                price_source=price_source,
                symbol=symbol,
            ))

    def stop_callback():
        session.stop()

    col1, col2 = st.columns(2)

    with col1:
        st.button(
            "▶️ Start",
            disabled=is_running or not valid,
            use_container_width=True,
            type="primary",
            on_click=start_callback,
            key="start_btn"
        )

    with col2:
        st.button(
            "⏹️ Stop",
            disabled=not is_running,
            use_container_width=True,
            on_click=stop_callback,
            key="stop_btn"
        )

    # ========== STATUS INDICATOR ==========
    st.divider()
    if session.running:
        st.markdown(f"""
        <div class="status-running">
        🟢 <strong>RUNNING</strong><br>
        <small>Refreshing every {session.config.interval}s</small>
        </div>
        """, unsafe_allow_html=True)
    else:
        st.markdown("""
        <div class="status-stopped">
        ⚫ <strong>STOPPED</strong><br>
        <small>Configure and press Start</small>
        </div>
        """, unsafe_allow_html=True)


# ================== MAIN CONTENT ==================
st.title("BTC/USD SMA Crossover Tracker")

snapshot, history, trades = session.view()

if not history:
    st.info("👈 **Configure windows and press Start** to begin tracking.")
    if session.running:
        time.sleep(REFRESH_RATE)
        st.rerun()
    st.stop()


# ========== STATUS METRICS ==========
col1, col2, col3, col4 = st.columns(4)

with col1:
    st.metric("Current Price", format_currency(snapshot["price"]))
with col2:
    st.metric(f"Short SMA ({snapshot['short_window']})", format_currency(snapshot["short_sma"]))
with col3:
    st.metric(f"Long SMA ({snapshot['long_window']})", format_currency(snapshot["long_sma"]))
with col4:
    signal = snapshot["signal"]
    st.metric("Signal", signal.upper() if signal else "None")

st.caption(f"Last update: {time.strftime('%H:%M:%S', time.localtime(snapshot['timestamp']))}")

if not snapshot["ready"]:
    st.progress(
        snapshot["long_pct"] / 100,
        text=f"⏳ Buffering long window: {snapshot['long_count']}/{snapshot['long_window']}"
    )


# ========== PRICE CHART (LAST N POINTS) ==========
chart_df = pd.DataFrame([p.to_dict() for p in history[-CHART_POINTS:]])
chart_df["time"] = pd.to_datetime(chart_df["timestamp"], unit="s").dt.strftime("%H:%M:%S")

fig = go.Figure()
for column, label, color in (
    ("price", "Price", "rgb(75, 192, 192)"),
    ("short_sma", f"Short SMA ({snapshot['short_window']})", "rgb(255, 99, 132)"),
    ("long_sma", f"Long SMA ({snapshot['long_window']})", "rgb(54, 162, 235)"),
):
    fig.add_trace(go.Scatter(
        x=chart_df["time"],
        y=chart_df[column],
        mode="lines",
        name=label,
        line=dict(color=color, width=2)
    ))
fig.update_layout(
    height=400,
    template="plotly_dark",
    margin=dict(l=10, r=10, t=30, b=40),
    legend=dict(orientation="h", y=1.1),
    uirevision="price_chart"  # Lock axes during reruns
)
st.plotly_chart(fig, use_container_width=True, key="price_chart")


# ========== TRADE LOG (NEWEST FIRST) ==========
st.subheader("🧾 Trade Log")

if trades:
    log_df = pd.DataFrame([t.to_dict() for t in reversed(trades)])
    log_df["time"] = pd.to_datetime(log_df["timestamp"], unit="s").dt.strftime("%Y-%m-%d %H:%M:%S")
    log_df["type"] = log_df["side"].str.upper()
    log_df["price"] = log_df["price"].map(format_currency)
    st.dataframe(
        log_df[["time", "type", "price", "quantity"]],
        hide_index=True,
        use_container_width=True
    )

    with st.expander("Trade summary"):
        st.dataframe(session.storage.trade_summary(), hide_index=True)
        st.caption("Price bars (1m)")
        st.dataframe(session.storage.resample_prices("1m"), hide_index=True)
else:
    st.caption("No trades yet")


# ========== AUTO REFRESH ==========
if session.running:
    time.sleep(REFRESH_RATE)
    st.rerun()
