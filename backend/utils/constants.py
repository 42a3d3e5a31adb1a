"""Shared constants and defaults for the tick engine."""

# Interval to hours mapping for APScheduler
INTERVAL_HOURS: dict[str, float] = {
    "1m": 1 / 60,
    "5m": 5 / 60,
    "15m": 0.25,
    "30m": 0.5,
    "1h": 1.0,
    "2h": 2.0,
    "4h": 4.0,
    "8h": 8.0,
    "1d": 24.0,
}

# Store document keys
CONFIG_KEY = "trading_config"
RUNTIME_KEY = "trading_runtime"
LOG_KEY = "decision_log"
EQUITY_KEY = "equity_samples"
POSITIONS_KEY = "positions_snapshot"
EVENTS_KEY = "events"

# Ring sizes
MAX_LOG_ENTRIES = 500
MAX_EQUITY_SAMPLES = 1440
MAX_EVENTS = 1000

# Signal scan
KLINE_INTERVAL = "1m"
KLINE_LIMIT = 60
MIN_CLOSES = 30
FAST_SMA_PERIOD = 9
SLOW_SMA_PERIOD = 21
RSI_PERIOD = 14
RSI_LONG_BELOW = 60.0
RSI_SHORT_ABOVE = 40.0
SIGNAL_MODEL = "ma9/ma21+rsi14"

# Sizing and execution guardrails
SIZE_FRACTION = 0.05  # share of available balance per signal-driven trade
ORDER_COOLDOWN_MS = 10 * 60 * 1000
MIN_ORDER_NOTIONAL_USD = 5.0
QTY_DECIMALS = 4
RECV_WINDOW_MS = 5000

VALID_ACTIONS = ("LONG", "SHORT", "FLAT")
