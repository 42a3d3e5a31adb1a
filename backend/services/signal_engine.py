"""Stateless indicator and signal computation.

All functions are pure computation: no I/O, no database access.
Undefined indicator values are NaN.
"""

from dataclasses import dataclass

import numpy as np

from backend.utils.constants import (
    MIN_CLOSES,
    FAST_SMA_PERIOD,
    SLOW_SMA_PERIOD,
    RSI_PERIOD,
    RSI_LONG_BELOW,
    RSI_SHORT_ABOVE,
)


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------

def sma(values, period: int) -> np.ndarray:
    """Trailing simple moving average; NaN until ``period`` samples exist."""
    if period < 1:
        raise ValueError("period must be >= 1")
    arr = np.asarray(values, dtype=float)
    out = np.full(len(arr), np.nan)
    if len(arr) < period:
        return out
    csum = np.cumsum(np.insert(arr, 0, 0.0))
    out[period - 1:] = (csum[period:] - csum[:-period]) / period
    return out


def _rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def rsi(values, period: int = RSI_PERIOD) -> np.ndarray:
    """Wilder RSI series.

    Averages are seeded from the first ``period`` deltas and then smoothed
    with weight 1/period. Needs ``period + 1`` samples; before that (or for
    shorter inputs) every value is NaN.
    """
    arr = np.asarray(values, dtype=float)
    n = len(arr)
    out = np.full(n, np.nan)
    if n < period + 1:
        return out

    deltas = np.diff(arr)
    gains = np.maximum(deltas, 0.0)
    losses = np.maximum(-deltas, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))
    out[period] = _rsi_from_averages(avg_gain, avg_loss)

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        out[i + 1] = _rsi_from_averages(avg_gain, avg_loss)
    return out


# ---------------------------------------------------------------------------
# Per-symbol signal
# ---------------------------------------------------------------------------

@dataclass
class SignalResult:
    """Latest indicator values for one symbol and the action they imply."""
    fast: float
    slow: float
    rsi: float
    action: str | None = None  # "LONG", "SHORT" or None
    skip_reason: str | None = None  # "insufficient_data", "undefined", "no_signal"


def evaluate_closes(closes) -> SignalResult:
    """SMA(9)/SMA(21) crossover filtered by RSI(14) on the latest close."""
    arr = np.asarray(closes, dtype=float)
    if len(arr) < MIN_CLOSES:
        return SignalResult(np.nan, np.nan, np.nan, skip_reason="insufficient_data")

    fast = float(sma(arr, FAST_SMA_PERIOD)[-1])
    slow = float(sma(arr, SLOW_SMA_PERIOD)[-1])
    r = float(rsi(arr, RSI_PERIOD)[-1])

    if np.isnan(fast) or np.isnan(slow) or np.isnan(r):
        return SignalResult(fast, slow, r, skip_reason="undefined")
    if fast > slow and r < RSI_LONG_BELOW:
        return SignalResult(fast, slow, r, action="LONG")
    if fast < slow and r > RSI_SHORT_ABOVE:
        return SignalResult(fast, slow, r, action="SHORT")
    return SignalResult(fast, slow, r, skip_reason="no_signal")
