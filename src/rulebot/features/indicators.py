"""Indicator computation for rule evaluation.

All functions take closing prices oldest first and fall back to a neutral
value when the window is shorter than the indicator period.
"""

from __future__ import annotations

from typing import Sequence

import pandas as pd  # type: ignore[import-untyped]

from rulebot.types import BollingerPosition, IndicatorSnapshot, MacdSignal, Ticker24h

_MACD_FAST = 12
_MACD_SLOW = 26
_MACD_SIGNAL = 9
_BB_PERIOD = 20
_BB_STDDEV = 2.0
_BB_NEAR_FRACTION = 0.1


def calculate_sma(closes: Sequence[float], period: int) -> float:
    """Arithmetic mean of the last ``period`` closes, 0 when too short."""
    if len(closes) < period:
        return 0.0
    series = _as_series(closes)
    return float(series.iloc[-period:].mean())


def calculate_ema(closes: Sequence[float], period: int) -> float:
    """EMA seeded with the SMA of the first ``period`` closes, 0 when too short."""
    if len(closes) < period:
        return 0.0
    return float(_seeded_ema(_as_series(closes), period).iloc[-1])


def calculate_rsi(closes: Sequence[float], period: int) -> float:
    """Wilder-smoothed RSI, 50 when fewer than ``period + 1`` closes."""
    if len(closes) < period + 1:
        return 50.0

    deltas = _as_series(closes).diff().iloc[1:].reset_index(drop=True)
    gains = deltas.clip(lower=0.0)
    losses = (-deltas).clip(lower=0.0)
    avg_gain = _wilder_average(gains, period)
    avg_loss = _wilder_average(losses, period)

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def calculate_macd(closes: Sequence[float]) -> tuple[float, MacdSignal]:
    """MACD(12, 26, 9) histogram plus crossover classification."""
    if len(closes) < _MACD_SLOW:
        return 0.0, "below_signal"

    series = _as_series(closes)
    ema_fast = _seeded_ema(series, _MACD_FAST)
    ema_slow = _seeded_ema(series, _MACD_SLOW)
    macd_full = (ema_fast - ema_slow).dropna()
    macd_line = float(macd_full.iloc[-1])

    # signal line runs over MACD values from the first close after the slow seed
    macd_series = macd_full.iloc[1:].reset_index(drop=True)
    signal_line = 0.0
    if len(macd_series) >= _MACD_SIGNAL:
        signal_line = float(_seeded_ema(macd_series, _MACD_SIGNAL).iloc[-1])

    histogram = macd_line - signal_line
    prev_macd = float(macd_series.iloc[-2]) if len(macd_series) >= 2 else macd_line

    signal: MacdSignal
    if prev_macd <= signal_line and macd_line > signal_line:
        signal = "bullish_crossover"
    elif prev_macd >= signal_line and macd_line < signal_line:
        signal = "bearish_crossover"
    elif macd_line > signal_line:
        signal = "above_signal"
    else:
        signal = "below_signal"
    return float(histogram), signal


def calculate_bollinger_bands(
    closes: Sequence[float],
) -> tuple[float, float, BollingerPosition]:
    """Bollinger(20, 2) bands and where the last close sits relative to them."""
    if len(closes) < _BB_PERIOD:
        return 0.0, 0.0, "between_bands"

    window = _as_series(closes).iloc[-_BB_PERIOD:]
    middle = float(window.mean())
    std_dev = float(window.std(ddof=0))
    upper = middle + _BB_STDDEV * std_dev
    lower = middle - _BB_STDDEV * std_dev
    current = float(window.iloc[-1])
    band_width = upper - lower

    position: BollingerPosition
    if current > upper:
        position = "above_upper"
    elif current < lower:
        position = "below_lower"
    elif current > upper - band_width * _BB_NEAR_FRACTION:
        position = "near_upper"
    elif current < lower + band_width * _BB_NEAR_FRACTION:
        position = "near_lower"
    else:
        position = "between_bands"
    return upper, lower, position


def calculate_all_indicators(closes: Sequence[float], ticker: Ticker24h) -> IndicatorSnapshot:
    """Compute the full snapshot used by rule evaluation."""
    histogram, macd_signal = calculate_macd(closes)
    bb_upper, bb_lower, bb_position = calculate_bollinger_bands(closes)
    return IndicatorSnapshot(
        price=float(ticker.last_price),
        volume_24h=float(ticker.volume),
        price_change_pct=float(ticker.price_change_pct),
        rsi_14=calculate_rsi(closes, 14),
        rsi_7=calculate_rsi(closes, 7),
        macd_histogram=histogram,
        macd_signal=macd_signal,
        sma_20=calculate_sma(closes, 20),
        sma_50=calculate_sma(closes, 50),
        sma_200=calculate_sma(closes, 200),
        ema_12=calculate_ema(closes, 12),
        ema_20=calculate_ema(closes, 20),
        ema_26=calculate_ema(closes, 26),
        bb_upper=bb_upper,
        bb_lower=bb_lower,
        bb_position=bb_position,
    )


def _as_series(closes: Sequence[float]) -> pd.Series:
    return pd.Series([float(value) for value in closes], dtype="float64")


def _seeded_ema(series: pd.Series, period: int) -> pd.Series:
    """EMA over ``series`` starting at index ``period - 1`` with an SMA seed."""
    seed = float(series.iloc[:period].mean())
    seeded = pd.concat(
        [
            pd.Series([seed], index=[series.index[period - 1]], dtype="float64"),
            series.iloc[period:],
        ]
    )
    return seeded.ewm(alpha=2.0 / (period + 1), adjust=False).mean()


def _wilder_average(values: pd.Series, period: int) -> float:
    seed = float(values.iloc[:period].mean())
    seeded = pd.concat([pd.Series([seed], dtype="float64"), values.iloc[period:]])
    return float(seeded.ewm(alpha=1.0 / period, adjust=False).mean().iloc[-1])
