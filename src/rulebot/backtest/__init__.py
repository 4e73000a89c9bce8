"""Backtest package exports."""

from rulebot.backtest.data import (
    PriceHistoryStore,
    build_ticks_from_ohlcv,
    fetch_binance_history_with_cache,
    load_ohlcv_csv,
    normalize_ohlcv,
)
from rulebot.backtest.runner import report_to_json, run_backtest, write_backtest_artifacts
from rulebot.backtest.types import (
    BacktestReport,
    BacktestSummary,
    BacktestTimeoutError,
    HourlyBucket,
    NoPriceDataError,
)

__all__ = [
    "BacktestReport",
    "BacktestSummary",
    "BacktestTimeoutError",
    "HourlyBucket",
    "NoPriceDataError",
    "PriceHistoryStore",
    "build_ticks_from_ohlcv",
    "fetch_binance_history_with_cache",
    "load_ohlcv_csv",
    "normalize_ohlcv",
    "report_to_json",
    "run_backtest",
    "write_backtest_artifacts",
]
