from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pandas as pd
import pytest

from rulebot.backtest import (
    PriceHistoryStore,
    build_ticks_from_ohlcv,
    fetch_binance_history_with_cache,
    normalize_ohlcv,
)
from rulebot.config import Settings
from rulebot.features.indicators import calculate_all_indicators
from rulebot.types import PriceTick, Ticker24h

_T0 = datetime(2024, 2, 1, tzinfo=UTC)


def _build_ohlcv(rows: int = 48, step: timedelta = timedelta(hours=1)) -> pd.DataFrame:
    open_times = [_T0 + step * i for i in range(rows)]
    closes = [100.0 + i for i in range(rows)]
    return pd.DataFrame(
        {
            "open_time": open_times,
            "open": closes,
            "high": [c + 1 for c in closes],
            "low": [c - 1 for c in closes],
            "close": closes,
            "volume": [1.0] * rows,
            "close_time": [t + step - timedelta(milliseconds=1) for t in open_times],
        }
    )


def _tick(minute: int, price: float, pair: str = "BTC/USDT") -> PriceTick:
    snapshot = calculate_all_indicators([], Ticker24h(volume=0.0, price_change_pct=0.0, last_price=price))
    return PriceTick(
        pair=pair,
        timestamp=_T0 + timedelta(minutes=minute),
        price=price,
        volume_24h=0.0,
        price_change_pct=0.0,
        indicators=snapshot,
    )


def test_price_history_store_round_trip(tmp_path: Path) -> None:
    store = PriceHistoryStore(tmp_path / "history")
    store.append(_tick(2, 102.0))
    store.append(_tick(0, 100.0))
    store.append(_tick(1, 101.0))
    store.append(_tick(1, 101.5))
    store.append(_tick(0, 3_000.0, pair="ETH/USDT"))

    ticks = store.load("BTC/USDT")
    assert [t.price for t in ticks] == [100.0, 101.5, 102.0]
    assert ticks[0].timestamp == _T0
    assert ticks[0].indicators.rsi_14 == 50.0

    window = store.load("BTC/USDT", _T0 + timedelta(minutes=1), _T0 + timedelta(minutes=1))
    assert [t.price for t in window] == [101.5]
    assert store.load("SOL/USDT") == []
    assert (tmp_path / "history" / "btcusdt.jsonl").exists()


def test_normalize_ohlcv_validates_columns() -> None:
    with pytest.raises(ValueError, match="missing_ohlcv_columns"):
        normalize_ohlcv(pd.DataFrame({"open_time": [], "close": []}))

    df = _build_ohlcv(3)
    doubled = pd.concat([df, df.iloc[[1]]]).iloc[::-1]
    normalized = normalize_ohlcv(doubled)
    assert len(normalized) == 3
    assert normalized["open_time"].is_monotonic_increasing


def test_build_ticks_from_ohlcv() -> None:
    ticks = build_ticks_from_ohlcv("BTC/USDT", _build_ohlcv(48))
    assert len(ticks) == 48
    assert all(t.pair == "BTC/USDT" for t in ticks)
    assert ticks[0].timestamp == _T0 + timedelta(hours=1) - timedelta(milliseconds=1)

    tick = ticks[30]
    assert tick.price == 130.0
    # hourly candles: the trailing day is 24 rows
    assert tick.volume_24h == pytest.approx(24.0)
    assert tick.price_change_pct == pytest.approx((130.0 - 106.0) / 106.0 * 100.0)
    assert tick.indicators.sma_20 == pytest.approx(120.5)
    assert tick.indicators.rsi_14 == 100.0
    assert tick.indicators.sma_50 == 0.0

    first = ticks[0]
    assert first.price_change_pct == 0.0
    assert first.indicators.rsi_14 == 50.0


class _FakeMarket:
    def __init__(self) -> None:
        self.calls = 0

    def fetch_klines(self, pair: str, interval: str | None = None, limit: int | None = None) -> pd.DataFrame:
        self.calls += 1
        return _build_ohlcv(5, step=timedelta(minutes=1))


def test_fetch_binance_history_with_cache(tmp_path: Path) -> None:
    market = _FakeMarket()
    settings = Settings()
    first = fetch_binance_history_with_cache(
        settings,
        pair="BTC/USDT",
        cache_dir=tmp_path / "cache",
        client=market,  # type: ignore[arg-type]
    )
    second = fetch_binance_history_with_cache(
        settings,
        pair="BTC/USDT",
        cache_dir=tmp_path / "cache",
        client=market,  # type: ignore[arg-type]
    )
    assert market.calls == 1
    assert (tmp_path / "cache" / "btcusdt_1m.csv").exists()
    assert list(first["close"]) == list(second["close"])
