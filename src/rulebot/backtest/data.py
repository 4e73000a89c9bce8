"""Historical tick loading for backtests."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import pandas as pd  # type: ignore[import-untyped]

from rulebot.config import Settings
from rulebot.data.binance import BinanceMarketClient, pair_to_symbol
from rulebot.features.indicators import calculate_all_indicators
from rulebot.types import PriceTick, Ticker24h

_REQUIRED_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time",
]
_CLOSE_WINDOW = 200
_MINUTES_PER_DAY = 1440


class PriceHistoryStore:
    """Append-only JSONL store of ticks, one file per pair."""

    def __init__(self, history_dir: Path) -> None:
        self._history_dir = history_dir
        self._history_dir.mkdir(parents=True, exist_ok=True)

    def append(self, tick: PriceTick) -> None:
        with self._file_for(tick.pair).open("a", encoding="utf-8") as f:
            f.write(json.dumps(tick.to_dict(), ensure_ascii=True) + "\n")

    def load(
        self,
        pair: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[PriceTick]:
        """Ticks for ``pair`` inside ``[start, end]``, oldest first."""
        path = self._file_for(pair)
        if not path.exists():
            return []
        ticks: list[PriceTick] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            tick = PriceTick.from_dict(json.loads(line))
            if start is not None and tick.timestamp < start:
                continue
            if end is not None and tick.timestamp > end:
                continue
            ticks.append(tick)
        ticks.sort(key=lambda t: t.timestamp)
        return _dedupe(ticks)

    def _file_for(self, pair: str) -> Path:
        return self._history_dir / f"{pair_to_symbol(pair).lower()}.jsonl"


def load_ohlcv_csv(path: Path) -> pd.DataFrame:
    """Load OHLCV data from CSV and normalize schema."""
    df = pd.read_csv(path)
    return normalize_ohlcv(df)


def normalize_ohlcv(df: pd.DataFrame) -> pd.DataFrame:
    """Validate/normalize dataframe to the expected OHLCV shape."""
    missing = [col for col in _REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"missing_ohlcv_columns: {','.join(missing)}")

    normalized = df[_REQUIRED_COLUMNS].copy()
    normalized["open_time"] = pd.to_datetime(normalized["open_time"], utc=True)
    normalized["close_time"] = pd.to_datetime(normalized["close_time"], utc=True)
    numeric_cols = ["open", "high", "low", "close", "volume"]
    for col in numeric_cols:
        normalized[col] = pd.to_numeric(normalized[col], errors="coerce")

    normalized = normalized.dropna(subset=numeric_cols + ["open_time", "close_time"])
    normalized = normalized.sort_values("open_time")
    normalized = normalized.drop_duplicates(subset="open_time", keep="last").reset_index(drop=True)
    if normalized.empty:
        raise ValueError("normalized_ohlcv_empty")
    return normalized


def build_ticks_from_ohlcv(pair: str, df: pd.DataFrame) -> list[PriceTick]:
    """Derive one tick per candle close.

    Indicators use the trailing 200 closes. ``volume_24h`` and
    ``price_change_pct`` are rolling over the trailing day of candles, so
    the candle interval is read from the data.
    """
    frame = normalize_ohlcv(df)
    closes = frame["close"].astype(float).tolist()
    candles_per_day = _candles_per_day(frame)
    volume_24h = frame["volume"].rolling(candles_per_day, min_periods=1).sum().tolist()

    ticks: list[PriceTick] = []
    for idx, row in enumerate(frame.itertuples(index=False)):
        price = float(row.close)
        reference_idx = max(0, idx - candles_per_day)
        reference = closes[reference_idx]
        pct = (price - reference) / reference * 100.0 if reference > 0 else 0.0
        ticker = Ticker24h(
            volume=float(volume_24h[idx]),
            price_change_pct=pct,
            last_price=price,
        )
        window = closes[max(0, idx + 1 - _CLOSE_WINDOW) : idx + 1]
        snapshot = calculate_all_indicators(window, ticker)
        ticks.append(
            PriceTick(
                pair=pair,
                timestamp=row.close_time.to_pydatetime(),
                price=price,
                volume_24h=ticker.volume,
                price_change_pct=pct,
                indicators=snapshot,
            )
        )
    return ticks


def fetch_binance_history_with_cache(
    settings: Settings,
    *,
    pair: str,
    interval: str = "1m",
    limit: int = 1000,
    cache_dir: Path | None = None,
    client: BinanceMarketClient | None = None,
) -> pd.DataFrame:
    """Fetch Binance OHLCV with optional local CSV cache."""
    cache_path: Path | None = None
    if cache_dir is not None:
        cache_dir.mkdir(parents=True, exist_ok=True)
        cache_path = cache_dir / f"{pair_to_symbol(pair).lower()}_{interval}.csv"
        if cache_path.exists():
            return load_ohlcv_csv(cache_path)

    market = client or BinanceMarketClient(settings)
    df = normalize_ohlcv(market.fetch_klines(pair, interval, limit))
    if cache_path is not None:
        df.to_csv(cache_path, index=False)
    return df


def _candles_per_day(frame: pd.DataFrame) -> int:
    if len(frame) < 2:
        return 1
    step = frame["open_time"].diff().dropna().median()
    minutes = step.total_seconds() / 60.0
    if minutes <= 0:
        return 1
    return max(1, int(round(_MINUTES_PER_DAY / minutes)))


def _dedupe(ticks: list[PriceTick]) -> list[PriceTick]:
    # keep the last record written for a timestamp
    by_time: dict[datetime, PriceTick] = {}
    for tick in ticks:
        by_time[tick.timestamp] = tick
    return [by_time[key] for key in sorted(by_time)]
