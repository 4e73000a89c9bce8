"""Binance public market data client (spot REST, no credentials)."""

from __future__ import annotations

import time
from typing import Any

import pandas as pd  # type: ignore[import-untyped]
from binance.client import Client  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]
from requests import RequestException
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from rulebot.config import Settings
from rulebot.data.cache import TTLCache
from rulebot.types import Ticker24h
from rulebot.utils.logging import get_logger, log_market_fetch

_KLINE_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time",
    "quote_asset_volume",
    "number_of_trades",
    "taker_buy_base_asset_volume",
    "taker_buy_quote_asset_volume",
    "ignore",
]


class MarketDataError(Exception):
    """Raised when market data cannot be fetched or parsed."""


def pair_to_symbol(pair: str) -> str:
    """``BTC/USDT`` -> ``BTCUSDT``."""
    symbol = pair.replace("/", "").replace("-", "").strip().upper()
    if not symbol:
        raise ValueError("empty_pair")
    return symbol


def _is_transient(exc: BaseException) -> bool:
    """Transport failures, rate limits and 5xx are retried; other API errors are final."""
    if isinstance(exc, BinanceAPIException):
        return exc.status_code == 429 or exc.status_code >= 500
    return isinstance(exc, (BinanceRequestException, RequestException))


class BinanceMarketClient:
    """Read-only spot client for klines and the 24h ticker.

    Responses are cached per symbol/interval in an injected ``TTLCache``.
    The underlying ``binance.client.Client`` is built on first use, since
    its constructor already talks to the exchange.
    """

    def __init__(self, settings: Settings, *, cache: TTLCache[Any] | None = None) -> None:
        self._settings = settings
        self._cache: TTLCache[Any] = cache if cache is not None else TTLCache(settings.price_cache_ttl_seconds)
        self._client: Client | None = None
        self._logger = get_logger("rulebot.data.binance")

    def fetch_klines(self, pair: str, interval: str | None = None, limit: int | None = None) -> pd.DataFrame:
        """Fetch klines, oldest first, as an OHLCV dataframe."""
        symbol = pair_to_symbol(pair)
        resolved_interval = interval or self._settings.kline_interval
        resolved_limit = limit or self._settings.kline_limit
        key = f"klines:{symbol}:{resolved_interval}:{resolved_limit}"
        return self._cache.get_or_load(
            key,
            lambda: self._load_klines(pair, symbol, resolved_interval, resolved_limit),
        )

    def fetch_closes(self, pair: str) -> list[float]:
        """Recent close prices, oldest first."""
        return [float(value) for value in self.fetch_klines(pair)["close"].tolist()]

    def fetch_ticker(self, pair: str) -> Ticker24h:
        """Fetch rolling 24h stats."""
        symbol = pair_to_symbol(pair)
        return self._cache.get_or_load(
            f"ticker:{symbol}",
            lambda: self._load_ticker(pair, symbol),
        )

    def _load_klines(self, pair: str, symbol: str, interval: str, limit: int) -> pd.DataFrame:
        rows = self._timed_call(pair, "get_klines", symbol=symbol, interval=interval, limit=limit)
        if not isinstance(rows, list) or not rows:
            raise MarketDataError(f"empty_klines_response: {symbol}")

        df = pd.DataFrame(rows, columns=_KLINE_COLUMNS)
        numeric_cols = ["open", "high", "low", "close", "volume"]
        for col in numeric_cols:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
        df["close_time"] = pd.to_datetime(df["close_time"], unit="ms", utc=True)
        df = df.dropna(subset=numeric_cols).reset_index(drop=True)
        if df.empty:
            raise MarketDataError(f"klines_unparseable: {symbol}")
        return df[["open_time", "open", "high", "low", "close", "volume", "close_time"]]

    def _load_ticker(self, pair: str, symbol: str) -> Ticker24h:
        payload = self._timed_call(pair, "get_ticker", symbol=symbol)
        if not isinstance(payload, dict):
            raise MarketDataError(f"ticker_not_object: {symbol}")
        try:
            return Ticker24h(
                volume=float(payload["volume"]),
                price_change_pct=float(payload["priceChangePercent"]),
                last_price=float(payload["lastPrice"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MarketDataError(f"ticker_unparseable: {symbol}: {exc}") from exc

    def _timed_call(self, pair: str, method: str, **params: Any) -> Any:
        started = time.perf_counter()
        try:
            payload = self._call(method, **params)
        except (BinanceAPIException, BinanceRequestException, RequestException) as exc:
            log_market_fetch(
                self._logger,
                pair=pair,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                endpoint=method,
                error=str(exc),
            )
            raise MarketDataError(str(exc)) from exc
        log_market_fetch(
            self._logger,
            pair=pair,
            success=True,
            latency_ms=(time.perf_counter() - started) * 1000,
            endpoint=method,
        )
        return payload

    @retry(
        retry=retry_if_exception(_is_transient),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call(self, method: str, **params: Any) -> Any:
        if self._client is None:
            self._client = Client(
                tld=self._settings.binance_tld,
                testnet=self._settings.binance_testnet,
                requests_params={"timeout": self._settings.binance_timeout},
            )
        return getattr(self._client, method)(**params)
