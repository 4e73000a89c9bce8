"""Shared types for backtest workflow."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from rulebot.types import Trade

SizingMode = Literal["configured", "default_1000_notional"]


class NoPriceDataError(RuntimeError):
    """Raised when the backtest window holds no ticks."""


class BacktestTimeoutError(TimeoutError):
    """Raised when a run exceeds its wall-clock budget."""


@dataclass(slots=True)
class HourlyBucket:
    """Price range and fills for one UTC hour of the replay."""

    hour_start: str
    open_price: float
    close_price: float
    high_price: float
    low_price: float
    trades: list[Trade] = field(default_factory=list)
    total_buys: int = 0
    total_sells: int = 0
    realised_pnl: float = 0.0


@dataclass(slots=True)
class BacktestSummary:
    """Aggregate statistics over the whole window."""

    total_buys: int
    total_sells: int
    total_trades: int
    net_pnl: float
    realised_pnl: float
    unrealised_pnl: float
    win_rate: float
    avg_hold_time_minutes: int
    largest_gain: float
    largest_loss: float


@dataclass(slots=True)
class BacktestReport:
    """Complete, immutable result of one bot's replay."""

    bot_id: str
    sub: str
    pair: str
    window_start: str
    window_end: str
    bot_config_snapshot: dict[str, object]
    sizing_mode: SizingMode
    hourly_buckets: list[HourlyBucket]
    summary: BacktestSummary
    tick_count: int = 0
