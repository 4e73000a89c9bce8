"""Backtest runner: replays historical ticks through the decision engine."""

from __future__ import annotations

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Sequence

import pandas as pd  # type: ignore[import-untyped]

from rulebot.backtest.metrics import (
    buckets_as_rows,
    compute_summary,
    hour_start,
    report_to_dict,
    round_money,
    trades_as_rows,
)
from rulebot.backtest.types import (
    BacktestReport,
    BacktestTimeoutError,
    HourlyBucket,
    NoPriceDataError,
    SizingMode,
)
from rulebot.config import Settings
from rulebot.engine.decision import DecisionEngine
from rulebot.portfolio.accountant import PositionAccountant
from rulebot.strategy.schemas import BotConfig
from rulebot.types import ExecutionState, PriceTick, Trade
from rulebot.utils.logging import get_logger, log_risk_event

logger = get_logger(__name__)


_TRADE_COLUMNS = [
    "bot_id",
    "pair",
    "timestamp",
    "action",
    "price",
    "quantity",
    "total",
    "triggered_by",
]
_BUCKET_COLUMNS = [
    "hour_start",
    "open_price",
    "close_price",
    "high_price",
    "low_price",
    "trade_count",
    "total_buys",
    "total_sells",
    "realised_pnl",
]


def run_backtest(
    *,
    bot_id: str,
    sub: str,
    config: BotConfig,
    ticks: Sequence[PriceTick],
    window_start: datetime,
    window_end: datetime,
    settings: Settings,
    timeout_seconds: float | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> BacktestReport:
    """Replay ``ticks`` inside ``[window_start, window_end]`` for one bot.

    Raises:
        NoPriceDataError: no tick falls inside the window.
        BacktestTimeoutError: the run exceeded ``timeout_seconds``. Nothing
            is returned or written for an abandoned run.
    """
    if window_end < window_start:
        raise ValueError("window_end_before_window_start")

    window_ticks = [tick for tick in ticks if window_start <= tick.timestamp <= window_end]
    if not window_ticks:
        raise NoPriceDataError(
            f"no_price_data: {config.pair} {window_start.isoformat()}..{window_end.isoformat()}"
        )
    _validate_ticks(window_ticks, config.pair)

    budget = settings.backtest_timeout_seconds if timeout_seconds is None else timeout_seconds
    deadline = clock() + budget

    engine = DecisionEngine(default_notional=settings.default_notional)
    accountant = PositionAccountant()
    state = ExecutionState()
    cash = settings.backtest_initial_balance
    buckets: dict[datetime, HourlyBucket] = {}

    logger.info(
        "backtest_start",
        bot_id=bot_id,
        pair=config.pair,
        ticks=len(window_ticks),
        window_start=window_start.isoformat(),
        window_end=window_end.isoformat(),
    )

    for tick in window_ticks:
        if clock() > deadline:
            logger.warning("backtest_timeout", bot_id=bot_id, budget_seconds=budget)
            raise BacktestTimeoutError(f"backtest_timeout: bot={bot_id} budget={budget}s")

        bucket = _bucket_for(buckets, tick)
        decision = engine.decide(tick, config, state, available_balance=max(cash, 0.0))
        state = decision.state
        if not decision.fired:
            continue

        trade = decision.to_trade(bot_id, tick.pair, tick.timestamp)
        bucket.trades.append(trade)
        if trade.action == "buy":
            accountant.on_buy(trade.quantity, trade.price, at=tick.timestamp)
            cash -= trade.total
            bucket.total_buys += 1
        else:
            realised = accountant.on_sell(trade.quantity, trade.price, at=tick.timestamp)
            cash += trade.total
            bucket.total_sells += 1
            bucket.realised_pnl += realised
            if trade.triggered_by != "rule":
                log_risk_event(
                    logger,
                    event_type=trade.triggered_by,
                    action="force_sell",
                    bot_id=bot_id,
                    price=trade.price,
                    quantity=trade.quantity,
                )

    for bucket in buckets.values():
        bucket.realised_pnl = round_money(bucket.realised_pnl)

    last_price = window_ticks[-1].price
    summary = compute_summary(accountant, last_price)
    sizing_mode: SizingMode = "configured" if config.has_sizing else "default_1000_notional"
    report = BacktestReport(
        bot_id=bot_id,
        sub=sub,
        pair=config.pair,
        window_start=window_start.isoformat(),
        window_end=window_end.isoformat(),
        bot_config_snapshot=config.model_dump(mode="json", by_alias=True, exclude_none=True),
        sizing_mode=sizing_mode,
        hourly_buckets=list(buckets.values()),
        summary=summary,
        tick_count=len(window_ticks),
    )
    logger.info(
        "backtest_complete",
        bot_id=bot_id,
        total_trades=summary.total_trades,
        net_pnl=summary.net_pnl,
        win_rate=summary.win_rate,
    )
    return report


def report_to_json(report: BacktestReport) -> str:
    """Deterministic JSON encoding of a report."""
    return json.dumps(report_to_dict(report), ensure_ascii=True, indent=2, sort_keys=True)


def write_backtest_artifacts(output_dir: Path, report: BacktestReport) -> None:
    """Persist the report plus flat trade and bucket tables."""
    output_dir.mkdir(parents=True, exist_ok=True)
    trades: list[Trade] = [trade for bucket in report.hourly_buckets for trade in bucket.trades]
    pd.DataFrame(trades_as_rows(trades), columns=_TRADE_COLUMNS).to_csv(
        output_dir / "trades.csv",
        index=False,
    )
    pd.DataFrame(buckets_as_rows(report.hourly_buckets), columns=_BUCKET_COLUMNS).to_csv(
        output_dir / "hourly_buckets.csv", index=False
    )
    (output_dir / "report.json").write_text(report_to_json(report) + "\n", encoding="utf-8")


def _validate_ticks(ticks: Sequence[PriceTick], pair: str) -> None:
    previous: datetime | None = None
    for tick in ticks:
        if tick.pair != pair:
            raise ValueError(f"tick_pair_mismatch: {tick.pair} != {pair}")
        if previous is not None and tick.timestamp <= previous:
            raise ValueError(f"ticks_not_strictly_ascending: {tick.timestamp.isoformat()}")
        previous = tick.timestamp


def _bucket_for(buckets: dict[datetime, HourlyBucket], tick: PriceTick) -> HourlyBucket:
    key = hour_start(tick.timestamp)
    bucket = buckets.get(key)
    if bucket is None:
        bucket = HourlyBucket(
            hour_start=key.isoformat(),
            open_price=tick.price,
            close_price=tick.price,
            high_price=tick.price,
            low_price=tick.price,
        )
        buckets[key] = bucket
        return bucket
    bucket.close_price = tick.price
    bucket.high_price = max(bucket.high_price, tick.price)
    bucket.low_price = min(bucket.low_price, tick.price)
    return bucket
