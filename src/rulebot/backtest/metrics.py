"""Summary metrics and row conversion for backtest reports."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterable

from rulebot.backtest.types import BacktestReport, BacktestSummary, HourlyBucket
from rulebot.portfolio.accountant import PositionAccountant
from rulebot.types import Trade


def round_money(value: float) -> float:
    """Round to cents, normalising ``-0.0`` to ``0.0``."""
    rounded = round(value, 2)
    return 0.0 if rounded == 0 else rounded


def hour_start(timestamp: datetime) -> datetime:
    """Truncate a timestamp to the start of its UTC hour."""
    return timestamp.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def compute_summary(accountant: PositionAccountant, last_price: float) -> BacktestSummary:
    """Fold the accountant's totals into the report summary.

    The open position, if any, is valued at ``last_price``.
    """
    unrealised = accountant.unrealised_pnl(last_price)
    realised = accountant.realised_pnl
    return BacktestSummary(
        total_buys=accountant.total_buys,
        total_sells=accountant.total_sells,
        total_trades=accountant.total_buys + accountant.total_sells,
        net_pnl=round_money(realised + unrealised),
        realised_pnl=round_money(realised),
        unrealised_pnl=round_money(unrealised),
        win_rate=round(accountant.win_rate, 2),
        avg_hold_time_minutes=int(round(accountant.avg_hold_time_minutes)),
        largest_gain=round_money(accountant.largest_gain),
        largest_loss=round_money(accountant.largest_loss),
    )


def trades_as_rows(trades: Iterable[Trade]) -> list[dict[str, object]]:
    """Convert trades to serializable row dicts."""
    return [trade.to_dict() for trade in trades]


def buckets_as_rows(buckets: Iterable[HourlyBucket]) -> list[dict[str, object]]:
    """Flatten buckets to one CSV row each; trades are counted, not inlined."""
    return [
        {
            "hour_start": bucket.hour_start,
            "open_price": bucket.open_price,
            "close_price": bucket.close_price,
            "high_price": bucket.high_price,
            "low_price": bucket.low_price,
            "trade_count": len(bucket.trades),
            "total_buys": bucket.total_buys,
            "total_sells": bucket.total_sells,
            "realised_pnl": bucket.realised_pnl,
        }
        for bucket in buckets
    ]


def report_to_dict(report: BacktestReport) -> dict[str, object]:
    """Plain-dict view of a report, suitable for JSON."""
    return {
        "bot_id": report.bot_id,
        "sub": report.sub,
        "pair": report.pair,
        "window_start": report.window_start,
        "window_end": report.window_end,
        "bot_config_snapshot": report.bot_config_snapshot,
        "sizing_mode": report.sizing_mode,
        "tick_count": report.tick_count,
        "hourly_buckets": [
            {
                "hour_start": bucket.hour_start,
                "open_price": bucket.open_price,
                "close_price": bucket.close_price,
                "high_price": bucket.high_price,
                "low_price": bucket.low_price,
                "trades": trades_as_rows(bucket.trades),
                "total_buys": bucket.total_buys,
                "total_sells": bucket.total_sells,
                "realised_pnl": bucket.realised_pnl,
            }
            for bucket in report.hourly_buckets
        ],
        "summary": asdict(report.summary),
    }
