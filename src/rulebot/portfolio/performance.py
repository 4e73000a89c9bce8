"""Bot performance snapshot computed from its trade history."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable

from rulebot.portfolio.accountant import PositionAccountant
from rulebot.types import Trade, parse_utc


@dataclass(slots=True)
class BotPerformance:
    """P&L snapshot for one bot at ``current_price``."""

    bot_id: str
    current_price: float
    total_buys: int
    total_sells: int
    total_buy_value: float
    total_sell_value: float
    realised_pnl: float
    unrealised_pnl: float
    net_pnl: float
    net_position: float
    win_rate: float

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def compute_bot_performance(
    bot_id: str,
    trades: Iterable[Trade],
    current_price: float,
) -> BotPerformance:
    """Replay trades in order through a ``PositionAccountant``."""
    accountant = PositionAccountant()
    total_buy_value = 0.0
    total_sell_value = 0.0
    for trade in trades:
        at = parse_utc(trade.timestamp)
        if trade.action == "buy":
            accountant.on_buy(trade.quantity, trade.price, at=at)
            total_buy_value += trade.total
        else:
            accountant.on_sell(trade.quantity, trade.price, at=at)
            total_sell_value += trade.total

    unrealised = accountant.unrealised_pnl(current_price)
    return BotPerformance(
        bot_id=bot_id,
        current_price=current_price,
        total_buys=accountant.total_buys,
        total_sells=accountant.total_sells,
        total_buy_value=round(total_buy_value, 2),
        total_sell_value=round(total_sell_value, 2),
        realised_pnl=round(accountant.realised_pnl, 2),
        unrealised_pnl=round(unrealised, 2),
        net_pnl=round(accountant.realised_pnl + unrealised, 2),
        net_position=accountant.quantity,
        win_rate=round(accountant.win_rate, 2),
    )


@dataclass(slots=True)
class PortfolioPerformance:
    """Sum of one user's bot snapshots."""

    sub: str
    active_bots: int
    total_realised_pnl: float
    total_unrealised_pnl: float
    total_net_pnl: float

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def compute_portfolio_performance(sub: str, performances: Iterable[BotPerformance]) -> PortfolioPerformance:
    """Aggregate bot snapshots for ``sub``; the first snapshot per bot wins."""
    latest: dict[str, BotPerformance] = {}
    for perf in performances:
        latest.setdefault(perf.bot_id, perf)

    realised = sum(perf.realised_pnl for perf in latest.values())
    unrealised = sum(perf.unrealised_pnl for perf in latest.values())
    return PortfolioPerformance(
        sub=sub,
        active_bots=len(latest),
        total_realised_pnl=round(realised, 2),
        total_unrealised_pnl=round(unrealised, 2),
        total_net_pnl=round(realised + unrealised, 2),
    )
