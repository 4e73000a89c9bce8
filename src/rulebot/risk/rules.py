"""Stop-loss / take-profit checks and position sizing."""

from __future__ import annotations

from rulebot.strategy.schemas import BotConfig, SizingConfig
from rulebot.types import OpenPosition, TriggeredBy


def stop_loss_price(entry_price: float, stop_loss_pct: float) -> float:
    """Price at or below which the position is force-sold."""
    return entry_price * (1.0 - stop_loss_pct / 100.0)


def take_profit_price(entry_price: float, take_profit_pct: float) -> float:
    """Price at or above which the position is force-sold."""
    return entry_price * (1.0 + take_profit_pct / 100.0)


def check_risk_override(
    position: OpenPosition | None,
    price: float,
    config: BotConfig,
) -> TriggeredBy | None:
    """Return the override that fires for ``price``, stop-loss first."""
    if position is None or position.quantity <= 0:
        return None
    if config.stop_loss_pct is not None:
        if price <= stop_loss_price(position.entry_price, config.stop_loss_pct):
            return "stop_loss"
    if config.take_profit_pct is not None:
        if price >= take_profit_price(position.entry_price, config.take_profit_pct):
            return "take_profit"
    return None


def resolve_buy_quantity(
    sizing: SizingConfig | None,
    price: float,
    available_balance: float,
    default_notional: float,
) -> float:
    """Convert buy sizing into a base-asset quantity at ``price``."""
    if price <= 0:
        return 0.0
    if sizing is None:
        notional = default_notional
    elif sizing.type == "fixed":
        notional = sizing.value
    else:
        notional = sizing.value / 100.0 * max(0.0, available_balance)
    return max(0.0, float(notional / price))


def resolve_sell_quantity(
    sizing: SizingConfig | None,
    price: float,
    open_quantity: float,
) -> float:
    """Convert sell sizing into a quantity, never more than is held."""
    if open_quantity <= 0 or price <= 0:
        return 0.0
    if sizing is None:
        return open_quantity
    if sizing.type == "fixed":
        return min(sizing.value / price, open_quantity)
    if sizing.value >= 100.0:
        return open_quantity
    return open_quantity * (sizing.value / 100.0)
