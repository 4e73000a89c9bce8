"""Per-tick decision engine shared by backtests and live execution.

``DecisionEngine.decide`` is a pure function of ``(tick, config, state)``:
it never reads the clock or performs I/O, and returns a fresh
``ExecutionState`` instead of mutating the one it was given. Backtests keep
that state in memory, the live executor persists it between ticks; given the
same inputs both get the same decisions.

Decision order, first match wins:

1. stop-loss / take-profit on an open position (bypasses rules and timing)
2. buy rule, if mode timing allows a buy
3. sell rule, if mode timing allows a sell
4. nothing
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from rulebot.risk.rules import check_risk_override, resolve_buy_quantity, resolve_sell_quantity
from rulebot.strategy.evaluator import build_context, evaluate_condition
from rulebot.strategy.schemas import BotConfig
from rulebot.types import Action, ExecutionState, OpenPosition, PriceTick, Trade, TriggeredBy

DEFAULT_NOTIONAL = 1000.0
_QTY_EPSILON = 1e-12


@dataclass(frozen=True, slots=True)
class Decision:
    """Outcome of one tick for one bot."""

    action: Action
    state: ExecutionState
    price: float
    quantity: float = 0.0
    triggered_by: TriggeredBy | None = None
    reason: str = "no_match"

    @property
    def fired(self) -> bool:
        return self.action != "none"

    @property
    def total(self) -> float:
        return self.quantity * self.price

    def to_trade(self, bot_id: str, pair: str, timestamp: datetime) -> Trade:
        """Trade record for a fired decision."""
        if self.action == "none" or self.triggered_by is None:
            raise ValueError("decision_did_not_fire")
        return Trade(
            bot_id=bot_id,
            pair=pair,
            timestamp=timestamp.isoformat(),
            action=self.action,
            price=self.price,
            quantity=self.quantity,
            total=self.total,
            triggered_by=self.triggered_by,
        )


class DecisionEngine:
    """Turns one tick into buy / sell / nothing for one bot."""

    def __init__(self, *, default_notional: float = DEFAULT_NOTIONAL) -> None:
        if default_notional <= 0:
            raise ValueError("default_notional_must_be_positive")
        self._default_notional = default_notional

    @property
    def default_notional(self) -> float:
        return self._default_notional

    def decide(
        self,
        tick: PriceTick,
        config: BotConfig,
        state: ExecutionState,
        *,
        available_balance: float = 0.0,
    ) -> Decision:
        if tick.price <= 0:
            raise ValueError("tick_price_non_positive")
        if tick.pair != config.pair:
            raise ValueError(f"tick_pair_mismatch: {tick.pair} != {config.pair}")

        position = state.open_position
        override = check_risk_override(position, tick.price, config)
        if override is not None and position is not None:
            return _sell(tick, state, position.quantity, override)

        context = build_context(tick)

        if (
            config.buy_query is not None
            and _buy_allowed(config, state, tick.timestamp)
            and evaluate_condition(config.buy_query, context)
        ):
            quantity = resolve_buy_quantity(
                config.buy_sizing,
                tick.price,
                available_balance,
                self._default_notional,
            )
            if quantity > 0:
                return _buy(tick, state, quantity)

        if (
            config.sell_query is not None
            and _sell_allowed(config, state, tick.timestamp)
            and evaluate_condition(config.sell_query, context)
        ):
            open_quantity = position.quantity if position is not None else 0.0
            quantity = resolve_sell_quantity(config.sell_sizing, tick.price, open_quantity)
            return _sell(tick, state, quantity, "rule")

        return Decision(action="none", state=state, price=tick.price)


def _buy_allowed(config: BotConfig, state: ExecutionState, now: datetime) -> bool:
    if config.execution_mode == "once_and_wait":
        return state.last_action != "buy"
    return _cooled_down(state.last_buy_at, now, config.cooldown_minutes)


def _sell_allowed(config: BotConfig, state: ExecutionState, now: datetime) -> bool:
    if config.execution_mode == "once_and_wait":
        return state.last_action != "sell" and state.open_position is not None
    return _cooled_down(state.last_sell_at, now, config.cooldown_minutes)


def _cooled_down(last_at: datetime | None, now: datetime, cooldown_minutes: float | None) -> bool:
    if last_at is None or not cooldown_minutes:
        return True
    return now - last_at >= timedelta(minutes=cooldown_minutes)


def _buy(tick: PriceTick, state: ExecutionState, quantity: float) -> Decision:
    position = state.open_position
    if position is None:
        merged = OpenPosition(entry_price=tick.price, quantity=quantity, entered_at=tick.timestamp)
    else:
        total_quantity = position.quantity + quantity
        merged = OpenPosition(
            entry_price=(position.quantity * position.entry_price + quantity * tick.price)
            / total_quantity,
            quantity=total_quantity,
            entered_at=position.entered_at,
        )
    new_state = replace(
        state,
        last_action="buy",
        last_buy_at=tick.timestamp,
        open_position=merged,
    )
    return Decision(
        action="buy",
        state=new_state,
        price=tick.price,
        quantity=quantity,
        triggered_by="rule",
        reason="buy_rule_matched",
    )


def _sell(
    tick: PriceTick,
    state: ExecutionState,
    quantity: float,
    triggered_by: TriggeredBy,
) -> Decision:
    position = state.open_position
    remaining: OpenPosition | None = None
    if position is not None:
        left = position.quantity - quantity
        if left > _QTY_EPSILON:
            remaining = replace(position, quantity=left)
    new_state = replace(
        state,
        last_action="sell",
        last_sell_at=tick.timestamp,
        open_position=remaining,
    )
    return Decision(
        action="sell",
        state=new_state,
        price=tick.price,
        quantity=quantity,
        triggered_by=triggered_by,
        reason="sell_rule_matched" if triggered_by == "rule" else triggered_by,
    )
