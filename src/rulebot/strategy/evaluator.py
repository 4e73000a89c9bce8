"""Condition tree evaluation against an indicator snapshot."""

from __future__ import annotations

from dataclasses import replace
from typing import Callable

from rulebot.strategy.schemas import ConditionNode, IndicatorField, Rule, RuleGroup
from rulebot.types import IndicatorSnapshot, PriceTick


class RuleEvaluationError(RuntimeError):
    """Raised when a condition cannot be evaluated."""


_ACCESSORS: dict[IndicatorField, Callable[[IndicatorSnapshot], float | str]] = {
    IndicatorField.PRICE: lambda s: s.price,
    IndicatorField.VOLUME_24H: lambda s: s.volume_24h,
    IndicatorField.PRICE_CHANGE_PCT: lambda s: s.price_change_pct,
    IndicatorField.RSI_14: lambda s: s.rsi_14,
    IndicatorField.RSI_7: lambda s: s.rsi_7,
    IndicatorField.MACD_HISTOGRAM: lambda s: s.macd_histogram,
    IndicatorField.MACD_SIGNAL: lambda s: s.macd_signal,
    IndicatorField.SMA_20: lambda s: s.sma_20,
    IndicatorField.SMA_50: lambda s: s.sma_50,
    IndicatorField.SMA_200: lambda s: s.sma_200,
    IndicatorField.EMA_12: lambda s: s.ema_12,
    IndicatorField.EMA_20: lambda s: s.ema_20,
    IndicatorField.EMA_26: lambda s: s.ema_26,
    IndicatorField.BB_UPPER: lambda s: s.bb_upper,
    IndicatorField.BB_LOWER: lambda s: s.bb_lower,
    IndicatorField.BB_POSITION: lambda s: s.bb_position,
}


def build_context(tick: PriceTick) -> IndicatorSnapshot:
    """Snapshot with the tick's raw price fields layered over the indicators."""
    return replace(
        tick.indicators,
        price=tick.price,
        volume_24h=tick.volume_24h,
        price_change_pct=tick.price_change_pct,
    )


def evaluate_condition(node: ConditionNode, context: IndicatorSnapshot) -> bool:
    """Evaluate a rule or group; AND/OR short-circuit left to right."""
    if isinstance(node, RuleGroup):
        if not node.rules:
            raise RuleEvaluationError("empty_rule_group")
        if node.combinator == "and":
            return all(evaluate_condition(child, context) for child in node.rules)
        return any(evaluate_condition(child, context) for child in node.rules)
    if isinstance(node, Rule):
        return _evaluate_rule(node, context)
    raise RuleEvaluationError(f"unsupported_condition_node: {type(node).__name__}")


def _evaluate_rule(rule: Rule, context: IndicatorSnapshot) -> bool:
    accessor = _ACCESSORS.get(rule.field)
    if accessor is None:
        raise RuleEvaluationError(f"unknown_field: {rule.field}")
    actual = accessor(context)

    if isinstance(actual, str):
        if rule.operator != "=" or not isinstance(rule.value, str):
            raise RuleEvaluationError(f"type_mismatch: {rule.field.value} {rule.operator}")
        return actual == rule.value

    if rule.operator == "between":
        if not isinstance(rule.value, tuple):
            raise RuleEvaluationError(f"type_mismatch: {rule.field.value} between")
        low, high = rule.value
        return low <= actual <= high

    if not isinstance(rule.value, float):
        raise RuleEvaluationError(f"type_mismatch: {rule.field.value} {rule.operator}")
    target = rule.value
    if rule.operator == ">":
        return actual > target
    if rule.operator == "<":
        return actual < target
    if rule.operator == ">=":
        return actual >= target
    if rule.operator == "<=":
        return actual <= target
    if rule.operator == "=":
        return actual == target
    raise RuleEvaluationError(f"unknown_operator: {rule.operator}")
