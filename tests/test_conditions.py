from __future__ import annotations

import json
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import pytest

from rulebot.strategy.evaluator import build_context, evaluate_condition
from rulebot.strategy.schemas import (
    BotConfigError,
    IndicatorField,
    Rule,
    RuleGroup,
    load_bot_records,
    parse_bot_config,
)
from rulebot.types import IndicatorSnapshot, PriceTick

_SNAPSHOT = IndicatorSnapshot(
    price=50_000.0,
    volume_24h=1_000.0,
    price_change_pct=1.5,
    rsi_14=28.0,
    rsi_7=35.0,
    macd_histogram=12.0,
    macd_signal="bullish_crossover",
    sma_20=49_500.0,
    sma_50=49_000.0,
    sma_200=45_000.0,
    ema_12=49_800.0,
    ema_20=49_600.0,
    ema_26=49_400.0,
    bb_upper=51_000.0,
    bb_lower=48_000.0,
    bb_position="between_bands",
)


def _group(combinator: str, *rules: dict[str, object]) -> RuleGroup:
    return RuleGroup.model_validate({"combinator": combinator, "rules": list(rules)})


def _config(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "pair": "BTC/USDT",
        "executionMode": "once_and_wait",
        "buyQuery": {"combinator": "and", "rules": [{"field": "rsi_14", "operator": "<", "value": 30}]},
        "sellQuery": {"combinator": "and", "rules": [{"field": "rsi_14", "operator": ">", "value": 70}]},
    }
    payload.update(overrides)
    return payload


def test_numeric_operators() -> None:
    cases = [
        ("<", 30, True),
        ("<", 28, False),
        ("<=", 28, True),
        (">", 27.9, True),
        (">=", 28.1, False),
        ("=", 28, True),
        ("=", "28.0", True),
    ]
    for operator, value, expected in cases:
        rule = Rule.model_validate({"field": "rsi_14", "operator": operator, "value": value})
        assert evaluate_condition(rule, _SNAPSHOT) is expected, (operator, value)


def test_between_is_inclusive() -> None:
    for value, expected in [("20,28", True), ("28,40", True), ([10, 27.9], False)]:
        rule = Rule.model_validate({"field": "rsi_14", "operator": "between", "value": value})
        assert evaluate_condition(rule, _SNAPSHOT) is expected


def test_enum_fields_compare_by_equality() -> None:
    hit = Rule.model_validate(
        {"field": "macd_signal", "operator": "=", "value": "bullish_crossover"}
    )
    miss = Rule.model_validate({"field": "bb_position", "operator": "=", "value": "above_upper"})
    assert evaluate_condition(hit, _SNAPSHOT) is True
    assert evaluate_condition(miss, _SNAPSHOT) is False


def test_and_or_groups() -> None:
    rsi_low = {"field": "rsi_14", "operator": "<", "value": 30}
    price_high = {"field": "price", "operator": ">", "value": 60_000}
    assert evaluate_condition(_group("AND", rsi_low, price_high), _SNAPSHOT) is False
    assert evaluate_condition(_group("OR", rsi_low, price_high), _SNAPSHOT) is True
    assert evaluate_condition(_group("or", price_high), _SNAPSHOT) is False


def test_nested_groups() -> None:
    tree = RuleGroup.model_validate(
        {
            "combinator": "and",
            "rules": [
                {"field": "macd_signal", "operator": "=", "value": "bullish_crossover"},
                {
                    "combinator": "or",
                    "rules": [
                        {"field": "rsi_14", "operator": ">", "value": 70},
                        {"field": "bb_position", "operator": "=", "value": "between_bands"},
                    ],
                },
            ],
        }
    )
    assert isinstance(tree.rules[1], RuleGroup)
    assert evaluate_condition(tree, _SNAPSHOT) is True


def test_context_takes_raw_fields_from_tick() -> None:
    tick = PriceTick(
        pair="BTC/USDT",
        timestamp=datetime(2024, 1, 1, tzinfo=UTC),
        price=52_000.0,
        volume_24h=5.0,
        price_change_pct=-3.0,
        indicators=_SNAPSHOT,
    )
    context = build_context(tick)
    assert context.price == 52_000.0
    assert context.price_change_pct == -3.0
    assert context.rsi_14 == _SNAPSHOT.rsi_14
    rule = Rule.model_validate({"field": "price_change_pct", "operator": "<", "value": 0})
    assert evaluate_condition(rule, context) is True
    assert evaluate_condition(rule, replace(context, price_change_pct=1.0)) is False


def test_malformed_rules_are_rejected() -> None:
    bad_rules = [
        {"field": "rsi_99", "operator": "<", "value": 30},
        {"field": "rsi_14", "operator": "!=", "value": 30},
        {"field": "rsi_14", "operator": "<", "value": "low"},
        {"field": "rsi_14", "operator": "between", "value": "40"},
        {"field": "rsi_14", "operator": "between", "value": "60,40"},
        {"field": "macd_signal", "operator": ">", "value": "above_signal"},
        {"field": "macd_signal", "operator": "=", "value": "sideways"},
    ]
    for rule in bad_rules:
        with pytest.raises(BotConfigError):
            parse_bot_config(
                _config(buyQuery={"combinator": "and", "rules": [rule]})
            )


def test_empty_group_is_rejected() -> None:
    with pytest.raises(BotConfigError):
        parse_bot_config(_config(buyQuery={"combinator": "and", "rules": []}))


def test_bot_config_validation() -> None:
    config = parse_bot_config(
        _config(
            executionMode="condition_cooldown",
            sellQuery=None,
            buySizing={"type": "percentage", "value": 25},
            cooldownMinutes=5,
            stopLossPct=5,
            takeProfitPct=10,
        )
    )
    assert config.execution_mode == "condition_cooldown"
    assert config.buy_query is not None
    assert config.buy_query.rules[0].field is IndicatorField.RSI_14  # type: ignore[union-attr]
    assert config.has_sizing

    invalid = [
        _config(sellQuery=None),
        _config(buyQuery=None, sellQuery=None, executionMode="condition_cooldown"),
        _config(buySizing={"type": "percentage", "value": 150}),
        _config(buySizing={"type": "fixed", "value": 0}),
        _config(stopLossPct=0),
        _config(takeProfitPct=101),
        _config(cooldownMinutes=-1),
        _config(executionMode="always"),
    ]
    for payload in invalid:
        with pytest.raises(BotConfigError):
            parse_bot_config(payload)


def test_load_bot_records(tmp_path: Path) -> None:
    path = tmp_path / "bots.json"
    assert load_bot_records(path) == []

    path.write_text(
        json.dumps(
            [
                {"botId": "bot-1", "sub": "user-1", "name": "dip", "status": "active", "config": _config()},
                {"bot_id": "bot-2", "status": "paused", "config": _config(pair="ETH/USDT")},
            ]
        ),
        encoding="utf-8",
    )
    records = load_bot_records(path)
    assert [r.bot_id for r in records] == ["bot-1", "bot-2"]
    assert records[0].is_active
    assert not records[1].is_active
    assert records[1].config.pair == "ETH/USDT"

    path.write_text(json.dumps([{"botId": "bot-3", "config": _config(sellQuery=None)}]), encoding="utf-8")
    with pytest.raises(BotConfigError, match="bot-3"):
        load_bot_records(path)
