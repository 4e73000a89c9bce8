"""Bot configuration schemas and strict parsing helpers."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    ValidationError,
    field_validator,
    model_validator,
)

from rulebot.types import BOLLINGER_POSITIONS, MACD_SIGNALS


class BotConfigError(ValueError):
    """Raised when a bot configuration or rule tree is malformed."""


class IndicatorField(str, Enum):
    """Fields a rule may reference."""

    PRICE = "price"
    VOLUME_24H = "volume_24h"
    PRICE_CHANGE_PCT = "price_change_pct"
    RSI_14 = "rsi_14"
    RSI_7 = "rsi_7"
    MACD_HISTOGRAM = "macd_histogram"
    MACD_SIGNAL = "macd_signal"
    SMA_20 = "sma_20"
    SMA_50 = "sma_50"
    SMA_200 = "sma_200"
    EMA_12 = "ema_12"
    EMA_20 = "ema_20"
    EMA_26 = "ema_26"
    BB_UPPER = "bb_upper"
    BB_LOWER = "bb_lower"
    BB_POSITION = "bb_position"


Operator = Literal[">", "<", ">=", "<=", "=", "between"]

ENUM_FIELD_VALUES: dict[IndicatorField, tuple[str, ...]] = {
    IndicatorField.MACD_SIGNAL: MACD_SIGNALS,
    IndicatorField.BB_POSITION: BOLLINGER_POSITIONS,
}
_NUMERIC_OPERATORS = frozenset({">", "<", ">=", "<=", "=", "between"})
_ENUM_OPERATORS = frozenset({"="})


class Rule(BaseModel):
    """Leaf condition: ``field operator value``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field: IndicatorField
    operator: Operator
    value: float | str | tuple[float, float]

    @model_validator(mode="before")
    @classmethod
    def normalize_operand(cls, data: Any) -> Any:
        """Resolve the field and coerce ``value`` to the type the field compares with."""
        if not isinstance(data, dict):
            return data
        raw_field = data.get("field")
        try:
            field = IndicatorField(str(raw_field))
        except ValueError as exc:
            raise ValueError(f"unknown_field: {raw_field}") from exc

        operator = str(data.get("operator", "")).strip()
        raw_value = data.get("value")

        if field in ENUM_FIELD_VALUES:
            if operator not in _ENUM_OPERATORS:
                raise ValueError(f"operator_not_supported_for_enum_field: {field.value} {operator}")
            allowed = ENUM_FIELD_VALUES[field]
            if not isinstance(raw_value, str) or raw_value not in allowed:
                raise ValueError(f"invalid_enum_value: {field.value}={raw_value}")
            return {**data, "field": field.value, "operator": operator, "value": raw_value}

        if operator not in _NUMERIC_OPERATORS:
            raise ValueError(f"unknown_operator: {operator}")
        if operator == "between":
            low, high = _parse_range(raw_value)
            return {**data, "field": field.value, "operator": operator, "value": (low, high)}
        return {
            **data,
            "field": field.value,
            "operator": operator,
            "value": _parse_number(raw_value),
        }


def _node_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "group" if "rules" in value or "combinator" in value else "rule"
    return "group" if isinstance(value, RuleGroup) else "rule"


ConditionNode = Annotated[
    Union[Annotated[Rule, Tag("rule")], Annotated["RuleGroup", Tag("group")]],
    Discriminator(_node_kind),
]


class RuleGroup(BaseModel):
    """AND/OR group of rules or nested groups."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    combinator: Literal["and", "or"]
    rules: list[ConditionNode] = Field(min_length=1)

    @field_validator("combinator", mode="before")
    @classmethod
    def lower_combinator(cls, v: object) -> object:
        return v.lower() if isinstance(v, str) else v


RuleGroup.model_rebuild()


class SizingConfig(BaseModel):
    """How a fired action is converted into a trade quantity."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["fixed", "percentage"]
    value: float = Field(gt=0.0)

    @model_validator(mode="after")
    def check_percentage_bounds(self) -> SizingConfig:
        if self.type == "percentage" and self.value > 100.0:
            raise ValueError("percentage_sizing_must_be_at_most_100")
        return self


class BotConfig(BaseModel):
    """Read-only bot configuration consumed by the decision engine."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    pair: str = Field(min_length=1)
    execution_mode: Literal["once_and_wait", "condition_cooldown"] = Field(alias="executionMode")
    buy_query: RuleGroup | None = Field(default=None, alias="buyQuery")
    sell_query: RuleGroup | None = Field(default=None, alias="sellQuery")
    buy_sizing: SizingConfig | None = Field(default=None, alias="buySizing")
    sell_sizing: SizingConfig | None = Field(default=None, alias="sellSizing")
    cooldown_minutes: float | None = Field(default=None, ge=0.0, alias="cooldownMinutes")
    stop_loss_pct: float | None = Field(default=None, gt=0.0, le=100.0, alias="stopLossPct")
    take_profit_pct: float | None = Field(default=None, gt=0.0, le=100.0, alias="takeProfitPct")

    @model_validator(mode="after")
    def check_queries(self) -> BotConfig:
        if self.buy_query is None and self.sell_query is None:
            raise ValueError("at_least_one_query_required")
        if self.execution_mode == "once_and_wait" and (
            self.buy_query is None or self.sell_query is None
        ):
            raise ValueError("once_and_wait_requires_buy_and_sell_query")
        return self

    @property
    def has_sizing(self) -> bool:
        return self.buy_sizing is not None or self.sell_sizing is not None


class BotRecord(BaseModel):
    """Bot as stored by the configuration store."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    bot_id: str = Field(min_length=1, alias="botId")
    sub: str = ""
    name: str = ""
    status: Literal["active", "paused", "draft"] = "active"
    config: BotConfig

    @property
    def is_active(self) -> bool:
        return self.status == "active"


def parse_bot_config(payload: dict[str, Any]) -> BotConfig:
    """Validate a raw config dict. Any violation raises ``BotConfigError``."""
    try:
        return BotConfig.model_validate(payload)
    except ValidationError as exc:
        raise BotConfigError(_first_error(exc)) from exc


def load_bot_config(path: Path) -> BotConfig:
    """Load one bot config from a JSON file."""
    payload = _read_json(path)
    if not isinstance(payload, dict):
        raise BotConfigError("bot_config_json_not_object")
    return parse_bot_config(payload)


def load_bot_records(path: Path) -> list[BotRecord]:
    """Load all bot records from a JSON array file."""
    if not path.exists():
        return []
    payload = _read_json(path)
    if not isinstance(payload, list):
        raise BotConfigError("bot_records_json_not_array")
    records: list[BotRecord] = []
    for item in payload:
        try:
            records.append(BotRecord.model_validate(item))
        except ValidationError as exc:
            bot_id = item.get("bot_id", item.get("botId", "?")) if isinstance(item, dict) else "?"
            raise BotConfigError(f"bot {bot_id}: {_first_error(exc)}") from exc
    return records


def _parse_number(raw: object) -> float:
    if isinstance(raw, bool):
        raise ValueError(f"numeric_value_required: {raw}")
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        try:
            return float(raw.strip())
        except ValueError as exc:
            raise ValueError(f"numeric_value_required: {raw}") from exc
    raise ValueError(f"numeric_value_required: {raw}")


def _parse_range(raw: object) -> tuple[float, float]:
    if isinstance(raw, str):
        parts: list[object] = [part for part in raw.split(",")]
    elif isinstance(raw, (list, tuple)):
        parts = list(raw)
    else:
        raise ValueError(f"between_requires_two_values: {raw}")
    if len(parts) != 2:
        raise ValueError(f"between_requires_two_values: {raw}")
    low, high = _parse_number(parts[0]), _parse_number(parts[1])
    if low > high:
        raise ValueError(f"between_low_above_high: {raw}")
    return low, high


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    message = str(error.get("msg", "invalid"))
    return f"{location}: {message}" if location else message


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise BotConfigError(f"invalid_json: {path}") from exc
