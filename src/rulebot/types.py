"""Shared domain types for the rule engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

Action = Literal["buy", "sell", "none"]
TradeAction = Literal["buy", "sell"]
TriggeredBy = Literal["rule", "stop_loss", "take_profit"]
MacdSignal = Literal["bullish_crossover", "bearish_crossover", "above_signal", "below_signal"]
BollingerPosition = Literal[
    "above_upper",
    "below_lower",
    "near_upper",
    "near_lower",
    "between_bands",
]

MACD_SIGNALS: tuple[MacdSignal, ...] = (
    "bullish_crossover",
    "bearish_crossover",
    "above_signal",
    "below_signal",
)
BOLLINGER_POSITIONS: tuple[BollingerPosition, ...] = (
    "above_upper",
    "below_lower",
    "near_upper",
    "near_lower",
    "between_bands",
)


@dataclass(frozen=True, slots=True)
class Ticker24h:
    """Rolling 24h ticker stats for one pair."""

    volume: float
    price_change_pct: float
    last_price: float


@dataclass(frozen=True, slots=True)
class IndicatorSnapshot:
    """Fixed-shape technical snapshot derived from recent closes."""

    price: float
    volume_24h: float
    price_change_pct: float
    rsi_14: float
    rsi_7: float
    macd_histogram: float
    macd_signal: MacdSignal
    sma_20: float
    sma_50: float
    sma_200: float
    ema_12: float
    ema_20: float
    ema_26: float
    bb_upper: float
    bb_lower: float
    bb_position: BollingerPosition

    def to_dict(self) -> dict[str, float | str]:
        return {
            "price": self.price,
            "volume_24h": self.volume_24h,
            "price_change_pct": self.price_change_pct,
            "rsi_14": self.rsi_14,
            "rsi_7": self.rsi_7,
            "macd_histogram": self.macd_histogram,
            "macd_signal": self.macd_signal,
            "sma_20": self.sma_20,
            "sma_50": self.sma_50,
            "sma_200": self.sma_200,
            "ema_12": self.ema_12,
            "ema_20": self.ema_20,
            "ema_26": self.ema_26,
            "bb_upper": self.bb_upper,
            "bb_lower": self.bb_lower,
            "bb_position": self.bb_position,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IndicatorSnapshot:
        macd_signal = str(payload.get("macd_signal", "below_signal"))
        bb_position = str(payload.get("bb_position", "between_bands"))
        if macd_signal not in MACD_SIGNALS:
            raise ValueError(f"unknown_macd_signal: {macd_signal}")
        if bb_position not in BOLLINGER_POSITIONS:
            raise ValueError(f"unknown_bb_position: {bb_position}")
        return cls(
            price=float(payload["price"]),
            volume_24h=float(payload.get("volume_24h", 0.0)),
            price_change_pct=float(payload.get("price_change_pct", 0.0)),
            rsi_14=float(payload.get("rsi_14", 50.0)),
            rsi_7=float(payload.get("rsi_7", 50.0)),
            macd_histogram=float(payload.get("macd_histogram", 0.0)),
            macd_signal=macd_signal,  # type: ignore[arg-type]
            sma_20=float(payload.get("sma_20", 0.0)),
            sma_50=float(payload.get("sma_50", 0.0)),
            sma_200=float(payload.get("sma_200", 0.0)),
            ema_12=float(payload.get("ema_12", 0.0)),
            ema_20=float(payload.get("ema_20", 0.0)),
            ema_26=float(payload.get("ema_26", 0.0)),
            bb_upper=float(payload.get("bb_upper", 0.0)),
            bb_lower=float(payload.get("bb_lower", 0.0)),
            bb_position=bb_position,  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class PriceTick:
    """One timestamped price + indicator observation for a pair."""

    pair: str
    timestamp: datetime
    price: float
    volume_24h: float
    price_change_pct: float
    indicators: IndicatorSnapshot

    def to_dict(self) -> dict[str, object]:
        return {
            "pair": self.pair,
            "timestamp": self.timestamp.isoformat(),
            "price": self.price,
            "volume_24h": self.volume_24h,
            "price_change_pct": self.price_change_pct,
            "indicators": self.indicators.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PriceTick:
        indicators_payload = payload.get("indicators")
        if not isinstance(indicators_payload, dict):
            raise ValueError("tick_indicators_missing")
        return cls(
            pair=str(payload["pair"]),
            timestamp=parse_utc(str(payload["timestamp"])),
            price=float(payload["price"]),
            volume_24h=float(payload.get("volume_24h", 0.0)),
            price_change_pct=float(payload.get("price_change_pct", 0.0)),
            indicators=IndicatorSnapshot.from_dict(indicators_payload),
        )


@dataclass(frozen=True, slots=True)
class OpenPosition:
    """Long position held by one bot."""

    entry_price: float
    quantity: float
    entered_at: datetime


@dataclass(frozen=True, slots=True)
class ExecutionState:
    """Per-bot execution state, replaced (never mutated) on every decision."""

    last_action: Action = "none"
    last_buy_at: datetime | None = None
    last_sell_at: datetime | None = None
    open_position: OpenPosition | None = None

    def to_dict(self) -> dict[str, object]:
        position = self.open_position
        return {
            "last_action": self.last_action,
            "last_buy_at": _iso_or_none(self.last_buy_at),
            "last_sell_at": _iso_or_none(self.last_sell_at),
            "open_position": (
                {
                    "entry_price": position.entry_price,
                    "quantity": position.quantity,
                    "entered_at": position.entered_at.isoformat(),
                }
                if position is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionState:
        last_action = str(payload.get("last_action", "none"))
        if last_action not in {"buy", "sell", "none"}:
            raise ValueError(f"unknown_last_action: {last_action}")
        position_payload = payload.get("open_position")
        position = None
        if isinstance(position_payload, dict):
            position = OpenPosition(
                entry_price=float(position_payload["entry_price"]),
                quantity=float(position_payload["quantity"]),
                entered_at=parse_utc(str(position_payload["entered_at"])),
            )
        return cls(
            last_action=last_action,  # type: ignore[arg-type]
            last_buy_at=_parse_optional(payload.get("last_buy_at")),
            last_sell_at=_parse_optional(payload.get("last_sell_at")),
            open_position=position,
        )


@dataclass(slots=True)
class Trade:
    """Append-only record of one fired decision."""

    bot_id: str
    pair: str
    timestamp: str
    action: TradeAction
    price: float
    quantity: float
    total: float
    triggered_by: TriggeredBy

    def to_dict(self) -> dict[str, object]:
        return {
            "bot_id": self.bot_id,
            "pair": self.pair,
            "timestamp": self.timestamp,
            "action": self.action,
            "price": self.price,
            "quantity": self.quantity,
            "total": self.total,
            "triggered_by": self.triggered_by,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Trade:
        return cls(
            bot_id=str(payload["bot_id"]),
            pair=str(payload["pair"]),
            timestamp=str(payload["timestamp"]),
            action=payload["action"],
            price=float(payload["price"]),
            quantity=float(payload["quantity"]),
            total=float(payload["total"]),
            triggered_by=payload["triggered_by"],
        )


@dataclass(slots=True)
class CycleResult:
    """Outcome of one live cycle run."""

    status: str
    pair: str = ""
    price: float | None = None
    trades: list[dict[str, object]] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0


def parse_utc(text: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_optional(raw: object) -> datetime | None:
    if raw is None or raw == "":
        return None
    return parse_utc(str(raw))


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
