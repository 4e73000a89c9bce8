from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from rulebot.engine.decision import DecisionEngine
from rulebot.exec.live import LiveExecutor, StaticBalanceProvider
from rulebot.exec.stores import JsonlTradeStore, JsonStateStore
from rulebot.features.indicators import calculate_all_indicators
from rulebot.strategy.schemas import BotRecord, parse_bot_config
from rulebot.types import ExecutionState, OpenPosition, PriceTick, Ticker24h, Trade

_T0 = datetime(2024, 4, 2, 8, 0, tzinfo=UTC)
_ALWAYS = {"combinator": "and", "rules": [{"field": "price", "operator": ">", "value": 0}]}
_NEVER = {"combinator": "and", "rules": [{"field": "rsi_14", "operator": ">", "value": 90}]}


def _tick(minute: int, price: float = 100.0, pair: str = "BTC/USDT") -> PriceTick:
    snapshot = calculate_all_indicators([], Ticker24h(volume=0.0, price_change_pct=0.0, last_price=price))
    return PriceTick(
        pair=pair,
        timestamp=_T0 + timedelta(minutes=minute),
        price=price,
        volume_24h=0.0,
        price_change_pct=0.0,
        indicators=snapshot,
    )


def _bot(bot_id: str, status: str = "active", **overrides: object) -> BotRecord:
    payload: dict[str, object] = {
        "pair": "BTC/USDT",
        "executionMode": "once_and_wait",
        "buyQuery": _ALWAYS,
        "sellQuery": _ALWAYS,
        "buySizing": {"type": "fixed", "value": 500},
    }
    payload.update(overrides)
    return BotRecord(bot_id=bot_id, status=status, config=parse_bot_config(payload))


def _executor(tmp_path: Path, balance: object | None = None) -> tuple[LiveExecutor, JsonStateStore, JsonlTradeStore]:
    states = JsonStateStore(tmp_path / "state")
    trades = JsonlTradeStore(tmp_path / "trades")
    executor = LiveExecutor(
        DecisionEngine(),
        states,
        trades,
        balance or StaticBalanceProvider(1_000.0),  # type: ignore[arg-type]
        max_workers=4,
    )
    return executor, states, trades


def test_state_persists_across_ticks(tmp_path: Path) -> None:
    executor, states, trades = _executor(tmp_path)
    bots = [_bot("bot-1")]

    first = executor.process_tick(_tick(0, 100.0), bots)
    second = executor.process_tick(_tick(1, 110.0), bots)
    third = executor.process_tick(_tick(2, 120.0), bots)

    assert [t.action for t in first.trades + second.trades + third.trades] == ["buy", "sell", "buy"]
    ledger = trades.load("bot-1")
    assert [t.action for t in ledger] == ["buy", "sell", "buy"]
    assert ledger[0].quantity == pytest.approx(5.0)
    assert ledger[1].total == pytest.approx(550.0)

    state = states.load("bot-1")
    assert state.last_action == "buy"
    assert state.open_position is not None
    assert state.open_position.entry_price == 120.0
    assert trades.bot_ids() == ["bot-1"]


def test_skips_inactive_and_other_pairs(tmp_path: Path) -> None:
    executor, _, trades = _executor(tmp_path)
    bots = [
        _bot("active-btc"),
        _bot("paused-btc", status="paused"),
        _bot("active-eth", pair="ETH/USDT"),
    ]
    result = executor.process_tick(_tick(0), bots)
    assert [d.bot_id for d in result.decisions] == ["active-btc"]
    assert sorted(result.skipped) == ["active-eth", "paused-btc"]
    assert trades.load("paused-btc") == []


def test_dry_run_does_not_persist(tmp_path: Path) -> None:
    executor, states, trades = _executor(tmp_path)
    result = executor.process_tick(_tick(0), [_bot("bot-1")], dry_run=True)
    assert [t.action for t in result.trades] == ["buy"]
    assert trades.load("bot-1") == []
    assert states.load("bot-1") == ExecutionState()


def test_one_failing_bot_does_not_abort_batch(tmp_path: Path) -> None:
    class _Balances:
        def available_balance(self, bot_id: str, pair: str) -> float:
            if bot_id == "broken":
                raise RuntimeError("balance service down")
            return 1_000.0

    executor, _, trades = _executor(tmp_path, balance=_Balances())
    bots = [_bot("ok-1"), _bot("broken"), _bot("ok-2")]
    result = executor.process_tick(_tick(0), bots)

    assert sorted(d.bot_id for d in result.decisions) == ["ok-1", "ok-2"]
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.bot_id == "broken"
    assert failure.error_type == "RuntimeError"
    assert "balance service down" in failure.error
    assert len(trades.load("ok-1")) == 1
    assert len(trades.load("ok-2")) == 1


def test_corrupt_state_is_isolated(tmp_path: Path) -> None:
    executor, _, _ = _executor(tmp_path)
    (tmp_path / "state" / "bad.json").write_text("[1, 2]", encoding="utf-8")
    result = executor.process_tick(_tick(0), [_bot("bad"), _bot("good")])
    assert [f.bot_id for f in result.failures] == ["bad"]
    assert [d.bot_id for d in result.decisions] == ["good"]


def test_duplicate_bot_ids_are_reported(tmp_path: Path) -> None:
    executor, _, trades = _executor(tmp_path)
    result = executor.process_tick(_tick(0), [_bot("twin"), _bot("twin")])
    assert [f.error for f in result.failures] == ["duplicate_bot_id"]
    assert len(trades.load("twin")) == 1


def test_stop_loss_forces_sell(tmp_path: Path) -> None:
    executor, states, trades = _executor(tmp_path)
    states.save(
        "guarded",
        ExecutionState(
            last_action="buy",
            last_buy_at=_T0,
            open_position=OpenPosition(entry_price=100.0, quantity=2.0, entered_at=_T0),
        ),
    )
    bot = _bot(
        "guarded",
        sellQuery={"combinator": "and", "rules": [{"field": "rsi_14", "operator": ">", "value": 90}]},
        stopLossPct=5,
    )
    result = executor.process_tick(_tick(5, 90.0), [bot])
    assert result.trades[0].triggered_by == "stop_loss"
    assert result.trades[0].quantity == 2.0
    assert states.load("guarded").open_position is None
    assert trades.load("guarded")[0].action == "sell"


def test_no_signal_leaves_state_untouched(tmp_path: Path) -> None:
    executor, states, _ = _executor(tmp_path)
    bot = _bot(
        "quiet",
        buyQuery={"combinator": "and", "rules": [{"field": "rsi_14", "operator": "<", "value": 10}]},
    )
    result = executor.process_tick(_tick(0), [bot])
    assert result.trades == []
    assert result.decisions[0].action == "none"
    assert not (tmp_path / "state" / "quiet.json").exists()
    assert states.load("quiet") == ExecutionState()


def test_stores_reject_unsafe_bot_ids(tmp_path: Path) -> None:
    states = JsonStateStore(tmp_path / "state")
    with pytest.raises(ValueError, match="invalid_bot_id"):
        states.load("../escape")
    with pytest.raises(ValueError, match="invalid_bot_id"):
        states.save("..", ExecutionState())


def test_static_balance_provider() -> None:
    assert StaticBalanceProvider(25.0).available_balance("any", "BTC/USDT") == 25.0
    with pytest.raises(ValueError):
        StaticBalanceProvider(-1.0)


class _FlakyStateStore(JsonStateStore):
    def __init__(self, state_dir: Path) -> None:
        super().__init__(state_dir)
        self.failures_left = 1

    def save(self, bot_id: str, state: ExecutionState) -> None:
        if self.failures_left:
            self.failures_left -= 1
            raise OSError("disk full")
        super().save(bot_id, state)


class _FlakyTradeStore(JsonlTradeStore):
    def __init__(self, trades_dir: Path) -> None:
        super().__init__(trades_dir)
        self.failures_left = 1

    def append(self, trade: Trade) -> None:
        if self.failures_left:
            self.failures_left -= 1
            raise OSError("disk full")
        super().append(trade)


def test_failed_state_save_records_no_trade(tmp_path: Path) -> None:
    states = _FlakyStateStore(tmp_path / "state")
    trades = JsonlTradeStore(tmp_path / "trades")
    executor = LiveExecutor(DecisionEngine(), states, trades, StaticBalanceProvider(1_000.0))
    bots = [_bot("b1", sellQuery=_NEVER)]

    first = executor.process_tick(_tick(0), bots)
    assert [f.error for f in first.failures] == ["disk full"]
    assert first.trades == []
    assert trades.load("b1") == []

    executor.process_tick(_tick(1), bots)
    executor.process_tick(_tick(2), bots)
    assert [t.action for t in trades.load("b1")] == ["buy"]
    assert states.load("b1").last_action == "buy"


def test_failed_trade_append_rolls_back_state(tmp_path: Path) -> None:
    states = JsonStateStore(tmp_path / "state")
    trades = _FlakyTradeStore(tmp_path / "trades")
    executor = LiveExecutor(DecisionEngine(), states, trades, StaticBalanceProvider(1_000.0))
    bots = [_bot("b1", sellQuery=_NEVER)]

    first = executor.process_tick(_tick(0), bots)
    assert [f.error_type for f in first.failures] == ["OSError"]
    assert states.load("b1") == ExecutionState()

    executor.process_tick(_tick(1), bots)
    executor.process_tick(_tick(2), bots)
    assert [t.action for t in trades.load("b1")] == ["buy"]
    assert states.load("b1").open_position is not None
