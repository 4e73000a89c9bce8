from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from rulebot.backtest.data import PriceHistoryStore
from rulebot.config import Settings
from rulebot.data.binance import MarketDataError
from rulebot.exec.stores import JsonlTradeStore, JsonStateStore
from rulebot.journal.store import JournalStore
from rulebot.pipeline import run_live_cycle
from rulebot.types import Ticker24h

_NOW = datetime(2024, 7, 1, 12, 0, tzinfo=UTC)


class _FakeMarketClient:
    def __init__(self, last_price: float = 150.0) -> None:
        self._last_price = last_price

    def fetch_closes(self, pair: str) -> list[float]:
        # steady decline keeps RSI at the bottom of its range
        return [300.0 - i for i in range(150)]

    def fetch_ticker(self, pair: str) -> Ticker24h:
        return Ticker24h(volume=42.0, price_change_pct=-3.5, last_price=self._last_price)


class _FailingMarketClient:
    def fetch_closes(self, pair: str) -> list[float]:
        raise MarketDataError("503 Service Unavailable")

    def fetch_ticker(self, pair: str) -> Ticker24h:
        raise AssertionError("not reached")


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        journal_dir=tmp_path / "journal",
        state_dir=tmp_path / "state",
        trades_dir=tmp_path / "trades",
        price_history_dir=tmp_path / "prices",
        bots_file=tmp_path / "bots.json",
        live_available_balance=2_000.0,
    )


def _write_bots(path: Path, bots: list[dict[str, object]]) -> None:
    path.write_text(json.dumps(bots), encoding="utf-8")


def _bot(bot_id: str, **config: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "pair": "BTC/USDT",
        "executionMode": "once_and_wait",
        "buyQuery": {"combinator": "and", "rules": [{"field": "rsi_14", "operator": "<", "value": 30}]},
        "sellQuery": {"combinator": "and", "rules": [{"field": "rsi_14", "operator": ">", "value": 70}]},
        "buySizing": {"type": "percentage", "value": 25},
    }
    payload.update(config)
    return {"botId": bot_id, "sub": "user-1", "status": "active", "config": payload}


def _events(settings: Settings) -> list[str]:
    return [row["event_type"] for row in JournalStore(settings.journal_dir).load_recent(100)]


def test_live_cycle_trades_and_persists(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_bots(settings.bots_file, [_bot("dip-buyer"), _bot("eth-bot", pair="ETH/USDT")])

    result = run_live_cycle(settings, market_client=_FakeMarketClient(), now=_NOW)  # type: ignore[arg-type]

    assert result.status == "traded"
    assert result.price == 150.0
    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade["bot_id"] == "dip-buyer"
    assert trade["action"] == "buy"
    # 25% of 2000 at 150
    assert trade["quantity"] == pytest.approx(500.0 / 150.0)

    ledger = JsonlTradeStore(settings.trades_dir).load("dip-buyer")
    assert [t.action for t in ledger] == ["buy"]
    assert JsonStateStore(settings.state_dir).load("dip-buyer").last_action == "buy"

    history = PriceHistoryStore(settings.price_history_dir).load("BTC/USDT")
    assert [t.timestamp for t in history] == [_NOW]
    assert history[0].indicators.rsi_14 < 30

    events = _events(settings)
    assert events[0] == "cycle_start"
    assert events[-1] == "cycle_end"
    assert {"market_data", "decision", "trade"} <= set(events)


def test_second_cycle_waits_for_sell(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_bots(settings.bots_file, [_bot("dip-buyer")])
    client = _FakeMarketClient()

    run_live_cycle(settings, market_client=client, now=_NOW)  # type: ignore[arg-type]
    second = run_live_cycle(settings, market_client=client, now=_NOW)  # type: ignore[arg-type]

    assert second.status == "no_signal"
    assert second.trades == []
    assert len(JsonlTradeStore(settings.trades_dir).load("dip-buyer")) == 1


def test_dry_run_reports_without_persisting(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_bots(settings.bots_file, [_bot("dip-buyer")])

    result = run_live_cycle(settings, dry_run=True, market_client=_FakeMarketClient(), now=_NOW)  # type: ignore[arg-type]

    assert result.status == "traded_dry_run"
    assert JsonlTradeStore(settings.trades_dir).load("dip-buyer") == []
    assert not (settings.state_dir / "dip-buyer.json").exists()


def test_no_bots_for_pair(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    result = run_live_cycle(settings, market_client=_FakeMarketClient(), now=_NOW)  # type: ignore[arg-type]
    assert result.status == "no_bots"
    assert "no_bots_for_pair" in result.warnings


def test_failing_bot_is_reported_with_others(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_bots(settings.bots_file, [_bot("dip-buyer"), _bot("broken")])
    settings.state_dir.mkdir(parents=True)
    (settings.state_dir / "broken.json").write_text("not json", encoding="utf-8")

    result = run_live_cycle(settings, market_client=_FakeMarketClient(), now=_NOW)  # type: ignore[arg-type]

    assert result.status == "traded_with_failures"
    assert [f["bot_id"] for f in result.failures] == ["broken"]
    assert "bot_error" in _events(settings)


def test_market_data_failure_degrades_cycle(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _write_bots(settings.bots_file, [_bot("dip-buyer")])

    result = run_live_cycle(settings, market_client=_FailingMarketClient(), now=_NOW)  # type: ignore[arg-type]

    assert result.status == "failed"
    assert result.price is None
    events = _events(settings)
    assert events == ["cycle_start", "error", "cycle_end"]
