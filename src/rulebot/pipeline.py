"""One live cycle: fetch market data, build the tick, run every bot."""

from __future__ import annotations

from datetime import datetime, timezone
from time import perf_counter

from rulebot.backtest.data import PriceHistoryStore
from rulebot.config import Settings
from rulebot.data.binance import BinanceMarketClient, MarketDataError
from rulebot.engine.decision import DecisionEngine
from rulebot.exec.live import LiveExecutor, LiveRunResult, StaticBalanceProvider
from rulebot.exec.stores import JsonlTradeStore, JsonStateStore
from rulebot.features.indicators import calculate_all_indicators
from rulebot.journal.store import JournalStore
from rulebot.strategy.schemas import load_bot_records
from rulebot.types import CycleResult, PriceTick
from rulebot.utils.logging import get_logger


def run_live_cycle(
    settings: Settings,
    pair: str | None = None,
    dry_run: bool = False,
    *,
    market_client: BinanceMarketClient | None = None,
    now: datetime | None = None,
) -> CycleResult:
    """Run one live cycle for ``pair`` (defaults to ``settings.default_pair``)."""
    logger = get_logger("rulebot.pipeline")
    started = perf_counter()
    resolved_pair = pair or settings.default_pair
    journal = JournalStore(settings.journal_dir)
    cycle_result = CycleResult(status="unknown", pair=resolved_pair)
    tick_time = now or datetime.now(timezone.utc)

    journal.append(
        "cycle_start",
        {
            "pair": resolved_pair,
            "dry_run": dry_run,
            "tick_time": tick_time.isoformat(),
        },
    )

    try:
        client = market_client or BinanceMarketClient(settings)
        closes = client.fetch_closes(resolved_pair)
        ticker = client.fetch_ticker(resolved_pair)
        snapshot = calculate_all_indicators(closes, ticker)
        tick = PriceTick(
            pair=resolved_pair,
            timestamp=tick_time,
            price=ticker.last_price,
            volume_24h=ticker.volume,
            price_change_pct=ticker.price_change_pct,
            indicators=snapshot,
        )
        cycle_result.price = tick.price
        journal.append(
            "market_data",
            {
                "pair": resolved_pair,
                "closes": len(closes),
                "last_price": tick.price,
                "rsi_14": snapshot.rsi_14,
                "macd_signal": snapshot.macd_signal,
                "bb_position": snapshot.bb_position,
            },
        )
        PriceHistoryStore(settings.price_history_dir).append(tick)

        bots = load_bot_records(settings.bots_file)
        executor = LiveExecutor(
            DecisionEngine(default_notional=settings.default_notional),
            JsonStateStore(settings.state_dir),
            JsonlTradeStore(settings.trades_dir),
            StaticBalanceProvider(settings.live_available_balance),
            max_workers=settings.live_max_workers,
        )
        run = executor.process_tick(tick, bots, dry_run=dry_run)
        _journal_run(journal, run, dry_run)

        cycle_result.trades = [trade.to_dict() for trade in run.trades]
        cycle_result.failures = [
            {"bot_id": failure.bot_id, "error": failure.error} for failure in run.failures
        ]
        if not run.decisions and not run.failures:
            cycle_result.warnings.append("no_bots_for_pair")
        return _finish_cycle(cycle_result, journal, started, status=_cycle_status(run, dry_run))

    except MarketDataError as exc:
        logger.warning("market_data_unavailable", pair=resolved_pair, error=str(exc))
        journal.append("error", {"stage": "market_data", "error": str(exc)})
        return _finish_cycle(cycle_result, journal, started, status="failed")
    except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
        logger.exception("pipeline_failed", error=str(exc))
        journal.append("error", {"error": str(exc)})
        return _finish_cycle(cycle_result, journal, started, status="failed")


def _journal_run(journal: JournalStore, run: LiveRunResult, dry_run: bool) -> None:
    for decision in run.decisions:
        journal.append(
            "decision",
            {
                "bot_id": decision.bot_id,
                "action": decision.action,
                "reason": decision.reason,
                "dry_run": dry_run,
            },
        )
        if decision.trade is not None:
            journal.append("trade", {**decision.trade.to_dict(), "dry_run": dry_run})
    for failure in run.failures:
        journal.append(
            "bot_error",
            {"bot_id": failure.bot_id, "error": failure.error, "error_type": failure.error_type},
        )


def _cycle_status(run: LiveRunResult, dry_run: bool) -> str:
    if not run.decisions and not run.failures:
        return "no_bots"
    if run.failures and not run.decisions:
        return "all_bots_failed"
    if run.trades:
        status = "traded_dry_run" if dry_run else "traded"
    else:
        status = "no_signal"
    if run.failures:
        status += "_with_failures"
    return status


def _finish_cycle(
    result: CycleResult,
    journal: JournalStore,
    started: float,
    *,
    status: str,
) -> CycleResult:
    elapsed_ms = (perf_counter() - started) * 1000
    result.status = status
    result.elapsed_ms = elapsed_ms
    journal.append("cycle_end", {"status": status, "elapsed_ms": elapsed_ms})
    return result
