"""Live executor: one incoming tick, many bots."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from rulebot.engine.decision import Decision, DecisionEngine
from rulebot.exec.stores import JsonlTradeStore, JsonStateStore
from rulebot.strategy.schemas import BotRecord
from rulebot.types import PriceTick, Trade
from rulebot.utils.logging import get_logger, log_bot_failure, log_risk_event, log_trade

logger = get_logger(__name__)


class BalanceProvider(Protocol):
    """Source of the balance used by percentage buy sizing."""

    def available_balance(self, bot_id: str, pair: str) -> float: ...


class StaticBalanceProvider:
    """Same balance for every bot."""

    def __init__(self, balance: float) -> None:
        if balance < 0:
            raise ValueError("balance_must_not_be_negative")
        self._balance = balance

    def available_balance(self, bot_id: str, pair: str) -> float:
        return self._balance


@dataclass(slots=True)
class BotFailure:
    """A bot whose evaluation or persistence raised."""

    bot_id: str
    error: str
    error_type: str


@dataclass(slots=True)
class BotDecision:
    """What one bot decided for the tick."""

    bot_id: str
    action: str
    reason: str
    trade: Trade | None = None


@dataclass(slots=True)
class LiveRunResult:
    """Outcome of one tick across all bots."""

    trades: list[Trade] = field(default_factory=list)
    decisions: list[BotDecision] = field(default_factory=list)
    failures: list[BotFailure] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class LiveExecutor:
    """Runs the decision engine for every active bot subscribed to a tick's pair.

    Each bot is load state, decide, save state, append trade. Bots run
    concurrently and independently; a failing bot is logged and reported
    while the rest of the batch completes.
    """

    def __init__(
        self,
        engine: DecisionEngine,
        state_store: JsonStateStore,
        trade_store: JsonlTradeStore,
        balance_provider: BalanceProvider,
        *,
        max_workers: int = 8,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers_must_be_positive")
        self._engine = engine
        self._state_store = state_store
        self._trade_store = trade_store
        self._balance_provider = balance_provider
        self._max_workers = max_workers

    def process_tick(
        self,
        tick: PriceTick,
        bots: Sequence[BotRecord],
        *,
        dry_run: bool = False,
    ) -> LiveRunResult:
        """Evaluate ``tick`` for every eligible bot.

        With ``dry_run`` decisions are computed but neither trades nor
        state are persisted.
        """
        result = LiveRunResult()
        eligible: list[BotRecord] = []
        seen: set[str] = set()
        for bot in bots:
            if not bot.is_active or bot.config.pair != tick.pair:
                result.skipped.append(bot.bot_id)
                continue
            # state is owned by exactly one worker
            if bot.bot_id in seen:
                result.failures.append(
                    BotFailure(bot_id=bot.bot_id, error="duplicate_bot_id", error_type="ValueError")
                )
                continue
            seen.add(bot.bot_id)
            eligible.append(bot)

        if not eligible:
            return result

        workers = min(self._max_workers, len(eligible))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bot") as pool:
            futures = [
                (bot, pool.submit(self._process_bot, tick, bot, dry_run)) for bot in eligible
            ]
            for bot, future in futures:
                try:
                    decision = future.result()
                except Exception as exc:  # noqa: BLE001 - one bot must not abort the batch.
                    log_bot_failure(
                        logger,
                        bot_id=bot.bot_id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                        pair=tick.pair,
                    )
                    result.failures.append(
                        BotFailure(bot_id=bot.bot_id, error=str(exc), error_type=type(exc).__name__)
                    )
                    continue
                result.decisions.append(decision)
                if decision.trade is not None:
                    result.trades.append(decision.trade)

        logger.info(
            "live_tick_processed",
            pair=tick.pair,
            timestamp=tick.timestamp.isoformat(),
            evaluated=len(eligible),
            trades=len(result.trades),
            failures=len(result.failures),
            skipped=len(result.skipped),
            dry_run=dry_run,
        )
        return result

    def _process_bot(self, tick: PriceTick, bot: BotRecord, dry_run: bool) -> BotDecision:
        state = self._state_store.load(bot.bot_id)
        balance = self._balance_provider.available_balance(bot.bot_id, tick.pair)
        decision: Decision = self._engine.decide(
            tick,
            bot.config,
            state,
            available_balance=balance,
        )
        if not decision.fired:
            return BotDecision(bot_id=bot.bot_id, action="none", reason=decision.reason)

        trade = decision.to_trade(bot.bot_id, tick.pair, tick.timestamp)
        if not dry_run:
            # state is committed before the ledger row and rolled back if the append fails
            self._state_store.save(bot.bot_id, decision.state)
            try:
                self._trade_store.append(trade)
            except Exception:
                self._state_store.save(bot.bot_id, state)
                raise

        log_trade(
            logger,
            bot_id=bot.bot_id,
            pair=trade.pair,
            action=trade.action,
            quantity=trade.quantity,
            price=trade.price,
            triggered_by=trade.triggered_by,
            dry_run=dry_run,
        )
        if trade.triggered_by != "rule":
            log_risk_event(
                logger,
                event_type=trade.triggered_by,
                action="force_sell",
                bot_id=bot.bot_id,
                price=trade.price,
            )
        return BotDecision(
            bot_id=bot.bot_id,
            action=decision.action,
            reason=decision.reason,
            trade=trade,
        )
