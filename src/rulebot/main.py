"""CLI 入口模块 - rulebot 命令行接口。"""

import json
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import NoReturn

import click

from rulebot import __version__
from rulebot.backtest import (
    BacktestTimeoutError,
    NoPriceDataError,
    PriceHistoryStore,
    build_ticks_from_ohlcv,
    load_ohlcv_csv,
    run_backtest,
    write_backtest_artifacts,
)
from rulebot.config import get_settings
from rulebot.data.binance import BinanceMarketClient, MarketDataError
from rulebot.exec.stores import JsonlTradeStore, JsonStateStore
from rulebot.pipeline import run_live_cycle
from rulebot.portfolio.performance import compute_bot_performance, compute_portfolio_performance
from rulebot.strategy.schemas import BotConfigError, load_bot_records
from rulebot.types import parse_utc
from rulebot.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """rulebot - 规则驱动的加密货币交易机器人。

    同一个决策引擎同时驱动历史回测与实时执行。
    """
    if version:
        click.echo(f"rulebot version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--pair", "-p", default=None, help="交易对，例如 BTC/USDT")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，只计算决策，不写入成交与状态",
)
def once(pair: str | None, dry_run: bool) -> None:
    """执行单次实时循环。

    拉取行情 → 计算指标 → 逐个机器人决策 → 记录成交
    """
    setup_logging()
    logger = get_logger("rulebot.main")
    settings = get_settings()
    settings.ensure_directories()

    logger.info(
        "starting_single_run",
        pair=pair or settings.default_pair,
        dry_run=dry_run,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )

    try:
        result = run_live_cycle(settings, pair, dry_run)
        logger.info(
            "run_completed",
            status=result.status,
            price=result.price,
            elapsed_ms=round(result.elapsed_ms, 2),
            trades=len(result.trades),
            failures=len(result.failures),
            warnings=result.warnings,
        )
    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)

    if result.status == "failed":
        sys.exit(1)


@cli.command()
@click.option("--pair", "-p", default=None, help="交易对，例如 BTC/USDT")
@click.option(
    "--interval-sec",
    "-i",
    type=click.IntRange(min=1),
    default=60,
    help="循环间隔（秒）",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，只计算决策，不写入成交与状态",
)
def loop(pair: str | None, interval_sec: int, dry_run: bool) -> NoReturn:
    """循环执行实时循环。

    每隔指定时间处理一个新的行情 tick，使用 Ctrl+C 停止。
    """
    setup_logging()
    logger = get_logger("rulebot.main")
    settings = get_settings()
    settings.ensure_directories()

    logger.info(
        "starting_loop",
        pair=pair or settings.default_pair,
        interval_sec=interval_sec,
        dry_run=dry_run,
    )

    iteration = 0
    try:
        while True:
            iteration += 1
            logger.info(
                "loop_iteration_start",
                iteration=iteration,
                timestamp=datetime.now(timezone.utc).isoformat(),
            )

            try:
                result = run_live_cycle(settings, pair, dry_run)
                logger.info(
                    "loop_iteration_completed",
                    iteration=iteration,
                    status=result.status,
                    elapsed_ms=round(result.elapsed_ms, 2),
                    trades=len(result.trades),
                    failures=len(result.failures),
                )
            except Exception as e:
                logger.exception(
                    "loop_iteration_failed",
                    iteration=iteration,
                    error=str(e),
                )
                # 单次失败不退出循环

            time.sleep(interval_sec)

    except KeyboardInterrupt:
        logger.info(
            "loop_stopped",
            message="User stopped loop",
            total_iterations=iteration,
        )
        sys.exit(0)


@cli.command()
@click.option("--bot-id", required=True, help="要回测的机器人 ID")
@click.option(
    "--bots-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="机器人配置文件（默认取配置中的 bots_file）",
)
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="OHLCV CSV 文件；不指定时读取本地价格历史",
)
@click.option("--start", default=None, help="窗口开始时间（ISO 8601，UTC）")
@click.option("--end", default=None, help="窗口结束时间（ISO 8601，UTC）")
@click.option("--days", type=click.IntRange(min=1), default=None, help="窗口天数")
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="回测结果输出目录",
)
@click.option("--timeout", type=float, default=None, help="最长运行时间（秒）")
def backtest(
    bot_id: str,
    bots_file: Path | None,
    csv_path: Path | None,
    start: str | None,
    end: str | None,
    days: int | None,
    output_dir: Path | None,
    timeout: float | None,
) -> None:
    """对单个机器人回放历史行情并输出报告。"""
    setup_logging()
    logger = get_logger("rulebot.main")
    settings = get_settings()
    settings.ensure_directories()

    try:
        records = load_bot_records(bots_file or settings.bots_file)
    except BotConfigError as e:
        click.echo(f"[ERROR] Invalid bot configuration: {e}", err=True)
        sys.exit(2)
    record = next((row for row in records if row.bot_id == bot_id), None)
    if record is None:
        click.echo(f"[ERROR] Bot not found: {bot_id}", err=True)
        sys.exit(2)

    if csv_path is not None:
        ticks = build_ticks_from_ohlcv(record.config.pair, load_ohlcv_csv(csv_path))
        source = str(csv_path)
        # CSV files default to their own span
        window_end = parse_utc(end) if end else ticks[-1].timestamp
        if start:
            window_start = parse_utc(start)
        elif days:
            window_start = window_end - timedelta(days=days)
        else:
            window_start = ticks[0].timestamp
    else:
        window_end = parse_utc(end) if end else datetime.now(timezone.utc)
        if start:
            window_start = parse_utc(start)
        else:
            window_start = window_end - timedelta(days=days or settings.backtest_window_days)
        ticks = PriceHistoryStore(settings.price_history_dir).load(
            record.config.pair, window_start, window_end
        )
        source = "price_history"

    try:
        report = run_backtest(
            bot_id=record.bot_id,
            sub=record.sub,
            config=record.config,
            ticks=ticks,
            window_start=window_start,
            window_end=window_end,
            settings=settings,
            timeout_seconds=timeout,
        )
    except NoPriceDataError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(3)
    except BacktestTimeoutError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(4)

    target = output_dir or settings.data_dir / "backtests" / record.bot_id
    write_backtest_artifacts(target, report)
    logger.info("backtest_artifacts_written", output_dir=str(target), source=source)

    summary = report.summary
    click.echo(f"Bot: {report.bot_id} ({report.pair})")
    click.echo(f"Window: {report.window_start} .. {report.window_end}")
    click.echo(f"Sizing: {report.sizing_mode}")
    click.echo(f"Trades: {summary.total_trades} (buys {summary.total_buys}, sells {summary.total_sells})")
    click.echo(f"Net P&L: {summary.net_pnl:.2f}")
    click.echo(f"Realised / Unrealised: {summary.realised_pnl:.2f} / {summary.unrealised_pnl:.2f}")
    click.echo(f"Win rate: {summary.win_rate:.2f}%")
    click.echo(f"Output: {target}")


@cli.command()
@click.option("--bot-id", default=None, help="只显示指定机器人")
@click.option("--sub", default=None, help="按用户汇总其全部机器人的盈亏")
@click.option("--price", type=float, default=None, help="估值价格；不指定时拉取最新行情")
@click.option("--pair", "-p", default=None, help="交易对，例如 BTC/USDT")
def performance(bot_id: str | None, sub: str | None, price: float | None, pair: str | None) -> None:
    """根据成交记录计算机器人的盈亏。"""
    setup_logging()
    logger = get_logger("rulebot.main")
    settings = get_settings()
    settings.ensure_directories()

    resolved_pair = pair or settings.default_pair
    if price is None:
        try:
            price = BinanceMarketClient(settings).fetch_ticker(resolved_pair).last_price
        except MarketDataError as e:
            logger.error("performance_price_unavailable", pair=resolved_pair, error=str(e))
            click.echo("[ERROR] Could not fetch current price; pass --price", err=True)
            sys.exit(1)

    store = JsonlTradeStore(settings.trades_dir)
    if sub is not None:
        try:
            records = load_bot_records(settings.bots_file)
        except BotConfigError as e:
            click.echo(f"[ERROR] {settings.bots_file}: {e}", err=True)
            sys.exit(2)
        bot_ids = [record.bot_id for record in records if record.sub == sub]
    else:
        bot_ids = [bot_id] if bot_id else store.bot_ids()

    performances = []
    for current in bot_ids:
        trades = [trade for trade in store.load(current) if trade.pair == resolved_pair]
        performances.append(compute_bot_performance(current, trades, price))

    if sub is None:
        click.echo(json.dumps([perf.to_dict() for perf in performances], ensure_ascii=True, indent=2))
        return

    payload = {
        "portfolio": compute_portfolio_performance(sub, performances).to_dict(),
        "bots": [perf.to_dict() for perf in performances],
    }
    click.echo(json.dumps(payload, ensure_ascii=True, indent=2))


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("rulebot - Status")
    click.echo("=" * 50)
    click.echo()

    click.echo("[Market Data]")
    click.echo(f"   Binance TLD: {settings.binance_tld}")
    click.echo(f"   Binance Testnet: {'Yes' if settings.binance_testnet else 'No'}")
    click.echo(f"   Default pair: {settings.default_pair}")
    click.echo(f"   Klines: {settings.kline_limit} x {settings.kline_interval}")
    click.echo(f"   Cache TTL: {settings.price_cache_ttl_seconds}s")
    click.echo()

    click.echo("[Sizing]")
    click.echo(f"   Default notional: {settings.default_notional}")
    click.echo(f"   Backtest initial balance: {settings.backtest_initial_balance}")
    click.echo(f"   Live available balance: {settings.live_available_balance}")
    click.echo()

    click.echo("[Bots]")
    try:
        records = load_bot_records(settings.bots_file)
    except BotConfigError as e:
        click.echo(f"   [ERROR] {settings.bots_file}: {e}")
    else:
        state_store = JsonStateStore(settings.state_dir)
        if not records:
            click.echo(f"   [--] No bots in {settings.bots_file}")
        for record in records:
            state = state_store.load(record.bot_id)
            position = state.open_position
            holding = f"{position.quantity:.8f} @ {position.entry_price:.2f}" if position else "flat"
            click.echo(
                f"   {record.bot_id} [{record.status}] {record.config.pair} "
                f"{record.config.execution_mode} last={state.last_action} {holding}"
            )
    click.echo()

    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("rulebot.main")
    settings = get_settings()

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("binance", "Binance API client"),
        ("pandas", "Data processing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    if Path(".env").exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    try:
        records = load_bot_records(settings.bots_file)
        click.echo(f"  [OK] {len(records)} bot(s) in {settings.bots_file}")
    except BotConfigError as e:
        click.echo(f"  [ERROR] {settings.bots_file}: {e}")
        all_ok = False

    click.echo()

    if all_ok:
        click.echo("[OK] All checks passed")
    else:
        click.echo("[ERROR] Some checks failed. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m rulebot.main 调用
if __name__ == "__main__":
    cli()
