"""结构化日志配置模块。

使用 structlog 输出结构化日志，支持 JSON 和控制台两种格式。
决策引擎、规则求值、指标计算与持仓核算均不打日志，
日志只出现在回测、实盘执行、流水线与 CLI 这些边界层。
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from rulebot.config import LogFormat, get_settings


def setup_logging() -> None:
    """配置结构化日志系统。

    根据配置设置日志级别和输出格式。
    """
    settings = get_settings()

    # 标准库日志级别
    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == LogFormat.JSON:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # 控制台输出（带颜色）
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器。

    Args:
        name: 日志记录器名称。

    Returns:
        结构化日志记录器实例。
    """
    return structlog.get_logger(name)


def log_trade(
    logger: structlog.stdlib.BoundLogger,
    *,
    bot_id: str,
    pair: str,
    action: str,
    quantity: float,
    price: float,
    triggered_by: str,
    **kwargs: Any,
) -> None:
    """记录一次成交。"""
    logger.info(
        "trade",
        bot_id=bot_id,
        pair=pair,
        action=action,
        quantity=quantity,
        price=price,
        triggered_by=triggered_by,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """记录止损 / 止盈事件。"""
    logger.warning(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )


def log_bot_failure(
    logger: structlog.stdlib.BoundLogger,
    *,
    bot_id: str,
    error: str,
    **kwargs: Any,
) -> None:
    """记录单个机器人的失败，批次继续执行。"""
    logger.error(
        "bot_failure",
        bot_id=bot_id,
        error=error,
        **kwargs,
    )


def log_market_fetch(
    logger: structlog.stdlib.BoundLogger,
    *,
    pair: str,
    success: bool,
    latency_ms: float,
    **kwargs: Any,
) -> None:
    """记录行情拉取。"""
    level = "info" if success else "warning"
    getattr(logger, level)(
        "market_fetch",
        pair=pair,
        success=success,
        latency_ms=round(latency_ms, 2),
        **kwargs,
    )
