"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 行情数据 ====================
    binance_tld: str = Field(default="com", description="Binance 域名后缀（com / us）")
    binance_testnet: bool = Field(default=False, description="是否使用 Binance 测试网")
    binance_timeout: int = Field(default=10, ge=1, le=120, description="行情请求超时（秒）")
    kline_interval: str = Field(default="1m", description="K 线周期")
    kline_limit: int = Field(
        default=200,
        ge=30,
        le=1000,
        description="每次计算指标使用的 K 线数量",
    )
    price_cache_ttl_seconds: float = Field(
        default=30.0,
        ge=0.0,
        le=3600.0,
        description="行情缓存有效期（秒）",
    )
    default_pair: str = Field(default="BTC/USDT", description="默认交易对")

    # ==================== 仓位与回测 ====================
    default_notional: float = Field(
        default=1000.0,
        gt=0.0,
        description="未配置仓位规则时的默认名义金额",
    )
    backtest_initial_balance: float = Field(
        default=1000.0,
        gt=0.0,
        description="回测中按百分比下单时的初始可用余额",
    )
    backtest_window_days: int = Field(default=30, ge=1, le=365, description="默认回测窗口（天）")
    backtest_timeout_seconds: float = Field(
        default=900.0,
        gt=0.0,
        description="单次回测的最长运行时间（秒）",
    )

    # ==================== 实时执行 ====================
    live_available_balance: float = Field(
        default=1000.0,
        ge=0.0,
        description="实时执行时每个机器人的可用余额",
    )
    live_max_workers: int = Field(default=8, ge=1, le=64, description="并发评估机器人的线程数")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    data_dir: Path = Field(default=Path("data"), description="数据根目录")
    journal_dir: Path = Field(default=Path("data/journal"), description="运行日志存储目录")
    state_dir: Path = Field(default=Path("data/state"), description="机器人执行状态目录")
    trades_dir: Path = Field(default=Path("data/trades"), description="成交记录目录")
    price_history_dir: Path = Field(default=Path("data/prices"), description="价格历史目录")
    bots_file: Path = Field(default=Path("data/bots.json"), description="机器人配置文件")

    @field_validator(
        "data_dir",
        "journal_dir",
        "state_dir",
        "trades_dir",
        "price_history_dir",
        "bots_file",
        mode="before",
    )
    @classmethod
    def parse_path(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        for directory in (
            self.data_dir,
            self.journal_dir,
            self.state_dir,
            self.trades_dir,
            self.price_history_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
