"""
Configuration management for the Optivest paper trading engine.
"""

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from .models.market_data import Timeframe


class PositionTier(BaseModel):
    """Share of the quote balance committed once confidence reaches a level."""

    min_confidence: float = Field(..., ge=0.0, le=1.0)
    balance_percent: Decimal = Field(..., gt=Decimal("0"), le=Decimal("100"))


def _default_tiers() -> List[PositionTier]:
    return [
        PositionTier(min_confidence=0.8, balance_percent=Decimal("15")),
        PositionTier(min_confidence=0.7, balance_percent=Decimal("12")),
        PositionTier(min_confidence=0.0, balance_percent=Decimal("8")),
    ]


class TradingConfig(BaseModel):
    """Automated trading parameters."""

    tick_interval: float = Field(default=15.0, gt=0, description="Seconds between strategy ticks")
    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0, description="Minimum fused confidence to trade")
    trade_cooldown: float = Field(default=20.0, ge=0, description="Seconds between trades of one symbol")
    timeframe: Timeframe = Field(default=Timeframe.ONE_HOUR)
    candle_limit: int = Field(default=100, ge=10, le=1000)
    strategy_set: str = Field(default="fusion_v2")
    position_tiers: List[PositionTier] = Field(default_factory=_default_tiers)
    sell_fraction: Decimal = Field(default=Decimal("0.7"), gt=Decimal("0"), le=Decimal("1"))
    min_trade_notional: Decimal = Field(default=Decimal("10"), ge=Decimal("0"))
    tracked_symbols_count: int = Field(default=10, ge=1, le=20)
    tracked_symbols: Optional[List[str]] = Field(
        default=None,
        description="Fixed symbol list; when unset a persisted random selection is used"
    )
    auto_start: bool = Field(default=False, description="Enable trading as soon as the engine starts")

    @field_validator('position_tiers')
    @classmethod
    def sort_tiers(cls, v: List[PositionTier]) -> List[PositionTier]:
        if not v:
            raise ValueError("At least one position tier is required")
        return sorted(v, key=lambda tier: tier.min_confidence, reverse=True)

    def position_percent(self, confidence: float) -> Decimal:
        """Balance percentage for the highest tier the confidence reaches."""
        for tier in self.position_tiers:
            if confidence >= tier.min_confidence:
                return tier.balance_percent
        return Decimal("0")


class RiskConfig(BaseModel):
    """Account and exit-order parameters."""

    initial_balance: Decimal = Field(default=Decimal("10000"), gt=Decimal("0"))
    quote_currency: str = Field(default="USDT", min_length=1)
    max_asset_exposure: Decimal = Field(
        default=Decimal("3000"),
        gt=Decimal("0"),
        description="Maximum quote value held in any single asset"
    )
    stop_loss_percent: Decimal = Field(default=Decimal("3"), gt=Decimal("0"), lt=Decimal("100"))
    take_profit_percent: Decimal = Field(default=Decimal("6"), gt=Decimal("0"))
    max_manual_trade: Decimal = Field(
        default=Decimal("1000"),
        gt=Decimal("0"),
        description="Largest quote notional accepted for one manual trade"
    )


class FeedConfig(BaseModel):
    """Streaming price feed parameters."""

    url: str = Field(default="wss://stream.binance.com:9443/ws/")
    heartbeat_interval: float = Field(default=10.0, gt=0)
    heartbeat_timeout: float = Field(default=30.0, gt=0)
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=1)
    price_max_age: float = Field(default=60.0, gt=0, description="Seconds a cached price stays usable")
    queue_size: int = Field(default=1000, ge=1)
    enabled: bool = Field(default=True)

    @model_validator(mode='after')
    def check_heartbeat(self):
        if self.heartbeat_interval > self.heartbeat_timeout:
            raise ValueError("heartbeat_interval must not exceed heartbeat_timeout")
        return self


class ExchangeConfig(BaseModel):
    """REST market data source (ccxt)."""

    exchange_id: str = Field(default="binance")
    timeout_ms: int = Field(default=10000, ge=1000)


class StorageConfig(BaseModel):
    """Persistence locations."""

    state_file: str = Field(default="./data/paper_trading_data.json")
    symbols_file: str = Field(default="./data/selected_coins.json")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO")
    file_path: str = Field(default="./logs/optivest.log")
    max_size: str = Field(default="10MB")
    backup_count: int = Field(default=5)


def _split_list(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


class Config(BaseModel):
    """Main configuration class."""

    trading: TradingConfig = Field(default_factory=TradingConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load_from_env(cls, env_file: Optional[str] = None) -> "Config":
        """Load configuration from environment variables."""
        if env_file:
            load_dotenv(env_file)
        else:
            env_path = Path(".env")
            if env_path.exists():
                load_dotenv(env_path)

        trading = TradingConfig(
            tick_interval=float(os.getenv("TICK_INTERVAL", "15")),
            min_confidence=float(os.getenv("MIN_CONFIDENCE", "0.6")),
            trade_cooldown=float(os.getenv("TRADE_COOLDOWN", "20")),
            timeframe=os.getenv("CANDLE_TIMEFRAME", "1h"),
            candle_limit=int(os.getenv("CANDLE_LIMIT", "100")),
            strategy_set=os.getenv("STRATEGY_SET", "fusion_v2"),
            sell_fraction=Decimal(os.getenv("SELL_FRACTION", "0.7")),
            min_trade_notional=Decimal(os.getenv("MIN_TRADE_NOTIONAL", "10")),
            tracked_symbols_count=int(os.getenv("TRACKED_SYMBOLS_COUNT", "10")),
            tracked_symbols=_split_list(os.getenv("TRACKED_SYMBOLS")),
            auto_start=os.getenv("AUTO_START_TRADING", "false").lower() == "true"
        )

        risk = RiskConfig(
            initial_balance=Decimal(os.getenv("INITIAL_BALANCE", "10000")),
            quote_currency=os.getenv("QUOTE_CURRENCY", "USDT"),
            max_asset_exposure=Decimal(os.getenv("MAX_ASSET_EXPOSURE", "3000")),
            stop_loss_percent=Decimal(os.getenv("STOP_LOSS_PERCENTAGE", "3")),
            take_profit_percent=Decimal(os.getenv("TAKE_PROFIT_PERCENTAGE", "6")),
            max_manual_trade=Decimal(os.getenv("MAX_TRADE_AMOUNT", "1000"))
        )

        feed = FeedConfig(
            url=os.getenv("FEED_URL", "wss://stream.binance.com:9443/ws/"),
            heartbeat_interval=float(os.getenv("FEED_HEARTBEAT_INTERVAL", "10")),
            heartbeat_timeout=float(os.getenv("FEED_HEARTBEAT_TIMEOUT", "30")),
            reconnect_base_delay=float(os.getenv("FEED_RECONNECT_DELAY", "1")),
            max_reconnect_attempts=int(os.getenv("FEED_MAX_RECONNECT_ATTEMPTS", "5")),
            price_max_age=float(os.getenv("PRICE_MAX_AGE", "60")),
            enabled=os.getenv("FEED_ENABLED", "true").lower() == "true"
        )

        exchange = ExchangeConfig(
            exchange_id=os.getenv("EXCHANGE_ID", "binance"),
            timeout_ms=int(os.getenv("EXCHANGE_TIMEOUT_MS", "10000"))
        )

        storage = StorageConfig(
            state_file=os.getenv("STATE_FILE", "./data/paper_trading_data.json"),
            symbols_file=os.getenv("SYMBOLS_FILE", "./data/selected_coins.json")
        )

        logging = LoggingConfig(
            level=os.getenv("LOG_LEVEL", "INFO"),
            file_path=os.getenv("LOG_FILE_PATH", "./logs/optivest.log"),
            max_size=os.getenv("LOG_MAX_SIZE", "10MB"),
            backup_count=int(os.getenv("LOG_BACKUP_COUNT", "5"))
        )

        return cls(
            trading=trading,
            risk=risk,
            feed=feed,
            exchange=exchange,
            storage=storage,
            logging=logging
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Config":
        """Load configuration from a YAML file; missing sections keep defaults."""
        with open(path, 'r', encoding='utf-8') as f:
            data: Dict[str, Any] = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        return cls.model_validate(data)

    def to_file(self, path: Union[str, Path]) -> None:
        """Write the configuration as YAML."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.model_dump(mode='json'), f, default_flow_style=False, sort_keys=False)
