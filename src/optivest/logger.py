"""
Logging infrastructure for the Optivest paper trading engine.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional


DEFAULT_LOG_FILE = "./logs/optivest.log"


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        # Colour a copy so file handlers sharing the record see the plain level
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class StructuredFormatter(logging.Formatter):
    """Structured formatter for file output, prefixing trading context."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        if getattr(record, 'trade_id', None):
            prefix += f"[TRADE:{record.trade_id}] "
        if getattr(record, 'strategy', None):
            prefix += f"[{record.strategy}] "
        if getattr(record, 'symbol', None):
            prefix += f"[{record.symbol}] "

        formatted = super().format(record)
        if not prefix:
            return formatted
        message = record.getMessage()
        return formatted.replace(message, prefix + message, 1)


def setup_logger(
    name: str,
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size: str = "10MB",
    backup_count: int = 5,
    console_output: bool = True
) -> logging.Logger:
    """
    Set up a logger with file rotation and optional console output.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (optional)
        max_size: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        console_output: Whether to output to console

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Clear existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(ColoredFormatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=_parse_size(max_size),
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(StructuredFormatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(file_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get a logger instance with default configuration.

    The level and log file can be overridden with the LOG_LEVEL and
    LOG_FILE_PATH environment variables.

    Args:
        name: Logger name
        level: Logging level

    Returns:
        Logger instance
    """
    return setup_logger(
        name=name,
        level=level or os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE_PATH", DEFAULT_LOG_FILE),
        console_output=True
    )


def configure_logging(
    level: str = "INFO",
    log_file: Optional[str] = DEFAULT_LOG_FILE,
    max_size: str = "10MB",
    backup_count: int = 5,
) -> logging.Logger:
    """Configure the top level ``optivest`` logger from application settings."""
    return setup_logger(
        name="optivest",
        level=level,
        log_file=log_file,
        max_size=max_size,
        backup_count=backup_count,
        console_output=True
    )


def _parse_size(size_str: str) -> int:
    """
    Parse size string (e.g., '10MB', '1GB') to bytes.

    Args:
        size_str: Size string with unit

    Returns:
        Size in bytes
    """
    size_str = size_str.upper().strip()

    # Longest suffix first so 'MB' is not read as 'B'
    size_map = [
        ('GB', 1024 * 1024 * 1024),
        ('MB', 1024 * 1024),
        ('KB', 1024),
        ('B', 1),
    ]

    for unit, multiplier in size_map:
        if size_str.endswith(unit):
            number = size_str[:-len(unit)].strip()
            try:
                return int(float(number) * multiplier)
            except ValueError:
                break

    try:
        return int(size_str)
    except ValueError:
        return 10 * 1024 * 1024  # Default 10MB


class TradingLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter for trading operations with extra context."""

    def process(self, msg: str, kwargs: dict) -> tuple:
        extra = dict(self.extra)
        extra.update(kwargs.get('extra', {}))
        kwargs['extra'] = extra
        return msg, kwargs


def get_trading_adapter(
    logger: logging.Logger,
    symbol: Optional[str] = None,
    strategy: Optional[str] = None,
    trade_id: Optional[str] = None
) -> TradingLoggerAdapter:
    """
    Wrap a logger with trading context.

    Args:
        logger: Logger to wrap
        symbol: Trading symbol (e.g., 'BTC/USDT')
        strategy: Strategy name
        trade_id: Trade identifier

    Returns:
        Logger adapter with trading context
    """
    extra = {}

    if symbol:
        extra['symbol'] = symbol
    if strategy:
        extra['strategy'] = strategy
    if trade_id:
        extra['trade_id'] = trade_id

    return TradingLoggerAdapter(logger, extra)
