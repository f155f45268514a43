"""Structured logging setup using loguru."""
import sys
from pathlib import Path
from loguru import logger as _logger


def setup_logging(
    log_file: str = "logs/spot_trader.log",
    level: str = "INFO",
    enable_console: bool = True,
) -> None:
    """Configure structured logging for the trading engine.

    Args:
        log_file: Path to log file (parent directories are created)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to console as well
    """
    _logger.remove()

    # timestamp, level, module, function, message
    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _logger.add(
        str(log_path),
        format=log_format,
        level=level,
        rotation="100 MB",
        retention="7 days",
    )

    # Reconciliation cases get their own file so they can't drown in cycle noise
    _logger.add(
        str(log_path.with_name(log_path.stem + ".reconcile" + log_path.suffix)),
        format=log_format,
        level="CRITICAL",
        filter=lambda record: record["extra"].get("reconcile", False),
        retention="90 days",
    )

    if enable_console:
        _logger.add(
            sys.stdout,
            format=log_format,
            level=level,
            colorize=True,
        )


# Get logger for use in modules
logger = _logger
