# coding: utf-8
"""
Loguru setup for Ghost Trade Engine processes

Sinks:
- console (colored, LOG_LEVEL)
- <process>_<date>.log, everything from DEBUG, rotated daily
- error_<date>.log, kept longer
- Sentry for ERROR and CRITICAL when SENTRY_DSN is set

Records are passed through a patcher that masks secret-looking `extra`
fields, so a stray logger.bind(password=...) never reaches disk.
"""
import logging
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
import sentry_sdk

from config.config import LOG_LEVEL, ENVIRONMENT, SENTRY_DSN
from config.sentry import SENSITIVE_KEYS


CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}"

# Stdlib loggers of third-party libraries that are too chatty below WARNING
NOISY_LOGGERS = ("aiohttp", "apscheduler", "asyncio", "tenacity")

DEFAULT_LOGS_DIR = Path(__file__).parent.parent / "logs"


def mask_secrets(record: dict) -> None:
    """Loguru patcher: replace values of sensitive extra keys"""
    extra = record["extra"]
    for key in list(extra):
        if any(s in key.lower() for s in SENSITIVE_KEYS):
            extra[key] = "[Filtered]"


def setup_logging(
    process_name: str = "worker",
    level: Optional[str] = None,
    logs_dir: Optional[Path] = None,
    serialize: Optional[bool] = None,
) -> Path:
    """
    Configure loguru for one process

    Args:
        process_name: Prefix of the main log file
        level: Console level (defaults to LOG_LEVEL)
        logs_dir: Directory for log files (defaults to ./logs)
        serialize: JSON lines in the main file (defaults to on in production)

    Returns:
        Directory the log files are written to
    """
    level = level or LOG_LEVEL
    logs_dir = Path(logs_dir or DEFAULT_LOGS_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)
    if serialize is None:
        serialize = ENVIRONMENT == "production"

    logger.remove()
    logger.configure(patcher=mask_secrets)

    logger.add(sys.stdout, format=CONSOLE_FORMAT, level=level, colorize=True)

    logger.add(
        logs_dir / f"{process_name}_{{time:YYYY-MM-DD}}.log",
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
        encoding="utf-8",
        serialize=serialize,
        enqueue=True,
    )

    logger.add(
        logs_dir / "error_{time:YYYY-MM-DD}.log",
        format=FILE_FORMAT,
        level="ERROR",
        rotation="00:00",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
        backtrace=True,
        enqueue=True,
    )

    if SENTRY_DSN:
        logger.add(sentry_sink, level="ERROR", format="{message}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)

    logger.info(f"Ghost Trade Engine {process_name} logging ready | {ENVIRONMENT} | level {level}")
    return logs_dir


def sentry_sink(message) -> None:
    """Forward ERROR / CRITICAL records (and their exceptions) to Sentry"""
    record = message.record

    if record["exception"]:
        sentry_sdk.capture_exception(record["exception"].value)
        return

    sentry_sdk.capture_message(
        record["message"],
        level="fatal" if record["level"].name == "CRITICAL" else "error",
        extras={
            "function": record["function"],
            "file": record["file"].path,
            "line": record["line"],
        },
    )
