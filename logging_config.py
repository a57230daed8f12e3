"""
Logging Configuration for the Learning Engine
Console, rotating application/error logs, and a learning log that keeps only
the engine's own events (closed outcomes, parameter adoptions, pattern updates).

Development Mode: set DEV_MODE=True or the development_mode setting to enable verbose debug logging
"""
import logging
import logging.handlers
import os
import sys
from pathlib import Path

LOGS_DIR = Path(__file__).parent / "logs"

# Development mode flag (can be set via environment variable)
DEV_MODE = os.getenv('DEV_MODE', 'false').lower() in ('true', '1', 'yes')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEV_LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# Loggers whose INFO records go to learning.log
LEARNING_LOGGERS = ('engine', 'scheduler')
QUIET_LOGGERS = ('urllib3', 'yfinance', 'peewee', 'asyncio', 'apscheduler', 'uvicorn', 'fastapi', 'httpx')


class LoggerPrefixFilter(logging.Filter):
    """Pass records whose logger name falls under one of the given prefixes."""

    def __init__(self, prefixes):
        super().__init__()
        self.prefixes = tuple(prefixes)

    def filter(self, record: logging.LogRecord) -> bool:
        return any(record.name == p or record.name.startswith(p + '.') for p in self.prefixes)


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(level=logging.INFO, dev_mode=None, logs_dir: Path = LOGS_DIR):
    """
    Configure logging for the application

    Args:
        level: Logging level (default: INFO)
        dev_mode: Enable development mode with verbose DEBUG logging (default: from DEV_MODE env var)
        logs_dir: Directory for application.log, errors.log and learning.log
    """
    if dev_mode is None:
        dev_mode = DEV_MODE
    if dev_mode:
        level = logging.DEBUG

    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    active_formatter = logging.Formatter(DEV_LOG_FORMAT, datefmt=DATE_FORMAT) if dev_mode else formatter

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if dev_mode else logging.INFO)
    console_handler.setFormatter(active_formatter)
    root_logger.addHandler(console_handler)

    root_logger.addHandler(_rotating_handler(logs_dir / "application.log", logging.DEBUG, active_formatter))
    root_logger.addHandler(_rotating_handler(logs_dir / "errors.log", logging.ERROR, formatter))

    learning_handler = _rotating_handler(logs_dir / "learning.log", logging.INFO, formatter)
    learning_handler.addFilter(LoggerPrefixFilter(LEARNING_LOGGERS))
    root_logger.addHandler(learning_handler)

    # Suppress noisy third-party loggers (unless in dev mode)
    third_party_level = logging.DEBUG if dev_mode else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    if dev_mode:
        logging.info("Logging initialized in DEVELOPMENT MODE with DEBUG level")
    else:
        logging.info("Logging initialized")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module (usually called with __name__)"""
    return logging.getLogger(name)
