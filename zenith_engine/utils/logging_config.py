"""
Logging configuration for the Zenith optimization engine.

Provides module-based loggers with timestamps and proper formatting.
All logs are written to a single shared log file: zenith_log_<datetime>.log
"""
import logging
import logging.handlers
import os
from pathlib import Path
from datetime import datetime
from typing import Optional

# Global shared log file path (created once per session)
_SHARED_LOG_FILE: Optional[Path] = None


def _get_shared_log_file() -> Path:
    """
    Get or create the shared log file path.

    Creates a single log file for all modules with format:
    zenith_log_YYYY-MM-DD_HHMMSS.log

    The directory defaults to ./logs and can be moved with ZENITH_LOG_DIR.

    Returns:
        Path to shared log file
    """
    global _SHARED_LOG_FILE

    if _SHARED_LOG_FILE is None:
        log_dir = Path(os.getenv('ZENITH_LOG_DIR', 'logs'))
        log_dir.mkdir(parents=True, exist_ok=True)

        # Timestamp for log file (only created once per session)
        timestamp = datetime.now().strftime('%Y-%m-%d_%H%M%S')

        _SHARED_LOG_FILE = log_dir / f"zenith_log_{timestamp}.log"

    return _SHARED_LOG_FILE


def _default_level() -> int:
    """Level named by LOG_LEVEL, or INFO when unset or unknown."""
    level = logging.getLevelName(os.getenv('LOG_LEVEL', 'INFO').strip().upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logger(
    name: str, level: Optional[int] = None, log_to_console: bool = True
) -> logging.Logger:
    """
    Setup a logger with file and optional console handlers.

    All loggers write to a single shared log file: zenith_log_<datetime>.log
    Follows format: "YYYY-MM-DD HH:MM:SS | MODULE.NAME | LEVEL | Message"

    Args:
        name: Logger name (e.g., 'APP.OPTIMIZATION.SWEEP', 'DATA.STORE')
        level: Logging level (logging.DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Defaults to the LOG_LEVEL environment variable, then INFO.
        log_to_console: Whether to also output to console

    Returns:
        Configured Logger instance

    Example:
        logger = setup_logger('APP.OPTIMIZATION.WFO', level=logging.DEBUG)
        logger.info("Window 1/2: IS 2024-01-01 to 2024-09-01")
        # Output in zenith_log_2026-10-17_143022.log:
        # 2026-10-17 14:30:22 | APP.OPTIMIZATION.WFO | INFO | Window 1/2: ...
    """
    if level is None:
        level = _default_level()

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid adding duplicate handlers
    if logger.handlers:
        return logger

    log_file = _get_shared_log_file()

    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=50 * 1024 * 1024,  # 50MB (shared by all modules)
        backupCount=10,
    )
    file_handler.setLevel(level)

    formatter = logging.Formatter(
        '%(asctime)s | %(name)s | %(levelname)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if log_to_console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get existing logger or create new one with default settings.

    Args:
        name: Logger name

    Returns:
        Logger instance

    Example:
        logger = get_logger('APP.OPTIMIZATION.SCORING')
        logger.debug("Score for run 3f2a...: 0.7712")
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        return setup_logger(name)
    return logger


def get_optimization_logger(component: str) -> logging.Logger:
    """Get logger for an optimization component."""
    return get_logger(f'APP.OPTIMIZATION.{component.upper()}')


def get_data_logger(source: str = 'DATA') -> logging.Logger:
    """Get logger for data and persistence operations."""
    return get_logger(f'DATA.{source.upper()}')
