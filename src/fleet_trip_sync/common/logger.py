# fleet_trip_sync/common/logger.py
"""
Logging configuration for the fleet_trip_sync package.

Provides centralized logging setup so that every module logging through
`logging.getLogger(__name__)` shares one format and one set of handlers.
"""

import logging
import sys
from pathlib import Path

from fleet_trip_sync.config import LoggingConfig

__all__: list[str] = ['setup_logger']

PACKAGE_LOGGER_NAME: str = 'fleet_trip_sync'


def setup_logger(
    logging_level: int | None = None,
    config: LoggingConfig | None = None,
) -> logging.Logger:
    """
    Set up logging for the fleet_trip_sync package.

    Calling this repeatedly resets and reconfigures the handlers, so a
    scheduled job can call it at the top of every invocation.

    Args:
        logging_level: Console level used when no config is provided.
            Defaults to logging.INFO.
        config: Optional validated logging configuration. When given,
            console logging uses config.console_level, file logging is enabled
            if config.file_path is set, and logging_level is ignored.

    Returns:
        The package-level logger ('fleet_trip_sync').

    Example:
        >>> setup_logger(logging_level=logging.DEBUG)
        >>> config = load_config()
        >>> setup_logger(config=config.logging)
    """
    package_logger: logging.Logger = logging.getLogger(PACKAGE_LOGGER_NAME)

    # Clear existing handlers so repeated calls don't duplicate output
    package_logger.handlers.clear()

    log_format: logging.Formatter = logging.Formatter(
        fmt='%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    # --- Console ---
    if logging_level is None:
        logging_level = logging.INFO
    if config:
        console_level: int = config.get_console_level_int()
    else:
        console_level = logging_level

    console_handler: logging.Handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_format)
    console_handler.setLevel(console_level)
    package_logger.addHandler(console_handler)

    # --- File (config only) ---
    file_level: int | None = config.get_file_level_int() if config else None

    if config and config.file_path and file_level is not None:
        log_file_path: Path = config.file_path
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler: logging.FileHandler = logging.FileHandler(
            filename=str(log_file_path),
            mode='a',
            encoding='utf-8',
        )
        file_handler.setFormatter(log_format)
        file_handler.setLevel(file_level)
        package_logger.addHandler(file_handler)

        if console_level <= logging.INFO:
            print(f'Logging to file: {log_file_path}', file=sys.stderr)

    # The logger must pass everything the most verbose handler wants
    effective_level: int = console_level
    if file_level is not None:
        effective_level = min(console_level, file_level)

    package_logger.setLevel(effective_level)

    return package_logger
