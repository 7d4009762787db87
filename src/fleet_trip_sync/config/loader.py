# fleet_trip_sync/config/loader.py
"""
Configuration Loading Logic.

Bridges the YAML file on disk and the strictly typed Pydantic models in
`config_models.py`: locates and reads the file, parses YAML, validates the
result, and logs low-level failures with context before re-raising.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from fleet_trip_sync.config.config_models import SyncConfig

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH: Path = Path('config/sync_config.yaml')


def load_config(config_path: Path | str | None = None) -> SyncConfig:
    """Load and validate sync configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file. If None, defaults to
            'config/sync_config.yaml' relative to the working directory.

    Returns:
        Validated SyncConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the YAML is malformed.
        ValueError: If the configuration fails validation.

    Example:
        >>> config = load_config('config/sync_config.yaml')
        >>> config.rate_limit.max_burst_calls
        5
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        logger.debug('No config path provided, using default: %s', config_path)
    else:
        config_path = Path(config_path)

    logger.info('Loading sync configuration from: %s', config_path)

    if not config_path.exists():
        error_message: str = f'Configuration file not found: {config_path}'
        logger.error(error_message)
        raise FileNotFoundError(error_message)

    try:
        with config_path.open(encoding='utf-8') as config_file:
            raw_config_data: Any = yaml.safe_load(config_file)
    except yaml.YAMLError as error:
        error_message = f'Failed to parse YAML configuration: {error}'
        logger.error(error_message)
        raise yaml.YAMLError(error_message) from error

    if not isinstance(raw_config_data, dict):
        error_message = (
            f'Configuration validation failed: expected a mapping at the top '
            f'level, got {type(raw_config_data).__name__}'
        )
        logger.error(error_message)
        raise ValueError(error_message)

    try:
        validated_config: SyncConfig = SyncConfig.model_validate(raw_config_data)
    except ValidationError as error:
        error_message = f'Configuration validation failed: {error}'
        logger.error(error_message)
        raise ValueError(error_message) from error

    logger.info('Configuration loaded and validated successfully')
    return validated_config
