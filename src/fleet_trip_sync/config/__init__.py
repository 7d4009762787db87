"""
Configuration Package for the trip sync core.

Exposes the configuration models and the loader function.
"""

from fleet_trip_sync.config.config_models import (
    CompressionType,
    LoggingConfig,
    NormalizerConfig,
    ProviderConfig,
    RateLimitConfig,
    StorageConfig,
    SyncConfig,
    TripSyncConfig,
)
from fleet_trip_sync.config.loader import load_config

__all__: list[str] = [
    'CompressionType',
    'LoggingConfig',
    'NormalizerConfig',
    'ProviderConfig',
    'RateLimitConfig',
    'StorageConfig',
    'SyncConfig',
    'TripSyncConfig',
    'load_config',
]
