# fleet_trip_sync/__init__.py
"""
Fleet Trip Sync - rate-limited trip and position ingestion for tracked fleets.

This package keeps a deduplicated trip log and a normalized position history
for a fleet of devices reported by a third-party location-tracking provider:

1. **Trip Sync**: scheduled, incremental trip synchronization
   - TripSyncEngine fetches trips per device from a durable checkpoint
   - Missing trip endpoints are backfilled from the position history
   - Fuzzy deduplication plus a strict uniqueness constraint

2. **Live Positions**: scheduled polling of current positions
   - PositionPoller normalizes raw records (ignition confidence, speed,
     battery, coordinates) and appends them to a date-partitioned Parquet log
   - A one-row-per-device latest-position projection for dashboards

Every provider call from every invocation shares one store-backed throttle,
so any number of independent scheduled processes stay under the provider's
rate ceiling.

Quick Start:
    >>> from fleet_trip_sync import TripSyncEngine
    >>>
    >>> # One-liner for a scheduled job
    >>> with TripSyncEngine.from_config_file('config/sync_config.yaml') as engine:
    ...     report = engine.run()
    >>> report.trips_inserted
"""

__version__ = '0.1.0'

from fleet_trip_sync.client import RateLimitedProviderClient
from fleet_trip_sync.common import setup_logger
from fleet_trip_sync.config import load_config
from fleet_trip_sync.errors import (
    ProviderError,
    RateLimited,
    RecordValidationError,
    StoreError,
    SyncError,
)
from fleet_trip_sync.normalizer import TelemetryNormalizer, normalize
from fleet_trip_sync.position_log import LatestPositionStore, PositionHistoryLog
from fleet_trip_sync.position_poller import PositionPoller
from fleet_trip_sync.store import SyncCheckpointStore
from fleet_trip_sync.sync_engine import TripSyncEngine

__all__: list[str] = [
    'LatestPositionStore',
    'PositionHistoryLog',
    'PositionPoller',
    'ProviderError',
    'RateLimited',
    'RateLimitedProviderClient',
    'RecordValidationError',
    'StoreError',
    'SyncCheckpointStore',
    'SyncError',
    'TelemetryNormalizer',
    'TripSyncEngine',
    '__version__',
    'load_config',
    'normalize',
    'setup_logger',
]
