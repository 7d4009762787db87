# fleet_trip_sync/schema.py
"""
Canonical DataFrame schemas for downstream consumers.

The position history log, the latest-position projection and the trip log
read interface all hand pandas DataFrames to consumers (dashboards, alerting,
chat). Centralizing column names and types here keeps the Parquet files and
the read interfaces consistent.

The schemas are flat (no nested structures) so the Parquet files can be
queried directly by BI tools and BigQuery external tables.
"""

import logging
from collections.abc import Iterable
from typing import Any, Final

import numpy as np
import pandas as pd

from fleet_trip_sync.models import NormalizedPosition, StoredTrip

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'POSITION_COLUMNS',
    'POSITION_DEDUP_COLUMNS',
    'POSITION_SORT_COLUMNS',
    'TRIP_COLUMNS',
    'enforce_position_schema',
    'enforce_trip_schema',
    'positions_to_dataframe',
    'trips_to_dataframe',
]

# =============================================================================
# Schema Constants
# =============================================================================

POSITION_COLUMNS: Final[list[str]] = [
    'device_id',  # Provider device identifier
    'timestamp',  # Fix time (UTC, timezone-aware)
    'latitude',  # WGS84 decimal degrees; NaN when no fix
    'longitude',  # WGS84 decimal degrees; NaN when no fix
    'speed_kmh',  # Normalized speed in km/h
    'heading',  # Compass heading (0-360)
    'battery_percent',  # 0-100, nullable
    'ignition_on',  # Ignition decision
    'ignition_confidence',  # 0.0-1.0
    'detection_method',  # status_bit | string_parse | speed_inference | ...
    'data_quality',  # high | medium | low
    'diagnostics',  # '; '-joined notes, empty when none
]

# One sample per device per instant.
POSITION_DEDUP_COLUMNS: Final[list[str]] = ['device_id', 'timestamp']

POSITION_SORT_COLUMNS: Final[list[str]] = ['device_id', 'timestamp']

TRIP_COLUMNS: Final[list[str]] = [
    'trip_id',
    'device_id',
    'start_time',
    'end_time',
    'duration_seconds',
    'start_latitude',
    'start_longitude',
    'end_latitude',
    'end_longitude',
    'distance_km',
    'distance_source',  # provider | estimated | None
    'max_speed_kmh',
    'avg_speed_kmh',
    'synced_at',
]

_POSITION_FLOAT_COLUMNS: Final[list[str]] = [
    'latitude',
    'longitude',
    'speed_kmh',
    'heading',
    'ignition_confidence',
]

_TRIP_FLOAT_COLUMNS: Final[list[str]] = [
    'duration_seconds',
    'start_latitude',
    'start_longitude',
    'end_latitude',
    'end_longitude',
    'distance_km',
    'max_speed_kmh',
    'avg_speed_kmh',
]


# =============================================================================
# Conversion
# =============================================================================


def _position_row(position: NormalizedPosition) -> dict[str, Any]:
    return {
        'device_id': position.device_id,
        'timestamp': position.timestamp,
        'latitude': position.latitude,
        'longitude': position.longitude,
        'speed_kmh': position.speed_kmh,
        'heading': position.heading,
        'battery_percent': position.battery_percent,
        'ignition_on': position.ignition_on,
        'ignition_confidence': position.ignition_confidence,
        'detection_method': position.detection_method.value,
        'data_quality': position.data_quality.value,
        'diagnostics': '; '.join(position.diagnostics),
    }


def positions_to_dataframe(positions: Iterable[NormalizedPosition]) -> pd.DataFrame:
    """Build a schema-conformant DataFrame from normalized positions."""
    rows: list[dict[str, Any]] = [_position_row(position) for position in positions]
    return enforce_position_schema(pd.DataFrame(rows, columns=POSITION_COLUMNS))


def trips_to_dataframe(stored_trips: Iterable[StoredTrip]) -> pd.DataFrame:
    """Build a schema-conformant DataFrame from stored trips."""
    rows: list[dict[str, Any]] = []
    for stored in stored_trips:
        trip = stored.trip
        rows.append(
            {
                'trip_id': stored.trip_id,
                'device_id': trip.device_id,
                'start_time': trip.start_time,
                'end_time': trip.end_time,
                'duration_seconds': trip.duration_seconds,
                'start_latitude': trip.start_latitude,
                'start_longitude': trip.start_longitude,
                'end_latitude': trip.end_latitude,
                'end_longitude': trip.end_longitude,
                'distance_km': trip.distance_km,
                'distance_source': (
                    trip.distance_source.value if trip.distance_source else None
                ),
                'max_speed_kmh': trip.max_speed_kmh,
                'avg_speed_kmh': trip.avg_speed_kmh,
                'synced_at': stored.synced_at,
            }
        )
    return enforce_trip_schema(pd.DataFrame(rows, columns=TRIP_COLUMNS))


# =============================================================================
# Schema Enforcement
# =============================================================================


def _require_columns(dataframe: pd.DataFrame, columns: list[str]) -> None:
    missing_columns: set[str] = set(columns) - set(dataframe.columns)
    if missing_columns:
        raise ValueError(
            f'DataFrame missing required columns: {sorted(missing_columns)}'
        )


def enforce_position_schema(dataframe: pd.DataFrame) -> pd.DataFrame:
    """
    Enforce column order and types on a position DataFrame.

    Idempotent. Unavailable coordinates stay NaN; they are never filled.

    Raises:
        ValueError: If required columns are missing.
    """
    _require_columns(dataframe, POSITION_COLUMNS)
    result: pd.DataFrame = dataframe.copy()

    result['device_id'] = result['device_id'].astype(str)
    result['timestamp'] = pd.to_datetime(result['timestamp'], utc=True, errors='coerce')

    for column_name in _POSITION_FLOAT_COLUMNS:
        result[column_name] = pd.to_numeric(
            result[column_name], errors='coerce'
        ).astype(np.float64)

    result['battery_percent'] = pd.to_numeric(
        result['battery_percent'], errors='coerce'
    ).astype('Int64')
    result['ignition_on'] = result['ignition_on'].astype(bool)
    result['detection_method'] = result['detection_method'].astype(str)
    result['data_quality'] = result['data_quality'].astype(str)
    result['diagnostics'] = result['diagnostics'].fillna('').astype(str)

    unparseable: int = int(result['timestamp'].isna().sum())
    if unparseable:
        logger.warning('Dropping %d position rows with unparseable timestamps', unparseable)
        result = result[result['timestamp'].notna()]

    return result[POSITION_COLUMNS]


def enforce_trip_schema(dataframe: pd.DataFrame) -> pd.DataFrame:
    """
    Enforce column order and types on a trip DataFrame.

    Raises:
        ValueError: If required columns are missing.
    """
    _require_columns(dataframe, TRIP_COLUMNS)
    result: pd.DataFrame = dataframe.copy()

    result['trip_id'] = pd.to_numeric(result['trip_id'], errors='coerce').astype('Int64')
    result['device_id'] = result['device_id'].astype(str)
    for column_name in ('start_time', 'end_time', 'synced_at'):
        result[column_name] = pd.to_datetime(
            result[column_name], utc=True, errors='coerce'
        )

    for column_name in _TRIP_FLOAT_COLUMNS:
        result[column_name] = pd.to_numeric(
            result[column_name], errors='coerce'
        ).astype(np.float64)

    result['distance_source'] = result['distance_source'].astype('category')

    return result[TRIP_COLUMNS]
