"""
Shared pytest fixtures for fleet_trip_sync tests.

Provides a controllable clock, a throwaway SQLite store, configuration
objects and small factories for positions, trips and provider responses.
"""

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import httpx
import pytest

from fleet_trip_sync.config import (
    ProviderConfig,
    RateLimitConfig,
    StorageConfig,
    SyncConfig,
    TripSyncConfig,
)
from fleet_trip_sync.models import (
    DataQuality,
    DetectionMethod,
    DistanceSource,
    NormalizedPosition,
    Trip,
)
from fleet_trip_sync.position_log import LatestPositionStore, PositionHistoryLog
from fleet_trip_sync.store import SyncCheckpointStore

# 2024-06-01 12:00:00 UTC
START_TIME: datetime = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Clock whose sleep() advances time instantly and records the wait."""

    def __init__(self, start: datetime = START_TIME) -> None:
        self._now: float = start.timestamp()
        self.total_slept: float = 0.0
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self._now

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._now, UTC)

    def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        self._now += seconds
        self.total_slept += seconds
        self.sleeps.append(seconds)

    def advance(self, seconds: float) -> None:
        """Move time forward without counting it as a sleep."""
        self._now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def provider_config() -> ProviderConfig:
    """Provider configuration with login credentials (no pre-issued token)."""
    return ProviderConfig(
        base_url='https://api.example.com/openapi',
        username='fleet-ops',
        password='secret',
    )


@pytest.fixture
def token_provider_config() -> ProviderConfig:
    """Provider configuration with a pre-issued token."""
    return ProviderConfig(
        base_url='https://api.example.com/openapi',
        token='configured-token',
        server_id='7',
    )


@pytest.fixture
def rate_limit_config() -> RateLimitConfig:
    return RateLimitConfig()


@pytest.fixture
def storage_config(tmp_path: Path) -> StorageConfig:
    return StorageConfig(
        database_url=f'sqlite:///{tmp_path / "sync.db"}',
        position_history_path=tmp_path / 'position_history',
        latest_positions_path=tmp_path / 'latest_positions.parquet',
    )


@pytest.fixture
def sync_config(
    token_provider_config: ProviderConfig,
    storage_config: StorageConfig,
) -> SyncConfig:
    return SyncConfig(
        provider=token_provider_config,
        sync=TripSyncConfig(device_ids=['dev-1', 'dev-2']),
        storage=storage_config,
    )


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest.fixture
def store(storage_config: StorageConfig) -> Iterator[SyncCheckpointStore]:
    checkpoint_store = SyncCheckpointStore.from_config(storage_config)
    yield checkpoint_store
    checkpoint_store.close()


@pytest.fixture
def position_history(storage_config: StorageConfig) -> PositionHistoryLog:
    return PositionHistoryLog.from_config(storage_config)


@pytest.fixture
def latest_positions(storage_config: StorageConfig) -> LatestPositionStore:
    return LatestPositionStore.from_config(storage_config)


# =============================================================================
# Factories
# =============================================================================


def make_position(
    device_id: str = 'dev-1',
    timestamp: datetime = START_TIME,
    latitude: float | None = 22.5431,
    longitude: float | None = 114.0579,
    speed_kmh: float | None = 0.0,
    ignition_on: bool = False,
) -> NormalizedPosition:
    """Build a NormalizedPosition with sensible defaults."""
    return NormalizedPosition(
        device_id=device_id,
        timestamp=timestamp,
        latitude=latitude,
        longitude=longitude,
        speed_kmh=speed_kmh,
        ignition_on=ignition_on,
        ignition_confidence=0.8 if ignition_on else 0.0,
        detection_method=(
            DetectionMethod.MULTI_SIGNAL if ignition_on else DetectionMethod.UNKNOWN
        ),
        data_quality=DataQuality.HIGH if ignition_on else DataQuality.MEDIUM,
    )


def make_trip(
    device_id: str = 'dev-1',
    start_time: datetime = START_TIME,
    end_time: datetime | None = None,
    start: tuple[float, float] | None = (22.5431, 114.0579),
    end: tuple[float, float] | None = (22.6000, 114.1000),
    distance_km: float | None = 12.5,
) -> Trip:
    """Build a Trip; pass start/end=None for unavailable endpoints."""
    return Trip(
        device_id=device_id,
        start_time=start_time,
        end_time=end_time or start_time + timedelta(hours=1),
        start_latitude=start[0] if start else None,
        start_longitude=start[1] if start else None,
        end_latitude=end[0] if end else None,
        end_longitude=end[1] if end else None,
        distance_km=distance_km,
        distance_source=DistanceSource.PROVIDER if distance_km is not None else None,
    )


def make_http_response(
    json_body: Any = None,
    status_code: int = 200,
    text: str | None = None,
) -> Mock:
    """Mock httpx.Response carrying a JSON body."""
    response = Mock(spec=httpx.Response)
    response.status_code = status_code
    response.is_success = 200 <= status_code < 300  # noqa: PLR2004
    response.json.return_value = json_body
    response.text = text if text is not None else str(json_body)
    return response


@pytest.fixture
def http_response_factory() -> Callable[..., Mock]:
    return make_http_response


@pytest.fixture
def position_factory() -> Callable[..., NormalizedPosition]:
    return make_position


@pytest.fixture
def trip_factory() -> Callable[..., Trip]:
    return make_trip
