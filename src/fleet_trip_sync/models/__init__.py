# fleet_trip_sync/models/__init__.py

from fleet_trip_sync.models.provider_payloads import (
    ProviderResponse,
    ProviderSession,
    RawTelemetryRecord,
    RawTripRecord,
)
from fleet_trip_sync.models.sync_state import (
    CheckpointStatus,
    DeviceOutcome,
    DeviceSyncResult,
    PollReport,
    RateLimitState,
    SyncCheckpoint,
    SyncRunReport,
)
from fleet_trip_sync.models.telemetry import (
    IGNITION_ON_THRESHOLD,
    DataQuality,
    DetectionMethod,
    IgnitionEvidence,
    NormalizedPosition,
)
from fleet_trip_sync.models.trips import DistanceSource, StoredTrip, Trip

__all__: list[str] = [
    'IGNITION_ON_THRESHOLD',
    'CheckpointStatus',
    'DataQuality',
    'DetectionMethod',
    'DeviceOutcome',
    'DeviceSyncResult',
    'DistanceSource',
    'IgnitionEvidence',
    'NormalizedPosition',
    'PollReport',
    'ProviderResponse',
    'ProviderSession',
    'RateLimitState',
    'RawTelemetryRecord',
    'RawTripRecord',
    'StoredTrip',
    'SyncCheckpoint',
    'SyncRunReport',
    'Trip',
]
