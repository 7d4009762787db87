# fleet_trip_sync/models/sync_state.py
"""
Coordination state and run reports.

SyncCheckpoint and RateLimitState are the two pieces of state every stateless
invocation shares through the durable store. SyncRunReport and PollReport are
what a scheduled run hands back to its caller.
"""

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

__all__: list[str] = [
    'CheckpointStatus',
    'DeviceOutcome',
    'DeviceSyncResult',
    'PollReport',
    'RateLimitState',
    'SyncCheckpoint',
    'SyncRunReport',
]


class CheckpointStatus(str, Enum):
    """Per-device sync state machine: idle -> processing -> {idle | error}."""

    IDLE = 'idle'
    PROCESSING = 'processing'
    ERROR = 'error'


class SyncCheckpoint(BaseModel):
    """
    Durable per-device sync cursor.

    Attributes:
        device_id: Device this checkpoint belongs to.
        cursor: Everything before this instant has been fetched.
        status: Current state machine position.
        last_error: Message from the most recent failure, cleared on success.
        last_sync_at: When the last successful sync finished.
        updated_at: When the row was last written.
        trips_synced: Running total of trips inserted for this device.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str
    cursor: datetime | None = None
    status: CheckpointStatus = CheckpointStatus.IDLE
    last_error: str | None = None
    last_sync_at: datetime | None = None
    updated_at: datetime | None = None
    trips_synced: int = 0

    def is_stale_processing(self, now: datetime, stale_after: timedelta) -> bool:
        """True when a `processing` mark is old enough to be abandoned."""
        if self.status is not CheckpointStatus.PROCESSING:
            return False
        if self.updated_at is None:
            return True
        return now - self.updated_at >= stale_after


class RateLimitState(BaseModel):
    """
    Global throttle state shared by all invocations.

    Timestamps are POSIX seconds so the JSON stays trivially comparable
    across processes.

    Attributes:
        call_timestamps: Start times of recent calls, oldest first.
        backoff_until: While in the future, no invocation may call the
            provider.
    """

    model_config = ConfigDict(extra='forbid')

    call_timestamps: list[float] = Field(default_factory=list)
    backoff_until: float | None = None


# =============================================================================
# Run Reports
# =============================================================================


class DeviceOutcome(str, Enum):
    SYNCED = 'synced'
    FAILED = 'failed'
    RATE_LIMITED = 'rate_limited'


class DeviceSyncResult(BaseModel):
    """What happened to one device during one run."""

    model_config = ConfigDict(extra='forbid')

    device_id: str
    outcome: DeviceOutcome
    first_sync: bool = False
    window_start: datetime | None = None
    window_end: datetime | None = None
    trips_fetched: int = 0
    trips_inserted: int = 0
    duplicates_skipped: int = 0
    invalid_records: int = 0
    endpoints_backfilled: int = 0
    error: str | None = None


class SyncRunReport(BaseModel):
    """
    Summary of one TripSyncEngine run.

    Attributes:
        run_started_at: Run start time; successful cursors advance to it.
        devices: Per-device results in processing order.
        skipped_devices: Devices passed over because another run holds them.
        rate_limited: True when the run stopped early on RateLimited.
        retry_after_seconds: Suggested wait when rate_limited.
    """

    model_config = ConfigDict(extra='forbid')

    run_started_at: datetime
    devices: list[DeviceSyncResult] = Field(default_factory=list)
    skipped_devices: list[str] = Field(default_factory=list)
    rate_limited: bool = False
    retry_after_seconds: float = 0.0

    @property
    def trips_inserted(self) -> int:
        return sum(result.trips_inserted for result in self.devices)

    @property
    def failed_devices(self) -> list[str]:
        return [
            result.device_id
            for result in self.devices
            if result.outcome is not DeviceOutcome.SYNCED
        ]


class PollReport(BaseModel):
    """Summary of one live-position poll."""

    model_config = ConfigDict(extra='forbid')

    polled_at: datetime
    records_received: int = 0
    positions_normalized: int = 0
    records_rejected: int = 0
    history_rows_written: int = 0
    low_quality: int = 0
