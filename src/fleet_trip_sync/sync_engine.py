# fleet_trip_sync/sync_engine.py
"""
Trip synchronization engine.

Fetches trip lists per device from the provider, parses them into Trips,
backfills missing endpoints from the position history log and inserts them
into the trip log without creating duplicates.

Usage:
------
    from fleet_trip_sync.sync_engine import TripSyncEngine

    # One-liner for a scheduled job
    with TripSyncEngine.from_config_file('config/sync_config.yaml') as engine:
        report = engine.run()

Design Decisions:
-----------------
- Checkpoints: each device has a durable cursor. No cursor means first sync
  over a fixed lookback window (default 30 days). Otherwise the window is
  [cursor, run start]. On success the cursor advances to the run start; on
  failure it stays put, so the same window is fetched again next run.

- Sequential devices: the provider's rate budget is global, so devices are
  processed one at a time with a small pause in between, and only a bounded
  batch per run. Devices never synced come first, then the least recently
  synced, so a large fleet is swept across several runs.

- Stale claims: a device left `processing` by an interrupted run is resumed
  once the claim is older than `stale_processing_minutes`. Until then another
  run is assumed to own it and it is skipped.

- Failure isolation: ProviderError and an unparseable trip list fail only the
  device. RateLimited stops the run immediately; devices not yet reached keep
  their checkpoints untouched. StoreError propagates: without the store
  coordination cannot be trusted.

- Deduplication: a candidate matches a stored trip of the same device when
  their starts are within the time tolerance and their distances within the
  relative tolerance (or, when either distance is unknown, their ends are
  within the time tolerance). Matches are never inserted; they may only fill
  endpoints the stored row is missing. The store's UNIQUE constraint catches
  exact duplicates inserted by concurrent runs.
"""

import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Any, Self

import pandas as pd

from fleet_trip_sync.client import RateLimitedProviderClient
from fleet_trip_sync.common import setup_logger
from fleet_trip_sync.config import SyncConfig, load_config
from fleet_trip_sync.errors import ProviderError, RateLimited
from fleet_trip_sync.models import (
    CheckpointStatus,
    DeviceOutcome,
    DeviceSyncResult,
    StoredTrip,
    SyncCheckpoint,
    SyncRunReport,
    Trip,
)
from fleet_trip_sync.position_log import PositionHistoryLog, find_nearest_fix
from fleet_trip_sync.rate_limiter import Clock, SystemClock
from fleet_trip_sync.schema import trips_to_dataframe
from fleet_trip_sync.store import SyncCheckpointStore
from fleet_trip_sync.trip_parser import TripParser

__all__: list[str] = [
    'TripSyncEngine',
    'backfill_trip_endpoints',
    'trips_match',
]

logger: logging.Logger = logging.getLogger(__name__)

_NEVER: datetime = datetime.min.replace(tzinfo=UTC)


# =============================================================================
# Matching and Backfill
# =============================================================================


def trips_match(
    candidate: Trip,
    existing: Trip,
    time_tolerance: timedelta,
    distance_tolerance: float,
) -> bool:
    """
    Whether two trips describe the same drive.

    Same device and starts within time_tolerance. Then, when both distances
    are known, they must differ by at most distance_tolerance of the larger
    one; otherwise the ends must also be within time_tolerance.
    """
    if candidate.device_id != existing.device_id:
        return False
    if abs(candidate.start_time - existing.start_time) > time_tolerance:
        return False

    if candidate.distance_km is not None and existing.distance_km is not None:
        larger: float = max(candidate.distance_km, existing.distance_km)
        if larger == 0.0:
            return True
        return abs(candidate.distance_km - existing.distance_km) <= (
            distance_tolerance * larger
        )

    return abs(candidate.end_time - existing.end_time) <= time_tolerance


def backfill_trip_endpoints(
    trip: Trip,
    samples: pd.DataFrame,
    window: timedelta,
) -> tuple[Trip, int]:
    """
    Fill unavailable endpoints from the nearest position sample in time.

    Args:
        trip: Trip possibly missing start and/or end coordinates.
        samples: Position history rows for the trip's device.
        window: Maximum distance in time between endpoint and sample.

    Returns:
        (trip, endpoints_filled). Endpoints with no sample inside the window
        stay unavailable.
    """
    updates: dict[str, float] = {}

    if not trip.has_start:
        start_fix: tuple[float, float] | None = find_nearest_fix(
            samples, trip.start_time, window
        )
        if start_fix is not None:
            updates['start_latitude'], updates['start_longitude'] = start_fix

    if not trip.has_end:
        end_fix: tuple[float, float] | None = find_nearest_fix(
            samples, trip.end_time, window
        )
        if end_fix is not None:
            updates['end_latitude'], updates['end_longitude'] = end_fix

    if not updates:
        return trip, 0

    filled: int = len(updates) // 2
    return Trip.model_validate(trip.model_dump() | updates), filled


def _missing_endpoints_from(
    stored: Trip, candidate: Trip
) -> tuple[tuple[float, float] | None, tuple[float, float] | None]:
    """Endpoints the candidate knows and the stored trip does not."""
    start: tuple[float, float] | None = None
    end: tuple[float, float] | None = None

    if (
        not stored.has_start
        and candidate.start_latitude is not None
        and candidate.start_longitude is not None
    ):
        start = (candidate.start_latitude, candidate.start_longitude)
    if (
        not stored.has_end
        and candidate.end_latitude is not None
        and candidate.end_longitude is not None
    ):
        end = (candidate.end_latitude, candidate.end_longitude)

    return start, end


# =============================================================================
# Engine
# =============================================================================


class TripSyncEngine:
    """
    Incremental, duplicate-safe trip synchronization for a device fleet.

    Attributes:
        config: Loaded configuration (read-only).
        store: Durable checkpoint/trip store.

    Example:
        >>> engine = TripSyncEngine(config, store, client, history)
        >>> report = engine.run()
        >>> report.trips_inserted
        12
    """

    def __init__(
        self,
        config: SyncConfig,
        store: SyncCheckpointStore,
        client: RateLimitedProviderClient,
        position_log: PositionHistoryLog,
        clock: Clock | None = None,
    ) -> None:
        self._config: SyncConfig = config
        self._store: SyncCheckpointStore = store
        self._client: RateLimitedProviderClient = client
        self._position_log: PositionHistoryLog = position_log
        self._clock: Clock = clock if clock is not None else SystemClock()
        self._parser: TripParser = TripParser(
            client.local_timezone, config.normalizer
        )

        sync_config = config.sync
        self._time_tolerance: timedelta = timedelta(
            seconds=sync_config.dedup_time_tolerance_seconds
        )
        self._backfill_window: timedelta = timedelta(
            minutes=sync_config.backfill_window_minutes
        )

        logger.info(
            'Initialized TripSyncEngine: %d configured devices, %d per run',
            len(sync_config.device_ids),
            sync_config.devices_per_run,
        )

    @classmethod
    def from_config(cls, config: SyncConfig, clock: Clock | None = None) -> Self:
        """Build the engine and all of its collaborators from configuration."""
        store: SyncCheckpointStore = SyncCheckpointStore.from_config(config.storage)
        client: RateLimitedProviderClient = RateLimitedProviderClient.from_config(
            config, store, clock=clock
        )
        position_log: PositionHistoryLog = PositionHistoryLog.from_config(
            config.storage
        )
        return cls(config, store, client, position_log, clock=clock)

    @classmethod
    def from_config_file(cls, config_path: Path | str) -> Self:
        """
        Load configuration, configure logging and build the engine.

        Raises:
            FileNotFoundError: If the config file does not exist.
            ValueError: If the config file fails validation.
            StoreError: If the store cannot be initialized.
        """
        config: SyncConfig = load_config(config_path)
        setup_logger(config=config.logging)
        logger.info('Initializing TripSyncEngine from config: %s', config_path)
        return cls.from_config(config)

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def store(self) -> SyncCheckpointStore:
        return self._store

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        self._client.close()
        self._store.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        device_ids: Sequence[str] | None = None,
        force_full_sync: bool = False,
    ) -> SyncRunReport:
        """
        Execute one sync run.

        Args:
            device_ids: Devices to consider instead of the configured fleet.
                Still capped at `devices_per_run`.
            force_full_sync: Refetch the whole lookback window even for
                devices with a cursor. Dedup keeps this idempotent.

        Returns:
            Per-device results. A run stopped by the provider's rate limit
            returns normally with `rate_limited=True`.

        Raises:
            StoreError: If the durable store fails. The run stops at once.
        """
        run_started_at: datetime = self._clock.now()
        report: SyncRunReport = SyncRunReport(run_started_at=run_started_at)

        candidates: list[str] = list(
            device_ids if device_ids is not None else self._config.sync.device_ids
        )
        if not candidates:
            logger.warning('No devices configured; nothing to sync')
            return report

        selected, skipped = self._select_devices(candidates, run_started_at)
        report.skipped_devices = skipped

        logger.info(
            'Starting trip sync run at %s: %d devices selected, %d skipped%s',
            run_started_at.isoformat(),
            len(selected),
            len(skipped),
            ' (full resync)' if force_full_sync else '',
        )

        for index, device_id in enumerate(selected):
            if index > 0 and self._config.sync.inter_device_delay_seconds > 0:
                self._clock.sleep(self._config.sync.inter_device_delay_seconds)

            try:
                result: DeviceSyncResult = self._sync_device(
                    device_id, run_started_at, force_full_sync
                )
            except RateLimited as error:
                self._store.mark_failed(device_id, str(error), self._clock.now())
                report.devices.append(
                    DeviceSyncResult(
                        device_id=device_id,
                        outcome=DeviceOutcome.RATE_LIMITED,
                        error=str(error),
                    )
                )
                report.rate_limited = True
                report.retry_after_seconds = error.retry_after_seconds
                logger.warning(
                    'Rate limited while syncing %s; stopping run with %d devices '
                    'unprocessed: %s',
                    device_id,
                    len(selected) - index - 1,
                    error,
                )
                break

            report.devices.append(result)

        self._log_run_summary(report)
        return report

    def _select_devices(
        self,
        candidates: list[str],
        now: datetime,
    ) -> tuple[list[str], list[str]]:
        """
        Pick this run's devices.

        Returns:
            (selected, skipped). Skipped devices are held by another run.
        """
        checkpoints: dict[str, SyncCheckpoint] = self._store.list_checkpoints(
            candidates
        )
        stale_after: timedelta = timedelta(
            minutes=self._config.sync.stale_processing_minutes
        )

        eligible: list[str] = []
        skipped: list[str] = []
        for device_id in candidates:
            checkpoint: SyncCheckpoint | None = checkpoints.get(device_id)
            if (
                checkpoint is not None
                and checkpoint.status is CheckpointStatus.PROCESSING
            ):
                if not checkpoint.is_stale_processing(now, stale_after):
                    skipped.append(device_id)
                    logger.info('Device %s is being synced by another run', device_id)
                    continue
                logger.warning(
                    'Resuming device %s left processing since %s',
                    device_id,
                    checkpoint.updated_at.isoformat() if checkpoint.updated_at else '?',
                )
            eligible.append(device_id)

        def sweep_order(device_id: str) -> tuple[bool, datetime]:
            checkpoint = checkpoints.get(device_id)
            if checkpoint is None:
                return False, _NEVER
            return True, checkpoint.last_sync_at or _NEVER

        eligible.sort(key=sweep_order)
        return eligible[: self._config.sync.devices_per_run], skipped

    # -------------------------------------------------------------------------
    # Per-Device Sync
    # -------------------------------------------------------------------------

    def _sync_device(
        self,
        device_id: str,
        run_started_at: datetime,
        force_full_sync: bool,
    ) -> DeviceSyncResult:
        """Sync one device. RateLimited and StoreError propagate."""
        checkpoint: SyncCheckpoint | None = self._store.get_checkpoint(device_id)
        lookback_start: datetime = run_started_at - timedelta(
            days=self._config.sync.first_sync_lookback_days
        )

        # A device stays on its first sync until one run has succeeded
        first_sync: bool = checkpoint is None or checkpoint.last_sync_at is None
        if force_full_sync or checkpoint is None or checkpoint.cursor is None:
            window_start: datetime = lookback_start
        else:
            window_start = min(checkpoint.cursor, run_started_at)

        self._store.mark_processing(
            device_id, now=run_started_at, initial_cursor=window_start
        )
        result: DeviceSyncResult = DeviceSyncResult(
            device_id=device_id,
            outcome=DeviceOutcome.SYNCED,
            first_sync=first_sync,
            window_start=window_start,
            window_end=run_started_at,
        )

        logger.info(
            '%s sync for device %s: %s to %s',
            'First' if first_sync else 'Incremental',
            device_id,
            window_start.isoformat(),
            run_started_at.isoformat(),
        )

        try:
            raw_trips: list[dict[str, Any]] = self._client.query_trips(
                device_id, window_start, run_started_at
            )
        except ProviderError as error:
            return self._fail_device(result, f'Provider error: {error}')

        trips, rejected = self._parser.parse_many(raw_trips, device_id)
        result.trips_fetched = len(raw_trips)
        result.invalid_records = len(rejected)

        for rejection in rejected:
            logger.warning('Dropping trip record for device %s: %s', device_id, rejection)

        if raw_trips and not trips:
            return self._fail_device(
                result,
                f'Trip list unparseable: all {len(raw_trips)} records rejected',
            )

        trips, result.endpoints_backfilled = self._backfill(device_id, trips)

        for trip in trips:
            if self._store_trip(trip, synced_at=run_started_at):
                result.trips_inserted += 1
            else:
                result.duplicates_skipped += 1

        self._store.mark_succeeded(
            device_id,
            cursor=run_started_at,
            now=self._clock.now(),
            trips_inserted=result.trips_inserted,
        )

        logger.info(
            'Device %s synced: %d fetched, %d inserted, %d duplicates, '
            '%d invalid, %d endpoints backfilled',
            device_id,
            result.trips_fetched,
            result.trips_inserted,
            result.duplicates_skipped,
            result.invalid_records,
            result.endpoints_backfilled,
        )
        return result

    def _fail_device(self, result: DeviceSyncResult, message: str) -> DeviceSyncResult:
        self._store.mark_failed(result.device_id, message, self._clock.now())
        logger.warning('Skipping device %s this run: %s', result.device_id, message)
        result.outcome = DeviceOutcome.FAILED
        result.error = message
        return result

    def _backfill(self, device_id: str, trips: list[Trip]) -> tuple[list[Trip], int]:
        """Backfill missing endpoints for a device's freshly parsed trips."""
        needing: list[Trip] = [t for t in trips if not (t.has_start and t.has_end)]
        if not needing:
            return trips, 0

        samples: pd.DataFrame = self._position_log.load_range(
            min(t.start_time for t in needing) - self._backfill_window,
            max(t.end_time for t in needing) + self._backfill_window,
            [device_id],
        )

        backfilled: list[Trip] = []
        total_filled: int = 0
        for trip in trips:
            if trip.has_start and trip.has_end:
                backfilled.append(trip)
                continue
            updated, filled = backfill_trip_endpoints(
                trip, samples, self._backfill_window
            )
            backfilled.append(updated)
            total_filled += filled

        if total_filled:
            logger.debug(
                'Backfilled %d trip endpoints for device %s', total_filled, device_id
            )
        return backfilled, total_filled

    def _find_match(self, trip: Trip) -> StoredTrip | None:
        nearby: list[StoredTrip] = self._store.find_trips_starting_between(
            trip.device_id,
            trip.start_time - self._time_tolerance,
            trip.start_time + self._time_tolerance,
        )
        for stored in nearby:
            if trips_match(
                trip,
                stored.trip,
                self._time_tolerance,
                self._config.sync.dedup_distance_tolerance,
            ):
                return stored
        return None

    def _store_trip(self, trip: Trip, synced_at: datetime) -> bool:
        """Insert trip unless it duplicates a stored one. True if inserted."""
        match: StoredTrip | None = self._find_match(trip)
        if match is not None:
            start, end = _missing_endpoints_from(match.trip, trip)
            if (start is not None or end is not None) and self._store.fill_trip_endpoints(
                match.trip_id, start=start, end=end
            ):
                logger.debug('Filled endpoints of stored trip %d', match.trip_id)
            logger.debug(
                'Trip for device %s at %s matches stored trip %d',
                trip.device_id,
                trip.start_time.isoformat(),
                match.trip_id,
            )
            return False

        return self._store.insert_trip(trip, synced_at) is not None

    def _log_run_summary(self, report: SyncRunReport) -> None:
        run_duration: timedelta = self._clock.now() - report.run_started_at
        logger.info(
            'Trip sync run complete: %d devices processed, %d failed, '
            '%d trips inserted%s. Duration: %s',
            len(report.devices),
            len(report.failed_devices),
            report.trips_inserted,
            ', stopped by rate limit' if report.rate_limited else '',
            run_duration,
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def backfill_trip_coordinates(
        self,
        device_id: str | None = None,
        limit: int | None = None,
    ) -> int:
        """
        Retry endpoint backfill for stored trips still missing endpoints.

        Useful once the position history has caught up with older trips.

        Returns:
            Number of trips that gained at least one endpoint.
        """
        pending: list[StoredTrip] = self._store.list_trips_missing_endpoints(
            device_id, limit
        )
        updated_trips: int = 0

        for stored in pending:
            trip: Trip = stored.trip
            start: tuple[float, float] | None = None
            end: tuple[float, float] | None = None
            if not trip.has_start:
                start = self._position_log.nearest_fix(
                    trip.device_id, trip.start_time, self._backfill_window
                )
            if not trip.has_end:
                end = self._position_log.nearest_fix(
                    trip.device_id, trip.end_time, self._backfill_window
                )
            if (start is not None or end is not None) and self._store.fill_trip_endpoints(
                stored.trip_id, start=start, end=end
            ):
                updated_trips += 1

        logger.info(
            'Coordinate backfill: %d of %d incomplete trips updated',
            updated_trips,
            len(pending),
        )
        return updated_trips

    def find_duplicate_trips(
        self, device_id: str | None = None
    ) -> list[tuple[StoredTrip, StoredTrip]]:
        """
        Pairs (kept, duplicate) of stored trips that match each other.

        The earliest-starting trip of each matching group is kept.
        """
        duplicates: list[tuple[StoredTrip, StoredTrip]] = []
        kept_by_device: dict[str, list[StoredTrip]] = {}

        for stored in self._store.list_trips(device_id=device_id):
            kept: list[StoredTrip] = kept_by_device.setdefault(stored.trip.device_id, [])
            original: StoredTrip | None = next(
                (
                    candidate
                    for candidate in reversed(kept)
                    if trips_match(
                        stored.trip,
                        candidate.trip,
                        self._time_tolerance,
                        self._config.sync.dedup_distance_tolerance,
                    )
                ),
                None,
            )
            if original is None:
                kept.append(stored)
            else:
                duplicates.append((original, stored))

        return duplicates

    def delete_duplicate_trips(self, device_id: str | None = None) -> int:
        """
        Delete stored duplicates, moving their endpoints to the kept trip first.

        The only operation that removes trip rows.

        Returns:
            Number of rows deleted.
        """
        pairs: list[tuple[StoredTrip, StoredTrip]] = self.find_duplicate_trips(device_id)
        if not pairs:
            logger.info('No duplicate trips found')
            return 0

        for kept, duplicate in pairs:
            start, end = _missing_endpoints_from(kept.trip, duplicate.trip)
            if start is not None or end is not None:
                self._store.fill_trip_endpoints(kept.trip_id, start=start, end=end)

        return self._store.delete_trips([duplicate.trip_id for _, duplicate in pairs])

    # -------------------------------------------------------------------------
    # Read Interface
    # -------------------------------------------------------------------------

    def trips_dataframe(
        self,
        device_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> pd.DataFrame:
        """Trip log as a schema-conformant DataFrame."""
        return trips_to_dataframe(self._store.list_trips(device_id, start, end))
