# fleet_trip_sync/position_poller.py
"""
Live-position poller.

Same pattern as the trip sync engine: one short-lived invocation per
schedule tick, all provider traffic through the shared throttle, all state in
the durable store. Each poll asks the provider for the fleet's most recent
positions, normalizes them, appends them to the position history log and
refreshes the latest-position projection.

The provider answers `lastposition` with a `lastquerypositiontime` cursor;
passing it back on the next poll returns only positions that changed since.
The cursor is kept in the store so consecutive invocations pick up where the
previous one stopped.

Failure semantics follow the engine: RateLimited and ProviderError propagate
to the scheduler (there is only one call per poll, so nothing to isolate),
invalid records are dropped with a warning, and StoreError is fatal.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from types import TracebackType
from typing import Any, Final, Self

from fleet_trip_sync.client import RateLimitedProviderClient
from fleet_trip_sync.config import SyncConfig
from fleet_trip_sync.errors import RecordValidationError
from fleet_trip_sync.models import (
    DataQuality,
    NormalizedPosition,
    PollReport,
    ProviderResponse,
)
from fleet_trip_sync.normalizer import TelemetryNormalizer
from fleet_trip_sync.position_log import LatestPositionStore, PositionHistoryLog
from fleet_trip_sync.rate_limiter import Clock, SystemClock
from fleet_trip_sync.store import SyncCheckpointStore

__all__: list[str] = ['POSITION_CURSOR_KEY', 'PositionPoller']

logger: logging.Logger = logging.getLogger(__name__)

# app_state key for the provider's lastquerypositiontime cursor
POSITION_CURSOR_KEY: Final[str] = 'last_query_position_time'


class PositionPoller:
    """
    Polls the provider for current positions of the configured fleet.

    Example:
        >>> poller = PositionPoller(config, client, store, history, latest)
        >>> report = poller.poll()
        >>> report.positions_normalized
        42
    """

    def __init__(
        self,
        config: SyncConfig,
        client: RateLimitedProviderClient,
        store: SyncCheckpointStore,
        history: PositionHistoryLog,
        latest: LatestPositionStore,
        clock: Clock | None = None,
    ) -> None:
        self._config: SyncConfig = config
        self._client: RateLimitedProviderClient = client
        self._store: SyncCheckpointStore = store
        self._history: PositionHistoryLog = history
        self._latest: LatestPositionStore = latest
        self._clock: Clock = clock if clock is not None else SystemClock()
        self._normalizer: TelemetryNormalizer = TelemetryNormalizer(
            config.normalizer,
            utc_offset_hours=config.provider.utc_offset_hours,
        )

    @classmethod
    def from_config(cls, config: SyncConfig, clock: Clock | None = None) -> Self:
        store: SyncCheckpointStore = SyncCheckpointStore.from_config(config.storage)
        return cls(
            config,
            RateLimitedProviderClient.from_config(config, store, clock=clock),
            store,
            PositionHistoryLog.from_config(config.storage),
            LatestPositionStore.from_config(config.storage),
            clock=clock,
        )

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

    def _load_cursor(self) -> int:
        raw_cursor: Any = self._store.get_state(POSITION_CURSOR_KEY)
        try:
            return int(raw_cursor or 0)
        except (TypeError, ValueError):
            logger.warning('Discarding unreadable position cursor: %r', raw_cursor)
            return 0

    def reset_cursor(self) -> None:
        """Make the next poll request every device's latest position again."""
        self._store.delete_state(POSITION_CURSOR_KEY)

    def poll(self, device_ids: Sequence[str] | None = None) -> PollReport:
        """
        Fetch, normalize and persist the latest positions.

        Args:
            device_ids: Devices to poll instead of the configured fleet.

        Returns:
            Counts for this poll.

        Raises:
            RateLimited: If the provider rate-limited the poll.
            ProviderError: If the provider call failed.
            StoreError: If the store or a Parquet output cannot be written.
        """
        polled_at: datetime = self._clock.now()
        report: PollReport = PollReport(polled_at=polled_at)

        targets: list[str] = list(
            device_ids if device_ids is not None else self._config.sync.device_ids
        )
        if not targets:
            logger.warning('No devices configured; nothing to poll')
            return report

        cursor: int = self._load_cursor()
        response: ProviderResponse = self._client.last_positions(targets, cursor)
        records: list[dict[str, Any]] = response.records
        report.records_received = len(records)

        positions: list[NormalizedPosition] = []
        for record in records:
            try:
                position: NormalizedPosition = self._normalizer.normalize(record)
            except RecordValidationError as error:
                report.records_rejected += 1
                logger.warning('Dropping position record: %s', error)
                continue

            for note in position.diagnostics:
                logger.info('Device %s: %s', position.device_id, note)
            if position.data_quality is DataQuality.LOW:
                report.low_quality += 1
            positions.append(position)

        report.positions_normalized = len(positions)

        if positions:
            report.history_rows_written = self._history.append(positions)
            self._latest.upsert(positions)

        next_cursor: Any = response.body.get('lastquerypositiontime')
        if next_cursor is not None:
            try:
                self._store.set_state(POSITION_CURSOR_KEY, int(next_cursor), polled_at)
            except (TypeError, ValueError):
                logger.warning('Provider returned unreadable cursor %r', next_cursor)

        logger.info(
            'Position poll complete: %d received, %d normalized, %d rejected, '
            '%d new history rows, %d low quality',
            report.records_received,
            report.positions_normalized,
            report.records_rejected,
            report.history_rows_written,
            report.low_quality,
        )
        return report
