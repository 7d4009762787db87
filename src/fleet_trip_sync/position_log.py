# fleet_trip_sync/position_log.py
"""
Position history log and latest-position projection (Parquet).

Two read-only-to-consumers outputs of the normalizer live here:

- PositionHistoryLog: append-only, date-partitioned Parquet directory
  (Hive-style `date=YYYY-MM-DD/data.parquet`, by UTC date). Rows are never
  updated in place; re-appending a sample already present for the same
  (device_id, timestamp) is a no-op. The trip sync engine reads it to
  backfill missing trip endpoints.
- LatestPositionStore: a single Parquet file holding exactly one row per
  device, the most recent sample seen.

Design Philosophy:
------------------
- Each write is atomic at file level (temp file + rename), so a crash leaves
  either the old or the new partition, never a torn one.
- Reads of a missing partition return None (sparse data is expected); reads of
  a corrupt partition are logged and skipped.
- A path that is not a regular file, or a file without the position columns,
  raises StoreError, as do write failures.

Concurrency:
------------
Single writer: only the live-position poller writes these files. Concurrent
writers to the same partition would lose appends.

Usage:
------
    history = PositionHistoryLog(Path('data/position_history'))
    history.append(positions)
    fix = history.nearest_fix('358899051234567', at=trip_start, window=timedelta(minutes=15))
"""

import logging
import tempfile
from collections.abc import Iterable, Sequence
from contextlib import suppress
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Final, cast

import pandas as pd
from pyarrow import (
    ArrowInvalid as _ArrowInvalid,  # pyright: ignore[reportUnknownVariableType]
    ArrowIOError as _ArrowIOError,  # pyright: ignore[reportUnknownVariableType]
)

from fleet_trip_sync.config import CompressionType, StorageConfig
from fleet_trip_sync.errors import StoreError
from fleet_trip_sync.models import NormalizedPosition
from fleet_trip_sync.schema import (
    POSITION_DEDUP_COLUMNS,
    POSITION_SORT_COLUMNS,
    enforce_position_schema,
    positions_to_dataframe,
)

# PyArrow exception types for except clauses; the stubs are incomplete.
ArrowInvalid: type[Exception] = cast(type[Exception], _ArrowInvalid)
ArrowIOError: type[Exception] = cast(type[Exception], _ArrowIOError)

__all__: list[str] = [
    'LatestPositionStore',
    'PositionHistoryLog',
    'find_nearest_fix',
]

logger: logging.Logger = logging.getLogger(__name__)

PARTITION_DIR_FORMAT: Final[str] = 'date={date}'
PARTITION_FILE_NAME: Final[str] = 'data.parquet'


# =============================================================================
# Parquet Helpers
# =============================================================================


def _read_parquet(file_path: Path) -> pd.DataFrame | None:
    """
    Read a Parquet file; None when missing or unreadable.

    Raises:
        StoreError: If the path exists but is not a regular file.
    """
    if not file_path.exists():
        return None
    if not file_path.is_file():
        raise StoreError(f'Expected a Parquet file at {file_path}, found a directory')

    try:
        dataframe: pd.DataFrame = pd.read_parquet(file_path)
        logger.debug('Loaded %d records from %r', len(dataframe), file_path)
        return dataframe
    except (OSError, ArrowInvalid, ArrowIOError) as read_error:
        logger.exception('Failed to read Parquet file %r: %s', file_path, read_error)
        return None


def _write_parquet_atomically(
    dataframe: pd.DataFrame,
    file_path: Path,
    compression: CompressionType,
) -> None:
    """
    Write a DataFrame via temp file + rename.

    Raises:
        StoreError: On filesystem or serialization failure.
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path: Path | None = None

    try:
        with tempfile.NamedTemporaryFile(
            mode='wb',
            suffix='.parquet.tmp',
            dir=file_path.parent,
            delete=False,
        ) as temp_file:
            temp_path = Path(temp_file.name)

        dataframe.to_parquet(temp_path, index=False, compression=compression)
        temp_path.replace(file_path)

    except (OSError, ArrowInvalid, ArrowIOError) as write_error:
        logger.exception(
            'Failed to write %d records to %r: %s',
            len(dataframe),
            file_path,
            write_error,
        )
        if temp_path is not None and temp_path.exists():
            with suppress(OSError):
                temp_path.unlink()
        raise StoreError(f'Failed to write {file_path}: {write_error}') from write_error


def _read_positions(file_path: Path) -> pd.DataFrame | None:
    """
    Read a position file and enforce the position schema.

    Raises:
        StoreError: If the file is not a position table.
    """
    dataframe: pd.DataFrame | None = _read_parquet(file_path)
    if dataframe is None:
        return None

    try:
        return enforce_position_schema(dataframe)
    except (ValueError, TypeError) as schema_error:
        logger.error(
            'Position file %r has an unexpected layout: %s', file_path, schema_error
        )
        raise StoreError(
            f'{file_path} does not hold position data: {schema_error}'
        ) from schema_error


def find_nearest_fix(
    samples: pd.DataFrame,
    at: datetime,
    window: timedelta,
) -> tuple[float, float] | None:
    """
    Coordinates of the sample closest in time to `at` within +/- window.

    Only samples with a real fix are considered. Ties go to the earlier
    sample. Returns None when nothing qualifies.
    """
    if samples.empty:
        return None

    with_fix: pd.DataFrame = samples[
        samples['latitude'].notna() & samples['longitude'].notna()
    ]
    if with_fix.empty:
        return None

    target: pd.Timestamp = pd.Timestamp(at)
    distance: pd.Series = (with_fix['timestamp'] - target).abs()
    in_window: pd.Series = distance <= pd.Timedelta(window)
    if not in_window.any():
        return None

    candidates: pd.DataFrame = with_fix[in_window].assign(_distance=distance[in_window])
    candidates = candidates.sort_values(['_distance', 'timestamp'], kind='stable')
    nearest: pd.Series = candidates.iloc[0]
    return float(nearest['latitude']), float(nearest['longitude'])


# =============================================================================
# Position History
# =============================================================================


class PositionHistoryLog:
    """
    Append-only, date-partitioned normalized position history.

    Attributes:
        base_path: Root directory containing the partitions (read-only).
    """

    def __init__(
        self,
        base_path: Path,
        compression: CompressionType = 'snappy',
    ) -> None:
        self._base_path: Path = base_path
        self._compression: CompressionType = compression
        self._base_path.mkdir(parents=True, exist_ok=True)

        logger.info(
            'Initialized PositionHistoryLog: base_path=%r, compression=%r',
            self._base_path,
            self._compression,
        )

    @classmethod
    def from_config(cls, storage_config: StorageConfig) -> 'PositionHistoryLog':
        return cls(
            storage_config.position_history_path,
            storage_config.parquet_compression,
        )

    @property
    def base_path(self) -> Path:
        return self._base_path

    def _partition_path(self, partition_date: date) -> Path:
        partition_dir_name: str = PARTITION_DIR_FORMAT.format(
            date=partition_date.isoformat()
        )
        return self._base_path / partition_dir_name / PARTITION_FILE_NAME

    def list_partition_dates(self) -> list[date]:
        """Partition dates present on disk, oldest first."""
        dates: list[date] = []
        for path in sorted(self._base_path.iterdir()):
            if not (path.is_dir() and path.name.startswith('date=')):
                continue
            try:
                dates.append(date.fromisoformat(path.name[5:]))
            except ValueError:
                logger.warning('Ignoring malformed partition directory %r', path)
        return dates

    def load_partition(self, partition_date: date) -> pd.DataFrame | None:
        return _read_positions(self._partition_path(partition_date))

    def append(self, positions: Iterable[NormalizedPosition]) -> int:
        """
        Append positions to their UTC date partitions.

        Samples already present for the same (device_id, timestamp) are kept
        as they were; the incoming duplicate is dropped.

        Returns:
            Number of new rows written.

        Raises:
            StoreError: If a partition cannot be written.
        """
        incoming: pd.DataFrame = positions_to_dataframe(positions)
        if incoming.empty:
            return 0

        partition_dates: pd.Series = incoming['timestamp'].dt.date
        rows_written: int = 0

        for partition_date, group_df in incoming.groupby(partition_dates, sort=True):
            existing_df: pd.DataFrame | None = self.load_partition(partition_date)
            existing_count: int = 0 if existing_df is None else len(existing_df)

            if existing_df is not None and not existing_df.empty:
                combined_df: pd.DataFrame = pd.concat(
                    [existing_df, group_df],
                    ignore_index=True,
                )
            else:
                combined_df = group_df

            # Existing rows win: the log is append-only
            combined_df = combined_df.drop_duplicates(
                subset=POSITION_DEDUP_COLUMNS, keep='first'
            ).sort_values(POSITION_SORT_COLUMNS, kind='stable')

            new_rows: int = len(combined_df) - existing_count
            if new_rows <= 0:
                logger.debug('Partition %s: nothing new to append', partition_date)
                continue

            _write_parquet_atomically(
                combined_df,
                self._partition_path(partition_date),
                self._compression,
            )
            rows_written += new_rows
            logger.debug(
                'Partition %s: appended %d rows (%d total)',
                partition_date,
                new_rows,
                len(combined_df),
            )

        logger.info('Appended %d position rows to history', rows_written)
        return rows_written

    def load_range(
        self,
        start: datetime,
        end: datetime,
        device_ids: Sequence[str] | None = None,
    ) -> pd.DataFrame:
        """
        Positions with start <= timestamp <= end, optionally for some devices.

        Returns:
            Schema-conformant DataFrame, empty when nothing matches.
        """
        frames: list[pd.DataFrame] = []
        for partition_date in self.list_partition_dates():
            if not start.date() <= partition_date <= end.date():
                continue
            partition_df: pd.DataFrame | None = self.load_partition(partition_date)
            if partition_df is not None and not partition_df.empty:
                frames.append(partition_df)

        if not frames:
            return positions_to_dataframe([])

        combined: pd.DataFrame = pd.concat(frames, ignore_index=True)
        mask: pd.Series = (combined['timestamp'] >= pd.Timestamp(start)) & (
            combined['timestamp'] <= pd.Timestamp(end)
        )
        if device_ids is not None:
            mask &= combined['device_id'].isin(list(device_ids))

        return combined[mask].sort_values(POSITION_SORT_COLUMNS, kind='stable')

    def nearest_fix(
        self,
        device_id: str,
        at: datetime,
        window: timedelta,
    ) -> tuple[float, float] | None:
        """Nearest-in-time coordinates for the device within +/- window."""
        samples: pd.DataFrame = self.load_range(at - window, at + window, [device_id])
        return find_nearest_fix(samples, at, window)

    def delete_partitions_before(self, cutoff_date: date) -> int:
        """Retention: drop whole partitions strictly older than cutoff_date."""
        deleted: int = 0
        for partition_date in self.list_partition_dates():
            if partition_date >= cutoff_date:
                continue
            partition_path: Path = self._partition_path(partition_date)
            if partition_path.exists():
                partition_path.unlink()
            with suppress(OSError):
                partition_path.parent.rmdir()
            deleted += 1

        if deleted:
            logger.info('Deleted %d history partitions before %s', deleted, cutoff_date)
        return deleted


# =============================================================================
# Latest Position Projection
# =============================================================================


class LatestPositionStore:
    """One-row-per-device projection of the most recent normalized position."""

    def __init__(
        self,
        file_path: Path,
        compression: CompressionType = 'snappy',
    ) -> None:
        self._file_path: Path = file_path
        self._compression: CompressionType = compression
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, storage_config: StorageConfig) -> 'LatestPositionStore':
        return cls(
            storage_config.latest_positions_path,
            storage_config.parquet_compression,
        )

    @property
    def path(self) -> Path:
        return self._file_path

    def load(self) -> pd.DataFrame:
        """
        Current projection; empty DataFrame when none was written yet.

        Raises:
            StoreError: If the projection file is not a position table.
        """
        dataframe: pd.DataFrame | None = _read_positions(self._file_path)
        if dataframe is None:
            return positions_to_dataframe([])
        return dataframe

    def get(self, device_id: str) -> dict[str, Any] | None:
        """Latest row for one device as a dict, or None."""
        projection: pd.DataFrame = self.load()
        rows: pd.DataFrame = projection[projection['device_id'] == device_id]
        if rows.empty:
            return None
        return cast(dict[str, Any], rows.iloc[0].to_dict())

    def upsert(self, positions: Iterable[NormalizedPosition]) -> int:
        """
        Merge positions into the projection, keeping the newest per device.

        An older sample never replaces a newer one already projected.

        Returns:
            Number of devices in the projection after the merge.

        Raises:
            StoreError: If the file cannot be written.
        """
        incoming: pd.DataFrame = positions_to_dataframe(positions)
        if incoming.empty:
            return len(self.load())

        current: pd.DataFrame = self.load()
        frames: list[pd.DataFrame] = [incoming]
        if not current.empty:
            frames.insert(0, current)

        combined: pd.DataFrame = pd.concat(frames, ignore_index=True)
        latest: pd.DataFrame = (
            combined.sort_values(['device_id', 'timestamp'], kind='stable')
            .drop_duplicates(subset=['device_id'], keep='last')
            .reset_index(drop=True)
        )

        _write_parquet_atomically(latest, self._file_path, self._compression)
        logger.info('Latest-position projection now covers %d devices', len(latest))
        return len(latest)
