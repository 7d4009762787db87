"""
Tests for fleet_trip_sync.position_log module.

Tests the date-partitioned position history, nearest-fix lookups used for
trip endpoint backfill, and the latest-position projection.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pandas as pd
import pytest

from fleet_trip_sync.errors import StoreError
from fleet_trip_sync.models import NormalizedPosition
from fleet_trip_sync.position_log import (
    LatestPositionStore,
    PositionHistoryLog,
    find_nearest_fix,
)
from fleet_trip_sync.schema import POSITION_COLUMNS, positions_to_dataframe

NOW: datetime = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
WINDOW: timedelta = timedelta(minutes=15)


class TestPositionHistoryAppend:
    """Test appends into date partitions."""

    def test_append_writes_hive_partitions(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        positions = [
            position_factory(timestamp=NOW),
            position_factory(timestamp=NOW + timedelta(days=1)),
        ]

        written = position_history.append(positions)

        assert written == 2  # noqa: PLR2004
        assert (position_history.base_path / 'date=2024-06-01' / 'data.parquet').exists()
        assert (position_history.base_path / 'date=2024-06-02' / 'data.parquet').exists()
        assert position_history.list_partition_dates() == [
            NOW.date(),
            (NOW + timedelta(days=1)).date(),
        ]

    def test_reappending_same_sample_is_noop(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        position_history.append([position_factory()])

        written = position_history.append(
            [position_factory(), position_factory(timestamp=NOW + timedelta(minutes=1))]
        )

        assert written == 1
        frame = position_history.load_partition(NOW.date())
        assert frame is not None
        assert len(frame) == 2  # noqa: PLR2004

    def test_existing_row_is_never_replaced(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        """The history is append-only; a later duplicate does not overwrite."""
        position_history.append([position_factory(latitude=10.0, longitude=20.0)])
        position_history.append([position_factory(latitude=30.0, longitude=40.0)])

        frame = position_history.load_range(NOW, NOW)

        assert len(frame) == 1
        assert frame.iloc[0]['latitude'] == 10.0  # noqa: PLR2004

    def test_empty_append(self, position_history: PositionHistoryLog) -> None:
        assert position_history.append([]) == 0

    def test_unavailable_coordinates_stay_missing(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        position_history.append([position_factory(latitude=None, longitude=None)])

        frame = position_history.load_range(NOW, NOW)

        assert frame['latitude'].isna().all()
        assert frame['longitude'].isna().all()


class TestPositionHistoryRead:
    """Test range loads and nearest-fix lookups."""

    def test_load_range_filters_time_and_device(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        position_history.append(
            [
                position_factory(timestamp=NOW - timedelta(hours=1)),
                position_factory(timestamp=NOW),
                position_factory(device_id='dev-2', timestamp=NOW),
                position_factory(timestamp=NOW + timedelta(hours=1)),
            ]
        )

        frame = position_history.load_range(
            NOW - timedelta(minutes=30), NOW + timedelta(minutes=30), ['dev-1']
        )

        assert list(frame.columns) == POSITION_COLUMNS
        assert len(frame) == 1
        assert frame.iloc[0]['device_id'] == 'dev-1'

    def test_load_range_with_no_data(self, position_history: PositionHistoryLog) -> None:
        frame = position_history.load_range(NOW, NOW + timedelta(days=1))

        assert frame.empty
        assert list(frame.columns) == POSITION_COLUMNS

    def test_nearest_fix_ten_minutes_later(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        """A sample 10 minutes after the endpoint is inside the 15 minute window."""
        position_history.append(
            [position_factory(timestamp=NOW + timedelta(minutes=10), latitude=22.6)]
        )

        fix = position_history.nearest_fix('dev-1', NOW, WINDOW)

        assert fix == (22.6, 114.0579)

    def test_nearest_fix_outside_window(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        position_history.append(
            [
                position_factory(timestamp=NOW - timedelta(minutes=16)),
                position_factory(timestamp=NOW + timedelta(minutes=20)),
            ]
        )

        assert position_history.nearest_fix('dev-1', NOW, WINDOW) is None

    def test_nearest_fix_crosses_midnight(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        midnight = datetime(2024, 6, 2, 0, 0, tzinfo=UTC)
        position_history.append(
            [position_factory(timestamp=midnight - timedelta(minutes=5), latitude=1.5)]
        )

        fix = position_history.nearest_fix('dev-1', midnight + timedelta(minutes=5), WINDOW)

        assert fix == (1.5, 114.0579)

    def test_nearest_fix_ignores_other_devices(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        position_history.append([position_factory(device_id='dev-2')])

        assert position_history.nearest_fix('dev-1', NOW, WINDOW) is None


class TestFindNearestFix:
    """Test the pure nearest-sample selection."""

    def test_closest_sample_wins(
        self, position_factory: Callable[..., NormalizedPosition]
    ) -> None:
        samples = positions_to_dataframe(
            [
                position_factory(timestamp=NOW - timedelta(minutes=8), latitude=1.0),
                position_factory(timestamp=NOW + timedelta(minutes=3), latitude=2.0),
                position_factory(timestamp=NOW + timedelta(minutes=12), latitude=3.0),
            ]
        )

        assert find_nearest_fix(samples, NOW, WINDOW) == (2.0, 114.0579)

    def test_samples_without_fix_are_skipped(
        self, position_factory: Callable[..., NormalizedPosition]
    ) -> None:
        samples = positions_to_dataframe(
            [
                position_factory(timestamp=NOW, latitude=None, longitude=None),
                position_factory(timestamp=NOW + timedelta(minutes=9), latitude=4.0),
            ]
        )

        assert find_nearest_fix(samples, NOW, WINDOW) == (4.0, 114.0579)

    def test_tie_goes_to_earlier_sample(
        self, position_factory: Callable[..., NormalizedPosition]
    ) -> None:
        samples = positions_to_dataframe(
            [
                position_factory(timestamp=NOW + timedelta(minutes=5), latitude=6.0),
                position_factory(timestamp=NOW - timedelta(minutes=5), latitude=5.0),
            ]
        )

        assert find_nearest_fix(samples, NOW, WINDOW) == (5.0, 114.0579)

    def test_empty_samples(self) -> None:
        assert find_nearest_fix(positions_to_dataframe([]), NOW, WINDOW) is None


class TestPositionHistoryRetention:
    """Test partition retention."""

    def test_delete_partitions_before(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        position_history.append(
            [
                position_factory(timestamp=NOW - timedelta(days=2)),
                position_factory(timestamp=NOW),
            ]
        )

        deleted = position_history.delete_partitions_before(NOW.date())

        assert deleted == 1
        assert position_history.list_partition_dates() == [NOW.date()]

    def test_corrupt_partition_is_skipped(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        position_history.append([position_factory()])
        partition_dir: Path = position_history.base_path / 'date=2024-06-02'
        partition_dir.mkdir()
        (partition_dir / 'data.parquet').write_bytes(b'not parquet')

        frame = position_history.load_range(NOW, NOW + timedelta(days=1))

        assert len(frame) == 1

    def test_foreign_partition_blocks_append(
        self,
        position_history: PositionHistoryLog,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        partition_dir: Path = position_history.base_path / 'date=2024-06-01'
        partition_dir.mkdir(parents=True)
        pd.DataFrame({'vehicle': ['a']}).to_parquet(
            partition_dir / 'data.parquet', index=False
        )

        with pytest.raises(StoreError):
            position_history.append([position_factory()])


class TestLatestPositionStore:
    """Test the one-row-per-device projection."""

    def test_load_before_any_write(self, latest_positions: LatestPositionStore) -> None:
        assert latest_positions.load().empty
        assert latest_positions.get('dev-1') is None

    def test_upsert_keeps_newest_per_device(
        self,
        latest_positions: LatestPositionStore,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        latest_positions.upsert(
            [
                position_factory(timestamp=NOW, latitude=1.0),
                position_factory(device_id='dev-2', timestamp=NOW),
            ]
        )
        device_count = latest_positions.upsert(
            [position_factory(timestamp=NOW + timedelta(minutes=1), latitude=2.0)]
        )

        assert device_count == 2  # noqa: PLR2004
        latest = latest_positions.get('dev-1')
        assert latest is not None
        assert latest['latitude'] == 2.0  # noqa: PLR2004
        assert latest['timestamp'] == pd.Timestamp(NOW + timedelta(minutes=1))

    def test_older_sample_does_not_replace_newer(
        self,
        latest_positions: LatestPositionStore,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        latest_positions.upsert([position_factory(timestamp=NOW, latitude=2.0)])
        latest_positions.upsert(
            [position_factory(timestamp=NOW - timedelta(hours=1), latitude=1.0)]
        )

        latest = latest_positions.get('dev-1')
        assert latest is not None
        assert latest['latitude'] == 2.0  # noqa: PLR2004

    def test_foreign_parquet_file_raises_store_error(
        self, latest_positions: LatestPositionStore
    ) -> None:
        pd.DataFrame({'vehicle': ['a'], 'odometer': [1.0]}).to_parquet(
            latest_positions.path, index=False
        )

        with pytest.raises(StoreError, match='does not hold position data'):
            latest_positions.load()

    def test_directory_at_projection_path_raises_store_error(
        self, tmp_path: Path
    ) -> None:
        (tmp_path / 'latest.parquet').mkdir()
        projection = LatestPositionStore(tmp_path / 'latest.parquet')

        with pytest.raises(StoreError, match='found a directory'):
            projection.load()

    def test_write_failure_raises_store_error(
        self,
        tmp_path: Path,
        position_factory: Callable[..., NormalizedPosition],
    ) -> None:
        projection = LatestPositionStore(tmp_path / 'latest.parquet')
        # A directory where the file should be makes the rename fail
        (tmp_path / 'latest.parquet').mkdir()

        with pytest.raises(StoreError):
            projection.upsert([position_factory()])
