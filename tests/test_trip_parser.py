"""
Tests for fleet_trip_sync.trip_parser module.

Tests timestamp handling, the distance policy, and per-record rejection of
malformed trips.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from fleet_trip_sync.errors import RecordValidationError
from fleet_trip_sync.models import DistanceSource, RawTripRecord
from fleet_trip_sync.trip_parser import TripParser, haversine_km

PROVIDER_TZ = timezone(timedelta(hours=8))


@pytest.fixture
def parser() -> TripParser:
    return TripParser(PROVIDER_TZ)


def _raw_trip(**overrides: object) -> dict[str, object]:
    raw: dict[str, object] = {
        'deviceid': 'dev-1',
        'starttime': 1717243200000,  # 2024-06-01T12:00:00Z
        'endtime': 1717246800000,  # 2024-06-01T13:00:00Z
        'startlat': 22.5431,
        'startlon': 114.0579,
        'endlat': 22.6,
        'endlon': 114.1,
        'distance': 12500,
    }
    raw.update(overrides)
    return raw


class TestHaversine:
    """Test the great-circle helper."""

    def test_same_point_is_zero(self) -> None:
        assert haversine_km(22.5, 114.0, 22.5, 114.0) == 0.0

    def test_one_degree_of_latitude(self) -> None:
        assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)


class TestTripTimes:
    """Test start/end time interpretation."""

    def test_epoch_millis(self, parser: TripParser) -> None:
        trip = parser.parse(_raw_trip(), 'dev-1')

        assert trip.start_time == datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
        assert trip.end_time == datetime(2024, 6, 1, 13, 0, tzinfo=UTC)
        assert trip.duration_seconds == 3600.0  # noqa: PLR2004

    def test_epoch_seconds(self, parser: TripParser) -> None:
        trip = parser.parse(
            _raw_trip(starttime=1717243200, endtime=1717246800), 'dev-1'
        )

        assert trip.start_time == datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def test_local_time_strings(self, parser: TripParser) -> None:
        trip = parser.parse(
            _raw_trip(starttime='2024-06-01 20:00:00', endtime='2024-06-01 21:30:00'),
            'dev-1',
        )

        assert trip.start_time == datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
        assert trip.end_time == datetime(2024, 6, 1, 13, 30, tzinfo=UTC)

    def test_inverted_times_rejected(self, parser: TripParser) -> None:
        with pytest.raises(RecordValidationError, match='before it starts'):
            parser.parse(
                _raw_trip(starttime=1717246800000, endtime=1717243200000), 'dev-1'
            )

    def test_zero_length_trip_rejected(self, parser: TripParser) -> None:
        with pytest.raises(RecordValidationError):
            parser.parse(_raw_trip(endtime=1717243200000), 'dev-1')

    def test_missing_start_rejected(self, parser: TripParser) -> None:
        with pytest.raises(RecordValidationError, match='no start time'):
            parser.parse(_raw_trip(starttime=None), 'dev-1')

    def test_unreadable_time_rejected(self, parser: TripParser) -> None:
        with pytest.raises(RecordValidationError, match='Unreadable'):
            parser.parse(_raw_trip(endtime='yesterday-ish'), 'dev-1')

    def test_out_of_range_epoch_rejected(self, parser: TripParser) -> None:
        with pytest.raises(RecordValidationError, match='Unreadable'):
            parser.parse(_raw_trip(starttime=10**22), 'dev-1')


class TestTripDistance:
    """Test the provider-first distance policy."""

    def test_provider_distance_in_meters(self, parser: TripParser) -> None:
        trip = parser.parse(_raw_trip(), 'dev-1')

        assert trip.distance_km == 12.5  # noqa: PLR2004
        assert trip.distance_source is DistanceSource.PROVIDER

    def test_totaldistance_spelling(self, parser: TripParser) -> None:
        raw = _raw_trip(totaldistance=8000)
        del raw['distance']

        trip = parser.parse(raw, 'dev-1')

        assert trip.distance_km == 8.0  # noqa: PLR2004
        assert trip.distance_source is DistanceSource.PROVIDER

    def test_zero_distance_falls_through_to_totaldistance(
        self, parser: TripParser
    ) -> None:
        trip = parser.parse(_raw_trip(distance=0, totaldistance=3000), 'dev-1')

        assert trip.distance_km == 3.0  # noqa: PLR2004

    @pytest.mark.parametrize('zero', [0.0, '0.0', '0.00', ' 0 '])
    def test_any_spelling_of_zero_falls_through(
        self, parser: TripParser, zero: object
    ) -> None:
        trip = parser.parse(_raw_trip(distance=zero, totaldistance=3000), 'dev-1')

        assert trip.distance_km == 3.0  # noqa: PLR2004
        assert trip.distance_source is DistanceSource.PROVIDER

    def test_missing_distance_is_estimated(self, parser: TripParser) -> None:
        raw = _raw_trip()
        del raw['distance']

        trip = parser.parse(raw, 'dev-1')

        expected = haversine_km(22.5431, 114.0579, 22.6, 114.1)
        assert trip.distance_km == pytest.approx(expected, abs=0.001)
        assert trip.distance_source is DistanceSource.ESTIMATED

    def test_no_distance_and_no_endpoints(self, parser: TripParser) -> None:
        raw = _raw_trip(endlat=None, endlon=None)
        del raw['distance']

        trip = parser.parse(raw, 'dev-1')

        assert trip.distance_km is None
        assert trip.distance_source is None


class TestTripEndpoints:
    """Test coordinate handling on trip endpoints."""

    def test_zero_zero_endpoint_is_unavailable(self, parser: TripParser) -> None:
        trip = parser.parse(_raw_trip(endlat=0, endlon=0), 'dev-1')

        assert trip.has_start is True
        assert trip.has_end is False
        assert trip.end_latitude is None

    def test_out_of_range_endpoint_rejected(self, parser: TripParser) -> None:
        with pytest.raises(RecordValidationError, match='dev-1'):
            parser.parse(_raw_trip(startlat=123.0), 'dev-1')

    def test_device_id_defaults_to_requested_device(self, parser: TripParser) -> None:
        raw = _raw_trip()
        del raw['deviceid']

        assert parser.parse(raw, 'dev-7').device_id == 'dev-7'

    def test_speeds_are_normalized(self, parser: TripParser) -> None:
        trip = parser.parse(_raw_trip(maxspeed=88000, avgspeed=42.5), 'dev-1')

        assert trip.max_speed_kmh == 88.0  # noqa: PLR2004
        assert trip.avg_speed_kmh == 42.5  # noqa: PLR2004

    def test_accepts_parsed_record(self, parser: TripParser) -> None:
        record = RawTripRecord.model_validate(_raw_trip())

        assert parser.parse(record, 'dev-1').distance_km == 12.5  # noqa: PLR2004


class TestParseMany:
    """Test batch parsing with per-record rejection."""

    def test_bad_records_collected(self, parser: TripParser) -> None:
        records = [
            _raw_trip(),
            _raw_trip(starttime=None),
            _raw_trip(starttime=1717250400000, endtime=1717254000000),
        ]

        trips, rejected = parser.parse_many(records, 'dev-1')

        assert len(trips) == 2  # noqa: PLR2004
        assert len(rejected) == 1
        assert rejected[0].record == records[1]

    def test_out_of_range_epoch_only_rejects_that_record(
        self, parser: TripParser
    ) -> None:
        records = [_raw_trip(starttime=10**22), _raw_trip()]

        trips, rejected = parser.parse_many(records, 'dev-1')

        assert len(trips) == 1
        assert len(rejected) == 1

    def test_empty_list(self, parser: TripParser) -> None:
        assert parser.parse_many([], 'dev-1') == ([], [])
