"""
Tests for fleet_trip_sync.normalizer module.

Covers ignition evidence accumulation, status word splitting, speed units,
battery derivation, coordinate validation, quality tiers and the full
record normalization.
"""

from datetime import UTC, datetime

import pytest

from fleet_trip_sync.config import NormalizerConfig
from fleet_trip_sync.errors import RecordValidationError
from fleet_trip_sync.models import DataQuality, DetectionMethod
from fleet_trip_sync.normalizer import (
    TelemetryNormalizer,
    battery_percent_from_voltage,
    detect_ignition,
    normalize,
    normalize_coordinates,
    normalize_speed,
    resolve_battery_percent,
    score_quality,
    split_status_word,
)


class TestSplitStatusWord:
    """Test base/extended extraction from the status word."""

    @pytest.mark.parametrize(
        'status',
        [0, 1, 0xFFFF, 0x10000, 262151, 0x80000001, 0xFFFFFFFF],
    )
    def test_halves_reconstruct_original(self, status: int) -> None:
        """Base and extended halves should rebuild the original value."""
        base, extended = split_status_word(status)

        assert (extended << 16) | base == status
        assert 0 <= base <= 0xFFFF
        assert 0 <= extended <= 0xFFFF

    def test_known_value(self) -> None:
        """0x40007 splits into base 7 and extended 4."""
        assert split_status_word(262151) == (7, 4)

    @pytest.mark.parametrize('status', [-1, 0x100000000])
    def test_out_of_range_raises(self, status: int) -> None:
        with pytest.raises(ValueError, match='out of unsigned 32-bit range'):
            split_status_word(status)


class TestDetectIgnition:
    """Test the evidence-accumulating ignition heuristic."""

    def test_base_bit_plus_speed_is_multi_signal(self) -> None:
        """Status 262151 at 5 km/h: 0.6 + 0 + 0.2 = 0.8, ignition on."""
        evidence = detect_ignition(262151, None, 5.0)

        assert evidence.confidence == pytest.approx(0.8)
        assert evidence.ignition_on is True
        assert evidence.method is DetectionMethod.MULTI_SIGNAL
        assert evidence.base_status == 7  # noqa: PLR2004
        assert evidence.extended_status == 4  # noqa: PLR2004
        assert evidence.signals == ('base_bit', 'speed')
        assert evidence.diagnostic is None

    def test_all_signals_cap_at_one(self) -> None:
        evidence = detect_ignition(0x10001, None, 60.0)

        assert evidence.confidence == pytest.approx(1.0)
        assert evidence.ignition_on is True

    def test_base_bit_alone_is_status_bit(self) -> None:
        evidence = detect_ignition(1, None, 0.0)

        assert evidence.method is DetectionMethod.STATUS_BIT
        assert evidence.confidence == pytest.approx(0.6)
        assert evidence.ignition_on is True

    def test_extended_bit_alone_is_weak(self) -> None:
        """Extended bit only gives 0.2: off, with a diagnostic."""
        evidence = detect_ignition(0x10000, None, 0.0)

        assert evidence.confidence == pytest.approx(0.2)
        assert evidence.ignition_on is False
        assert evidence.diagnostic is not None
        assert 'extended_bit' in evidence.diagnostic

    def test_speed_only_with_status_zero(self) -> None:
        evidence = detect_ignition(0, None, 40.0)

        assert evidence.method is DetectionMethod.SPEED_INFERENCE
        assert evidence.confidence == pytest.approx(0.2)
        assert evidence.ignition_on is False

    def test_slow_speed_is_not_evidence(self) -> None:
        """Speed must exceed the moving threshold to count."""
        evidence = detect_ignition(0, None, 3.0)

        assert evidence.confidence == 0.0
        assert evidence.signals == ()

    @pytest.mark.parametrize('status', [-1, -262151, 0x100000000])
    def test_invalid_status_is_unknown(self, status: int) -> None:
        """Out-of-range status words give unknown with zero confidence."""
        evidence = detect_ignition(status, 'ACC ON', 50.0)

        assert evidence.method is DetectionMethod.UNKNOWN
        assert evidence.confidence == 0.0
        assert evidence.ignition_on is False

    def test_digit_string_status_is_parsed(self) -> None:
        evidence = detect_ignition('262151', None, 5.0)

        assert evidence.confidence == pytest.approx(0.8)

    @pytest.mark.parametrize('text', ['ACC ON', 'acc:on', 'ACC_ON,GPS', 'ACC开'])
    def test_on_text_fallback(self, text: str) -> None:
        """Without a status word, an 'on' token gives string_parse 0.6."""
        evidence = detect_ignition(None, text, None)

        assert evidence.method is DetectionMethod.STRING_PARSE
        assert evidence.confidence == pytest.approx(0.6)
        assert evidence.ignition_on is True

    @pytest.mark.parametrize('text', ['ACC OFF', 'ACC关'])
    def test_off_text_fallback(self, text: str) -> None:
        evidence = detect_ignition(None, text, 50.0)

        assert evidence.method is DetectionMethod.STRING_PARSE
        assert evidence.confidence == 0.0
        assert evidence.ignition_on is False

    def test_speed_fallback(self) -> None:
        evidence = detect_ignition(None, 'GPS fixed', 25.0)

        assert evidence.method is DetectionMethod.SPEED_INFERENCE
        assert evidence.confidence == pytest.approx(0.2)
        assert evidence.diagnostic is not None

    def test_no_signal_is_unknown(self) -> None:
        evidence = detect_ignition(None, None, None)

        assert evidence.method is DetectionMethod.UNKNOWN
        assert evidence.confidence == 0.0

    @pytest.mark.parametrize(
        'status', [0, 1, 2, 0x10000, 0x10001, 262151, 0xFFFF, 0xFFFFFFFF, -5]
    )
    @pytest.mark.parametrize('speed', [None, 0.0, 2.9, 3.1, 120.0])
    def test_confidence_bounds_and_threshold(
        self, status: int, speed: float | None
    ) -> None:
        """Confidence stays in [0, 1] and ignition follows the 0.5 threshold."""
        evidence = detect_ignition(status, None, speed)

        assert 0.0 <= evidence.confidence <= 1.0
        assert evidence.ignition_on is (evidence.confidence >= 0.5)  # noqa: PLR2004


class TestNormalizeSpeed:
    """Test speed unit normalization."""

    def test_plausible_speed_kept(self) -> None:
        assert normalize_speed(80) == (80.0, False)

    def test_large_value_divided(self) -> None:
        """Values above the ceiling are in the finer unit."""
        assert normalize_speed(45000) == (45.0, False)

    @pytest.mark.parametrize('raw', [201, 999, 45000, 200000])
    def test_divided_value_lands_in_range(self, raw: int) -> None:
        speed, implausible = normalize_speed(raw)

        assert speed is not None
        assert 0.0 <= speed <= 200.0  # noqa: PLR2004
        assert implausible is False

    def test_still_implausible_is_flagged_not_clamped(self) -> None:
        assert normalize_speed(300000) == (300.0, True)

    def test_negative_is_implausible(self) -> None:
        assert normalize_speed(-5) == (None, True)

    def test_missing_speed(self) -> None:
        assert normalize_speed(None) == (None, False)
        assert normalize_speed('') == (None, False)

    def test_custom_ceiling(self) -> None:
        config = NormalizerConfig(speed_ceiling_kmh=150.0, speed_unit_divisor=10.0)

        assert normalize_speed(1200, config) == (120.0, False)


class TestBattery:
    """Test battery percent derivation."""

    def test_reported_percent_preferred(self) -> None:
        assert resolve_battery_percent(85, 11.0) == 85  # noqa: PLR2004

    def test_zero_percent_falls_back_to_voltage(self) -> None:
        assert resolve_battery_percent(0, 12.7) == 100  # noqa: PLR2004

    def test_table_interpolation_point(self) -> None:
        assert battery_percent_from_voltage(12.06) == 50  # noqa: PLR2004

    def test_24_volt_system_scaled(self) -> None:
        assert battery_percent_from_voltage(24.12) == battery_percent_from_voltage(
            12.06
        )

    def test_external_voltage_used_last(self) -> None:
        assert resolve_battery_percent(None, None, 10.0) == 0

    def test_no_signal_yields_none(self) -> None:
        """A percent is never fabricated."""
        assert resolve_battery_percent(None, None) is None
        assert resolve_battery_percent(0, 0) is None

    def test_voltage_outside_every_system(self) -> None:
        assert battery_percent_from_voltage(80.0) is None


class TestNormalizeCoordinates:
    """Test coordinate validation."""

    def test_valid_pair(self) -> None:
        assert normalize_coordinates('22.5431', '114.0579') == (22.5431, 114.0579)

    def test_zero_zero_is_unavailable(self) -> None:
        assert normalize_coordinates(0, 0) == (None, None)

    def test_missing_value_is_unavailable(self) -> None:
        assert normalize_coordinates(None, 114.0) == (None, None)

    def test_equator_alone_is_valid(self) -> None:
        """Only the exact (0, 0) pair means no fix."""
        assert normalize_coordinates(0.0, 114.0) == (0.0, 114.0)

    @pytest.mark.parametrize(
        ('latitude', 'longitude'),
        [(91.0, 10.0), (10.0, -181.0), ('abc', 10.0), (float('nan'), 1.0)],
    )
    def test_invalid_raises(self, latitude: object, longitude: object) -> None:
        with pytest.raises(RecordValidationError):
            normalize_coordinates(latitude, longitude)


class TestScoreQuality:
    """Test quality tiers."""

    def test_high(self) -> None:
        assert score_quality(0.8, has_coordinates=True) is DataQuality.HIGH

    def test_medium_by_confidence(self) -> None:
        assert score_quality(0.6, has_coordinates=True) is DataQuality.MEDIUM

    def test_medium_without_coordinates(self) -> None:
        assert score_quality(1.0, has_coordinates=False) is DataQuality.MEDIUM
        assert score_quality(0.0, has_coordinates=False) is DataQuality.MEDIUM

    def test_low(self) -> None:
        assert score_quality(0.2, has_coordinates=True) is DataQuality.LOW

    def test_implausible_speed_is_low(self) -> None:
        assert (
            score_quality(1.0, has_coordinates=True, speed_implausible=True)
            is DataQuality.LOW
        )


class TestTelemetryNormalizer:
    """Test full record normalization."""

    RAW_RECORD: dict[str, object] = {  # noqa: RUF012
        'deviceid': 'dev-1',
        'gpstime': 1717243200000,
        'callat': 22.5431,
        'callon': 114.0579,
        'speed': 5,
        'course': 90,
        'status': 262151,
        'voltagepercent': 80,
    }

    def test_normalizes_full_record(self) -> None:
        position = TelemetryNormalizer().normalize(self.RAW_RECORD)

        assert position.device_id == 'dev-1'
        assert position.timestamp == datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
        assert position.latitude == pytest.approx(22.5431)
        assert position.longitude == pytest.approx(114.0579)
        assert position.speed_kmh == pytest.approx(5.0)
        assert position.battery_percent == 80  # noqa: PLR2004
        assert position.ignition_on is True
        assert position.ignition_confidence == pytest.approx(0.8)
        assert position.detection_method is DetectionMethod.MULTI_SIGNAL
        assert position.data_quality is DataQuality.HIGH

    def test_deterministic(self) -> None:
        """Normalizing the same record twice gives identical output."""
        normalizer = TelemetryNormalizer()

        assert normalizer.normalize(self.RAW_RECORD) == normalizer.normalize(
            self.RAW_RECORD
        )
        assert normalize(self.RAW_RECORD) == normalize(self.RAW_RECORD)

    def test_zero_coordinates_carried_as_unavailable(self) -> None:
        record = {**self.RAW_RECORD, 'callat': 0, 'callon': 0}

        position = TelemetryNormalizer().normalize(record)

        assert position.latitude is None
        assert position.longitude is None
        assert position.has_fix is False
        assert position.data_quality is DataQuality.MEDIUM

    def test_local_time_string_converted_to_utc(self) -> None:
        record = {**self.RAW_RECORD, 'gpstime': '2024-06-01 20:00:00'}

        position = TelemetryNormalizer(utc_offset_hours=8).normalize(record)

        assert position.timestamp == datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def test_server_time_used_when_gps_time_missing(self) -> None:
        record = {**self.RAW_RECORD, 'gpstime': 0, 'updatetime': 1717243260000}

        position = TelemetryNormalizer().normalize(record)

        assert position.timestamp == datetime(2024, 6, 1, 12, 1, tzinfo=UTC)

    def test_implausible_speed_lowers_quality(self) -> None:
        record = {**self.RAW_RECORD, 'speed': 500000}

        position = TelemetryNormalizer().normalize(record)

        assert position.data_quality is DataQuality.LOW
        assert any('implausible speed' in note for note in position.diagnostics)

    def test_missing_timestamp_raises(self) -> None:
        record = {key: value for key, value in self.RAW_RECORD.items() if key != 'gpstime'}

        with pytest.raises(RecordValidationError, match='no timestamp'):
            TelemetryNormalizer().normalize(record)

    def test_out_of_range_coordinates_raise(self) -> None:
        record = {**self.RAW_RECORD, 'callat': 123.0}

        with pytest.raises(RecordValidationError, match='dev-1'):
            TelemetryNormalizer().normalize(record)

    def test_missing_device_id_raises(self) -> None:
        record = {**self.RAW_RECORD}
        del record['deviceid']

        with pytest.raises(RecordValidationError):
            TelemetryNormalizer().normalize(record)

    def test_out_of_range_epoch_raises(self) -> None:
        record = {**self.RAW_RECORD, 'gpstime': 10**22}

        with pytest.raises(RecordValidationError, match='Unusable timestamp'):
            TelemetryNormalizer().normalize(record)
