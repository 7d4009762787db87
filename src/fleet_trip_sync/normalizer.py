# fleet_trip_sync/normalizer.py
"""
Telemetry normalization: one raw provider record in, one NormalizedPosition out.

Everything here is a pure function of its inputs. No I/O, no clock, no logging
side effects that change results; `normalize` is deterministic and calling it
twice on the same record yields equal output.

Ignition Detection:
-------------------
Ignition is decided by accumulating evidence rather than by nested
conditionals. The status word may be a 16-bit legacy value or a 32-bit value
whose lower half is the legacy "base" status and whose upper half is a vendor
"extended" status. Bit 0 of each half signals ignition:

    base bit 0       +0.6
    extended bit 0   +0.2
    speed > 3 km/h   +0.2

Ignition is ON iff the total reaches 0.5. Status words outside the unsigned
32-bit range are invalid (method `unknown`, confidence 0) and no fallback is
tried, since the device did report a status, just not a believable one. When
no numeric status is present at all, the free-text status and then speed are
consulted, in that order.

Validation Policy:
------------------
Ambiguity is resolved locally and annotated, never raised: unavailable
coordinates become None, implausible speeds lower the quality tier, weak
ignition evidence leaves a diagnostic. Only a record that cannot describe a
real sample raises RecordValidationError: no usable timestamp, or coordinates
that are non-finite or outside valid ranges.
"""

import math
import re
from collections.abc import Mapping
from datetime import datetime, tzinfo
from typing import Any, Final

from pydantic import ValidationError

from fleet_trip_sync.config import NormalizerConfig
from fleet_trip_sync.errors import RecordValidationError
from fleet_trip_sync.models import (
    IGNITION_ON_THRESHOLD,
    DataQuality,
    DetectionMethod,
    IgnitionEvidence,
    NormalizedPosition,
    RawTelemetryRecord,
)
from fleet_trip_sync.timestamps import parse_provider_time, provider_timezone

__all__: list[str] = [
    'TelemetryNormalizer',
    'battery_percent_from_voltage',
    'detect_ignition',
    'normalize',
    'normalize_coordinates',
    'normalize_speed',
    'resolve_battery_percent',
    'score_quality',
    'split_status_word',
]

# =============================================================================
# Constants
# =============================================================================

MAX_STATUS_WORD: Final[int] = 0xFFFFFFFF
LOW_WORD_MASK: Final[int] = 0xFFFF

BASE_BIT_WEIGHT: Final[float] = 0.6
EXTENDED_BIT_WEIGHT: Final[float] = 0.2
SPEED_WEIGHT: Final[float] = 0.2
STRING_PARSE_CONFIDENCE: Final[float] = 0.6
HIGH_QUALITY_CONFIDENCE: Final[float] = 0.8

# Signal names recorded in IgnitionEvidence.signals
SIGNAL_BASE_BIT: Final[str] = 'base_bit'
SIGNAL_EXTENDED_BIT: Final[str] = 'extended_bit'
SIGNAL_SPEED: Final[str] = 'speed'
SIGNAL_STATUS_TEXT: Final[str] = 'status_text'

# Free-text ignition tokens: 'ACC ON', 'ACC:ON', 'ACC_ON', 'ACC=ON', 'ACC开'
ACC_ON_PATTERN: Final[re.Pattern[str]] = re.compile(
    r'ACC\s*[:_=]?\s*ON\b|ACC\s*开', re.IGNORECASE
)
ACC_OFF_PATTERN: Final[re.Pattern[str]] = re.compile(
    r'ACC\s*[:_=]?\s*OFF\b|ACC\s*关', re.IGNORECASE
)

# 12 V lead-acid resting voltage -> state of charge (%), ascending.
VOLTAGE_PERCENT_TABLE: Final[tuple[tuple[float, int], ...]] = (
    (10.50, 0),
    (11.31, 10),
    (11.58, 20),
    (11.75, 30),
    (11.90, 40),
    (12.06, 50),
    (12.20, 60),
    (12.32, 70),
    (12.42, 80),
    (12.50, 90),
    (12.70, 100),
)

# Upper voltage bound of each supported system -> number of 12 V blocks.
VOLTAGE_SYSTEMS: Final[tuple[tuple[float, int], ...]] = (
    (16.0, 1),
    (32.0, 2),
    (64.0, 4),
)

DEFAULT_UTC_OFFSET_HOURS: Final[float] = 8.0


# =============================================================================
# Value Coercion
# =============================================================================


def _to_float(value: Any) -> float | None:
    """Parse a wire scalar. None/'' -> None; anything unparseable -> NaN."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    text: str = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return math.nan


def _to_status_word(value: int | str | None) -> int | None:
    """Numeric status word, or None when absent or not a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text: str = value.strip()
    if re.fullmatch(r'[+-]?\d+', text):
        return int(text)
    return None


# =============================================================================
# Speed
# =============================================================================


def normalize_speed(
    raw_speed: Any,
    config: NormalizerConfig | None = None,
) -> tuple[float | None, bool]:
    """
    Convert a raw speed to km/h.

    Values above the km/h ceiling are assumed to be in the provider's finer
    unit and divided down. Values still above the ceiling afterwards are kept
    but flagged, never clamped.

    Returns:
        (speed_kmh, implausible). speed_kmh is None when no usable value
        exists; implausible is True for negative, non-finite or out-of-range
        input.
    """
    config = config or NormalizerConfig()
    value: float | None = _to_float(raw_speed)

    if value is None:
        return None, False
    if not math.isfinite(value) or value < 0:
        return None, True

    if value > config.speed_ceiling_kmh:
        value = value / config.speed_unit_divisor

    implausible: bool = value > config.speed_ceiling_kmh
    return round(value, 1), implausible


# =============================================================================
# Ignition
# =============================================================================


def split_status_word(status: int) -> tuple[int, int]:
    """
    Split a status word into (base, extended) halves.

    Raises:
        ValueError: If status is outside the unsigned 32-bit range.
    """
    if status < 0 or status > MAX_STATUS_WORD:
        raise ValueError(f'Status word out of unsigned 32-bit range: {status}')
    return status & LOW_WORD_MASK, status >> 16


def _weak_diagnostic(confidence: float, signals: list[str]) -> str | None:
    if 0.0 < confidence < IGNITION_ON_THRESHOLD:
        return (
            f'weak ignition evidence ({confidence:.2f}): '
            f'{", ".join(signals) or "none"}'
        )
    return None


def detect_ignition(
    status: int | str | None,
    status_text: str | None,
    speed_kmh: float | None,
    moving_speed_kmh: float = 3.0,
) -> IgnitionEvidence:
    """
    Accumulate ignition evidence from status bits, status text and speed.

    Args:
        status: Raw status word (int or digit string), if any.
        status_text: Raw free-text status, if any.
        speed_kmh: Normalized, plausible speed, or None.
        moving_speed_kmh: Speed above which motion counts as evidence.

    Returns:
        Structured evidence with method, confidence and fired signals.
    """
    moving: bool = speed_kmh is not None and speed_kmh > moving_speed_kmh
    status_word: int | None = _to_status_word(status)

    if status_word is not None:
        try:
            base, extended = split_status_word(status_word)
        except ValueError:
            return IgnitionEvidence(
                method=DetectionMethod.UNKNOWN,
                confidence=0.0,
                ignition_on=False,
                diagnostic=f'invalid status word {status_word}',
            )

        signals: list[str] = []
        confidence: float = 0.0
        if base & 1:
            confidence += BASE_BIT_WEIGHT
            signals.append(SIGNAL_BASE_BIT)
        if extended & 1:
            confidence += EXTENDED_BIT_WEIGHT
            signals.append(SIGNAL_EXTENDED_BIT)
        if moving:
            confidence += SPEED_WEIGHT
            signals.append(SIGNAL_SPEED)

        confidence = round(min(confidence, 1.0), 2)

        if len(signals) >= 2:
            method: DetectionMethod = DetectionMethod.MULTI_SIGNAL
        elif signals == [SIGNAL_SPEED]:
            method = DetectionMethod.SPEED_INFERENCE
        else:
            method = DetectionMethod.STATUS_BIT

        return IgnitionEvidence(
            method=method,
            confidence=confidence,
            ignition_on=confidence >= IGNITION_ON_THRESHOLD,
            signals=tuple(signals),
            base_status=base,
            extended_status=extended,
            diagnostic=_weak_diagnostic(confidence, signals),
        )

    # No usable status word: free text, then speed
    if status_text:
        if ACC_OFF_PATTERN.search(status_text):
            return IgnitionEvidence(
                method=DetectionMethod.STRING_PARSE,
                confidence=0.0,
                ignition_on=False,
                signals=(SIGNAL_STATUS_TEXT,),
            )
        if ACC_ON_PATTERN.search(status_text):
            return IgnitionEvidence(
                method=DetectionMethod.STRING_PARSE,
                confidence=STRING_PARSE_CONFIDENCE,
                ignition_on=True,
                signals=(SIGNAL_STATUS_TEXT,),
            )

    if moving:
        return IgnitionEvidence(
            method=DetectionMethod.SPEED_INFERENCE,
            confidence=SPEED_WEIGHT,
            ignition_on=False,
            signals=(SIGNAL_SPEED,),
            diagnostic=_weak_diagnostic(SPEED_WEIGHT, [SIGNAL_SPEED]),
        )

    return IgnitionEvidence(
        method=DetectionMethod.UNKNOWN,
        confidence=0.0,
        ignition_on=False,
    )


# =============================================================================
# Battery
# =============================================================================


def battery_percent_from_voltage(voltage: float) -> int | None:
    """
    Map a battery voltage to percent via the 12 V lead-acid table.

    24 V and 48 V systems are scaled per 12 V block. Voltages outside every
    supported system yield None.
    """
    if not math.isfinite(voltage) or voltage <= 0:
        return None

    blocks: int | None = None
    for upper_bound, block_count in VOLTAGE_SYSTEMS:
        if voltage <= upper_bound:
            blocks = block_count
            break
    if blocks is None:
        return None

    per_block: float = voltage / blocks
    lowest_voltage, lowest_percent = VOLTAGE_PERCENT_TABLE[0]
    highest_voltage, highest_percent = VOLTAGE_PERCENT_TABLE[-1]

    if per_block <= lowest_voltage:
        return lowest_percent
    if per_block >= highest_voltage:
        return highest_percent

    for (low_v, low_p), (high_v, high_p) in zip(
        VOLTAGE_PERCENT_TABLE, VOLTAGE_PERCENT_TABLE[1:], strict=False
    ):
        if low_v <= per_block <= high_v:
            fraction: float = (per_block - low_v) / (high_v - low_v)
            return round(low_p + fraction * (high_p - low_p))

    return None


def resolve_battery_percent(
    percent: Any,
    voltage: Any,
    external_voltage: Any = None,
) -> int | None:
    """
    Battery percent from the best available signal.

    Order: a reported nonzero percent, then battery voltage, then external
    voltage. Returns None when there is no signal; a percent is never
    fabricated.
    """
    reported: float | None = _to_float(percent)
    if reported is not None and math.isfinite(reported) and reported > 0:
        return max(0, min(100, round(reported)))

    for candidate in (voltage, external_voltage):
        volts: float | None = _to_float(candidate)
        if volts is not None and math.isfinite(volts) and volts > 0:
            return battery_percent_from_voltage(volts)

    return None


# =============================================================================
# Coordinates
# =============================================================================


def normalize_coordinates(
    raw_latitude: Any,
    raw_longitude: Any,
) -> tuple[float | None, float | None]:
    """
    Validate a coordinate pair.

    Missing values and exactly (0, 0) mean "no fix" and become (None, None).

    Raises:
        RecordValidationError: If a value is present but non-numeric,
            non-finite, or outside [-90, 90] / [-180, 180].
    """
    latitude: float | None = _to_float(raw_latitude)
    longitude: float | None = _to_float(raw_longitude)

    if latitude is None or longitude is None:
        return None, None

    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise RecordValidationError(
            f'Non-finite coordinates: ({raw_latitude!r}, {raw_longitude!r})'
        )

    if latitude == 0.0 and longitude == 0.0:
        return None, None

    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        raise RecordValidationError(
            f'Coordinates out of range: ({latitude}, {longitude})'
        )

    return latitude, longitude


# =============================================================================
# Quality
# =============================================================================


def score_quality(
    confidence: float,
    has_coordinates: bool,
    speed_implausible: bool = False,
) -> DataQuality:
    """
    Quality tier for a record.

    high: confidence >= 0.8 with coordinates. medium: confidence >= 0.5, or
    coordinates missing while everything else is sane. low: otherwise, and
    always when the speed was implausible.
    """
    if speed_implausible:
        return DataQuality.LOW
    if confidence >= HIGH_QUALITY_CONFIDENCE and has_coordinates:
        return DataQuality.HIGH
    if confidence >= IGNITION_ON_THRESHOLD or not has_coordinates:
        return DataQuality.MEDIUM
    return DataQuality.LOW


# =============================================================================
# Normalizer
# =============================================================================


class TelemetryNormalizer:
    """
    Configured normalizer.

    Holds only immutable configuration, so one instance can be shared freely.

    Example:
        >>> normalizer = TelemetryNormalizer(config.normalizer, utc_offset_hours=8)
        >>> position = normalizer.normalize({'deviceid': '123', 'status': 262151, ...})
    """

    def __init__(
        self,
        config: NormalizerConfig | None = None,
        utc_offset_hours: float = DEFAULT_UTC_OFFSET_HOURS,
    ) -> None:
        self._config: NormalizerConfig = config or NormalizerConfig()
        self._local_timezone: tzinfo = provider_timezone(utc_offset_hours)

    def normalize(
        self, raw: RawTelemetryRecord | Mapping[str, Any]
    ) -> NormalizedPosition:
        """
        Normalize one raw record.

        Args:
            raw: Parsed raw record, or the provider's JSON object for it.

        Returns:
            Immutable NormalizedPosition.

        Raises:
            RecordValidationError: If the record has no usable device id or
                timestamp, or carries impossible coordinates.
        """
        record: RawTelemetryRecord = self._parse_raw(raw)

        device_id: str = record.device_id.strip()
        if not device_id:
            raise RecordValidationError('Record has no device id', record=raw)

        try:
            timestamp: datetime | None = parse_provider_time(
                record.timestamp, self._local_timezone
            )
        except ValueError as error:
            raise RecordValidationError(
                f'Unusable timestamp for device {device_id}: {error}', record=raw
            ) from error
        if timestamp is None:
            raise RecordValidationError(
                f'Record for device {device_id} has no timestamp', record=raw
            )

        try:
            latitude, longitude = normalize_coordinates(
                record.latitude, record.longitude
            )
        except RecordValidationError as error:
            raise RecordValidationError(
                f'Device {device_id}: {error}', record=raw
            ) from error

        speed_kmh, speed_implausible = normalize_speed(record.speed, self._config)

        evidence: IgnitionEvidence = detect_ignition(
            status=record.status,
            status_text=record.status_text,
            speed_kmh=None if speed_implausible else speed_kmh,
            moving_speed_kmh=self._config.moving_speed_kmh,
        )

        diagnostics: list[str] = []
        if evidence.diagnostic:
            diagnostics.append(evidence.diagnostic)
        if speed_implausible:
            diagnostics.append(f'implausible speed {record.speed!r}')

        has_coordinates: bool = latitude is not None
        return NormalizedPosition(
            device_id=device_id,
            timestamp=timestamp,
            latitude=latitude,
            longitude=longitude,
            speed_kmh=speed_kmh,
            heading=self._normalize_heading(record.heading),
            battery_percent=resolve_battery_percent(
                record.battery_percent,
                record.battery_voltage,
                record.external_voltage,
            ),
            ignition_on=evidence.ignition_on,
            ignition_confidence=evidence.confidence,
            detection_method=evidence.method,
            data_quality=score_quality(
                evidence.confidence, has_coordinates, speed_implausible
            ),
            diagnostics=tuple(diagnostics),
        )

    @staticmethod
    def _parse_raw(raw: RawTelemetryRecord | Mapping[str, Any]) -> RawTelemetryRecord:
        if isinstance(raw, RawTelemetryRecord):
            return raw
        try:
            return RawTelemetryRecord.model_validate(dict(raw))
        except ValidationError as error:
            raise RecordValidationError(
                f'Malformed telemetry record: {error}', record=raw
            ) from error

    @staticmethod
    def _normalize_heading(raw_heading: Any) -> float | None:
        heading: float | None = _to_float(raw_heading)
        if heading is None or not math.isfinite(heading):
            return None
        if not 0.0 <= heading <= 360.0:
            return None
        return heading


def normalize(
    raw: RawTelemetryRecord | Mapping[str, Any],
    config: NormalizerConfig | None = None,
    utc_offset_hours: float = DEFAULT_UTC_OFFSET_HOURS,
) -> NormalizedPosition:
    """Normalize one raw record with the given (or default) configuration."""
    return TelemetryNormalizer(config, utc_offset_hours).normalize(raw)
