# fleet_trip_sync/trip_parser.py
"""
Provider trip records -> Trip.

Distance Policy:
----------------
The provider's reported distance is the accumulated path length and is far
more accurate than anything computable from two endpoints, so it is always
used as-is when present (meters -> km). Only when the provider omits it
entirely is a great-circle estimate between the endpoints used, and the trip
is marked DistanceSource.ESTIMATED so consumers can tell the two apart.

Duration is never stored independently: it is end_time - start_time using the
provider's own times.
"""

import math
from collections.abc import Mapping
from datetime import datetime, tzinfo
from typing import Any, Final

from pydantic import ValidationError

from fleet_trip_sync.config import NormalizerConfig
from fleet_trip_sync.errors import RecordValidationError
from fleet_trip_sync.models import DistanceSource, RawTripRecord, Trip
from fleet_trip_sync.normalizer import normalize_coordinates, normalize_speed
from fleet_trip_sync.timestamps import parse_provider_time

__all__: list[str] = ['TripParser', 'haversine_km']

EARTH_RADIUS_KM: Final[float] = 6371.0
METERS_PER_KM: Final[float] = 1000.0


def haversine_km(
    latitude_1: float,
    longitude_1: float,
    latitude_2: float,
    longitude_2: float,
) -> float:
    """Great-circle distance in kilometers between two WGS84 points."""
    phi_1: float = math.radians(latitude_1)
    phi_2: float = math.radians(latitude_2)
    delta_phi: float = math.radians(latitude_2 - latitude_1)
    delta_lambda: float = math.radians(longitude_2 - longitude_1)

    a: float = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi_1) * math.cos(phi_2) * math.sin(delta_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


class TripParser:
    """
    Parses `querytrips` records for one device into validated Trips.

    Args:
        local_timezone: Provider-local timezone for timestamp strings.
        normalizer_config: Speed unit thresholds shared with the normalizer.
    """

    def __init__(
        self,
        local_timezone: tzinfo,
        normalizer_config: NormalizerConfig | None = None,
    ) -> None:
        self._local_timezone: tzinfo = local_timezone
        self._normalizer_config: NormalizerConfig = (
            normalizer_config or NormalizerConfig()
        )

    def parse(self, raw: RawTripRecord | Mapping[str, Any], device_id: str) -> Trip:
        """
        Parse one raw trip.

        Args:
            raw: Provider trip record.
            device_id: Device the trip list was requested for; used when the
                record itself does not name a device.

        Raises:
            RecordValidationError: If times are missing, unreadable or
                inverted, or an endpoint has impossible coordinates.
        """
        record: RawTripRecord = self._parse_raw(raw)
        trip_device_id: str = (record.device_id or '').strip() or device_id

        start_time: datetime = self._required_time(record.start_time, 'start', raw)
        end_time: datetime = self._required_time(record.end_time, 'end', raw)

        if end_time <= start_time:
            raise RecordValidationError(
                f'Trip for device {trip_device_id} ends at {end_time.isoformat()} '
                f'before it starts at {start_time.isoformat()}',
                record=raw,
            )

        try:
            start_latitude, start_longitude = normalize_coordinates(
                record.start_latitude, record.start_longitude
            )
            end_latitude, end_longitude = normalize_coordinates(
                record.end_latitude, record.end_longitude
            )
        except RecordValidationError as error:
            raise RecordValidationError(
                f'Trip for device {trip_device_id}: {error}', record=raw
            ) from error

        distance_km, distance_source = self._resolve_distance(
            record.distance_m,
            (start_latitude, start_longitude),
            (end_latitude, end_longitude),
        )

        return Trip(
            device_id=trip_device_id,
            start_time=start_time,
            end_time=end_time,
            start_latitude=start_latitude,
            start_longitude=start_longitude,
            end_latitude=end_latitude,
            end_longitude=end_longitude,
            distance_km=distance_km,
            distance_source=distance_source,
            max_speed_kmh=self._speed(record.max_speed),
            avg_speed_kmh=self._speed(record.avg_speed),
        )

    def parse_many(
        self,
        records: list[dict[str, Any]],
        device_id: str,
    ) -> tuple[list[Trip], list[RecordValidationError]]:
        """Parse a trip list, collecting per-record failures instead of raising."""
        trips: list[Trip] = []
        rejected: list[RecordValidationError] = []

        for raw in records:
            try:
                trips.append(self.parse(raw, device_id))
            except RecordValidationError as error:
                rejected.append(error)

        return trips, rejected

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_raw(raw: RawTripRecord | Mapping[str, Any]) -> RawTripRecord:
        if isinstance(raw, RawTripRecord):
            return raw
        try:
            return RawTripRecord.model_validate(dict(raw))
        except ValidationError as error:
            raise RecordValidationError(
                f'Malformed trip record: {error}', record=raw
            ) from error

    def _required_time(self, value: Any, label: str, raw: Any) -> datetime:
        try:
            parsed: datetime | None = parse_provider_time(value, self._local_timezone)
        except ValueError as error:
            raise RecordValidationError(
                f'Unreadable trip {label} time: {error}', record=raw
            ) from error

        if parsed is None:
            raise RecordValidationError(f'Trip has no {label} time', record=raw)
        return parsed

    @staticmethod
    def _resolve_distance(
        raw_distance_m: Any,
        start: tuple[float | None, float | None],
        end: tuple[float | None, float | None],
    ) -> tuple[float | None, DistanceSource | None]:
        distance_m: float | None = None
        if raw_distance_m not in (None, ''):
            try:
                distance_m = float(raw_distance_m)
            except (TypeError, ValueError):
                distance_m = None

        if distance_m is not None and math.isfinite(distance_m) and distance_m >= 0:
            return round(distance_m / METERS_PER_KM, 3), DistanceSource.PROVIDER

        start_latitude, start_longitude = start
        end_latitude, end_longitude = end
        if (
            start_latitude is None
            or start_longitude is None
            or end_latitude is None
            or end_longitude is None
        ):
            return None, None

        estimate: float = haversine_km(
            start_latitude, start_longitude, end_latitude, end_longitude
        )
        return round(estimate, 3), DistanceSource.ESTIMATED

    def _speed(self, raw_speed: Any) -> float | None:
        speed_kmh, implausible = normalize_speed(raw_speed, self._normalizer_config)
        return None if implausible else speed_kmh
