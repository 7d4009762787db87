# fleet_trip_sync/models/provider_payloads.py
"""
Provider payload models.

The provider returns loosely typed JSON whose field names drift between API
versions (`distance` vs `totaldistance`, `callat` vs `lat` vs `latitude`).
These models resolve every known spelling into one canonical field at parse
time, so nothing downstream ever has to ask "which key happened to exist".

Values are kept close to the wire: numbers may still arrive as strings and
timestamps as either epoch numbers or provider-local strings. Unit handling
and sanity checks belong to the normalizer and the trip parser.
"""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

__all__: list[str] = [
    'ProviderResponse',
    'ProviderSession',
    'RawScalar',
    'RawTelemetryRecord',
    'RawTimestamp',
    'RawTripRecord',
]

# Numeric wire values: a JSON number, a numeric string, or absent.
RawScalar = float | str | None

# Wire timestamps: epoch seconds/millis or 'yyyy-MM-dd HH:mm:ss' local time.
RawTimestamp = int | float | str | None


def _as_number(value: Any) -> float | None:
    """Numeric reading of a wire scalar; None when absent or not a number."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# =============================================================================
# Response Envelope
# =============================================================================


class ProviderResponse(BaseModel):
    """
    Decoded provider response.

    Every action answers with a JSON object carrying a numeric `status`
    (0 = success) and an optional `cause`. The rest of the body is
    action-specific and kept as-is in `body`.

    Attributes:
        action: Provider action that produced this response.
        status: Provider status code (0 on success).
        cause: Provider-supplied error description, if any.
        body: Full decoded JSON body.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    action: str
    status: int = 0
    cause: str | None = None
    body: dict[str, Any] = Field(default_factory=dict)

    @property
    def records(self) -> list[dict[str, Any]]:
        """Record list carried by list-style actions, empty when absent."""
        raw_records: Any = self.body.get('records')
        if not isinstance(raw_records, list):
            return []
        return [record for record in raw_records if isinstance(record, dict)]


class ProviderSession(BaseModel):
    """Session token issued by `login`, shared by every invocation via the store."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    token: str = Field(repr=False)
    server_id: str
    expires_at: datetime

    def is_valid_at(self, moment: datetime) -> bool:
        """True while the session has not yet expired."""
        return bool(self.token) and moment < self.expires_at


# =============================================================================
# Raw Records
# =============================================================================


class RawTelemetryRecord(BaseModel):
    """
    One raw position/status record as returned by `lastposition`.

    Exists only for the duration of a single normalization call.
    """

    model_config = ConfigDict(
        extra='ignore',
        frozen=True,
        coerce_numbers_to_str=True,
    )

    device_id: str = Field(validation_alias=AliasChoices('deviceid', 'device_id'))

    # Device fix time first, then server receive time
    gps_time: RawTimestamp = Field(
        default=None,
        validation_alias=AliasChoices('gpstime', 'devicetime', 'gps_time'),
    )
    server_time: RawTimestamp = Field(
        default=None,
        validation_alias=AliasChoices('updatetime', 'time', 'server_time'),
    )

    latitude: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices('callat', 'lat', 'latitude'),
    )
    longitude: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices('callon', 'lon', 'lng', 'longitude'),
    )
    speed: RawScalar = None
    heading: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices('direction', 'heading', 'course'),
    )

    battery_percent: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices('voltagepercent', 'battery_percent'),
    )
    battery_voltage: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices('voltagev', 'battery_voltage'),
    )
    external_voltage: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices('exvoltage', 'external_voltage'),
    )

    status: int | str | None = None
    status_text: str | None = Field(
        default=None,
        validation_alias=AliasChoices('strstatus', 'strstatusen', 'status_text'),
    )

    @property
    def timestamp(self) -> RawTimestamp:
        """Best available timestamp: device fix time, else server time."""
        if self.gps_time not in (None, '', 0):
            return self.gps_time
        return self.server_time


class RawTripRecord(BaseModel):
    """
    One raw trip as returned by `querytrips`.

    `distance` and `totaldistance` are both reported in meters depending on
    the API version; the first non-zero one wins and lands in `distance_m`.
    """

    model_config = ConfigDict(
        extra='ignore',
        frozen=True,
        coerce_numbers_to_str=True,
    )

    device_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices('deviceid', 'device_id'),
    )
    start_time: RawTimestamp = Field(
        default=None,
        validation_alias=AliasChoices('starttime', 'begintime', 'start_time'),
    )
    end_time: RawTimestamp = Field(
        default=None,
        validation_alias=AliasChoices('endtime', 'end_time'),
    )

    start_latitude: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices('startlat', 'startlatitude', 'start_latitude'),
    )
    start_longitude: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices(
            'startlon', 'startlng', 'startlongitude', 'start_longitude'
        ),
    )
    end_latitude: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices('endlat', 'endlatitude', 'end_latitude'),
    )
    end_longitude: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices(
            'endlon', 'endlng', 'endlongitude', 'end_longitude'
        ),
    )

    distance_m: RawScalar = None
    max_speed: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices('maxspeed', 'max_speed'),
    )
    avg_speed: RawScalar = Field(
        default=None,
        validation_alias=AliasChoices('avgspeed', 'averagespeed', 'avg_speed'),
    )

    @model_validator(mode='before')
    @classmethod
    def resolve_distance_spelling(cls, data: Any) -> Any:
        """Collapse `distance` / `totaldistance` into `distance_m`."""
        if not isinstance(data, dict) or 'distance_m' in data:
            return data

        resolved: dict[str, Any] = dict(data)
        distance: Any = resolved.pop('distance', None)
        total_distance: Any = resolved.pop('totaldistance', None)

        if _as_number(distance) not in (None, 0.0):
            resolved['distance_m'] = distance
        elif total_distance not in (None, ''):
            resolved['distance_m'] = total_distance
        else:
            resolved['distance_m'] = distance

        return resolved
