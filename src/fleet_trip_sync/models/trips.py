# fleet_trip_sync/models/trips.py
"""Trip model shared by the trip parser, the store and the sync engine."""

from datetime import datetime
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

__all__: list[str] = ['DistanceSource', 'StoredTrip', 'Trip']


class DistanceSource(str, Enum):
    """Where a trip's distance came from."""

    # Provider's accumulated path distance; authoritative
    PROVIDER = 'provider'
    # Great-circle estimate between endpoints; only when the provider omits it
    ESTIMATED = 'estimated'


class Trip(BaseModel):
    """
    One trip for one device.

    Duration is always end_time - start_time using the provider's own times.
    Each endpoint pair is independently either fully set or unavailable (None).
    Trips are only ever mutated to backfill missing endpoints.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str
    start_time: datetime
    end_time: datetime
    start_latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    start_longitude: float | None = Field(default=None, ge=-180.0, le=180.0)
    end_latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    end_longitude: float | None = Field(default=None, ge=-180.0, le=180.0)
    distance_km: float | None = Field(default=None, ge=0.0)
    distance_source: DistanceSource | None = None
    max_speed_kmh: float | None = Field(default=None, ge=0.0)
    avg_speed_kmh: float | None = Field(default=None, ge=0.0)

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def has_start(self) -> bool:
        return self.start_latitude is not None and self.start_longitude is not None

    @property
    def has_end(self) -> bool:
        return self.end_latitude is not None and self.end_longitude is not None

    @model_validator(mode='after')
    def validate_trip_shape(self) -> Self:
        """Reject inverted trips and half-set coordinate pairs."""
        if self.start_time.tzinfo is None or self.end_time.tzinfo is None:
            raise ValueError('trip times must be timezone-aware (UTC)')

        if self.end_time <= self.start_time:
            raise ValueError(
                f'end_time {self.end_time.isoformat()} is not after '
                f'start_time {self.start_time.isoformat()}'
            )

        if (self.start_latitude is None) != (self.start_longitude is None):
            raise ValueError('start coordinates must both be set or both be None')
        if (self.end_latitude is None) != (self.end_longitude is None):
            raise ValueError('end coordinates must both be set or both be None')

        if (self.distance_km is None) != (self.distance_source is None):
            raise ValueError('distance_km and distance_source go together')

        return self


class StoredTrip(BaseModel):
    """A trip as read back from the trip log, with its row identity."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    trip_id: int
    trip: Trip
    synced_at: datetime | None = None
