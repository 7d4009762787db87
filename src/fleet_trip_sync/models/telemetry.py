# fleet_trip_sync/models/telemetry.py
"""
Normalized telemetry models.

NormalizedPosition is the single output shape of the normalizer. It is created
once per raw record and never changed afterwards; the position history log
appends it and the latest-position projection upserts it.
"""

from datetime import datetime
from enum import Enum
from typing import Final, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

__all__: list[str] = [
    'IGNITION_ON_THRESHOLD',
    'DataQuality',
    'DetectionMethod',
    'IgnitionEvidence',
    'NormalizedPosition',
]

# Ignition is ON iff the accumulated confidence reaches this value.
IGNITION_ON_THRESHOLD: Final[float] = 0.5


class DetectionMethod(str, Enum):
    """Which evidence path decided the ignition state."""

    STATUS_BIT = 'status_bit'
    STRING_PARSE = 'string_parse'
    SPEED_INFERENCE = 'speed_inference'
    MULTI_SIGNAL = 'multi_signal'
    UNKNOWN = 'unknown'


class DataQuality(str, Enum):
    """Coarse trust label attached to every normalized record."""

    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


class IgnitionEvidence(BaseModel):
    """
    Structured result of ignition detection.

    Attributes:
        method: Evidence path that produced the decision.
        confidence: Accumulated evidence in [0, 1].
        ignition_on: True iff confidence >= IGNITION_ON_THRESHOLD.
        signals: Names of the signals that fired, in evaluation order
            (e.g. 'base_bit', 'extended_bit', 'speed', 'status_text').
        base_status: Lower 16 bits of the status word, when usable.
        extended_status: Upper 16 bits of the status word, when usable.
        diagnostic: Human-readable note for weak or invalid evidence.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    method: DetectionMethod
    confidence: float = Field(ge=0.0, le=1.0)
    ignition_on: bool
    signals: tuple[str, ...] = ()
    base_status: int | None = None
    extended_status: int | None = None
    diagnostic: str | None = None

    @model_validator(mode='after')
    def ignition_follows_confidence(self) -> Self:
        """Keep the ON decision tied to the threshold."""
        if self.ignition_on != (self.confidence >= IGNITION_ON_THRESHOLD):
            raise ValueError(
                f'ignition_on={self.ignition_on} contradicts '
                f'confidence={self.confidence}'
            )
        return self


class NormalizedPosition(BaseModel):
    """
    One validated position/status sample.

    Unavailable coordinates are carried as None on both latitude and
    longitude, never as (0, 0).
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str
    timestamp: datetime
    latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, ge=-180.0, le=180.0)
    speed_kmh: float | None = Field(default=None, ge=0.0)
    heading: float | None = None
    battery_percent: int | None = Field(default=None, ge=0, le=100)
    ignition_on: bool
    ignition_confidence: float = Field(ge=0.0, le=1.0)
    detection_method: DetectionMethod
    data_quality: DataQuality
    diagnostics: tuple[str, ...] = ()

    @property
    def has_fix(self) -> bool:
        """True when the sample carries a usable coordinate pair."""
        return self.latitude is not None and self.longitude is not None

    @model_validator(mode='after')
    def coordinates_come_in_pairs(self) -> Self:
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError('latitude and longitude must both be set or both be None')
        if self.timestamp.tzinfo is None:
            raise ValueError('timestamp must be timezone-aware (UTC)')
        return self
