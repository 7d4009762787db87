# fleet_trip_sync/timestamps.py
"""
Provider timestamp conversion.

The provider mixes epoch values (seconds or milliseconds, depending on the
action and firmware) with 'yyyy-MM-dd HH:mm:ss' strings in its own local
timezone. Everything inside the core is a timezone-aware UTC datetime; these
helpers are the only place the two worlds meet.
"""

import math
from datetime import UTC, datetime, timedelta, timezone, tzinfo
from typing import Final

__all__: list[str] = [
    'EPOCH_MILLIS_THRESHOLD',
    'format_provider_time',
    'parse_provider_time',
    'provider_timezone',
]

# Epoch values below 2000-01-01T00:00:00Z expressed in milliseconds are seconds.
EPOCH_MILLIS_THRESHOLD: Final[int] = 946_684_800_000

PROVIDER_TIME_FORMAT: Final[str] = '%Y-%m-%d %H:%M:%S'

_FALLBACK_FORMATS: Final[tuple[str, ...]] = (
    '%Y/%m/%d %H:%M:%S',
    '%Y-%m-%d %H:%M',
    '%Y/%m/%d %H:%M',
)


def provider_timezone(utc_offset_hours: float) -> tzinfo:
    """Fixed-offset timezone for provider-local timestamps."""
    return timezone(timedelta(hours=utc_offset_hours))


def _from_epoch(value: float) -> datetime:
    if not math.isfinite(value) or value < 0:
        raise ValueError(f'Invalid epoch timestamp: {value!r}')

    seconds: float = value / 1000.0 if value >= EPOCH_MILLIS_THRESHOLD else value
    try:
        return datetime.fromtimestamp(seconds, UTC)
    except (OverflowError, OSError) as error:
        raise ValueError(f'Epoch timestamp out of range: {value!r}') from error


def parse_provider_time(
    value: int | float | str | None,
    local_timezone: tzinfo,
) -> datetime | None:
    """
    Convert a provider timestamp to an aware UTC datetime.

    Args:
        value: Epoch seconds, epoch milliseconds, a digit string of either, or
            a provider-local date-time string. Strings carrying an explicit
            offset are honored as such.
        local_timezone: Timezone applied to naive strings.

    Returns:
        UTC datetime, or None when the value is absent (None, '' or 0).

    Raises:
        ValueError: If the value is present but cannot be interpreted.
    """
    if value is None or value == '' or value == 0:
        return None

    if isinstance(value, bool):
        raise ValueError(f'Boolean is not a timestamp: {value!r}')

    if isinstance(value, int | float):
        return _from_epoch(float(value))

    text: str = value.strip()
    if not text:
        return None

    if text.isdigit():
        if int(text) == 0:
            return None
        return _from_epoch(float(text))

    parsed: datetime | None = None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in _FALLBACK_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        raise ValueError(f'Unrecognized timestamp format: {value!r}')

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=local_timezone)

    return parsed.astimezone(UTC)


def format_provider_time(moment: datetime, local_timezone: tzinfo) -> str:
    """Render an aware datetime as a provider-local 'yyyy-MM-dd HH:mm:ss' string."""
    if moment.tzinfo is None:
        raise ValueError(f'Naive datetime cannot be converted: {moment!r}')
    return moment.astimezone(local_timezone).strftime(PROVIDER_TIME_FORMAT)
