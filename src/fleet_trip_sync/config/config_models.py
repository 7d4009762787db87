# fleet_trip_sync/config/config_models.py
"""
Configuration models for the trip sync core.

This module provides the Pydantic models for the YAML configuration file that
controls provider access, shared rate limiting, trip synchronization, telemetry
normalization, storage, and logging.

Design Decisions:
-----------------
- All models use `extra='forbid'` to catch typos and invalid fields in YAML
  configuration files early, preventing silent misconfiguration.

- No logging occurs within this module because the logging configuration itself
  is defined here. Logging must be configured by the caller after loading config.

- Every tunable in the rate-limit, sync, and normalizer sections carries the
  operational default, so a config file only has to name what it changes.
  These are operator-adjustable constants, never negotiated at runtime.

- SecretStr is used for the provider password and token to prevent accidental
  exposure in logs, repr(), or error messages.

Usage:
------
    import yaml
    from fleet_trip_sync.config.config_models import SyncConfig

    with open('sync.yaml', 'r') as config_file:
        raw_config = yaml.safe_load(config_file)

    config = SyncConfig.model_validate(raw_config)
"""

from pathlib import Path
from typing import Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

# =============================================================================
# Public API
# =============================================================================

__all__: list[str] = [
    'CompressionType',
    'LogLevelName',
    'LoggingConfig',
    'NormalizerConfig',
    'ProviderConfig',
    'RateLimitConfig',
    'StorageConfig',
    'SyncConfig',
    'TripSyncConfig',
]

# =============================================================================
# Type Aliases
# =============================================================================

# Valid logging level names recognized by Python's logging module.
LogLevelName = Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

# Numeric equivalents of log level names for validation purposes.
LOG_LEVEL_VALUES: frozenset[int] = frozenset({10, 20, 30, 40, 50})

# Mapping from level name to numeric value, avoiding import of logging module
# in the model layer.
LOG_LEVEL_NAME_TO_INT: dict[LogLevelName, int] = {
    'DEBUG': 10,
    'INFO': 20,
    'WARNING': 30,
    'ERROR': 40,
    'CRITICAL': 50,
}

# Compression codecs accepted by pandas.to_parquet() with the pyarrow engine.
CompressionType = Literal['snappy', 'gzip', 'brotli', 'lz4', 'zstd'] | None


# =============================================================================
# Provider Configuration
# =============================================================================


class ProviderConfig(BaseModel):
    """Connection and session settings for the location-tracking provider.

    The provider exposes a single `openapi` endpoint parameterized by an
    `action` query parameter, an opaque session token, and a server/region
    identifier. Every call except `login` needs a token.

    Provider Status Codes:
        The provider reports application errors inside a 2xx JSON body via a
        numeric `status` field (0 = success). Codes listed in
        rate_limit_status_codes are treated as rate limiting (an IP-level ban
        follows if ignored); codes in session_expired_status_codes invalidate
        the stored session token.

    Attributes:
        base_url: API root URL without trailing slash.
        username: Account name used by login().
        password: Account password. Hashed with MD5 before sending, as the
            provider requires.
        token: Optional pre-issued session token. When set, login() is
            skipped until the provider reports the session expired.
        server_id: Server/region identifier sent with every call.
        request_timeout: [connect, read] timeout in seconds.
        verify_ssl: True, False, or path to a CA bundle.
        session_ttl_hours: How long a login token is considered valid.
        utc_offset_hours: Offset of the provider's local timezone, used for
            timestamp strings and for formatting query windows.
        rate_limit_status_codes: Provider status codes meaning "slow down".
        session_expired_status_codes: Provider status codes meaning the
            session token is no longer valid.
    """

    model_config = ConfigDict(extra='forbid')

    base_url: str = Field(
        description='Root API endpoint URL with scheme, without trailing slash',
    )
    username: str = Field(
        default='',
        description='Provider account name used for login',
    )
    password: SecretStr = Field(
        default=SecretStr(''),
        description='Provider account password (masked in logs and repr)',
    )
    token: SecretStr | None = Field(
        default=None,
        description='Optional pre-issued session token',
    )
    server_id: str = Field(
        default='1',
        description='Provider server/region identifier',
    )
    request_timeout: tuple[int, int] = Field(
        default=(10, 60),
        description='[connect_timeout, read_timeout] in seconds; both must be positive',
    )
    verify_ssl: bool | str = Field(
        default=True,
        description='False to disable SSL, True for system CA, or path to CA bundle',
    )
    session_ttl_hours: float = Field(
        default=24.0,
        gt=0.0,
        le=720.0,
        description='Lifetime of a login token in hours',
    )
    utc_offset_hours: float = Field(
        default=8.0,
        ge=-12.0,
        le=14.0,
        description='UTC offset of provider-local timestamps',
    )
    rate_limit_status_codes: tuple[int, ...] = Field(
        default=(8902,),
        description='Provider status codes that signal rate limiting',
    )
    session_expired_status_codes: tuple[int, ...] = Field(
        default=(9903,),
        description='Provider status codes that signal an expired session',
    )

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, base_url: str) -> str:
        """Require an http(s) scheme and strip any trailing slash."""
        if not base_url:
            raise ValueError('base_url cannot be empty')

        if not base_url.startswith(('http://', 'https://')):
            raise ValueError(
                f"base_url must start with 'http://' or 'https://', got: {base_url!r}"
            )

        return base_url.rstrip('/')

    @field_validator('request_timeout')
    @classmethod
    def validate_timeout_values_positive(
        cls, timeout: tuple[int, int]
    ) -> tuple[int, int]:
        """Ensure both timeout values are positive integers."""
        connect_timeout, read_timeout = timeout

        if connect_timeout <= 0:
            raise ValueError(
                f'connect_timeout must be positive, got: {connect_timeout}'
            )
        if read_timeout <= 0:
            raise ValueError(f'read_timeout must be positive, got: {read_timeout}')

        return timeout

    @field_validator('verify_ssl')
    @classmethod
    def validate_ssl_configuration(cls, verify_ssl: bool | str) -> bool | str:
        """When a CA bundle path is given, make sure it is an existing file."""
        if isinstance(verify_ssl, str):
            cert_path = Path(verify_ssl)

            if not cert_path.exists():
                raise ValueError(f'SSL certificate bundle file not found: {verify_ssl}')
            if not cert_path.is_file():
                raise ValueError(
                    f'SSL certificate path must be a file, not directory: {verify_ssl}'
                )

        return verify_ssl

    @model_validator(mode='after')
    def ensure_some_way_to_authenticate(self) -> Self:
        """Require either a pre-issued token or login credentials."""
        has_token: bool = (
            self.token is not None and bool(self.token.get_secret_value().strip())
        )
        has_login: bool = bool(self.username) and bool(
            self.password.get_secret_value()
        )

        if not has_token and not has_login:
            raise ValueError(
                'Provider needs either a token or both username and password'
            )

        return self


# =============================================================================
# Rate Limit Configuration
# =============================================================================


class RateLimitConfig(BaseModel):
    """Shared throttle settings for every provider call.

    The provider bans the calling IP when its ceiling is exceeded, and many
    independent invocations share that one budget. The limiter therefore keeps
    its state in the durable store and errs toward waiting.

    Backoff Schedule:
        After a rate-limit response on attempt n (0-based), every invocation
        waits `min(backoff_base_seconds * backoff_multiplier ** n,
        backoff_max_seconds)`. With the defaults: 1s, 2s, 4s.

    Attributes:
        max_burst_calls: Maximum calls inside one burst window.
        burst_window_seconds: Length of the sliding burst window.
        min_delay_seconds: Minimum spacing between any two calls.
        max_retries: Rate-limit retries for a single call before giving up.
        backoff_base_seconds: First backoff delay.
        backoff_multiplier: Growth factor between backoff delays.
        backoff_max_seconds: Cap on a single backoff delay.
        max_backoff_wait_seconds: Longest shared backoff a caller will sleep
            through; anything longer fails fast with RateLimited.
    """

    model_config = ConfigDict(extra='forbid')

    max_burst_calls: int = Field(default=5, ge=1, le=100)
    burst_window_seconds: float = Field(default=1.0, gt=0.0, le=60.0)
    min_delay_seconds: float = Field(default=0.2, ge=0.0, le=10.0)
    max_retries: int = Field(default=3, ge=0, le=10)
    backoff_base_seconds: float = Field(default=1.0, gt=0.0, le=60.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    backoff_max_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    max_backoff_wait_seconds: float = Field(default=30.0, ge=0.0, le=600.0)

    def backoff_delay(self, attempt_index: int) -> float:
        """Backoff delay in seconds after the given 0-based failed attempt."""
        delay: float = self.backoff_base_seconds * (
            self.backoff_multiplier**attempt_index
        )
        return min(delay, self.backoff_max_seconds)


# =============================================================================
# Trip Sync Configuration
# =============================================================================


class TripSyncConfig(BaseModel):
    """Settings for the trip synchronization engine.

    Window Selection:
        A device without a checkpoint gets a first sync covering the last
        first_sync_lookback_days. Afterwards each run fetches only from the
        stored cursor to the run start time.

    Fleet Sweeping:
        Only devices_per_run devices are handled per invocation, processed one
        after another with inter_device_delay_seconds between them, so a large
        fleet is swept across several scheduled runs.

    Dedup Tolerances:
        The time and distance tolerances are empirically chosen defaults, not
        derived bounds. Tune them if the provider's trip boundaries drift more.

    Attributes:
        device_ids: Fleet device identifiers to keep in sync.
        first_sync_lookback_days: History window for a device's first sync.
        devices_per_run: Maximum devices processed in one run.
        inter_device_delay_seconds: Pause between consecutive devices.
        stale_processing_minutes: Age after which a `processing` checkpoint is
            considered abandoned and resumable.
        backfill_window_minutes: Half-width of the position search window used
            to fill a missing trip endpoint.
        dedup_time_tolerance_seconds: Start/end time tolerance for treating two
            trips as the same trip.
        dedup_distance_tolerance: Relative distance tolerance (0.05 = 5%).
    """

    model_config = ConfigDict(extra='forbid')

    device_ids: list[str] = Field(default_factory=list)
    first_sync_lookback_days: int = Field(default=30, ge=1, le=365)
    devices_per_run: int = Field(default=5, ge=1, le=1000)
    inter_device_delay_seconds: float = Field(default=0.5, ge=0.0, le=60.0)
    stale_processing_minutes: float = Field(default=30.0, gt=0.0, le=1440.0)
    backfill_window_minutes: float = Field(default=15.0, ge=0.0, le=240.0)
    dedup_time_tolerance_seconds: float = Field(default=120.0, ge=0.0, le=3600.0)
    dedup_distance_tolerance: float = Field(default=0.05, ge=0.0, le=1.0)

    @field_validator('device_ids')
    @classmethod
    def strip_and_deduplicate_device_ids(cls, device_ids: list[str]) -> list[str]:
        """Drop blanks and repeated ids while preserving order."""
        seen: set[str] = set()
        cleaned: list[str] = []

        for device_id in device_ids:
            stripped: str = str(device_id).strip()
            if stripped and stripped not in seen:
                seen.add(stripped)
                cleaned.append(stripped)

        return cleaned


# =============================================================================
# Normalizer Configuration
# =============================================================================


class NormalizerConfig(BaseModel):
    """Thresholds used by the telemetry normalizer.

    Attributes:
        speed_ceiling_kmh: Largest plausible km/h value. Raw speeds above it
            are assumed to be in the finer unit and divided down.
        speed_unit_divisor: Divisor converting the finer unit to km/h
            (the provider's m/h -> km/h).
        moving_speed_kmh: Speed above which motion counts as ignition evidence.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    speed_ceiling_kmh: float = Field(default=200.0, gt=0.0)
    speed_unit_divisor: float = Field(default=1000.0, gt=1.0)
    moving_speed_kmh: float = Field(default=3.0, ge=0.0)


# =============================================================================
# Storage Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Where the durable store and the telemetry logs live.

    The coordination store (checkpoints, rate-limit state, provider session,
    trip log) lives in a SQL database reachable by every invocation. The
    position history is an append-only, date-partitioned Parquet directory and
    the latest-position projection a single Parquet file.

    Attributes:
        database_url: SQLAlchemy URL of the coordination store.
        position_history_path: Directory holding `date=YYYY-MM-DD/` partitions.
        latest_positions_path: Parquet file with one row per device.
        parquet_compression: Compression codec for Parquet writes.
    """

    model_config = ConfigDict(extra='forbid')

    database_url: str = Field(default='sqlite:///data/fleet_trip_sync.db')
    position_history_path: Path = Field(default=Path('data/position_history'))
    latest_positions_path: Path = Field(default=Path('data/latest_positions.parquet'))
    parquet_compression: CompressionType = Field(default='snappy')

    @field_validator('latest_positions_path', mode='before')
    @classmethod
    def normalize_parquet_path(cls, path_value: str | Path) -> Path:
        """Append the .parquet extension if it is missing."""
        path_string: str = str(path_value)

        if not path_string.lower().endswith('.parquet'):
            path_string = f'{path_string}.parquet'

        return Path(path_string)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Configuration for application logging output.

    Console output is always enabled; file output is enabled by providing a
    file_path. The file level defaults to DEBUG when only a path is given.

    Attributes:
        file_path: Path to log file. None disables file logging. Extension
            .log is appended automatically if missing.
        console_level: Minimum log level for console output.
        file_level: Minimum log level for file output.
    """

    model_config = ConfigDict(extra='forbid')

    file_path: Path | None = Field(default=None)
    console_level: LogLevelName | int = Field(default='INFO')
    file_level: LogLevelName | int | None = Field(default=None)

    @field_validator('file_path', mode='before')
    @classmethod
    def normalize_log_file_path(cls, path_value: str | Path | None) -> Path | None:
        """Normalize path and ensure .log extension."""
        if path_value is None:
            return None

        path_string: str = str(path_value)

        if not path_string.lower().endswith('.log'):
            path_string = f'{path_string}.log'

        return Path(path_string)

    @field_validator('console_level', 'file_level', mode='after')
    @classmethod
    def validate_numeric_log_level(
        cls, level_value: LogLevelName | int | None
    ) -> LogLevelName | int | None:
        """Integer levels must be one of the standard logging constants."""
        if level_value is None or isinstance(level_value, str):
            return level_value

        if level_value not in LOG_LEVEL_VALUES:
            raise ValueError(
                f'Numeric log level must be one of {sorted(LOG_LEVEL_VALUES)}, '
                f'got: {level_value}'
            )

        return level_value

    @model_validator(mode='after')
    def ensure_file_logging_configuration_consistency(self) -> Self:
        """Default file_level to DEBUG; reject a file_level without a path."""
        if self.file_path is not None and self.file_level is None:
            self.file_level = 'DEBUG'

        if self.file_level is not None and self.file_path is None:
            raise ValueError(
                'file_level is specified but file_path is missing. '
                'Provide file_path to enable file logging, or remove file_level.'
            )

        return self

    def get_console_level_int(self) -> int:
        """Console level as a logging module integer."""
        if isinstance(self.console_level, int):
            return self.console_level
        return LOG_LEVEL_NAME_TO_INT[self.console_level]

    def get_file_level_int(self) -> int | None:
        """File level as a logging module integer, or None when disabled."""
        if self.file_level is None:
            return None
        if isinstance(self.file_level, int):
            return self.file_level
        return LOG_LEVEL_NAME_TO_INT[self.file_level]


# =============================================================================
# Root Configuration
# =============================================================================


class SyncConfig(BaseModel):
    """Root configuration model for the trip sync core.

    Only the provider section is mandatory; every other section falls back to
    its operational defaults.

    Attributes:
        provider: Provider connection and session settings.
        rate_limit: Shared throttle settings.
        sync: Trip synchronization settings.
        normalizer: Telemetry normalization thresholds.
        storage: Store and telemetry log locations.
        logging: Application logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    provider: ProviderConfig
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    sync: TripSyncConfig = Field(default_factory=TripSyncConfig)
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
