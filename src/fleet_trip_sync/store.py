# fleet_trip_sync/store.py
"""
Durable coordination store.

Every scheduled invocation is a short-lived process that shares nothing in
memory with any other invocation. This store is therefore the only shared
mutable resource: per-device sync checkpoints, the global rate-limit state,
the provider session, and the trip log all live here.

Design Decisions:
-----------------
- SQLAlchemy 2.0 ORM with a plain SQL database (SQLite file by default, any
  SQLAlchemy URL in production), so several processes on one host or many
  hosts against one server can coordinate without extra infrastructure.

- Small key/value `app_state` table with JSON values for singleton state
  (rate limiter, provider session, poller cursor). Writes are
  read-modify-write with last-writer-wins; the rate limiter is built to
  tolerate that.

- Trips carry a strict UNIQUE(device_id, start_time, end_time) constraint as
  the last line of defense behind the engine's fuzzy dedup. An insert that
  trips it is reported as "already present", never as an error.

- Datetimes are stored as UTC and always come back timezone-aware, whatever
  the backend does with time zones.

- Every SQLAlchemyError surfaces as StoreError. Without the store, coordination
  correctness cannot be guaranteed, so callers treat it as fatal for the run.

Usage:
------
    store = SyncCheckpointStore('sqlite:///data/fleet_trip_sync.db')
    checkpoint = store.get_checkpoint('358899051234567')
    state = store.load_rate_limit_state()
"""

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any, Final, Self

from pydantic import ValidationError
from sqlalchemy import (
    JSON,
    DateTime,
    Engine,
    Float,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    sessionmaker,
)

from fleet_trip_sync.config import StorageConfig
from fleet_trip_sync.errors import StoreError
from fleet_trip_sync.models import (
    CheckpointStatus,
    DistanceSource,
    ProviderSession,
    RateLimitState,
    StoredTrip,
    SyncCheckpoint,
    Trip,
)

__all__: list[str] = ['SyncCheckpointStore']

logger: logging.Logger = logging.getLogger(__name__)

# app_state keys
RATE_LIMIT_STATE_KEY: Final[str] = 'rate_limit_state'
PROVIDER_SESSION_KEY: Final[str] = 'provider_session'

MAX_ERROR_MESSAGE_LENGTH: Final[int] = 1000


# =============================================================================
# Column Types
# =============================================================================


class UTCDateTime(TypeDecorator[datetime]):
    """DateTime column that only accepts aware values and returns UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: datetime | None, dialect: Any
    ) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f'Naive datetime cannot be stored: {value!r}')
        return value.astimezone(UTC)

    def process_result_value(
        self, value: datetime | None, dialect: Any
    ) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# =============================================================================
# ORM Tables
# =============================================================================


class Base(DeclarativeBase):
    pass


class CheckpointRow(Base):
    __tablename__ = 'sync_checkpoints'

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    cursor: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default='idle')
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trips_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AppStateRow(Base):
    __tablename__ = 'app_state'

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class TripRow(Base):
    __tablename__ = 'trips'
    __table_args__ = (
        UniqueConstraint(
            'device_id', 'start_time', 'end_time', name='uq_trips_device_start_end'
        ),
        Index('ix_trips_device_start', 'device_id', 'start_time'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    start_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    distance_source: Mapped[str | None] = mapped_column(String(16), nullable=True)
    duration_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    max_speed_kmh: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_speed_kmh: Mapped[float | None] = mapped_column(Float, nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


# =============================================================================
# Row <-> Model Conversion
# =============================================================================


def _checkpoint_from_row(row: CheckpointRow) -> SyncCheckpoint:
    return SyncCheckpoint(
        device_id=row.device_id,
        cursor=row.cursor,
        status=CheckpointStatus(row.status),
        last_error=row.last_error,
        last_sync_at=row.last_sync_at,
        updated_at=row.updated_at,
        trips_synced=row.trips_synced,
    )


def _stored_trip_from_row(row: TripRow) -> StoredTrip:
    trip: Trip = Trip(
        device_id=row.device_id,
        start_time=row.start_time,
        end_time=row.end_time,
        start_latitude=row.start_latitude,
        start_longitude=row.start_longitude,
        end_latitude=row.end_latitude,
        end_longitude=row.end_longitude,
        distance_km=row.distance_km,
        distance_source=(
            DistanceSource(row.distance_source) if row.distance_source else None
        ),
        max_speed_kmh=row.max_speed_kmh,
        avg_speed_kmh=row.avg_speed_kmh,
    )
    return StoredTrip(trip_id=row.id, trip=trip, synced_at=row.synced_at)


def _trip_to_row(trip: Trip, synced_at: datetime) -> TripRow:
    return TripRow(
        device_id=trip.device_id,
        start_time=trip.start_time,
        end_time=trip.end_time,
        start_latitude=trip.start_latitude,
        start_longitude=trip.start_longitude,
        end_latitude=trip.end_latitude,
        end_longitude=trip.end_longitude,
        distance_km=trip.distance_km,
        distance_source=trip.distance_source.value if trip.distance_source else None,
        duration_seconds=trip.duration_seconds,
        max_speed_kmh=trip.max_speed_kmh,
        avg_speed_kmh=trip.avg_speed_kmh,
        synced_at=synced_at,
    )


# =============================================================================
# Store
# =============================================================================


class SyncCheckpointStore:
    """
    Durable store for checkpoints, rate-limit state, session and trips.

    All timestamps are passed in by the caller rather than read from the
    system clock, so one run uses one consistent notion of "now".

    Thread Safety:
        Each public method opens and closes its own short transaction. Safe to
        share between threads; designed to be shared between processes.
    """

    def __init__(self, database_url: str) -> None:
        """
        Connect to the store and create missing tables.

        Args:
            database_url: SQLAlchemy database URL.

        Raises:
            StoreError: If the database cannot be reached or initialized.
        """
        self._database_url: str = database_url

        try:
            self._ensure_sqlite_directory(database_url)
            self._engine: Engine = create_engine(database_url)
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as error:
            raise StoreError(f'Failed to initialize store: {error}') from error

        self._session_factory: sessionmaker[Session] = sessionmaker(
            self._engine, expire_on_commit=False
        )

        logger.info(
            'Initialized SyncCheckpointStore: %s',
            make_url(database_url).render_as_string(hide_password=True),
        )

    @classmethod
    def from_config(cls, storage_config: StorageConfig) -> Self:
        return cls(storage_config.database_url)

    @staticmethod
    def _ensure_sqlite_directory(database_url: str) -> None:
        """Create the parent directory of a file-backed SQLite database."""
        url = make_url(database_url)
        if url.get_backend_name() != 'sqlite':
            return
        if url.database in (None, '', ':memory:'):
            return
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Dispose the connection pool."""
        self._engine.dispose()
        logger.debug('SyncCheckpointStore closed')

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Session scope committing on success and mapping failures to StoreError."""
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as error:
            session.rollback()
            logger.exception('Store operation failed: %s', error)
            raise StoreError(f'Store operation failed: {error}') from error
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    def get_checkpoint(self, device_id: str) -> SyncCheckpoint | None:
        """Return the device's checkpoint, or None if it was never synced."""
        with self._session() as session:
            row: CheckpointRow | None = session.get(CheckpointRow, device_id)
            return _checkpoint_from_row(row) if row is not None else None

    def list_checkpoints(
        self, device_ids: Sequence[str] | None = None
    ) -> dict[str, SyncCheckpoint]:
        """Checkpoints keyed by device id, optionally limited to device_ids."""
        statement = select(CheckpointRow)
        if device_ids is not None:
            statement = statement.where(CheckpointRow.device_id.in_(list(device_ids)))

        with self._session() as session:
            rows: Sequence[CheckpointRow] = session.scalars(statement).all()
            return {row.device_id: _checkpoint_from_row(row) for row in rows}

    def save_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        """Insert or replace a checkpoint row."""
        with self._session() as session:
            session.merge(
                CheckpointRow(
                    device_id=checkpoint.device_id,
                    cursor=checkpoint.cursor,
                    status=checkpoint.status.value,
                    last_error=checkpoint.last_error,
                    last_sync_at=checkpoint.last_sync_at,
                    updated_at=checkpoint.updated_at,
                    trips_synced=checkpoint.trips_synced,
                )
            )

    def mark_processing(
        self,
        device_id: str,
        now: datetime,
        initial_cursor: datetime | None = None,
    ) -> SyncCheckpoint:
        """
        Claim a device for this run.

        Creates the checkpoint with cursor=initial_cursor when none exists
        (first sync); otherwise keeps the stored cursor untouched.
        """
        with self._session() as session:
            row: CheckpointRow | None = session.get(CheckpointRow, device_id)
            if row is None:
                row = CheckpointRow(
                    device_id=device_id,
                    cursor=initial_cursor,
                    trips_synced=0,
                )
                session.add(row)
                logger.info(
                    'Created checkpoint for device %s with cursor %s',
                    device_id,
                    initial_cursor.isoformat() if initial_cursor else None,
                )
            row.status = CheckpointStatus.PROCESSING.value
            row.updated_at = now
            session.flush()
            return _checkpoint_from_row(row)

    def mark_succeeded(
        self,
        device_id: str,
        cursor: datetime,
        now: datetime,
        trips_inserted: int = 0,
    ) -> None:
        """Advance the cursor and return the device to idle."""
        with self._session() as session:
            row: CheckpointRow | None = session.get(CheckpointRow, device_id)
            if row is None:
                row = CheckpointRow(device_id=device_id, trips_synced=0)
                session.add(row)
            row.cursor = cursor
            row.status = CheckpointStatus.IDLE.value
            row.last_error = None
            row.last_sync_at = now
            row.updated_at = now
            row.trips_synced = (row.trips_synced or 0) + trips_inserted

    def mark_failed(self, device_id: str, error_message: str, now: datetime) -> None:
        """Record a failure; the cursor is left where it was."""
        with self._session() as session:
            row: CheckpointRow | None = session.get(CheckpointRow, device_id)
            if row is None:
                row = CheckpointRow(device_id=device_id, trips_synced=0)
                session.add(row)
            row.status = CheckpointStatus.ERROR.value
            row.last_error = error_message[:MAX_ERROR_MESSAGE_LENGTH]
            row.updated_at = now

    # -------------------------------------------------------------------------
    # Singleton State
    # -------------------------------------------------------------------------

    def get_state(self, key: str) -> Any | None:
        """Raw JSON value stored under key, or None."""
        with self._session() as session:
            row: AppStateRow | None = session.get(AppStateRow, key)
            return row.value if row is not None else None

    def set_state(self, key: str, value: Any, now: datetime | None = None) -> None:
        """Replace the JSON value stored under key (last writer wins)."""
        with self._session() as session:
            session.merge(
                AppStateRow(
                    key=key,
                    value=value,
                    updated_at=now or datetime.now(UTC),
                )
            )

    def delete_state(self, key: str) -> None:
        with self._session() as session:
            session.execute(delete(AppStateRow).where(AppStateRow.key == key))

    def load_rate_limit_state(self) -> RateLimitState:
        """Current throttle state; an empty state when absent or unreadable."""
        raw_state: Any = self.get_state(RATE_LIMIT_STATE_KEY)
        if raw_state is None:
            return RateLimitState()

        try:
            return RateLimitState.model_validate(raw_state)
        except ValidationError:
            logger.warning('Discarding unreadable rate limit state: %r', raw_state)
            return RateLimitState()

    def save_rate_limit_state(self, state: RateLimitState) -> None:
        self.set_state(RATE_LIMIT_STATE_KEY, state.model_dump(mode='json'))

    def load_session(self) -> ProviderSession | None:
        raw_session: Any = self.get_state(PROVIDER_SESSION_KEY)
        if raw_session is None:
            return None

        try:
            return ProviderSession.model_validate(raw_session)
        except ValidationError:
            logger.warning('Discarding unreadable provider session')
            return None

    def save_session(self, provider_session: ProviderSession) -> None:
        self.set_state(
            PROVIDER_SESSION_KEY,
            {
                'token': provider_session.token,
                'server_id': provider_session.server_id,
                'expires_at': provider_session.expires_at.isoformat(),
            },
        )

    def clear_session(self) -> None:
        self.delete_state(PROVIDER_SESSION_KEY)
        logger.info('Cleared stored provider session')

    # -------------------------------------------------------------------------
    # Trip Log
    # -------------------------------------------------------------------------

    def insert_trip(self, trip: Trip, synced_at: datetime) -> int | None:
        """
        Insert a trip.

        Returns:
            The new row id, or None when an identical
            (device_id, start_time, end_time) row already exists.

        Raises:
            StoreError: For any other database failure.
        """
        session: Session = self._session_factory()
        try:
            row: TripRow = _trip_to_row(trip, synced_at)
            session.add(row)
            session.commit()
            return row.id
        except IntegrityError:
            session.rollback()
            logger.debug(
                'Exact duplicate trip for device %s at %s rejected by constraint',
                trip.device_id,
                trip.start_time.isoformat(),
            )
            return None
        except SQLAlchemyError as error:
            session.rollback()
            logger.exception('Failed to insert trip: %s', error)
            raise StoreError(f'Failed to insert trip: {error}') from error
        finally:
            session.close()

    def find_trips_starting_between(
        self,
        device_id: str,
        earliest_start: datetime,
        latest_start: datetime,
    ) -> list[StoredTrip]:
        """Stored trips for device_id whose start falls in the inclusive range."""
        statement = (
            select(TripRow)
            .where(TripRow.device_id == device_id)
            .where(TripRow.start_time >= earliest_start)
            .where(TripRow.start_time <= latest_start)
            .order_by(TripRow.start_time)
        )
        with self._session() as session:
            return [_stored_trip_from_row(row) for row in session.scalars(statement)]

    def fill_trip_endpoints(
        self,
        trip_id: int,
        start: tuple[float, float] | None = None,
        end: tuple[float, float] | None = None,
    ) -> bool:
        """
        Fill endpoint coordinates that are currently unavailable.

        Endpoints already present are never overwritten; this is the only
        mutation trips ever receive.

        Returns:
            True if at least one endpoint was filled.
        """
        with self._session() as session:
            row: TripRow | None = session.get(TripRow, trip_id)
            if row is None:
                return False

            filled: bool = False
            if start is not None and row.start_latitude is None:
                row.start_latitude, row.start_longitude = start
                filled = True
            if end is not None and row.end_latitude is None:
                row.end_latitude, row.end_longitude = end
                filled = True
            return filled

    def list_trips(
        self,
        device_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[StoredTrip]:
        """Stored trips ordered by device and start time, optionally filtered."""
        statement = select(TripRow).order_by(TripRow.device_id, TripRow.start_time)
        if device_id is not None:
            statement = statement.where(TripRow.device_id == device_id)
        if start is not None:
            statement = statement.where(TripRow.start_time >= start)
        if end is not None:
            statement = statement.where(TripRow.start_time <= end)

        with self._session() as session:
            return [_stored_trip_from_row(row) for row in session.scalars(statement)]

    def list_trips_missing_endpoints(
        self,
        device_id: str | None = None,
        limit: int | None = None,
    ) -> list[StoredTrip]:
        """Trips with at least one unavailable endpoint, oldest first."""
        statement = (
            select(TripRow)
            .where(
                (TripRow.start_latitude.is_(None)) | (TripRow.end_latitude.is_(None))
            )
            .order_by(TripRow.start_time)
        )
        if device_id is not None:
            statement = statement.where(TripRow.device_id == device_id)
        if limit is not None:
            statement = statement.limit(limit)

        with self._session() as session:
            return [_stored_trip_from_row(row) for row in session.scalars(statement)]

    def delete_trips(self, trip_ids: Sequence[int]) -> int:
        """Delete trips by id. Reserved for duplicate maintenance."""
        if not trip_ids:
            return 0

        with self._session() as session:
            result = session.execute(
                delete(TripRow).where(TripRow.id.in_(list(trip_ids)))
            )
            deleted: int = result.rowcount or 0

        logger.info('Deleted %d trip rows', deleted)
        return deleted

    def count_trips(self, device_id: str | None = None) -> int:
        statement = select(func.count()).select_from(TripRow)
        if device_id is not None:
            statement = statement.where(TripRow.device_id == device_id)

        with self._session() as session:
            return int(session.scalar(statement) or 0)
