# fleet_trip_sync/rate_limiter.py
"""
Store-backed throttle shared by every invocation.

The provider enforces one rate budget across the whole account and answers
excess with an IP-level ban. Invocations are independent, short-lived
processes, so the throttle cannot live in memory: its state is a single
record in the durable store, read before and written after every call.

Algorithm (per call):
    1. Read RateLimitState. If backoff_until is in the future, sleep until it
       passes, or raise RateLimited when the wait exceeds
       max_backoff_wait_seconds.
    2. Sliding burst window: if max_burst_calls calls already started within
       the last burst_window_seconds, sleep until the oldest of them leaves
       the window.
    3. Minimum spacing: sleep until min_delay_seconds have passed since the
       most recent call.
    4. After the provider answers, re-read the state and append this call's
       start time (last writer wins).

Concurrent writers can lose each other's timestamps, which lets the effective
rate briefly exceed the schedule. The shared backoff bounds that: once any
invocation sees a rate-limit response, every invocation waits out the same
window on its next read.
"""

import logging
import time
from datetime import UTC, datetime
from typing import Final, Protocol

from fleet_trip_sync.config import RateLimitConfig
from fleet_trip_sync.errors import RateLimited
from fleet_trip_sync.models import RateLimitState
from fleet_trip_sync.store import SyncCheckpointStore

__all__: list[str] = ['Clock', 'RateLimiter', 'SystemClock']

logger: logging.Logger = logging.getLogger(__name__)

# Upper bound on remembered call timestamps, as a multiple of max_burst_calls.
TIMESTAMP_HISTORY_FACTOR: Final[int] = 4


# =============================================================================
# Clock
# =============================================================================


class Clock(Protocol):
    """Time source; injected so throttling can be tested without sleeping."""

    def time(self) -> float: ...

    def now(self) -> datetime: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by the time module."""

    def time(self) -> float:
        return time.time()

    def now(self) -> datetime:
        return datetime.now(UTC)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


# =============================================================================
# Rate Limiter
# =============================================================================


class RateLimiter:
    """
    Durable sliding-window throttle with a shared backoff.

    Example:
        >>> limiter = RateLimiter(store, config.rate_limit)
        >>> started_at = limiter.acquire()
        >>> response = send_request()
        >>> limiter.record_call(started_at)
    """

    def __init__(
        self,
        store: SyncCheckpointStore,
        config: RateLimitConfig,
        clock: Clock | None = None,
    ) -> None:
        self._store: SyncCheckpointStore = store
        self._config: RateLimitConfig = config
        self._clock: Clock = clock if clock is not None else SystemClock()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def acquire(self) -> float:
        """
        Block until a call may be made.

        Returns:
            The call start time (POSIX seconds) to pass to record_call().

        Raises:
            RateLimited: If a shared backoff is longer than this caller is
                willing to wait.
            StoreError: If the state cannot be read.
        """
        state: RateLimitState = self._store.load_rate_limit_state()
        now: float = self._clock.time()

        # 1. Shared backoff set by any invocation
        if state.backoff_until is not None and state.backoff_until > now:
            remaining: float = state.backoff_until - now
            if remaining > self._config.max_backoff_wait_seconds:
                logger.warning(
                    'Shared backoff active for another %.1fs; failing fast',
                    remaining,
                )
                raise RateLimited(
                    f'Provider backoff in force for another {remaining:.1f}s',
                    retry_after_seconds=remaining,
                )
            logger.info('Honoring shared provider backoff: sleeping %.2fs', remaining)
            self._clock.sleep(remaining)
            now = self._clock.time()

        window: float = self._config.burst_window_seconds
        recent: list[float] = sorted(
            timestamp for timestamp in state.call_timestamps if timestamp > now - window
        )

        # 2. Burst window
        if len(recent) >= self._config.max_burst_calls:
            oldest_in_burst: float = recent[-self._config.max_burst_calls]
            burst_wait: float = oldest_in_burst + window - now
            if burst_wait > 0:
                logger.debug(
                    'Burst limit reached (%d calls in %.1fs): sleeping %.3fs',
                    len(recent),
                    window,
                    burst_wait,
                )
                self._clock.sleep(burst_wait)
                now = self._clock.time()

        # 3. Minimum spacing
        if recent:
            since_last: float = now - recent[-1]
            spacing_wait: float = self._config.min_delay_seconds - since_last
            if spacing_wait > 0:
                self._clock.sleep(spacing_wait)
                now = self._clock.time()

        return now

    def record_call(self, started_at: float) -> None:
        """Append a call start time to the shared window (read-modify-write)."""
        state: RateLimitState = self._store.load_rate_limit_state()
        now: float = self._clock.time()

        horizon: float = now - self._config.burst_window_seconds
        kept: list[float] = sorted(
            timestamp for timestamp in state.call_timestamps if timestamp > horizon
        )
        kept.append(started_at)
        kept.sort()

        history_limit: int = self._config.max_burst_calls * TIMESTAMP_HISTORY_FACTOR
        state.call_timestamps = kept[-history_limit:]

        if state.backoff_until is not None and state.backoff_until <= now:
            state.backoff_until = None

        self._store.save_rate_limit_state(state)

    def register_rate_limit(self, attempt_index: int) -> float:
        """
        Persist a backoff after a rate-limit response.

        Args:
            attempt_index: 0-based index of the attempt that was rejected.

        Returns:
            The backoff delay in seconds now in force for every invocation.
        """
        delay: float = self._config.backoff_delay(attempt_index)
        state: RateLimitState = self._store.load_rate_limit_state()
        backoff_until: float = self._clock.time() + delay

        # Never shorten a longer backoff another invocation already set
        if state.backoff_until is None or state.backoff_until < backoff_until:
            state.backoff_until = backoff_until

        self._store.save_rate_limit_state(state)

        logger.warning(
            'Provider rate limit hit (attempt %d): backing off %.1fs for all callers',
            attempt_index + 1,
            delay,
        )
        return delay
