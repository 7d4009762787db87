# fleet_trip_sync/client.py
"""
Rate-limited HTTP client for the location-tracking provider.

Every outbound call goes through one store-backed throttle (see
rate_limiter.py), so any number of independent invocations share the
provider's single rate budget.

Retry Behavior:
---------------
- Provider rate-limit responses (a configured `status` code inside a 2xx body,
  or HTTP 429) persist a shared backoff and are retried up to
  `rate_limit.max_retries` times. Each retry waits out the shared backoff in
  the throttle, then calls again. Exhaustion surfaces as RateLimited.
- Everything else (HTTP errors, malformed JSON, non-zero provider status,
  transport failures) surfaces immediately as ProviderError with the original
  status and message attached.
- `login` shares the throttle but never retries; the caller owns the retry
  policy for authentication.

Sessions:
---------
All actions except `login` need a session token and a server id. A token from
configuration is used as-is; otherwise the client logs in once and persists
the session in the store so the next invocation can reuse it until it
expires. A session-expired status clears the stored session.

SSL/TLS Handling:
-----------------
verify_ssl may be True (system CA), False (development only), or a path to a
CA bundle for TLS-intercepting proxies.
"""

import hashlib
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, tzinfo
from types import TracebackType
from typing import Any, Final, Self, cast

import httpx
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_none,
)

from fleet_trip_sync.config import ProviderConfig, RateLimitConfig, SyncConfig
from fleet_trip_sync.errors import ProviderError, RateLimited
from fleet_trip_sync.models import ProviderResponse, ProviderSession
from fleet_trip_sync.rate_limiter import Clock, RateLimiter, SystemClock
from fleet_trip_sync.store import SyncCheckpointStore
from fleet_trip_sync.timestamps import format_provider_time, provider_timezone

__all__: list[str] = ['RateLimitedProviderClient']

logger: logging.Logger = logging.getLogger(__name__)

HTTP_STATUS_RATE_LIMITED: Final[int] = 429
PROVIDER_STATUS_OK: Final[int] = 0

LOGIN_ACTION: Final[str] = 'login'
QUERY_TRIPS_ACTION: Final[str] = 'querytrips'
LAST_POSITION_ACTION: Final[str] = 'lastposition'

# A configured token has no known expiry; treat it as valid for this long.
CONFIGURED_TOKEN_LIFETIME: Final[timedelta] = timedelta(days=3650)

RESPONSE_PREVIEW_CHARS: Final[int] = 500


def _is_provider_rate_limit(error: BaseException) -> bool:
    """Retry only rejections the provider issued, not local fail-fast waits."""
    return isinstance(error, RateLimited) and error.status_code is not None


class RateLimitedProviderClient:
    """
    Client for the provider's single `openapi` endpoint.

    Thread Safety:
        Designed for one thread per instance. Cross-process coordination
        happens through the store, not through this object.

    Example:
        >>> with RateLimitedProviderClient.from_config(config, store) as client:
        ...     trips = client.query_trips('358899051234567', start, end)
    """

    def __init__(
        self,
        provider_config: ProviderConfig,
        rate_limit_config: RateLimitConfig,
        store: SyncCheckpointStore,
        clock: Clock | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        """
        Initialize the provider client.

        Args:
            provider_config: Endpoint, credentials and provider status codes.
            rate_limit_config: Shared throttle settings.
            store: Durable store holding throttle state and the session.
            clock: Time source; defaults to the wall clock.
            http_client: Pre-built httpx client, mainly for tests. When
                omitted, one is built from provider_config.
        """
        self._config: ProviderConfig = provider_config
        self._store: SyncCheckpointStore = store
        self._clock: Clock = clock if clock is not None else SystemClock()
        self._limiter: RateLimiter = RateLimiter(store, rate_limit_config, self._clock)
        self._local_timezone: tzinfo = provider_timezone(
            provider_config.utc_offset_hours
        )

        if http_client is None:
            connect_timeout, read_timeout = provider_config.request_timeout
            http_client = httpx.Client(
                timeout=httpx.Timeout(
                    connect=connect_timeout,
                    read=read_timeout,
                    write=connect_timeout,
                    pool=connect_timeout,
                ),
                verify=provider_config.verify_ssl,
            )
        self._http_client: httpx.Client = http_client

        logger.info(
            'Initialized RateLimitedProviderClient: base_url=%r, server_id=%r',
            provider_config.base_url,
            provider_config.server_id,
        )

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        store: SyncCheckpointStore,
        clock: Clock | None = None,
    ) -> Self:
        return cls(config.provider, config.rate_limit, store, clock=clock)

    @property
    def local_timezone(self) -> tzinfo:
        """Provider-local timezone used for timestamp strings."""
        return self._local_timezone

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    def close(self) -> None:
        self._http_client.close()
        logger.debug('RateLimitedProviderClient closed')

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Session Handling
    # -------------------------------------------------------------------------

    def login(self) -> ProviderSession:
        """
        Authenticate and persist a fresh session.

        Shares the throttle with every other call but is attempted exactly
        once.

        Returns:
            The new session, already saved in the store.

        Raises:
            RateLimited: If the provider rate-limited the login.
            ProviderError: If the provider rejected the credentials or
                answered without a token.
        """
        password_hash: str = hashlib.md5(
            self._config.password.get_secret_value().encode('utf-8'),
            usedforsecurity=False,
        ).hexdigest()
        body: dict[str, Any] = {
            'type': 'USER',
            'from': 'web',
            'username': self._config.username,
            'password': password_hash,
        }

        logger.info('Logging in to provider as %r', self._config.username)
        response: ProviderResponse = self._exchange(
            LOGIN_ACTION,
            body,
            query_params={'action': LOGIN_ACTION},
            attempt_index=0,
        )

        token: Any = response.body.get('token')
        if not isinstance(token, str) or not token:
            raise ProviderError(
                'Login succeeded without a session token',
                status_code=response.status,
                response_body=str(response.body)[:RESPONSE_PREVIEW_CHARS],
            )

        server_id: Any = response.body.get('serverid') or self._config.server_id
        session: ProviderSession = ProviderSession(
            token=token,
            server_id=str(server_id),
            expires_at=self._clock.now()
            + timedelta(hours=self._config.session_ttl_hours),
        )
        self._store.save_session(session)

        logger.info('Provider session established (server_id=%s)', session.server_id)
        return session

    def ensure_session(self) -> ProviderSession:
        """Return a usable session: configured token, stored session, or a new login."""
        now: datetime = self._clock.now()

        if self._config.token is not None:
            configured_token: str = self._config.token.get_secret_value().strip()
            if configured_token:
                return ProviderSession(
                    token=configured_token,
                    server_id=self._config.server_id,
                    expires_at=now + CONFIGURED_TOKEN_LIFETIME,
                )

        stored: ProviderSession | None = self._store.load_session()
        if stored is not None and stored.is_valid_at(now):
            return stored

        if stored is not None:
            logger.info('Stored provider session expired; logging in again')

        return self.login()

    # -------------------------------------------------------------------------
    # Public Call Surface
    # -------------------------------------------------------------------------

    def call(
        self,
        action: str,
        params: Mapping[str, Any] | None = None,
    ) -> ProviderResponse:
        """
        Call a provider action with throttling and rate-limit retries.

        Args:
            action: Provider action name (e.g. 'querytrips').
            params: JSON body for the action.

        Returns:
            Decoded response with status 0.

        Raises:
            RateLimited: After rate-limit retries are exhausted, or when a
                shared backoff is too long to wait out.
            ProviderError: For any other failure, immediately.
            StoreError: If the throttle state cannot be read or written.
        """
        body: dict[str, Any] = dict(params or {})
        session: ProviderSession = self.ensure_session()

        retrying: Retrying = Retrying(
            retry=retry_if_exception(_is_provider_rate_limit),
            stop=stop_after_attempt(self._limiter.config.max_retries + 1),
            # The backoff itself is persisted and waited out by the throttle
            wait=wait_none(),
            sleep=self._clock.sleep,
            reraise=True,
        )

        for attempt in retrying:
            with attempt:
                return self._exchange(
                    action,
                    body,
                    query_params={
                        'action': action,
                        'token': session.token,
                        'serverid': session.server_id,
                    },
                    attempt_index=attempt.retry_state.attempt_number - 1,
                )

        # Unreachable: reraise=True always raises the last error
        raise ProviderError(f'Call to {action!r} ended without a result')

    def query_trips(
        self,
        device_id: str,
        start: datetime,
        end: datetime,
    ) -> list[dict[str, Any]]:
        """
        List the device's trips in [start, end].

        Times are sent in provider-local time together with the offset the
        provider should assume.
        """
        response: ProviderResponse = self.call(
            QUERY_TRIPS_ACTION,
            {
                'deviceid': device_id,
                'begintime': format_provider_time(start, self._local_timezone),
                'endtime': format_provider_time(end, self._local_timezone),
                'timezone': self._config.utc_offset_hours,
            },
        )
        records: list[dict[str, Any]] = response.records

        logger.debug(
            'querytrips %s [%s, %s]: %d records',
            device_id,
            start.isoformat(),
            end.isoformat(),
            len(records),
        )
        return records

    def last_positions(
        self,
        device_ids: Sequence[str],
        last_query_position_time: int = 0,
    ) -> ProviderResponse:
        """
        Current/most recent positions for the given devices.

        Args:
            device_ids: Devices to query.
            last_query_position_time: Provider cursor from the previous
                response; 0 requests everything.
        """
        return self.call(
            LAST_POSITION_ACTION,
            {
                'deviceids': list(device_ids),
                'lastquerypositiontime': last_query_position_time,
            },
        )

    # -------------------------------------------------------------------------
    # HTTP Execution Layer
    # -------------------------------------------------------------------------

    def _exchange(
        self,
        action: str,
        body: dict[str, Any],
        query_params: dict[str, Any],
        attempt_index: int,
    ) -> ProviderResponse:
        """One throttled request/response round trip, no retries."""
        started_at: float = self._limiter.acquire()

        http_response: httpx.Response = self._send_http_request(
            action, body, query_params
        )
        self._limiter.record_call(started_at)

        return self._handle_response(action, http_response, attempt_index)

    def _send_http_request(
        self,
        action: str,
        body: dict[str, Any],
        query_params: dict[str, Any],
    ) -> httpx.Response:
        """Send the request, converting transport errors to ProviderError."""
        try:
            return self._http_client.request(
                method='POST',
                url=self._config.base_url,
                params=query_params,
                json=body,
            )
        except httpx.TimeoutException as error:
            logger.warning('Provider timeout on %r: %s', action, error)
            raise ProviderError(f'Request timeout on {action!r}: {error}') from error
        except httpx.RequestError as error:
            logger.warning('Provider connection error on %r: %s', action, error)
            raise ProviderError(
                f'Connection error on {action!r}: {error}'
            ) from error

    def _rate_limited(
        self,
        action: str,
        status_code: int,
        attempt_index: int,
    ) -> RateLimited:
        delay: float = self._limiter.register_rate_limit(attempt_index)
        return RateLimited(
            f'Provider rate limit on {action!r} (status {status_code})',
            retry_after_seconds=delay,
            status_code=status_code,
        )

    def _handle_response(
        self,
        action: str,
        response: httpx.Response,
        attempt_index: int,
    ) -> ProviderResponse:
        """
        Decode a response, raising the matching error for failures.

        Raises:
            RateLimited: On HTTP 429 or a configured rate-limit status code.
            ProviderError: On any other failure.
        """
        status_code: int = response.status_code

        if status_code == HTTP_STATUS_RATE_LIMITED:
            raise self._rate_limited(action, status_code, attempt_index)

        if not response.is_success:
            logger.error(
                'Provider HTTP %d on %r: %s',
                status_code,
                action,
                response.text[:RESPONSE_PREVIEW_CHARS],
            )
            raise ProviderError(
                f'HTTP {status_code} from provider on {action!r}',
                status_code=status_code,
                response_body=response.text[:RESPONSE_PREVIEW_CHARS],
            )

        try:
            json_body: Any = response.json()
        except ValueError as parse_error:
            raise ProviderError(
                f'Invalid JSON from provider on {action!r}: {parse_error}',
                status_code=status_code,
                response_body=response.text[:RESPONSE_PREVIEW_CHARS],
            ) from parse_error

        if not isinstance(json_body, dict):
            raise ProviderError(
                f'Expected JSON object from {action!r}, got {type(json_body).__name__}',
                status_code=status_code,
                response_body=response.text[:RESPONSE_PREVIEW_CHARS],
            )

        body: dict[str, Any] = cast(dict[str, Any], json_body)

        try:
            provider_status: int = int(body.get('status', PROVIDER_STATUS_OK))
        except (TypeError, ValueError) as status_error:
            raise ProviderError(
                f'Unreadable provider status on {action!r}: {body.get("status")!r}',
                status_code=status_code,
                response_body=response.text[:RESPONSE_PREVIEW_CHARS],
            ) from status_error

        cause: str | None = (
            str(body['cause']) if body.get('cause') not in (None, '') else None
        )

        if provider_status in self._config.rate_limit_status_codes:
            raise self._rate_limited(action, provider_status, attempt_index)

        if provider_status in self._config.session_expired_status_codes:
            logger.warning(
                'Provider session expired on %r (status %d)', action, provider_status
            )
            self._store.clear_session()
            raise ProviderError(
                f'Provider session expired on {action!r}: {cause or "no cause given"}',
                status_code=provider_status,
                response_body=response.text[:RESPONSE_PREVIEW_CHARS],
            )

        if provider_status != PROVIDER_STATUS_OK:
            logger.error(
                'Provider rejected %r with status %d: %s',
                action,
                provider_status,
                cause,
            )
            raise ProviderError(
                f'Provider error on {action!r}: {cause or "unknown cause"} '
                f'(status {provider_status})',
                status_code=provider_status,
                response_body=response.text[:RESPONSE_PREVIEW_CHARS],
            )

        return ProviderResponse(
            action=action,
            status=provider_status,
            cause=cause,
            body=body,
        )
