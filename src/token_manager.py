"""MAL OAuth token lifecycle: load, bootstrap, single-flight refresh, persist."""

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from .http_retry import APIError, AuthError, TransientApiError, backoff_delay
from .mal_auth import MALAuthClient
from .models import TokenState
from .paths import get_token_path
from .storage import PersistenceReadError, PersistenceWriteError, atomic_write_json, read_json

logger = logging.getLogger(__name__)

# Refresh this long before expires_at
DEFAULT_REFRESH_MARGIN = 300
REFRESH_BACKOFF_BASE = 30.0


class TokenStatus(Enum):
    """Lifecycle states of the stored token."""

    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPED = "bootstrapped"
    VALID = "valid"
    REFRESH_PENDING = "refresh_pending"
    EXPIRED = "expired"


class TokenNotInitializedError(Exception):
    """No token has been stored yet. Run the 'auth' command."""

    pass


class TokenExpiredUnrecoverable(Exception):
    """MAL rejected the refresh token. Run the 'auth' command again."""

    pass


class TokenManager:
    """Owns the single MAL token pair for this process."""

    def __init__(
        self,
        auth_client: MALAuthClient,
        token_path: Path | None = None,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the token manager and load any stored token.

        Args:
            auth_client: Token endpoint client used for exchanges.
            token_path: Where the token is persisted. Uses default if None.
            refresh_margin: Seconds before expiry at which to refresh.
            clock: Time source returning epoch seconds.
        """
        self.auth_client = auth_client
        self.token_path = token_path or get_token_path()
        self.refresh_margin = refresh_margin
        self._clock = clock

        self._state: TokenState | None = None
        self._status = TokenStatus.UNINITIALIZED

        # _lock guards the fields below; _refresh_lock serializes exchanges
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._attempts = 0
        self._last_error: Exception | None = None
        self._failures = 0
        self._retry_not_before = 0.0
        # Set while the in-memory token is newer than the file
        self._unsaved = False

        self.load()

    @property
    def status(self) -> TokenStatus:
        with self._lock:
            return self._status

    @property
    def state(self) -> TokenState | None:
        with self._lock:
            return self._state

    @property
    def is_authenticated(self) -> bool:
        """Check if a usable token is held."""
        return self.status not in (TokenStatus.UNINITIALIZED, TokenStatus.EXPIRED)

    def load(self) -> TokenState | None:
        """Load the persisted token.

        Returns:
            The stored TokenState, or None if absent or unreadable.
        """
        try:
            data = read_json(self.token_path)
        except PersistenceReadError as e:
            logger.error(f"Stored MAL token is unreadable: {e}")
            return None

        if data is None:
            return None

        try:
            state = TokenState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Stored MAL token is malformed: {e}")
            return None

        with self._lock:
            self._state = state
            self._status = TokenStatus.BOOTSTRAPPED
        logger.info("Loaded existing MAL tokens")
        return state

    def _state_from_response(self, payload: dict) -> TokenState:
        now = self._clock()
        return TokenState(
            access_token=payload["access_token"],
            refresh_token=payload["refresh_token"],
            expires_at=now + float(payload["expires_in"]),
            created_at=now,
        )

    def _persist(self, state: TokenState) -> None:
        try:
            atomic_write_json(self.token_path, state.to_dict())
        except PersistenceWriteError:
            logger.error(f"Failed to persist MAL tokens to {self.token_path}; keeping them in memory")
            raise
        logger.info("Saved MAL tokens")

    def _save_pending(self) -> None:
        """Retry writing a token whose earlier save failed."""
        if not self._refresh_lock.acquire(blocking=False):
            return  # a refresh in flight will write it
        try:
            with self._lock:
                state = self._state if self._unsaved else None
            if state is None:
                return
            try:
                self._persist(state)
            except PersistenceWriteError:
                return
            with self._lock:
                if self._state is state:
                    self._unsaved = False
        finally:
            self._refresh_lock.release()

    def bootstrap(self, authorization_code: str, code_verifier: str) -> TokenState:
        """Exchange an authorization code for the first token pair.

        Args:
            authorization_code: Code from the OAuth redirect.
            code_verifier: PKCE verifier sent with the authorization request.

        Returns:
            The new TokenState.

        Raises:
            AuthError: If MAL rejects the code.
            PersistenceWriteError: If the token cannot be stored.
        """
        with self._refresh_lock:
            payload = self.auth_client.exchange_code(authorization_code, code_verifier)
            state = self._state_from_response(payload)
            with self._lock:
                self._state = state
                self._status = TokenStatus.BOOTSTRAPPED
                self._last_error = None
                self._failures = 0
                self._retry_not_before = 0.0
                self._unsaved = False
            self._persist(state)

        logger.info("MAL authorization complete")
        return state

    def get_valid_access_token(self) -> str:
        """Return an access token, refreshing it when close to expiry.

        Raises:
            TokenNotInitializedError: If no token was ever stored.
            TokenExpiredUnrecoverable: If the refresh token was rejected.
            TransientApiError: If the token has expired and cannot be refreshed yet.
        """
        with self._lock:
            state = self._state
            status = self._status
            retry_not_before = self._retry_not_before

        if status is TokenStatus.EXPIRED:
            raise TokenExpiredUnrecoverable("MAL refresh token was rejected; run 'auth' again")
        if state is None:
            raise TokenNotInitializedError("Not authenticated. Run 'auth' command first.")

        if self._unsaved:
            self._save_pending()

        now = self._clock()
        if not state.expires_within(self.refresh_margin, now):
            if status is TokenStatus.BOOTSTRAPPED:
                with self._lock:
                    if self._status is TokenStatus.BOOTSTRAPPED:
                        self._status = TokenStatus.VALID
            return state.access_token

        if now < retry_not_before:
            if now < state.expires_at:
                return state.access_token
            raise TransientApiError("MAL token expired and refresh is backing off")

        try:
            state = self.refresh(stale_token=state.access_token)
        except TransientApiError as e:
            if now < state.expires_at:
                logger.warning(f"Token refresh failed, using current token until it expires: {e}")
                return state.access_token
            raise

        return state.access_token

    def refresh(self, stale_token: str | None = None) -> TokenState:
        """Exchange the refresh token for a new pair.

        Only one exchange runs at a time. Callers that arrive while one is in
        flight wait for it and share its outcome. If saving the new pair
        fails it is kept in memory and saved again on the next
        get_valid_access_token call.

        Args:
            stale_token: Access token the caller found lacking. If the stored
                token already differs, it is returned without an exchange.

        Returns:
            The current TokenState after the refresh.

        Raises:
            TokenExpiredUnrecoverable: If MAL rejected the refresh token.
            TransientApiError: If MAL could not be reached.
        """
        with self._lock:
            # An exchange already in flight counts as ours to wait on
            attempts_seen = self._attempts - (1 if self._status is TokenStatus.REFRESH_PENDING else 0)

        with self._refresh_lock:
            with self._lock:
                if self._status is TokenStatus.EXPIRED:
                    raise TokenExpiredUnrecoverable("MAL refresh token was rejected; run 'auth' again")
                state = self._state
                if state is None:
                    raise TokenNotInitializedError("Not authenticated. Run 'auth' command first.")

                if self._attempts != attempts_seen:
                    if self._last_error is not None:
                        raise self._last_error
                    return state
                if stale_token is not None and state.access_token != stale_token:
                    return state

                previous_status = self._status
                self._status = TokenStatus.REFRESH_PENDING
                self._attempts += 1

            try:
                payload = self.auth_client.exchange_refresh_token(state.refresh_token)
            except AuthError as e:
                error = TokenExpiredUnrecoverable(
                    f"MAL rejected the refresh token ({e}); run 'auth' to authorize again"
                )
                with self._lock:
                    self._status = TokenStatus.EXPIRED
                    self._last_error = error
                logger.critical(str(error))
                raise error from e
            except APIError as e:
                with self._lock:
                    self._status = previous_status
                    self._failures += 1
                    self._retry_not_before = self._clock() + backoff_delay(
                        self._failures - 1, REFRESH_BACKOFF_BASE
                    )
                    self._last_error = e
                logger.warning(f"MAL token refresh failed (attempt {self._failures}): {e}")
                raise

            new_state = self._state_from_response(payload)
            with self._lock:
                self._state = new_state
                self._status = TokenStatus.VALID
                self._last_error = None
                self._failures = 0
                self._retry_not_before = 0.0
                self._unsaved = True

            try:
                self._persist(new_state)
            except PersistenceWriteError:
                # The old refresh token is spent; the write is retried on next use
                pass
            else:
                with self._lock:
                    self._unsaved = False

        logger.info("Refreshed MAL access token")
        return new_state
