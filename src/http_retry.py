"""HTTP request helper with retry, backoff and error classification."""

import logging
import threading
import time

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3
BACKOFF_BASE_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
DEFAULT_RETRY_AFTER = 30


class APIError(Exception):
    """Non-retryable API error."""

    def __init__(self, message: str, status_code: int = 0, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TransientApiError(APIError):
    """Timeout, transport failure, 5xx or rate limit that outlived its retries."""

    pass


class AuthError(APIError):
    """The server rejected our credentials (HTTP 401)."""

    pass


def parse_retry_after(value: str | None) -> float:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return DEFAULT_RETRY_AFTER
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not used by the APIs we talk to
        return DEFAULT_RETRY_AFTER


def backoff_delay(attempt: int, base: float = BACKOFF_BASE_SECONDS) -> float:
    """Exponential backoff for the given zero-based attempt."""
    return min(base * (2**attempt), MAX_BACKOFF_SECONDS)


def _wait(seconds: float, stop_event: threading.Event | None) -> None:
    """Sleep, returning early if shutdown was requested."""
    if stop_event is None:
        time.sleep(seconds)
        return
    if stop_event.wait(seconds):
        raise TransientApiError("Shutdown requested during backoff")


def send_with_retry(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    retries: int = DEFAULT_RETRIES,
    backoff_base: float = BACKOFF_BASE_SECONDS,
    stop_event: threading.Event | None = None,
    **kwargs,
) -> httpx.Response:
    """Send a request, retrying transient failures.

    Args:
        client: httpx client carrying the per-call timeout.
        method: HTTP method.
        url: Absolute URL, or path relative to the client's base_url.
        retries: Total attempts before giving up.
        backoff_base: First backoff delay in seconds.
        stop_event: Aborts backoff sleeps on shutdown.
        **kwargs: Passed through to httpx.Client.request.

    Returns:
        The successful (2xx/3xx) response.

    Raises:
        AuthError: On HTTP 401. Never retried here.
        APIError: On other 4xx responses.
        TransientApiError: When retries are exhausted.
    """
    last_error = ""
    for attempt in range(retries):
        if stop_event is not None and stop_event.is_set():
            raise TransientApiError("Shutdown requested")

        try:
            response = client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            # Timeouts are transport errors too
            last_error = f"{type(e).__name__}: {e}"
            if attempt < retries - 1:
                wait = backoff_delay(attempt, backoff_base)
                logger.warning(f"{method} {url} failed, retrying in {wait:.0f}s: {last_error}")
                _wait(wait, stop_event)
            continue

        status = response.status_code

        if status == 429:
            last_error = "rate limited"
            if attempt < retries - 1:
                wait = parse_retry_after(response.headers.get("Retry-After"))
                logger.warning(f"Rate limited on {method} {url}, waiting {wait:.0f}s")
                _wait(wait, stop_event)
            continue

        if status >= 500:
            last_error = f"server error {status}"
            if attempt < retries - 1:
                wait = backoff_delay(attempt, backoff_base)
                logger.warning(f"{method} {url} returned {status}, retrying in {wait:.0f}s")
                _wait(wait, stop_event)
            continue

        if status == 401:
            raise AuthError(f"Unauthorized: {method} {url}", status_code=status, body=response.text)

        if status >= 400:
            raise APIError(
                f"API error: {status} - {response.text}",
                status_code=status,
                body=response.text,
            )

        return response

    raise TransientApiError(f"{method} {url} failed after {retries} attempts: {last_error}")
