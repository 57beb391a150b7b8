"""Tests for the retrying request helper."""

import threading
from unittest.mock import patch

import httpx
import pytest

from src.http_retry import (
    APIError,
    AuthError,
    TransientApiError,
    backoff_delay,
    parse_retry_after,
    send_with_retry,
)


def sequence_client(*responses):
    """Client answering with the given responses in order."""
    remaining = list(responses)
    seen = []

    def handler(request):
        seen.append(request)
        response = remaining.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    return httpx.Client(transport=httpx.MockTransport(handler)), seen


class TestSendWithRetry:
    """Tests for send_with_retry."""

    def test_success(self):
        """A 2xx response is returned directly."""
        client, seen = sequence_client(httpx.Response(200, json={"ok": True}))

        response = send_with_retry(client, "GET", "https://api.test/x")

        assert response.json() == {"ok": True}
        assert len(seen) == 1

    def test_retries_server_errors(self):
        """5xx responses are retried."""
        client, seen = sequence_client(httpx.Response(502), httpx.Response(200))

        response = send_with_retry(client, "GET", "https://api.test/x", backoff_base=0)

        assert response.status_code == 200
        assert len(seen) == 2

    def test_retries_transport_errors(self):
        """Timeouts and connection errors are retried."""
        client, seen = sequence_client(httpx.ConnectTimeout("slow"), httpx.Response(200))

        response = send_with_retry(client, "GET", "https://api.test/x", backoff_base=0)

        assert response.status_code == 200
        assert len(seen) == 2

    def test_rate_limit_honours_retry_after(self):
        """429 waits for Retry-After before retrying."""
        client, _ = sequence_client(httpx.Response(429, headers={"Retry-After": "7"}), httpx.Response(200))

        with patch("src.http_retry.time.sleep") as sleep:
            send_with_retry(client, "GET", "https://api.test/x")

        sleep.assert_called_once_with(7.0)

    def test_exhausted_retries(self):
        """Giving up raises TransientApiError."""
        client, seen = sequence_client(httpx.Response(503), httpx.Response(503), httpx.Response(503))

        with pytest.raises(TransientApiError, match="3 attempts"):
            send_with_retry(client, "GET", "https://api.test/x", retries=3, backoff_base=0)
        assert len(seen) == 3

    def test_unauthorized(self):
        """401 raises AuthError without retrying."""
        client, seen = sequence_client(httpx.Response(401))

        with pytest.raises(AuthError):
            send_with_retry(client, "GET", "https://api.test/x")
        assert len(seen) == 1

    def test_client_error(self):
        """Other 4xx responses raise APIError with the status."""
        client, _ = sequence_client(httpx.Response(404, text="not found"))

        with pytest.raises(APIError) as exc_info:
            send_with_retry(client, "GET", "https://api.test/x")

        assert exc_info.value.status_code == 404
        assert not isinstance(exc_info.value, TransientApiError)

    def test_stop_event_aborts(self):
        """A requested shutdown stops before sending."""
        client, seen = sequence_client(httpx.Response(200))
        stop = threading.Event()
        stop.set()

        with pytest.raises(TransientApiError, match="Shutdown"):
            send_with_retry(client, "GET", "https://api.test/x", stop_event=stop)
        assert seen == []


class TestBackoff:
    """Tests for delay helpers."""

    def test_exponential_and_capped(self):
        """Delays double and stop at the cap."""
        assert backoff_delay(0) == 1.0
        assert backoff_delay(3) == 8.0
        assert backoff_delay(20) == 60.0

    def test_parse_retry_after(self):
        """Seconds are parsed, anything else uses the default."""
        assert parse_retry_after("12") == 12.0
        assert parse_retry_after(None) == 30
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 30
