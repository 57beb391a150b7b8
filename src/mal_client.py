"""MyAnimeList API v2 client authenticated through the TokenManager."""

import logging
import threading

import httpx

from .http_retry import AuthError, send_with_retry
from .models import WatchStatus
from .token_manager import TokenManager

logger = logging.getLogger(__name__)

MAL_API_URL = "https://api.myanimelist.net/v2"


class MALClient:
    """Thin MAL API client. Safe to share between worker threads."""

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: httpx.Client | None = None,
        retries: int = 3,
        timeout: float = 30.0,
        stop_event: threading.Event | None = None,
    ):
        """Initialize MAL client.

        Args:
            token_manager: Source of access tokens.
            http_client: Client to use. Created if None.
            retries: Attempts per request for transient failures.
            timeout: Per-request timeout in seconds.
            stop_event: Aborts retry backoff on shutdown.
        """
        self.token_manager = token_manager
        self.retries = retries
        self._stop = stop_event
        self._http_client = http_client or httpx.Client(timeout=timeout)

    def _request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """Make an authenticated request.

        A 401 triggers one token refresh and one retry before giving up.

        Raises:
            AuthError: If the request is still unauthorized after a refresh.
            APIError: On other API errors.
            TransientApiError: When retries are exhausted.
        """
        url = f"{MAL_API_URL}{endpoint}"
        token = self.token_manager.get_valid_access_token()

        try:
            return self._send(method, url, token, **kwargs)
        except AuthError:
            logger.info(f"MAL returned 401 for {endpoint}, refreshing token and retrying")

        token = self.token_manager.refresh(stale_token=token).access_token
        return self._send(method, url, token, **kwargs)

    def _send(self, method: str, url: str, token: str, **kwargs) -> httpx.Response:
        return send_with_retry(
            self._http_client,
            method,
            url,
            retries=self.retries,
            stop_event=self._stop,
            headers={"Authorization": f"Bearer {token}"},
            **kwargs,
        )

    def update_list_status(self, mal_id: int, num_watched_episodes: int, status: WatchStatus) -> dict:
        """Set the user's progress for one anime.

        Args:
            mal_id: MAL anime ID.
            num_watched_episodes: Episodes watched.
            status: List status.

        Returns:
            The list status MAL stored.
        """
        response = self._request(
            "PATCH",
            f"/anime/{mal_id}/my_list_status",
            data={"num_watched_episodes": str(num_watched_episodes), "status": status.value},
        )
        return response.json()

    def get_episode_count(self, mal_id: int) -> int | None:
        """Get the number of episodes of an anime.

        Returns:
            Episode count, or None while MAL does not know it (airing shows).
        """
        response = self._request("GET", f"/anime/{mal_id}", params={"fields": "num_episodes"})
        count = response.json().get("num_episodes")
        return count or None

    def close(self) -> None:
        self._http_client.close()
