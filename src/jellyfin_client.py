"""Jellyfin API client for recently played episodes."""

import logging
import threading

import httpx

from .http_retry import APIError, send_with_retry
from .models import WatchedEpisode

logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT = 200


def _series_tvdb_id(series: dict) -> int | None:
    """Get the TVDB ID of a series item.

    Newer servers expose it in ProviderIds; older ones only use it as the
    series' UserData key.
    """
    for value in (
        (series.get("ProviderIds") or {}).get("Tvdb"),
        (series.get("UserData") or {}).get("Key"),
    ):
        if value is None:
            continue
        try:
            return int(str(value).strip())
        except ValueError:
            continue
    return None


class JellyfinClient:
    """Read-only Jellyfin client."""

    def __init__(
        self,
        host: str,
        token: str,
        http_client: httpx.Client | None = None,
        retries: int = 3,
        timeout: float = 30.0,
        stop_event: threading.Event | None = None,
    ):
        """Initialize Jellyfin client.

        Args:
            host: Server base URL, e.g. http://jellyfin:8096.
            token: API key.
            http_client: Client to use. Created if None.
            retries: Attempts per request for transient failures.
            timeout: Per-request timeout in seconds.
            stop_event: Aborts retry backoff on shutdown.
        """
        self.host = host.rstrip("/")
        self.token = token
        self.retries = retries
        self._stop = stop_event
        self._http_client = http_client or httpx.Client(timeout=timeout)

    def _get(self, route: str, params: dict | None = None) -> dict | list:
        response = send_with_retry(
            self._http_client,
            "GET",
            f"{self.host}{route}",
            retries=self.retries,
            stop_event=self._stop,
            headers={"X-Emby-Token": self.token},
            params=params,
        )
        try:
            return response.json()
        except ValueError as e:
            raise APIError(
                f"Jellyfin returned invalid JSON for {route}: {e}",
                status_code=response.status_code,
                body=response.text[:200],
            ) from e

    def get_user_id(self, username: str) -> str | None:
        """Find a user's ID by name.

        Returns:
            User ID or None if no such user exists.
        """
        for user in self._get("/Users"):
            if user.get("Name") == username:
                return user.get("Id")
        return None

    def _get_series_tvdb_ids(self, user_id: str, series_ids: list[str]) -> dict[str, int]:
        data = self._get(
            f"/Users/{user_id}/Items",
            {"Ids": ",".join(series_ids), "Fields": "ProviderIds", "EnableUserData": "true"},
        )
        result = {}
        for series in data.get("Items", []):
            tvdb_id = _series_tvdb_id(series)
            if tvdb_id is not None:
                result[series.get("Id")] = tvdb_id
        return result

    def get_recent_episodes(self, user_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> list[WatchedEpisode]:
        """Get the user's most recently played episodes.

        Episodes without season/episode numbers or whose series has no TVDB
        ID are dropped.

        Args:
            user_id: Jellyfin user ID.
            limit: Maximum number of episodes to fetch.

        Returns:
            List of WatchedEpisode, most recently played first.
        """
        data = self._get(
            f"/Users/{user_id}/Items",
            {
                "IncludeItemTypes": "Episode",
                "Recursive": "true",
                "Filters": "IsPlayed",
                "SortBy": "DatePlayed",
                "SortOrder": "Descending",
                "Limit": str(limit),
                "EnableUserData": "true",
            },
        )
        items = data.get("Items", [])
        if not items:
            return []

        series_ids = sorted({item["SeriesId"] for item in items if item.get("SeriesId")})
        tvdb_ids = self._get_series_tvdb_ids(user_id, series_ids) if series_ids else {}

        episodes = []
        for item in items:
            season = item.get("ParentIndexNumber")
            number = item.get("IndexNumber")
            tvdb_id = tvdb_ids.get(item.get("SeriesId"))
            if season is None or number is None or tvdb_id is None:
                logger.debug(f"Skipping Jellyfin item {item.get('Id')} ({item.get('Name')}): incomplete identity")
                continue

            user_data = item.get("UserData") or {}
            episodes.append(
                WatchedEpisode(
                    tvdb_id=tvdb_id,
                    season=int(season),
                    episode=int(number),
                    playback_position_percent=float(user_data.get("PlayedPercentage") or 0.0),
                    play_count=int(user_data.get("PlayCount") or 0),
                    played=bool(user_data.get("Played")),
                    series_name=item.get("SeriesName") or "",
                )
            )

        logger.debug(f"Jellyfin reported {len(episodes)} played episodes ({len(items)} items)")
        return episodes

    def close(self) -> None:
        self._http_client.close()
