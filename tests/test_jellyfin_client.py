"""Tests for the Jellyfin client."""

import httpx
import pytest

from src.http_retry import APIError
from src.jellyfin_client import JellyfinClient, _series_tvdb_id
from src.models import WatchedEpisode

EPISODES = {
    "Items": [
        {
            "Id": "e1",
            "Name": "Episode 3",
            "SeriesId": "s1",
            "SeriesName": "Test Show",
            "ParentIndexNumber": 1,
            "IndexNumber": 3,
            "UserData": {"Played": True, "PlayCount": 1, "PlayedPercentage": None},
        },
        {
            "Id": "e2",
            "Name": "Special",
            "SeriesId": "s1",
            "ParentIndexNumber": None,
            "IndexNumber": 1,
            "UserData": {"Played": True},
        },
        {
            "Id": "e3",
            "Name": "Unknown Show Episode",
            "SeriesId": "s2",
            "ParentIndexNumber": 1,
            "IndexNumber": 1,
            "UserData": {"Played": True},
        },
    ]
}

SERIES = {
    "Items": [
        {"Id": "s1", "ProviderIds": {"Tvdb": "100"}},
        {"Id": "s2", "ProviderIds": {}},
    ]
}


def jellyfin_client(seen: list | None = None) -> JellyfinClient:
    def handler(request):
        if seen is not None:
            seen.append(request)
        assert request.headers["X-Emby-Token"] == "api-key"
        if request.url.path == "/Users":
            return httpx.Response(200, json=[{"Name": "alice", "Id": "u1"}, {"Name": "bob", "Id": "u2"}])
        if request.url.params.get("Ids"):
            return httpx.Response(200, json=SERIES)
        return httpx.Response(200, json=EPISODES)

    return JellyfinClient(
        "http://jellyfin:8096/",
        "api-key",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


class TestJellyfinClient:
    """Tests for JellyfinClient."""

    def test_get_user_id(self):
        """Users are matched by exact name."""
        client = jellyfin_client()

        assert client.get_user_id("bob") == "u2"
        assert client.get_user_id("Bob") is None

    def test_get_recent_episodes(self):
        """Played episodes are returned with their TVDB identity."""
        seen = []
        client = jellyfin_client(seen)

        episodes = client.get_recent_episodes("u1", limit=50)

        assert episodes == [
            WatchedEpisode(
                tvdb_id=100,
                season=1,
                episode=3,
                playback_position_percent=0.0,
                play_count=1,
                played=True,
                series_name="Test Show",
            )
        ]
        params = seen[0].url.params
        assert seen[0].url.path == "/Users/u1/Items"
        assert params["Filters"] == "IsPlayed"
        assert params["SortBy"] == "DatePlayed"
        assert params["Limit"] == "50"
        assert seen[1].url.params["Ids"] == "s1,s2"

    def test_no_recent_items(self):
        """An empty history needs no series lookup."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"Items": []})

        client = JellyfinClient(
            "http://jellyfin:8096", "api-key", http_client=httpx.Client(transport=httpx.MockTransport(handler))
        )

        assert client.get_recent_episodes("u1") == []
        assert len(seen) == 1

    def test_invalid_json_is_api_error(self):
        """A non-JSON body becomes an APIError."""
        client = JellyfinClient(
            "http://jellyfin:8096",
            "api-key",
            http_client=httpx.Client(
                transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>502 from proxy</html>"))
            ),
        )

        with pytest.raises(APIError, match="invalid JSON"):
            client.get_recent_episodes("u1")


class TestSeriesTvdbId:
    """Tests for _series_tvdb_id."""

    def test_provider_id(self):
        """ProviderIds.Tvdb is preferred."""
        assert _series_tvdb_id({"ProviderIds": {"Tvdb": "81797"}, "UserData": {"Key": "1"}}) == 81797

    def test_user_data_key_fallback(self):
        """The user-data key holds the TVDB ID on older servers."""
        assert _series_tvdb_id({"UserData": {"Key": "81797"}}) == 81797

    def test_missing(self):
        """Series without a numeric ID have none."""
        assert _series_tvdb_id({"ProviderIds": {"Imdb": "tt1"}, "UserData": {"Key": "abc"}}) is None
