"""Data models for Jellyfin to MyAnimeList sync."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class WatchStatus(str, Enum):
    """MAL list status values, as the API spells them."""

    WATCHING = "watching"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    DROPPED = "dropped"
    PLAN_TO_WATCH = "plan_to_watch"

    @property
    def is_explicit_only(self) -> bool:
        """Statuses that must be observed, never inferred from progress."""
        return self in (WatchStatus.ON_HOLD, WatchStatus.DROPPED)


@dataclass(frozen=True)
class ShowIdentity:
    """A show as known to each catalog. Missing IDs mean no mapping exists."""

    tvdb_id: int
    anidb_id: int | None = None
    mal_id: int | None = None

    @property
    def is_mapped(self) -> bool:
        """Check if the show resolved all the way to MAL."""
        return self.mal_id is not None


@dataclass(frozen=True)
class TvdbMapping:
    """One TVDB season (or part of it) mapped to an AniDB entry."""

    tvdb_id: int
    anidb_id: int
    season: int
    season_offset: int = 0  # added to the TVDB episode number
    first_episode: int = 1  # TVDB-side episode range covered
    last_episode: int | None = None

    def covers(self, episode: int) -> bool:
        """Check if a TVDB episode of this season belongs to this entry."""
        if episode < self.first_episode:
            return False
        return self.last_episode is None or episode <= self.last_episode


@dataclass(frozen=True)
class MalMapping:
    """AniDB entry mapped to a MAL entry."""

    anidb_id: int
    mal_id: int


@dataclass(frozen=True)
class Resolution:
    """A Jellyfin episode resolved to its MAL show and episode."""

    mal_id: int
    absolute_episode: int
    anidb_id: int


@dataclass(frozen=True)
class NotMapped:
    """Resolution miss. An expected outcome, not an error."""

    tvdb_id: int
    season: int
    episode: int
    reason: str

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class WatchedEpisode:
    """An episode observed in Jellyfin's recent activity."""

    tvdb_id: int
    season: int
    episode: int
    playback_position_percent: float = 0.0
    play_count: int = 0
    played: bool = False
    series_name: str = ""

    @property
    def is_watched(self) -> bool:
        """Check if Jellyfin considers the episode watched."""
        return self.played or self.play_count > 0


@dataclass
class WatchRecord:
    """Last state pushed to MAL for one show."""

    mal_id: int
    last_synced_episode: int
    last_synced_status: WatchStatus
    synced_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "mal_id": self.mal_id,
            "last_synced_episode": self.last_synced_episode,
            "last_synced_status": self.last_synced_status.value,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WatchRecord":
        synced_at = data.get("synced_at")
        return cls(
            mal_id=int(data["mal_id"]),
            last_synced_episode=int(data["last_synced_episode"]),
            last_synced_status=WatchStatus(data["last_synced_status"]),
            synced_at=datetime.fromisoformat(synced_at) if synced_at else None,
        )


@dataclass(frozen=True)
class TokenState:
    """OAuth token pair for the single MAL account."""

    access_token: str
    refresh_token: str
    expires_at: float  # epoch seconds
    created_at: float = 0.0

    def expires_within(self, seconds: float, now: float) -> bool:
        """Check if the access token expires within the given margin."""
        return now >= self.expires_at - seconds

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TokenState":
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data["refresh_token"]),
            expires_at=float(data["expires_at"]),
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass
class SyncReport:
    """Outcome of one poll cycle."""

    observed: int = 0
    not_mapped: int = 0
    skipped: int = 0
    pushed: list[tuple[int, int, str]] = field(default_factory=list)  # (mal_id, episode, status)
    errors: list[dict] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)
