"""Resolve Jellyfin (TVDB) episodes to MAL shows and episode numbers."""

import logging

from .mapping_store import MappingStore
from .models import NotMapped, Resolution, ShowIdentity

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Translate a TVDB season/episode into a MAL ID and MAL episode number."""

    def __init__(self, store: MappingStore):
        self.store = store

    def resolve(self, tvdb_id: int, season: int, episode: int) -> Resolution | NotMapped:
        """Resolve one episode.

        Args:
            tvdb_id: TVDB series ID reported by Jellyfin.
            season: Jellyfin season number.
            episode: Jellyfin episode number within the season.

        Returns:
            Resolution, or NotMapped when either catalog has no entry.
        """
        # Read the snapshot once so both lookups see the same generation
        snapshot = self.store.snapshot

        mapping = snapshot.lookup_anidb(tvdb_id, season, episode)
        if mapping is None:
            return self._miss(tvdb_id, season, episode, "no AniDB entry for TVDB season")

        mal_id = snapshot.lookup_mal(mapping.anidb_id)
        if mal_id is None:
            return self._miss(tvdb_id, season, episode, f"no MAL entry for AniDB {mapping.anidb_id}")

        absolute_episode = episode + mapping.season_offset
        if absolute_episode < 1:
            return self._miss(tvdb_id, season, episode, f"episode falls before AniDB {mapping.anidb_id}")

        return Resolution(mal_id=mal_id, absolute_episode=absolute_episode, anidb_id=mapping.anidb_id)

    def identify(self, tvdb_id: int, season: int) -> ShowIdentity:
        """Get the show identity for the start of a TVDB season."""
        snapshot = self.store.snapshot
        mapping = snapshot.lookup_anidb(tvdb_id, season)
        if mapping is None:
            return ShowIdentity(tvdb_id=tvdb_id)
        return ShowIdentity(
            tvdb_id=tvdb_id,
            anidb_id=mapping.anidb_id,
            mal_id=snapshot.lookup_mal(mapping.anidb_id),
        )

    @staticmethod
    def _miss(tvdb_id: int, season: int, episode: int, reason: str) -> NotMapped:
        logger.debug(f"TVDB {tvdb_id} S{season}E{episode} not mapped: {reason}")
        return NotMapped(tvdb_id=tvdb_id, season=season, episode=episode, reason=reason)
