"""Tests for the identity resolver."""

import pytest

from src.mapping_store import MappingLoadError, MappingStore
from src.models import NotMapped, Resolution, ShowIdentity
from src.resolver import IdentityResolver


@pytest.fixture
def resolver(loaded_store):
    return IdentityResolver(loaded_store)


class TestResolve:
    """Tests for IdentityResolver.resolve."""

    def test_resolves_first_season(self, resolver):
        """A plain season maps episode numbers unchanged."""
        assert resolver.resolve(100, 1, 3) == Resolution(mal_id=200, absolute_episode=3, anidb_id=1000)

    def test_split_cour_offset(self, resolver):
        """Episodes after a split are renumbered for the later MAL entry."""
        assert resolver.resolve(100, 2, 5) == Resolution(mal_id=201, absolute_episode=5, anidb_id=1001)
        assert resolver.resolve(100, 2, 14) == Resolution(mal_id=202, absolute_episode=2, anidb_id=1002)

    def test_season_mapping_offset(self, resolver):
        """Nested season mappings apply their offset."""
        result = resolver.resolve(300, 3, 5)

        assert result == Resolution(mal_id=210, absolute_episode=18, anidb_id=2000)

    def test_deterministic(self, resolver):
        """The same input always resolves the same way."""
        assert resolver.resolve(100, 2, 14) == resolver.resolve(100, 2, 14)

    def test_unknown_tvdb_id(self, resolver):
        """Unknown shows are NotMapped, never an exception."""
        result = resolver.resolve(999999, 1, 1)

        assert isinstance(result, NotMapped)
        assert not result
        assert result.tvdb_id == 999999

    def test_unknown_season(self, resolver):
        """Seasons without an entry are NotMapped."""
        assert isinstance(resolver.resolve(100, 5, 1), NotMapped)

    def test_no_mal_entry(self, resolver):
        """An AniDB entry without a MAL counterpart is NotMapped."""
        result = resolver.resolve(500, 1, 1)

        assert isinstance(result, NotMapped)
        assert "4000" in result.reason

    def test_unloaded_store_raises(self, tmp_path):
        """Resolving before any load is a startup error, not a miss."""
        resolver = IdentityResolver(MappingStore(cache_dir=tmp_path))

        with pytest.raises(MappingLoadError):
            resolver.resolve(100, 1, 1)


class TestIdentify:
    """Tests for IdentityResolver.identify."""

    def test_mapped_show(self, resolver):
        """A mapped season carries all three IDs."""
        identity = resolver.identify(100, 1)

        assert identity == ShowIdentity(tvdb_id=100, anidb_id=1000, mal_id=200)
        assert identity.is_mapped

    def test_unmapped_show(self, resolver):
        """Missing IDs stay None."""
        identity = resolver.identify(500, 1)

        assert identity == ShowIdentity(tvdb_id=500, anidb_id=4000, mal_id=None)
        assert not identity.is_mapped
