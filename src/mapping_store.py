"""TVDB -> AniDB -> MAL mapping catalogs, held as immutable snapshots.

Two community catalogs bridge Jellyfin's TVDB identity to MyAnimeList:

* Anime-Lists ``anime-list-master.xml`` maps AniDB entries onto TVDB seasons.
  For ``<anime defaulttvdbseason="S" episodeoffset="K">`` TVDB episode
  ``K + n`` of season ``S`` is AniDB episode ``n``. Nested ``<mapping>``
  elements carry per-season ``offset``/``start``/``end`` overrides with the
  same direction (TVDB = AniDB + offset).
* Fribb ``anime-list-full.json`` maps AniDB IDs to MAL IDs.

Every load builds a fresh :class:`MappingSnapshot` and replaces the active one
with a single reference assignment, so readers never see a half-built index.
"""

import json
import logging
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import httpx

from .http_retry import APIError, send_with_retry
from .models import MalMapping, TvdbMapping
from .paths import get_mapping_cache_dir
from .storage import PersistenceWriteError, atomic_write_bytes

logger = logging.getLogger(__name__)

TVDB_ANIDB_URL = "https://raw.githubusercontent.com/Anime-Lists/anime-lists/master/anime-list-master.xml"
ANIDB_MAL_URL = "https://raw.githubusercontent.com/Fribb/anime-lists/master/anime-list-full.json"

TVDB_ANIDB_FILE = "anime-list-master.xml"
ANIDB_MAL_FILE = "anime-list-full.json"

DEFAULT_REFRESH_INTERVAL = 24 * 60 * 60


class MappingLoadError(Exception):
    """Mapping catalogs could not be fetched or parsed."""

    pass


def _to_int(value) -> int | None:
    """Parse a catalog ID, returning None for blanks and placeholders."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_tvdb_anidb(document: bytes) -> tuple[list[TvdbMapping], int]:
    """Parse the Anime-Lists XML catalog.

    Args:
        document: Raw XML bytes.

    Returns:
        Tuple of (entries, skipped_count).

    Raises:
        MappingLoadError: If the document is not valid XML.
    """
    try:
        root = ET.fromstring(document)
    except ET.ParseError as e:
        raise MappingLoadError(f"Invalid TVDB->AniDB XML: {e}") from e

    entries: list[TvdbMapping] = []
    skipped = 0

    for anime in root.iter("anime"):
        before = len(entries)
        anidb_id = _to_int(anime.get("anidbid"))
        # tvdbid is "movie", "unknown", "hentai", ... for non-TV entries
        tvdb_id = _to_int(anime.get("tvdbid"))
        if anidb_id is None or tvdb_id is None:
            skipped += 1
            continue

        # "a" means TVDB orders this show absolutely; Jellyfin's per-season
        # numbers can't be mapped without season lengths
        default_season = _to_int(anime.get("defaulttvdbseason"))
        if default_season is not None:
            episode_offset = _to_int(anime.get("episodeoffset")) or 0
            entries.append(
                TvdbMapping(
                    tvdb_id=tvdb_id,
                    anidb_id=anidb_id,
                    season=default_season,
                    season_offset=-episode_offset,
                    first_episode=episode_offset + 1,
                )
            )

        for mapping in anime.iter("mapping"):
            if mapping.get("anidbseason") != "1":
                continue  # specials
            tvdb_season = _to_int(mapping.get("tvdbseason"))
            offset = _to_int(mapping.get("offset"))
            if tvdb_season is None or offset is None:
                continue  # explicit episode lists, not offsets
            start = _to_int(mapping.get("start"))
            end = _to_int(mapping.get("end"))
            entries.append(
                TvdbMapping(
                    tvdb_id=tvdb_id,
                    anidb_id=anidb_id,
                    season=tvdb_season,
                    season_offset=-offset,
                    first_episode=max(1, (start or 1) + offset),
                    last_episode=end + offset if end is not None else None,
                )
            )

        if len(entries) == before:
            skipped += 1

    return entries, skipped


def parse_anidb_mal(document: bytes) -> tuple[list[MalMapping], int]:
    """Parse the Fribb JSON catalog.

    Args:
        document: Raw JSON bytes.

    Returns:
        Tuple of (entries, skipped_count).

    Raises:
        MappingLoadError: If the document is not a JSON array.
    """
    try:
        data = json.loads(document)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MappingLoadError(f"Invalid AniDB->MAL JSON: {e}") from e

    if not isinstance(data, list):
        raise MappingLoadError("AniDB->MAL document is not a JSON array")

    entries: list[MalMapping] = []
    skipped = 0
    for item in data:
        if not isinstance(item, dict):
            skipped += 1
            continue
        anidb_id = _to_int(item.get("anidb_id"))
        mal_id = _to_int(item.get("mal_id"))
        if anidb_id is None or mal_id is None:
            skipped += 1
            continue
        entries.append(MalMapping(anidb_id=anidb_id, mal_id=mal_id))

    return entries, skipped


@dataclass(frozen=True)
class MappingSnapshot:
    """One generation of both catalogs. Never mutated after construction."""

    tvdb_index: Mapping[tuple[int, int], tuple[TvdbMapping, ...]]
    mal_index: Mapping[int, int]
    loaded_at: datetime = field(default_factory=datetime.now)
    source: str = "network"
    skipped: int = 0
    collisions: int = 0

    def lookup_anidb(self, tvdb_id: int, season: int, episode: int | None = None) -> TvdbMapping | None:
        """Find the AniDB entry for a TVDB season.

        Without an episode, the entry covering the start of the season is
        returned. Split-cour seasons hold several entries; the one with the
        latest first episode that still covers the episode wins.
        """
        candidates = self.tvdb_index.get((tvdb_id, season))
        if not candidates:
            return None

        target = 1 if episode is None else episode
        # candidates are sorted by first_episode, descending
        for entry in candidates:
            if entry.covers(target):
                return entry
        return None

    def lookup_mal(self, anidb_id: int) -> int | None:
        """Find the MAL ID for an AniDB ID."""
        return self.mal_index.get(anidb_id)

    def stats(self) -> dict:
        return {
            "tvdb_seasons": len(self.tvdb_index),
            "tvdb_entries": sum(len(v) for v in self.tvdb_index.values()),
            "anidb_to_mal": len(self.mal_index),
            "skipped": self.skipped,
            "collisions": self.collisions,
            "loaded_at": self.loaded_at.isoformat(),
            "source": self.source,
        }


def build_snapshot(
    tvdb_entries: list[TvdbMapping],
    mal_entries: list[MalMapping],
    source: str = "network",
    skipped: int = 0,
) -> MappingSnapshot:
    """Index parsed catalog entries. First-seen wins on collisions."""
    grouped: dict[tuple[int, int], list[TvdbMapping]] = {}
    collisions = 0

    for entry in tvdb_entries:
        bucket = grouped.setdefault((entry.tvdb_id, entry.season), [])
        clash = next((e for e in bucket if e.first_episode == entry.first_episode), None)
        if clash is not None:
            if clash.anidb_id != entry.anidb_id:
                collisions += 1
                logger.debug(
                    f"TVDB {entry.tvdb_id} S{entry.season} already mapped to AniDB "
                    f"{clash.anidb_id}, ignoring AniDB {entry.anidb_id}"
                )
            continue
        bucket.append(entry)

    tvdb_index = {
        key: tuple(sorted(bucket, key=lambda e: e.first_episode, reverse=True))
        for key, bucket in grouped.items()
    }

    mal_index: dict[int, int] = {}
    mal_collisions = 0
    for entry in mal_entries:
        existing = mal_index.get(entry.anidb_id)
        if existing is None:
            mal_index[entry.anidb_id] = entry.mal_id
        elif existing != entry.mal_id:
            mal_collisions += 1
            logger.debug(
                f"AniDB {entry.anidb_id} maps to MAL {existing} and {entry.mal_id}, keeping {existing}"
            )

    if mal_collisions:
        logger.warning(f"{mal_collisions} conflicting AniDB->MAL entries ignored (first seen kept)")

    return MappingSnapshot(
        tvdb_index=MappingProxyType(tvdb_index),
        mal_index=MappingProxyType(mal_index),
        source=source,
        skipped=skipped,
        collisions=collisions + mal_collisions,
    )


class MappingStore:
    """Loads both catalogs and serves lookups from the active snapshot."""

    def __init__(
        self,
        cache_dir: Path | None = None,
        tvdb_anidb_url: str = TVDB_ANIDB_URL,
        anidb_mal_url: str = ANIDB_MAL_URL,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
        retries: int = 3,
    ):
        """Initialize the mapping store.

        Args:
            cache_dir: Directory for the raw catalog copies. Uses default if None.
            tvdb_anidb_url: Location of the Anime-Lists XML.
            anidb_mal_url: Location of the Fribb JSON.
            http_client: Client to reuse. A short-lived one is created per load if None.
            timeout: Per-request timeout in seconds.
            retries: Attempts per document.
        """
        self.cache_dir = cache_dir or get_mapping_cache_dir()
        self.tvdb_anidb_url = tvdb_anidb_url
        self.anidb_mal_url = anidb_mal_url
        self.timeout = timeout
        self.retries = retries
        self._http_client = http_client
        self._snapshot: MappingSnapshot | None = None
        self._load_lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> MappingSnapshot:
        """The active snapshot.

        Raises:
            MappingLoadError: If no load has succeeded yet.
        """
        snapshot = self._snapshot
        if snapshot is None:
            raise MappingLoadError("Mappings not loaded")
        return snapshot

    def _fetch(self, url: str) -> bytes:
        if self._http_client is not None:
            return send_with_retry(self._http_client, "GET", url, retries=self.retries).content

        with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
            return send_with_retry(client, "GET", url, retries=self.retries).content

    def _download(self) -> tuple[bytes, bytes]:
        logger.info(f"Downloading mapping catalogs from {self.tvdb_anidb_url} and {self.anidb_mal_url}")
        try:
            return self._fetch(self.tvdb_anidb_url), self._fetch(self.anidb_mal_url)
        except APIError as e:
            raise MappingLoadError(f"Failed to download mapping catalogs: {e}") from e

    def _read_cache(self) -> tuple[bytes, bytes]:
        tvdb_path = self.cache_dir / TVDB_ANIDB_FILE
        mal_path = self.cache_dir / ANIDB_MAL_FILE
        try:
            return tvdb_path.read_bytes(), mal_path.read_bytes()
        except OSError as e:
            raise MappingLoadError(f"No usable mapping cache in {self.cache_dir}: {e}") from e

    def _save_cache(self, tvdb_doc: bytes, mal_doc: bytes) -> None:
        try:
            atomic_write_bytes(self.cache_dir / TVDB_ANIDB_FILE, tvdb_doc)
            atomic_write_bytes(self.cache_dir / ANIDB_MAL_FILE, mal_doc)
        except PersistenceWriteError as e:
            # The in-memory snapshot is still good
            logger.warning(f"Failed to cache mapping catalogs: {e}")

    def _build(self, tvdb_doc: bytes, mal_doc: bytes, source: str) -> MappingSnapshot:
        tvdb_entries, tvdb_skipped = parse_tvdb_anidb(tvdb_doc)
        mal_entries, mal_skipped = parse_anidb_mal(mal_doc)
        if not tvdb_entries or not mal_entries:
            raise MappingLoadError("Mapping catalogs contained no usable entries")
        return build_snapshot(tvdb_entries, mal_entries, source=source, skipped=tvdb_skipped + mal_skipped)

    def load(self, allow_cache: bool = False) -> MappingSnapshot:
        """Fetch, parse and activate a new generation of both catalogs.

        Args:
            allow_cache: Fall back to the on-disk copy if the download fails.

        Returns:
            The newly active snapshot.

        Raises:
            MappingLoadError: If no new snapshot could be built. The previous
                snapshot, if any, stays active.
        """
        with self._load_lock:
            try:
                tvdb_doc, mal_doc = self._download()
                snapshot = self._build(tvdb_doc, mal_doc, source="network")
            except MappingLoadError as e:
                if not allow_cache:
                    raise
                logger.warning(f"{e}; trying cached catalogs")
                snapshot = self._build(*self._read_cache(), source="cache")
            else:
                self._save_cache(tvdb_doc, mal_doc)

            self._snapshot = snapshot

        stats = snapshot.stats()
        logger.info(
            f"Loaded mappings from {snapshot.source}: {stats['tvdb_entries']} TVDB->AniDB, "
            f"{stats['anidb_to_mal']} AniDB->MAL ({stats['skipped']} skipped)"
        )
        return snapshot

    def refresh(self) -> bool:
        """Reload the catalogs, keeping the current snapshot on failure.

        Returns:
            True if a new snapshot was activated.
        """
        try:
            self.load()
        except MappingLoadError as e:
            logger.warning(f"Mapping refresh failed, keeping previous mappings: {e}")
            return False
        return True

    def lookup_anidb(self, tvdb_id: int, season: int, episode: int | None = None) -> TvdbMapping | None:
        return self.snapshot.lookup_anidb(tvdb_id, season, episode)

    def lookup_mal(self, anidb_id: int) -> int | None:
        return self.snapshot.lookup_mal(anidb_id)

    def stats(self) -> dict:
        return self.snapshot.stats()


class MappingRefresher:
    """Background thread reloading the catalogs on a fixed interval."""

    def __init__(
        self,
        store: MappingStore,
        interval: float = DEFAULT_REFRESH_INTERVAL,
        stop_event: threading.Event | None = None,
    ):
        self.store = store
        self.interval = interval
        self._stop = stop_event or threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._loop, name="MappingRefresher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 3.0) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.store.refresh()
            except Exception:
                logger.exception("Unexpected error refreshing mappings, keeping previous mappings")
