"""Per-show record of what was last pushed to MAL."""

import logging
import threading
from datetime import datetime
from pathlib import Path

from .models import WatchRecord, WatchStatus
from .paths import get_watch_state_path
from .storage import PersistenceWriteError, atomic_write_json, read_json

logger = logging.getLogger(__name__)

# Status moves that count as progress on their own
_PROGRESSION = {
    WatchStatus.PLAN_TO_WATCH: 0,
    WatchStatus.WATCHING: 1,
    WatchStatus.COMPLETED: 2,
}


class WatchStateTracker:
    """Decide whether an observation moves a show forward, and remember pushes."""

    def __init__(self, state_path: Path | None = None):
        """Initialize the tracker and load stored records.

        Args:
            state_path: JSON file holding the records. Uses default if None.

        Raises:
            PersistenceReadError: If the stored file is corrupt.
        """
        self.state_path = state_path or get_watch_state_path()
        self._records: dict[int, WatchRecord] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        data = read_json(self.state_path) or {}
        for key, value in data.get("records", {}).items():
            try:
                self._records[int(key)] = WatchRecord.from_dict(value)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed watch record {key}: {e}")
        if self._records:
            logger.info(f"Loaded {len(self._records)} watch records")

    def _save(self) -> None:
        data = {"records": {str(k): v.to_dict() for k, v in sorted(self._records.items())}}
        atomic_write_json(self.state_path, data)

    def get(self, mal_id: int) -> WatchRecord | None:
        with self._lock:
            return self._records.get(mal_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def should_sync(
        self,
        mal_id: int,
        candidate_episode: int,
        candidate_status: WatchStatus,
        explicit: bool = False,
    ) -> bool:
        """Check if an observation is forward progress worth pushing.

        Args:
            mal_id: MAL anime ID.
            candidate_episode: Episodes watched according to the observation.
            candidate_status: Status according to the observation.
            explicit: The status was observed directly, not inferred.
                Required for on_hold and dropped.

        Returns:
            True if the update should be pushed.
        """
        if candidate_episode < 0:
            return False
        if candidate_status.is_explicit_only and not explicit:
            return False

        with self._lock:
            record = self._records.get(mal_id)

        if record is None:
            return True

        if candidate_episode > record.last_synced_episode:
            return True
        if candidate_episode < record.last_synced_episode:
            return False

        # Same episode: only a status change can make this progress
        if candidate_status == record.last_synced_status:
            return False
        if candidate_status.is_explicit_only:
            return True

        before = _PROGRESSION.get(record.last_synced_status)
        after = _PROGRESSION.get(candidate_status)
        if before is None or after is None:
            return False
        return after > before

    def record_sync(self, mal_id: int, episode: int, status: WatchStatus) -> WatchRecord:
        """Remember a successful push.

        Raises:
            PersistenceWriteError: If the records cannot be stored. The
                in-memory record is rolled back so the push is retried.
        """
        record = WatchRecord(
            mal_id=mal_id,
            last_synced_episode=episode,
            last_synced_status=status,
            synced_at=datetime.now(),
        )
        with self._lock:
            previous = self._records.get(mal_id)
            self._records[mal_id] = record
            try:
                self._save()
            except PersistenceWriteError:
                if previous is None:
                    del self._records[mal_id]
                else:
                    self._records[mal_id] = previous
                raise
        return record
