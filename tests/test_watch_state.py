"""Tests for the watch-state tracker."""

from unittest.mock import patch

import pytest

from src.models import WatchStatus
from src.storage import PersistenceReadError, PersistenceWriteError, read_json
from src.watch_state import WatchStateTracker


@pytest.fixture
def tracker(tmp_path):
    return WatchStateTracker(tmp_path / "watch_state.json")


class TestShouldSync:
    """Tests for forward-progress decisions."""

    def test_unknown_show_syncs(self, tracker):
        """The first observation of a show is always pushed."""
        assert tracker.should_sync(200, 1, WatchStatus.WATCHING)

    def test_monotonic_episodes(self, tracker):
        """Lower episodes are rejected, higher ones accepted."""
        tracker.record_sync(200, 5, WatchStatus.WATCHING)

        assert not tracker.should_sync(200, 4, WatchStatus.WATCHING)
        assert tracker.should_sync(200, 6, WatchStatus.WATCHING)

    def test_idempotent(self, tracker):
        """Seeing the same state twice pushes nothing."""
        tracker.record_sync(200, 5, WatchStatus.WATCHING)

        assert not tracker.should_sync(200, 5, WatchStatus.WATCHING)

    def test_completion_at_same_episode(self, tracker):
        """Watching -> completed is progress without a new episode."""
        tracker.record_sync(200, 12, WatchStatus.WATCHING)

        assert tracker.should_sync(200, 12, WatchStatus.COMPLETED)

    def test_no_step_back_from_completed(self, tracker):
        """Completed -> watching at the same episode is a regression."""
        tracker.record_sync(200, 12, WatchStatus.COMPLETED)

        assert not tracker.should_sync(200, 12, WatchStatus.WATCHING)

    def test_rewatch_episode_after_completed(self, tracker):
        """A lower episode after completion is ignored."""
        tracker.record_sync(200, 12, WatchStatus.COMPLETED)

        assert not tracker.should_sync(200, 3, WatchStatus.WATCHING)

    def test_dropped_requires_explicit(self, tracker):
        """Dropped and on hold are never inferred."""
        tracker.record_sync(200, 4, WatchStatus.WATCHING)

        assert not tracker.should_sync(200, 4, WatchStatus.DROPPED)
        assert tracker.should_sync(200, 4, WatchStatus.DROPPED, explicit=True)
        assert tracker.should_sync(200, 4, WatchStatus.ON_HOLD, explicit=True)

    def test_negative_episode_rejected(self, tracker):
        """Negative progress is never pushed."""
        assert not tracker.should_sync(200, -1, WatchStatus.WATCHING)


class TestRecordSync:
    """Tests for persisting pushes."""

    def test_record_persists(self, tmp_path):
        """Records survive a restart."""
        path = tmp_path / "watch_state.json"
        WatchStateTracker(path).record_sync(200, 3, WatchStatus.WATCHING)

        reloaded = WatchStateTracker(path)

        record = reloaded.get(200)
        assert record.last_synced_episode == 3
        assert record.last_synced_status is WatchStatus.WATCHING
        assert len(reloaded) == 1

    def test_write_failure_rolls_back(self, tracker):
        """A failed save does not mark the push as done."""
        tracker.record_sync(200, 3, WatchStatus.WATCHING)

        with patch("src.storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceWriteError):
                tracker.record_sync(200, 4, WatchStatus.WATCHING)

        assert tracker.get(200).last_synced_episode == 3
        assert tracker.should_sync(200, 4, WatchStatus.WATCHING)
        assert read_json(tracker.state_path)["records"]["200"]["last_synced_episode"] == 3

    def test_malformed_record_ignored(self, tmp_path):
        """Bad records are skipped, good ones kept."""
        path = tmp_path / "watch_state.json"
        path.write_text(
            '{"records": {"1": {"mal_id": 1, "last_synced_episode": 2, "last_synced_status": "watching"},'
            ' "2": {"mal_id": 2, "last_synced_status": "bogus"}}}'
        )

        tracker = WatchStateTracker(path)

        assert len(tracker) == 1
        assert tracker.get(2) is None

    def test_corrupt_file_raises(self, tmp_path):
        """A corrupt state file is not silently discarded."""
        path = tmp_path / "watch_state.json"
        path.write_text("{oops")

        with pytest.raises(PersistenceReadError):
            WatchStateTracker(path)
