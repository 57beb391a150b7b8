"""Polling loop: Jellyfin activity -> resolved MAL progress -> MAL updates."""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

from .http_retry import APIError
from .jellyfin_client import DEFAULT_RECENT_LIMIT, JellyfinClient
from .mal_client import MALClient
from .models import NotMapped, SyncReport, WatchedEpisode, WatchStatus
from .resolver import IdentityResolver
from .storage import PersistenceWriteError
from .token_manager import TokenExpiredUnrecoverable, TokenNotInitializedError
from .watch_state import WatchStateTracker

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 300
DEFAULT_MAX_WORKERS = 4
DEFAULT_CYCLE_TIMEOUT = 600
DEFAULT_SHUTDOWN_GRACE = 10

# Errors that stop the service instead of failing one show
FATAL_ERRORS = (TokenExpiredUnrecoverable, TokenNotInitializedError)


@dataclass
class PendingUpdate:
    """Furthest progress observed for one MAL show in this cycle."""

    mal_id: int
    episode: int
    title: str = ""


class SyncOrchestrator:
    """Runs poll cycles until told to stop."""

    def __init__(
        self,
        jellyfin: JellyfinClient,
        user_id: str,
        resolver: IdentityResolver,
        tracker: WatchStateTracker,
        mal: MALClient,
        max_workers: int = DEFAULT_MAX_WORKERS,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
        cycle_timeout: float = DEFAULT_CYCLE_TIMEOUT,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
        stop_event: threading.Event | None = None,
        dry_run: bool = False,
    ):
        self.jellyfin = jellyfin
        self.user_id = user_id
        self.resolver = resolver
        self.tracker = tracker
        self.mal = mal
        self.max_workers = max_workers
        self.recent_limit = recent_limit
        self.cycle_timeout = cycle_timeout
        self.shutdown_grace = shutdown_grace
        self.stop_event = stop_event or threading.Event()
        self.dry_run = dry_run
        self._cycle_lock = threading.Lock()

    def collect_updates(self, episodes: list[WatchedEpisode]) -> tuple[list[PendingUpdate], int]:
        """Resolve watched episodes and keep the furthest episode per MAL show.

        Returns:
            Tuple of (updates, not_mapped_count).
        """
        best: dict[int, PendingUpdate] = {}
        not_mapped = 0

        for episode in episodes:
            if not episode.is_watched:
                continue
            result = self.resolver.resolve(episode.tvdb_id, episode.season, episode.episode)
            if isinstance(result, NotMapped):
                not_mapped += 1
                continue

            current = best.get(result.mal_id)
            if current is None or result.absolute_episode > current.episode:
                best[result.mal_id] = PendingUpdate(
                    mal_id=result.mal_id,
                    episode=result.absolute_episode,
                    title=episode.series_name,
                )

        return list(best.values()), not_mapped

    def _wants_push(self, update: PendingUpdate) -> bool:
        """Check an update against the last push before asking MAL anything."""
        record = self.tracker.get(update.mal_id)
        if record is not None and record.last_synced_status is WatchStatus.COMPLETED:
            # Already clamped to MAL's episode count
            return False
        if self.tracker.should_sync(update.mal_id, update.episode, WatchStatus.WATCHING):
            return True
        # Same episode again: MAL may have learned the episode count since
        return (
            record is not None
            and record.last_synced_status is WatchStatus.WATCHING
            and record.last_synced_episode == update.episode
        )

    def _push(self, update: PendingUpdate) -> tuple[int, WatchStatus] | None:
        episode = update.episode
        status = WatchStatus.WATCHING

        total = self.mal.get_episode_count(update.mal_id)
        if total and episode >= total:
            # Catalog episode numbers can run past MAL's count
            episode = total
            status = WatchStatus.COMPLETED

        if not self.tracker.should_sync(update.mal_id, episode, status):
            return None

        self.mal.update_list_status(update.mal_id, episode, status)
        self.tracker.record_sync(update.mal_id, episode, status)
        logger.info(
            f"Set {update.title or 'series'} (mal-id: {update.mal_id}) to episode {episode} ({status.value})"
        )
        return episode, status

    def _collect(self, future: Future, update: PendingUpdate, report: SyncReport) -> None:
        try:
            result = future.result()
        except FATAL_ERRORS:
            raise
        except (APIError, PersistenceWriteError) as e:
            logger.error(f"Failed to update mal-id {update.mal_id}: {e}")
            report.errors.append({"mal_id": update.mal_id, "episode": update.episode, "error": str(e)})
            return
        except Exception as e:
            # One show's failure must not abort the batch
            logger.exception(f"Unexpected error updating mal-id {update.mal_id}")
            report.errors.append({"mal_id": update.mal_id, "episode": update.episode, "error": repr(e)})
            return
        if result is None:
            report.skipped += 1
            return
        episode, status = result
        report.pushed.append((update.mal_id, episode, status.value))

    def _dispatch(self, updates: list[PendingUpdate], report: SyncReport) -> None:
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="mal-push")
        futures = {executor.submit(self._push, update): update for update in updates}
        pending = set(futures)
        deadline = time.monotonic() + self.cycle_timeout

        try:
            while pending:
                if self.stop_event.is_set():
                    logger.warning(f"Shutdown requested, waiting up to {self.shutdown_grace:.0f}s for updates")
                    done, pending = wait(pending, timeout=self.shutdown_grace)
                    for future in done:
                        self._collect(future, futures[future], report)
                    break

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.error(f"Sync cycle timed out with {len(pending)} updates outstanding")
                    break

                done, pending = wait(pending, timeout=min(1.0, remaining), return_when=FIRST_COMPLETED)
                for future in done:
                    self._collect(future, futures[future], report)

            for future in pending:
                future.cancel()
                update = futures[future]
                report.errors.append({"mal_id": update.mal_id, "episode": update.episode, "error": "not completed"})
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def run_cycle(self) -> SyncReport:
        """Run one poll cycle.

        Returns:
            SyncReport summarizing the cycle.

        Raises:
            TokenExpiredUnrecoverable: If MAL authorization is gone for good.
        """
        with self._cycle_lock:
            report = SyncReport()

            try:
                episodes = self.jellyfin.get_recent_episodes(self.user_id, self.recent_limit)
            except APIError as e:
                logger.error(f"Failed to fetch Jellyfin activity: {e}")
                report.errors.append({"error": f"jellyfin: {e}"})
                return report

            report.observed = len(episodes)
            updates, report.not_mapped = self.collect_updates(episodes)

            accepted = [u for u in updates if self._wants_push(u)]
            report.skipped = len(updates) - len(accepted)

            if not accepted:
                return report

            if self.dry_run:
                for update in accepted:
                    logger.info(
                        f"[DRY RUN] Would set {update.title or 'series'} (mal-id: {update.mal_id}) "
                        f"to episode {update.episode}"
                    )
                return report

            self._dispatch(accepted, report)
            return report

    def run_forever(self, interval: float = DEFAULT_POLL_INTERVAL) -> None:
        """Poll until the stop event is set.

        Raises:
            TokenExpiredUnrecoverable: If MAL authorization is gone for good.
        """
        logger.info(f"Polling Jellyfin every {interval:.0f}s")
        while not self.stop_event.is_set():
            try:
                report = self.run_cycle()
            except FATAL_ERRORS:
                raise
            except Exception:
                # A broken cycle must not end the service
                logger.exception("Sync cycle failed, retrying next interval")
                if self.stop_event.wait(interval):
                    break
                continue
            logger.info(
                f"Cycle done: {report.observed} observed, {len(report.pushed)} pushed, "
                f"{report.skipped} up to date, {report.not_mapped} not mapped, {report.failed} failed"
            )
            if self.stop_event.wait(interval):
                break
        logger.info("Sync loop stopped")
