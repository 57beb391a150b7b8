"""CLI entry point for the Jellyfin to MyAnimeList sync service."""

import argparse
import logging
import signal
import sys
import threading

from .config import ConfigError, Settings
from .http_retry import APIError
from .jellyfin_client import JellyfinClient
from .mal_auth import MALAuthClient, MALAuthError, interactive_auth
from .mal_client import MALClient
from .mapping_store import MappingLoadError, MappingRefresher, MappingStore
from .models import NotMapped
from .paths import get_mapping_cache_dir, get_token_path, get_watch_state_path
from .resolver import IdentityResolver
from .storage import PersistenceReadError, PersistenceWriteError
from .sync import SyncOrchestrator
from .token_manager import TokenExpiredUnrecoverable, TokenManager, TokenNotInitializedError
from .watch_state import WatchStateTracker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

EXIT_TOKEN_EXPIRED = 2


def _load_settings() -> Settings | None:
    try:
        return Settings.from_env()
    except ConfigError as e:
        logger.error(str(e))
        return None


def _build_token_manager(settings: Settings, stop_event: threading.Event | None = None) -> TokenManager:
    auth_client = MALAuthClient(
        settings.mal_client_id,
        settings.mal_client_secret,
        settings.mal_redirect_url,
        retries=settings.http_retries,
        timeout=settings.http_timeout,
        stop_event=stop_event,
    )
    return TokenManager(
        auth_client,
        token_path=get_token_path(settings.data_dir),
        refresh_margin=settings.token_refresh_margin,
    )


def _build_mapping_store(settings: Settings) -> MappingStore:
    return MappingStore(
        cache_dir=get_mapping_cache_dir(settings.data_dir),
        tvdb_anidb_url=settings.tvdb_anidb_url,
        anidb_mal_url=settings.anidb_mal_url,
        timeout=settings.http_timeout,
        retries=settings.http_retries,
    )


def _build_orchestrator(
    settings: Settings,
    stop_event: threading.Event,
    dry_run: bool = False,
) -> tuple[SyncOrchestrator, MappingStore] | None:
    """Wire up every component, loading mappings and tokens first.

    Returns:
        Tuple of (orchestrator, mapping_store), or None after logging why not.
    """
    try:
        settings.require_jellyfin()
    except ConfigError as e:
        logger.error(str(e))
        return None

    store = _build_mapping_store(settings)
    try:
        store.load(allow_cache=True)
    except MappingLoadError as e:
        logger.error(f"Cannot start without mappings: {e}")
        return None

    try:
        token_manager = _build_token_manager(settings, stop_event)
    except MALAuthError as e:
        logger.error(str(e))
        return None
    if not token_manager.is_authenticated:
        logger.error("Not authenticated with MyAnimeList. Run 'auth' command first.")
        return None

    try:
        tracker = WatchStateTracker(get_watch_state_path(settings.data_dir))
    except PersistenceReadError as e:
        logger.error(f"Watch state is unreadable, fix or remove it: {e}")
        return None

    jellyfin = JellyfinClient(
        settings.jellyfin_host,
        settings.jellyfin_token,
        retries=settings.http_retries,
        timeout=settings.http_timeout,
        stop_event=stop_event,
    )
    try:
        user_id = jellyfin.get_user_id(settings.jellyfin_user)
    except APIError as e:
        logger.error(f"Failed to reach Jellyfin: {e}")
        return None
    if user_id is None:
        logger.error(f"Jellyfin user {settings.jellyfin_user!r} does not exist")
        return None

    mal = MALClient(
        token_manager,
        retries=settings.http_retries,
        timeout=settings.http_timeout,
        stop_event=stop_event,
    )
    orchestrator = SyncOrchestrator(
        jellyfin,
        user_id,
        IdentityResolver(store),
        tracker,
        mal,
        max_workers=settings.max_workers,
        recent_limit=settings.recent_items_limit,
        cycle_timeout=settings.cycle_timeout,
        shutdown_grace=settings.shutdown_grace,
        stop_event=stop_event,
        dry_run=dry_run,
    )
    return orchestrator, store


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def handle(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle)
    signal.signal(signal.SIGINT, handle)


def cmd_auth(args: argparse.Namespace) -> int:
    """Authorize access to MyAnimeList."""
    settings = _load_settings()
    if settings is None:
        return 1

    token_manager = _build_token_manager(settings)
    if token_manager.is_authenticated and not args.force:
        print("Already authenticated with MyAnimeList. Use --force to authorize again.")
        return 0

    try:
        ok = interactive_auth(token_manager.auth_client, token_manager, args.code, args.verifier)
    except PersistenceWriteError as e:
        logger.error(str(e))
        return 1
    return 0 if ok else 1


def cmd_run(args: argparse.Namespace) -> int:
    """Run the sync service until stopped."""
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings = _load_settings()
    if settings is None:
        return 1

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)

    built = _build_orchestrator(settings, stop_event)
    if built is None:
        return 1
    orchestrator, store = built

    refresher = MappingRefresher(store, settings.mapping_refresh_interval, stop_event)
    refresher.start()
    try:
        orchestrator.run_forever(settings.poll_interval)
    except (TokenExpiredUnrecoverable, TokenNotInitializedError) as e:
        logger.critical(f"Stopping: {e}")
        return EXIT_TOKEN_EXPIRED
    finally:
        stop_event.set()
        refresher.stop()
        orchestrator.jellyfin.close()
        orchestrator.mal.close()

    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    """Run a single sync cycle."""
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings = _load_settings()
    if settings is None:
        return 1

    built = _build_orchestrator(settings, threading.Event(), dry_run=args.dry_run)
    if built is None:
        return 1
    orchestrator, _ = built

    try:
        report = orchestrator.run_cycle()
    except (TokenExpiredUnrecoverable, TokenNotInitializedError) as e:
        logger.critical(str(e))
        return EXIT_TOKEN_EXPIRED
    finally:
        orchestrator.jellyfin.close()
        orchestrator.mal.close()

    logger.info(
        f"Observed {report.observed} episodes: {len(report.pushed)} pushed, "
        f"{report.skipped} up to date, {report.not_mapped} not mapped"
    )
    if report.errors:
        logger.warning(f"Errors encountered: {len(report.errors)}")
        for error in report.errors[:5]:  # Show first 5 errors
            logger.warning(f"  - {error}")
        return 1
    return 0


def cmd_mappings(args: argparse.Namespace) -> int:
    """Load the mapping catalogs and show what they contain."""
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings = _load_settings()
    if settings is None:
        return 1

    store = _build_mapping_store(settings)
    try:
        store.load(allow_cache=not args.refresh)
    except MappingLoadError as e:
        logger.error(str(e))
        return 1

    for key, value in store.stats().items():
        print(f"{key}: {value}")

    if args.resolve:
        tvdb_id, season, episode = args.resolve
        resolver = IdentityResolver(store)
        print(f"\n{resolver.identify(tvdb_id, season)}")
        result = resolver.resolve(tvdb_id, season, episode)
        if isinstance(result, NotMapped):
            print(f"TVDB {tvdb_id} S{season}E{episode}: not mapped ({result.reason})")
            return 1
        print(
            f"TVDB {tvdb_id} S{season}E{episode} -> MAL {result.mal_id} "
            f"episode {result.absolute_episode} (AniDB {result.anidb_id})"
        )

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Sync Jellyfin watch activity to MyAnimeList",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Auth command
    auth_parser = subparsers.add_parser(
        "auth",
        help="Authorize access to MyAnimeList",
    )
    auth_parser.add_argument(
        "--code",
        help="Redirect URL or authorization code obtained outside this prompt",
    )
    auth_parser.add_argument(
        "--verifier",
        help="PKCE code verifier used to request --code",
    )
    auth_parser.add_argument(
        "--force",
        action="store_true",
        help="Authorize again even if a token is stored",
    )

    # Run command
    run_parser = subparsers.add_parser(
        "run",
        help="Poll Jellyfin and sync to MyAnimeList until stopped",
    )
    run_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    # Sync command
    sync_parser = subparsers.add_parser(
        "sync",
        help="Run a single sync cycle",
    )
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without syncing",
    )
    sync_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    # Mappings command
    mappings_parser = subparsers.add_parser(
        "mappings",
        help="Load the mapping catalogs and print statistics",
    )
    mappings_parser.add_argument(
        "--resolve",
        nargs=3,
        type=int,
        metavar=("TVDB_ID", "SEASON", "EPISODE"),
        help="Resolve one Jellyfin episode to MAL",
    )
    mappings_parser.add_argument(
        "--refresh",
        action="store_true",
        help="Require a fresh download instead of accepting the cache",
    )
    mappings_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 1

    try:
        if args.command == "auth":
            return cmd_auth(args)
        elif args.command == "run":
            return cmd_run(args)
        elif args.command == "sync":
            return cmd_sync(args)
        elif args.command == "mappings":
            return cmd_mappings(args)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user. Exiting gracefully...")
        return 130  # Standard exit code for SIGINT

    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        sys.exit(130)
