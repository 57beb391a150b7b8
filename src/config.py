"""Runtime settings read from the environment (and a .env file)."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .mapping_store import ANIDB_MAL_URL, DEFAULT_REFRESH_INTERVAL, TVDB_ANIDB_URL
from .paths import get_data_dir

DEFAULT_REDIRECT_URL = "http://localhost"


class ConfigError(Exception):
    """Missing or invalid configuration."""

    pass


def _number(name: str, default: float, minimum: float, cast=float):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return cast(default)
    try:
        value = cast(raw.strip())
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """All tunables of the sync service."""

    mal_client_id: str
    mal_client_secret: str = ""
    mal_redirect_url: str = DEFAULT_REDIRECT_URL
    jellyfin_host: str = ""
    jellyfin_token: str = ""
    jellyfin_user: str = ""
    data_dir: Path = Path(".")
    poll_interval: float = 300.0
    mapping_refresh_interval: float = DEFAULT_REFRESH_INTERVAL
    max_workers: int = 4
    http_timeout: float = 30.0
    http_retries: int = 3
    token_refresh_margin: float = 300.0
    recent_items_limit: int = 200
    cycle_timeout: float = 600.0
    shutdown_grace: float = 10.0
    tvdb_anidb_url: str = TVDB_ANIDB_URL
    anidb_mal_url: str = ANIDB_MAL_URL

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "Settings":
        """Build settings from environment variables.

        Args:
            env_file: .env file to load first. Searches upwards from cwd if None.

        Raises:
            ConfigError: If a required variable is missing or a number is invalid.
        """
        load_dotenv(env_file)

        client_id = os.getenv("MAL_CLIENT_ID", "").strip()
        if not client_id:
            raise ConfigError(
                "MAL_CLIENT_ID must be set. Register an app at https://myanimelist.net/apiconfig"
            )

        data_dir = os.getenv("DATA_DIR")
        return cls(
            mal_client_id=client_id,
            mal_client_secret=os.getenv("MAL_CLIENT_SECRET", "").strip(),
            mal_redirect_url=os.getenv("MAL_REDIRECT_URL", DEFAULT_REDIRECT_URL).strip(),
            jellyfin_host=os.getenv("JELLYFIN_HOST", "").strip(),
            jellyfin_token=os.getenv("JELLYFIN_TOKEN", "").strip(),
            jellyfin_user=os.getenv("JELLYFIN_USER", "").strip(),
            data_dir=Path(data_dir) if data_dir else get_data_dir(),
            poll_interval=_number("POLL_INTERVAL", 300, 1),
            mapping_refresh_interval=_number("MAPPING_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL, 60),
            max_workers=_number("MAX_WORKERS", 4, 1, int),
            http_timeout=_number("HTTP_TIMEOUT", 30, 1),
            http_retries=_number("HTTP_RETRIES", 3, 1, int),
            token_refresh_margin=_number("TOKEN_REFRESH_MARGIN", 300, 0),
            recent_items_limit=_number("RECENT_ITEMS_LIMIT", 200, 1, int),
            cycle_timeout=_number("CYCLE_TIMEOUT", 600, 1),
            shutdown_grace=_number("SHUTDOWN_GRACE", 10, 0),
            tvdb_anidb_url=os.getenv("TVDB_ANIDB_URL", TVDB_ANIDB_URL).strip(),
            anidb_mal_url=os.getenv("ANIDB_MAL_URL", ANIDB_MAL_URL).strip(),
        )

    def require_jellyfin(self) -> None:
        """Check the Jellyfin settings needed for syncing.

        Raises:
            ConfigError: If any is missing.
        """
        missing = [
            name
            for name, value in (
                ("JELLYFIN_HOST", self.jellyfin_host),
                ("JELLYFIN_TOKEN", self.jellyfin_token),
                ("JELLYFIN_USER", self.jellyfin_user),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"{', '.join(missing)} must be set")
