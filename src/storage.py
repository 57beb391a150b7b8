"""Crash-safe JSON persistence for tokens, watch state and catalog caches."""

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class PersistenceWriteError(Exception):
    """A state file could not be written. The previous file is left intact."""

    pass


class PersistenceReadError(Exception):
    """A state file exists but cannot be read or decoded."""

    pass


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write bytes to path using write-to-temp-then-rename.

    The temp file lives in the target directory so os.replace stays on one
    filesystem. Readers see either the old file or the new one, never a mix.

    Args:
        path: Destination file.
        data: File contents.

    Raises:
        PersistenceWriteError: If any step fails.
    """
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise PersistenceWriteError(f"Failed to write {path}: {e}") from e
    finally:
        if tmp_name is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)


def atomic_write_json(path: Path, data: Any) -> None:
    """Serialize data as indented JSON and write it atomically."""
    payload = json.dumps(data, indent=2, sort_keys=True).encode("utf-8")
    atomic_write_bytes(path, payload)
    logger.debug(f"Wrote {path}")


def read_json(path: Path) -> Any | None:
    """Read a JSON state file.

    Args:
        path: File to read.

    Returns:
        Decoded data, or None if the file does not exist.

    Raises:
        PersistenceReadError: If the file is unreadable or not valid JSON.
    """
    if not path.exists():
        return None

    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
        raise PersistenceReadError(f"Failed to read {path}: {e}") from e
